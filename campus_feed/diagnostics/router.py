from fastapi import APIRouter, Depends

from campus_feed.dependencies import get_orchestrator
from campus_feed.diagnostics import controller
from campus_feed.diagnostics.schemas import CleanupResponse, FeedPageRequest, FeedPageResponse
from campus_feed.feed.schemas import MetricsSnapshot
from campus_feed.feed.service import FeedOrchestrator

router = APIRouter(tags=["Diagnostics"])


@router.get(
    "/diagnostics/metrics",
    response_model=MetricsSnapshot,
    summary="Fetch and cache statistics",
    description=(
        "Average fetch latency over the sample ring, cache hit rate, current "
        "cache size and the number of live subscriptions."
    ),
)
async def get_metrics(
    orchestrator: FeedOrchestrator = Depends(get_orchestrator),
) -> MetricsSnapshot:
    return controller.get_metrics(orchestrator)


@router.post(
    "/diagnostics/cleanup",
    response_model=CleanupResponse,
    summary="Run cache cleanup now",
    description="Purges expired cache entries and flushes pending analytics batches.",
)
async def run_cleanup(
    orchestrator: FeedOrchestrator = Depends(get_orchestrator),
) -> CleanupResponse:
    return await controller.run_cleanup(orchestrator)


@router.post(
    "/feed/page",
    response_model=FeedPageResponse,
    summary="Ranked feed page",
    description=(
        "One-shot ranked page of posts for the given viewer and ordering mode. "
        "Returns 503 when the backing store cannot be read."
    ),
)
async def get_feed_page(
    body: FeedPageRequest,
    orchestrator: FeedOrchestrator = Depends(get_orchestrator),
) -> FeedPageResponse:
    return await controller.get_feed_page(orchestrator, body)
