"""Diagnostics controller — translates domain errors into HTTP errors."""

from campus_feed.diagnostics.schemas import CleanupResponse, FeedPageRequest, FeedPageResponse
from campus_feed.exceptions import BackendUnavailableError, FetchError, UnprocessableError
from campus_feed.feed.schemas import MetricsSnapshot
from campus_feed.feed.service import FeedOrchestrator


def get_metrics(orchestrator: FeedOrchestrator) -> MetricsSnapshot:
    return orchestrator.get_metrics_snapshot()


async def run_cleanup(orchestrator: FeedOrchestrator) -> CleanupResponse:
    removed = await orchestrator.refresh_and_cleanup()
    return CleanupResponse(removed_entries=removed, metrics=orchestrator.get_metrics_snapshot())


async def get_feed_page(
    orchestrator: FeedOrchestrator, body: FeedPageRequest
) -> FeedPageResponse:
    try:
        update = await orchestrator.fetch_feed_page(
            body.to_viewer(),
            body.mode,
            page=body.page,
            page_size=body.page_size,
            filters=body.filters,
        )
    except FetchError as exc:
        raise BackendUnavailableError(str(exc))
    except ValueError as exc:
        raise UnprocessableError(str(exc))
    return FeedPageResponse.from_update(update, body.page, body.page_size)
