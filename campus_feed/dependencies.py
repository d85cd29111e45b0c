from fastapi import Request

from campus_feed.feed.service import FeedOrchestrator


def get_orchestrator(request: Request) -> FeedOrchestrator:
    """The process-wide orchestrator built in the app lifespan."""
    return request.app.state.orchestrator
