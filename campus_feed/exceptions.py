# Domain exceptions raised by the feed core.
# The HTTP layer (campus_feed.diagnostics) converts the ones that can reach a
# caller into HTTPException subclasses; the rest are handled inside the core.

from fastapi import HTTPException, status


class ScoringInputError(Exception):
    """Raised when an item's creation instant cannot be interpreted."""
    pass


class RecordParseError(Exception):
    def __init__(self, record_id, reason: str) -> None:
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Record {record_id!r} could not be parsed: {reason}")


class FetchError(Exception):
    """A Point Reader or Live Collection Source call failed."""

    def __init__(self, collection_path: str, detail: str, doc_id: str | None = None) -> None:
        self.collection_path = collection_path
        self.doc_id = doc_id
        self.detail = detail
        target = f"{collection_path}/{doc_id}" if doc_id else collection_path
        super().__init__(f"Fetch from {target} failed: {detail}")


class FlushSinkError(Exception):
    """A Metrics Sink rejected a coalesced batch."""

    def __init__(self, kind: str, count: int, detail: str) -> None:
        self.kind = kind
        self.count = count
        super().__init__(f"Sink rejected {count} {kind} records: {detail}")


# ---------------------------------------------------------------------------
# HTTP mappings
# ---------------------------------------------------------------------------


class BackendUnavailableError(HTTPException):
    def __init__(self, detail: str = "Backing store is unavailable.") -> None:
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


class UnprocessableError(HTTPException):
    def __init__(self, detail: str = "Unprocessable request.") -> None:
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
        )
