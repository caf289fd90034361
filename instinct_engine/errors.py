"""Error taxonomy for the instinct lifecycle engine."""


class InstinctError(Exception):
    """Base class for all engine errors."""


class MalformedRecordError(InstinctError):
    """Raised when a persisted instinct record cannot be parsed."""

    def __init__(self, source: str, detail: str):
        self.source = source
        self.detail = detail
        super().__init__(f"Malformed instinct record {source}: {detail}")


class InvalidCandidateError(InstinctError, ValueError):
    """Raised when a candidate instinct fails validation at creation."""


class InstinctNotFoundError(InstinctError, KeyError):
    """Raised when an operation targets an instinct that is not in the store."""

    def __init__(self, instinct_id: str):
        self.instinct_id = instinct_id
        super().__init__(instinct_id)

    def __str__(self) -> str:
        return f"Instinct not found: {self.instinct_id}"


class VersionConflictError(InstinctError):
    """Raised when a record's version doesn't match the expected version.

    This indicates a concurrent modification - another process updated the
    record between when we read it and when we tried to commit. Callers
    should resubmit the operation.
    """

    retryable = True

    def __init__(self, instinct_id: str, expected_version: int, actual_version: int):
        self.instinct_id = instinct_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on {instinct_id}: "
            f"expected version {expected_version}, found {actual_version}"
        )
