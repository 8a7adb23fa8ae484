"""
Error taxonomy shared by the pool, the pipelines and the job registry.

Every error carries a stable `kind` string so job records and HTTP responses
can report the classification without leaking exception types.
"""


class AssetError(Exception):
    kind = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


# ---------------------------------------------------------------------------
# Caller mistakes
# ---------------------------------------------------------------------------

class InvalidInput(AssetError):
    kind = "invalid_input"


class InvalidUrl(InvalidInput):
    pass


class InvalidJobId(InvalidInput):
    pass


class JobNotFound(AssetError):
    kind = "not_found"


class UnsafeTarget(AssetError):
    """Target host is private, loopback, link-local, metadata or credentialed."""
    kind = "unsafe_target"


# ---------------------------------------------------------------------------
# Capacity ceilings (admission control)
# ---------------------------------------------------------------------------

class ResourceExhausted(AssetError):
    kind = "resource_exhausted"


class PoolTimeout(ResourceExhausted):
    pass


class TooManyActiveJobs(ResourceExhausted):
    pass


class TooManyFiles(ResourceExhausted):
    pass


# ---------------------------------------------------------------------------
# Fetch / storage failures
# ---------------------------------------------------------------------------

def is_transient_status(status_code: int | None) -> bool:
    """
    Client errors are permanent except 408 (timeout) and 429 (rate limited).
    Everything else, including missing status (connection errors), is transient.
    """
    if status_code is None:
        return True
    if 400 <= status_code < 500:
        return status_code in (408, 429)
    return True


class NetworkError(AssetError):
    """A fetch failed. `status_code` is set when the server answered."""

    def __init__(self, message: str = "", status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        return is_transient_status(self.status_code)

    @property
    def kind(self) -> str:
        return "transient" if self.transient else "permanent"

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["statusCode"] = self.status_code
        return data


class SizeExceeded(AssetError):
    kind = "size_exceeded"


class WriteError(AssetError):
    kind = "write_error"


class ArchiveError(AssetError):
    kind = "archive_error"
