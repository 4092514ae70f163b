"""
Error classes for baton job execution.

These error types classify failures at the call boundary:
- NotFoundError: a job record or blob does not exist
- StorageError: backend I/O failed, the call's state is not committed
- StaleStageError: token is parked on a stage this call did not register
- JobAborted: a handler aborted the job explicitly
- HandlerFailure: a handler raised; the token was aborted and the
  original exception is chained as __cause__

Error handling contract:
- Handler outcomes are values inside the engine
- Everything crossing the entry point is an exception
- The engine never retries; clients replay tokens instead
"""


class BatonError(Exception):
    """Base exception for baton."""
    pass


class ConfigError(BatonError):
    """Configuration is missing or invalid."""
    pass


class TokenError(BatonError):
    """A token's wire form violates the token invariants."""
    pass


class NotFoundError(BatonError):
    """A persisted record does not exist."""
    pass


class JobNotFoundError(NotFoundError):
    """
    No persisted state for a job id.

    Raised by Backend.load(). Fresh jobs never load, so seeing this means
    the client resubmitted a started token whose record is gone (completed
    and deleted, or swept by cleanup).
    """

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class BlobNotFoundError(NotFoundError):
    """No out-of-line value stored for a job id + key."""

    def __init__(self, job_id: str, key: str):
        super().__init__(f"Blob not found: {job_id}/{key}")
        self.job_id = job_id
        self.key = key


class StorageError(BatonError):
    """
    Backend I/O failure.

    Examples:
    - Disk full or permission denied while saving a record
    - Corrupt record that cannot be decoded

    State for the current call is considered not committed.
    """
    pass


class StaleStageError(BatonError):
    """
    A stage name is not registered for the current call.

    This is a configuration error: the entry point that handles a token
    must register every stage the token can be parked on.
    """

    def __init__(self, stage_name: str, registered: list[str] | tuple[str, ...] = ()):
        known = ", ".join(registered) if registered else "none"
        super().__init__(f"Unknown stage '{stage_name}' (registered: {known})")
        self.stage_name = stage_name
        self.registered = tuple(registered)


class JobAborted(BatonError):
    """A job was aborted by its own handler code."""

    def __init__(self, message: str, token=None):
        super().__init__(message)
        self.token = token


class HandlerFailure(BatonError):
    """
    A start, stage, or end handler raised.

    The token has already been marked aborted and persisted by the time
    this is raised. Inspect `token` for the terminal state or `__cause__`
    for the original exception.
    """

    def __init__(self, message: str, token=None, result=None):
        super().__init__(message)
        self.token = token
        self.result = result
