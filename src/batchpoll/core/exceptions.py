from typing import Optional


class BatchPollError(Exception):
    """Base exception for job entry processing failures.

    Attributes:
        message: Human-readable error description
        diagnostic: Technical diagnostic information for debugging
        entry_id: Optional local entry identifier
    """
    def __init__(
        self,
        message: str,
        diagnostic: Optional[str] = None,
        entry_id: Optional[str] = None
    ):
        self.message = message
        self.diagnostic = diagnostic
        self.entry_id = entry_id
        super().__init__(message)


class InvalidQueueRequestError(BatchPollError, ValueError):
    """Raised synchronously when an enqueue call lacks parameters or a handler."""


class IllegalTransitionError(BatchPollError):
    """Raised when an entry is asked to move along an edge the state machine lacks.

    Attributes:
        source: State the entry was in
        target: State that was requested
    """
    def __init__(self, entry_id: str, source: str, target: str):
        self.source = source
        self.target = target
        message = f"Entry {entry_id} cannot move from {source} to {target}"
        super().__init__(message=message, entry_id=entry_id)


class StaleEntryError(BatchPollError):
    """Raised when an update or claim lost an optimistic concurrency race.

    Attributes:
        expected_version: Version the caller based its change on
        actual_version: Version currently stored (None if the entry vanished)
    """
    def __init__(
        self,
        entry_id: str,
        expected_version: int,
        actual_version: Optional[int] = None,
    ):
        self.expected_version = expected_version
        self.actual_version = actual_version
        message = (
            f"Entry {entry_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        super().__init__(message=message, entry_id=entry_id)


class RemoteServiceError(BatchPollError):
    """Raised when the remote job service fails to answer or answers with an error.

    Attributes:
        status: HTTP status code from the remote service (if applicable)
        transient: Whether retrying the same call may succeed
        upstream_body: Response body from the remote service (if available)
    """
    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        transient: bool = True,
        upstream_body: Optional[str] = None,
        diagnostic: Optional[str] = None,
        entry_id: Optional[str] = None
    ):
        self.status = status
        self.transient = transient
        self.upstream_body = upstream_body
        super().__init__(message=message, diagnostic=diagnostic, entry_id=entry_id)


class IntegrityCheckError(BatchPollError):
    """Raised when downloaded content does not match the digest the remote sent.

    Attributes:
        expected_digest: Digest supplied by the remote service
        actual_digest: Digest computed over the downloaded bytes
    """
    def __init__(
        self,
        entry_id: str,
        expected_digest: Optional[str],
        actual_digest: str,
    ):
        self.expected_digest = expected_digest
        self.actual_digest = actual_digest
        message = (
            f"Content digest mismatch for entry {entry_id} "
            f"(expected {expected_digest}, computed {actual_digest})"
        )
        super().__init__(message=message, entry_id=entry_id)


class CallbackError(BatchPollError):
    """Base exception for result handler lookup and invocation failures."""


class UnknownCallbackError(CallbackError):
    """Raised when a descriptor names a handler that is not registered."""
    def __init__(self, handler_name: str, entry_id: Optional[str] = None):
        self.handler_name = handler_name
        super().__init__(
            message=f"No callback handler registered under '{handler_name}'",
            entry_id=entry_id,
        )


class CallbackInvocationError(CallbackError):
    """Raised when a registered handler (or its argument decoding) fails."""
