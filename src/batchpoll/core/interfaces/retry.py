from typing import Protocol, Any, Awaitable, Callable

class RetryPort(Protocol):
    """Abstract retry interface for async remote calls made inside one stage.

    Implementations retry transient failures with backoff before the stage
    gives up and records the failure on the entry's retry counter. The
    contract keeps the core decoupled from a specific library (tenacity/backoff).
    """
    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:  # pragma: no cover - protocol
        """Execute an async callable with retry semantics.

        Args:
            func: Async callable returning a result.
            *args/**kwargs: Passed to the callable.
            Supported kw overrides (optional): attempts, wait_initial, wait_max, retry_if.
        Returns:
            Result of the successful invocation.
        Raises:
            Propagates last exception after exhausting attempts.
        """
        ...
