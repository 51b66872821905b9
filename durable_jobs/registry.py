"""Job handler registry."""

import inspect
from collections.abc import Callable
from typing import Optional

from durable_jobs.errors import NoHandlerRegisteredError


class JobRegistry:
    """Registry for job handlers.

    Handlers are coroutine functions called as ``await handler(payload, ctx)``
    where ``ctx`` is an :class:`~durable_jobs.worker.ExecutionContext`.
    The returned value is stored as the job result.
    """

    def __init__(self):
        self._handlers: dict[str, Callable] = {}

    def register(self, job_type: str, func: Callable) -> Callable:
        """Register ``func`` as the handler for ``job_type``."""
        if not job_type:
            raise ValueError("job_type must not be empty")
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"Handler for {job_type} must be an async function")
        self._handlers[job_type] = func
        return func

    def handler(self, job_type: str):
        """
        Decorator to register a job handler.

        Usage:
            @registry.handler("send_email")
            async def send_email(payload, ctx):
                ...
        """

        def decorator(func: Callable):
            return self.register(job_type, func)

        return decorator

    def get_handler(self, job_type: str) -> Optional[Callable]:
        """Get a handler by job type, or None."""
        return self._handlers.get(job_type)

    def resolve(self, job_type: str) -> Callable:
        """Get a handler by job type, raising if none is registered."""
        handler = self._handlers.get(job_type)
        if handler is None:
            raise NoHandlerRegisteredError(job_type)
        return handler

    def all_handlers(self) -> dict[str, Callable]:
        """Get all registered handlers."""
        return self._handlers.copy()


# Default registry used by the CLI entrypoints
job_registry = JobRegistry()
