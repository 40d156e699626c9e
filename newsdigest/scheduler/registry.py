"""
Task Handler Registry.

Maps job type strings to handlers. Handlers are the seam to every external
subsystem (RSS fetch, AI analysis, email send, cleanup, ...); the scheduler
knows nothing of their internals.

Registration happens once at startup. A missing handler is a configuration
error surfaced at dispatch time as a non-retryable failure.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Iterable, Optional

from .entities import Job
from .errors import HandlerNotFoundError, HandlerRegistrationError


logger = logging.getLogger(__name__)


HandlerFunc = Callable[[Job], Awaitable[Any]]


class JobHandler(ABC):
    """
    Abstract base class for job type handlers.

    Each job type implements this interface. Cancellation is cooperative:
    a handler that needs to stop early should check job.status itself.
    """

    job_type: str = ""

    @abstractmethod
    async def execute(self, job: Job) -> Any:
        """
        Execute the job.

        Args:
            job: The running job (payload carries handler input)

        Returns:
            Result stored on the job when it completes

        Raises:
            Exception: Any exception marks the attempt as failed
        """
        ...


class FunctionHandler(JobHandler):
    """Adapts a plain async callable to the JobHandler interface."""

    def __init__(self, job_type: str, func: HandlerFunc):
        if not callable(func):
            raise HandlerRegistrationError(f"Handler for {job_type} is not callable")
        self.job_type = job_type
        self._func = func

    async def execute(self, job: Job) -> Any:
        result = self._func(job)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        name = getattr(self._func, "__name__", repr(self._func))
        return f"FunctionHandler({self.job_type!r}, {name})"


class HandlerRegistry:
    """
    Typed lookup table from job type to handler.

    Frozen once the scheduler starts; later registration is rejected.
    """

    def __init__(self, handlers: Optional[Iterable[JobHandler]] = None):
        self._handlers: dict[str, JobHandler] = {}
        self._frozen = False
        for handler in handlers or ():
            self.register(handler)

    def register(self, handler: JobHandler) -> None:
        """
        Register a handler under its job_type.

        Raises:
            HandlerRegistrationError: On empty type, duplicate type, or after freeze
        """
        if self._frozen:
            raise HandlerRegistrationError(
                f"Cannot register handler for {handler.job_type!r}: registry is frozen"
            )
        if not handler.job_type:
            raise HandlerRegistrationError(
                f"Handler {handler!r} does not declare a job_type"
            )
        if handler.job_type in self._handlers:
            raise HandlerRegistrationError(
                f"Handler already registered for job type: {handler.job_type}"
            )
        self._handlers[handler.job_type] = handler
        logger.debug(f"Registered handler for job type {handler.job_type}")

    def register_function(self, job_type: str, func: HandlerFunc) -> JobHandler:
        """Register an async callable as the handler for job_type."""
        handler = FunctionHandler(job_type, func)
        self.register(handler)
        return handler

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, job_type: str) -> Optional[JobHandler]:
        return self._handlers.get(job_type)

    def resolve(self, job_type: str) -> JobHandler:
        """
        Look up the handler for job_type.

        Raises:
            HandlerNotFoundError: If none is registered
        """
        handler = self._handlers.get(job_type)
        if handler is None:
            raise HandlerNotFoundError(job_type)
        return handler

    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
