"""
Handlers — the single capability interface the subscriber invokes.

A handler can be registered as
  - a Handler subclass (override process, optionally error/failure),
  - a Handler instance,
  - any callable or coroutine function taking the message.

Handler.create() wraps whatever was registered into a Handler, and
Handler.call() turns the invocation into a HandlerResult instead of
letting exceptions unwind into the consume loop:

  returns normally            → success
  raises HandlerException     → recoverable_failure
  raises PermanentHandlerError→ permanent_failure
  raises anything else/timeout→ recoverable_failure, unexpected=True
"""
from __future__ import annotations

import asyncio
import copy
import inspect
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

import structlog

from models.errors import ConfigurationError, HandlerException, PermanentHandlerError
from models.schemas import HandlerResult

if TYPE_CHECKING:
    from messaging.message import Message

logger = structlog.get_logger()

DEFAULT_HANDLER_TIMEOUT = 600

HANDLER_KEYS = {"exceptions", "attempts", "delay", "timeout", "errback", "failback", "out_of_band"}


@dataclass
class HandlerOptions:
    exceptions: int = 0             # handler exceptions tolerated before giving up
    attempts: int = 1               # handler runs allowed
    delay: float = 0                # seconds between attempts
    timeout: float = DEFAULT_HANDLER_TIMEOUT
    errback: Optional[Callable] = None
    failback: Optional[Callable] = None
    out_of_band: bool = False       # run in a worker thread

    @classmethod
    def from_dict(cls, options: dict[str, Any]) -> HandlerOptions:
        unknown = set(options) - HANDLER_KEYS
        if unknown:
            raise ConfigurationError(f"unknown handler options: {', '.join(sorted(unknown))}")
        return cls(**options)

    @property
    def attempts_limit(self) -> int:
        return max(self.attempts, self.exceptions + 1)


class Handler:
    """
    Base class for message handlers.

    Subclasses override process(message). error(exception) runs for every
    unexpected exception, failure(result) runs once when the message is
    given up on. Both default to the errback/failback passed at
    registration.
    """

    def __init__(self, processor: Callable = None, errback: Callable = None, failback: Callable = None):
        self.processor = processor
        self.errback = errback
        self.failback = failback
        self.options = HandlerOptions()

    @classmethod
    def create(cls, target: Any, options: HandlerOptions = None) -> Handler:
        options = options or HandlerOptions()
        if isinstance(target, Handler):
            # each registration gets its own options
            handler = copy.copy(target)
            handler.errback = handler.errback or options.errback
            handler.failback = handler.failback or options.failback
        elif isinstance(target, type) and issubclass(target, Handler):
            handler = target(errback=options.errback, failback=options.failback)
        elif callable(target):
            handler = cls(target, errback=options.errback, failback=options.failback)
        else:
            raise ConfigurationError(f"cannot build a handler from {target!r}")
        handler.options = options
        return handler

    def process(self, message: Message) -> Any:
        if self.processor is None:
            raise NotImplementedError("handler has no processor")
        return self.processor(message)

    def error(self, exception: BaseException) -> Any:
        if self.errback is not None:
            return self.errback(exception)

    def failure(self, result: HandlerResult) -> Any:
        if self.failback is not None:
            return self.failback(result)

    async def _invoke(self, message: Message) -> Any:
        if self.options.out_of_band:
            value = await asyncio.wait_for(
                asyncio.to_thread(self.process, message), timeout=self.options.timeout)
        else:
            value = self.process(message)
        if inspect.isawaitable(value):
            value = await asyncio.wait_for(value, timeout=self.options.timeout)
        return value

    async def call(self, message: Message) -> HandlerResult:
        try:
            value = await self._invoke(message)
        except PermanentHandlerError as e:
            return HandlerResult.permanent(str(e), exception=e)
        except HandlerException as e:
            return HandlerResult.recoverable(str(e), exception=e)
        except asyncio.TimeoutError as e:
            return HandlerResult.recoverable(
                f"handler timed out after {self.options.timeout}s", unexpected=True, exception=e)
        except Exception as e:
            return HandlerResult.recoverable(f"{type(e).__name__}: {e}", unexpected=True, exception=e)

        if isinstance(value, HandlerResult):
            return value
        return HandlerResult.success(value)

    async def process_exception(self, exception: BaseException):
        """Invoke the error callback, containing anything it raises."""
        try:
            value = self.error(exception)
            if inspect.isawaitable(value):
                await value
        except Exception as e:
            logger.error("handler_errback_failed", error=str(e))

    async def process_failure(self, result: HandlerResult):
        """Invoke the failure callback, containing anything it raises."""
        try:
            value = self.failure(result)
            if inspect.isawaitable(value):
                await value
        except Exception as e:
            logger.error("handler_failback_failed", error=str(e))
