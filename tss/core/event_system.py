import asyncio
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

# Events emitted by the enforcement core
DIRECTIVES_DISPATCH = "directives.dispatch"
DIRECTIVES_APPLIED = "directives.applied"
MUTES_EXPIRED = "mutes.expired"
INCIDENTS_CLOSED = "incidents.closed"


class EventSystem:
    """
    In-process fan-out from the engines to listeners such as the platform applier.

    A failing listener or middleware is logged and recorded on the event
    context; it never stops the other listeners or the emitting worker.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable]] = {}
        self._middleware: list[Callable] = []

    def add_middleware(self, middleware: Callable) -> None:
        self._middleware.append(middleware)
        logger.debug(f"Added middleware: {type(middleware).__name__}")

    def remove_middleware(self, middleware: Callable) -> None:
        if middleware in self._middleware:
            self._middleware.remove(middleware)
            logger.debug(f"Removed middleware: {type(middleware).__name__}")

    def listen(self, event_name: str) -> Callable:
        def decorator(func: Callable) -> Callable:
            self.add_listener(event_name, func)
            return func

        return decorator

    def add_listener(self, event_name: str, callback: Callable) -> None:
        self._listeners.setdefault(event_name, []).append(callback)
        logger.debug(f"Added listener for {event_name}: {_name(callback)}")

    def remove_listener(self, event_name: str, callback: Callable) -> None:
        try:
            self._listeners.get(event_name, []).remove(callback)
            logger.debug(f"Removed listener for {event_name}: {_name(callback)}")
        except ValueError:
            logger.warning(f"Listener {_name(callback)} not found for {event_name}")

    async def emit(self, event_name: str, *args: Any, **kwargs: Any) -> dict[str, Any]:
        """Run every listener of ``event_name`` concurrently and return the event context."""
        listeners = list(self._listeners.get(event_name, ()))
        event_context: dict[str, Any] = {
            "event_name": event_name,
            "args": args,
            "kwargs": kwargs,
            "stopped": False,
            "errors": [],
        }
        if not listeners:
            return event_context

        for middleware in self._middleware:
            try:
                result = await _call_maybe_async(middleware, event_context, "pre")
                if result is False or event_context.get("stopped"):
                    logger.debug(f"Event {event_name} stopped by middleware")
                    return event_context
            except Exception as e:
                logger.error(f"Error in middleware {_name(middleware)}: {e}")

        results = await asyncio.gather(
            *(_call_maybe_async(listener, *args, **kwargs) for listener in listeners),
            return_exceptions=True,
        )
        for listener, result in zip(listeners, results):
            if isinstance(result, Exception):
                event_context["errors"].append((_name(listener), result))
            elif isinstance(result, BaseException):
                # Cancellation must reach the caller
                raise result

        for middleware in self._middleware:
            try:
                await _call_maybe_async(middleware, event_context, "post")
            except Exception as e:
                logger.error(f"Error in middleware {_name(middleware)} (post): {e}")

        return event_context

    def get_listeners(self, event_name: str) -> list[Callable]:
        return self._listeners.get(event_name, []).copy()

    def get_all_events(self) -> list[str]:
        return list(self._listeners.keys())


async def _call_maybe_async(func: Callable, *args: Any, **kwargs: Any) -> Any:
    result = func(*args, **kwargs)
    if asyncio.iscoroutine(result):
        return await result
    return result


def _name(func: Callable) -> str:
    return getattr(func, "__name__", type(func).__name__)
