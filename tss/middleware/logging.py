import logging
import time
from typing import Any

logger = logging.getLogger(__name__)


class LoggingMiddleware:
    def __init__(self) -> None:
        self.start_times: dict[int, float] = {}

    async def __call__(self, event_context: dict[str, Any], phase: str) -> None:
        event_name = event_context.get("event_name")
        # Concurrent emits of one event each get their own timer
        key = id(event_context)

        if phase == "pre":
            self.start_times[key] = time.monotonic()
            logger.debug(f"Event started: {event_name} ({_describe(event_context)})")

        elif phase == "post":
            start_time = self.start_times.pop(key, None)
            if start_time is not None:
                duration = time.monotonic() - start_time
                logger.debug(f"Event completed: {event_name} (took {duration:.3f}s)")
            else:
                logger.debug(f"Event completed: {event_name}")


def _describe(event_context: dict[str, Any]) -> str:
    args = event_context.get("args") or ()
    if args and isinstance(args[0], list):
        return f"{len(args[0])} item(s)"
    return f"{len(args)} arg(s)"
