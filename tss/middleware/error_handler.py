import logging
from typing import Any

logger = logging.getLogger(__name__)


class ErrorHandlerMiddleware:
    """Logs listener failures recorded on the event context, with tracebacks."""

    def __init__(self) -> None:
        self.error_count = 0

    async def __call__(self, event_context: dict[str, Any], phase: str) -> None:
        if phase != "post":
            return

        event_name = event_context.get("event_name", "unknown")
        for listener_name, error in event_context.get("errors", ()):
            self.error_count += 1
            logger.error(
                f"Listener {listener_name} failed for {event_name}: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )
