import logging
import sys

from tss.cli import app

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the enforcement worker (``python -m tss``); extra arguments go to the CLI."""
    try:
        app(args=sys.argv[1:] or ["run"])
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
