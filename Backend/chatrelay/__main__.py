import logging
import sys

from pydantic import ValidationError

logger = logging.getLogger("chatrelay")


def main() -> None:
    """Run the API server. Exits non-zero when required configuration is missing."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        from chatrelay.config import settings
    except ValidationError as exc:
        missing = sorted({str(err["loc"][0]) for err in exc.errors()})
        logger.critical("Missing or invalid configuration: %s", ", ".join(missing))
        logger.critical("Set them in the environment or a .env file.")
        sys.exit(1)

    logging.getLogger().setLevel(settings.LOG_LEVEL.upper())

    import uvicorn

    uvicorn.run(
        "chatrelay.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
