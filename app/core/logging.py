import logging

from app.core.config import settings


def configure_logging(level: str = None) -> None:
    """Configure root logging once for the API process and the workers."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format=settings.LOG_FORMAT,
    )
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
