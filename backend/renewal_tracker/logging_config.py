from loguru import logger

from .config import settings

_configured = False


def configure_logging(log_file: str = None, level: str = None) -> None:
    """Attach the rotating file sink once per process."""
    global _configured
    if _configured:
        return

    logger.add(
        log_file or settings.LOG_FILE,
        rotation="500 MB",
        retention="10 days",
        level=level or settings.LOG_LEVEL,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{line} | {message}",
        enqueue=True,
    )
    _configured = True
    logger.info("Logging configured")
