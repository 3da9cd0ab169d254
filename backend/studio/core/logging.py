"""Logging configuration for the backend."""
import logging
import sys
from studio.core.config import settings


def setup_logging() -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
    # httpx logs every proxied request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)
