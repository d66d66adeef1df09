import logging
import logging.handlers
import os

from remote_bridge.env import LOG_DIR, LOG_LEVEL

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str = LOG_LEVEL, log_dir: str = LOG_DIR, filename: str = "bridge.log") -> None:
    """Log to stderr and to a file in *log_dir* that rolls over at midnight."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_error = None
    try:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(log_dir, filename), when="midnight", encoding="utf-8"
            )
        )
    except OSError as e:
        file_error = e

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    if file_error:
        logging.getLogger(__name__).warning("File logging disabled (%s): %s", log_dir, file_error)
