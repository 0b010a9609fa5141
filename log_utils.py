import logging
from logging.handlers import RotatingFileHandler
import os

# Resolved once at import; tests may monkeypatch ``LOG_FILE`` before calling
# :func:`setup_logger` for a fresh logger name.
LOG_FILE = os.getenv("LOG_FILE", os.path.join("logs", "signal_worker.log"))

_NOISY_FRAGMENTS = (
    "Resetting dropped connection",
    "Starting new HTTPS connection",
)


class _NoiseFilter(logging.Filter):
    """Drop connection-pool chatter that floods the log during cascades."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except Exception:
            return True
        return not any(fragment in message for fragment in _NOISY_FRAGMENTS)


_NOISE_FILTER = _NoiseFilter()


def setup_logger(name: str) -> logging.Logger:
    """Configure and return a module-level logger.

    Logs are written to both console and a rotating file to persist
    information for debugging. Subsequent calls with the same name
    return the already configured logger.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_NOISE_FILTER)
    logger.addHandler(console_handler)
    try:
        directory = os.path.dirname(LOG_FILE)
        if directory:
            os.makedirs(directory, exist_ok=True)
        # Rotating file handler keeps last 5 logs of ~1MB each
        file_handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5)
    except OSError:
        logger.warning("Log file %s unavailable; logging to console only", LOG_FILE)
    else:
        file_handler.setFormatter(formatter)
        file_handler.addFilter(_NOISE_FILTER)
        logger.addHandler(file_handler)
    return logger


def read_logs(tail: int = 100) -> str:
    """Return the last ``tail`` lines from the log file.

    Used by the status view of the chat layer to show recent worker
    activity.  If the log file does not exist, an empty string is returned.
    """
    if not os.path.exists(LOG_FILE):
        return ""
    with open(LOG_FILE, "r") as f:
        lines = f.readlines()
    if tail <= 0:
        return "".join(lines)
    return "".join(lines[-tail:])
