"""Session-tagged loggers.

Every record passing a session handler carries the session name, so a replay
log and the console show which session a state change (anchor lock, lost
tracking) came from.
"""

import logging
from typing import Optional


LOGGER_PREFIX = "pose_fusion"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(session)s] %(message)s"


class SessionNameFilter(logging.Filter):
    def __init__(self, session_name: str):
        super().__init__()
        self.session_name = session_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.session = self.session_name
        return True


def _tag(handler: logging.Handler, session_name: str) -> logging.Handler:
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(SessionNameFilter(session_name))
    return handler


def setup_logger(session_name: str, level: int = logging.INFO) -> logging.Logger:
    """Console logger ``pose_fusion.<session_name>``; repeated calls reuse it."""
    logger = logging.getLogger(f"{LOGGER_PREFIX}.{session_name}")
    logger.setLevel(level)
    if not logger.handlers:
        logger.addHandler(_tag(logging.StreamHandler(), session_name))
    return logger


def add_file_handler(logger: logging.Logger, session_name: str, log_path: str) -> logging.Handler:
    # Caller owns the handler and removes it when the session ends
    handler = _tag(logging.FileHandler(log_path, encoding="utf-8"), session_name)
    logger.addHandler(handler)
    return handler


def parse_level(name: Optional[str]) -> int:
    """Map ``"debug"``/``"INFO"``/``"20"`` to a logging level; default INFO."""
    if not name:
        return logging.INFO
    if str(name).isdigit():
        return int(name)
    level = logging.getLevelName(str(name).upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level
