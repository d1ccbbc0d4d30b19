"""Logging setup for the engine process."""

import logging
import os
import time
from logging.handlers import TimedRotatingFileHandler

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

# Libraries that log every request at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class SizeAndTimeRotatingHandler(TimedRotatingFileHandler):
    """Rotates at midnight, or earlier once the file reaches max_bytes."""

    def __init__(self, filename, max_bytes, backup_count=0, **kwargs):
        self.max_bytes = max_bytes
        super().__init__(filename, backupCount=backup_count, **kwargs)

    def _file_too_large(self) -> bool:
        if self.max_bytes <= 0 or self.stream is None:
            return False
        self.stream.seek(0, os.SEEK_END)
        return self.stream.tell() >= self.max_bytes

    def shouldRollover(self, record):
        return int(time.time()) >= self.rolloverAt or self._file_too_large()

    def doRollover(self):
        super().doRollover()
        # A size-triggered rollover must not push the next midnight rollover out
        self.rolloverAt = self.computeRollover(int(time.time()))


def configure_logging(
    log_dir: str = "logs",
    log_file: str = "engine.log",
    level: int | str = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 7,
    console: bool = True,
) -> logging.Logger:
    """Install console and rotating file handlers on the root logger.

    Args:
        log_dir: Directory for log files, created if missing.
        log_file: Log file name.
        level: Level as a logging constant or a name such as "debug".
        max_bytes: File size that forces an early rotation.
        backup_count: Rotated files to keep.
        console: Whether to also log to stderr.

    Returns:
        The root logger.
    """
    if isinstance(level, str):
        name = level
        level = logging.getLevelName(name.upper())
        if not isinstance(level, int):
            raise ValueError(f"unknown log level: {name}")

    os.makedirs(log_dir, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    file_handler = SizeAndTimeRotatingHandler(
        filename=os.path.join(log_dir, log_file),
        when="midnight",
        interval=1,
        max_bytes=max_bytes,
        backup_count=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    if level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    return root
