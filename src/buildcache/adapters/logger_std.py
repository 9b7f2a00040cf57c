"""Standard logging adapter."""

import json
import logging
import sys
from typing import Any


class StdLoggerAdapter:
    """Standard Python logger implementation of LoggerPort.

    Keyword arguments are rendered as a JSON object after the message so the
    records stay greppable in build logs.
    """

    def __init__(self, name: str = "buildcache", level: str = "INFO"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper(), logging.INFO))

        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, **kwargs)

    def log_operation(
        self,
        op: str,
        key: str,
        scope: str,
        sizes: dict[str, int],
        durations: dict[str, float],
        **kwargs: Any,
    ) -> None:
        """Log a completed operation as a single structured record."""
        data = {
            "op": op,
            "key": key,
            "scope": scope,
            "sizes": sizes,
            "durations": durations,
            **kwargs,
        }
        self.info(f"Operation: {op}", **data)

    def _log(self, level: int, message: str, **kwargs: Any) -> None:
        if kwargs:
            message = f"{message} - {json.dumps(kwargs, default=str)}"
        self.logger.log(level, message)
