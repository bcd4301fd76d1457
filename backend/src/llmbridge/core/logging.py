import json
import logging
import sys
from typing import Optional, Union


class JsonFormatter(logging.Formatter):
    """
    Formats log records as a JSON string.
    """
    def format(self, record):
        log_object = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_object["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_object, ensure_ascii=False)


def setup_logging(level: Optional[Union[int, str]] = None, json_output: Optional[bool] = None) -> logging.Logger:
    """
    Configures the root logger with a single stdout handler.

    Level and format default to the `log_level` / `log_json` settings.
    """
    if level is None or json_output is None:
        from .settings import get_settings
        s = get_settings()
        level = s.log_level if level is None else level
        json_output = s.log_json if json_output is None else json_output
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    # Clear existing handlers to avoid duplicates
    if root_logger.hasHandlers():
        root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # httpx 的逐请求日志过于冗长
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    return root_logger
