import json
import logging
from logging.config import dictConfig

SDK_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3", "google")


def setup_logging(level: str = "INFO", *, json_output: bool = True, sdk_level: str = "WARNING") -> None:
    """Install logging for processes embedding the storage client.

    The library never calls this itself; applications and test suites opt in.
    Storage events go through ``commonblob.storage`` with structured fields in
    ``extra={"extra": {...}}``; provider SDK loggers get their own plain
    handler at ``sdk_level``.
    """
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": JsonFormatter},
                "plain": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if json_output else "plain",
                },
                "sdk_console": {
                    "class": "logging.StreamHandler",
                    "formatter": "plain",
                },
            },
            "root": {"level": level.upper(), "handlers": ["console"]},
            "loggers": {
                name: {
                    "handlers": ["sdk_console"],
                    "level": sdk_level.upper(),
                    "propagate": False,
                }
                for name in SDK_LOGGERS
            },
        }
    )


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with ``record.extra`` merged in."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)
