import logging
import logging.config
import re
from typing import Any

PII_PATTERNS = [
    re.compile(r"(?i)((?:otp|code)(?:\s+is)?\s*[=:]?\s*)(\d{6})\b"),
    re.compile(r"(?:\+|\b)(?:91[-\s]?)?[6-9]\d{4}[-\s]?\d{5}\b"),
    re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
]


class PIISafeFilter(logging.Filter):
    def _sanitize(self, value: object) -> object:
        if not isinstance(value, str):
            return value

        redacted = value
        for pattern in PII_PATTERNS:
            if pattern.groups:
                redacted = pattern.sub(r"\1[REDACTED]", redacted)
            else:
                redacted = pattern.sub("[REDACTED]", redacted)
        return redacted

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self._sanitize(record.msg)

        if isinstance(record.args, tuple):
            record.args = tuple(self._sanitize(item) for item in record.args)
        elif isinstance(record.args, dict):
            record.args = {key: self._sanitize(value) for key, value in record.args.items()}

        return True


class ContextAdapter(logging.LoggerAdapter):
    """Append bound ``key=value`` context to every message."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = kwargs.pop("context", None) or {}
        context = {**self.extra, **extra}
        if not context:
            return msg, kwargs
        rendered = " ".join(f"{key}={value}" for key, value in context.items() if value is not None)
        return f"{msg} [{rendered}]", kwargs


def bind_logger(logger: logging.Logger, **context: Any) -> ContextAdapter:
    """Return *logger* wrapped so every entry carries *context*.

    Per-call context is passed with ``context={...}``::

        log = bind_logger(logger, function="onAttendanceSubmit", institute_id=iid)
        log.info("Records empty, retrying", context={"retry_delay_s": 0.5})
    """
    return ContextAdapter(logger, context)


def setup_logging() -> None:
    from app.core.settings import get_settings

    settings = get_settings()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "pii_safe": {
                    "()": "app.core.logging.PIISafeFilter",
                }
            },
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["pii_safe"],
                }
            },
            "loggers": {
                "": {
                    "handlers": ["console"],
                    "level": settings.log_level.upper(),
                },
                "uvicorn.access": {
                    "handlers": ["console"],
                    "level": "WARNING",
                    "propagate": False,
                },
                "twilio.http_client": {
                    "handlers": ["console"],
                    "level": "WARNING",
                    "propagate": False,
                },
            },
        }
    )
