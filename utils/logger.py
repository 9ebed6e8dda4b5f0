"""Centralized logging with rotation, structured extras and secret redaction."""
import logging
import os
import re
from logging.handlers import RotatingFileHandler

REDACTED = "[REDACTED]"

SENSITIVE_KEY_PATTERN = re.compile(r"pass(word)?|secret|token|authorization|cookie|api[_-]?key|csrf", re.IGNORECASE)
# key=value / key: value fragments inside free-text messages
SENSITIVE_INLINE_PATTERN = re.compile(
    r"(?P<key>\b(?:password|passwd|secret|token|api[_-]?key|authorization)\b\s*[=:]\s*)(?P<value>[^\s,;&]+)",
    re.IGNORECASE,
)

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_STANDARD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def redact_value(key: str, value):
    if SENSITIVE_KEY_PATTERN.search(str(key)):
        return REDACTED
    if isinstance(value, dict):
        return {k: redact_value(k, v) for k, v in value.items()}
    if isinstance(value, str):
        return SENSITIVE_INLINE_PATTERN.sub(lambda m: f"{m.group('key')}{REDACTED}", value)
    return value


def redact_text(text: str) -> str:
    return SENSITIVE_INLINE_PATTERN.sub(lambda m: f"{m.group('key')}{REDACTED}", text)


def _extra_fields(record: logging.LogRecord) -> dict:
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS and not k.startswith("_")}


class RedactingFilter(logging.Filter):
    """Mask credentials in messages and structured extras before any handler formats them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            # Redact the merged text; placeholders such as "secret=%s" only carry the value after merging.
            record.msg = redact_text(record.getMessage() if record.args else record.msg)
            record.args = None
        for key, value in _extra_fields(record).items():
            setattr(record, key, redact_value(key, value))
        return True


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = _extra_fields(record)
        if not extras:
            return base
        rendered = " ".join(f"{key}={value!r}" for key, value in sorted(extras.items()))
        return f"{base} | {rendered}"


def init_logging(app) -> logging.Logger:
    log_dir = app.config.get("LOG_DIR") or os.path.join(app.instance_path, "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "metronix.log")

    level_name = (app.config.get("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    formatter = StructuredFormatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(module)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    redactor = RedactingFilter()

    file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(redactor)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(redactor)

    logger = logging.getLogger(app.name)
    # Repeated factory calls (tests, reloader) must not stack handlers.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.propagate = False

    # Flask's built-in logger
    app.logger.handlers = logger.handlers
    app.logger.setLevel(level)

    logger.info("Logging initialized", extra={"path": log_path})
    return logger
