from __future__ import annotations

import json
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import sys
import time
from typing import Final


_LOGGER_NAME: Final[str] = "mergebot"
_MAX_VALUE_LEN: Final[int] = 200
_LOG_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"
# Which PR or repository a line is about is the first thing an operator greps for.
_IDENTITY_FIELDS: Final[tuple[str, ...]] = ("pr", "repo")


def configure_logging(verbose: bool, *, log_dir: Path | None = None) -> None:
    """Route `mergebot.*` loggers to stderr, and to `<log_dir>/logs/mergebot.log` if set.

    Quiet mode swallows everything so a webhook handler's stdout/stderr only
    carries the JSON response.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    if not verbose:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    formatter = logging.Formatter(_LOG_FORMAT)
    formatter.converter = time.gmtime

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_dir is not None:
        logs_dir = log_dir / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            logs_dir / "mergebot.log", when="midnight", utc=True, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.setLevel(logging.INFO)


def log_event(
    logger: logging.Logger,
    event: str,
    *,
    level: int = logging.INFO,
    error: BaseException | str | None = None,
    **fields: object,
) -> None:
    """Log `event=<name>` followed by `key=value` pairs.

    An exception passed as `error` is split into `error_type` and `error`.
    Models with a `full_name` (issues, repositories) are logged by that name.
    """
    if isinstance(error, BaseException):
        fields["error_type"] = type(error).__name__
        fields["error"] = str(error)
    elif error is not None:
        fields["error"] = error
    logger.log(level, _format_event(event, fields))


def _format_event(event: str, fields: dict[str, object]) -> str:
    keys = [key for key in _IDENTITY_FIELDS if key in fields]
    keys.extend(sorted(key for key in fields if key not in _IDENTITY_FIELDS))
    return " ".join([f"event={event}", *(f"{key}={_render(fields[key])}" for key in keys)])


def _render(value: object) -> str:
    full_name = getattr(value, "full_name", None)
    if isinstance(full_name, str):
        value = full_name

    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int | float):
        return str(value)
    if not isinstance(value, str):
        return f"<{type(value).__name__}>"

    text = " ".join(value.split())
    if not text:
        return "<empty>"
    if len(text) > _MAX_VALUE_LEN:
        text = f"{text[:_MAX_VALUE_LEN]}..."
    if " " in text or "=" in text or '"' in text:
        return json.dumps(text)
    return text
