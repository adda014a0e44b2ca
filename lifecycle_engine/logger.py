"""
Structured logging for the lifecycle automation engine.

JSON lines in production, readable lines in development.
Every record carries the user_id currently being processed.

Usage:
    from lifecycle_engine.logger import logger

    with logger.user_scope("u_123"):
        logger.info("Trigger received", trigger="PAYMENT_COMPLETED")
        logger.event("fsm_transition_committed", from_state="NEW", to_state="PAID_ACTIVE")
        logger.metric("rules_matched", 2, trigger="PAYMENT_COMPLETED")
"""

import json
import logging
import os
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional

from lifecycle_engine.settings import settings


# ContextVars so parallel batch workers never see each other's user
_current_user: ContextVar[Optional[str]] = ContextVar("lifecycle_user_id", default=None)
_current_fields: ContextVar[Dict[str, Any]] = ContextVar("lifecycle_log_fields", default={})

READABLE_FORMAT = "[%(asctime)s] %(levelname)s %(name)s - %(message)s"


def _json_mode() -> bool:
    return os.environ.get("LOG_FORMAT", "readable").lower() == "json"


class StructuredLogger:
    """
    Structured logger with JSON support and per-user tracing.

    - LOG_FORMAT=json: one JSON object per line
    - otherwise: "[user] message [k=v, ...]"
    - event() / metric() for business events and counters
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)
        if not self.logger.handlers:
            self._attach_handler()

    def _attach_handler(self) -> None:
        level = logging.getLevelName(str(settings.get_nested("logging.level", "INFO")).upper())
        if not isinstance(level, int):
            level = logging.INFO

        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(message)s" if _json_mode() else READABLE_FORMAT, datefmt="%H:%M:%S")
        )
        self.logger.setLevel(level)
        self.logger.addHandler(handler)
        self.logger.propagate = False

    # -- user / context binding -------------------------------------------

    @property
    def user_id(self) -> Optional[str]:
        return _current_user.get()

    def set_user(self, user_id: Optional[str]) -> None:
        _current_user.set(user_id)

    def clear_user(self) -> None:
        _current_user.set(None)

    @contextmanager
    def user_scope(self, user_id: str) -> Iterator[None]:
        """Bind user_id for the duration of a block."""
        token = _current_user.set(user_id)
        try:
            yield
        finally:
            _current_user.reset(token)

    def set_context(self, **fields: Any) -> None:
        """Extra fields added to every following record (e.g. version_id)."""
        _current_fields.set({**_current_fields.get(), **fields})

    def clear_context(self) -> None:
        _current_fields.set({})

    # -- rendering ---------------------------------------------------------

    def _format_structured(self, level: str, message: str, **fields: Any) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "logger": self.name,
            "message": message,
        }
        if self.user_id:
            record["user_id"] = self.user_id
        record.update(_current_fields.get())
        record.update(fields)
        return record

    def _render(self, level: str, message: str, fields: Dict[str, Any]) -> str:
        if _json_mode():
            return json.dumps(self._format_structured(level, message, **fields), ensure_ascii=False, default=str)
        text = message
        if fields:
            text += " [" + ", ".join(f"{k}={v}" for k, v in fields.items()) + "]"
        if self.user_id:
            text = f"[{self.user_id}] {text}"
        return text

    def _log(self, level: str, message: str, log_method: Callable[..., None], **fields: Any) -> None:
        log_method(self._render(level, message, fields))

    def debug(self, message: str, **fields: Any) -> None:
        self._log("DEBUG", message, self.logger.debug, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log("INFO", message, self.logger.info, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log("WARNING", message, self.logger.warning, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log("ERROR", message, self.logger.error, **fields)

    def exception(self, message: str, **fields: Any) -> None:
        """Error record with the active traceback (a field in JSON mode)."""
        if _json_mode():
            fields["traceback"] = traceback.format_exc()
            self.logger.error(self._render("ERROR", message, fields))
        else:
            self.logger.exception(self._render("ERROR", message, fields))

    def metric(self, name: str, value: Any, **fields: Any) -> None:
        """
        Counter or gauge for analytics.

        Example:
            logger.metric("bulk_dispatch_failures", 3, action="SEND_MESSAGE")
        """
        self._log("METRIC", name, self.logger.info, value=value, **fields)

    def event(self, event_type: str, **fields: Any) -> None:
        """
        Business event.

        Example:
            logger.event("fsm_transition_committed", from_state="NEW", to_state="ACTIVE_FREE")
        """
        self._log("EVENT", event_type, self.logger.info, **fields)


# Singleton logger
logger = StructuredLogger("lifecycle_engine")


def create_test_logger(name: str = "test") -> StructuredLogger:
    """Isolated logger for tests."""
    return StructuredLogger(f"lifecycle_engine.{name}")
