"""
Action handlers.

One handler per action type, looked up by type string from a
HandlerRegistry. Handlers talk to external collaborators (message sender,
tag store, overlay service, event sink, credit ledger) and either return an
ActionResult or raise; the dispatcher turns exceptions into failed outcomes.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

from lifecycle_engine.logger import logger as event_logger

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    success: bool
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str) -> "ActionResult":
        return cls(success=False, error=error)


@runtime_checkable
class ActionHandler(Protocol):
    def execute(self, user_id: str, config: Mapping[str, Any]) -> ActionResult:
        ...


# =============================================================================
# COLLABORATORS
# =============================================================================

class TagStore(Protocol):
    def add_tag(self, user_id: str, tag: str) -> None: ...


class EventSink(Protocol):
    def emit(self, user_id: str, event: str, payload: Mapping[str, Any]) -> None: ...


class OverlayService(Protocol):
    def activate(self, user_id: str, overlay_type: str, params: Mapping[str, Any]) -> None: ...

    def deactivate(self, user_id: str, overlay_type: str) -> None: ...


class MessageSender(Protocol):
    def send(self, user_id: str, text: str, options: Mapping[str, Any]) -> None: ...


class CreditLedger(Protocol):
    def grant_burnable(self, user_id: str, amount: float, hours: float, reason: str) -> None: ...


class ActionRecorder:
    """
    Collaborator that records every call instead of reaching an external system.

    Implements all collaborator protocols; used by the default API container
    and in tests.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def _record(self, kind: str, user_id: str, **data: Any) -> None:
        with self._lock:
            self.calls.append((kind, str(user_id), data))

    def add_tag(self, user_id: str, tag: str) -> None:
        self._record("tag", user_id, tag=tag)

    def emit(self, user_id: str, event: str, payload: Mapping[str, Any]) -> None:
        self._record("event", user_id, event=event, payload=dict(payload))

    def activate(self, user_id: str, overlay_type: str, params: Mapping[str, Any]) -> None:
        self._record("overlay_on", user_id, overlay_type=overlay_type, params=dict(params))

    def deactivate(self, user_id: str, overlay_type: str) -> None:
        self._record("overlay_off", user_id, overlay_type=overlay_type)

    def send(self, user_id: str, text: str, options: Mapping[str, Any]) -> None:
        self._record("message", user_id, text=text, options=dict(options))

    def grant_burnable(self, user_id: str, amount: float, hours: float, reason: str) -> None:
        self._record("bonus", user_id, amount=amount, hours=hours, reason=reason)

    def calls_for(self, user_id: str) -> List[Tuple[str, str, Dict[str, Any]]]:
        with self._lock:
            return [c for c in self.calls if c[1] == str(user_id)]


# =============================================================================
# HANDLERS
# =============================================================================

class NoOpHandler:
    def execute(self, user_id: str, config: Mapping[str, Any]) -> ActionResult:
        return ActionResult.ok()


class LogEventHandler:
    """Writes the action config as a structured ``rule_action_logged`` event."""

    def execute(self, user_id: str, config: Mapping[str, Any]) -> ActionResult:
        event_logger.event("rule_action_logged", target_user=str(user_id), config=dict(config))
        return ActionResult.ok()


class TagUserHandler:
    def __init__(self, tag_store: TagStore):
        self.tag_store = tag_store

    def execute(self, user_id: str, config: Mapping[str, Any]) -> ActionResult:
        tag = str(config.get("tag") or "").strip()
        if not tag:
            return ActionResult.failed("TAG_USER requires a non-empty 'tag'")
        self.tag_store.add_tag(user_id, tag)
        return ActionResult.ok(tag=tag)


class EmitEventHandler:
    def __init__(self, event_sink: EventSink):
        self.event_sink = event_sink

    def execute(self, user_id: str, config: Mapping[str, Any]) -> ActionResult:
        event = str(config.get("event") or "").strip()
        if not event:
            return ActionResult.failed("EMIT_EVENT requires 'event'")
        payload = config.get("payload") or {}
        if not isinstance(payload, Mapping):
            return ActionResult.failed("EMIT_EVENT 'payload' must be an object")
        self.event_sink.emit(user_id, event, payload)
        return ActionResult.ok(event=event)


class OverlayHandler:
    """ACTIVATE_OVERLAY / DEACTIVATE_OVERLAY; ``type`` defaults to TRIPWIRE."""

    def __init__(self, overlays: OverlayService, activate: bool = True):
        self.overlays = overlays
        self.activate = activate

    def execute(self, user_id: str, config: Mapping[str, Any]) -> ActionResult:
        overlay_type = str(config.get("type") or "TRIPWIRE").upper()
        if self.activate:
            params = {k: v for k, v in config.items() if k != "type"}
            self.overlays.activate(user_id, overlay_type, params)
        else:
            self.overlays.deactivate(user_id, overlay_type)
        return ActionResult.ok(overlay_type=overlay_type)


class SendMessageHandler:
    """SEND_MESSAGE and SEND_SPECIAL_OFFER."""

    def __init__(self, sender: MessageSender, special_offer: bool = False):
        self.sender = sender
        self.special_offer = special_offer

    def execute(self, user_id: str, config: Mapping[str, Any]) -> ActionResult:
        text = config.get("text") or config.get("message") or ""
        options = {k: v for k, v in config.items() if k not in ("text", "message")}
        if self.special_offer:
            options.setdefault("kind", "special_offer")
        elif not text:
            return ActionResult.failed("SEND_MESSAGE requires 'text'")
        self.sender.send(user_id, str(text), options)
        return ActionResult.ok()


class GrantBurnableBonusHandler:
    """Credits that burn after ``hours`` (default 24)."""

    def __init__(self, ledger: CreditLedger):
        self.ledger = ledger

    def execute(self, user_id: str, config: Mapping[str, Any]) -> ActionResult:
        try:
            amount = float(config.get("amount"))
            hours = float(config.get("hours") or 24)
        except (TypeError, ValueError):
            return ActionResult.failed("GRANT_BURNABLE_BONUS requires numeric 'amount'")
        if amount <= 0:
            return ActionResult.failed("GRANT_BURNABLE_BONUS 'amount' must be positive")
        self.ledger.grant_burnable(user_id, amount, hours, str(config.get("reason") or ""))
        return ActionResult.ok(amount=amount, hours=hours)


# =============================================================================
# REGISTRY
# =============================================================================

class HandlerRegistry:
    """Maps action type strings to handlers."""

    def __init__(self):
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, action_type: str, handler: ActionHandler) -> None:
        key = action_type.strip().upper()
        if key in self._handlers:
            logger.debug("Replacing handler for %s", key)
        self._handlers[key] = handler

    def get(self, action_type: str) -> Optional[ActionHandler]:
        return self._handlers.get(str(action_type).strip().upper())

    def has(self, action_type: str) -> bool:
        return self.get(action_type) is not None

    def types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, action_type: str) -> bool:
        return self.has(action_type)

    def __len__(self) -> int:
        return len(self._handlers)


def build_default_registry(
    tag_store: Optional[TagStore] = None,
    event_sink: Optional[EventSink] = None,
    overlays: Optional[OverlayService] = None,
    sender: Optional[MessageSender] = None,
    ledger: Optional[CreditLedger] = None,
) -> HandlerRegistry:
    """
    Registry with the built-in handlers.

    Handlers that need a collaborator are registered only when it is given.
    """
    registry = HandlerRegistry()
    registry.register("NO_OP", NoOpHandler())
    registry.register("NO_ACTION", NoOpHandler())
    registry.register("LOG_EVENT", LogEventHandler())
    if tag_store is not None:
        registry.register("TAG_USER", TagUserHandler(tag_store))
    if event_sink is not None:
        registry.register("EMIT_EVENT", EmitEventHandler(event_sink))
    if overlays is not None:
        registry.register("ACTIVATE_OVERLAY", OverlayHandler(overlays, activate=True))
        registry.register("DEACTIVATE_OVERLAY", OverlayHandler(overlays, activate=False))
    if sender is not None:
        registry.register("SEND_MESSAGE", SendMessageHandler(sender))
        registry.register("SEND_SPECIAL_OFFER", SendMessageHandler(sender, special_offer=True))
    if ledger is not None:
        registry.register("GRANT_BURNABLE_BONUS", GrantBurnableBonusHandler(ledger))
    return registry


def recording_registry(recorder: Optional[ActionRecorder] = None) -> HandlerRegistry:
    """Every built-in handler wired to one ActionRecorder."""
    recorder = recorder or ActionRecorder()
    return build_default_registry(
        tag_store=recorder,
        event_sink=recorder,
        overlays=recorder,
        sender=recorder,
        ledger=recorder,
    )


__all__ = [
    "ActionResult",
    "ActionHandler",
    "ActionRecorder",
    "NoOpHandler",
    "LogEventHandler",
    "TagUserHandler",
    "EmitEventHandler",
    "OverlayHandler",
    "SendMessageHandler",
    "GrantBurnableBonusHandler",
    "HandlerRegistry",
    "build_default_registry",
    "recording_registry",
]
