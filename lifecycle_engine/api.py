"""
REST API for the lifecycle automation engine.

Run: API_KEY=<secret> uvicorn lifecycle_engine.api:app --host 127.0.0.1 --port 8000

Engine instances live in an EngineContainer on ``app.state.container``. By
default it is built from in-memory stores with every action handler wired to
an ActionRecorder; a deployment replaces it with real collaborators before
serving.
"""

import hmac
import logging
import os
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from lifecycle_engine.conditions.base import ConditionSet
from lifecycle_engine.conditions.formula import FormulaSyntaxError, parse_formula
from lifecycle_engine.dispatch.batch import BatchRunner
from lifecycle_engine.dispatch.dispatcher import ActionDispatcher, UnknownActionTypeError
from lifecycle_engine.dispatch.handlers import ActionRecorder, HandlerRegistry, recording_registry
from lifecycle_engine.feature_flags import flags
from lifecycle_engine.fsm.immersion import ImmersionJob, Immerser
from lifecycle_engine.fsm.models import FSMVersion, UnknownTriggerTypeError
from lifecycle_engine.fsm.selector import TransitionSelector
from lifecycle_engine.fsm.stats import state_distribution
from lifecycle_engine.rules.engine import RulesEngine
from lifecycle_engine.rules.models import Rule, UnknownTriggerError
from lifecycle_engine.settings import settings
from lifecycle_engine.simulator.simulator import InvalidContextError, Simulator
from lifecycle_engine.stores.errors import (
    StateCommitConflictError,
    StateNotFoundError,
    UserNotFoundError,
    VersionNotFoundError,
)
from lifecycle_engine.stores.memory import (
    InMemoryContextProvider,
    InMemoryRuleStore,
    InMemoryStateStore,
    InMemoryVersionStore,
)
from lifecycle_engine.stores.protocols import ContextProvider, RuleStore, StateStore, VersionStore
from lifecycle_engine.user_lock import UserLockManager

logger = logging.getLogger(__name__)

API_KEY = os.environ.get("API_KEY", "change-me-in-production")

BAD_REQUEST_ERRORS = (
    UnknownTriggerError,
    UnknownTriggerTypeError,
    InvalidContextError,
    UnknownActionTypeError,
    FormulaSyntaxError,
)
NOT_FOUND_ERRORS = (UserNotFoundError, VersionNotFoundError, StateNotFoundError)


# ── Error helpers ──────────────────────────────────────

class APIError(Exception):
    """Structured API exception with HTTP status code."""

    def __init__(self, status_code: int, code: str, message: str):
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(message)


def _error_payload(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


@contextmanager
def _translated_errors(operation: str):
    """Map engine exceptions onto API errors."""
    try:
        yield
    except APIError:
        raise
    except BAD_REQUEST_ERRORS as err:
        raise APIError(400, "BAD_REQUEST", str(err)) from err
    except NOT_FOUND_ERRORS as err:
        raise APIError(404, "NOT_FOUND", str(err)) from err
    except StateCommitConflictError as err:
        raise APIError(409, "CONFLICT", str(err)) from err
    except Exception as err:
        logger.exception("Error in %s", operation)
        raise APIError(500, "INTERNAL", "Internal server error") from err


# ── Auth ──────────────────────────────────────────────

def verify_api_key(authorization: str = Header(...)):
    """Check the Bearer token."""
    if not authorization.startswith("Bearer "):
        raise APIError(401, "UNAUTHORIZED", "Missing Bearer token")
    token = authorization[7:]
    if not hmac.compare_digest(token, API_KEY):
        raise APIError(401, "UNAUTHORIZED", "Invalid API key")


# ── Container ─────────────────────────────────────────

@dataclass
class EngineContainer:
    """Stores plus the engine objects built on top of them."""
    context_provider: ContextProvider
    rule_store: RuleStore
    version_store: VersionStore
    state_store: StateStore
    handlers: HandlerRegistry
    recorder: Optional[ActionRecorder] = None
    clock: Optional[Callable[[], datetime]] = None
    dispatcher: ActionDispatcher = field(init=False)
    rules_engine: RulesEngine = field(init=False)
    lock_manager: UserLockManager = field(init=False)
    selector: TransitionSelector = field(init=False)
    immersion: ImmersionJob = field(init=False)
    simulator: Simulator = field(init=False)

    def __post_init__(self):
        # Ticks and immersion commit through the same per-user locks
        self.lock_manager = UserLockManager(settings.get_nested("fsm.commit_lock_dir"))
        self.dispatcher = ActionDispatcher(
            self.handlers,
            context_provider=self.context_provider,
            runner=BatchRunner(
                batch_size=settings.get_nested("dispatch.batch_size", 50),
                parallel=settings.get_nested("dispatch.parallel", 1),
            ),
        )
        self.rules_engine = RulesEngine(self.rule_store, self.context_provider)
        self.selector = TransitionSelector(
            self.version_store,
            self.state_store,
            self.context_provider,
            dispatcher=self.dispatcher,
            lock_manager=self.lock_manager,
            clock=self.clock,
        )
        self.immersion = ImmersionJob(
            Immerser(
                self.version_store,
                self.state_store,
                self.context_provider,
                lock_manager=self.lock_manager,
                clock=self.clock,
            ),
            BatchRunner(
                batch_size=settings.get_nested("dispatch.batch_size", 50),
                parallel=settings.get_nested("dispatch.parallel", 1),
            ),
        )
        self.simulator = Simulator(self.rules_engine)

    @classmethod
    def in_memory(
        cls,
        users: Iterable[Mapping[str, Any]] = (),
        rules: Iterable[Union[Rule, Mapping[str, Any]]] = (),
        versions: Iterable[Union[FSMVersion, Mapping[str, Any]]] = (),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "EngineContainer":
        recorder = ActionRecorder()
        return cls(
            context_provider=InMemoryContextProvider(users, clock=clock),
            rule_store=InMemoryRuleStore(rules),
            version_store=InMemoryVersionStore(versions),
            state_store=InMemoryStateStore(),
            handlers=recording_registry(recorder),
            recorder=recorder,
            clock=clock,
        )


def get_container(request: Request) -> EngineContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        container = EngineContainer.in_memory()
        request.app.state.container = container
    return container


# ── App ───────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    if API_KEY == "change-me-in-production":
        logger.warning("API_KEY is set to insecure default value")
    if getattr(app.state, "container", None) is None:
        app.state.container = EngineContainer.in_memory()
    logger.info("Engine container ready, flags: %s", sorted(flags.get_enabled_flags()))
    yield


app = FastAPI(title="Lifecycle Engine API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(APIError)
async def api_error_handler(_: Request, exc: APIError):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(exc.code, exc.message),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(_: Request, exc: RequestValidationError):
    errors = exc.errors()
    first_error = errors[0].get("msg") if errors else "Invalid request payload"
    return JSONResponse(
        status_code=400,
        content=_error_payload("BAD_REQUEST", first_error),
    )


# ── Models ────────────────────────────────────────────

class SimulateRequest(BaseModel):
    trigger: str
    context: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None
    trace: bool = False


class EvaluateRequest(BaseModel):
    trigger: str
    user_id: str
    dispatch: bool = False


class TickRequest(BaseModel):
    user_id: str
    version_id: Optional[str] = None
    event: Optional[str] = None


class BulkActionRequest(BaseModel):
    user_ids: List[str] = Field(min_length=1)
    action: str
    config: Dict[str, Any] = Field(default_factory=dict)
    conditions: Optional[Union[str, List[Dict[str, Any]]]] = None
    offset: int = Field(default=0, ge=0)
    max_batches: Optional[int] = Field(default=None, ge=1)


class ImmersionRequest(BaseModel):
    version_id: Optional[str] = None
    user_ids: Optional[List[str]] = None
    offset: int = Field(default=0, ge=0)
    max_batches: Optional[int] = Field(default=None, ge=1)


def _condition_set(conditions: Optional[Union[str, List[Dict[str, Any]]]]) -> Optional[ConditionSet]:
    if conditions is None:
        return None
    if isinstance(conditions, str):
        return parse_formula(conditions)
    try:
        return ConditionSet.from_flat(conditions)
    except (KeyError, TypeError, ValueError) as err:
        raise APIError(400, "BAD_REQUEST", f"Invalid conditions: {err}") from err


# ── Endpoints ─────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "status": "ok",
        "rules_engine": flags.rules_engine,
        "fsm_engine": flags.fsm_engine,
        "time": datetime.now(timezone.utc).isoformat(),
    }


@app.post("/api/v1/rules/simulate", dependencies=[Depends(verify_api_key)])
def simulate_rules(req: SimulateRequest, container: EngineContainer = Depends(get_container)):
    """Dry run with a synthetic context or a live user's context; never dispatches."""
    with _translated_errors("simulate"):
        if req.context is not None:
            result = container.simulator.simulate(req.trigger, req.context, trace=req.trace)
        elif req.user_id is not None:
            result = container.simulator.simulate_for_user(req.trigger, req.user_id, trace=req.trace)
        else:
            raise APIError(400, "BAD_REQUEST", "Either context or user_id is required")
        return result.to_dict()


@app.post("/api/v1/rules/evaluate", dependencies=[Depends(verify_api_key)])
def evaluate_rules(req: EvaluateRequest, container: EngineContainer = Depends(get_container)):
    """
    Matched rules for a user, highest priority first.

    With ``dispatch`` set the matches are fired through the dispatcher
    (subject to the rules_engine flag).
    """
    with _translated_errors("evaluate"):
        if req.dispatch:
            fired = container.rules_engine.fire(req.trigger, req.user_id, container.dispatcher)
            return {"user_id": req.user_id, "fired": [f.to_dict() for f in fired]}
        matches = container.rules_engine.evaluate_trigger_for_user(req.trigger, req.user_id)
        return {"user_id": req.user_id, "matched_rules": [m.to_dict() for m in matches]}


@app.post("/api/v1/fsm/tick", dependencies=[Depends(verify_api_key)])
def tick_fsm(req: TickRequest, container: EngineContainer = Depends(get_container)):
    with _translated_errors("tick"):
        committed = container.selector.tick_fsm(
            req.user_id,
            version_id=req.version_id,
            incoming_event=req.event,
        )
        return {
            "user_id": req.user_id,
            "committed": committed is not None,
            "transition": committed.to_dict() if committed is not None else None,
        }


@app.post("/api/v1/fsm/action", dependencies=[Depends(verify_api_key)])
def bulk_action(req: BulkActionRequest, container: EngineContainer = Depends(get_container)):
    """Manual bulk action from the lifecycle dashboard."""
    with _translated_errors("bulk action"):
        result = container.dispatcher.dispatch_bulk_action(
            req.user_ids,
            req.action,
            req.config,
            conditions=_condition_set(req.conditions),
            offset=req.offset,
            max_batches=req.max_batches,
        )
        return result.to_dict()


@app.post("/api/v1/fsm/immersion", dependencies=[Depends(verify_api_key)])
def immerse_users(req: ImmersionRequest, container: EngineContainer = Depends(get_container)):
    """
    Place users into the given (or active) version from their history.

    Without ``user_ids`` every user the context provider knows is immersed.
    Per-user failures are reported in ``results``; resume a paused run with
    the returned ``nextOffset``.
    """
    with _translated_errors("immersion"):
        version = container.selector.resolve_version(req.version_id)
        user_ids = req.user_ids
        if user_ids is None:
            list_users = getattr(container.context_provider, "user_ids", None)
            if list_users is None:
                raise APIError(400, "BAD_REQUEST", "user_ids is required for this context provider")
            user_ids = list_users()
        progress = container.immersion.run(
            user_ids,
            version_id=version.id,
            offset=req.offset,
            max_batches=req.max_batches,
        )
        return {
            "versionId": version.id,
            **progress.to_dict(),
            "results": [r.to_dict() for r in progress.results],
        }


@app.post("/api/v1/fsm/versions/{version_id}/activate", dependencies=[Depends(verify_api_key)])
def activate_version(version_id: str, container: EngineContainer = Depends(get_container)):
    with _translated_errors("activate"):
        version = container.version_store.activate(version_id)
        logger.info("FSM version %s activated", version.id)
        return {"id": version.id, "name": version.name, "is_active": version.is_active}


@app.get("/api/v1/fsm/stats", dependencies=[Depends(verify_api_key)])
def fsm_stats(version_id: Optional[str] = None, container: EngineContainer = Depends(get_container)):
    with _translated_errors("stats"):
        version = container.selector.resolve_version(version_id)
        return state_distribution(version, container.state_store).to_dict()
