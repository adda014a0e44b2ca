"""Action dispatch: handlers, the dispatcher and the batch runner."""

from lifecycle_engine.dispatch.handlers import (
    ActionResult,
    ActionHandler,
    ActionRecorder,
    HandlerRegistry,
    build_default_registry,
    recording_registry,
)
from lifecycle_engine.dispatch.dispatcher import (
    UnknownActionTypeError,
    ActionOutcome,
    DispatchReport,
    BulkUserResult,
    BulkDispatchResult,
    ActionDispatcher,
)
from lifecycle_engine.dispatch.batch import (
    CancellationToken,
    BatchProgress,
    BatchRunner,
)

__all__ = [
    "ActionResult",
    "ActionHandler",
    "ActionRecorder",
    "HandlerRegistry",
    "build_default_registry",
    "recording_registry",
    "UnknownActionTypeError",
    "ActionOutcome",
    "DispatchReport",
    "BulkUserResult",
    "BulkDispatchResult",
    "ActionDispatcher",
    "CancellationToken",
    "BatchProgress",
    "BatchRunner",
]
