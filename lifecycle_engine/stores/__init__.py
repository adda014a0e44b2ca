"""
Reference collaborators consumed by the engine.

Implementations live in ``stores.memory`` and ``stores.sqlite`` and are
imported from there; this package only exposes the contracts.
"""

from lifecycle_engine.stores.errors import (
    StoreError,
    UserNotFoundError,
    VersionNotFoundError,
    StateNotFoundError,
    StateCommitConflictError,
)
from lifecycle_engine.stores.protocols import (
    ContextProvider,
    RuleStore,
    TransitionStore,
    StateStore,
    VersionStore,
)

__all__ = [
    "StoreError",
    "UserNotFoundError",
    "VersionNotFoundError",
    "StateNotFoundError",
    "StateCommitConflictError",
    "ContextProvider",
    "RuleStore",
    "TransitionStore",
    "StateStore",
    "VersionStore",
]
