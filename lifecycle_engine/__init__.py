"""
Lifecycle automation engine.

Decides which rules fire and which FSM transitions apply for a user, and
dispatches their actions. Subpackages: conditions, rules, fsm, dispatch,
simulator, stores.
"""

__version__ = "1.0.0"
