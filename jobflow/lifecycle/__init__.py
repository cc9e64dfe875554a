"""
Job lifecycle module.
Contains the pure state machine and the retry/dead-letter decision logic.
"""

from jobflow.lifecycle.locks import KeyedLock
from jobflow.lifecycle.retry import (
    RetryAction,
    RetryDecision,
    RetryDecisionEngine,
    RetryPolicy,
    decide,
)
from jobflow.lifecycle.state_machine import (
    TRANSITIONS,
    Transition,
    TransitionOutcome,
    transition,
)

__all__ = [
    "KeyedLock",
    "RetryAction",
    "RetryDecision",
    "RetryDecisionEngine",
    "RetryPolicy",
    "decide",
    "TRANSITIONS",
    "Transition",
    "TransitionOutcome",
    "transition",
]
