"""Health subsystem: test engine, collections, scheduler, lifecycle events."""

from .collection import Collection
from .engine import (
    ConfigurationError,
    ErrorRecord,
    IdGenerator,
    OutcomeKind,
    ProbeError,
    ProbeTimeoutError,
    Status,
    Test,
    TriggerCycle,
    TriggerOutcome,
)
from .events import EventBus, LifecycleEvent
from .scheduler import Server, StartOptions, reduce_status
from .view import StatusView
