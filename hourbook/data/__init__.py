from .database import Database
from .models import AggregateSnapshot, QueuedWrite, TimeEvent, WeekRange, WorkSession
from .repository import EventLogStore, KeyValueStore, SessionRepository

__all__ = [
    "Database", "AggregateSnapshot", "QueuedWrite", "TimeEvent", "WeekRange",
    "WorkSession", "EventLogStore", "KeyValueStore", "SessionRepository",
]
