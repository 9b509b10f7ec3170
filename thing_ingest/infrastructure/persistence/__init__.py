from .sinks import SqlRelationalSink, ThrottledRelationalSink, TimescaleSink
from .sql_thing_store import SqlThingStore

__all__ = [
    "SqlRelationalSink",
    "SqlThingStore",
    "ThrottledRelationalSink",
    "TimescaleSink",
]
