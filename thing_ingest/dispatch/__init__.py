from .dispatcher import (
    SWITCH_OFF_VALUE,
    SWITCH_ON_VALUE,
    AvailabilitySweeper,
    DispatchResult,
    Dispatcher,
)

__all__ = [
    "AvailabilitySweeper",
    "DispatchResult",
    "Dispatcher",
    "SWITCH_OFF_VALUE",
    "SWITCH_ON_VALUE",
]
