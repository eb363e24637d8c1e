from enum import IntEnum
from typing import Tuple, Union


SimTime = Union[int, float]
EventPriority = int
EventID = int
ProcessID = int
ProcessName = str
ResourceID = int
ResourceName = str
ResourceCapacity = Union[int, float]
TimeInterval = Tuple[SimTime, SimTime]

# Timeline ordering of events sharing the same time (lower runs first).
STOP_PRIORITY: EventPriority = 2
COLLECT_STAT_PRIORITY: EventPriority = 1
GRANT_PRIORITY: EventPriority = 9
ACTIVATE_PRIORITY: EventPriority = 10
HOLD_PRIORITY: EventPriority = 11

# Levels closer than this are considered equal when comparing quantities.
QUANTITY_EPS = 1e-9


class Priority(IntEnum):
    """
    Urgency of a resource request or a queued item.

    Lower values are more urgent: CRITICAL is served before IMPORTANT,
    IMPORTANT before NORMAL.
    """

    CRITICAL = 0
    IMPORTANT = 1
    NORMAL = 2


class SimulationError(RuntimeError):
    """
    Raised when the scheduler or a resource is used in a way that would corrupt
    the simulation state (e.g. resuming a process with the wrong event,
    releasing more than was claimed, scheduling into the past).
    """
