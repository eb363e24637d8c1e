from __future__ import annotations
from collections import defaultdict
from copy import deepcopy, copy
from dataclasses import MISSING, dataclass, fields, field
from typing import Any, Dict, TYPE_CHECKING, Optional

from labsim.common import (
    ProcessName,
    ResourceCapacity,
    ResourceName,
    SimTime,
    TimeInterval,
)

if TYPE_CHECKING:
    from labsim.core import Event, SimContext


FIELD_PREFIXES_DONT_RESET = [
    "timestamp",
    "cur_",
    "capacity",
    "last_state_change_timestamp",
    "_",
]


@dataclass
class StatFrame:
    """
    Holds a snapshot of stat data for a given timestamp.
    """

    timestamp: SimTime = 0
    duration: SimTime = 0
    last_state_change_timestamp: SimTime = 0

    def update_stat(self) -> None:
        """
        Override in subclasses to handle any stat updates for the current frame.
        """
        ...

    def update_on_advance(self, prev_frame: StatFrame) -> None:
        """
        Called when advancing time from prev_frame to this frame. Subclasses
        accumulate time-weighted values from the previous frame here.
        """
        self.update_stat()

    def reset_stat(self) -> None:
        """
        Reset all statistic fields to defaults unless they match prefixes
        in FIELD_PREFIXES_DONT_RESET.
        """
        for fld in fields(self):
            if not any(
                fld.name.startswith(prefix) for prefix in FIELD_PREFIXES_DONT_RESET
            ):
                if fld.default != MISSING:
                    setattr(self, fld.name, fld.default)
                else:
                    setattr(self, fld.name, fld.default_factory())

    def set_time(self, timestamp: SimTime, duration: SimTime) -> None:
        self.timestamp = timestamp
        self.duration = duration

    def todict(self) -> Dict[str, Any]:
        """
        Return a dictionary representation of this stat frame, deeply copying
        internal mutable structures.
        """
        return {
            field.name: (
                deepcopy(getattr(self, field.name))
                if not isinstance(getattr(self, field.name), defaultdict)
                else dict(deepcopy(getattr(self, field.name)))
            )
            for field in fields(self)
            if not field.name.startswith("_")
        }


@dataclass
class Stat:
    """
    Base class responsible for stats of a given Process or Resource.
    Manages a current and a previous frame and time advancement.
    """

    _ctx: SimContext = field(repr=False)
    cur_stat_frame: StatFrame = field(default_factory=StatFrame)
    prev_stat_frame: StatFrame = field(default_factory=StatFrame)

    prev_timestamp: SimTime = 0
    cur_timestamp: SimTime = 0

    start_interval_timestamp: SimTime = 0
    cur_interval_duration: SimTime = 0

    last_state_change_timestamp: SimTime = 0

    def advance_time(self) -> None:
        """
        Advance statistics to the current simulation time. Must run before any
        state change at the new time so that time-weighted values integrate
        the state held over the elapsed interval.
        """
        if self.cur_stat_frame.duration:
            self.cur_stat_frame.update_stat()

        self.prev_timestamp, self.cur_timestamp = self.cur_timestamp, self._ctx.now
        self.cur_interval_duration += self.cur_timestamp - self.prev_timestamp

        self.prev_stat_frame = copy(self.cur_stat_frame)
        self.cur_stat_frame.set_time(self.cur_timestamp, self.cur_interval_duration)
        self.cur_stat_frame.update_on_advance(self.prev_stat_frame)

    def reset_stat(self) -> None:
        """
        Reset runtime statistics in the current frame to defaults.
        Used in periodic sample collection.
        """
        self.start_interval_timestamp = self.cur_timestamp
        self.cur_interval_duration = 0
        self.cur_stat_frame.reset_stat()

    def update_stat(self) -> None:
        if self.cur_interval_duration:
            self.cur_stat_frame.update_stat()

    def _touch(self) -> None:
        self.last_state_change_timestamp = self.cur_timestamp
        self.cur_stat_frame.last_state_change_timestamp = self.cur_timestamp

    def todict(self) -> Dict[str, Any]:
        return {
            field.name: (
                deepcopy(getattr(self, field.name))
                if not isinstance(getattr(self, field.name), StatFrame)
                else getattr(self, field.name).todict()
            )
            for field in fields(self)
            if not field.name.startswith("_")
        }


@dataclass
class ProcessStatFrame(StatFrame):
    """
    StatFrame for a Process that tracks suspension points and resumptions.
    """

    total_event_gen_count: int = 0
    total_event_exec_count: int = 0
    total_failed_count: int = 0

    avg_event_gen_rate: float = 0
    avg_event_exec_rate: float = 0

    def update_stat(self) -> None:
        if self.duration > 0:
            self.avg_event_gen_rate = self.total_event_gen_count / self.duration
            self.avg_event_exec_rate = self.total_event_exec_count / self.duration


@dataclass
class ProcessStat(Stat):
    cur_stat_frame: ProcessStatFrame = field(default_factory=ProcessStatFrame)
    prev_stat_frame: ProcessStatFrame = field(default_factory=ProcessStatFrame)

    def event_generated(self, event: Event) -> None:
        self._touch()
        self.cur_stat_frame.total_event_gen_count += 1
        if not event.ok:
            self.cur_stat_frame.total_failed_count += 1

    def event_exec(self, event: Event) -> None:
        self._touch()
        self.cur_stat_frame.total_event_exec_count += 1
        if not event.ok:
            self.cur_stat_frame.total_failed_count += 1


@dataclass
class ResourceStatFrame(StatFrame):
    """
    StatFrame for a claimable Resource. The claimed amount is integrated over
    time to give the average claim and the utilization (average claim relative
    to capacity).
    """

    capacity: ResourceCapacity = 1
    total_requested_count: int = 0
    total_granted_count: int = 0
    total_released_count: int = 0
    total_withdrawn_count: int = 0

    cur_claimed: ResourceCapacity = 0
    cur_waiting: int = 0
    max_waiting: int = 0
    integral_claimed: float = 0
    avg_claimed: float = 0
    utilization: float = 0

    def update_stat(self) -> None:
        self.max_waiting = max(self.max_waiting, self.cur_waiting)
        if self.duration > 0:
            self.avg_claimed = self.integral_claimed / self.duration
            self.utilization = self.avg_claimed / self.capacity

    def update_on_advance(self, prev_frame: ResourceStatFrame) -> None:
        self.integral_claimed += prev_frame.cur_claimed * (
            self.timestamp - prev_frame.timestamp
        )
        self.update_stat()


@dataclass
class ResourceStat(Stat):
    cur_stat_frame: ResourceStatFrame = field(default_factory=ResourceStatFrame)
    prev_stat_frame: ResourceStatFrame = field(default_factory=ResourceStatFrame)

    def set_capacity(self, capacity: ResourceCapacity) -> None:
        self.cur_stat_frame.capacity = capacity
        self.prev_stat_frame.capacity = capacity

    def requested(self, waiting: int) -> None:
        self._touch()
        self.cur_stat_frame.total_requested_count += 1
        self.cur_stat_frame.cur_waiting = waiting
        self.cur_stat_frame.max_waiting = max(self.cur_stat_frame.max_waiting, waiting)

    def granted(self, claimed: ResourceCapacity, waiting: int) -> None:
        self._touch()
        self.cur_stat_frame.total_granted_count += 1
        self.cur_stat_frame.cur_claimed = claimed
        self.cur_stat_frame.cur_waiting = waiting

    def released(self, claimed: ResourceCapacity) -> None:
        self._touch()
        self.cur_stat_frame.total_released_count += 1
        self.cur_stat_frame.cur_claimed = claimed

    def withdrawn(self, waiting: int) -> None:
        self._touch()
        self.cur_stat_frame.total_withdrawn_count += 1
        self.cur_stat_frame.cur_waiting = waiting


@dataclass
class DepletableStatFrame(StatFrame):
    """
    StatFrame for a DepletableResource: put/take counters and the level
    integrated over time.
    """

    capacity: ResourceCapacity = 0
    total_put_count: int = 0
    total_take_count: int = 0
    total_put_amount: float = 0
    total_take_amount: float = 0
    total_failed_count: int = 0

    cur_level: float = 0
    min_level: Optional[float] = None
    max_level: Optional[float] = None
    integral_level: float = 0
    avg_level: float = 0

    def observe_level(self, level: float) -> None:
        self.cur_level = level
        self.min_level = level if self.min_level is None else min(self.min_level, level)
        self.max_level = level if self.max_level is None else max(self.max_level, level)

    def update_stat(self) -> None:
        if self.duration > 0:
            self.avg_level = self.integral_level / self.duration

    def update_on_advance(self, prev_frame: DepletableStatFrame) -> None:
        self.integral_level += prev_frame.cur_level * (
            self.timestamp - prev_frame.timestamp
        )
        self.update_stat()

    def reset_stat(self) -> None:
        super().reset_stat()
        self.observe_level(self.cur_level)


@dataclass
class DepletableStat(Stat):
    cur_stat_frame: DepletableStatFrame = field(default_factory=DepletableStatFrame)
    prev_stat_frame: DepletableStatFrame = field(default_factory=DepletableStatFrame)

    def init_level(self, capacity: ResourceCapacity, level: float) -> None:
        self.cur_stat_frame.capacity = capacity
        self.cur_stat_frame.observe_level(level)

    def put_processed(self, quantity: float, level: float) -> None:
        self._touch()
        self.cur_stat_frame.total_put_count += 1
        self.cur_stat_frame.total_put_amount += quantity
        self.cur_stat_frame.observe_level(level)

    def take_processed(self, quantity: float, level: float) -> None:
        self._touch()
        self.cur_stat_frame.total_take_count += 1
        self.cur_stat_frame.total_take_amount += quantity
        self.cur_stat_frame.observe_level(level)

    def failed(self) -> None:
        self._touch()
        self.cur_stat_frame.total_failed_count += 1


@dataclass
class QueueStatFrame(StatFrame):
    """
    StatFrame for a PriorityQueue. Tracks queue length and computes the
    average length via the integral over time.
    """

    total_added_count: int = 0
    total_removed_count: int = 0
    total_rejected_count: int = 0

    cur_queue_len: int = 0
    integral_queue_sum: float = 0
    avg_queue_len: float = 0
    max_queue_len: int = 0

    def added(self) -> None:
        self.total_added_count += 1
        self.cur_queue_len += 1
        self.max_queue_len = max(self.max_queue_len, self.cur_queue_len)

    def removed(self) -> None:
        self.total_removed_count += 1
        self.cur_queue_len -= 1
        if self.cur_queue_len < 0:
            raise RuntimeError(f"cur_queue_len can't become negative. {self}")

    def update_stat(self) -> None:
        self.max_queue_len = max(self.max_queue_len, self.cur_queue_len)
        if self.duration > 0:
            self.avg_queue_len = self.integral_queue_sum / self.duration

    def update_on_advance(self, prev_frame: QueueStatFrame) -> None:
        self.integral_queue_sum += prev_frame.cur_queue_len * (
            self.timestamp - prev_frame.timestamp
        )
        self.update_stat()


@dataclass
class QueueStat(Stat):
    cur_stat_frame: QueueStatFrame = field(default_factory=QueueStatFrame)
    prev_stat_frame: QueueStatFrame = field(default_factory=QueueStatFrame)

    def added(self) -> None:
        self._touch()
        self.cur_stat_frame.added()

    def removed(self) -> None:
        self._touch()
        self.cur_stat_frame.removed()

    def rejected(self) -> None:
        self._touch()
        self.cur_stat_frame.total_rejected_count += 1


StatSamples = Dict[TimeInterval, StatFrame]


@dataclass
class SimStat(Stat):
    """
    High-level simulation statistic collector that stores process and resource
    stat snapshots keyed by collection interval.
    """

    process_stat_samples: Dict[ProcessName, StatSamples] = field(default_factory=dict)
    resource_stat_samples: Dict[ResourceName, StatSamples] = field(default_factory=dict)

    def todict(self) -> Dict[str, Any]:
        base_dict = super().todict()
        base_dict["process_stat_samples"] = {
            proc_name: {
                interval: statsample.todict()
                for interval, statsample in intervals.items()
            }
            for proc_name, intervals in self.process_stat_samples.items()
        }
        base_dict["resource_stat_samples"] = {
            res_name: {
                interval: statsample.todict()
                for interval, statsample in intervals.items()
            }
            for res_name, intervals in self.resource_stat_samples.items()
        }
        return base_dict
