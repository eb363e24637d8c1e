from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from bisect import insort
from enum import IntEnum
from heapq import heapify, heappop, heappush
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Iterator,
    List,
    Optional,
    Tuple,
    TypeVar,
)

from labsim.common import (
    GRANT_PRIORITY,
    QUANTITY_EPS,
    EventID,
    Priority,
    ProcessID,
    ResourceCapacity,
    ResourceID,
    ResourceName,
    SimTime,
    SimulationError,
)
from labsim.core import Event, Process, ProcessStatus, SimContext, StatCallback
from labsim.stat import DepletableStat, QueueStat, ResourceStat


LOG_FMT = "%(levelname)s - %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FMT)
logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdmissionPolicy(IntEnum):
    """
    What a put/take does when it cannot be applied right away.

    - FAIL: resolve immediately as failed, leaving the level unchanged
    - SCHEDULE: suspend the caller until the operation can be applied
    """

    FAIL = 1
    SCHEDULE = 2


class ResourceEvent(Event):
    """
    Base for events that go through a resource's admission logic. The
    yielding process receives True if the operation was applied.
    """

    suspend_status = ProcessStatus.SUSPENDED_REQUEST

    def __init__(
        self,
        ctx: SimContext,
        resource: BaseResource,
        process: Optional[Process],
        quantity: ResourceCapacity = 1,
        priority: Priority = Priority.NORMAL,
    ):
        super().__init__(ctx, priority=GRANT_PRIORITY, process=process)
        self.resource: BaseResource = resource
        self.quantity: ResourceCapacity = quantity
        self.urgency: Priority = priority
        self.withdrawn: bool = False
        self._func = lambda event: event.ok

    def sort_key(self) -> Tuple[Priority, EventID]:
        return self.urgency, self.event_id

    def __repr__(self) -> str:
        type_name = type(self).__name__
        process_name = self.process.name if self.process else None
        return (
            f"{type_name}(resource={self.resource.name}, quantity={self.quantity}, "
            f"urgency={self.urgency.name}, event_id={self.event_id}, proc={process_name})"
        )

    def withdraw(self) -> None:
        self.resource.withdraw(self)


class Request(ResourceEvent):
    """
    Claim `quantity` units of a Resource.
    """


class Put(ResourceEvent):
    """
    Add `quantity` to a DepletableResource.
    """


class Take(ResourceEvent):
    """
    Remove `quantity` from a DepletableResource.
    """


class QueuePut(ResourceEvent):
    """
    Insert an item into a PriorityQueue, waiting for free space if it is full.
    """

    def __init__(
        self,
        ctx: SimContext,
        resource: PriorityQueue,
        process: Optional[Process],
        item: Any,
        priority: Priority = Priority.NORMAL,
    ):
        super().__init__(ctx, resource, process, priority=priority)
        self.item: Any = item


class QueueGet(ResourceEvent):
    """
    Pop the most urgent item of a PriorityQueue, waiting for one if it is empty.
    The yielding process receives the item.
    """

    def __init__(
        self, ctx: SimContext, resource: PriorityQueue, process: Optional[Process]
    ):
        super().__init__(ctx, resource, process)
        self.item: Any = None
        self._func = lambda event: event.item


class BaseResource(ABC):
    """
    Abstract base class for a resource entity in the simulation.

    Operations that cannot be admitted right away wait in `_waiting`. After
    every state change the wait list is re-examined and admitted events are
    resolved, which schedules their processes at the current time.
    """

    def __init__(
        self,
        ctx: SimContext,
        capacity: Optional[ResourceCapacity] = None,
        name: Optional[ResourceName] = None,
    ):
        if capacity is not None and capacity <= 0:
            raise SimulationError(f"Resource capacity must be positive, got {capacity}")
        self.ctx = ctx
        self._capacity: Optional[ResourceCapacity] = capacity
        self.res_id: ResourceID = ctx.get_next_resource_id()
        self.name: str = name if name else f"{type(self).__name__}_{self.res_id}"
        self._waiting: List[ResourceEvent] = []
        self.stat_callbacks: List[StatCallback] = []
        self.ctx.add_resource(self)

    def __repr__(self) -> str:
        return f"{self.name}(res_id={self.res_id}, capacity={self._capacity})"

    @property
    def capacity(self) -> Optional[ResourceCapacity]:
        return self._capacity

    @property
    def waiting(self) -> List[ResourceEvent]:
        return list(self._waiting)

    def extend_name(self, extension: str, prepend: bool = False) -> None:
        if prepend:
            self.name = extension + self.name
        else:
            self.name = self.name + extension

    @abstractmethod
    def _admission_check(self, event: ResourceEvent) -> bool:
        """
        Define when an event can be applied given the current resource state.
        """
        raise NotImplementedError("Subclasses must implement _admission_check.")

    @abstractmethod
    def _apply(self, event: ResourceEvent) -> None:
        """
        Apply an admitted event to the resource state.
        """
        raise NotImplementedError("Subclasses must implement _apply.")

    def _can_bypass(self, event: ResourceEvent) -> bool:
        """
        Whether a new event may be applied ahead of those already waiting.
        """
        return not self._waiting

    def _enqueue(self, event: ResourceEvent) -> None:
        self._waiting.append(event)

    def _on_fail(self, event: ResourceEvent) -> None:
        ...

    def _add(
        self, event: ResourceEvent, policy: AdmissionPolicy = AdmissionPolicy.SCHEDULE
    ) -> None:
        # FAIL never waits, so it is not ordered behind waiting events.
        bypass = policy == AdmissionPolicy.FAIL or self._can_bypass(event)
        if bypass and self._admission_check(event):
            self._apply(event)
            event.resolve_now()
            self._trigger()
        elif policy == AdmissionPolicy.FAIL:
            self._on_fail(event)
            event.resolve_now(ok=False)
        else:
            self._enqueue(event)
            logger.debug("%s waits on %s at %s", event, self.name, self.ctx.now)

    def _grant(self, event: ResourceEvent) -> None:
        self._waiting.remove(event)
        self._apply(event)
        event.resolve()

    def _trigger(self) -> None:
        """
        Admit waiting events in wait-list order until no more can be applied.
        A successful admission may enable an earlier-rejected one, so the scan
        restarts after each grant.
        """
        progress = True
        while progress:
            progress = False
            for event in self._waiting:
                if self._admission_check(event):
                    self._grant(event)
                    progress = True
                    break

    def withdraw(self, event: ResourceEvent) -> None:
        """
        Remove a waiting event (its process was interrupted or cancelled).
        """
        if event in self._waiting:
            self._waiting.remove(event)
            event.withdrawn = True
            self._on_withdraw(event)
            self._trigger()

    def _on_withdraw(self, event: ResourceEvent) -> None:
        ...

    def exec_stat_callbacks(self) -> None:
        for stat_callback in self.stat_callbacks:
            stat_callback()

    def add_stat_callback(self, callback: StatCallback) -> None:
        self.stat_callbacks.append(callback)


class Resource(BaseResource):
    """
    A resource with a fixed capacity that processes claim and release.

    Waiting requests are ordered by (urgency, arrival). A new request is granted
    immediately only if it fits and nobody more (or equally) urgent is waiting.
    Releasing capacity grants waiters from the head of the list while they fit;
    a request that does not fit blocks those behind it.
    """

    def __init__(
        self,
        ctx: SimContext,
        capacity: ResourceCapacity = 1,
        name: Optional[ResourceName] = None,
    ):
        super().__init__(ctx, capacity, name)
        self._claimed: ResourceCapacity = 0
        self._claims: Dict[ProcessID, ResourceCapacity] = {}
        self.stat = ResourceStat(ctx)
        self.stat.set_capacity(capacity)
        self.add_stat_callback(self.stat.advance_time)

    @property
    def claimed(self) -> ResourceCapacity:
        return self._claimed

    @property
    def available(self) -> ResourceCapacity:
        return self._capacity - self._claimed

    def claimed_by(self, process: Process) -> ResourceCapacity:
        return self._claims.get(process.proc_id, 0)

    def _admission_check(self, event: Request) -> bool:
        return self._claimed + event.quantity <= self._capacity + QUANTITY_EPS

    def _can_bypass(self, event: Request) -> bool:
        if not self._waiting:
            return True
        return event.urgency < self._waiting[0].urgency

    def _enqueue(self, event: Request) -> None:
        insort(self._waiting, event, key=ResourceEvent.sort_key)

    def _apply(self, event: Request) -> None:
        self._claimed += event.quantity
        if event.process is not None:
            proc_id = event.process.proc_id
            self._claims[proc_id] = self._claims.get(proc_id, 0) + event.quantity
        self.stat.granted(self._claimed, len(self._waiting))
        logger.debug("%s granted to %s at %s", self.name, event.process, self.ctx.now)

    def _trigger(self) -> None:
        while self._waiting and self._admission_check(self._waiting[0]):
            self._grant(self._waiting[0])

    def _on_withdraw(self, event: Request) -> None:
        self.stat.withdrawn(len(self._waiting))

    def request(
        self,
        quantity: ResourceCapacity = 1,
        priority: Priority = Priority.NORMAL,
        process: Optional[Process] = None,
    ) -> Request:
        """
        Create a Request event. Yielding it suspends the process until the
        claim is granted; the process resumes with the quantity already claimed.
        """
        if quantity <= 0 or quantity > self._capacity:
            raise SimulationError(
                f"Cannot request {quantity} of {self.name} with capacity {self._capacity}"
            )
        process = process if process is not None else self.ctx.active_process
        request = Request(self.ctx, self, process, quantity=quantity, priority=priority)
        self._add(request)
        self.stat.requested(len(self._waiting))
        return request

    def release(
        self,
        quantity: Optional[ResourceCapacity] = None,
        process: Optional[Process] = None,
    ) -> None:
        """
        Release `quantity` (everything the process holds by default) and grant
        waiters that now fit. This is not a suspension point.

        Raises:
            SimulationError: If the process releases more than it holds.
        """
        process = process if process is not None else self.ctx.active_process
        if process is None:
            raise SimulationError(f"No process to release {self.name} for")
        held = self._claims.get(process.proc_id, 0)
        if quantity is None:
            quantity = held
        if held <= 0 or quantity > held + QUANTITY_EPS:
            raise SimulationError(
                f"{process} releases {quantity} of {self.name} but holds {held}"
            )
        remaining = held - quantity
        if remaining > QUANTITY_EPS:
            self._claims[process.proc_id] = remaining
        else:
            del self._claims[process.proc_id]
        self._claimed = max(0, self._claimed - quantity)
        self.stat.released(self._claimed)
        logger.debug("%s released by %s at %s", self.name, process, self.ctx.now)
        self._trigger()


LevelCallback = Callable[["DepletableResource", float], None]


class DepletableResource(BaseResource):
    """
    A quantity store with 0 <= level <= capacity, e.g. a reagent bottle or a
    waste container. Each put/take carries an admission policy; under FAIL an
    unsatisfiable operation fails on the spot, under SCHEDULE it waits.
    """

    def __init__(
        self,
        ctx: SimContext,
        capacity: ResourceCapacity,
        level: Optional[float] = None,
        name: Optional[ResourceName] = None,
        policy: AdmissionPolicy = AdmissionPolicy.SCHEDULE,
    ):
        super().__init__(ctx, capacity, name)
        level = capacity if level is None else level
        if not 0 <= level <= capacity:
            raise SimulationError(
                f"Initial level {level} of {self.name} outside [0, {capacity}]"
            )
        self._level: float = level
        self.policy: AdmissionPolicy = policy
        self.level_callbacks: List[LevelCallback] = []
        self.stat = DepletableStat(ctx)
        self.stat.init_level(capacity, level)
        self.add_stat_callback(self.stat.advance_time)

    def __repr__(self) -> str:
        return f"{self.name}(res_id={self.res_id}, level={self._level}, capacity={self._capacity})"

    @property
    def level(self) -> float:
        return self._level

    @property
    def fill_pct(self) -> float:
        return self._level / self._capacity * 100

    @property
    def shortfall(self) -> float:
        return self._capacity - self._level

    @property
    def is_full(self) -> bool:
        return self._capacity - self._level <= QUANTITY_EPS

    @property
    def is_empty(self) -> bool:
        return self._level <= QUANTITY_EPS

    def add_level_callback(self, callback: LevelCallback) -> None:
        self.level_callbacks.append(callback)

    def _admission_check(self, event: ResourceEvent) -> bool:
        if isinstance(event, Put):
            return self._level + event.quantity <= self._capacity + QUANTITY_EPS
        return self._level - event.quantity >= -QUANTITY_EPS

    def _can_bypass(self, event: ResourceEvent) -> bool:
        return not any(type(waiting) is type(event) for waiting in self._waiting)

    def _apply(self, event: ResourceEvent) -> None:
        if isinstance(event, Put):
            self._level = min(self._capacity, self._level + event.quantity)
            self.stat.put_processed(event.quantity, self._level)
        else:
            self._level = max(0.0, self._level - event.quantity)
            self.stat.take_processed(event.quantity, self._level)
        for callback in self.level_callbacks:
            callback(self, self._level)

    def _on_fail(self, event: ResourceEvent) -> None:
        self.stat.failed()
        logger.debug(
            "%s failed on %s at level %s", event, self.name, self._level
        )

    def _check_quantity(self, quantity: float) -> None:
        if quantity < 0 or quantity > self._capacity + QUANTITY_EPS:
            raise SimulationError(
                f"Quantity {quantity} outside [0, {self._capacity}] for {self.name}"
            )

    def put(
        self,
        quantity: float,
        policy: Optional[AdmissionPolicy] = None,
        process: Optional[Process] = None,
    ) -> Put:
        self._check_quantity(quantity)
        process = process if process is not None else self.ctx.active_process
        event = Put(self.ctx, self, process, quantity=quantity)
        self._add(event, self.policy if policy is None else policy)
        return event

    def take(
        self,
        quantity: float,
        policy: Optional[AdmissionPolicy] = None,
        process: Optional[Process] = None,
    ) -> Take:
        self._check_quantity(quantity)
        process = process if process is not None else self.ctx.active_process
        event = Take(self.ctx, self, process, quantity=quantity)
        self._add(event, self.policy if policy is None else policy)
        return event


LengthCallback = Callable[["PriorityQueue", int], None]
QueueEntry = Tuple[Priority, SimTime, int, Any]


class PriorityQueue(BaseResource):
    """
    A bounded queue of items ordered by (priority, enqueue time). Ties on both
    keep insertion order.

    `add`/`poll` are synchronous; `put`/`get` return events that suspend the
    yielding process while the queue is full or empty respectively.
    """

    def __init__(
        self,
        ctx: SimContext,
        capacity: Optional[int] = None,
        name: Optional[ResourceName] = None,
    ):
        super().__init__(ctx, capacity, name)
        self._heap: List[QueueEntry] = []
        self._next_entry: int = 0
        self.length_callbacks: List[LengthCallback] = []
        self.stat = QueueStat(ctx)
        self.add_stat_callback(self.stat.advance_time)

    def __len__(self) -> int:
        return len(self._heap)

    def __iter__(self) -> Iterator[Any]:
        return (entry[-1] for entry in sorted(self._heap, key=lambda e: e[:3]))

    def __contains__(self, item: Any) -> bool:
        return any(entry[-1] is item for entry in self._heap)

    @property
    def is_full(self) -> bool:
        return self._capacity is not None and len(self._heap) >= self._capacity

    @property
    def is_empty(self) -> bool:
        return not self._heap

    def add_length_callback(self, callback: LengthCallback) -> None:
        self.length_callbacks.append(callback)

    def _notify_length(self) -> None:
        for callback in self.length_callbacks:
            callback(self, len(self._heap))

    def _push(self, item: Any, priority: Priority) -> None:
        heappush(self._heap, (priority, self.ctx.now, self._next_entry, item))
        self._next_entry += 1
        self.stat.added()
        self._notify_length()

    def _pop(self) -> Any:
        item = heappop(self._heap)[-1]
        self.stat.removed()
        self._notify_length()
        return item

    def add(
        self, item: Any, priority: Priority = Priority.NORMAL, ignore_capacity: bool = False
    ) -> bool:
        """
        Enqueue an item. Returns False (and counts a rejection) if the queue is
        full, unless `ignore_capacity` is set.
        """
        if self.is_full and not ignore_capacity:
            self.stat.rejected()
            return False
        self._push(item, priority)
        self._trigger()
        return True

    def poll(self) -> Optional[Any]:
        """
        Remove and return the most urgent item, or None if the queue is empty.
        """
        if not self._heap:
            return None
        item = self._pop()
        self._trigger()
        return item

    def peek(self) -> Optional[Any]:
        if not self._heap:
            return None
        return min(self._heap, key=lambda e: e[:3])[-1]

    def remove(self, item: Any) -> bool:
        for idx, entry in enumerate(self._heap):
            if entry[-1] is item:
                self._heap.pop(idx)
                heapify(self._heap)
                self.stat.removed()
                self._notify_length()
                self._trigger()
                return True
        return False

    def _admission_check(self, event: ResourceEvent) -> bool:
        if isinstance(event, QueuePut):
            return not self.is_full
        return bool(self._heap)

    def _can_bypass(self, event: ResourceEvent) -> bool:
        return not any(type(waiting) is type(event) for waiting in self._waiting)

    def _apply(self, event: ResourceEvent) -> None:
        if isinstance(event, QueuePut):
            self._push(event.item, event.urgency)
        else:
            event.item = self._pop()

    def put(
        self,
        item: Any,
        priority: Priority = Priority.NORMAL,
        process: Optional[Process] = None,
    ) -> QueuePut:
        process = process if process is not None else self.ctx.active_process
        event = QueuePut(self.ctx, self, process, item, priority=priority)
        self._add(event)
        return event

    def get(self, process: Optional[Process] = None) -> QueueGet:
        process = process if process is not None else self.ctx.active_process
        event = QueueGet(self.ctx, self, process)
        self._add(event)
        return event


StateCallback = Callable[["State[Any]", Any, Any], None]


class State(Generic[T]):
    """
    An observable value. Every assignment, including one that does not change
    the value, notifies the subscribers synchronously with (state, old, new)
    and is appended to the history.
    """

    def __init__(self, ctx: SimContext, value: T, name: Optional[str] = None):
        self.ctx = ctx
        self.name: str = name if name else type(self).__name__
        self._value: T = value
        self._subscribers: List[StateCallback] = []
        self.history: List[Tuple[SimTime, T]] = [(ctx.now, value)]

    def __repr__(self) -> str:
        return f"{self.name}(value={self._value!r})"

    @property
    def value(self) -> T:
        return self._value

    @value.setter
    def value(self, value: T) -> None:
        self.set(value)

    def set(self, value: T) -> None:
        old_value, self._value = self._value, value
        self.history.append((self.ctx.now, value))
        for callback in list(self._subscribers):
            callback(self, old_value, value)

    def subscribe(self, callback: StateCallback) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: StateCallback) -> None:
        self._subscribers.remove(callback)

    def durations(self, until: Optional[SimTime] = None) -> Dict[T, float]:
        """
        Total time spent in each value from the first record up to `until`
        (the current time by default).
        """
        until = self.ctx.now if until is None else until
        totals: Dict[T, float] = {}
        for (start, value), (end, _) in zip(
            self.history, self.history[1:] + [(until, None)]
        ):
            span = min(end, until) - start
            if span > 0:
                totals[value] = totals.get(value, 0.0) + span
        return totals
