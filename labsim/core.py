from __future__ import annotations

import time
from enum import IntEnum
from copy import deepcopy
from heapq import heappop, heappush
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Generator,
    Iterator,
    List,
    Optional,
)
import logging

from labsim.common import (
    ACTIVATE_PRIORITY,
    COLLECT_STAT_PRIORITY,
    HOLD_PRIORITY,
    STOP_PRIORITY,
    EventID,
    EventPriority,
    Priority,
    ProcessID,
    ProcessName,
    ResourceCapacity,
    ResourceID,
    SimTime,
    SimulationError,
    TimeInterval,
)
from labsim.stat import ProcessStat, SimStat

if TYPE_CHECKING:
    from labsim.resource import (
        AdmissionPolicy,
        BaseResource,
        DepletableResource,
        Put,
        Request,
        Resource,
        Take,
    )


LOG_FMT = "%(levelname)s - %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FMT)
logger = logging.getLogger(__name__)


class EventStatus(IntEnum):
    """
    A given Event can be in one of the following states:

    - CREATED: newly created event
    - PLANNED: event's time is set (planned), but not yet scheduled
    - SCHEDULED: event is placed in the timeline
    - TRIGGERED: the event is triggered and will be processed when popped
    - PROCESSED: event happened and is removed from the timeline
    - CANCELLED: event was withdrawn; the timeline discards it when popped
    """

    CREATED = 1
    PLANNED = 2
    SCHEDULED = 3
    TRIGGERED = 4
    PROCESSED = 5
    CANCELLED = 6


class ProcessStatus(IntEnum):
    """
    A given Process can be in one of the following states:

    - CREATED: newly created process, never run
    - SCHEDULED: a resumption entry for the process is in the timeline
    - RUNNING: process body is executing
    - SUSPENDED_HOLD: waiting for a hold to expire
    - SUSPENDED_REQUEST: waiting for a resource to admit a request
    - PASSIVE: suspended indefinitely until activated
    - TERMINATED: body returned, cannot resume
    - CANCELLED: cancelled by another process, cannot resume
    """

    CREATED = 1
    SCHEDULED = 2
    RUNNING = 3
    SUSPENDED_HOLD = 4
    SUSPENDED_REQUEST = 5
    PASSIVE = 6
    TERMINATED = 7
    CANCELLED = 8


class Event:
    """
    An event in the simulation. Events that a process yields are its
    suspension points; the process resumes when the event is processed.
    """

    suspend_status: ProcessStatus = ProcessStatus.SUSPENDED_HOLD

    def __init__(
        self,
        ctx: SimContext,
        time: Optional[SimTime] = None,
        func: Optional[Callable[[Event], Any]] = None,
        priority: EventPriority = ACTIVATE_PRIORITY,
        process: Optional[Process] = None,
        auto_trigger: bool = False,
    ):
        self.ctx: SimContext = ctx
        self._func: Optional[Callable[[Event], Any]] = func
        self._callbacks: List[EventCallback] = []
        self._value: Any = None
        self.time: Optional[SimTime] = time
        self.priority: EventPriority = priority
        self.event_id: EventID = ctx.get_next_event_id()
        self.seq: Optional[EventID] = None
        self.process: Optional[Process] = process
        self.status: EventStatus = (
            EventStatus.CREATED if self.time is None else EventStatus.PLANNED
        )
        self.ok: bool = True
        self.immediate: bool = False
        self._auto_trigger: bool = auto_trigger

    def __hash__(self) -> EventID:
        return self.event_id

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Event) and self.event_id == other.event_id

    def __lt__(self, other: Event) -> bool:
        return (self.time, self.priority, self.seq) < (
            other.time,
            other.priority,
            other.seq,
        )

    def __repr__(self) -> str:
        type_name = type(self).__name__
        process_name = self.process.name if self.process else None
        return f"{type_name}(time={self.time}, event_id={self.event_id}, proc={process_name})"

    @property
    def value(self) -> Any:
        """
        The computed value of the event if func is set, otherwise the stored value.
        This is what the yielding process receives when it resumes.
        """
        if self._func is not None:
            self._value = self._func(self)
        return self._value

    @property
    def is_planned(self) -> bool:
        return EventStatus.PLANNED <= self.status < EventStatus.CANCELLED

    @property
    def is_scheduled(self) -> bool:
        return EventStatus.SCHEDULED <= self.status < EventStatus.CANCELLED

    @property
    def is_triggered(self) -> bool:
        return EventStatus.TRIGGERED <= self.status < EventStatus.CANCELLED

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.CANCELLED

    def plan(self, time: Optional[SimTime]) -> None:
        if self.status < EventStatus.PLANNED:
            if self.time is None:
                if time is None:
                    raise SimulationError(f"Cannot plan {self}. No time set!")
                self.time = time
            self.status = EventStatus.PLANNED
        else:
            raise SimulationError(f"Cannot plan {self}. It has already been planned!")

    def schedule(self, time: Optional[SimTime] = None) -> None:
        if self.is_cancelled:
            raise SimulationError(f"Cannot schedule {self}. It has been cancelled!")
        if not self.is_planned:
            self.plan(time)
        elif self.status >= EventStatus.SCHEDULED:
            raise SimulationError(f"{self} has already been scheduled!")

        self.status = EventStatus.SCHEDULED
        self.seq = self.ctx.get_next_seq()
        self.ctx.add_event(self)
        if self._auto_trigger:
            self.trigger()

    def trigger(self) -> None:
        if self.status != EventStatus.SCHEDULED:
            raise SimulationError(
                f"{self} cannot be triggered as it wasn't scheduled!"
            )
        self.status = EventStatus.TRIGGERED

    def resolve(self, ok: bool = True, value: Any = None) -> None:
        """
        Settle a pending event at the current time: the event is put into the
        timeline and its process resumes when the event is popped.
        """
        self.ok = ok
        if value is not None:
            self._value = value
        self.ctx.schedule_event(self, self.ctx.now)
        self.trigger()
        if self.process is not None and self.process.pending is self:
            self.process.status = ProcessStatus.SCHEDULED

    def resolve_now(self, ok: bool = True, value: Any = None) -> None:
        """
        Settle an event while it is being created. The yielding process gets
        the result without leaving its current run slice.
        """
        self.ok = ok
        if value is not None:
            self._value = value
        self.immediate = True

    def withdraw(self) -> None:
        """
        Hook for events waiting outside the timeline (e.g. in a resource wait
        list). Called when the waiting process gives up on the event.
        """

    def cancel(self) -> None:
        if self.status != EventStatus.PROCESSED:
            self.status = EventStatus.CANCELLED

    def subscribe(self, proc: Process) -> None:
        self.add_callback(proc.resume)

    def add_callback(self, callback: EventCallback) -> None:
        self._callbacks.append(callback)

    def run(self) -> None:
        if not self.is_triggered:
            raise SimulationError(f"Cannot run event {self}. It was not triggered!")
        if self.process:
            self.process.stat.event_exec(self)

        self.status = EventStatus.PROCESSED
        for callback in self._callbacks:
            callback(self)


class Timeout(Event):
    """
    An event that automatically triggers after a given delay from now.
    """

    def __init__(
        self,
        ctx: SimContext,
        delay: SimTime,
        priority: EventPriority = HOLD_PRIORITY,
        process: Optional[Process] = None,
    ):
        if delay < 0:
            raise SimulationError(f"Negative delay {delay} at {ctx.now}")
        self._delay = delay
        super().__init__(
            ctx, ctx.now + delay, priority=priority, process=process, auto_trigger=True
        )

    def __repr__(self) -> str:
        type_name = type(self).__name__
        process_name = self.process.name if self.process else None
        return (
            f"{type_name}(time={self.time}, event_id={self.event_id}, "
            f"proc={process_name}, delay={self._delay})"
        )


class Activation(Event):
    """
    Resumption entry created by Process.activate().
    """

    suspend_status = ProcessStatus.SCHEDULED

    def __init__(
        self,
        ctx: SimContext,
        at: SimTime,
        priority: EventPriority = ACTIVATE_PRIORITY,
        process: Optional[Process] = None,
    ):
        super().__init__(ctx, at, priority=priority, process=process, auto_trigger=True)


class Passivate(Event):
    """
    Suspends the yielding process indefinitely. It is never put into the
    timeline; only Process.activate() brings the process back.
    """

    suspend_status = ProcessStatus.PASSIVE


class StopSim(Timeout):
    """
    Event that stops the simulation after the specified delay.
    """

    def __init__(
        self,
        ctx: SimContext,
        delay: SimTime,
        priority: EventPriority = STOP_PRIORITY,
        process: Optional[Process] = None,
    ):
        super().__init__(ctx, delay, priority=priority, process=process)
        self._callbacks.append(self.ctx.stop)


class CollectStat(Timeout):
    """
    Periodic statistic collection event.
    """

    def __init__(
        self,
        ctx: SimContext,
        delay: SimTime,
        priority: EventPriority = COLLECT_STAT_PRIORITY,
        process: Optional[Process] = None,
    ):
        super().__init__(ctx, delay, priority=priority, process=process)


class Process:
    """
    Represents a simulation process.

    The behaviour of a process is a generator ("coroutine") that yields
    events. Each yield is a suspension point; the process is resumed by the
    timeline with the event's value sent back into the generator. Between two
    suspension points the body runs without interruption.

    Attributes:
        ctx: The simulation context.
        proc_id: The unique ID for this process in the context.
        name: Optional name of the process.
        status: Current lifecycle status of the process.
        failed: True iff the latest suspension point resolved unsuccessfully.
        stat: Statistics object for the process.
    """

    def __init__(self, ctx: SimContext, coro: Coro, name: Optional[ProcessName] = None):
        self.ctx: SimContext = ctx
        self.proc_id: ProcessID = ctx.get_next_process_id()
        self.name: str = name if name else f"{type(self).__name__}_{self.proc_id}"
        self._coro: Coro = coro
        self._pending: Optional[Event] = None
        self.ctx.add_process(self)
        self.status: ProcessStatus = ProcessStatus.CREATED
        self.failed: bool = False
        self.stat: ProcessStat = ProcessStat(ctx)
        self.stat_callbacks: List[StatCallback] = []

    def __repr__(self) -> str:
        return f"{self.name}(proc_id={self.proc_id}, status={self.status.name})"

    def extend_name(self, extension: str, prepend: bool = False) -> None:
        if prepend:
            self.name = extension + self.name
        else:
            self.name = self.name + extension

    @property
    def pending(self) -> Optional[Event]:
        """
        The event this process is suspended on, if any.
        """
        return self._pending

    @property
    def is_alive(self) -> bool:
        return self.status not in (ProcessStatus.TERMINATED, ProcessStatus.CANCELLED)

    @property
    def is_passive(self) -> bool:
        return self.status == ProcessStatus.PASSIVE

    def is_stopped(self) -> bool:
        return not self.is_alive

    def start(self) -> None:
        """
        Schedule the first run of a newly created process at the current time.
        """
        if self.status == ProcessStatus.CREATED:
            self.activate()

    def activate(
        self, at: Optional[SimTime] = None, priority: EventPriority = ACTIVATE_PRIORITY
    ) -> bool:
        """
        Schedule a created or passive process to resume at time `at` (now by default).

        A process waiting on a request is interrupted: the request is withdrawn
        and the process resumes now with `failed` set. A process that already
        has a resumption in the timeline, is holding, or is running is left
        untouched, so there is never more than one pending resumption per process.

        Returns:
            True if the process got a new resumption entry.
        """
        if not self.is_alive:
            logger.debug("Ignoring activation of %s", self)
            return False

        if self.status in (ProcessStatus.CREATED, ProcessStatus.PASSIVE):
            at = self.ctx.now if at is None else at
            activation = Activation(self.ctx, at, priority=priority, process=self)
            activation.subscribe(self)
            self._pending = activation
            self.ctx.schedule_event(activation)
            self.status = ProcessStatus.SCHEDULED
            return True

        if (
            self.status == ProcessStatus.SUSPENDED_REQUEST
            and not self._pending.is_scheduled
        ):
            logger.debug("%s interrupted while waiting on %s", self, self._pending)
            self._pending.withdraw()
            self._pending.resolve(ok=False)
            return True

        return False

    def cancel(self) -> None:
        """
        Cancel the process: drop its pending resumption and close its body.
        Claims it holds are not released; the caller must release them.
        """
        if not self.is_alive:
            return
        if self.status == ProcessStatus.RUNNING:
            raise SimulationError(f"{self} cannot cancel itself while running")
        if self._pending is not None:
            self._pending.withdraw()
            self._pending.cancel()
            self._pending = None
        self.status = ProcessStatus.CANCELLED
        self._coro.close()
        logger.debug("%s cancelled at %s", self, self.ctx.now)

    def resume(self, event: Event) -> None:
        """
        Resume the process coroutine, sending the event's value into it.

        Raises:
            SimulationError: If the process is not alive or the event is not
                the one this process is suspended on.
        """
        if not self.is_alive:
            raise SimulationError(f"Can't resume the process {self} that is not alive!")
        if event is not self._pending:
            raise SimulationError(f"Wrong {event} to resume the process {self}!")
        self._pending = None
        self._step(event)

    def _step(self, event: Event) -> None:
        self.status = ProcessStatus.RUNNING
        self.ctx.set_active_process(self)
        self.failed = not event.ok
        send_value = event.value
        while True:
            try:
                next_event = self._coro.send(send_value)
            except StopIteration:
                self.status = ProcessStatus.TERMINATED
                return

            if not isinstance(next_event, Event):
                raise SimulationError(
                    f"{self} yielded {next_event!r} instead of an event"
                )
            next_event.process = self
            self.stat.event_generated(next_event)
            if not next_event.immediate:
                break
            # Settled inline: keep running without leaving the slice.
            self.failed = not next_event.ok
            send_value = next_event.value

        self._pending = next_event
        self.status = next_event.suspend_status
        if self.status == ProcessStatus.PASSIVE:
            self._pending = None
            return
        next_event.subscribe(self)
        if next_event.is_planned and not next_event.is_scheduled:
            self.ctx.schedule_event(next_event)

    def hold(self, duration: SimTime, priority: EventPriority = HOLD_PRIORITY) -> Timeout:
        """
        Suspend until now + duration.
        """
        return Timeout(self.ctx, delay=duration, priority=priority, process=self)

    def passivate(self) -> Passivate:
        return Passivate(self.ctx, process=self)

    def request(
        self,
        resource: Resource,
        quantity: ResourceCapacity = 1,
        priority: Priority = Priority.NORMAL,
    ) -> Request:
        return resource.request(quantity, priority=priority, process=self)

    def put(
        self,
        depletable: DepletableResource,
        quantity: float,
        policy: Optional[AdmissionPolicy] = None,
    ) -> Put:
        return depletable.put(quantity, policy=policy, process=self)

    def take(
        self,
        depletable: DepletableResource,
        quantity: float,
        policy: Optional[AdmissionPolicy] = None,
    ) -> Take:
        return depletable.take(quantity, policy=policy, process=self)

    def exec_stat_callbacks(self) -> None:
        for stat_callback in self.stat_callbacks:
            stat_callback()

    def add_stat_callback(self, callback: StatCallback) -> None:
        self.stat_callbacks.append(callback)


class StatCollector(Process):
    """
    A dedicated process to collect (and optionally reset) simulation statistics at intervals.
    """

    def __init__(
        self,
        ctx: SimContext,
        stat_interval: Optional[SimTime],
        stat_container: SimStat,
        name: Optional[ProcessName] = None,
    ):
        self._stat_interval = stat_interval
        self._stat_container = stat_container
        super().__init__(ctx, self._collection_trigger(), name=name)
        self.add_stat_callback(self.stat.advance_time)

    def _collect(self, reset: bool) -> None:
        """
        Iterate over all processes and resources in the context and collect stats.
        """
        self._stat_container.advance_time()
        interval: TimeInterval = (
            self._stat_container.prev_timestamp,
            self._stat_container.cur_timestamp,
        )

        for process in self.ctx.get_process_iter():
            process.stat.update_stat()
            self._stat_container.process_stat_samples.setdefault(process.name, {})[
                interval
            ] = deepcopy(process.stat.cur_stat_frame)
            if reset:
                process.stat.reset_stat()

        for resource in self.ctx.get_resource_iter():
            resource.stat.update_stat()
            self._stat_container.resource_stat_samples.setdefault(resource.name, {})[
                interval
            ] = deepcopy(resource.stat.cur_stat_frame)
            if reset:
                resource.stat.reset_stat()

    def _collection_trigger(self) -> Coro:
        if not self._stat_interval:
            return
        while True:
            yield CollectStat(self.ctx, delay=self._stat_interval, process=self)
            self._collect(reset=True)

    def collect_now(self) -> None:
        """
        Manual statistic collection without resetting.
        """
        self._collect(reset=False)


class SimContext:
    """
    Maintains the global state of the simulation: the clock, the event
    timeline, and the registries of processes and resources.
    """

    def __init__(self, starttime: SimTime = 0):
        self.now: SimTime = starttime
        self.active_process: Optional[Process] = None
        self._event_queue: List[Event] = []
        self._procs: Dict[ProcessID, Process] = {}
        self._resources: Dict[ResourceID, BaseResource] = {}
        self._stopped: bool = False
        self._next_event_id: EventID = 0
        self._next_seq: EventID = 0
        self._next_process_id: ProcessID = 1  # 0 is reserved for the simulator
        self._next_resource_id: ResourceID = 0

    def __deepcopy__(self, memo: Dict[Any, Any]) -> None:
        # Prevent copying references that must remain unique.
        return None

    def get_next_event_id(self) -> EventID:
        next_event_id = self._next_event_id
        self._next_event_id += 1
        return next_event_id

    def get_next_seq(self) -> EventID:
        next_seq = self._next_seq
        self._next_seq += 1
        return next_seq

    def get_next_process_id(self) -> ProcessID:
        next_process_id = self._next_process_id
        self._next_process_id += 1
        return next_process_id

    def get_next_resource_id(self) -> ResourceID:
        next_resource_id = self._next_resource_id
        self._next_resource_id += 1
        return next_resource_id

    def is_stopped(self) -> bool:
        return self._stopped

    def get_event(self) -> Optional[Event]:
        """
        Pop the earliest (time, priority, seq) entry, skipping cancelled ones.
        """
        while self._event_queue:
            event = heappop(self._event_queue)
            if not event.is_cancelled:
                return event
        return None

    def pending_events(self, process: Optional[Process] = None) -> List[Event]:
        """
        Live timeline entries in resumption order, optionally for one process only.
        """
        return sorted(
            event
            for event in self._event_queue
            if not event.is_cancelled and (process is None or event.process is process)
        )

    def add_event(self, event: Event) -> None:
        if not event.is_scheduled:
            raise SimulationError(
                f"Cannot add {event}. The event has not been scheduled."
            )
        if event.time < self.now:
            raise SimulationError(
                f"Cannot add {event}. The event.time {event.time} is in the past. Now is {self.now}"
            )
        heappush(self._event_queue, event)

    def schedule_event(self, event: Event, time: Optional[SimTime] = None) -> None:
        if event.time is None:
            if time is None:
                raise SimulationError(f"Cannot schedule {event}. No time set!")
        else:
            time = event.time
        if time < self.now:
            raise SimulationError(
                f"Cannot schedule {event} into the past ({time}). Now is {self.now}."
            )
        event.schedule(time)

    def schedule_at(
        self, time: SimTime, priority: EventPriority, process: Process
    ) -> bool:
        """
        Insert a resumption entry for a created or passive process.
        """
        return process.activate(at=time, priority=priority)

    def stop(self, event: Optional[Event] = None) -> None:
        _ = event
        self._stopped = True

    def clear_stop(self) -> None:
        self._stopped = False

    def advance_simtime(self, newtime: SimTime) -> bool:
        if newtime > self.now:
            self.now = newtime
            return True
        return False

    def create_process(self, coro: Coro, name: Optional[ProcessName]) -> Process:
        return Process(ctx=self, coro=coro, name=name)

    def add_process(self, process: Process) -> None:
        self._procs[process.proc_id] = process

    def add_resource(self, resource: BaseResource) -> None:
        self._resources[resource.res_id] = resource

    def get_process_iter(self) -> Iterator[Process]:
        return iter(self._procs.values())

    def get_resource_iter(self) -> Iterator[BaseResource]:
        return iter(self._resources.values())

    def set_active_process(self, process: Optional[Process]) -> None:
        self.active_process = process

    def exec_all_stat_callbacks(self) -> None:
        for proc in self._procs.values():
            proc.exec_stat_callbacks()
        for resource in self._resources.values():
            resource.exec_stat_callbacks()


class Simulator:
    """
    Main driver that handles simulation execution and optional stat collection intervals.
    """

    def __init__(
        self, ctx: Optional[SimContext] = None, stat_interval: Optional[float] = None
    ):
        self.ctx: SimContext = ctx if ctx is not None else SimContext()
        self.event_counter = 0
        self.stat: SimStat = SimStat(self.ctx)
        self._stat_interval: Optional[float] = stat_interval
        self.stat_collectors: List[StatCollector] = []
        self.add_stat_collector(
            StatCollector(
                self.ctx, stat_interval=stat_interval, stat_container=self.stat
            )
        )

    @property
    def avg_event_rate(self) -> float:
        if self.ctx.now == 0:
            return 0.0
        return self.event_counter / self.ctx.now

    @property
    def now(self) -> SimTime:
        return self.ctx.now

    def add_stat_collector(self, stat_collector: StatCollector) -> None:
        self.stat_collectors.append(stat_collector)

    def run(self, until_time: Optional[SimTime] = None) -> None:
        """
        Run until the timeline is empty or until_time (relative to now) is reached.
        """
        self.ctx.clear_stop()
        if until_time is not None:
            self.ctx.schedule_event(StopSim(self.ctx, delay=until_time))
        self._run()

    def _run(self) -> None:
        started_at = time.time()

        for proc in list(self.ctx.get_process_iter()):
            proc.start()

        # Main event loop
        while not self.ctx.is_stopped() and (event := self.ctx.get_event()):
            if self.ctx.advance_simtime(event.time):
                self.ctx.exec_all_stat_callbacks()
            if event.is_triggered:
                event.run()
                self.event_counter += 1

        # If no stat interval was set, do one final collection
        if not self._stat_interval:
            for stat_collector in self.stat_collectors:
                stat_collector.collect_now()

        logger.info(
            "Simulation ended at %s, it took %s wall clock seconds. Executed %s events.",
            self.ctx.now,
            time.time() - started_at,
            self.event_counter,
        )


StatCallback = Callable[[], None]
EventCallback = Callable[[Event], None]
Coro = Generator[Event, Any, None]
