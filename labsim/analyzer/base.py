from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from typing import Any, Dict, Iterator, List, Optional

from labsim.analyzer.common import (
    AnalysisMode,
    AnalyzerStatus,
    MaintenanceType,
    ReagentName,
    SampleID,
    SampleOutcome,
)
from labsim.analyzer.stat import (
    QUEUE_LENGTH,
    LabDataStore,
    MaintenanceEvent,
    OutcomeRecord,
)
from labsim.common import ACTIVATE_PRIORITY, EventPriority, Priority, SimTime
from labsim.config import AnalyzerConfig
from labsim.core import Coro, Process, SimContext
from labsim.resource import (
    AdmissionPolicy,
    DepletableResource,
    PriorityQueue,
    Resource,
    State,
)
from labsim.stat_base import RandomSource
from labsim.tracer import Tracer


LOG_FMT = "%(levelname)s - %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FMT)
logger = logging.getLogger(__name__)

# Shortfalls and waste volumes at or below this are not worth a refill/disposal.
REFILL_TOLERANCE = 0.01

DISPATCH_STATUSES = (AnalyzerStatus.IDLE, AnalyzerStatus.ERROR_RERUN)


class LabContext(SimContext):
    """
    Simulation context of one analyzer run. Owns the shared entities the
    actors coordinate through: the analyzer resource, the autoloader queue,
    the reagent bottles and the waste container, the observable analyzer
    status and maintenance flags, the random source and the statistics sink.
    """

    def __init__(
        self,
        config: Optional[AnalyzerConfig] = None,
        sink: Optional[LabDataStore] = None,
        starttime: SimTime = 0,
    ) -> None:
        super().__init__(starttime=starttime)
        self.config: AnalyzerConfig = config if config is not None else AnalyzerConfig()
        self.random: RandomSource = RandomSource(self.config.seed)
        self.sink: LabDataStore = sink if sink is not None else LabDataStore()
        self.tracer: Optional[Tracer] = None
        self._next_object_id: int = 0

        self.analyzer = Resource(self, capacity=1, name="Analyzer")
        self.queue = PriorityQueue(
            self, capacity=self.config.autoloader_capacity, name="Autoloader"
        )
        self.reagents: Dict[ReagentName, DepletableResource] = {
            reagent.name: DepletableResource(self, reagent.capacity, name=reagent.name)
            for reagent in self.config.reagents
        }
        self.waste = DepletableResource(
            self, self.config.waste_capacity, level=0.0, name="Waste"
        )

        self.status: State[AnalyzerStatus] = State(
            self, AnalyzerStatus.IDLE, name="AnalyzerStatus"
        )
        self.needs_reagent: State[bool] = State(self, False, name="NeedsReagentMaintenance")
        self.needs_waste: State[bool] = State(self, False, name="NeedsWasteMaintenance")

        self.dispatcher: Optional[AnalyzerController] = None
        self.technician: Optional[MaintenanceTechnician] = None

        self.status.subscribe(self._status_changed)
        self.queue.add_length_callback(self._queue_length_changed)
        for reagent in self.reagents.values():
            reagent.add_level_callback(self._reagent_level_changed)
        self.waste.add_level_callback(self._waste_level_changed)
        self.sink.record_status(self.now, self.status.value)

    def get_next_object_id(self) -> int:
        next_object_id = self._next_object_id
        self._next_object_id += 1
        return next_object_id

    def set_status(self, status: AnalyzerStatus) -> None:
        self.status.set(status)

    def wake_dispatcher(self) -> None:
        if self.dispatcher is not None:
            self.dispatcher.activate()

    def wake_technician(self) -> None:
        if self.technician is not None:
            self.technician.activate()

    def record_outcome(self, record: OutcomeRecord) -> None:
        self.sink.record_outcome(record)
        if self.tracer:
            self.tracer.dump_data(record)

    def enable_trace(self, tracer: Tracer) -> None:
        self.tracer = tracer

    def _status_changed(
        self, state: State[AnalyzerStatus], old: AnalyzerStatus, new: AnalyzerStatus
    ) -> None:
        logger.info("Analyzer status changed -> %s at %s", new.name, self.now)
        self.sink.record_status(self.now, new)
        if self.tracer:
            self.tracer.dump_data(
                {"time": self.now, "status": new.name, "previous": old.name}
            )

    def _queue_length_changed(self, queue: PriorityQueue, length: int) -> None:
        self.sink.record_queue_length(self.now, length)

    def _reagent_level_changed(self, reagent: DepletableResource, level: float) -> None:
        self.sink.record_reagent_level(self.now, reagent.name, level)

    def _waste_level_changed(self, waste: DepletableResource, level: float) -> None:
        self.sink.record_waste_level(self.now, level)


class LabObject(ABC):
    """
    Base class for analyzer actors. Each object drives one process whose body
    is the object's `run` coroutine.
    """

    def __init__(self, ctx: LabContext, name: Optional[str] = None) -> None:
        self.ctx: LabContext = ctx
        self.obj_id: int = ctx.get_next_object_id()
        self.name: str = name if name else f"{type(self).__name__}_{self.obj_id}"
        self.process: Process = ctx.create_process(self.run(), self.name)
        self.process.extend_name("_proc")

    def __repr__(self) -> str:
        return f"{self.name}(process={self.process.name})"

    def activate(
        self, at: Optional[SimTime] = None, priority: EventPriority = ACTIVATE_PRIORITY
    ) -> bool:
        return self.process.activate(at=at, priority=priority)

    @abstractmethod
    def run(self, *args: List[Any], **kwargs: Dict[str, Any]) -> Coro:
        raise NotImplementedError(self)


class BloodSample(LabObject):
    """
    A tube to be analyzed. Its life cycle:

      Queued -> (Incubating) -> AwaitingAnalyzer -> AwaitingReagents
        -> Analyzing -> Completed | Interrupted (re-run) | Failed

    RET samples incubate before they are placed on the autoloader, so the
    queue only ever holds samples that are ready for analysis. Every terminal
    transition emits exactly one OutcomeRecord.
    """

    def __init__(
        self,
        ctx: LabContext,
        sample_id: SampleID,
        mode: AnalysisMode,
        is_rerun: bool = False,
    ) -> None:
        self.sample_id: SampleID = sample_id
        self.mode: AnalysisMode = mode
        self.is_rerun: bool = is_rerun
        self.queue_time: Optional[SimTime] = None
        self.analysis_start: Optional[SimTime] = None
        self.analysis_end: Optional[SimTime] = None
        self.outcome: Optional[SampleOutcome] = None
        super().__init__(ctx, name=sample_id)

    @property
    def priority(self) -> Priority:
        return Priority.IMPORTANT if self.is_rerun else Priority.NORMAL

    @property
    def needs_incubation(self) -> bool:
        return self.mode == AnalysisMode.RET and not self.is_rerun

    def run(self, *args: List[Any], **kwargs: Dict[str, Any]) -> Coro:
        ctx, proc, config = self.ctx, self.process, self.ctx.config
        logger.debug(
            "Starting %s mode=%s rerun=%s at %s",
            self.sample_id,
            self.mode.name,
            self.is_rerun,
            ctx.now,
        )

        # Re-runs are already on the autoloader, loaded by the interrupted sample.
        if not self.is_rerun:
            self.queue_time = ctx.now
            if self.needs_incubation:
                yield proc.hold(config.incubation_time)

            if not ctx.queue.add(self, self.priority):
                logger.info(
                    "Autoloader full, %s can't be loaded at %s", self.sample_id, ctx.now
                )
                self._finish(SampleOutcome.FAILED)
                ctx.wake_dispatcher()
                return
            ctx.wake_dispatcher()

        # The dispatcher may have polled the sample before its first run.
        if self in ctx.queue:
            yield proc.passivate()

        yield proc.request(ctx.analyzer)
        if proc.failed:
            logger.debug("Analyzer request failed => abort %s", self.sample_id)
            self._finish(SampleOutcome.FAILED)
            ctx.wake_dispatcher()
            return

        self.analysis_start = ctx.now
        ctx.set_status(AnalyzerStatus.ANALYZING)

        for reagent in config.reagents:
            amount = reagent.consumption(self.mode)
            if amount <= 0:
                continue
            yield proc.take(ctx.reagents[reagent.name], amount, AdmissionPolicy.FAIL)
            if proc.failed:
                logger.info(
                    "Reagent %s depleted (sample=%s) at %s",
                    reagent.name,
                    self.sample_id,
                    ctx.now,
                )
                ctx.needs_reagent.set(True)
                ctx.wake_technician()
                ctx.set_status(AnalyzerStatus.ERROR_REAGENT)
                ctx.analyzer.release(process=proc)
                self._finish(SampleOutcome.FAILED)
                return

        yield proc.hold(max(0.0, ctx.random.sample(config.analysis_time)))

        yield proc.put(ctx.waste, config.waste_per_sample(self.mode), AdmissionPolicy.FAIL)
        if proc.failed:
            logger.info("Waste container full (sample=%s) at %s", self.sample_id, ctx.now)
            ctx.needs_waste.set(True)
            ctx.wake_technician()
            ctx.set_status(AnalyzerStatus.ERROR_WASTE)
            ctx.analyzer.release(process=proc)
            self._finish(SampleOutcome.FAILED)
            return

        self.analysis_end = ctx.now
        if self._rerun_triggered():
            logger.info("Re-run triggered for %s at %s", self.sample_id, ctx.now)
            ctx.set_status(AnalyzerStatus.ERROR_RERUN)
            rerun = BloodSample(
                ctx,
                f"{self.sample_id}_RRBC",
                AnalysisMode.CBC_5DIFF_RRBC,
                is_rerun=True,
            )
            rerun.queue_time = ctx.now
            # Takes over the slot this sample left, so a full autoloader can't refuse it.
            ctx.queue.add(rerun, rerun.priority, ignore_capacity=True)
            rerun.activate()
            self._finish(SampleOutcome.INTERRUPTED)
            ctx.analyzer.release(process=proc)
            ctx.wake_dispatcher()
            return

        self._finish(SampleOutcome.COMPLETED)
        ctx.set_status(AnalyzerStatus.IDLE)
        ctx.analyzer.release(process=proc)
        ctx.wake_dispatcher()

    def _rerun_triggered(self) -> bool:
        return (
            not self.is_rerun
            and self.mode == AnalysisMode.CBC_5DIFF
            and self.ctx.random.random() < self.ctx.config.rerun_probability
        )

    def _finish(self, outcome: SampleOutcome) -> None:
        self.outcome = outcome
        if outcome == SampleOutcome.FAILED:
            self.analysis_end = self.ctx.now
        record = OutcomeRecord(
            sample_id=self.sample_id,
            mode=self.mode,
            is_rerun=self.is_rerun,
            queue_time=self.queue_time,
            analysis_start=self.analysis_start,
            analysis_end=self.analysis_end,
            outcome=outcome,
        )
        logger.debug(
            "%s %s, TAT %s", self.sample_id, outcome.name, record.turnaround_time
        )
        self.ctx.record_outcome(record)


class AnalyzerController(LabObject):
    """
    Dispatcher: hands queued samples to the analyzer one at a time.

    While the autoloader has samples and the analyzer is idle (or just
    flagged a re-run), the most urgent sample is popped and activated. The
    zero hold lets the sample claim the analyzer before the next check.
    """

    def __init__(self, ctx: LabContext, name: Optional[str] = None) -> None:
        super().__init__(ctx, name=name or "AnalyzerController")
        ctx.dispatcher = self

    def run(self, *args: List[Any], **kwargs: Dict[str, Any]) -> Coro:
        ctx = self.ctx
        while True:
            if ctx.queue and ctx.status.value in DISPATCH_STATUSES:
                sample: BloodSample = ctx.queue.poll()
                logger.debug(
                    "Dispatching %s at %s, queue size=%s",
                    sample.sample_id,
                    ctx.now,
                    len(ctx.queue),
                )
                sample.activate()
                yield self.process.hold(0)
            else:
                yield self.process.passivate()


class MaintenanceTechnician(LabObject):
    """
    Refills reagents and empties the waste container when flagged.
    Maintenance seizes the analyzer at CRITICAL priority, so it is served
    ahead of any waiting sample but never interrupts a running analysis.
    """

    def __init__(self, ctx: LabContext, name: Optional[str] = None) -> None:
        super().__init__(ctx, name=name or "MaintenanceTechnician")
        ctx.technician = self

    @property
    def has_work(self) -> bool:
        return self.ctx.needs_reagent.value or self.ctx.needs_waste.value

    def run(self, *args: List[Any], **kwargs: Dict[str, Any]) -> Coro:
        ctx, proc, config = self.ctx, self.process, self.ctx.config
        while True:
            # Flags raised while busy are picked up here instead of being lost.
            if not self.has_work:
                yield proc.passivate()
                continue

            yield proc.request(ctx.analyzer, priority=Priority.CRITICAL)
            if proc.failed:
                # Interrupted by a wake-up while waiting; the flags are still set.
                logger.debug("Analyzer request interrupted, retrying")
                continue

            ctx.sink.maintenance_sessions += 1
            do_reagent = ctx.needs_reagent.value
            do_waste = ctx.needs_waste.value
            if do_reagent and do_waste:
                maintenance_type, status = MaintenanceType.BOTH, AnalyzerStatus.MAINTENANCE
            elif do_reagent:
                maintenance_type = MaintenanceType.REAGENT
                status = AnalyzerStatus.MAINTENANCE_REAGENT
            else:
                maintenance_type = MaintenanceType.WASTE
                status = AnalyzerStatus.MAINTENANCE_WASTE
            ctx.set_status(status)
            started_at = ctx.now
            logger.info("Maintenance (%s) started at %s", maintenance_type.value, started_at)

            yield proc.hold(config.prep_time)

            if do_reagent:
                refill_time = 0
                for name, reagent in ctx.reagents.items():
                    needed = reagent.shortfall
                    if needed <= REFILL_TOLERANCE:
                        continue
                    yield proc.put(reagent, needed, AdmissionPolicy.SCHEDULE)
                    if proc.failed:
                        logger.warning("Can't refill %s", name)
                        continue
                    refill_time += config.reagent_replace_time
                    logger.debug("Refilled %s: +%s ml", name, needed)
                if refill_time > 0:
                    yield proc.hold(refill_time)
                ctx.needs_reagent.set(False)

            if do_waste:
                volume = ctx.waste.level
                if volume > REFILL_TOLERANCE:
                    yield proc.take(ctx.waste, volume, AdmissionPolicy.SCHEDULE)
                    if not proc.failed:
                        yield proc.hold(config.waste_disposal_time)
                        logger.debug("Disposed waste: %s ml", volume)
                ctx.needs_waste.set(False)

            yield proc.hold(config.finish_time)

            ctx.sink.record_maintenance(
                MaintenanceEvent(started_at, ctx.now, maintenance_type)
            )
            logger.info(
                "Maintenance (%s) completed in %s s", maintenance_type.value, ctx.now - started_at
            )
            ctx.set_status(AnalyzerStatus.IDLE)
            ctx.analyzer.release(process=proc)
            ctx.wake_dispatcher()


class SampleGenerator(LabObject):
    """
    Sample arrivals: after each drawn inter-arrival time a sample with a
    randomly drawn mode is loaded, or discarded if the autoloader is full.
    """

    def __init__(self, ctx: LabContext, name: Optional[str] = None) -> None:
        super().__init__(ctx, name=name or "SampleGenerator")
        self._arrivals: Iterator[float] = ctx.random.stream(ctx.config.inter_arrival_time)
        self.generated_count: int = 0

    def run(self, *args: List[Any], **kwargs: Dict[str, Any]) -> Coro:
        ctx = self.ctx
        while True:
            arrival = next(self._arrivals, None)
            if arrival is None:
                return
            yield self.process.hold(max(0.0, arrival))

            mode = ctx.random.sample(ctx.config.mode_distribution)
            sample_id = f"Sample_{int(ctx.now)}_{self.generated_count}"
            self.generated_count += 1

            if ctx.queue.is_full:
                logger.info("Queue full, sample %s discarded at %s", sample_id, ctx.now)
                ctx.sink.rejected_count += 1
                continue

            logger.debug("Generated %s mode=%s at %s", sample_id, mode.name, ctx.now)
            BloodSample(ctx, sample_id, mode).activate()
            ctx.wake_dispatcher()
            ctx.sink.record(QUEUE_LENGTH, len(ctx.queue))


class StatusMonitor(LabObject):
    """
    Periodic check of consumables: raises the reagent-low flag when any
    reagent is below the low threshold and the waste-high flag when the
    waste container is above the high threshold, then wakes maintenance.
    """

    def __init__(self, ctx: LabContext, name: Optional[str] = None) -> None:
        super().__init__(ctx, name=name or "StatusMonitor")

    def run(self, *args: List[Any], **kwargs: Dict[str, Any]) -> Coro:
        while True:
            yield self.process.hold(self.ctx.config.status_check_interval)
            self.check()

    def check(self) -> None:
        ctx, config = self.ctx, self.ctx.config

        if not ctx.needs_reagent.value:
            low = [
                name
                for name, reagent in ctx.reagents.items()
                if reagent.fill_pct < config.reagent_low_threshold
            ]
            if low:
                logger.info("Low reagents: %s at %s", ", ".join(low), ctx.now)
                ctx.needs_reagent.set(True)
                ctx.wake_technician()

        if not ctx.needs_waste.value:
            if ctx.waste.fill_pct > config.waste_high_threshold:
                logger.info("Waste container ~ full (%.1f%%) at %s", ctx.waste.fill_pct, ctx.now)
                ctx.needs_waste.set(True)
                ctx.wake_technician()

        ctx.sink.record(QUEUE_LENGTH, len(ctx.queue))
