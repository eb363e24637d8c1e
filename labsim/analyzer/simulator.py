from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from labsim.analyzer.base import (
    AnalyzerController,
    BloodSample,
    LabContext,
    MaintenanceTechnician,
    SampleGenerator,
    StatusMonitor,
)
from labsim.analyzer.common import AnalysisMode, SampleID, SampleOutcome
from labsim.analyzer.stat import LabDataStore
from labsim.common import SimTime
from labsim.config import AnalyzerConfig
from labsim.core import Simulator
from labsim.tracer import Tracer


LOG_FMT = "%(levelname)s - %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FMT)
logger = logging.getLogger(__name__)


@dataclass
class OutcomeSummary:
    """
    Aggregated results of one run.

    Attributes:
        end_time: Simulation time at which the run stopped.
        completed/interrupted/failed/total: Sample outcome counters.
        rejected: Arrivals discarded because the autoloader was full.
        utilization: Time-averaged share of the analyzer capacity that was claimed.
        metrics: Summary statistics per metric (see labsim.stat_base.describe).
        status_time: Seconds spent in each analyzer status.
        maintenance_sessions/reagent_sessions/waste_sessions: Maintenance counters.
        reagent_levels: Final level of each reagent.
        waste_level: Final waste container level.
    """

    end_time: SimTime
    completed: int
    interrupted: int
    failed: int
    total: int
    rejected: int
    utilization: float
    metrics: Dict[str, Dict[str, Optional[float]]] = field(default_factory=dict)
    status_time: Dict[str, float] = field(default_factory=dict)
    maintenance_sessions: int = 0
    reagent_sessions: int = 0
    waste_sessions: int = 0
    reagent_levels: Dict[str, float] = field(default_factory=dict)
    waste_level: float = 0.0

    def todict(self) -> Dict[str, Any]:
        return asdict(self)


class LabSim(Simulator):
    """
    Simulator of a single hematology analyzer with its dispatcher, maintenance
    technician and, optionally, the sample arrival process and periodic
    consumable checks.
    """

    def __init__(
        self,
        config: Optional[AnalyzerConfig] = None,
        stat_interval: Optional[float] = None,
        generate_samples: bool = True,
        monitor_status: bool = True,
        sink: Optional[LabDataStore] = None,
    ):
        config = config if config is not None else AnalyzerConfig.default()
        config.validate()
        super().__init__(LabContext(config, sink=sink), stat_interval=stat_interval)
        self.ctx: LabContext = self.ctx
        self.dispatcher = AnalyzerController(self.ctx)
        self.technician = MaintenanceTechnician(self.ctx)
        self.generator: Optional[SampleGenerator] = (
            SampleGenerator(self.ctx) if generate_samples else None
        )
        self.monitor: Optional[StatusMonitor] = (
            StatusMonitor(self.ctx) if monitor_status else None
        )

    @property
    def sink(self) -> LabDataStore:
        return self.ctx.sink

    @property
    def config(self) -> AnalyzerConfig:
        return self.ctx.config

    @property
    def utilization(self) -> float:
        """
        Claimed analyzer time over elapsed time. Interval collection resets the
        live frame, so collected intervals are added back.
        """
        if not self.ctx.now:
            return 0.0
        analyzer = self.ctx.analyzer
        integral = analyzer.stat.cur_stat_frame.integral_claimed
        if self._stat_interval:
            integral += sum(
                frame.integral_claimed
                for frame in self.stat.resource_stat_samples.get(analyzer.name, {}).values()
            )
        return integral / (self.ctx.now * analyzer.capacity)

    def submit(
        self,
        mode: AnalysisMode,
        sample_id: Optional[SampleID] = None,
        at: Optional[SimTime] = None,
    ) -> BloodSample:
        """
        Load a sample by hand (now, or at time `at`).
        """
        arrival = self.ctx.now if at is None else at
        if sample_id is None:
            sample_id = f"Sample_{int(arrival)}_m{self.ctx.get_next_object_id()}"
        sample = BloodSample(self.ctx, sample_id, mode)
        sample.activate(at=arrival)
        return sample

    def run(
        self,
        until_time: Optional[SimTime] = None,
        enable_trace: bool = False,
        trace_dir: str = "",
    ) -> None:
        """
        Run for `until_time` seconds from now (or until no events remain).
        With tracing on, outcome records and status changes are written to
        a JSON-lines file in `trace_dir`.
        """
        if not enable_trace:
            super().run(until_time=until_time)
            return

        with Tracer(name="labsim", dir_path=trace_dir) as tracer:
            self.ctx.enable_trace(tracer)
            try:
                super().run(until_time=until_time)
            finally:
                self.ctx.tracer = None

    def summary(self) -> OutcomeSummary:
        sink = self.sink
        return OutcomeSummary(
            end_time=self.ctx.now,
            completed=sink.outcome_counts[SampleOutcome.COMPLETED],
            interrupted=sink.outcome_counts[SampleOutcome.INTERRUPTED],
            failed=sink.outcome_counts[SampleOutcome.FAILED],
            total=sink.total_samples,
            rejected=sink.rejected_count,
            utilization=self.utilization,
            metrics=sink.summaries(),
            status_time={
                status.name: duration
                for status, duration in self.ctx.status.durations().items()
            },
            maintenance_sessions=sink.maintenance_sessions,
            reagent_sessions=sink.reagent_sessions,
            waste_sessions=sink.waste_sessions,
            reagent_levels={
                name: reagent.level for name, reagent in self.ctx.reagents.items()
            },
            waste_level=self.ctx.waste.level,
        )


def create_simulation(
    config: Optional[AnalyzerConfig] = None, stat_interval: Optional[float] = None
) -> LabSim:
    """
    Build a ready-to-run analyzer simulation.

    Raises:
        ConfigError: if the configuration violates an invariant. Nothing is
            scheduled in that case.
    """
    return LabSim(config, stat_interval=stat_interval)


def run(sim: LabSim, until: Optional[SimTime] = None, **kwargs: Any) -> LabSim:
    """
    Advance `sim` up to the absolute simulation time `until`.
    """
    if until is None:
        sim.run(**kwargs)
    elif until > sim.now:
        sim.run(until_time=until - sim.now, **kwargs)
    return sim


def get_outcome_summary(sim: LabSim) -> OutcomeSummary:
    return sim.summary()
