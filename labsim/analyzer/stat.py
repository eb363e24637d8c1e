from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, DefaultDict, Dict, List, Optional, Tuple

from labsim.analyzer.common import (
    AnalysisMode,
    AnalyzerStatus,
    MaintenanceType,
    ReagentName,
    SampleID,
    SampleOutcome,
    Volume,
)
from labsim.common import SimTime
from labsim.stat_base import describe


TURNAROUND_TIME = "turnaround_time"
TURNAROUND_TIME_INTERRUPTED = "turnaround_time_interrupted"
TURNAROUND_TIME_FAILED = "turnaround_time_failed"
WAIT_TIME = "wait_time"
PROCESS_TIME = "process_time"
MAINTENANCE_TIME = "maintenance_time"
QUEUE_LENGTH = "queue_length"

TURNAROUND_METRICS = {
    SampleOutcome.COMPLETED: TURNAROUND_TIME,
    SampleOutcome.INTERRUPTED: TURNAROUND_TIME_INTERRUPTED,
    SampleOutcome.FAILED: TURNAROUND_TIME_FAILED,
}


@dataclass(frozen=True)
class OutcomeRecord:
    """
    Emitted once per sample on its terminal transition.

    Attributes:
        sample_id: Sample identity, e.g. "Sample_240_2" or "Sample_240_2_RRBC".
        mode: Requested analysis mode.
        is_rerun: True for a re-run sample.
        queue_time: Time the sample entered the autoloader queue.
        analysis_start: Time the analyzer was acquired, None if it never was.
        analysis_end: Time the analysis ended, or the error time for failures.
        outcome: Terminal outcome.
    """

    sample_id: SampleID
    mode: AnalysisMode
    is_rerun: bool
    queue_time: SimTime
    analysis_start: Optional[SimTime]
    analysis_end: SimTime
    outcome: SampleOutcome

    @property
    def turnaround_time(self) -> SimTime:
        return self.analysis_end - self.queue_time

    @property
    def wait_time(self) -> Optional[SimTime]:
        if self.analysis_start is None:
            return None
        return self.analysis_start - self.queue_time

    @property
    def process_time(self) -> Optional[SimTime]:
        if self.analysis_start is None:
            return None
        return self.analysis_end - self.analysis_start

    def todict(self) -> Dict[str, Any]:
        return {
            "sample_id": self.sample_id,
            "mode": self.mode.name,
            "is_rerun": self.is_rerun,
            "queue_time": self.queue_time,
            "analysis_start": self.analysis_start,
            "analysis_end": self.analysis_end,
            "outcome": self.outcome.name,
        }


@dataclass(frozen=True)
class MaintenanceEvent:
    start: SimTime
    end: SimTime
    maintenance_type: MaintenanceType

    @property
    def duration(self) -> SimTime:
        return self.end - self.start

    def todict(self) -> Dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "maintenance_type": self.maintenance_type.value,
        }


class StatisticsSink(ABC):
    """
    Append-only destination of metric samples and outcome records.
    """

    @abstractmethod
    def record(self, metric: str, value: float) -> None:
        raise NotImplementedError("Subclasses must implement record.")

    @abstractmethod
    def record_outcome(self, record: OutcomeRecord) -> None:
        raise NotImplementedError("Subclasses must implement record_outcome.")


@dataclass
class LabDataStore(StatisticsSink):
    """
    Run-scoped store of everything the analyzer actors report: metric samples,
    outcome records and counters, status changes, level and queue timelines,
    and maintenance sessions.
    """

    metrics: DefaultDict[str, List[float]] = field(
        default_factory=lambda: defaultdict(list)
    )
    outcomes: List[OutcomeRecord] = field(default_factory=list)
    outcome_counts: Dict[SampleOutcome, int] = field(
        default_factory=lambda: {outcome: 0 for outcome in SampleOutcome}
    )
    status_changes: List[Tuple[SimTime, AnalyzerStatus]] = field(default_factory=list)
    reagent_levels: DefaultDict[ReagentName, List[Tuple[SimTime, Volume]]] = field(
        default_factory=lambda: defaultdict(list)
    )
    waste_levels: List[Tuple[SimTime, Volume]] = field(default_factory=list)
    queue_lengths: List[Tuple[SimTime, int]] = field(default_factory=list)
    maintenance_events: List[MaintenanceEvent] = field(default_factory=list)
    maintenance_counts: Dict[MaintenanceType, int] = field(
        default_factory=lambda: {maintenance: 0 for maintenance in MaintenanceType}
    )
    maintenance_sessions: int = 0
    rejected_count: int = 0

    def record(self, metric: str, value: float) -> None:
        self.metrics[metric].append(value)

    def record_outcome(self, record: OutcomeRecord) -> None:
        self.outcomes.append(record)
        self.outcome_counts[record.outcome] += 1
        self.record(TURNAROUND_METRICS[record.outcome], record.turnaround_time)
        if record.outcome == SampleOutcome.COMPLETED:
            self.record(WAIT_TIME, record.wait_time)
            self.record(PROCESS_TIME, record.process_time)

    def record_status(self, time: SimTime, status: AnalyzerStatus) -> None:
        self.status_changes.append((time, status))

    def record_reagent_level(self, time: SimTime, name: ReagentName, level: Volume) -> None:
        self.reagent_levels[name].append((time, level))

    def record_waste_level(self, time: SimTime, level: Volume) -> None:
        self.waste_levels.append((time, level))

    def record_queue_length(self, time: SimTime, length: int) -> None:
        self.queue_lengths.append((time, length))

    def record_maintenance(self, event: MaintenanceEvent) -> None:
        self.maintenance_events.append(event)
        self.maintenance_counts[event.maintenance_type] += 1
        self.record(MAINTENANCE_TIME, event.duration)

    @property
    def total_samples(self) -> int:
        return sum(self.outcome_counts.values())

    @property
    def reagent_sessions(self) -> int:
        return (
            self.maintenance_counts[MaintenanceType.REAGENT]
            + self.maintenance_counts[MaintenanceType.BOTH]
        )

    @property
    def waste_sessions(self) -> int:
        return (
            self.maintenance_counts[MaintenanceType.WASTE]
            + self.maintenance_counts[MaintenanceType.BOTH]
        )

    def metric_summary(self, metric: str) -> Dict[str, Optional[float]]:
        return describe(self.metrics.get(metric, []))

    def summaries(self) -> Dict[str, Dict[str, Optional[float]]]:
        return {
            metric: self.metric_summary(metric)
            for metric in (
                TURNAROUND_TIME,
                TURNAROUND_TIME_INTERRUPTED,
                TURNAROUND_TIME_FAILED,
                WAIT_TIME,
                PROCESS_TIME,
                MAINTENANCE_TIME,
                QUEUE_LENGTH,
            )
        }
