from enum import Enum, IntEnum


SampleID = str
ReagentName = str
Volume = float  # in ml


class AnalysisMode(IntEnum):
    """
    Measurement modes of the analyzer. CBC_5DIFF_RRBC is the re-run of a
    differential analysis and is never requested by arriving samples.
    """

    CBC = 1
    CBC_5DIFF = 2
    CBC_5DIFF_RRBC = 3
    RET = 4

    @property
    def is_differential(self) -> bool:
        return self in (AnalysisMode.CBC_5DIFF, AnalysisMode.CBC_5DIFF_RRBC)


class AnalyzerStatus(IntEnum):
    IDLE = 1
    ANALYZING = 2
    MAINTENANCE = 3
    MAINTENANCE_REAGENT = 4
    MAINTENANCE_WASTE = 5
    ERROR_REAGENT = 6
    ERROR_WASTE = 7
    ERROR_RERUN = 8


class SampleOutcome(IntEnum):
    """
    Terminal outcome of a sample: completed, interrupted by a re-run trigger,
    or failed (analyzer unavailable, reagent depleted, waste full).
    """

    COMPLETED = 1
    INTERRUPTED = 2
    FAILED = 3


class MaintenanceType(str, Enum):
    BOTH = "Both"
    REAGENT = "Reagent"
    WASTE = "Waste"
