import math
from typing import Any

from labsim.analyzer.simulator import LabSim
from labsim.config import AnalyzerConfig
from labsim.stat_base import Distribution


def _close(a: float, b: float, *, rel: float = 1e-9, abs_: float = 1e-12) -> None:
    assert math.isclose(a, b, rel_tol=rel, abs_tol=abs_), f"{a=} {b=}"


def fixed_config(**overrides: Any) -> AnalyzerConfig:
    """
    Analyzer config with deterministic durations: every analysis takes 60 s
    and no re-run is ever triggered unless overridden.
    """
    params = {
        "analysis_time": Distribution.constant(60),
        "inter_arrival_time": Distribution.constant(120),
        "rerun_probability": 0.0,
    }
    params.update(overrides)
    return AnalyzerConfig(**params)


def manual_sim(**overrides: Any) -> LabSim:
    """
    Simulation without random arrivals or periodic checks: samples are only
    submitted by the test.
    """
    return LabSim(fixed_config(**overrides), generate_samples=False, monitor_status=False)
