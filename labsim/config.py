from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from schema import And, Optional as Opt, Or, Schema, SchemaError

import labsim
from labsim.analyzer.common import AnalysisMode, ReagentName, Volume
from labsim.common import SimTime
from labsim.stat_base import Distribution, DistrFunc
from labsim.utils import load_file, load_resource, yaml_to_dict


LOG_FMT = "%(levelname)s - %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FMT)
logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "default_config.yaml"
PROBABILITY_TOLERANCE = 0.001

NUMBER = Or(int, float)

REQUIRED_DISTR_PARAMS = {
    DistrFunc.Constant: ("constant",),
    DistrFunc.Normal: ("mu", "sigma"),
    DistrFunc.Uniform: ("a", "b"),
    DistrFunc.Exponential: ("lambda",),
}

DISTRIBUTION_PARAMS = Schema(
    {
        "distr": And(
            str,
            lambda s: s in DistrFunc.__members__ and s != DistrFunc.Enumerated.name,
        ),
        Opt("params"): {str: NUMBER},
    }
)

REAGENT_PARAMS = Schema(
    {
        "name": str,
        "capacity": NUMBER,
        Opt("per_sample"): NUMBER,
        Opt("per_diff_sample"): NUMBER,
    }
)

MAINTENANCE_PARAMS = Schema(
    {
        Opt("prep_time"): NUMBER,
        Opt("reagent_replace_time"): NUMBER,
        Opt("waste_disposal_time"): NUMBER,
        Opt("finish_time"): NUMBER,
    }
)

ANALYZER_CONFIG_PARAMS = Schema(
    {
        Opt("seed"): int,
        Opt("analysis_time"): DISTRIBUTION_PARAMS,
        Opt("inter_arrival_time"): DISTRIBUTION_PARAMS,
        Opt("incubation_time"): NUMBER,
        Opt("autoloader_capacity"): int,
        Opt("sample_volume"): NUMBER,
        Opt("reagents"): [REAGENT_PARAMS],
        Opt("waste_capacity"): NUMBER,
        Opt("reagent_low_threshold"): NUMBER,
        Opt("waste_high_threshold"): NUMBER,
        Opt("mode_probabilities"): {
            And(str, lambda s: s in AnalysisMode.__members__): NUMBER
        },
        Opt("rerun_probability"): NUMBER,
        Opt("maintenance"): MAINTENANCE_PARAMS,
        Opt("status_check_interval"): NUMBER,
    }
)


class ConfigError(ValueError):
    """
    Raised when analyzer parameters are malformed or violate an invariant.
    Always raised before any simulation object is created.
    """


@dataclass(frozen=True)
class ReagentConfig:
    """
    A reagent bottle: its capacity and how much one analysis consumes.
    `per_diff_sample` is consumed in addition to `per_sample` by
    differential modes only.
    """

    name: ReagentName
    capacity: Volume
    per_sample: Volume = 0.0
    per_diff_sample: Volume = 0.0

    def consumption(self, mode: AnalysisMode) -> Volume:
        if mode.is_differential:
            return self.per_sample + self.per_diff_sample
        return self.per_sample


def _default_reagents() -> List[ReagentConfig]:
    return [
        ReagentConfig("Diluent", 5000.0, per_sample=2.0),
        ReagentConfig("Lyse", 1000.0, per_diff_sample=0.5),
        ReagentConfig("Sheath", 10000.0, per_diff_sample=5.0),
        ReagentConfig("Detergent", 1000.0),
    ]


def _default_mode_probabilities() -> Dict[AnalysisMode, float]:
    return {
        AnalysisMode.CBC: 0.1,
        AnalysisMode.CBC_5DIFF: 0.8,
        AnalysisMode.RET: 0.1,
    }


@dataclass(frozen=True)
class AnalyzerConfig:
    """
    Read-only parameter bundle of one simulation run. Times are in seconds,
    volumes in ml, thresholds in percent of capacity.
    """

    seed: int = 0
    analysis_time: Distribution = field(
        default_factory=lambda: Distribution.normal(60, 5, min=0)
    )
    inter_arrival_time: Distribution = field(
        default_factory=lambda: Distribution.normal(120, 10, min=0)
    )
    incubation_time: SimTime = 900
    autoloader_capacity: int = 50
    sample_volume: Volume = 0.02
    reagents: List[ReagentConfig] = field(default_factory=_default_reagents)
    waste_capacity: Volume = 20000.0
    reagent_low_threshold: float = 10.0
    waste_high_threshold: float = 90.0
    mode_probabilities: Dict[AnalysisMode, float] = field(
        default_factory=_default_mode_probabilities
    )
    rerun_probability: float = 0.02
    prep_time: SimTime = 300
    reagent_replace_time: SimTime = 120
    waste_disposal_time: SimTime = 300
    finish_time: SimTime = 120
    status_check_interval: SimTime = 600

    def __post_init__(self) -> None:
        self.validate()

    @property
    def mode_distribution(self) -> Distribution:
        return Distribution.enumerated(self.mode_probabilities)

    def waste_per_sample(self, mode: AnalysisMode) -> Volume:
        """
        Waste produced by one analysis: the sample itself plus every reagent it used.
        """
        return self.sample_volume + sum(
            reagent.consumption(mode) for reagent in self.reagents
        )

    def validate(self) -> None:
        """
        Check the semantic invariants of the bundle.

        Raises:
            ConfigError: on the first violated invariant.
        """
        total = sum(self.mode_probabilities.values())
        if abs(total - 1.0) > PROBABILITY_TOLERANCE:
            raise ConfigError(
                f"Mode probabilities must sum to 1 (+-{PROBABILITY_TOLERANCE}), got {total}"
            )
        for mode, probability in self.mode_probabilities.items():
            if not 0 <= probability <= 1:
                raise ConfigError(f"Probability of {mode.name} outside [0, 1]: {probability}")
            if mode == AnalysisMode.CBC_5DIFF_RRBC:
                raise ConfigError(f"{mode.name} is a re-run mode and can't be requested")

        if not 0 <= self.rerun_probability <= 1:
            raise ConfigError(f"Re-run probability outside [0, 1]: {self.rerun_probability}")

        if self.autoloader_capacity <= 0:
            raise ConfigError(
                f"Autoloader capacity must be positive, got {self.autoloader_capacity}"
            )
        if self.waste_capacity <= 0:
            raise ConfigError(f"Waste capacity must be positive, got {self.waste_capacity}")
        if self.sample_volume < 0:
            raise ConfigError(f"Sample volume can't be negative, got {self.sample_volume}")

        if not self.reagents:
            raise ConfigError("At least one reagent is required")
        names = [reagent.name for reagent in self.reagents]
        if len(set(names)) != len(names):
            raise ConfigError(f"Reagent names must be unique: {names}")
        for reagent in self.reagents:
            if reagent.capacity <= 0:
                raise ConfigError(
                    f"Capacity of {reagent.name} must be positive, got {reagent.capacity}"
                )
            if reagent.per_sample < 0 or reagent.per_diff_sample < 0:
                raise ConfigError(f"Consumption of {reagent.name} can't be negative")
            if reagent.per_sample + reagent.per_diff_sample > reagent.capacity:
                raise ConfigError(f"Consumption of {reagent.name} exceeds its capacity")
        for mode in AnalysisMode:
            if self.waste_per_sample(mode) > self.waste_capacity:
                raise ConfigError(f"Waste of one {mode.name} analysis exceeds waste capacity")

        for name in ("reagent_low_threshold", "waste_high_threshold"):
            if not 0 <= getattr(self, name) <= 100:
                raise ConfigError(f"{name} must be a percentage, got {getattr(self, name)}")

        for name in (
            "incubation_time",
            "prep_time",
            "reagent_replace_time",
            "waste_disposal_time",
            "finish_time",
        ):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} can't be negative, got {getattr(self, name)}")
        if self.status_check_interval <= 0:
            raise ConfigError(
                f"status_check_interval must be positive, got {self.status_check_interval}"
            )

        for name in ("analysis_time", "inter_arrival_time"):
            distribution = getattr(self, name)
            if distribution.distr == DistrFunc.Enumerated:
                raise ConfigError(f"{name} must be a continuous distribution")
            missing = set(REQUIRED_DISTR_PARAMS[distribution.distr]) - set(
                distribution.params
            )
            if missing:
                raise ConfigError(f"{name} is missing parameters {sorted(missing)}")
            if distribution.distr == DistrFunc.Normal and distribution.params["sigma"] < 0:
                raise ConfigError(f"{name} has a negative sigma")
            if (
                distribution.distr == DistrFunc.Constant
                and distribution.params["constant"] < 0
            ):
                raise ConfigError(f"{name} can't be a negative constant")
            if distribution.distr == DistrFunc.Uniform and not (
                0 <= distribution.params["a"] <= distribution.params["b"]
            ):
                raise ConfigError(f"{name} needs 0 <= a <= b")
            if (
                distribution.distr == DistrFunc.Exponential
                and distribution.params["lambda"] <= 0
            ):
                raise ConfigError(f"{name} needs a positive rate")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> AnalyzerConfig:
        """
        Build a config from a parsed YAML/JSON mapping. Missing keys keep
        their defaults.

        Raises:
            ConfigError: if the mapping is malformed or violates an invariant.
        """
        data = data or {}
        try:
            ANALYZER_CONFIG_PARAMS.validate(data)
        except SchemaError as exc:
            raise ConfigError(f"Malformed analyzer config: {exc}") from exc

        kwargs: Dict[str, Any] = {}
        for name in ("analysis_time", "inter_arrival_time"):
            if name in data:
                kwargs[name] = Distribution.from_dict(data[name])
        if "reagents" in data:
            kwargs["reagents"] = [ReagentConfig(**reagent) for reagent in data["reagents"]]
        if "mode_probabilities" in data:
            kwargs["mode_probabilities"] = {
                AnalysisMode[mode]: probability
                for mode, probability in data["mode_probabilities"].items()
            }
        kwargs.update(data.get("maintenance", {}))
        plain = {
            fld.name for fld in fields(cls) if fld.name not in kwargs
        } - {"reagents", "mode_probabilities"}
        kwargs.update({key: value for key, value in data.items() if key in plain})
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> AnalyzerConfig:
        return cls.from_dict(yaml_to_dict(yaml_str))

    @classmethod
    def from_file(cls, filepath: str) -> AnalyzerConfig:
        logger.info("Loading analyzer config from %s", filepath)
        return cls.from_yaml(load_file(filepath))

    @classmethod
    def default(cls) -> AnalyzerConfig:
        return cls.from_yaml(load_resource(DEFAULT_CONFIG_FILE, labsim))

    def todict(self) -> Dict[str, Any]:
        return {
            "seed": self.seed,
            "analysis_time": self.analysis_time.todict(),
            "inter_arrival_time": self.inter_arrival_time.todict(),
            "incubation_time": self.incubation_time,
            "autoloader_capacity": self.autoloader_capacity,
            "sample_volume": self.sample_volume,
            "reagents": [
                {
                    "name": reagent.name,
                    "capacity": reagent.capacity,
                    "per_sample": reagent.per_sample,
                    "per_diff_sample": reagent.per_diff_sample,
                }
                for reagent in self.reagents
            ],
            "waste_capacity": self.waste_capacity,
            "reagent_low_threshold": self.reagent_low_threshold,
            "waste_high_threshold": self.waste_high_threshold,
            "mode_probabilities": {
                mode.name: probability
                for mode, probability in self.mode_probabilities.items()
            },
            "rerun_probability": self.rerun_probability,
            "maintenance": {
                "prep_time": self.prep_time,
                "reagent_replace_time": self.reagent_replace_time,
                "waste_disposal_time": self.waste_disposal_time,
                "finish_time": self.finish_time,
            },
            "status_check_interval": self.status_check_interval,
        }
