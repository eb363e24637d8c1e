from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
import random
import statistics
import itertools
from typing import (
    Any,
    Dict,
    Generator,
    Iterable,
    List,
    Optional,
    Tuple,
    Union,
)

import scipy.stats
import numpy as np


Sample = Iterable[Union[int, float]]
SEED = 0


class DistrFunc(IntEnum):
    """Enum for supported distribution functions."""

    Constant = 0
    Normal = 1
    Uniform = 2
    Exponential = 3
    Enumerated = 4


@dataclass(frozen=True)
class Distribution:
    """
    A distribution function with its parameters, e.g.
    ``Distribution(DistrFunc.Normal, {"mu": 60, "sigma": 5})``.

    Parameters per function:
      - Constant: constant
      - Normal: mu, sigma, optional min (draws are floored at min)
      - Uniform: a, b
      - Exponential: lambda (rate)
      - Enumerated: values (mapping of outcome -> probability, kept in order)
    """

    distr: DistrFunc
    params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Distribution:
        """
        Build from ``{"distr": "Normal", "params": {"mu": .., "sigma": ..}}``.
        """
        distr = data["distr"]
        if isinstance(distr, str):
            distr = DistrFunc[distr]
        return cls(DistrFunc(distr), dict(data.get("params", {})))

    @classmethod
    def constant(cls, value: float) -> Distribution:
        return cls(DistrFunc.Constant, {"constant": value})

    @classmethod
    def normal(cls, mu: float, sigma: float, min: Optional[float] = None) -> Distribution:
        params: Dict[str, Any] = {"mu": mu, "sigma": sigma}
        if min is not None:
            params["min"] = min
        return cls(DistrFunc.Normal, params)

    @classmethod
    def enumerated(cls, values: Dict[Any, float]) -> Distribution:
        return cls(DistrFunc.Enumerated, {"values": dict(values)})

    def todict(self) -> Dict[str, Any]:
        return {"distr": self.distr.name, "params": dict(self.params)}


class RandomSource:
    """
    Deterministic random source. Each instance owns its own generator, so
    two sources created with the same seed produce the same sequence of
    draws regardless of anything else running in the interpreter.
    """

    def __init__(self, seed: int = SEED):
        self.seed = seed
        self._random = random.Random(seed)

    def random(self) -> float:
        """Single draw from Uniform[0, 1)."""
        return self._random.random()

    def sample(self, distribution: Distribution) -> Any:
        """
        Draw one value from the given distribution.
        """
        params = distribution.params
        if distribution.distr == DistrFunc.Constant:
            return params["constant"]

        if distribution.distr == DistrFunc.Normal:
            value = self._random.normalvariate(params["mu"], params["sigma"])
            if params.get("min") is not None:
                value = max(params["min"], value)
            return value

        if distribution.distr == DistrFunc.Uniform:
            a, b = params["a"], params["b"]
            return a + (b - a) * self._random.random()

        if distribution.distr == DistrFunc.Exponential:
            return self._random.expovariate(params["lambda"])

        if distribution.distr == DistrFunc.Enumerated:
            draw = self._random.random()
            cumulative = 0.0
            outcome = None
            for outcome, probability in params["values"].items():
                cumulative += probability
                if draw < cumulative:
                    return outcome
            # Rounding in the table can leave a sliver above the last bound.
            return outcome

        raise RuntimeError(f"Unknown distribution function: {distribution.distr}")

    def stream(
        self, distribution: Distribution, count: Optional[int] = None
    ) -> Generator[Any, None, None]:
        """
        Infinite (or `count`-long) generator of draws from the distribution.
        """

        def gen() -> Generator[Any, None, None]:
            while True:
                yield self.sample(distribution)

        return gen() if not count else itertools.islice(gen(), count)


def sample_mean(sample: Sample) -> float:
    """
    Computes the arithmetic mean of the sample.

    Args:
      sample: The sample data.

    Returns:
      Mean (float).
    """
    return statistics.fmean(sample)


def sample_stdev(sample: Sample) -> float:
    """
    Computes the sample standard deviation.

    Args:
      sample: The sample data.

    Returns:
      Standard deviation (float).
    """
    return statistics.stdev(sample)


def sample_variance(sample: Sample) -> float:
    """
    Computes the sample variance.
    """
    return statistics.variance(sample)


def sample_percentile(sample: Sample, q: float) -> float:
    """
    Computes the q-th percentile (0 <= q <= 100) of the sample using numpy.
    """
    return float(np.percentile(np.asarray(list(sample), dtype=float), q))


def mean_confidence_interval(
    sample: Sample, confidence: float = 0.95
) -> Tuple[float, float]:
    """
    Student-t confidence interval of the sample mean.

    Args:
      sample: The sample data (at least two values).
      confidence: Confidence level (default 0.95).

    Returns:
      (low, high) bounds of the interval.
    """
    data = list(sample)
    if len(data) < 2:
        raise ValueError(
            f"Can't compute a confidence interval from {len(data)} value(s)"
        )
    mean = sample_mean(data)
    sem = scipy.stats.sem(data)
    if sem == 0:
        return mean, mean
    low, high = scipy.stats.t.interval(confidence, len(data) - 1, loc=mean, scale=sem)
    return float(low), float(high)


def histogram(
    sample: Sample, bins: int, normalize: bool = False
) -> Tuple[List[float], List[float]]:
    """
    Computes the histogram of a sample using numpy.histogram.

    Args:
      sample: The sample data
      bins: Number of bins
      normalize: If True, returns the normalized histogram (pdf-like)

    Returns:
      (hist, bin_edges) as lists (not numpy arrays).
    """
    hist, bin_edges = np.histogram(list(sample), bins=bins, density=normalize)
    return list(hist), list(bin_edges)


def describe(sample: Sample) -> Dict[str, Optional[float]]:
    """
    Summary statistics of a metric sample: count, mean, stdev, min, max,
    median, p90 and the 95% confidence interval of the mean. Entries that
    need more values than available are None.
    """
    data = list(sample)
    summary: Dict[str, Optional[float]] = {
        "count": len(data),
        "mean": None,
        "stdev": None,
        "min": None,
        "max": None,
        "median": None,
        "p90": None,
        "ci95_low": None,
        "ci95_high": None,
    }
    if not data:
        return summary
    summary["mean"] = sample_mean(data)
    summary["min"] = float(min(data))
    summary["max"] = float(max(data))
    summary["median"] = sample_percentile(data, 50)
    summary["p90"] = sample_percentile(data, 90)
    if len(data) > 1:
        summary["stdev"] = sample_stdev(data)
        summary["ci95_low"], summary["ci95_high"] = mean_confidence_interval(data)
    return summary
