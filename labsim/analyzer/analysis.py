from __future__ import annotations

from io import TextIOWrapper
from json import loads
from typing import Dict, Iterable

import pandas as pd

from labsim.analyzer.stat import LabDataStore, OutcomeRecord


OUTCOME_COLUMNS = [
    "sample_id",
    "mode",
    "is_rerun",
    "queue_time",
    "analysis_start",
    "analysis_end",
    "outcome",
]


class LabAnalyser:
    """
    pandas views over the outcome records of a run, either taken directly
    from a LabDataStore or read back from a JSON-lines trace.
    """

    def __init__(self, outcomes: pd.DataFrame):
        self.outcomes: pd.DataFrame = outcomes

    @classmethod
    def from_records(cls, records: Iterable[OutcomeRecord]) -> LabAnalyser:
        rows = [record.todict() for record in records]
        return cls(cls._with_derived_columns(pd.DataFrame(rows, columns=OUTCOME_COLUMNS)))

    @classmethod
    def from_store(cls, store: LabDataStore) -> LabAnalyser:
        return cls.from_records(store.outcomes)

    @classmethod
    def from_trace(cls, fd: TextIOWrapper) -> LabAnalyser:
        """
        Read outcome records from a trace file. Lines that are not outcome
        records (e.g. status changes) are skipped.
        """
        rows = []
        for line in fd:
            data: Dict = loads(line)
            if "sample_id" in data:
                rows.append(data)
        return cls(cls._with_derived_columns(pd.DataFrame(rows, columns=OUTCOME_COLUMNS)))

    @staticmethod
    def _with_derived_columns(df: pd.DataFrame) -> pd.DataFrame:
        df = df.astype({"queue_time": float, "analysis_start": float, "analysis_end": float})
        df["turnaround_time"] = df["analysis_end"] - df["queue_time"]
        df["wait_time"] = df["analysis_start"] - df["queue_time"]
        df["process_time"] = df["analysis_end"] - df["analysis_start"]
        return df

    def outcome_counts(self) -> pd.Series:
        return self.outcomes.groupby("outcome").size()

    def tat_by_mode(self, outcome: str = "COMPLETED") -> pd.DataFrame:
        """
        Turnaround time statistics (count, mean, std, min, median, max) per
        analysis mode for samples with the given outcome.
        """
        selected = self.outcomes[self.outcomes["outcome"] == outcome]
        return (
            selected.groupby("mode")["turnaround_time"]
            .agg(["count", "mean", "std", "min", "median", "max"])
            .sort_index()
        )
