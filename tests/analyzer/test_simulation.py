import json

import pytest

from labsim.analyzer.common import AnalysisMode, AnalyzerStatus, SampleOutcome
from labsim.analyzer.simulator import (
    LabSim,
    OutcomeSummary,
    create_simulation,
    get_outcome_summary,
    run,
)
from labsim.analyzer.stat import TURNAROUND_TIME
from labsim.config import AnalyzerConfig, ConfigError, ReagentConfig
from labsim.core import Process
from labsim.resource import AdmissionPolicy

from tests.common import _close, manual_sim


def stressed_config(**overrides) -> AnalyzerConfig:
    """
    Small consumables and frequent re-runs, so a few hours hit every
    failure and maintenance path.
    """
    params = {
        "seed": 11,
        "reagents": [
            ReagentConfig("Diluent", 5000.0, per_sample=2.0),
            ReagentConfig("Lyse", 20.0, per_diff_sample=0.5),
            ReagentConfig("Sheath", 10000.0, per_diff_sample=5.0),
            ReagentConfig("Detergent", 1000.0),
        ],
        "waste_capacity": 300.0,
        "rerun_probability": 0.2,
        "autoloader_capacity": 5,
    }
    params.update(overrides)
    return AnalyzerConfig(**params)


def test_same_seed_same_results():
    def one_run():
        sim = run(create_simulation(AnalyzerConfig(seed=7)), 4 * 3600)
        return sim.sink.outcomes, get_outcome_summary(sim).todict()

    first_outcomes, first_summary = one_run()
    second_outcomes, second_summary = one_run()

    assert first_outcomes
    assert first_outcomes == second_outcomes
    assert first_summary == second_summary


def test_different_seeds_differ():
    first = run(create_simulation(AnalyzerConfig(seed=1)), 3600)
    second = run(create_simulation(AnalyzerConfig(seed=2)), 3600)
    assert first.sink.outcomes != second.sink.outcomes


def test_invariants_hold_under_stress():
    config = stressed_config()
    sim = create_simulation(config)
    ctx = sim.ctx
    claims = []

    def on_status(state, old, new):
        claims.append(ctx.analyzer.claimed)

    ctx.status.subscribe(on_status)
    run(sim, 8 * 3600)
    sink = sim.sink

    assert sink.outcomes
    assert sink.maintenance_events
    assert sink.outcome_counts[SampleOutcome.INTERRUPTED] > 0
    assert all(claimed <= 1 for claimed in claims)
    assert ctx.analyzer.claimed <= 1

    # Analyses never overlap
    intervals = sorted(
        (record.analysis_start, record.analysis_end)
        for record in sink.outcomes
        if record.analysis_start is not None
    )
    for (_, end), (next_start, _) in zip(intervals, intervals[1:]):
        assert end <= next_start

    # Maintenance never overlaps an analysis
    for event in sink.maintenance_events:
        for start, end in intervals:
            assert not (start < event.end and event.start < end)

    # Levels stay within bounds
    for reagent in config.reagents:
        for _, level in sink.reagent_levels[reagent.name]:
            assert -1e-9 <= level <= reagent.capacity + 1e-9
    for _, level in sink.waste_levels:
        assert -1e-9 <= level <= config.waste_capacity + 1e-9

    for record in sink.outcomes:
        assert record.queue_time <= record.analysis_end
        if record.analysis_start is not None:
            assert record.queue_time <= record.analysis_start <= record.analysis_end

    sample_ids = [record.sample_id for record in sink.outcomes]
    assert len(sample_ids) == len(set(sample_ids))

    outcomes = {record.sample_id: record for record in sink.outcomes}
    for record in sink.outcomes:
        if record.is_rerun:
            assert record.mode == AnalysisMode.CBC_5DIFF_RRBC
            parent = outcomes[record.sample_id[: -len("_RRBC")]]
            assert parent.outcome == SampleOutcome.INTERRUPTED
            assert parent.mode == AnalysisMode.CBC_5DIFF

    summary = sim.summary()
    assert summary.total == len(sink.outcomes)
    assert summary.total == summary.completed + summary.interrupted + summary.failed
    assert summary.reagent_sessions + summary.waste_sessions >= len(
        sink.maintenance_events
    )
    assert 0 < summary.utilization <= 1


def test_stat_interval_does_not_change_utilization():
    plain = run(create_simulation(AnalyzerConfig(seed=3)), 7000)
    sampled = run(create_simulation(AnalyzerConfig(seed=3), stat_interval=600), 7000)

    assert plain.sink.outcomes == sampled.sink.outcomes
    _close(plain.utilization, sampled.utilization)
    assert len(sampled.stat.resource_stat_samples["Analyzer"]) == 11


def test_trace_written_to_file(tmp_path):
    sim = create_simulation(AnalyzerConfig(seed=5))
    run(sim, 3600, enable_trace=True, trace_dir=str(tmp_path))

    lines = [
        json.loads(line)
        for line in (tmp_path / "labsim_trace.jsonl").read_text().splitlines()
    ]
    outcome_lines = [line for line in lines if "sample_id" in line]
    status_lines = [line for line in lines if "status" in line]

    assert len(outcome_lines) == len(sim.sink.outcomes)
    assert outcome_lines[0]["sample_id"] == sim.sink.outcomes[0].sample_id
    assert len(status_lines) == len(sim.sink.status_changes) - 1
    assert status_lines[0]["previous"] == AnalyzerStatus.IDLE.name
    assert sim.ctx.tracer is None


def test_summary_of_maintenance_run():
    sim = manual_sim()
    ctx = sim.ctx
    ctx.reagents["Lyse"].take(950, AdmissionPolicy.FAIL)
    sim.submit(AnalysisMode.CBC_5DIFF, "A")
    sim.submit(AnalysisMode.CBC_5DIFF, "B")

    def raise_flag():
        yield helper.hold(10)
        ctx.needs_reagent.set(True)
        ctx.wake_technician()

    helper = Process(ctx, raise_flag())
    sim.run()

    summary = sim.summary()
    assert isinstance(summary, OutcomeSummary)
    assert summary.end_time == 900
    assert (summary.completed, summary.interrupted, summary.failed) == (2, 0, 0)
    assert summary.total == 2
    assert summary.rejected == 0
    _close(summary.utilization, 1.0)
    assert summary.status_time == {
        AnalyzerStatus.ANALYZING.name: 120,
        AnalyzerStatus.MAINTENANCE_REAGENT.name: 780,
    }
    assert (summary.maintenance_sessions, summary.reagent_sessions) == (1, 1)
    assert summary.waste_sessions == 0
    _close(summary.reagent_levels["Lyse"], 999.5)
    _close(summary.waste_level, 15.04)

    tat = summary.metrics[TURNAROUND_TIME]
    assert tat["count"] == 2
    _close(tat["mean"], (60 + 900) / 2)

    data = summary.todict()
    assert data["completed"] == 2
    assert data["status_time"]["ANALYZING"] == 120
    json.dumps(data)


def test_invalid_config_rejected_before_scheduling():
    config = AnalyzerConfig()
    object.__setattr__(config, "autoloader_capacity", 0)
    with pytest.raises(ConfigError, match="Autoloader capacity"):
        LabSim(config)
