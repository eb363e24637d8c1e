import argparse
import dataclasses
import json
import sys
from typing import Dict, List, Optional, Union

from labsim.analyzer.analysis import LabAnalyser
from labsim.analyzer.simulator import create_simulation, get_outcome_summary, run
from labsim.config import AnalyzerConfig, ConfigError

DEFAULT_UNTIL = 4 * 3600


def parse_args(
    argv: Optional[List[str]] = None,
) -> Dict[str, Union[str, int, float, bool, None]]:
    parser = argparse.ArgumentParser(
        description="Simulate a hematology analyzer processing a stream of blood samples."
    )
    parser.add_argument("--config", help="Path to an analyzer config (YAML)")
    parser.add_argument(
        "--until",
        type=float,
        default=DEFAULT_UNTIL,
        help="Simulated time to run, in seconds (default: 4 hours)",
    )
    parser.add_argument("--seed", type=int, help="Override the config seed")
    parser.add_argument(
        "--trace-dir", help="Write outcome records and status changes to this directory"
    )
    return vars(parser.parse_args(argv))


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = (
            AnalyzerConfig.from_file(args["config"])
            if args["config"]
            else AnalyzerConfig.default()
        )
        if args["seed"] is not None:
            config = dataclasses.replace(config, seed=args["seed"])
    except ConfigError as exc:
        print(f"Invalid config: {exc}", file=sys.stderr)
        return 2

    sim = create_simulation(config)
    run(
        sim,
        args["until"],
        enable_trace=bool(args["trace_dir"]),
        trace_dir=args["trace_dir"] or "",
    )

    print(json.dumps(get_outcome_summary(sim).todict(), indent=2))
    tat_table = LabAnalyser.from_store(sim.sink).tat_by_mode()
    if not tat_table.empty:
        print(tat_table.to_string())
    return 0


if __name__ == "__main__":
    sys.exit(main())
