from __future__ import annotations

import dataclasses
import os
from enum import Enum
from json import dumps
from typing import Any, Callable, Optional


TRACE_SUFFIX = "trace.jsonl"


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.name
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def to_trace_line(data: Any) -> str:
    """
    Render one trace entry. Records with a `todict` method use it, other
    dataclasses go through `asdict`, dicts are dumped as JSON with enum
    members written by name. Anything else is written as its str().
    """
    if dataclasses.is_dataclass(data):
        data = data.todict() if hasattr(data, "todict") else dataclasses.asdict(data)
    elif not isinstance(data, dict):
        return str(data)
    return dumps(data, default=_json_default)


class Tracer:
    """
    Appends records of a run to a JSON-lines file named
    `<name>_trace.jsonl` (or `trace.jsonl`) inside `dir_path`.
    """

    def __init__(self, name: Optional[str] = None, dir_path: str = ""):
        self.name: Optional[str] = name
        filename = f"{name}_{TRACE_SUFFIX}" if name else TRACE_SUFFIX
        self.path: str = os.path.join(dir_path, filename)
        self.fd = open(self.path, "w", encoding="utf8")

    def __enter__(self) -> Tracer:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def dump_data(self, data: Any) -> None:
        self.fd.write(to_trace_line(data) + "\n")
        self.fd.flush()

    def get_trace_dumper(self, data: Any) -> Callable[[], None]:
        """
        Return a zero-argument callable that dumps the current state of
        `data`, e.g. to be registered as a stat callback.
        """

        def trace_dumper() -> None:
            self.dump_data(data)

        return trace_dumper

    def close(self) -> None:
        if not self.fd.closed:
            self.fd.close()
