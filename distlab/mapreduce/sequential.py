"""Run a MapReduce job in a single process, writing everything to one output file."""

import sys
from itertools import groupby
from operator import attrgetter
from typing import Iterable

from distlab.mapreduce.worker import MapFunc, ReduceFunc, load_plugin

_by_key = attrgetter("key")


def run_sequential(
    mapf: MapFunc, reducef: ReduceFunc, filenames: Iterable[str], output
) -> None:
    """Map every input file, then reduce each distinct key in sorted order into ``output``."""
    intermediate = []
    for filename in filenames:
        with open(filename, encoding="utf-8") as f:
            content = f.read()
        intermediate.extend(mapf(filename, content))

    intermediate.sort(key=_by_key)

    with open(output, "w", encoding="utf-8") as out:
        for key, group in groupby(intermediate, key=_by_key):
            values = [kv.value for kv in group]
            out.write(f"{key} {reducef(key, values)}\n")


def main(argv=None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) < 2:
        print("Usage: mrsequential plugin.py inputfiles...", file=sys.stderr)
        return 1
    try:
        mapf, reducef = load_plugin(args[0])
        run_sequential(mapf, reducef, args[1:], "mr-out-0")
    except LookupError as exc:
        print(exc, file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"cannot open {exc.filename}: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())