"""A MapReduce worker: asks the coordinator for tasks, runs them and reports back."""

import glob
import io
import json
import os
import socket
import sys
import time
from collections import defaultdict
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from distlab.codec import LabDecoder, LabEncoder
from distlab.mapreduce.coordinator import TEMP_DIR
from distlab.mapreduce.protocol import (
    GetReduceCountArgs,
    GetReduceCountReply,
    GetTaskArgs,
    GetTaskReply,
    KeyValue,
    ReportTaskArgs,
    ReportTaskReply,
    TaskType,
    coordinator_sock,
)

TASK_INTERVAL = 200  # ms

MapFunc = Callable[[str, str], Iterable[KeyValue]]
ReduceFunc = Callable[[str, list], str]

_REPLY_TYPES = {
    "Coordinator.GetReduceCount": GetReduceCountReply,
    "Coordinator.GetTask": GetTaskReply,
    "Coordinator.ReportTask": ReportTaskReply,
}

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193

_PLUGINS: dict = {}


def ihash(key: str) -> int:
    """Non-negative 32-bit FNV-1a hash of ``key``, used to pick a reduce partition."""
    h = _FNV_OFFSET
    for byte in key.encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h & 0x7FFFFFFF


def register_plugin(name: str, mapf: MapFunc, reducef: ReduceFunc) -> None:
    """Make a pair of Map and Reduce functions loadable under ``name``."""
    if not callable(mapf) or not callable(reducef):
        raise TypeError("Map and Reduce must be callable")
    _PLUGINS[name] = (mapf, reducef)


def load_plugin(filename) -> tuple:
    """Return the registered ``(Map, Reduce)`` pair named by the file's stem."""
    name = Path(str(filename)).stem
    try:
        return _PLUGINS[name]
    except KeyError:
        raise LookupError(f"cannot find Map and Reduce for {filename}") from None


def write_map_output(kva: Iterable[KeyValue], map_id: int, n_reduce: int) -> list:
    """Partition pairs into ``n_reduce`` JSON-lines files, renamed into place when complete.

    Returns the final paths, one per reduce partition.
    """
    prefix = os.path.join(TEMP_DIR, f"mr-{map_id}")
    pid = os.getpid()
    temp_paths = [f"{prefix}-{i}-{pid}" for i in range(n_reduce)]
    with ExitStack() as stack:
        files = [stack.enter_context(open(path, "w", encoding="utf-8")) for path in temp_paths]
        for kv in kva:
            record = json.dumps({"Key": kv.key, "Value": kv.value})
            files[ihash(kv.key) % n_reduce].write(record + "\n")
    final_paths = []
    for i, path in enumerate(temp_paths):
        final = f"{prefix}-{i}"
        os.replace(path, final)
        final_paths.append(final)
    return final_paths


def write_reduce_output(
    kv_map: Mapping[str, list], reducef: ReduceFunc, reduce_id: int
) -> str:
    """Reduce each key in sorted order and write ``mr-out-<reduce_id>`` atomically.

    Returns the path of the output file.
    """
    temp_path = os.path.join(TEMP_DIR, f"mr-out-{reduce_id}-{os.getpid()}")
    with open(temp_path, "w", encoding="utf-8") as out:
        for key in sorted(kv_map):
            out.write(f"{key} {reducef(key, kv_map[key])}\n")
    final = f"mr-out-{reduce_id}"
    os.replace(temp_path, final)
    return final


def execute_map_task(mapf: MapFunc, file_path: str, task_id: int, n_reduce: int) -> list:
    """Run Map over one input file and return the intermediate file paths."""
    with open(file_path, encoding="utf-8") as f:
        content = f.read()
    return write_map_output(mapf(file_path, content), task_id, n_reduce)


def execute_reduce_task(reducef: ReduceFunc, reduce_id: int) -> str:
    """Gather every map output for this partition, reduce it and return the output path."""
    kv_map: dict = defaultdict(list)
    pattern = os.path.join(TEMP_DIR, f"mr-*-{reduce_id}")
    for path in sorted(glob.glob(pattern)):
        with open(path, encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    record = json.loads(line)
                    kv_map[record["Key"]].append(record["Value"])
    return write_reduce_output(kv_map, reducef, reduce_id)


def call(rpcname: str, args: Any) -> Any:
    """Send one request to the coordinator and return its reply.

    Raises OSError if the coordinator cannot be reached and RuntimeError if it
    reports an error.
    """
    buffer = io.BytesIO()
    encoder = LabEncoder(buffer)
    encoder.encode(rpcname)
    encoder.encode(args)
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.connect(coordinator_sock())
        sock.sendall(buffer.getvalue())
        with sock.makefile("rb") as stream:
            decoder = LabDecoder(stream)
            error = decoder.decode(str)
            if error:
                raise RuntimeError(error)
            reply_type = _REPLY_TYPES.get(rpcname)
            if reply_type is None:
                raise RuntimeError(f"no reply type known for {rpcname}")
            return decoder.decode(reply_type)


def _report_task_completion(task_type: TaskType, task_id: int) -> tuple:
    try:
        reply = call(
            "Coordinator.ReportTask", ReportTaskArgs(os.getpid(), task_type, task_id)
        )
    except RuntimeError as exc:
        print(exc)
        return False, False
    return reply.can_exit, True


def worker(mapf: MapFunc, reducef: ReduceFunc) -> None:
    """Run tasks from the coordinator until it says there is nothing left."""
    try:
        n_reduce = call("Coordinator.GetReduceCount", GetReduceCountArgs()).reduce_count
    except RuntimeError:
        print("Failed to get reduce count from coordinator")
        return

    while True:
        try:
            reply = call("Coordinator.GetTask", GetTaskArgs(os.getpid()))
        except RuntimeError:
            print("Failed to get task from coordinator")
            return

        if reply.task_type == TaskType.EXIT_TASK:
            print("All tasks have completed, worker exiting")
            return

        can_exit, success = False, True
        if reply.task_type == TaskType.MAP_TASK:
            execute_map_task(mapf, reply.file, reply.task_id, n_reduce)
            can_exit, success = _report_task_completion(TaskType.MAP_TASK, reply.task_id)
        elif reply.task_type == TaskType.REDUCE_TASK:
            execute_reduce_task(reducef, reply.task_id)
            can_exit, success = _report_task_completion(TaskType.REDUCE_TASK, reply.task_id)

        if can_exit or not success:
            print("Master exited or all tasks have been completed, worker exiting.")
            return

        time.sleep(TASK_INTERVAL / 1000)


def main(argv=None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 1:
        print("Usage: mrworker plugin", file=sys.stderr)
        return 1
    try:
        mapf, reducef = load_plugin(args[0])
    except LookupError as exc:
        print(f"cannot load plugin {args[0]}: {exc}", file=sys.stderr)
        return 1
    try:
        worker(mapf, reducef)
    except OSError as exc:
        print(f"dialing: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())