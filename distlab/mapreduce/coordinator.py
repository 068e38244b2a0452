"""The MapReduce coordinator: hands out map and reduce tasks and tracks their progress."""

import contextlib
import glob
import os
import shutil
import socketserver
import sys
import threading
import time
from dataclasses import dataclass
from typing import Iterable, Optional

from distlab.codec import CodecError, LabDecoder, LabEncoder
from distlab.mapreduce.protocol import (
    GetReduceCountArgs,
    GetReduceCountReply,
    GetTaskArgs,
    GetTaskReply,
    ReportTaskArgs,
    ReportTaskReply,
    TaskState,
    TaskType,
    coordinator_sock,
)

TEMP_DIR = "tmp"
TASK_TIMEOUT = 10  # seconds

_RPC_METHODS = {
    "Coordinator.GetReduceCount": ("get_reduce_count", GetReduceCountArgs),
    "Coordinator.GetTask": ("get_task", GetTaskArgs),
    "Coordinator.ReportTask": ("report_task", ReportTaskArgs),
}


@dataclass
class Task:
    state: TaskState
    worker_id: int
    task_type: TaskType
    file: str
    index: int


def _placeholder(task_type: TaskType) -> Task:
    return Task(
        state=TaskState.COMPLETED, worker_id=-1, task_type=task_type, file="", index=-1
    )


class _RPCHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        self.server.coordinator._handle(self.rfile, self.wfile)


class _RPCServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True

    def __init__(self, path: str, coordinator: "Coordinator"):
        self.coordinator = coordinator
        super().__init__(path, _RPCHandler)


class Coordinator:
    """Tracks map and reduce tasks; a task not reported in time is handed out again."""

    def __init__(self, files: Iterable[str], n_reduce: int, task_timeout: float = TASK_TIMEOUT):
        self._lock = threading.Lock()
        self.task_timeout = task_timeout
        self.map_tasks = [
            Task(TaskState.IDLE, -1, TaskType.MAP_TASK, file, index)
            for index, file in enumerate(files)
        ]
        self.reduce_tasks = [
            Task(TaskState.IDLE, -1, TaskType.REDUCE_TASK, "", index)
            for index in range(n_reduce)
        ]
        self._n_map = len(self.map_tasks)
        self._n_reduce = n_reduce
        self._server: Optional[_RPCServer] = None
        self._sockname: Optional[str] = None

    def __enter__(self) -> "Coordinator":
        return self

    def __exit__(self, *exc_info) -> None:
        self._close()

    def select_task(self, tasks: list, worker_id: int) -> Task:
        """Mark the first idle task as taken by ``worker_id``; a NO_TASK placeholder if none."""
        for task in tasks:
            if task.state == TaskState.IDLE:
                task.state = TaskState.IN_PROGRESS
                task.worker_id = worker_id
                return task
        return _placeholder(TaskType.NO_TASK)

    def get_reduce_count(self, args: GetReduceCountArgs) -> GetReduceCountReply:
        with self._lock:
            return GetReduceCountReply(len(self.reduce_tasks))

    def wait_for_task(self, task: Task) -> None:
        """Wait out the timeout, then put the task back if it is still in progress."""
        if task.task_type not in (TaskType.MAP_TASK, TaskType.REDUCE_TASK):
            return
        time.sleep(self.task_timeout)
        with self._lock:
            if task.state == TaskState.IN_PROGRESS:
                task.state = TaskState.IDLE
                task.worker_id = -1

    def get_task(self, args: GetTaskArgs) -> GetTaskReply:
        """Hand out a map task, then (once all maps are done) a reduce task."""
        with self._lock:
            if self._n_map > 0:
                task = self.select_task(self.map_tasks, args.worker_id)
            elif self._n_reduce > 0:
                task = self.select_task(self.reduce_tasks, args.worker_id)
            else:
                task = _placeholder(TaskType.EXIT_TASK)
            reply = GetTaskReply(task.task_type, task.index, task.file)
        threading.Thread(target=self.wait_for_task, args=(task,), daemon=True).start()
        return reply

    def report_task(self, args: ReportTaskArgs) -> ReportTaskReply:
        """Record a finished task if the reporter still owns it."""
        with self._lock:
            if args.task_type == TaskType.MAP_TASK:
                tasks = self.map_tasks
            elif args.task_type == TaskType.REDUCE_TASK:
                tasks = self.reduce_tasks
            else:
                raise ValueError(f"invalid task type {args.task_type!r}")
            if not 0 <= args.task_id < len(tasks):
                raise IndexError(f"no task {args.task_id}")
            task = tasks[args.task_id]
            if args.worker_id == task.worker_id and task.state == TaskState.IN_PROGRESS:
                task.state = TaskState.COMPLETED
                if args.task_type == TaskType.MAP_TASK and self._n_map > 0:
                    self._n_map -= 1
                elif args.task_type == TaskType.REDUCE_TASK and self._n_reduce > 0:
                    self._n_reduce -= 1
            return ReportTaskReply(self._n_map == 0 and self._n_reduce == 0)

    def serve(self) -> None:
        """Start answering worker requests on the coordinator socket in the background."""
        sockname = coordinator_sock()
        with contextlib.suppress(FileNotFoundError):
            os.remove(sockname)
        server = _RPCServer(sockname, self)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        self._server = server
        self._sockname = sockname

    def done(self) -> bool:
        """Whether every map and reduce task has completed."""
        with self._lock:
            return self._n_map == 0 and self._n_reduce == 0

    def _handle(self, rfile, wfile) -> None:
        decoder = LabDecoder(rfile)
        encoder = LabEncoder(wfile)
        try:
            rpcname = decoder.decode(str)
        except (EOFError, CodecError):
            return
        try:
            entry = _RPC_METHODS.get(rpcname)
            if entry is None:
                raise LookupError(f"rpc: can't find method {rpcname}")
            method_name, args_type = entry
            args = decoder.decode(args_type)
            reply = getattr(self, method_name)(args)
        except Exception as exc:
            encoder.encode(str(exc) or type(exc).__name__)
            return
        encoder.encode("")
        encoder.encode(reply)

    def _close(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        with contextlib.suppress(FileNotFoundError):
            os.remove(self._sockname)


def make_coordinator(files: Iterable[str], n_reduce: int) -> Coordinator:
    """Create a serving coordinator and reset the output and temporary directories."""
    coordinator = Coordinator(files, n_reduce)
    coordinator.serve()
    for path in glob.glob("mr-out*"):
        if os.path.isdir(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
    if os.path.exists(TEMP_DIR):
        shutil.rmtree(TEMP_DIR)
    os.mkdir(TEMP_DIR, 0o755)
    return coordinator


def main(argv=None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        print("Usage: mrcoordinator inputfiles...", file=sys.stderr)
        return 1
    with make_coordinator(args, 10) as coordinator:
        while not coordinator.done():
            time.sleep(1)
        time.sleep(1)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())