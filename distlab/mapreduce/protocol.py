"""Messages exchanged between the MapReduce coordinator and its workers."""

import enum
import os
from dataclasses import dataclass


class TaskState(enum.IntEnum):
    """Progress of one map or reduce task."""

    IDLE = 0
    IN_PROGRESS = 1
    COMPLETED = 2


class TaskType(enum.IntEnum):
    """What a worker is asked to do."""

    MAP_TASK = 0
    REDUCE_TASK = 1
    NO_TASK = 2
    EXIT_TASK = 3


@dataclass(frozen=True)
class KeyValue:
    """One pair emitted by a map function."""

    key: str
    value: str


@dataclass
class GetReduceCountArgs:
    pass


@dataclass
class GetReduceCountReply:
    reduce_count: int = 0


@dataclass
class GetTaskArgs:
    worker_id: int


@dataclass
class GetTaskReply:
    task_type: TaskType = TaskType.MAP_TASK
    task_id: int = 0
    file: str = ""


@dataclass
class ReportTaskArgs:
    worker_id: int
    task_type: TaskType
    task_id: int


@dataclass
class ReportTaskReply:
    can_exit: bool = False


def coordinator_sock() -> str:
    """A per-user UNIX-domain socket path for the coordinator."""
    return f"/var/tmp/distlab-mr-{os.getuid()}"