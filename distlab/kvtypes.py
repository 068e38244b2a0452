"""Key/value service messages and the sequential model used to check histories of them."""

import enum
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable

_GET = 0
_PUT = 1
_INVALID = "<invalid>"


class Err(str, enum.Enum):
    """Outcome of a Get or Put."""

    OK = "OK"
    ERR_NO_KEY = "ErrNoKey"
    ERR_VERSION = "ErrVersion"
    ERR_MAYBE = "ErrMaybe"
    ERR_WRONG_LEADER = "ErrWrongLeader"
    ERR_WRONG_GROUP = "ErrWrongGroup"

    def __str__(self) -> str:
        return self.value


@dataclass
class PutArgs:
    key: str
    value: str
    version: int = 0


@dataclass
class PutReply:
    err: Err = Err.OK


@dataclass
class GetArgs:
    key: str


@dataclass
class GetReply:
    value: str = ""
    version: int = 0
    err: Err = Err.OK


@dataclass(frozen=True)
class KvInput:
    """A client request: op 0 is a get, op 1 is a put."""

    op: int
    key: str
    value: str = ""
    version: int = 0


@dataclass(frozen=True)
class KvOutput:
    value: str = ""
    version: int = 0
    err: str = ""


@dataclass(frozen=True)
class KvState:
    """The model's view of a single key."""

    value: str = ""
    version: int = 0


@dataclass(frozen=True)
class Operation:
    """One request as a client saw it, with call and return timestamps."""

    input: KvInput
    output: KvOutput
    call: int
    ret: int
    client_id: int = 0


def kv_partition(history: Iterable[Operation]) -> list[list[Operation]]:
    """Split a history by key, keys in sorted order, each part in history order."""
    by_key: dict[str, list[Operation]] = defaultdict(list)
    for op in history:
        by_key[op.input.key].append(op)
    return [by_key[key] for key in sorted(by_key)]


def kv_init() -> KvState:
    """The state of a key that has never been written."""
    return KvState("", 0)


def kv_step(state: KvState, input: KvInput, output: KvOutput) -> tuple[bool, Any]:
    """Whether ``output`` is legal for ``input`` in ``state``, and the state after it."""
    if input.op == _GET:
        return output.value == state.value, state
    if input.op == _PUT:
        if state.version == input.version:
            legal = output.err in (Err.OK, Err.ERR_MAYBE)
            return legal, KvState(input.value, state.version + 1)
        return output.err in (Err.ERR_VERSION, Err.ERR_MAYBE), state
    return False, _INVALID


def describe_operation(input: KvInput, output: KvOutput) -> str:
    """A one-line human description of a request and its outcome."""
    if input.op == _GET:
        return (
            f"get('{input.key}') -> "
            f"('{output.value}', '{output.version}', '{output.err}')"
        )
    if input.op == _PUT:
        return (
            f"put('{input.key}', '{input.value}', '{input.version}') -> "
            f"('{output.err}')"
        )
    return _INVALID