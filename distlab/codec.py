"""Length-prefixed, type-guided serialisation that flags values which will not travel intact.

Each message on the stream is a 4-byte big-endian length followed by a UTF-8
JSON document. The decoder rebuilds values from the target type it is given:
dataclass field annotations guide the structure, and fields annotated ``Any``
(or ``object``) carry the registered name of their dynamic type, so that type
must be registered on both ends. Annotations given as strings are not
resolved; such fields travel as plain JSON values.

Dataclass fields whose names start with an underscore are private: they are
never sent, and the first time such a type is seen a warning is logged and the
error counter goes up. Decoding into an instance that already holds non-default
values also logs a warning and bumps the counter, since that usually means a
reply or restore target is being reused.
"""

import base64
import binascii
import dataclasses
import enum
import functools
import json
import logging
import struct
import threading
import types
import typing
from collections.abc import Mapping
from typing import Any, BinaryIO

_log = logging.getLogger(__name__)
_HEADER = struct.Struct(">I")
_UNION_ORIGINS = (typing.Union, types.UnionType)
_PRIMITIVES = (bool, int, float, str)

_lock = threading.Lock()
_errors = 0
_checked: set = set()
_names_by_type: dict = {}
_types_by_name: dict = {}

for _builtin in (bool, int, float, str, bytes, list, tuple, dict, set, frozenset):
    _names_by_type[_builtin] = _builtin.__name__
    _types_by_name[_builtin.__name__] = _builtin


class CodecError(ValueError):
    """Raised when a value cannot be encoded or a message cannot be decoded."""


class LabEncoder:
    """Writes values to a binary stream, one length-prefixed message per value."""

    def __init__(self, stream: BinaryIO):
        self._stream = stream

    def encode(self, value: Any) -> None:
        """Serialise ``value`` and write it to the stream."""
        _check_type(type(value))
        payload = _encode(value, type(value))
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        self._stream.write(_HEADER.pack(len(body)) + body)


class LabDecoder:
    """Reads values written by :class:`LabEncoder` from a binary stream."""

    def __init__(self, stream: BinaryIO):
        self._stream = stream

    def decode(self, target: Any) -> Any:
        """Read the next message and return it decoded as ``target``.

        ``target`` is either a type (``int``, a dataclass, ``list[T]``, ...) or an
        instance whose type is used. Raises EOFError when the stream is exhausted.
        """
        if _is_hint(target):
            hint = target
        else:
            _check_default(target, 1, "")
            hint = type(target)
        _check_type(hint)
        return _decode(self._read(), hint)

    def _read(self) -> Any:
        header = self._stream.read(_HEADER.size)
        if not header:
            raise EOFError("no more messages")
        if len(header) < _HEADER.size:
            raise CodecError("truncated message header")
        (length,) = _HEADER.unpack(header)
        body = self._stream.read(length)
        if len(body) < length:
            raise CodecError("truncated message body")
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise CodecError(f"malformed message: {exc}") from exc


def register(value: Any) -> None:
    """Register a type (or the type of an instance) for use in ``Any`` fields."""
    cls = value if isinstance(value, type) else type(value)
    register_name(f"{cls.__module__}.{cls.__qualname__}", cls)


def register_name(name: str, value: Any) -> None:
    """Register a type (or the type of an instance) under an explicit name."""
    cls = value if isinstance(value, type) else type(value)
    _check_type(cls)
    with _lock:
        known_type = _types_by_name.get(name)
        known_name = _names_by_type.get(cls)
        if known_type is not None and known_type is not cls:
            raise ValueError(f"registering duplicate names for {name!r}")
        if known_name is not None and known_name != name:
            raise ValueError(
                f"registering duplicate types for {cls.__qualname__}: {known_name!r} != {name!r}"
            )
        _types_by_name[name] = cls
        _names_by_type[cls] = name


def error_count() -> int:
    """Number of warnings raised so far about private fields and non-default targets."""
    with _lock:
        return _errors


def _bump_errors() -> int:
    global _errors
    with _lock:
        before = _errors
        _errors += 1
        return before


def _is_hint(target: Any) -> bool:
    return (
        isinstance(target, type)
        or target is Any
        or typing.get_origin(target) is not None
    )


def _is_union(hint: Any) -> bool:
    return typing.get_origin(hint) in _UNION_ORIGINS


def _is_interface(hint: Any) -> bool:
    return hint is Any or hint is object


def _is_dataclass_type(hint: Any) -> bool:
    return isinstance(hint, type) and dataclasses.is_dataclass(hint)


def _optional_inner(hint: Any) -> Any:
    """The single non-None member of an Optional hint; a wider union is dynamic."""
    members = [arg for arg in typing.get_args(hint) if arg is not type(None)]
    return members[0] if len(members) == 1 else Any


@functools.lru_cache(maxsize=None)
def _field_hints(cls: type) -> dict:
    return {
        f.name: (None if isinstance(f.type, str) else f.type)
        for f in dataclasses.fields(cls)
    }


def _pair_hints(hint: Any) -> tuple:
    args = typing.get_args(hint)
    return args if len(args) == 2 else (None, None)


def _item_hints(hint: Any, count: int) -> list:
    args = typing.get_args(hint)
    if not args:
        return [None] * count
    if typing.get_origin(hint) is tuple and args[-1] is not Ellipsis:
        if len(args) != count:
            raise CodecError(f"expected {len(args)} items for {hint!r}, got {count}")
        return list(args)
    return [args[0]] * count


def _check_type(hint: Any) -> None:
    with _lock:
        try:
            if hint in _checked:
                return
            _checked.add(hint)
        except TypeError:
            pass
    if _is_dataclass_type(hint):
        hints = _field_hints(hint)
        for f in dataclasses.fields(hint):
            if f.name.startswith("_"):
                _log.warning(
                    "codec error: private field %s of %s in RPC or persisted state will not be sent",
                    f.name,
                    hint.__name__,
                )
                _bump_errors()
            _check_type(hints.get(f.name))
        return
    for arg in typing.get_args(hint):
        if arg is not Ellipsis and arg is not None:
            _check_type(arg)


def _check_default(value: Any, depth: int, name: str) -> None:
    if depth > 3 or value is None:
        return
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        for f in dataclasses.fields(value):
            qualified = f"{name}.{f.name}" if name else f.name
            _check_default(getattr(value, f.name), depth + 1, qualified)
        return
    if isinstance(value, _PRIMITIVES) and value:
        if _bump_errors() < 1:
            _log.warning(
                "codec warning: decoding into a non-default variable/field %s may not work",
                name or type(value).__name__,
            )


def _encode(value: Any, hint: Any) -> Any:
    if _is_union(hint):
        return None if value is None else _encode(value, _optional_inner(hint))
    if _is_interface(hint):
        if value is None:
            return None
        try:
            name = _names_by_type[type(value)]
        except KeyError:
            raise CodecError(
                f"type not registered for interface: {type(value).__qualname__}"
            ) from None
        return {"type": name, "value": _encode(value, type(value))}
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        return _encode(value.value, None)
    if isinstance(value, _PRIMITIVES):
        return value
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(value).decode("ascii")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        hints = _field_hints(type(value))
        return {
            f.name: _encode(getattr(value, f.name), hints.get(f.name))
            for f in dataclasses.fields(value)
            if not f.name.startswith("_")
        }
    if isinstance(value, Mapping):
        key_hint, value_hint = _pair_hints(hint)
        return [[_encode(k, key_hint), _encode(v, value_hint)] for k, v in value.items()]
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
        return [_encode(item, h) for item, h in zip(items, _item_hints(hint, len(items)))]
    raise CodecError(f"cannot encode value of type {type(value).__qualname__}")


def _decode(data: Any, hint: Any) -> Any:
    if hint is None:
        return data
    if _is_union(hint):
        return None if data is None else _decode(data, _optional_inner(hint))
    if _is_interface(hint):
        if data is None:
            return None
        if not isinstance(data, dict) or set(data) != {"type", "value"}:
            raise CodecError("malformed interface value")
        try:
            cls = _types_by_name[data["type"]]
        except KeyError:
            raise CodecError(f"name not registered for interface: {data['type']!r}") from None
        return _decode(data["value"], cls)
    if data is None:
        raise CodecError(f"missing value for {hint!r}")
    if isinstance(hint, type) and issubclass(hint, enum.Enum):
        try:
            return hint(data)
        except ValueError as exc:
            raise CodecError(str(exc)) from exc
    if hint is bool:
        if isinstance(data, bool):
            return data
    elif hint is int:
        if isinstance(data, int) and not isinstance(data, bool):
            return data
    elif hint is float:
        if isinstance(data, (int, float)) and not isinstance(data, bool):
            return float(data)
    elif hint is str:
        if isinstance(data, str):
            return data
    elif hint in (bytes, bytearray):
        if isinstance(data, str):
            try:
                return hint(base64.b64decode(data, validate=True))
            except binascii.Error as exc:
                raise CodecError(f"malformed bytes: {exc}") from exc
    elif _is_dataclass_type(hint):
        return _decode_struct(data, hint)
    else:
        origin = typing.get_origin(hint) or hint
        if origin in (list, tuple, set, frozenset):
            if isinstance(data, list):
                hints = _item_hints(hint, len(data))
                return origin(_decode(item, h) for item, h in zip(data, hints))
        elif origin in (dict, Mapping):
            if isinstance(data, list):
                key_hint, value_hint = _pair_hints(hint)
                result = {}
                for pair in data:
                    if not isinstance(pair, list) or len(pair) != 2:
                        raise CodecError("malformed map entry")
                    result[_decode(pair[0], key_hint)] = _decode(pair[1], value_hint)
                return result
        else:
            raise CodecError(f"unsupported target type {hint!r}")
    raise CodecError(f"cannot decode {type(data).__name__} into {hint!r}")


def _decode_struct(data: Any, cls: type) -> Any:
    if not isinstance(data, dict):
        raise CodecError(f"expected an object for {cls.__qualname__}")
    hints = _field_hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):
        if not f.init:
            continue
        field_hint = hints.get(f.name)
        if f.name in data and not f.name.startswith("_"):
            kwargs[f.name] = _decode(data[f.name], field_hint)
        elif f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING:
            kwargs[f.name] = _zero(field_hint)
    return cls(**kwargs)


def _zero(hint: Any) -> Any:
    if hint is None or _is_interface(hint) or _is_union(hint):
        return None
    if isinstance(hint, type) and issubclass(hint, enum.Enum):
        return next(iter(hint), None)
    if _is_dataclass_type(hint):
        return _decode_struct({}, hint)
    origin = typing.get_origin(hint) or hint
    if origin in (bool, int, float, str, bytes, bytearray, list, tuple, set, frozenset, dict):
        return origin()
    return None