"""An in-process RPC network that can lose, delay and reorder messages.

A :class:`Network` holds named client end-points and named servers. A
:class:`ClientEnd` talks to whichever server it has been connected to, and only
while it is enabled. A :class:`Server` is a collection of :class:`Service`
objects that share one dispatcher. A service exposes the public methods of a
receiver object that take exactly one positional argument. Each such method
receives the request arguments and returns the reply.

Arguments and replies are serialised with :mod:`distlab.codec` on the way
through, so caller and handler never share objects. Byte counts for the
statistics are the sizes of those serialised messages.

A call that gets no reply raises :class:`CallFailed`. That happens when the end
is disabled or unconnected, when the server has been deleted or replaced
while the handler ran, or when an unreliable network drops the request or the
reply. Calls may run concurrently on the same end and may complete out of
order.
"""

import inspect
import io
import random
import threading
import time
from concurrent import futures
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Optional

from distlab.codec import LabDecoder, LabEncoder

SHORT_DELAY = 27  # ms
LONG_DELAY = 7000  # ms
MAX_DELAY = LONG_DELAY + 100

_POLL_SECONDS = 0.1


class CallFailed(ConnectionError):
    """No reply arrived: the request or reply was lost, or the server is gone."""


class UnknownMethodError(LookupError):
    """The requested service or method does not exist on the server."""


@dataclass(frozen=True)
class _Request:
    endname: Hashable
    svc_meth: str
    args_type: type
    args: bytes


@dataclass(frozen=True)
class _Reply:
    ok: bool
    data: bytes = b""
    reply_type: Optional[type] = None
    error: Optional[BaseException] = None


_FAILED = _Reply(ok=False)


def _serialise(value: Any) -> bytes:
    buffer = io.BytesIO()
    LabEncoder(buffer).encode(value)
    return buffer.getvalue()


def _deserialise(data: bytes, hint: type) -> Any:
    return LabDecoder(io.BytesIO(data)).decode(hint)


class ClientEnd:
    """A client end-point: sends requests to the server it is connected to."""

    def __init__(self, endname: Hashable, network: "Network"):
        self._endname = endname
        self._network = network

    @property
    def endname(self) -> Hashable:
        return self._endname

    def call(self, svc_meth: str, args: Any) -> Any:
        """Send ``args`` to ``"Service.method"`` and return the handler's reply.

        Raises CallFailed if no reply was received, UnknownMethodError if the
        server has no such service or method, and re-raises whatever the
        handler itself raised.
        """
        request = _Request(self._endname, svc_meth, type(args), _serialise(args))
        if self._network.closed:
            raise CallFailed("network has been cleaned up")
        reply = self._network._deliver(request)
        if reply.error is not None:
            raise reply.error
        if not reply.ok:
            raise CallFailed(f"no reply to {svc_meth} from {self._endname!r}")
        if reply.reply_type is None:
            return None
        return _deserialise(reply.data, reply.reply_type)


class Network:
    """The simulated network: ends, servers, connections and statistics."""

    def __init__(self):
        self._lock = threading.Lock()
        self._reliable = True
        self._long_delays = False
        self._long_reordering = False
        self._ends: dict = {}
        self._enabled: dict = {}
        self._servers: dict = {}
        self._connections: dict = {}
        self._done = threading.Event()
        self._count = 0
        self._bytes = 0

    def __enter__(self) -> "Network":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cleanup()

    @property
    def closed(self) -> bool:
        return self._done.is_set()

    def cleanup(self) -> None:
        """Shut the network down; later calls fail at once."""
        self._done.set()

    def reliable(self, yes: bool) -> None:
        """Set whether messages may be dropped and delayed."""
        with self._lock:
            self._reliable = yes

    def is_reliable(self) -> bool:
        with self._lock:
            return self._reliable

    def long_reordering(self, yes: bool) -> None:
        """Set whether replies are sometimes held back for a long while."""
        with self._lock:
            self._long_reordering = yes

    def long_delays(self, yes: bool) -> None:
        """Set whether calls on disabled ends take a long time to fail."""
        with self._lock:
            self._long_delays = yes

    def make_end(self, endname: Hashable) -> ClientEnd:
        """Create a disabled, unconnected end-point with the given name."""
        with self._lock:
            if endname in self._ends:
                raise ValueError(f"end {endname!r} already exists")
            end = ClientEnd(endname, self)
            self._ends[endname] = end
            self._enabled[endname] = False
            self._connections[endname] = None
            return end

    def delete_end(self, endname: Hashable) -> None:
        with self._lock:
            if endname not in self._ends:
                raise KeyError(f"end {endname!r} doesn't exist")
            del self._ends[endname]
            del self._enabled[endname]
            del self._connections[endname]

    def add_server(self, servername: Hashable, server: "Server") -> None:
        with self._lock:
            self._servers[servername] = server

    def delete_server(self, servername: Hashable) -> None:
        """Kill a server: calls in progress on it fail, later ones get no reply."""
        with self._lock:
            self._servers[servername] = None

    def connect(self, endname: Hashable, servername: Hashable) -> None:
        with self._lock:
            self._connections[endname] = servername

    def enable(self, endname: Hashable, enabled: bool) -> None:
        with self._lock:
            self._enabled[endname] = enabled

    def get_count(self, servername: Hashable) -> int:
        """Number of requests the named server has received."""
        with self._lock:
            server = self._servers.get(servername)
        if server is None:
            raise KeyError(f"no server {servername!r}")
        return server.get_count()

    def get_total_count(self) -> int:
        with self._lock:
            return self._count

    def get_total_bytes(self) -> int:
        with self._lock:
            return self._bytes

    def _add_bytes(self, n: int) -> None:
        with self._lock:
            self._bytes += n

    def _deliver(self, request: _Request) -> _Reply:
        with self._lock:
            self._count += 1
            self._bytes += len(request.args)
        return self._process(request)

    def _read_end_info(self, endname: Hashable) -> tuple:
        with self._lock:
            servername = self._connections.get(endname)
            server = self._servers.get(servername) if servername is not None else None
            return (
                self._enabled.get(endname, False),
                servername,
                server,
                self._reliable,
                self._long_reordering,
                self._long_delays,
            )

    def _is_server_dead(self, endname: Hashable, servername: Hashable, server: "Server") -> bool:
        with self._lock:
            return (
                not self._enabled.get(endname, False)
                or self._servers.get(servername) is not server
            )

    def _process(self, request: _Request) -> _Reply:
        enabled, servername, server, reliable, reordering, long_delays = self._read_end_info(
            request.endname
        )

        if not (enabled and servername is not None and server is not None):
            # Simulate no reply and an eventual timeout.
            ms = random.randrange(LONG_DELAY) if long_delays else random.randrange(100)
            time.sleep(ms / 1000)
            return _FAILED

        if not reliable:
            time.sleep(random.randrange(SHORT_DELAY) / 1000)
            if random.randrange(1000) < 100:
                return _FAILED

        # Run the handler apart so that a deleted server can be noticed.
        pending: futures.Future = futures.Future()

        def run() -> None:
            try:
                pending.set_result(server._dispatch(request))
            except BaseException as exc:  # handed back to the caller
                pending.set_exception(exc)

        threading.Thread(target=run, daemon=True).start()

        replied = False
        dead = False
        while not replied and not dead:
            finished, _ = futures.wait([pending], timeout=_POLL_SECONDS)
            if finished:
                replied = True
            else:
                dead = self._is_server_dead(request.endname, servername, server)

        # A killed server must not reply, even if its handler finished.
        dead = self._is_server_dead(request.endname, servername, server)
        if not replied or dead:
            return _FAILED

        error = pending.exception()
        if error is not None:
            return _Reply(ok=False, error=error)
        reply: _Reply = pending.result()

        if not reliable and random.randrange(1000) < 100:
            return _FAILED
        if reordering and random.randrange(900) < 600:
            ms = 200 + random.randrange(1 + random.randrange(2000))
            time.sleep(ms / 1000)
        self._add_bytes(len(reply.data))
        return reply


class Server:
    """A collection of services sharing one dispatcher."""

    def __init__(self):
        self._lock = threading.Lock()
        self._services: dict[str, Service] = {}
        self._count = 0

    def add_service(self, service: "Service") -> None:
        with self._lock:
            self._services[service.name] = service

    def get_count(self) -> int:
        """Number of requests received."""
        with self._lock:
            return self._count

    def _dispatch(self, request: _Request) -> _Reply:
        with self._lock:
            self._count += 1
            service_name, _, method_name = request.svc_meth.rpartition(".")
            service = self._services.get(service_name)
            choices = sorted(self._services)
        if service is None:
            raise UnknownMethodError(
                f"unknown service {service_name!r} in {request.svc_meth!r}; "
                f"expecting one of {choices}"
            )
        return service._dispatch(method_name, request)


def _takes_one_argument(function: Any) -> bool:
    """Whether a plain method takes exactly one positional argument besides self."""
    code = function.__code__
    if code.co_argcount - 1 != 1:
        return False
    keyword_defaults = function.__kwdefaults__ or {}
    return code.co_kwonlyargcount == len(keyword_defaults)


def _handlers(receiver: Any) -> dict[str, Callable[[Any], Any]]:
    found = {}
    for name in dir(type(receiver)):
        if name.startswith("_"):
            continue
        attribute = inspect.getattr_static(receiver, name, None)
        if not inspect.isfunction(attribute):
            continue
        if _takes_one_argument(attribute):
            found[name] = getattr(receiver, name)
    return found


class Service:
    """An object whose one-argument public methods can be called over RPC."""

    def __init__(self, receiver: Any, name: Optional[str] = None):
        self.receiver = receiver
        self.name = name if name is not None else type(receiver).__name__
        self.methods = _handlers(receiver)

    def _dispatch(self, method_name: str, request: _Request) -> _Reply:
        handler = self.methods.get(method_name)
        if handler is None:
            raise UnknownMethodError(
                f"unknown method {method_name!r} in {request.svc_meth!r}; "
                f"expecting one of {sorted(self.methods)}"
            )
        if request.args_type is type(None):
            args = None
        else:
            args = _deserialise(request.args, request.args_type)
        reply = handler(args)
        if reply is None:
            return _Reply(ok=True)
        return _Reply(ok=True, data=_serialise(reply), reply_type=type(reply))