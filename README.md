# distlab

Small, dependency-free pieces for experimenting with distributed systems
in Python. The MapReduce runtime talks over UNIX-domain sockets, so it
needs a POSIX system.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## `distlab.codec`

`LabEncoder(stream).encode(value)` writes one message per value to a
binary stream: a 4-byte big-endian length followed by a UTF-8 JSON
document. `LabDecoder(stream).decode(target)` reads the next message and
returns it rebuilt as `target`, which is either a type (`int`, a
dataclass, `list[T]`, `dict[K, V]`, ...) or an instance whose type is
used. It raises `EOFError` when the stream is exhausted and `CodecError`
for values that cannot be encoded or messages that cannot be decoded.

Dataclass fields annotated `Any` or `object` carry the name of their
dynamic type; that type must be made known with `register(value)` or
`register_name(name, value)`.

The codec warns (through `logging`) in two cases and counts each warning
in `error_count()`:

- a dataclass has a field whose name starts with an underscore: such
  fields are never sent;
- a decode target is an instance that already holds non-default values,
  which usually means a reply or restore target is being reused.

## `distlab.kvtypes`

Request and reply types of a versioned key/value service: `PutArgs`,
`PutReply`, `GetArgs`, `GetReply` and the `Err` enumeration (`OK`,
`ErrNoKey`, `ErrVersion`, `ErrMaybe`, `ErrWrongLeader`, `ErrWrongGroup`).

A sequential model for checking histories of such requests:
`Operation` records a `KvInput` (op 0 is a get, op 1 a put), a
`KvOutput`, call and return timestamps and a client id.
`kv_partition(history)` splits a history by key, `kv_init()` gives the
`KvState` of an unwritten key, `kv_step(state, input, output)` says
whether an output is legal and returns the next state, and
`describe_operation(input, output)` renders one line for display.

## `distlab.labrpc`

A simulated network that can lose requests and replies, delay and
reorder messages, and disconnect hosts.

```python
from distlab.labrpc import CallFailed, Network, Server, Service

class Echo:
    def Upper(self, text):
        return text.upper()

with Network() as net:
    end = net.make_end("client-1")

    server = Server()
    server.add_service(Service(Echo()))
    net.add_server("server-1", server)

    net.connect("client-1", "server-1")
    net.enable("client-1", True)

    print(end.call("Echo.Upper", "hello"))   # HELLO

    net.reliable(False)   # start dropping and delaying messages
    try:
        end.call("Echo.Upper", "again")
    except CallFailed:
        print("no reply")

    print(net.get_count("server-1"), net.get_total_count(), net.get_total_bytes())
```

A `Service` exposes the public methods of its receiver that take exactly
one positional argument; its name defaults to the receiver's class name.
Arguments and replies pass through `distlab.codec`, so caller and handler
never share objects.

`ClientEnd.call` returns the handler's reply. It raises `CallFailed` when
no reply arrived (disabled or unconnected end, deleted server, or a
message dropped by an unreliable network), `UnknownMethodError` for an
unknown service or method, and re-raises whatever the handler raised.
`Network.long_delays(True)` makes calls on disabled ends take up to seven
seconds to fail; `Network.long_reordering(True)` sometimes holds replies
back for a while. `delete_server` makes calls in progress on that server
fail.

## `distlab.mapreduce`

A map function takes a file name and its contents and returns
`KeyValue` pairs; a reduce function takes a key and the list of its
values and returns a string.

```python
import re
from distlab.mapreduce.protocol import KeyValue

def wc_map(filename, contents):
    return [KeyValue(word, "1") for word in re.findall(r"[A-Za-z]+", contents)]

def wc_reduce(key, values):
    return str(len(values))
```

Sequentially, writing one `key value` line per key in sorted order:

```python
from distlab.mapreduce.sequential import run_sequential

run_sequential(wc_map, wc_reduce, ["a.txt", "b.txt"], "mr-out-0")
```

Distributed: start the coordinator with the input files,

```
mrcoordinator pg-*.txt
```

and in each worker process call
`distlab.mapreduce.worker.worker(wc_map, wc_reduce)`.

The coordinator removes any `mr-out*` files and recreates a `tmp`
directory in the current directory, hands out one map task per input
file and then ten reduce tasks, and hands a task out again if it is not
reported done within ten seconds. It listens on the UNIX-domain socket
given by `distlab.mapreduce.protocol.coordinator_sock()` and exits once
every task has completed. Map tasks write intermediate JSON-lines files
to `tmp`; reduce task `N` writes `mr-out-N`. Workers return when the
coordinator says everything is done or cannot be reached.

`Coordinator` can also be used directly, for example with a shorter
`task_timeout`; `serve()` starts it listening and leaving its `with`
block stops it.

### What it does not do

- There is no `mrworker` or `mrsequential` command: application code is
  not loaded from files. `worker.load_plugin(filename)` only looks up a
  map/reduce pair registered in the same process with
  `worker.register_plugin(name, mapf, reducef)`, by the file name's stem.
- `distlab.kvtypes` holds a model only; there is no key/value server or
  client, and no search that checks a whole history for
  linearizability.