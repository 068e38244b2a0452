import pytest

from distlab.kvtypes import (
    Err,
    GetArgs,
    GetReply,
    KvInput,
    KvOutput,
    KvState,
    Operation,
    PutArgs,
    PutReply,
    describe_operation,
    kv_init,
    kv_partition,
    kv_step,
)

GET = 0
PUT = 1


def _op(key, client=0, call=0):
    return Operation(KvInput(GET, key), KvOutput(), call, call + 1, client)


@pytest.mark.parametrize("err", list(Err))
def test_err_parses_from_its_wire_string(err):
    assert Err(str(err)) is err
    assert err == err.value


def test_err_rejects_unknown_string():
    with pytest.raises(ValueError):
        Err("ErrBogus")


def test_err_strings_match_protocol():
    wire = ["OK", "ErrNoKey", "ErrVersion", "ErrMaybe", "ErrWrongLeader", "ErrWrongGroup"]
    parsed = [Err(s) for s in wire]
    assert parsed == list(Err)
    assert [e.value for e in parsed] == wire


def test_reply_defaults():
    assert GetReply() == GetReply("", 0, Err.OK)
    assert PutReply().err is Err.OK
    assert PutArgs("k", "v").version == 0
    assert GetArgs("k").key == "k"


def test_init_is_empty():
    state = kv_init()
    assert state == KvState()
    assert state.value == ""
    assert state.version == 0


def test_get_must_see_current_value():
    state = KvState("v", 3)
    legal, after = kv_step(state, KvInput(GET, "k"), KvOutput("v", 3, "OK"))
    assert legal is True
    assert after == state
    legal, after = kv_step(state, KvInput(GET, "k"), KvOutput("w", 3, "OK"))
    assert legal is False
    assert after == state


@pytest.mark.parametrize("err, legal", [("OK", True), ("ErrMaybe", True), ("ErrVersion", False)])
def test_put_with_matching_version(err, legal):
    state = KvState("old", 2)
    ok, after = kv_step(state, KvInput(PUT, "k", "new", 2), KvOutput(err=err))
    assert ok is legal
    assert after.value == "new"
    assert after.version == state.version + 1


@pytest.mark.parametrize(
    "err, legal", [("ErrVersion", True), ("ErrMaybe", True), ("OK", False), ("ErrNoKey", False)]
)
def test_put_with_stale_version(err, legal):
    state = KvState("old", 2)
    ok, after = kv_step(state, KvInput(PUT, "k", "new", 1), KvOutput(err=err))
    assert ok is legal
    assert after == state


def test_step_accepts_err_members():
    ok, _ = kv_step(kv_init(), KvInput(PUT, "k", "v", 0), KvOutput(err=Err.OK))
    assert ok is True


def test_invalid_op():
    assert kv_step(kv_init(), KvInput(7, "k"), KvOutput()) == (False, "<invalid>")
    assert describe_operation(KvInput(7, "k"), KvOutput()) == "<invalid>"


def test_history_replays_through_model():
    steps = [
        (KvInput(PUT, "k", "a", 0), KvOutput(err="OK")),
        (KvInput(GET, "k"), KvOutput("a", 1, "OK")),
        (KvInput(PUT, "k", "b", 0), KvOutput(err="ErrVersion")),
        (KvInput(PUT, "k", "b", 1), KvOutput(err="ErrMaybe")),
        (KvInput(GET, "k"), KvOutput("b", 2, "OK")),
    ]
    state = kv_init()
    for inp, out in steps:
        legal, state = kv_step(state, inp, out)
        assert legal
    assert state.value == "b"


def test_partition_groups_by_sorted_key_keeping_order():
    history = [_op("b", call=0), _op("a", call=1), _op("b", call=2), _op("c", call=3)]
    parts = kv_partition(history)
    assert [[op.input.key for op in part] for part in parts] == [["a"], ["b", "b"], ["c"]]
    assert [op.call for op in parts[1]] == [0, 2]
    assert sum(len(p) for p in parts) == len(history)


def test_partition_of_empty_history():
    assert kv_partition([]) == []


def test_describe_get():
    text = describe_operation(KvInput(GET, "k"), KvOutput("v", 3, Err.OK))
    assert text == "get('k') -> ('v', '3', 'OK')"


def test_describe_put():
    text = describe_operation(KvInput(PUT, "k", "v", 2), KvOutput(err="ErrVersion"))
    assert text == "put('k', 'v', '2') -> ('ErrVersion')"