import re
import threading

import pytest

from distlab.mapreduce.coordinator import TEMP_DIR, make_coordinator
from distlab.mapreduce.protocol import (
    GetReduceCountArgs,
    GetTaskArgs,
    KeyValue,
    TaskType,
)
from distlab.mapreduce.worker import (
    call,
    execute_map_task,
    execute_reduce_task,
    ihash,
    load_plugin,
    main,
    register_plugin,
    worker,
    write_map_output,
    write_reduce_output,
)


def word_map(filename, contents):
    return [KeyValue(word, "1") for word in re.findall(r"[A-Za-z]+", contents)]


def word_reduce(key, values):
    return str(len(values))


def _read_outputs(directory):
    result = {}
    for path in sorted(directory.glob("mr-out-*")):
        for line in path.read_text().splitlines():
            key, value = line.split(" ")
            assert key not in result
            result[key] = value
    return result


def test_ihash_matches_fnv1a():
    assert ihash("") == 0x011C9DC5
    assert ihash("a") == 0x640C292C


def test_ihash_is_non_negative_31_bit():
    for key in ["", "a", "hello", "k99", "ünïcode"]:
        assert 0 <= ihash(key) < 2**31


def test_write_map_output_partitions_by_hash(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / TEMP_DIR).mkdir()
    words = ["alpha", "beta", "gamma", "delta", "alpha", "omega"]
    paths = write_map_output([KeyValue(w, "1") for w in words], 5, 3)
    assert [p.replace("\\", "/") for p in paths] == [
        f"{TEMP_DIR}/mr-5-0",
        f"{TEMP_DIR}/mr-5-1",
        f"{TEMP_DIR}/mr-5-2",
    ]
    names = sorted(p.name for p in (tmp_path / TEMP_DIR).iterdir())
    assert names == ["mr-5-0", "mr-5-1", "mr-5-2"]
    total = 0
    for i in range(3):
        for line in (tmp_path / TEMP_DIR / f"mr-5-{i}").read_text().splitlines():
            key = re.search(r'"Key": "([^"]*)"', line).group(1)
            assert ihash(key) % 3 == i
            total += 1
    assert total == len(words)


def test_map_then_reduce_counts_words(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / TEMP_DIR).mkdir()
    (tmp_path / "one.txt").write_text("a b a")
    (tmp_path / "two.txt").write_text("c a")
    assert len(execute_map_task(word_map, "one.txt", 0, 2)) == 2
    assert len(execute_map_task(word_map, "two.txt", 1, 2)) == 2
    outputs = [execute_reduce_task(word_reduce, reduce_id) for reduce_id in range(2)]
    assert outputs == ["mr-out-0", "mr-out-1"]
    assert _read_outputs(tmp_path) == {"a": "3", "b": "1", "c": "1"}


def test_write_reduce_output_sorts_keys(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / TEMP_DIR).mkdir()
    path = write_reduce_output({"z": ["1"], "m": ["1", "1"], "b": []}, word_reduce, 4)
    assert path == "mr-out-4"
    assert (tmp_path / path).read_text() == "b 0\nm 2\nz 1\n"
    assert list((tmp_path / TEMP_DIR).iterdir()) == []


def test_load_plugin():
    register_plugin("wc", word_map, word_reduce)
    mapf, reducef = load_plugin("wc.so")
    assert mapf("f", "x y x") == [KeyValue("x", "1"), KeyValue("y", "1"), KeyValue("x", "1")]
    assert reducef("x", ["1", "1"]) == "2"


def test_load_plugin_unknown():
    with pytest.raises(LookupError):
        load_plugin("no-such-plugin.so")


def test_register_plugin_rejects_non_callable():
    with pytest.raises(TypeError):
        register_plugin("bad", word_map, None)


def test_call_against_running_coordinator(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with make_coordinator(["input.txt"], 4):
        assert call("Coordinator.GetReduceCount", GetReduceCountArgs()).reduce_count == 4
        reply = call("Coordinator.GetTask", GetTaskArgs(11))
        assert reply.task_type == TaskType.MAP_TASK
        assert reply.file == "input.txt"
        with pytest.raises(RuntimeError):
            call("Coordinator.Missing", GetReduceCountArgs())


def test_worker_runs_whole_job(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "one.txt").write_text("the cat and the dog")
    (tmp_path / "two.txt").write_text("the end")
    with make_coordinator(["one.txt", "two.txt"], 3) as coordinator:
        runner = threading.Thread(target=worker, args=(word_map, word_reduce), daemon=True)
        runner.start()
        runner.join(timeout=30)
        assert not runner.is_alive()
        assert coordinator.done() is True
    assert _read_outputs(tmp_path) == {"the": "3", "cat": "1", "and": "1", "dog": "1", "end": "1"}


def test_main_requires_one_argument():
    assert main([]) == 1
    assert main(["a.so", "b.so"]) == 1


def test_main_unknown_plugin():
    assert main(["no-such-plugin.so"]) == 1