import json

import pytest

from writequeue import WriteQueue


def _rows(batch):
    return [json.loads(line) for line in batch.lines]


def test_batches_close_at_bundle_size():
    q = WriteQueue()
    values = {}
    for i in range(5):
        values[i] = i * 10
        q.enqueue(i)
    batches = q.take_batches(values.get, bundle=2)
    assert [len(b) for b in batches] == [2, 2, 1]
    assert _rows(batches[2]) == [{"key": 4, "val": 40}]
    assert len(q) == 0


def test_batches_use_current_values_and_tombstones():
    q = WriteQueue()
    values = {"k": "v2"}
    q.enqueue("k")
    q.enqueue("k")
    q.enqueue("gone")
    (batch,) = q.take_batches(values.get, bundle=1000)
    assert _rows(batch) == [{"key": "k", "val": "v2"}, {"key": "k", "val": "v2"}, {"key": "gone"}]
    assert batch.payload.endswith("\n")
    assert batch.payload.count("\n") == 3


def test_callbacks_stay_with_their_batch_in_order():
    q = WriteQueue()
    cb1, cb2, cb3 = (lambda err: None), (lambda err: None), (lambda err: None)
    q.enqueue("a", cb1)
    q.enqueue("b")
    q.enqueue("c", cb2)
    q.enqueue("d", cb3)
    first, second = q.take_batches(lambda k: 1, bundle=2)
    assert first.callbacks == [cb1]
    assert second.callbacks == [cb2, cb3]


def test_unencodable_entries_are_handed_off_and_left_out():
    q = WriteQueue()
    values = {"a": 1, "bad": {1, 2}, "b": 2}
    cb_bad = lambda err: None
    for key in ("a", "bad", "b"):
        q.enqueue(key, cb_bad if key == "bad" else None)
    rejected = []
    (batch,) = q.take_batches(values.get, bundle=10, on_unencodable=lambda e, exc: rejected.append((e, exc)))
    assert _rows(batch) == [{"key": "a", "val": 1}, {"key": "b", "val": 2}]
    assert batch.callbacks == []
    assert [(e.key, e.callback, type(exc)) for e, exc in rejected] == [("bad", cb_bad, TypeError)]
    assert len(q) == 0


def test_only_unencodable_entries_yield_no_batches():
    q = WriteQueue()
    q.enqueue("nan")
    rejected = []
    assert q.take_batches(lambda k: float("nan"), bundle=1, on_unencodable=lambda e, exc: rejected.append(e)) == []
    assert [e.key for e in rejected] == ["nan"]


def test_unencodable_entry_without_handler_raises_and_keeps_queue():
    q = WriteQueue()
    q.enqueue("a")
    with pytest.raises(TypeError):
        q.take_batches(lambda k: object(), bundle=10)
    assert len(q) == 1


def test_empty_queue_yields_no_batches():
    assert WriteQueue().take_batches(lambda k: 1, bundle=10) == []


def test_bundle_must_be_positive():
    q = WriteQueue()
    q.enqueue("a")
    with pytest.raises(ValueError):
        q.take_batches(lambda k: 1, bundle=0)
