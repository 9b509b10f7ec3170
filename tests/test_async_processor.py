"""Tests del pool de workers particionado por topic."""

import threading

import pytest

from thing_ingest.mqtt import AsyncMessageProcessor


def test_per_topic_order_is_preserved():
    seen = []
    lock = threading.Lock()

    def handle(topic, payload):
        with lock:
            seen.append((topic, payload))

    processor = AsyncMessageProcessor(handle, max_queue_size=400, num_workers=4)
    processor.start()
    for i in range(50):
        processor.enqueue("org/o1/a/value", str(i).encode())
        processor.enqueue("org/o1/b/value", str(i).encode())
    processor.stop(drain=True)

    for topic in ("org/o1/a/value", "org/o1/b/value"):
        assert [p for t, p in seen if t == topic] == [str(i).encode() for i in range(50)]
    assert processor.metrics["processed"] == 100


def test_full_shard_drops_message():
    release = threading.Event()
    processor = AsyncMessageProcessor(lambda t, p: release.wait(5), max_queue_size=1, num_workers=1)
    processor.start()

    processor.enqueue("t", b"1")
    # el worker puede haber tomado ya el primero; llenar hasta que se descarte
    results = [processor.enqueue("t", b"x") for _ in range(3)]
    release.set()
    processor.stop(drain=True)

    assert False in results
    assert processor.metrics["dropped"] >= 1


def test_handler_errors_are_counted():
    def handle(topic, payload):
        raise RuntimeError("boom")

    processor = AsyncMessageProcessor(handle, num_workers=2)
    processor.start()
    processor.enqueue("t", b"")
    processor.stop(drain=True)

    assert processor.metrics["errors"] == 1


def test_requires_workers():
    with pytest.raises(ValueError):
        AsyncMessageProcessor(lambda t, p: None, num_workers=0)
