"""
Unit tests for key allocation, payload mutation and the write client tick.
"""
import random
import threading

from config import LoadConfig, derive_rates
from workloads import (
    RunContext,
    SharedPayload,
    ValueMutator,
    WriteClient,
    allocate_key,
)

from conftest import RecordingBackend, wait_all

BASE_KEY = 100_000_000


def test_partitions_never_overlap():
    """Keys produced for different clients are disjoint for any offsets."""
    per_client = 37
    key_sets = [
        {allocate_key(index, BASE_KEY, per_client, offset) for offset in range(0, 500, 3)}
        for index in range(6)
    ]
    for i in range(len(key_sets)):
        for j in range(i + 1, len(key_sets)):
            assert key_sets[i].isdisjoint(key_sets[j])


def test_keys_stay_inside_partition():
    per_client = 100
    for offset in (0, 1, 99, 100, 12345, 2**40 + 7):
        key = allocate_key(3, BASE_KEY, per_client, offset)
        assert BASE_KEY + 300 <= key < BASE_KEY + 400


def test_offsets_cycle_through_partition():
    per_client = 25
    for offset in (0, 7, 24, 1000):
        assert allocate_key(1, BASE_KEY, per_client, offset) == allocate_key(1, BASE_KEY, per_client, offset + per_client)

    keys = [allocate_key(1, BASE_KEY, per_client, offset) for offset in range(per_client)]
    assert sorted(keys) == list(range(BASE_KEY + 25, BASE_KEY + 50))


def test_mutation_changes_bytes_in_place():
    payload = SharedPayload(64)
    buffer = payload.buffer
    before = payload.snapshot()

    ValueMutator(mutation_count=200, rng=random.Random(7)).mutate(payload)

    assert payload.buffer is buffer
    assert len(payload) == 64
    assert payload.snapshot() != before


def test_zero_mutations_leave_payload_untouched():
    payload = SharedPayload(32)
    before = payload.snapshot()
    ValueMutator(mutation_count=0).mutate(payload)
    assert payload.snapshot() == before


def test_mutation_handles_payload_shorter_than_count():
    payload = SharedPayload(1)
    ValueMutator(mutation_count=100).mutate(payload)
    assert len(payload) == 1


def _context(dispatcher, metrics, **load_overrides):
    load = LoadConfig(**{
        "client_count": 2,
        "uid_count": 200,
        "write_interval_seconds": 10,
        "value_length": 16,
        **load_overrides,
    })
    return RunContext(
        load=load,
        rates=derive_rates(load),
        payload=SharedPayload(load.value_length),
        mutator=ValueMutator(load.mutation_count),
        metrics=metrics,
        dispatcher=dispatcher,
    )


def test_tick_dispatches_per_client_quota(dispatcher, metrics):
    context = _context(dispatcher, metrics)
    backend = RecordingBackend()
    client = WriteClient(context, 1, backend)

    results = wait_all([client.tick()])

    assert results == [True] * 10
    # offsets are incremented before use, so the first key is one past the partition start
    assert sorted(backend.writes) == list(range(BASE_KEY + 101, BASE_KEY + 111))
    assert client.write_offset == 10
    assert all(len(value) == 16 for value in backend.store.values())
    assert metrics.stats.drain()[0] == 10


def test_consecutive_ticks_continue_the_key_cycle(dispatcher, metrics):
    context = _context(dispatcher, metrics, uid_count=40, write_interval_seconds=2)
    # 20 writes/sec globally, 10 per client, 20 keys per client
    backend = RecordingBackend()
    client = WriteClient(context, 0, backend)

    wait_all([client.tick(), client.tick(), client.tick()])

    assert len(backend.writes) == 30
    assert set(backend.writes) == set(range(BASE_KEY, BASE_KEY + 20))


def test_tick_is_noop_once_stopped(dispatcher, metrics):
    context = _context(dispatcher, metrics)
    backend = RecordingBackend()
    client = WriteClient(context, 0, backend)

    context.stopped.set()

    assert client.tick() == []
    assert client.write_offset == 0
    assert backend.writes == []


def test_failed_writes_are_left_out_of_stats(dispatcher, metrics):
    context = _context(dispatcher, metrics)
    backend = RecordingBackend(fail_keys={BASE_KEY + 2, BASE_KEY + 5})
    client = WriteClient(context, 0, backend)

    results = wait_all([client.tick()])

    assert results.count(False) == 2
    assert len(backend.writes) == 8
    write_count, _ = metrics.stats.drain()
    assert write_count == 8
    assert metrics.failures_by_type() == {"ConnectionError": 2}


def test_tick_does_not_wait_for_slow_writes(dispatcher, metrics):
    context = _context(dispatcher, metrics)
    backend = RecordingBackend(delay=0.5)
    client = WriteClient(context, 0, backend)

    first = client.tick()
    second = client.tick()

    # both generations are in flight at once
    assert not any(future.done() for future in first + second)
    wait_all([first, second])
    assert len(backend.writes) == 20


def test_concurrent_ticks_hand_out_unique_offsets(dispatcher, metrics):
    context = _context(dispatcher, metrics, uid_count=4000, write_interval_seconds=1, mutation_count=1)
    # 2000 writes/sec per client, 2000 keys per client
    backend = RecordingBackend()
    client = WriteClient(context, 0, backend)

    futures = []
    lock = threading.Lock()

    def tick():
        dispatched = client.tick()
        with lock:
            futures.append(dispatched)

    threads = [threading.Thread(target=tick) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    wait_all(futures, timeout=10.0)

    assert client.write_offset == 8000
    assert len(backend.writes) == 8000
    assert set(backend.writes) == set(range(BASE_KEY, BASE_KEY + 2000))
