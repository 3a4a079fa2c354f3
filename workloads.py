"""
Write workload: key partitioning, payload mutation and the paced write clients.
"""
import random
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import List, Optional

from backend import UpsertBackend
from config import LoadConfig, DerivedRates
from logger import get_logger
from metrics import MetricsCollector
from scheduler import AsyncDispatcher


CONNECT_TIMEOUT = 30.0
TICK_INTERVAL = 1.0


def allocate_key(client_index: int, base_key: int, per_client_key_count: int, write_offset: int) -> int:
    """
    Map a client's write offset onto its own slice of the key space.

    Client ``i`` owns ``[base_key + i * n, base_key + (i + 1) * n)`` where
    ``n`` is ``per_client_key_count``; successive offsets cycle through that
    slice so the same bounded set of records is rewritten over and over.
    """
    return base_key + client_index * per_client_key_count + (write_offset % per_client_key_count)


class SharedPayload:
    """
    The record value every client writes.

    One buffer is shared by all clients and mutated in place with no lock.
    Concurrent mutations may interleave; the written bytes carry no meaning,
    only their size and variability matter.
    """

    def __init__(self, length: int):
        self.buffer = bytearray(random.randbytes(length))

    def __len__(self) -> int:
        return len(self.buffer)

    def snapshot(self) -> bytes:
        return bytes(self.buffer)


class ValueMutator:
    """Re-randomises a handful of payload bytes before each write."""

    def __init__(self, mutation_count: int = 100, rng: Optional[random.Random] = None):
        self.mutation_count = mutation_count
        self._rng = rng or random

    def mutate(self, payload: SharedPayload):
        buffer = payload.buffer
        length = len(buffer)
        for _ in range(self.mutation_count):
            buffer[self._rng.randrange(length)] = self._rng.getrandbits(8)


@dataclass
class RunContext:
    """State shared by the controller, every write client and the reporter."""
    load: LoadConfig
    rates: DerivedRates
    payload: SharedPayload
    mutator: ValueMutator
    metrics: MetricsCollector
    dispatcher: AsyncDispatcher
    stopped: threading.Event = field(default_factory=threading.Event)


class WriteClient:
    """One virtual client: a key partition, a share of the target rate and its own backend handle."""

    def __init__(self, context: RunContext, index: int, backend: UpsertBackend):
        self.context = context
        self.index = index
        self.backend = backend
        self.name = f"Client-{index}"
        self.logger = get_logger()

        self.key_range_start = context.load.base_key + index * context.rates.per_client_key_count

        self._write_offset = 0
        self._offset_lock = threading.Lock()

    @property
    def write_offset(self) -> int:
        return self._write_offset

    def _next_offset(self) -> int:
        with self._offset_lock:
            self._write_offset += 1
            return self._write_offset

    def key_for(self, write_offset: int) -> int:
        return allocate_key(
            self.index,
            self.context.load.base_key,
            self.context.rates.per_client_key_count,
            write_offset,
        )

    def start(self, scheduler):
        """Connect the backend and register the per-second tick."""
        self.context.dispatcher.run(self.backend.connect(), timeout=CONNECT_TIMEOUT)
        scheduler.schedule(self.tick, TICK_INTERVAL, name=self.name)
        self.logger.debug(f"{self.name}: Started, keys from {self.key_range_start}")

    def tick(self) -> List[Future]:
        """
        Dispatch this client's per-second quota of upserts.

        Writes are handed to the dispatcher loop and not awaited, so a slow
        backend leaves earlier generations in flight while new ones start.
        Returns the dispatched futures; an empty list once stopped.
        """
        if self.context.stopped.is_set():
            return []

        futures = []
        for _ in range(self.context.rates.per_client_qps):
            key = self.key_for(self._next_offset())
            self.context.mutator.mutate(self.context.payload)
            value = self.context.payload.snapshot()
            futures.append(self.context.dispatcher.submit(self._write(key, value)))
        return futures

    async def _write(self, key: int, value: bytes) -> bool:
        start_time = time.perf_counter()
        try:
            await self.backend.upsert(key, value)
        except Exception as e:
            # Failed writes stay out of the interval stats
            self.context.metrics.record_failure(type(e).__name__)
            return False

        self.context.metrics.record_write((time.perf_counter() - start_time) * 1000)
        return True

    def close(self):
        """Release the backend handle."""
        try:
            self.context.dispatcher.run(self.backend.close(), timeout=CONNECT_TIMEOUT)
        except Exception as e:
            self.logger.warning(f"{self.name}: Error closing backend: {e}")
