"""
Recurring callbacks on worker threads and an asyncio loop for in-flight writes.
"""
import asyncio
import threading
import time
from concurrent.futures import Future
from typing import Callable, List, Optional, Coroutine, Any

from logger import get_logger


class RecurringScheduler:
    """
    Runs each registered callback on its own thread at a fixed period.

    Registrations are independent of each other. Each one runs on a
    monotonic-clock grid that starts when it is registered; if a callback
    outlives its period the missed slots are skipped rather than queued.
    """

    def __init__(self):
        self.logger = get_logger()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    def schedule(self, callback: Callable[[], Any], period: float, name: Optional[str] = None) -> threading.Thread:
        """Invoke ``callback`` every ``period`` seconds until shutdown."""
        if period <= 0:
            raise ValueError("Schedule period must be greater than 0")
        if self._stop_event.is_set():
            raise RuntimeError("Scheduler has been shut down")

        thread_name = name or f"Schedule-{getattr(callback, '__name__', 'callback')}"
        thread = threading.Thread(
            target=self._run,
            args=(callback, period, thread_name),
            name=thread_name,
            daemon=True,
        )
        with self._lock:
            self._threads.append(thread)
        thread.start()
        return thread

    def _run(self, callback: Callable[[], Any], period: float, name: str):
        next_run = time.monotonic() + period
        while not self._stop_event.wait(max(0.0, next_run - time.monotonic())):
            try:
                callback()
            except Exception as e:
                self.logger.error(f"{name}: Error in scheduled callback: {e}")

            next_run += period
            now = time.monotonic()
            if next_run < now:
                skipped = int((now - next_run) // period) + 1
                next_run += skipped * period
                self.logger.debug(f"{name}: Skipped {skipped} overdue run(s)")

    def shutdown(self, timeout: float = 5.0):
        """Stop all registrations and wait for running callbacks to return."""
        self._stop_event.set()
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            if thread is threading.current_thread():
                continue
            thread.join(timeout=timeout)
            if thread.is_alive():
                self.logger.warning(f"Thread {thread.name} did not stop gracefully")

    @property
    def is_shutdown(self) -> bool:
        return self._stop_event.is_set()


class AsyncDispatcher:
    """An asyncio event loop on a background thread that accepts coroutines from any thread."""

    def __init__(self, name: str = "AsyncDispatcher"):
        self.name = name
        self.logger = get_logger()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def running(self) -> bool:
        return self._loop is not None and self._loop.is_running()

    def start(self):
        if self._thread is not None:
            return
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        self._ready.wait()

    def _run_loop(self):
        loop = self._loop
        asyncio.set_event_loop(loop)
        loop.call_soon(self._ready.set)
        try:
            loop.run_forever()
        finally:
            loop.close()

    def submit(self, coro: Coroutine) -> Future:
        """Schedule ``coro`` on the loop and return immediately."""
        if not self.running:
            coro.close()
            raise RuntimeError("Dispatcher is not running")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def run(self, coro: Coroutine, timeout: Optional[float] = None):
        """Run ``coro`` on the loop and block for its result."""
        return self.submit(coro).result(timeout=timeout)

    def drain(self, timeout: float = 5.0):
        """Wait up to ``timeout`` seconds for in-flight tasks, cancelling the rest."""
        if not self.running:
            return
        try:
            self.run(self._drain(timeout), timeout=timeout + 1.0)
        except Exception as e:
            self.logger.warning(f"Error draining in-flight tasks: {e}")

    def stop(self):
        """Stop the loop. Tasks still pending are abandoned."""
        if self._loop is None or self._thread is None:
            return

        if self.running:
            self._loop.call_soon_threadsafe(self._loop.stop)

        self._thread.join(timeout=5.0)
        self._thread = None
        self._loop = None
        self._ready.clear()

    async def _drain(self, timeout: float):
        current = asyncio.current_task()
        pending = [task for task in asyncio.all_tasks() if task is not current]
        if not pending:
            return
        self.logger.info(f"Waiting for {len(pending)} in-flight write(s)")
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)
            self.logger.warning(f"Cancelled {len(still_pending)} write(s) still in flight at shutdown")
