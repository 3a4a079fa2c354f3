"""
Load controller: partitions the target rate, owns the write clients and reports stats.
"""
import signal
import threading
import time
from enum import Enum
from typing import Callable, List, Optional

from backend import BackendFactory, UpsertBackend
from config import RunnerConfig, derive_rates
from logger import get_logger, log_error_with_traceback
from metrics import MetricsCollector, StatsSnapshot, get_metrics_collector
from scheduler import AsyncDispatcher, RecurringScheduler
from workloads import RunContext, SharedPayload, ValueMutator, WriteClient


class ControllerState(Enum):
    CREATED = "created"
    INITIALIZED = "initialized"
    RUNNING = "running"
    STOPPED = "stopped"


class LoadController:
    """Main controller that orchestrates the write load."""

    def __init__(self, config: RunnerConfig,
                 metrics: Optional[MetricsCollector] = None,
                 scheduler=None,
                 dispatcher: Optional[AsyncDispatcher] = None,
                 backend_factory: Optional[Callable[[], UpsertBackend]] = None):
        self.config = config
        self.logger = get_logger()
        self.metrics = metrics or get_metrics_collector()
        self.scheduler = scheduler or RecurringScheduler()
        self.dispatcher = dispatcher or AsyncDispatcher()
        self._backend_factory = backend_factory or (lambda: BackendFactory.create_backend(config, self.metrics))

        self.state = ControllerState.CREATED
        self._state_lock = threading.Lock()
        self._closed = False

        self.context: Optional[RunContext] = None
        self.clients: List[WriteClient] = []
        self.last_snapshot: Optional[StatsSnapshot] = None

    def initialize(self):
        """Derive per-client rates and key ranges and build the clients."""
        with self._state_lock:
            if self.state is not ControllerState.CREATED:
                raise RuntimeError(f"Cannot initialize controller in state '{self.state.value}'")

            load = self.config.load
            rates = derive_rates(load)

            if load.uid_count % load.client_count:
                unused = load.uid_count - rates.per_client_key_count * load.client_count
                self.logger.warning(f"Uid count {load.uid_count} does not split evenly across {load.client_count} clients, {unused} keys unused")
            if rates.per_client_qps == 0:
                self.logger.warning(f"Global rate of {rates.global_qps} writes/sec is below one write/sec per client, no writes will be issued")

            self.context = RunContext(
                load=load,
                rates=rates,
                payload=SharedPayload(load.value_length),
                mutator=ValueMutator(load.mutation_count),
                metrics=self.metrics,
                dispatcher=self.dispatcher,
            )
            self.clients = [
                WriteClient(self.context, index, self._backend_factory())
                for index in range(load.client_count)
            ]
            self.state = ControllerState.INITIALIZED

        self.logger.info(
            f"Configuration: {load.client_count} clients, {load.uid_count} keys, "
            f"{rates.global_qps} writes/sec total, {rates.per_client_qps} writes/sec per client, "
            f"{rates.per_client_key_count} keys per client, {load.value_length} byte values"
        )

    def start(self):
        """Start every client's tick, then register the stats reporter."""
        with self._state_lock:
            if self.state is not ControllerState.INITIALIZED:
                raise RuntimeError(f"Cannot start controller in state '{self.state.value}'")
            self.context.stopped.clear()
            self.state = ControllerState.RUNNING

        self.logger.info("Test start.")
        self.dispatcher.start()

        for client in self.clients:
            try:
                client.start(self.scheduler)
            except Exception as e:
                log_error_with_traceback(f"{client.name}: Failed to connect to backend", e)
                self.stop()
                raise

        # Registered last so the first interval covers whole client ticks
        self.scheduler.schedule(self.report, self.config.load.report_interval, name="StatsReporter")
        self.logger.info(f"Started {len(self.clients)} write clients")

    def stop(self):
        """Stop issuing writes. Writes already in flight are left to finish."""
        with self._state_lock:
            if self.state is ControllerState.STOPPED:
                return
            self.state = ControllerState.STOPPED
            if self.context is not None:
                self.context.stopped.set()

        self.logger.info("Test stop.")

    @property
    def stopped(self) -> bool:
        return self.state is ControllerState.STOPPED

    def report(self) -> StatsSnapshot:
        """Drain the interval counters and log one throughput/latency line."""
        snapshot = self.metrics.drain_interval(self.config.load.report_interval)
        self.last_snapshot = snapshot
        if not self.config.quiet:
            self.logger.info(snapshot.format())
        return snapshot

    def close(self, drain_timeout: float = 5.0):
        """Stop, wait briefly for in-flight writes and release every backend handle."""
        self.stop()
        if self._closed:
            return
        self._closed = True

        self.scheduler.shutdown()
        self.dispatcher.drain(drain_timeout)
        for client in self.clients:
            client.close()
        self.dispatcher.stop()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully."""
        self.logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.stop()

    def run(self, duration: Optional[int] = None):
        """Run until ``duration`` seconds elapse or a shutdown signal arrives."""
        if self.state is ControllerState.CREATED:
            self.initialize()

        previous_handlers = {}
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                previous_handlers[signum] = signal.signal(signum, self._signal_handler)

        if duration:
            self.logger.info(f"Test duration: {duration} seconds")
        else:
            self.logger.info("Test duration: unlimited (until interrupted)")

        try:
            self.start()

            start_time = time.time()
            while not self.stopped:
                if duration:
                    elapsed = time.time() - start_time
                    if elapsed >= duration:
                        self.logger.info("Test duration completed")
                        break
                    time.sleep(min(1, duration - elapsed))
                else:
                    time.sleep(1)

        except KeyboardInterrupt:
            self.logger.info("Test interrupted by user")

        finally:
            self.close()
            self.output_final_summary()
            self.metrics.shutdown()
            for signum, handler in previous_handlers.items():
                signal.signal(signum, handler)

    def output_final_summary(self):
        """Output final run summary - to file if an output file is configured, otherwise to stdout."""
        try:
            if self.config.output_file:
                self.metrics.export_summary_to_json(self.config.output_file)
                self.logger.info(f"Final run summary exported to {self.config.output_file}")
            elif not self.config.quiet:
                self.metrics.print_summary()

        except Exception as e:
            self.logger.error(f"Failed to output final summary: {e}")
