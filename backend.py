"""
Upsert backends: redis (standalone, cluster, TLS) and an in-memory store for dry runs.
"""
import asyncio
import random
import time
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, Union

import redis.asyncio as aioredis
from redis.asyncio.cluster import RedisCluster, ClusterNode
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialWithJitterBackoff

from config import RedisConnectionConfig, RunnerConfig
from logger import get_logger, log_connection_event
from metrics import MetricsCollector, get_metrics_collector


class SimulatedWriteError(Exception):
    """Raised by the in-memory backend to emulate a failed upsert."""


class UpsertBackend(ABC):
    """A store that can insert-or-replace one record by integer key."""

    async def connect(self):
        pass

    @abstractmethod
    async def upsert(self, key: int, value: bytes):
        """Insert the record if the key is absent, otherwise replace it."""
        pass

    async def close(self):
        pass


class RedisBackend(UpsertBackend):
    """Upserts records with SET against standalone or cluster redis."""

    def __init__(self, config: RedisConnectionConfig, metrics: Optional[MetricsCollector] = None):
        self.config = config
        self.logger = get_logger()
        self.metrics = metrics or get_metrics_collector()

        self._client: Optional[Union[aioredis.Redis, RedisCluster]] = None
        self._client_kwargs = self._build_client_kwargs()

    def _build_client_kwargs(self) -> Dict[str, Any]:
        """Build client keyword arguments shared by standalone and cluster mode."""
        kwargs = {
            'socket_timeout': self.config.socket_timeout,
            'socket_connect_timeout': self.config.socket_connect_timeout,
            'socket_keepalive': self.config.socket_keepalive,
            'client_name': self.config.client_name,
            'protocol': self.config.protocol,
        }

        if self.config.max_connections:
            kwargs['max_connections'] = self.config.max_connections

        # Client-level retries (network/connection issues)
        if self.config.client_retry_attempts > 0:
            kwargs['retry'] = Retry(ExponentialWithJitterBackoff(), self.config.client_retry_attempts)

        if self.config.username:
            kwargs['username'] = self.config.username
        if self.config.password:
            kwargs['password'] = self.config.password

        if self.config.ssl:
            kwargs.update({
                'ssl': True,
                'ssl_cert_reqs': self.config.ssl_cert_reqs,
                'ssl_ca_certs': self.config.ssl_ca_certs,
                'ssl_certfile': self.config.ssl_certfile,
                'ssl_keyfile': self.config.ssl_keyfile,
                'ssl_check_hostname': self.config.ssl_check_hostname,
            })

        return kwargs

    def record_key(self, key: int) -> str:
        return f"{self.config.key_prefix}:{key}"

    async def connect(self):
        """Establish the connection and verify it with PING."""
        start_time = time.time()

        try:
            if self.config.cluster_mode:
                self._connect_cluster()
            else:
                self._connect_standalone()

            await self._client.ping()

            connection_duration = time.time() - start_time
            client_kind = "cluster-async" if self.config.cluster_mode else "standalone-async"
            self.metrics.record_connect_duration(connection_duration, client=client_kind)
            self.logger.debug(f"Connected to redis in {connection_duration:.3f}s")

        except Exception as e:
            log_connection_event("FAILED", {"host": self.config.host, "port": self.config.port, "error": str(e)})
            await self.close()
            raise

    def _connect_standalone(self):
        self._client = aioredis.Redis(
            host=self.config.host,
            port=self.config.port,
            db=self.config.database,
            **self._client_kwargs
        )

    def _connect_cluster(self):
        if self.config.cluster_nodes:
            startup_nodes = [ClusterNode(node["host"], int(node["port"])) for node in self.config.cluster_nodes]
        else:
            startup_nodes = [ClusterNode(self.config.host, self.config.port)]

        self._client = RedisCluster(
            startup_nodes=startup_nodes,
            decode_responses=False,
            require_full_coverage=False,
            **self._client_kwargs
        )

    async def upsert(self, key: int, value: bytes):
        if self._client is None:
            raise ConnectionError("Redis backend is not connected")
        await self._client.set(self.record_key(key), value)

    async def close(self):
        """Close the redis connection."""
        if self._client:
            try:
                await self._client.aclose()
            except Exception as e:
                self.logger.warning(f"Error closing redis connection: {e}")
            finally:
                self._client = None


class MemoryBackend(UpsertBackend):
    """Dict-backed upserts with optional simulated latency and failures."""

    def __init__(self, latency_ms: float = 0.0, failure_rate: float = 0.0):
        self.latency_ms = latency_ms
        self.failure_rate = failure_rate
        self.store: Dict[int, bytes] = {}
        self.upsert_count = 0

    async def upsert(self, key: int, value: bytes):
        if self.latency_ms > 0:
            await asyncio.sleep(self.latency_ms / 1000)
        if self.failure_rate and random.random() < self.failure_rate:
            raise SimulatedWriteError(f"simulated failure writing key {key}")
        self.store[key] = value
        self.upsert_count += 1


class BackendFactory:
    """Factory for creating backend instances."""

    @staticmethod
    def create_backend(config: RunnerConfig, metrics: Optional[MetricsCollector] = None) -> UpsertBackend:
        if config.backend == "memory":
            return MemoryBackend(
                latency_ms=config.memory_latency_ms,
                failure_rate=config.memory_failure_rate,
            )
        elif config.backend == "redis":
            return RedisBackend(config.redis, metrics)
        else:
            raise ValueError(f"Unknown backend type: {config.backend}")
