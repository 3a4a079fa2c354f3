"""
Configuration management for the upsert load generator.
"""

from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, List, Optional, Any, Union
import yaml
import json
import importlib.metadata
import re


BACKEND_TYPES = ["redis", "memory"]

# PascalCase keys accepted in config files next to the snake_case field names
LOAD_KEY_ALIASES = {
    "ClientCount": "client_count",
    "UidCount": "uid_count",
    "WriteIntervalSeconds": "write_interval_seconds",
    "ValueLength": "value_length",
}

# Per-run identity is regenerated on every start and never saved
_UNSAVED_FIELDS = ("instance_id", "run_id", "version")

_ISO_DURATION = re.compile(r"^PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?$")


def get_redis_version() -> str:
    """Installed redis-py version, reported as the generator version by default."""
    try:
        return importlib.metadata.version("redis")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def parse_duration(value: str) -> int:
    """
    Seconds in an ISO 8601 time duration such as ``PT1M`` or ``PT1H30M``.

    A bare integer string is taken as seconds; an empty string is 0.
    """
    if not value:
        return 0
    if value.isdigit():
        return int(value)

    match = _ISO_DURATION.match(value)
    if match is None or not any(match.groups()):
        raise ValueError(f"Invalid duration format: {value}")
    hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


@dataclass
class RedisConnectionConfig:
    """Redis connection configuration for the upsert backend."""

    client_name: str = "upsert-load-test"
    host: str = "localhost"
    port: int = 6379
    username: Optional[str] = None
    password: Optional[str] = None
    database: int = 0
    protocol: int = 3  # 2 for RESP2, 3 for RESP3

    # Records are stored as "<key_prefix>:<key>"
    key_prefix: str = "test"

    # Cluster configuration
    cluster_mode: bool = False
    cluster_nodes: List[Dict[str, Any]] = field(default_factory=list)

    # TLS configuration
    ssl: bool = False
    ssl_keyfile: Optional[str] = None
    ssl_certfile: Optional[str] = None
    ssl_cert_reqs: Union[str, int] = "required"  # "required", "optional", "none"
    ssl_ca_certs: Optional[str] = None
    ssl_check_hostname: bool = True

    # Connection settings
    socket_timeout: Optional[float] = None
    socket_connect_timeout: Optional[float] = None
    socket_keepalive: bool = True

    # Connection pool settings
    max_connections: Optional[int] = None

    # redis-py Retry object attempts for network/connection issues
    client_retry_attempts: int = 3


@dataclass
class LoadConfig:
    """Write load shape. Read once at startup."""

    client_count: int = 10
    uid_count: int = 100000  # total key space across all clients
    write_interval_seconds: int = 10  # every key is rewritten once per interval
    value_length: int = 1024

    base_key: int = 100_000_000
    mutation_count: int = 100  # bytes re-randomised before each write

    report_interval: float = 5.0


@dataclass(frozen=True)
class DerivedRates:
    global_qps: int
    per_client_qps: int
    per_client_key_count: int


def validate_load_config(load: LoadConfig):
    """Validate the load shape. Raises ValueError before anything is started."""
    if load.client_count <= 0:
        raise ValueError("Client count must be greater than 0")

    if load.uid_count <= 0:
        raise ValueError("Uid count must be greater than 0")

    if load.write_interval_seconds <= 0:
        raise ValueError("Write interval must be greater than 0 seconds")

    if load.value_length <= 0:
        raise ValueError("Value length must be greater than 0")

    if load.mutation_count < 0:
        raise ValueError("Mutation count must not be negative")

    if load.report_interval <= 0:
        raise ValueError("Report interval must be greater than 0 seconds")


def derive_rates(load: LoadConfig) -> DerivedRates:
    """Partition the global target rate and key space across clients."""
    validate_load_config(load)
    global_qps = load.uid_count // load.write_interval_seconds
    return DerivedRates(
        global_qps=global_qps,
        per_client_qps=global_qps // load.client_count,
        per_client_key_count=load.uid_count // load.client_count,
    )


@dataclass
class RunnerConfig:
    """Main runner configuration"""

    redis: RedisConnectionConfig = field(default_factory=RedisConnectionConfig)
    load: LoadConfig = field(default_factory=LoadConfig)

    # Backend selection ("redis" or "memory")
    backend: str = "redis"
    memory_latency_ms: float = 0.0
    memory_failure_rate: float = 0.0

    # Test duration in seconds (None = until interrupted)
    duration: Optional[int] = None

    # Logging and output
    log_level: str = "INFO"
    log_file: Optional[str] = None
    output_file: Optional[str] = None
    quiet: bool = False

    # OpenTelemetry configuration
    otel_endpoint: Optional[str] = None
    otel_service_name: str = "upsert-load-test"
    otel_service_version: str = "1.0.0"
    otel_export_interval_ms: int = 5000

    # Multi-app identification
    app_name: str = "python"
    instance_id: Optional[str] = None
    run_id: Optional[str] = None
    version: Optional[str] = None

    # Liveness endpoint
    http_host: str = "0.0.0.0"
    http_port: int = 8080


def validate_config(config: RunnerConfig):
    """Validate configuration parameters."""
    validate_load_config(config.load)

    if config.backend not in BACKEND_TYPES:
        raise ValueError(f"Unknown backend '{config.backend}', expected one of {BACKEND_TYPES}")

    if not 0.0 <= config.memory_failure_rate <= 1.0:
        raise ValueError("Memory backend failure rate must be between 0.0 and 1.0")

    if config.duration is not None and config.duration <= 0:
        raise ValueError("Duration must be greater than 0 seconds")


def _load_section(data: Dict[str, Any]) -> LoadConfig:
    return LoadConfig(**{LOAD_KEY_ALIASES.get(key, key): value for key, value in data.items()})


def _read_document(path: Path) -> Dict[str, Any]:
    with path.open("r") as f:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(f) or {}
        return json.load(f) or {}


def load_config_from_file(file_path: str) -> RunnerConfig:
    """
    Build a RunnerConfig from a YAML (``.yaml``/``.yml``) or JSON file.

    The ``load`` section accepts PascalCase keys (``ClientCount``,
    ``UidCount``, ``WriteIntervalSeconds``, ``ValueLength``) and ``duration``
    may be an ISO 8601 string.
    """
    data = _read_document(Path(file_path))

    if "redis" in data:
        data["redis"] = RedisConnectionConfig(**data["redis"])
    if "load" in data:
        data["load"] = _load_section(data["load"])
    if isinstance(data.get("duration"), str):
        data["duration"] = parse_duration(data["duration"])

    return RunnerConfig(**data)


def save_config_to_file(config: RunnerConfig, file_path: str):
    """Write the configuration as YAML, leaving out per-run identity."""
    document = asdict(config)
    for name in _UNSAVED_FIELDS:
        document.pop(name, None)

    with open(file_path, "w") as f:
        yaml.safe_dump(document, f, default_flow_style=False, indent=2, sort_keys=False)
