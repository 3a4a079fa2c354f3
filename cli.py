"""
Command-line interface for the upsert load generator.
"""
import asyncio
import click
import sys
import os
import uuid
from dotenv import load_dotenv

from config import (
    RunnerConfig, LoadConfig, RedisConnectionConfig, BACKEND_TYPES,
    derive_rates, get_redis_version, validate_config,
)

# Load environment variables from .env file
load_dotenv()


def get_env_or_default(env_var: str, default_value, value_type=str):
    """Get environment variable with type conversion and default fallback."""
    env_value = os.getenv(env_var)
    if env_value is None:
        return default_value

    try:
        if value_type == bool:
            return env_value.lower() in ('true', '1', 'yes', 'on')
        elif value_type == int:
            return int(env_value)
        elif value_type == float:
            return float(env_value)
        else:
            return env_value
    except (ValueError, TypeError):
        return default_value


LOAD_OPTIONS = [
    # ========================================================================
    # Load Shape Parameters
    # ========================================================================
    click.option('--client-count', type=int, default=lambda: get_env_or_default('CLIENT_COUNT', 10, int), help='Number of virtual write clients'),
    click.option('--uid-count', type=int, default=lambda: get_env_or_default('UID_COUNT', 100000, int), help='Total number of keys across all clients'),
    click.option('--write-interval-seconds', type=int, default=lambda: get_env_or_default('WRITE_INTERVAL_SECONDS', 10, int), help='Seconds in which every key is written once (sets the global write rate)'),
    click.option('--value-length', type=int, default=lambda: get_env_or_default('VALUE_LENGTH', 1024, int), help='Payload size in bytes'),
    click.option('--base-key', type=int, default=lambda: get_env_or_default('BASE_KEY', 100_000_000, int), help='First key of the key space'),
    click.option('--mutation-count', type=int, default=lambda: get_env_or_default('MUTATION_COUNT', 100, int), help='Payload bytes re-randomised before each write'),
    click.option('--report-interval', type=float, default=lambda: get_env_or_default('REPORT_INTERVAL', 5.0, float), help='Stats reporting interval in seconds'),
]

BACKEND_OPTIONS = [
    # ========================================================================
    # Backend Parameters
    # ========================================================================
    click.option('--backend', type=click.Choice(BACKEND_TYPES), default=lambda: get_env_or_default('BACKEND', 'redis'), help='Storage backend to write to'),
    click.option('--memory-latency-ms', type=float, default=lambda: get_env_or_default('MEMORY_LATENCY_MS', 0.0, float), help='Simulated write latency for the memory backend'),
    click.option('--memory-failure-rate', type=float, default=lambda: get_env_or_default('MEMORY_FAILURE_RATE', 0.0, float), help='Simulated failure probability for the memory backend (0.0-1.0)'),
    click.option('--host', default=lambda: get_env_or_default('REDIS_HOST', 'localhost'), help='Redis host'),
    click.option('--port', type=int, default=lambda: get_env_or_default('REDIS_PORT', 6379, int), help='Redis port'),
    click.option('--username', default=lambda: get_env_or_default('REDIS_USERNAME', None), help='Redis username'),
    click.option('--password', default=lambda: get_env_or_default('REDIS_PASSWORD', None), help='Redis password'),
    click.option('--db', type=int, default=lambda: get_env_or_default('REDIS_DB', 0, int), help='Redis database number'),
    click.option('--key-prefix', default=lambda: get_env_or_default('REDIS_KEY_PREFIX', 'test'), help='Prefix for record keys ("<prefix>:<key>")'),
    click.option('--cluster', is_flag=True, default=lambda: get_env_or_default('REDIS_CLUSTER', False, bool), help='Use Redis Cluster mode'),
    click.option('--cluster-nodes', default=lambda: get_env_or_default('REDIS_CLUSTER_NODES', None), help='Comma-separated list of cluster nodes (host:port)'),
    click.option('--ssl', is_flag=True, default=lambda: get_env_or_default('REDIS_SSL', False, bool), help='Use SSL/TLS connection'),
    click.option('--ssl-keyfile', default=lambda: get_env_or_default('REDIS_SSL_KEYFILE', None), help='Path to client private key file'),
    click.option('--ssl-certfile', default=lambda: get_env_or_default('REDIS_SSL_CERTFILE', None), help='Path to client certificate file'),
    click.option('--ssl-cert-reqs', default=lambda: get_env_or_default('REDIS_SSL_CERT_REQS', 'required'), type=click.Choice(['none', 'optional', 'required']), help='SSL certificate requirements'),
    click.option('--ssl-ca-certs', default=lambda: get_env_or_default('REDIS_SSL_CA_CERTS', None), help='Path to CA certificates file'),
    click.option('--socket-timeout', type=float, default=lambda: get_env_or_default('REDIS_SOCKET_TIMEOUT', None, float), help='Socket timeout in seconds'),
    click.option('--socket-connect-timeout', type=float, default=lambda: get_env_or_default('REDIS_SOCKET_CONNECT_TIMEOUT', None, float), help='Socket connect timeout in seconds'),
    click.option('--max-connections', type=int, default=lambda: get_env_or_default('REDIS_MAX_CONNECTIONS', None, int), help='Maximum connections per client'),
    click.option('--client-retry-attempts', type=int, default=lambda: get_env_or_default('REDIS_CLIENT_RETRY_ATTEMPTS', 3, int), help='Client-level retry attempts for network/connection issues'),
    click.option('--protocol', type=int, default=lambda: get_env_or_default('REDIS_PROTOCOL', 3, int), help='RESP Version (2 or 3)'),
]

OUTPUT_OPTIONS = [
    # ========================================================================
    # Logging, Output & Metrics Parameters
    # ========================================================================
    click.option('--duration', type=int, default=lambda: get_env_or_default('TEST_DURATION', None, int), help='Run duration in seconds (unlimited if not specified)'),
    click.option('--log-level', default=lambda: get_env_or_default('LOG_LEVEL', 'INFO'), type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), help='Logging level'),
    click.option('--log-file', default=lambda: get_env_or_default('LOG_FILE', None), help='Log file path'),
    click.option('--output-file', default=lambda: get_env_or_default('OUTPUT_FILE', None), help='Output file for final run summary (JSON). If not provided, prints to stdout.'),
    click.option('--quiet', is_flag=True, default=False, help='Suppress periodic stats output'),
    click.option('--otel-endpoint', default=lambda: get_env_or_default('OTEL_EXPORTER_OTLP_ENDPOINT', None), help='OpenTelemetry OTLP endpoint (export disabled if not set)'),
    click.option('--otel-service-name', default=lambda: get_env_or_default('OTEL_SERVICE_NAME', 'upsert-load-test'), help='OpenTelemetry service name'),
    click.option('--otel-export-interval', type=int, default=lambda: get_env_or_default('OTEL_EXPORT_INTERVAL', 5000, int), help='OpenTelemetry export interval in milliseconds'),
    click.option('--app-name', default=lambda: get_env_or_default('APP_NAME', 'python'), help='Application name attached to exported metrics'),
    click.option('--instance-id', default=lambda: get_env_or_default('INSTANCE_ID', None), help='Unique instance identifier (auto-generated if not provided)'),
    click.option('--run-id', default=lambda: get_env_or_default('RUN_ID', None), help='Unique run identifier (auto-generated if not provided)'),
    click.option('--version', default=lambda: get_env_or_default('VERSION', None), help='Version identifier (defaults to redis-py package version)'),
    click.option('--config-file', default=lambda: get_env_or_default('CONFIG_FILE', None), help='Load configuration from YAML/JSON file'),
    click.option('--save-config', help='Save current configuration to file'),
]


def with_options(*option_groups):
    """Apply groups of click options to a command."""
    def decorator(func):
        for group in reversed(option_groups):
            for option in reversed(group):
                func = option(func)
        return func
    return decorator


@click.group()
@click.version_option(version="1.0.0")
def cli():
    """Upsert Load Generator - drive a storage backend with a steady, partitioned write load and report throughput and latency."""
    pass


@cli.command()
@with_options(LOAD_OPTIONS, BACKEND_OPTIONS, OUTPUT_OPTIONS)
def run(**kwargs):
    """Run the write load headless for --duration seconds or until interrupted."""
    try:
        config = _resolve_config(kwargs)
        if config is None:
            return

        controller = _create_controller(config)
        controller.run(config.duration)

    except KeyboardInterrupt:
        click.echo("\nTest interrupted by user")
        sys.exit(0)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--http-host', default=lambda: get_env_or_default('HTTP_HOST', '0.0.0.0'), help='Liveness endpoint bind address')
@click.option('--http-port', type=int, default=lambda: get_env_or_default('HTTP_PORT', 8080, int), help='Liveness endpoint port')
@with_options(LOAD_OPTIONS, BACKEND_OPTIONS, OUTPUT_OPTIONS)
def serve(**kwargs):
    """Run the write load as a service next to a liveness HTTP endpoint."""
    try:
        config = _resolve_config(kwargs)
        if config is None:
            return

        import uvicorn
        from server import create_app

        controller = _create_controller(config)
        app = create_app(controller)
        uvicorn.run(app, host=config.http_host, port=config.http_port, log_config=None)
        controller.output_final_summary()
        controller.metrics.shutdown()

    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@with_options(LOAD_OPTIONS)
def describe(**kwargs):
    """Show the per-client rates and key partitions for a load shape."""
    load = _build_load_config(kwargs)
    try:
        rates = derive_rates(load)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Clients: {load.client_count}")
    click.echo(f"Keys: {load.uid_count} ({rates.per_client_key_count} per client)")
    click.echo(f"Global rate: {rates.global_qps} writes/sec")
    click.echo(f"Per-client rate: {rates.per_client_qps} writes/sec")
    click.echo(f"Value length: {load.value_length} bytes ({load.mutation_count} bytes mutated per write)")
    click.echo("Key partitions:")
    for index in range(load.client_count):
        start = load.base_key + index * rates.per_client_key_count
        click.echo(f"  Client-{index}: [{start}, {start + rates.per_client_key_count})")


@cli.command()
@with_options(BACKEND_OPTIONS)
def test_connection(**kwargs):
    """Connect to the backend and issue a single upsert."""
    from backend import BackendFactory

    config = RunnerConfig(
        redis=_build_redis_config(kwargs),
        backend=kwargs['backend'],
        memory_latency_ms=kwargs['memory_latency_ms'],
        memory_failure_rate=kwargs['memory_failure_rate'],
    )

    async def probe():
        backend = BackendFactory.create_backend(config)
        try:
            await backend.connect()
            await backend.upsert(config.load.base_key, b"connection-test")
        finally:
            await backend.close()

    try:
        asyncio.run(probe())
        click.echo("✓ Backend connection successful!")
        click.echo(f"Backend: {config.backend}")
        if config.backend == "redis":
            click.echo(f"Redis mode: {'cluster' if config.redis.cluster_mode else 'standalone'}")
    except Exception as e:
        click.echo(f"✗ Backend connection failed: {e}", err=True)
        sys.exit(1)


def _resolve_config(kwargs):
    """Load or build the configuration; returns None when it was only saved."""
    if kwargs['config_file']:
        from config import load_config_from_file
        config = load_config_from_file(kwargs['config_file'])
        click.echo(f"Loaded configuration from {kwargs['config_file']}")
        # Per-run identity is never saved, so a loaded file has none
        config.instance_id = config.instance_id or str(uuid.uuid4())
        config.run_id = config.run_id or str(uuid.uuid4())
        config.version = config.version or get_redis_version()
    else:
        config = _build_config_from_args(kwargs)

    if kwargs['save_config']:
        from config import save_config_to_file
        save_config_to_file(config, kwargs['save_config'])
        click.echo(f"Configuration saved to {kwargs['save_config']}")
        return None

    validate_config(config)
    return config


def _create_controller(config: RunnerConfig):
    from logger import setup_logging
    from metrics import setup_metrics
    from load_controller import LoadController

    setup_logging(config.log_level, config.log_file, config.run_id)
    metrics = setup_metrics(
        otel_endpoint=config.otel_endpoint,
        service_name=config.otel_service_name,
        service_version=config.otel_service_version,
        otel_export_interval_ms=config.otel_export_interval_ms,
        app_name=config.app_name,
        instance_id=config.instance_id,
        run_id=config.run_id,
        version=config.version
    )
    return LoadController(config, metrics=metrics)


def _build_load_config(kwargs) -> LoadConfig:
    return LoadConfig(
        client_count=kwargs['client_count'],
        uid_count=kwargs['uid_count'],
        write_interval_seconds=kwargs['write_interval_seconds'],
        value_length=kwargs['value_length'],
        base_key=kwargs['base_key'],
        mutation_count=kwargs['mutation_count'],
        report_interval=kwargs['report_interval'],
    )


def _build_redis_config(kwargs) -> RedisConnectionConfig:
    cluster_nodes = []
    if kwargs['cluster_nodes']:
        for node in kwargs['cluster_nodes'].split(','):
            host, port = node.strip().split(':')
            cluster_nodes.append({'host': host, 'port': int(port)})

    return RedisConnectionConfig(
        host=kwargs['host'],
        port=kwargs['port'],
        username=kwargs['username'],
        password=kwargs['password'],
        database=kwargs['db'],
        key_prefix=kwargs['key_prefix'],
        cluster_mode=kwargs['cluster'],
        cluster_nodes=cluster_nodes,
        ssl=kwargs['ssl'],
        ssl_keyfile=kwargs['ssl_keyfile'],
        ssl_certfile=kwargs['ssl_certfile'],
        ssl_cert_reqs=kwargs['ssl_cert_reqs'],
        ssl_ca_certs=kwargs['ssl_ca_certs'],
        socket_timeout=kwargs['socket_timeout'],
        socket_connect_timeout=kwargs['socket_connect_timeout'],
        max_connections=kwargs['max_connections'],
        client_retry_attempts=kwargs['client_retry_attempts'],
        protocol=kwargs['protocol'],
    )


def _build_config_from_args(kwargs) -> RunnerConfig:
    """Build RunnerConfig from command line arguments."""
    instance_id = kwargs['instance_id'] or str(uuid.uuid4())
    run_id = kwargs['run_id'] or str(uuid.uuid4())

    config = RunnerConfig(
        redis=_build_redis_config(kwargs),
        load=_build_load_config(kwargs),
        backend=kwargs['backend'],
        memory_latency_ms=kwargs['memory_latency_ms'],
        memory_failure_rate=kwargs['memory_failure_rate'],
        duration=kwargs['duration'],
        log_level=kwargs['log_level'],
        log_file=kwargs['log_file'],
        output_file=kwargs['output_file'],
        quiet=kwargs['quiet'],
        otel_endpoint=kwargs['otel_endpoint'],
        otel_service_name=kwargs['otel_service_name'],
        otel_export_interval_ms=kwargs['otel_export_interval'],
        app_name=kwargs['app_name'],
        instance_id=instance_id,
        run_id=run_id,
        version=kwargs['version'] or get_redis_version(),
    )

    if 'http_host' in kwargs:
        config.http_host = kwargs['http_host']
        config.http_port = kwargs['http_port']

    return config


if __name__ == '__main__':
    cli()
