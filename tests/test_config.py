"""
Unit tests for rate derivation, validation and config files.
"""
import json

import pytest

from config import (
    LoadConfig,
    RunnerConfig,
    derive_rates,
    load_config_from_file,
    parse_duration,
    save_config_to_file,
    validate_config,
)


def test_rate_derivation():
    rates = derive_rates(LoadConfig(client_count=5, uid_count=1000, write_interval_seconds=10))
    assert rates.global_qps == 100
    assert rates.per_client_qps == 20
    assert rates.per_client_key_count == 200


def test_uneven_split_floors_per_client_values():
    rates = derive_rates(LoadConfig(client_count=3, uid_count=1000, write_interval_seconds=10))
    assert rates.global_qps == 100
    assert rates.per_client_qps == 33
    assert rates.per_client_key_count == 333


@pytest.mark.parametrize("overrides, message", [
    ({"client_count": 0}, "Client count"),
    ({"client_count": -2}, "Client count"),
    ({"uid_count": 0}, "Uid count"),
    ({"write_interval_seconds": 0}, "Write interval"),
    ({"value_length": 0}, "Value length"),
    ({"mutation_count": -1}, "Mutation count"),
    ({"report_interval": 0}, "Report interval"),
])
def test_invalid_load_shape_is_rejected(overrides, message):
    with pytest.raises(ValueError, match=message):
        derive_rates(LoadConfig(**overrides))


def test_unknown_backend_is_rejected():
    with pytest.raises(ValueError, match="Unknown backend"):
        validate_config(RunnerConfig(backend="mongo"))


def test_failure_rate_must_be_a_probability():
    with pytest.raises(ValueError, match="failure rate"):
        validate_config(RunnerConfig(backend="memory", memory_failure_rate=1.5))


def test_parse_duration():
    assert parse_duration("PT1M") == 60
    assert parse_duration("PT1H30M") == 5400
    assert parse_duration("45") == 45
    assert parse_duration("") == 0
    with pytest.raises(ValueError):
        parse_duration("1 minute")


def test_yaml_accepts_pascal_case_load_keys(tmp_path):
    path = tmp_path / "load.yaml"
    path.write_text(
        "backend: memory\n"
        "duration: PT2M\n"
        "load:\n"
        "  ClientCount: 4\n"
        "  UidCount: 4000\n"
        "  WriteIntervalSeconds: 20\n"
        "  ValueLength: 512\n"
        "  mutation_count: 10\n"
        "redis:\n"
        "  host: redis.internal\n"
        "  port: 6380\n"
    )

    config = load_config_from_file(str(path))

    assert config.backend == "memory"
    assert config.duration == 120
    assert config.load.client_count == 4
    assert config.load.uid_count == 4000
    assert config.load.write_interval_seconds == 20
    assert config.load.value_length == 512
    assert config.load.mutation_count == 10
    assert config.redis.host == "redis.internal"
    assert config.redis.port == 6380


def test_json_config(tmp_path):
    path = tmp_path / "load.json"
    path.write_text(json.dumps({"load": {"client_count": 2, "uid_count": 200}, "quiet": True}))

    config = load_config_from_file(str(path))

    assert config.load.client_count == 2
    assert config.load.uid_count == 200
    assert config.quiet is True
    assert config.redis.host == "localhost"


def test_saved_config_loads_back(tmp_path):
    original = RunnerConfig(
        backend="memory",
        load=LoadConfig(client_count=3, uid_count=300, value_length=64),
        duration=30,
    )
    original.redis.key_prefix = "bench"
    path = tmp_path / "saved.yaml"

    save_config_to_file(original, str(path))
    loaded = load_config_from_file(str(path))

    assert loaded.load == original.load
    assert loaded.redis == original.redis
    assert loaded.backend == "memory"
    assert loaded.duration == 30
