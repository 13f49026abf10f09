import json

import pytest

from fieldflow.client import FieldFlowClient
from fieldflow.common.exceptions import ConfigurationError
from fieldflow.config import Settings
from fieldflow.server.locks import LocalLockManager, RedisLockManager
from fieldflow.storage.memory_storage import MemoryStorage
from fieldflow.storage.sql_storage import SqlStorage
from fieldflow.transitions import DEFAULT_TABLE_DEFINITION


def test_defaults_without_environment():
    settings = Settings.from_env({})
    assert settings.storage == "memory"
    assert settings.lock_timeout == 5.0
    assert settings.lookahead_days == 60
    assert settings.materialize_days == 7
    assert isinstance(settings.create_storage(), MemoryStorage)
    assert isinstance(settings.create_lock_manager(), LocalLockManager)


def test_environment_overrides():
    settings = Settings.from_env(
        {
            "FIELDFLOW_STORAGE": "SQL",
            "FIELDFLOW_DATABASE_URL": "sqlite://",
            "FIELDFLOW_REDIS_URL": "redis://localhost:6379/3",
            "FIELDFLOW_LOCK_TIMEOUT": "2.5",
            "FIELDFLOW_BUS_PARTITIONS": "0",
            "FIELDFLOW_DOWNGRADE_SCOPE": "client_property",
            "FIELDFLOW_LOG_LEVEL": "debug",
        }
    )
    assert settings.storage == "sql"
    assert settings.lock_timeout == 2.5
    assert settings.bus_partitions == 0
    assert settings.downgrade_scope == "client_property"
    assert settings.log_level == "DEBUG"
    assert isinstance(settings.create_storage(), SqlStorage)
    assert isinstance(settings.create_lock_manager(), RedisLockManager)


def test_invalid_values_raise_configuration_error():
    with pytest.raises(ConfigurationError):
        Settings.from_env({"FIELDFLOW_LOCK_TIMEOUT": "soon"})
    with pytest.raises(ConfigurationError):
        Settings(storage="mongo")
    with pytest.raises(ConfigurationError):
        Settings(storage="sql")
    with pytest.raises(ConfigurationError):
        Settings(lock_timeout=0)
    with pytest.raises(ConfigurationError):
        Settings(bus_partitions=-1)


def test_client_loads_transition_table_from_file(tmp_path):
    path = tmp_path / "lifecycle.json"
    path.write_text(json.dumps(dict(DEFAULT_TABLE_DEFINITION, version="2025-02-01.3")))

    client = FieldFlowClient.from_settings(Settings(table_path=str(path), bus_partitions=0))
    try:
        assert client.table.version == "2025-02-01.3"
        assert client.machine.table is client.table
    finally:
        client.close()


def test_client_rejects_broken_transition_table(tmp_path):
    path = tmp_path / "lifecycle.json"
    path.write_text(json.dumps({"transitions": [{"from": "paid", "to": "draft"}]}))

    with pytest.raises(ConfigurationError):
        FieldFlowClient.from_settings(Settings(table_path=str(path)))


def test_data_guards_flag_selects_guarded_table():
    assert Settings.from_env({}).data_guards is False
    settings = Settings.from_env({"FIELDFLOW_DATA_GUARDS": "yes"})
    assert settings.data_guards is True

    client = FieldFlowClient(settings=settings)
    assert client.table.get_rule("draft", "scheduled").guards

    with pytest.raises(ConfigurationError):
        Settings.from_env({"FIELDFLOW_DATA_GUARDS": "sometimes"})
