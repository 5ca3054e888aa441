"""Tests for configuration loading."""

from dxgraph.config import load_config
from dxgraph.persistence import InMemoryCheckpointStore, SQLiteCheckpointStore, get_checkpoint_store


def test_load_config_from_env(tmp_path, monkeypatch):
    monkeypatch.delenv("DXGRAPH_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
store:
  database_url: sqlite:///runs.db
  max_checkpoints: 5
loop_detection:
  max_same_node_visits: 2
orchestrator:
  default_stage_timeout: 30
  durable_checkpoints: true
"""
    )
    monkeypatch.setenv("DXGRAPH_CONFIG", str(config_path))

    config = load_config()
    assert config.store.database_url == "sqlite:///runs.db"
    assert config.store.max_checkpoints == 5
    assert config.loop_detection.max_same_node_visits == 2
    assert config.loop_detection.break_on_loop is True
    assert config.orchestrator.default_stage_timeout == 30
    assert config.orchestrator.durable_checkpoints is True


def test_load_config_defaults_when_missing(tmp_path, monkeypatch):
    monkeypatch.delenv("DXGRAPH_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    config = load_config(str(tmp_path / "absent.yaml"))
    assert config.store.database_url is None
    assert config.loop_detection.max_iterations == 100
    assert config.orchestrator.continue_on_error is False


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("store:\n  database_url: sqlite:///file.db\n")
    monkeypatch.setenv("DXGRAPH_DATABASE_URL", "memory://")

    config = load_config(str(config_path))
    assert config.store.database_url == "memory://"


def test_get_checkpoint_store_uses_config(tmp_path, monkeypatch):
    monkeypatch.delenv("DXGRAPH_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"store:\n  database_url: sqlite://{tmp_path / 'cp.db'}\n")
    monkeypatch.setenv("DXGRAPH_CONFIG", str(config_path))

    store = get_checkpoint_store()
    assert isinstance(store, SQLiteCheckpointStore)


def test_get_checkpoint_store_defaults_to_memory(tmp_path, monkeypatch):
    monkeypatch.delenv("DXGRAPH_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DXGRAPH_CONFIG", str(tmp_path / "absent.yaml"))
    assert isinstance(get_checkpoint_store(), InMemoryCheckpointStore)
