"""Tests for configuration loading."""

import signroute.persistence as persistence
from signroute.config import load_config
from signroute.persistence import SQLiteWorkflowRepository, get_repository
from signroute.transports import get_transport
from signroute.transports.inmemory import InMemoryTransport
from signroute.transports.redis import RedisTransport


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("SIGNROUTE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("SIGNROUTE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.validation.strictness == "strict"
    assert config.engine.rejection_policy == "terminal"
    assert not config.engine.enforce_roles
    assert config.database_url is None
    assert config.roles == {}


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
validation:
  strictness: relaxed
engine:
  rejection_policy: follow_rejected_edges
  enforce_roles: true
roles:
  alice: [manager, legal]
"""
    )
    monkeypatch.setenv("SIGNROUTE_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.validation.strictness == "relaxed"
    assert config.engine.rejection_policy == "follow_rejected_edges"
    assert config.engine.enforce_roles
    assert config.roles == {"alice": ["manager", "legal"]}


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///from-file.db\n")
    monkeypatch.setenv("SIGNROUTE_CONFIG", str(config_path))
    monkeypatch.setenv("SIGNROUTE_DATABASE_URL", "sqlite:///from-env.db")

    assert load_config().database_url == "sqlite:///from-env.db"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("SIGNROUTE_CONFIG", str(config_path))
    monkeypatch.delenv("SIGNROUTE_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380

    monkeypatch.setenv("SIGNROUTE_TRANSPORT", "inmemory")
    assert isinstance(get_transport(), InMemoryTransport)


def test_get_repository_selects_sqlite(tmp_path, monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.setenv("SIGNROUTE_CONFIG", str(tmp_path / "missing.yaml"))
    db_path = tmp_path / "wf.db"

    repo = get_repository(f"sqlite://{db_path}")
    assert isinstance(repo, SQLiteWorkflowRepository)
    assert repo.db_path == str(db_path)
