import json

import pytest

from engine.config import Settings
from engine.runtime import InMemoryJobRuntimeRegistry, RedisJobRuntimeRegistry, build_registry
from helpers import FakeRedis


@pytest.fixture(params=["memory", "redis"])
def registry(request):
    if request.param == "redis":
        return RedisJobRuntimeRegistry(client=FakeRedis(), prefix="test:")
    return InMemoryJobRuntimeRegistry()


def test_unknown_job_reads_as_idle(registry):
    assert registry.get_progress("nope") == 0
    assert registry.is_cancelled("nope") is False
    assert registry.cancel("nope") is False


def test_cancel_sets_token(registry):
    token = registry.register("job-1")
    assert token.cancelled is False

    assert registry.cancel("job-1") is True
    assert token.cancelled is True
    assert registry.is_cancelled("job-1") is True


def test_progress_is_clamped_and_monotonic(registry):
    registry.register("job-1")
    assert registry.set_progress("job-1", 40) == 40
    assert registry.set_progress("job-1", 10) == 40
    assert registry.set_progress("job-1", 250) == 100
    assert registry.get_progress("job-1") == 100


def test_clear_removes_all_state(registry):
    registry.register("job-1")
    registry.register("job-2")
    registry.set_progress("job-1", 50)
    assert registry.active_ids() == ["job-1", "job-2"]

    registry.clear("job-1")

    assert registry.active_ids() == ["job-2"]
    assert registry.get_progress("job-1") == 0


def test_redis_token_layout():
    client = FakeRedis()
    registry = RedisJobRuntimeRegistry(client=client, prefix="ctem:")
    registry.register("abc")
    registry.cancel("abc")

    token = json.loads(client.get("ctem:cancel:abc"))
    assert token["cancelled"] is True
    assert "created_at" in token
    assert client.get("ctem:progress:abc") == "0"


def test_redis_requires_url():
    with pytest.raises(RuntimeError):
        RedisJobRuntimeRegistry()


def test_build_registry_defaults_to_memory():
    assert isinstance(build_registry(Settings()), InMemoryJobRuntimeRegistry)


def test_redis_keys_carry_ttl():
    client = FakeRedis()
    registry = RedisJobRuntimeRegistry(client=client, prefix="ctem:", ttl_seconds=600)
    registry.register("abc")
    assert client.ttls == {"ctem:cancel:abc": 600, "ctem:progress:abc": 600}

    client.ttls.clear()
    registry.set_progress("abc", 50)
    assert client.ttls == {"ctem:progress:abc": 600, "ctem:cancel:abc": 600}

    client.ttls.clear()
    registry.cancel("abc")
    assert client.ttls == {"ctem:cancel:abc": 600, "ctem:progress:abc": 600}

    registry.clear("abc")
    assert client.data == {}
    assert client.ttls == {}


def test_build_registry_passes_ttl(monkeypatch):
    import redis

    client = FakeRedis()
    monkeypatch.setattr(redis, "from_url", lambda url, decode_responses: client)
    settings = Settings(runtime_backend="redis", redis_url="redis://localhost:6379/0", redis_ttl_seconds=120)

    registry = build_registry(settings)
    registry.register("job-1")

    assert isinstance(registry, RedisJobRuntimeRegistry)
    assert client.ttls["ctem:progress:job-1"] == 120
