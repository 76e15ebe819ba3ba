from __future__ import annotations

import asyncio
from datetime import timedelta

from config_loader import get_sample_config
from errors import ConnectionFailure
from services.cockpit_server import CockpitServer
from telemetry.models import QuotaModel, QuotaSnapshot, UserInfo

from .helpers.fakes import FIXED_NOW, FakeClientFactory, FakeDiscovery, FakeSleep, credentials, ok, two_model_status


def make_config(tmp_path):
    config = get_sample_config()
    config['state']['file'] = str(tmp_path / "state.yaml")
    config['cache']['directory'] = str(tmp_path / "cache")
    config['logging']['file'] = None
    return config


def make_server(tmp_path, results=None, handler=None):
    sleep = FakeSleep()
    factory = FakeClientFactory(handler or (lambda path, payload: ok(two_model_status(0.5, 0.9))))
    server = CockpitServer(config=make_config(tmp_path), discovery=FakeDiscovery(results),
                           client_factory=factory, sleep=sleep)
    return server, sleep, factory


def test_boot_failure_publishes_offline_snapshot_with_guidance(tmp_path):
    server, sleep, _ = make_server(tmp_path)

    connected = asyncio.run(server.boot())

    assert connected is False
    assert server.discovery.calls == 3
    assert sleep.delays == [2, 4]

    snapshot = server.get_snapshot()
    assert snapshot.connected is False
    assert "language_server_linux" in snapshot.error

    notification = server.reporter.get_notifications()[0]
    assert notification.kind == "discovery_failed"
    assert notification.guidance == ["Antigravity is running"]


def test_boot_connects_on_later_attempt(tmp_path):
    server, sleep, factory = make_server(tmp_path, results=[None, credentials()])

    async def scenario():
        await server.boot()
        await server.engine._init_task
        snapshot = server.get_snapshot()
        await server.engine.stop()
        return snapshot

    snapshot = asyncio.run(scenario())

    assert sleep.delays == [2]
    assert factory.clients[0].port == 42100
    assert snapshot.connected is True
    assert [m.model_id for m in snapshot.models] == ["model-a", "model-b"]
    assert server.reporter.has_successful_sync is True
    assert server.account_id == "ada@example.com"


def test_connection_failures_trigger_bounded_rediscovery(tmp_path):
    server, _, _ = make_server(tmp_path)
    server.running = True

    async def scenario():
        for _ in range(6):
            server._on_malfunction(ConnectionFailure("Connection failed: refused"))
            if server._rediscovery_task:
                await server._rediscovery_task

    asyncio.run(scenario())

    assert server.discovery.calls == 5
    assert server.consecutive_failures == 6
    assert [n.kind for n in server.reporter.get_notifications()] == ["discovery_failed", "sync_failed"]
    assert server.get_snapshot().connected is False


def test_rediscovery_is_not_started_twice(tmp_path):
    server, _, _ = make_server(tmp_path)

    async def scenario():
        first = server.schedule_rediscovery()
        second = server.schedule_rediscovery()
        await server._rediscovery_task
        return first, second

    assert asyncio.run(scenario()) == (True, False)
    assert server.discovery.calls == 1


def test_live_snapshot_resets_failure_count(tmp_path):
    server, _, _ = make_server(tmp_path)
    server.consecutive_failures = 3
    model = QuotaModel(model_id="m1", label="Model One", remaining_fraction=0.8,
                       reset_time=FIXED_NOW + timedelta(hours=1))
    snapshot = QuotaSnapshot(timestamp=FIXED_NOW, connected=True, models=[model], all_models=[model],
                             user_info=UserInfo(name="Ada", email="ada@example.com", plan_name="Pro", tier="Pro"))

    server._on_telemetry(snapshot)

    assert server.consecutive_failures == 0
    assert server.account_id == "ada@example.com"


def test_cached_snapshot_restored_when_offline(tmp_path):
    server, _, _ = make_server(tmp_path, results=[credentials()])

    async def first_run():
        await server.connect()
        await server.engine._init_task
        await server.engine.stop()

    asyncio.run(first_run())

    restarted, _, _ = make_server(tmp_path)
    restarted.account_id = "ada@example.com"
    asyncio.run(restarted.boot())

    snapshot = restarted.get_snapshot()
    assert snapshot.source == "cache"
    assert snapshot.connected is False
    assert restarted.reporter.last_error is not None
    assert [m.model_id for m in snapshot.models] == ["model-a", "model-b"]


def test_status_redacts_credentials(tmp_path):
    server, _, _ = make_server(tmp_path, results=[credentials()])

    async def scenario():
        await server.connect()
        await server.engine._init_task
        status = server.status()
        await server.engine.stop()
        return status

    status = asyncio.run(scenario())

    assert status['credentials']['auth_token'] == "csrf..."
    assert status['port'] == 42100
    assert status['has_successful_sync'] is True
    assert status['rediscovery_in_progress'] is False


def test_repeated_offline_rediscovery_notifies_once_with_cached_snapshot(tmp_path):
    seeded, _, _ = make_server(tmp_path, results=[credentials()])

    async def seed_cache():
        await seeded.connect()
        await seeded.engine._init_task
        await seeded.engine.stop()

    asyncio.run(seed_cache())

    server, _, _ = make_server(tmp_path)
    server.account_id = "ada@example.com"

    async def scenario():
        await server.boot()
        await server.rediscover()
        await server.rediscover()

    asyncio.run(scenario())

    assert [n.kind for n in server.reporter.get_notifications()] == ["discovery_failed"]
    assert server.get_snapshot().source == "cache"
    assert server.status()['last_error'] is not None
