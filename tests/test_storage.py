from __future__ import annotations

import asyncio
import json

import pytest
import yaml

from storage.quota_cache import CACHE_VERSION, QuotaCache, QuotaCacheRecord
from storage.settings_store import SettingsStore


def _record(account_id="ada@example.com", source="local"):
    return QuotaCacheRecord(source=source, account_id=account_id, updated_at=1_760_000_000_000,
                            models=[{"id": "m1", "display_name": "Model 1", "remaining_fraction": 0.4}],
                            subscription_tier="Pro")


def test_quota_cache_round_trip(tmp_path):
    cache = QuotaCache({"directory": str(tmp_path / "cache")})

    async def scenario():
        await cache.write(_record())
        return await cache.read("local", "ADA@example.com")

    record = asyncio.run(scenario())

    assert record.account_id == "ada@example.com"
    assert record.version == CACHE_VERSION
    assert record.subscription_tier == "Pro"
    assert record.models[0]["id"] == "m1"


def test_quota_cache_file_layout(tmp_path):
    cache = QuotaCache({"directory": str(tmp_path)})
    asyncio.run(cache.write(_record()))

    path = cache.path_for("local", "ada@example.com")
    data = json.loads(path.read_text())

    assert "ada" not in path.name
    assert set(data) == {"version", "source", "account_id", "updated_at", "subscription_tier", "models"}
    assert data["version"] == 1


def test_quota_cache_ignores_corrupt_and_foreign_versions(tmp_path):
    cache = QuotaCache({"directory": str(tmp_path)})
    path = cache.path_for("local", "ada@example.com")
    path.write_text("{not json")
    assert asyncio.run(cache.read("local", "ada@example.com")) is None

    path.write_text(json.dumps({**_record().to_dict(), "version": 2}))
    assert asyncio.run(cache.read("local", "ada@example.com")) is None


def test_quota_cache_disabled(tmp_path):
    cache = QuotaCache({"directory": str(tmp_path), "enabled": False})
    asyncio.run(cache.write(_record()))
    assert list(tmp_path.iterdir()) == []


def _store(tmp_path, display=None):
    config = {
        "display": display or {"warning_threshold": 40, "visible_models": ["a"]},
        "polling": {"refresh_interval_seconds": 60},
        "state": {"file": str(tmp_path / "state.yaml")},
    }
    return SettingsStore(config)


def test_settings_defaults_from_config(tmp_path):
    settings = _store(tmp_path).get_settings()

    assert settings.warning_threshold == 40
    assert settings.critical_threshold == 10
    assert settings.visible_models == ["a"]
    assert settings.refresh_interval_seconds == 60
    assert settings.group_mappings == {}


def test_settings_update_persists_and_notifies(tmp_path):
    store = _store(tmp_path)
    seen = []
    store.add_listener(seen.append)

    asyncio.run(store.update("visible_models", ["b", "c"]))

    assert store.get_settings().visible_models == ["b", "c"]
    assert seen[0].visible_models == ["b", "c"]
    assert yaml.safe_load((tmp_path / "state.yaml").read_text()) == {"visible_models": ["b", "c"]}

    reloaded = _store(tmp_path)
    reloaded.load()
    assert reloaded.get_settings().visible_models == ["b", "c"]


def test_group_mapping_updates_do_not_notify(tmp_path):
    store = _store(tmp_path)
    seen = []
    store.add_listener(seen.append)

    asyncio.run(store.update_group_mappings({"a": "g"}))

    assert store.get_settings().group_mappings == {"a": "g"}
    assert seen == []


def test_settings_reject_unknown_keys_and_bad_types(tmp_path):
    store = _store(tmp_path)

    with pytest.raises(KeyError):
        asyncio.run(store.update("api_key", "x"))
    with pytest.raises(ValueError):
        asyncio.run(store.update("visible_models", "not-a-list"))


def test_settings_load_skips_invalid_entries(tmp_path):
    (tmp_path / "state.yaml").write_text(yaml.safe_dump({
        "group_mappings": {"a": "g"},
        "visible_models": "oops",
        "mystery": 1,
    }))
    store = _store(tmp_path)
    store.load()

    settings = store.get_settings()
    assert settings.group_mappings == {"a": "g"}
    assert settings.visible_models == ["a"]
