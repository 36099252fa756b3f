import json

from groupcast.config.loader import _migrate_config, load_config, save_config
from groupcast.config.schema import Config


def test_migrate_moves_legacy_flat_keys_into_sections():
    data = {"maxSessions": 3, "qrRetries": 7, "cacheSize": 100}

    migrated = _migrate_config(data)

    assert migrated["sessions"]["maxSessions"] == 3
    assert migrated["connection"]["challengeBudget"] == 7
    assert migrated["cache"]["capacity"] == 100
    assert "maxSessions" not in migrated
    assert "qrRetries" not in migrated


def test_migrate_does_not_override_existing_section_value():
    data = {
        "maxSessions": 3,
        "sessions": {"maxSessions": 8},
    }

    migrated = _migrate_config(data)

    assert migrated["sessions"]["maxSessions"] == 8
    assert "maxSessions" not in migrated


def test_save_then_load_keeps_camel_case_values(tmp_path):
    path = tmp_path / "config.json"
    config = Config()
    config.sessions.max_sessions = 9
    config.reply.fallback_quote_chars = 20

    save_config(config, path)
    raw = json.loads(path.read_text(encoding="utf-8"))
    loaded = load_config(path)

    assert raw["sessions"]["maxSessions"] == 9
    assert raw["reply"]["fallbackQuoteChars"] == 20
    assert loaded.sessions.max_sessions == 9
    assert loaded.reply.fallback_quote_chars == 20


def test_load_config_applies_legacy_keys(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"cacheSize": 50}), encoding="utf-8")

    config = load_config(path)

    assert config.cache.capacity == 50


def test_invalid_config_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")

    config = load_config(path)

    assert config.sessions.max_sessions == 5
