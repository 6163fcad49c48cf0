"""Tests for Config loading, saving and validation."""

import json

import pytest

from config import Config


class TestDefaults:

    def test_defaults(self):
        config = Config()
        assert config.address == "127.0.0.1"
        assert config.port == 6379
        assert config.channel == "unique-redis-channel-name-example"
        assert config.retry_delay == 1
        assert config.heartbeat_format.format(counter=3) == "message 3"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"port": 0},
            {"port": 70000},
            {"port": "6379"},
            {"retry_delay": 0},
            {"channel": ""},
            {"address": ""},
            {"keepalive": -1},
            {"heartbeat_format": "no counter"},
        ],
    )
    def test_invalid_settings_rejected(self, overrides):
        with pytest.raises(ValueError):
            Config(**overrides)

    def test_update_overrides_independently(self):
        config = Config().update(port=6380)
        assert config.port == 6380
        assert config.address == "127.0.0.1"

    def test_update_unknown_setting_rejected(self):
        with pytest.raises(ValueError):
            Config().update(password="secret")

    def test_rejected_update_leaves_settings_unchanged(self):
        config = Config()

        with pytest.raises(ValueError):
            config.update(address="10.0.0.5", port=0)

        assert config.port == 6379
        assert config.address == "127.0.0.1"

    def test_update_cannot_replace_methods(self):
        config = Config()

        with pytest.raises(ValueError):
            config.update(load=1)

        assert callable(config.load)
        assert "load" not in config.__dict__


class TestFile:

    def test_load_missing_file_writes_defaults(self, tmp_path):
        path = tmp_path / "config.json"

        config = Config().load(str(path))

        assert config.port == 6379
        saved = json.loads(path.read_text())
        assert saved["redis"]["port"] == 6379
        assert saved["client"]["retry_delay"] == 1

    def test_load_existing_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "redis": {"address": "10.0.0.5", "port": 6380, "channel": "beats"},
            "client": {"retry_delay": 2.5},
        }))

        config = Config().load(str(path))

        assert config.address == "10.0.0.5"
        assert config.port == 6380
        assert config.channel == "beats"
        assert config.retry_delay == 2.5
        assert config.connect_timeout == 5

    def test_load_invalid_json_raises(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")

        with pytest.raises(ValueError):
            Config().load(str(path))
        assert path.read_text() == "{not json"

    def test_load_invalid_values_raises(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"redis": {"port": -1}}))

        with pytest.raises(ValueError):
            Config().load(str(path))

    def test_save_round_trip_dict(self, tmp_path):
        path = tmp_path / "config.json"
        original = Config(channel="beats", retry_delay=3)

        original.save(str(path))

        assert Config().load(str(path)).to_dict() == original.to_dict()
