"""
Tests for configuration loading from the environment and TOML files.
"""

import json

import pytest

from relay_gateway.config import (
    load_config_from_env,
    parse_delivery_mode,
    parse_flag,
    parse_positive,
    parse_retry_schedule,
)
from relay_gateway.errors import ConfigError

TOPICS = {"myLab": {"allow_list": ["192.168.69.0/24"], "recipients": ["11111111"]}}

TOML_DOCUMENT = """
port = 9090
secret = "file-secret"

[topics.myLab]
recipients = ["11111111", "22222222"]
allow_list = ["192.168.69.0/24", "fd00::/8"]

[topics.backups]
recipients = ["33333333"]
allow_list = ["10.0.0.0/8"]
"""


def _env(**overrides):
    env = {"TG_BOT_TOKEN": "123:abc", "TOPICS_JSON": json.dumps(TOPICS)}
    env.update(overrides)
    return {k: v for k, v in env.items() if v is not None}


class TestLoadFromEnv:

    def test_defaults(self):
        config = load_config_from_env(_env())

        assert config.port == 8080
        assert config.secret == "123:abc"
        assert config.topics.names() == ["myLab"]
        assert config.retry_schedule_ms == [1000, 2000, 4000]
        assert config.delivery_mode == "sync"
        assert config.body_read_timeout_s == 30.0
        assert config.max_body_bytes == 50_000_000
        assert config.trust_forwarded_for is False

    def test_overrides(self):
        config = load_config_from_env(_env(
            PORT="9000",
            RETRY_SCHEDULE_MS="500, 1500",
            DELIVERY_MODE="ASYNC",
            BODY_READ_TIMEOUT_S="2.5",
            MAX_BODY_BYTES="1024",
            TRUST_FORWARDED_FOR="yes",
        ))

        assert config.port == 9000
        assert config.retry_schedule_ms == [500, 1500]
        assert config.delivery_mode == "async"
        assert config.body_read_timeout_s == 2.5
        assert config.max_body_bytes == 1024
        assert config.trust_forwarded_for is True

    def test_missing_secret_is_fatal(self):
        with pytest.raises(ConfigError, match="TG_BOT_TOKEN"):
            load_config_from_env(_env(TG_BOT_TOKEN=None))

    def test_missing_topics_is_fatal(self):
        with pytest.raises(ConfigError, match="no topics"):
            load_config_from_env(_env(TOPICS_JSON=None))

    def test_invalid_json_is_fatal(self):
        with pytest.raises(ConfigError, match="invalid JSON"):
            load_config_from_env(_env(TOPICS_JSON="{not json"))

    def test_duplicate_topic_in_json_is_fatal(self):
        raw = '{"a": {"allow_list": [], "recipients": ["1"]}, "a": {"allow_list": [], "recipients": ["2"]}}'
        with pytest.raises(ConfigError, match="duplicate"):
            load_config_from_env(_env(TOPICS_JSON=raw))

    def test_bad_topic_is_fatal(self):
        raw = json.dumps({"myLab": {"allow_list": ["10.0.0.0/8"], "recipients": []}})
        with pytest.raises(ConfigError):
            load_config_from_env(_env(TOPICS_JSON=raw))

    def test_port_out_of_range_is_fatal(self):
        with pytest.raises(ConfigError, match="PORT"):
            load_config_from_env(_env(PORT="70000"))

    def test_unknown_delivery_mode_is_fatal(self):
        with pytest.raises(ConfigError, match="DELIVERY_MODE"):
            load_config_from_env(_env(DELIVERY_MODE="later"))

    def test_garbage_forwarded_flag_is_fatal(self):
        with pytest.raises(ConfigError, match="TRUST_FORWARDED_FOR"):
            load_config_from_env(_env(TRUST_FORWARDED_FOR="sometimes"))


class TestLoadFromFile:

    def test_toml_document(self, tmp_path):
        path = tmp_path / "relay.toml"
        path.write_text(TOML_DOCUMENT)

        config = load_config_from_env({}, config_path=str(path))

        assert config.port == 9090
        assert config.secret == "file-secret"
        assert config.topics.names() == ["myLab", "backups"]
        assert config.topics.lookup("myLab").recipients == ("11111111", "22222222")

    def test_path_from_environment(self, tmp_path):
        path = tmp_path / "relay.toml"
        path.write_text(TOML_DOCUMENT)

        config = load_config_from_env({"GATEWAY_CONFIG": str(path)})

        assert config.topics.lookup("backups") is not None

    def test_environment_wins_over_file(self, tmp_path):
        path = tmp_path / "relay.toml"
        path.write_text(TOML_DOCUMENT)

        config = load_config_from_env(
            {"TG_BOT_TOKEN": "env-secret", "PORT": "7000", "TOPICS_JSON": json.dumps(TOPICS)},
            config_path=str(path),
        )

        assert config.secret == "env-secret"
        assert config.port == 7000
        assert config.topics.names() == ["myLab"]

    def test_missing_file_is_fatal(self, tmp_path):
        with pytest.raises(ConfigError, match="failed to read"):
            load_config_from_env({}, config_path=str(tmp_path / "absent.toml"))

    def test_duplicate_table_is_fatal(self, tmp_path):
        path = tmp_path / "relay.toml"
        path.write_text(
            'secret = "s"\n'
            '[topics.a]\nrecipients = ["1"]\nallow_list = []\n'
            '[topics.a]\nrecipients = ["2"]\nallow_list = []\n'
        )
        with pytest.raises(ConfigError, match="failed to parse"):
            load_config_from_env({}, config_path=str(path))


class TestParsers:

    def test_retry_schedule(self):
        assert parse_retry_schedule(None) == [1000, 2000, 4000]
        assert parse_retry_schedule("x, -5, 250") == [250]
        assert parse_retry_schedule("0") == []
        assert parse_retry_schedule("None") == []

    def test_positive(self):
        assert parse_positive("12", 5) == 12
        assert parse_positive("-1", 5) == 5
        assert parse_positive(None, 5) == 5
        assert parse_positive(9090, 5) == 9090
        assert parse_positive(" 2.5 ", 30.0, kind=float) == 2.5
        assert parse_positive("soon", 30.0, kind=float) == 30.0

    def test_delivery_mode(self):
        assert parse_delivery_mode(None) == "sync"
        assert parse_delivery_mode(" async ") == "async"

    def test_flag(self):
        assert parse_flag(None, "X") is False
        assert parse_flag("On", "X") is True
        assert parse_flag("no", "X") is False
        with pytest.raises(ConfigError, match="X must be a boolean"):
            parse_flag("maybe", "X")
