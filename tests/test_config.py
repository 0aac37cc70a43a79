import os

import pytest

from gamification.config import (
    Config,
    ConfigError,
    load,
    parse_positive_millis,
    split_and_trim,
)


def test_defaults_without_environment():
    cfg = load({})
    assert cfg.listen_address == ":8085"
    assert cfg.log_file_path == os.path.normpath("logs/gamification.log")
    assert cfg.kafka_brokers == ("kafka:9092",)
    assert cfg.ledger_topic == "ledger.public.epochs"
    assert cfg.ledger_group_id == "gamification-ledger"
    assert cfg.max_epochs_per_zone == 1000
    assert cfg.ledger_schema_accept == ("v1", "legacy")


def test_default_timeouts_are_ordered():
    cfg = load({})
    assert cfg.http_write_timeout > cfg.http_read_timeout
    assert cfg.shutdown_timeout == cfg.ledger_poll_timeout


def test_listen_address_override_wins_over_port():
    cfg = load({"GAMIFICATION_LISTEN_ADDRESS": " 0.0.0.0:9000 ", "GAMIFICATION_PORT": "7000"})
    assert cfg.listen_address == "0.0.0.0:9000"


def test_port_gets_colon_prefix():
    cfg = load({"GAMIFICATION_PORT": "7000"})
    assert cfg.listen_address == ":7000"


@pytest.mark.parametrize("port", ["abc", "70 00", "1_000", ""])
def test_bad_port_raises(port):
    with pytest.raises(ConfigError, match="GAMIFICATION_PORT"):
        load({"GAMIFICATION_PORT": port})


def test_empty_listen_address_raises():
    with pytest.raises(ConfigError, match="GAMIFICATION_LISTEN_ADDRESS cannot be empty"):
        load({"GAMIFICATION_LISTEN_ADDRESS": "   "})


def test_log_path_is_normalised():
    cfg = load({"GAMIFICATION_LOG_PATH": "var/./logs//g.log"})
    assert cfg.log_file_path == os.path.normpath("var/logs/g.log")


def test_empty_log_path_raises():
    with pytest.raises(ConfigError, match="GAMIFICATION_LOG_PATH"):
        load({"GAMIFICATION_LOG_PATH": ""})


def test_timeout_overrides_round_trip():
    cfg = load(
        {
            "GAMIFICATION_HTTP_READ_TIMEOUT_MS": "250",
            "GAMIFICATION_HTTP_WRITE_TIMEOUT_MS": "4000",
            "GAMIFICATION_SHUTDOWN_TIMEOUT_MS": "1200",
        }
    )
    assert cfg.http_read_timeout * 1000 == pytest.approx(250)
    assert cfg.http_write_timeout * 1000 == pytest.approx(4000)
    assert cfg.shutdown_timeout * 1000 == pytest.approx(1200)


def test_bad_timeout_names_the_key():
    with pytest.raises(ConfigError, match="GAMIFICATION_HTTP_READ_TIMEOUT_MS"):
        load({"GAMIFICATION_HTTP_READ_TIMEOUT_MS": "0"})


def test_broker_keys_first_found_wins():
    cfg = load({"KAFKA_BROKERS": "x:1", "BROKER_ADDRESS": " a:1 , b:2 ,"})
    assert cfg.kafka_brokers == ("a:1", "b:2")


def test_empty_brokers_raise():
    with pytest.raises(ConfigError, match="GAMIFICATION_KAFKA_BROKERS cannot be empty"):
        load({"GAMIFICATION_KAFKA_BROKERS": " , ,"})


def test_topic_and_group_overrides():
    cfg = load({"GAMIFICATION_LEDGER_TOPIC": "t2", "LEDGER_CONSUMER_GROUP": "g1"})
    assert cfg.ledger_topic == "t2"
    assert cfg.ledger_group_id == "g1"


def test_empty_topic_raises():
    with pytest.raises(ConfigError, match="LEDGER_TOPIC cannot be empty"):
        load({"LEDGER_TOPIC": " "})


def test_poll_timeout_secondary_key():
    cfg = load({"GAMIFICATION_LEDGER_POLL_TIMEOUT_MS": "750"})
    assert cfg.ledger_poll_timeout * 1000 == pytest.approx(750)


@pytest.mark.parametrize("value", ["0", "-3", "many"])
def test_bad_max_epochs(value):
    with pytest.raises(ConfigError, match="MAX_EPOCHS_PER_ZONE"):
        load({"GAMIF_MAX_EPOCHS_PER_ZONE": value})


def test_max_epochs_override():
    cfg = load({"MAX_EPOCHS_PER_ZONE": "25"})
    assert cfg.max_epochs_per_zone == 25


def test_schema_accept_override_and_error():
    assert load({"LEDGER_SCHEMA_ACCEPT": "v1, v2"}).ledger_schema_accept == ("v1", "v2")
    with pytest.raises(ConfigError, match="LEDGER_SCHEMA_ACCEPT cannot be empty"):
        load({"LEDGER_SCHEMA_ACCEPT": ","})


def test_split_and_trim_drops_blanks():
    assert split_and_trim(" a ,, b,") == ["a", "b"]
    assert split_and_trim("") == []


def test_parse_positive_millis_errors():
    with pytest.raises(ConfigError, match="value cannot be empty"):
        parse_positive_millis("  ")
    with pytest.raises(ConfigError, match="invalid integer"):
        parse_positive_millis("1.5")
    with pytest.raises(ConfigError, match="greater than zero"):
        parse_positive_millis("-1")


def test_config_is_frozen():
    cfg = load({"LEDGER_TOPIC": "original"})
    assert isinstance(cfg, Config)
    with pytest.raises(AttributeError):
        cfg.ledger_topic = "other"
    assert cfg.ledger_topic == "original"