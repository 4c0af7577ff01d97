import pytest

from maskctl.config import DEFAULT_CONFIG, Settings, coerce_value
from maskctl.repository import get_config, load_settings, set_config
from maskctl.utils import parse_delay_to_seconds


def test_defaults_are_seeded(db):
    assert get_config(db) == DEFAULT_CONFIG
    settings = load_settings(db)
    assert settings == Settings()
    assert settings.lease_seconds == 120
    assert settings.max_deliveries == 5


def test_set_config_round_trips_through_settings(db):
    set_config(db, "max_workers", "8")
    set_config(db, "scale_cooldown_seconds", "5m")
    settings = load_settings(db)
    assert settings.max_workers == 8
    assert settings.scale_cooldown_seconds == 300


def test_set_config_validates_the_whole_config(db):
    with pytest.raises(ValueError):
        set_config(db, "heartbeat_seconds", "120")
    with pytest.raises(ValueError):
        set_config(db, "min_workers", "80")
    assert get_config(db)["heartbeat_seconds"] == "30"


def test_unknown_key_rejected(db):
    with pytest.raises(ValueError) as exc:
        set_config(db, "colour", "blue")
    assert "Allowed keys" in str(exc.value)


def test_coerce_value():
    assert coerce_value("max_stage_attempts", "4") == 4
    assert coerce_value("heartbeat_seconds", "0.5") == 0.5
    assert coerce_value("lease_seconds", "1h30m") == 5400
    with pytest.raises(ValueError):
        coerce_value("max_workers", "2m")


@pytest.mark.parametrize("text,seconds", [
    ("20s", 20), ("5m", 300), ("1h30m", 5400), ("2d3h", 183600), ("  2h  ", 7200),
])
def test_parse_durations(text, seconds):
    assert parse_delay_to_seconds(text) == seconds


@pytest.mark.parametrize("text", ["", "soon", "0s"])
def test_parse_bad_durations(text):
    with pytest.raises(ValueError):
        parse_delay_to_seconds(text)
