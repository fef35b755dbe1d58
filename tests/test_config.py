"""Tests for settings loading."""

import pytest

from config import DEFAULTS, SettingsError, load_settings_conf

def write_settings(tmp_path, body):
    (tmp_path / 'settings.conf').write_text("[DEFAULT]\n" + body)
    return str(tmp_path)

def test_missing_file_uses_defaults(tmp_path):
    settings = load_settings_conf(str(tmp_path))
    assert settings['db_url'] == DEFAULTS['db_url']
    assert settings['strict_reservations'] is False
    assert settings['reservation_expiration_minutes'] == 0
    assert settings['signature_max_length'] == 200

def test_values_are_typed(tmp_path):
    settings = load_settings_conf(write_settings(tmp_path, (
        "db_url = postgresql://user@db:5432/mints\n"
        "strict_reservations = yes\n"
        "reservation_expiration_minutes = 15\n"
        "outbox_path = ~/outbox.json\n"
    )))
    assert settings['db_url'] == "postgresql://user@db:5432/mints"
    assert settings['strict_reservations'] is True
    assert settings['reservation_expiration_minutes'] == 15
    assert settings['outbox_max_delay'] == 300
    assert not settings['outbox_path'].startswith('~')

@pytest.mark.parametrize("body", [
    "reservation_expiration_minutes = soon\n",
    "reservation_expiration_minutes = -5\n",
    "signature_max_length = 0\n",
    "strict_reservations = maybe\n",
    "db_url =\n"
])
def test_invalid_values_raise(tmp_path, body):
    with pytest.raises(SettingsError):
        load_settings_conf(write_settings(tmp_path, body))
