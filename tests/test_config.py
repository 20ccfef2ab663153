from pathlib import Path

import pytest
from pydantic import ValidationError

from ocea_exporter.config import Settings, create_settings, default_state_file, load_secrets_file


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for key in ("OCEA_USERNAME", "OCEA_PASSWORD", "POLL_INTERVAL", "RECONCILE_STRATEGY", "MQTT_PASSWORD"):
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = Settings(_env_file=None)

    assert settings.poll_interval == 1800
    assert settings.crash_backoff == 60
    assert settings.http_timeout == 10
    assert settings.reconcile_strategy == "annual"
    assert settings.prometheus_enabled
    assert (settings.prometheus_listen_addr, settings.prometheus_port) == ("127.0.0.1", 9001)
    assert not settings.homeassistant_enabled
    assert not settings.has_credentials


def test_environment_overrides(clean_env):
    clean_env.setenv("OCEA_USERNAME", "alice@example.org")
    clean_env.setenv("OCEA_PASSWORD", "s3cret")
    clean_env.setenv("POLL_INTERVAL", "600")
    clean_env.setenv("RECONCILE_STRATEGY", "direct")

    settings = Settings(_env_file=None)

    assert settings.poll_interval == 600
    assert settings.reconcile_strategy == "direct"
    assert settings.credentials.username == "alice@example.org"
    assert "s3cret" not in repr(settings.credentials)


def test_unknown_strategy_is_rejected(clean_env):
    clean_env.setenv("RECONCILE_STRATEGY", "monthly")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_credentials_are_frozen(clean_env):
    credentials = Settings(_env_file=None, OCEA_USERNAME="a", OCEA_PASSWORD="b").credentials

    with pytest.raises(ValidationError):
        credentials.password = "other"


def test_secrets_file(clean_env, tmp_path):
    (tmp_path / ".secrets").write_text(
        "# portal account\n"
        "OCEA_PASSWORD=from-secrets\n"
        "\n"
        "MQTT_PASSWORD = broker-pass\n"
        "UNRELATED=ignored\n"
    )
    clean_env.setenv("OCEA_USERNAME", "alice@example.org")
    # Registered so monkeypatch restores them after create_settings() exports the secrets
    clean_env.setenv("OCEA_PASSWORD", "from-env")
    clean_env.setenv("MQTT_PASSWORD", "from-env")

    assert load_secrets_file()["MQTT_PASSWORD"] == "broker-pass"

    settings = create_settings()

    assert settings.ocea_password == "from-secrets"
    assert settings.mqtt_password == "broker-pass"
    assert settings.has_credentials


def test_default_state_file_follows_xdg(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert default_state_file() == tmp_path / "ocea-exporter" / "state.json"

    monkeypatch.delenv("XDG_CONFIG_HOME")
    assert default_state_file() == Path.home() / ".config" / "ocea-exporter" / "state.json"
