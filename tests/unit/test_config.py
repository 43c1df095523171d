"""
Unit tests for configuration management
"""

import pytest
import yaml

from campusguard.core.config import ConfigurationError, ConfigurationManager
from campusguard.services.container import configured_transports
from campusguard.services.notifications.transports import EmailTransport, PushTransport


def write_config(temp_dir, name, data):
    with open(temp_dir / name, "w") as f:
        yaml.safe_dump(data, f)


@pytest.fixture
def base(temp_dir):
    return {"database": {"path": str(temp_dir / "campusguard.db")}}


class TestConfigurationManager:

    def test_defaults(self, temp_dir, base):
        write_config(temp_dir, "config.yaml", base)
        config = ConfigurationManager(str(temp_dir))
        config.load_config()

        assert config.get("sessions.grace_seconds") == 120
        assert config.get("scheduler.tick_seconds") == 5
        assert config.get("notifications.max_attempts") == 3
        assert config.get_staff_roles() == ["staff", "security", "admin"]
        assert config.get("missing.key", "fallback") == "fallback"

    def test_local_file_overrides_default_file(self, temp_dir, base):
        write_config(temp_dir, "default.yaml", {"sessions": {"grace_seconds": 60, "max_history_points": 50}})
        write_config(temp_dir, "config.yaml", {**base, "sessions": {"grace_seconds": 90}})
        config = ConfigurationManager(str(temp_dir))
        config.load_config()

        assert config.get("sessions.grace_seconds") == 90
        assert config.get("sessions.max_history_points") == 50
        assert config.get("sessions.default_check_in_interval_seconds") == 300

    def test_environment_overrides_files(self, temp_dir, base, monkeypatch):
        write_config(temp_dir, "config.yaml", {**base, "sessions": {"grace_seconds": 90}})
        monkeypatch.setenv("CAMPUSGUARD_GRACE_SECONDS", "30")
        monkeypatch.setenv("CAMPUSGUARD_STAFF_ROLES", '["security"]')
        config = ConfigurationManager(str(temp_dir))
        config.load_config()

        assert config.get("sessions.grace_seconds") == 30
        assert config.get_staff_roles() == ["security"]

    def test_invalid_values_rejected(self, temp_dir, base):
        write_config(temp_dir, "config.yaml", {**base, "sessions": {"grace_seconds": -1}})
        config = ConfigurationManager(str(temp_dir))

        with pytest.raises(ConfigurationError) as exc_info:
            config.load_config()
        assert "grace period" in str(exc_info.value)

    def test_watchers_notified(self, temp_dir, base):
        write_config(temp_dir, "config.yaml", base)
        config = ConfigurationManager(str(temp_dir))
        config.load_config()
        seen = []
        config.watch("scheduler.tick_seconds", lambda key, value: seen.append((key, value)))

        config.set("scheduler.tick_seconds", 10)

        assert seen == [("scheduler.tick_seconds", 10)]
        assert config.get_section("scheduler")["tick_seconds"] == 10

    def test_enabled_transports(self, temp_dir, base):
        write_config(temp_dir, "config.yaml", {
            **base,
            "notifications": {"push": {"enabled": True}, "email": {"enabled": True, "smtp_host": "mail.campus.edu"}}
        })
        config = ConfigurationManager(str(temp_dir))
        config.load_config()

        transports = configured_transports(config)

        assert [type(t) for t in transports] == [PushTransport, EmailTransport]
        assert transports[0].endpoint == "https://exp.host/--/api/v2/push/send"
        assert transports[1].smtp_host == "mail.campus.edu"
        assert config.is_transport_enabled("sms") is False
