from pathlib import Path

import pytest

from ubuntu_harden.config import Config
from ubuntu_harden.errors import ConfigurationError


def test_defaults_follow_hardening_policy():
    config = Config()
    assert config.APP_USER == "app"
    assert config.SSH_CONFIG["PasswordAuthentication"] == "no"
    assert config.SSH_CONFIG["PermitRootLogin"] == "no"
    assert config.FIREWALL_SERVICES == ["ssh", "http", "https"]
    assert config.FETCH_TIMEOUT == 10


def test_from_env_reads_variables():
    env = {
        "GITHUB_USERNAME": " octocat ",
        "HARDEN_APP_USER": "deploy",
        "HARDEN_LOG_FILE": "/tmp/harden.log",
        "HARDEN_FETCH_TIMEOUT": "3.5",
    }
    config = Config.from_env(env)
    assert config.GITHUB_USERNAME == "octocat"
    assert config.APP_USER == "deploy"
    assert config.LOG_FILE == Path("/tmp/harden.log")
    assert config.FETCH_TIMEOUT == 3.5


def test_overrides_win_and_none_is_ignored():
    config = Config.from_env({"GITHUB_USERNAME": "octocat"}, GITHUB_USERNAME="hubot", APP_USER=None)
    assert config.GITHUB_USERNAME == "hubot"
    assert config.APP_USER == "app"


def test_bad_timeout_in_env():
    with pytest.raises(ConfigurationError):
        Config.from_env({"HARDEN_FETCH_TIMEOUT": "soon"})


def test_missing_username_fails_validation():
    with pytest.raises(ConfigurationError) as excinfo:
        Config.from_env({}).validate()
    assert excinfo.value.exit_code == 3
    assert "GITHUB_USERNAME" in str(excinfo.value)


def test_fail2ban_jail_rendering():
    jail = Config().fail2ban_jail()
    assert jail.startswith("[sshd]\nenabled = true\n")
    assert "maxretry = 5\n" in jail
    assert "ignoreip = 127.0.0.1/8\n" in jail
    assert jail.endswith("logpath = /var/log/auth.log\n")
