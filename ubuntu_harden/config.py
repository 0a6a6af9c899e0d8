"""Run configuration for the hardening sequence."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ubuntu_harden.errors import ConfigurationError
from ubuntu_harden.keys import FETCH_TIMEOUT, GITHUB_API_URL


@dataclass
class Config:
    """Configuration for the Ubuntu hardening process."""

    GITHUB_USERNAME: str = ""
    APP_USER: str = "app"
    APP_USER_HOME: Optional[Path] = None
    LOG_FILE: Optional[Path] = Path("/var/log/ubuntu_harden.log")

    GITHUB_API_URL: str = GITHUB_API_URL
    FETCH_TIMEOUT: float = FETCH_TIMEOUT
    COMMAND_TIMEOUT: int = 900

    DRY_RUN: bool = False
    REBOOT: bool = True
    INSTALL_DOCKER: bool = True
    BACKUP_CONFIGS: bool = True

    # Files touched by the hardening steps
    SSHD_CONFIG: Path = Path("/etc/ssh/sshd_config")
    NEEDRESTART_CONF: Path = Path("/etc/needrestart/needrestart.conf")
    SYSCTL_CONF: Path = Path("/etc/sysctl.conf")
    FSTAB: Path = Path("/etc/fstab")
    FAIL2BAN_JAIL: Path = Path("/etc/fail2ban/jail.local")
    SUDOERS_DIR: Path = Path("/etc/sudoers.d")
    OS_RELEASE: Path = Path("/etc/os-release")
    APT_KEYRINGS_DIR: Path = Path("/etc/apt/keyrings")
    DOCKER_APT_SOURCE: Path = Path("/etc/apt/sources.list.d/docker.list")

    BASE_PACKAGES: List[str] = field(
        default_factory=lambda: ["vim", "curl", "htop", "jq", "ca-certificates", "gnupg"]
    )
    DOCKER_PACKAGES: List[str] = field(
        default_factory=lambda: [
            "docker-ce",
            "docker-ce-cli",
            "containerd.io",
            "docker-buildx-plugin",
            "docker-compose-plugin",
        ]
    )
    DOCKER_GPG_URL: str = "https://download.docker.com/linux/ubuntu/gpg"
    DOCKER_REPO_URL: str = "https://download.docker.com/linux/ubuntu"

    # needrestart: restart services automatically, keep kernel hints quiet
    NEEDRESTART_SETTINGS: Dict[str, str] = field(
        default_factory=lambda: {
            "$nrconf{restart}": "'a';",
            "$nrconf{kernelhints}": "-1;",
        }
    )
    SYSCTL_SETTINGS: Dict[str, str] = field(
        default_factory=lambda: {"vm.overcommit_memory": "1"}
    )

    SSH_CONFIG: Dict[str, str] = field(
        default_factory=lambda: {
            "PubkeyAuthentication": "yes",
            "PasswordAuthentication": "no",
            "PermitEmptyPasswords": "no",
            "ChallengeResponseAuthentication": "no",
            "PermitRootLogin": "no",
        }
    )
    SSH_MATCH_BLOCK: str = r"[ \t]*Match[ \t]"

    FIREWALL_SERVICES: List[str] = field(default_factory=lambda: ["ssh", "http", "https"])

    FAIL2BAN_SETTINGS: Dict[str, str] = field(
        default_factory=lambda: {
            "enabled": "true",
            "port": "ssh",
            "filter": "sshd",
            "maxretry": "5",
            "findtime": "600",
            "bantime": "600",
            "ignoreip": "127.0.0.1/8",
            "logpath": "/var/log/auth.log",
        }
    )

    SHM_FSTAB_LINE: str = "tmpfs /run/shm tmpfs defaults,noexec,nosuid 0 0"

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "Config":
        """Build a config from environment variables, then apply explicit overrides.

        Overrides whose value is ``None`` are ignored.
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        if env.get("GITHUB_USERNAME"):
            values["GITHUB_USERNAME"] = env["GITHUB_USERNAME"].strip()
        if env.get("HARDEN_APP_USER"):
            values["APP_USER"] = env["HARDEN_APP_USER"].strip()
        if env.get("HARDEN_LOG_FILE"):
            values["LOG_FILE"] = Path(env["HARDEN_LOG_FILE"])
        if env.get("HARDEN_FETCH_TIMEOUT"):
            try:
                values["FETCH_TIMEOUT"] = float(env["HARDEN_FETCH_TIMEOUT"])
            except ValueError:
                raise ConfigurationError(
                    f"HARDEN_FETCH_TIMEOUT must be a number, got {env['HARDEN_FETCH_TIMEOUT']!r}"
                ) from None
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def validate(self) -> None:
        if not self.GITHUB_USERNAME:
            raise ConfigurationError(
                "GITHUB_USERNAME is required. "
                "Usage: GITHUB_USERNAME=your_username ubuntu-harden run"
            )
        if not self.APP_USER:
            raise ConfigurationError("The application user name must not be empty.")
        if self.FETCH_TIMEOUT <= 0:
            raise ConfigurationError("The key fetch timeout must be positive.")

    def fail2ban_jail(self) -> str:
        """Render the ``jail.local`` contents for the sshd jail."""
        body = "\n".join(f"{key} = {value}" for key, value in self.FAIL2BAN_SETTINGS.items())
        return f"[sshd]\n{body}\n"
