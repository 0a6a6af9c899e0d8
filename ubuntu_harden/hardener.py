"""
The hardening sequence: a fixed list of steps run in order.

Users and keys are provisioned before sshd stops accepting passwords, and any
failure aborts the run, so the host is never left with password logins
disabled and no authorized keys installed.
"""

import os
import pwd
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import requests

from ubuntu_harden.config import Config
from ubuntu_harden.errors import CommandError, ConfigurationError
from ubuntu_harden.keys import AuthorizedKeyStore, KeyProvisioner
from ubuntu_harden.log import get_logger
from ubuntu_harden.patcher import (
    ConfigDirective,
    PatchResult,
    apply_directives,
    ensure_line,
)
from ubuntu_harden.runner import CommandRunner
from ubuntu_harden.ui import print_section, run_with_progress

logger = get_logger("hardener")


class StepSkipped(Exception):
    """Raised by a step that has nothing to do on this host."""


def read_os_release(path: Path) -> Dict[str, str]:
    """Parse an ``os-release`` file into a dict."""
    values: Dict[str, str] = {}
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip("\"'")
    return values


class Hardener:
    """Runs the hardening steps against the local host."""

    def __init__(
        self,
        config: Config,
        runner: CommandRunner,
        provisioner: Optional[KeyProvisioner] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config
        self.runner = runner
        self.session = session or requests.Session()
        self.provisioner = provisioner or KeyProvisioner(
            session=self.session,
            api_url=config.GITHUB_API_URL,
            timeout=config.FETCH_TIMEOUT,
        )
        self.dry_run = config.DRY_RUN or runner.dry_run
        self.status: Dict[str, Dict[str, str]] = {
            name: {"status": "pending", "message": ""} for name, _, _ in self.steps()
        }

    def steps(self) -> List[Tuple[str, str, Callable[[], Optional[str]]]]:
        return [
            ("system_update", "Updating system packages", self.update_system),
            ("needrestart", "Configuring needrestart", self.configure_needrestart),
            ("docker", "Installing Docker", self.install_docker),
            ("overcommit", "Configuring memory overcommit", self.configure_overcommit),
            ("firewall", "Configuring UFW firewall", self.configure_firewall),
            ("app_user", f"Creating user {self.config.APP_USER}", self.create_app_user),
            ("ssh_keys", "Installing SSH keys from GitHub", self.provision_keys),
            ("ssh", "Securing SSH configuration", self.configure_ssh),
            ("docker_group", "Adding user to docker group", self.add_docker_group),
            ("fail2ban", "Configuring fail2ban", self.configure_fail2ban),
            ("shared_memory", "Securing shared memory", self.secure_shared_memory),
            ("reboot", "Rebooting", self.reboot),
        ]

    def run(self) -> Dict[str, Dict[str, str]]:
        """Run every step in order. The first failure is re-raised."""
        self.config.validate()
        for name, description, step in self.steps():
            print_section(description)
            self.status[name] = {"status": "in_progress", "message": ""}
            try:
                message, skipped = run_with_progress(description, self._call, step)
            except Exception as e:
                self.status[name] = {"status": "failed", "message": str(e)}
                logger.error(f"{description} failed: {e}")
                raise
            if skipped:
                logger.info(f"Skipping {name}: {message}")
                self.status[name] = {"status": "skipped", "message": message}
            else:
                self.status[name] = {"status": "success", "message": message or ""}
        return self.status

    @staticmethod
    def _call(step: Callable[[], Optional[str]]) -> Tuple[Optional[str], bool]:
        try:
            return step(), False
        except StepSkipped as e:
            return str(e), True

    # ----------------------------------------------------------------
    # Helpers
    # ----------------------------------------------------------------
    def _apt(self, *args: str) -> None:
        self.runner.run(["apt-get", *args])

    def _ensure_exists(self, path: Path) -> None:
        if path.exists():
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(mode=0o644)

    def _write_file(self, path: Path, content: str, mode: int = 0o644) -> bool:
        """Write ``content`` to ``path`` unless it already holds it."""
        if path.is_file() and path.read_text() == content:
            logger.debug(f"{path} already up to date")
            return False
        if self.dry_run:
            logger.info(f"[dry-run] Would write {path}")
            return True
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        os.chmod(path, mode)
        logger.info(f"Wrote {path}")
        return True

    def _user_exists(self, name: str) -> bool:
        try:
            pwd.getpwnam(name)
        except KeyError:
            return False
        return True

    def key_store(self) -> AuthorizedKeyStore:
        user = self.config.APP_USER
        if self.config.APP_USER_HOME is not None:
            return AuthorizedKeyStore.for_account(user, home=self.config.APP_USER_HOME)
        if self.dry_run and not self._user_exists(user):
            return AuthorizedKeyStore.for_account(user, home=Path("/home") / user)
        return AuthorizedKeyStore.for_account(user)

    # ----------------------------------------------------------------
    # Steps
    # ----------------------------------------------------------------
    def update_system(self) -> str:
        self._apt("update")
        self._apt("upgrade", "-y")
        self._apt("install", "-y", *self.config.BASE_PACKAGES)
        return f"Installed {', '.join(self.config.BASE_PACKAGES)}"

    def configure_needrestart(self) -> str:
        conf = self.config.NEEDRESTART_CONF
        if not conf.is_file():
            raise StepSkipped(f"{conf} not present")
        results = apply_directives(
            (ConfigDirective(conf, key, value, separator=" = ") for key, value in self.config.NEEDRESTART_SETTINGS.items()),
            backup=self.config.BACKUP_CONFIGS,
            dry_run=self.dry_run,
        )
        changed = sum(1 for r in results.values() if r is PatchResult.CHANGED)
        return f"{changed} setting(s) changed"

    def install_docker(self) -> str:
        if not self.config.INSTALL_DOCKER:
            raise StepSkipped("disabled")

        keyring = self.config.APT_KEYRINGS_DIR / "docker.gpg"
        self.runner.run(["install", "-m", "0755", "-d", str(self.config.APT_KEYRINGS_DIR)])

        if self.dry_run:
            logger.info(f"[dry-run] Would download Docker GPG key from {self.config.DOCKER_GPG_URL}")
            key_data = b""
        else:
            logger.info(f"Downloading Docker GPG key from {self.config.DOCKER_GPG_URL}")
            try:
                response = self.session.get(self.config.DOCKER_GPG_URL, timeout=self.config.FETCH_TIMEOUT)
                response.raise_for_status()
            except requests.RequestException as e:
                raise CommandError(["GET", self.config.DOCKER_GPG_URL], str(e)) from e
            key_data = response.content
        self.runner.run(["gpg", "--dearmor", "--yes", "-o", str(keyring)], input=key_data)
        if not self.dry_run:
            os.chmod(keyring, 0o644)

        arch = self.runner.run(["dpkg", "--print-architecture"], capture_output=True).stdout.strip()
        if not arch:
            if not self.dry_run:
                raise ConfigurationError("Could not determine the dpkg architecture")
            arch = "amd64"
        release = read_os_release(self.config.OS_RELEASE)
        codename = release.get("VERSION_CODENAME") or release.get("UBUNTU_CODENAME")
        if not codename:
            raise ConfigurationError(f"No VERSION_CODENAME in {self.config.OS_RELEASE}")

        source = f"deb [arch={arch} signed-by={keyring}] {self.config.DOCKER_REPO_URL} {codename} stable\n"
        self._write_file(self.config.DOCKER_APT_SOURCE, source)

        self._apt("update")
        self._apt("install", "-y", *self.config.DOCKER_PACKAGES)
        return f"Docker installed from {codename} stable"

    def configure_overcommit(self) -> str:
        for key, value in self.config.SYSCTL_SETTINGS.items():
            self.runner.run(["sysctl", "-w", f"{key}={value}"])
        conf = self.config.SYSCTL_CONF
        if self.dry_run and not conf.exists():
            logger.info(f"[dry-run] Would create {conf}")
        else:
            self._ensure_exists(conf)
            apply_directives(
                (ConfigDirective(conf, key, value, separator=" = ") for key, value in self.config.SYSCTL_SETTINGS.items()),
                backup=self.config.BACKUP_CONFIGS,
                dry_run=self.dry_run,
            )
        return ", ".join(f"{k}={v}" for k, v in self.config.SYSCTL_SETTINGS.items())

    def configure_firewall(self) -> str:
        for service in self.config.FIREWALL_SERVICES:
            self.runner.run(["ufw", "allow", service])
            logger.info(f"Allowed {service}.")
        self.runner.run(["ufw", "--force", "enable"])
        return f"Allowed {', '.join(self.config.FIREWALL_SERVICES)}"

    def create_app_user(self) -> str:
        user = self.config.APP_USER
        if self._user_exists(user):
            logger.info(f"User {user} already exists.")
        else:
            self.runner.run(["adduser", "--disabled-password", "--gecos", "", user])
            logger.info(f"User {user} created.")

        sudoers = self.config.SUDOERS_DIR / f"90-{user}"
        rule = f"{user} ALL=(ALL) NOPASSWD: ALL\n"
        if sudoers.is_file() and sudoers.read_text() == rule:
            return f"{user} already has passwordless sudo"
        if self.dry_run:
            logger.info(f"[dry-run] Would write {sudoers}")
            return f"{user} would get passwordless sudo"

        # sudo ignores drop-ins whose name contains a dot, so the staging file is inert.
        staging = self.config.SUDOERS_DIR / f".{sudoers.name}.tmp"
        try:
            staging.write_text(rule)
            os.chmod(staging, 0o440)
            self.runner.run(["visudo", "-cf", str(staging)])
            os.replace(staging, sudoers)
        finally:
            if staging.exists():
                staging.unlink()
        return f"{user} granted passwordless sudo"

    def provision_keys(self) -> str:
        store = self.key_store()
        count = self.provisioner.provision(self.config.GITHUB_USERNAME, store, dry_run=self.dry_run)
        return f"{count} key(s) from github.com/{self.config.GITHUB_USERNAME}"

    def configure_ssh(self) -> str:
        directives = [
            ConfigDirective(self.config.SSHD_CONFIG, k, v, block_start=self.config.SSH_MATCH_BLOCK)
            for k, v in self.config.SSH_CONFIG.items()
        ]
        results = apply_directives(directives, backup=self.config.BACKUP_CONFIGS, dry_run=self.dry_run)
        changed = [key for key, result in results.items() if result is PatchResult.CHANGED]
        if not changed:
            return "already hardened"
        self.runner.run(["sshd", "-t"])
        logger.info("Reloading ssh")
        self.runner.run(["systemctl", "reload", "ssh"])
        return f"Updated {', '.join(changed)}"

    def add_docker_group(self) -> str:
        if not self.config.INSTALL_DOCKER:
            raise StepSkipped("docker not installed")
        self.runner.run(["usermod", "-aG", "docker", self.config.APP_USER])
        return f"{self.config.APP_USER} added to docker"

    def configure_fail2ban(self) -> str:
        self._apt("install", "-y", "fail2ban")
        self._write_file(self.config.FAIL2BAN_JAIL, self.config.fail2ban_jail())
        self.runner.run(["systemctl", "restart", "fail2ban"])
        return f"sshd jail written to {self.config.FAIL2BAN_JAIL}"

    def secure_shared_memory(self) -> str:
        result = ensure_line(
            self.config.FSTAB,
            self.config.SHM_FSTAB_LINE,
            backup=self.config.BACKUP_CONFIGS,
            dry_run=self.dry_run,
        )
        return "already secured" if result is PatchResult.UNCHANGED else "fstab entry added"

    def reboot(self) -> str:
        if not self.config.REBOOT:
            raise StepSkipped("reboot disabled; reboot later for all changes to take effect")
        logger.info("Rebooting so changes can take effect")
        self.runner.run(["reboot"])
        return "reboot issued"
