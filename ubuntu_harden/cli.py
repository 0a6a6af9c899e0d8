#!/usr/bin/env python3
"""
ubuntu-harden

Applies common security measures to a fresh Ubuntu server: package updates,
Docker, firewall, SSH daemon hardening, a non-root user with SSH keys taken
from GitHub, fail2ban and shared-memory hardening, then reboots.

Usage:
    sudo GITHUB_USERNAME=your_username ubuntu-harden run
    sudo ubuntu-harden patch /etc/ssh/sshd_config PermitRootLogin no
    sudo ubuntu-harden keys octocat --account app

Exit codes:
    0   success
    3   configuration error (missing username, not root)
    10  configuration file not found
    11  configuration file not writable
    12  conflicting directive values in a configuration file
    20  key fetch failed
    21  no keys published for the GitHub user
    22  authorized_keys could not be written
    30  external command failed
    130 interrupted
"""

import os
import signal
import sys
from pathlib import Path
from typing import NoReturn, Optional

import click

from ubuntu_harden import __version__
from ubuntu_harden.config import Config
from ubuntu_harden.errors import ConfigurationError, HardenError
from ubuntu_harden.hardener import Hardener
from ubuntu_harden.keys import FETCH_TIMEOUT, GITHUB_API_URL, AuthorizedKeyStore, KeyProvisioner
from ubuntu_harden.log import setup_logger
from ubuntu_harden.patcher import ConfigDirective, PatchResult, apply_directive
from ubuntu_harden.runner import CommandRunner, DryRunRunner
from ubuntu_harden.ui import (
    console,
    create_header,
    print_error,
    print_status_report,
    print_success,
    print_warning,
)


def check_root() -> None:
    """Ensure the script is run as root."""
    if os.geteuid() != 0:
        raise ConfigurationError("Script must be run as root.")


def fail(error: HardenError) -> NoReturn:
    print_error(str(error))
    sys.exit(error.exit_code)


@click.group()
@click.version_option(__version__, prog_name="ubuntu-harden")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="HARDEN_LOG_FILE",
    help="Also log to this file",
)
@click.pass_context
def cli(ctx: click.Context, debug: bool, log_file: Optional[Path]) -> None:
    """Harden a fresh Ubuntu server."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["log_file"] = log_file


@cli.command()
@click.option("--github-username", envvar="GITHUB_USERNAME", help="GitHub user whose public keys are installed")
@click.option("--user", "app_user", envvar="HARDEN_APP_USER", help="Local account to create (default: app)")
@click.option("--dry-run", is_flag=True, help="Log commands and edits without applying them")
@click.option("--no-reboot", is_flag=True, help="Do not reboot at the end")
@click.option("--skip-docker", is_flag=True, help="Do not install Docker")
@click.option("--timeout", type=float, help=f"Key fetch timeout in seconds (default: {FETCH_TIMEOUT})")
@click.pass_context
def run(
    ctx: click.Context,
    github_username: Optional[str],
    app_user: Optional[str],
    dry_run: bool,
    no_reboot: bool,
    skip_docker: bool,
    timeout: Optional[float],
) -> None:
    """Run the full hardening sequence."""
    try:
        config = Config.from_env(
            GITHUB_USERNAME=github_username,
            APP_USER=app_user,
            FETCH_TIMEOUT=timeout,
            LOG_FILE=ctx.obj["log_file"],
            DRY_RUN=dry_run,
            REBOOT=False if no_reboot else None,
            INSTALL_DOCKER=False if skip_docker else None,
        )
        config.validate()
        if not dry_run:
            check_root()
    except HardenError as e:
        fail(e)

    logger = setup_logger(None if dry_run else config.LOG_FILE, ctx.obj["debug"])
    console.print(create_header())
    logger.info(f"Hardening host for GitHub user {config.GITHUB_USERNAME} (account: {config.APP_USER})")

    env = {"DEBIAN_FRONTEND": "noninteractive"}
    runner = DryRunRunner(env=env) if dry_run else CommandRunner(timeout=config.COMMAND_TIMEOUT, env=env)
    hardener = Hardener(config, runner)
    try:
        hardener.run()
    except HardenError as e:
        print_status_report(hardener.status)
        fail(e)
    except OSError as e:
        print_status_report(hardener.status)
        print_error(f"Unexpected system error: {e}")
        sys.exit(1)

    print_status_report(hardener.status)
    print_success("Hardening complete.")
    if not config.REBOOT:
        print_warning("Reboot the server for all changes to take effect.")


@cli.command()
@click.argument("file", type=click.Path(path_type=Path))
@click.argument("key")
@click.argument("value")
@click.option("--separator", default=" ", show_default=True, help="Text between key and value")
@click.option("--backup", is_flag=True, help="Keep a timestamped copy of the original file")
@click.option("--dry-run", is_flag=True, help="Report the result without writing")
@click.pass_context
def patch(ctx: click.Context, file: Path, key: str, value: str, separator: str, backup: bool, dry_run: bool) -> None:
    """Set KEY to VALUE in FILE, activating a commented default if present."""
    setup_logger(ctx.obj["log_file"], ctx.obj["debug"])
    try:
        directive = ConfigDirective(file, key, value, separator=separator)
        result = apply_directive(directive, backup=backup, dry_run=dry_run)
    except ValueError as e:
        fail(ConfigurationError(str(e)))
    except HardenError as e:
        fail(e)

    if result is PatchResult.CHANGED:
        print_success(f"{file}: set '{directive.line}' (changed)")
    else:
        print_success(f"{file}: '{directive.line}' already set (unchanged)")


@cli.command()
@click.argument("identity")
@click.option("--account", required=True, help="Local account that receives the keys")
@click.option("--home", type=click.Path(file_okay=False, path_type=Path), help="Home directory of the account")
@click.option("--timeout", type=float, default=FETCH_TIMEOUT, show_default=True, help="Fetch timeout in seconds")
@click.option("--api-url", default=GITHUB_API_URL, show_default=True, help="GitHub API base URL")
@click.option("--dry-run", is_flag=True, help="Fetch and count keys without installing them")
@click.pass_context
def keys(
    ctx: click.Context,
    identity: str,
    account: str,
    home: Optional[Path],
    timeout: float,
    api_url: str,
    dry_run: bool,
) -> None:
    """Replace ACCOUNT's authorized_keys with IDENTITY's GitHub keys."""
    setup_logger(ctx.obj["log_file"], ctx.obj["debug"])
    provisioner = KeyProvisioner(api_url=api_url, timeout=timeout)
    try:
        store = AuthorizedKeyStore.for_account(account, home=home)
        count = provisioner.provision(identity, store, dry_run=dry_run)
    except HardenError as e:
        fail(e)

    verb = "Would install" if dry_run else "Installed"
    print_success(f"{verb} {count} key(s) for {identity} into {store.path}")


def signal_handler(sig: int, frame: object) -> None:
    print_warning(f"Interrupted by {signal.Signals(sig).name}, shutting down...")
    sys.exit(128 + sig)


def main() -> None:
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    cli(obj={})


if __name__ == "__main__":
    main()
