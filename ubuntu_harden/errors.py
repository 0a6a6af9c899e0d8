"""
Exception hierarchy for ubuntu-harden.

Every error carries a distinct ``exit_code`` so that provisioning automation
calling the CLI can branch on the outcome.
"""

from pathlib import Path
from typing import Optional, Sequence, Union


class HardenError(Exception):
    """Base class for all hardening failures."""

    exit_code: int = 1


class ConfigurationError(HardenError):
    """Missing or invalid run configuration."""

    exit_code = 3


# ----------------------------------------------------------------
# ConfigPatcher errors
# ----------------------------------------------------------------
class PatchError(HardenError):
    """A configuration file could not be patched."""

    def __init__(self, path: Union[str, Path], reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"{self.path}: {reason}")


class ConfigNotFoundError(PatchError):
    exit_code = 10

    def __init__(self, path: Union[str, Path]):
        super().__init__(path, "configuration file not found")


class ConfigPermissionError(PatchError):
    exit_code = 11

    def __init__(self, path: Union[str, Path], reason: str = "permission denied"):
        super().__init__(path, reason)


class AmbiguousDirectiveError(PatchError):
    """Several active lines set the same key to different values."""

    exit_code = 12

    def __init__(self, path: Union[str, Path], key: str, values: Sequence[str]):
        self.key = key
        self.values = list(values)
        shown = ", ".join(repr(v) for v in self.values)
        super().__init__(path, f"'{key}' is set more than once with conflicting values ({shown})")


# ----------------------------------------------------------------
# KeyProvisioner errors
# ----------------------------------------------------------------
class ProvisionError(HardenError):
    """SSH keys for an identity could not be installed."""

    def __init__(self, identity: str, reason: str):
        self.identity = identity
        self.reason = reason
        super().__init__(f"{identity}: {reason}")


class KeyFetchError(ProvisionError):
    exit_code = 20


class NoKeysFoundError(ProvisionError):
    exit_code = 21

    def __init__(self, identity: str):
        super().__init__(
            identity,
            f"no SSH keys found for GitHub user '{identity}'. "
            "Check the username and try again.",
        )


class KeyWriteError(ProvisionError):
    exit_code = 22

    def __init__(self, identity: str, path: Union[str, Path], error: Optional[BaseException] = None):
        self.path = Path(path)
        detail = f": {error}" if error else ""
        super().__init__(identity, f"failed to write {self.path}{detail}")


# ----------------------------------------------------------------
# External commands
# ----------------------------------------------------------------
class CommandError(HardenError):
    """An external command failed, timed out or was not found."""

    exit_code = 30

    def __init__(self, argv: Sequence[str], reason: str, returncode: Optional[int] = None):
        self.argv = list(argv)
        self.returncode = returncode
        self.reason = reason
        super().__init__(f"Command failed: {' '.join(self.argv)} ({reason})")
