"""
Install a GitHub user's public SSH keys as a local account's authorized_keys.

The provider's key list fully replaces the store on every run, so revoked keys
disappear. An empty list is a hard failure: installing nothing would lock the
account out once password logins are disabled.
"""

import errno
import os
import pwd
import re
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

import requests

from ubuntu_harden.errors import KeyFetchError, KeyWriteError, NoKeysFoundError
from ubuntu_harden.log import get_logger

logger = get_logger("keys")

GITHUB_API_URL = "https://api.github.com"
FETCH_TIMEOUT: float = 10
GITHUB_LOGIN_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9]|-(?=[A-Za-z0-9])){0,38}$")


@dataclass(frozen=True)
class KeyRecord:
    """One public key line."""

    material: str

    def __post_init__(self) -> None:
        if not self.material or not self.material.strip():
            raise ValueError("Key material must not be empty")
        if "\n" in self.material or "\r" in self.material:
            raise ValueError("Key material must be a single line")


def dedupe_keys(keys: Iterable[KeyRecord]) -> List[KeyRecord]:
    """Drop repeated keys, keeping first-seen order."""
    return list(dict.fromkeys(keys))


@dataclass
class AuthorizedKeyStore:
    """The authorized_keys file of a local account."""

    owner_account: str
    path: Path
    file_mode: int = 0o600
    dir_mode: int = 0o700

    def __post_init__(self) -> None:
        self.path = Path(self.path)

    @classmethod
    def for_account(cls, account: str, home: Optional[Union[str, Path]] = None) -> "AuthorizedKeyStore":
        """Build the store at ``~account/.ssh/authorized_keys``."""
        if home is None:
            try:
                home = pwd.getpwnam(account).pw_dir
            except KeyError:
                raise KeyWriteError(account, f"~{account}", LookupError(f"no such user '{account}'")) from None
        return cls(owner_account=account, path=Path(home) / ".ssh" / "authorized_keys")

    @property
    def directory(self) -> Path:
        return self.path.parent

    def owner_ids(self) -> tuple:
        entry = pwd.getpwnam(self.owner_account)
        return entry.pw_uid, entry.pw_gid

    def read(self) -> List[str]:
        """Return the currently installed key lines."""
        if not self.path.is_file():
            return []
        return [line.strip() for line in self.path.read_text().splitlines() if line.strip()]

    def _require(self, path: Path, is_type: Callable[[int], bool], what: str) -> None:
        # Runs as root: a symlink here would hand its target over to the account.
        mode = os.lstat(path).st_mode
        if not is_type(mode):
            kind = "a symlink" if stat.S_ISLNK(mode) else f"something that is not {what}"
            raise OSError(errno.EINVAL, f"refusing to use {kind}", str(path))

    def ensure_directory(self) -> None:
        """Create the ``.ssh`` directory if needed and fix its mode and owner."""
        uid, gid = self.owner_ids()
        self.directory.mkdir(mode=self.dir_mode, parents=True, exist_ok=True)
        self._require(self.directory, stat.S_ISDIR, "a directory")
        os.chown(self.directory, uid, gid, follow_symlinks=False)
        os.chmod(self.directory, self.dir_mode)

    def secure(self) -> None:
        """Apply mode and owner to both the key file and its directory."""
        uid, gid = self.owner_ids()
        self._require(self.directory, stat.S_ISDIR, "a directory")
        self._require(self.path, stat.S_ISREG, "a regular file")
        os.chown(self.path, uid, gid, follow_symlinks=False)
        os.chmod(self.path, self.file_mode)
        os.chown(self.directory, uid, gid, follow_symlinks=False)
        os.chmod(self.directory, self.dir_mode)

    def replace(self, keys: List[KeyRecord]) -> None:
        """Atomically replace the file contents with ``keys``.

        Keys are staged in a temporary file in the same directory, which is
        renamed over the target. The staging file never outlives this call.
        """
        uid, gid = self.owner_ids()
        self.ensure_directory()
        fd, tmp_name = tempfile.mkstemp(prefix=".authorized_keys.", dir=self.directory)
        try:
            with os.fdopen(fd, "w") as f:
                os.fchmod(f.fileno(), self.file_mode)
                os.fchown(f.fileno(), uid, gid)
                f.write("".join(f"{key.material}\n" for key in keys))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        self.secure()


class KeyProvisioner:
    """Fetch public keys for a GitHub user and install them into a store."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        api_url: str = GITHUB_API_URL,
        timeout: float = FETCH_TIMEOUT,
    ):
        self.session = session or requests.Session()
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def keys_url(self, identity: str) -> str:
        return f"{self.api_url}/users/{identity}/keys"

    def fetch(self, identity: str) -> List[KeyRecord]:
        """Return the deduplicated, non-empty keys published for ``identity``."""
        if not GITHUB_LOGIN_RE.fullmatch(identity or ""):
            raise KeyFetchError(identity, "not a valid GitHub username")

        url = self.keys_url(identity)
        logger.info(f"Fetching SSH keys from GitHub for user: {identity}")
        try:
            response = self.session.get(
                url,
                timeout=self.timeout,
                headers={"Accept": "application/vnd.github+json"},
            )
            response.raise_for_status()
        except requests.Timeout as e:
            raise KeyFetchError(identity, f"request to {url} timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise KeyFetchError(identity, f"request to {url} failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise KeyFetchError(identity, f"invalid JSON from {url}") from e

        if not isinstance(data, list):
            raise KeyFetchError(identity, f"unexpected response from {url}")

        keys: List[KeyRecord] = []
        for entry in data:
            material = entry.get("key") if isinstance(entry, dict) else None
            if not isinstance(material, str) or not material.strip():
                continue
            try:
                keys.append(KeyRecord(material.strip()))
            except ValueError as e:
                logger.warning(f"Skipping key for {identity}: {e}")
        return dedupe_keys(keys)

    def provision(self, identity: str, store: AuthorizedKeyStore, dry_run: bool = False) -> int:
        """
        Replace ``store`` with the keys GitHub lists for ``identity``.

        Returns the number of keys installed. Raises ``KeyFetchError``,
        ``NoKeysFoundError`` or ``KeyWriteError``; on any failure the existing
        store is left as it was.
        """
        keys = self.fetch(identity)
        if not keys:
            raise NoKeysFoundError(identity)

        if dry_run:
            logger.info(f"[dry-run] Would install {len(keys)} key(s) into {store.path}")
            return len(keys)

        try:
            store.replace(keys)
        except (OSError, KeyError) as e:
            raise KeyWriteError(identity, store.path, e) from e

        logger.info(f"Installed {len(keys)} SSH key(s) for {identity} into {store.path}")
        return len(keys)
