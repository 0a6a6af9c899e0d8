"""
Idempotent line-level edits to text configuration files.

A ``ConfigDirective`` describes one desired ``key value`` line. Applying it
activates a commented-out default, rewrites an existing setting or appends a
new line, without touching anything else in the file:

    >>> d = ConfigDirective("/etc/ssh/sshd_config", "PermitRootLogin", "no")
    >>> apply_directive(d)
    <PatchResult.CHANGED: 'changed'>
    >>> apply_directive(d)
    <PatchResult.UNCHANGED: 'unchanged'>
"""

import datetime
import enum
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional, Union

from ubuntu_harden.errors import (
    AmbiguousDirectiveError,
    ConfigNotFoundError,
    ConfigPermissionError,
)
from ubuntu_harden.log import get_logger

logger = get_logger("patcher")

ENCODING = "utf-8"


class PatchResult(enum.Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"


class DirectiveMatch(NamedTuple):
    index: int
    active: bool
    value: str


class DirectivePattern:
    """
    Recognises a key in column 0 of a line, active or commented out.

    A single ``#`` may sit directly in front of the key. Indented lines never
    match, so settings nested under an sshd ``Match`` block are left alone.
    The key must be followed by whitespace, ``=`` or the end of the line, so
    ``PermitRootLogin`` never matches ``PermitRootLoginFoo``.
    """

    def __init__(self, key: str, separator: str = " "):
        if not key or key != key.strip() or "\n" in key:
            raise ValueError(f"Invalid directive key: {key!r}")
        self.key = key
        self.separator = separator.strip()
        self.regex = re.compile(r"^(?P<comment>#?)" + re.escape(key) + r"(?=[ \t=]|$)")

    def match(self, line: str, index: int = 0) -> Optional[DirectiveMatch]:
        m = self.regex.match(line.rstrip("\r\n"))
        if m is None:
            return None
        rest = line[m.end() :].strip()
        if self.separator and rest.startswith(self.separator):
            rest = rest[len(self.separator) :].strip()
        return DirectiveMatch(index=index, active=not m.group("comment"), value=" ".join(rest.split()))

    def __repr__(self) -> str:
        return f"DirectivePattern({self.regex.pattern!r})"


@dataclass
class ConfigDirective:
    """
    One desired setting in a text configuration file.

    ``block_start`` is a regex for the first line of a conditional section
    (sshd's ``Match``). Lines from the first such section onwards are not
    considered, and a new line is inserted in front of it instead of at the
    end of the file.
    """

    file_path: Union[str, Path]
    key: str
    value: str
    separator: str = " "
    block_start: Optional[str] = None
    pattern: DirectivePattern = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.file_path = Path(self.file_path)
        if "\n" in self.value:
            raise ValueError(f"Directive value for {self.key} must be a single line")
        self.pattern = DirectivePattern(self.key, self.separator)

    def global_end(self, lines: List[str]) -> int:
        """Index of the first line of a conditional section, or ``len(lines)``."""
        if self.block_start is None:
            return len(lines)
        regex = re.compile(self.block_start, re.IGNORECASE)
        for i, line in enumerate(lines):
            if regex.match(line):
                return i
        return len(lines)

    @property
    def line(self) -> str:
        """The canonical ``key<separator>value`` form, without newline."""
        return f"{self.key}{self.separator}{self.value}"


# ----------------------------------------------------------------
# File helpers
# ----------------------------------------------------------------
def backup_file(file_path: Union[str, Path]) -> Optional[Path]:
    """Create a backup of a file with a timestamp suffix."""
    file_path = Path(file_path)
    if not file_path.is_file():
        logger.warning(f"Cannot backup non-existent file: {file_path}")
        return None

    timestamp = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
    backup_path = file_path.with_name(f"{file_path.name}.bak.{timestamp}")
    shutil.copy2(file_path, backup_path)
    logger.debug(f"Backed up {file_path} to {backup_path}")
    return backup_path


def _read_lines(path: Path, dry_run: bool = False) -> List[str]:
    if not path.is_file():
        raise ConfigNotFoundError(path)
    if not os.access(path, os.W_OK):
        if not dry_run:
            raise ConfigPermissionError(path, "file is not writable")
        logger.warning(f"[dry-run] {path} is not writable by this user")
    try:
        with open(path, "r", encoding=ENCODING, errors="surrogateescape", newline="") as f:
            return f.read().splitlines(keepends=True)
    except PermissionError as e:
        raise ConfigPermissionError(path, str(e)) from e


def _write_lines(path: Path, lines: List[str], backup: bool) -> None:
    try:
        if backup:
            backup_file(path)
        # Rewritten in place so the inode keeps its mode and ownership.
        with open(path, "w", encoding=ENCODING, errors="surrogateescape", newline="") as f:
            f.writelines(lines)
    except PermissionError as e:
        raise ConfigPermissionError(path, str(e)) from e


def _line_ending(line: str) -> str:
    if line.endswith("\r\n"):
        return "\r\n"
    return "\n"


def _append(lines: List[str], new_line: str) -> List[str]:
    result = list(lines)
    if result and not result[-1].endswith("\n"):
        result[-1] += "\n"
    result.append(new_line + "\n")
    return result


def _insert(lines: List[str], index: int, new_line: str) -> List[str]:
    if index >= len(lines):
        return _append(lines, new_line)
    return lines[:index] + [new_line + _line_ending(lines[index])] + lines[index:]


# ----------------------------------------------------------------
# Operations
# ----------------------------------------------------------------
def render_directive(directive: ConfigDirective, lines: List[str]) -> List[str]:
    """Return ``lines`` with ``directive`` applied. Pure, does not touch the file."""
    end = directive.global_end(lines)
    matches = [
        m
        for m in (directive.pattern.match(line, i) for i, line in enumerate(lines[:end]))
        if m is not None
    ]
    if not matches:
        return _insert(lines, end, directive.line)

    active = [m for m in matches if m.active]
    values = list(dict.fromkeys(m.value for m in active))
    if len(values) > 1:
        raise AmbiguousDirectiveError(directive.file_path, directive.key, values)

    target = active[0] if active else matches[0]
    duplicates = {m.index for m in active[1:]}

    result: List[str] = []
    for i, line in enumerate(lines):
        if i == target.index:
            ending = _line_ending(line) if line.endswith("\n") else ""
            result.append(directive.line + ending)
        elif i not in duplicates:
            result.append(line)
    if duplicates:
        logger.debug(f"Dropping {len(duplicates)} duplicate '{directive.key}' line(s) in {directive.file_path}")
    return result


def apply_directive(directive: ConfigDirective, backup: bool = False, dry_run: bool = False) -> PatchResult:
    """
    Make ``directive.file_path`` contain exactly one active ``key value`` line.

    Raises ``ConfigNotFoundError``, ``ConfigPermissionError`` or
    ``AmbiguousDirectiveError``. Nothing is written when the file already
    reflects the directive.
    """
    path = Path(directive.file_path)
    lines = _read_lines(path, dry_run=dry_run)
    new_lines = render_directive(directive, lines)

    if new_lines == lines:
        logger.debug(f"{path}: '{directive.line}' already set")
        return PatchResult.UNCHANGED

    if dry_run:
        logger.info(f"[dry-run] Would set '{directive.line}' in {path}")
        return PatchResult.CHANGED

    _write_lines(path, new_lines, backup)
    logger.info(f"Set '{directive.line}' in {path}")
    return PatchResult.CHANGED


def apply_directives(
    directives: Iterable[ConfigDirective], backup: bool = False, dry_run: bool = False
) -> Dict[str, PatchResult]:
    """Apply directives in order, stopping at the first error.

    At most one backup per file is taken per call.
    """
    results: Dict[str, PatchResult] = {}
    backed_up = set()
    for directive in directives:
        path = Path(directive.file_path)
        result = apply_directive(directive, backup=backup and path not in backed_up, dry_run=dry_run)
        if result is PatchResult.CHANGED:
            backed_up.add(path)
        results[directive.key] = result
    return results


def ensure_line(
    file_path: Union[str, Path], line: str, backup: bool = False, dry_run: bool = False
) -> PatchResult:
    """Append ``line`` to the file unless an identical line is already present."""
    path = Path(file_path)
    line = line.rstrip("\r\n")
    lines = _read_lines(path, dry_run=dry_run)

    if any(existing.rstrip("\r\n").strip() == line.strip() for existing in lines):
        logger.debug(f"{path}: line already present: {line}")
        return PatchResult.UNCHANGED

    if dry_run:
        logger.info(f"[dry-run] Would append '{line}' to {path}")
        return PatchResult.CHANGED

    _write_lines(path, _append(lines, line), backup)
    logger.info(f"Appended '{line}' to {path}")
    return PatchResult.CHANGED
