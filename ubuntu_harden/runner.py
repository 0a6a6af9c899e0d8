"""Execution of external privileged commands (apt, ufw, systemctl, ...)."""

import os
import subprocess
from typing import Dict, Optional, Sequence, Union

from ubuntu_harden.errors import CommandError
from ubuntu_harden.log import get_logger

logger = get_logger("runner")

OPERATION_TIMEOUT: int = 900


class CommandRunner:
    """Run commands with a bounded timeout, raising ``CommandError`` on failure."""

    dry_run = False

    def __init__(self, timeout: Optional[int] = OPERATION_TIMEOUT, env: Optional[Dict[str, str]] = None):
        self.timeout = timeout
        self.env = env

    def _environment(self) -> Optional[Dict[str, str]]:
        if not self.env:
            return None
        merged = dict(os.environ)
        merged.update(self.env)
        return merged

    def run(
        self,
        argv: Sequence[str],
        check: bool = True,
        capture_output: bool = False,
        input: Optional[Union[str, bytes]] = None,
        timeout: Optional[int] = None,
    ) -> subprocess.CompletedProcess:
        argv = [str(a) for a in argv]
        logger.debug(f"Running command: {' '.join(argv)}")
        try:
            result = subprocess.run(
                argv,
                check=False,
                capture_output=capture_output,
                input=input,
                text=isinstance(input, str) or (capture_output and input is None),
                timeout=timeout or self.timeout,
                env=self._environment(),
            )
        except FileNotFoundError as e:
            raise CommandError(argv, "command not found") from e
        except subprocess.TimeoutExpired as e:
            raise CommandError(argv, f"timed out after {e.timeout} seconds") from e

        if check and result.returncode != 0:
            stderr = result.stderr.strip() if isinstance(result.stderr, str) else ""
            reason = f"exit status {result.returncode}"
            if stderr:
                reason = f"{reason}: {stderr}"
            raise CommandError(argv, reason, returncode=result.returncode)
        return result


class DryRunRunner(CommandRunner):
    """Log commands instead of executing them."""

    dry_run = True

    def run(
        self,
        argv: Sequence[str],
        check: bool = True,
        capture_output: bool = False,
        input: Optional[Union[str, bytes]] = None,
        timeout: Optional[int] = None,
    ) -> subprocess.CompletedProcess:
        argv = [str(a) for a in argv]
        logger.info(f"[dry-run] {' '.join(argv)}")
        return subprocess.CompletedProcess(argv, 0, stdout="" if capture_output else None, stderr="" if capture_output else None)
