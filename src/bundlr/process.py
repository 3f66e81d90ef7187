from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

LOG = logging.getLogger(__name__)


@dataclass
class CompletedCommand:
    exit_code: int
    stdout: str
    stderr: str


class ProcessRunner:
    """Runs external tools (uv, tar, zig, powershell) and reports their exit code."""

    def __init__(self, timeout: Optional[int] = None):
        self.timeout = timeout

    def run(self, argv: Sequence[str], cwd: Optional[Path] = None) -> int:
        return self.capture(argv, cwd=cwd).exit_code

    def capture(self, argv: Sequence[str], cwd: Optional[Path] = None) -> CompletedCommand:
        cmd = [str(part) for part in argv]
        LOG.debug("Running %s%s", shlex.join(cmd), f" (cwd={cwd})" if cwd else "")
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            LOG.debug("Command not found: %s", cmd[0])
            return CompletedCommand(exit_code=127, stdout="", stderr=f"{cmd[0]}: command not found")
        except subprocess.TimeoutExpired as exc:
            LOG.warning("Command timed out after %ss: %s", self.timeout, shlex.join(cmd))
            return CompletedCommand(exit_code=124, stdout=str(exc.stdout or ""), stderr=str(exc.stderr or ""))
        if proc.returncode != 0:
            LOG.debug("Command exited %s: %s", proc.returncode, proc.stderr.strip())
        return CompletedCommand(exit_code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)
