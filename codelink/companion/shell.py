"""Shell command execution for executeShellCommand."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ..errors import HandlerError

logger = logging.getLogger(__name__)

NO_OUTPUT = "Command executed but no output captured"


@dataclass
class ShellResult:
    stdout: str
    stderr: str
    returncode: int

    def combined_output(self) -> str:
        """stdout, then stderr marked with "Error:", or a placeholder."""
        output = self.stdout
        if self.stderr:
            output += f"\nError: {self.stderr}"
        return output or NO_OUTPUT


async def run_shell(command: str, cwd: str | None = None) -> ShellResult:
    """Run ``command`` through the system shell and collect its output.

    Raises HandlerError when the command exits non-zero, carrying its
    stderr, and OSError when the shell cannot be started (e.g. bad cwd).
    """
    logger.info("Executing shell command: %s (cwd=%s)", command, cwd or ".")
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    stdout, stderr = await proc.communicate()
    result = ShellResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        returncode=proc.returncode if proc.returncode is not None else -1,
    )
    if result.returncode != 0:
        logger.info("Shell command failed (rc=%d): %s", result.returncode, command)
        detail = result.stderr.strip() or result.stdout.strip()
        raise HandlerError(
            "executeShellCommand",
            f"Command failed (rc={result.returncode}): {command}"
            + (f"\n{detail}" if detail else ""),
        )
    return result
