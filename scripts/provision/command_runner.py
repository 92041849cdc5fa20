"""Run external tools with a privilege decision made once at startup.

Commands are argv lists (no shell).  A runner built by :meth:`CommandRunner.resolve`
knows whether privileged commands need a ``sudo -n`` prefix, so callers only
say *whether* a command is privileged.
"""
from __future__ import annotations

import getpass
import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass, field

from scripts.provision.errors import CommandError, HostEnvironmentError


LOG_PREFIX = "[RUNNER]"
SUDO_PREFIX = ["sudo", "-n"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def text(self) -> str:
        stderr = str(self.stderr or "").strip()
        stdout = str(self.stdout or "").strip()
        return stderr or stdout


@dataclass
class CommandRunner:
    elevation_prefix: list[str] = field(default_factory=list)

    @classmethod
    def resolve(cls) -> CommandRunner:
        """Decide once how privileged commands are run on this host."""
        if os.geteuid() == 0:
            logger.info("%s Running as root", LOG_PREFIX)
            return cls()

        probe = cls(elevation_prefix=list(SUDO_PREFIX)).run(["true"], privileged=True, check=False)
        if not probe.ok:
            raise HostEnvironmentError("This script requires root privileges or passwordless sudo access")
        logger.info("%s Sudo access verified", LOG_PREFIX)
        return cls(elevation_prefix=list(SUDO_PREFIX))

    @property
    def is_root(self) -> bool:
        return not self.elevation_prefix

    def which(self, name: str) -> str | None:
        return shutil.which(name)

    def invoking_user(self) -> str:
        return os.getenv("SUDO_USER") or os.getenv("USER") or getpass.getuser()

    def run(
        self,
        cmd: list[str],
        *,
        privileged: bool = False,
        check: bool = True,
        input_text: str | None = None,
        timeout: float | None = None,
        action: str | None = None,
    ) -> CommandResult:
        full = [*self.elevation_prefix, *cmd] if privileged else list(cmd)
        started = time.monotonic()
        try:
            completed = subprocess.run(
                full,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
            result = CommandResult(
                args=full,
                returncode=completed.returncode,
                stdout=str(completed.stdout or ""),
                stderr=str(completed.stderr or ""),
                duration_seconds=time.monotonic() - started,
            )
        except FileNotFoundError:
            result = CommandResult(
                args=full,
                returncode=127,
                stderr=f"{full[0]}: command not found",
                duration_seconds=time.monotonic() - started,
            )
        except subprocess.TimeoutExpired:
            action_text = action or f"Command failed: {' '.join(full)}"
            raise CommandError(f"{action_text} (timed out after {timeout}s).")

        logger.debug(
            "%s %s -> exit %s in %.2fs",
            LOG_PREFIX,
            " ".join(full),
            result.returncode,
            result.duration_seconds,
        )

        if check and not result.ok:
            action_text = action or f"Command failed: {' '.join(full)}"
            message = f"{action_text} (exit code {result.returncode})."
            detail = result.text()
            if detail:
                message = f"{message} {detail}"
            raise CommandError(message, result=result)
        return result

    def write_file(self, path: str, content: str, *, action: str | None = None) -> CommandResult:
        return self.run(
            ["tee", path],
            privileged=True,
            input_text=content,
            action=action or f"Failed to write {path}",
        )
