"""Schema-migration tool adapters.

The orchestrator only depends on the :class:`MigrationTool` protocol, so the
engine that actually applies schema changes can be swapped without touching
orchestration logic.  :class:`SubprocessMigrationTool` runs an external
command (``alembic upgrade head`` by default) with ``DATABASE_URL`` pointed at
the target endpoint.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from collections.abc import Mapping, Sequence
from typing import Protocol

from fleet_core.errors import MigrationToolError

logger = logging.getLogger(__name__)

# Only the tail of the tool's stderr is kept for the error message.
_STDERR_TAIL_CHARS = 2000


class MigrationTool(Protocol):
    """Structural interface for schema-migration engines."""

    async def apply_migrations(self, endpoint: str) -> None:
        """Apply all pending migrations to *endpoint*.

        Raises
        ------
        MigrationToolError
            If the migration engine reports a failure.
        """
        ...


class SubprocessMigrationTool:
    """Run a migration CLI as a child process, one attempt per call.

    Parameters
    ----------
    command:
        Argument vector of the migration tool.
    timeout:
        Deadline in seconds for one invocation; the process is killed when it
        expires.
    connect_timeout:
        Exported as ``PGCONNECT_TIMEOUT`` for libpq-based tools.
    env:
        Extra environment variables layered over the current environment.
    """

    def __init__(
        self,
        command: Sequence[str] = ("alembic", "upgrade", "head"),
        *,
        timeout: float = 600.0,
        connect_timeout: int = 5,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("Migration command must not be empty")
        self._command = list(command)
        self._timeout = timeout
        self._connect_timeout = connect_timeout
        self._env = dict(env or {})

    @property
    def display_command(self) -> str:
        return shlex.join(self._command)

    def _build_env(self, endpoint: str) -> dict[str, str]:
        env = {**os.environ, **self._env}
        env["DATABASE_URL"] = endpoint
        env["PGCONNECT_TIMEOUT"] = str(self._connect_timeout)
        return env

    async def apply_migrations(self, endpoint: str) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command,
                env=self._build_env(endpoint),
                stdout=None,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise MigrationToolError(f"Migration tool not found: {self._command[0]}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise MigrationToolError(f"{self.display_command} timed out after {self._timeout:.0f}s") from exc

        if proc.returncode != 0:
            tail = (stderr or b"").decode("utf-8", errors="replace").strip()[-_STDERR_TAIL_CHARS:]
            message = f"{self.display_command} exited {proc.returncode}"
            if tail:
                message = f"{message}: {tail}"
            raise MigrationToolError(message, exit_code=proc.returncode)

        logger.debug("%s completed", self.display_command)
