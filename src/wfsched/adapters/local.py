"""Local worker: runs a job's ``run`` command as a shell subprocess."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from datetime import datetime

from wfsched.models.enums import WorkerResult

from .base import DispatchError, Worker, WorkerOutcome

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 4000


def matrix_env(parameters: dict) -> dict[str, str]:
    """MATRIX_<NAME>=value for each matrix parameter."""
    env = {}
    for name, value in parameters.items():
        var = "MATRIX_" + re.sub(r"[^A-Za-z0-9]", "_", name).upper()
        env[var] = str(value).lower() if isinstance(value, bool) else str(value)
    return env


class LocalProcessWorker(Worker):
    def __init__(self, max_processes: int = 32, cwd: str | None = None):
        self.max_processes = max_processes
        self.cwd = cwd
        self._procs: dict[str, asyncio.subprocess.Process] = {}

    @property
    def active(self) -> int:
        return len(self._procs)

    async def execute(self, instance, deadline: datetime, env: dict[str, str]) -> WorkerOutcome:
        key = str(instance.instance_id)
        command = instance.template.run
        if not command:
            return WorkerOutcome(WorkerResult.SUCCESS, {"exit_code": 0, "output": ""})
        if len(self._procs) >= self.max_processes:
            raise DispatchError(f"all {self.max_processes} local process slots busy")

        proc_env = os.environ.copy()
        proc_env.update(env)
        proc_env.update(matrix_env(instance.parameters))
        proc_env["WFSCHED_INSTANCE_ID"] = key
        proc_env["WFSCHED_DEADLINE"] = deadline.isoformat()

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=proc_env,
                cwd=self.cwd,
            )
        except OSError as exc:
            raise DispatchError(f"cannot start {key}: {exc}") from exc

        self._procs[key] = proc
        logger.debug("Started %s (pid %d): %s", key, proc.pid, command)
        try:
            stdout, _ = await proc.communicate()
        except asyncio.CancelledError:
            self._kill(key, proc)
            raise
        finally:
            self._procs.pop(key, None)

        output = stdout.decode(errors="replace")[-OUTPUT_TAIL_CHARS:] if stdout else ""
        status = WorkerResult.SUCCESS if proc.returncode == 0 else WorkerResult.FAILURE
        return WorkerOutcome(status, {"exit_code": proc.returncode, "output": output})

    async def cancel(self, instance) -> None:
        key = str(instance.instance_id)
        proc = self._procs.get(key)
        if proc is not None:
            self._kill(key, proc)

    def _kill(self, key: str, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        logger.info("Killed %s (pid %d)", key, proc.pid)
