"""
script_jobs.py

Concrete Job implementations: Python scripts run as subprocesses, and async callables.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
import os
import shlex
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from job_scheduler import JobExecutionFailure


logger = logging.getLogger("conductor.jobs")
UTC = timezone.utc
STDERR_TAIL_CHARS = 1000


@dataclass(frozen=True)
class ScriptSpec:
    path: str
    args: List[str]
    timeout: int
    resolved_path: Path


@dataclass
class ScriptRunResult:
    script: ScriptSpec
    success: bool
    return_code: int
    duration_seconds: float
    stdout: str
    stderr: str
    error: Optional[str] = None


async def run_script(
    script: ScriptSpec,
    working_dir: Path,
    env_overrides: Optional[Dict[str, str]] = None,
) -> ScriptRunResult:
    command = [sys.executable, str(script.resolved_path), *script.args]
    started = time.monotonic()
    env = os.environ.copy()
    if env_overrides:
        env.update({k: v for k, v in env_overrides.items() if v is not None})

    process = await asyncio.create_subprocess_exec(
        *command,
        cwd=str(working_dir),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=script.timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return ScriptRunResult(
            script=script,
            success=False,
            return_code=-1,
            duration_seconds=time.monotonic() - started,
            stdout="",
            stderr=f"Timed out after {script.timeout} seconds.",
            error="timeout",
        )
    except BaseException:
        # Cancellation must not leave the child running.
        if process.returncode is None:
            logger.warning("Killing script %s (pid=%s) after interruption", script.path, process.pid)
            process.kill()
            await process.wait()
        raise

    return ScriptRunResult(
        script=script,
        success=process.returncode == 0,
        return_code=process.returncode if process.returncode is not None else -2,
        duration_seconds=time.monotonic() - started,
        stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
        stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
    )


@dataclass
class ScriptJob:
    """Runs its scripts in order; the job fails when any script fails."""

    name: str
    scripts: List[ScriptSpec]
    working_dir: Path
    description: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    stop_on_failure: bool = True
    last_results: List[ScriptRunResult] = field(default_factory=list, repr=False)

    def _run_id(self) -> str:
        started = datetime.now(tz=UTC)
        return f"{self.name}:{started.strftime('%Y%m%d%H%M%S')}-{started.microsecond:06d}-{os.getpid()}"

    async def execute(self) -> None:
        run_id = self._run_id()
        results: List[ScriptRunResult] = []
        self.last_results = results

        for idx, script in enumerate(self.scripts, start=1):
            logger.info("[%s] [%s/%s] Running %s", run_id, idx, len(self.scripts), script.path)
            if script.args:
                logger.info("[%s] Args: %s", run_id, " ".join(shlex.quote(arg) for arg in script.args))
            env = {
                "CONDUCTOR_RUN_ID": run_id,
                "CONDUCTOR_JOB_NAME": self.name,
                "CONDUCTOR_SCRIPT_PATH": str(script.resolved_path),
            }
            result = await run_script(script, self.working_dir, env_overrides=env)
            results.append(result)

            if result.success:
                logger.info("[%s] Script succeeded: %s (%.2fs)", run_id, script.path, result.duration_seconds)
                continue
            logger.error(
                "[%s] Script failed: %s (code=%s, duration=%.2fs)",
                run_id,
                script.path,
                result.return_code,
                result.duration_seconds,
            )
            if result.stderr:
                logger.error("[%s] stderr: %s", run_id, result.stderr.strip())
            if self.stop_on_failure:
                logger.error("[%s] stop_on_failure=true; aborting remaining scripts.", run_id)
                break

        failed = next((result for result in results if not result.success), None)
        if failed is not None:
            detail = failed.stderr.strip()[-STDERR_TAIL_CHARS:]
            raise JobExecutionFailure(
                f"Script {failed.script.path} failed with code {failed.return_code}"
                + (f": {detail}" if detail else "")
            )


@dataclass
class CallableJob:
    """Wraps a zero-argument coroutine function."""

    name: str
    func: Callable[[], Awaitable[Any]]
    description: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)

    async def execute(self) -> None:
        await self.func()


def load_callable(target: str) -> Callable[[], Awaitable[Any]]:
    module_name, sep, attr_path = target.partition(":")
    if not sep or not module_name or not attr_path:
        raise ValueError(f'Callable target must look like "package.module:function", got "{target}".')
    obj: Any = importlib.import_module(module_name)
    for attr in attr_path.split("."):
        obj = getattr(obj, attr)
    if not inspect.iscoroutinefunction(obj):
        raise ValueError(f'Callable target "{target}" is not an async function.')
    return obj
