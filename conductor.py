#!/usr/bin/env python3
"""
conductor.py

YAML-driven runner for the content pipeline jobs: registers every job with a
dependency-aware cron scheduler and runs them once per tick.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import shlex
import signal
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import yaml
from dotenv import load_dotenv

from job_scheduler import (
    DEFAULT_SCHEDULE,
    InvalidSchedule,
    Job,
    JobResult,
    JobScheduler,
    SchedulerError,
    next_fire_for_scheduler,
    next_fire_times,
    summarize_results,
    validate_cron_expression,
)
from script_jobs import CallableJob, ScriptJob, ScriptSpec, load_callable


LOG_FILE = "conductor.log"
DEFAULT_CONFIG = "conductor.yaml"
DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_PREVIEW_COUNT = 5

TOP_LEVEL_KEYS = {"version", "defaults", "jobs"}
DEFAULT_KEYS = {"working_dir", "schedule", "timeout", "stop_on_failure", "run_on_start", "round_delay"}
JOB_KEYS = {
    "name",
    "description",
    "enabled",
    "schedule",
    "schedule_env",
    "dependencies",
    "working_dir",
    "stop_on_failure",
    "scripts",
    "callable",
}


class ConductorError(Exception):
    """Base error for conductor."""


class ConfigError(ConductorError):
    """Config validation error."""


def setup_logging(log_file: Optional[str] = LOG_FILE, debug: bool = False) -> logging.Logger:
    logger = logging.getLogger("conductor")
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    if logger.handlers:
        return logger
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger


logger = logging.getLogger("conductor")
UTC = timezone.utc


@dataclass(frozen=True)
class Defaults:
    working_dir: Path
    schedule: str
    timeout: int
    stop_on_failure: bool
    run_on_start: bool
    round_delay: float


@dataclass(frozen=True)
class JobConfig:
    name: str
    description: Optional[str]
    enabled: bool
    schedule: str
    dependencies: List[str]
    working_dir: Path
    stop_on_failure: bool
    scripts: List[ScriptSpec]
    callable_target: Optional[str]


@dataclass(frozen=True)
class ConductorConfig:
    path: Path
    defaults: Defaults
    jobs: List[JobConfig]

    @property
    def enabled_jobs(self) -> List[JobConfig]:
        return [job for job in self.jobs if job.enabled]


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_number(value: Any, field_path: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a number.")
    if value < 0:
        raise ConfigError(f"Error: {field_path} must be >= 0.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def parse_schedule(value: Any, field_path: str, default: str) -> str:
    if value is None:
        return default
    expression = " ".join(ensure_str(value, field_path).split())
    try:
        return validate_cron_expression(expression)
    except InvalidSchedule as exc:
        raise InvalidSchedule(f"Error: {field_path}: {exc}") from exc


def parse_dependencies(raw: Any, field_path: str) -> List[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"Error: {field_path} must be a list of job names.")
    return [ensure_str(item, f"{field_path}[{idx}]") for idx, item in enumerate(raw)]


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def _resolve_working_dir(value: Any, config_dir: Path, field_path: str) -> Path:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty path string.")
    raw = Path(value.strip())
    resolved = raw if raw.is_absolute() else (config_dir / raw)
    resolved = resolved.resolve()
    if not resolved.exists() or not resolved.is_dir():
        raise ConfigError(f"Error: working directory does not exist at {field_path}: {resolved}")
    return resolved


def parse_defaults(raw: Any, config_dir: Path) -> Defaults:
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError("Error: defaults must be a mapping.")
    unknown = set(raw.keys()) - DEFAULT_KEYS
    if unknown:
        raise ConfigError(f"Error: Unknown keys in defaults: {sorted(unknown)}.")

    fallback_schedule = os.environ.get("JOB_SCHEDULE") or DEFAULT_SCHEDULE
    return Defaults(
        working_dir=_resolve_working_dir(raw.get("working_dir", "."), config_dir, "defaults.working_dir"),
        schedule=parse_schedule(raw.get("schedule", fallback_schedule), "defaults.schedule", DEFAULT_SCHEDULE),
        timeout=ensure_int(raw.get("timeout"), "defaults.timeout", DEFAULT_TIMEOUT_SECONDS, 1),
        stop_on_failure=ensure_bool(raw.get("stop_on_failure"), "defaults.stop_on_failure", True),
        run_on_start=ensure_bool(raw.get("run_on_start"), "defaults.run_on_start", True),
        round_delay=ensure_number(raw.get("round_delay"), "defaults.round_delay", 0.0),
    )


def parse_config(config_path: Path) -> ConductorConfig:
    payload = _load_config_payload(config_path)

    unknown_top = set(payload.keys()) - TOP_LEVEL_KEYS
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    defaults = parse_defaults(payload.get("defaults"), config_path.parent)

    jobs_raw = payload.get("jobs")
    if not isinstance(jobs_raw, list) or not jobs_raw:
        raise ConfigError("Error: jobs must be a non-empty list.")

    seen_names: Set[str] = set()
    jobs: List[JobConfig] = []

    for idx, job_raw in enumerate(jobs_raw):
        path = f"jobs[{idx}]"
        if not isinstance(job_raw, dict):
            raise ConfigError(f"Error: {path} must be a mapping.")

        unknown_job = set(job_raw.keys()) - JOB_KEYS
        if unknown_job:
            raise ConfigError(f"Error: Unknown keys in {path}: {sorted(unknown_job)}.")

        name = ensure_str(job_raw.get("name"), f"{path}.name")
        if name in seen_names:
            raise ConfigError(f'Error: Duplicate job name "{name}".')
        seen_names.add(name)

        description = job_raw.get("description")
        if description is not None and not isinstance(description, str):
            raise ConfigError(f"Error: {path}.description must be a string.")

        has_scripts = job_raw.get("scripts") is not None
        has_callable = job_raw.get("callable") is not None
        if has_scripts == has_callable:
            raise ConfigError(f'Error: {path} needs exactly one of "scripts" or "callable".')

        schedule = parse_schedule(job_raw.get("schedule"), f"{path}.schedule", defaults.schedule)
        if job_raw.get("schedule_env") is not None:
            env_name = ensure_str(job_raw["schedule_env"], f"{path}.schedule_env")
            # A set variable wins over the configured schedule.
            schedule = parse_schedule(
                os.environ.get(env_name) or None, f"{path}.schedule_env (${env_name})", schedule
            )

        working_dir = defaults.working_dir
        if job_raw.get("working_dir") is not None:
            working_dir = _resolve_working_dir(job_raw["working_dir"], config_path.parent, f"{path}.working_dir")

        jobs.append(
            JobConfig(
                name=name,
                description=description,
                enabled=ensure_bool(job_raw.get("enabled"), f"{path}.enabled", True),
                schedule=schedule,
                dependencies=parse_dependencies(job_raw.get("dependencies"), f"{path}.dependencies"),
                working_dir=working_dir,
                stop_on_failure=ensure_bool(
                    job_raw.get("stop_on_failure"), f"{path}.stop_on_failure", defaults.stop_on_failure
                ),
                scripts=(
                    parse_scripts(job_raw["scripts"], f"{path}.scripts", working_dir, defaults.timeout)
                    if has_scripts
                    else []
                ),
                callable_target=ensure_str(job_raw["callable"], f"{path}.callable") if has_callable else None,
            )
        )

    return ConductorConfig(path=config_path, defaults=defaults, jobs=jobs)


def parse_scripts(raw: Any, field_path: str, working_dir: Path, default_timeout: int) -> List[ScriptSpec]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"Error: {field_path} must be a non-empty list.")
    scripts: List[ScriptSpec] = []
    for idx, script_raw in enumerate(raw):
        item_path = f"{field_path}[{idx}]"
        if not isinstance(script_raw, dict):
            raise ConfigError(f"Error: {item_path} must be a mapping.")
        unknown = set(script_raw.keys()) - {"path", "args", "timeout"}
        if unknown:
            raise ConfigError(f"Error: Unknown keys in {item_path}: {sorted(unknown)}.")
        path_str = ensure_str(script_raw.get("path"), f"{item_path}.path")
        args_raw = script_raw.get("args", [])
        if args_raw is None:
            args_raw = []
        if isinstance(args_raw, str):
            args = shlex.split(args_raw)
        elif isinstance(args_raw, list):
            args = []
            for arg_idx, arg in enumerate(args_raw):
                if not isinstance(arg, (str, int, float, bool)):
                    raise ConfigError(
                        f"Error: {item_path}.args[{arg_idx}] must be scalar value convertible to string."
                    )
                args.append(str(arg))
        else:
            raise ConfigError(f"Error: {item_path}.args must be a list or shell-style string.")

        timeout = ensure_int(script_raw.get("timeout"), f"{item_path}.timeout", default_timeout, 1)
        raw_path = Path(path_str)
        resolved = raw_path if raw_path.is_absolute() else (working_dir / raw_path)
        resolved = resolved.resolve()
        if not resolved.exists() or not resolved.is_file():
            raise ConfigError(f"Error: Script path does not exist for {item_path}.path: {resolved}")
        scripts.append(ScriptSpec(path=path_str, args=args, timeout=timeout, resolved_path=resolved))
    return scripts


def build_job(job_config: JobConfig) -> Job:
    if job_config.callable_target is not None:
        try:
            func = load_callable(job_config.callable_target)
        except (ImportError, AttributeError, ValueError) as exc:
            raise ConfigError(f"Error: cannot load callable for job {job_config.name}: {exc}") from exc
        return CallableJob(
            name=job_config.name,
            func=func,
            description=job_config.description,
            dependencies=list(job_config.dependencies),
        )
    return ScriptJob(
        name=job_config.name,
        scripts=list(job_config.scripts),
        working_dir=job_config.working_dir,
        description=job_config.description,
        dependencies=list(job_config.dependencies),
        stop_on_failure=job_config.stop_on_failure,
    )


def build_scheduler(config: ConductorConfig) -> JobScheduler:
    scheduler = JobScheduler(round_delay=config.defaults.round_delay)
    for job_config in config.enabled_jobs:
        # Config order is free; the whole graph is validated once everything is registered.
        scheduler.register_job(build_job(job_config), job_config.schedule, validate_dependencies=False)
    scheduler.validate_all_dependencies()
    return scheduler


def load_scheduler(config_path: Path) -> Tuple[ConductorConfig, JobScheduler]:
    config = parse_config(config_path)
    if not config.enabled_jobs:
        raise ConductorError("No enabled jobs configured.")
    return config, build_scheduler(config)


def format_result(result: JobResult) -> str:
    if result.success:
        return f"- {result.job_name}: ok ({result.execution_time}ms)"
    if not result.dependencies_met:
        return f"- {result.job_name}: skipped ({result.skipped_reason})"
    return f"- {result.job_name}: FAILED after {result.execution_time}ms ({result.error})"


def print_results(results: Sequence[JobResult]) -> None:
    for result in results:
        print(format_result(result))
    summary = summarize_results(results)
    print(
        f"Total: {summary['total']}, succeeded: {summary['succeeded']}, "
        f"failed: {summary['failed']}, skipped: {summary['skipped']}"
    )


def command_validate(config_path: Path) -> int:
    config, scheduler = load_scheduler(config_path)
    print(f"Config valid: {config_path}")
    print(f"Total jobs: {len(config.jobs)}")
    print(f"Enabled jobs: {len(config.enabled_jobs)}")
    for job_config in config.enabled_jobs:
        deps = ", ".join(job_config.dependencies) if job_config.dependencies else "(none)"
        print(f"- {job_config.name}: {job_config.schedule} | depends on: {deps}")
    print("Execution order: " + " -> ".join(scheduler.get_execution_order()))
    return 0


def command_preview(config_path: Path, job_name: Optional[str], count: int) -> int:
    _, scheduler = load_scheduler(config_path)
    if job_name and not scheduler.has_job(job_name):
        raise ConductorError(f'Unknown job "{job_name}".')
    now_utc = datetime.now(tz=UTC)

    for expression, names in scheduler.schedule_groups.items():
        if job_name and job_name not in names:
            continue
        print("=" * 80)
        print(f"Schedule: {expression} (UTC)")
        print("Jobs: " + ", ".join(sorted(names)))
        print(f"Next {count} round(s):")
        for run_dt in next_fire_times(expression, count, now_utc=now_utc):
            print(f"- {run_dt.isoformat()}")
    print("=" * 80)
    print("Every round runs all jobs in order: " + " -> ".join(scheduler.get_execution_order()))
    return 0


def command_run(config_path: Path, job_name: Optional[str]) -> int:
    _, scheduler = load_scheduler(config_path)
    if job_name:
        if not scheduler.has_job(job_name):
            raise ConductorError(f'Unknown job "{job_name}".')
        results = [asyncio.run(scheduler.execute_job(job_name))]
    else:
        results = asyncio.run(scheduler.execute_round())
    print_results(results)
    return 0 if all(result.success for result in results) else 1


async def serve(scheduler: JobScheduler, run_on_start: bool) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_stop(signame: str) -> None:
        logger.info("Received %s, shutting down gracefully", signame)
        scheduler.stop()
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop, sig.name)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable for %s; relying on KeyboardInterrupt.", sig.name)

    if run_on_start:
        await scheduler.start_with_immediate_execution()
    else:
        scheduler.start()
    if stop_event.is_set():
        scheduler.stop()
        return 0

    logger.info("Job scheduler started successfully (jobs=%s)", scheduler.get_jobs())
    next_round = next_fire_for_scheduler(scheduler)
    if next_round is not None:
        logger.info("Next round at %s", next_round.isoformat())
    await stop_event.wait()
    await scheduler.wait_idle()
    return 0


def command_daemon(config_path: Path, initial_run: Optional[bool] = None) -> int:
    config, scheduler = load_scheduler(config_path)
    run_on_start = config.defaults.run_on_start if initial_run is None else initial_run
    logger.info(
        "Starting daemon with %s enabled job(s) across %s schedule(s)",
        len(config.enabled_jobs),
        len(scheduler.schedule_groups),
    )
    try:
        return asyncio.run(serve(scheduler, run_on_start))
    except KeyboardInterrupt:
        scheduler.stop()
        logger.info("Daemon interrupted by user.")
        return 130


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="conductor.py dependency-aware job scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to conductor YAML config (default: $CONDUCTOR_CONFIG or {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Validate config, dependencies and execution order")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming rounds per schedule")
    preview_parser.add_argument("--job", help="Only show the schedule of this job")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next round count")

    run_parser = subparsers.add_parser("run", help="Run one round now")
    run_parser.add_argument("--job", help="Run a single job by name, ignoring its dependencies")

    daemon_parser = subparsers.add_parser("daemon", help="Run the cron scheduler until signalled")
    daemon_parser.add_argument(
        "--no-initial-run",
        dest="initial_run",
        action="store_false",
        default=None,
        help="Do not run a round immediately on startup",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    setup_logging(
        os.environ.get("CONDUCTOR_LOG_FILE", LOG_FILE),
        debug=os.environ.get("DEBUG", "").lower() == "true",
    )
    config_path = Path(args.config or os.environ.get("CONDUCTOR_CONFIG") or DEFAULT_CONFIG).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            if args.count <= 0:
                raise ConductorError("--count must be >= 1")
            return command_preview(config_path, job_name=args.job, count=args.count)
        if args.command == "run":
            return command_run(config_path, job_name=args.job)
        if args.command == "daemon":
            return command_daemon(config_path, initial_run=args.initial_run)
        raise ConductorError(f"Unsupported command: {args.command}")
    except (ConductorError, SchedulerError) as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
