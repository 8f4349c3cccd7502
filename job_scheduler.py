"""
job_scheduler.py

Dependency-aware cron scheduler: jobs run in topological order once per tick.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol, Sequence, Set

from croniter import croniter


logger = logging.getLogger("conductor.scheduler")
UTC = timezone.utc

DEFAULT_SCHEDULE = "0 * * * *"

MONTH_TOKENS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
WEEKDAY_TOKENS = {
    "sun": 0,
    "mon": 1,
    "tue": 2,
    "wed": 3,
    "thu": 4,
    "fri": 5,
    "sat": 6,
}
# (label, min, max, named tokens)
CRON_FIELDS = (
    ("minute", 0, 59, None),
    ("hour", 0, 23, None),
    ("day-of-month", 1, 31, None),
    ("month", 1, 12, MONTH_TOKENS),
    ("day-of-week", 0, 7, WEEKDAY_TOKENS),
)
CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")

TRIGGER_CREATED = "created"
TRIGGER_STARTED = "started"
TRIGGER_STOPPED = "stopped"


class SchedulerError(Exception):
    """Base error for the job scheduler."""


class InvalidSchedule(SchedulerError):
    """Malformed cron expression."""


class DependencyNotFound(SchedulerError):
    """A declared dependency is not a registered job."""

    def __init__(self, dependency: str, required_by: str):
        super().__init__(f"Job dependency not found: {dependency} (required by {required_by})")
        self.dependency = dependency
        self.required_by = required_by


class CircularDependency(SchedulerError):
    """The dependency graph contains a cycle."""

    def __init__(self, job_name: str):
        super().__init__(f"Circular dependency detected involving job: {job_name}")
        self.job_name = job_name


class JobExecutionFailure(SchedulerError):
    """Raised by job implementations when their work fails."""


class Job(Protocol):
    """Anything with a name, optional dependencies and an async execute()."""

    name: str

    async def execute(self) -> None:
        ...


@dataclass
class JobResult:
    job_name: str
    success: bool
    execution_time: int = 0
    dependencies_met: bool = True
    skipped_reason: Optional[str] = None
    error: Optional[BaseException] = None
    message: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return not self.dependencies_met

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "jobName": self.job_name,
            "success": self.success,
            "executionTime": self.execution_time,
            "dependenciesMet": self.dependencies_met,
        }
        if self.skipped_reason is not None:
            payload["skippedReason"] = self.skipped_reason
        if self.error is not None:
            payload["error"] = str(self.error)
        if self.message is not None:
            payload["message"] = self.message
        return payload


def summarize_results(results: Sequence[JobResult]) -> Dict[str, int]:
    succeeded = sum(1 for result in results if result.success)
    skipped = sum(1 for result in results if result.skipped)
    return {
        "total": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded - skipped,
        "skipped": skipped,
    }


def job_dependencies(job: Job) -> List[str]:
    return list(getattr(job, "dependencies", None) or [])


def _replace_named_tokens(raw: str, mapping: Optional[Dict[str, int]], label: str, expression: str) -> str:
    def repl(match: re.Match[str]) -> str:
        token = match.group(0).lower()
        if not mapping or token not in mapping:
            raise InvalidSchedule(f'Invalid cron expression "{expression}": bad token "{token}" in {label}.')
        return str(mapping[token])

    return re.sub(r"[A-Za-z]+", repl, raw)


def _validate_range_or_single(token: str, label: str, min_value: int, max_value: int, expression: str) -> None:
    if token == "*":
        return
    if "-" in token:
        left, right = token.split("-", 1)
        if not left.isdigit() or not right.isdigit():
            raise InvalidSchedule(f'Invalid cron expression "{expression}": bad range "{token}" in {label}.')
        start = int(left)
        end = int(right)
        if start > end or start < min_value or end > max_value:
            raise InvalidSchedule(
                f'Invalid cron expression "{expression}": range "{token}" out of bounds '
                f"{min_value}-{max_value} in {label}."
            )
        return
    if not token.isdigit():
        raise InvalidSchedule(f'Invalid cron expression "{expression}": bad value "{token}" in {label}.')
    value = int(token)
    if value < min_value or value > max_value:
        raise InvalidSchedule(
            f'Invalid cron expression "{expression}": value {value} out of bounds '
            f"{min_value}-{max_value} in {label}."
        )


def _validate_cron_field(
    raw: str,
    label: str,
    min_value: int,
    max_value: int,
    mapping: Optional[Dict[str, int]],
    expression: str,
) -> None:
    token = _replace_named_tokens(raw, mapping, label, expression)
    if not CRON_FIELD_RE.match(token):
        raise InvalidSchedule(f'Invalid cron expression "{expression}": bad {label} field "{raw}".')
    for part in token.split(","):
        if not part:
            raise InvalidSchedule(f'Invalid cron expression "{expression}": empty list item in {label}.')
        if "/" in part:
            base, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) <= 0:
                raise InvalidSchedule(f'Invalid cron expression "{expression}": bad step "{part}" in {label}.')
            if int(step_str) > (max_value - min_value + 1):
                raise InvalidSchedule(f'Invalid cron expression "{expression}": step too large in {label}.')
            _validate_range_or_single(base, label, min_value, max_value, expression)
            continue
        _validate_range_or_single(part, label, min_value, max_value, expression)


def validate_cron_expression(expression: Any) -> str:
    """Check a five-field cron expression, returning it unchanged.

    Raises InvalidSchedule on anything croniter would reject or that has the
    wrong number of fields (croniter also accepts six-field second/year forms).
    """
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidSchedule(f"Invalid cron expression: {expression!r}")
    fields = expression.split()
    if len(fields) != len(CRON_FIELDS):
        raise InvalidSchedule(
            f'Invalid cron expression "{expression}": expected 5 fields, got {len(fields)}.'
        )
    for raw, (label, min_value, max_value, mapping) in zip(fields, CRON_FIELDS):
        _validate_cron_field(raw, label, min_value, max_value, mapping, expression)
    if not croniter.is_valid(expression):
        raise InvalidSchedule(f"Invalid cron expression: {expression}")
    return expression


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def next_fire_after(expression: str, after_utc: datetime) -> datetime:
    iterator = croniter(expression, _ensure_aware_utc(after_utc))
    nxt = iterator.get_next(datetime)
    return _ensure_aware_utc(nxt)


def next_fire_times(expression: str, count: int, now_utc: Optional[datetime] = None) -> List[datetime]:
    cursor = _ensure_aware_utc(now_utc or datetime.now(tz=UTC))
    runs: List[datetime] = []
    while len(runs) < count:
        cursor = next_fire_after(expression, cursor)
        runs.append(cursor)
    return runs


class CronTrigger:
    """One armed timer per distinct cron expression, always evaluated in UTC."""

    def __init__(
        self,
        expression: str,
        callback: Callable[[], Awaitable[Any]],
        clock: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
        inflight: Optional[Set[asyncio.Task]] = None,
    ):
        self.expression = expression
        self.state = TRIGGER_CREATED
        self.fire_count = 0
        self._callback = callback
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        # May be shared with the owner so spawned rounds outlive this trigger.
        self._inflight: Set[asyncio.Task] = inflight if inflight is not None else set()

    @property
    def armed(self) -> bool:
        return self.state == TRIGGER_STARTED

    def start(self) -> None:
        if self.armed:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"cron-trigger:{self.expression}"
        )
        self.state = TRIGGER_STARTED

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self.state == TRIGGER_STARTED:
            self.state = TRIGGER_STOPPED

    async def fire(self) -> Any:
        self.fire_count += 1
        return await self._callback()

    async def wait_idle(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _run(self) -> None:
        last_fire: Optional[datetime] = None
        while True:
            now = _ensure_aware_utc(self._clock())
            # The loop clock can wake slightly before the wall clock; never reuse a slot.
            base = now if last_fire is None or now > last_fire else last_fire
            next_fire = next_fire_after(self.expression, base)
            logger.debug("Next fire for %s at %s", self.expression, next_fire.isoformat())
            await asyncio.sleep(max((next_fire - now).total_seconds(), 0.0))
            last_fire = next_fire
            # Rounds run detached from the timer loop.
            task = asyncio.get_running_loop().create_task(self.fire())
            self._inflight.add(task)
            task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Round triggered by %s failed: %s", self.expression, exc)


class JobScheduler:
    """Registers jobs against cron expressions and runs them in dependency order.

    Every tick of any trigger runs one round over *all* registered jobs. A job
    only runs when each of its dependencies succeeded earlier in the same round;
    completion never carries over between rounds.
    """

    def __init__(
        self,
        round_delay: float = 0.0,
        clock: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    ):
        self.round_delay = round_delay
        self._clock = clock
        self._jobs: Dict[str, Job] = {}
        self._schedule_groups: Dict[str, Set[str]] = {}
        self._triggers: Dict[str, CronTrigger] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._is_executing = False
        self._started = False

    @property
    def is_executing(self) -> bool:
        return self._is_executing

    @property
    def started(self) -> bool:
        return self._started

    @property
    def triggers(self) -> Dict[str, CronTrigger]:
        return dict(self._triggers)

    @property
    def schedule_groups(self) -> Dict[str, Set[str]]:
        return {expr: set(names) for expr, names in self._schedule_groups.items()}

    def register_job(
        self,
        job: Job,
        cron_expression: str = DEFAULT_SCHEDULE,
        validate_dependencies: bool = True,
    ) -> None:
        logger.info(
            "Registering job: %s (schedule=%s, dependencies=%s)",
            job.name,
            cron_expression,
            job_dependencies(job),
        )
        validate_cron_expression(cron_expression)

        previous = self._jobs.get(job.name)
        self._jobs[job.name] = job
        if validate_dependencies:
            try:
                self.validate_job_dependencies(job)
            except SchedulerError:
                if previous is None:
                    del self._jobs[job.name]
                else:
                    self._jobs[job.name] = previous
                raise

        current_expression = self.schedule_for(job.name)
        if current_expression is not None and current_expression != cron_expression:
            self._leave_schedule_group(job.name, current_expression)

        if cron_expression not in self._schedule_groups:
            self._schedule_groups[cron_expression] = set()
            trigger = CronTrigger(
                cron_expression, self.execute_round, clock=self._clock, inflight=self._inflight
            )
            self._triggers[cron_expression] = trigger
            if self._started:
                trigger.start()
        self._schedule_groups[cron_expression].add(job.name)

    def validate_job_dependencies(self, job: Job) -> None:
        dependencies = job_dependencies(job)
        if not dependencies:
            return
        for dep_name in dependencies:
            if dep_name not in self._jobs:
                raise DependencyNotFound(dep_name, job.name)
        self.detect_circular_dependencies()

    def validate_all_dependencies(self) -> None:
        logger.info("Validating all job dependencies")
        for job in list(self._jobs.values()):
            self.validate_job_dependencies(job)
        logger.info("All job dependencies validated successfully")

    def detect_circular_dependencies(self) -> None:
        done: Set[str] = set()
        in_progress: Set[str] = set()

        def visit(job_name: str) -> None:
            if job_name in in_progress:
                raise CircularDependency(job_name)
            if job_name in done:
                return
            in_progress.add(job_name)
            job = self._jobs.get(job_name)
            if job is not None:
                for dep_name in job_dependencies(job):
                    visit(dep_name)
            in_progress.discard(job_name)
            done.add(job_name)

        for job_name in self._jobs:
            visit(job_name)

    def resolve_order(self) -> List[str]:
        in_degree: Dict[str, int] = {name: 0 for name in self._jobs}
        dependents: Dict[str, List[str]] = {name: [] for name in self._jobs}

        for job_name, job in self._jobs.items():
            # Unregistered dependencies add no edge; the engine skips the job instead.
            for dep_name in dict.fromkeys(job_dependencies(job)):
                if dep_name in dependents:
                    dependents[dep_name].append(job_name)
                    in_degree[job_name] += 1

        queue: Deque[str] = deque(name for name, degree in in_degree.items() if degree == 0)
        order: List[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(order) < len(self._jobs):
            unordered = [name for name in self._jobs if name not in order]
            raise CircularDependency(", ".join(unordered))
        return order

    def get_execution_order(self) -> List[str]:
        return self.resolve_order()

    async def execute_round(self) -> List[JobResult]:
        if self._is_executing:
            logger.warning("Job execution already in progress, skipping concurrent execution")
            return []

        self._is_executing = True
        try:
            logger.info("Executing jobs with dependency resolution")
            if self.round_delay > 0:
                await asyncio.sleep(self.round_delay)
            execution_order = self.resolve_order()
            results: List[JobResult] = []
            completed: Set[str] = set()

            for job_name in execution_order:
                job = self._jobs.get(job_name)
                if job is None:
                    continue

                missing = next((dep for dep in job_dependencies(job) if dep not in completed), None)
                if missing is not None:
                    reason = f"Dependency failed or was skipped: {missing}"
                    logger.warning("Skipping job %s: %s", job_name, reason)
                    results.append(
                        JobResult(
                            job_name=job_name,
                            success=False,
                            execution_time=0,
                            dependencies_met=False,
                            skipped_reason=reason,
                        )
                    )
                    continue

                result = await self.execute_job(job_name)
                results.append(result)
                if result.success:
                    completed.add(job_name)

            summary = summarize_results(results)
            logger.info(
                "Round finished: %s succeeded, %s failed, %s skipped",
                summary["succeeded"],
                summary["failed"],
                summary["skipped"],
            )
            return results
        finally:
            self._is_executing = False

    async def execute_job(self, job_name: str) -> JobResult:
        job = self._jobs.get(job_name)
        if job is None:
            error = SchedulerError(f"Job not found: {job_name}")
            logger.error("Job execution failed: %s", error)
            return JobResult(job_name=job_name, success=False, error=error)

        logger.info("Executing job: %s", job_name)
        started = time.monotonic()
        try:
            await job.execute()
        except Exception as exc:
            execution_time = int((time.monotonic() - started) * 1000)
            logger.error("Job failed: %s (%sms): %s", job_name, execution_time, exc)
            return JobResult(
                job_name=job_name,
                success=False,
                execution_time=execution_time,
                error=exc,
            )

        execution_time = int((time.monotonic() - started) * 1000)
        logger.info("Job completed successfully: %s (%sms)", job_name, execution_time)
        return JobResult(
            job_name=job_name,
            success=True,
            execution_time=execution_time,
            message=f"Job {job_name} completed successfully",
        )

    def start(self) -> None:
        logger.info("Starting job scheduler")
        self._started = True
        for expression, trigger in self._triggers.items():
            if trigger.armed:
                continue
            logger.info(
                "Starting scheduled task for cron: %s (jobs=%s)",
                expression,
                sorted(self._schedule_groups.get(expression, ())),
            )
            trigger.start()

    async def start_with_immediate_execution(self) -> List[JobResult]:
        logger.info("Starting job scheduler with immediate execution")
        results: List[JobResult] = []
        try:
            results = await self.execute_round()
            for result in results:
                if result.success:
                    logger.info(
                        "Initial execution completed for job: %s (%sms)",
                        result.job_name,
                        result.execution_time,
                    )
                elif not result.dependencies_met:
                    logger.warning(
                        "Initial execution skipped for job: %s (%s)",
                        result.job_name,
                        result.skipped_reason,
                    )
                else:
                    logger.error("Initial execution failed for job: %s: %s", result.job_name, result.error)
        except Exception as exc:
            # Triggers are armed even when the startup round cannot run.
            logger.error("Failed to execute jobs with dependencies on startup: %s", exc)
            results = []
        self.start()
        return results

    def stop(self) -> None:
        logger.info("Stopping job scheduler")
        self._started = False
        for expression, trigger in self._triggers.items():
            if trigger.armed:
                logger.info("Stopping scheduled task for cron: %s", expression)
            trigger.stop()

    async def wait_idle(self) -> None:
        """Wait for every round spawned by a trigger, including triggers already removed."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def get_jobs(self) -> List[str]:
        return list(self._jobs)

    def has_job(self, job_name: str) -> bool:
        return job_name in self._jobs

    def get_job(self, job_name: str) -> Optional[Job]:
        return self._jobs.get(job_name)

    def schedule_for(self, job_name: str) -> Optional[str]:
        for expression, names in self._schedule_groups.items():
            if job_name in names:
                return expression
        return None

    def remove_job(self, job_name: str) -> bool:
        expression = self.schedule_for(job_name)
        if expression is not None:
            self._leave_schedule_group(job_name, expression)
        return self._jobs.pop(job_name, None) is not None

    def _leave_schedule_group(self, job_name: str, expression: str) -> None:
        members = self._schedule_groups[expression]
        members.discard(job_name)
        if members:
            return
        trigger = self._triggers.pop(expression, None)
        if trigger is not None:
            trigger.stop()
        del self._schedule_groups[expression]
        logger.info("Removed schedule %s (no jobs left)", expression)


def next_fire_for_scheduler(scheduler: JobScheduler, now_utc: Optional[datetime] = None) -> Optional[datetime]:
    now = _ensure_aware_utc(now_utc or datetime.now(tz=UTC))
    fires = [next_fire_after(expression, now) for expression in scheduler.schedule_groups]
    return min(fires) if fires else None
