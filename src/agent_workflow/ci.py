"""CI polling engine.

Turns the flaky ``gh pr checks`` report into a single "wait until CI is
determinate" call. Every suspension point (per-query deadline, retry
backoff, initial grace period, poll ticks) runs on an injected ``Clock``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import replace
from pathlib import Path

from pydantic import BaseModel, ConfigDict, StrictStr, TypeAdapter, ValidationError

from .clock import Clock, RealClock
from .commands import gh_pr_checks
from .errors import CICheckTimeoutError, CIWaitTimeoutError
from .models import DEFAULT_E2E_TEST_PATTERN, CheckCIOptions, CIProgressEvent, CIResult, JobStatusCounts

logger = logging.getLogger(__name__)

JobStatusCommand = Callable[[Path | str | None, int], Awaitable[str]]
ProgressCallback = Callable[[CIProgressEvent], None]

MAX_CHECK_ATTEMPTS = 3
RETRY_BACKOFF_SECONDS = 5.0
DEFAULT_WAIT_TIMEOUT = 1_800.0

PASSED_STATES = frozenset({"success", "neutral", "skipped"})
FAILED_STATES = frozenset({"failure"})
CANCELLED_STATES = frozenset({"cancelled"})


class JobRecord(BaseModel):
    """One entry of the job report. A wrong-typed field rejects the whole report."""

    model_config = ConfigDict(extra="ignore")

    name: StrictStr | None = None
    state: StrictStr | None = None


_JOB_REPORT = TypeAdapter(list[JobRecord])


def _decode_jobs(raw: str) -> list[JobRecord]:
    if not raw or not raw.strip():
        return []
    try:
        return _JOB_REPORT.validate_json(raw)
    except ValidationError:
        logger.debug("Unreadable CI job report, treating as no jobs")
        return []


def _bucket(state: str | None) -> str:
    value = (state or "").lower()
    if value in PASSED_STATES:
        return "passed"
    if value in FAILED_STATES:
        return "failed"
    if value in CANCELLED_STATES:
        return "cancelled"
    return "pending"


def parse_ci_output(raw: str) -> tuple[str, list[str], list[str]]:
    """Classify a job report into ``(status, failed_jobs, cancelled_jobs)``.

    Any pending job keeps the overall status "pending", even next to failures.
    An empty or undecodable report also counts as "pending".
    """
    jobs = _decode_jobs(raw)
    failed: list[str] = []
    cancelled: list[str] = []
    has_pending = False
    for job in jobs:
        bucket = _bucket(job.state)
        if bucket == "failed":
            failed.append(job.name or "")
        elif bucket == "cancelled":
            cancelled.append(job.name or "")
        elif bucket == "pending":
            has_pending = True

    if not jobs or has_pending:
        return "pending", failed, cancelled
    if failed or cancelled:
        return "failure", failed, cancelled
    return "success", failed, cancelled


def count_job_statuses(raw: str) -> JobStatusCounts:
    counts = {"passed": 0, "failed": 0, "cancelled": 0, "pending": 0}
    for job in _decode_jobs(raw):
        counts[_bucket(job.state)] += 1
    return JobStatusCounts(**counts)


def filter_e2e_failures(result: CIResult, pattern: str) -> CIResult:
    """Drop failed/cancelled jobs whose name matches ``pattern``.

    Only ``passed`` is recomputed; ``status`` and ``output`` are kept as
    reported. An invalid pattern leaves the result untouched.
    """
    try:
        e2e_re = re.compile(pattern)
    except re.error:
        logger.warning("Invalid e2e test pattern %r, not filtering CI failures", pattern)
        return result

    failed = [job for job in result.failed_jobs if not e2e_re.search(job)]
    cancelled = [job for job in result.cancelled_jobs if not e2e_re.search(job)]
    return replace(result, failed_jobs=failed, cancelled_jobs=cancelled, passed=not failed and not cancelled)


class CIChecker:
    def __init__(
        self,
        working_dir: Path | str | None,
        check_interval: float = 30.0,
        command_timeout: float = 120.0,
        initial_delay: float = 60.0,
        *,
        clock: Clock | None = None,
        job_status_command: JobStatusCommand | None = None,
        progress_interval: float = 5.0,
    ) -> None:
        self.working_dir = working_dir
        self.check_interval = check_interval if check_interval > 0 else 30.0
        self.command_timeout = command_timeout if command_timeout > 0 else 120.0
        self.initial_delay = max(initial_delay, 0.0)
        self.clock = clock or RealClock()
        self.job_status_command = job_status_command or gh_pr_checks
        self.progress_interval = progress_interval if progress_interval > 0 else 5.0

    async def _query(self, pr_number: int) -> CIResult:
        try:
            raw = await self.clock.wait_for(
                self.job_status_command(self.working_dir, pr_number),
                self.command_timeout,
            )
        except TimeoutError as exc:
            raise CICheckTimeoutError() from exc
        status, failed, cancelled = parse_ci_output(raw)
        return CIResult(
            passed=status == "success",
            status=status,
            failed_jobs=failed,
            cancelled_jobs=cancelled,
            output=raw,
        )

    async def check_ci(self, pr_number: int) -> CIResult:
        """Query CI once, retrying only when the query itself times out.

        ``pr_number`` 0 checks the PR of the current branch.
        """
        for attempt in range(1, MAX_CHECK_ATTEMPTS + 1):
            try:
                return await self._query(pr_number)
            except CICheckTimeoutError:
                if attempt == MAX_CHECK_ATTEMPTS:
                    break
                backoff = attempt * RETRY_BACKOFF_SECONDS
                logger.warning(
                    "CI check timed out (attempt %d/%d), retrying in %.0fs", attempt, MAX_CHECK_ATTEMPTS, backoff
                )
                await self.clock.sleep(backoff)
        raise CICheckTimeoutError(f"CI check command timed out after {MAX_CHECK_ATTEMPTS} attempts")

    async def wait_for_ci(self, pr_number: int, timeout: float | None = None) -> CIResult:
        return await self.wait_for_ci_with_progress(pr_number, timeout)

    async def wait_for_ci_with_options(
        self, pr_number: int, timeout: float | None = None, options: CheckCIOptions | None = None
    ) -> CIResult:
        return await self.wait_for_ci_with_progress(pr_number, timeout, options)

    async def wait_for_ci_with_progress(
        self,
        pr_number: int,
        timeout: float | None = None,
        options: CheckCIOptions | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> CIResult:
        """Block until CI reports success or failure, or ``timeout`` elapses."""
        timeout = timeout if timeout and timeout > 0 else DEFAULT_WAIT_TIMEOUT
        options = options or CheckCIOptions()
        if not options.e2e_test_pattern:
            options = replace(options, e2e_test_pattern=DEFAULT_E2E_TEST_PATTERN)

        try:
            return await self.clock.wait_for(self._wait(pr_number, options, on_progress), timeout)
        except CICheckTimeoutError:
            raise
        except TimeoutError as exc:
            raise CIWaitTimeoutError(f"CI check timeout after {timeout:g}s") from exc

    async def _wait(
        self, pr_number: int, options: CheckCIOptions, on_progress: ProgressCallback | None
    ) -> CIResult:
        start = self.clock.now()

        def emit(event_type: str, message: str, **fields: float | int) -> None:
            if on_progress is not None:
                on_progress(
                    CIProgressEvent(type=event_type, message=message, elapsed=self.clock.since(start), **fields)
                )

        async def check() -> CIResult | None:
            emit("checking", "Checking CI status")
            try:
                result = await self.check_ci(pr_number)
            except CICheckTimeoutError:
                return None
            counts = count_job_statuses(result.output)
            emit(
                "status",
                f"CI status: {result.status}",
                next_check_in=self.check_interval,
                jobs_passed=counts.passed,
                jobs_failed=counts.failed,
                jobs_cancelled=counts.cancelled,
                jobs_pending=counts.pending,
            )
            if options.skip_e2e:
                result = filter_e2e_failures(result, options.e2e_test_pattern)
            return result

        result = await check()
        if result is not None and result.determinate:
            return result

        wait_start = self.clock.now()
        remaining = self.initial_delay
        while remaining > 0:
            await self.clock.sleep(min(self.progress_interval, remaining))
            remaining = max(self.initial_delay - self.clock.since(wait_start), 0.0)
            if remaining > 0:
                emit("waiting", "Waiting for CI jobs to complete", next_check_in=remaining)

        retry_attempt = 0
        while True:
            result = await check()
            if result is None:
                retry_attempt += 1
                emit("retry", "Command timeout, retrying", retry_attempt=retry_attempt)
            elif result.determinate:
                return result
            await self.clock.sleep(self.check_interval)
