"""
Pipeline Monitor Agent
======================
Watches CI after a push: polls GitHub Actions / GitLab CI until the runs for
the pushed commit finish, then records success or a categorised failure.

State Machine:
    polling ─┬─▶ success   all relevant runs completed, none failed
             ├─▶ failed    all relevant runs completed, at least one failed
             ├─▶ stalled   no run appeared within 90s, or max duration hit
             ├─▶ error     provider rejected our credentials / rate limited us
             └─▶ stopped   stop_monitor() called
    Terminal states never transition again.

Poll Cycle (one per timer fire):
    1. Past max duration → stalled
    2. Fetch the branch's recent runs
    3. Keep runs for the exact commit SHA. For the first 30s, if none match,
       accept runs on the branch (providers can lag attaching the SHA)
    4. Nothing relevant after 90s → stalled
    5. Fetch jobs for runs still going or failed (progress + categorisation)
    6. Replace runs, bump poll_count, stamp last_poll_at
    7. Everything completed → failed / success, broadcast, stop
    8. Otherwise broadcast status and arm the next timer with backoff

Backoff:
    interval = min(base * 1.5 ** min(poll_count, 4), 30s)
    10s → 15s → 22.5s → 30s (cap). The delay after a cycle uses the poll
    count from before that cycle, so the first reschedule is the base.

Timers:
    One asyncio task per monitor that sleeps then polls. The next task is
    created only after the current cycle ends. Each task carries a
    generation number; a task whose generation was superseded (stop,
    reschedule) does nothing. A poll that is mid-HTTP when the monitor is
    stopped re-checks the status afterwards and drops its result. A cycle
    that ends with its monitor still polling and no successor armed (the
    store write failed) is re-armed with backoff. shutdown() stops all
    arming and waits for running cycles before closing provider clients.

Errors never escape a cycle: auth / rate-limit errors end the monitor with
"error", anything else (network, 5xx, missing token) is retried with backoff
until the max duration ceiling.
"""
import asyncio
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from pipewatch.core import config
from pipewatch.core.constants import (
    BACKOFF_FACTOR,
    BACKOFF_MAX_EXPONENT,
    EVENT_COMPLETE,
    EVENT_ERROR,
    EVENT_STALLED,
    EVENT_STATUS,
    GRACE_PERIOD_MS,
    LOG_TAIL_LINES,
    MAX_CONCURRENT_MONITORS,
    MAX_POLL_INTERVAL_MS,
    STALL_TIMEOUT_MS,
    STATUS_ERROR,
    STATUS_FAILED,
    STATUS_POLLING,
    STATUS_STALLED,
    STATUS_STOPPED,
    STATUS_SUCCESS,
)
from pipewatch.llm.prompts import compose_fix_ci_prompt
from pipewatch.models.pipeline_monitor import MonitorTimestamps, PipelineMonitor, Platform
from pipewatch.models.workflow_run import WorkflowRun
from pipewatch.parser.classification import categorize_job, summarize_job_failure
from pipewatch.services.broadcaster import Broadcaster
from pipewatch.services.ci_providers import (
    CIProvider,
    MissingTokenError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    default_providers,
)
from pipewatch.services.credentials import TokenResolver
from pipewatch.services.monitor_store import MonitorNotFoundError, MonitorStore

logger = logging.getLogger(__name__)

PLATFORM_NAMES = {"github": "GitHub", "gitlab": "GitLab"}


@dataclass
class StartMonitorOptions:
    session_id: str
    platform: Platform
    owner: str
    repo: str
    branch: str
    commit_sha: str
    workspace_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------
def compute_backoff_interval(poll_count: int, base_interval_ms: int = config.CICD_POLL_INTERVAL_MS) -> int:
    """Delay in ms before the next poll, given how many polls came before."""
    exponent = min(max(poll_count, 0), BACKOFF_MAX_EXPONENT)
    interval = min(base_interval_ms * BACKOFF_FACTOR ** exponent, MAX_POLL_INTERVAL_MS)
    # Half-up rounding; round() would bank 22.5 → 22
    return int(math.floor(interval + 0.5))


def select_relevant_runs(
    runs: List[WorkflowRun],
    commit_sha: str,
    branch: str,
    elapsed_ms: float,
) -> List[WorkflowRun]:
    """Runs for the pushed commit, or the branch's runs while still in the grace period."""
    sha_matches = [r for r in runs if r.head_sha == commit_sha]
    if sha_matches:
        return sha_matches
    if elapsed_ms < GRACE_PERIOD_MS:
        return [r for r in runs if r.head_branch == branch]
    return []


def is_fatal_provider_error(err: BaseException) -> bool:
    """Auth and rate-limit failures cannot fix themselves by retrying."""
    if isinstance(err, (ProviderAuthError, ProviderRateLimitError)):
        return True
    text = str(err).lower()
    return "auth error" in text or "rate limit" in text


def tail_lines(text: str, max_lines: int = LOG_TAIL_LINES) -> str:
    lines = text.split("\n")
    if len(lines) > max_lines:
        return "\n".join(lines[-max_lines:])
    return text


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
class PipelineMonitorService:
    """
    Owns every monitor's polling loop.

    Construct once at process start and hand it to whoever needs it:

        store = MonitorStore(config.PIPELINE_MONITORS_FILE)
        store.load()
        service = PipelineMonitorService(store, broadcaster=broadcaster)
        service.resume()          # inside a running event loop
        ...
        await service.shutdown()
    """

    def __init__(
        self,
        store: MonitorStore,
        providers: Optional[Dict[str, CIProvider]] = None,
        token_resolver: Optional[TokenResolver] = None,
        broadcaster: Optional[Broadcaster] = None,
        base_interval_ms: int = config.CICD_POLL_INTERVAL_MS,
        max_duration_ms: int = config.CICD_MAX_POLL_DURATION_MS,
        max_concurrent: int = MAX_CONCURRENT_MONITORS,
        retention_hours: Optional[float] = config.MONITOR_RETENTION_HOURS,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.providers = providers if providers is not None else default_providers()
        self.token_resolver = token_resolver or TokenResolver()
        self.broadcaster = broadcaster
        self.base_interval_ms = base_interval_ms
        self.max_duration_ms = max_duration_ms
        self.max_concurrent = max_concurrent
        self.retention_hours = retention_hours
        self._now = now

        self._timers: Dict[str, asyncio.Task] = {}
        self._generations: Dict[str, int] = {}
        # Timer tasks past their sleep and inside a poll cycle
        self._in_flight: Set[asyncio.Task] = set()
        self._closing = False

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    def _schedule_poll(self, monitor_id: str, delay_ms: int) -> None:
        if self._closing:
            logger.debug("Not scheduling %s: service is shutting down", monitor_id)
            return
        self._cancel_timer(monitor_id)
        generation = self._generations.get(monitor_id, 0) + 1
        self._generations[monitor_id] = generation
        loop = asyncio.get_running_loop()
        self._timers[monitor_id] = loop.create_task(
            self._run_timer(monitor_id, generation, delay_ms),
            name=f"pipeline-poll-{monitor_id}",
        )
        logger.debug("Next poll for %s in %dms", monitor_id, delay_ms)

    def _cancel_timer(self, monitor_id: str) -> None:
        task = self._timers.pop(monitor_id, None)
        if task and not task.done():
            task.cancel()
        if monitor_id in self._generations:
            self._generations[monitor_id] += 1

    async def _run_timer(self, monitor_id: str, generation: int, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000)
        if self._generations.get(monitor_id) != generation:
            return
        # Leave _timers before polling so the cycle can arm its successor
        self._timers.pop(monitor_id, None)
        task = asyncio.current_task()
        self._in_flight.add(task)
        try:
            await self.poll(monitor_id)
        except Exception:
            logger.exception("Unhandled error in poll cycle for %s", monitor_id)
        finally:
            self._in_flight.discard(task)
        self._ensure_rearmed(monitor_id)

    def _ensure_rearmed(self, monitor_id: str) -> None:
        """A cycle that left its monitor polling without a successor timer gets one."""
        if self._closing or self.has_pending_poll(monitor_id):
            return
        current = self.store.get(monitor_id)
        if current is None or current.status != STATUS_POLLING:
            return
        delay_ms = compute_backoff_interval(current.poll_count, self.base_interval_ms)
        logger.warning("Poll cycle for %s ended without a next poll, retrying in %dms", monitor_id, delay_ms)
        self._schedule_poll(monitor_id, delay_ms)

    def has_pending_poll(self, monitor_id: str) -> bool:
        task = self._timers.get(monitor_id)
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Provider access
    # ------------------------------------------------------------------
    def _provider(self, monitor: PipelineMonitor) -> CIProvider:
        provider = self.providers.get(monitor.platform)
        if provider is None:
            raise ProviderError(f"No provider registered for platform {monitor.platform}")
        return provider

    async def _require_token(self, monitor: PipelineMonitor) -> str:
        # Resolution may shell out to gh / glab; keep it off the event loop
        token = await asyncio.to_thread(self.token_resolver.resolve, monitor.platform, monitor.workspace_id)
        if not token:
            raise MissingTokenError(f"No {PLATFORM_NAMES.get(monitor.platform, monitor.platform)} token available")
        return token

    def _elapsed_ms(self, monitor: PipelineMonitor, now: datetime) -> float:
        return (now - monitor.timestamps.started_at).total_seconds() * 1000

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------
    async def poll(self, monitor_id: str) -> None:
        """Run one poll cycle. No-op unless the monitor exists and is polling."""
        monitor = self.store.get(monitor_id)
        if monitor is None or monitor.status != STATUS_POLLING:
            return

        now = self._now()
        if self._elapsed_ms(monitor, now) > self.max_duration_ms:
            logger.warning("Monitor %s exceeded max duration, marking stalled", monitor_id)
            self._finish(monitor_id, STATUS_STALLED, EVENT_STALLED, now)
            return

        try:
            provider = self._provider(monitor)
            token = await self._require_token(monitor)
            runs = await provider.list_runs(monitor, token)

            now = self._now()
            elapsed = self._elapsed_ms(monitor, now)
            relevant = select_relevant_runs(runs, monitor.commit_sha, monitor.branch, elapsed)

            if not relevant and elapsed > STALL_TIMEOUT_MS:
                if self._is_polling(monitor_id):
                    logger.warning(
                        "No CI run for %s@%s after %.0fs, marking stalled",
                        monitor.project_path, monitor.short_sha, elapsed / 1000,
                    )
                    self._finish(monitor_id, STATUS_STALLED, EVENT_STALLED, now)
                return

            detailed: List[WorkflowRun] = []
            for run in relevant:
                if not run.is_completed or run.is_failed:
                    jobs = await provider.list_jobs(monitor, run.id, token)
                    run = run.model_copy(update={"jobs": jobs})
                detailed.append(run)

            current = self.store.get(monitor_id)
            if current is None or current.status != STATUS_POLLING:
                logger.debug("Discarding poll result for %s: monitor no longer polling", monitor_id)
                return

            changes: Dict[str, Any] = {
                "runs": detailed,
                "poll_count": current.poll_count + 1,
                "last_poll_at": now,
            }

            if detailed and all(r.is_completed for r in detailed):
                changes.update(self._outcome(detailed))
                updated = self.store.update(monitor_id, completed_at=now, **changes)
                logger.info(
                    "Monitor %s finished: %s (%s)",
                    monitor_id, updated.status, updated.error_summary or "all runs passed",
                )
                self._broadcast(updated, EVENT_COMPLETE)
                return

            updated = self.store.update(monitor_id, **changes)
            self._broadcast(updated, EVENT_STATUS)
            self._schedule_poll(monitor_id, compute_backoff_interval(current.poll_count, self.base_interval_ms))

        except Exception as e:
            self._handle_poll_error(monitor_id, e)

    def _outcome(self, runs: List[WorkflowRun]) -> Dict[str, Any]:
        failed_run = next((r for r in runs if r.is_failed), None)
        if failed_run is None:
            return {"status": STATUS_SUCCESS}

        changes: Dict[str, Any] = {"status": STATUS_FAILED}
        failed_jobs = failed_run.failed_jobs()
        if failed_jobs:
            job = failed_jobs[0]
            changes["failed_job_id"] = job.id
            changes["error_category"] = categorize_job(job)
            changes["error_summary"] = summarize_job_failure(job)
        return changes

    def _handle_poll_error(self, monitor_id: str, err: Exception) -> None:
        message = str(err) or err.__class__.__name__
        logger.error("Poll error for %s: %s", monitor_id, message)

        current = self.store.get(monitor_id)
        if current is None or current.status != STATUS_POLLING:
            return

        try:
            if is_fatal_provider_error(err):
                updated = self.store.update(
                    monitor_id, status=STATUS_ERROR, error_summary=message, completed_at=self._now()
                )
                self._broadcast(updated, EVENT_ERROR, error=message)
                return
            self.store.update(monitor_id, poll_count=current.poll_count + 1)
        except Exception as store_err:
            # Still polling in the store; the next cycle retries the transition
            logger.error("Failed to record poll error for %s: %s", monitor_id, store_err)

        self._schedule_poll(monitor_id, compute_backoff_interval(current.poll_count, self.base_interval_ms))

    def _finish(self, monitor_id: str, status: str, event_type: str, now: datetime) -> None:
        updated = self.store.update(monitor_id, status=status, completed_at=now)
        self._broadcast(updated, event_type)

    def _is_polling(self, monitor_id: str) -> bool:
        current = self.store.get(monitor_id)
        return current is not None and current.status == STATUS_POLLING

    def _broadcast(self, monitor: PipelineMonitor, event_type: str, **extra: Any) -> None:
        if self.broadcaster is None:
            return
        try:
            self.broadcaster.emit(
                monitor.session_id,
                event_type,
                {"monitor": monitor.model_dump(mode="json"), **extra},
            )
        except Exception as e:
            logger.error("Broadcast error for session %s: %s", monitor.session_id, e)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def start_monitor(self, options: StartMonitorOptions) -> PipelineMonitor:
        """
        Create a monitor and arm its first poll after the base interval.

        Raises
        ------
        MonitorCapacityError
            max_concurrent monitors are already polling; nothing is created.
        """
        monitor = PipelineMonitor(
            id=uuid.uuid4().hex,
            session_id=options.session_id,
            workspace_id=options.workspace_id,
            platform=options.platform,
            owner=options.owner,
            repo=options.repo,
            branch=options.branch,
            commit_sha=options.commit_sha,
            timestamps=MonitorTimestamps(started_at=self._now()),
        )
        monitor = self.store.create(monitor, max_active=self.max_concurrent)
        self._schedule_poll(monitor.id, self.base_interval_ms)

        logger.info(
            "Started %s monitor %s for %s@%s (%s)",
            PLATFORM_NAMES.get(options.platform, options.platform),
            monitor.id, monitor.project_path, monitor.branch, monitor.short_sha,
        )
        return monitor

    def stop_monitor(self, monitor_id: str) -> Optional[PipelineMonitor]:
        """Cancel polling. Already-finished monitors are returned unchanged."""
        monitor = self.store.get(monitor_id)
        if monitor is None:
            return None

        self._cancel_timer(monitor_id)
        if monitor.is_terminal:
            return monitor

        logger.info("Stopping monitor %s", monitor_id)
        return self.store.update(monitor_id, status=STATUS_STOPPED, completed_at=self._now())

    def delete_monitor(self, monitor_id: str) -> bool:
        self._cancel_timer(monitor_id)
        self._generations.pop(monitor_id, None)
        return self.store.delete(monitor_id)

    def get_monitor(self, monitor_id: str) -> Optional[PipelineMonitor]:
        return self.store.get(monitor_id)

    def get_monitor_by_session(self, session_id: str) -> Optional[PipelineMonitor]:
        return self.store.get_by_session(session_id)

    def list_monitors(self) -> List[PipelineMonitor]:
        return self.store.list_all()

    async def fetch_job_logs(self, monitor_id: str, job_id: int) -> str:
        """
        Raw log text for one job of a monitor, limited to its last 2000 lines.

        Raises
        ------
        MonitorNotFoundError
            Unknown monitor id.
        MissingTokenError
            No credential for the monitor's platform.
        ProviderError / httpx.HTTPError
            The provider refused or could not be reached.
        """
        monitor = self.store.get(monitor_id)
        if monitor is None:
            raise MonitorNotFoundError(monitor_id)

        token = await self._require_token(monitor)
        text = await self._provider(monitor).fetch_job_log(monitor, job_id, token)
        return tail_lines(text, LOG_TAIL_LINES)

    def compose_fix_prompt(self, monitor_id: str, logs: Optional[str] = None) -> str:
        monitor = self.store.get(monitor_id)
        if monitor is None:
            raise MonitorNotFoundError(monitor_id)
        return compose_fix_ci_prompt(monitor, logs)

    def resume(self) -> int:
        """
        Re-arm every persisted "polling" monitor after a restart.

        Each gets its next poll one base interval from now. Backoff phase is
        not restored; poll_count is kept as persisted. Finished monitors
        older than the retention window are pruned first.
        """
        if self.retention_hours is not None:
            cutoff = self._now() - timedelta(hours=self.retention_hours)
            self.store.prune_terminal(cutoff)

        active = self.store.list_active()
        for monitor in active:
            self._schedule_poll(monitor.id, self.base_interval_ms)
        logger.info("Resumed %d active monitors", len(active))
        return len(active)

    async def shutdown(self, drain_timeout: float = config.HTTP_TIMEOUT_SECONDS) -> None:
        """
        Stop arming timers, cancel sleeping ones, let running poll cycles
        finish (cancelled after drain_timeout seconds), then close provider
        HTTP clients.
        """
        self._closing = True
        tasks = list(self._timers.values())
        for monitor_id in list(self._timers):
            self._cancel_timer(monitor_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        running = list(self._in_flight)
        if running:
            logger.info("Waiting for %d running poll cycles", len(running))
            _, pending = await asyncio.wait(running, timeout=drain_timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for provider in self.providers.values():
            await provider.close()
