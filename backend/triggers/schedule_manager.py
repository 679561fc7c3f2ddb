"""Schedule Manager — cron timers for scheduled workflows.

One ScheduleManager instance owns an explicit map of schedule id to the
asyncio task that sleeps until the schedule's next fire time. Fire times
are computed with croniter in the schedule's own timezone and stored as
UTC.

A sweep runs every SCHEDULE_SWEEP_INTERVAL_SECONDS and fires any active
schedule whose ``next_run_at`` is due but whose ``last_run_at`` predates
it (process restarts, missed ticks). The same sweep runs once in
``initialize`` before timers are registered, so a fire missed while the
process was down is caught up before registration moves ``next_run_at``
forward. A per-schedule in-flight guard keeps the timer and the sweep from
running the same schedule concurrently, so an overlap yields at most one
redundant run and never a lost one.

Fires run in tasks of their own. Stopping a timer or shutting down cancels
only the waiting; ``shutdown`` lets fires already in progress finish.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings, get_settings
from core.constants import TriggerSource
from core.exceptions import ConfigurationError, WorkflowExecutionError
from core.utils import ensure_aware, utc_now
from db.models.schedule import Schedule
from services.base import BaseService
from services.workflow_service import WorkflowService

logger = logging.getLogger(__name__)


def compute_next_run(
    cron_expression: str,
    tz: Optional[str] = "UTC",
    after: Optional[datetime] = None,
) -> datetime:
    """Next fire time strictly after ``after`` (default now), as aware UTC.

    Raises:
        ConfigurationError: Invalid cron expression or unknown timezone
    """
    if not croniter.is_valid(cron_expression or ""):
        raise ConfigurationError(f"Invalid cron expression: {cron_expression!r}")
    try:
        zone = ZoneInfo(tz or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"Unknown timezone: {tz!r}")

    base = ensure_aware(after or utc_now()).astimezone(zone)
    next_local = croniter(cron_expression, base).get_next(datetime)
    return next_local.astimezone(timezone.utc)


@dataclass
class ScheduleSpec:
    """Detached copy of a schedule row, safe to hold across sessions."""

    id: str
    workflow_id: str
    organization_id: str
    cron_expression: str
    timezone: str = "UTC"
    next_run_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, schedule: Schedule) -> "ScheduleSpec":
        return cls(
            id=schedule.id,
            workflow_id=schedule.workflow_id,
            organization_id=schedule.organization_id,
            cron_expression=schedule.cron_expression,
            timezone=schedule.timezone or "UTC",
            next_run_at=ensure_aware(schedule.next_run_at),
        )


class ScheduleManager:
    """Registers cron timers and fires the workflow executor.

    Usage:
        manager = ScheduleManager(executor, session_factory)
        await manager.initialize()
        ...
        await manager.shutdown()
    """

    def __init__(
        self,
        executor,
        session_factory: async_sessionmaker,
        settings: Optional[Settings] = None,
    ):
        self.executor = executor
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.organization_id: Optional[str] = None
        self._jobs: dict[str, asyncio.Task] = {}
        self._specs: dict[str, ScheduleSpec] = {}
        self._in_flight: set[str] = set()
        self._fires: set[asyncio.Task] = set()
        self._sweep_task: Optional[asyncio.Task] = None

    # ─── Lifecycle ────────────────────────────────────────────

    async def initialize(self, organization_id: Optional[str] = None) -> int:
        """Catch up missed fires, register every active schedule and start the sweep.

        Args:
            organization_id: Restrict the manager to one organization's schedules
        """
        self.organization_id = organization_id
        caught_up = await self.check_missed_schedules()
        if caught_up:
            logger.info(f"Caught up {len(caught_up)} schedule(s) missed while stopped")

        query = select(Schedule).where(Schedule.is_active == True)  # noqa: E712
        if organization_id:
            query = query.where(Schedule.organization_id == organization_id)

        async with self.session_factory() as session:
            schedules = (await session.execute(query)).scalars().all()

        registered = 0
        for schedule in schedules:
            if await self.register_schedule(schedule):
                registered += 1

        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="schedule-sweep")

        logger.info(f"ScheduleManager initialized with {registered} schedules")
        return registered

    async def shutdown(self) -> None:
        """Cancel every timer and the sweep, then wait for fires in progress."""
        tasks = list(self._jobs.values())
        if self._sweep_task is not None:
            tasks.append(self._sweep_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._fires:
            logger.info(f"Waiting for {len(self._fires)} scheduled run(s) to finish")
            await asyncio.gather(*self._fires, return_exceptions=True)

        self._jobs.clear()
        self._specs.clear()
        self._sweep_task = None
        logger.info("ScheduleManager shutdown complete")

    # ─── Registration ─────────────────────────────────────────

    async def register_schedule(self, schedule: Schedule) -> bool:
        """Start (or restart) the timer for one schedule.

        Returns:
            False if the cron expression or timezone is invalid
        """
        spec = ScheduleSpec.from_model(schedule)
        self.stop_schedule(spec.id)

        try:
            spec.next_run_at = compute_next_run(spec.cron_expression, spec.timezone)
        except ConfigurationError as e:
            logger.error(f"Failed to register schedule {spec.id}: {e}")
            return False

        self._specs[spec.id] = spec
        self._jobs[spec.id] = asyncio.create_task(
            self._run_timer(spec), name=f"schedule-{spec.id}"
        )
        await self._persist_run_times(spec.id, next_run_at=spec.next_run_at)
        logger.info(
            f"Registered schedule {spec.id} ({spec.cron_expression} {spec.timezone}), "
            f"next run {spec.next_run_at.isoformat()}"
        )
        return True

    def stop_schedule(self, schedule_id: str) -> bool:
        """Cancel the timer for a schedule. Returns False if none was running."""
        task = self._jobs.pop(schedule_id, None)
        self._specs.pop(schedule_id, None)
        if task is None:
            return False
        task.cancel()
        logger.info(f"Stopped schedule {schedule_id}")
        return True

    async def update_schedule(self, schedule_id: str, updates: dict[str, Any]) -> Optional[Schedule]:
        """Persist changes to a schedule, then re-register or stop its timer."""
        async with self.session_factory() as session:
            schedule = await BaseService(Schedule, session).update(schedule_id, updates)
            if schedule is None:
                logger.warning(f"Schedule {schedule_id} not found")
                return None
            await session.commit()

        if schedule.is_active:
            await self.register_schedule(schedule)
        else:
            self.stop_schedule(schedule_id)
        return schedule

    def get_active_schedules(self) -> list[dict[str, Any]]:
        return [
            {
                "id": spec.id,
                "workflow_id": spec.workflow_id,
                "cron_expression": spec.cron_expression,
                "timezone": spec.timezone,
                "next_run": spec.next_run_at,
            }
            for spec in self._specs.values()
        ]

    # ─── Firing ───────────────────────────────────────────────

    async def _run_timer(self, spec: ScheduleSpec) -> None:
        after = utc_now()
        while True:
            fire_at = compute_next_run(spec.cron_expression, spec.timezone, after=after)
            spec.next_run_at = fire_at
            delay = (fire_at - utc_now()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                await self._fire(spec)
            except Exception:
                logger.exception(f"Scheduled fire for {spec.id} raised unexpectedly")
            after = max(fire_at, utc_now())

    async def _fire(self, spec: ScheduleSpec) -> Optional[str]:
        """Run one fire in its own task; cancelling the caller leaves the run going."""
        fire = asyncio.create_task(self.execute_scheduled_workflow(spec), name=f"fire-{spec.id}")
        self._fires.add(fire)
        fire.add_done_callback(self._fires.discard)
        return await asyncio.shield(fire)

    async def execute_scheduled_workflow(self, schedule: "ScheduleSpec | Schedule") -> Optional[str]:
        """Run the schedule's workflow once and persist last/next run times.

        Returns:
            The run id, or None when skipped or failed
        """
        spec = schedule if isinstance(schedule, ScheduleSpec) else ScheduleSpec.from_model(schedule)
        if spec.id in self._in_flight:
            logger.info(f"Schedule {spec.id} is already running, skipping this fire")
            return None

        self._in_flight.add(spec.id)
        fired_at = utc_now()
        run_id = None
        try:
            async with self.session_factory() as session:
                workflow = await WorkflowService(session).get_by_id_and_org(
                    spec.workflow_id, spec.organization_id
                )

            if workflow is None or not workflow.is_enabled:
                logger.info(f"Workflow {spec.workflow_id} is missing or disabled, skipping schedule {spec.id}")
                await self._persist_run_times(
                    spec.id, next_run_at=self._next_after(spec, fired_at)
                )
                return None

            try:
                run_id = await self.executor.execute_workflow(
                    workflow,
                    {
                        "trigger_source": TriggerSource.SCHEDULE.value,
                        "schedule_id": spec.id,
                        "organization_id": spec.organization_id,
                    },
                )
                logger.info(f"Scheduled workflow {workflow.id} completed, run {run_id}")
            except WorkflowExecutionError as e:
                logger.error(f"Scheduled workflow {workflow.id} failed (run {e.run_id}): {e}")
            except Exception as e:
                logger.error(f"Scheduled workflow {workflow.id} raised: {e}", exc_info=True)

            await self._persist_run_times(
                spec.id,
                last_run_at=fired_at,
                next_run_at=self._next_after(spec, fired_at),
            )
            return run_id
        finally:
            self._in_flight.discard(spec.id)

    def _next_after(self, spec: ScheduleSpec, fired_at: datetime) -> Optional[datetime]:
        try:
            return compute_next_run(spec.cron_expression, spec.timezone, after=max(fired_at, utc_now()))
        except ConfigurationError as e:
            logger.error(f"Cannot compute next run for schedule {spec.id}: {e}")
            return None

    async def _persist_run_times(
        self,
        schedule_id: str,
        last_run_at: Optional[datetime] = None,
        next_run_at: Optional[datetime] = None,
    ) -> None:
        async with self.session_factory() as session:
            await BaseService(Schedule, session).update(
                schedule_id,
                {"last_run_at": last_run_at, "next_run_at": next_run_at},
            )
            await session.commit()

    # ─── Missed-run sweep ─────────────────────────────────────

    async def check_missed_schedules(self, now: Optional[datetime] = None) -> list[str]:
        """Fire active schedules that are due but have not run since falling due.

        Returns:
            Ids of the schedules that were fired
        """
        now = now or utc_now()
        query = select(Schedule).where(
            Schedule.is_active == True,  # noqa: E712
            Schedule.next_run_at.is_not(None),
            Schedule.next_run_at <= now,
            or_(Schedule.last_run_at.is_(None), Schedule.last_run_at < Schedule.next_run_at),
        )
        if self.organization_id:
            query = query.where(Schedule.organization_id == self.organization_id)

        async with self.session_factory() as session:
            missed = [ScheduleSpec.from_model(s) for s in (await session.execute(query)).scalars().all()]

        fired = []
        for spec in missed:
            if spec.id in self._in_flight:
                continue
            logger.info(f"Found missed schedule {spec.id}, executing now")
            await self._fire(spec)
            fired.append(spec.id)
        return fired

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.SCHEDULE_SWEEP_INTERVAL_SECONDS)
            try:
                await self.check_missed_schedules()
            except Exception:
                logger.exception("Missed-schedule sweep failed")
