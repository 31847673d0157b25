from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional
from sqlalchemy.engine import Engine
from sqlmodel import Session, select, col
import asyncio
import logging
import re

from playdeck.core.config import get_settings
from playdeck.core.exceptions import AuthorizationError, NotFoundError, PlaydeckError, ValidationError
from playdeck.models import Form, RunTrigger, utcnow
from playdeck.services.audit import Actor, AuditService, SCHEDULER_ACTOR, WEBHOOK_ACTOR
from playdeck.services.coordinator import RunCoordinator, SubmitResult

settings = get_settings()
logger = logging.getLogger(__name__)

TICK_JOB_ID = "playdeck_schedule_tick"

CRON_ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

# Go-style durations as accepted after @every
DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001, "us": 1e-6, "µs": 1e-6, "ns": 1e-9}
EVERY_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|ns|h|m|s)")
EVERY_DURATION = re.compile(r"(?:\d+(?:\.\d+)?(?:ms|us|µs|ns|h|m|s))+")


def _crontab_day_of_week(expr: str) -> str:
    """Translates crontab weekday numbers (0 and 7 = Sunday) to APScheduler's (0 = Monday).

    Named days (mon-fri) mean the same thing in both and pass through.
    """
    if expr == "*" or any(c.isalpha() for c in expr):
        return expr
    days: set[int] = set()
    for part in expr.split(","):
        base, _, step = part.partition("/")
        if base == "*":
            start, end = 0, 6
        elif "-" in base:
            start, end = (int(x) for x in base.split("-", 1))
        else:
            start = int(base)
            end = 6 if step else start
        interval = int(step) if step else 1
        if not (0 <= start <= end <= 7) or interval < 1:
            raise ValueError(f"day of week out of range: {part}")
        days.update(n % 7 for n in range(start, end + 1, interval))
    return ",".join(str((d - 1) % 7) for d in sorted(days))


def _parse_every(spec: str) -> IntervalTrigger:
    """Builds the trigger for `@every <duration>`, e.g. `@every 1h30m`.

    Sub-second parts are truncated and anything shorter than a second
    runs every second.
    """
    spec = spec.strip()
    if not spec or EVERY_DURATION.fullmatch(spec) is None:
        raise ValidationError("schedule_cron", f"invalid @every duration: '{spec}'")
    seconds = sum(float(n) * DURATION_UNITS[unit] for n, unit in EVERY_PART.findall(spec))
    return IntervalTrigger(seconds=max(1, int(seconds)), timezone=timezone.utc)


def parse_cron(expr: Optional[str]) -> BaseTrigger:
    """Builds a UTC trigger from a 5-field crontab line or an @descriptor.

    When neither day-of-month nor day-of-week starts with `*` the schedule
    fires on days matching either one, as crontab does.

    Raises:
        ValidationError: The expression cannot be parsed.
    """
    text = (expr or "").strip()
    if text.lower().startswith("@every"):
        return _parse_every(text[len("@every"):])
    text = CRON_ALIASES.get(text.lower(), text)
    fields = text.split()
    if len(fields) != 5:
        raise ValidationError("schedule_cron", f"expected 5 fields, got {len(fields)}")
    minute, hour, day, month, day_of_week = ("*" if f == "?" else f for f in fields)
    try:
        if not day.startswith("*") and not day_of_week.startswith("*"):
            return OrTrigger([
                CronTrigger(minute=minute, hour=hour, day=day, month=month, timezone=timezone.utc),
                CronTrigger(
                    minute=minute, hour=hour, month=month,
                    day_of_week=_crontab_day_of_week(day_of_week), timezone=timezone.utc,
                ),
            ])
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_crontab_day_of_week(day_of_week),
            timezone=timezone.utc,
        )
    except ValueError as e:
        raise ValidationError("schedule_cron", f"invalid cron expression: {e}")


def validate_cron(expr: Optional[str]) -> None:
    parse_cron(expr)


def next_fire_time(expr: Optional[str], after: datetime) -> datetime:
    """Earliest fire time of `expr` strictly after `after`, in UTC.

    A naive `after` is taken to be UTC. `@every` schedules count from
    `after` truncated to the second.
    """
    trigger = parse_cron(expr)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    after = after.astimezone(timezone.utc)
    if isinstance(trigger, IntervalTrigger):
        return after.replace(microsecond=0) + trigger.interval
    fire = trigger.get_next_fire_time(None, after + timedelta(microseconds=1))
    if fire is None:
        raise ValidationError("schedule_cron", "expression never fires")
    return fire.astimezone(timezone.utc)


class SchedulerService:
    """Cron and webhook triggering of form runs.

    The scheduler is the only writer of `Form.next_run_at`. APScheduler is
    used as the clock: one interval job calls `tick()`, which looks at the
    forms table and hands due forms to the coordinator. Missed fire times
    are never caught up; after downtime a form simply waits for its next
    future slot.
    """
    def __init__(
        self,
        engine: Engine,
        coordinator: RunCoordinator,
        audit: AuditService,
        poll_seconds: Optional[float] = None,
    ):
        self.engine = engine
        self.coordinator = coordinator
        self.audit = audit
        self.poll_seconds = poll_seconds or settings.SCHEDULER_POLL_SECONDS
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._lock = asyncio.Lock()

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=self.poll_seconds, timezone=timezone.utc),
            id=TICK_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started, polling every {self.poll_seconds}s")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def _set_next_run(self, form_id: str, next_run_at: Optional[datetime]) -> None:
        with Session(self.engine) as db:
            form = db.get(Form, form_id)
            if form:
                form.next_run_at = next_run_at
                db.add(form)
                db.commit()

    def _disable(self, form_id: str, cron: str, reason: str) -> None:
        with Session(self.engine) as db:
            form = db.get(Form, form_id)
            if not form:
                return
            form.schedule_enabled = False
            form.next_run_at = None
            form.updated_at = utcnow()
            db.add(form)
            db.commit()
        logger.error(f"Disabled schedule of form {form_id}: {reason}")
        self.audit.record(SCHEDULER_ACTOR, "schedule_disabled", "form", form_id, {"cron": cron, "error": reason})

    async def tick(self, now: Optional[datetime] = None) -> list[SubmitResult]:
        """Submits every form whose next_run_at has come, at most once each.

        Returns:
            The submissions made during this tick.
        """
        async with self._lock:
            now = now or utcnow()
            with Session(self.engine) as db:
                due = db.exec(
                    select(Form)
                    .where(Form.schedule_enabled == True)  # noqa: E712
                    .where(col(Form.next_run_at).is_not(None))
                    .where(Form.next_run_at <= now)
                    .order_by(Form.next_run_at)
                ).all()

            results: list[SubmitResult] = []
            for form in due:
                try:
                    next_at = next_fire_time(form.schedule_cron, now)
                except ValidationError as e:
                    self._disable(form.id, form.schedule_cron, e.reason)
                    continue
                # Advance before submitting so a failing form is not resubmitted on every tick
                self._set_next_run(form.id, next_at)

                logger.info(f"Scheduler: submitting form {form.name} (next run {next_at.isoformat()})")
                try:
                    results.append(
                        await self.coordinator.submit_run(
                            form.id, {}, SCHEDULER_ACTOR, trigger=RunTrigger.SCHEDULE.value
                        )
                    )
                except PlaydeckError as e:
                    logger.error(f"Scheduled run of form {form.name} failed: {e.message}")
                    self.audit.record(
                        SCHEDULER_ACTOR, "scheduled_run_failed", "form", form.id,
                        {"error": e.message, "details": e.details},
                    )
                except Exception as e:
                    logger.exception(f"Scheduled run of form {form.name} crashed")
                    self.audit.record(SCHEDULER_ACTOR, "scheduled_run_failed", "form", form.id, {"error": str(e)})
            return results

    async def update_schedule(
        self,
        form_id: str,
        cron: Optional[str],
        enabled: bool,
        actor: Actor,
        ip: str = "",
    ) -> Form:
        """Changes a form's schedule and recomputes next_run_at.

        Raises:
            NotFoundError: Unknown form.
            ValidationError: Bad cron, or enabling without an expression.
        """
        cron = (cron or "").strip()
        if enabled and not cron:
            raise ValidationError("schedule_cron", "is required to enable a schedule")
        async with self._lock:
            with Session(self.engine) as db:
                form = db.get(Form, form_id)
                if not form:
                    raise NotFoundError("form", form_id)
                next_at = next_fire_time(cron, utcnow()) if enabled else None
                if cron and not enabled:
                    validate_cron(cron)
                form.schedule_cron = cron
                form.schedule_enabled = enabled
                form.next_run_at = next_at
                form.updated_at = utcnow()
                db.add(form)
                db.commit()
                db.refresh(form)

        self.audit.record(
            actor, "schedule_updated", "form", form_id,
            {"cron": cron, "enabled": enabled, "next_run_at": next_at}, ip=ip,
        )
        return form

    async def sync_all(self) -> int:
        """Recomputes next_run_at for every form at startup.

        Returns:
            Number of forms with an active schedule.
        """
        async with self._lock:
            now = utcnow()
            active = 0
            with Session(self.engine) as db:
                forms = db.exec(select(Form)).all()
            for form in forms:
                if not (form.schedule_enabled and form.schedule_cron):
                    if form.next_run_at is not None:
                        self._set_next_run(form.id, None)
                    continue
                try:
                    self._set_next_run(form.id, next_fire_time(form.schedule_cron, now))
                    active += 1
                except ValidationError as e:
                    self._disable(form.id, form.schedule_cron, e.reason)
            logger.info(f"Scheduler: {active} scheduled forms loaded")
            return active

    async def trigger_webhook(
        self,
        token: Optional[str],
        payload: Optional[Mapping[str, Any]] = None,
        ip: str = "",
    ) -> SubmitResult:
        """Runs the form that owns `token` with `payload` overriding its defaults.

        Raises:
            AuthorizationError: Blank or unknown token (audited).
            ValidationError: Payload does not satisfy the form's fields.
        """
        token = (token or "").strip()
        form = None
        if token:
            with Session(self.engine) as db:
                form = db.exec(select(Form).where(Form.webhook_token == token)).first()
        if form is None:
            self.audit.record(
                WEBHOOK_ACTOR, "webhook_auth_failed", "form", "",
                {"token_prefix": token[:6]}, ip=ip, sensitive=True,
            )
            raise AuthorizationError("Invalid webhook token")

        if payload is not None and not isinstance(payload, Mapping):
            raise ValidationError("payload", "must be an object")

        result = await self.coordinator.submit_run(
            form.id, payload or {}, WEBHOOK_ACTOR, trigger=RunTrigger.WEBHOOK.value, ip=ip
        )
        self.audit.record(
            WEBHOOK_ACTOR, "webhook_trigger", "form", form.id,
            {"run_ids": result.run_ids, "batch_id": result.batch_id}, ip=ip,
        )
        return result
