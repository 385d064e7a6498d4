"""Periodic reminder dispatch.

A reminder is sent only by the run that manages to insert the
``(appointment_id, reminder_type)`` row. Overlapping ticks, restarts and
several app instances therefore never double-send. The in-process cache only
saves a round trip for pairs this process has already seen.

Day horizons (``day:1``) pick appointments on a calendar date. Minute
horizons (``hour:60m``) pick appointments starting within the next N minutes
and run on the shorter cadence of ``REMINDER_SHORT_INTERVAL_MINUTES``.
"""

import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking_backend.core import config
from booking_backend.models.appointment import Appointment, AppointmentStatus
from booking_backend.models.reminder import AppointmentReminder
from booking_backend.services import notifications
from booking_backend.services.notifications import (
    AppointmentSnapshot,
    NotificationDispatcher,
    NotificationEvent,
)

logger = logging.getLogger(__name__)

REMINDABLE_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)

_UNIT_MINUTES = {'m': 1, 'h': 60}


@dataclass(frozen=True)
class ReminderHorizon:
    reminder_type: str
    days_ahead: int = 0
    minutes_ahead: int | None = None

    @property
    def is_sub_day(self) -> bool:
        return self.minutes_ahead is not None

    @property
    def label(self) -> str:
        return f'{self.minutes_ahead}m' if self.is_sub_day else f'{self.days_ahead}d'


@dataclass
class ReminderRunSummary:
    created: int = 0
    skipped: int = 0
    failed: int = 0
    # claimed but never started; released for the next run
    deferred: int = 0


def parse_horizons(raw: str) -> list[ReminderHorizon]:
    """Parse ``"week:7,day:1,hour:60m"`` into horizons.

    A bare number or a ``d`` suffix means days; ``m`` and ``h`` mean minutes
    and hours before the start time.
    """
    horizons: list[ReminderHorizon] = []
    for item in raw.split(','):
        item = item.strip()
        if not item:
            continue
        name, _, amount = item.partition(':')
        name = name.strip().lower()
        amount = amount.strip().lower()
        unit = amount[-1:] if amount[-1:] in ('d', 'h', 'm') else 'd'
        number = amount[:-1] if amount[-1:] in ('d', 'h', 'm') else amount
        if not name or not number.isdigit() or int(number) <= 0:
            raise ValueError(f'Invalid reminder horizon "{item}". Expected name:days or name:<minutes>m.')
        if unit == 'd':
            horizons.append(ReminderHorizon(name, int(number)))
        else:
            horizons.append(ReminderHorizon(name, minutes_ahead=int(number) * _UNIT_MINUTES[unit]))
    return horizons


def appointments_due(db: Session, target_date: date) -> list[AppointmentSnapshot]:
    appointments = db.execute(
        select(Appointment)
        .where(
            Appointment.appointment_date == target_date,
            Appointment.status.in_(REMINDABLE_STATUSES),
        )
        .order_by(Appointment.start_time.asc())
    ).scalars().all()
    return [AppointmentSnapshot.from_appointment(appointment) for appointment in appointments]


def appointments_starting_within(db: Session, now: datetime, minutes: int) -> list[AppointmentSnapshot]:
    """Remindable appointments with ``now < start <= now + minutes``."""
    window_end = now + timedelta(minutes=minutes)
    appointments = db.execute(
        select(Appointment)
        .where(
            Appointment.appointment_date >= now.date(),
            Appointment.appointment_date <= window_end.date(),
            Appointment.status.in_(REMINDABLE_STATUSES),
        )
        .order_by(Appointment.appointment_date.asc(), Appointment.start_time.asc())
    ).scalars().all()
    return [
        AppointmentSnapshot.from_appointment(appointment)
        for appointment in appointments
        if now < datetime.combine(appointment.appointment_date, appointment.start_time) <= window_end
    ]


def claim_reminder(session_factory: Callable[[], Session], appointment_id: int, reminder_type: str) -> bool:
    """Insert the reminder record. False means another run already sent it."""
    db = session_factory()
    try:
        db.add(AppointmentReminder(appointment_id=appointment_id, reminder_type=reminder_type))
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        return False
    finally:
        db.close()


def release_reminder(session_factory: Callable[[], Session], appointment_id: int, reminder_type: str) -> None:
    """Drop a claim whose send never started so a later run picks it up again."""
    db = session_factory()
    try:
        db.execute(
            delete(AppointmentReminder).where(
                AppointmentReminder.appointment_id == appointment_id,
                AppointmentReminder.reminder_type == reminder_type,
            )
        )
        db.commit()
    finally:
        db.close()


def _load_due(
    session_factory: Callable[[], Session],
    horizon: ReminderHorizon,
    today: date,
    now: datetime,
) -> list[AppointmentSnapshot]:
    db = session_factory()
    try:
        if horizon.is_sub_day:
            due = appointments_starting_within(db, now, horizon.minutes_ahead)
            window = f'the {horizon.minutes_ahead} minute(s) after {now:%Y-%m-%d %H:%M}'
        else:
            target_date = today + timedelta(days=horizon.days_ahead)
            due = appointments_due(db, target_date)
            window = str(target_date)
    finally:
        db.close()

    logger.info('Found %d appointment(s) in %s for %s reminder', len(due), window, horizon.reminder_type)
    return due


def run_appointment_reminders(
    session_factory: Callable[[], Session],
    dispatcher: NotificationDispatcher,
    today: date | None = None,
    horizons: list[ReminderHorizon] | None = None,
    executor: Executor | None = None,
    item_timeout: float | None = None,
    sent_cache: set[tuple[int, str]] | None = None,
    now: datetime | None = None,
) -> ReminderRunSummary:
    """Claim and send every due reminder once.

    ``item_timeout`` bounds the wait for a worker and, separately, the send
    itself once it has started. A claim whose send never started is released,
    so a busy pool defers reminders to the next run instead of losing them.
    """
    now = now or datetime.now()
    today = today or now.date()
    horizons = horizons if horizons is not None else parse_horizons(config.REMINDER_HORIZONS)
    timeout = item_timeout if item_timeout is not None else config.REMINDER_ITEM_TIMEOUT_SECONDS
    sent = sent_cache if sent_cache is not None else set()
    summary = ReminderRunSummary()

    owns_executor = executor is None
    pool = executor or ThreadPoolExecutor(max_workers=config.REMINDER_WORKERS, thread_name_prefix='reminder')

    try:
        for horizon in horizons:
            for snapshot in _load_due(session_factory, horizon, today, now):
                key = (snapshot.appointment_id, horizon.reminder_type)
                if key in sent:
                    summary.skipped += 1
                    continue

                try:
                    if not claim_reminder(session_factory, snapshot.appointment_id, horizon.reminder_type):
                        sent.add(key)
                        summary.skipped += 1
                        continue

                    event = NotificationEvent(
                        kind=f'{notifications.REMINDER_PREFIX}{horizon.reminder_type}',
                        appointment=snapshot,
                        reminder_type=horizon.reminder_type,
                        days_ahead=None if horizon.is_sub_day else horizon.days_ahead,
                        minutes_ahead=horizon.minutes_ahead,
                    )
                    started = threading.Event()

                    def send(event=event, started=started):
                        started.set()
                        return dispatcher.dispatch(event)

                    try:
                        future = pool.submit(send)
                    except RuntimeError:
                        release_reminder(session_factory, snapshot.appointment_id, horizon.reminder_type)
                        raise

                    if not started.wait(timeout) and future.cancel():
                        release_reminder(session_factory, snapshot.appointment_id, horizon.reminder_type)
                        summary.deferred += 1
                        logger.warning(
                            'No worker free after %ss for %s reminder of appointment %s; left for the next run',
                            timeout,
                            horizon.reminder_type,
                            snapshot.appointment_id,
                        )
                        continue

                    sent.add(key)
                    future.result(timeout=timeout)
                    summary.created += 1
                except FutureTimeoutError:
                    summary.failed += 1
                    logger.warning(
                        'Timed out after %ss sending %s reminder for appointment %s',
                        timeout,
                        horizon.reminder_type,
                        snapshot.appointment_id,
                    )
                except Exception:
                    summary.failed += 1
                    logger.exception(
                        'Failed to process %s reminder for appointment %s',
                        horizon.reminder_type,
                        snapshot.appointment_id,
                    )
    finally:
        if owns_executor:
            # every claimed send has started by now; let the stragglers finish
            pool.shutdown(wait=False)

    logger.info(
        'Reminder run finished: %d sent, %d skipped, %d failed, %d deferred',
        summary.created,
        summary.skipped,
        summary.failed,
        summary.deferred,
    )
    return summary


class ReminderScheduler:
    """Runs the reminder job on a background thread.

    Day horizons run every ``interval_minutes``. Minute horizons also run every
    ``short_interval_minutes`` in between.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: NotificationDispatcher,
        interval_minutes: int | None = None,
        horizons: list[ReminderHorizon] | None = None,
        short_interval_minutes: int | None = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.interval_minutes = (
            interval_minutes if interval_minutes is not None else config.REMINDER_INTERVAL_MINUTES
        )
        self.short_interval_minutes = (
            short_interval_minutes
            if short_interval_minutes is not None
            else config.REMINDER_SHORT_INTERVAL_MINUTES
        )
        self.horizons = horizons if horizons is not None else parse_horizons(config.REMINDER_HORIZONS)
        self.short_horizons = [horizon for horizon in self.horizons if horizon.is_sub_day]
        self.sent_cache: set[tuple[int, str]] = set()
        self._cache_day: date | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def wake_minutes(self) -> int:
        if self.short_horizons and 0 < self.short_interval_minutes < self.interval_minutes:
            return self.short_interval_minutes
        return self.interval_minutes

    def start(self) -> None:
        if self.interval_minutes <= 0:
            logger.info('Reminder scheduler disabled (REMINDER_INTERVAL_MINUTES=%s)', self.interval_minutes)
            return
        if self.running:
            return

        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(max_workers=config.REMINDER_WORKERS, thread_name_prefix='reminder')
        self._thread = threading.Thread(target=self._run, name='reminder-scheduler', daemon=True)
        self._thread.start()
        logger.info(
            'Reminder scheduler started: every %d minute(s), horizons %s',
            self.wake_minutes,
            ', '.join(f'{h.reminder_type}={h.label}' for h in self.horizons),
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self._executor is not None:
            # a run still in progress releases what it could not start
            self._executor.shutdown(wait=False)
            self._executor = None

    def tick(
        self,
        today: date | None = None,
        horizons: list[ReminderHorizon] | None = None,
        now: datetime | None = None,
    ) -> ReminderRunSummary | None:
        now = now or datetime.now()
        today = today or now.date()
        if self._cache_day != today:
            self.sent_cache.clear()
            self._cache_day = today

        try:
            return run_appointment_reminders(
                self.session_factory,
                self.dispatcher,
                today=today,
                horizons=horizons if horizons is not None else self.horizons,
                executor=self._executor,
                sent_cache=self.sent_cache,
                now=now,
            )
        except Exception:
            logger.exception('Reminder job error')
            return None

    def _run(self) -> None:
        wake_minutes = self.wake_minutes
        wakes_per_full_run = max(1, self.interval_minutes // wake_minutes)
        cycle = 0
        while not self._stop_event.is_set():
            if cycle % wakes_per_full_run == 0:
                self.tick()
            else:
                self.tick(horizons=self.short_horizons)
            cycle += 1
            self._stop_event.wait(wake_minutes * 60)
