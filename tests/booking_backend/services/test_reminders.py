import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, time, timedelta

import pytest
from conftest import FailingGateway, RecordingGateway, insert_appointment
from sqlalchemy import func, select

from booking_backend.models.appointment import AppointmentStatus
from booking_backend.models.reminder import AppointmentReminder
from booking_backend.services.notifications import NotificationDispatcher
from booking_backend.services.reminders import (
    ReminderHorizon,
    ReminderScheduler,
    appointments_starting_within,
    claim_reminder,
    parse_horizons,
    run_appointment_reminders,
)

HORIZONS = [ReminderHorizon('week', 7), ReminderHorizon('day', 1)]


def _reminder_count(db) -> int:
    return db.execute(select(func.count()).select_from(AppointmentReminder)).scalar_one()


def test_parse_horizons() -> None:
    assert parse_horizons(' week:7, day:1 ,') == HORIZONS
    with pytest.raises(ValueError):
        parse_horizons('week:soon')
    with pytest.raises(ValueError):
        parse_horizons('day:0')


def test_parse_horizons_reads_minute_and_hour_units() -> None:
    assert parse_horizons('hour:60m, soon:2h, day:1d') == [
        ReminderHorizon('hour', minutes_ahead=60),
        ReminderHorizon('soon', minutes_ahead=120),
        ReminderHorizon('day', 1),
    ]
    with pytest.raises(ValueError):
        parse_horizons('hour:0m')
    with pytest.raises(ValueError):
        parse_horizons('hour:m')


def test_reminders_go_out_once_per_horizon(db, tenant, session_factory) -> None:
    insert_appointment(db, tenant, time(10, 0), time(10, 30), status=AppointmentStatus.PENDING)
    insert_appointment(db, tenant, time(11, 0), time(11, 30), appointment_date=tenant.work_day + timedelta(days=6))
    gateway = RecordingGateway()
    dispatcher = NotificationDispatcher(gateway)
    today = tenant.work_day - timedelta(days=1)

    first = run_appointment_reminders(session_factory, dispatcher, today=today, horizons=HORIZONS)
    second = run_appointment_reminders(session_factory, dispatcher, today=today, horizons=HORIZONS)

    assert (first.created, first.skipped, first.failed) == (2, 0, 0)
    assert (second.created, second.skipped, second.failed) == (0, 2, 0)
    assert sorted(message.data['reminder_type'] for message in gateway.messages) == ['day', 'week']
    assert _reminder_count(db) == 2


def test_cancelled_and_completed_appointments_get_no_reminders(db, tenant, session_factory) -> None:
    insert_appointment(db, tenant, time(10, 0), time(10, 30), status=AppointmentStatus.CANCELLED)
    insert_appointment(db, tenant, time(12, 0), time(12, 30), status=AppointmentStatus.COMPLETED)
    gateway = RecordingGateway()

    summary = run_appointment_reminders(
        session_factory,
        NotificationDispatcher(gateway),
        today=tenant.work_day - timedelta(days=1),
        horizons=HORIZONS,
    )

    assert summary.created == 0
    assert gateway.messages == []


def test_sent_cache_skips_known_pairs_without_touching_the_store(db, tenant, session_factory) -> None:
    appointment = insert_appointment(db, tenant, time(10, 0), time(10, 30))
    gateway = RecordingGateway()

    summary = run_appointment_reminders(
        session_factory,
        NotificationDispatcher(gateway),
        today=tenant.work_day - timedelta(days=1),
        horizons=[ReminderHorizon('day', 1)],
        sent_cache={(appointment.id, 'day')},
    )

    assert summary.skipped == 1
    assert _reminder_count(db) == 0


def test_claim_reminder_is_exclusive(db, tenant, session_factory) -> None:
    appointment = insert_appointment(db, tenant, time(10, 0), time(10, 30))

    assert claim_reminder(session_factory, appointment.id, 'day') is True
    assert claim_reminder(session_factory, appointment.id, 'day') is False
    assert claim_reminder(session_factory, appointment.id, 'week') is True


def test_one_failing_item_does_not_stop_the_run(db, tenant, session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    broken = insert_appointment(db, tenant, time(10, 0), time(10, 30))
    healthy = insert_appointment(db, tenant, time(11, 0), time(11, 30), customer=tenant.other_customer)
    gateway = RecordingGateway()
    dispatcher = NotificationDispatcher(gateway)
    original_dispatch = dispatcher.dispatch

    def dispatch(event):
        if event.appointment.appointment_id == broken.id:
            raise RuntimeError('template rendering failed')
        return original_dispatch(event)

    monkeypatch.setattr(dispatcher, 'dispatch', dispatch)

    summary = run_appointment_reminders(
        session_factory,
        dispatcher,
        today=tenant.work_day - timedelta(days=1),
        horizons=[ReminderHorizon('day', 1)],
    )

    assert (summary.created, summary.failed) == (1, 1)
    assert [message.data['appointment_id'] for message in gateway.messages] == [str(healthy.id)]


def test_gateway_failures_are_contained_by_the_dispatcher(db, tenant, session_factory) -> None:
    insert_appointment(db, tenant, time(10, 0), time(10, 30))

    summary = run_appointment_reminders(
        session_factory,
        NotificationDispatcher(FailingGateway({tenant.customer.id})),
        today=tenant.work_day - timedelta(days=1),
        horizons=[ReminderHorizon('day', 1)],
    )

    assert (summary.created, summary.failed) == (1, 0)


def test_slow_item_times_out_and_the_run_continues(db, tenant, session_factory) -> None:
    insert_appointment(db, tenant, time(10, 0), time(10, 30))
    insert_appointment(db, tenant, time(11, 0), time(11, 30), customer=tenant.other_customer)
    release = threading.Event()
    delivered = []

    class SlowDispatcher:
        def dispatch(self, event):
            if event.appointment.customer_id == tenant.customer.id:
                release.wait(5)
                return []
            delivered.append(event.appointment.appointment_id)
            return []

    executor = ThreadPoolExecutor(max_workers=2)
    try:
        summary = run_appointment_reminders(
            session_factory,
            SlowDispatcher(),
            today=tenant.work_day - timedelta(days=1),
            horizons=[ReminderHorizon('day', 1)],
            executor=executor,
            item_timeout=0.2,
        )
    finally:
        release.set()
        executor.shutdown(wait=True)

    assert (summary.created, summary.failed) == (1, 1)
    assert len(delivered) == 1


def test_scheduler_tick_clears_cache_on_a_new_day(db, tenant, session_factory) -> None:
    scheduler = ReminderScheduler(
        session_factory,
        NotificationDispatcher(RecordingGateway()),
        interval_minutes=60,
        horizons=[ReminderHorizon('day', 1)],
    )
    scheduler.sent_cache.add((999, 'day'))
    scheduler._cache_day = date(2000, 1, 1)

    summary = scheduler.tick(today=tenant.work_day - timedelta(days=1))

    assert summary is not None
    assert (999, 'day') not in scheduler.sent_cache


def test_scheduler_tick_logs_and_swallows_job_errors(monkeypatch: pytest.MonkeyPatch, caplog) -> None:
    def explode(*args, **kwargs):
        raise RuntimeError('database went away')

    monkeypatch.setattr('booking_backend.services.reminders.run_appointment_reminders', explode)
    scheduler = ReminderScheduler(lambda: None, NotificationDispatcher(RecordingGateway()), horizons=HORIZONS)

    assert scheduler.tick(today=date(2030, 1, 1)) is None
    assert 'Reminder job error' in caplog.text


def test_scheduler_with_non_positive_interval_does_not_start(session_factory) -> None:
    scheduler = ReminderScheduler(session_factory, NotificationDispatcher(RecordingGateway()), interval_minutes=0)

    scheduler.start()

    assert scheduler.running is False
    scheduler.stop()


def test_scheduler_runs_immediately_and_stops(db, tenant, session_factory) -> None:
    insert_appointment(db, tenant, time(10, 0), time(10, 30))
    gateway = RecordingGateway()
    scheduler = ReminderScheduler(
        session_factory,
        NotificationDispatcher(gateway),
        interval_minutes=60,
        horizons=[ReminderHorizon('day', (tenant.work_day - date.today()).days)],
    )

    scheduler.start()
    try:
        for _ in range(50):
            if gateway.messages:
                break
            threading.Event().wait(0.1)
    finally:
        scheduler.stop()

    assert scheduler.running is False
    assert len(gateway.messages) == 1


def test_busy_pool_defers_unstarted_reminders_to_the_next_run(db, tenant, session_factory) -> None:
    first = insert_appointment(db, tenant, time(10, 0), time(10, 30))
    second = insert_appointment(db, tenant, time(11, 0), time(11, 30), customer=tenant.other_customer)
    first_id, second_id = first.id, second.id
    release = threading.Event()
    delivered = []

    class BlockingDispatcher:
        def dispatch(self, event):
            if event.appointment.appointment_id == first_id:
                release.wait(5)
            delivered.append(event.appointment.appointment_id)
            return []

    today = tenant.work_day - timedelta(days=1)
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        summary = run_appointment_reminders(
            session_factory,
            BlockingDispatcher(),
            today=today,
            horizons=[ReminderHorizon('day', 1)],
            executor=executor,
            item_timeout=0.2,
        )
        records_after_first_run = _reminder_count(db)
    finally:
        release.set()
        executor.shutdown(wait=True)

    assert (summary.created, summary.skipped, summary.failed, summary.deferred) == (0, 0, 1, 1)
    assert records_after_first_run == 1
    assert delivered == [first_id]

    gateway = RecordingGateway()
    rerun = run_appointment_reminders(
        session_factory,
        NotificationDispatcher(gateway),
        today=today,
        horizons=[ReminderHorizon('day', 1)],
    )

    assert (rerun.created, rerun.skipped, rerun.failed) == (1, 1, 0)
    assert [message.data['appointment_id'] for message in gateway.messages] == [str(second_id)]
    assert _reminder_count(db) == 2


def test_hour_reminders_cover_appointments_starting_within_the_window(db, tenant, session_factory) -> None:
    morning = insert_appointment(db, tenant, time(10, 0), time(10, 30))
    noon = insert_appointment(
        db, tenant, time(12, 0), time(12, 30), status=AppointmentStatus.PENDING, customer=tenant.other_customer
    )
    morning_id, noon_id = morning.id, noon.id
    gateway = RecordingGateway()
    dispatcher = NotificationDispatcher(gateway)
    hour = [ReminderHorizon('hour', minutes_ahead=60)]
    before_morning = datetime.combine(tenant.work_day, time(9, 15))

    first = run_appointment_reminders(session_factory, dispatcher, horizons=hour, now=before_morning)
    repeat = run_appointment_reminders(session_factory, dispatcher, horizons=hour, now=before_morning)
    later = run_appointment_reminders(
        session_factory, dispatcher, horizons=hour, now=datetime.combine(tenant.work_day, time(11, 5))
    )

    assert (first.created, first.skipped) == (1, 0)
    assert (repeat.created, repeat.skipped) == (0, 1)
    assert (later.created, later.skipped) == (1, 0)
    assert [message.data['appointment_id'] for message in gateway.messages] == [str(morning_id), str(noon_id)]
    assert {message.data['reminder_type'] for message in gateway.messages} == {'hour'}
    assert gateway.messages[0].title == 'Your appointment is in 1 hour'
    assert _reminder_count(db) == 2


def test_hour_window_skips_started_appointments_and_crosses_midnight(db, tenant) -> None:
    insert_appointment(db, tenant, time(23, 0), time(23, 30))
    insert_appointment(db, tenant, time(23, 50), time(23, 59), status=AppointmentStatus.CANCELLED)
    after_midnight = insert_appointment(
        db, tenant, time(0, 15), time(0, 45), appointment_date=tenant.work_day + timedelta(days=1)
    )
    insert_appointment(db, tenant, time(1, 0), time(1, 30), appointment_date=tenant.work_day + timedelta(days=1))

    due = appointments_starting_within(db, datetime.combine(tenant.work_day, time(23, 45)), 60)

    assert [snapshot.appointment_id for snapshot in due] == [after_midnight.id]


def test_scheduler_wakes_on_the_short_cadence_only_for_minute_horizons(db, tenant, session_factory) -> None:
    insert_appointment(db, tenant, time(10, 0), time(10, 30))
    gateway = RecordingGateway()
    scheduler = ReminderScheduler(
        session_factory,
        NotificationDispatcher(gateway),
        interval_minutes=60,
        horizons=parse_horizons('day:1,hour:60m'),
        short_interval_minutes=15,
    )
    daily_only = ReminderScheduler(
        session_factory,
        NotificationDispatcher(gateway),
        interval_minutes=60,
        horizons=parse_horizons('day:1'),
        short_interval_minutes=15,
    )

    assert scheduler.short_horizons == [ReminderHorizon('hour', minutes_ahead=60)]
    assert scheduler.wake_minutes == 15
    assert daily_only.wake_minutes == 60

    summary = scheduler.tick(
        horizons=scheduler.short_horizons,
        now=datetime.combine(tenant.work_day, time(9, 30)),
    )

    assert summary is not None
    assert summary.created == 1
    assert [message.data['reminder_type'] for message in gateway.messages] == ['hour']
