import logging
from contextlib import contextmanager
from threading import Lock
from typing import Iterable, Iterator

from sqlalchemy import create_engine, event, inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from booking_backend.core import config
from booking_backend.core.errors import PersistenceFailure


logger = logging.getLogger(__name__)


def build_engine(url: str, **kwargs) -> Engine:
    if url.startswith('sqlite'):
        connect_args = kwargs.pop('connect_args', {})
        connect_args.setdefault('check_same_thread', False)
        new_engine = create_engine(url, connect_args=connect_args, **kwargs)

        @event.listens_for(new_engine, 'connect')
        def _enable_foreign_keys(dbapi_connection, _connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute('PRAGMA foreign_keys=ON')
            cursor.close()

        return new_engine

    return create_engine(url, pool_pre_ping=True, **kwargs)


engine = build_engine(config.DATABASE_URL, echo=config.DATABASE_ECHO)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_appointment_schema_checked = False
_reminder_schema_checked = False


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Commit the unit of work or roll all of it back.

    Store errors are logged and re-raised as ``PersistenceFailure``; any other
    exception (domain errors included) is re-raised untouched after rollback.
    Reads made before entering are closed out first, so the unit of work
    starts on a fresh snapshot with its first statement.
    """
    if db.in_transaction() and not (db.new or db.dirty or db.deleted):
        db.commit()

    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Transaction rolled back after a database error.')
        raise PersistenceFailure() from exc
    except Exception:
        db.rollback()
        raise


def lock_staff_schedules(db: Session, staff_ids: Iterable[int]) -> set[int]:
    """Serialize schedule writes per staff member for the current transaction.

    Returns the ids that exist. Must be the first statement of the transaction.
    """
    from booking_backend.models.staff import StaffMember

    ordered_ids = sorted(set(staff_ids))
    if db.get_bind().dialect.name == 'sqlite':
        # no row locks in SQLite: take the database write lock before reading
        db.connection().exec_driver_sql('BEGIN IMMEDIATE')

    rows = db.execute(
        select(StaffMember.id)
        .where(StaffMember.id.in_(ordered_ids))
        .order_by(StaffMember.id)
        .with_for_update()
    ).scalars().all()
    return set(rows)


def ensure_appointment_schema() -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        inspector = inspect(engine)

        if 'appointments' not in inspector.get_table_names():
            _appointment_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
        migration_steps = [
            ('notes', 'ALTER TABLE appointments ADD COLUMN notes TEXT'),
            ('total_duration', 'ALTER TABLE appointments ADD COLUMN total_duration INTEGER'),
            ('updated_at', 'ALTER TABLE appointments ADD COLUMN updated_at TIMESTAMP'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE INDEX IF NOT EXISTS idx_appointments_staff_date '
                    'ON appointments(staff_id, appointment_date)'
                )
            )
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_appointments_active_staff_start '
                    'ON appointments(staff_id, appointment_date, start_time) '
                    "WHERE status != 'cancelled'"
                )
            )

        _appointment_schema_checked = True


def ensure_reminder_schema() -> None:
    global _reminder_schema_checked

    if _reminder_schema_checked:
        return

    with _schema_lock:
        if _reminder_schema_checked:
            return

        inspector = inspect(engine)

        if 'appointment_reminders' not in inspector.get_table_names():
            _reminder_schema_checked = True
            return

        with engine.begin() as connection:
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_appointment_reminders_type '
                    'ON appointment_reminders(appointment_id, reminder_type)'
                )
            )

        _reminder_schema_checked = True
