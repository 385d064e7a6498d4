import os
from dataclasses import dataclass, field
from datetime import date, time
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite://')
os.environ.setdefault('REMINDER_INTERVAL_MINUTES', '0')

from booking_backend.core.errors import GatewayFailure  # noqa: E402
from booking_backend.database import Base, build_engine  # noqa: E402
from booking_backend.models.appointment import Appointment, AppointmentService, AppointmentStatus  # noqa: E402
from booking_backend.models.business import Business  # noqa: E402
from booking_backend.models.reminder import AppointmentReminder  # noqa: E402,F401
from booking_backend.models.service import Service  # noqa: E402
from booking_backend.models.shift import Shift  # noqa: E402
from booking_backend.models.staff import StaffMember  # noqa: E402
from booking_backend.models.user import User  # noqa: E402

WORK_DAY = date(2030, 3, 4)


@dataclass
class Tenant:
    owner: User
    customer: User
    other_customer: User
    staff_user: User
    business: Business
    staff: StaffMember
    haircut: Service
    coloring: Service
    retired_service: Service
    work_day: date = WORK_DAY


class RecordingGateway:
    def __init__(self):
        self.messages = []

    def send(self, message) -> None:
        self.messages.append(message)


class FailingGateway:
    """Fails for the listed recipients and records everything else."""

    def __init__(self, failing_ids, error=None):
        self.failing_ids = set(failing_ids)
        self.error = error
        self.messages = []

    def send(self, message) -> None:
        if message.recipient_id in self.failing_ids:
            raise self.error or GatewayFailure(f'Gateway rejected notification for user {message.recipient_id}')
        self.messages.append(message)


@pytest.fixture
def engine():
    test_engine = build_engine('sqlite://', poolclass=StaticPool)
    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def seed_tenant(db, shifts=((time(9, 0), time(17, 0)),), work_day: date = WORK_DAY) -> Tenant:
    owner = User(email='owner@salon.test', full_name='Olivia Owner', role='business_owner')
    customer = User(email='casey@example.test', full_name='Casey Customer', role='customer')
    other_customer = User(email='riley@example.test', full_name='Riley Customer', role='customer')
    staff_user = User(email='sam@salon.test', full_name='Sam Stylist', role='staff')
    db.add_all([owner, customer, other_customer, staff_user])
    db.flush()

    business = Business(owner_id=owner.id, business_name='Sharp Cuts', email='hello@salon.test')
    db.add(business)
    db.flush()

    staff = StaffMember(business_id=business.id, user_id=staff_user.id, position='Stylist')
    haircut = Service(business_id=business.id, name='Haircut', price=Decimal('25.00'), duration=30)
    coloring = Service(business_id=business.id, name='Coloring', price=Decimal('80.50'), duration=60)
    retired_service = Service(
        business_id=business.id,
        name='Perm',
        price=Decimal('95.00'),
        duration=90,
        is_active=False,
    )
    db.add_all([staff, haircut, coloring, retired_service])
    db.flush()

    for start, end in shifts:
        db.add(
            Shift(
                staff_id=staff.id,
                business_id=business.id,
                shift_date=work_day,
                start_time=start,
                end_time=end,
            )
        )
    db.commit()

    return Tenant(
        owner=owner,
        customer=customer,
        other_customer=other_customer,
        staff_user=staff_user,
        business=business,
        staff=staff,
        haircut=haircut,
        coloring=coloring,
        retired_service=retired_service,
        work_day=work_day,
    )


def insert_appointment(
    db,
    tenant: Tenant,
    start: time,
    end: time,
    status: AppointmentStatus = AppointmentStatus.CONFIRMED,
    appointment_date: date | None = None,
    customer: User | None = None,
) -> Appointment:
    appointment = Appointment(
        customer_id=(customer or tenant.customer).id,
        business_id=tenant.business.id,
        staff_id=tenant.staff.id,
        appointment_date=appointment_date or tenant.work_day,
        start_time=start,
        end_time=end,
        total_price=Decimal('25.00'),
        total_duration=(end.hour * 60 + end.minute) - (start.hour * 60 + start.minute),
        status=status,
    )
    appointment.service_links = [AppointmentService(service_id=tenant.haircut.id)]
    db.add(appointment)
    db.commit()
    return appointment


@pytest.fixture
def tenant(db) -> Tenant:
    return seed_tenant(db)


@pytest.fixture
def recording_gateway() -> RecordingGateway:
    return RecordingGateway()
