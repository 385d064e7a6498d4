"""Lifecycle and reminder fan-out through the external notification gateway.

The dispatcher runs after the triggering transaction has committed. Each
recipient is sent to independently; a failed send is logged and reported in
the returned results, and nothing here raises back into the caller.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from functools import lru_cache
from typing import Protocol

import httpx

from booking_backend.core import config
from booking_backend.core.errors import GatewayFailure
from booking_backend.core.timeutils import to_minutes, to_time_string
from booking_backend.models.appointment import Appointment

logger = logging.getLogger(__name__)

CUSTOMER = 'customer'
OWNER = 'business_owner'
STAFF = 'staff'

APPOINTMENT_CREATED = 'appointment_created'
APPOINTMENT_CONFIRMED = 'appointment_confirmed'
APPOINTMENT_RESCHEDULED = 'appointment_rescheduled'
APPOINTMENT_COMPLETED = 'appointment_completed'
CANCELLED_BY_CUSTOMER = 'appointment_cancelled_by_customer'
CANCELLED_BY_BUSINESS = 'appointment_cancelled_by_business'
REMINDER_PREFIX = 'appointment_reminder_'


@dataclass(frozen=True)
class NotificationMessage:
    recipient_id: int
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryResult:
    recipient_id: int
    role: str
    delivered: bool
    error: str | None = None


@dataclass(frozen=True)
class AppointmentSnapshot:
    """Detached copy of what a notification needs, taken right after commit."""

    appointment_id: int
    customer_id: int
    business_id: int
    staff_id: int
    appointment_date: date
    start_time: str
    end_time: str
    business_name: str
    owner_user_id: int | None = None
    staff_user_id: int | None = None
    customer_name: str = 'Customer'
    staff_name: str | None = None
    service_names: tuple[str, ...] = ()

    @classmethod
    def from_appointment(cls, appointment: Appointment) -> 'AppointmentSnapshot':
        business = appointment.business
        staff = appointment.staff
        customer = appointment.customer
        staff_user = staff.user if staff is not None else None
        return cls(
            appointment_id=appointment.id,
            customer_id=appointment.customer_id,
            business_id=appointment.business_id,
            staff_id=appointment.staff_id,
            appointment_date=appointment.appointment_date,
            start_time=to_time_string(to_minutes(appointment.start_time)),
            end_time=to_time_string(to_minutes(appointment.end_time)),
            business_name=(business.business_name if business is not None else None) or 'our partner',
            owner_user_id=business.owner_id if business is not None else None,
            staff_user_id=staff.user_id if staff is not None else None,
            customer_name=(customer.full_name or customer.email) if customer is not None else 'Customer',
            staff_name=staff_user.full_name if staff_user is not None else None,
            service_names=tuple(service.name for service in appointment.services),
        )


@dataclass(frozen=True)
class NotificationEvent:
    kind: str
    appointment: AppointmentSnapshot
    reminder_type: str | None = None
    days_ahead: int | None = None
    minutes_ahead: int | None = None


class NotificationGateway(Protocol):
    def send(self, message: NotificationMessage) -> None:
        """Deliver one message or raise ``GatewayFailure``."""


class LoggingNotificationGateway:
    """Used when no gateway URL is configured."""

    def send(self, message: NotificationMessage) -> None:
        logger.info(
            'Notification gateway not configured. Would notify user %s: %s',
            message.recipient_id,
            message.title,
        )


class HttpNotificationGateway:
    def __init__(self, url: str, token: str = '', timeout: float = 10.0, client: httpx.Client | None = None):
        self.url = url
        headers = {'Authorization': f'Bearer {token}'} if token else {}
        self.client = client or httpx.Client(timeout=timeout, headers=headers)

    def send(self, message: NotificationMessage) -> None:
        payload = {
            'recipient_id': str(message.recipient_id),
            'title': message.title,
            'body': message.body,
            'data': message.data,
        }
        try:
            response = self.client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise GatewayFailure(
                f'Gateway rejected notification for user {message.recipient_id}: '
                f'HTTP {exc.response.status_code}'
            ) from exc
        except httpx.HTTPError as exc:
            raise GatewayFailure(f'Gateway unreachable for user {message.recipient_id}: {exc}') from exc

    def close(self) -> None:
        self.client.close()


def build_gateway() -> NotificationGateway:
    if config.NOTIFICATION_GATEWAY_URL:
        return HttpNotificationGateway(
            config.NOTIFICATION_GATEWAY_URL,
            token=config.NOTIFICATION_GATEWAY_TOKEN,
            timeout=config.NOTIFICATION_TIMEOUT_SECONDS,
        )
    return LoggingNotificationGateway()


def _when(snapshot: AppointmentSnapshot) -> str:
    return f'{snapshot.appointment_date.isoformat()} at {snapshot.start_time[:5]}'


def _reminder_text(event: NotificationEvent) -> tuple[str, str]:
    snapshot = event.appointment
    if event.minutes_ahead is not None:
        lead = '1 hour' if event.minutes_ahead == 60 else f'{event.minutes_ahead} minutes'
        return (
            f'Your appointment is in {lead}',
            f'Time to get ready! Your appointment at {snapshot.business_name} starts soon ({_when(snapshot)}).',
        )
    if event.days_ahead == 1:
        return (
            'Your appointment is tomorrow',
            f'Your appointment at {snapshot.business_name} is tomorrow ({_when(snapshot)}).',
        )
    if event.days_ahead == 7:
        return (
            'Your appointment is in one week',
            f'Just a heads up: your appointment at {snapshot.business_name} is in one week ({_when(snapshot)}).',
        )
    return (
        'Upcoming appointment',
        f'Your appointment at {snapshot.business_name} is in {event.days_ahead} days ({_when(snapshot)}).',
    )


def compose_message(event: NotificationEvent, role: str) -> tuple[str, str]:
    """Title and body for one recipient of an event."""
    snapshot = event.appointment
    when = _when(snapshot)
    customer = snapshot.customer_name

    if event.kind.startswith(REMINDER_PREFIX):
        return _reminder_text(event)

    if event.kind == APPOINTMENT_CREATED:
        if role == CUSTOMER:
            return 'Appointment booked', f'Your appointment at {snapshot.business_name} on {when} is booked.'
        if role == OWNER:
            return 'New appointment', f'{customer} booked an appointment on {when}.'
        return 'New appointment assigned', f'You have a new appointment with {customer} on {when}.'

    if event.kind == APPOINTMENT_CONFIRMED:
        if role == CUSTOMER:
            return 'Appointment confirmed', f'{snapshot.business_name} confirmed your appointment on {when}.'
        return 'Appointment confirmed', f'The appointment with {customer} on {when} is confirmed.'

    if event.kind == APPOINTMENT_RESCHEDULED:
        if role == CUSTOMER:
            return 'Appointment rescheduled', f'Your appointment at {snapshot.business_name} moved to {when}.'
        return 'Appointment rescheduled', f'The appointment with {customer} moved to {when}.'

    if event.kind == APPOINTMENT_COMPLETED:
        return 'Appointment completed', f'Thanks for visiting {snapshot.business_name}!'

    if event.kind == CANCELLED_BY_CUSTOMER:
        if role == CUSTOMER:
            return 'Appointment cancelled', 'Your appointment was cancelled successfully.'
        return 'Appointment cancelled', f'{customer} cancelled the appointment on {when}.'

    if event.kind == CANCELLED_BY_BUSINESS:
        if role == CUSTOMER:
            return 'Appointment cancelled', f'Your appointment on {when} was cancelled by the business.'
        return 'Appointment cancelled', f'The appointment with {customer} on {when} was cancelled by the business.'

    raise ValueError(f'Unknown notification kind: {event.kind}')


def resolve_recipients(event: NotificationEvent) -> list[tuple[int, str]]:
    snapshot = event.appointment
    if event.kind.startswith(REMINDER_PREFIX) or event.kind == APPOINTMENT_COMPLETED:
        candidates = [(snapshot.customer_id, CUSTOMER)]
    else:
        candidates = [
            (snapshot.customer_id, CUSTOMER),
            (snapshot.owner_user_id, OWNER),
            (snapshot.staff_user_id, STAFF),
        ]

    recipients: list[tuple[int, str]] = []
    seen: set[int] = set()
    for user_id, role in candidates:
        if user_id is None or user_id in seen:
            continue
        seen.add(user_id)
        recipients.append((user_id, role))
    return recipients


class NotificationDispatcher:
    def __init__(self, gateway: NotificationGateway):
        self.gateway = gateway

    def dispatch(self, event: NotificationEvent) -> list[DeliveryResult]:
        results: list[DeliveryResult] = []
        snapshot = event.appointment

        for recipient_id, role in resolve_recipients(event):
            title, body = compose_message(event, role)
            data = {
                'type': event.kind,
                'appointment_id': str(snapshot.appointment_id),
                'recipient_role': role,
            }
            if event.reminder_type:
                data['reminder_type'] = event.reminder_type

            message = NotificationMessage(recipient_id=recipient_id, title=title, body=body, data=data)
            try:
                self.gateway.send(message)
            except GatewayFailure as exc:
                logger.warning(
                    'Failed to send %s to %s %s: %s', event.kind, role, recipient_id, exc.detail
                )
                results.append(DeliveryResult(recipient_id, role, False, exc.detail))
            except Exception as exc:
                logger.exception('Unexpected error sending %s to %s %s', event.kind, role, recipient_id)
                results.append(DeliveryResult(recipient_id, role, False, str(exc)))
            else:
                results.append(DeliveryResult(recipient_id, role, True))

        delivered = sum(1 for result in results if result.delivered)
        logger.info(
            'Dispatched %s for appointment %s: %d/%d delivered',
            event.kind,
            snapshot.appointment_id,
            delivered,
            len(results),
        )
        return results


@lru_cache(maxsize=1)
def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(build_gateway())
