"""Calendar and email integrations called after a booking commits.

Both are best-effort: they raise ``ExternalCollaboratorFailed`` and the
booking service logs and moves on.
"""

import asyncio
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Protocol

import httpx
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from therapy_booking.core import config
from therapy_booking.core.errors import ExternalCollaboratorFailed
from therapy_booking.core.time_of_day import SESSION_DURATION_MINUTES, TimeStyle, format_time_of_day

logger = logging.getLogger(__name__)

# Long-lived so asyncio.run never joins a send that outlived its timeout.
_EMAIL_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix='sendgrid')


@dataclass(frozen=True)
class MeetingInfo:
    meeting_url: str | None
    external_event_id: str | None


@dataclass(frozen=True)
class Party:
    name: str
    email: str | None


@dataclass(frozen=True)
class BookingParties:
    client: Party
    psychologist: Party


@dataclass(frozen=True)
class BookingDetails:
    """Detached copy of a session handed to collaborators."""
    session_id: int
    scheduled_date: date
    scheduled_time: int
    status: str
    price: Decimal | None = None
    meeting_url: str | None = None

    @property
    def display_time(self) -> str:
        return format_time_of_day(self.scheduled_time, TimeStyle.H12)


class CalendarService(Protocol):
    async def create_meeting(
        self,
        summary: str,
        description: str,
        start_iso: str,
        end_iso: str,
        attendees: list[Party],
    ) -> MeetingInfo: ...


class BookingNotifier(Protocol):
    async def notify_booking_confirmed(self, booking: BookingDetails, parties: BookingParties) -> None: ...

    async def notify_rescheduled(
        self,
        booking: BookingDetails,
        parties: BookingParties,
        previous: BookingDetails,
    ) -> None: ...

    async def notify_cancelled(self, booking: BookingDetails, parties: BookingParties) -> None: ...


@dataclass
class Collaborators:
    calendar: CalendarService | None = None
    notifier: BookingNotifier | None = None


class GoogleCalendarClient:
    """Creates calendar events with a video link through the Calendar REST API."""

    def __init__(
        self,
        access_token: str,
        calendar_id: str = 'primary',
        api_url: str = 'https://www.googleapis.com/calendar/v3',
        timezone: str = 'UTC',
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token
        self.calendar_id = calendar_id
        self.api_url = api_url.rstrip('/')
        self.timezone = timezone
        self.transport = transport

    async def create_meeting(
        self,
        summary: str,
        description: str,
        start_iso: str,
        end_iso: str,
        attendees: list[Party],
    ) -> MeetingInfo:
        if not self.access_token:
            raise ExternalCollaboratorFailed('Calendar access token is not configured.')

        payload = {
            'summary': summary,
            'description': description,
            'start': {'dateTime': start_iso, 'timeZone': self.timezone},
            'end': {'dateTime': end_iso, 'timeZone': self.timezone},
            'attendees': [
                {'email': attendee.email, 'displayName': attendee.name}
                for attendee in attendees
                if attendee.email
            ],
            'conferenceData': {
                'createRequest': {
                    'requestId': uuid.uuid4().hex,
                    'conferenceSolutionKey': {'type': 'hangoutsMeet'},
                },
            },
        }

        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.post(
                    f'{self.api_url}/calendars/{self.calendar_id}/events',
                    params={'conferenceDataVersion': 1, 'sendUpdates': 'all'},
                    headers={'Authorization': f'Bearer {self.access_token}'},
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise ExternalCollaboratorFailed(f'Calendar request failed: {exc}') from exc

        if response.status_code >= 400:
            raise ExternalCollaboratorFailed(
                f'Calendar event creation failed with status {response.status_code}.'
            )

        event = response.json()
        meeting_url = event.get('hangoutLink')
        if not meeting_url:
            for entry_point in event.get('conferenceData', {}).get('entryPoints', []):
                if entry_point.get('entryPointType') == 'video':
                    meeting_url = entry_point.get('uri')
                    break

        return MeetingInfo(meeting_url=meeting_url, external_event_id=event.get('id'))


class SendGridNotifier:
    """Email notifications using SendGrid."""

    def __init__(self, api_key: str, from_email: str, from_name: str, client=None):
        self.from_email = from_email
        self.from_name = from_name

        if client is not None:
            self.client = client
            self.enabled = True
        elif api_key:
            self.client = SendGridAPIClient(api_key)
            self.enabled = True
        else:
            logger.warning('SENDGRID_API_KEY not configured. Emails will not be sent.')
            self.client = None
            self.enabled = False

    async def send_email(self, to: str | None, subject: str, html_body: str) -> bool:
        if not self.enabled:
            logger.info('Email service disabled. Would have sent to %s: %s', to, subject)
            return False
        if not to:
            logger.info('Skipping email without recipient: %s', subject)
            return False

        message = Mail(
            from_email=(self.from_email, self.from_name),
            to_emails=to,
            subject=subject,
            html_content=html_body,
        )
        try:
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(_EMAIL_EXECUTOR, self.client.send, message)
        except Exception as exc:
            raise ExternalCollaboratorFailed(f'Email to {to} failed: {exc}') from exc

        if not 200 <= response.status_code < 300:
            raise ExternalCollaboratorFailed(f'Email to {to} failed with status {response.status_code}.')

        logger.info('Email sent to %s: %s', to, subject)
        return True

    async def notify_booking_confirmed(self, booking: BookingDetails, parties: BookingParties) -> None:
        subject = f'Session confirmed for {booking.scheduled_date.isoformat()} at {booking.display_time}'
        body = _session_body(
            'Your session is confirmed.',
            booking,
            parties,
        )
        await self._send_to_both(parties, subject, body)

    async def notify_rescheduled(
        self,
        booking: BookingDetails,
        parties: BookingParties,
        previous: BookingDetails,
    ) -> None:
        subject = f'Session moved to {booking.scheduled_date.isoformat()} at {booking.display_time}'
        body = _session_body(
            f'Your session on {previous.scheduled_date.isoformat()} at {previous.display_time} has been rescheduled.',
            booking,
            parties,
        )
        await self._send_to_both(parties, subject, body)

    async def notify_cancelled(self, booking: BookingDetails, parties: BookingParties) -> None:
        subject = f'Session on {booking.scheduled_date.isoformat()} at {booking.display_time} cancelled'
        body = _session_body('This session has been cancelled.', booking, parties)
        await self._send_to_both(parties, subject, body)

    async def _send_to_both(self, parties: BookingParties, subject: str, body: str) -> None:
        results = await asyncio.gather(
            self.send_email(parties.client.email, subject, body),
            self.send_email(parties.psychologist.email, subject, body),
            return_exceptions=True,
        )
        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            raise ExternalCollaboratorFailed('; '.join(str(error) for error in errors))


def _session_body(headline: str, booking: BookingDetails, parties: BookingParties) -> str:
    meeting_line = (
        f'<p>Join link: <a href="{booking.meeting_url}">{booking.meeting_url}</a></p>'
        if booking.meeting_url
        else ''
    )
    return (
        f'<p>{headline}</p>'
        f'<p>Client: {parties.client.name}<br>'
        f'Psychologist: {parties.psychologist.name}<br>'
        f'Date: {booking.scheduled_date.isoformat()}<br>'
        f'Time: {booking.display_time}<br>'
        f'Duration: {SESSION_DURATION_MINUTES} minutes</p>'
        f'{meeting_line}'
    )


def build_collaborators() -> Collaborators:
    calendar = None
    if config.GOOGLE_CALENDAR_ACCESS_TOKEN:
        calendar = GoogleCalendarClient(
            access_token=config.GOOGLE_CALENDAR_ACCESS_TOKEN,
            calendar_id=config.GOOGLE_CALENDAR_ID,
            api_url=config.GOOGLE_CALENDAR_API_URL,
            timezone=config.BOOKING_TIMEZONE,
        )
    else:
        logger.warning('GOOGLE_CALENDAR_ACCESS_TOKEN not configured. Meetings will not be created.')

    notifier = SendGridNotifier(
        api_key=config.SENDGRID_API_KEY,
        from_email=config.SENDGRID_FROM_EMAIL,
        from_name=config.SENDGRID_FROM_NAME,
    )
    return Collaborators(calendar=calendar, notifier=notifier)
