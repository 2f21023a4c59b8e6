"""Ways of getting a message to a student or to library staff.

Every channel takes a :class:`Notification` and either returns a
:class:`DeliveryResult` or raises :class:`NotificationError`.  Which channels
are used, and in which order, comes from ``settings.NOTIFICATION_CHANNELS``.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import requests
from django.conf import settings

from records.exceptions import RecordStoreError
from records.store import get_record_store

from .exceptions import NotificationError

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    kind: str
    recipient: str
    subject: str
    message: str = ''
    data: dict = field(default_factory=dict)
    level: str = 'info'
    link: Optional[str] = None


@dataclass
class DeliveryResult:
    success: bool
    message: str
    channel: str
    details: dict = field(default_factory=dict)


class NotificationChannel:
    name = 'channel'

    def send(self, notification):
        raise NotImplementedError


class RelayChannel(NotificationChannel):
    """POSTs the notification payload to the mail relay."""

    name = 'relay'
    ENDPOINTS = {
        'email': '/api/send-email',
        'borrow': '/api/send-borrow-notification',
        'return': '/api/send-return-notification',
        'registration': '/api/send-registration-confirmation',
        'overdue': '/api/send-overdue-notification',
        'bulk-overdue': '/api/send-bulk-overdue-notifications',
        'announcement': '/api/send-announcement',
    }

    def __init__(self, base_url=None, timeout=None, session=None):
        self.base_url = (base_url or settings.MAIL_RELAY_URL).rstrip('/')
        self.timeout = timeout or settings.MAIL_RELAY_TIMEOUT
        self.session = session or requests.Session()

    def send(self, notification):
        endpoint = self.ENDPOINTS.get(notification.kind)
        if endpoint is None:
            raise NotificationError(f"The mail relay cannot send '{notification.kind}' notifications")

        try:
            response = self.session.post(self.base_url + endpoint, json=notification.data, timeout=self.timeout)
            body = response.json()
        except requests.RequestException as exc:
            raise NotificationError(f"Mail relay unreachable: {exc}") from exc
        except ValueError as exc:
            raise NotificationError("Mail relay returned an invalid response") from exc

        if not isinstance(body, dict):
            raise NotificationError("Mail relay returned an invalid response")
        if not body.get('success'):
            raise NotificationError(body.get('message') or 'Mail relay reported a failure', details=body)
        return DeliveryResult(True, body.get('message', ''), self.name, body)


class EmailJSChannel(NotificationChannel):
    """Sends the rendered message text through the EmailJS REST API."""

    name = 'emailjs'

    def __init__(self, config=None, timeout=None, session=None):
        self.config = config or settings.EMAILJS
        self.timeout = timeout or settings.MAIL_RELAY_TIMEOUT
        self.session = session or requests.Session()

    def send(self, notification):
        if not notification.recipient or not notification.message:
            raise NotificationError("EmailJS needs a recipient and a message body")
        if not self.config.get('SERVICE_ID') or not self.config.get('PUBLIC_KEY'):
            raise NotificationError("EmailJS is not configured")

        payload = {
            'service_id': self.config['SERVICE_ID'],
            'template_id': self.config['TEMPLATE_ID'],
            'user_id': self.config['PUBLIC_KEY'],
            'template_params': {
                'to_email': notification.recipient,
                'subject': notification.subject,
                'message': notification.message,
            },
        }
        try:
            response = self.session.post(self.config['API_URL'], json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NotificationError(f"EmailJS unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise NotificationError(f"EmailJS returned {response.status_code}: {response.text}")
        return DeliveryResult(True, response.text or 'OK', self.name)


class InAppChannel(NotificationChannel):
    """Appends to the ``notifications`` log shown on the staff dashboard."""

    name = 'inapp'

    def __init__(self, store=None):
        self.store = store

    def send(self, notification):
        store = self.store or get_record_store()
        entry = {
            'title': notification.subject,
            'message': notification.message,
            'type': notification.level,
            'read': False,
            'timestamp': int(time.time() * 1000),
        }
        if notification.link:
            entry['link'] = notification.link
        try:
            key = store.push('notifications', entry)
        except RecordStoreError as exc:
            raise NotificationError(f"Could not record notification: {exc}") from exc
        return DeliveryResult(True, 'Notification recorded', self.name, {'key': key})


class FallbackChannel(NotificationChannel):
    """Tries each channel in turn until one delivers."""

    name = 'fallback'

    def __init__(self, channels):
        self.channels = list(channels)

    def send(self, notification):
        errors = []
        for channel in self.channels:
            try:
                return channel.send(notification)
            except NotificationError as exc:
                logger.warning("%s delivery of %s notification failed: %s", channel.name, notification.kind, exc)
                errors.append(f"{channel.name}: {exc}")
        raise NotificationError("All notification channels failed (" + '; '.join(errors) + ")")


def build_channel(name, store=None):
    if name == 'relay':
        return RelayChannel()
    if name == 'emailjs':
        return EmailJSChannel()
    if name == 'inapp':
        return InAppChannel(store)
    raise NotificationError(f"Unknown notification channel '{name}'")


def get_channel(store=None, names=None):
    names = names or settings.NOTIFICATION_CHANNELS
    channels = [build_channel(name, store) for name in names]
    if not channels:
        raise NotificationError("No notification channels configured")
    if len(channels) == 1:
        return channels[0]
    return FallbackChannel(channels)
