import logging
import smtplib

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

from .models import OutboundEmail

logger = logging.getLogger(__name__)

PRIORITY_HEADERS = {
    'X-Priority': '1',
    'X-MSMail-Priority': 'High',
    'Importance': 'high',
}


class MailDeliveryError(Exception):
    pass


def render_email(template, context):
    """Render the ``.txt`` and ``.html`` halves of ``relay/emails/<template>``."""
    text = render_to_string(f'relay/emails/{template}.txt', context)
    html = render_to_string(f'relay/emails/{template}.html', context)
    return text.strip() + '\n', html


def send_email(kind, subject, text, html=None, to=None, bcc=None):
    """Send one message and log the attempt; raises :class:`MailDeliveryError`."""
    to = list(to or [])
    bcc = list(bcc or [])
    message = EmailMultiAlternatives(
        subject=subject,
        body=text or '',
        from_email=settings.DEFAULT_FROM_EMAIL,
        to=to,
        bcc=bcc,
        headers=PRIORITY_HEADERS,
    )
    if html:
        message.attach_alternative(html, 'text/html')

    recipients = ', '.join(to + bcc)
    try:
        message.send()
    except (smtplib.SMTPException, OSError, ValueError) as exc:
        logger.error("Failed to send %s email to %s: %s", kind, recipients, exc)
        OutboundEmail.objects.create(kind=kind, recipients=recipients, subject=subject, status='FAILED', error=str(exc))
        raise MailDeliveryError(str(exc)) from exc

    OutboundEmail.objects.create(kind=kind, recipients=recipients, subject=subject, status='SENT')
    logger.info("%s email sent to %s", kind.title(), recipients)


def send_template_email(kind, subject, template, context, to=None, bcc=None):
    text, html = render_email(template, context)
    send_email(kind, subject, text, html, to=to, bcc=bcc)
