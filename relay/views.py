import json
import logging
from functools import wraps

from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from circulation.domain import LibraryRules, display_date
from circulation.services import load_rules
from records.exceptions import RecordStoreError
from records.store import get_record_store

from .mailer import MailDeliveryError, send_email as deliver, send_template_email

logger = logging.getLogger(__name__)

OVERDUE_SUBJECT = 'Library Books Overdue Notice'


class BadRequest(Exception):
    pass


def _payload(request):
    try:
        data = json.loads(request.body or b'{}')
    except (UnicodeDecodeError, ValueError) as exc:
        raise BadRequest('Invalid JSON body') from exc
    if not isinstance(data, dict):
        raise BadRequest('Invalid JSON body')
    return data


def _require(data, *names, message='Missing required email data'):
    missing = [name for name in names if not data.get(name)]
    if missing:
        logger.error("%s: %s", message, ', '.join(missing))
        raise BadRequest(message)
    return [data[name] for name in names]


def _ok(message, **extra):
    return JsonResponse({'success': True, 'message': message, **extra})


def _failed(message, error, status=500, **extra):
    return JsonResponse({'success': False, 'message': message, 'error': str(error), **extra}, status=status)


def relay_endpoint(view):
    """POST-only, CSRF-exempt JSON endpoint; ``BadRequest`` becomes a 400."""

    @csrf_exempt
    @require_POST
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, _payload(request), *args, **kwargs)
        except BadRequest as exc:
            return JsonResponse({'success': False, 'message': str(exc)}, status=400)

    return wrapper


def _overdue_context(record):
    student_email, student_name, books = _require(record, 'studentEmail', 'studentName', 'books')
    try:
        books = [dict(book, due_display=display_date(book.get('dueDate'))) for book in books]
    except (AttributeError, TypeError, ValueError) as exc:
        raise BadRequest('Invalid overdue book data') from exc
    total = record.get('totalFine')
    if total is None:
        total = sum(book.get('fine') or 0 for book in books)
    return student_email, {'student_name': student_name, 'books': books, 'total_fine': total}


@relay_endpoint
def send_email(request, data):
    to, subject = _require(data, 'to', 'subject')
    if not data.get('text') and not data.get('html'):
        raise BadRequest('Missing required email data')
    recipients = to if isinstance(to, list) else [to]
    try:
        deliver('EMAIL', subject, data.get('text', ''), data.get('html'), to=recipients)
    except MailDeliveryError as exc:
        return _failed('Failed to send email', exc)
    return _ok('Email sent successfully')


@relay_endpoint
def send_borrow_notification(request, data):
    student_email, student_name, books = _require(data, 'studentEmail', 'studentName', 'books')
    context = {'student_name': student_name, 'books': books, 'due_date': data.get('dueDate', '')}
    try:
        send_template_email('BORROW', 'Library Book Borrowing Confirmation', 'borrow', context, to=[student_email])
    except MailDeliveryError as exc:
        return _failed('Failed to send borrow notification', exc)
    return _ok('Borrow notification sent successfully')


@relay_endpoint
def send_return_notification(request, data):
    student_email, student_name, books = _require(data, 'studentEmail', 'studentName', 'books')
    context = {
        'student_name': student_name,
        'books': books,
        'return_date': data.get('returnDate', ''),
        'fine_details': data.get('fineDetails'),
    }
    try:
        send_template_email('RETURN', 'Library Book Return Confirmation', 'return', context, to=[student_email])
    except MailDeliveryError as exc:
        return _failed('Failed to send return notification', exc)
    return _ok('Return notification sent successfully')


@relay_endpoint
def send_registration_confirmation(request, data):
    student_email, student_name, details = _require(data, 'studentEmail', 'studentName', 'studentDetails')
    if not isinstance(details, dict):
        raise BadRequest('Missing required email data')
    try:
        rules = load_rules(get_record_store())
    except RecordStoreError as exc:
        logger.warning("Could not load library settings, using defaults: %s", exc)
        rules = LibraryRules()

    context = {
        'student_name': student_name,
        'student_email': student_email,
        'details': details,
        'rules': rules,
        'barcode_url': f"https://barcodeapi.org/api/128/{details.get('studentId', '')}",
    }
    subject = 'Welcome to Library Management System - Registration Confirmation'
    try:
        send_template_email('REGISTRATION', subject, 'registration', context, to=[student_email])
    except MailDeliveryError as exc:
        return _failed('Failed to send registration confirmation', exc)
    return _ok('Registration confirmation sent successfully')


@relay_endpoint
def send_overdue_notification(request, data):
    student_email, context = _overdue_context(data)
    try:
        send_template_email('OVERDUE', OVERDUE_SUBJECT, 'overdue', context, to=[student_email])
    except MailDeliveryError as exc:
        return _failed('Failed to send overdue notification', exc)
    return _ok('Overdue notification sent successfully')


@relay_endpoint
def send_bulk_overdue_notifications(request, data):
    records = data.get('overdueRecords')
    if not isinstance(records, list):
        raise BadRequest('Missing overdue records')

    results = []
    for record in records:
        email = record.get('studentEmail') if isinstance(record, dict) else None
        try:
            student_email, context = _overdue_context(record if isinstance(record, dict) else {})
            send_template_email('OVERDUE', OVERDUE_SUBJECT, 'overdue', context, to=[student_email])
        except (BadRequest, MailDeliveryError) as exc:
            results.append({'studentEmail': email, 'success': False, 'message': str(exc)})
            continue
        results.append({'studentEmail': email, 'success': True, 'message': 'Notification sent successfully'})

    if all(result['success'] for result in results):
        return _ok('All overdue notifications sent successfully', results=results)
    return JsonResponse({'success': False, 'message': 'Some notifications failed to send', 'results': results})


@relay_endpoint
def send_announcement(request, data):
    subject, message, recipient_type = _require(
        data, 'subject', 'message', 'recipientType', message='Missing required announcement data')
    recipients = data.get('recipients')

    if recipient_type in ('all', 'selected') and isinstance(recipients, list):
        addresses = [address for address in recipients if address]
    elif recipient_type == 'single' and isinstance(recipients, str):
        addresses = [recipients]
    else:
        raise BadRequest('Invalid recipient type or recipient data')
    if not addresses:
        raise BadRequest('No valid recipients specified')

    context = {'message': message, 'attachment_url': data.get('attachmentUrl')}
    batch_size = settings.RELAY_ANNOUNCEMENT_BATCH_SIZE
    failed = []
    for start in range(0, len(addresses), batch_size):
        batch = addresses[start:start + batch_size]
        try:
            send_template_email('ANNOUNCEMENT', subject, 'announcement', context, bcc=batch)
        except MailDeliveryError:
            failed.extend(batch)
            continue
        logger.info("Announcement batch %d sent to %d recipients", start // batch_size + 1, len(batch))

    if not failed:
        return _ok(f'Announcement sent successfully to {len(addresses)} recipients')
    if len(failed) < len(addresses):
        return _ok(f'Announcement sent to {len(addresses) - len(failed)} recipients with {len(failed)} failures',
                   failedRecipients=failed)
    return _failed('Failed to send announcement', 'Failed to send announcement to any recipients')


@require_GET
def test_email(request):
    recipient = settings.RELAY_TEST_RECIPIENT or settings.DEFAULT_FROM_EMAIL
    text = 'This is a test email to verify the email sending functionality is working.'
    try:
        deliver('TEST', 'Email System Test', text, f'<p>{text}</p>', to=[recipient])
    except MailDeliveryError as exc:
        return _failed(f'Failed to send test email: {exc}', exc)
    return _ok('Test email sent successfully')
