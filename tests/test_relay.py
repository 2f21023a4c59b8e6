import smtplib
from unittest import mock

import pytest

from relay.models import OutboundEmail

pytestmark = pytest.mark.django_db

OVERDUE_RECORD = {
    'studentEmail': 'ana@example.com',
    'studentName': 'Ana Cruz',
    'books': [{
        'title': 'Noli Me Tangere',
        'author': 'Jose Rizal',
        'accessionNumber': 'ACC-0001',
        'dueDate': '2024-01-01T00:00:00.000Z',
        'daysOverdue': 3,
        'fine': 15,
    }],
    'totalFine': 15,
}


def post(client, endpoint, payload):
    return client.post(f'/api/{endpoint}', payload, content_type='application/json')


@pytest.fixture
def smtp_down():
    with mock.patch('relay.mailer.EmailMultiAlternatives.send',
                    side_effect=smtplib.SMTPException('535 authentication failed')) as send:
        yield send


def test_send_email(client, mailoutbox):
    response = post(client, 'send-email', {'to': 'ana@example.com', 'subject': 'Hello', 'text': 'Hi Ana'})

    assert response.status_code == 200
    assert response.json() == {'success': True, 'message': 'Email sent successfully'}
    (message,) = mailoutbox
    assert message.to == ['ana@example.com']
    assert message.extra_headers['X-Priority'] == '1'
    log = OutboundEmail.objects.get()
    assert (log.kind, log.status, log.recipients) == ('EMAIL', 'SENT', 'ana@example.com')


def test_invalid_json_is_rejected(client):
    response = client.post('/api/send-email', 'not json', content_type='application/json')
    assert response.status_code == 400
    assert response.json()['success'] is False


def test_get_is_not_allowed(client):
    assert client.get('/api/send-email').status_code == 405


def test_overdue_notification_renders_text_and_html(client, mailoutbox):
    response = post(client, 'send-overdue-notification', OVERDUE_RECORD)

    assert response.status_code == 200
    (message,) = mailoutbox
    assert message.subject == 'Library Books Overdue Notice'
    assert 'Due Date: Jan 01, 2024' in message.body
    assert 'Fine Accumulated: PHP 15.00' in message.body
    html, mimetype = message.alternatives[0]
    assert mimetype == 'text/html'
    assert '<strong>Noli Me Tangere</strong>' in html


def test_send_failure_is_500_and_logged(client, smtp_down):
    response = post(client, 'send-overdue-notification', OVERDUE_RECORD)

    assert response.status_code == 500
    body = response.json()
    assert body['success'] is False
    assert body['message'] == 'Failed to send overdue notification'
    assert '535' in body['error']
    log = OutboundEmail.objects.get()
    assert log.status == 'FAILED'
    assert '535' in log.error


def test_bulk_overdue_reports_each_record(client, mailoutbox):
    records = [OVERDUE_RECORD, dict(OVERDUE_RECORD, studentEmail='ben@example.com', studentName='Ben Reyes')]

    response = post(client, 'send-bulk-overdue-notifications', {'overdueRecords': records})

    body = response.json()
    assert body['success'] is True
    assert [r['studentEmail'] for r in body['results']] == ['ana@example.com', 'ben@example.com']
    assert len(mailoutbox) == 2


def test_bulk_overdue_partial_failure(client, mailoutbox):
    records = [OVERDUE_RECORD, dict(OVERDUE_RECORD, studentEmail='')]

    body = post(client, 'send-bulk-overdue-notifications', {'overdueRecords': records}).json()

    assert body['success'] is False
    assert body['message'] == 'Some notifications failed to send'
    assert [r['success'] for r in body['results']] == [True, False]
    assert len(mailoutbox) == 1


def test_borrow_and_return_confirmations(client, mailoutbox):
    book = {'title': 'Noli Me Tangere', 'author': 'Jose Rizal', 'accessionNumber': 'ACC-0001'}
    post(client, 'send-borrow-notification', {
        'studentEmail': 'ana@example.com', 'studentName': 'Ana Cruz', 'books': [book], 'dueDate': 'Jan 08, 2024',
    })
    post(client, 'send-return-notification', {
        'studentEmail': 'ana@example.com', 'studentName': 'Ana Cruz', 'returnDate': 'Jan 10, 2024',
        'books': [dict(book, condition='good', daysOverdue=2, fine=10)],
        'fineDetails': {'totalAmount': 10, 'isPaid': False},
    })

    borrow, returned = mailoutbox
    assert borrow.subject == 'Library Book Borrowing Confirmation'
    assert '- Noli Me Tangere by Jose Rizal (Accession: ACC-0001)' in borrow.body
    assert 'Due Date: Jan 08, 2024' in borrow.body
    assert returned.subject == 'Library Book Return Confirmation'
    assert 'Outstanding Fine' in returned.body
    assert 'Status: UNPAID' in returned.body


def test_registration_requires_details(client, mailoutbox):
    response = post(client, 'send-registration-confirmation', {'studentEmail': 'ana@example.com'})

    assert response.status_code == 400
    assert response.json() == {'success': False, 'message': 'Missing required email data'}
    assert mailoutbox == []


def test_registration_confirmation(client, mailoutbox, store):
    response = post(client, 'send-registration-confirmation', {
        'studentEmail': 'ana@example.com',
        'studentName': 'Ana Cruz',
        'studentDetails': {'studentId': '2024-0001', 'course': 'BSIT'},
    })

    assert response.status_code == 200
    (message,) = mailoutbox
    assert 'Student ID: 2024-0001' in message.body
    assert 'Address: Not specified' in message.body
    assert 'Borrow up to 3 books at a time' in message.body


def test_announcement_is_sent_in_bcc_batches(client, mailoutbox, settings):
    settings.RELAY_ANNOUNCEMENT_BATCH_SIZE = 2
    recipients = [f'student{n}@example.com' for n in range(5)]

    response = post(client, 'send-announcement', {
        'subject': 'Library closed Friday', 'message': 'The library is closed\non Friday.',
        'recipientType': 'selected', 'recipients': recipients,
    })

    assert response.json() == {'success': True, 'message': 'Announcement sent successfully to 5 recipients'}
    assert [len(message.bcc) for message in mailoutbox] == [2, 2, 1]
    assert all(message.to == [] for message in mailoutbox)
    assert OutboundEmail.objects.filter(kind='ANNOUNCEMENT', status='SENT').count() == 3


def test_announcement_reports_failed_batches(client, settings):
    settings.RELAY_ANNOUNCEMENT_BATCH_SIZE = 2
    recipients = ['a@example.com', 'b@example.com', 'c@example.com']
    failure = smtplib.SMTPException('timeout')

    with mock.patch('relay.mailer.EmailMultiAlternatives.send', side_effect=[1, failure]):
        body = post(client, 'send-announcement', {
            'subject': 'Notice', 'message': 'Hello', 'recipientType': 'all', 'recipients': recipients,
        }).json()

    assert body['success'] is True
    assert body['failedRecipients'] == ['c@example.com']


def test_announcement_total_failure_is_500(client, smtp_down):
    response = post(client, 'send-announcement', {
        'subject': 'Notice', 'message': 'Hello', 'recipientType': 'single', 'recipients': 'a@example.com',
    })

    assert response.status_code == 500
    assert response.json()['message'] == 'Failed to send announcement'


def test_announcement_rejects_bad_recipient_type(client):
    response = post(client, 'send-announcement', {
        'subject': 'Notice', 'message': 'Hello', 'recipientType': 'single', 'recipients': ['a@example.com'],
    })
    assert response.status_code == 400


def test_test_email(client, mailoutbox, settings):
    settings.RELAY_TEST_RECIPIENT = 'librarian@example.com'

    response = client.get('/api/test-email')

    assert response.json()['success'] is True
    assert mailoutbox[0].to == ['librarian@example.com']
    assert OutboundEmail.objects.get().kind == 'TEST'
