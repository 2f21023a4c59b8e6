"""Turns circulation events into messages for students and staff.

Sending is best effort: a failed delivery is logged and reported in the
returned :class:`DeliveryResult`, never raised into the code that changed
the loan or fine records.
"""

import logging

from django.template.loader import render_to_string

from circulation.domain import Book, Loan, display_date
from circulation.services import OverdueEntry, OverdueStudent, RecordCache, load_fines, overdue_by_student
from records.exceptions import RecordStoreError
from records.store import get_record_store

from .channels import DeliveryResult, InAppChannel, Notification, get_channel
from .exceptions import NotificationError

logger = logging.getLogger(__name__)

OVERDUE_SUBJECT = 'Library Books Overdue Notice'


class NotificationEmitter:
    def __init__(self, store=None, channel=None, activity=None):
        self.store = store or get_record_store()
        self.channel = channel or get_channel(self.store)
        self.activity = activity or InAppChannel(self.store)

    def deliver(self, notification):
        try:
            result = self.channel.send(notification)
        except NotificationError as exc:
            logger.warning("Could not send %s notification to %s: %s",
                           notification.kind, notification.recipient or 'staff', exc)
            return DeliveryResult(False, str(exc), self.channel.name, exc.details)
        logger.info("Sent %s notification to %s via %s", notification.kind, notification.recipient, result.channel)
        return result

    def record_activity(self, title, message, level='info', link=None):
        notification = Notification('activity', '', title, message, level=level, link=link)
        try:
            return self.activity.send(notification)
        except NotificationError as exc:
            logger.warning("Could not record activity '%s': %s", title, exc)
            return DeliveryResult(False, str(exc), self.activity.name)

    def overdue_notice(self, overdue):
        """Build the overdue notice for one student's overdue books."""
        books = []
        for entry in overdue.entries:
            book = entry.as_payload()
            book['due_display'] = display_date(entry.loan.due_date)
            books.append(book)
        total = overdue.total_fine
        message = render_to_string('notifications/overdue_notice.txt', {
            'student_name': overdue.student.name,
            'books': books,
            'total_fine': total,
        })
        data = {
            'studentEmail': overdue.student.email,
            'studentName': overdue.student.name,
            'books': [entry.as_payload() for entry in overdue.entries],
            'totalFine': total,
        }
        return Notification('overdue', overdue.student.email, OVERDUE_SUBJECT, message.strip(), data, level='warning')

    def send_overdue(self, overdue):
        if not overdue.student.email:
            logger.warning("No email address for %s; overdue notice not sent", overdue.student.name)
            return DeliveryResult(False, 'Student has no email address', self.channel.name)
        return self.deliver(self.overdue_notice(overdue))

    def notify_new_fines(self, fines):
        """One notice per student for fines created by a reconciliation pass.

        Fines for loans already returned late are left out; the borrower got
        them on the return receipt.
        """
        cache = RecordCache(self.store)
        grouped = {}
        for fine in fines:
            if fine.return_date:
                continue
            student = cache.student(fine.student_id)
            if student is None:
                logger.warning("Fine %s refers to unknown student %s", fine.key, fine.student_id)
                continue
            book = cache.book(fine.book_id) or Book(fine.book_id, title=fine.book_title)
            loan = Loan(key=None, book_id=fine.book_id, student_id=fine.student_id, due_date=fine.due_date)
            entry = OverdueEntry(loan, book, fine.days_overdue, fine.fine_amount)
            grouped.setdefault(fine.student_id, OverdueStudent(student)).entries.append(entry)
        return [self.send_overdue(overdue) for overdue in grouped.values()]

    def notify_student(self, student_id, rules=None, now=None):
        """On-demand notice of everything a student currently has overdue."""
        groups = overdue_by_student(self.store, rules, now, student_id=student_id)
        if not groups:
            return None
        return self.send_overdue(groups[0])

    def notify_all_overdue(self, rules=None, now=None):
        results = []
        for overdue in overdue_by_student(self.store, rules, now):
            results.append(self.send_overdue(overdue))
            count = len(overdue.entries)
            books = '1 book' if count == 1 else f'{count} books'
            self.record_activity('Overdue Books', f'{overdue.student.name} has {books} overdue', level='warning')
        logger.info("Found %d students with overdue books", len(results))
        return results

    def notify_borrow(self, student, books, due_date):
        data = {
            'studentEmail': student.email,
            'studentName': student.name,
            'books': [book.summary() for book in books],
            'dueDate': display_date(due_date),
        }
        lines = '\n'.join(f"- {book.title} by {book.author} (Accession: {book.accession_number})" for book in books)
        message = f"Books borrowed:\n{lines}\n\nDue Date: {data['dueDate']}\n\n" \
                  "Please return these items by the due date to avoid overdue fines."
        for book in books:
            self.record_activity('Book Borrowed', f'The book "{book.title}" was successfully borrowed by {student.name}.',
                                 level='success', link='/admin/borrow-return')
        if not student.email:
            return DeliveryResult(False, 'Student has no email address', self.channel.name)
        return self.deliver(Notification('borrow', student.email, 'Library Book Borrowing Confirmation', message, data))

    def fines_paid(self, loans):
        """Whether every one of ``loans`` has a fine record and all are paid."""
        keys = {(loan.student_id, loan.book_id, loan.due_date) for loan in loans}
        try:
            fines = [fine for fine in load_fines(self.store) if fine.natural_key in keys]
        except RecordStoreError as exc:
            logger.warning("Could not look up fines for return receipt: %s", exc)
            return False
        return keys <= {fine.natural_key for fine in fines} and all(fine.paid for fine in fines)

    def notify_return(self, student, returned, return_date):
        """``returned`` holds ``(loan, book, days_overdue, fine)`` tuples."""
        books = []
        late = []
        total = 0
        for loan, book, days_overdue, fine in returned:
            summary = book.summary() if book else {'title': loan.book_id, 'author': '', 'accessionNumber': ''}
            summary['condition'] = loan.condition
            if days_overdue:
                summary['daysOverdue'] = days_overdue
                summary['fine'] = fine
                total += fine
                late.append(loan)
            books.append(summary)
            self.record_activity('Book Returned',
                                 f'The book "{summary["title"]}" was successfully returned by {student.name}.',
                                 level='success', link='/admin/borrow-return')
        data = {
            'studentEmail': student.email,
            'studentName': student.name,
            'books': books,
            'returnDate': display_date(return_date),
        }
        if total:
            data['fineDetails'] = {'totalAmount': total, 'isPaid': self.fines_paid(late)}
        message = '\n'.join(f"- {book['title']} ({book['condition']})" for book in books)
        if not student.email:
            return DeliveryResult(False, 'Student has no email address', self.channel.name)
        return self.deliver(Notification('return', student.email, 'Library Book Return Confirmation',
                                         f"Books returned on {data['returnDate']}:\n{message}", data))

