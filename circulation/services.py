import logging
import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

from django.core.exceptions import ValidationError
from django.utils import timezone

from notifications.channels import InAppChannel, Notification
from notifications.exceptions import NotificationError
from records.store import get_record_store, join_path

from .domain import (
    Book,
    Fine,
    LibraryRules,
    Loan,
    LoanCondition,
    LoanStatus,
    Student,
    format_timestamp,
    parse_timestamp,
)
from .fines import accrue, classify

logger = logging.getLogger(__name__)


def load_rules(store):
    return LibraryRules.from_record(store.get('librarySettings'))


def load_loans(store):
    return [Loan.from_record(key, data) for key, data in (store.get('borrows') or {}).items()]


def load_fines(store):
    return [Fine.from_record(key, data) for key, data in (store.get('fines') or {}).items()]


class RecordCache:
    """Students and books fetched one at a time, at most once per operation."""

    def __init__(self, store):
        self.store = store
        self._students = {}
        self._books = {}

    def student(self, key):
        if key not in self._students:
            data = self.store.get(join_path('students', key)) if key else None
            self._students[key] = Student.from_record(key, data) if data else None
        return self._students[key]

    def book(self, key):
        if key not in self._books:
            data = self.store.get(join_path('books', key)) if key else None
            self._books[key] = Book.from_record(key, data) if data else None
        return self._books[key]


@dataclass
class ReconciliationResult:
    touched: int = 0
    status_repairs: int = 0
    created: List[Fine] = field(default_factory=list)
    updated: List[Fine] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class FineReconciler:
    """Re-derives loan status and fine amounts from the loans and the clock.

    A pass runs in three steps:

    1. every loan whose stored ``status`` disagrees with :func:`classify`, or
       that has a ``returnDate`` but ``returned`` unset, is repaired in one
       multi-path update;
    2. every overdue or late-returned loan is accrued, and its fine is found by
       natural key ``(studentId, bookId, dueDate)`` or staged for creation;
    3. the staged patches are written in one multi-path update and the new
       fines are appended.

    The steps are not one transaction.  A pass that stops between them is
    finished by the next one, since fines are looked up by natural key.
    """

    def __init__(self, store=None, rules=None, activity=None):
        self.store = store or get_record_store()
        self.rules = rules
        self.activity = activity if activity is not None else InAppChannel(self.store)

    def reconcile(self, now=None):
        """Run one pass and return the number of records created or modified."""
        return self.run(now).touched

    def run(self, now=None):
        now = parse_timestamp(now or timezone.now())
        rules = self.rules or load_rules(self.store)
        result = ReconciliationResult()

        loans = load_loans(self.store)
        if not loans:
            return result
        fines = load_fines(self.store)

        assessed = self._assess(loans, now, rules, result)
        touched = set()
        touched.update(self._repair_statuses(assessed, result))

        cache = RecordCache(self.store)
        index = self._index_fines(fines)
        patches = {}
        new_fines = []

        for loan, _, accrual in assessed:
            if accrual is None or accrual.days_overdue == 0:
                continue

            student = cache.student(loan.student_id)
            book = cache.book(loan.book_id)
            if student is None or book is None:
                missing = 'Student' if student is None else 'Book'
                logger.warning("%s missing for loan %s (student %s, book %s); no fine recorded",
                               missing, loan.key, loan.student_id, loan.book_id)
                result.skipped.append(loan.key)
                continue

            natural_key = (loan.student_id, loan.book_id, loan.due_date)
            fine = index.get(natural_key)
            if fine is None:
                fine = Fine(
                    key=None,
                    student_id=loan.student_id,
                    student_name=student.name,
                    course=student.course,
                    book_id=loan.book_id,
                    book_title=book.title,
                    due_date=loan.due_date,
                    return_date=loan.return_date,
                    days_overdue=accrual.days_overdue,
                    fine_amount=accrual.fine_amount,
                    paid=False,
                    created_at=format_timestamp(now),
                )
                index[natural_key] = fine
                new_fines.append(fine)
                logger.info("Creating fine for %s, book %s: %s", student.name, book.title, accrual.fine_amount)
            elif fine.fine_amount != accrual.fine_amount or (loan.return_date and not fine.return_date):
                fine.days_overdue = accrual.days_overdue
                fine.fine_amount = accrual.fine_amount
                if loan.return_date and not fine.return_date:
                    fine.return_date = loan.return_date
                if fine.key is not None:
                    base = join_path('fines', fine.key)
                    patches[join_path(base, 'daysOverdue')] = fine.days_overdue
                    patches[join_path(base, 'fineAmount')] = fine.fine_amount
                    if fine.return_date:
                        patches[join_path(base, 'returnDate')] = fine.return_date
                    touched.add(base)
                    result.updated.append(fine)
                    logger.info("Updating fine %s to amount %s", fine.key, fine.fine_amount)

            if loan.days_overdue != accrual.days_overdue:
                patches[join_path('borrows', loan.key, 'daysOverdue')] = accrual.days_overdue
                touched.add(join_path('borrows', loan.key))

        if patches:
            logger.info("Updating %d fields on %d records", len(patches), len(touched))
            self.store.update(patches)

        for fine in new_fines:
            fine.key = self.store.push('fines', fine.to_record())
            result.created.append(fine)
            self._record_activity(fine)

        result.touched = len(touched) + len(new_fines)
        return result

    @staticmethod
    def _assess(loans, now, rules, result):
        """Classify every loan and accrue the overdue and late-returned ones.

        Returns ``(loan, status, accrual)`` triples; ``accrual`` is ``None``
        for loans that owe nothing.  A loan whose dates cannot be parsed is
        logged and added to ``result.skipped``.
        """
        assessed = []
        for loan in loans:
            try:
                status = classify(loan, now)
            except ValueError as exc:
                logger.warning("Skipping loan %s: %s", loan.key, exc)
                result.skipped.append(loan.key)
                continue

            accrual = None
            try:
                late_return = (
                    status == LoanStatus.RETURNED
                    and bool(loan.return_date and loan.due_date)
                    and loan.returned_at > loan.due_at
                )
                if status == LoanStatus.OVERDUE or late_return:
                    accrual = accrue(loan, rules.fine_per_day, now)
            except ValueError as exc:
                logger.warning("No fine for loan %s: %s", loan.key, exc)
                result.skipped.append(loan.key)
            assessed.append((loan, status, accrual))
        return assessed

    def _repair_statuses(self, assessed, result):
        repairs = {}
        for loan, status, _ in assessed:
            base = join_path('borrows', loan.key)
            if loan.status != status.value:
                repairs[join_path(base, 'status')] = status.value
                loan.status = status.value
            if loan.return_date and not loan.returned:
                repairs[join_path(base, 'returned')] = True
                loan.returned = True
        repaired = {path.rsplit('/', 1)[0] for path in repairs}
        if repairs:
            logger.info("Updating %d loans to their current status", len(repaired))
            self.store.update(repairs)
        result.status_repairs = len(repaired)
        return repaired

    @staticmethod
    def _index_fines(fines):
        index = {}
        for fine in sorted(fines, key=lambda f: f.key):
            if fine.natural_key in index:
                logger.warning("Duplicate fines %s and %s for student %s, book %s, due %s",
                               index[fine.natural_key].key, fine.key, *fine.natural_key)
                continue
            index[fine.natural_key] = fine
        return index

    def _record_activity(self, fine):
        notification = Notification(
            kind='activity',
            recipient='',
            subject='Fine Added',
            message=f"A fine of {fine.fine_amount:.2f} was added for {fine.student_name}.",
            level='success',
            link='/admin/fines',
        )
        try:
            self.activity.send(notification)
        except NotificationError as exc:
            logger.warning("Could not record fine activity for %s: %s", fine.key, exc)


def reconcile_fines(store=None, rules=None, now=None):
    return FineReconciler(store, rules).reconcile(now)


@dataclass
class OverdueEntry:
    loan: Loan
    book: Book
    days_overdue: int
    fine: float

    def as_payload(self):
        payload = self.book.summary()
        payload.update({
            'dueDate': self.loan.due_date,
            'daysOverdue': self.days_overdue,
            'fine': self.fine,
        })
        return payload


@dataclass
class OverdueStudent:
    student: Student
    entries: List[OverdueEntry] = field(default_factory=list)

    @property
    def total_fine(self):
        return sum(entry.fine for entry in self.entries)


def overdue_by_student(store=None, rules=None, now=None, student_id=None):
    """Open overdue loans grouped by borrower, with the fine accrued so far."""
    store = store or get_record_store()
    rules = rules or load_rules(store)
    now = parse_timestamp(now or timezone.now())
    cache = RecordCache(store)

    grouped = {}
    for loan in load_loans(store):
        if student_id is not None and loan.student_id != student_id:
            continue
        try:
            if classify(loan, now) != LoanStatus.OVERDUE:
                continue
            accrual = accrue(loan, rules.fine_per_day, now)
        except ValueError as exc:
            logger.warning("Skipping loan %s: %s", loan.key, exc)
            continue
        student = cache.student(loan.student_id)
        book = cache.book(loan.book_id)
        if student is None or book is None:
            logger.warning("Skipping overdue loan %s with missing student or book", loan.key)
            continue
        group = grouped.setdefault(loan.student_id, OverdueStudent(student))
        group.entries.append(OverdueEntry(loan, book, accrual.days_overdue, accrual.fine_amount))

    for group in grouped.values():
        group.entries.sort(key=lambda entry: entry.loan.due_at)
    return sorted(grouped.values(), key=lambda group: group.student.name)


def borrow_books(store, student_id, book_ids, rules=None, now=None):
    """Open one loan per book for ``student_id`` and take the copies off the shelf."""
    rules = rules or load_rules(store)
    now = parse_timestamp(now or timezone.now())
    cache = RecordCache(store)

    if not book_ids:
        raise ValidationError("Select at least one book to borrow.")
    student = cache.student(student_id)
    if student is None:
        raise ValidationError(f"Student '{student_id}' not found.")

    open_loans = [loan for loan in load_loans(store) if loan.student_id == student_id and not loan.is_closed]
    if len(open_loans) + len(book_ids) > rules.max_books_per_student:
        raise ValidationError(
            f"Cannot borrow more than {rules.max_books_per_student} books at a time "
            f"(including currently borrowed books)."
        )

    requested = {}
    for book_id in book_ids:
        requested[book_id] = requested.get(book_id, 0) + 1
    books = []
    for book_id, count in requested.items():
        book = cache.book(book_id)
        if book is None:
            raise ValidationError(f"Book '{book_id}' not found.")
        if book.available < count:
            raise ValidationError(f"Cannot issue '{book.title}' - no copies available.")
        books.append(book)

    due = now + timedelta(days=rules.borrow_duration_days)
    loans = []
    updates = {}
    for book_id in book_ids:
        loan = Loan(
            key=store.new_key(),
            book_id=book_id,
            student_id=student_id,
            borrow_date=format_timestamp(now),
            due_date=format_timestamp(due),
            returned=False,
            status=LoanStatus.BORROWED.value,
        )
        loans.append(loan)
        updates[join_path('borrows', loan.key)] = loan.to_record()
    for book in books:
        updates[join_path('books', book.key, 'available')] = book.available - requested[book.key]

    store.update(updates)
    logger.info("Issued %d book(s) to %s, due %s", len(loans), student.name, loans[0].due_date)
    return student, [cache.book(loan.book_id) for loan in loans], loans


def return_loans(store, loan_ids, conditions=None, rules=None, now=None):
    """Close the given loans; returns ``(loan, book, days_overdue, fine)`` tuples."""
    rules = rules or load_rules(store)
    now = parse_timestamp(now or timezone.now())
    conditions = conditions or {}
    cache = RecordCache(store)

    if not loan_ids:
        raise ValidationError("Select at least one loan to return.")

    loans = []
    for loan_id in dict.fromkeys(loan_ids):
        data = store.get(join_path('borrows', loan_id))
        if not data:
            raise ValidationError(f"Loan '{loan_id}' not found.")
        loan = Loan.from_record(loan_id, data)
        if loan.is_closed:
            raise ValidationError(f"Loan '{loan_id}' is already returned.")
        condition = conditions.get(loan_id, LoanCondition.GOOD.value)
        if condition not in {choice.value for choice in LoanCondition}:
            raise ValidationError(f"Unknown book condition '{condition}'.")
        loan.condition = condition
        loans.append(loan)

    return_date = format_timestamp(now)
    updates = {}
    returned = []
    restocked = {}
    for loan in loans:
        loan.returned = True
        loan.return_date = return_date
        loan.status = LoanStatus.RETURNED.value
        accrual = accrue(loan, rules.fine_per_day, now)

        base = join_path('borrows', loan.key)
        updates[join_path(base, 'returned')] = True
        updates[join_path(base, 'returnDate')] = return_date
        updates[join_path(base, 'status')] = loan.status
        updates[join_path(base, 'condition')] = loan.condition
        if accrual.days_overdue:
            loan.days_overdue = accrual.days_overdue
            updates[join_path(base, 'daysOverdue')] = accrual.days_overdue

        book = cache.book(loan.book_id)
        if book is not None:
            restocked[book.key] = restocked.get(book.key, book.available) + 1
        returned.append((loan, book, accrual.days_overdue, accrual.fine_amount))

    for book_key, available in restocked.items():
        updates[join_path('books', book_key, 'available')] = available
    store.update(updates)
    logger.info("Returned %d loan(s)", len(returned))
    return returned


def generate_receipt_number(now=None):
    now = timezone.localtime(parse_timestamp(now or timezone.now()))
    return f"FP-{now:%y%m%d}-{random.randrange(1000):03d}"


def pay_fine(store, fine_id, receipt_number=None, now=None):
    data = store.get(join_path('fines', fine_id))
    if not data:
        raise ValidationError(f"Fine '{fine_id}' not found.")
    fine = Fine.from_record(fine_id, data)
    if fine.paid:
        raise ValidationError(f"Fine '{fine_id}' is already paid (receipt {fine.receipt_number}).")

    now = parse_timestamp(now or timezone.now())
    fine.paid = True
    fine.payment_date = format_timestamp(now)
    fine.receipt_number = receipt_number or generate_receipt_number(now)
    base = join_path('fines', fine_id)
    store.update({
        join_path(base, 'paid'): True,
        join_path(base, 'paymentDate'): fine.payment_date,
        join_path(base, 'receiptNumber'): fine.receipt_number,
    })
    logger.info("Fine %s paid, receipt %s", fine_id, fine.receipt_number)
    return fine


def student_total_fines(store, student_id):
    return sum(fine.fine_amount for fine in load_fines(store) if fine.student_id == student_id and not fine.paid)


def has_unpaid_fines(store, student_id):
    return student_total_fines(store, student_id) > 0
