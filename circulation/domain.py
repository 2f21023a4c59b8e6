"""Typed views over the raw records kept in the record store.

Records are stored with camelCase keys (``dueDate``, ``fineAmount`` ...).
Each dataclass here knows how to read itself from a raw record and how to
write the fields it owns back out.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from enum import Enum
from typing import Optional

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime


class LoanStatus(str, Enum):
    BORROWED = 'borrowed'
    OVERDUE = 'overdue'
    RETURNED = 'returned'


class LoanCondition(str, Enum):
    GOOD = 'good'
    BAD = 'bad'
    DAMAGED = 'damaged'


def parse_timestamp(value):
    """Parse an ISO 8601 string into an aware UTC datetime.

    Accepts the ``2024-01-01T00:00:00.000Z`` form written by browsers, explicit
    offsets, naive timestamps (taken as UTC) and bare dates (midnight UTC).
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = parse_datetime(str(value))
        if parsed is None:
            day = parse_date(str(value))
            if day is None:
                raise ValueError(f"Invalid timestamp: {value!r}")
            parsed = datetime(day.year, day.month, day.day)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt_timezone.utc)
    return parsed.astimezone(dt_timezone.utc)


def format_timestamp(value):
    """Format an aware datetime the way the record store keeps timestamps."""
    value = parse_timestamp(value)
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + f"{value.microsecond // 1000:03d}Z"


def display_date(value):
    """Local calendar date for messages, e.g. 'Jan 04, 2024'."""
    parsed = parse_timestamp(value)
    return timezone.localtime(parsed).strftime('%b %d, %Y') if parsed else ''


@dataclass(frozen=True)
class LibraryRules:
    """The ``librarySettings`` singleton, read once per operation."""

    borrow_duration_days: int = 7
    fine_per_day: float = 5
    max_books_per_student: int = 3

    @classmethod
    def from_record(cls, data):
        data = data or {}
        return cls(
            borrow_duration_days=data.get('borrowDurationDays', cls.borrow_duration_days),
            fine_per_day=data.get('finePerDay', cls.fine_per_day),
            max_books_per_student=data.get('maxBooksPerStudent', cls.max_books_per_student),
        )

    def to_record(self):
        return {
            'borrowDurationDays': self.borrow_duration_days,
            'finePerDay': self.fine_per_day,
            'maxBooksPerStudent': self.max_books_per_student,
        }


@dataclass
class Student:
    key: str
    name: str = ''
    course: str = ''
    email: str = ''
    student_id: str = ''

    @classmethod
    def from_record(cls, key, data):
        return cls(
            key=key,
            name=data.get('name', ''),
            course=data.get('course', ''),
            email=data.get('email', ''),
            student_id=data.get('studentId', key),
        )


@dataclass
class Book:
    key: str
    title: str = ''
    author: str = ''
    accession_number: str = ''
    available: int = 0

    @classmethod
    def from_record(cls, key, data):
        return cls(
            key=key,
            title=data.get('title', ''),
            author=data.get('author', ''),
            accession_number=data.get('accessionNumber', ''),
            available=data.get('available', 0) or 0,
        )

    def summary(self):
        return {'title': self.title, 'author': self.author, 'accessionNumber': self.accession_number}


@dataclass
class Loan:
    key: str
    book_id: str
    student_id: str
    borrow_date: Optional[str] = None
    due_date: Optional[str] = None
    return_date: Optional[str] = None
    returned: bool = False
    status: str = LoanStatus.BORROWED.value
    days_overdue: Optional[int] = None
    condition: Optional[str] = None

    @classmethod
    def from_record(cls, key, data):
        return cls(
            key=key,
            book_id=data.get('bookId', ''),
            student_id=data.get('studentId', ''),
            borrow_date=data.get('borrowDate'),
            due_date=data.get('dueDate'),
            return_date=data.get('returnDate'),
            returned=bool(data.get('returned', False)),
            status=data.get('status', LoanStatus.BORROWED.value),
            days_overdue=data.get('daysOverdue'),
            condition=data.get('condition'),
        )

    def to_record(self):
        record = {
            'bookId': self.book_id,
            'studentId': self.student_id,
            'borrowDate': self.borrow_date,
            'dueDate': self.due_date,
            'returned': self.returned,
            'status': self.status,
        }
        optional = {
            'returnDate': self.return_date,
            'daysOverdue': self.days_overdue,
            'condition': self.condition,
        }
        record.update({name: value for name, value in optional.items() if value is not None})
        return record

    @property
    def is_closed(self):
        return self.returned or bool(self.return_date)

    @property
    def due_at(self):
        return parse_timestamp(self.due_date)

    @property
    def returned_at(self):
        return parse_timestamp(self.return_date)


@dataclass
class Fine:
    key: Optional[str]
    student_id: str
    book_id: str
    due_date: str
    student_name: str = ''
    course: str = ''
    book_title: str = ''
    days_overdue: int = 0
    fine_amount: float = 0
    paid: bool = False
    return_date: Optional[str] = None
    payment_date: Optional[str] = None
    receipt_number: Optional[str] = None
    created_at: Optional[str] = None
    extra: dict = field(default_factory=dict, repr=False)

    FIELDS = {
        'studentId': 'student_id',
        'bookId': 'book_id',
        'dueDate': 'due_date',
        'studentName': 'student_name',
        'course': 'course',
        'bookTitle': 'book_title',
        'daysOverdue': 'days_overdue',
        'fineAmount': 'fine_amount',
        'paid': 'paid',
        'returnDate': 'return_date',
        'paymentDate': 'payment_date',
        'receiptNumber': 'receipt_number',
        'createdAt': 'created_at',
    }

    @classmethod
    def from_record(cls, key, data):
        values = {attr: data[name] for name, attr in cls.FIELDS.items() if name in data}
        values.setdefault('student_id', '')
        values.setdefault('book_id', '')
        values.setdefault('due_date', '')
        values['paid'] = bool(values.get('paid', False))
        extra = {name: value for name, value in data.items() if name not in cls.FIELDS}
        return cls(key=key, extra=extra, **values)

    def to_record(self):
        record = dict(self.extra)
        for name, attr in self.FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                record[name] = value
        return record

    @property
    def natural_key(self):
        """(studentId, bookId, dueDate): which loan this fine belongs to."""
        return (self.student_id, self.book_id, self.due_date)
