import pytest

from records.store import MemoryRecordStore, reset_record_store

NOW = '2024-01-04T00:00:00.000Z'


def library_data():
    return {
        'librarySettings': {'borrowDurationDays': 7, 'finePerDay': 5, 'maxBooksPerStudent': 3},
        'students': {
            'stu1': {'name': 'Ana Cruz', 'course': 'BSIT', 'email': 'ana@example.com', 'studentId': '2024-0001'},
            'stu2': {'name': 'Ben Reyes', 'course': 'BSED', 'email': 'ben@example.com', 'studentId': '2024-0002'},
            'stu3': {'name': 'Carla Diaz', 'course': 'BSN', 'email': '', 'studentId': '2024-0003'},
        },
        'books': {
            'book1': {'title': 'Noli Me Tangere', 'author': 'Jose Rizal', 'accessionNumber': 'ACC-0001',
                      'available': 2},
            'book2': {'title': 'El Filibusterismo', 'author': 'Jose Rizal', 'accessionNumber': 'ACC-0002',
                      'available': 1},
            'book3': {'title': 'Florante at Laura', 'author': 'Francisco Balagtas', 'accessionNumber': 'ACC-0003',
                      'available': 0},
        },
    }


@pytest.fixture
def store():
    store = MemoryRecordStore(library_data())
    reset_record_store(store)
    yield store
    reset_record_store()


@pytest.fixture
def add_loan(store):
    """Write a loan straight into ``borrows`` and return its key."""

    def add(key, student='stu1', book='book1', due='2024-01-01T00:00:00.000Z', returned_at=None, **fields):
        record = {
            'bookId': book,
            'studentId': student,
            'borrowDate': '2023-12-25T00:00:00.000Z',
            'dueDate': due,
            'returned': returned_at is not None,
            'status': 'returned' if returned_at else 'borrowed',
        }
        if returned_at:
            record['returnDate'] = returned_at
        record.update(fields)
        store.set(f'borrows/{key}', record)
        return key

    return add


@pytest.fixture(autouse=True)
def in_app_notifications(settings):
    settings.NOTIFICATION_CHANNELS = ['inapp']
