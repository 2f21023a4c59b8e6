import pytest

from circulation.domain import LibraryRules
from circulation.services import FineReconciler, reconcile_fines
from notifications.exceptions import NotificationError
from records.exceptions import RecordStoreError
from records.store import MemoryRecordStore

from .conftest import NOW, library_data


def fines_for(store, student='stu1', book='book1'):
    fines = store.get('fines') or {}
    return {key: fine for key, fine in fines.items() if fine['studentId'] == student and fine['bookId'] == book}


class BrokenActivity:
    name = 'broken'

    def send(self, notification):
        raise NotificationError("log unavailable")


class TestReconcile:
    def test_overdue_loan_gets_status_and_fine(self, store, add_loan):
        add_loan('L1')

        touched = reconcile_fines(store, now=NOW)

        loan = store.get('borrows/L1')
        assert loan['status'] == 'overdue'
        assert loan['daysOverdue'] == 3
        (fine,) = fines_for(store).values()
        assert fine['daysOverdue'] == 3
        assert fine['fineAmount'] == 15
        assert fine['paid'] is False
        assert fine['studentName'] == 'Ana Cruz'
        assert fine['course'] == 'BSIT'
        assert fine['bookTitle'] == 'Noli Me Tangere'
        assert fine['dueDate'] == '2024-01-01T00:00:00.000Z'
        # the loan and the new fine
        assert touched == 2

    def test_late_return_is_fined_from_return_date(self, store, add_loan):
        add_loan('L1', returned_at='2024-01-03T12:00:00.000Z')

        reconcile_fines(store, now=NOW)

        assert store.get('borrows/L1/status') == 'returned'
        (fine,) = fines_for(store).values()
        assert fine['daysOverdue'] == 3
        assert fine['fineAmount'] == 15
        assert fine['returnDate'] == '2024-01-03T12:00:00.000Z'

    def test_loan_not_yet_due_gets_no_fine(self, store, add_loan):
        add_loan('L1', due='2024-01-05T00:00:00.000Z')

        assert reconcile_fines(store, now=NOW) == 0
        assert store.get('fines') is None
        assert store.get('borrows/L1/status') == 'borrowed'

    def test_on_time_return_gets_no_fine(self, store, add_loan):
        add_loan('L1', returned_at='2023-12-31T09:00:00.000Z')

        reconcile_fines(store, now=NOW)

        assert store.get('fines') is None

    def test_second_pass_writes_nothing(self, store, add_loan):
        add_loan('L1')
        add_loan('L2', student='stu2', book='book2', returned_at='2024-01-02T10:00:00.000Z')
        add_loan('L3', book='book2', due='2024-01-20T00:00:00.000Z')
        reconcile_fines(store, now=NOW)
        writes = store.writes

        assert reconcile_fines(store, now=NOW) == 0
        assert store.writes == writes

    def test_existing_fine_is_updated_not_duplicated(self, store, add_loan):
        add_loan('L1', status='overdue', daysOverdue=3)
        store.set('fines/F1', {
            'studentId': 'stu1', 'bookId': 'book1', 'dueDate': '2024-01-01T00:00:00.000Z',
            'studentName': 'Ana Cruz', 'course': 'BSIT', 'bookTitle': 'Noli Me Tangere',
            'daysOverdue': 3, 'fineAmount': 15, 'paid': False,
        })

        touched = reconcile_fines(store, now='2024-01-05T00:00:00.000Z')

        assert list(fines_for(store)) == ['F1']
        fine = store.get('fines/F1')
        assert fine['daysOverdue'] == 4
        assert fine['fineAmount'] == 20
        assert store.get('borrows/L1/daysOverdue') == 4
        assert touched == 2

    def test_update_leaves_payment_fields_alone(self, store, add_loan):
        add_loan('L1', returned_at='2024-01-03T12:00:00.000Z')
        store.set('fines/F1', {
            'studentId': 'stu1', 'bookId': 'book1', 'dueDate': '2024-01-01T00:00:00.000Z',
            'daysOverdue': 2, 'fineAmount': 10, 'paid': True,
            'paymentDate': '2024-01-03T13:00:00.000Z', 'receiptNumber': 'FP-240103-042',
        })

        reconcile_fines(store, now=NOW)

        fine = store.get('fines/F1')
        assert fine['fineAmount'] == 15
        assert fine['returnDate'] == '2024-01-03T12:00:00.000Z'
        assert fine['paid'] is True
        assert fine['paymentDate'] == '2024-01-03T13:00:00.000Z'
        assert fine['receiptNumber'] == 'FP-240103-042'

    def test_fine_picks_up_return_date_when_loan_closes(self, store, add_loan):
        add_loan('L1')
        reconcile_fines(store, now='2024-01-03T12:00:00.000Z')
        store.update({
            'borrows/L1/returned': True,
            'borrows/L1/returnDate': '2024-01-03T12:00:00.000Z',
            'borrows/L1/status': 'returned',
        })

        reconcile_fines(store, now='2024-01-09T00:00:00.000Z')

        (fine,) = fines_for(store).values()
        assert fine['returnDate'] == '2024-01-03T12:00:00.000Z'
        assert fine['fineAmount'] == 15

    def test_one_fine_per_natural_key_across_passes(self, store, add_loan):
        add_loan('L1')
        add_loan('L2', student='stu2', book='book2')
        for day in ('02', '03', '05', '08', '08'):
            reconcile_fines(store, now=f'2024-01-{day}T00:00:00.000Z')

        fines = store.get('fines')
        keys = [(fine['studentId'], fine['bookId'], fine['dueDate']) for fine in fines.values()]
        assert len(keys) == len(set(keys)) == 2
        for fine in fines.values():
            assert fine['fineAmount'] == fine['daysOverdue'] * 5

    def test_same_book_borrowed_twice_gets_two_fines(self, store, add_loan):
        add_loan('L1', returned_at='2023-12-28T00:00:00.000Z', due='2023-12-27T00:00:00.000Z')
        add_loan('L2')

        reconcile_fines(store, now=NOW)

        assert len(fines_for(store)) == 2

    def test_existing_duplicates_are_left_alone(self, store, add_loan, caplog):
        add_loan('L1', status='overdue', daysOverdue=3)
        duplicate = {
            'studentId': 'stu1', 'bookId': 'book1', 'dueDate': '2024-01-01T00:00:00.000Z',
            'daysOverdue': 3, 'fineAmount': 15, 'paid': False,
        }
        store.set('fines/F1', duplicate)
        store.set('fines/F2', duplicate)

        reconcile_fines(store, now='2024-01-05T00:00:00.000Z')

        assert sorted(fines_for(store)) == ['F1', 'F2']
        assert store.get('fines/F1/fineAmount') == 20
        assert store.get('fines/F2/fineAmount') == 15
        assert 'Duplicate fines F1 and F2' in caplog.text

    def test_missing_student_skips_fine_but_keeps_status(self, store, add_loan):
        add_loan('L1', student='ghost')
        add_loan('L2', student='stu2', book='book2')

        result = FineReconciler(store).run(NOW)

        assert result.skipped == ['L1']
        assert store.get('borrows/L1/status') == 'overdue'
        assert fines_for(store, student='ghost') == {}
        assert len(fines_for(store, student='stu2', book='book2')) == 1

    def test_unreadable_due_date_skips_only_that_loan(self, store, add_loan, caplog):
        add_loan('L1')
        add_loan('L2', book='book2', due='01/02/2024 5pm')

        result = FineReconciler(store).run(NOW)

        assert result.skipped == ['L2']
        assert store.get('borrows/L1/status') == 'overdue'
        assert len(fines_for(store)) == 1
        assert store.get('borrows/L2/status') == 'borrowed'
        assert fines_for(store, book='book2') == {}
        assert '01/02/2024 5pm' in caplog.text

    def test_unreadable_return_date_keeps_status_repair(self, store, add_loan):
        add_loan('L1', returned_at='last tuesday', status='overdue')

        result = FineReconciler(store).run(NOW)

        assert result.skipped == ['L1']
        assert store.get('borrows/L1/status') == 'returned'
        assert store.get('fines') is None

    def test_return_date_without_returned_flag_is_repaired(self, store, add_loan):
        add_loan('L1', returned=False, returnDate='2023-12-31T00:00:00.000Z', status='returned')

        result = FineReconciler(store).run(NOW)

        assert result.status_repairs == 1
        assert store.get('borrows/L1/returned') is True
        assert store.get('borrows/L1/status') == 'returned'
        assert FineReconciler(store).run(NOW).touched == 0

    def test_stale_returned_status_is_repaired(self, store, add_loan):
        add_loan('L1', returned_at='2023-12-31T00:00:00.000Z', status='overdue')
        add_loan('L2', due='2024-01-10T00:00:00.000Z', status='overdue')

        result = FineReconciler(store).run(NOW)

        assert result.status_repairs == 2
        assert store.get('borrows/L1/status') == 'returned'
        assert store.get('borrows/L2/status') == 'borrowed'

    def test_status_agrees_with_returned_flag_after_pass(self, store, add_loan):
        add_loan('L1')
        add_loan('L2', book='book2', returned_at='2024-01-02T00:00:00.000Z', status='borrowed')
        add_loan('L3', book='book3', due='2024-02-01T00:00:00.000Z')

        reconcile_fines(store, now=NOW)

        for loan in store.get('borrows').values():
            if loan['returned']:
                assert loan['status'] == 'returned'
            if loan['status'] == 'overdue':
                assert loan['returned'] is False
                assert loan['dueDate'] < NOW

    def test_fine_rate_comes_from_library_settings(self, store, add_loan):
        store.set('librarySettings/finePerDay', 10)
        add_loan('L1')

        reconcile_fines(store, now=NOW)

        (fine,) = fines_for(store).values()
        assert fine['fineAmount'] == 30

    def test_missing_library_settings_default_to_five(self, store, add_loan):
        store.remove('librarySettings')
        add_loan('L1')

        reconcile_fines(store, now=NOW)

        (fine,) = fines_for(store).values()
        assert fine['fineAmount'] == 15

    def test_injected_rules_win_over_stored_settings(self, store, add_loan):
        add_loan('L1')

        FineReconciler(store, rules=LibraryRules(fine_per_day=1)).reconcile(NOW)

        (fine,) = fines_for(store).values()
        assert fine['fineAmount'] == 3

    def test_new_fines_are_logged_as_activity(self, store, add_loan):
        add_loan('L1')

        reconcile_fines(store, now=NOW)

        (entry,) = store.get('notifications').values()
        assert entry['title'] == 'Fine Added'
        assert entry['type'] == 'success'
        assert entry['read'] is False
        assert 'Ana Cruz' in entry['message']

    def test_activity_failure_does_not_undo_fine(self, store, add_loan):
        add_loan('L1')

        result = FineReconciler(store, activity=BrokenActivity()).run(NOW)

        assert len(result.created) == 1
        assert len(fines_for(store)) == 1

    def test_store_failure_aborts_the_pass(self):
        class FailingStore(MemoryRecordStore):
            def update(self, values):
                raise RecordStoreError("PATCH / returned 503: unavailable")

        data = library_data()
        data['borrows'] = {'L1': {'bookId': 'book1', 'studentId': 'stu1', 'dueDate': '2024-01-01T00:00:00.000Z',
                                  'returned': False, 'status': 'borrowed'}}
        store = FailingStore(data)

        with pytest.raises(RecordStoreError):
            reconcile_fines(store, now=NOW)
        assert store.get('fines') is None

    def test_empty_store_touches_nothing(self):
        assert reconcile_fines(MemoryRecordStore(), now=NOW) == 0
