import json
import logging
from functools import wraps

from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.http import require_GET, require_POST

from notifications.emitter import NotificationEmitter
from records.exceptions import RecordStoreError
from records.store import get_record_store

from .services import (
    FineReconciler,
    RecordCache,
    borrow_books,
    has_unpaid_fines,
    overdue_by_student,
    pay_fine as settle_fine,
    return_loans,
    student_total_fines,
)

logger = logging.getLogger(__name__)


def json_view(view):
    """Map rule violations to 400 and record store failures to 503."""

    @wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except ValidationError as exc:
            return JsonResponse({'success': False, 'message': ' '.join(exc.messages)}, status=400)
        except RecordStoreError as exc:
            logger.error("Record store unavailable: %s", exc)
            return JsonResponse({'success': False, 'message': 'Record store unavailable', 'error': str(exc)},
                                status=503)

    return wrapper


def _body(request):
    try:
        data = json.loads(request.body or b'{}')
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Invalid JSON body.")
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON body.")
    return data


def _delivery(result):
    if result is None:
        return None
    return {'success': result.success, 'message': result.message, 'channel': result.channel}


def _overdue_group(group):
    return {
        'studentId': group.student.key,
        'studentName': group.student.name,
        'studentEmail': group.student.email,
        'course': group.student.course,
        'books': [entry.as_payload() for entry in group.entries],
        'totalFine': group.total_fine,
    }


@login_required
@require_POST
def reconcile(request):
    store = get_record_store()
    try:
        result = FineReconciler(store).run()
    except RecordStoreError as exc:
        logger.error("Error calculating fines: %s", exc)
        return JsonResponse({'success': False, 'message': 'Failed to calculate fines', 'error': str(exc)},
                            status=503)

    notices = []
    if request.GET.get('notify') and result.created:
        notices = [_delivery(r) for r in NotificationEmitter(store).notify_new_fines(result.created)]
    return JsonResponse({
        'success': True,
        'processed': result.touched,
        'statusRepairs': result.status_repairs,
        'created': [fine.key for fine in result.created],
        'updated': [fine.key for fine in result.updated],
        'skipped': result.skipped,
        'notifications': notices,
    })


@login_required
@require_GET
@json_view
def overdue_report(request):
    store = get_record_store()
    now = timezone.now()
    try:
        FineReconciler(store).run(now)
    except RecordStoreError as exc:
        logger.error("Error calculating fines: %s", exc)
        return JsonResponse({'success': False, 'message': 'Failed to calculate fines', 'error': str(exc)},
                            status=503)

    groups = overdue_by_student(store, now=now)
    return JsonResponse({
        'success': True,
        'title': 'Overdue Borrow Report',
        'students': [_overdue_group(group) for group in groups],
        'totalOverdue': sum(len(group.entries) for group in groups),
        'totalFine': sum(group.total_fine for group in groups),
    })


@login_required
@require_POST
@json_view
def borrow(request):
    data = _body(request)
    book_ids = data.get('bookIds') or []
    if not isinstance(book_ids, list):
        raise ValidationError("bookIds must be a list.")

    store = get_record_store()
    student, books, loans = borrow_books(store, data.get('studentId'), book_ids)
    notice = NotificationEmitter(store).notify_borrow(student, books, loans[0].due_date)
    return JsonResponse({
        'success': True,
        'message': f"Issued {len(loans)} book(s) to {student.name}.",
        'loans': [loan.key for loan in loans],
        'dueDate': loans[0].due_date,
        'notification': _delivery(notice),
    }, status=201)


@login_required
@require_POST
@json_view
def return_books(request):
    data = _body(request)
    loan_ids = data.get('loanIds') or []
    conditions = data.get('conditions') or {}
    if not isinstance(loan_ids, list) or not isinstance(conditions, dict):
        raise ValidationError("loanIds must be a list and conditions a mapping.")

    store = get_record_store()
    returned = return_loans(store, loan_ids, conditions)
    fines_created = []
    warning = None
    try:
        fines_created = [fine.key for fine in FineReconciler(store).run().created]
    except RecordStoreError as exc:
        logger.error("Books returned but fines were not recalculated: %s", exc)
        warning = 'Fines could not be recalculated; they will be updated on the next reconciliation.'

    emitter = NotificationEmitter(store)
    cache = RecordCache(store)
    by_student = {}
    for item in returned:
        by_student.setdefault(item[0].student_id, []).append(item)
    notices = []
    for student_id, items in by_student.items():
        student = cache.student(student_id)
        if student is None:
            logger.warning("Returned loans for unknown student %s; no receipt sent", student_id)
            continue
        notices.append(_delivery(emitter.notify_return(student, items, items[0][0].return_date)))

    body = {
        'success': True,
        'message': f"Returned {len(returned)} book(s).",
        'returned': [
            {'loanId': loan.key, 'daysOverdue': days, 'fine': fine}
            for loan, book, days, fine in returned
        ],
        'finesCreated': fines_created,
        'notifications': notices,
    }
    if warning:
        body['warning'] = warning
    return JsonResponse(body)


@login_required
@require_POST
@json_view
def pay_fine(request, fine_id):
    data = _body(request)
    fine = settle_fine(get_record_store(), fine_id, receipt_number=data.get('receiptNumber'))
    return JsonResponse({
        'success': True,
        'message': f"Payment recorded, receipt {fine.receipt_number}.",
        'fine': fine.to_record(),
    })


@login_required
@require_GET
@json_view
def student_fines(request, student_id):
    store = get_record_store()
    return JsonResponse({
        'studentId': student_id,
        'totalFines': student_total_fines(store, student_id),
        'hasUnpaidFines': has_unpaid_fines(store, student_id),
    })


@login_required
@require_POST
@json_view
def notify_student(request, student_id):
    result = NotificationEmitter(get_record_store()).notify_student(student_id)
    if result is None:
        return JsonResponse({'success': True, 'message': 'No overdue books for this student.'})
    return JsonResponse({'success': result.success, 'message': result.message, 'channel': result.channel})


@login_required
@require_POST
@json_view
def notify_overdue(request):
    results = NotificationEmitter(get_record_store()).notify_all_overdue()
    sent = sum(1 for result in results if result.success)
    return JsonResponse({
        'success': sent == len(results),
        'message': f"Sent {sent} of {len(results)} overdue notice(s).",
        'results': [_delivery(result) for result in results],
    })
