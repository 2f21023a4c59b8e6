from django.core.management.base import BaseCommand, CommandError

from circulation.domain import parse_timestamp
from circulation.services import FineReconciler
from notifications.emitter import NotificationEmitter
from records.exceptions import RecordStoreError
from records.store import get_record_store


class Command(BaseCommand):
    help = 'Repairs loan statuses and creates or updates overdue fines (the daily check).'

    def add_arguments(self, parser):
        parser.add_argument('--notify', action='store_true',
                            help='Send overdue notices to every student with overdue books.')
        parser.add_argument('--now', type=str, default=None,
                            help='Run as of this ISO 8601 timestamp instead of the current time.')

    def handle(self, *args, **options):
        try:
            now = parse_timestamp(options['now'])
        except ValueError as exc:
            raise CommandError(str(exc))

        store = get_record_store()
        try:
            result = FineReconciler(store).run(now)
        except RecordStoreError as exc:
            raise CommandError(f"Failed to calculate fines: {exc}")

        self.stdout.write(self.style.SUCCESS(f"Processed {result.touched} record(s)."))
        self.stdout.write(f"Loan statuses repaired: {result.status_repairs}")
        self.stdout.write(f"Fines created: {len(result.created)}")
        self.stdout.write(f"Fines updated: {len(result.updated)}")
        if result.skipped:
            self.stdout.write(self.style.WARNING(
                f"Skipped {len(result.skipped)} loan(s) with bad dates or a missing student or book: "
                f"{', '.join(result.skipped)}"
            ))

        if options['notify']:
            results = NotificationEmitter(store).notify_all_overdue(now=now)
            sent = sum(1 for delivery in results if delivery.success)
            style = self.style.SUCCESS if sent == len(results) else self.style.WARNING
            self.stdout.write(style(f"Overdue notices sent: {sent} of {len(results)}"))
