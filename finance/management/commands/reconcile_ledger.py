from django.core.management.base import BaseCommand

from finance.services.reconciliation import run_sweep


class Command(BaseCommand):
    help = 'Re-query stuck M-Pesa transactions and repair invoice balances'

    def add_arguments(self, parser):
        parser.add_argument(
            '--min-age-minutes',
            type=int,
            help='Only touch transactions older than this (default: RECONCILIATION_MIN_AGE_MINUTES)',
        )
        parser.add_argument(
            '--batch-size',
            type=int,
            help='Transactions handled per pass (default: RECONCILIATION_BATCH_SIZE)',
        )
        parser.add_argument(
            '--notify-overdue',
            action='store_true',
            help='Email tenants with overdue balances',
        )

    def handle(self, *args, **options):
        self.stdout.write(self.style.MIGRATE_HEADING('Running reconciliation sweep...'))

        report = run_sweep(
            min_age=options['min_age_minutes'],
            batch_size=options['batch_size'],
            notify_overdue=options['notify_overdue'],
        )
        if report is None:
            self.stdout.write(self.style.WARNING('Another sweep is running; nothing done'))
            return

        summary = report.as_dict()
        self.stdout.write(f"  Stuck transactions: {len(summary['stuck'])}")
        self.stdout.write(f"  Settled: {len(summary['settled'])}")
        self.stdout.write(f"  Still pending: {len(summary['still_pending'])}")
        self.stdout.write(f"  Unacknowledged closed: {len(summary['unacknowledged_failed'])}")
        self.stdout.write(f"  Invoices checked: {summary['invoices_checked']}")
        self.stdout.write(f"  Balances repaired: {len(summary['invoices_repaired'])}")
        for failure in summary['query_errors']:
            self.stdout.write(self.style.ERROR(
                f"  [!] Transaction {failure['transaction_id']}: {failure['error']}"))
        for failure in summary['integrity_failures']:
            self.stdout.write(self.style.ERROR(
                f"  [!] Invoice {failure['invoice_id']}: {failure['error']}"))
        if options['notify_overdue']:
            self.stdout.write(f"  Overdue notices sent: {summary['overdue_notices']}")

        self.stdout.write(self.style.SUCCESS('\n[SUCCESS] Sweep complete'))
