from datetime import date

from django.core.management.base import BaseCommand, CommandError

from finance.exceptions import LedgerError
from finance.services.invoicing import generate_monthly_invoices


class Command(BaseCommand):
    help = 'Issue monthly rent invoices for every active tenant'

    def add_arguments(self, parser):
        today = date.today()
        parser.add_argument(
            '--year',
            type=int,
            default=today.year,
            help='Billing year (default: current year)',
        )
        parser.add_argument(
            '--month',
            type=int,
            default=today.month,
            help='Billing month 1-12 (default: current month)',
        )
        parser.add_argument(
            '--tenant',
            type=int,
            action='append',
            dest='tenants',
            help='Only bill this tenant id; repeat for several',
        )

    def handle(self, *args, **options):
        year, month = options['year'], options['month']
        if not 1 <= month <= 12:
            raise CommandError(f'Invalid month: {month}')

        self.stdout.write(self.style.MIGRATE_HEADING(
            f'Generating invoices for {year}-{month:02d}...'
        ))

        try:
            result = generate_monthly_invoices(year, month, tenant_ids=options['tenants'])
        except LedgerError as e:
            raise CommandError(str(e))

        for invoice in result.created:
            self.stdout.write(self.style.SUCCESS(
                f'  [+] {invoice.invoice_number}: {invoice.tenant} ({invoice.total_due})'
            ))
        for tenant_id in result.skipped:
            self.stdout.write(f'  - Skipped tenant {tenant_id}')

        self.stdout.write(self.style.SUCCESS(
            f'\n[SUCCESS] Created: {len(result.created)}, skipped: {len(result.skipped)}'
        ))
