from django.core.management.base import BaseCommand, CommandError

from finance.exceptions import LedgerError
from finance.services.balances import recalculate_all, recalculate_for_tenant


class Command(BaseCommand):
    help = 'Recompute invoice balances and statuses from recorded allocations'

    def add_arguments(self, parser):
        parser.add_argument(
            '--tenant',
            type=int,
            help='Only recalculate this tenant\'s invoices',
        )

    def handle(self, *args, **options):
        self.stdout.write(self.style.MIGRATE_HEADING('Recalculating invoice balances...'))

        try:
            if options['tenant']:
                result = recalculate_for_tenant(options['tenant'])
            else:
                result = recalculate_all()
        except LedgerError as e:
            raise CommandError(str(e))

        for invoice_id, error in result.failed:
            self.stdout.write(self.style.ERROR(f'  [!] Invoice {invoice_id}: {error}'))

        self.stdout.write(self.style.SUCCESS(
            f'\n[SUCCESS] Checked: {result.checked}, repaired: {len(result.updated)}'
        ))
        if result.failed:
            raise CommandError(f'{len(result.failed)} invoices violate the balance invariant')
