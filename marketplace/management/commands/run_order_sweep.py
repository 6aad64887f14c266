# Order Sweep Management Command
from django.core.management.base import BaseCommand
from marketplace.sweep import run_sweep


class Command(BaseCommand):
    help = (
        'Applies time-based order changes: payment and confirmation timeouts, '
        'test drive timeouts, rental start and completion.'
    )

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='List the rows each step would change without changing them.',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']

        results = run_sweep(dry_run=dry_run)

        for step, ids in results.items():
            prefix = '[DRY-RUN] ' if dry_run else ''
            self.stdout.write(f'{prefix}{step}: {len(ids)}')
            if dry_run and ids:
                self.stdout.write(f'  ids: {", ".join(str(pk) for pk in ids)}')

        if dry_run:
            self.stdout.write(self.style.SUCCESS('Dry run completed. No changes saved.'))
        else:
            self.stdout.write(self.style.SUCCESS('Order sweep completed successfully.'))
