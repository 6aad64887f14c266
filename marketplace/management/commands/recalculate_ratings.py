# Recalculate Ratings Management Command
from django.core.management.base import BaseCommand
from marketplace.models import Vehicle
from marketplace.ratings import rating_stats


class Command(BaseCommand):
    help = 'Recalculates vehicle ratings and review counts from visible reviews.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Report differences without saving changes to the database.',
        )
        parser.add_argument(
            '--batch-size',
            type=int,
            default=1000,
            help='Batch size for bulk processing.',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        batch_size = options['batch_size']

        self.stdout.write('Recalculating vehicle ratings...')
        vehicles = Vehicle.objects.all().iterator(chunk_size=batch_size)
        updates = []
        count = 0
        changed = 0

        for vehicle in vehicles:
            new_avg, new_total = rating_stats(vehicle.pk)

            if vehicle.rating != new_avg or vehicle.review_count != new_total:
                changed += 1
                if dry_run:
                    self.stdout.write(
                        f'  [DRY-RUN] Vehicle {vehicle.id} ({vehicle.title}): '
                        f'Rating {vehicle.rating} -> {new_avg}, Count {vehicle.review_count} -> {new_total}'
                    )
                vehicle.rating = new_avg
                vehicle.review_count = new_total
                updates.append(vehicle)

            if len(updates) >= batch_size:
                if not dry_run:
                    Vehicle.objects.bulk_update(updates, ['rating', 'review_count'])
                updates = []

            count += 1
            if count % 100 == 0:
                self.stdout.write(f'Processed {count} vehicles...')

        if updates and not dry_run:
            Vehicle.objects.bulk_update(updates, ['rating', 'review_count'])

        self.stdout.write(f'Processed {count} vehicles total, {changed} out of date.')

        if dry_run:
            self.stdout.write(self.style.SUCCESS('Dry run completed. No changes saved.'))
        else:
            self.stdout.write(self.style.SUCCESS('Recalculation completed successfully.'))
