"""Management command to replay failed access grants and revokes."""

from django.core.management.base import BaseCommand
from django.utils import timezone

from django_orders.fulfillment import process_fulfillment_retries
from django_orders.models import FulfillmentRetry


class Command(BaseCommand):
    help = 'Retry access grants and revokes that failed after an order status change'

    def add_arguments(self, parser):
        parser.add_argument(
            '--limit',
            type=int,
            default=100,
            help='Process at most this many due retries (default: 100)'
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show the retries that are due without running them'
        )

    def handle(self, *args, **options):
        limit = options['limit']

        if options['dry_run']:
            due = FulfillmentRetry.objects.filter(
                state=FulfillmentRetry.State.PENDING,
                next_attempt_at__lte=timezone.now(),
            )
            self.stdout.write(f'Would process {min(due.count(), limit)} due fulfillment retries')
            for action in FulfillmentRetry.Action:
                action_count = due.filter(action=action).count()
                if action_count > 0:
                    self.stdout.write(f'  - {action.label}: {action_count}')
            return

        run = process_fulfillment_retries(limit=limit)
        self.stdout.write(
            self.style.SUCCESS(
                f'Fulfillment retries: {run.succeeded} succeeded, '
                f'{run.rescheduled} rescheduled, {run.failed} failed'
            )
        )
        if run.failed:
            self.stderr.write(
                self.style.ERROR(f'{run.failed} retries exhausted their attempts; see logs')
            )
