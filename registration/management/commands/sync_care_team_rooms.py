from django.core.management.base import BaseCommand

from registration.services.reconcile import run_room_sync_reconciliation


class Command(BaseCommand):
    help = "Reconcile care-team chat rooms with care team assignments."

    def handle(self, *args, **options):
        tally = run_room_sync_reconciliation()
        style = self.style.WARNING if tally['error'] else self.style.SUCCESS
        self.stdout.write(style(
            "created={created} updated={updated} skipped={skipped} error={error}".format(**tally)
        ))
