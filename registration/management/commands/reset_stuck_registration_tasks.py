from datetime import timedelta

from django.core.management.base import BaseCommand

from registration.services.tasks import reset_stuck_tasks


class Command(BaseCommand):
    help = "Return in_progress registration tasks abandoned by a dead worker to pending."

    def add_arguments(self, parser):
        parser.add_argument('--subject', type=int)
        parser.add_argument('--older-than', type=int, default=15, help='Minutes since last update (0 = any)')

    def handle(self, *args, **options):
        minutes = options['older_than']
        count = reset_stuck_tasks(
            options.get('subject'),
            older_than=timedelta(minutes=minutes) if minutes else None,
        )
        self.stdout.write(self.style.SUCCESS(f"Reset {count} stuck tasks"))
