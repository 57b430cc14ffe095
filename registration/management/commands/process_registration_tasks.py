from django.core.management.base import BaseCommand

from registration.apps import get_pipeline


class Command(BaseCommand):
    help = "Process due registration tasks, for one subject or across all subjects."

    def add_arguments(self, parser):
        parser.add_argument('--subject', type=int, help='Only process tasks of this subject')
        parser.add_argument('--limit', type=int, default=100, help='Max tasks to run in global mode')

    def handle(self, *args, **options):
        pipeline = get_pipeline()
        subject_id = options.get('subject')
        if subject_id:
            report = pipeline.process_tasks_for_subject(subject_id)
            self.stdout.write(self.style.SUCCESS(
                f"Subject {subject_id}: {report.processed}/{len(report.outcomes)} tasks completed, "
                f"status={report.registration_status}"
            ))
            return

        ran = completed = 0
        while ran < options['limit']:
            outcome = pipeline.process_next_global_task()
            if outcome is None:
                break
            ran += 1
            if outcome.status == 'completed':
                completed += 1
            else:
                self.stdout.write(self.style.WARNING(
                    f"task {outcome.task_id} ({outcome.task_type}) -> {outcome.status}: {outcome.error}"
                ))
        self.stdout.write(self.style.SUCCESS(f"Ran {ran} tasks, {completed} completed"))
