from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from registration.models import DefaultCareTeam, User


class Command(BaseCommand):
    help = "Set the active default care team assigned to newly paid patients (idempotent)."

    def add_arguments(self, parser):
        parser.add_argument('--doctor', required=True, help='Username of the doctor')
        parser.add_argument('--nutritionist', help='Username of the nutritionist')

    def _professional(self, username, role):
        try:
            return User.objects.get(username=username, role=role)
        except User.DoesNotExist:
            raise CommandError(f"No {role} with username {username!r}")

    @transaction.atomic
    def handle(self, *args, **options):
        doctor = self._professional(options['doctor'], User.ROLE_DOCTOR)
        nutritionist = None
        if options.get('nutritionist'):
            nutritionist = self._professional(options['nutritionist'], User.ROLE_NUTRITIONIST)

        team = DefaultCareTeam.objects.filter(doctor=doctor, nutritionist=nutritionist).order_by('-id').first()
        if team is None:
            team = DefaultCareTeam.objects.create(doctor=doctor, nutritionist=nutritionist)
        elif not team.is_active:
            team.is_active = True
            team.save(update_fields=['is_active'])
        deactivated = DefaultCareTeam.objects.filter(is_active=True).exclude(id=team.id).update(is_active=False)
        self.stdout.write(self.style.SUCCESS(
            f"Default care team #{team.id}: doctor={doctor.username} "
            f"nutritionist={nutritionist.username if nutritionist else '-'} (deactivated {deactivated})"
        ))
