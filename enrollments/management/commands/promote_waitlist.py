"""
Django management command to promote the next waitlisted enrollment of a class.

Used to recover when an automatic promotion failed (the failure is only logged).

Usage:
    python manage.py promote_waitlist <class_id> [--count N]
"""

from django.core.management.base import BaseCommand, CommandError

from enrollments.models import TrainingClass
from enrollments.services.waitlist_service import promote_next_waitlisted


class Command(BaseCommand):
    help = 'Promote the earliest waitlisted enrollment(s) of a class to active'

    def add_arguments(self, parser):
        parser.add_argument("class_id", type=int)
        parser.add_argument("--count", type=int, default=1, help="How many entries to promote (default 1)")

    def handle(self, *args, **options):
        class_id = options["class_id"]
        count = options["count"]
        if count < 1:
            raise CommandError("--count must be at least 1")
        if not TrainingClass.objects.filter(pk=class_id).exists():
            raise CommandError(f"Training class {class_id} does not exist")

        promoted = 0
        for _ in range(count):
            enrollment = promote_next_waitlisted(class_id)
            if enrollment is None:
                break
            promoted += 1
            self.stdout.write(f"Promoted enrollment {enrollment.pk}")

        if promoted:
            self.stdout.write(self.style.SUCCESS(f"{promoted} enrollment(s) promoted in class {class_id}"))
        else:
            self.stdout.write(self.style.WARNING(f"No waitlisted enrollments in class {class_id}"))
