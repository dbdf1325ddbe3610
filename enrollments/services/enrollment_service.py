"""
Sign-up and cancellation of class enrollments.

New enrollments go to the waitlist once the class is full. Cancellation goes
through save() so the change notification reaches the waitlist promoter.
"""
from django.db import transaction
from django.utils import timezone

from enrollments.models import Enrollment, TrainingClass


class EnrollmentError(Exception):
    pass


def capacity_usage(training_class) -> dict:
    active = Enrollment.objects.filter(
        training_class=training_class,
        status=Enrollment.STATUS_ACTIVE,
    ).count()
    capacity = training_class.capacity or 0
    return {"active": active, "capacity": capacity, "available": max(capacity - active, 0)}


@transaction.atomic()
def enroll_student(student, training_class, now=None):
    """
    Enroll a student, or return their existing non-cancelled enrollment.

    Returns (enrollment, created).
    """
    now = now or timezone.now()
    # Lock the class row so concurrent sign-ups count active seats one at a time.
    training_class = TrainingClass.objects.select_for_update().get(pk=training_class.pk)

    existing = (
        Enrollment.objects.filter(training_class=training_class, student=student)
        .exclude(status=Enrollment.STATUS_CANCELLED)
        .first()
    )
    if existing:
        return existing, False

    usage = capacity_usage(training_class)
    status = Enrollment.STATUS_WAITLIST if usage["available"] <= 0 else Enrollment.STATUS_ACTIVE
    enrollment = Enrollment.objects.create(
        training_class=training_class,
        student=student,
        status=status,
        created_at=now,
        updated_at=now,
    )
    return enrollment, True


@transaction.atomic()
def cancel_enrollment(enrollment, now=None):
    """Cancel an enrollment. Returns False if it was already cancelled."""
    now = now or timezone.now()
    enrollment = Enrollment.objects.select_for_update().get(pk=enrollment.pk)
    if enrollment.status == Enrollment.STATUS_CANCELLED:
        return False
    enrollment.status = Enrollment.STATUS_CANCELLED
    enrollment.updated_at = now
    enrollment.save(update_fields=["status", "updated_at"])
    return True
