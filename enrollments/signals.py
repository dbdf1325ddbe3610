"""
Enrollment change notifications.

pre_save captures the stored status (the "before" snapshot); post_save builds an
EnrollmentChange and hands it to the waitlist promoter once the write commits.
Writes made with queryset.update() do not notify; status changes that should
trigger promotion go through Model.save() (see enrollment_service).
"""
import logging

from django.db import transaction
from django.db.models.signals import post_save, pre_save
from django.dispatch import receiver

from .models import Enrollment
from .services.waitlist_service import EnrollmentChange, handle_enrollment_change, snapshot

logger = logging.getLogger(__name__)


@receiver(pre_save, sender=Enrollment)
def remember_previous_status(sender, instance, **kwargs):
    previous = None
    if instance.pk:
        previous = sender.objects.filter(pk=instance.pk).values_list("status", flat=True).first()
    instance._previous_status = previous


@receiver(post_save, sender=Enrollment)
def notify_enrollment_change(sender, instance, created, **kwargs):
    previous = getattr(instance, "_previous_status", None)
    if created or previous is None or previous == instance.status:
        return
    change = EnrollmentChange(
        enrollment_id=instance.pk,
        before=snapshot(instance, status=previous),
        after=snapshot(instance),
    )
    transaction.on_commit(lambda: dispatch_enrollment_change(change))


def dispatch_enrollment_change(change: EnrollmentChange):
    """Run the promoter for one change; nobody is waiting on the result, so failures are logged."""
    try:
        handle_enrollment_change(change)
    except Exception:
        logger.exception(
            "[waitlist] Promotion failed for enrollment %s (class %s)",
            change.enrollment_id, change.after.get("class_id"),
        )
