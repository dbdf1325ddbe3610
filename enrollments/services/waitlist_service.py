"""
Waitlist promotion.

When an active enrollment is cancelled, the oldest waitlisted enrollment of the
same class becomes active. Each promotion claims its row with a conditional
update (status must still be "waitlist"), so two cancellations racing in the
same class can never promote the same entry twice. On Postgres the candidate
row is also locked with SKIP LOCKED, so the second cancellation moves straight
on to the next entry in line.
"""
import logging
from dataclasses import dataclass, field

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from enrollments.models import Enrollment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrollmentChange:
    """Before/after snapshot of one enrollment write, delivered after commit."""

    enrollment_id: int
    before: dict = field(default_factory=dict)
    after: dict = field(default_factory=dict)

    @property
    def is_active_cancellation(self) -> bool:
        return (
            self.before.get("status") == Enrollment.STATUS_ACTIVE
            and self.after.get("status") == Enrollment.STATUS_CANCELLED
        )


def snapshot(enrollment, status=None) -> dict:
    return {
        "id": enrollment.pk,
        "class_id": enrollment.training_class_id,
        "student_id": enrollment.student_id,
        "status": status if status is not None else enrollment.status,
    }


def promote_next_waitlisted(class_id, now=None):
    """
    Promote the earliest waitlisted enrollment of a class to active.

    Returns the promoted Enrollment, or None when nobody is waiting.
    """
    now = now or timezone.now()
    attempts = max(1, int(getattr(settings, "WAITLIST_PROMOTION_ATTEMPTS", 3)))

    for attempt in range(1, attempts + 1):
        with transaction.atomic():
            candidate = (
                Enrollment.objects.select_for_update(skip_locked=True)
                .filter(training_class_id=class_id, status=Enrollment.STATUS_WAITLIST)
                .order_by("created_at", "id")
                .first()
            )
            if candidate is None:
                logger.info("[waitlist] No waitlist found for class %s", class_id)
                return None

            claimed = Enrollment.objects.filter(
                pk=candidate.pk,
                status=Enrollment.STATUS_WAITLIST,
            ).update(status=Enrollment.STATUS_ACTIVE, updated_at=now)

        if claimed:
            candidate.status = Enrollment.STATUS_ACTIVE
            candidate.updated_at = now
            logger.info("[waitlist] Waitlisted enrollment %s promoted to active (class %s)", candidate.pk, class_id)
            return candidate

        logger.info(
            "[waitlist] Enrollment %s was claimed concurrently (class %s, attempt %s/%s)",
            candidate.pk, class_id, attempt, attempts,
        )

    logger.warning("[waitlist] Gave up promoting for class %s after %s attempts", class_id, attempts)
    return None


def handle_enrollment_change(change: EnrollmentChange):
    """
    Entry point for enrollment change notifications. Acts only on
    active -> cancelled; every other transition is ignored.
    """
    if not change.before or not change.after:
        return None
    if not change.is_active_cancellation:
        return None

    class_id = change.after.get("class_id")
    if not class_id:
        logger.info("[waitlist] Cancelled enrollment %s has no class; nothing to promote", change.enrollment_id)
        return None

    return promote_next_waitlisted(class_id)
