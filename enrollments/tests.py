from datetime import timedelta
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.core.management.base import CommandError
from django.db.models.query import QuerySet
from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from accounts.models import CustomUser
from enrollments.models import Enrollment, TrainingClass
from enrollments.services.enrollment_service import cancel_enrollment, capacity_usage, enroll_student
from enrollments.services.waitlist_service import (
    EnrollmentChange,
    handle_enrollment_change,
    promote_next_waitlisted,
)


class EnrollmentTestMixin:
    def _student(self, n):
        return CustomUser.objects.create_user(email=f"student{n}@local.test", password="password123")

    def _enrollment(self, n, status, training_class=None, created_at=None):
        return Enrollment.objects.create(
            training_class=training_class if training_class is not None else self.training_class,
            student=self._student(n),
            status=status,
            created_at=created_at or timezone.now(),
        )


class WaitlistPromotionTests(EnrollmentTestMixin, TestCase):
    def setUp(self):
        self.training_class = TrainingClass.objects.create(title="Morning WOD", capacity=1)
        base = timezone.now() - timedelta(days=1)
        self.active = self._enrollment(0, Enrollment.STATUS_ACTIVE, created_at=base)
        # Created out of order on purpose: queue order follows created_at, not insertion.
        self.third = self._enrollment(3, Enrollment.STATUS_WAITLIST, created_at=base + timedelta(minutes=3))
        self.first = self._enrollment(1, Enrollment.STATUS_WAITLIST, created_at=base + timedelta(minutes=1))
        self.second = self._enrollment(2, Enrollment.STATUS_WAITLIST, created_at=base + timedelta(minutes=2))

    def _statuses(self):
        return {
            e.pk: e.status
            for e in Enrollment.objects.filter(pk__in=[self.first.pk, self.second.pk, self.third.pk])
        }

    def test_cancelling_active_promotes_oldest_waitlisted(self):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            self.assertTrue(cancel_enrollment(self.active))

        self.assertEqual(len(callbacks), 1)
        self.assertEqual(self._statuses(), {
            self.first.pk: Enrollment.STATUS_ACTIVE,
            self.second.pk: Enrollment.STATUS_WAITLIST,
            self.third.pk: Enrollment.STATUS_WAITLIST,
        })
        self.first.refresh_from_db()
        self.assertGreater(self.first.updated_at, self.first.created_at)

    def test_cancellation_via_save_also_notifies(self):
        with self.captureOnCommitCallbacks(execute=True):
            self.active.status = Enrollment.STATUS_CANCELLED
            self.active.save()
        self.first.refresh_from_db()
        self.assertEqual(self.first.status, Enrollment.STATUS_ACTIVE)

    def test_other_transitions_do_not_promote(self):
        with self.captureOnCommitCallbacks(execute=True):
            cancel_enrollment(self.third)  # waitlist -> cancelled
            self.active.status = Enrollment.STATUS_WAITLIST  # active -> waitlist
            self.active.save()
        self.assertEqual(self._statuses()[self.first.pk], Enrollment.STATUS_WAITLIST)
        self.assertEqual(self._statuses()[self.second.pk], Enrollment.STATUS_WAITLIST)

    def test_unchanged_save_does_not_notify(self):
        with self.captureOnCommitCallbacks(execute=False) as callbacks:
            self.active.save()
        self.assertEqual(callbacks, [])

    def test_cancelling_twice_is_a_no_op(self):
        with self.captureOnCommitCallbacks(execute=True):
            cancel_enrollment(self.active)
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            self.assertFalse(cancel_enrollment(self.active))
        self.assertEqual(callbacks, [])
        self.assertEqual(self._statuses()[self.second.pk], Enrollment.STATUS_WAITLIST)

    def test_each_promotion_takes_the_next_in_line(self):
        promoted = [promote_next_waitlisted(self.training_class.pk) for _ in range(4)]
        self.assertEqual([e.pk if e else None for e in promoted], [self.first.pk, self.second.pk, self.third.pk, None])

    def test_other_classes_are_untouched(self):
        other_class = TrainingClass.objects.create(title="Mobility", capacity=5)
        other = self._enrollment(9, Enrollment.STATUS_WAITLIST, training_class=other_class)
        promote_next_waitlisted(self.training_class.pk)
        other.refresh_from_db()
        self.assertEqual(other.status, Enrollment.STATUS_WAITLIST)

    def test_lost_claim_moves_to_next_entry(self):
        real_update = QuerySet.update
        raced = []

        def racing_update(queryset, **kwargs):
            if not raced:
                # A concurrent cancellation promotes the head of the queue first.
                raced.append(True)
                real_update(Enrollment.objects.filter(pk=self.first.pk), status=Enrollment.STATUS_ACTIVE)
                return 0
            return real_update(queryset, **kwargs)

        with patch.object(QuerySet, "update", autospec=True, side_effect=racing_update):
            promoted = promote_next_waitlisted(self.training_class.pk)

        self.assertEqual(promoted.pk, self.second.pk)
        self.assertEqual(self._statuses(), {
            self.first.pk: Enrollment.STATUS_ACTIVE,
            self.second.pk: Enrollment.STATUS_ACTIVE,
            self.third.pk: Enrollment.STATUS_WAITLIST,
        })

    def test_gives_up_after_bounded_attempts(self):
        with self.settings(WAITLIST_PROMOTION_ATTEMPTS=2):
            with patch.object(QuerySet, "update", return_value=0) as update:
                self.assertIsNone(promote_next_waitlisted(self.training_class.pk))
        self.assertEqual(update.call_count, 2)

    def test_promotion_failure_is_logged_not_raised(self):
        with patch("enrollments.signals.handle_enrollment_change", side_effect=RuntimeError("db down")):
            with self.assertLogs("enrollments.signals", level="ERROR") as logs:
                with self.captureOnCommitCallbacks(execute=True):
                    cancel_enrollment(self.active)
        self.assertIn("Promotion failed", logs.output[0])
        self.active.refresh_from_db()
        self.assertEqual(self.active.status, Enrollment.STATUS_CANCELLED)


class EmptyWaitlistTests(EnrollmentTestMixin, TestCase):
    def setUp(self):
        self.training_class = TrainingClass.objects.create(title="Evening Lift", capacity=2)
        self.active = self._enrollment(1, Enrollment.STATUS_ACTIVE)
        self.other_active = self._enrollment(2, Enrollment.STATUS_ACTIVE)

    def test_cancellation_without_waitlist_writes_nothing_else(self):
        before = {e.pk: (e.status, e.updated_at) for e in Enrollment.objects.exclude(pk=self.active.pk)}
        with self.assertLogs("enrollments.services.waitlist_service", level="INFO") as logs:
            with self.captureOnCommitCallbacks(execute=True):
                cancel_enrollment(self.active)
        after = {e.pk: (e.status, e.updated_at) for e in Enrollment.objects.exclude(pk=self.active.pk)}
        self.assertEqual(before, after)
        self.assertIn("No waitlist found", logs.output[0])

    def test_enrollment_without_class_is_ignored(self):
        orphan = Enrollment.objects.create(student=self._student(5), status=Enrollment.STATUS_ACTIVE)
        with patch("enrollments.services.waitlist_service.promote_next_waitlisted") as promote:
            with self.captureOnCommitCallbacks(execute=True):
                cancel_enrollment(orphan)
        promote.assert_not_called()


class HandleEnrollmentChangeTests(SimpleTestCase):
    @patch("enrollments.services.waitlist_service.promote_next_waitlisted")
    def test_only_active_to_cancelled_promotes(self, promote):
        transitions = [
            ("active", "cancelled", True),
            ("waitlist", "cancelled", False),
            ("waitlist", "active", False),
            ("active", "waitlist", False),
            ("cancelled", "active", False),
            ("cancelled", "cancelled", False),
        ]
        for before, after, expected in transitions:
            promote.reset_mock()
            with self.subTest(before=before, after=after):
                handle_enrollment_change(EnrollmentChange(
                    enrollment_id=1,
                    before={"status": before, "class_id": 7},
                    after={"status": after, "class_id": 7},
                ))
                self.assertEqual(promote.called, expected)
                if expected:
                    promote.assert_called_once_with(7)

    @patch("enrollments.services.waitlist_service.promote_next_waitlisted")
    def test_missing_snapshots_or_class_are_ignored(self, promote):
        handle_enrollment_change(EnrollmentChange(enrollment_id=1, before={}, after={"status": "cancelled"}))
        handle_enrollment_change(EnrollmentChange(
            enrollment_id=1,
            before={"status": "active"},
            after={"status": "cancelled", "class_id": None},
        ))
        promote.assert_not_called()


class EnrollStudentTests(EnrollmentTestMixin, TestCase):
    def setUp(self):
        self.training_class = TrainingClass.objects.create(title="Conditioning", capacity=1)

    def test_full_class_goes_to_waitlist(self):
        first, created = enroll_student(self._student(1), self.training_class)
        second, _ = enroll_student(self._student(2), self.training_class)
        self.assertTrue(created)
        self.assertEqual(first.status, Enrollment.STATUS_ACTIVE)
        self.assertEqual(second.status, Enrollment.STATUS_WAITLIST)
        self.assertEqual(capacity_usage(self.training_class), {"active": 1, "capacity": 1, "available": 0})

    def test_existing_enrollment_is_returned(self):
        student = self._student(1)
        first, _ = enroll_student(student, self.training_class)
        again, created = enroll_student(student, self.training_class)
        self.assertFalse(created)
        self.assertEqual(again.pk, first.pk)

    def test_cancelled_student_can_enroll_again(self):
        student = self._student(1)
        first, _ = enroll_student(student, self.training_class)
        cancel_enrollment(first)
        again, created = enroll_student(student, self.training_class)
        self.assertTrue(created)
        self.assertNotEqual(again.pk, first.pk)
        self.assertEqual(again.status, Enrollment.STATUS_ACTIVE)


class PromoteWaitlistCommandTests(EnrollmentTestMixin, TestCase):
    def setUp(self):
        self.training_class = TrainingClass.objects.create(title="Open Gym", capacity=1)
        base = timezone.now()
        self.first = self._enrollment(1, Enrollment.STATUS_WAITLIST, created_at=base)
        self.second = self._enrollment(2, Enrollment.STATUS_WAITLIST, created_at=base + timedelta(seconds=1))

    def test_promotes_requested_count(self):
        out = StringIO()
        call_command("promote_waitlist", str(self.training_class.pk), "--count", "3", stdout=out)
        self.assertIn("2 enrollment(s) promoted", out.getvalue())
        self.assertFalse(Enrollment.objects.filter(status=Enrollment.STATUS_WAITLIST).exists())

    def test_unknown_class(self):
        with self.assertRaises(CommandError):
            call_command("promote_waitlist", "999999", stdout=StringIO())
