from django.conf import settings
from django.db import models
from django.utils import timezone


class TrainingClass(models.Model):
    title = models.CharField(max_length=200)
    capacity = models.PositiveIntegerField(default=12)
    instructor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="taught_classes",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Training class"
        verbose_name_plural = "Training classes"
        ordering = ["title"]

    def __str__(self):
        return self.title


class Enrollment(models.Model):
    """
    A student's place in a class. Waitlisted entries are promoted oldest first
    (created_at, then id) when an active entry is cancelled.
    """

    STATUS_ACTIVE = "active"
    STATUS_WAITLIST = "waitlist"
    STATUS_CANCELLED = "cancelled"
    STATUS_CHOICES = [
        (STATUS_ACTIVE, "Active"),
        (STATUS_WAITLIST, "Waitlist"),
        (STATUS_CANCELLED, "Cancelled"),
    ]

    training_class = models.ForeignKey(
        "enrollments.TrainingClass",
        null=True,
        blank=True,
        on_delete=models.CASCADE,
        related_name="enrollments",
    )
    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="enrollments",
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)

    # Set explicitly (not auto_now) so the promoter can stamp it through queryset.update()
    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["training_class", "status", "created_at"], name="enrollment_queue_idx"),
        ]

    def __str__(self):
        return f"Enrollment {self.pk} class={self.training_class_id} ({self.status})"
