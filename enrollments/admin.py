from django.contrib import admin
from .models import Enrollment, TrainingClass


@admin.register(TrainingClass)
class TrainingClassAdmin(admin.ModelAdmin):
    list_display = ("title", "capacity", "instructor", "created_at")
    search_fields = ("title",)


@admin.register(Enrollment)
class EnrollmentAdmin(admin.ModelAdmin):
    list_display = ("id", "training_class", "student", "status", "created_at", "updated_at")
    list_filter = ("status", "training_class")
    search_fields = ("student__email", "training_class__title")
    readonly_fields = ("created_at", "updated_at")
