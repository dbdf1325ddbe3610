from django.urls import path
from . import views

app_name = "billing"

urlpatterns = [
    path("stripe-status/", views.stripe_status, name="stripe_status"),
    path("checkout/", views.create_checkout, name="create_checkout"),
    path("stripe-webhook/", views.stripe_webhook, name="stripe_webhook"),
]
