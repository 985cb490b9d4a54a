"""Shipping URL configuration."""

from __future__ import annotations

from django.urls import path

from modules.shipping.views import CarrierWebhookView

urlpatterns = [
    path("shipping/webhook/", CarrierWebhookView.as_view(), name="shipping-webhook"),
]
