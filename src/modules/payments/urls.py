"""Payment URL configuration."""

from __future__ import annotations

from django.urls import path

from modules.payments.views import MoMoIPNView, VNPayIPNView, confirm_manually

urlpatterns = [
    path("payments/vnpay/ipn/", VNPayIPNView.as_view(), name="payment-vnpay-ipn"),
    path("payments/momo/ipn/", MoMoIPNView.as_view(), name="payment-momo-ipn"),
    path("payments/confirm/", confirm_manually, name="payment-confirm"),
]
