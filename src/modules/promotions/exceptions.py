"""Promotion exceptions."""

from __future__ import annotations


class InvalidCoupon(Exception):
    """The coupon code cannot be applied; order placement aborts."""
