"""Shipping exceptions."""

from __future__ import annotations


class ExternalServiceUnavailable(Exception):
    """The carrier API could not be reached or answered with an error."""
