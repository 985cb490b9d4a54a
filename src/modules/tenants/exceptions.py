"""Tenant exceptions."""

from __future__ import annotations


class TenantNotFound(Exception):
    """The tenant does not exist or is inactive."""
