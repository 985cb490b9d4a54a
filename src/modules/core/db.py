"""Database helpers shared by the service layer."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from django.db import connection, transaction

logger = structlog.get_logger(__name__)


@contextmanager
def bounded_atomic(timeout_seconds: int) -> Iterator[None]:
    """``transaction.atomic()`` whose statements and lock waits are bounded.

    PostgreSQL scopes ``statement_timeout``/``lock_timeout`` to the
    transaction with ``SET LOCAL``.  MySQL only bounds InnoDB lock waits,
    per session, so the previous session value is restored on exit.
    SQLite has no equivalent and runs unbounded.  When the limit is hit the
    database raises ``OperationalError`` and the whole transaction rolls
    back.
    """
    previous_mysql_wait: Optional[int] = None
    try:
        with transaction.atomic():
            vendor = connection.vendor
            if vendor == "postgresql":
                millis = int(timeout_seconds * 1000)
                with connection.cursor() as cursor:
                    cursor.execute(f"SET LOCAL statement_timeout = {millis}")
                    cursor.execute(f"SET LOCAL lock_timeout = {millis}")
            elif vendor == "mysql":
                with connection.cursor() as cursor:
                    cursor.execute("SELECT @@SESSION.innodb_lock_wait_timeout")
                    previous_mysql_wait = int(cursor.fetchone()[0])
                    cursor.execute(
                        "SET SESSION innodb_lock_wait_timeout = %s",
                        [max(1, int(timeout_seconds))],
                    )
            yield
    finally:
        if previous_mysql_wait is not None:
            _restore_mysql_lock_wait(previous_mysql_wait)


def _restore_mysql_lock_wait(seconds: int) -> None:
    if connection.needs_rollback:
        # Django refuses queries until the enclosing atomic block exits.
        logger.warning("db.lock_wait_restore_skipped", seconds=seconds)
        return
    with connection.cursor() as cursor:
        cursor.execute("SET SESSION innodb_lock_wait_timeout = %s", [seconds])
