# Overview: Transaction and row-locking helpers shared by the stock services.

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session


def lock_for_update(query):
    """
    Apply row-level locking for critical operations and refresh the identity map.

    populate_existing() forces the locked SELECT to overwrite any cached
    instance, so a read inside a unit of work always sees committed values.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the version_id_col check on UPDATE is what rejects a lost update.
    """
    return query.with_for_update().populate_existing()


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """
    Run a block as one unit of work.

    Commits when the block finishes; on any exception rolls back everything
    written in the block and re-raises.
    """
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
