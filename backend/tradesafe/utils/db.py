from __future__ import annotations

from contextlib import contextmanager


@contextmanager
def atomic(session):
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
