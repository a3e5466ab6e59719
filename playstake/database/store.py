"""
playstake.database.store — Path-Addressed Document Store
==========================================================

The wagering engine persists everything as JSON documents addressed by
slash-separated paths (``users/{uid}/wallet``, ``challenges/{id}`` …).
This module defines the store contract and a SQLAlchemy implementation
backed by the ``documents`` table.

Guarantees:
    * ``get`` / ``set`` / ``update`` / ``push`` act on one path.
    * ``transaction`` is an atomic compare-and-update on **one** path: the
      updater sees the current value and its result is written only if no
      other writer touched the path in between.  On a lost race the updater
      is re-run against the fresh value.
    * Nothing is atomic across paths.  Callers that write several paths
      must tolerate (and repair) partial writes.
"""

from __future__ import annotations

import copy
import logging
import secrets
import time
from collections.abc import Callable
from typing import Any, Protocol

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from playstake.database.models import Document
from playstake.engine.errors import StateConflictError

logger = logging.getLogger(__name__)

# How many times a compare-and-update is retried before giving up
DEFAULT_MAX_RETRIES = 8

Updater = Callable[[dict | None], dict]


class DocumentStore(Protocol):
    """What the engine needs from a document store."""

    def get(self, path: str) -> dict | None: ...

    def set(self, path: str, value: dict) -> None: ...

    def update(self, path: str, fields: dict) -> None: ...

    def push(self, parent: str, value: dict) -> str: ...

    def transaction(self, path: str, updater: Updater) -> dict: ...

    def children(self, parent: str) -> dict[str, dict]: ...

    def scan(self, prefix: str) -> dict[str, dict]: ...

    def query(
        self,
        parent: str,
        *,
        order_by: str,
        start_at: Any = None,
        end_at: Any = None,
        limit: int | None = None,
        descending: bool = False,
    ) -> list[tuple[str, dict]]: ...


def parent_of(path: str) -> str:
    """``users/u1/wallet`` → ``users/u1``; top-level paths have parent ``""``."""
    head, _, _ = path.rstrip("/").rpartition("/")
    return head


def join(*segments: str) -> str:
    return "/".join(s.strip("/") for s in segments if s)


def push_key() -> str:
    """Time-ordered unique child key (lexicographic order == insert order)."""
    return f"{time.time_ns():020d}{secrets.token_hex(4)}"


class SqlDocumentStore:
    """:class:`DocumentStore` over the ``documents`` table.

    Compare-and-update is optimistic: the row's ``version`` is read, the
    updater runs, and the write is an ``UPDATE … WHERE version = :seen``.
    Zero affected rows means another writer got there first.
    """

    def __init__(self, engine: Engine, *, max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        self.engine = engine
        self.max_retries = max_retries

    # -----------------------------------------------------------------------
    # Single-path reads and writes
    # -----------------------------------------------------------------------
    def get(self, path: str) -> dict | None:
        with Session(self.engine) as session:
            row = session.get(Document, path)
            return copy.deepcopy(row.value) if row is not None else None

    def set(self, path: str, value: dict) -> None:
        """Blind write (create or overwrite)."""
        self._write(path, lambda _current: value)

    def update(self, path: str, fields: dict) -> None:
        """Shallow-merge *fields* into the document, creating it if absent."""
        self._write(path, lambda current: {**(current or {}), **fields})

    def push(self, parent: str, value: dict) -> str:
        """Append *value* as a new child of *parent* and return its key."""
        key = push_key()
        with Session(self.engine) as session:
            session.add(Document(path=join(parent, key), parent=parent, value=value))
            session.commit()
        return key

    def transaction(self, path: str, updater: Updater) -> dict:
        """Atomically replace the value at *path* with ``updater(current)``.

        *updater* receives a private copy of the current value (``None`` if
        the path is empty) and returns the new value.  To abort, raise —
        the exception propagates and nothing is written.  *updater* may run
        more than once and must therefore be free of side effects other
        than on its own locals.

        Raises
        ------
        StateConflictError
            If the path kept changing underneath us for ``max_retries``
            attempts.
        """
        return self._write(path, updater)

    def _write(self, path: str, updater: Updater) -> dict:
        for attempt in range(1, self.max_retries + 1):
            with Session(self.engine) as session:
                row = session.get(Document, path)
                current = copy.deepcopy(row.value) if row is not None else None
                new_value = updater(current)

                if row is None:
                    session.add(Document(path=path, parent=parent_of(path), value=new_value))
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        logger.debug("Insert race on %s (attempt %d)", path, attempt)
                        continue
                    return new_value

                result = session.execute(
                    update(Document)
                    .where(Document.path == path, Document.version == row.version)
                    .values(value=new_value, version=row.version + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    session.commit()
                    return new_value
                session.rollback()
                logger.debug("Version race on %s (attempt %d)", path, attempt)

        logger.warning("Compare-and-update on %s gave up after %d attempts", path, self.max_retries)
        raise StateConflictError(
            "The record was modified concurrently. Please retry.", path=path
        )

    # -----------------------------------------------------------------------
    # Child listings and range queries
    # -----------------------------------------------------------------------
    def children(self, parent: str) -> dict[str, dict]:
        """Return ``{child_key: value}`` for every direct child of *parent*."""
        prefix_len = len(parent) + 1
        with Session(self.engine) as session:
            rows = session.execute(
                select(Document.path, Document.value)
                .where(Document.parent == parent)
                .order_by(Document.path)
            ).all()
        return {row.path[prefix_len:]: copy.deepcopy(row.value) for row in rows}

    def query(
        self,
        parent: str,
        *,
        order_by: str,
        start_at: Any = None,
        end_at: Any = None,
        limit: int | None = None,
        descending: bool = False,
    ) -> list[tuple[str, dict]]:
        """Children of *parent* ordered by the field *order_by*, optionally
        bounded to ``start_at <= value[order_by] <= end_at``.

        Children missing the field are excluded.
        """
        matched = []
        for key, value in self.children(parent).items():
            field_value = value.get(order_by)
            if field_value is None:
                continue
            if start_at is not None and field_value < start_at:
                continue
            if end_at is not None and field_value > end_at:
                continue
            matched.append((key, value))

        matched.sort(key=lambda kv: kv[1][order_by], reverse=descending)
        if limit is not None:
            matched = matched[:limit]
        return matched

    def scan(self, prefix: str) -> dict[str, dict]:
        """Return ``{path: value}`` for every document anywhere below *prefix*."""
        with Session(self.engine) as session:
            rows = session.execute(
                select(Document.path, Document.value)
                .where(Document.path.startswith(prefix.rstrip("/") + "/", autoescape=True))
                .order_by(Document.path)
            ).all()
        return {row.path: copy.deepcopy(row.value) for row in rows}
