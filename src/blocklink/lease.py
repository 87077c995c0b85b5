"""Single-writer lease for one document across several open views.

A lease row ``{doc_id, owner_id, expires_at}`` names the view allowed to
write. Ownership is refreshed on activity (the view becoming visible again),
not on a timer: background views may have their timers suspended, and a
closed view must not keep a lease alive. Challengers honour the hard expiry;
the owner does not expire itself.

Losing or failing to obtain the lease puts the view in observer mode; it is
never an error. Storage failures surface as ``PersistenceError``.
"""
from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from enum import StrEnum

from blocklink.config import EngineConfig
from blocklink.persistence import DocumentStore, LeaseRecord

log = logging.getLogger(__name__)


class ViewMode(StrEnum):
    WRITER = "writer"
    OBSERVER = "observer"


def generate_owner_id() -> str:
    return f"view-{uuid.uuid4().hex[:12]}"


class LeaseManager:
    """Acquires, renews and re-checks the write lease for one view."""

    def __init__(
        self,
        store: DocumentStore,
        doc_id: str,
        *,
        owner_id: str | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.doc_id = doc_id
        self.owner_id = owner_id or generate_owner_id()
        self.config = config or EngineConfig()
        self._clock = clock
        self._mode = ViewMode.OBSERVER
        self._expires_at = 0
        self.holder: str | None = None

    @property
    def mode(self) -> ViewMode:
        return self._mode

    @property
    def expires_at(self) -> int:
        return self._expires_at

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def can_write(self) -> bool:
        """Writer mode. Our own expiry never demotes us; only a takeover seen
        by ``check_ownership`` or ``acquire`` does."""
        return self._mode == ViewMode.WRITER

    def acquire(self) -> bool:
        record = self._store.try_acquire_lease(
            self.doc_id, self.owner_id, now=self._now_ms(), ttl_ms=self.config.lease_ttl_ms,
        )
        return self._observe(record)

    def renew(self) -> bool:
        """Refresh our lease. Same CAS as acquire: fails if someone else took it."""
        return self.acquire()

    def check_ownership(self) -> bool:
        """Re-read the lease row without writing; updates ``mode``.

        A row that is still ours keeps us the writer even past ``expires_at``:
        nobody has taken it over yet.
        """
        record = self._store.get_lease(self.doc_id)
        if record is None or record.owner_id != self.owner_id:
            self._set_mode(ViewMode.OBSERVER, record.owner_id if record else None)
            self._expires_at = 0
            return False
        self._expires_at = record.expires_at
        self._set_mode(ViewMode.WRITER, record.owner_id)
        return True

    def on_visibility_change(self, visible: bool) -> bool:
        """Becoming visible: re-check (the lease may have been taken), then refresh."""
        if not visible:
            return self.can_write()
        self.check_ownership()
        return self.acquire()

    def release(self) -> None:
        if self._mode == ViewMode.WRITER:
            self._store.release_lease(self.doc_id, self.owner_id)
        self._expires_at = 0
        self._set_mode(ViewMode.OBSERVER, None)

    def _observe(self, record: LeaseRecord) -> bool:
        if record.owner_id == self.owner_id:
            self._expires_at = record.expires_at
            self._set_mode(ViewMode.WRITER, record.owner_id)
            return True
        self._expires_at = 0
        self._set_mode(ViewMode.OBSERVER, record.owner_id)
        return False

    def _set_mode(self, mode: ViewMode, holder: str | None) -> None:
        self.holder = holder
        if mode != self._mode:
            log.info(
                "View %s on %s: %s -> %s (holder=%s)",
                self.owner_id, self.doc_id, self._mode, mode, holder,
            )
            self._mode = mode
