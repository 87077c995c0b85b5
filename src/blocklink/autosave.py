"""Autosave scheduling for one document session.

Flushes are pulled out of the transaction path. Reliability order for
exit paths:

1. visibility hidden: primary, fires reliably
2. page hide: navigation and back/forward cache
3. before unload: best effort only

Between those, ``poll()`` is called from idle time and flushes once edits
have been quiet for the debounce period, or unconditionally once the max
inter-flush interval has passed, bounding the data-loss window.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable

from blocklink.config import EngineConfig
from blocklink.persistence import (
    CommitResult,
    DocumentStore,
    PersistenceError,
    prepare_snapshot,
)
from blocklink.transactions import DocumentSession, Transaction

log = logging.getLogger(__name__)


class AutosaveController:
    def __init__(
        self,
        session: DocumentSession,
        store: DocumentStore,
        *,
        doc_id: str | None = None,
        title: str = "",
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session = session
        self._store = store
        self.doc_id = doc_id or session.doc_id
        if not self.doc_id:
            raise ValueError("AutosaveController needs a document id")
        self.title = title
        self.config = config or session.config
        self._clock = clock

        now = clock()
        self.dirty = False
        self.last_change_at = now
        self.last_flush_at = now
        self.last_error: PersistenceError | None = None
        self.last_result: CommitResult | None = None
        self.flush_count = 0
        session.add_transaction_listener(self._on_transaction)

    @property
    def changes_saved(self) -> bool:
        return not self.dirty and self.last_error is None

    def _on_transaction(self, tr: Transaction) -> None:
        if tr.doc_changed:
            self.note_change()

    def note_change(self) -> None:
        self.dirty = True
        self.last_change_at = self._clock()

    def poll(self) -> bool:
        """Idle-time check; returns True when a flush happened."""
        if not self.dirty:
            return False
        now = self._clock()
        if now - self.last_flush_at >= self.config.max_flush_interval_seconds:
            return self.flush_now("max-interval")
        if now - self.last_change_at >= self.config.flush_debounce_seconds:
            return self.flush_now("debounce")
        return False

    def flush_now(self, reason: str = "manual", *, force: bool = False) -> bool:
        """Prepare then commit. False when skipped, deferred or failed."""
        if self._session.is_applying:
            log.debug("Flush of %s deferred: transaction in progress", self.doc_id)
            return False
        if not (self.dirty or force):
            return True
        if not self._session.can_write():
            log.info("Flush of %s skipped (%s): view is not the writer", self.doc_id, reason)
            return False

        now = self._clock()
        prepared = prepare_snapshot(
            self._session.snapshot,
            doc_id=self.doc_id,
            title=self.title,
            now=int(now * 1000),
        )
        try:
            self.last_result = self._store.commit_snapshot(prepared)
        except PersistenceError as exc:
            self.last_error = exc
            log.error("Changes to %s not saved (%s): %s", self.doc_id, reason, exc)
            return False

        self.dirty = False
        self.last_error = None
        self.last_flush_at = now
        self.flush_count += 1
        log.debug("Flushed %s (%s)", self.doc_id, reason)
        return True

    # ── Lifecycle hooks ──────────────────────────────────────────

    def on_visibility_change(self, hidden: bool) -> bool:
        if hidden:
            return self.flush_now("visibility-hidden")
        return False

    def on_page_hide(self) -> bool:
        return self.flush_now("pagehide")

    def on_before_unload(self) -> bool:
        return self.flush_now("beforeunload")
