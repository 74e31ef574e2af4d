"""
Section synchronization status.

One ``SyncStatusTracker`` per editable section follows the persistence of
that section's edits:

    SYNCED -> PENDING (edit) -> SYNCED (save acknowledged)
                             -> ERROR  (save failed)

``OFFLINE`` is orthogonal: while the connectivity collaborator reports no
network it supersedes PENDING/SYNCED for display, and no save is started.
When connectivity returns, pending content is saved again with bounded
exponential backoff.

Saves are debounced: a save starts only after ``debounce_seconds`` without
a further edit.  A save already in flight is never cancelled; if newer
content was edited meanwhile, its result is disregarded and the newer
content is saved in turn.  ``synced_content`` only ever changes on an
acknowledgment, so abandoning an editor mid-save leaves the previously
acknowledged value intact.

ERROR is left only by a fresh edit or an explicit ``retry()``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from relevo.config import SyncSettings
from relevo.errors import CommandResult, SyncError
from relevo.models import SyncStatus

logger = logging.getLogger(__name__)

PersistFn = Callable[[str], Awaitable[CommandResult]]
StatusListener = Callable[[str, SyncStatus, SyncStatus], None]


class SyncStatusTracker:
    """Tracks whether a section's latest edit is persisted.

    Args:
        key: Identifier used in logs and listener callbacks
            (e.g. ``"p-01/illness_severity"``).
        persist: Coroutine function saving content; returns a
            ``CommandResult`` whose error is a ``SyncError`` on failure.
        settings: Debounce and reconnect timing.
        on_change: Called with ``(key, old, new)`` whenever the displayed
            status changes.
        online: Initial connectivity.
    """

    def __init__(
        self,
        key: str,
        persist: PersistFn,
        settings: Optional[SyncSettings] = None,
        on_change: Optional[StatusListener] = None,
        online: bool = True,
    ) -> None:
        self._key = key
        self._persist_fn = persist
        self._settings = settings or SyncSettings()
        self._on_change = on_change
        self._online = online
        self._status = SyncStatus.SYNCED
        self._generation = 0
        self._acked_generation = 0
        self._pending_content: Optional[str] = None
        self._synced_content: Optional[str] = None
        self._last_error: Optional[SyncError] = None
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: set[asyncio.Task] = set()

    # -- queries --

    @property
    def key(self) -> str:
        return self._key

    @property
    def status(self) -> SyncStatus:
        """Displayed status; OFFLINE while disconnected."""
        if not self._online:
            return SyncStatus.OFFLINE
        return self._status

    @property
    def online(self) -> bool:
        return self._online

    @property
    def synced_content(self) -> Optional[str]:
        """Last content acknowledged by the backend."""
        return self._synced_content

    @property
    def pending_content(self) -> Optional[str]:
        return self._pending_content

    @property
    def last_error(self) -> Optional[SyncError]:
        return self._last_error

    @property
    def is_idle(self) -> bool:
        return self._timer is None and not self._in_flight

    # -- edits and results --

    def on_edit(self, content: str) -> None:
        """Record a local edit and schedule a debounced save.

        Must be called from within a running event loop when online.
        """
        self._generation += 1
        self._pending_content = content
        self._set_status(SyncStatus.PENDING)
        if self._online:
            self._schedule(self._settings.debounce_seconds)
        else:
            logger.debug("%s edited while offline; save deferred", self._key)

    def on_persist_result(
        self,
        ok: bool,
        generation: Optional[int] = None,
        content: Optional[str] = None,
        error: Optional[SyncError] = None,
    ) -> None:
        """Apply the outcome of a save of ``generation`` (default: latest)."""
        if generation is None:
            generation = self._generation
            content = self._pending_content if content is None else content

        if generation < self._generation:
            if ok and generation > self._acked_generation:
                self._acked_generation = generation
                self._synced_content = content
            logger.debug(
                "%s: disregarding result of save %d, newer edit %d pending",
                self._key, generation, self._generation,
            )
            return

        if ok:
            self._acked_generation = generation
            self._synced_content = content
            self._pending_content = None
            self._last_error = None
            self._set_status(SyncStatus.SYNCED)
            return

        self._last_error = error or SyncError(f"Save of {self._key} failed.")
        if not self._online:
            # Dropped by the network; reconnection will retry it.
            logger.debug("%s: save failed while offline, kept pending", self._key)
            return
        logger.warning("%s: save failed: %s", self._key, self._last_error)
        self._set_status(SyncStatus.ERROR)

    def retry(self) -> bool:
        """Re-attempt an errored save now.  Returns False if nothing to retry."""
        if self._status is not SyncStatus.ERROR or self._pending_content is None:
            return False
        if not self._online:
            return False
        self._set_status(SyncStatus.PENDING)
        self._launch(self._generation, attempts=1)
        return True

    # -- connectivity --

    def set_online(self, online: bool) -> None:
        """Connectivity change reported by the external collaborator."""
        if online == self._online:
            return
        before = self.status
        self._online = online
        if not online:
            self._cancel_timer()
        elif self._status is SyncStatus.PENDING and self._pending_content is not None:
            self._launch(self._generation, attempts=self._settings.reconnect_attempts)
        self._notify(before)

    # -- waiting --

    async def flush(self) -> SyncStatus:
        """Start any debounced save immediately and wait for in-flight saves."""
        if self._timer is not None:
            self._cancel_timer()
            if self._online and self._status is SyncStatus.PENDING:
                self._launch(self._generation, attempts=1)
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight))
        return self.status

    # -- internals --

    def _schedule(self, delay: float) -> None:
        self._cancel_timer()
        logger.debug("%s: save scheduled in %.2fs", self._key, delay)
        self._timer = asyncio.get_running_loop().create_task(self._debounced(delay))

    async def _debounced(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        self._timer = None
        self._launch(self._generation, attempts=1)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _launch(self, generation: int, attempts: int) -> None:
        content = self._pending_content
        task = asyncio.get_running_loop().create_task(
            self._persist(generation, content, attempts)
        )
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _persist(self, generation: int, content: str, attempts: int) -> None:
        result = CommandResult.failure(SyncError(f"Save of {self._key} not attempted."))
        for attempt in range(attempts):
            if attempt:
                await asyncio.sleep(self._settings.reconnect_backoff_seconds * 2 ** (attempt - 1))
                if not self._online or generation < self._generation:
                    break
            try:
                result = await self._persist_fn(content)
            except (ConnectionError, OSError, asyncio.TimeoutError) as exc:
                result = CommandResult.failure(SyncError(f"Save of {self._key} failed: {exc}"))
            if result.ok:
                break
        self.on_persist_result(result.ok, generation=generation, content=content, error=result.error)

    def _set_status(self, status: SyncStatus) -> None:
        before = self.status
        self._status = status
        self._notify(before)

    def _notify(self, before: SyncStatus) -> None:
        after = self.status
        if after is not before and self._on_change is not None:
            self._on_change(self._key, before, after)
