"""Debounced auto-save for an open editor session."""
import logging
import threading
from typing import Any, Callable, Dict, Optional

from quillnote.config import config

logger = logging.getLogger(__name__)

FlushFunction = Callable[[Dict[str, Any]], Any]


class AutoSaver:
    """Holds at most one pending flush and replaces it on every edit.

    ``schedule`` merges the new fields into the pending set and restarts
    the timer. ``cancel`` drops the pending flush (closing the editor).
    ``flush_now`` is the manual save: it runs immediately, bypassing the
    delay, and raises if the save fails.

    A timer-driven flush that fails is logged and its fields stay pending,
    so the next ``schedule`` retries them together with the new edit.
    """

    def __init__(self, flush: FlushFunction, delay: Optional[float] = None):
        self._flush = flush
        self.delay = delay if delay is not None else config.autosave_delay
        self._lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._pending: Dict[str, Any] = {}
        self._closed = False
        self.last_error: Optional[Exception] = None

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    @property
    def pending_fields(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._pending)

    def schedule(self, fields: Dict[str, Any]) -> None:
        """Record an edit and (re)start the countdown."""
        with self._lock:
            if self._closed:
                logger.debug("Ignoring edit on a closed auto-saver")
                return
            self._pending.update(fields)
            self._cancel_timer()
            self._timer = threading.Timer(self.delay, self._on_timer)
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        """Drop the pending flush and any unsaved fields."""
        with self._lock:
            self._cancel_timer()
            self._pending = {}

    def close(self) -> None:
        """Cancel and refuse further edits."""
        with self._lock:
            self.cancel()
            self._closed = True

    def flush_now(self, fields: Optional[Dict[str, Any]] = None) -> Any:
        """Save immediately, merging in ``fields``. Errors propagate."""
        with self._lock:
            self._cancel_timer()
            payload = {**self._pending, **(fields or {})}
            self._pending = {}
        if not payload:
            return None
        try:
            result = self._flush(payload)
        except Exception:
            with self._lock:
                # Keep the unsaved fields unless newer edits replaced them
                self._pending = {**payload, **self._pending}
            raise
        self.last_error = None
        return result

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        with self._lock:
            if self._timer is None or self._timer is not threading.current_thread():
                # Superseded or cancelled after firing
                return
            self._timer = None
            payload = self._pending
            self._pending = {}
        if not payload:
            return
        try:
            self._flush(payload)
            self.last_error = None
            logger.debug(f"Auto-saved fields: {', '.join(sorted(payload))}")
        except Exception as e:
            self.last_error = e
            with self._lock:
                self._pending = {**payload, **self._pending}
            logger.warning(f"Auto-save failed, will retry on next edit: {e}")
