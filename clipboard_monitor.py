"""Clipboard polling and the guard that shields it from our own paste churn."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol


logger = logging.getLogger("cliptranslator.clipboard")

DEFAULT_POLL_INTERVAL = 0.3  # Seconds between clipboard reads.


class ClipboardProtocol(Protocol):  # pragma: no cover - protocol is for type checking only
    def paste(self) -> str:
        """Return the clipboard text."""

    def copy(self, text: str) -> None:
        """Replace the clipboard text."""


class GuardMisuseError(RuntimeError):
    """Raised when guard calls are unbalanced or made outside a guard."""


@dataclass(frozen=True)
class ClipboardSnapshot:
    text: str
    captured_at: float = field(default_factory=time.time)


class MonitorState:
    """Last observed clipboard text plus the suppression flag.

    One instance is shared by a watcher and a guard. Its lock is held for
    every clipboard access either of them makes.
    """

    def __init__(self, last_observed_text: str = "") -> None:
        self.lock = threading.RLock()
        self.last_observed_text = last_observed_text
        self._suppressed = False

    @property
    def suppressed(self) -> bool:
        return self._suppressed

    def suppress(self) -> None:
        with self.lock:
            self._suppressed = True

    def release(self, observed_text: Optional[str] = None) -> None:
        with self.lock:
            if observed_text is not None:
                self.last_observed_text = observed_text
            self._suppressed = False

    def acknowledge(self, text: str) -> None:
        """Record ``text`` as seen so the watcher will not report it."""

        with self.lock:
            self.last_observed_text = text

    def observe(self, text: Optional[str]) -> bool:
        """Return ``True`` if ``text`` is a change worth reporting."""

        with self.lock:
            if self._suppressed:
                return False
            if not text or not text.strip():
                return False
            if text == self.last_observed_text:
                return False
            self.last_observed_text = text
            return True


class ClipboardGuard:
    """Owns the clipboard while a paste sequence runs."""

    def __init__(
        self,
        clipboard: ClipboardProtocol,
        state: MonitorState,
        *,
        sleep: Callable[[float], None] = time.sleep,
        time_provider: Callable[[], float] = time.time,
    ) -> None:
        self._clipboard = clipboard
        self._state = state
        self._sleep = sleep
        self._time_provider = time_provider
        self._snapshot: Optional[ClipboardSnapshot] = None
        self._staged: Optional[str] = None

    @property
    def active(self) -> bool:
        return self._snapshot is not None

    def begin_guard(self) -> ClipboardSnapshot:
        with self._state.lock:
            if self._snapshot is not None or self._state.suppressed:
                self.force_release()
                raise GuardMisuseError("begin_guard() called while a guard is already active")
            self._state.suppress()
            try:
                text = self._clipboard.paste() or ""
            except Exception:
                self._state.release()
                raise
            snapshot = ClipboardSnapshot(text=text, captured_at=self._time_provider())
            self._snapshot = snapshot
            self._staged = None
        logger.debug("Clipboard guard acquired (%d chars saved)", len(snapshot.text))
        return snapshot

    def stage_content(self, text: str) -> None:
        with self._state.lock:
            if self._snapshot is None:
                raise GuardMisuseError("stage_content() called without an active guard")
            self._clipboard.copy(text)
            self._staged = text

    def end_guard(self, snapshot: ClipboardSnapshot, delay: float = 0.0) -> None:
        """Restore ``snapshot`` after ``delay`` seconds and lift suppression."""

        if self._snapshot is None or snapshot is not self._snapshot:
            self.force_release()
            raise GuardMisuseError("end_guard() called without a matching begin_guard()")

        if delay > 0:
            self._sleep(delay)

        with self._state.lock:
            observed = self._staged if self._staged is not None else snapshot.text
            try:
                self._clipboard.copy(snapshot.text)
                observed = snapshot.text
            finally:
                self._snapshot = None
                self._staged = None
                self._state.release(observed)
        logger.debug("Clipboard guard released")

    def force_release(self) -> None:
        """Drop any guard state and re-enable monitoring."""

        with self._state.lock:
            if self._snapshot is not None or self._state.suppressed:
                logger.error("Forcing clipboard guard release")
            self._snapshot = None
            self._staged = None
            self._state.release()


class ClipboardWatcher:
    """Polls the clipboard on a background thread and reports new text."""

    def __init__(
        self,
        clipboard: ClipboardProtocol,
        state: MonitorState,
        on_change: Callable[[str], None],
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._clipboard = clipboard
        self._state = state
        self._on_change = on_change
        self.interval = interval
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def watching(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.watching:
                return
            with self._state.lock:
                if not self._state.suppressed:
                    try:
                        self._state.acknowledge(self._clipboard.paste() or "")
                    except Exception as exc:
                        logger.warning("Could not read clipboard when starting: %s", exc)
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._run, args=(stop_event,), name="ClipboardWatcher", daemon=True
            )
            self._thread.start()
        logger.info("Clipboard monitoring started (interval=%.2fs)", self.interval)

    def stop(self) -> None:
        with self._lock:
            thread = self._thread
            if thread is None or self._stop_event is None:
                return
            self._stop_event.set()
            self._stop_event = None
            self._thread = None
        if thread is not threading.current_thread():
            thread.join(timeout=max(1.0, self.interval * 3))
        logger.info("Clipboard monitoring stopped")

    def poll_once(self) -> Optional[str]:
        """Run a single tick; return the text reported, if any."""

        with self._state.lock:
            if self._state.suppressed:
                return None
            try:
                text = self._clipboard.paste()
            except Exception as exc:
                logger.warning("Failed to read clipboard: %s", exc)
                return None
            if not self._state.observe(text):
                return None
        self._on_change(text)
        return text

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            try:
                self.poll_once()
            except Exception as exc:  # pragma: no cover - logging runtime issues
                logger.exception("Clipboard change handler failed: %s", exc)
