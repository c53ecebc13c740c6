"""Streams a translation into the focused application, chunk by chunk."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional

from clipboard_monitor import ClipboardGuard, ClipboardSnapshot, GuardMisuseError
from text_injector import BaseTextInjector, InjectionError


logger = logging.getLogger("cliptranslator.replace")

DEFAULT_SETTLE_DELAY = 0.1  # Seconds to let the last paste land before restoring.
DEFAULT_DRAIN_TIMEOUT = 30.0


class StreamError(RuntimeError):
    """Raised when the upstream translation stream fails."""


class ChunkTypist:
    """Pastes queued text fragments one drain at a time.

    Fragments that arrive while a paste is in flight are coalesced into the
    next drain, so pastes never overlap and land in enqueue order.
    """

    def __init__(self, guard: ClipboardGuard, injector: BaseTextInjector) -> None:
        self._guard = guard
        self._injector = injector
        self._pending: List[str] = []
        self._draining = False
        self._cancelled = False
        self._condition = threading.Condition()
        self.error: Optional[BaseException] = None
        self.drain_count = 0

    @property
    def idle(self) -> bool:
        with self._condition:
            return not self._pending and not self._draining

    def enqueue(self, chunk: str) -> None:
        if not chunk:
            return
        with self._condition:
            if self._cancelled or self.error is not None:
                return
            self._pending.append(chunk)
            if self._draining:
                return
            self._draining = True
        threading.Thread(target=self._drain, name="ChunkTypist", daemon=True).start()

    def drain_complete(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue is empty and no drain is in flight."""

        with self._condition:
            return self._condition.wait_for(
                lambda: not self._pending and not self._draining, timeout=timeout
            )

    def cancel(self) -> None:
        """Drop pending fragments and refuse new ones."""

        with self._condition:
            self._cancelled = True
            self._pending.clear()
            self._condition.notify_all()

    def _drain(self) -> None:
        while True:
            with self._condition:
                if not self._pending or self._cancelled:
                    self._pending.clear()
                    self._draining = False
                    self._condition.notify_all()
                    return
                text = "".join(self._pending)
                self._pending.clear()
                self.drain_count += 1

            try:
                self._guard.stage_content(text)
                self._injector.send_paste()
            except (InjectionError, GuardMisuseError) as exc:
                logger.error("Paste of %d chars failed: %s", len(text), exc)
                self._fail(exc)
            except Exception as exc:
                logger.exception("Unexpected error while pasting chunk: %s", exc)
                self._fail(exc)

    def _fail(self, exc: BaseException) -> None:
        with self._condition:
            if self.error is None:
                self.error = exc
            self._pending.clear()


class SessionState(enum.Enum):
    IDLE = "idle"
    GUARD_ACQUIRED = "guard_acquired"
    DELETING = "deleting"
    STREAMING = "streaming"
    DRAINING = "draining"
    ERRORED = "errored"
    RESTORING = "restoring"


@dataclass
class ReplacementResult:
    success: bool
    text: str = ""
    error: Optional[BaseException] = None

    @property
    def message(self) -> str:
        if self.success:
            return "Replacement complete"
        if isinstance(self.error, InjectionError):
            return f"Keystroke injection failed: {self.error}"
        if isinstance(self.error, StreamError):
            return f"Translation stream failed: {self.error}"
        return f"Replacement failed: {self.error}"


class ReplacementSession:
    """Drives one streaming replace from guard acquisition to restore."""

    def __init__(
        self,
        guard: ClipboardGuard,
        injector: BaseTextInjector,
        *,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        drain_timeout: Optional[float] = DEFAULT_DRAIN_TIMEOUT,
    ) -> None:
        self._guard = guard
        self._injector = injector
        self._settle_delay = settle_delay
        self._drain_timeout = drain_timeout
        self._cancel_event = threading.Event()
        self.state = SessionState.IDLE
        self.transitions: List[SessionState] = [SessionState.IDLE]
        self.typist: Optional[ChunkTypist] = None

    def cancel(self) -> None:
        """Stop enqueuing at the next chunk boundary."""

        self._cancel_event.set()

    def run(self, stream: Iterable[str]) -> ReplacementResult:
        try:
            snapshot = self._guard.begin_guard()
        except Exception as exc:
            logger.error("Could not acquire clipboard guard: %s", exc)
            return ReplacementResult(success=False, error=exc)
        self._transition(SessionState.GUARD_ACQUIRED)

        pieces: List[str] = []
        error: Optional[BaseException] = None
        try:
            self._transition(SessionState.DELETING)
            self._injector.send_delete()

            self._transition(SessionState.STREAMING)
            self.typist = ChunkTypist(self._guard, self._injector)
            try:
                self._consume(stream, self.typist, pieces)
            except StreamError as exc:
                logger.error("%s", exc)
                error = exc
                self._transition(SessionState.ERRORED)

            if error is None:
                self._transition(SessionState.DRAINING)
            drain_error = self._wait_for_drain()
            error = error or drain_error
            if error is not None and self.state is not SessionState.ERRORED:
                self._transition(SessionState.ERRORED)
        except Exception as exc:
            logger.error("Replacement aborted in %s: %s", self.state.value, exc)
            error = exc
            self._transition(SessionState.ERRORED)
            if self.typist is not None:
                self.typist.cancel()
        finally:
            restore_error = self._restore(snapshot)
            error = error or restore_error

        self._transition(SessionState.IDLE)
        text = "".join(pieces)
        if error is not None:
            return ReplacementResult(success=False, text=text, error=error)
        logger.info("Replaced selection with %d chars", len(text))
        return ReplacementResult(success=True, text=text)

    def _consume(self, stream: Iterable[str], typist: ChunkTypist, pieces: List[str]) -> None:
        iterator = iter(stream)
        while not self._cancel_event.is_set():
            if typist.error is not None:
                break
            try:
                chunk = next(iterator)
            except StopIteration:
                return
            except Exception as exc:
                raise StreamError(str(exc) or exc.__class__.__name__) from exc
            if self._cancel_event.is_set():
                break
            pieces.append(chunk)
            typist.enqueue(chunk)
        logger.info("Stopped consuming the translation stream early")
        close = getattr(iterator, "close", None)
        if close is not None:
            close()

    def _wait_for_drain(self) -> Optional[BaseException]:
        if self.typist is None:
            return None
        if not self.typist.drain_complete(timeout=self._drain_timeout):
            self.typist.cancel()
            return InjectionError(
                f"Pasting did not finish within {self._drain_timeout:.1f}s"
            )
        return self.typist.error

    def _restore(self, snapshot: ClipboardSnapshot) -> Optional[BaseException]:
        self._transition(SessionState.RESTORING)
        try:
            self._guard.end_guard(snapshot, self._settle_delay)
        except Exception as exc:
            logger.error("Failed to restore clipboard: %s", exc)
            self._guard.force_release()
            return exc
        return None

    def _transition(self, state: SessionState) -> None:
        logger.debug("Replacement session %s -> %s", self.state.value, state.value)
        self.state = state
        self.transitions.append(state)
