import threading
import unittest

from clipboard_monitor import ClipboardGuard, ClipboardWatcher, MonitorState
from stream_replacer import ChunkTypist, ReplacementSession, SessionState, StreamError
from text_injector import BaseTextInjector, InjectionError


class FakeClipboard:
    def __init__(self, text: str = "") -> None:
        self.text = text

    def paste(self) -> str:
        return self.text

    def copy(self, text: str) -> None:
        self.text = text


class FakeInjector(BaseTextInjector):
    """Records what the clipboard held at each paste."""

    def __init__(self, clipboard: FakeClipboard, *, fail_delete=False, fail_paste=False) -> None:
        self.clipboard = clipboard
        self.fail_delete = fail_delete
        self.fail_paste = fail_paste
        self.deletes = 0
        self.pastes = []
        self.paste_started = threading.Event()
        self.release_paste = threading.Event()
        self.release_paste.set()

    def send_delete(self) -> None:
        self.deletes += 1
        if self.fail_delete:
            raise InjectionError("delete exited with code 1", returncode=1)

    def send_paste(self) -> None:
        self.pastes.append(self.clipboard.paste())
        self.paste_started.set()
        self.release_paste.wait(timeout=2)
        if self.fail_paste:
            raise InjectionError("paste exited with code 1", returncode=1)

    def send_copy(self) -> None:
        pass


class TypistTestMixin:
    def setUp(self) -> None:
        self.clipboard = FakeClipboard("original")
        self.state = MonitorState()
        self.guard = ClipboardGuard(self.clipboard, self.state, sleep=lambda _seconds: None)
        self.injector = FakeInjector(self.clipboard)


class ChunkTypistTests(TypistTestMixin, unittest.TestCase):
    def test_chunks_arriving_during_paste_are_coalesced_in_order(self):
        snapshot = self.guard.begin_guard()
        typist = ChunkTypist(self.guard, self.injector)
        self.injector.release_paste.clear()

        typist.enqueue("Bo")
        self.assertTrue(self.injector.paste_started.wait(timeout=1))
        typist.enqueue("njou")
        typist.enqueue("r")
        self.injector.release_paste.set()

        self.assertTrue(typist.drain_complete(timeout=2))
        self.guard.end_guard(snapshot)

        self.assertEqual(self.injector.pastes, ["Bo", "njour"])
        self.assertEqual(typist.drain_count, 2)
        self.assertIsNone(typist.error)

    def test_drain_complete_waits_for_in_flight_paste(self):
        snapshot = self.guard.begin_guard()
        typist = ChunkTypist(self.guard, self.injector)
        self.injector.release_paste.clear()

        typist.enqueue("first")
        self.assertTrue(self.injector.paste_started.wait(timeout=1))
        self.assertFalse(typist.drain_complete(timeout=0.05))
        typist.enqueue("second")
        self.assertFalse(typist.drain_complete(timeout=0.05))
        self.assertFalse(typist.idle)

        self.injector.release_paste.set()
        self.assertTrue(typist.drain_complete(timeout=2))
        self.assertTrue(typist.idle)
        self.guard.end_guard(snapshot)
        self.assertEqual("".join(self.injector.pastes), "firstsecond")

    def test_many_chunks_arrive_without_loss_or_duplication(self):
        snapshot = self.guard.begin_guard()
        typist = ChunkTypist(self.guard, self.injector)
        chunks = [f"{index}," for index in range(200)]

        for chunk in chunks:
            typist.enqueue(chunk)

        self.assertTrue(typist.drain_complete(timeout=5))
        self.guard.end_guard(snapshot)
        self.assertEqual("".join(self.injector.pastes), "".join(chunks))

    def test_empty_typist_is_complete_immediately(self):
        typist = ChunkTypist(self.guard, self.injector)
        typist.enqueue("")

        self.assertTrue(typist.drain_complete(timeout=0))
        self.assertEqual(self.injector.pastes, [])

    def test_paste_failure_records_error_and_drops_later_chunks(self):
        snapshot = self.guard.begin_guard()
        self.injector.fail_paste = True
        typist = ChunkTypist(self.guard, self.injector)

        typist.enqueue("lost")
        self.assertTrue(typist.drain_complete(timeout=2))
        typist.enqueue("ignored")

        self.assertTrue(typist.drain_complete(timeout=2))
        self.guard.end_guard(snapshot)
        self.assertIsInstance(typist.error, InjectionError)
        self.assertEqual(self.injector.pastes, ["lost"])


class ReplacementSessionTests(TypistTestMixin, unittest.TestCase):
    def _session(self, **kwargs) -> ReplacementSession:
        kwargs.setdefault("settle_delay", 0.0)
        return ReplacementSession(self.guard, self.injector, **kwargs)

    def test_streams_translation_and_restores_clipboard(self):
        session = self._session()

        result = session.run(iter(["Bo", "njou", "r"]))

        self.assertTrue(result.success, result.message)
        self.assertEqual(result.text, "Bonjour")
        self.assertEqual("".join(self.injector.pastes), "Bonjour")
        self.assertEqual(self.injector.deletes, 1)
        self.assertEqual(self.clipboard.text, "original")
        self.assertEqual(self.state.last_observed_text, "original")
        self.assertFalse(self.state.suppressed)
        self.assertEqual(
            session.transitions,
            [
                SessionState.IDLE,
                SessionState.GUARD_ACQUIRED,
                SessionState.DELETING,
                SessionState.STREAMING,
                SessionState.DRAINING,
                SessionState.RESTORING,
                SessionState.IDLE,
            ],
        )

    def test_watcher_stays_quiet_through_session(self):
        events = []
        watcher = ClipboardWatcher(self.clipboard, self.state, events.append)
        watcher.poll_once()
        events.clear()

        def stream():
            for chunk in ("Bo", "njou", "r"):
                watcher.poll_once()
                yield chunk

        result = self._session().run(stream())
        watcher.poll_once()

        self.assertTrue(result.success)
        self.assertEqual(events, [])

    def test_empty_stream_still_restores(self):
        session = self._session()

        result = session.run(iter([]))

        self.assertTrue(result.success)
        self.assertEqual(result.text, "")
        self.assertEqual(self.injector.pastes, [])
        self.assertEqual(self.clipboard.text, "original")
        self.assertFalse(self.state.suppressed)
        self.assertIn(SessionState.DRAINING, session.transitions)

    def test_delete_failure_reports_and_releases_guard(self):
        self.injector.fail_delete = True
        session = self._session()

        result = session.run(iter(["never"]))

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, InjectionError)
        self.assertIn("injection", result.message.lower())
        self.assertEqual(self.injector.pastes, [])
        self.assertFalse(self.state.suppressed)
        self.assertEqual(
            session.transitions[-3:],
            [SessionState.ERRORED, SessionState.RESTORING, SessionState.IDLE],
        )

        self.injector.fail_delete = False
        retry = self._session().run(iter(["ok"]))
        self.assertTrue(retry.success)
        self.assertEqual(self.injector.pastes, ["ok"])

    def test_stream_failure_drains_enqueued_chunks_then_restores(self):
        def failing_stream():
            yield "Hal"
            yield "lo"
            raise ConnectionError("socket closed")

        session = self._session()
        result = session.run(failing_stream())

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, StreamError)
        self.assertEqual(result.text, "Hallo")
        self.assertEqual("".join(self.injector.pastes), "Hallo")
        self.assertEqual(self.clipboard.text, "original")
        self.assertFalse(self.state.suppressed)
        self.assertIn(SessionState.ERRORED, session.transitions)
        self.assertNotIn(SessionState.DRAINING, session.transitions)

    def test_paste_failure_fails_session(self):
        self.injector.fail_paste = True

        result = self._session().run(iter(["a", "b"]))

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, InjectionError)
        self.assertFalse(self.state.suppressed)
        self.assertEqual(self.clipboard.text, "original")

    def test_cancel_stops_enqueuing_but_still_restores(self):
        session = self._session()

        def stream():
            yield "first"
            session.cancel()
            yield "second"
            yield "third"

        result = session.run(stream())

        self.assertTrue(result.success)
        self.assertEqual("".join(self.injector.pastes), "first")
        self.assertEqual(self.clipboard.text, "original")

    def test_drain_timeout_forces_release(self):
        self.injector.release_paste.clear()
        session = self._session(drain_timeout=0.05)

        result = session.run(iter(["slow"]))
        self.injector.release_paste.set()

        self.assertFalse(result.success)
        self.assertIn("did not finish", str(result.error))
        self.assertFalse(self.state.suppressed)
        self.assertEqual(self.clipboard.text, "original")

    def test_guard_in_use_fails_session_without_locking_monitoring(self):
        self.guard.begin_guard()

        with self.assertLogs("cliptranslator", level="ERROR"):
            result = self._session().run(iter(["x"]))

        self.assertFalse(result.success)
        self.assertFalse(self.state.suppressed)
        self.assertTrue(self._session().run(iter(["x"])).success)


if __name__ == "__main__":
    unittest.main()
