import threading
import unittest

from clipboard_monitor import (
    ClipboardGuard,
    ClipboardWatcher,
    GuardMisuseError,
    MonitorState,
)


class FakeClipboard:
    def __init__(self, text: str = "") -> None:
        self.text = text
        self.writes = []

    def paste(self) -> str:
        return self.text

    def copy(self, text: str) -> None:
        self.writes.append(text)
        self.text = text


class BrokenClipboard(FakeClipboard):
    def paste(self) -> str:
        raise RuntimeError("clipboard locked")


class WatcherTestMixin:
    def _create(self, text: str = ""):
        clipboard = FakeClipboard(text)
        state = MonitorState()
        events = []
        watcher = ClipboardWatcher(clipboard, state, events.append, interval=0.01)
        guard = ClipboardGuard(clipboard, state, sleep=lambda _seconds: None)
        return clipboard, state, events, watcher, guard


class ClipboardWatcherTests(WatcherTestMixin, unittest.TestCase):
    def test_reports_each_distinct_change_once(self):
        clipboard, _state, events, watcher, _guard = self._create()

        clipboard.text = "hola"
        watcher.poll_once()
        clipboard.text = "hola"
        watcher.poll_once()
        clipboard.text = "  "
        watcher.poll_once()
        clipboard.text = ""
        watcher.poll_once()

        self.assertEqual(events, ["hola"])

    def test_emits_raw_text_with_surrounding_whitespace(self):
        clipboard, _state, events, watcher, _guard = self._create()

        clipboard.text = "  hello\n"
        watcher.poll_once()

        self.assertEqual(events, ["  hello\n"])

    def test_no_events_while_suppressed(self):
        clipboard, state, events, watcher, _guard = self._create("before")

        state.suppress()
        for text in ("one", "two", "three", "before"):
            clipboard.text = text
            watcher.poll_once()

        self.assertEqual(events, [])
        self.assertEqual(state.last_observed_text, "")

    def test_read_failure_skips_tick(self):
        clipboard = BrokenClipboard()
        events = []
        watcher = ClipboardWatcher(clipboard, MonitorState(), events.append)

        with self.assertLogs("cliptranslator.clipboard", level="WARNING"):
            self.assertIsNone(watcher.poll_once())
        self.assertEqual(events, [])

    def test_start_ignores_existing_content_and_detects_new_text(self):
        clipboard, _state, _events, _watcher, _guard = self._create("already here")
        received = threading.Event()
        seen = []

        def on_change(text):
            seen.append(text)
            received.set()

        watcher = ClipboardWatcher(clipboard, _state, on_change, interval=0.01)
        watcher.start()
        try:
            clipboard.text = "hola"
            self.assertTrue(received.wait(timeout=2))
        finally:
            watcher.stop()

        self.assertEqual(seen, ["hola"])

    def test_start_twice_runs_one_thread_and_stop_is_idempotent(self):
        _clipboard, _state, _events, watcher, _guard = self._create()

        watcher.start()
        first_thread = watcher._thread
        watcher.start()
        self.assertIs(watcher._thread, first_thread)
        self.assertTrue(watcher.watching)

        watcher.stop()
        watcher.stop()
        self.assertFalse(watcher.watching)
        self.assertFalse(first_thread.is_alive())

    def test_restart_while_listener_blocks_leaves_one_polling_thread(self):
        clipboard = FakeClipboard("")
        state = MonitorState()
        entered = threading.Event()
        release = threading.Event()
        reported = threading.Event()
        events = []

        def listener(text):
            events.append(text)
            if text == "a":
                entered.set()
                release.wait(timeout=5)
            else:
                reported.set()

        watcher = ClipboardWatcher(clipboard, state, listener, interval=0.01)
        watcher.start()
        old_thread = watcher._thread
        try:
            clipboard.text = "a"
            self.assertTrue(entered.wait(timeout=2))

            watcher.stop()
            watcher.start()
            new_thread = watcher._thread
            release.set()
            old_thread.join(timeout=2)

            self.assertFalse(old_thread.is_alive())
            self.assertTrue(new_thread.is_alive())
            self.assertIsNot(old_thread, new_thread)
            clipboard.text = "b"
            self.assertTrue(reported.wait(timeout=2))
        finally:
            release.set()
            watcher.stop()

        self.assertEqual(events, ["a", "b"])


class ClipboardGuardTests(WatcherTestMixin, unittest.TestCase):
    def test_restore_returns_snapshot_and_is_not_reported(self):
        clipboard, state, events, watcher, guard = self._create("user text")
        watcher.poll_once()
        events.clear()

        snapshot = guard.begin_guard()
        self.assertTrue(state.suppressed)
        guard.stage_content("Bonjour")
        watcher.poll_once()
        guard.end_guard(snapshot, delay=0.1)

        self.assertEqual(snapshot.text, "user text")
        self.assertEqual(clipboard.text, "user text")
        self.assertEqual(state.last_observed_text, "user text")
        self.assertFalse(state.suppressed)
        watcher.poll_once()
        self.assertEqual(events, [])

    def test_restore_after_settle_delay(self):
        clipboard = FakeClipboard("saved")
        sleeps = []
        guard = ClipboardGuard(clipboard, MonitorState(), sleep=sleeps.append)

        snapshot = guard.begin_guard()
        guard.stage_content("staged")
        guard.end_guard(snapshot, delay=0.3)

        self.assertEqual(sleeps, [0.3])
        self.assertEqual(clipboard.writes, ["staged", "saved"])

    def test_double_begin_is_misuse_and_resets_suppression(self):
        _clipboard, state, _events, _watcher, guard = self._create("x")
        guard.begin_guard()

        with self.assertLogs("cliptranslator.clipboard", level="ERROR"):
            with self.assertRaises(GuardMisuseError):
                guard.begin_guard()

        self.assertFalse(state.suppressed)
        self.assertFalse(guard.active)
        snapshot = guard.begin_guard()
        guard.end_guard(snapshot)
        self.assertFalse(state.suppressed)

    def test_end_without_begin_is_misuse(self):
        _clipboard, state, _events, _watcher, guard = self._create("x")
        other = ClipboardGuard(FakeClipboard("y"), MonitorState())
        foreign = other.begin_guard()

        with self.assertRaises(GuardMisuseError):
            guard.end_guard(foreign)
        self.assertFalse(state.suppressed)

    def test_stage_outside_guard_is_misuse(self):
        clipboard, _state, _events, _watcher, guard = self._create("x")

        with self.assertRaises(GuardMisuseError):
            guard.stage_content("oops")
        self.assertEqual(clipboard.text, "x")

    def test_failed_snapshot_read_leaves_monitoring_enabled(self):
        state = MonitorState()
        guard = ClipboardGuard(BrokenClipboard(), state)

        with self.assertRaises(RuntimeError):
            guard.begin_guard()

        self.assertFalse(state.suppressed)
        self.assertFalse(guard.active)

    def test_failed_restore_still_lifts_suppression(self):
        class FailingRestore(FakeClipboard):
            def copy(self, text):
                if text == "saved":
                    raise RuntimeError("clipboard locked")
                super().copy(text)

        clipboard = FailingRestore("saved")
        state = MonitorState()
        guard = ClipboardGuard(clipboard, state)
        snapshot = guard.begin_guard()
        guard.stage_content("staged")

        with self.assertRaises(RuntimeError):
            guard.end_guard(snapshot)

        self.assertFalse(state.suppressed)
        self.assertEqual(state.last_observed_text, "staged")


if __name__ == "__main__":
    unittest.main()
