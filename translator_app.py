"""Tray utility that translates copied text and can stream it back in place."""

from __future__ import annotations

import argparse
import json
import logging
import os
import queue
import sys
import threading
import time
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Protocol, Sequence

import pyperclip
from PIL import Image, ImageDraw

from clipboard_monitor import DEFAULT_POLL_INTERVAL, ClipboardGuard, ClipboardWatcher, MonitorState
from hotkey_manager import (
    DEFAULT_HOTKEYS,
    BaseHotkeyService,
    HotkeyBinding,
    HotkeyEvent,
    RegisterHotKeyService,
    build_bindings_from_preferences,
)
from stream_replacer import (
    DEFAULT_DRAIN_TIMEOUT,
    DEFAULT_SETTLE_DELAY,
    ReplacementResult,
    ReplacementSession,
)
from text_injector import DEFAULT_INJECTOR_TIMEOUT, BaseTextInjector, create_text_injector
from translation_service import (
    DEFAULT_MODEL,
    DEFAULT_TARGET_LANGUAGE,
    ChatCompletionsClient,
    TranslationError,
    TranslationResult,
)


COPY_SETTLE_DELAY = 0.15  # Seconds for a synthesized copy to reach the clipboard.

LOG_FILE_NAME = "cliptranslator.log"
LOG_MAX_BYTES = 2_097_152
LOG_BACKUP_COUNT = 3

PREFERENCES_FILE = Path.home() / ".cliptranslator_preferences.json"
API_KEY_ENV_VAR = "CLIPTRANSLATOR_API_KEY"

DEFAULT_PREFERENCES = {
    "api_url": "",
    "api_key": "",
    "model_name": DEFAULT_MODEL,
    "target_lang": DEFAULT_TARGET_LANGUAGE,
    "auto_replace": False,
    "poll_interval": DEFAULT_POLL_INTERVAL,
    "settle_delay": DEFAULT_SETTLE_DELAY,
    "copy_settle_delay": COPY_SETTLE_DELAY,
    "injector_timeout": DEFAULT_INJECTOR_TIMEOUT,
    "drain_timeout": DEFAULT_DRAIN_TIMEOUT,
    "request_timeout": 30.0,
    "hotkeys": dict(DEFAULT_HOTKEYS),
}

_STRING_KEYS = ("api_url", "api_key", "model_name", "target_lang")
_DURATION_KEYS = (
    "poll_interval",
    "settle_delay",
    "copy_settle_delay",
    "injector_timeout",
    "drain_timeout",
    "request_timeout",
)

STATUS_COLORS = {
    "idle": (128, 128, 128, 255),
    "monitoring": (28, 114, 206, 255),
    "connected": (52, 168, 83, 255),
    "error": (217, 48, 37, 255),
}

logger = logging.getLogger("cliptranslator.app")


def configure_logging() -> logging.Logger:
    root = logging.getLogger("cliptranslator")
    if root.handlers:
        return root

    root.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    try:
        PREFERENCES_FILE.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            PREFERENCES_FILE.parent / LOG_FILE_NAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as exc:
        print(f"File logging disabled: {exc}", file=sys.stderr)
    else:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)
    return root


def _load_preferences() -> dict:
    try:
        data = json.loads(PREFERENCES_FILE.read_text(encoding="utf-8"))
    except (FileNotFoundError, json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _save_preferences(preferences: dict) -> None:
    try:
        PREFERENCES_FILE.parent.mkdir(parents=True, exist_ok=True)
        PREFERENCES_FILE.write_text(json.dumps(preferences, indent=2, ensure_ascii=False), encoding="utf-8")
    except OSError as exc:
        logger.warning("Could not save preferences: %s", exc)


def _save_target_language(target: str) -> None:
    data = _load_preferences()
    data["target_lang"] = target
    _save_preferences(data)


def load_settings(preferences: Optional[dict] = None) -> dict:
    """Merge stored preferences over the defaults, ignoring bad values."""

    data = _load_preferences() if preferences is None else preferences
    result = json.loads(json.dumps(DEFAULT_PREFERENCES))

    for key in _STRING_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            result[key] = value.strip()

    if isinstance(data.get("auto_replace"), bool):
        result["auto_replace"] = data["auto_replace"]

    for key in _DURATION_KEYS:
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
            result[key] = float(value)

    hotkeys = data.get("hotkeys")
    if isinstance(hotkeys, dict):
        for name in DEFAULT_HOTKEYS:
            combo = hotkeys.get(name)
            if isinstance(combo, str) and combo.strip():
                result["hotkeys"][name] = combo.strip()

    if not result["api_key"]:
        result["api_key"] = os.environ.get(API_KEY_ENV_VAR, "")
    return result


@dataclass
class TranslationRequest:
    text: str
    dest: str
    replace: bool = False
    capture_selection: bool = False


@dataclass
class OperationResult:
    success: bool
    message: str = ""


class TranslatorProtocol(Protocol):  # pragma: no cover - protocol is for type checking only
    def translate(self, text: str, dest: str) -> TranslationResult:
        """Translate text and return the whole result."""

    def stream_translate(self, text: str, dest: str) -> Iterable[str]:
        """Translate text, yielding fragments as they arrive."""

    def check_connection(self) -> None:
        """Raise ``TranslationError`` if the service is unreachable."""


class SystemTrayController:
    """Tray icon that mirrors the status and toggles monitoring."""

    def __init__(self, app: "ClipboardTranslatorApp") -> None:
        self._app = app
        self._icon = None
        self._status = "idle"

    def start(self) -> None:
        try:
            import pystray  # type: ignore
        except Exception as exc:  # pragma: no cover - depends on the desktop backend
            logger.warning("System tray icon is unavailable: %s", exc)
            return

        menu = pystray.Menu(
            pystray.MenuItem(
                "Start monitoring",
                self._on_start_monitoring,
                enabled=lambda item: not self._app.monitoring,
            ),
            pystray.MenuItem(
                "Stop monitoring",
                self._on_stop_monitoring,
                enabled=lambda item: self._app.monitoring,
            ),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem("Exit", self._on_exit),
        )
        self._icon = pystray.Icon(
            "cliptranslator", self._create_icon_image(self._status), "ClipTranslator", menu=menu
        )
        self._icon.run_detached()

    def stop(self) -> None:
        if self._icon is not None:
            self._icon.stop()
            self._icon = None

    def update_status(self, status: str, message: str) -> None:
        self._status = status
        if self._icon is None:
            return
        self._icon.icon = self._create_icon_image(status)
        self._icon.title = f"ClipTranslator - {message}" if message else "ClipTranslator"

    def notify(self, message: str) -> None:
        if self._icon is None or not getattr(self._icon, "HAS_NOTIFICATION", False):
            return
        self._icon.notify(message[:250], "ClipTranslator")

    def _on_start_monitoring(self, icon, _item) -> None:
        self._app.start_monitoring()
        icon.update_menu()

    def _on_stop_monitoring(self, icon, _item) -> None:
        self._app.stop_monitoring()
        icon.update_menu()

    def _on_exit(self, icon, _item) -> None:
        self._app.stop()
        icon.stop()

    @staticmethod
    def _create_icon_image(status: str) -> "Image.Image":
        size = 64
        image = Image.new("RGBA", (size, size), (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        draw.ellipse((8, 8, size - 8, size - 8), fill=STATUS_COLORS.get(status, STATUS_COLORS["idle"]))
        draw.rectangle((size // 2 - 4, 16, size // 2 + 4, size - 16), fill=(255, 255, 255, 255))
        return image


class ClipboardTranslatorApp:
    """Watches the clipboard, translates new text and optionally pastes it back."""

    def __init__(
        self,
        settings: Optional[dict] = None,
        *,
        translator_factory: Optional[Callable[[], TranslatorProtocol]] = None,
        clipboard_module=pyperclip,
        injector_factory: Optional[Callable[[], BaseTextInjector]] = None,
        display_callback: Optional[Callable[[str, str], None]] = None,
        status_callback: Optional[Callable[[str, str], None]] = None,
        hotkey_service_factory: Optional[
            Callable[[Sequence[HotkeyBinding], "queue.Queue[Optional[HotkeyEvent]]", logging.Logger], BaseHotkeyService]
        ] = None,
        hotkey_bindings: Optional[Sequence[HotkeyBinding]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = load_settings() if settings is None else load_settings(settings)
        self._translator_factory = translator_factory or self._default_translator_factory
        self._translator: Optional[TranslatorProtocol] = None
        self._translator_lock = threading.Lock()
        self._injector_factory = injector_factory or self._default_injector_factory
        self._injector: Optional[BaseTextInjector] = None
        self._injector_lock = threading.Lock()
        self._clipboard = clipboard_module
        self._display_callback = display_callback
        self._status_callback = status_callback
        self._sleep = sleep

        self._state = MonitorState()
        self._guard = ClipboardGuard(clipboard_module, self._state, sleep=sleep)
        self._watcher = ClipboardWatcher(
            clipboard_module,
            self._state,
            self._handle_clipboard_changed,
            interval=self.settings["poll_interval"],
        )
        self._clipboard_listeners: List[Callable[[str], None]] = []

        self._lock = threading.Lock()
        self._session_lock = threading.Lock()
        self._active_session: Optional[ReplacementSession] = None
        self._translating = False
        self._last_source_text: Optional[str] = None
        self._last_translated_text: Optional[str] = None
        self.status = "idle"
        self.status_message = ""

        self._request_queue: "queue.Queue[TranslationRequest]" = queue.Queue()
        self._hotkey_event_queue: "queue.Queue[Optional[HotkeyEvent]]" = queue.Queue()
        self._stop_event = threading.Event()
        self._worker_thread: Optional[threading.Thread] = None
        self._hotkey_dispatcher: Optional[threading.Thread] = None
        self._hotkey_service_factory = hotkey_service_factory
        self._hotkey_service: Optional[BaseHotkeyService] = None
        self._tray_controller: Optional[SystemTrayController] = None

        if hotkey_bindings is not None:
            self._hotkey_bindings = list(hotkey_bindings)
        elif sys.platform == "win32":
            try:
                self._hotkey_bindings = build_bindings_from_preferences(self.settings["hotkeys"])
            except (ValueError, ImportError) as exc:
                logger.error("Failed to build hotkey bindings: %s", exc)
                self._hotkey_bindings = []
        else:
            self._hotkey_bindings = []

    @property
    def translator(self) -> TranslatorProtocol:
        with self._translator_lock:
            if self._translator is None:
                self._translator = self._translator_factory()
            return self._translator

    @property
    def injector(self) -> BaseTextInjector:
        with self._injector_lock:
            if self._injector is None:
                self._injector = self._injector_factory()
            return self._injector

    @property
    def monitoring(self) -> bool:
        return self._watcher.watching

    def _default_translator_factory(self) -> TranslatorProtocol:
        return ChatCompletionsClient(
            self.settings["api_url"],
            self.settings["api_key"],
            model=self.settings["model_name"],
            timeout=self.settings["request_timeout"],
        )

    def _default_injector_factory(self) -> BaseTextInjector:
        return create_text_injector(timeout=self.settings["injector_timeout"])

    # Lifecycle --------------------------------------------------------

    def start(
        self,
        *,
        tray_controller: Optional[SystemTrayController] = None,
        monitor: bool = False,
    ) -> None:
        """Run until :meth:`stop` is called."""

        self._tray_controller = tray_controller
        self._ensure_background_threads()
        self._hotkey_service = self._create_hotkey_service()
        if self._hotkey_service is not None:
            try:
                self._hotkey_service.start()
                logger.info("Hotkey service started with %s", self._hotkey_service.describe_bindings())
            except Exception as exc:
                logger.exception("Failed to start hotkey service: %s", exc)
                self._hotkey_service.stop()
                self._hotkey_service = None

        if self._tray_controller is not None:
            self._tray_controller.start()
        if monitor:
            self.start_monitoring()
        if self.settings["api_url"] and self.settings["api_key"]:
            threading.Thread(target=self.check_connection, name="ConnectionCheck", daemon=True).start()

        print("ClipTranslator is running. Copy text to translate it.")
        try:
            self._stop_event.wait()
        except KeyboardInterrupt:  # pragma: no cover - manual console interruption
            self.stop()
        finally:
            self.stop_monitoring()
            if self._tray_controller is not None:
                self._tray_controller.stop()
            if self._hotkey_service is not None:
                self._hotkey_service.stop()
                logger.info("Hotkey service stopped")
                self._hotkey_service = None

    def stop(self) -> None:
        """Signal the application to shut down."""

        session = self._active_session
        if session is not None:
            session.cancel()
        self._stop_event.set()
        if self._hotkey_dispatcher is not None and self._hotkey_dispatcher.is_alive():
            self._hotkey_event_queue.put(None)

    def check_connection(self) -> OperationResult:
        try:
            self.translator.check_connection()
        except TranslationError as exc:
            self._set_status("error", f"API check failed: {exc}")
            return OperationResult(False, str(exc))
        self._set_status("connected", "API reachable")
        return OperationResult(True, "API reachable")

    # Control surface --------------------------------------------------

    def start_monitoring(self) -> OperationResult:
        if self._watcher.watching:
            return OperationResult(True, "Already monitoring")
        try:
            self._watcher.start()
        except RuntimeError as exc:
            logger.error("Could not start clipboard monitoring: %s", exc)
            self._set_status("error", f"Monitoring failed: {exc}")
            return OperationResult(False, str(exc))
        self._set_status("monitoring", "Watching the clipboard")
        return OperationResult(True, "Monitoring started")

    def stop_monitoring(self) -> OperationResult:
        if not self._watcher.watching:
            return OperationResult(True, "Not monitoring")
        self._watcher.stop()
        self._set_status("idle", "Monitoring stopped")
        return OperationResult(True, "Monitoring stopped")

    def add_clipboard_listener(self, callback: Callable[[str], None]) -> None:
        self._clipboard_listeners.append(callback)

    def run_replacement_session(self, stream: Iterable[str]) -> ReplacementResult:
        """Delete the focused selection and paste ``stream`` in its place."""

        if not self._session_lock.acquire(blocking=False):
            return ReplacementResult(
                success=False, error=RuntimeError("A replacement session is already running")
            )
        try:
            try:
                injector = self.injector
            except RuntimeError as exc:
                logger.error("Keystroke injection unavailable: %s", exc)
                result = ReplacementResult(success=False, error=exc)
            else:
                session = ReplacementSession(
                    self._guard,
                    injector,
                    settle_delay=self.settings["settle_delay"],
                    drain_timeout=self.settings["drain_timeout"] or None,
                )
                self._active_session = session
                result = session.run(stream)
        finally:
            self._active_session = None
            self._session_lock.release()

        if not result.success:
            self._set_status("error", result.message)
        return result

    def translate_and_replace(self, text: str, dest: Optional[str] = None) -> ReplacementResult:
        stream = self.translator.stream_translate(text, dest or self.settings["target_lang"])
        result = self.run_replacement_session(stream)
        if result.success:
            with self._lock:
                self._last_translated_text = result.text
            self._set_status("connected", "Translation pasted")
        return result

    def request_translation(self, text: str, *, replace: bool = False) -> bool:
        """Queue ``text`` unless it repeats the last translation or one is running."""

        if not text or not text.strip():
            return False
        with self._lock:
            if text in (self._last_source_text, self._last_translated_text):
                logger.debug("Skipping text that was just translated")
                return False
            if self._translating:
                logger.info("Translation already in progress; ignoring new text")
                return False
            self._translating = True
            self._last_source_text = text
        self._request_queue.put(
            TranslationRequest(text=text, dest=self.settings["target_lang"], replace=replace)
        )
        return True

    # Event handling ---------------------------------------------------

    def _handle_clipboard_changed(self, text: str) -> None:
        for listener in list(self._clipboard_listeners):
            try:
                listener(text)
            except Exception as exc:
                logger.exception("Clipboard listener failed: %s", exc)
        self.request_translation(text, replace=self.settings["auto_replace"])

    def _handle_translate_hotkey(self) -> None:
        try:
            text = self._clipboard.paste()
        except Exception as exc:
            logger.error("Failed to read clipboard: %s", exc)
            return
        self.request_translation(text)

    def _handle_replace_hotkey(self) -> None:
        # The copy runs on the worker so it cannot overlap a queued session.
        self._request_queue.put(
            TranslationRequest(
                text="", dest=self.settings["target_lang"], replace=True, capture_selection=True
            )
        )

    def _capture_selection(self) -> None:
        """Copy the focused selection and queue it for replacement.

        Holds the session lock so no paste sequence owns the clipboard, and
        suppresses the watcher so it does not claim the copied text first.
        """

        text: Optional[str] = None
        with self._session_lock:
            self._state.suppress()
            try:
                self.injector.send_copy()
                self._sleep(self.settings["copy_settle_delay"])
                text = self._clipboard.paste()
            except RuntimeError as exc:
                self._set_status("error", f"Could not capture selection: {exc}")
            except Exception as exc:
                logger.error("Failed to read clipboard: %s", exc)
            finally:
                self._state.release(text)
        if text and text.strip():
            self.request_translation(text, replace=True)

    def _ensure_background_threads(self) -> None:
        if self._worker_thread is None or not self._worker_thread.is_alive():
            self._worker_thread = threading.Thread(
                target=self._process_requests, name="TranslationWorker", daemon=True
            )
            self._worker_thread.start()
        if self._hotkey_dispatcher is None or not self._hotkey_dispatcher.is_alive():
            self._hotkey_dispatcher = threading.Thread(
                target=self._dispatch_hotkey_events, name="HotkeyDispatcher", daemon=True
            )
            self._hotkey_dispatcher.start()

    def _create_hotkey_service(self) -> Optional[BaseHotkeyService]:
        if not self._hotkey_bindings:
            logger.warning("No hotkey bindings available; global hotkeys are disabled")
            return None
        if self._hotkey_service_factory is not None:
            factory = self._hotkey_service_factory
        else:
            factory = RegisterHotKeyService
        try:
            return factory(self._hotkey_bindings, self._hotkey_event_queue, logging.getLogger("cliptranslator.hotkeys"))
        except Exception as exc:
            logger.exception("Failed to create hotkey service: %s", exc)
            return None

    def _dispatch_hotkey_events(self) -> None:
        while True:
            event = self._hotkey_event_queue.get()
            if event is None:
                break
            try:
                self._process_hotkey_event(event)
            except Exception as exc:  # pragma: no cover - logging runtime issues
                logger.exception("Error while processing hotkey event: %s", exc)

    def _process_hotkey_event(self, event: HotkeyEvent) -> None:
        if event.name == "translate":
            self._handle_translate_hotkey()
        elif event.name == "replace":
            self._handle_replace_hotkey()
        else:
            logger.debug("Unknown hotkey event: %s", event.name)

    def _process_requests(self) -> None:
        while True:
            request = self._request_queue.get()
            try:
                self._handle_request(request)
            except Exception as exc:  # pragma: no cover - logging runtime issues
                logger.exception("Error while processing translation request: %s", exc)
            finally:
                self._request_queue.task_done()

    def _handle_request(self, request: TranslationRequest) -> None:
        if request.capture_selection:
            self._capture_selection()
        else:
            self._process_single_request(request)

    def _process_single_request(self, request: TranslationRequest) -> None:
        try:
            if request.replace:
                self.translate_and_replace(request.text, request.dest)
                return
            try:
                translation = self.translator.translate(request.text.strip(), dest=request.dest)
            except TranslationError as exc:
                self._set_status("error", f"Translation failed: {exc}")
                self._render_translation(request.text, f"Error during translation: {exc}")
                return
            with self._lock:
                self._last_translated_text = translation.text
            self._set_status("connected", "Translation ready")
            self._render_translation(request.text, translation.text)
        finally:
            with self._lock:
                self._translating = False

    def _render_translation(self, original: str, translated: str) -> None:
        if self._display_callback is not None:
            self._display_callback(original, translated)
            return
        logger.info("Translation: %r -> %r", original, translated)
        if self._tray_controller is not None:
            self._tray_controller.notify(translated)

    def _set_status(self, status: str, message: str) -> None:
        self.status = status
        self.status_message = message
        log = logger.error if status == "error" else logger.info
        log("Status %s: %s", status, message)
        if self._status_callback is not None:
            self._status_callback(status, message)
        if self._tray_controller is not None:
            self._tray_controller.update_status(status, message)
            if status == "error":
                self._tray_controller.notify(message)


def parse_args(argv: Optional[Sequence[str]] = None, settings: Optional[dict] = None) -> argparse.Namespace:
    settings = settings or load_settings()
    parser = argparse.ArgumentParser(description="Translate copied text with a chat-completions API.")
    parser.add_argument(
        "--target",
        default=settings["target_lang"],
        help="Target language (default: last saved or English).",
    )
    parser.add_argument("--api-url", default=None, help="Chat completions endpoint URL.")
    parser.add_argument("--model", default=None, help="Model name to request.")
    parser.add_argument(
        "--monitor",
        action="store_true",
        help="Start watching the clipboard immediately.",
    )
    parser.add_argument(
        "--auto-replace",
        action="store_true",
        default=None,
        help="Paste translations of copied text over the selection instead of displaying them.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    configure_logging()
    settings = load_settings()
    args = parse_args(argv, settings)
    settings["target_lang"] = args.target
    if args.api_url:
        settings["api_url"] = args.api_url
    if args.model:
        settings["model_name"] = args.model
    if args.auto_replace:
        settings["auto_replace"] = True
    _save_target_language(args.target)

    app = ClipboardTranslatorApp(settings)
    tray_controller = SystemTrayController(app)
    app.start(tray_controller=tray_controller, monitor=args.monitor)


if __name__ == "__main__":
    main()
