"""Global hotkeys registered through the Win32 RegisterHotKey API."""

from __future__ import annotations

import logging
import queue
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence


DEFAULT_HOTKEYS = {
    "translate": "Ctrl+Shift+T",
    "replace": "Ctrl+Shift+R",
}

_KEY_ALIASES = {
    "ESC": "VK_ESCAPE",
    "ESCAPE": "VK_ESCAPE",
    "TAB": "VK_TAB",
    "SPACE": "VK_SPACE",
    "ENTER": "VK_RETURN",
    "RETURN": "VK_RETURN",
    "BACKSPACE": "VK_BACK",
    "DELETE": "VK_DELETE",
    "INSERT": "VK_INSERT",
    "HOME": "VK_HOME",
    "END": "VK_END",
    "PAGEUP": "VK_PRIOR",
    "PAGEDOWN": "VK_NEXT",
}


@dataclass(frozen=True)
class HotkeyBinding:
    name: str
    modifiers: int
    virtual_key: int
    display: str


@dataclass(frozen=True)
class HotkeyEvent:
    name: str
    timestamp: float


class BaseHotkeyService:
    """Protocol-like base class for hotkey backends."""

    def start(self) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError

    def stop(self) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError

    def describe_bindings(self) -> Sequence[str]:
        raise NotImplementedError


class RegisterHotKeyService(BaseHotkeyService):
    """Receives WM_HOTKEY on a hidden window and forwards events to a queue."""

    _CLASS_NAME = "ClipTranslatorHotkeyWindow"

    def __init__(
        self,
        bindings: Sequence[HotkeyBinding],
        event_queue: "queue.Queue[Optional[HotkeyEvent]]",
        logger: logging.Logger,
        *,
        time_provider: Callable[[], float] = time.perf_counter,
    ) -> None:
        if sys.platform != "win32":  # pragma: no cover - exercised on Windows
            raise RuntimeError("RegisterHotKeyService is only supported on Windows")

        self._bindings = list(bindings)
        self._event_queue = event_queue
        self._logger = logger
        self._time_provider = time_provider
        self._thread: Optional[threading.Thread] = None
        self._thread_id: Optional[int] = None
        self._hwnd: Optional[int] = None
        self._ready = threading.Event()
        self._id_map: Dict[int, HotkeyBinding] = {}

    def start(self) -> None:  # pragma: no cover - Windows message loop
        if self._thread and self._thread.is_alive():
            return
        self._ready.clear()
        self._thread = threading.Thread(target=self._run_message_loop, name="HotkeyThread", daemon=True)
        self._thread.start()
        if not self._ready.wait(timeout=10):
            raise RuntimeError("Hotkey service failed to initialize within timeout")
        if self._hwnd is None:
            raise RuntimeError("Hotkey window could not be created")

    def stop(self) -> None:  # pragma: no cover - Windows message loop
        if self._hwnd is not None:
            import win32api  # type: ignore
            import win32con  # type: ignore

            try:
                win32api.PostMessage(self._hwnd, win32con.WM_CLOSE, 0, 0)
            except win32api.error as exc:
                self._logger.warning("Failed to close hotkey window: %s", exc)
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._thread = None
        self._hwnd = None

    def describe_bindings(self) -> Sequence[str]:
        return [f"{binding.name}: {binding.display}" for binding in self._bindings]

    def _run_message_loop(self) -> None:  # pragma: no cover - Windows message loop
        import win32api  # type: ignore
        import win32con  # type: ignore
        import win32gui  # type: ignore

        try:
            hinstance = win32api.GetModuleHandle(None)
            wndclass = win32gui.WNDCLASS()
            wndclass.hInstance = hinstance
            wndclass.lpszClassName = self._CLASS_NAME
            wndclass.lpfnWndProc = {
                win32con.WM_HOTKEY: self._on_hotkey,
                win32con.WM_CLOSE: self._on_close,
                win32con.WM_DESTROY: lambda *_: win32gui.PostQuitMessage(0) or 0,
            }
            try:
                win32gui.RegisterClass(wndclass)
            except win32gui.error as exc:
                self._logger.debug("Hotkey window class already registered: %s", exc)

            self._hwnd = win32gui.CreateWindowEx(
                win32con.WS_EX_TOOLWINDOW, self._CLASS_NAME, self._CLASS_NAME,
                0, 0, 0, 0, 0, 0, 0, hinstance, None,
            )
            for hotkey_id, binding in enumerate(self._bindings, start=1):
                modifiers = binding.modifiers | getattr(win32con, "MOD_NOREPEAT", 0)
                try:
                    win32api.RegisterHotKey(self._hwnd, hotkey_id, modifiers, binding.virtual_key)
                except win32api.error as exc:
                    self._logger.error("Failed to register hotkey %s (%s): %s", binding.name, binding.display, exc)
                    continue
                self._id_map[hotkey_id] = binding
                self._logger.info("Registered hotkey '%s' as %s", binding.name, binding.display)
        except Exception as exc:
            self._logger.exception("Hotkey window setup failed: %s", exc)
            self._hwnd = None
            self._ready.set()
            return

        self._ready.set()
        try:
            win32gui.PumpMessages()
        finally:
            self._hwnd = None

    def _on_close(self, hwnd: int, msg: int, wparam: int, lparam: int) -> int:  # pragma: no cover - Windows only
        import win32api  # type: ignore
        import win32gui  # type: ignore

        for hotkey_id in list(self._id_map):
            try:
                win32api.UnregisterHotKey(hwnd, hotkey_id)
            except win32api.error as exc:
                self._logger.debug("Failed to unregister hotkey %s: %s", hotkey_id, exc)
        self._id_map.clear()
        win32gui.DestroyWindow(hwnd)
        return 0

    def _on_hotkey(self, hwnd: int, msg: int, wparam: int, lparam: int) -> int:
        binding = self._id_map.get(wparam)
        if binding is None:
            return 0
        try:
            self._event_queue.put_nowait(HotkeyEvent(binding.name, self._time_provider()))
        except queue.Full:
            self._logger.warning("Dropping hotkey event for %s (queue full)", binding.name)
        return 0


def _parse_virtual_key(win32con: object, token: str) -> Optional[int]:
    upper = token.upper()
    if len(upper) == 1 and ("A" <= upper <= "Z" or "0" <= upper <= "9"):
        return ord(upper)
    name = _KEY_ALIASES.get(upper, upper if upper.startswith("VK_") else f"VK_{upper}")
    return getattr(win32con, name, None)


def build_hotkey_binding(
    name: str,
    combo: str,
    *,
    win32con_module: Optional[object] = None,
) -> HotkeyBinding:
    """Parse a combo such as ``"Ctrl+Shift+R"`` into a :class:`HotkeyBinding`."""

    if win32con_module is None:
        import win32con  # type: ignore

        win32con_module = win32con

    modifier_flags = {
        "ctrl": ("MOD_CONTROL", "Ctrl"),
        "control": ("MOD_CONTROL", "Ctrl"),
        "alt": ("MOD_ALT", "Alt"),
        "shift": ("MOD_SHIFT", "Shift"),
        "win": ("MOD_WIN", "Win"),
    }

    modifiers = 0
    labels: List[str] = []
    virtual_key: Optional[int] = None
    for token in (part.strip() for part in combo.replace("-", "+").split("+")):
        if not token:
            continue
        flag = modifier_flags.get(token.lower())
        if flag is not None:
            modifiers |= getattr(win32con_module, flag[0])
            labels.append(flag[1])
            continue
        if virtual_key is not None:
            raise ValueError(f"Hotkey {combo!r} has more than one non-modifier key")
        virtual_key = _parse_virtual_key(win32con_module, token)
        if virtual_key is None:
            raise ValueError(f"Unknown key token: {token!r}")
        labels.append(token.upper())

    if virtual_key is None:
        raise ValueError(f"Hotkey combination is missing a non-modifier key: {combo!r}")
    return HotkeyBinding(name=name, modifiers=modifiers, virtual_key=virtual_key, display="+".join(labels))


def build_bindings_from_preferences(
    hotkeys: Mapping[str, object],
    *,
    win32con_module: Optional[object] = None,
) -> List[HotkeyBinding]:
    bindings = []
    for name, default_combo in DEFAULT_HOTKEYS.items():
        combo = hotkeys.get(name)
        if not isinstance(combo, str) or not combo.strip():
            combo = default_combo
        bindings.append(build_hotkey_binding(name, combo, win32con_module=win32con_module))
    return bindings
