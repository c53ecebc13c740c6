"""Keystroke injection into the focused application via OS automation tools."""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
from typing import Callable, Optional, Sequence


logger = logging.getLogger("cliptranslator.injector")

DEFAULT_INJECTOR_TIMEOUT = 5.0

Command = Sequence[str]


class InjectionError(RuntimeError):
    """Raised when an automation process fails to launch or exits non-zero."""

    def __init__(
        self,
        message: str,
        *,
        returncode: Optional[int] = None,
        launch_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.launch_error = launch_error


class BaseTextInjector:
    """Capability interface for synthesizing editing keystrokes."""

    def send_delete(self) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError

    def send_paste(self) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError

    def send_copy(self) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError


def _powershell(keys: str) -> list[str]:
    script = (
        "Add-Type -AssemblyName System.Windows.Forms;"
        f'[System.Windows.Forms.SendKeys]::SendWait("{keys}")'
    )
    return ["powershell", "-NoProfile", "-ExecutionPolicy", "Bypass", "-Command", script]


def _osascript(statement: str) -> list[str]:
    return ["osascript", "-e", f'tell application "System Events" to {statement}']


def _xdotool(keys: str) -> list[str]:
    return ["xdotool", "key", "--clearmodifiers", keys]


PLATFORM_COMMANDS = {
    "win32": {
        "delete": _powershell("{DELETE}"),
        "paste": _powershell("^v"),
        "copy": _powershell("^c"),
    },
    "darwin": {
        "delete": _osascript("key code 51"),
        "paste": _osascript('keystroke "v" using command down'),
        "copy": _osascript('keystroke "c" using command down'),
    },
    "linux": {
        "delete": _xdotool("Delete"),
        "paste": _xdotool("ctrl+v"),
        "copy": _xdotool("ctrl+c"),
    },
}


class CommandTextInjector(BaseTextInjector):
    """Runs one short-lived child process per keystroke.

    Each call blocks the calling thread until the process exits or the
    timeout elapses. Calls must not overlap; ordering is the caller's job,
    so an overlapping call fails immediately instead of queueing.
    """

    def __init__(
        self,
        delete_command: Command,
        paste_command: Command,
        copy_command: Optional[Command] = None,
        *,
        timeout: float = DEFAULT_INJECTOR_TIMEOUT,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self._commands = {
            "delete": list(delete_command),
            "paste": list(paste_command),
        }
        if copy_command is not None:
            self._commands["copy"] = list(copy_command)
        self.timeout = timeout
        self._runner = runner
        self._busy = threading.Lock()

    def send_delete(self) -> None:
        self._run("delete")

    def send_paste(self) -> None:
        self._run("paste")

    def send_copy(self) -> None:
        self._run("copy")

    def _run(self, action: str) -> None:
        command = self._commands.get(action)
        if command is None:
            raise InjectionError(f"No command configured for '{action}'")
        if not self._busy.acquire(blocking=False):
            raise InjectionError(f"Cannot send '{action}' while another keystroke is in flight")
        try:
            kwargs = {"capture_output": True, "timeout": self.timeout}
            if sys.platform == "win32":  # pragma: no cover - platform specific
                kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0)
            try:
                completed = self._runner(command, **kwargs)
            except subprocess.TimeoutExpired as exc:
                raise InjectionError(
                    f"'{action}' keystroke timed out after {self.timeout:.1f}s", launch_error=exc
                ) from exc
            except OSError as exc:
                raise InjectionError(
                    f"Failed to launch '{command[0]}' for '{action}': {exc}", launch_error=exc
                ) from exc
        finally:
            self._busy.release()

        if completed.returncode != 0:
            logger.debug("'%s' stderr: %r", action, completed.stderr)
            raise InjectionError(
                f"'{action}' keystroke exited with code {completed.returncode}",
                returncode=completed.returncode,
            )


def create_text_injector(
    platform: Optional[str] = None,
    *,
    timeout: float = DEFAULT_INJECTOR_TIMEOUT,
) -> CommandTextInjector:
    """Create the injector matching ``platform`` (defaults to ``sys.platform``)."""

    platform = platform or sys.platform
    key = "linux" if platform.startswith("linux") else platform
    commands = PLATFORM_COMMANDS.get(key)
    if commands is None:
        raise RuntimeError(f"Keystroke injection is not supported on {platform!r}")
    return CommandTextInjector(
        commands["delete"],
        commands["paste"],
        commands["copy"],
        timeout=timeout,
    )
