"""Keyboard-driven manual control of a running bridge.

``KeyboardInput`` owns the terminal for the duration of a ``with`` block and
turns key presses into an async stream. ``ManualTrigger`` maps those presses
onto the bridge: send a ping, or report that the user wants to quit so the
caller can release the keyboard and then stop the bridge.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
import threading
from enum import Enum, auto
from typing import AsyncIterator, Optional, Protocol, TextIO

logger = logging.getLogger("udpmqtt.bridge.trigger")

KEY_SPACE = " "
KEY_ESC = "\x1b"
KEY_CTRL_C = "\x03"

PING_KEYS = {KEY_SPACE}
QUIT_KEYS = {"q", "Q", KEY_ESC, KEY_CTRL_C}

_POLL_INTERVAL = 0.1
_ESCAPE_SEQUENCE_GAP = 0.02


class Command(Enum):
    PING = auto()
    QUIT = auto()


def classify_key(key: str) -> Optional[Command]:
    """Map a key press to a command, or None if the key is unbound."""
    if key in PING_KEYS:
        return Command.PING
    if key in QUIT_KEYS:
        return Command.QUIT
    return None


class Pingable(Protocol):
    async def send_ping(self): ...


class KeyboardInput:
    """Scoped raw key reader.

    On POSIX terminals the tty is put in cbreak mode on enter and restored on
    exit, whatever the exit path. A daemon thread does the blocking reads and
    hands keys to the event loop. Must be entered from a running loop.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream if stream is not None else sys.stdin
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._saved_attrs = None
        self._fd: Optional[int] = None

    def __enter__(self) -> "KeyboardInput":
        self._loop = asyncio.get_running_loop()
        if os.name == "nt":
            target = self._read_windows
        else:
            self._fd = self._stream.fileno()
            self._enter_cbreak()
            target = self._read_posix
        self._thread = threading.Thread(target=target, name="keyboard-input", daemon=True)
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Stop reading and give the terminal back."""
        self._stop.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)
        self._thread = None
        self._restore()

    async def keys(self) -> AsyncIterator[str]:
        """Yield key presses until input is closed or hits EOF."""
        while True:
            key = await self._queue.get()
            if key is None:
                return
            yield key

    # --- POSIX ---

    def _enter_cbreak(self) -> None:
        if not os.isatty(self._fd):
            return
        import termios
        import tty

        self._saved_attrs = termios.tcgetattr(self._fd)
        tty.setcbreak(self._fd)

    def _restore(self) -> None:
        if self._saved_attrs is None:
            return
        import termios

        termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attrs)
        self._saved_attrs = None

    def _read_posix(self) -> None:
        import select

        def readable(timeout: float) -> bool:
            ready, _, _ = select.select([self._fd], [], [], timeout)
            return bool(ready)

        while not self._stop.is_set():
            if not readable(_POLL_INTERVAL):
                continue
            chunk = os.read(self._fd, 1)
            if not chunk:
                self._post(None)
                return
            key = chunk.decode("utf-8", errors="replace")
            if key == KEY_ESC and readable(_ESCAPE_SEQUENCE_GAP):
                # Arrow/function keys arrive as ESC-prefixed sequences
                while readable(_ESCAPE_SEQUENCE_GAP):
                    os.read(self._fd, 1)
                continue
            self._post(key)

    # --- Windows ---

    def _read_windows(self) -> None:
        import msvcrt
        import time

        while not self._stop.is_set():
            if not msvcrt.kbhit():
                time.sleep(_POLL_INTERVAL / 2)
                continue
            key = msvcrt.getwch()
            if key in ("\x00", "\xe0"):
                msvcrt.getwch()  # function/arrow key scan code
                continue
            self._post(key)

    def _post(self, key: Optional[str]) -> None:
        if self._stop.is_set() or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, key)
        except RuntimeError:
            # loop already closed
            self._stop.set()


class ManualTrigger:
    """Turns key presses into bridge commands.

    Space sends a ping; ``q``, Esc or Ctrl+C ends ``run``. Stopping the
    bridge is left to the caller, after the keyboard has been released.
    """

    def __init__(self, bridge: Pingable, keys: AsyncIterator[str]):
        self._bridge = bridge
        self._keys = keys

    async def run(self) -> bool:
        """Process key presses until a quit key is pressed.

        Returns:
            True when the user asked to quit, False when the key stream ended.

        Raises:
            CreationError: a ping envelope could not be built.
        """
        async for key in self._keys:
            command = classify_key(key)
            if command is Command.PING:
                logger.info("Space bar pressed, sending ping package via UDP...")
                await self._bridge.send_ping()
            elif command is Command.QUIT:
                logger.info("Exiting...")
                return True
        logger.info("Keyboard input closed")
        return False
