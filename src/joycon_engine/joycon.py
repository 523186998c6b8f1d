"""
JoyCon

User-facing handle for one connected Joy-Con: the latest calibrated State,
rumble, and lifecycle.
"""

import queue
from typing import Callable, Optional, Tuple

from .connection import Connection
from .controller_constants import Side
from .errors import JoyConError
from .input_processor import State
from .rumble import NEUTRAL_RUMBLE, encode_rumble
from .settings_manager import EngineSettings
from .transport import Transport


class JoyCon:
    """One Joy-Con. Build it with :meth:`create`."""

    def __init__(self, side: Side):
        self.side = side
        self._states: queue.Queue = queue.Queue(maxsize=1)
        self._latest: Optional[State] = None
        self._connection: Optional[Connection] = None
        self._disposed = False

    @classmethod
    def create(cls, transport: Transport, settings: Optional[EngineSettings] = None,
               threaded: bool = True,
               on_status: Optional[Callable[[str], None]] = None,
               on_progress: Optional[Callable[[int], None]] = None,
               on_disconnect: Optional[Callable[[], None]] = None) -> 'JoyCon':
        """Connect to the Joy-Con behind ``transport`` and run bring-up.

        Raises ValueError (leaving the transport untouched) when the product ID
        is not a Joy-Con. Any bring-up failure closes the transport before the
        error is raised.

        ``on_disconnect`` is called from the reader thread when the transport
        is lost without dispose() having been called.
        """
        side = Side.from_product_id(transport.product_id)
        joycon = cls(side)
        connection = Connection(transport, side, settings=settings,
                                on_state=joycon._publish,
                                on_status=on_status, on_progress=on_progress,
                                on_disconnect=on_disconnect)
        connection.open(threaded=threaded)
        joycon._connection = connection
        return joycon

    @property
    def connection(self) -> Optional[Connection]:
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and self._connection.is_ready

    @property
    def calibration(self):
        return self._connection.calibration if self._connection else None

    # ── State ────────────────────────────────────────────────────────

    def _publish(self, state: State):
        # Single producer; drop the unread state so the slot holds the newest
        while True:
            try:
                self._states.put_nowait(state)
                return
            except queue.Full:
                try:
                    self._states.get_nowait()
                except queue.Empty:
                    pass

    def latest_state(self) -> Optional[State]:
        """Newest published state, or None if none arrived yet. Never blocks."""
        try:
            self._latest = self._states.get_nowait()
        except queue.Empty:
            pass
        return self._latest

    def try_get_state(self) -> Tuple[bool, Optional[State]]:
        state = self.latest_state()
        return state is not None, state

    def poll_once(self) -> bool:
        """Pull model: process at most one report. False once closed."""
        if self._connection is None:
            return False
        if self._connection.threaded:
            raise JoyConError("poll_once() needs a Joy-Con created with threaded=False")
        return self._connection.poll_once()

    # ── Output ───────────────────────────────────────────────────────

    def rumble(self, low_freq: float, high_freq: float, low_amp: float, high_amp: float):
        self._require_connection().send_rumble(
            encode_rumble(low_freq, high_freq, low_amp, high_amp))

    def stop_rumble(self):
        self._require_connection().send_rumble(NEUTRAL_RUMBLE)

    def send_subcommand(self, subcommand: int, payload: bytes = b'',
                        timeout: Optional[float] = None):
        return self._require_connection().send_subcommand(subcommand, payload, timeout)

    def _require_connection(self) -> Connection:
        if self._connection is None or self._disposed:
            raise JoyConError("Joy-Con is disposed")
        return self._connection

    # ── Lifecycle ────────────────────────────────────────────────────

    def dispose(self):
        """Tear down and release the device. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        if self._connection is not None:
            self._connection.close()
        while True:
            try:
                self._states.get_nowait()
            except queue.Empty:
                break
        self._latest = None

    def __enter__(self) -> 'JoyCon':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()

    def __repr__(self):
        status = 'disposed' if self._disposed else (
            self._connection.state.value if self._connection else 'new')
        return f"<JoyCon {self.side.value} {status}>"
