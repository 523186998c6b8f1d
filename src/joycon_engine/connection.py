"""
Connection

Binds a JoyConProtocol to a Transport. Either a daemon read thread drives
it (push model) or the host calls ``poll_once()`` itself (pull model).

Every protocol step and every transport write happens under one lock, so
output reports never interleave. Transport reads happen outside it.
"""

import concurrent.futures
import logging
import threading
import time
from typing import Callable, Optional

from .controller_constants import REPORT_LENGTH, Side
from .errors import CommandTimeout, JoyConError, TransportError
from .input_processor import State
from .protocol import (
    TEARDOWN_STEPS, BringUpProgress, ConnectionState, ConnectionStateChanged, JoyConProtocol,
    StateReceived, subcommand_name,
)
from .report_codec import SubCommandReply
from .settings_manager import EngineSettings
from .transport import Transport

log = logging.getLogger(__name__)

# Extra time allowed on top of protocol deadlines before a caller gives up
_WAIT_MARGIN = 0.5


class Connection:
    """Drives the bring-up, steady state, and teardown of one Joy-Con."""

    def __init__(self, transport: Transport, side: Side,
                 settings: Optional[EngineSettings] = None,
                 on_state: Optional[Callable[[State], None]] = None,
                 on_status: Optional[Callable[[str], None]] = None,
                 on_progress: Optional[Callable[[int], None]] = None,
                 on_disconnect: Optional[Callable[[], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.side = side
        self.settings = settings or EngineSettings()
        self.threaded = True

        self._transport = transport
        self._on_state = on_state
        self._on_status = on_status or (lambda msg: None)
        self._on_progress = on_progress or (lambda val: None)
        self._on_disconnect = on_disconnect
        self._clock = clock

        self._protocol = JoyConProtocol(
            side,
            reply_timeout=self.settings.reply_timeout,
            teardown_timeout=self.settings.teardown_timeout,
            player_lights=self.settings.player_lights,
            stream_timeout=self.settings.stream_timeout_s,
        )
        self._lock = threading.RLock()
        self._settled = threading.Event()
        self._finished = threading.Event()
        self._stop_event = threading.Event()
        self._read_thread: Optional[threading.Thread] = None
        self._released = False

    @property
    def state(self) -> ConnectionState:
        return self._protocol.state

    @property
    def is_ready(self) -> bool:
        return self._protocol.state is ConnectionState.READY

    @property
    def calibration(self):
        return self._protocol.calibration

    @property
    def imu_streaming(self) -> bool:
        return self._protocol.imu_streaming

    @property
    def error(self) -> Optional[BaseException]:
        return self._protocol.error

    # ── Lifecycle ────────────────────────────────────────────────────

    def open(self, threaded: bool = True) -> 'Connection':
        """Run bring-up to completion.

        On failure the connection is torn down, the transport is closed, and
        the error that stopped bring-up is raised.
        """
        self.threaded = threaded
        try:
            self._transport.set_blocking(False)
            with self._lock:
                self._protocol.start()
                self._flush()
        except TransportError as e:
            self._fail(e)
            self.close()
            raise

        bring_up_timeout = self.settings.bring_up_timeout_s
        if threaded:
            self._start_reader()
            self._settled.wait(timeout=bring_up_timeout)
        else:
            deadline = self._clock() + bring_up_timeout
            while self.state is ConnectionState.INITIALIZING and self._clock() < deadline:
                if not self.poll_once():
                    break

        if not self.is_ready:
            error = self._protocol.error
            if error is None:
                error = CommandTimeout(f"Bring-up did not finish within {bring_up_timeout:.1f}s.")
            self.close()
            raise error

        log.info("Joy-Con (%s) ready", self.side.value)
        return self

    def close(self):
        """Tear down and release the transport. Idempotent, never raises."""
        if self._released:
            return
        self._released = True

        with self._lock:
            self._protocol.close()
            try:
                self._flush()
            except TransportError as e:
                self._fail(e)

        budget = self.settings.teardown_timeout * (TEARDOWN_STEPS + 1) + _WAIT_MARGIN
        reader = self._read_thread
        if reader is not None and reader.is_alive() and reader is not threading.current_thread():
            self._finished.wait(timeout=budget)
        else:
            deadline = self._clock() + budget
            while self.state is not ConnectionState.CLOSED and self._clock() < deadline:
                if not self.poll_once():
                    break

        if self.state is not ConnectionState.CLOSED:
            log.warning("Joy-Con (%s) teardown did not finish, closing anyway", self.side.value)
            self._fail(JoyConError("teardown did not finish"))

        self._stop_reader()
        try:
            self._transport.close()
        except Exception as e:
            log.warning("Error closing transport: %s", e)

    # ── Pull model / read thread ─────────────────────────────────────

    def poll_once(self) -> bool:
        """Read at most one report, feed it, and write what is due.

        Returns False once the connection has closed.
        """
        if self.state is ConnectionState.CLOSED:
            return False
        try:
            data = self._transport.read(REPORT_LENGTH, self.settings.read_timeout_ms)
            with self._lock:
                if data:
                    self._dispatch(self._protocol.feed(data))
                self._flush()
        except TransportError as e:
            log.error("Joy-Con (%s) transport failed: %s", self.side.value, e)
            self._fail(e)
            return False
        return self.state is not ConnectionState.CLOSED

    def _start_reader(self):
        self._stop_event.clear()
        self._read_thread = threading.Thread(
            target=self._read_loop, name=f"joycon-{self.side.value}", daemon=True)
        self._read_thread.start()

    def _stop_reader(self):
        self._stop_event.set()
        thread = self._read_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=self.settings.join_timeout_s)
            if thread.is_alive():
                log.warning("Joy-Con (%s) read thread still running, waiting once more",
                            self.side.value)
                thread.join(timeout=self.settings.join_timeout_s)

    def _read_loop(self):
        """Main read loop; exits when the protocol reaches CLOSED or on stop."""
        try:
            while not self._stop_event.is_set():
                try:
                    if not self.poll_once():
                        break
                except Exception:
                    log.exception("Joy-Con (%s) read loop error", self.side.value)
                    time.sleep(0.004)
        finally:
            if not self._released and self._on_disconnect:
                self._on_disconnect()

    # ── Commands ─────────────────────────────────────────────────────

    def send_subcommand(self, subcommand: int, payload: bytes = b'',
                        timeout: Optional[float] = None) -> SubCommandReply:
        """Send a sub-command and wait for its validated reply."""
        if timeout is None:
            timeout = self.settings.reply_timeout
        try:
            with self._lock:
                future = self._protocol.submit(subcommand, payload, timeout)
                self._flush()
        except TransportError as e:
            self._fail(e)
            raise

        wait = timeout + _WAIT_MARGIN
        if self.threaded:
            try:
                return future.result(timeout=wait)
            except concurrent.futures.TimeoutError:
                future.cancel()
                raise CommandTimeout(
                    f"No reply for {subcommand_name(subcommand)} within {wait:.1f}s.") from None

        deadline = self._clock() + wait
        while not future.done() and self._clock() < deadline:
            if not self.poll_once():
                break
        if not future.done():
            future.cancel()
            raise CommandTimeout(f"No reply for {subcommand_name(subcommand)} within {wait:.1f}s.")
        return future.result()

    def send_rumble(self, rumble: bytes):
        """Queue an 8-byte rumble field; it goes out as soon as the link is idle."""
        try:
            with self._lock:
                self._protocol.queue_rumble(rumble)
                self._flush()
        except TransportError as e:
            self._fail(e)
            raise

    # ── Internals (caller holds the lock unless noted) ───────────────

    def _flush(self):
        for report in self._protocol.tick(self._clock()):
            self._transport.write(report)
        self._dispatch(self._protocol.drain_events())

    def _fail(self, error: BaseException):
        """Fatal transport error. Takes the lock itself."""
        with self._lock:
            self._protocol.fail(error)
            self._dispatch(self._protocol.drain_events())

    def _dispatch(self, events: list):
        for event in events:
            if isinstance(event, StateReceived):
                if self._on_state:
                    self._on_state(event.state)
            elif isinstance(event, BringUpProgress):
                self._on_status(event.message)
                self._on_progress(event.percent)
            elif isinstance(event, ConnectionStateChanged):
                if event.previous is ConnectionState.INITIALIZING:
                    self._settled.set()
                if event.current is ConnectionState.CLOSED:
                    self._settled.set()
                    self._finished.set()
