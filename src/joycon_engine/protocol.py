"""
Protocol

Sans-IO Joy-Con connection state machine.

The machine never touches a transport. Incoming reports are handed to
``feed()``, which returns the events they produced; ``tick(now)`` returns the
output reports that should be written next. At most one sub-command is ever
in flight: the controller answers whatever was sent last, so a new request is
only released once the previous one was answered or its deadline passed.

Bring-up and teardown are generator scripts that yield sub-command requests
and receive the matching replies (or have the failure thrown into them).

    CREATED -> INITIALIZING -> READY -> CLOSING -> CLOSED
"""
from __future__ import annotations

import concurrent.futures
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Generator, List, Optional, Tuple

from .calibration import Calibration, parse_calibration, require_present
from .controller_constants import (
    IMU_CAL_LENGTH, IMU_PARAMS_LENGTH, PAIRING_STEPS, REPORT_MODE_SIMPLE_HID,
    REPORT_MODE_STANDARD, SPI_IMU_FACTORY_CAL, SPI_IMU_PARAMS, SPI_IMU_USER_CAL,
    STICK_CAL_LENGTH, STICK_PARAMS_LENGTH, Side, SubCommand,
    stick_factory_calibration_address, stick_parameters_address, stick_user_calibration_address,
)
from .errors import CalibrationAbsent, CommandTimeout, JoyConError, MalformedReport, ProtocolError
from .input_processor import State, build_state
from .report_codec import (
    InputReport, SubCommandReply, decode_report, encode_rumble_report, encode_spi_read,
    encode_subcommand, parse_spi_reply,
)
from .rumble import NEUTRAL_RUMBLE

log = logging.getLogger(__name__)

# Sent best-effort when a connection closes
_TEARDOWN_SEQUENCE = (
    (SubCommand.ENABLE_VIBRATION, 0x00),
    (SubCommand.SET_INPUT_REPORT_MODE, REPORT_MODE_SIMPLE_HID),
    (SubCommand.ENABLE_IMU, 0x00),
)
TEARDOWN_STEPS = len(_TEARDOWN_SEQUENCE)


class ConnectionState(Enum):
    CREATED = 'created'
    INITIALIZING = 'initializing'
    READY = 'ready'
    CLOSING = 'closing'
    CLOSED = 'closed'


@dataclass(frozen=True)
class SubCommandRequest:
    subcommand: int
    payload: bytes
    timeout: float


# ── Events ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StateReceived:
    state: State


@dataclass(frozen=True)
class ReplyReceived:
    reply: SubCommandReply


@dataclass(frozen=True)
class ConnectionStateChanged:
    previous: ConnectionState
    current: ConnectionState


@dataclass(frozen=True)
class BringUpProgress:
    message: str
    percent: int


@dataclass
class _Pending:
    request: SubCommandRequest
    deadline: float
    future: Optional[concurrent.futures.Future] = None
    orphaned: bool = False
    recovery: bool = False


def subcommand_name(subcommand: int) -> str:
    try:
        return SubCommand(subcommand).name
    except ValueError:
        return f"0x{subcommand:02X}"


Script = Generator[SubCommandRequest, SubCommandReply, None]


class JoyConProtocol:
    """Connection state machine for one Joy-Con."""

    def __init__(self, side: Side, reply_timeout: float = 0.3,
                 teardown_timeout: float = 0.2, player_lights: int = 0x01,
                 stream_timeout: float = 2.0):
        self.side = side
        self.calibration: Optional[Calibration] = None
        self.error: Optional[BaseException] = None
        self.imu_streaming = False

        self._reply_timeout = reply_timeout
        self._teardown_timeout = teardown_timeout
        self._player_lights = player_lights & 0xFF
        self._stream_timeout = stream_timeout

        self._state = ConnectionState.CREATED
        self._packet_counter = 0
        self._script: Optional[Script] = None
        self._script_request: Optional[SubCommandRequest] = None
        self._pending: Optional[_Pending] = None
        self._user_requests: Deque[Tuple[SubCommandRequest, concurrent.futures.Future]] = deque()
        self._rumble: Optional[bytes] = None
        self._events: list = []

        # Stream watchdog, only armed while READY
        self._last_report_at: Optional[float] = None
        self._report_arrived = False
        self._imu_reported_off = False
        self._imu_retry_at = 0.0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self):
        """Begin bring-up. The first request goes out on the next tick()."""
        if self._state is not ConnectionState.CREATED:
            raise JoyConError(f"cannot start a connection that is {self._state.value}")
        self._set_state(ConnectionState.INITIALIZING)
        self._run_script(self._bring_up())

    def close(self):
        """Begin graceful teardown. Safe to call in any state."""
        if self._state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        if self._state is ConnectionState.CREATED:
            self._set_state(ConnectionState.CLOSED)
            return
        if self._state is ConnectionState.INITIALIZING:
            if self.error is None:
                self.error = JoyConError("connection closed during bring-up")
            if self._script is not None:
                self._script.close()
                self._script = None
        self._begin_teardown()

    def fail(self, error: BaseException):
        """The transport is gone: drop everything and go straight to CLOSED."""
        if self._state is ConnectionState.CLOSED:
            return
        if self.error is None:
            self.error = error
        if self._script is not None:
            self._script.close()
            self._script = None
        self._script_request = None
        pending, self._pending = self._pending, None
        if pending is not None and pending.future is not None and not pending.future.done():
            pending.future.set_exception(error)
        self._fail_user_requests(error)
        self._rumble = None
        self._set_state(ConnectionState.CLOSED)

    # ── Commands from the owner ──────────────────────────────────────

    def submit(self, subcommand: int, payload: bytes = b'',
               timeout: Optional[float] = None) -> concurrent.futures.Future:
        """Queue a sub-command. The future resolves with its SubCommandReply."""
        if self._state is not ConnectionState.READY:
            raise JoyConError(f"cannot send sub-commands while {self._state.value}")
        request = SubCommandRequest(int(subcommand), bytes(payload),
                                    self._reply_timeout if timeout is None else timeout)
        future: concurrent.futures.Future = concurrent.futures.Future()
        self._user_requests.append((request, future))
        return future

    def queue_rumble(self, rumble: bytes):
        """Queue a rumble-only report. A newer request replaces an unsent one."""
        if self._state is not ConnectionState.READY:
            raise JoyConError(f"cannot rumble while {self._state.value}")
        rumble = bytes(rumble)
        if len(rumble) != 8:
            raise ValueError("Rumble data must be 8 bytes long")
        self._rumble = rumble

    # ── I/O boundary ─────────────────────────────────────────────────

    def feed(self, data: bytes) -> list:
        """Consume one incoming report and return the events produced so far."""
        if data and self._state is not ConnectionState.CLOSED:
            try:
                report = decode_report(data)
            except MalformedReport as e:
                log.debug("Discarding report: %s", e)
            else:
                if isinstance(report, SubCommandReply):
                    self._handle_reply(report)
                elif isinstance(report, InputReport):
                    self._handle_input(report)
        return self.drain_events()

    def tick(self, now: float) -> List[bytes]:
        """Expire overdue replies and return the output reports to write now."""
        out: List[bytes] = []
        if self._state in (ConnectionState.CREATED, ConnectionState.CLOSED):
            return out

        pending = self._pending
        if pending is not None and now >= pending.deadline:
            self._pending = None
            name = subcommand_name(pending.request.subcommand)
            self._deliver(pending, error=CommandTimeout(
                f"No reply for {name} within {pending.request.timeout * 1000:.0f} ms."))

        if self._pending is None:
            upcoming = self._next_request()
            recovery = False
            if upcoming is None and self._state is ConnectionState.READY:
                upcoming = self._recovery_request(now)
                recovery = upcoming is not None
            if upcoming is not None:
                request, future = upcoming
                out.append(encode_subcommand(self._next_packet_number(), NEUTRAL_RUMBLE,
                                             request.subcommand, request.payload))
                self._pending = _Pending(request, now + request.timeout, future,
                                         recovery=recovery)

        if self._pending is None and self._rumble is not None:
            out.append(encode_rumble_report(self._next_packet_number(), self._rumble))
            self._rumble = None

        return out

    def drain_events(self) -> list:
        events, self._events = self._events, []
        return events

    # ── Incoming reports ─────────────────────────────────────────────

    def _handle_reply(self, reply: SubCommandReply):
        self._events.append(ReplyReceived(reply))
        pending = self._pending
        if pending is None:
            log.debug("Ignoring unsolicited reply for %s", subcommand_name(reply.subcommand))
            return
        self._pending = None

        request = pending.request
        if not reply.is_positive or reply.subcommand != request.subcommand:
            self._deliver(pending, error=ProtocolError(
                f"Unexpected reply for {subcommand_name(request.subcommand)} "
                f"(ack=0x{reply.ack:02X}, response={subcommand_name(reply.subcommand)})."))
        else:
            self._deliver(pending, reply=reply)

    def _handle_input(self, report: InputReport):
        self.imu_streaming = report.imu_active
        if self._state is ConnectionState.READY:
            self._report_arrived = True
            self._imu_reported_off = not report.imu_active
        if self.calibration is None:
            return
        self._events.append(StateReceived(build_state(report, self.calibration, self.side)))

    # ── Request routing ──────────────────────────────────────────────

    def _next_packet_number(self) -> int:
        number = self._packet_counter
        self._packet_counter = (self._packet_counter + 1) % 0x10
        return number

    def _next_request(self):
        if self._script_request is not None:
            request, self._script_request = self._script_request, None
            return request, None
        while self._state is ConnectionState.READY and self._user_requests:
            request, future = self._user_requests.popleft()
            if future.set_running_or_notify_cancel():
                return request, future
        return None

    def _recovery_request(self, now: float):
        """Re-send report mode after a stalled stream, or re-enable a silent IMU."""
        if self._report_arrived or self._last_report_at is None:
            self._last_report_at = now
            self._report_arrived = False

        if now - self._last_report_at >= self._stream_timeout:
            log.info("Joy-Con (%s) sent no input reports for %.1fs, re-sending report mode",
                     self.side.value, now - self._last_report_at)
            self._last_report_at = now
            return SubCommandRequest(SubCommand.SET_INPUT_REPORT_MODE,
                                     bytes([REPORT_MODE_STANDARD]), self._reply_timeout), None

        if self._imu_reported_off and now >= self._imu_retry_at:
            log.info("Joy-Con (%s) reports carry no IMU data, re-enabling IMU", self.side.value)
            self._imu_retry_at = now + self._stream_timeout
            return SubCommandRequest(SubCommand.ENABLE_IMU, b'\x01', self._reply_timeout), None
        return None

    def _deliver(self, pending: _Pending, reply: Optional[SubCommandReply] = None,
                 error: Optional[JoyConError] = None):
        if pending.orphaned:
            log.debug("Dropping %s for abandoned %s", "error" if error else "reply",
                      subcommand_name(pending.request.subcommand))
            return
        if pending.future is not None:
            if error is not None:
                pending.future.set_exception(error)
            else:
                pending.future.set_result(reply)
            return
        if pending.recovery:
            if error is not None:
                log.warning("Joy-Con (%s) %s recovery failed: %s", self.side.value,
                            subcommand_name(pending.request.subcommand), error)
            return
        self._resume(reply, error)

    def _fail_user_requests(self, error: BaseException):
        while self._user_requests:
            _, future = self._user_requests.popleft()
            if future.set_running_or_notify_cancel():
                future.set_exception(error)

    # ── Scripts ──────────────────────────────────────────────────────

    def _run_script(self, script: Script):
        self._script = script
        self._resume()

    def _resume(self, reply: Optional[SubCommandReply] = None,
                error: Optional[JoyConError] = None):
        script = self._script
        if script is None:
            return
        try:
            if error is not None:
                request = script.throw(error)
            else:
                request = script.send(reply)
        except StopIteration:
            self._script = None
            self._script_finished()
        except JoyConError as e:
            self._script = None
            self._script_failed(e)
        else:
            self._script_request = request

    def _script_finished(self):
        if self._state is ConnectionState.INITIALIZING:
            self._progress("Connected", 100)
            self._last_report_at = None
            self._report_arrived = False
            self._set_state(ConnectionState.READY)
        elif self._state is ConnectionState.CLOSING:
            self._set_state(ConnectionState.CLOSED)

    def _script_failed(self, error: JoyConError):
        if self._state is ConnectionState.INITIALIZING:
            log.warning("Joy-Con (%s) bring-up failed: %s", self.side.value, error)
            self.error = error
            self._progress(f"Initialization failed: {error}", 0)
            self._begin_teardown()
        else:
            log.warning("Joy-Con (%s) teardown aborted: %s", self.side.value, error)
            self._set_state(ConnectionState.CLOSED)

    def _begin_teardown(self):
        self._set_state(ConnectionState.CLOSING)
        self._script_request = None
        pending = self._pending
        if pending is not None:
            # Its reply is still owed; wait for it (or its deadline) before writing again
            pending.orphaned = True
            if pending.future is not None and not pending.future.done():
                pending.future.set_exception(JoyConError("connection closing"))
        self._fail_user_requests(JoyConError("connection closing"))
        self._rumble = None
        self._run_script(self._teardown())

    def _command(self, subcommand: int, payload: bytes = b'',
                 timeout: Optional[float] = None):
        request = SubCommandRequest(int(subcommand), bytes(payload),
                                    self._reply_timeout if timeout is None else timeout)
        reply = yield request
        return reply

    def _read_spi(self, address: int, length: int):
        reply = yield from self._command(SubCommand.SPI_FLASH_READ, encode_spi_read(address, length))
        return parse_spi_reply(reply.data, address, length)

    def _read_calibration_block(self, name: str, user_address: int,
                                factory_address: int, length: int):
        data = yield from self._read_spi(user_address, length)
        try:
            return require_present(data)
        except CalibrationAbsent:
            log.info("No user %s calibration on Joy-Con (%s), using factory calibration",
                     name, self.side.value)
        data = yield from self._read_spi(factory_address, length)
        return data

    def _bring_up(self) -> Script:
        self._progress("Setting report mode...", 10)
        yield from self._command(SubCommand.SET_INPUT_REPORT_MODE, bytes([REPORT_MODE_SIMPLE_HID]))

        self._progress("Reading stick calibration...", 20)
        stick_cal = yield from self._read_calibration_block(
            "stick", stick_user_calibration_address(self.side),
            stick_factory_calibration_address(self.side), STICK_CAL_LENGTH)
        stick_params = yield from self._read_spi(stick_parameters_address(self.side),
                                                 STICK_PARAMS_LENGTH)

        self._progress("Reading IMU calibration...", 40)
        imu_cal = yield from self._read_calibration_block(
            "IMU", SPI_IMU_USER_CAL, SPI_IMU_FACTORY_CAL, IMU_CAL_LENGTH)
        imu_params = yield from self._read_spi(SPI_IMU_PARAMS, IMU_PARAMS_LENGTH)
        self.calibration = parse_calibration(stick_cal, stick_params, imu_cal, imu_params, self.side)

        self._progress("Pairing...", 60)
        for step in PAIRING_STEPS:
            try:
                yield from self._command(SubCommand.BLUETOOTH_MANUAL_PAIRING, bytes([step]))
            except ProtocolError as e:
                log.warning("Pairing step %d failed on Joy-Con (%s): %s", step, self.side.value, e)

        self._progress("Setting player lights...", 70)
        yield from self._command(SubCommand.SET_PLAYER_LIGHTS, bytes([self._player_lights]))

        self._progress("Enabling IMU...", 80)
        yield from self._command(SubCommand.ENABLE_IMU, b'\x01')
        yield from self._command(SubCommand.SET_INPUT_REPORT_MODE, bytes([REPORT_MODE_STANDARD]))

        self._progress("Enabling vibration...", 90)
        yield from self._command(SubCommand.ENABLE_VIBRATION, b'\x01')

    def _teardown(self) -> Script:
        for subcommand, value in _TEARDOWN_SEQUENCE:
            try:
                yield from self._command(subcommand, bytes([value]), self._teardown_timeout)
            except JoyConError as e:
                log.debug("Ignoring %s failure during teardown: %s", subcommand.name, e)

    # ── Bookkeeping ──────────────────────────────────────────────────

    def _set_state(self, state: ConnectionState):
        previous = self._state
        if previous is state:
            return
        self._state = state
        log.debug("Joy-Con (%s) %s -> %s", self.side.value, previous.value, state.value)
        self._events.append(ConnectionStateChanged(previous, state))

    def _progress(self, message: str, percent: int):
        self._events.append(BringUpProgress(message, percent))
