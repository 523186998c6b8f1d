"""
Joy-Con Engine CLI

Lists connected Joy-Cons, or connects to them and prints their calibrated
state until interrupted.
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time

from .controller_constants import BUTTON_NAMES, MAX_SLOTS, Side
from .errors import JoyConError
from .input_processor import State
from .registry import JoyConRegistry
from .settings_manager import SettingsManager
from .transport import HidTransport, enumerate_joycons

# Seconds between printed state lines
_PRINT_INTERVAL = 0.1
_RUMBLE_PULSE = 0.3


def format_state(state: State) -> str:
    pressed = [name for button, name in BUTTON_NAMES if state.is_pressed(button)]
    sample = state.latest_imu
    acc, gyro = sample.acceleration, sample.angular_velocity
    return (f"buttons={','.join(pressed) or '-'} "
            f"stick=({state.stick.x:+.2f}, {state.stick.y:+.2f}) "
            f"acc=({acc.x:+.2f}, {acc.y:+.2f}, {acc.z:+.2f}) "
            f"gyro=({gyro.x:+7.1f}, {gyro.y:+7.1f}, {gyro.z:+7.1f})")


def list_devices() -> int:
    devices = enumerate_joycons()
    if not devices:
        print("No Joy-Cons found.")
        return 1
    for info in devices:
        side = Side.from_product_id(info['product_id'])
        path = info.get('path', b'')
        if isinstance(path, bytes):
            path = path.decode('utf-8', 'replace')
        print(f"[{side.value}] {path}  serial={info.get('serial_number') or '?'}")
    return 0


def run(args) -> int:
    """Connect to the Joy-Cons and print their state until stopped."""
    settings_mgr = SettingsManager(args.settings_dir or os.getcwd())
    settings = settings_mgr.load()

    devices = enumerate_joycons()
    if args.path:
        wanted = args.path.encode('utf-8')
        devices = [d for d in devices if d.get('path') == wanted]
    if not devices:
        print("No Joy-Cons found.")
        return 1

    stop_event = threading.Event()

    def _shutdown(signum, frame):
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    print(f"Found {len(devices)} Joy-Con(s). Connecting up to {min(MAX_SLOTS, len(devices))}...")

    def _on_status(index, msg):
        print(f"[slot {index + 1}] {msg}")

    with JoyConRegistry(settings, on_status=_on_status) as registry:
        transports = []
        for info in devices[:MAX_SLOTS]:
            try:
                transports.append(HidTransport.open(info))
            except JoyConError as e:
                print(f"Could not open {info.get('path')}: {e}")
        registry.open_all(transports, threaded=not args.poll)

        if not len(registry):
            print("No Joy-Cons connected.")
            return 1
        for joycon in registry:
            print(f"[{joycon.side.value}] connected")

        if args.rumble:
            for joycon in registry:
                joycon.rumble(160.0, 320.0, 0.6, 0.6)
            stop_event.wait(_RUMBLE_PULSE)
            for joycon in registry:
                joycon.stop_rumble()

        deadline = time.monotonic() + args.duration if args.duration else None
        next_print = 0.0
        while not stop_event.is_set():
            if deadline is not None and time.monotonic() >= deadline:
                break
            if args.poll:
                alive = [joycon.poll_once() for joycon in registry]
                if not any(alive):
                    print("All Joy-Cons disconnected.")
                    break
            else:
                stop_event.wait(0.01)

            now = time.monotonic()
            if now >= next_print:
                next_print = now + _PRINT_INTERVAL
                for joycon in registry:
                    state = joycon.latest_state()
                    if state is not None:
                        print(f"[{joycon.side.value}] {format_state(state)}")

        print("Disconnecting...")
    print("Done.")
    return 0


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="Joy-Con HID protocol engine - connects Joy-Cons and prints their state"
    )
    parser.add_argument("--list", action="store_true",
                        help="list connected Joy-Cons and exit")
    parser.add_argument("--path", default=None,
                        help="only open the Joy-Con with this HID path")
    parser.add_argument("--poll", action="store_true",
                        help="drive the connection from the main loop instead of a read thread")
    parser.add_argument("--rumble", action="store_true",
                        help="send a short rumble pulse after connecting")
    parser.add_argument("--duration", type=float, default=None,
                        help="stop after this many seconds (default: run until interrupted)")
    parser.add_argument("--settings-dir", default=None,
                        help="directory holding joycon_engine_settings.json (default: cwd)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.list:
        sys.exit(list_devices())
    sys.exit(run(args))


if __name__ == "__main__":
    main()
