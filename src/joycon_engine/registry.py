"""
Registry

Tracks the Joy-Cons an application has opened, one per slot. Each slot
gets its own player-light pattern from LED_MAP.
"""

import dataclasses
import logging
from typing import Callable, Iterable, Iterator, List, Optional

from .controller_constants import LED_MAP, MAX_SLOTS, Side
from .errors import JoyConError
from .joycon import JoyCon
from .settings_manager import EngineSettings
from .transport import Transport

log = logging.getLogger(__name__)


class JoyConRegistry:
    """Explicit set of open Joy-Cons owned by the composing application."""

    def __init__(self, settings: Optional[EngineSettings] = None,
                 on_status: Optional[Callable[[int, str], None]] = None):
        self._settings = settings or EngineSettings()
        self._on_status = on_status or (lambda index, msg: None)
        self._slots: List[Optional[JoyCon]] = [None] * MAX_SLOTS

    def _free_slot(self) -> Optional[int]:
        for i, joycon in enumerate(self._slots):
            if joycon is None:
                return i
        return None

    def open(self, transport: Transport, threaded: bool = True) -> JoyCon:
        """Bring up one Joy-Con in the first free slot."""
        index = self._free_slot()
        if index is None:
            raise JoyConError(f"All {MAX_SLOTS} slots are in use")

        settings = dataclasses.replace(self._settings, player_lights=LED_MAP[index])
        joycon = JoyCon.create(
            transport, settings=settings, threaded=threaded,
            on_status=lambda msg, i=index: self._on_status(i, msg),
            on_disconnect=lambda i=index: self._on_status(i, "Disconnected"))
        self._slots[index] = joycon
        log.info("Joy-Con (%s) assigned to slot %d", joycon.side.value, index + 1)
        return joycon

    def open_all(self, transports: Iterable[Transport], threaded: bool = True) -> List[JoyCon]:
        """Open every transport, skipping (and closing) the ones that fail."""
        opened = []
        for transport in transports:
            index = self._free_slot()
            if index is None:
                self._on_status(MAX_SLOTS - 1, "No free slot, skipping device")
                transport.close()
                continue
            try:
                opened.append(self.open(transport, threaded=threaded))
            except ValueError as e:
                self._on_status(index, f"Not a Joy-Con: {e}")
                transport.close()
            except JoyConError as e:
                self._on_status(index, f"Connection failed: {e}")
        return opened

    def get(self, side: Side) -> Optional[JoyCon]:
        """First open Joy-Con of the given side."""
        for joycon in self._slots:
            if joycon is not None and joycon.side is side:
                return joycon
        return None

    def all(self) -> List[JoyCon]:
        return [joycon for joycon in self._slots if joycon is not None]

    def slot_of(self, joycon: JoyCon) -> Optional[int]:
        for i, candidate in enumerate(self._slots):
            if candidate is joycon:
                return i
        return None

    def release(self, joycon: JoyCon):
        """Dispose one Joy-Con and free its slot."""
        index = self.slot_of(joycon)
        if index is not None:
            self._slots[index] = None
        joycon.dispose()

    def close_all(self):
        for i, joycon in enumerate(self._slots):
            if joycon is not None:
                self._slots[i] = None
                joycon.dispose()

    def __len__(self) -> int:
        return len(self.all())

    def __iter__(self) -> Iterator[JoyCon]:
        return iter(self.all())

    def __enter__(self) -> 'JoyConRegistry':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close_all()
