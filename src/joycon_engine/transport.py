"""
Transport

The byte pipe a connection talks through, plus the hidapi-backed
implementation used for real Joy-Cons.

A transport delivers whole HID reports. ``read`` returns an empty bytes
object when nothing arrived within the timeout; any failure of the
underlying device is raised as TransportError.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

import hid

from .controller_constants import PRODUCT_IDS, VENDOR_ID
from .errors import TransportError


class Transport(ABC):
    """Bidirectional HID report pipe for a single Joy-Con."""

    @property
    @abstractmethod
    def product_id(self) -> int:
        ...

    @abstractmethod
    def write(self, data: bytes) -> int:
        ...

    @abstractmethod
    def read(self, size: int, timeout_ms: int) -> bytes:
        ...

    @abstractmethod
    def set_blocking(self, blocking: bool) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...


def enumerate_joycons() -> List[dict]:
    """Return hidapi device info dicts for all connected Joy-Cons."""
    return [info for info in hid.enumerate(VENDOR_ID, 0)
            if info.get('product_id') in PRODUCT_IDS]


class HidTransport(Transport):
    """Transport over a hidapi ``hid.device``."""

    def __init__(self, device, product_id: int, path: Optional[bytes] = None):
        self._device = device
        self._product_id = product_id
        self.path = path

    @classmethod
    def open(cls, info: dict) -> 'HidTransport':
        """Open the device described by an ``enumerate_joycons()`` entry."""
        device = hid.device()
        path = info.get('path')
        try:
            if path:
                device.open_path(path)
            else:
                device.open(VENDOR_ID, info['product_id'])
        except (OSError, ValueError) as e:
            raise TransportError(f"HID open failed: {e}") from e
        return cls(device, info['product_id'], path)

    @property
    def product_id(self) -> int:
        return self._product_id

    def write(self, data: bytes) -> int:
        try:
            written = self._device.write(bytes(data))
        except (OSError, ValueError) as e:
            raise TransportError(f"HID write failed: {e}") from e
        if written < 0:
            raise TransportError("HID write failed")
        return written

    def read(self, size: int, timeout_ms: int) -> bytes:
        try:
            data = self._device.read(size, timeout_ms)
        except (OSError, ValueError) as e:
            raise TransportError(f"HID read failed: {e}") from e
        return bytes(data)

    def set_blocking(self, blocking: bool) -> None:
        try:
            self._device.set_nonblocking(0 if blocking else 1)
        except (OSError, ValueError) as e:
            raise TransportError(f"HID set_nonblocking failed: {e}") from e

    def close(self) -> None:
        self._device.close()
