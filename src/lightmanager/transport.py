"""Serialized, retrying access to the one hardware device.

All device interaction goes through a single :class:`Transport`.  It
holds one lock for the whole of every transaction, so frames from
different client threads are never interleaved on the wire, and it
retries failed transfers a fixed number of times before giving up.
"""

import logging
import threading
import time

from lightmanager.config import USB_MAX_RETRY, USB_WAIT_ON_ERROR_MS
from lightmanager.exceptions import TransportError
from lightmanager.protocol import FRAME_LEN

log = logging.getLogger(__name__)


class Transport:
    """Process-wide serialized channel to the device.

    Args:
        bus: Object with ``write(data)``, ``read()`` and ``close()``;
            both transfer methods raise ``OSError`` on failure.
        retries: Attempts per transfer before giving up.
        delay_ms: Pause between failed attempts in milliseconds.

    Example:
        >>> transport = Transport(UsbBus())
        >>> frame = encode_get_temp()
        >>> transport.send(frame, expect_reply=True)
        >>> decode_temp(frame)
        21.5
    """

    def __init__(self, bus, retries: int = USB_MAX_RETRY,
                 delay_ms: int = USB_WAIT_ON_ERROR_MS):
        """Initialize the transport around an open *bus*."""
        self._bus = bus
        self._retries = retries
        self._delay_s = delay_ms / 1000.0
        self._lock = threading.Lock()

    def send(self, frame: bytearray, expect_reply: bool = False) -> None:
        """Send one frame and optionally read the reply into it.

        The reply, if any, replaces the request bytes in *frame*.

        Raises:
            TransportError: If either leg exhausts its retry budget.
        """
        with self._lock:
            self._exchange(frame, expect_reply)

    def send_all(self, frames: list[bytearray]) -> None:
        """Send several frames back to back as one transaction.

        No other transaction can run between the frames.  The first
        failing frame aborts the rest.

        Raises:
            TransportError: If any frame exhausts its retry budget.
        """
        with self._lock:
            for frame in frames:
                self._exchange(frame, False)

    def close(self) -> None:
        """Release the device once any in-flight transaction is done."""
        with self._lock:
            if self._bus is not None:
                self._bus.close()
                self._bus = None
                log.debug("USB device released")

    def _exchange(self, frame: bytearray, expect_reply: bool) -> None:
        if self._bus is None:
            raise TransportError("USB device is closed")
        if len(frame) != FRAME_LEN:
            raise ValueError(
                "frame must be {} bytes, got {}".format(FRAME_LEN, len(frame))
            )

        self._retry("write", lambda: self._bus.write(bytes(frame)), frame)
        if expect_reply:
            reply = self._retry("read", self._bus.read, frame)
            frame[:] = reply[:FRAME_LEN]
            log.debug("usb recv %s", bytes(frame).hex(" "))

    def _retry(self, what: str, transfer, frame: bytearray):
        """Run *transfer* until it succeeds or the budget is spent."""
        for attempt in range(1, self._retries + 1):
            if what == "write":
                log.debug("usb send %s (attempt %d)", bytes(frame).hex(" "), attempt)
            try:
                return transfer()
            except OSError as exc:
                log.warning(
                    "usb %s failed (attempt %d/%d): %s",
                    what, attempt, self._retries, exc,
                )
                if attempt < self._retries:
                    time.sleep(self._delay_s)
        log.error("usb %s gave up after %d attempts", what, self._retries)
        raise TransportError("USB communication error")
