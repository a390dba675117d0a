"""USB bus abstraction for the Light-Manager device.

Wraps hidapi to exchange fixed 8-byte frames with the device over its
interrupt endpoints (0x01 out, 0x82 in).  The device is found by its
fixed vendor/product id pair; there is no further enumeration.

Example:
    >>> from lightmanager.bus import UsbBus
    >>> bus = UsbBus()
    >>> bus.write(frame_bytes)
    >>> reply = bus.read()
"""

import logging

import hid

from lightmanager.config import LM_PRODUCT_ID, LM_VENDOR_ID, USB_TIMEOUT_MS
from lightmanager.protocol import FRAME_LEN

log = logging.getLogger(__name__)


class UsbBus:
    """Single open handle to the Light-Manager USB device.

    Duck-typed -- tests can substitute any object with matching
    ``write(data)``, ``read()`` and ``close()`` methods.  Both transfer
    methods raise ``OSError`` on failure; retrying is left to
    :class:`lightmanager.transport.Transport`.

    Args:
        vendor_id: USB vendor id (default jbmedia ``0x16c0``).
        product_id: USB product id (default Light-Manager ``0x0a32``).
        timeout_ms: Per-transfer timeout in milliseconds.

    Example:
        >>> bus = UsbBus()
        >>> bus.write(b"\\x0c\\x00\\x00\\x00\\x00\\x00\\x00\\x00")
        >>> bus.read()
        b'\\xfd+\\x00\\x00\\x00\\x00\\x00\\x00'
        >>> bus.close()
    """

    # hidapi expects the report id in front of every output report.
    _REPORT_ID = 0x00

    def __init__(self, vendor_id=LM_VENDOR_ID, product_id=LM_PRODUCT_ID,
                 timeout_ms=USB_TIMEOUT_MS):
        """Open the device.

        Raises:
            OSError: If no device with the given ids can be opened.
        """
        self._timeout_ms = timeout_ms
        self._dev = hid.device()
        self._dev.open(vendor_id, product_id)
        self._dev.set_nonblocking(0)
        log.debug(
            "opened USB device (vendor 0x%04x, product 0x%04x)",
            vendor_id, product_id,
        )

    def write(self, data):
        """Send one 8-byte frame on the out endpoint.

        Raises:
            OSError: If the transfer fails or is short.
        """
        written = self._dev.write(bytes([self._REPORT_ID]) + bytes(data))
        if written < len(data):
            raise OSError("USB write failed (%d bytes written)" % written)

    def read(self):
        """Receive one 8-byte frame from the in endpoint.

        Returns:
            bytes: The frame.

        Raises:
            OSError: On timeout or a short read.
        """
        data = self._dev.read(FRAME_LEN, self._timeout_ms)
        if len(data) < FRAME_LEN:
            raise OSError("USB read timeout (%d bytes received)" % len(data))
        return bytes(data[:FRAME_LEN])

    def close(self):
        """Release the device."""
        self._dev.close()
