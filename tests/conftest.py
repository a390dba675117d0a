"""Shared pytest fixtures for lightmanager tests."""

import threading
import time

import pytest

from lightmanager.engine import CommandEngine, PlainOutput, Session
from lightmanager.runtime import RuntimeConfig
from lightmanager.transport import Transport


class FakeBus:
    """Test double for UsbBus: canned replies, records written frames.

    Args:
        replies: Frames returned by successive ``read()`` calls.
        fail_writes: Number of initial writes that fail; -1 fails all.
        fail_reads: Number of initial reads that fail; -1 fails all.
        delay_s: Time each write takes, to widen race windows.

    ``overlaps`` counts calls that found another thread already inside
    ``write`` or ``read``.
    """

    def __init__(self, replies=(), fail_writes=0, fail_reads=0, delay_s=0.0):
        """Initialize with canned replies and failure counts."""
        self._replies = list(replies)
        self._fail_writes = fail_writes
        self._fail_reads = fail_reads
        self._delay_s = delay_s
        self._busy = threading.Lock()
        self.written = []
        self.write_attempts = 0
        self.read_attempts = 0
        self.closed = False
        self.overlaps = 0

    def _enter(self):
        if not self._busy.acquire(blocking=False):
            self.overlaps += 1
            self._busy.acquire()

    def write(self, data):
        """Record *data*, or raise OSError while failures remain."""
        self._enter()
        try:
            self.write_attempts += 1
            if self._delay_s:
                time.sleep(self._delay_s)
            if self._fail_writes:
                self._fail_writes -= 1
                raise OSError("simulated write error")
            self.written.append(bytes(data))
        finally:
            self._busy.release()

    def read(self):
        """Return the next canned reply, or raise OSError."""
        self._enter()
        try:
            self.read_attempts += 1
            if self._fail_reads:
                self._fail_reads -= 1
                raise OSError("simulated read error")
            if not self._replies:
                raise OSError("simulated read timeout")
            return self._replies.pop(0)
        finally:
            self._busy.release()

    def close(self):
        """Mark the bus closed."""
        self.closed = True


class Collector:
    """Accumulates everything written to a session."""

    def __init__(self):
        """Start with empty output."""
        self.chunks = []

    def __call__(self, text):
        """Append *text*."""
        self.chunks.append(text)

    @property
    def text(self):
        return "".join(self.chunks)

    @property
    def lines(self):
        return [line for line in self.text.split("\r\n") if line]


def temp_reply(half_degrees: int) -> bytes:
    """Build a temperature reply frame."""
    return bytes([0xFD, half_degrees, 0, 0, 0, 0, 0, 0])


def clock_reply(year, month, day, hour, minute, second) -> bytes:
    """Build a clock reply frame (plain binary fields, year from 2000)."""
    return bytes([second, minute, hour, day, month, 0, year - 2000, 0])


def make_engine(bus, housecode=0, **kwargs):
    """Build an engine on a zero-delay transport around *bus*."""
    transport = Transport(bus, delay_ms=0)
    return CommandEngine(transport, RuntimeConfig(housecode), **kwargs)


@pytest.fixture
def output():
    """A Collector plus a plain-text session writing into it."""
    collector = Collector()
    return collector, Session(PlainOutput(collector))
