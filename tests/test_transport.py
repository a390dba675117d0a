"""Tests for lightmanager.transport."""

import threading
import time

import pytest

from conftest import FakeBus, temp_reply
from lightmanager.exceptions import TransportError
from lightmanager.protocol import encode_get_temp, encode_scene, new_frame
from lightmanager.transport import Transport


class TestSend:
    """Tests for Transport.send."""

    def test_writes_frame(self):
        """send() writes the 8-byte frame once."""
        bus = FakeBus()
        Transport(bus, delay_ms=0).send(encode_scene(5))
        assert bus.written == [bytes([0x0F, 5, 0, 0, 0, 0, 0, 0])]
        assert bus.read_attempts == 0

    def test_reply_replaces_request(self):
        """With expect_reply the reply overwrites the frame in place."""
        bus = FakeBus([temp_reply(43)])
        frame = encode_get_temp()
        Transport(bus, delay_ms=0).send(frame, expect_reply=True)
        assert frame == temp_reply(43)

    def test_retries_until_success(self):
        """Failed writes are retried; the frame goes out once."""
        bus = FakeBus(fail_writes=3)
        Transport(bus, delay_ms=0).send(encode_scene(1))
        assert bus.write_attempts == 4
        assert len(bus.written) == 1

    def test_gives_up_after_five_attempts(self):
        """Five failed writes raise TransportError and skip the read."""
        bus = FakeBus([temp_reply(10)], fail_writes=-1)
        frame = encode_get_temp()
        with pytest.raises(TransportError, match="USB communication error"):
            Transport(bus, delay_ms=0).send(frame, expect_reply=True)
        assert bus.write_attempts == 5
        assert bus.read_attempts == 0
        assert frame == encode_get_temp()

    def test_read_retry_budget(self):
        """The read leg has its own budget of five attempts."""
        bus = FakeBus(fail_reads=-1)
        with pytest.raises(TransportError):
            Transport(bus, delay_ms=0).send(encode_get_temp(), expect_reply=True)
        assert bus.write_attempts == 1
        assert bus.read_attempts == 5

    def test_waits_between_attempts(self):
        """The delay is applied between attempts, not after the last."""
        bus = FakeBus(fail_writes=-1)
        transport = Transport(bus, retries=3, delay_ms=50)
        start = time.monotonic()
        with pytest.raises(TransportError):
            transport.send(encode_scene(1))
        elapsed = time.monotonic() - start
        assert 0.09 <= elapsed < 0.5

    def test_rejects_wrong_length(self):
        """Frames must be exactly 8 bytes."""
        with pytest.raises(ValueError):
            Transport(FakeBus(), delay_ms=0).send(bytearray(7))


class TestSendAll:
    """Tests for Transport.send_all."""

    def test_sends_in_order(self):
        """All frames go out in order."""
        bus = FakeBus()
        frames = [new_frame(1), new_frame(2), new_frame(3)]
        Transport(bus, delay_ms=0).send_all(frames)
        assert [f[0] for f in bus.written] == [1, 2, 3]

    def test_failure_aborts_rest(self):
        """A frame that exhausts its retries stops the sequence."""
        bus = FakeBus(fail_writes=-1)
        with pytest.raises(TransportError):
            Transport(bus, retries=2, delay_ms=0).send_all([new_frame(1), new_frame(2)])
        assert bus.write_attempts == 2


class TestSerialization:
    """The transport lock keeps transactions from overlapping."""

    def test_threads_never_overlap(self):
        """Concurrent senders never enter the bus at the same time."""
        bus = FakeBus(delay_s=0.005)
        transport = Transport(bus, delay_ms=0)

        def worker(scene):
            for _ in range(10):
                transport.send(encode_scene(scene))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(1, 5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert bus.overlaps == 0
        assert len(bus.written) == 40

    def test_sequence_is_not_interleaved(self):
        """Frames of one send_all stay contiguous on the wire."""
        bus = FakeBus(delay_s=0.005)
        transport = Transport(bus, delay_ms=0)

        def sequence():
            transport.send_all([new_frame(0x08), new_frame(0x00), new_frame(0x06)])

        def single():
            transport.send(encode_scene(9))

        threads = [threading.Thread(target=sequence), threading.Thread(target=single)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        opcodes = [f[0] for f in bus.written]
        start = opcodes.index(0x08)
        assert opcodes[start:start + 3] == [0x08, 0x00, 0x06]


class TestClose:
    """Tests for Transport.close."""

    def test_close_releases_bus(self):
        """close() closes the bus once."""
        bus = FakeBus()
        transport = Transport(bus, delay_ms=0)
        transport.close()
        transport.close()
        assert bus.closed

    def test_send_after_close(self):
        """Sending on a closed transport raises TransportError."""
        transport = Transport(FakeBus(), delay_ms=0)
        transport.close()
        with pytest.raises(TransportError):
            transport.send(encode_scene(1))
