"""
Unit tests for CommandChannel framing, consumption and shutdown.
"""

import socket
import time

import pytest

from vmmanage.channel import CommandChannel, new_channel_id
from vmmanage.errors import ChannelClosed, ProtocolError


@pytest.mark.unit
class TestChannelIds:

    def test_ids_are_unique(self):
        assert len({new_channel_id() for _ in range(100)}) == 100

    def test_pair_uses_given_id(self):
        controller, worker_sock = CommandChannel.pair("abc")
        try:
            assert controller.channel_id == "abc"
            assert worker_sock.get_inheritable()
        finally:
            controller.close()
            worker_sock.close()


@pytest.mark.unit
class TestSendReceive:
    """Test message delivery between the two ends."""

    def test_single_line(self, channel_pair):
        controller, worker = channel_pair
        controller.send("LIST_SNAPSHOTS")
        assert worker.receive(1.0) == "LIST_SNAPSHOTS"

    def test_receive_consumes(self, channel_pair):
        controller, worker = channel_pair
        controller.send("GET_DETAILS")
        assert worker.receive(1.0) == "GET_DETAILS"
        assert worker.receive(0) is None

    def test_receive_times_out(self, channel_pair):
        _, worker = channel_pair
        start = time.monotonic()
        assert worker.receive(0.1) is None
        assert time.monotonic() - start >= 0.09

    def test_block_delivered_whole(self, channel_pair):
        controller, worker = channel_pair
        worker.send("SNAPSHOTS_START\n1. snap\n\nSNAPSHOTS_END")
        assert controller.receive(1.0) == "SNAPSHOTS_START\n1. snap\n\nSNAPSHOTS_END"

    def test_partial_block_is_not_delivered(self, channel_pair):
        controller, worker = channel_pair
        worker._sock.sendall(b"DETAILS_START\nVM Details for web-01:\n")
        assert controller.receive(0.1) is None
        worker._sock.sendall(b"DETAILS_END\n")
        assert controller.receive(1.0) == "DETAILS_START\nVM Details for web-01:\nDETAILS_END"

    def test_messages_keep_order(self, channel_pair):
        controller, worker = channel_pair
        worker.send("SUCCESS: one")
        worker.send("SUCCESS: two")
        assert controller.receive(1.0) == "SUCCESS: one"
        assert controller.receive(1.0) == "SUCCESS: two"

    def test_unicode(self, channel_pair):
        controller, worker = channel_pair
        controller.send("DELETE_SNAPSHOT:vor Änderung")
        assert worker.receive(1.0) == "DELETE_SNAPSHOT:vor Änderung"

    def test_send_rejects_unframed_multiline(self, channel_pair):
        controller, _ = channel_pair
        with pytest.raises(ProtocolError):
            controller.send("SUCCESS: a\nSUCCESS: b")

    def test_send_rejects_unterminated_block(self, channel_pair):
        _, worker = channel_pair
        with pytest.raises(ProtocolError):
            worker.send("DETAILS_START\nVM Details for web-01:")


@pytest.mark.unit
class TestDrain:

    def test_drain_discards_stale_messages(self, channel_pair):
        controller, worker = channel_pair
        worker.send("SUCCESS: stale")
        worker.send("NO_SNAPSHOTS")
        time.sleep(0.05)
        assert controller.drain() == ["SUCCESS: stale", "NO_SNAPSHOTS"]
        assert not controller.pending()

    def test_drain_on_empty_channel(self, channel_pair):
        controller, _ = channel_pair
        assert controller.drain() == []

    def test_pending(self, channel_pair):
        controller, worker = channel_pair
        assert not controller.pending()
        worker.send("SESSION_READY")
        time.sleep(0.05)
        assert controller.pending()


@pytest.mark.unit
class TestShutdown:

    def test_receive_after_peer_closed(self, channel_pair):
        controller, worker = channel_pair
        worker.close()
        with pytest.raises(ChannelClosed):
            controller.receive(1.0)

    def test_messages_before_close_still_delivered(self, channel_pair):
        controller, worker = channel_pair
        worker.send("SESSION_ENDED")
        worker.close()
        assert controller.receive(1.0) == "SESSION_ENDED"
        with pytest.raises(ChannelClosed):
            controller.receive(1.0)

    def test_peer_closed_inside_block(self, channel_pair):
        controller, worker = channel_pair
        worker._sock.sendall(b"SNAPSHOTS_START\n1. snap\n")
        worker.close()
        with pytest.raises(ProtocolError):
            controller.receive(1.0)

    def test_send_after_peer_closed(self, channel_pair):
        controller, worker = channel_pair
        worker.close()
        with pytest.raises(ChannelClosed):
            # The first write may still be accepted by the kernel
            for _ in range(10):
                controller.send("LIST_SNAPSHOTS")
                time.sleep(0.01)

    def test_close_is_idempotent(self, channel_pair):
        controller, _ = channel_pair
        controller.close()
        controller.close()
        assert controller.closed
        with pytest.raises(ChannelClosed):
            controller.send("LIST_SNAPSHOTS")

    def test_from_fd_adopts_descriptor(self):
        controller_sock, worker_sock = socket.socketpair()
        worker = CommandChannel.from_fd(worker_sock.detach(), "fd-test")
        controller = CommandChannel(controller_sock, "fd-test")
        try:
            worker.send("SESSION_READY")
            assert controller.receive(1.0) == "SESSION_READY"
        finally:
            worker.close()
            controller.close()
