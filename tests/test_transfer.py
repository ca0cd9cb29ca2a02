"""Tests for chunked transfer coordination."""

from __future__ import annotations

import itertools
import time

import pytest

from lanrelay.relay.errors import LimitExceeded, ProtocolError
from lanrelay.relay.transfer import TransferCoordinator, TransferSession, TransferState


def _chunks(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


class _Recorder:
    def __init__(self, coord: TransferCoordinator) -> None:
        self.completed: list[tuple[TransferSession, bytes | None]] = []
        self.cancelled: list[tuple[TransferSession, str]] = []
        self.progress: list[tuple[int, int]] = []
        coord.on_complete(lambda s, d: self.completed.append((s, d)))
        coord.on_cancel(lambda s, r: self.cancelled.append((s, r)))
        coord.on_progress(lambda s: self.progress.append((s.received, s.total_chunks)))


# ---------------------------------------------------------------------------
# TransferSession
# ---------------------------------------------------------------------------

class TestTransferSession:
    def test_slots_allocated(self):
        s = TransferSession("t1", "a.bin", 10, 4, sender_id="a")
        assert s.slots == [None] * 4
        assert s.missing() == [0, 1, 2, 3]
        assert s.progress == 0.0
        assert s.wire_id == "t1"

    def test_owners(self):
        assert TransferSession("t", "f", 1, 1, "a", "b").owners() == ("a", "b")
        assert TransferSession("t", "f", 1, 1, "a").owners() == ("a",)

    def test_to_status(self):
        s = TransferSession("t1", "a.bin", 10, 2, sender_id="a", receiver_id="b")
        status = s.to_status()
        assert status["state"] == "receiving"
        assert status["total_chunks"] == 2
        assert status["receiver_id"] == "b"


# ---------------------------------------------------------------------------
# Reassembly
# ---------------------------------------------------------------------------

class TestReassembly:
    def test_any_arrival_order(self):
        data = bytes(range(256)) * 3
        pieces = _chunks(data, 200)
        assert len(pieces) == 4

        for order in itertools.permutations(range(len(pieces))):
            coord = TransferCoordinator()
            rec = _Recorder(coord)
            coord.start("t1", "f.bin", len(data), len(pieces), "a", "b")
            for i in order:
                coord.add_chunk("t1", i, pieces[i])
            assert len(rec.completed) == 1
            assert rec.completed[0][1] == data
            assert coord.get("t1") is None

    def test_progress_reported(self):
        coord = TransferCoordinator()
        rec = _Recorder(coord)
        coord.start("t1", "f", 3, 3, "a")
        coord.add_chunk("t1", 2, b"c")
        coord.add_chunk("t1", 0, b"a")
        assert rec.progress == [(1, 3), (2, 3)]

    def test_duplicate_index_overwrites_without_counting(self):
        coord = TransferCoordinator()
        rec = _Recorder(coord)
        coord.start("t1", "f", 4, 2, "a")
        coord.add_chunk("t1", 0, b"xx")
        session = coord.add_chunk("t1", 0, b"ab")
        assert session.received == 1
        assert rec.completed == []
        coord.add_chunk("t1", 1, b"cd")
        assert rec.completed[0][1] == b"abcd"

    def test_out_of_range_index(self):
        coord = TransferCoordinator()
        coord.start("t1", "f", 4, 2, "a")
        with pytest.raises(ProtocolError, match="out of range"):
            coord.add_chunk("t1", 2, b"x")
        assert coord.get("t1").received == 0

    def test_unknown_transfer_is_noop(self):
        coord = TransferCoordinator()
        assert coord.add_chunk("nope", 0, b"x") is None
        assert coord.finish("nope") is None
        assert coord.cancel("nope") is None

    def test_numeric_ids_share_a_key(self):
        coord = TransferCoordinator()
        rec = _Recorder(coord)
        session = coord.start(1712.5, "f", 1, 1, "a")
        assert session.transfer_id == "1712.5"
        assert session.wire_id == 1712.5
        coord.add_chunk("1712.5", 0, b"z")
        assert rec.completed[0][1] == b"z"


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

class TestCompletion:
    def test_exactly_once_with_last_flag_and_count(self):
        coord = TransferCoordinator()
        rec = _Recorder(coord)
        coord.start("t1", "f", 2, 2, "a")
        coord.add_chunk("t1", 0, b"a")
        coord.add_chunk("t1", 1, b"b", is_last=True)
        assert coord.finish("t1") is None
        assert coord.add_chunk("t1", 1, b"b", is_last=True) is None
        assert len(rec.completed) == 1
        assert rec.completed[0][0].state == TransferState.COMPLETE

    def test_last_flag_with_gap_keeps_waiting(self):
        coord = TransferCoordinator()
        rec = _Recorder(coord)
        coord.start("t1", "f", 3, 3, "a")
        coord.add_chunk("t1", 0, b"a")
        session = coord.add_chunk("t1", 2, b"c", is_last=True)
        assert session.last_flag_seen is True
        assert rec.completed == []
        assert coord.get("t1") is session

        coord.add_chunk("t1", 1, b"b")
        assert rec.completed[0][1] == b"abc"

    def test_finish_with_gap_fails(self):
        coord = TransferCoordinator()
        rec = _Recorder(coord)
        coord.start("t1", "f", 3, 3, "a")
        coord.add_chunk("t1", 0, b"a")
        coord.add_chunk("t1", 2, b"c", is_last=True)

        session = coord.finish("t1")

        assert session.state == TransferState.FAILED
        assert rec.completed == []
        assert rec.cancelled == [(session, "missing chunks [1]")]
        assert coord.get("t1") is None

    def test_finish_gap_free_completes(self):
        coord = TransferCoordinator()
        rec = _Recorder(coord)
        coord.start("t1", "f", 1, 1, "a")
        coord.add_chunk("t1", 0, b"a")
        assert len(rec.completed) == 1
        # file-complete after the last chunk finds nothing left to do
        assert coord.finish("t1") is None

    def test_lenient_completion_skips_gaps(self):
        coord = TransferCoordinator(lenient_completion=True)
        rec = _Recorder(coord)
        coord.start("t1", "f", 3, 3, "a")
        coord.add_chunk("t1", 0, b"a")
        coord.add_chunk("t1", 2, b"c", is_last=True)
        assert rec.completed[0][1] == b"ac"
        assert coord.get("t1") is None

    def test_relay_mode_keeps_no_bytes(self):
        coord = TransferCoordinator(retain_chunks=False)
        rec = _Recorder(coord)
        coord.start("t1", "f", 4, 2, "a", "b")
        session = coord.add_chunk("t1", 0, b"ab")
        assert session.slots[0] == b""
        coord.add_chunk("t1", 1, b"cd")
        assert rec.completed[0][1] is None

    def test_callback_error_does_not_propagate(self):
        coord = TransferCoordinator()

        def boom(session, data):
            raise RuntimeError("boom")

        seen = []
        coord.on_complete(boom)
        coord.on_complete(lambda s, d: seen.append(d))
        coord.start("t1", "f", 1, 1, "a")
        coord.add_chunk("t1", 0, b"x")
        assert seen == [b"x"]
        assert coord.get("t1") is None


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    def test_cancel(self):
        coord = TransferCoordinator()
        rec = _Recorder(coord)
        coord.start("t1", "f", 2, 2, "a", "b")
        session = coord.cancel("t1", "user abort")
        assert session.state == TransferState.CANCELLED
        assert rec.cancelled == [(session, "user abort")]
        assert coord.get("t1") is None
        assert coord.cancel("t1") is None

    def test_cancel_owner_covers_sent_and_received(self):
        coord = TransferCoordinator()
        coord.start("out", "f", 1, 1, sender_id="a", receiver_id="b")
        coord.start("in", "f", 1, 1, sender_id="c", receiver_id="a")
        coord.start("other", "f", 1, 1, sender_id="b", receiver_id="c")

        cancelled = coord.cancel_owner("a", "peer disconnected")

        assert sorted(s.transfer_id for s in cancelled) == ["in", "out"]
        assert coord.get("other") is not None
        assert coord.sessions_for("a") == []
        assert [s.transfer_id for s in coord.sessions_for("b")] == ["other"]
        assert coord.cancel_owner("a") == []

    def test_owner_index_cleared_on_completion(self):
        coord = TransferCoordinator()
        coord.start("t1", "f", 1, 1, "a", "b")
        coord.add_chunk("t1", 0, b"x")
        assert coord.sessions_for("a") == []
        assert coord.sessions_for("b") == []

    def test_expire_idle(self):
        coord = TransferCoordinator()
        stale = coord.start("old", "f", 2, 2, "a")
        coord.start("new", "f", 2, 2, "a")
        stale.last_activity = time.time() - 600

        expired = coord.expire_idle(300)

        assert expired == [stale]
        assert stale.error == "idle timeout"
        assert coord.get("new") is not None
        assert coord.expire_idle(0) == []


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

class TestLimits:
    def test_duplicate_active_id(self):
        coord = TransferCoordinator()
        coord.start("t1", "f", 1, 1, "a")
        with pytest.raises(ProtocolError, match="already in progress"):
            coord.start("t1", "f", 1, 1, "b")

    def test_id_reusable_after_completion(self):
        coord = TransferCoordinator()
        coord.start("t1", "f", 1, 1, "a")
        coord.add_chunk("t1", 0, b"x")
        assert coord.start("t1", "f", 1, 1, "a").received == 0

    def test_max_chunks(self):
        coord = TransferCoordinator(max_chunks=10)
        with pytest.raises(LimitExceeded):
            coord.start("t1", "f", 100, 11, "a")
        assert coord.count == 0

    def test_max_file_size(self):
        coord = TransferCoordinator(max_file_size=100)
        with pytest.raises(LimitExceeded):
            coord.start("t1", "f", 101, 1, "a")

    def test_max_transfers(self):
        coord = TransferCoordinator(max_transfers=2)
        coord.start("t1", "f", 1, 1, "a")
        coord.start("t2", "f", 1, 1, "a")
        with pytest.raises(LimitExceeded):
            coord.start("t3", "f", 1, 1, "a")

    def test_zero_chunks_rejected(self):
        coord = TransferCoordinator()
        with pytest.raises(ProtocolError):
            coord.start("t1", "f", 0, 0, "a")


# ---------------------------------------------------------------------------
# Sender scoping
# ---------------------------------------------------------------------------

class TestSenderScope:
    def test_same_id_from_two_senders(self):
        coord = TransferCoordinator(retain_chunks=False, scope_by_sender=True)
        first = coord.start(1700000000000, "f", 2, 2, sender_id="a", receiver_id="b")
        second = coord.start(1700000000000, "g", 2, 2, sender_id="c", receiver_id="d")

        assert first is not second
        assert coord.count == 2
        assert coord.get(1700000000000, "a") is first
        assert coord.get(1700000000000) is None
        with pytest.raises(ProtocolError, match="already in progress"):
            coord.start(1700000000000, "f", 2, 2, sender_id="a")

    def test_operations_stay_within_sender(self):
        coord = TransferCoordinator(retain_chunks=False, scope_by_sender=True)
        coord.start("t1", "f", 1, 1, sender_id="a", receiver_id="b")
        other = coord.start("t1", "f", 1, 1, sender_id="c", receiver_id="d")

        coord.add_chunk("t1", 0, b"", sender_id="a")

        assert coord.get("t1", "a") is None
        assert coord.get("t1", "c") is other
        assert other.received == 0

    def test_find_by_owner(self):
        coord = TransferCoordinator(retain_chunks=False, scope_by_sender=True)
        outgoing = coord.start("t1", "f", 1, 1, sender_id="a", receiver_id="b")
        incoming = coord.start("t1", "f", 1, 1, sender_id="b", receiver_id="a")

        assert coord.find("t1", "a") is outgoing
        assert coord.find("t1", "b") is incoming
        assert coord.find("t1", "z") is None

    def test_cancel_owner_leaves_other_senders(self):
        coord = TransferCoordinator(retain_chunks=False, scope_by_sender=True)
        coord.start("t1", "f", 1, 1, sender_id="a", receiver_id="b")
        kept = coord.start("t1", "f", 1, 1, sender_id="c", receiver_id="d")

        [cancelled] = coord.cancel_owner("a")

        assert cancelled.sender_id == "a"
        assert coord.get("t1", "c") is kept
        assert kept.state == TransferState.RECEIVING
