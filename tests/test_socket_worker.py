import socket
import time

import pytest

from packets import PKT_TYPE_REPLAY, make_data
from socket_worker import SequenceTracker, SocketWorker, WorkerState, resolve_peer


def wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class ScriptedClock:
    """Arrival clock returning preset millisecond values, then repeating the last one."""

    def __init__(self, *values):
        self.values = list(values)
        self.calls = 0

    def __call__(self):
        idx = min(self.calls, len(self.values) - 1)
        self.calls += 1
        return self.values[idx]


@pytest.fixture
def peer():
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    s.bind(("127.0.0.1", 0))
    s.settimeout(2.0)
    yield s
    s.close()


def start_worker(worker, peer):
    worker.start(peer.getsockname())
    data, worker_addr = peer.recvfrom(2048)
    assert data == b"l"
    return worker_addr


@pytest.fixture
def make_worker():
    workers = []

    def factory(**kwargs):
        w = SocketWorker(**kwargs)
        workers.append(w)
        return w

    yield factory
    for w in workers:
        w.stop()


# --- SequenceTracker ---

def test_tracker_counts_gaps():
    tracker = SequenceTracker()
    for seq in (1, 2, 3, 6, 7):
        assert tracker.accept(seq) is not None
    assert tracker.missing_count == 2
    assert tracker.total_count == 7
    assert tracker.last_sequence == 7


def test_tracker_rejects_regression_and_duplicate():
    tracker = SequenceTracker()
    tracker.accept(5)

    assert tracker.accept(3) is None
    assert tracker.accept(5) is None
    assert tracker.last_sequence == 5
    assert tracker.missing_count == 0
    assert tracker.total_count == 1


def test_tracker_first_packet_never_counts_missing():
    tracker = SequenceTracker()
    assert tracker.accept(1000) == 0
    assert tracker.missing_count == 0
    assert tracker.total_count == 1


def test_tracker_late_arrival_stays_missing():
    tracker = SequenceTracker()
    tracker.accept(1)
    assert tracker.accept(3) == 1
    assert tracker.accept(2) is None
    assert (tracker.missing_count, tracker.total_count) == (1, 3)


# --- SocketWorker ---

def test_summary_before_start_is_empty():
    worker = SocketWorker()
    summary = worker.get_summary()
    assert worker.state == WorkerState.IDLE
    assert summary.missing_count == 0
    assert summary.total_count == 0
    assert summary.intervals.avg == 0


def test_stop_without_start_is_noop():
    worker = SocketWorker()
    worker.stop()
    assert worker.state == WorkerState.IDLE


def test_loss_accounting(make_worker, peer):
    worker = make_worker()
    worker_addr = start_worker(worker, peer)
    assert worker.state == WorkerState.RECEIVING

    for seq in (1, 2, 3, 6, 7):
        peer.sendto(make_data(seq), worker_addr)

    assert wait_until(lambda: worker.get_summary().total_count == 7)
    summary = worker.get_summary()
    assert summary.missing_count == 2
    assert summary.total_count == 7


def test_out_of_order_packet_is_ignored(make_worker, peer):
    clock = ScriptedClock(1000, 1100, 1250)
    worker = make_worker(clock=clock)
    worker_addr = start_worker(worker, peer)

    for seq in (5, 3, 6):
        peer.sendto(make_data(seq), worker_addr)

    assert wait_until(lambda: worker.get_summary().total_count == 2)
    summary = worker.get_summary()
    assert summary.missing_count == 0
    assert summary.total_count == 2
    # the dropped packet did not move the arrival baseline
    assert summary.intervals.avg == 250
    assert worker._window.snapshot() == [250]


def test_first_packet_produces_no_interval(make_worker, peer):
    worker = make_worker(clock=ScriptedClock(5000, 5020))
    worker_addr = start_worker(worker, peer)

    peer.sendto(make_data(1), worker_addr)
    assert wait_until(lambda: worker.get_summary().total_count == 1)
    assert worker._window.snapshot() == []

    peer.sendto(make_data(2), worker_addr)
    assert wait_until(lambda: worker.get_summary().total_count == 2)
    assert worker._window.snapshot() == [20]
    assert worker.get_summary().intervals.p99_9 == 20


def test_replay_echoes_every_byte_but_the_type(make_worker, peer):
    worker = make_worker()
    worker_addr = start_worker(worker, peer)

    original = make_data(1, sent_at_ms=123456, payload_size=1200)
    original = original[:13] + bytes(range(256)) * 4 + original[13 + 1024:]
    peer.sendto(original, worker_addr)

    replay, addr = peer.recvfrom(65535)
    assert addr[1] == worker_addr[1]
    assert len(replay) == len(original)
    assert replay[0] == PKT_TYPE_REPLAY
    assert replay[1:] == original[1:]


def test_bad_packets_are_dropped_and_logged(make_worker, peer, capsys):
    worker = make_worker()
    worker_addr = start_worker(worker, peer)

    peer.sendto(b"", worker_addr)
    peer.sendto(b"d\x00\x01", worker_addr)
    peer.sendto(b"zzz", worker_addr)
    peer.sendto(make_data(1), worker_addr)

    assert wait_until(lambda: worker.get_summary().total_count == 1)
    assert worker.get_summary().missing_count == 0

    out = capsys.readouterr().out
    assert "Received a packet with 0 length" in out
    assert "malformed" in out
    assert f"unknown type: {ord('z')}. Length: 3" in out


def test_start_is_idempotent(make_worker, peer):
    worker = make_worker()
    start_worker(worker, peer)

    worker.start(peer.getsockname())

    peer.settimeout(0.2)
    with pytest.raises(socket.timeout):
        peer.recvfrom(2048)


def test_stop_sends_stop_and_freezes_state(make_worker, peer):
    worker = make_worker()
    worker_addr = start_worker(worker, peer)

    peer.sendto(make_data(1), worker_addr)
    peer.sendto(make_data(2), worker_addr)
    assert wait_until(lambda: worker.get_summary().total_count == 2)
    thread = worker._thread

    worker.stop()

    assert worker.state == WorkerState.TERMINATED
    assert not thread.is_alive()
    assert worker.local_address is None

    # drain the replays, the last datagram must be the stop packet
    received = []
    peer.settimeout(0.5)
    try:
        while True:
            received.append(peer.recvfrom(2048)[0])
    except socket.timeout:
        pass
    assert received[-1] == b"s"

    before = worker.get_summary()
    peer.sendto(make_data(3), worker_addr)
    peer.sendto(make_data(9), worker_addr)
    time.sleep(0.1)
    assert worker.get_summary() == before

    worker.stop()
    assert worker.state == WorkerState.TERMINATED


def test_restart_resets_state(make_worker, peer):
    worker = make_worker()
    worker_addr = start_worker(worker, peer)
    for seq in (1, 4):
        peer.sendto(make_data(seq), worker_addr)
    assert wait_until(lambda: worker.get_summary().total_count == 4)
    worker.stop()

    new_addr = start_worker(worker, peer)
    summary = worker.get_summary()
    assert (summary.missing_count, summary.total_count) == (0, 0)

    # sequence numbering may start over after a restart
    peer.sendto(make_data(1), new_addr)
    assert wait_until(lambda: worker.get_summary().total_count == 1)
    assert worker.get_summary().missing_count == 0


def test_summary_polled_while_receiving(make_worker, peer):
    worker = make_worker()
    worker_addr = start_worker(worker, peer)
    n = 200

    seen_totals = []
    for seq in range(1, n + 1):
        peer.sendto(make_data(seq), worker_addr)
        if seq % 20 == 0:
            summary = worker.get_summary()
            seen_totals.append(summary.total_count)
            assert summary.missing_count <= summary.total_count
            time.sleep(0.001)

    assert wait_until(lambda: worker.get_summary().total_count == n)
    assert seen_totals == sorted(seen_totals)
    assert len(worker._window.snapshot()) == n - 1 - worker.get_summary().missing_count


def test_stop_completes_when_stop_packet_cannot_be_sent(make_worker, peer, capsys):
    worker = make_worker()
    worker_addr = start_worker(worker, peer)
    peer.sendto(make_data(1), worker_addr)
    assert wait_until(lambda: worker.get_summary().total_count == 1)
    thread = worker._thread

    #port 0 is not a valid destination, sendto fails
    worker._peer_addr = ("127.0.0.1", 0)
    worker.stop()

    assert worker.state == WorkerState.TERMINATED
    assert not thread.is_alive()
    assert "⚠️ Failed to send stop packet" in capsys.readouterr().out


def test_failed_listen_and_replay_sends_keep_receiving(make_worker, peer, capsys):
    worker = make_worker()
    worker.start(("127.0.0.1", 0))
    assert worker.state == WorkerState.RECEIVING
    worker_addr = ("127.0.0.1", worker.local_address[1])

    peer.sendto(make_data(1), worker_addr)
    peer.sendto(make_data(2), worker_addr)

    assert wait_until(lambda: worker.get_summary().total_count == 2)
    assert worker.get_summary().missing_count == 0
    out = capsys.readouterr().out
    assert "⚠️ Failed to send listen packet" in out
    assert "⚠️ Failed to send replay for Seq=1" in out
    assert "⚠️ Failed to send replay for Seq=2" in out


def test_replay_send_failure_mid_session(make_worker, peer, capsys):
    worker = make_worker()
    worker_addr = start_worker(worker, peer)
    peer.sendto(make_data(1), worker_addr)
    assert wait_until(lambda: worker.get_summary().total_count == 1)

    worker._peer_addr = ("127.0.0.1", 0)
    peer.sendto(make_data(2), worker_addr)

    assert wait_until(lambda: worker.get_summary().total_count == 2)
    assert "⚠️ Failed to send replay for Seq=2" in capsys.readouterr().out


def test_receive_error_ends_loop_and_keeps_counts(make_worker, peer, capsys):
    worker = make_worker()
    worker_addr = start_worker(worker, peer)
    for seq in (1, 2, 4):
        peer.sendto(make_data(seq), worker_addr)
    assert wait_until(lambda: worker.get_summary().total_count == 4)
    thread = worker._thread

    #socket torn down underneath the loop, not through stop()
    sock = worker._sock
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()

    assert wait_until(lambda: not thread.is_alive())
    assert "⚠️ Exception in receive loop, exiting" in capsys.readouterr().out
    summary = worker.get_summary()
    assert (summary.missing_count, summary.total_count) == (1, 4)
    assert worker.state == WorkerState.RECEIVING


# --- resolve_peer ---

def _fake_getaddrinfo(*families):
    def getaddrinfo(host, port, *args, **kwargs):
        entries = {
            socket.AF_INET6: (socket.AF_INET6, socket.SOCK_DGRAM, socket.IPPROTO_UDP, "", ("::1", port, 0, 0)),
            socket.AF_INET: (socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP, "", ("127.0.0.1", port)),
        }
        return [entries[af] for af in families]
    return getaddrinfo


def test_resolve_peer_prefers_ipv4(monkeypatch):
    monkeypatch.setattr(socket, "getaddrinfo", _fake_getaddrinfo(socket.AF_INET6, socket.AF_INET))
    assert resolve_peer(("localhost", 4433)) == (socket.AF_INET, ("127.0.0.1", 4433))


def test_resolve_peer_falls_back_to_ipv6(monkeypatch):
    monkeypatch.setattr(socket, "getaddrinfo", _fake_getaddrinfo(socket.AF_INET6))
    assert resolve_peer(("localhost", 4433)) == (socket.AF_INET6, ("::1", 4433, 0, 0))


def test_resolve_peer_numeric_ipv4():
    assert resolve_peer(("127.0.0.1", 9)) == (socket.AF_INET, ("127.0.0.1", 9))
