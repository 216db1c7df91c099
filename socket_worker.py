import socket
import threading
from enum import Enum
from typing import Callable, Optional, Tuple

from metrics import QUEUE_LEN, IntervalWindow, Summary, compute_display_info, get_timestamp, now_ms
from packets import (
    DataPacket,
    MalformedPacket,
    UnknownPacket,
    decode_header,
    encode_listen,
    encode_stop,
    retag_as_replay,
)

RECV_BUFFER_SIZE = 65535 #large enough for any UDP datagram


class WorkerState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    RECEIVING = "receiving"
    STOPPING = "stopping"
    TERMINATED = "terminated"


class SequenceTracker:
    """
    Loss detector over the peer's sequence numbers.

    Every skipped sequence number counts once as missing and once toward the
    total. Duplicates and regressions are rejected without touching either
    counter, so a late arrival of a packet already counted as missing stays
    missing.
    """

    def __init__(self):
        self.last_sequence = 0 #0 = none seen yet
        self.missing_count = 0
        self.total_count = 0

    def accept(self, seq: int) -> Optional[int]:
        """Returns the number of packets missing before seq, or None if seq was rejected."""
        if self.last_sequence != 0 and seq <= self.last_sequence:
            return None
        gap = 0
        if self.last_sequence != 0:
            gap = seq - self.last_sequence - 1
            self.missing_count += gap
            self.total_count += gap
        self.last_sequence = seq
        self.total_count += 1
        return gap


def resolve_peer(peer_address: Tuple[str, int]):
    host, port = peer_address
    gai = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM, proto=socket.IPPROTO_UDP)
    if not gai:
        raise OSError(f"could not resolve {host}:{port}")
    #prefer IPv4 when a name resolves to both families
    for af, _, _, _, sa in gai:
        if af == socket.AF_INET:
            return af, sa
    af, _, _, _, sa = gai[0]
    return af, sa


class SocketWorker:
    """
    Receives the peer's data stream on a background thread, echoes every data
    packet back as a replay, and keeps loss counters plus a sliding window of
    inter-arrival intervals.

    start(), stop() and get_summary() are the whole public surface. The loop
    thread is the only writer; get_summary() may be called from any thread at
    any time and returns a consistent snapshot.
    """

    def __init__(self, capacity: int = QUEUE_LEN, clock: Callable[[], int] = now_ms):
        self._capacity = capacity
        self._clock = clock #arrival time source, integer ms

        #guards the window, the loss counters and last arrival time together
        self._lock = threading.RLock()
        #serialises start/stop against each other
        self._control_lock = threading.Lock()

        self.state = WorkerState.IDLE
        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._peer_addr = None
        self._closing = False
        self._reset()

    def _reset(self):
        with self._lock:
            self._tracker = SequenceTracker()
            self._window = IntervalWindow(self._capacity, lock=self._lock)
            self._last_arrival_ms = 0

    @property
    def local_address(self):
        sock = self._sock
        if sock is None:
            return None
        try:
            return sock.getsockname()
        except OSError:
            return None

    def is_running(self) -> bool:
        return self.state in (WorkerState.LISTENING, WorkerState.RECEIVING)

    # --- Host-facing API ---
    def start(self, peer_address: Tuple[str, int]):
        with self._control_lock:
            if self.is_running():
                return

            af, sa = resolve_peer(peer_address)
            sock = socket.socket(af, socket.SOCK_DGRAM)
            try:
                sock.bind(("::" if af == socket.AF_INET6 else "0.0.0.0", 0))
            except OSError:
                sock.close()
                raise

            self._reset()
            self._sock = sock
            self._peer_addr = sa
            self._closing = False
            self.state = WorkerState.LISTENING

            print(f"[worker] Sending listen packet to {sa[0]}:{sa[1]} from local port {sock.getsockname()[1]}")
            self._send_control(sock, encode_listen(), "listen")

            self._thread = threading.Thread(
                target=self._recv_loop, args=(sock,), name="socket-worker", daemon=True)
            self._thread.start()
            self.state = WorkerState.RECEIVING

    def stop(self):
        with self._control_lock:
            if not self.is_running():
                return
            self.state = WorkerState.STOPPING
            sock = self._sock

            print(f"[worker] Sending stop packet to {self._peer_addr[0]}:{self._peer_addr[1]}")
            self._send_control(sock, encode_stop(), "stop")

            #closing the socket is what wakes the blocked receive
            self._closing = True
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                #unconnected UDP sockets report ENOTCONN here but blocked readers are still woken
                pass
            sock.close()

            self._thread.join()
            self._thread = None
            self._sock = None
            self.state = WorkerState.TERMINATED
            print("[worker] Receive loop finished")

    def get_summary(self) -> Summary:
        with self._lock:
            samples = self._window.snapshot()
            missing = self._tracker.missing_count
            total = self._tracker.total_count
        #percentiles computed outside the lock
        return Summary(
            intervals=compute_display_info(samples),
            missing_count=missing,
            total_count=total,
        )

    # --- Receive loop ---
    def _send_control(self, sock, payload: bytes, name: str):
        try:
            sock.sendto(payload, self._peer_addr)
        except OSError as e:
            print(f"[{get_timestamp()}] [worker] ⚠️ Failed to send {name} packet: {e}")

    def _recv_loop(self, sock: socket.socket):
        buf = bytearray(RECV_BUFFER_SIZE)
        while True:
            try:
                nbytes, _ = sock.recvfrom_into(buf)
            except OSError as e:
                if not self._closing:
                    print(f"[{get_timestamp()}] [worker] ⚠️ Exception in receive loop, exiting: {e}")
                return
            if self._closing:
                return
            self._packet_received(sock, buf, nbytes)

    def _packet_received(self, sock, buf: bytearray, nbytes: int):
        if nbytes == 0:
            print(f"[{get_timestamp()}] [worker] ⚠️ Received a packet with 0 length")
            return

        view = memoryview(buf)[:nbytes]
        try:
            pkt = decode_header(view)
        except MalformedPacket as e:
            print(f"[{get_timestamp()}] [worker] ⚠️ Dropping malformed packet: {e}")
            return

        if isinstance(pkt, DataPacket):
            self._data_packet_received(sock, buf, view, pkt)
        elif isinstance(pkt, UnknownPacket):
            print(f"[{get_timestamp()}] [worker] ⚠️ Got packet with unknown type: {pkt.type_byte}. Length: {pkt.length}")
        else:
            print(f"[{get_timestamp()}] [worker] ⚠️ Ignoring unexpected {type(pkt).__name__} from peer")

    def _data_packet_received(self, sock, buf: bytearray, view: memoryview, pkt: DataPacket):
        #echo before any bookkeeping
        retag_as_replay(buf)
        try:
            sock.sendto(view, self._peer_addr)
        except OSError as e:
            if not self._closing:
                print(f"[{get_timestamp()}] [worker] ⚠️ Failed to send replay for Seq={pkt.sequence}: {e}")

        arrival_ms = self._clock()
        seq = pkt.sequence

        with self._lock:
            prev_seq = self._tracker.last_sequence
            missing = self._tracker.accept(seq)
            if missing is not None:
                if self._last_arrival_ms != 0:
                    self._window.push(arrival_ms - self._last_arrival_ms)
                self._last_arrival_ms = arrival_ms
            missing_total = self._tracker.missing_count
            all_total = self._tracker.total_count

        if missing is None:
            print(f"[{get_timestamp()}] [worker] 🔄 Packet {seq} is received out of order. "
                  f"Current packet number is: {prev_seq}")
        elif missing:
            first, last = prev_seq + 1, seq - 1
            which = f"Packet {first}" if first == last else f"Packets {first}..{last}"
            print(f"[{get_timestamp()}] [worker] ⚠️ {which} missing. "
                  f"Number of missing packets: {missing_total}. "
                  f"Missing rate: {missing_total / all_total:.4f}")
