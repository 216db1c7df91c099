import asyncio
from typing import Optional, Set, Tuple

from metrics import RttStats, get_timestamp, now_ms
from network_emulator import NetworkEmulator
from packets import (
    DATA_HEADER_LEN,
    ListenPacket,
    MalformedPacket,
    ReplayPacket,
    StopPacket,
    UnknownPacket,
    decode_header,
    make_data,
)

METRIC_SUMMARY_EVERY_S = 5.0 #how many seconds between each metric summary
DEFAULT_RATE_PPS = 50.0 #20 ms cadence, audio-like
DEFAULT_PAYLOAD_SIZE = 160


class EchoPeer(asyncio.DatagramProtocol):
    """
    Cooperating endpoint for the jitter worker: streams data packets to whoever
    sent the last listen packet until that address sends stop, and measures RTT
    from the replays that come back.
    """

    def __init__(self, rate_pps: float = DEFAULT_RATE_PPS, payload_size: int = DEFAULT_PAYLOAD_SIZE,
                 emulator: Optional[NetworkEmulator] = None,
                 summary_every_s: float = METRIC_SUMMARY_EVERY_S):
        if rate_pps <= 0:
            raise ValueError("rate_pps must be positive")
        if payload_size < DATA_HEADER_LEN:
            raise ValueError(f"payload_size must be >= {DATA_HEADER_LEN}")
        self.rate_pps = rate_pps
        self.payload_size = payload_size
        self.summary_every_s = summary_every_s

        # Network emulator (defaults to disabled if not provided)
        self.emulator = emulator if emulator is not None else NetworkEmulator(enabled=False)

        self.transport: Optional[asyncio.DatagramTransport] = None
        self.listener: Optional[Tuple] = None
        self.next_seq = 1
        self.stream_task: Optional[asyncio.Task] = None
        self.metrics_task: Optional[asyncio.Task] = None
        self._inflight_sends: Set[asyncio.Task] = set()
        self._last_counters = {"tx": 0, "replay_rx": 0}

        self.metrics = {
            "tx": 0, "bytes_tx": 0, "replay_rx": 0, "bytes_rx": 0,
            "rtt": RttStats(),
        }

    def connection_made(self, transport):
        self.transport = transport
        self.metrics_task = asyncio.create_task(self._periodic_metrics_print())

    def connection_lost(self, exc):
        self._stop_stream()
        if self.metrics_task:
            self.metrics_task.cancel()
        for task in list(self._inflight_sends):
            task.cancel()

    def datagram_received(self, data: bytes, addr):
        try:
            pkt = decode_header(data)
        except MalformedPacket as e:
            print(f"[{get_timestamp()}] [peer] ⚠️ Dropping malformed packet from {addr}: {e}")
            return

        if isinstance(pkt, ListenPacket):
            self._start_stream(addr)
        elif isinstance(pkt, StopPacket):
            if addr != self.listener:
                print(f"[peer] Ignoring stop from {addr}, current listener is {self.listener}")
                return
            print(f"[peer] Stop received from {addr[0]}:{addr[1]}")
            self._stop_stream()
            self._print_metrics_summary()
            self.listener = None
        elif isinstance(pkt, ReplayPacket):
            self._replay_received(pkt)
        elif isinstance(pkt, UnknownPacket):
            print(f"[{get_timestamp()}] [peer] ⚠️ Got packet with unknown type: {pkt.type_byte}. Length: {pkt.length}")
        else:
            print(f"[{get_timestamp()}] [peer] ⚠️ Ignoring unexpected {type(pkt).__name__} from {addr}")

    def error_received(self, exc):
        print(f"[{get_timestamp()}] [peer] ⚠️ Socket error: {exc}")

    # --- Streaming ---
    def _start_stream(self, addr):
        self._stop_stream()
        print(f"[peer] Listen received from {addr[0]}:{addr[1]}, streaming at {self.rate_pps:g} pps")
        self.listener = addr
        self.next_seq = 1
        self.stream_task = asyncio.create_task(self._stream(addr))

    def _stop_stream(self):
        if self.stream_task:
            self.stream_task.cancel()
            self.stream_task = None

    async def _stream(self, addr):
        loop = asyncio.get_running_loop()
        period = 1.0 / self.rate_pps
        next_t = loop.time()
        try:
            while True:
                seq = self.next_seq
                self.next_seq += 1
                self._send_data(make_data(seq, now_ms(), self.payload_size), seq, addr)
                next_t += period
                await asyncio.sleep(max(0.0, next_t - loop.time()))
        except asyncio.CancelledError:
            pass

    def _send_data(self, pkt: bytes, seq: int, addr):
        self.metrics["tx"] += 1
        self.metrics["bytes_tx"] += len(pkt)

        def send():
            if self.transport is not None and not self.transport.is_closing():
                self.transport.sendto(pkt, addr)

        #one task per datagram, emulated delays are independent
        task = asyncio.create_task(self.emulator.transmit(send, packet_info={"seq": seq}))
        self._inflight_sends.add(task)
        task.add_done_callback(self._inflight_sends.discard)

    def _replay_received(self, pkt: ReplayPacket):
        rtt_ms = now_ms() - pkt.sent_at_ms
        m = self.metrics
        m["replay_rx"] += 1
        m["bytes_rx"] += pkt.length
        m["rtt"].add(rtt_ms)

    # --- Reporting ---
    def _had_activity_since_last(self):
        cur = {"tx": self.metrics["tx"], "replay_rx": self.metrics["replay_rx"]}
        changed = any(cur[k] != self._last_counters[k] for k in cur)
        self._last_counters = cur
        return changed

    def _print_metrics_summary(self):
        m = self.metrics
        print("\n[peer] 📊 ---- METRIC SUMMARY ----")
        print(f"[metrics] TX={m['tx']} REPLAY_RX={m['replay_rx']} "
              f"BytesTX={m['bytes_tx']} BytesRX={m['bytes_rx']}")
        rtt = m["rtt"].report()
        if rtt:
            print(f"    RTT(ms): min={rtt['min']:.2f} avg={rtt['avg']:.2f} "
                  f"p50={rtt['p50']:.2f} p95={rtt['p95']:.2f} max={rtt['max']:.2f} "
                  f"jitter(RFC3550)={rtt['jitter']:.2f}")
        else:
            print("    RTT(ms): no samples")
        if self.emulator.enabled:
            stats = self.emulator.get_stats()
            print(f"    Emulator: dropped={stats['dropped_packets']}/{stats['total_packets']} "
                  f"({stats['drop_rate']:.2%})")
        print("[peer] --------------------------\n")

    async def _periodic_metrics_print(self):
        try:
            while True:
                await asyncio.sleep(self.summary_every_s)
                if self._had_activity_since_last():
                    self._print_metrics_summary()
        except asyncio.CancelledError:
            pass


async def start_peer(host: str = "0.0.0.0", port: int = 4433, **kwargs):
    """Bind an EchoPeer; returns (transport, protocol). kwargs go to EchoPeer."""
    loop = asyncio.get_running_loop()
    return await loop.create_datagram_endpoint(
        lambda: EchoPeer(**kwargs), local_addr=(host, port))


async def main(host="0.0.0.0", port=4433, rate_pps: float = DEFAULT_RATE_PPS,
               payload_size: int = DEFAULT_PAYLOAD_SIZE,
               emulation_enabled: bool = False, delay_ms: float = 0,
               jitter_ms: float = 0, packet_loss_rate: float = 0.0,
               drop_sequences: set = None):
    # Create network emulator
    emulator = NetworkEmulator(
        enabled=emulation_enabled,
        delay_ms=delay_ms,
        jitter_ms=jitter_ms,
        packet_loss_rate=packet_loss_rate,
        drop_sequences=drop_sequences or set()
    )

    transport, _ = await start_peer(host, port, rate_pps=rate_pps,
                                    payload_size=payload_size, emulator=emulator)
    sockname = transport.get_extra_info("sockname")
    print(f"[peer] UDP listening on {sockname[0]}:{sockname[1]}")
    if emulation_enabled:
        print(f"[peer] Network emulation: delay={delay_ms}ms, jitter={jitter_ms}ms, loss={packet_loss_rate:.2%}")
    try:
        # ⛔️ Keep the peer running forever
        await asyncio.Event().wait()
    finally:
        transport.close()
