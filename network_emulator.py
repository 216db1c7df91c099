"""
Network Emulator for simulating real-world path conditions on the peer's data stream.

This module provides packet loss, delay and jitter emulation for outgoing UDP datagrams.
"""

import asyncio
import random
from typing import Callable, Optional, Set


class NetworkEmulator:
    """
    Emulates network conditions (packet loss, delay, jitter) for outgoing datagrams.

    Usage:
        emulator = NetworkEmulator(enabled=True, delay_ms=50, jitter_ms=10, packet_loss_rate=0.05)
        await emulator.transmit(lambda: transport.sendto(pkt, addr), packet_info={"seq": 3})

        # For selective dropping (creates a known sequence gap):
        emulator = NetworkEmulator(enabled=True, drop_sequences={3, 7, 12})

    Each transmit() call sleeps independently, so when callers schedule one task
    per datagram a large enough jitter reorders packets on the wire.
    """

    def __init__(self, enabled: bool = False, delay_ms: float = 0, jitter_ms: float = 0,
                 packet_loss_rate: float = 0.0, drop_sequences: Optional[Set[int]] = None,
                 seed: Optional[int] = None):
        """
        Initialize network emulator.

        Args:
            enabled: If False, transmit() just forwards to send_func (no emulation)
            delay_ms: Base delay in milliseconds
            jitter_ms: Jitter variation in milliseconds (±jitter/2)
            packet_loss_rate: Probability of packet loss (0.0 to 1.0)
            drop_sequences: Set of sequence numbers to always drop
            seed: Seed for the loss/jitter random source, for repeatable runs
        """
        if not 0.0 <= packet_loss_rate <= 1.0:
            raise ValueError("packet_loss_rate must be between 0.0 and 1.0")
        self.enabled = enabled
        self.delay_ms = delay_ms
        self.jitter_ms = jitter_ms
        self.packet_loss_rate = packet_loss_rate
        self.drop_sequences = set(drop_sequences or ())
        self._rng = random.Random(seed)
        self._dropped_count = 0
        self._total_count = 0

    def should_drop(self, packet_info: Optional[dict] = None) -> bool:
        """Decide (and count) whether the next datagram is lost."""
        self._total_count += 1
        if not self.enabled:
            return False

        seq = packet_info.get("seq") if packet_info else None
        if seq is not None and seq in self.drop_sequences:
            self._dropped_count += 1
            print(f"[emulator] 🎯 DROP: Seq={seq}")
            return True

        if self.packet_loss_rate > 0 and self._rng.random() < self.packet_loss_rate:
            self._dropped_count += 1
            print(f"[emulator] 📦 Packet DROPPED (loss rate: {self.packet_loss_rate:.2%}, "
                  f"total dropped: {self._dropped_count}/{self._total_count})")
            return True
        return False

    def next_delay_ms(self) -> float:
        if not self.enabled or self.delay_ms <= 0:
            return 0.0
        # base_delay + random jitter (-jitter/2 to +jitter/2), never negative
        jitter_offset = self._rng.uniform(-self.jitter_ms / 2, self.jitter_ms / 2)
        return max(0.0, self.delay_ms + jitter_offset)

    async def transmit(self, send_func: Callable[[], None], packet_info: Optional[dict] = None) -> bool:
        """
        Drop-in wrapper around a send that applies network emulation.

        Args:
            send_func: Zero-argument callable performing the actual send
            packet_info: Optional dict with packet metadata, e.g., {"seq": 5}

        Returns True if the datagram was handed to send_func.
        """
        if self.should_drop(packet_info):
            return False

        delay_ms = self.next_delay_ms()
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000.0)

        send_func()
        return True

    def get_stats(self) -> dict:
        """Get emulation statistics."""
        return {
            "enabled": self.enabled,
            "total_packets": self._total_count,
            "dropped_packets": self._dropped_count,
            "drop_rate": self._dropped_count / max(1, self._total_count),
            "delay_ms": self.delay_ms,
            "jitter_ms": self.jitter_ms,
            "packet_loss_rate": self.packet_loss_rate,
            "drop_sequences": self.drop_sequences
        }

    def reset_stats(self):
        """Reset emulation statistics."""
        self._dropped_count = 0
        self._total_count = 0
