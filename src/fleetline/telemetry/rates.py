"""Throughput from cumulative interface byte counters.

A router only reports ever-growing counters. Turning them into bits per
second needs the previous observation for the same (device, interface,
direction), so the calculator keeps exactly one sample per key.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta


_ONE_MS = timedelta(milliseconds=1)


@dataclass(frozen=True)
class Sample:
    """A cumulative counter value and the wall-clock time it was read."""

    value: int
    observed_at: datetime


@dataclass(frozen=True)
class InterfaceRate:
    rx_bps: int | None
    tx_bps: int | None


def compute_rate(prev: Sample | None, curr: Sample) -> int | None:
    """Bits per second between two byte-counter samples.

    Returns None when the rate is unknown: no previous sample, a clock that
    did not move forward, or a counter that went backwards (reboot, reset
    or wrap). None means "unknown", never zero.
    """
    if prev is None:
        return None
    elapsed_ms = (curr.observed_at - prev.observed_at) / _ONE_MS
    if elapsed_ms <= 0:
        return None
    delta = curr.value - prev.value
    if delta < 0:
        return None
    return round(delta * 8 * 1000 / elapsed_ms)


class RateCalculator:
    """Keyed store of last-seen counter samples.

    Each (device, interface, direction) key owns one slot with its own lock,
    so interfaces sampled in parallel never contend with each other.
    """

    def __init__(self) -> None:
        self._samples: dict[tuple[int, str, str], Sample] = {}
        self._locks: dict[tuple[int, str, str], threading.Lock] = {}
        self._rates: dict[tuple[int, str], InterfaceRate] = {}

    def _lock_for(self, key: tuple[int, str, str]) -> threading.Lock:
        # dict.setdefault is atomic, so two callers always get the same lock
        return self._locks.setdefault(key, threading.Lock())

    def update(
        self, device_id: int, interface: str, direction: str, curr: Sample
    ) -> int | None:
        """Store ``curr`` as the latest sample and return the rate since the previous one."""
        key = (device_id, interface, direction)
        with self._lock_for(key):
            prev = self._samples.get(key)
            self._samples[key] = curr
        return compute_rate(prev, curr)

    def observe(
        self,
        device_id: int,
        interface: str,
        rx_bytes: int | None,
        tx_bytes: int | None,
        observed_at: datetime,
    ) -> InterfaceRate:
        """Record both directions of an interface and remember the resulting rate."""
        rx = (
            self.update(device_id, interface, "rx", Sample(rx_bytes, observed_at))
            if rx_bytes is not None
            else None
        )
        tx = (
            self.update(device_id, interface, "tx", Sample(tx_bytes, observed_at))
            if tx_bytes is not None
            else None
        )
        rate = InterfaceRate(rx_bps=rx, tx_bps=tx)
        self._rates[(device_id, interface)] = rate
        return rate

    def current_rate(self, device_id: int, interface: str) -> InterfaceRate | None:
        """Most recently computed rate for an interface, or None if never sampled."""
        return self._rates.get((device_id, interface))

    def device_rates(self, device_id: int) -> dict[str, InterfaceRate]:
        return {
            iface: rate for (dev, iface), rate in list(self._rates.items()) if dev == device_id
        }

    def forget_device(self, device_id: int) -> None:
        """Drop every sample of a device so the next observation starts fresh."""
        for key in [k for k in list(self._samples) if k[0] == device_id]:
            self._samples.pop(key, None)
        for key in [k for k in list(self._rates) if k[0] == device_id]:
            self._rates.pop(key, None)


