"""
admission.py holds the admission controller, a fixed-window rate limiter
consulted for every packet a router receives from a link before the packet is
routed.

Each source address gets its own window. A window admits packets until the
bytes it has accepted would exceed floor(rate * window); the window restarts
on the first packet arriving window seconds or more after it opened.
"""
import logging
import math
from dataclasses import dataclass
from typing import Dict, Hashable, Optional

from wanqos.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class RateLimiterState:
    window_start: float = 0.0
    bytes_in_window: int = 0
    dropped: int = 0
    allowed: int = 0


class AdmissionController:
    def __init__(self, rate_limit_Bps: float, window: float = 1.0, name: str = ""):
        if rate_limit_Bps < 0:
            raise ConfigurationError(f"negative rate limit {rate_limit_Bps} bytes/s")
        if not (window > 0):
            raise ConfigurationError(f"rate limiter window must be positive, got {window}")
        self.name = name
        self.rate_limit = rate_limit_Bps  # bytes per second
        self.window = window  # seconds
        self.states: Dict[Hashable, RateLimiterState] = {}

    # from_bitrate builds a controller whose limit is given in bits per second
    @classmethod
    def from_bitrate(cls, rate_bps: float, window: float = 1.0, name: str = "") -> "AdmissionController":
        if rate_bps < 0:
            raise ConfigurationError(f"negative rate limit {rate_bps} bits/s")
        return cls(rate_bps / 8.0, window, name)

    @property
    def max_bytes(self) -> int:
        return math.floor(self.rate_limit * self.window)

    def state_for(self, source: Hashable) -> Optional[RateLimiterState]:
        return self.states.get(source)

    def allow_packet(self, size: int, source: Hashable, now: float) -> bool:
        state = self.states.get(source)
        if state is None:
            # the first packet of a source opens its first window
            state = RateLimiterState(window_start=now)
            self.states[source] = state

        if now - state.window_start >= self.window:
            state.bytes_in_window = 0
            state.window_start = now

        if state.bytes_in_window + size <= self.max_bytes:
            state.bytes_in_window += size
            state.allowed += 1
            return True

        state.dropped += 1
        if state.dropped == 1:
            logger.info("%s: rate limiting source %s at t=%.3fs", self.name or "admission", source, now)
        return False

    @property
    def dropped_total(self) -> int:
        return sum(s.dropped for s in self.states.values())

    @property
    def allowed_total(self) -> int:
        return sum(s.allowed for s in self.states.values())
