"""
flow_stats.py holds the post-run side of a simulation: the monitor that turns
trace records into an ordered log of packet events, the per-flow statistics
built from that log, the classifier that maps flows onto categories, and the
aggregation of each category into numbers and a verdict.

Aggregation of a category, given its packets:

  lost        max(tx - rx, 0)
  loss_ratio  lost / tx, or 0 when nothing was sent
  avg_delay   sum of one-way delays / rx, None when nothing arrived
  avg_jitter  sum of |delay_i - delay_{i-1}| / (rx - 1), 0 with fewer than two arrivals
  throughput  rx_bytes*8 / (last receive - first send), the duration held above 1e-9
"""
import ipaddress
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from wanqos.errors import ConfigurationError
from wanqos.net import FlowKey, Network
from wanqos.trace import (DROPPED, RECEIVED, SENT, EventLog, PacketEvent, Subscription,
                          TraceKey, TraceKind, TraceRecord)

logger = logging.getLogger(__name__)

__all__ = ["FlowKey", "FlowMonitor", "FlowStats", "build_flow_stats", "ClassRule", "FlowClassifier",
           "CategoryStats", "aggregate", "ThresholdTier", "VerdictTable", "EavesdropTap",
           "default_verdict_tables"]

# durations at or below this are replaced by it when computing throughput
MIN_DURATION = 1e-9


class FlowMonitor:
    """
    FlowMonitor listens to every node's TX, RX and DROP trace points and
    records one PacketEvent per occurrence, in the order they happen. The
    one-way delay of a received packet is its receive time less the time the
    same packet (by uid) was sent.
    """

    def __init__(self, network: Network):
        self.network = network
        self.log = EventLog()
        self.sent_at: Dict[int, float] = {}
        self._subs: List[Subscription] = []

    def attach(self):
        bus = self.network.bus
        for kind in (TraceKind.TX, TraceKind.RX, TraceKind.DROP):
            self._subs.append(bus.subscribe(TraceKey(None, None, kind), self.observe))

    def detach(self):
        for sub in self._subs:
            self.network.bus.unsubscribe(sub)
        self._subs = []

    def observe(self, record: TraceRecord):
        pckt = record.packet
        if record.kind is TraceKind.TX:
            self.sent_at[pckt.uid] = record.time
            self.log.append(PacketEvent(pckt.key, SENT, record.time, pckt.size, pckt.uid, node=record.node))
        elif record.kind is TraceKind.RX:
            sent = self.sent_at.pop(pckt.uid, pckt.created)
            self.log.append(PacketEvent(pckt.key, RECEIVED, record.time, pckt.size, pckt.uid,
                                        delay=record.time - sent, node=record.node))
        elif record.kind is TraceKind.DROP:
            self.sent_at.pop(pckt.uid, None)
            self.log.append(PacketEvent(pckt.key, DROPPED, record.time, pckt.size, pckt.uid,
                                        reason=record.reason, node=record.node))

    @property
    def events(self) -> List[PacketEvent]:
        return self.log.events


class EavesdropTap:
    """
    EavesdropTap counts the packets that arrive at a node's devices, whatever
    they are addressed to, the way a capture in promiscuous mode would.
    The count belongs to the tap, one per node tapped per run.
    """

    def __init__(self, network: Network, node: str, device: Optional[str] = None):
        self.network = network
        self.node = node
        self.device = device
        self.intercepted = 0
        self.flows: Counter = Counter()
        self._sub: Optional[Subscription] = None

    def attach(self):
        self._sub = self.network.bus.subscribe(TraceKey(self.node, self.device, TraceKind.PROMISC_RX), self.capture)

    def detach(self):
        if self._sub is not None:
            self.network.bus.unsubscribe(self._sub)
            self._sub = None

    def capture(self, record: TraceRecord):
        self.intercepted += 1
        self.flows[record.packet.key] += 1


@dataclass
class FlowStats:
    key: FlowKey
    tx_packets: int = 0
    rx_packets: int = 0
    tx_bytes: int = 0
    rx_bytes: int = 0
    delay_sum: float = 0.0
    jitter_sum: float = 0.0
    last_delay: Optional[float] = None
    first_tx: Optional[float] = None
    last_rx: Optional[float] = None
    drops: Counter = field(default_factory=Counter)

    @property
    def lost_packets(self) -> int:
        return max(self.tx_packets - self.rx_packets, 0)

    def add(self, evt: PacketEvent):
        if evt.kind == SENT:
            self.tx_packets += 1
            self.tx_bytes += evt.size
            if self.first_tx is None or evt.time < self.first_tx:
                self.first_tx = evt.time
        elif evt.kind == RECEIVED:
            self.rx_packets += 1
            self.rx_bytes += evt.size
            delay = evt.delay or 0.0
            self.delay_sum += delay
            if self.last_delay is not None:
                self.jitter_sum += abs(delay - self.last_delay)
            self.last_delay = delay
            if self.last_rx is None or evt.time > self.last_rx:
                self.last_rx = evt.time
        elif evt.kind == DROPPED:
            self.drops[evt.reason] += 1


def build_flow_stats(events: Iterable[PacketEvent]) -> Dict[FlowKey, FlowStats]:
    stats: Dict[FlowKey, FlowStats] = {}
    for evt in events:
        fs = stats.get(evt.key)
        if fs is None:
            fs = FlowStats(evt.key)
            stats[evt.key] = fs
        fs.add(evt)
    return stats


def _as_network(value) -> Optional[ipaddress.IPv4Network]:
    if value is None:
        return None
    try:
        return ipaddress.IPv4Network(value, strict=False)
    except ValueError as err:
        raise ConfigurationError(f"malformed network {value!r} in class rule: {err}") from None


class ClassRule:
    """A predicate over a FlowKey; every field given must match."""

    def __init__(self, category: str, dst_port: Optional[int] = None, src_port: Optional[int] = None,
                 src_network=None, dst_network=None, protocol: Optional[int] = None):
        self.category = category
        self.dst_port = dst_port
        self.src_port = src_port
        self.src_network = _as_network(src_network)
        self.dst_network = _as_network(dst_network)
        self.protocol = protocol

    def matches(self, key: FlowKey) -> bool:
        if self.dst_port is not None and key.dport != self.dst_port:
            return False
        if self.src_port is not None and key.sport != self.src_port:
            return False
        if self.src_network is not None and key.src not in self.src_network:
            return False
        if self.dst_network is not None and key.dst not in self.dst_network:
            return False
        return self.protocol is None or key.protocol == self.protocol

    @classmethod
    def from_dict(cls, d: dict) -> "ClassRule":
        known = {"category", "dst_port", "src_port", "src_network", "dst_network", "protocol"}
        unknown = set(d) - known
        if unknown or "category" not in d:
            raise ConfigurationError(f"bad class rule {d}")
        return cls(**d)

    def to_dict(self) -> dict:
        d = {"category": self.category}
        for attr in ("dst_port", "src_port", "protocol"):
            if getattr(self, attr) is not None:
                d[attr] = getattr(self, attr)
        for attr in ("src_network", "dst_network"):
            if getattr(self, attr) is not None:
                d[attr] = str(getattr(self, attr))
        return d


class FlowClassifier:
    def __init__(self, rules: Sequence[ClassRule], default: str = "best-effort"):
        self.rules = list(rules)
        self.default = default

    # classify returns the category of the first rule the key matches
    def classify(self, key: FlowKey) -> str:
        for rule in self.rules:
            if rule.matches(key):
                return rule.category
        return self.default


@dataclass
class CategoryStats:
    category: str
    flows: int = 0
    tx_packets: int = 0
    rx_packets: int = 0
    tx_bytes: int = 0
    rx_bytes: int = 0
    delay_sum: float = 0.0
    jitter_sum: float = 0.0
    first_tx: Optional[float] = None
    last_rx: Optional[float] = None
    drops: Counter = field(default_factory=Counter)

    @property
    def lost_packets(self) -> int:
        return max(self.tx_packets - self.rx_packets, 0)

    @property
    def loss_ratio(self) -> float:
        if self.tx_packets == 0:
            return 0.0
        return self.lost_packets / self.tx_packets

    @property
    def avg_delay(self) -> Optional[float]:
        if self.rx_packets == 0:
            return None
        return self.delay_sum / self.rx_packets

    @property
    def avg_jitter(self) -> float:
        if self.rx_packets > 1:
            return self.jitter_sum / (self.rx_packets - 1)
        return 0.0

    @property
    def throughput_bps(self) -> float:
        if self.rx_bytes == 0 or self.first_tx is None or self.last_rx is None:
            return 0.0
        duration = self.last_rx - self.first_tx
        if duration <= 0:
            duration = MIN_DURATION
        return self.rx_bytes * 8 / duration

    def merge(self, fs: FlowStats):
        self.flows += 1
        self.tx_packets += fs.tx_packets
        self.rx_packets += fs.rx_packets
        self.tx_bytes += fs.tx_bytes
        self.rx_bytes += fs.rx_bytes
        self.delay_sum += fs.delay_sum
        self.jitter_sum += fs.jitter_sum
        if fs.first_tx is not None and (self.first_tx is None or fs.first_tx < self.first_tx):
            self.first_tx = fs.first_tx
        if fs.last_rx is not None and (self.last_rx is None or fs.last_rx > self.last_rx):
            self.last_rx = fs.last_rx
        self.drops.update(fs.drops)

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "flows": self.flows,
            "tx_packets": self.tx_packets,
            "rx_packets": self.rx_packets,
            "lost_packets": self.lost_packets,
            "loss_ratio": self.loss_ratio,
            "avg_delay": self.avg_delay,
            "avg_jitter": self.avg_jitter,
            "throughput_bps": self.throughput_bps,
            "drops": {r.value: n for r, n in self.drops.items() if r is not None},
        }


def aggregate(events: Iterable[PacketEvent], classifier: FlowClassifier) -> Dict[str, CategoryStats]:
    per_flow = build_flow_stats(events)
    return aggregate_flow_stats(per_flow.values(), classifier)


def aggregate_flow_stats(flows: Iterable[FlowStats], classifier: FlowClassifier) -> Dict[str, CategoryStats]:
    categories: Dict[str, CategoryStats] = {}
    for fs in flows:
        category = classifier.classify(fs.key)
        cs = categories.get(category)
        if cs is None:
            cs = CategoryStats(category)
            categories[category] = cs
        cs.merge(fs)
    return categories


@dataclass
class ThresholdTier:
    label: str
    max_delay_ms: float
    max_loss_pct: float

    @classmethod
    def from_dict(cls, d: dict) -> "ThresholdTier":
        try:
            return cls(str(d["label"]), float(d["max_delay_ms"]), float(d["max_loss_pct"]))
        except (KeyError, TypeError, ValueError) as err:
            raise ConfigurationError(f"bad threshold tier {d}: {err}") from None


class VerdictTable:
    """
    VerdictTable grades a category against an ordered list of tiers. The
    first tier whose delay and loss bounds are both strictly above the
    category's average delay and loss percentage gives the verdict; a
    category meeting none, or with no delay to judge, gets the fallback.
    """

    def __init__(self, tiers: Sequence[ThresholdTier], fallback: str):
        self.tiers = list(tiers)
        self.fallback = fallback

    def verdict(self, stats: CategoryStats) -> str:
        delay = stats.avg_delay
        if delay is None:
            return self.fallback
        delay_ms = delay * 1000.0
        loss_pct = stats.loss_ratio * 100.0
        for tier in self.tiers:
            if delay_ms < tier.max_delay_ms and loss_pct < tier.max_loss_pct:
                return tier.label
        return self.fallback

    @classmethod
    def from_dict(cls, d: dict) -> "VerdictTable":
        if "fallback" not in d:
            raise ConfigurationError(f"verdict table {d} has no fallback")
        return cls([ThresholdTier.from_dict(t) for t in d.get("tiers", [])], str(d["fallback"]))

    def to_dict(self) -> dict:
        return {"tiers": [vars(t).copy() for t in self.tiers], "fallback": self.fallback}


def voip_verdict_table() -> VerdictTable:
    return VerdictTable([ThresholdTier("excellent", 150, 1),
                         ThresholdTier("good", 300, 3),
                         ThresholdTier("acceptable", 400, 5)], "poor")


def transactional_verdict_table() -> VerdictTable:
    return VerdictTable([ThresholdTier("excellent", 100, 1),
                         ThresholdTier("acceptable", 250, 5)], "degraded")


def default_verdict_tables() -> Dict[str, VerdictTable]:
    return {"voip": voip_verdict_table(), "transactional": transactional_verdict_table()}
