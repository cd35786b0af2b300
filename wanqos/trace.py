"""
trace.py holds the trace points fired by the network and the tools that
listen to them.

Components do not match trace paths by pattern. A listener subscribes to a
TraceKey naming a node, a device on that node, and an event kind; leaving the
node or device as None listens to all of them. The TraceBus hands every fired
TraceRecord to the matching subscriptions in the order they subscribed.

The TraceManager is one such listener. When a run is captured it keeps every
record, grouped by node, and serializes them to json or yaml.
"""
import json
import logging
import pathlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


class TraceKind(Enum):
    TX = "tx"  # an application handed a packet to the network
    RX = "rx"  # a packet reached the node owning its destination
    DROP = "drop"  # a packet was discarded, see DropReason
    PROMISC_RX = "promisc-rx"  # a packet arrived at a device, whoever it is for
    LINK = "link"  # a link changed state
    ROUTE = "route"  # a routing table was rewritten at run time


class DropReason(Enum):
    NO_ROUTE = "no-route"  # lookup found no viable entry
    ADMISSION = "admission"  # the admission controller denied the packet
    QUEUE_FULL = "queue-full"  # tail drop at an egress queue class
    LINK_DOWN = "link-down"  # the link was down at transmission or arrival
    TTL = "ttl"  # hop limit exhausted


@dataclass
class TraceRecord:
    time: float
    node: str
    device: Optional[str]
    kind: TraceKind
    packet: Any = None
    reason: Optional[DropReason] = None
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        rec = {"time": self.time, "node": self.node, "device": self.device, "kind": self.kind.value}
        if self.packet is not None:
            rec["uid"] = self.packet.uid
            rec["flow"] = str(self.packet.key)
            rec["size"] = self.packet.size
        if self.reason is not None:
            rec["reason"] = self.reason.value
        if self.detail:
            rec["detail"] = self.detail
        return rec


@dataclass(frozen=True)
class TraceKey:
    node: Optional[str]
    device: Optional[str]
    kind: TraceKind

    def matches(self, node: str, device: Optional[str], kind: TraceKind) -> bool:
        if kind is not self.kind:
            return False
        if self.node is not None and self.node != node:
            return False
        return self.device is None or self.device == device


TraceCallback = Callable[[TraceRecord], None]


@dataclass
class Subscription:
    key: TraceKey
    callback: TraceCallback
    active: bool = True


class TraceBus:
    def __init__(self):
        self._subs: Dict[TraceKind, List[Subscription]] = {kind: [] for kind in TraceKind}
        self.fired: Dict[TraceKind, int] = {kind: 0 for kind in TraceKind}

    def subscribe(self, key: TraceKey, callback: TraceCallback) -> Subscription:
        sub = Subscription(key, callback)
        self._subs[key.kind].append(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        sub.active = False
        subs = self._subs[sub.key.kind]
        if sub in subs:
            subs.remove(sub)

    def has_listeners(self, kind: TraceKind) -> bool:
        return len(self._subs[kind]) > 0

    def fire(self, record: TraceRecord):
        self.fired[record.kind] += 1
        # copy so a callback may unsubscribe while we iterate
        for sub in list(self._subs[record.kind]):
            if sub.active and sub.key.matches(record.node, record.device, record.kind):
                sub.callback(record)


class TraceManager:
    """
    TraceManager gathers the trace records of a run, along with a dictionary
    of the objects that produced them, for serialization after the run.
    """

    def __init__(self, exp_name: str, active: bool):
        # experiment uses trace
        self.in_use = active
        # name of experiment
        self.exp_name = exp_name
        # role (or other description) associated with each node name
        self.name_by_node: Dict[str, str] = {}
        # all trace records for this experiment, by node
        self.traces: Dict[str, List[Dict[str, Any]]] = {}
        self._subs: List[Subscription] = []

    def active(self) -> bool:
        return self.in_use

    def attach(self, bus: TraceBus, kinds=None):
        """Subscribe to every node and device for each of the given kinds (all by default)."""
        if not self.in_use:
            return
        for kind in kinds or list(TraceKind):
            self._subs.append(bus.subscribe(TraceKey(None, None, kind), self.add_trace))

    def detach(self, bus: TraceBus):
        for sub in self._subs:
            bus.unsubscribe(sub)
        self._subs = []

    def add_trace(self, record: TraceRecord):
        # return if we aren't using the trace manager
        if not self.in_use:
            return
        self.traces.setdefault(record.node, []).append(record.to_dict())

    def add_name(self, node: str, desc: str):
        if not self.in_use:
            return
        if node in self.name_by_node:
            raise ValueError(f"duplicated name {node} in trace dictionary")
        self.name_by_node[node] = desc

    def count(self) -> int:
        return sum(len(v) for v in self.traces.values())

    def write_to_file(self, filename: str, global_order: bool = False) -> bool:
        """
        write_to_file stores the traces to the file whose name is given.
        Serialization to json or to yaml is selected based on the extension of this name.
        """
        if not self.in_use:
            return False

        path_ext = pathlib.Path(filename).suffix.lower()
        data = self._serialize_global_order() if global_order else self._serialize()

        if path_ext in [".yaml", ".yml"]:
            text = yaml.safe_dump(data, sort_keys=False)
        elif path_ext == ".json":
            text = json.dumps(data, indent=2)
        else:
            raise ValueError(f"unsupported trace file extension: {path_ext}")

        with open(filename, "w") as f:
            f.write(text)
        logger.info("wrote %d trace records to %s", self.count(), filename)
        return True

    def _serialize(self) -> Dict[str, Any]:
        return {
            "expname": self.exp_name,
            "names": dict(self.name_by_node),
            "traces": {k: list(v) for k, v in self.traces.items()},
        }

    def _serialize_global_order(self) -> Dict[str, Any]:
        all_traces = []
        for value_list in self.traces.values():
            all_traces.extend(value_list)
        # sort is stable, so records sharing a time keep their per-node order
        all_traces.sort(key=lambda t: t["time"])
        return {
            "expname": self.exp_name,
            "names": dict(self.name_by_node),
            "traces": all_traces,
        }


@dataclass
class PacketEvent:
    """One entry of the per-packet event log consumed by the flow aggregator."""
    key: Any  # net.FlowKey
    kind: str  # "sent", "received" or "dropped"
    time: float
    size: int
    uid: int
    delay: Optional[float] = None  # one-way latency, received events only
    reason: Optional[DropReason] = None  # dropped events only
    node: str = ""

    def to_dict(self) -> Dict[str, Any]:
        rec = {"flow": str(self.key), "kind": self.kind, "time": self.time,
               "size": self.size, "uid": self.uid, "node": self.node}
        if self.delay is not None:
            rec["delay"] = self.delay
        if self.reason is not None:
            rec["reason"] = self.reason.value
        return rec


SENT = "sent"
RECEIVED = "received"
DROPPED = "dropped"


@dataclass
class EventLog:
    events: List[PacketEvent] = field(default_factory=list)

    def append(self, evt: PacketEvent):
        self.events.append(evt)

    def __iter__(self):
        return iter(self.events)

    def __len__(self):
        return len(self.events)

    def write_to_file(self, filename: str):
        path_ext = pathlib.Path(filename).suffix.lower()
        data = {"events": [e.to_dict() for e in self.events]}
        if path_ext in [".yaml", ".yml"]:
            text = yaml.safe_dump(data, sort_keys=False)
        elif path_ext == ".json":
            text = json.dumps(data, indent=2)
        else:
            raise ValueError(f"unsupported event log extension: {path_ext}")
        with open(filename, "w") as f:
            f.write(text)
