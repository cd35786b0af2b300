"""
net.py holds the network the rest of the package runs over: nodes, the
point-to-point links between them, their interfaces and the packets they
carry, along with the event handlers that move a packet from one interface to
the next.

A packet handed to the network by a socket is looked up in the sending node's
routing table and queued on the egress interface of the chosen entry's link.
The interface serves its queue one packet at a time, each taking
size*8/capacity seconds to transmit, after which the packet arrives at the
peer interface once the link's propagation delay has passed. A router
receiving a packet it does not own runs it past its admission controller,
looks it up in its own table, and queues it again.

Nothing in the forwarding path raises. A packet that cannot go on is dropped
with a DropReason, counted in the network, and announced on the trace bus.
"""
import ipaddress
import itertools
import logging
from collections import Counter
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, NamedTuple, Optional, Set, Union

import wanqos.evtm as evtm
from wanqos.errors import ConfigurationError, TransportError
from wanqos.routes import RouteTag, RoutingTable, build_conn_graph, to_address
from wanqos.scheduler import FifoQueueDisc
from wanqos.trace import DropReason, TraceBus, TraceKind, TraceRecord

logger = logging.getLogger(__name__)

PROTO_TCP = 6
PROTO_UDP = 17
PROTO_NAMES = {PROTO_TCP: "tcp", PROTO_UDP: "udp"}

DEFAULT_TTL = 64
EPHEMERAL_PORT_BASE = 49153


class Role(Enum):
    CLIENT = "client"
    ROUTER = "router"
    SERVER = "server"
    ATTACKER = "attacker"


def role_from_str(role: str) -> Role:
    try:
        return Role(role.lower())
    except ValueError:
        raise ConfigurationError(f"unknown node role {role!r}") from None


class LinkState(Enum):
    UP = "up"
    DOWN = "down"


# FlowKey identifies one directional flow
class FlowKey(NamedTuple):
    src: ipaddress.IPv4Address
    sport: int
    dst: ipaddress.IPv4Address
    dport: int
    protocol: int = PROTO_UDP

    def reverse(self) -> "FlowKey":
        return FlowKey(self.dst, self.dport, self.src, self.sport, self.protocol)

    def __str__(self):
        proto = PROTO_NAMES.get(self.protocol, str(self.protocol))
        return f"{self.src}:{self.sport} -> {self.dst}:{self.dport}/{proto}"


# payload tags a packet may carry
DATA = "data"
ECHO_REQUEST = "echo-request"
ECHO_REPLY = "echo-reply"


@dataclass
class Packet:
    uid: int
    key: FlowKey
    size: int  # bytes on the wire
    dscp: int = 0
    ttl: int = DEFAULT_TTL
    created: float = 0.0
    kind: str = DATA
    seq: int = 0

    def reply(self, uid: int, now: float) -> "Packet":
        return replace(self, uid=uid, key=self.key.reverse(), ttl=DEFAULT_TTL, created=now, kind=ECHO_REPLY)


class Interface:
    def __init__(self, node: "Node", link: "Link", address: ipaddress.IPv4Address, qdisc=None):
        self.node = node
        self.link = link
        self.address = address
        self.qdisc = qdisc if qdisc is not None else FifoQueueDisc()
        self.busy = False  # a packet is being transmitted
        self.tx_packets = 0
        self.rx_packets = 0
        self.tx_bytes = 0

    @property
    def name(self) -> str:
        # the device name trace subscriptions use; unique on a node since links are point-to-point
        return self.link.name

    @property
    def network(self) -> ipaddress.IPv4Network:
        return self.link.network

    def peer(self) -> "Interface":
        return self.link.b if self is self.link.a else self.link.a

    def __repr__(self):
        return f"<Interface {self.node.name}/{self.name} {self.address}>"


class Link:
    def __init__(self, name: str, network: ipaddress.IPv4Network, capacity_bps: float, delay: float,
                 metric: int = 1):
        if capacity_bps <= 0:
            raise ConfigurationError(f"link {name} capacity must be positive, got {capacity_bps}")
        if delay < 0:
            raise ConfigurationError(f"link {name} has negative delay {delay}")
        if metric < 0:
            raise ConfigurationError(f"link {name} has negative metric {metric}")
        self.name = name
        self.network = network
        self.capacity_bps = capacity_bps
        self.delay = delay
        self.metric = metric
        self.state = LinkState.UP
        self.a: Optional[Interface] = None
        self.b: Optional[Interface] = None
        self.transitions: List = []  # (time, LinkState) in the order they happened

    @property
    def up(self) -> bool:
        return self.state is LinkState.UP

    @property
    def endpoints(self):
        return self.a.node.name, self.b.node.name

    def interface_of(self, node: "Node") -> Interface:
        if self.a.node is node:
            return self.a
        if self.b.node is node:
            return self.b
        raise KeyError(f"node {node.name} is not on link {self.name}")

    # other_end returns the interface across the link from node
    def other_end(self, node: "Node") -> Interface:
        return self.interface_of(node).peer()

    def tx_time(self, size: int) -> float:
        return size * 8 / self.capacity_bps

    def __repr__(self):
        return f"<Link {self.name} {self.a.node.name}-{self.b.node.name} {self.state.value}>"


class Socket:
    def __init__(self, node: "Node", port: int, protocol: int):
        self.node = node
        self.port = port
        self.protocol = protocol
        self.address = node.primary_address
        self.closed = False
        # called as on_receive(socket, packet) for each packet delivered to the socket
        self.on_receive: Optional[Callable[["Socket", Packet], None]] = None
        self.received = 0

    def send(self, dst: ipaddress.IPv4Address, dport: int, size: int, dscp: int = 0,
             kind: str = DATA, seq: int = 0) -> Packet:
        if self.closed:
            raise TransportError(f"send on closed socket {self.node.name}:{self.port}")
        network = self.node.network
        key = FlowKey(self.address, self.port, dst, dport, self.protocol)
        pckt = Packet(network.new_uid(), key, size, dscp=dscp, created=network.now(), kind=kind, seq=seq)
        network.send(self.node, pckt)
        return pckt

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.node.sockets.pop((self.port, self.protocol), None)


class Node:
    def __init__(self, name: str, role: Role, network: "Network", routing: bool = True):
        self.name = name
        self.role = role
        self.network = network
        self.table: Optional[RoutingTable] = RoutingTable(name) if routing else None
        self.interfaces: List[Interface] = []
        self.extra_addresses: Set[ipaddress.IPv4Address] = set()
        self.stub_networks: List[ipaddress.IPv4Network] = []
        self.admission = None  # admission.AdmissionController guarding packets routed through the node
        self.sockets: Dict = {}
        self.echo = None  # flow.EchoResponder, when the node answers echo requests
        self._ephemeral = itertools.count(EPHEMERAL_PORT_BASE)

    @property
    def addresses(self) -> List[ipaddress.IPv4Address]:
        return [i.address for i in self.interfaces] + sorted(self.extra_addresses)

    @property
    def primary_address(self) -> Optional[ipaddress.IPv4Address]:
        addrs = self.addresses
        return addrs[0] if addrs else None

    def owns(self, addr: ipaddress.IPv4Address) -> bool:
        return any(i.address == addr for i in self.interfaces) or addr in self.extra_addresses

    def interface_on(self, link: Union[str, Link]) -> Interface:
        name = link if isinstance(link, str) else link.name
        for intrfc in self.interfaces:
            if intrfc.link.name == name:
                return intrfc
        raise ConfigurationError(f"node {self.name} has no interface on link {name}")

    def bind(self, port: int = 0, protocol: int = PROTO_UDP) -> Socket:
        """
        bind returns a socket on the given port, or on a fresh ephemeral port
        when port is 0. TransportError is raised if the node has no address to
        send from or the port is already bound.
        """
        if self.primary_address is None:
            raise TransportError(f"node {self.name} has no address to bind to")
        if port == 0:
            port = next(self._ephemeral)
            while (port, protocol) in self.sockets:
                port = next(self._ephemeral)
        if (port, protocol) in self.sockets:
            raise TransportError(f"port {port}/{PROTO_NAMES.get(protocol, protocol)} already bound on {self.name}")
        sock = Socket(self, port, protocol)
        self.sockets[(port, protocol)] = sock
        return sock

    def __repr__(self):
        return f"<Node {self.name} {self.role.value}>"


class Network:
    def __init__(self, evt_mgr: evtm.EventManager, bus: Optional[TraceBus] = None):
        self.evt_mgr = evt_mgr
        self.bus = bus if bus is not None else TraceBus()
        self.nodes: Dict[str, Node] = {}
        self.links: Dict[str, Link] = {}
        self.owners: Dict[ipaddress.IPv4Address, List[Node]] = {}
        self.drops: Counter = Counter()  # by DropReason
        self.delivered = 0
        self._uids = itertools.count(1)
        self._subnets = ipaddress.IPv4Network("10.250.0.0/16").subnets(new_prefix=24)
        # ipsec model: bytes added to every packet a node originates and the time to add them
        self.ipsec_overhead = 0
        self.ipsec_delay = 0.0

    def now(self) -> float:
        return self.evt_mgr.current_seconds()

    def new_uid(self) -> int:
        return next(self._uids)

    def add_node(self, name: str, role: Role = Role.ROUTER, routing: bool = True) -> Node:
        if name in self.nodes:
            raise ConfigurationError(f"duplicated node name {name}")
        node = Node(name, role, self, routing)
        self.nodes[name] = node
        return node

    def node(self, name: str) -> Node:
        try:
            return self.nodes[name]
        except KeyError:
            raise ConfigurationError(f"unknown node {name}") from None

    def link(self, name: str) -> Link:
        try:
            return self.links[name]
        except KeyError:
            raise ConfigurationError(f"unknown link {name}") from None

    def connect(self, name: str, a: str, b: str, capacity_bps: float, delay: float,
                network: Optional[str] = None, metric: int = 1, qdisc_a=None, qdisc_b=None) -> Link:
        """
        connect joins nodes a and b with a new link. The link's network is the
        one given, or the next free /24 out of 10.250.0.0/16; a takes its
        first host address and b the second. Each end gets a directly
        connected route for the link network.
        """
        if name in self.links:
            raise ConfigurationError(f"duplicated link name {name}")
        node_a, node_b = self.node(a), self.node(b)
        if node_a is node_b:
            raise ConfigurationError(f"link {name} connects {a} to itself")

        if network is None:
            net = next(self._subnets)
        else:
            try:
                net = ipaddress.IPv4Network(network, strict=False)
            except ValueError as err:
                raise ConfigurationError(f"link {name}: malformed network {network!r}: {err}") from None
        hosts = iter(net.hosts())
        try:
            addr_a, addr_b = next(hosts), next(hosts)
        except StopIteration:
            raise ConfigurationError(f"link {name}: network {net} has fewer than two host addresses") from None

        link = Link(name, net, capacity_bps, delay, metric)
        link.a = Interface(node_a, link, addr_a, qdisc_a)
        link.b = Interface(node_b, link, addr_b, qdisc_b)
        for intrfc in (link.a, link.b):
            intrfc.node.interfaces.append(intrfc)
            self.owners.setdefault(intrfc.address, []).append(intrfc.node)
            if intrfc.node.table is not None:
                intrfc.node.table.add_route(net.network_address, net.netmask, None, link, 0, RouteTag.CONNECTED)
        self.links[name] = link
        logger.debug("link %s: %s %s <-> %s %s", name, a, addr_a, b, addr_b)
        return link

    # add_address gives a node an address beyond those of its interfaces (a loopback or anycast service address)
    def add_address(self, node: str, address: str, prefix: int = 32) -> ipaddress.IPv4Address:
        owner = self.node(node)
        addr = to_address(address)
        owner.extra_addresses.add(addr)
        stub = ipaddress.IPv4Network(f"{addr}/{prefix}", strict=False)
        if stub not in owner.stub_networks:
            owner.stub_networks.append(stub)
        self.owners.setdefault(addr, []).append(owner)
        return addr

    def node_for_address(self, addr) -> Optional[Node]:
        owners = self.owners.get(to_address(addr))
        return owners[0] if owners else None

    def resolve(self, target: str) -> ipaddress.IPv4Address:
        """
        resolve turns an address written in a description into an address.
        'node@link' names node's address on link, a bare node name is that
        node's primary address, anything else must be a dotted quad.
        """
        target = str(target)
        if "@" in target:
            node, link = target.split("@", 1)
            return self.node(node).interface_on(link).address
        if target in self.nodes:
            addr = self.nodes[target].primary_address
            if addr is None:
                raise ConfigurationError(f"node {target} has no address")
            return addr
        return to_address(target)

    def graph(self):
        return build_conn_graph(self)

    def interfaces(self) -> List[Interface]:
        return [i for link in self.links.values() for i in (link.a, link.b)]

    def send(self, node: Node, pckt: Packet):
        """send hands a packet originated by node to the network."""
        if self.ipsec_overhead:
            pckt.size += self.ipsec_overhead
        self.fire(node, None, TraceKind.TX, pckt)
        if self.ipsec_delay > 0:
            self.evt_mgr.schedule(node, pckt, originate, self.ipsec_delay)
        else:
            self.forward(node, pckt, None)

    def forward(self, node: Node, pckt: Packet, ingress: Optional[Interface]):
        # a node keeps whatever is addressed to it
        if node.owns(pckt.key.dst):
            self.deliver(node, pckt)
            return

        device = ingress.name if ingress is not None else None
        if ingress is not None and node.admission is not None:
            if not node.admission.allow_packet(pckt.size, pckt.key.src, self.now()):
                self.drop(node, device, pckt, DropReason.ADMISSION)
                return

        entry = node.table.lookup(pckt.key.dst) if node.table is not None else None
        if entry is None:
            self.drop(node, device, pckt, DropReason.NO_ROUTE)
            return

        if ingress is not None:
            pckt.ttl -= 1
            if pckt.ttl <= 0:
                self.drop(node, device, pckt, DropReason.TTL)
                return

        egress = entry.link.interface_of(node)
        enter_egress_intrfc(self.evt_mgr, egress, pckt)

    def deliver(self, node: Node, pckt: Packet):
        self.delivered += 1
        self.fire(node, None, TraceKind.RX, pckt)
        if node.echo is not None and pckt.kind == ECHO_REQUEST and pckt.key.dport == node.echo.port:
            node.echo.respond(pckt)
            return
        sock = node.sockets.get((pckt.key.dport, pckt.key.protocol))
        if sock is not None:
            sock.received += 1
            if sock.on_receive is not None:
                sock.on_receive(sock, pckt)

    def drop(self, node: Node, device: Optional[str], pckt: Packet, reason: DropReason):
        self.drops[reason] += 1
        logger.debug("t=%.6f %s drops packet %d (%s): %s", self.now(), node.name, pckt.uid, pckt.key, reason.value)
        self.fire(node, device, TraceKind.DROP, pckt, reason)

    def fire(self, node: Node, device: Optional[str], kind: TraceKind, pckt: Optional[Packet] = None,
             reason: Optional[DropReason] = None, detail: str = ""):
        if self.bus.has_listeners(kind):
            self.bus.fire(TraceRecord(self.now(), node.name, device, kind, pckt, reason, detail))

    def drop_counts(self) -> Dict[str, int]:
        return {reason.value: self.drops.get(reason, 0) for reason in DropReason}


# originate is the deferred half of Network.send, used when originating a packet takes time
def originate(evt_mgr: evtm.EventManager, context, data):
    node = context
    node.network.forward(node, data, None)


# enter_egress_intrfc hands a packet to an egress interface's queue discipline,
# starting transmission if the interface is idle
def enter_egress_intrfc(evt_mgr: evtm.EventManager, egress_intrfc, pckt):
    intrfc = egress_intrfc
    network = intrfc.node.network
    if not intrfc.qdisc.enqueue(pckt):
        network.drop(intrfc.node, intrfc.name, pckt, DropReason.QUEUE_FULL)
        return None
    if not intrfc.busy:
        enter_intrfc_service(evt_mgr, intrfc, None)
    return None


# enter_intrfc_service takes the next packet off the queue discipline and
# schedules the end of its transmission
def enter_intrfc_service(evt_mgr: evtm.EventManager, context, data):
    intrfc = context
    network = intrfc.node.network
    while True:
        pckt = intrfc.qdisc.dequeue()
        if pckt is None:
            intrfc.busy = False
            return None
        if intrfc.link.up:
            break
        network.drop(intrfc.node, intrfc.name, pckt, DropReason.LINK_DOWN)

    intrfc.busy = True
    evt_mgr.schedule(intrfc, pckt, exit_egress_intrfc, intrfc.link.tx_time(pckt.size))
    return None


# exit_egress_intrfc handles the completed transmission of a packet, scheduling
# its arrival at the peer interface and serving the next one
def exit_egress_intrfc(evt_mgr: evtm.EventManager, egress_intrfc, pckt):
    intrfc = egress_intrfc
    intrfc.tx_packets += 1
    intrfc.tx_bytes += pckt.size
    evt_mgr.schedule(intrfc.peer(), pckt, arrive_ingress_intrfc, intrfc.link.delay)
    enter_intrfc_service(evt_mgr, intrfc, None)
    return None


# arrive_ingress_intrfc handles the arrival of a packet at the far end of a link
def arrive_ingress_intrfc(evt_mgr: evtm.EventManager, ingress_intrfc, pckt):
    intrfc = ingress_intrfc
    network = intrfc.node.network
    if not intrfc.link.up:
        network.drop(intrfc.node, intrfc.name, pckt, DropReason.LINK_DOWN)
        return None
    intrfc.rx_packets += 1
    network.fire(intrfc.node, intrfc.name, TraceKind.PROMISC_RX, pckt)
    network.forward(intrfc.node, pckt, intrfc)
    return None
