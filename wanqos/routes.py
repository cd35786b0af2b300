"""
routes.py holds the per-node routing table and the global route computation.

A RoutingTable is an insertion-ordered list of RouteEntry. Several entries may
name the same destination (a primary and a backup, say); lookup picks among
those whose link is Up, so failing a link reroutes traffic without touching
the table.

populate_global_routes stands in for a link-state protocol. It runs Dijkstra
over the Up links of the network (networkx does the work) and rewrites the
'global' entries of every table. When it is called after a failure is what
models convergence time.
"""
import ipaddress
import logging
from enum import Enum
from typing import Iterator, List, Optional, Union

import networkx as nx

from wanqos.errors import ConfigurationError

logger = logging.getLogger(__name__)

Address = Union[str, ipaddress.IPv4Address]


class RouteTag(Enum):
    PRIMARY = "primary"
    BACKUP = "backup"
    CONNECTED = "connected"  # installed for each link a node sits on
    GLOBAL = "global"  # installed by populate_global_routes
    POLICY = "policy"  # installed by a policy steering controller


def to_address(addr: Address) -> ipaddress.IPv4Address:
    if isinstance(addr, ipaddress.IPv4Address):
        return addr
    try:
        return ipaddress.IPv4Address(addr)
    except (ipaddress.AddressValueError, ValueError) as err:
        raise ConfigurationError(f"malformed address {addr!r}: {err}") from None


def to_network(dest: Address, mask: Union[str, int]) -> ipaddress.IPv4Network:
    try:
        return ipaddress.IPv4Network(f"{dest}/{mask}", strict=False)
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError) as err:
        raise ConfigurationError(f"malformed destination {dest}/{mask}: {err}") from None


class RouteEntry:
    def __init__(self, network: ipaddress.IPv4Network, next_hop: Optional[ipaddress.IPv4Address],
                 link, metric: int, tag: Optional[RouteTag]):
        self.network = network
        self.next_hop = next_hop  # None for a directly connected network
        self.link = link  # net.Link the entry egresses on
        self.metric = metric
        self.tag = tag

    @property
    def dest(self) -> ipaddress.IPv4Address:
        return self.network.network_address

    @property
    def mask(self) -> ipaddress.IPv4Address:
        return self.network.netmask

    @property
    def viable(self) -> bool:
        return self.link.up

    def matches(self, addr: ipaddress.IPv4Address) -> bool:
        return addr in self.network

    def __repr__(self):
        tag = self.tag.value if self.tag else "-"
        return f"<RouteEntry {self.network} via {self.next_hop or 'direct'} on {self.link.name} metric {self.metric} {tag}>"


class RoutingTable:
    def __init__(self, owner: str):
        self.owner = owner  # name of the node owning the table
        self.entries: List[RouteEntry] = []
        self.lookups = 0
        self.misses = 0

    def __len__(self):
        return len(self.entries)

    def __iter__(self) -> Iterator[RouteEntry]:
        return iter(self.entries)

    # add_route appends an entry. Entries for the same destination are expected
    def add_route(self, dest: Address, mask: Union[str, int], next_hop: Optional[Address],
                  link, metric: int = 1, tag: Optional[RouteTag] = None) -> RouteEntry:
        if metric < 0:
            raise ConfigurationError(f"negative metric {metric} for route to {dest}/{mask} on {self.owner}")
        if link is None:
            raise ConfigurationError(f"route to {dest}/{mask} on {self.owner} names no link")
        hop = to_address(next_hop) if next_hop is not None else None
        entry = RouteEntry(to_network(dest, mask), hop, link, metric, tag)
        self.entries.append(entry)
        logger.debug("%s: add %r", self.owner, entry)
        return entry

    # remove_route removes every entry for exactly this destination and mask
    def remove_route(self, dest: Address, mask: Union[str, int]) -> int:
        network = to_network(dest, mask)
        keep = [e for e in self.entries if e.network != network]
        removed = len(self.entries) - len(keep)
        self.entries = keep
        if removed:
            logger.debug("%s: removed %d entries for %s", self.owner, removed, network)
        return removed

    def remove_tagged(self, tag: RouteTag) -> int:
        keep = [e for e in self.entries if e.tag is not tag]
        removed = len(self.entries) - len(keep)
        self.entries = keep
        return removed

    def entries_for(self, dest: Address, mask: Union[str, int]) -> List[RouteEntry]:
        network = to_network(dest, mask)
        return [e for e in self.entries if e.network == network]

    def lookup(self, dest: Address) -> Optional[RouteEntry]:
        """
        lookup returns the entry to forward a packet for dest on, or None if
        dest is unreachable. Entries whose link is Down are never candidates.
        Among the rest the most specific prefix wins, then the lowest metric,
        then the entry inserted first.
        """
        addr = to_address(dest)
        self.lookups += 1
        best: Optional[RouteEntry] = None
        for entry in self.entries:
            if not entry.matches(addr) or not entry.viable:
                continue
            if best is None:
                best = entry
                continue
            # strict comparisons keep the earlier entry on a tie
            if entry.network.prefixlen > best.network.prefixlen:
                best = entry
            elif entry.network.prefixlen == best.network.prefixlen and entry.metric < best.metric:
                best = entry
        if best is None:
            self.misses += 1
        return best

    def dump(self, now: float) -> str:
        """dump renders the table the way a routing table printout reads."""
        lines = [f"Node: {self.owner}, Time: {now:.3f}s",
                 f"{'Destination':<16}{'Gateway':<16}{'Genmask':<16}{'Flags':<6}{'Metric':<7}{'Link':<16}{'Tag'}"]
        for e in self.entries:
            flags = "U" if e.viable else "-"
            if e.next_hop is not None:
                flags += "G"
            gateway = str(e.next_hop) if e.next_hop is not None else "0.0.0.0"
            tag = e.tag.value if e.tag else ""
            lines.append(f"{str(e.dest):<16}{gateway:<16}{str(e.mask):<16}{flags:<6}{e.metric:<7}{e.link.name:<16}{tag}")
        return "\n".join(lines)


def build_conn_graph(network) -> nx.MultiGraph:
    """
    build_conn_graph returns a graph whose nodes are the network's node names
    and whose edges are its Up links, each carrying the link and its metric
    as the edge weight.
    """
    g = nx.MultiGraph()
    for name in network.nodes:
        g.add_node(name)
    for link in network.links.values():
        if link.up:
            g.add_edge(link.a.node.name, link.b.node.name, key=link.name, link=link, weight=link.metric)
    return g


def _best_link(g: nx.MultiGraph, frm: str, to: str):
    # parallel links between the same pair: lowest metric, then name
    options = sorted(g.get_edge_data(frm, to).values(), key=lambda d: (d["weight"], d["link"].name))
    return options[0]["link"]


def _add_path_route(node, g: nx.MultiGraph, paths, lengths, dest: ipaddress.IPv4Network, target: str):
    path = paths[target]
    egress = _best_link(g, path[0], path[1])
    node.table.add_route(dest.network_address, dest.netmask, egress.other_end(node).address, egress,
                         int(lengths[target]) + 1, RouteTag.GLOBAL)


def populate_global_routes(network) -> int:
    """
    populate_global_routes replaces the 'global' entries of every routing table
    with shortest paths over the links that are Up right now. A node gets
    one entry for each Up link network it is not attached to, aimed at the
    nearer end of the link, and a host entry for each interface address of
    every node it can reach, so an address on a failed link stays reachable
    through its owner's other links. Returns the number of entries installed.
    """
    g = build_conn_graph(network)
    installed = 0
    for node in network.nodes.values():
        if node.table is None:
            continue
        node.table.remove_tagged(RouteTag.GLOBAL)
        lengths, paths = nx.single_source_dijkstra(g, node.name, weight="weight")

        attached = {intrfc.link.network for intrfc in node.interfaces}
        for link in network.links.values():
            if not link.up or link.network in attached:
                continue
            ends = [n for n in link.endpoints if n in lengths]
            if not ends:
                continue
            target = min(ends, key=lambda n: (lengths[n], n))
            _add_path_route(node, g, paths, lengths, link.network, target)
            installed += 1

        for owner in network.nodes.values():
            if owner is node or owner.name not in lengths:
                continue
            hosts = [ipaddress.IPv4Network(intrfc.address) for intrfc in owner.interfaces]
            # stub networks, the addresses a node owns beyond its link addresses
            for dest in hosts + owner.stub_networks:
                _add_path_route(node, g, paths, lengths, dest, owner.name)
                installed += 1
    logger.info("global routing installed %d entries over %d up links", installed, g.number_of_edges())
    return installed
