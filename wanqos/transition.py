"""
transition.py holds the components that change routing state while a run is
in progress.

LinkFailover takes a link down at a scheduled time and optionally brings it
back up later. Route entries bound to the link are left where they are; the
routing table lookup skips them while the link is down, which is what moves
traffic onto a backup entry. When the network is routed globally the failover
also recomputes the global routes a convergence delay after each transition.

PolicySteering rewrites one destination's entry in one table at a fixed
interval, alternating between two next hops.
"""
import logging
from typing import List, Optional

import wanqos.evtm as evtm
from wanqos.errors import ConfigurationError
from wanqos.net import Link, LinkState, Network
from wanqos.routes import RouteTag, RoutingTable, populate_global_routes, to_address, to_network
from wanqos.trace import TraceKind, TraceRecord

logger = logging.getLogger(__name__)


# set_link_state is the event handler that moves a link into the state carried as data.
# Setting a link to the state it already has changes nothing
def set_link_state(evt_mgr: evtm.EventManager, context, data):
    link = context  # type: Link
    state = data  # type: LinkState
    if link.state is state:
        return False

    now = evt_mgr.current_seconds()
    link.state = state
    link.transitions.append((now, state))
    if state is LinkState.DOWN:
        logger.warning("link %s DOWN at t=%.3fs", link.name, now)
    else:
        logger.info("link %s UP at t=%.3fs", link.name, now)

    for intrfc in (link.a, link.b):
        bus = intrfc.node.network.bus
        if bus.has_listeners(TraceKind.LINK):
            bus.fire(TraceRecord(now, intrfc.node.name, link.name, TraceKind.LINK, detail=state.value))
    return True


# recompute_routes is the event handler marking the end of routing convergence
def recompute_routes(evt_mgr: evtm.EventManager, context, data):
    network = context  # type: Network
    installed = populate_global_routes(network)
    logger.info("routing converged at t=%.3fs, %d global entries", evt_mgr.current_seconds(), installed)
    for node in network.nodes.values():
        if network.bus.has_listeners(TraceKind.ROUTE):
            network.bus.fire(TraceRecord(evt_mgr.current_seconds(), node.name, None, TraceKind.ROUTE,
                                         detail="global recompute"))
    return installed


class LinkFailover:
    def __init__(self, network: Network, link: Link, fail_at: float, restore_at: Optional[float] = None,
                 convergence: Optional[float] = None):
        self.network = network
        self.link = link
        self.fail_at = fail_at
        self.restore_at = restore_at
        self.convergence = convergence  # None when routes are static
        self.handles: List[evtm.ScheduledEvent] = []

    def schedule(self, evt_mgr: evtm.EventManager):
        # transitions are urgent so that traffic stamped at the same instant sees the new state
        self.handles.append(evt_mgr.schedule_at(self.link, LinkState.DOWN, set_link_state, self.fail_at, urgent=True))
        if self.convergence is not None:
            self.handles.append(evt_mgr.schedule_at(self.network, None, recompute_routes,
                                                    self.fail_at + self.convergence))
        if self.restore_at is not None:
            self.handles.append(evt_mgr.schedule_at(self.link, LinkState.UP, set_link_state, self.restore_at,
                                                    urgent=True))
            if self.convergence is not None:
                self.handles.append(evt_mgr.schedule_at(self.network, None, recompute_routes,
                                                        self.restore_at + self.convergence))
        logger.debug("link %s fails at %.3fs, restores at %s", self.link.name, self.fail_at, self.restore_at)

    def cancel(self):
        for handle in self.handles:
            handle.cancel()


class PolicySteering:
    """
    PolicySteering steers traffic for one destination between two next hops.
    At start the watched destination gets one entry via hop A. Every interval
    seconds after that, every entry for the destination is removed and one is
    added via the other hop, so after the k-th toggle the active hop is A
    when k is even and B when k is odd.
    """

    def __init__(self, node, dest: str, mask, hop_a: str, hop_b: str, interval: float,
                 link_a: Link, link_b: Link, metric: int = 1):
        if not (interval > 0):
            raise ConfigurationError(f"steering interval must be positive, got {interval}")
        self.node = node
        self.table: RoutingTable = node.table
        self.network = to_network(dest, mask)
        self.hops = [(to_address(hop_a), link_a), (to_address(hop_b), link_b)]
        self.interval = interval
        self.metric = metric
        self.toggles = 0
        self.pending: Optional[evtm.ScheduledEvent] = None
        self.history: List = []  # (time, next hop)

    @property
    def active_hop(self):
        return self.hops[self.toggles % 2][0]

    def install(self, now: float):
        hop, link = self.hops[self.toggles % 2]
        self.table.remove_route(self.network.network_address, self.network.netmask)
        self.table.add_route(self.network.network_address, self.network.netmask, hop, link,
                             self.metric, RouteTag.POLICY)
        self.history.append((now, hop))

    def start(self, evt_mgr: evtm.EventManager, first_at: Optional[float] = None):
        self.install(evt_mgr.current_seconds())
        delay = self.interval if first_at is None else first_at
        self.pending = evt_mgr.schedule(self, None, steer_toggle, delay)

    def stop(self):
        if self.pending is not None:
            self.pending.cancel()
            self.pending = None


# steer_toggle is the event handler applying one toggle of a PolicySteering
def steer_toggle(evt_mgr: evtm.EventManager, context, data):
    steer = context  # type: PolicySteering
    now = evt_mgr.current_seconds()
    steer.toggles += 1
    steer.install(now)
    logger.info("t=%.3fs %s steers %s via %s", now, steer.node.name, steer.network, steer.active_hop)
    bus = steer.node.network.bus
    if bus.has_listeners(TraceKind.ROUTE):
        bus.fire(TraceRecord(now, steer.node.name, None, TraceKind.ROUTE, detail=f"{steer.network} via {steer.active_hop}"))
    steer.pending = evt_mgr.schedule(steer, None, steer_toggle, steer.interval)
    return None


# dump_tables is the event handler logging the routing table of every node named in data
def dump_tables(evt_mgr: evtm.EventManager, context, data):
    network = context  # type: Network
    dumps = data["dumps"]
    now = evt_mgr.current_seconds()
    for name in data["nodes"]:
        table = network.node(name).table
        if table is None:
            continue
        text = table.dump(now)
        dumps.append(text)
        logger.info("routing table\n%s", text)
    return None


def schedule_table_dumps(evt_mgr: evtm.EventManager, network: Network, nodes: List[str],
                         times: List[float], dumps: List[str]):
    for t in times:
        evt_mgr.schedule_at(network, {"nodes": list(nodes), "dumps": dumps}, dump_tables, t)
