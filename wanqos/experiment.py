"""
experiment.py turns a topology description and an experiment configuration
into a network ready to run, runs it, and summarizes what happened.

Everything that can be wrong with the inputs is found while building, so a
ConfigurationError surfaces before any virtual time passes. Once running,
nothing short of a bug stops the run: lost packets are counted and a
generator that cannot start is recorded and left stopped.
"""
import ipaddress
import logging
import os
from typing import Dict, List, Optional

import wanqos.evtm as evtm
from wanqos.admission import AdmissionController
from wanqos.desc_topo import TopoCfg, build_scenario
from wanqos.errors import ConfigurationError
from wanqos.flow import EchoResponder, TrafficGenerator, generator_kind_from_str
from wanqos.flow_stats import (ClassRule, EavesdropTap, FlowClassifier, FlowMonitor, VerdictTable, aggregate,
                               build_flow_stats, default_verdict_tables)
from wanqos.net import Network, role_from_str
from wanqos.param import ExpCfg
from wanqos.report import Report
from wanqos.routes import RouteTag, populate_global_routes
from wanqos.scheduler import FifoQueueDisc, PriorityQueueDisc
from wanqos.trace import TraceBus, TraceManager
from wanqos.transition import LinkFailover, PolicySteering, schedule_table_dumps

logger = logging.getLogger(__name__)

# values for options neither the configuration nor the scenario settled
BASE_DEFAULTS = {"sim_time": 30.0, "qos": False, "congestion": False}


class Experiment:
    def __init__(self, topo: TopoCfg, cfg: ExpCfg):
        self.topo = topo
        self.cfg = cfg
        self.evt_mgr = evtm.EventManager()
        self.bus = TraceBus()
        self.network = Network(self.evt_mgr, self.bus)
        self.global_routing = False
        self.generators: Dict[str, TrafficGenerator] = {}
        self.responders: List[EchoResponder] = []
        self.failovers: List[LinkFailover] = []
        self.steering: List[PolicySteering] = []
        self.taps: Dict[str, EavesdropTap] = {}
        self.monitor = FlowMonitor(self.network)
        self.trace_mgr = TraceManager(topo.name, cfg.trace_file is not None)
        self.classifier = FlowClassifier([])
        self.verdict_tables: Dict[str, VerdictTable] = {}
        self.route_dumps: List[str] = []
        self.report: Optional[Report] = None

    @property
    def sim_time(self) -> float:
        return self.cfg.sim_time

    def run(self) -> Report:
        """run advances the experiment to its end time, once, and returns the summary."""
        if self.report is not None:
            return self.report
        logger.info("running %s for %.3fs of virtual time", self.cfg.name, self.sim_time)
        self.evt_mgr.run(until=self.sim_time)

        for gen in self.generators.values():
            if gen.running:
                gen.stop(self.evt_mgr)
        for steer in self.steering:
            steer.stop()
        for failover in self.failovers:
            failover.cancel()
        self.monitor.detach()
        for tap in self.taps.values():
            tap.detach()
        self.trace_mgr.detach(self.bus)

        self.report = self.summarize()
        self.write_outputs()
        return self.report

    def summarize(self) -> Report:
        events = self.monitor.events
        categories = aggregate(events, self.classifier)
        verdicts = {cat: table.verdict(categories[cat])
                    for cat, table in self.verdict_tables.items() if cat in categories}
        network = self.network

        rpt = Report(self.cfg.name, self.sim_time)
        rpt.flows = list(build_flow_stats(events).values())
        rpt.categories = categories
        rpt.verdicts = verdicts
        rpt.drops = network.drop_counts()
        rpt.admission_drops = {n.name: n.admission.dropped_total
                               for n in network.nodes.values() if n.admission is not None}
        for intrfc in network.interfaces():
            label = f"{intrfc.node.name}/{intrfc.name}"
            rpt.queue_drops[label] = intrfc.qdisc.drops
            if isinstance(intrfc.qdisc, PriorityQueueDisc):
                rpt.queue_bands[label] = intrfc.qdisc.band_counters()
        rpt.intercepted = {name: tap.intercepted for name, tap in self.taps.items()}
        for name, gen in self.generators.items():
            rpt.generators[name] = {"kind": gen.kind.value, "state": gen.state.value,
                                    "packets_sent": gen.packets_sent, "interval": gen.interval}
            if gen.error is not None:
                rpt.generator_errors[name] = gen.error
        rpt.link_transitions = {link.name: [(t, s.value) for t, s in link.transitions]
                                for link in network.links.values() if link.transitions}
        rpt.steering = {steer.node.name: list(steer.history) for steer in self.steering}
        rpt.route_dumps = list(self.route_dumps)
        rpt.events_dispatched = self.evt_mgr.dispatched
        return rpt

    def write_outputs(self):
        if self.cfg.trace_file:
            self.trace_mgr.write_to_file(self.cfg.trace_file, global_order=True)
        if self.cfg.pcap:
            if self.cfg.trace_file:
                stem, ext = os.path.splitext(self.cfg.trace_file)
                filename = f"{stem}-packets{ext}"
            else:
                filename = f"{self.cfg.name}-packets.yaml"
            self.monitor.log.write_to_file(filename)
            logger.info("wrote %d packet events to %s", len(self.monitor.log), filename)


def build_experiment_net(topo: TopoCfg, cfg: ExpCfg) -> Experiment:
    """
    build_experiment_net creates the network topo describes, configured by
    cfg, with every generator, failure and steering change scheduled.
    """
    cfg = cfg.with_defaults(BASE_DEFAULTS)
    cfg.validate()
    exp = Experiment(topo, cfg)
    network = exp.network
    if cfg.ipsec:
        network.ipsec_overhead = IPSEC_OVERHEAD
        network.ipsec_delay = IPSEC_DELAY

    for nd in topo.nodes:
        network.add_node(nd.name, role_from_str(nd.role))
        exp.trace_mgr.add_name(nd.name, nd.role)
        for addr in nd.addresses:
            iface = _parse_interface(addr)
            network.add_address(nd.name, str(iface.ip), iface.network.prefixlen)

    qos_ends = set(topo.qos_links)
    for ld in topo.links:
        qdiscs = [_make_qdisc(cfg, f"{end}@{ld.name}" in qos_ends) for end in (ld.a, ld.b)]
        network.connect(ld.name, ld.a, ld.b, ld.capacity_bps, ld.delay, ld.network, ld.metric,
                        qdisc_a=qdiscs[0], qdisc_b=qdiscs[1])
    for end_name in qos_ends:
        # raises on names that match no interface
        node, _, link = end_name.partition("@")
        network.node(node).interface_on(link)

    exp.global_routing = topo.routing == "global" or cfg.dynamic
    if topo.routing not in ("static", "global"):
        raise ConfigurationError(f"unknown routing mode {topo.routing!r}")
    if exp.global_routing:
        populate_global_routes(network)
    else:
        install_static_routes(network, topo)

    for name in topo.rate_limited_nodes:
        network.node(name).admission = AdmissionController.from_bitrate(cfg.rate_limit_bps, cfg.rate_window, name)

    for name in topo.eavesdrop_nodes:
        tap = EavesdropTap(network, network.node(name).name)
        tap.attach()
        exp.taps[name] = tap

    for rd in topo.responders:
        exp.responders.append(EchoResponder(network.node(rd.node), rd.port))

    for app in topo.apps:
        if app.name in exp.generators:
            raise ConfigurationError(f"duplicated application name {app.name}")
        gen = TrafficGenerator(app.name, network.node(app.node), generator_kind_from_str(app.kind))
        gen.setup(network.resolve(app.target), app.port, app.packet_size, rate_bps=app.rate_bps,
                  count=app.count, interval=app.interval, dscp=app.dscp)
        if app.start < 0 or (app.stop is not None and app.stop < app.start):
            raise ConfigurationError(f"application {app.name} has start {app.start} and stop {app.stop}")
        gen.schedule(exp.evt_mgr, app.start, app.stop)
        exp.generators[app.name] = gen

    convergence = cfg.convergence_time if exp.global_routing else None
    for fd in topo.failures:
        if fd.at < 0 or (fd.restore_at is not None and fd.restore_at < fd.at):
            raise ConfigurationError(f"failure of {fd.link} at {fd.at} restores at {fd.restore_at}")
        failover = LinkFailover(network, network.link(fd.link), fd.at, fd.restore_at, convergence)
        failover.schedule(exp.evt_mgr)
        exp.failovers.append(failover)

    for sd in topo.steering:
        steer = PolicySteering(network.node(sd.node), sd.dest, sd.mask,
                               network.resolve(sd.hop_a), network.resolve(sd.hop_b),
                               sd.interval if sd.interval is not None else cfg.policy_interval,
                               network.link(sd.link_a), network.link(sd.link_b))
        steer.start(exp.evt_mgr)
        exp.steering.append(steer)

    for dd in topo.dumps:
        for name in dd.nodes:
            network.node(name)
        schedule_table_dumps(exp.evt_mgr, network, dd.nodes, [t for t in dd.times if t < cfg.sim_time],
                             exp.route_dumps)

    exp.classifier = FlowClassifier([ClassRule.from_dict(c) for c in topo.classes])
    exp.verdict_tables = _verdict_tables(topo, cfg)
    exp.monitor.attach()
    exp.trace_mgr.attach(exp.bus)
    logger.info("built %s: %d nodes, %d links, %d generators", topo.name, len(network.nodes),
                len(network.links), len(exp.generators))
    return exp


# bytes an ipsec tunnel adds to each packet and the time taken to add them
IPSEC_OVERHEAD = 56
IPSEC_DELAY = 100e-6


def install_static_routes(network: Network, topo: TopoCfg):
    for rd in topo.routes:
        node = network.node(rd.node)
        link = network.link(rd.link)
        node.interface_on(link)
        hop = network.resolve(rd.next_hop) if rd.next_hop else None
        tag = _route_tag(rd.tag)
        node.table.add_route(rd.dest, rd.mask, hop, link, rd.metric, tag)


def _route_tag(tag: Optional[str]) -> Optional[RouteTag]:
    if tag is None:
        return None
    try:
        return RouteTag(tag)
    except ValueError:
        raise ConfigurationError(f"unknown route tag {tag!r}") from None


def _make_qdisc(cfg: ExpCfg, prio: bool):
    if prio:
        return PriorityQueueDisc(bands=2, capacity=cfg.queue_capacity)
    return FifoQueueDisc(cfg.queue_capacity)


def _parse_interface(addr: str) -> ipaddress.IPv4Interface:
    try:
        return ipaddress.IPv4Interface(addr)
    except ValueError as err:
        raise ConfigurationError(f"malformed address {addr!r}: {err}") from None


def _verdict_tables(topo: TopoCfg, cfg: ExpCfg) -> Dict[str, VerdictTable]:
    defaults = default_verdict_tables()
    tables: Dict[str, VerdictTable] = {}
    for category, table_name in topo.verdicts.items():
        if table_name not in defaults:
            raise ConfigurationError(f"no verdict table named {table_name!r} for category {category}")
        tables[category] = defaults[table_name]
    for category, table in cfg.thresholds.items():
        tables[category] = table if isinstance(table, VerdictTable) else VerdictTable.from_dict(table)
    return tables


def run_scenario(name: str, cfg: ExpCfg, topo: Optional[TopoCfg] = None) -> Report:
    """run_scenario builds and runs a built-in scenario, or topo when one is given."""
    if topo is None:
        topo, cfg = build_scenario(name, cfg)
    return build_experiment_net(topo, cfg).run()
