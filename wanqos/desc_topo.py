"""
desc_topo.py holds the description of a topology and what runs over it, in a
form that can be written to and read back from yaml or json, along with the
builders of the built-in scenarios.

A TopoCfg only describes. experiment.build_experiment_net turns one into a
network of nodes, links, routing tables and generators.

Addresses in routes, applications and steering may be written as a dotted
quad, as a node name (its primary address), or as 'node@link', the address
the node has on that link.
"""
import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import yaml

from wanqos.errors import ConfigurationError
from wanqos.param import ExpCfg, coerce_fields, load_mapping
from wanqos.scheduler import DSCP

logger = logging.getLogger(__name__)


@dataclass
class NodeDesc:
    name: str
    role: str = "router"
    addresses: List[str] = field(default_factory=list)  # extra addresses, "a.b.c.d/prefix"


@dataclass
class LinkDesc:
    name: str
    a: str
    b: str
    capacity_bps: float
    delay: float
    network: Optional[str] = None
    metric: int = 1


@dataclass
class RouteDesc:
    node: str
    dest: str
    mask: str
    next_hop: Optional[str]
    link: str
    metric: int = 1
    tag: Optional[str] = None


@dataclass
class AppDesc:
    name: str
    kind: str  # cbr, flood or echo
    node: str
    target: str
    port: int
    packet_size: int
    rate_bps: Optional[float] = None
    count: Optional[int] = None
    interval: Optional[float] = None
    dscp: int = 0
    start: float = 0.0
    stop: Optional[float] = None  # None runs to the end


@dataclass
class ResponderDesc:
    node: str
    port: int = 9


@dataclass
class FailureDesc:
    link: str
    at: float
    restore_at: Optional[float] = None


@dataclass
class SteeringDesc:
    node: str
    dest: str
    mask: str
    hop_a: str
    link_a: str
    hop_b: str
    link_b: str
    interval: Optional[float] = None  # None takes the experiment's policy_interval


@dataclass
class DumpDesc:
    nodes: List[str]
    times: List[float]


@dataclass
class TopoCfg:
    name: str
    nodes: List[NodeDesc] = field(default_factory=list)
    links: List[LinkDesc] = field(default_factory=list)
    routes: List[RouteDesc] = field(default_factory=list)
    routing: str = "static"  # or "global"
    apps: List[AppDesc] = field(default_factory=list)
    responders: List[ResponderDesc] = field(default_factory=list)
    failures: List[FailureDesc] = field(default_factory=list)
    steering: List[SteeringDesc] = field(default_factory=list)
    dumps: List[DumpDesc] = field(default_factory=list)
    qos_links: List[str] = field(default_factory=list)  # "node@link" egress interfaces given priority queuing
    rate_limited_nodes: List[str] = field(default_factory=list)
    eavesdrop_nodes: List[str] = field(default_factory=list)
    classes: List[Dict[str, Any]] = field(default_factory=list)  # flow_stats.ClassRule fields
    verdicts: Dict[str, str] = field(default_factory=dict)  # category -> verdict table name

    def add_node(self, name: str, role: str = "router", addresses: Optional[List[str]] = None) -> NodeDesc:
        nd = NodeDesc(name, role, list(addresses or []))
        self.nodes.append(nd)
        return nd

    def add_link(self, name: str, a: str, b: str, capacity_bps: float, delay: float,
                 network: Optional[str] = None, metric: int = 1) -> LinkDesc:
        ld = LinkDesc(name, a, b, capacity_bps, delay, network, metric)
        self.links.append(ld)
        return ld

    def add_route(self, node: str, dest: str, mask: str, next_hop: Optional[str], link: str,
                  metric: int = 1, tag: Optional[str] = None) -> RouteDesc:
        rd = RouteDesc(node, dest, mask, next_hop, link, metric, tag)
        self.routes.append(rd)
        return rd

    def add_app(self, app: AppDesc) -> AppDesc:
        self.apps.append(app)
        return app

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TopoCfg":
        if not isinstance(d, dict) or "name" not in d:
            raise ConfigurationError("topology description must be a mapping with a name")
        nested = {"nodes": NodeDesc, "links": LinkDesc, "routes": RouteDesc, "apps": AppDesc,
                  "responders": ResponderDesc, "failures": FailureDesc, "steering": SteeringDesc,
                  "dumps": DumpDesc}
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(d) - known)
        if unknown:
            raise ConfigurationError(f"unknown topology keys: {', '.join(unknown)}")
        kwargs = dict(d)
        for key, desc_type in nested.items():
            try:
                descs = [desc_type(**item) for item in d.get(key) or []]
            except TypeError as err:
                raise ConfigurationError(f"bad {key} entry in topology {d['name']}: {err}") from None
            kwargs[key] = [coerce_fields(desc, f"{key} entry in topology {d['name']}") for desc in descs]
        return cls(**kwargs)

    def write_to_file(self, filename: str):
        """
        write_to_file stores the TopoCfg to the file whose name is given.
        Serialization to json or to yaml is selected based on the extension of this name.
        """
        path_ext = os.path.splitext(filename)[1].lower()
        if path_ext in (".yaml", ".yml"):
            with open(filename, "w") as f:
                yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        elif path_ext == ".json":
            with open(filename, "w") as f:
                json.dump(self.to_dict(), f, indent=4)
        else:
            raise ConfigurationError(f"unsupported topology file extension {path_ext!r}")


def read_topo_cfg(filename: str, use_yaml: Optional[bool] = None, dict_bytes: bytes = b"") -> TopoCfg:
    return TopoCfg.from_dict(load_mapping(filename, use_yaml, dict_bytes))


# well known ports of the built-in scenarios
ECHO_PORT = 9
VOIP_PORT = 5060
FTP_PORT = 21
BANKING_PORT = 8080
VIDEO_PORT = 4000
DATA_PORT = 5000

MBPS = 1e6
MS = 1e-3


def triangle(cfg: ExpCfg) -> TopoCfg:
    """
    triangle is three sites joined pairwise. HQ reaches the DC over their
    direct link (metric 1) or through the branch (metric 2); the direct link
    fails at failure_time and traffic moves to the path through the branch.
    The branch runs its own echo client against the DC over their direct link.
    """
    topo = TopoCfg("triangle")
    for name in ("hq", "branch", "dc"):
        topo.add_node(name)
    topo.add_link("hq-branch", "hq", "branch", 5 * MBPS, 2 * MS, "10.1.1.0/24")
    topo.add_link("branch-dc", "branch", "dc", 5 * MBPS, 2 * MS, "10.1.2.0/24")
    topo.add_link("dc-hq", "dc", "hq", 5 * MBPS, 2 * MS, "10.1.3.0/24")

    topo.add_route("hq", "10.1.2.0", "255.255.255.0", "dc@dc-hq", "dc-hq", 1, "primary")
    topo.add_route("hq", "10.1.2.0", "255.255.255.0", "branch@hq-branch", "hq-branch", 2, "backup")
    topo.add_route("dc", "10.1.1.0", "255.255.255.0", "hq@dc-hq", "dc-hq", 1, "primary")
    topo.add_route("dc", "10.1.1.0", "255.255.255.0", "branch@branch-dc", "branch-dc", 2, "backup")
    topo.add_route("branch", "10.1.3.0", "255.255.255.0", "hq@hq-branch", "hq-branch", 1, "primary")
    topo.add_route("branch", "10.1.3.0", "255.255.255.0", "dc@branch-dc", "branch-dc", 2, "backup")

    topo.responders.append(ResponderDesc("dc", ECHO_PORT))
    topo.add_app(AppDesc("hq-echo", "echo", "hq", "dc@branch-dc", ECHO_PORT, 256,
                         count=20, interval=1.0, start=2.0))
    topo.add_app(AppDesc("branch-echo", "echo", "branch", "dc@branch-dc", ECHO_PORT, 512,
                         count=1000, interval=1.5, start=2.5))
    topo.failures.append(FailureDesc("dc-hq", cfg.failure_time, _restore_time(cfg)))
    topo.dumps.append(DumpDesc(["hq", "dc"], [1.0, cfg.failure_time + 1.0]))
    topo.classes = [{"category": "echo", "dst_port": ECHO_PORT}, {"category": "echo-reply", "src_port": ECHO_PORT}]
    topo.verdicts = {"echo": "transactional"}
    return topo


def multihop(cfg: ExpCfg) -> TopoCfg:
    """
    multihop is a bank's branch, data center and disaster recovery site. The
    branch reaches the DR site through the DC (metric 1) or over a direct
    backup link (metric 100). Routes are static unless cfg.dynamic asks for
    global routing, in which case they are recomputed convergence_time after
    each link transition.
    """
    topo = TopoCfg("multihop", routing="global" if cfg.dynamic else "static")
    topo.add_node("branch-c")
    topo.add_node("dc-a")
    topo.add_node("dr-b", "server")
    topo.add_node("client", "client")
    topo.add_link("branch-dc", "branch-c", "dc-a", 10 * MBPS, 5 * MS, "192.168.1.0/24")
    topo.add_link("dc-dr", "dc-a", "dr-b", 100 * MBPS, 10 * MS, "10.0.1.0/24")
    topo.add_link("branch-dr", "branch-c", "dr-b", 50 * MBPS, 25 * MS, "10.0.2.0/24", 100)
    topo.add_link("client-branch", "client", "branch-c", 1000 * MBPS, 1 * MS, "172.16.1.0/24")

    if not cfg.dynamic:
        mask = "255.255.255.0"
        topo.add_route("branch-c", "10.0.1.0", mask, "192.168.1.2", "branch-dc", 1, "primary")
        topo.add_route("branch-c", "10.0.1.0", mask, "10.0.2.2", "branch-dr", 100, "backup")
        topo.add_route("dc-a", "172.16.1.0", mask, "192.168.1.1", "branch-dc", 1)
        topo.add_route("dr-b", "172.16.1.0", mask, "10.0.1.1", "dc-dr", 1, "primary")
        topo.add_route("dr-b", "172.16.1.0", mask, "10.0.2.1", "branch-dr", 100, "backup")
        topo.add_route("dr-b", "192.168.1.0", mask, "10.0.1.1", "dc-dr", 1)
        topo.add_route("client", "0.0.0.0", "0.0.0.0", "172.16.1.2", "client-branch", 1)

    topo.responders.append(ResponderDesc("dr-b", BANKING_PORT))
    topo.add_app(AppDesc("transactions", "echo", "client", "dr-b@dc-dr", BANKING_PORT, 512,
                         count=2000, interval=0.5, start=2.0))
    if 0 < cfg.failure_time < cfg.sim_time:
        topo.failures.append(FailureDesc("dc-dr", cfg.failure_time, _restore_time(cfg)))
        topo.dumps.append(DumpDesc(["branch-c", "dc-a", "dr-b"], [1.0, cfg.failure_time + 1.0]))
    else:
        topo.dumps.append(DumpDesc(["branch-c", "dc-a", "dr-b"], [1.0]))
    topo.classes = [{"category": "banking", "dst_port": BANKING_PORT},
                    {"category": "banking-reply", "src_port": BANKING_PORT}]
    topo.verdicts = {"banking": "transactional"}
    return topo


def qos(cfg: ExpCfg) -> TopoCfg:
    """
    qos sends a voice flow and bulk transfers from one client over a 5 Mbps
    bottleneck. With cfg.congestion three more bulk flows join and the
    bottleneck saturates; with cfg.qos the router serves the voice flow (DSCP
    EF) ahead of everything else on the bottleneck.
    """
    topo = TopoCfg("qos", routing="global")
    topo.add_node("client", "client")
    topo.add_node("router")
    topo.add_node("server", "server")
    topo.add_link("client-router", "client", "router", 100 * MBPS, 1 * MS, "10.1.1.0/24")
    topo.add_link("router-server", "router", "server", 5 * MBPS, 10 * MS, "10.1.2.0/24")
    if cfg.qos:
        topo.qos_links.append("router@router-server")

    server = "server@router-server"
    topo.add_app(AppDesc("voip", "cbr", "client", server, VOIP_PORT, 160, rate_bps=64e3, count=1500,
                         dscp=int(DSCP.EF), start=2.0))
    bulk_bytes = 10_000_000 if cfg.congestion else 1_000_000
    topo.add_app(AppDesc("ftp", "cbr", "client", server, FTP_PORT, 1460, rate_bps=4 * MBPS,
                         count=bulk_bytes // 1460, start=3.0))
    if cfg.congestion:
        for i in range(3):
            topo.add_app(AppDesc(f"ftp-{i + 1}", "cbr", "client", server, FTP_PORT + i + 1, 1460,
                                 rate_bps=2 * MBPS, count=5_000_000 // 1460, start=4.0 + i * 0.5))
    topo.classes = [{"category": "voip", "dst_port": VOIP_PORT}]
    topo.classes += [{"category": "bulk", "dst_port": FTP_PORT + i} for i in range(4)]
    topo.verdicts = {"voip": "voip"}
    return topo


def security(cfg: ExpCfg) -> TopoCfg:
    """
    security puts a legitimate echo client and, with cfg.ddos, a number of
    flooding attackers behind one router in front of a server. The router can
    rate limit each source (cfg.rate_limit) and can be tapped (cfg.eavesdrop).
    """
    topo = TopoCfg("security", routing="global")
    topo.add_node("client", "client")
    topo.add_node("router")
    topo.add_node("server", "server")
    topo.add_link("client-router", "client", "router", 10 * MBPS, 5 * MS, "10.1.1.0/24")
    topo.add_link("router-server", "router", "server", 5 * MBPS, 20 * MS, "10.1.2.0/24")

    topo.responders.append(ResponderDesc("server", ECHO_PORT))
    topo.add_app(AppDesc("legitimate", "echo", "client", "server@router-server", ECHO_PORT, 1024,
                         count=1000, interval=0.1, start=2.0))
    attackers = cfg.attackers if cfg.ddos else 0
    for i in range(attackers):
        name = f"attacker-{i}"
        subnet = f"10.1.{10 + i}.0/24"
        topo.add_node(name, "attacker")
        topo.add_link(f"{name}-router", name, "router", 10 * MBPS, 10 * MS, subnet)
        topo.add_app(AppDesc(f"flood-{i}", "flood", name, "server@router-server", ECHO_PORT, 1024,
                             rate_bps=cfg.attack_rate_bps, start=10.0 + i * 0.5))
        topo.classes.append({"category": "attack", "src_network": subnet})
    if cfg.rate_limit:
        topo.rate_limited_nodes.append("router")
    if cfg.eavesdrop:
        topo.eavesdrop_nodes.append("router")
    topo.classes.append({"category": "legitimate", "src_network": "10.1.1.1/32"})
    topo.verdicts = {"legitimate": "transactional"}
    return topo


def pbr(cfg: ExpCfg) -> TopoCfg:
    """
    pbr steers traffic for 10.200.0.0/24, a service both clouds answer on,
    between cloud A and cloud B every policy_interval seconds.
    """
    topo = TopoCfg("pbr")
    topo.add_node("client", "client")
    topo.add_node("router")
    topo.add_node("cloud-a", "server", ["10.200.0.2/24"])
    topo.add_node("cloud-b", "server", ["10.200.0.2/24"])
    topo.add_link("client-router", "client", "router", 10 * MBPS, 5 * MS, "10.0.1.0/24")
    topo.add_link("router-cloud-a", "router", "cloud-a", 5 * MBPS, 5 * MS, "10.100.1.0/24")
    topo.add_link("router-cloud-b", "router", "cloud-b", 3 * MBPS, 30 * MS, "10.100.2.0/24")
    topo.add_route("client", "0.0.0.0", "0.0.0.0", "router@client-router", "client-router")
    topo.steering.append(SteeringDesc("router", "10.200.0.0", "255.255.255.0",
                                      "10.100.1.2", "router-cloud-a", "10.100.2.2", "router-cloud-b"))

    stop = min(30.0, cfg.sim_time)
    topo.add_app(AppDesc("video", "cbr", "client", "10.200.0.2", VIDEO_PORT, 200, rate_bps=256e3,
                         start=2.0, stop=stop))
    topo.add_app(AppDesc("data", "cbr", "client", "10.200.0.2", DATA_PORT, 1400, rate_bps=1 * MBPS,
                         start=3.0, stop=stop))
    topo.classes = [{"category": "video", "dst_port": VIDEO_PORT}, {"category": "data", "dst_port": DATA_PORT}]
    topo.verdicts = {"video": "voip"}
    return topo


def _restore_time(cfg: ExpCfg) -> Optional[float]:
    if not cfg.restore:
        return None
    at = cfg.failure_time + cfg.restore_after
    return at if at < cfg.sim_time else None


@dataclass
class Scenario:
    name: str
    builder: Callable[[ExpCfg], TopoCfg]
    defaults: Dict[str, Any]


SCENARIOS: Dict[str, Scenario] = {
    "triangle": Scenario("triangle", triangle, {"sim_time": 15.0, "failure_time": 4.0}),
    "multihop": Scenario("multihop", multihop, {"sim_time": 30.0, "failure_time": 10.0}),
    "qos": Scenario("qos", qos, {"sim_time": 30.0, "qos": True, "congestion": True}),
    "security": Scenario("security", security, {"sim_time": 40.0}),
    "pbr": Scenario("pbr", pbr, {"sim_time": 32.0}),
}


def build_scenario(name: str, cfg: ExpCfg):
    """build_scenario returns the topology of the named scenario and cfg completed with its defaults."""
    try:
        scenario = SCENARIOS[name]
    except KeyError:
        raise ConfigurationError(f"unknown scenario {name!r}, choose from {', '.join(SCENARIOS)}") from None
    full = cfg.with_defaults(scenario.defaults)
    full.validate()
    if full.name == "experiment":
        full.name = name
    return scenario.builder(full), full
