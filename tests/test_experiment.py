"""
Whole runs of the built-in scenarios and of small hand-built topologies.
"""
import json

import pytest
import yaml

from wanqos.desc_topo import AppDesc, ResponderDesc, TopoCfg, build_scenario
from wanqos.errors import ConfigurationError
from wanqos.experiment import build_experiment_net, run_scenario
from wanqos.flow import GeneratorState
from wanqos.param import ExpCfg


def tiny_topo():
    topo = TopoCfg("tiny")
    topo.add_node("a", "client")
    topo.add_node("b", "server")
    topo.add_link("a-b", "a", "b", 10e6, 1e-3, "10.0.0.0/24")
    topo.responders.append(ResponderDesc("b", 9))
    topo.add_app(AppDesc("ping", "echo", "a", "b", 9, 100, count=5, interval=0.5, start=1.0))
    topo.classes = [{"category": "ping", "dst_port": 9}]
    topo.verdicts = {"ping": "transactional"}
    return topo


class TestBuild:
    def test_base_defaults(self):
        exp = build_experiment_net(tiny_topo(), ExpCfg())
        assert exp.sim_time == 30.0
        assert not exp.global_routing

    def test_run_once(self):
        exp = build_experiment_net(tiny_topo(), ExpCfg(sim_time=5.0))
        report = exp.run()
        assert exp.run() is report
        assert report.category("ping").rx_packets == 5
        assert report.verdicts == {"ping": "excellent"}

    def test_threshold_override(self):
        cfg = ExpCfg(sim_time=5.0, thresholds={"ping": {"tiers": [], "fallback": "judged"}})
        report = build_experiment_net(tiny_topo(), cfg).run()
        assert report.verdicts["ping"] == "judged"

    def test_generator_without_address(self):
        topo = tiny_topo()
        topo.add_node("lonely", "client")
        topo.add_app(AppDesc("orphan", "cbr", "lonely", "b", 5000, 100, rate_bps=1e5))
        report = build_experiment_net(topo, ExpCfg(sim_time=5.0)).run()
        assert "no address" in report.generator_errors["orphan"]
        assert report.generators["orphan"]["state"] == GeneratorState.STOPPED.value
        assert report.category("ping").rx_packets == 5

    @pytest.mark.parametrize("mutate", [
        lambda t: t.add_app(AppDesc("ping", "cbr", "a", "b", 5000, 100, rate_bps=1e5)),
        lambda t: t.qos_links.append("a@nowhere"),
        lambda t: t.verdicts.update({"ping": "lenient"}),
        lambda t: setattr(t, "routing", "ospf"),
        lambda t: t.add_link("a-c", "a", "c", 1e6, 1e-3),
        lambda t: t.add_route("a", "10.9.0.0", "255.255.0.0", "b", "b-a"),
        lambda t: t.add_app(AppDesc("late", "echo", "a", "b", 9, 100, count=1, interval=1.0, start=3.0, stop=2.0)),
        lambda t: t.add_node("b"),
        lambda t: t.add_node("c", "mainframe"),
        lambda t: t.add_app(AppDesc("bad", "stream", "a", "b", 9, 100)),
    ])
    def test_bad_topologies(self, mutate):
        topo = tiny_topo()
        mutate(topo)
        with pytest.raises(ConfigurationError):
            build_experiment_net(topo, ExpCfg(sim_time=5.0))

    def test_invalid_configuration(self):
        with pytest.raises(ConfigurationError):
            build_experiment_net(tiny_topo(), ExpCfg(sim_time=-1.0))


class TestTriangle:
    def test_failover_moves_traffic_to_backup(self):
        exp = build_experiment_net(*build_scenario("triangle", ExpCfg()))
        hq = exp.network.node("hq")
        exp.evt_mgr.run(until=3.9)
        assert hq.table.lookup("10.1.2.2").link.name == "dc-hq"
        exp.evt_mgr.run(until=4.1)
        assert hq.table.lookup("10.1.2.2").link.name == "hq-branch"

    def test_no_echo_is_lost(self):
        report = run_scenario("triangle", ExpCfg())
        echo = report.category("echo")
        # 13 from hq, one a second from 2 s; 9 from the branch, every 1.5 s from 2.5 s
        assert echo.tx_packets == 22
        assert echo.flows == 2
        assert echo.lost_packets == 0
        assert report.category("echo-reply").rx_packets == 22
        assert report.verdicts["echo"] == "excellent"
        assert report.link_transitions == {"dc-hq": [(4.0, "down")]}
        assert len(report.route_dumps) == 4

    def test_restore(self):
        report = run_scenario("triangle", ExpCfg(restore=True, restore_after=5.0))
        assert report.link_transitions["dc-hq"] == [(4.0, "down"), (9.0, "up")]
        assert report.category("echo").lost_packets == 0

    def test_ipsec_adds_overhead(self):
        plain = run_scenario("triangle", ExpCfg(sim_time=6.0))
        tunneled = run_scenario("triangle", ExpCfg(sim_time=6.0, ipsec=True))
        requests = [fs for fs in tunneled.flows if fs.key.dport == 9]
        assert sorted(fs.tx_bytes // fs.tx_packets for fs in requests) == [256 + 56, 512 + 56]
        assert tunneled.category("echo").avg_delay > plain.category("echo").avg_delay

    def test_trace_and_packet_log(self, tmp_path):
        trace = tmp_path / "triangle.yaml"
        run_scenario("triangle", ExpCfg(sim_time=6.0, trace_file=str(trace), pcap=True))
        data = yaml.safe_load(trace.read_text())
        kinds = {t["kind"] for t in data["traces"]}
        assert {"tx", "rx", "promisc-rx", "link"} <= kinds
        packets = yaml.safe_load((tmp_path / "triangle-packets.yaml").read_text())["events"]
        assert {e["kind"] for e in packets} == {"sent", "received"}


class TestMultihop:
    def test_static_routes_lose_traffic_after_failure(self):
        report = run_scenario("multihop", ExpCfg())
        banking = report.category("banking")
        assert banking.tx_packets == 56
        assert banking.loss_ratio > 0.5
        assert report.drops["no-route"] >= banking.lost_packets
        assert report.verdicts["banking"] == "degraded"

    def test_dynamic_routing_recovers(self):
        static = run_scenario("multihop", ExpCfg()).category("banking")
        dynamic = run_scenario("multihop", ExpCfg(dynamic=True)).category("banking")
        # only what is sent inside the convergence time is lost
        assert 0 < dynamic.lost_packets <= 3
        assert dynamic.lost_packets < static.lost_packets

    def test_no_failure(self):
        report = run_scenario("multihop", ExpCfg(failure_time=0.0))
        assert report.category("banking").lost_packets == 0
        assert report.link_transitions == {}


@pytest.mark.slow
class TestQos:
    def test_priority_protects_voice(self):
        prio = run_scenario("qos", ExpCfg())
        fifo = run_scenario("qos", ExpCfg(qos=False))
        voice_prio, voice_fifo = prio.category("voip"), fifo.category("voip")

        assert voice_prio.loss_ratio < 0.01
        assert voice_prio.avg_delay < voice_fifo.avg_delay
        assert voice_prio.loss_ratio < voice_fifo.loss_ratio
        assert prio.verdicts["voip"] == "excellent"
        assert prio.queue_bands["router/router-server"][0]["drops"] == 0
        assert fifo.queue_drops["router/router-server"] > 0

    def test_no_congestion(self):
        report = run_scenario("qos", ExpCfg(qos=False, congestion=False))
        assert report.category("voip").loss_ratio < 0.01
        assert report.category("bulk").flows == 1


@pytest.mark.slow
class TestSecurity:
    def test_legitimate_only(self):
        report = run_scenario("security", ExpCfg(eavesdrop=True))
        assert report.verdicts["legitimate"] == "excellent"
        assert report.admission_drops == {}
        assert report.intercepted["router"] > 0
        assert "attack" not in report.categories

    def test_flood_hurts_legitimate_traffic(self):
        report = run_scenario("security", ExpCfg(ddos=True))
        assert report.category("attack").flows == 5
        assert report.category("legitimate").loss_ratio > 0.05

    def test_rate_limit_drops_heavy_sources(self):
        cfg = ExpCfg(ddos=True, attackers=2, attack_rate_bps=4e6, rate_limit=True)
        report = run_scenario("security", cfg)
        assert report.admission_drops["router"] > 1000
        assert report.drops["admission"] == report.admission_drops["router"]
        assert report.category("attack").drops


class TestPbr:
    def test_steering_alternates(self):
        exp = build_experiment_net(*build_scenario("pbr", ExpCfg()))
        report = exp.run()
        history = report.steering["router"]
        assert [t for t, _ in history] == [0.0, 5.0, 10.0, 15.0, 20.0, 25.0, 30.0]
        assert [str(h) for _, h in history] == ["10.100.1.2", "10.100.2.2"] * 3 + ["10.100.1.2"]

        router = exp.network.node("router")
        assert router.interface_on("router-cloud-a").tx_packets > 0
        assert router.interface_on("router-cloud-b").tx_packets > 0
        assert report.category("video").rx_packets > 0
        assert report.category("data").rx_packets > 0
        assert report.generators["video"]["state"] == "stopped"


class TestReport:
    def test_to_dict_serializes(self, tmp_path):
        report = run_scenario("triangle", ExpCfg(sim_time=6.0))
        d = report.to_dict()
        assert d["name"] == "triangle"
        assert d["categories"]["echo"]["loss_ratio"] == 0.0
        json.dumps(d)

        path = tmp_path / "summary.yaml"
        report.write_to_file(str(path))
        assert yaml.safe_load(path.read_text())["verdicts"] == {"echo": "excellent"}

    def test_render(self):
        text = run_scenario("triangle", ExpCfg(sim_time=6.0)).render()
        assert text.startswith("=== triangle: 6.0s simulated ===")
        assert "link dc-hq down at 4.000s" in text

    def test_bad_extension(self, tmp_path):
        report = run_scenario("triangle", ExpCfg(sim_time=6.0))
        with pytest.raises(ValueError):
            report.write_to_file(str(tmp_path / "summary.csv"))
