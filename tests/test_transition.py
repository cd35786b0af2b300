import ipaddress

import pytest

from wanqos.errors import ConfigurationError
from wanqos.net import LinkState, Network
from wanqos.routes import RouteTag, populate_global_routes
from wanqos.trace import TraceKey, TraceKind
from wanqos.transition import LinkFailover, PolicySteering, schedule_table_dumps, set_link_state

HOP_A = ipaddress.IPv4Address("10.100.1.2")
HOP_B = ipaddress.IPv4Address("10.100.2.2")


@pytest.fixture
def two_clouds(network: Network):
    network.add_node("router")
    network.add_node("cloud-a")
    network.add_node("cloud-b")
    network.connect("router-cloud-a", "router", "cloud-a", 5e6, 5e-3, "10.100.1.0/24")
    network.connect("router-cloud-b", "router", "cloud-b", 3e6, 30e-3, "10.100.2.0/24")
    return network


def steering(network, interval=5.0):
    return PolicySteering(network.node("router"), "10.200.0.0", "255.255.255.0", HOP_A, HOP_B, interval,
                          network.link("router-cloud-a"), network.link("router-cloud-b"))


class TestLinkState:
    def test_set_link_state_is_idempotent(self, two_clouds: Network):
        link = two_clouds.link("router-cloud-a")
        evt_mgr = two_clouds.evt_mgr
        assert set_link_state(evt_mgr, link, LinkState.DOWN)
        assert not set_link_state(evt_mgr, link, LinkState.DOWN)
        assert link.transitions == [(0.0, LinkState.DOWN)]
        assert set_link_state(evt_mgr, link, LinkState.UP)
        assert link.up

    def test_link_trace_fires_at_both_ends(self, two_clouds: Network):
        seen = []
        two_clouds.bus.subscribe(TraceKey(None, "router-cloud-a", TraceKind.LINK), seen.append)
        set_link_state(two_clouds.evt_mgr, two_clouds.link("router-cloud-a"), LinkState.DOWN)
        assert sorted(r.node for r in seen) == ["cloud-a", "router"]
        assert all(r.detail == "down" for r in seen)

    def test_failover_fails_and_restores(self, two_clouds: Network):
        link = two_clouds.link("router-cloud-a")
        failover = LinkFailover(two_clouds, link, 1.0, 3.0)
        failover.schedule(two_clouds.evt_mgr)
        two_clouds.evt_mgr.run(until=2.0)
        assert not link.up
        two_clouds.evt_mgr.run(until=4.0)
        assert link.up
        assert link.transitions == [(1.0, LinkState.DOWN), (3.0, LinkState.UP)]

    def test_cancelled_failover_does_nothing(self, two_clouds: Network):
        link = two_clouds.link("router-cloud-a")
        failover = LinkFailover(two_clouds, link, 1.0)
        failover.schedule(two_clouds.evt_mgr)
        failover.cancel()
        two_clouds.evt_mgr.run(until=2.0)
        assert link.up
        assert link.transitions == []

    def test_convergence_delays_recompute(self, network: Network):
        for name in "abc":
            network.add_node(name)
        network.connect("a-b", "a", "b", 1e6, 1e-3, "10.0.1.0/24")
        network.connect("b-c", "b", "c", 1e6, 1e-3, "10.0.2.0/24")
        network.connect("c-a", "c", "a", 1e6, 1e-3, "10.0.3.0/24", metric=10)
        populate_global_routes(network)
        a = network.node("a")
        assert a.table.lookup("10.0.2.2").link.name == "a-b"

        failover = LinkFailover(network, network.link("a-b"), 1.0, convergence=0.5)
        failover.schedule(network.evt_mgr)
        network.evt_mgr.run(until=1.25)
        # the old route is dead and the new one not yet computed
        assert a.table.lookup("10.0.2.2") is None
        network.evt_mgr.run(until=1.75)
        assert a.table.lookup("10.0.2.2").link.name == "c-a"


class TestPolicySteering:
    def test_starts_on_hop_a(self, two_clouds: Network):
        steer = steering(two_clouds)
        steer.start(two_clouds.evt_mgr)
        entries = two_clouds.node("router").table.entries_for("10.200.0.0", 24)
        assert len(entries) == 1
        assert entries[0].next_hop == HOP_A
        assert entries[0].tag is RouteTag.POLICY

    def test_parity(self, two_clouds: Network):
        """After the k-th toggle the active hop is A for even k and B for odd k."""
        steer = steering(two_clouds)
        evt_mgr = two_clouds.evt_mgr
        steer.start(evt_mgr)
        table = two_clouds.node("router").table
        for k in range(1, 7):
            evt_mgr.run(until=k * 5.0 + 0.1)
            assert steer.toggles == k
            expected = HOP_A if k % 2 == 0 else HOP_B
            assert steer.active_hop == expected
            entries = table.entries_for("10.200.0.0", 24)
            assert [e.next_hop for e in entries] == [expected]
            assert table.lookup("10.200.0.2").next_hop == expected

    def test_history(self, two_clouds: Network):
        steer = steering(two_clouds, interval=2.0)
        steer.start(two_clouds.evt_mgr)
        two_clouds.evt_mgr.run(until=7.0)
        assert steer.history == [(0.0, HOP_A), (2.0, HOP_B), (4.0, HOP_A), (6.0, HOP_B)]

    def test_stop(self, two_clouds: Network):
        steer = steering(two_clouds)
        steer.start(two_clouds.evt_mgr)
        two_clouds.evt_mgr.run(until=6.0)
        steer.stop()
        two_clouds.evt_mgr.run(until=20.0)
        assert steer.toggles == 1

    def test_replaces_foreign_entries(self, two_clouds: Network):
        table = two_clouds.node("router").table
        table.add_route("10.200.0.0", 24, HOP_B, two_clouds.link("router-cloud-b"), 1, RouteTag.PRIMARY)
        steering(two_clouds).start(two_clouds.evt_mgr)
        assert [e.next_hop for e in table.entries_for("10.200.0.0", 24)] == [HOP_A]

    @pytest.mark.parametrize("interval", [0, -5.0])
    def test_interval_must_be_positive(self, two_clouds: Network, interval):
        with pytest.raises(ConfigurationError):
            steering(two_clouds, interval)


def test_table_dumps(two_clouds: Network):
    dumps = []
    schedule_table_dumps(two_clouds.evt_mgr, two_clouds, ["router", "cloud-a"], [1.0, 2.0], dumps)
    two_clouds.evt_mgr.run(until=3.0)
    assert len(dumps) == 4
    assert dumps[0].startswith("Node: router, Time: 1.000s")
    assert dumps[3].startswith("Node: cloud-a, Time: 2.000s")
