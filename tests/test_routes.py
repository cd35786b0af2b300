import ipaddress
import itertools

import pytest

from wanqos.errors import ConfigurationError
from wanqos.net import Link, LinkState, Network
from wanqos.routes import RouteTag, RoutingTable, build_conn_graph, populate_global_routes


def make_link(name, net="10.9.0.0/24"):
    return Link(name, ipaddress.IPv4Network(net), 1e6, 1e-3)


@pytest.fixture
def links():
    return make_link("primary"), make_link("backup")


class TestLookup:
    def test_lower_metric_wins(self, links):
        primary, backup = links
        table = RoutingTable("hq")
        table.add_route("10.1.2.0", "255.255.255.0", "10.1.3.1", backup, 2, RouteTag.BACKUP)
        table.add_route("10.1.2.0", "255.255.255.0", "10.1.1.2", primary, 1, RouteTag.PRIMARY)
        assert table.lookup("10.1.2.2").link is primary

    def test_down_entries_are_never_returned(self, links):
        primary, backup = links
        table = RoutingTable("hq")
        table.add_route("10.1.2.0", 24, "10.1.1.2", primary, 1)
        table.add_route("10.1.2.0", 24, "10.1.3.1", backup, 2)

        for states in itertools.product(LinkState, repeat=2):
            primary.state, backup.state = states
            entry = table.lookup("10.1.2.2")
            if entry is None:
                assert not primary.up and not backup.up
            else:
                assert entry.link.up
                if primary.up:
                    assert entry.link is primary

    def test_all_down_is_a_miss(self, links):
        primary, _ = links
        table = RoutingTable("hq")
        table.add_route("10.1.2.0", 24, "10.1.1.2", primary, 1)
        primary.state = LinkState.DOWN
        assert table.lookup("10.1.2.2") is None
        assert table.misses == 1

    def test_most_specific_prefix_beats_metric(self, links):
        wide, narrow = links
        table = RoutingTable("r")
        table.add_route("10.0.0.0", 8, "10.9.0.2", wide, 0)
        table.add_route("10.1.2.0", 24, "10.9.0.3", narrow, 50)
        assert table.lookup("10.1.2.7").link is narrow
        assert table.lookup("10.7.0.1").link is wide

    def test_tie_keeps_first_inserted(self, links):
        first, second = links
        table = RoutingTable("r")
        table.add_route("10.1.2.0", 24, "10.9.0.2", first, 5)
        table.add_route("10.1.2.0", 24, "10.9.0.3", second, 5)
        assert table.lookup("10.1.2.1").link is first

    def test_default_route(self, links):
        table = RoutingTable("client")
        table.add_route("0.0.0.0", "0.0.0.0", "10.9.0.1", links[0])
        assert table.lookup("192.0.2.1").link is links[0]

    def test_unmatched_destination(self, links):
        table = RoutingTable("r")
        table.add_route("10.1.2.0", 24, None, links[0])
        assert table.lookup("10.1.3.1") is None


class TestTableEdits:
    def test_remove_route_is_idempotent(self, links):
        table = RoutingTable("r")
        table.add_route("10.1.2.0", 24, "10.9.0.2", links[0], 1)
        table.add_route("10.1.2.0", 24, "10.9.0.3", links[1], 2)
        assert table.remove_route("10.1.2.0", "255.255.255.0") == 2
        assert table.remove_route("10.1.2.0", "255.255.255.0") == 0
        assert len(table) == 0

    def test_remove_route_matches_exact_prefix(self, links):
        table = RoutingTable("r")
        table.add_route("10.1.2.0", 24, "10.9.0.2", links[0])
        table.add_route("10.1.0.0", 16, "10.9.0.2", links[0])
        table.remove_route("10.1.2.0", 24)
        assert [str(e.network) for e in table] == ["10.1.0.0/16"]

    def test_remove_tagged(self, links):
        table = RoutingTable("r")
        table.add_route("10.1.2.0", 24, "10.9.0.2", links[0], tag=RouteTag.GLOBAL)
        table.add_route("10.1.3.0", 24, "10.9.0.2", links[0], tag=RouteTag.CONNECTED)
        assert table.remove_tagged(RouteTag.GLOBAL) == 1
        assert table.entries_for("10.1.3.0", 24)[0].tag is RouteTag.CONNECTED

    def test_negative_metric_rejected(self, links):
        with pytest.raises(ConfigurationError):
            RoutingTable("r").add_route("10.1.2.0", 24, None, links[0], -1)

    def test_route_without_link_rejected(self):
        with pytest.raises(ConfigurationError):
            RoutingTable("r").add_route("10.1.2.0", 24, None, None)

    def test_malformed_destination_rejected(self, links):
        with pytest.raises(ConfigurationError):
            RoutingTable("r").add_route("10.1.2", 33, None, links[0])

    def test_dump_lists_every_entry(self, links):
        table = RoutingTable("hq")
        table.add_route("10.1.2.0", 24, "10.9.0.2", links[0], 1, RouteTag.PRIMARY)
        links[1].state = LinkState.DOWN
        table.add_route("10.1.2.0", 24, "10.9.0.3", links[1], 2, RouteTag.BACKUP)
        text = table.dump(4.0)
        lines = text.splitlines()
        assert lines[0] == "Node: hq, Time: 4.000s"
        assert len(lines) == 4
        assert "UG" in lines[2] and "primary" in lines[2]
        assert "-G" in lines[3] and "backup" in lines[3]


@pytest.fixture
def square(network):
    """a - b - c - d - a, every link metric 1 except d-a at 5."""
    for name in "abcd":
        network.add_node(name)
    network.connect("a-b", "a", "b", 1e6, 1e-3, "10.0.1.0/24")
    network.connect("b-c", "b", "c", 1e6, 1e-3, "10.0.2.0/24")
    network.connect("c-d", "c", "d", 1e6, 1e-3, "10.0.3.0/24")
    network.connect("d-a", "d", "a", 1e6, 1e-3, "10.0.4.0/24", metric=5)
    return network


class TestGlobalRoutes:
    def test_conn_graph_skips_down_links(self, square: Network):
        square.link("b-c").state = LinkState.DOWN
        g = build_conn_graph(square)
        assert g.number_of_nodes() == 4
        assert g.number_of_edges() == 3
        assert not g.has_edge("b", "c")

    def test_shortest_path_routes(self, square: Network):
        populate_global_routes(square)
        a = square.node("a")
        # d is 3 hops round the cheap side, 5 over the direct link
        assert a.table.lookup("10.0.3.2").link.name == "a-b"
        assert a.table.lookup("10.0.2.2").link.name == "a-b"

    def test_recompute_after_failure(self, square: Network):
        populate_global_routes(square)
        square.link("b-c").state = LinkState.DOWN
        populate_global_routes(square)
        a = square.node("a")
        assert a.table.lookup("10.0.3.2").link.name == "d-a"
        # c's address on the failed link stays reachable through c's other link
        entry = a.table.lookup("10.0.2.2")
        assert entry is not None and entry.link.name == "d-a"

    def test_recompute_replaces_global_entries_only(self, square: Network):
        populate_global_routes(square)
        before = len(square.node("a").table)
        populate_global_routes(square)
        table = square.node("a").table
        assert len(table) == before
        connected = [e for e in table if e.tag is RouteTag.CONNECTED]
        assert len(connected) == 2

    def test_stub_networks_are_routed(self, square: Network):
        square.add_address("c", "192.168.50.1", 24)
        populate_global_routes(square)
        assert square.node("a").table.lookup("192.168.50.9").link.name == "a-b"

    def test_partition_leaves_no_route(self, square: Network):
        square.link("c-d").state = LinkState.DOWN
        square.link("b-c").state = LinkState.DOWN
        populate_global_routes(square)
        assert square.node("a").table.lookup("10.0.2.2") is None
