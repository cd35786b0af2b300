"""
Shared fixtures for the wanqos tests.

    pytest tests/              # everything
    pytest tests/ -m "not slow"  # skip the whole-scenario runs
"""
import pytest

from wanqos.evtm import EventManager
from wanqos.net import Network, Role
from wanqos.trace import TraceBus


@pytest.fixture
def evt_mgr():
    return EventManager()


@pytest.fixture
def network(evt_mgr):
    return Network(evt_mgr, TraceBus())


@pytest.fixture
def line(network):
    """
    client -- router -- server, 10 Mbps / 1 ms then 1 Mbps / 5 ms.

    client-router is 10.0.1.0/24 (client .1, router .2), router-server is
    10.0.2.0/24 (router .1, server .2). Static routes carry traffic both ways.
    """
    network.add_node("client", Role.CLIENT)
    network.add_node("router", Role.ROUTER)
    network.add_node("server", Role.SERVER)
    cr = network.connect("client-router", "client", "router", 10e6, 1e-3, "10.0.1.0/24")
    rs = network.connect("router-server", "router", "server", 1e6, 5e-3, "10.0.2.0/24")
    network.node("client").table.add_route("0.0.0.0", "0.0.0.0", "10.0.1.2", cr)
    network.node("server").table.add_route("0.0.0.0", "0.0.0.0", "10.0.2.1", rs)
    return network


class FakePacket:
    def __init__(self, uid, dscp=0):
        self.uid = uid
        self.dscp = dscp

    def __repr__(self):
        return f"<FakePacket {self.uid} dscp={self.dscp}>"


@pytest.fixture
def make_packet():
    return FakePacket
