"""
flow.py holds the traffic generators and the echo responder.

Every generator is a TrafficGenerator; its kind selects how it paces and when
it runs out:

  cbr    one packet every size*8/rate seconds, up to count packets (voice-like)
  flood  one packet every size*8/rate seconds until it is stopped
  echo   one echo request every interval seconds, up to count requests

A generator moves Idle -> Running -> Stopped and never leaves Stopped. The
k-th packet goes out at start + k*interval, computed from the start time
rather than accumulated, so the pacing does not drift over a long run.
"""
import logging
from enum import Enum
from typing import Optional

import wanqos.evtm as evtm
from wanqos.errors import ConfigurationError, TransportError
from wanqos.net import DATA, ECHO_REQUEST, PROTO_UDP, Node, Packet, Socket

logger = logging.getLogger(__name__)


class GeneratorKind(Enum):
    CBR = "cbr"
    FLOOD = "flood"
    ECHO = "echo"


def generator_kind_from_str(kind: str) -> GeneratorKind:
    try:
        return GeneratorKind(kind.lower())
    except ValueError:
        raise ConfigurationError(f"unknown generator kind {kind!r}") from None


class GeneratorState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class TrafficGenerator:
    def __init__(self, name: str, node: Node, kind: GeneratorKind):
        self.name = name
        self.node = node
        self.kind = kind
        self.state = GeneratorState.IDLE
        self.target = None  # destination address
        self.port = 0
        self.packet_size = 0
        self.rate_bps: Optional[float] = None
        self.count: Optional[int] = None
        self.interval = 0.0
        self.dscp = 0
        self.protocol = PROTO_UDP
        self.packets_sent = 0
        self.pending: Optional[evtm.ScheduledEvent] = None
        self.socket: Optional[Socket] = None
        self.start_time: Optional[float] = None
        self.stop_time: Optional[float] = None
        self.error: Optional[str] = None
        self.configured = False

    @property
    def running(self) -> bool:
        return self.state is GeneratorState.RUNNING

    def setup(self, target, port: int, packet_size: int, rate_bps: Optional[float] = None,
              count: Optional[int] = None, interval: Optional[float] = None, dscp: int = 0,
              protocol: int = PROTO_UDP):
        """
        setup configures the generator without starting it. cbr and flood
        generators derive their interval from the packet size and rate_bps,
        echo generators take interval as given.
        """
        if self.state is not GeneratorState.IDLE:
            raise ConfigurationError(f"generator {self.name} is {self.state.value}, setup needs idle")
        if packet_size <= 0:
            raise ConfigurationError(f"generator {self.name}: packet size must be positive, got {packet_size}")
        if count is not None and count < 0:
            raise ConfigurationError(f"generator {self.name}: negative packet count {count}")
        if not (0 <= port <= 65535):
            raise ConfigurationError(f"generator {self.name}: port {port} out of range")

        if self.kind is GeneratorKind.ECHO:
            if interval is None or not (interval > 0):
                raise ConfigurationError(f"generator {self.name}: echo interval must be positive, got {interval}")
            self.interval = interval
        else:
            if rate_bps is None or not (rate_bps > 0):
                raise ConfigurationError(f"generator {self.name}: rate must be positive, got {rate_bps}")
            self.rate_bps = rate_bps
            self.interval = packet_size * 8 / rate_bps

        # a flood has no limit
        self.count = None if self.kind is GeneratorKind.FLOOD else count
        self.target = target
        self.port = port
        self.packet_size = packet_size
        self.dscp = dscp
        self.protocol = protocol
        self.configured = True

    def exhausted(self) -> bool:
        return self.count is not None and self.packets_sent >= self.count

    def start(self, evt_mgr: evtm.EventManager) -> bool:
        if self.state is not GeneratorState.IDLE:
            return False
        if not self.configured:
            raise ConfigurationError(f"generator {self.name} started before setup")

        try:
            self.socket = self.node.bind(0, self.protocol)
        except TransportError as err:
            # fatal for this generator only
            self.state = GeneratorState.STOPPED
            self.error = str(err)
            logger.error("generator %s failed to start: %s", self.name, err)
            return False

        self.state = GeneratorState.RUNNING
        self.start_time = evt_mgr.current_seconds()
        logger.info("generator %s (%s) starts at t=%.3fs, interval %.6fs", self.name, self.kind.value,
                    self.start_time, self.interval)
        self.send(evt_mgr)
        return True

    def stop(self, evt_mgr: evtm.EventManager) -> bool:
        if self.state is GeneratorState.STOPPED:
            return False
        if self.pending is not None:
            self.pending.cancel()
            self.pending = None
        if self.socket is not None:
            self.socket.close()
            self.socket = None
        self.state = GeneratorState.STOPPED
        self.stop_time = evt_mgr.current_seconds()
        logger.info("generator %s stops at t=%.3fs after %d packets", self.name, self.stop_time, self.packets_sent)
        return True

    # send emits one packet and schedules the next one
    def send(self, evt_mgr: evtm.EventManager):
        self.pending = None
        if not self.running or self.exhausted():
            return
        kind = ECHO_REQUEST if self.kind is GeneratorKind.ECHO else DATA
        self.socket.send(self.target, self.port, self.packet_size, dscp=self.dscp, kind=kind,
                         seq=self.packets_sent)
        self.packets_sent += 1

        if self.exhausted():
            logger.debug("generator %s reached its count of %d", self.name, self.count)
            return
        nxt = self.start_time + self.packets_sent * self.interval
        self.pending = evt_mgr.schedule_at(self, None, generator_send, nxt)

    def schedule(self, evt_mgr: evtm.EventManager, start_at: float, stop_at: Optional[float] = None):
        evt_mgr.schedule_at(self, None, generator_start, start_at)
        if stop_at is not None:
            evt_mgr.schedule_at(self, None, generator_stop, stop_at, urgent=True)

    def __repr__(self):
        return f"<TrafficGenerator {self.name} {self.kind.value} {self.state.value} sent={self.packets_sent}>"


def generator_start(evt_mgr: evtm.EventManager, context, data):
    context.start(evt_mgr)
    return None


def generator_stop(evt_mgr: evtm.EventManager, context, data):
    context.stop(evt_mgr)
    return None


def generator_send(evt_mgr: evtm.EventManager, context, data):
    context.send(evt_mgr)
    return None


class EchoResponder:
    """EchoResponder answers each echo request delivered to its port with an echo reply."""

    def __init__(self, node: Node, port: int = 9):
        self.node = node
        self.port = port
        self.replies = 0
        node.echo = self

    def respond(self, pckt: Packet):
        network = self.node.network
        reply = pckt.reply(network.new_uid(), network.now())
        # send adds the tunnel overhead back
        reply.size -= network.ipsec_overhead
        self.replies += 1
        network.send(self.node, reply)
