"""
scheduler.py holds the queue disciplines that sit on the egress side of an
interface and decide which waiting packet is transmitted next.

A PriorityQueueDisc keeps one bounded FIFO per class. Class 0 is the highest
priority. Dequeue always serves the lowest-numbered class that is not empty,
so a lower class waits for as long as a higher one has traffic. A full class
drops the arriving packet (tail drop) without disturbing the other classes.

FifoQueueDisc is the single-class discipline interfaces get when priority
queuing is not configured.
"""
import logging
from collections import deque
from enum import IntEnum
from typing import Deque, Dict, List, Optional

from wanqos.errors import ConfigurationError

logger = logging.getLogger(__name__)


# DSCP code points used by the traffic in this package
class DSCP(IntEnum):
    BE = 0
    AF11 = 10
    AF21 = 18
    AF31 = 26
    AF41 = 34
    CS5 = 40
    EF = 46
    CS6 = 48


# QueueClass is one bounded FIFO of pending packets
class QueueClass:
    def __init__(self, priority: int, capacity: int):
        if capacity < 1:
            raise ConfigurationError(f"queue class capacity must be at least 1, got {capacity}")
        self.priority = priority
        self.capacity = capacity
        self.packets: Deque = deque()
        self.enqueued = 0
        self.dequeued = 0
        self.drops = 0

    def __len__(self):
        return len(self.packets)

    def full(self) -> bool:
        return len(self.packets) >= self.capacity

    def enqueue(self, packet) -> bool:
        if self.full():
            self.drops += 1
            return False
        self.packets.append(packet)
        self.enqueued += 1
        return True

    def dequeue(self):
        if not self.packets:
            return None
        self.dequeued += 1
        return self.packets.popleft()

    def head(self):
        return self.packets[0] if self.packets else None


class PriorityQueueDisc:
    """
    PriorityQueueDisc is a strict priority scheduler over a fixed number of
    bands. A packet's band is found by looking its DSCP up in priomap; DSCP
    values the map does not name go to default_band (the last band unless
    given).
    """

    kind = "prio"

    def __init__(self, bands: int = 2, capacity: int = 50,
                 priomap: Optional[Dict[int, int]] = None, default_band: Optional[int] = None):
        if bands < 1:
            raise ConfigurationError(f"priority queue needs at least one band, got {bands}")
        if capacity < 1:
            raise ConfigurationError(f"priority queue capacity must be at least 1, got {capacity}")
        self.classes: List[QueueClass] = [QueueClass(band, capacity) for band in range(bands)]
        self.priomap: Dict[int, int] = dict(priomap) if priomap is not None else {int(DSCP.EF): 0}
        self.default_band = bands - 1 if default_band is None else default_band

        for dscp, band in self.priomap.items():
            if not (0 <= band < bands):
                raise ConfigurationError(f"priomap sends dscp {dscp} to band {band}, outside 0..{bands - 1}")
        if not (0 <= self.default_band < bands):
            raise ConfigurationError(f"default band {self.default_band} outside 0..{bands - 1}")

    @property
    def bands(self) -> int:
        return len(self.classes)

    def classify(self, packet) -> int:
        return self.priomap.get(packet.dscp, self.default_band)

    def enqueue(self, packet) -> bool:
        band = self.classify(packet)
        accepted = self.classes[band].enqueue(packet)
        if not accepted:
            logger.debug("tail drop of packet %d in band %d", packet.uid, band)
        return accepted

    # dequeue serves the head of the highest priority class holding anything
    def dequeue(self):
        for qc in self.classes:
            if len(qc) > 0:
                return qc.dequeue()
        return None

    def __len__(self):
        return sum(len(qc) for qc in self.classes)

    @property
    def drops(self) -> int:
        return sum(qc.drops for qc in self.classes)

    def band_counters(self) -> List[Dict[str, int]]:
        return [{"band": qc.priority, "enqueued": qc.enqueued, "dequeued": qc.dequeued, "drops": qc.drops}
                for qc in self.classes]


class FifoQueueDisc:
    kind = "fifo"

    def __init__(self, capacity: int = 100):
        self.queue = QueueClass(0, capacity)

    @property
    def bands(self) -> int:
        return 1

    def classify(self, packet) -> int:
        return 0

    def enqueue(self, packet) -> bool:
        return self.queue.enqueue(packet)

    def dequeue(self):
        return self.queue.dequeue()

    def __len__(self):
        return len(self.queue)

    @property
    def drops(self) -> int:
        return self.queue.drops

    def band_counters(self) -> List[Dict[str, int]]:
        return [{"band": 0, "enqueued": self.queue.enqueued, "dequeued": self.queue.dequeued,
                 "drops": self.queue.drops}]
