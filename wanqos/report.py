"""
report.py holds the summary of a finished run.
"""
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from wanqos.flow_stats import CategoryStats, FlowStats

logger = logging.getLogger(__name__)


def _ms(seconds: Optional[float]) -> str:
    return "n/a" if seconds is None else f"{seconds * 1000.0:.2f} ms"


@dataclass
class Report:
    name: str
    sim_time: float
    flows: List[FlowStats] = field(default_factory=list)
    categories: Dict[str, CategoryStats] = field(default_factory=dict)
    verdicts: Dict[str, str] = field(default_factory=dict)
    drops: Dict[str, int] = field(default_factory=dict)  # by drop reason, over the whole network
    admission_drops: Dict[str, int] = field(default_factory=dict)  # by node
    queue_drops: Dict[str, int] = field(default_factory=dict)  # by "node/link"
    queue_bands: Dict[str, List[Dict[str, int]]] = field(default_factory=dict)
    intercepted: Dict[str, int] = field(default_factory=dict)  # by tapped node
    generators: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    generator_errors: Dict[str, str] = field(default_factory=dict)
    link_transitions: Dict[str, List] = field(default_factory=dict)
    steering: Dict[str, List] = field(default_factory=dict)
    route_dumps: List[str] = field(default_factory=list)
    events_dispatched: int = 0

    def category(self, name: str) -> Optional[CategoryStats]:
        return self.categories.get(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "sim_time": self.sim_time,
            "flows": [
                {"flow": str(fs.key), "tx_packets": fs.tx_packets, "rx_packets": fs.rx_packets,
                 "lost_packets": fs.lost_packets, "tx_bytes": fs.tx_bytes, "rx_bytes": fs.rx_bytes,
                 "avg_delay": fs.delay_sum / fs.rx_packets if fs.rx_packets else None}
                for fs in self.flows
            ],
            "categories": {name: cs.to_dict() for name, cs in self.categories.items()},
            "verdicts": dict(self.verdicts),
            "drops": dict(self.drops),
            "admission_drops": dict(self.admission_drops),
            "queue_drops": dict(self.queue_drops),
            "queue_bands": {k: list(v) for k, v in self.queue_bands.items()},
            "intercepted": dict(self.intercepted),
            "generators": {k: dict(v) for k, v in self.generators.items()},
            "generator_errors": dict(self.generator_errors),
            "link_transitions": {k: [[t, s] for t, s in v] for k, v in self.link_transitions.items()},
            "steering": {k: [[t, str(h)] for t, h in v] for k, v in self.steering.items()},
            "route_dumps": list(self.route_dumps),
            "events_dispatched": self.events_dispatched,
        }

    def render(self) -> str:
        lines = [f"=== {self.name}: {self.sim_time:.1f}s simulated ==="]
        if self.categories:
            lines.append("")
            lines.append(f"{'category':<16}{'flows':>6}{'tx':>8}{'rx':>8}{'loss':>9}{'delay':>12}"
                         f"{'jitter':>12}{'throughput':>14}  verdict")
            for name, cs in sorted(self.categories.items()):
                verdict = self.verdicts.get(name, "-")
                lines.append(f"{name:<16}{cs.flows:>6}{cs.tx_packets:>8}{cs.rx_packets:>8}"
                             f"{cs.loss_ratio * 100.0:>8.2f}%{_ms(cs.avg_delay):>12}{_ms(cs.avg_jitter):>12}"
                             f"{cs.throughput_bps / 1e6:>9.3f} Mbps  {verdict}")
        dropped = {k: v for k, v in self.drops.items() if v}
        if dropped:
            lines.append("")
            lines.append("drops: " + ", ".join(f"{k} {v}" for k, v in dropped.items()))
        for node, n in self.admission_drops.items():
            lines.append(f"admission control at {node} denied {n} packets")
        for intrfc, n in self.queue_drops.items():
            if n:
                lines.append(f"queue at {intrfc} dropped {n} packets")
        for node, n in self.intercepted.items():
            lines.append(f"tap at {node} intercepted {n} packets")
        for link, transitions in self.link_transitions.items():
            for t, state in transitions:
                lines.append(f"link {link} {state} at {t:.3f}s")
        for node, history in self.steering.items():
            lines.append(f"{node} steered {len(history) - 1} times")
        for gen, err in self.generator_errors.items():
            lines.append(f"generator {gen} failed: {err}")
        return "\n".join(lines)

    def write_to_file(self, filename: str):
        """
        write_to_file stores the report to the file whose name is given.
        Serialization to json or to yaml is selected based on the extension of this name.
        """
        path_ext = os.path.splitext(filename)[1].lower()
        if path_ext in (".yaml", ".yml"):
            with open(filename, "w") as f:
                yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        elif path_ext == ".json":
            with open(filename, "w") as f:
                json.dump(self.to_dict(), f, indent=2)
        else:
            raise ValueError(f"unsupported report file extension: {path_ext}")
        logger.info("wrote run summary to %s", filename)
