"""
param.py holds the experiment configuration: the named options that turn
the mechanisms of a scenario on and off and set its times and rates.

An ExpCfg may leave an option as None, meaning 'whatever the scenario uses
by default'; the scenario fills those in with with_defaults before building.
Configurations are read from and written to yaml or json, selected by the
extension of the file name.
"""
import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from wanqos.errors import ConfigurationError

logger = logging.getLogger(__name__)

# _NUMERIC maps a field annotation to the conversion applied to values read for it
_NUMERIC = {float: float, Optional[float]: float, int: int, Optional[int]: int}
_FLAGS = (bool, Optional[bool])


def _to_number(convert, value):
    if isinstance(value, bool):
        raise ValueError(f"expected a number, got {value}")
    number = convert(value)
    if convert is int and isinstance(value, float) and number != value:
        raise ValueError(f"expected a whole number, got {value}")
    return number


def coerce_fields(obj, what: str):
    """
    coerce_fields converts in place the numeric fields of the dataclass instance obj,
    so that "10" or 10 read for a float field becomes 10.0, and checks that flag
    fields hold booleans. A value that cannot be converted raises ConfigurationError
    naming what and the field.
    """
    for f in dataclasses.fields(obj):
        value = getattr(obj, f.name)
        if value is None:
            continue
        try:
            if f.type in _NUMERIC:
                setattr(obj, f.name, _to_number(_NUMERIC[f.type], value))
            elif f.type == List[float]:
                if not isinstance(value, list):
                    raise ValueError(f"expected a list, got {value!r}")
                setattr(obj, f.name, [_to_number(float, v) for v in value])
            elif f.type in _FLAGS and not isinstance(value, bool):
                raise ValueError(f"expected true or false, got {value!r}")
        except (TypeError, ValueError) as err:
            raise ConfigurationError(f"{what}: bad value for {f.name}: {err}") from None
    return obj


@dataclass
class ExpCfg:
    name: str = "experiment"
    sim_time: Optional[float] = None  # seconds of virtual time to run
    failure_time: Optional[float] = None  # when the scenario's failing link goes down
    restore: bool = False  # bring the failed link back up
    restore_after: float = 10.0  # seconds between failure and restore
    dynamic: bool = False  # global shortest-path routing instead of static routes
    convergence_time: float = 1.0  # seconds global routing takes to react to a transition
    rate_limit: bool = False
    rate_limit_bps: float = 3e6  # per source
    rate_window: float = 1.0
    qos: Optional[bool] = None  # strict priority queuing on the bottleneck
    queue_capacity: int = 50  # packets per queue class
    ddos: bool = False
    attackers: int = 5
    attack_rate_bps: float = 2e6  # per attacker
    eavesdrop: bool = False
    congestion: Optional[bool] = None  # add bulk flows competing for the bottleneck
    pcap: bool = False  # write the packet event log
    ipsec: bool = False
    policy_interval: float = 5.0
    verbose: bool = False
    trace_file: Optional[str] = None
    thresholds: Dict[str, Any] = field(default_factory=dict)  # category -> verdict table

    @classmethod
    def fields(cls):
        return [f.name for f in dataclasses.fields(cls)]

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ExpCfg":
        if not isinstance(d, dict):
            raise ConfigurationError(f"experiment configuration must be a mapping, got {type(d).__name__}")
        unknown = sorted(set(d) - set(cls.fields()))
        if unknown:
            raise ConfigurationError(f"unknown experiment options: {', '.join(unknown)}")
        return coerce_fields(cls(**d), "experiment configuration")

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    # update applies overrides, ignoring those given as None
    def update(self, **overrides) -> "ExpCfg":
        unknown = sorted(set(overrides) - set(self.fields()))
        if unknown:
            raise ConfigurationError(f"unknown experiment options: {', '.join(unknown)}")
        for key, value in overrides.items():
            if value is not None:
                setattr(self, key, value)
        return self

    def with_defaults(self, defaults: Dict[str, Any]) -> "ExpCfg":
        """with_defaults returns a copy in which every option left as None takes its value from defaults."""
        cfg = dataclasses.replace(self, thresholds=dict(self.thresholds))
        for key, value in defaults.items():
            if getattr(cfg, key) is None:
                setattr(cfg, key, value)
        return cfg

    def validate(self):
        """validate raises ConfigurationError describing the first problem found."""
        coerce_fields(self, "experiment configuration")
        for key in ("sim_time", "failure_time", "restore_after", "convergence_time"):
            value = getattr(self, key)
            if value is not None and value < 0:
                raise ConfigurationError(f"{key} must not be negative, got {value}")
        if self.sim_time is not None and self.sim_time == 0:
            raise ConfigurationError("sim_time must be positive")
        if self.failure_time is not None and self.sim_time is not None and self.failure_time > self.sim_time:
            raise ConfigurationError(f"failure_time {self.failure_time} is after the end of the run at {self.sim_time}")
        for key in ("rate_limit_bps", "attack_rate_bps"):
            if getattr(self, key) < 0:
                raise ConfigurationError(f"{key} must not be negative, got {getattr(self, key)}")
        if not (self.rate_window > 0):
            raise ConfigurationError(f"rate_window must be positive, got {self.rate_window}")
        if not (self.policy_interval > 0):
            raise ConfigurationError(f"policy_interval must be positive, got {self.policy_interval}")
        if self.attackers < 0:
            raise ConfigurationError(f"attackers must not be negative, got {self.attackers}")
        if self.queue_capacity < 1:
            raise ConfigurationError(f"queue_capacity must be at least 1, got {self.queue_capacity}")
        if not isinstance(self.thresholds, dict):
            raise ConfigurationError("thresholds must map a category to a verdict table")
        return self

    def write_to_file(self, filename: str):
        """
        write_to_file stores the ExpCfg to the file whose name is given.
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
            raise ConfigurationError(f"unsupported configuration file extension {path_ext!r}")


def load_mapping(filename: str, use_yaml: Optional[bool] = None, dict_bytes: bytes = b"") -> Any:
    """
    load_mapping deserializes a byte string holding yaml or json. If the byte
    string is empty the file whose name is given is read to acquire it. When
    use_yaml is not given the extension of the file name decides.
    """
    if use_yaml is None:
        path_ext = os.path.splitext(filename)[1].lower()
        if path_ext in (".yaml", ".yml"):
            use_yaml = True
        elif path_ext == ".json":
            use_yaml = False
        else:
            raise ConfigurationError(f"unsupported configuration file extension {path_ext!r}")
    try:
        if not dict_bytes:
            with open(filename, "rb") as f:
                dict_bytes = f.read()
    except OSError as err:
        raise ConfigurationError(f"cannot read {filename}: {err}") from None

    try:
        if use_yaml:
            return yaml.safe_load(dict_bytes)
        return json.loads(dict_bytes)
    except (yaml.YAMLError, json.JSONDecodeError) as err:
        raise ConfigurationError(f"cannot parse {filename}: {err}") from None


def read_exp_cfg(filename: str, use_yaml: Optional[bool] = None, dict_bytes: bytes = b"") -> ExpCfg:
    obj = load_mapping(filename, use_yaml, dict_bytes)
    cfg = ExpCfg.from_dict(obj or {})
    logger.debug("read experiment configuration %s from %s", cfg.name, filename)
    return cfg
