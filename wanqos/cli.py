"""
cli.py runs a scenario from the command line and prints its summary.

    python -m wanqos multihop --dynamic --restore
    python -m wanqos security --ddos --attackers 3 --ratelimit
    python -m wanqos qos --no-qos --summary qos.yaml

Options given on the command line override those read with --config.
"""
import argparse
import logging
import sys
from typing import List, Optional

from wanqos.desc_topo import SCENARIOS, build_scenario, read_topo_cfg
from wanqos.errors import ConfigurationError, WanQosError
from wanqos.experiment import build_experiment_net
from wanqos.param import ExpCfg, read_exp_cfg

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wanqos",
                                     description="Simulate WAN failover, admission control and QoS scheduling.")
    parser.add_argument("scenario", choices=sorted(SCENARIOS), help="built-in scenario to run")
    parser.add_argument("--config", help="experiment configuration file (.yaml, .yml or .json)")
    parser.add_argument("--topo", help="topology description replacing the scenario's own")
    parser.add_argument("--sim-time", dest="sim_time", type=float, help="seconds of virtual time to run")
    parser.add_argument("--failure-time", dest="failure_time", type=float, help="time of the link failure")
    parser.add_argument("--restore", action="store_const", const=True, help="restore the failed link")
    parser.add_argument("--dynamic", action="store_const", const=True, help="use global routing")
    parser.add_argument("--ratelimit", dest="rate_limit", action="store_const", const=True,
                        help="rate limit each source at the router")
    parser.add_argument("--qos", dest="qos", action="store_true", default=None, help="priority queuing on")
    parser.add_argument("--no-qos", dest="qos", action="store_false", help="priority queuing off")
    parser.add_argument("--ddos", action="store_const", const=True, help="add flooding attackers")
    parser.add_argument("--attackers", type=int, help="number of attackers")
    parser.add_argument("--eavesdrop", action="store_const", const=True, help="tap the router")
    parser.add_argument("--congestion", dest="congestion", action="store_true", default=None,
                        help="add competing bulk flows")
    parser.add_argument("--no-congestion", dest="congestion", action="store_false")
    parser.add_argument("--ipsec", action="store_const", const=True, help="model ipsec overhead")
    parser.add_argument("--pcap", action="store_const", const=True, help="write the packet event log")
    parser.add_argument("--trace", dest="trace_file", help="write trace records to this file")
    parser.add_argument("--summary", help="write the run summary to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="log at debug level")
    return parser


OVERRIDES = ("sim_time", "failure_time", "restore", "dynamic", "rate_limit", "qos", "ddos", "attackers",
             "eavesdrop", "congestion", "ipsec", "pcap", "trace_file")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s %(name)s: %(message)s")
    try:
        cfg = read_exp_cfg(args.config) if args.config else ExpCfg()
        cfg.update(**{key: getattr(args, key) for key in OVERRIDES})
        if args.verbose:
            cfg.verbose = True
        topo, cfg = build_scenario(args.scenario, cfg)
        if args.topo:
            topo = read_topo_cfg(args.topo)
        exp = build_experiment_net(topo, cfg)
    except ConfigurationError as err:
        logger.error("configuration error: %s", err)
        return 2

    try:
        report = exp.run()
        print(report.render())
        if args.summary:
            report.write_to_file(args.summary)
    except (WanQosError, OSError, ValueError) as err:
        logger.error("%s", err)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
