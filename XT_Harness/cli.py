from __future__ import annotations

import argparse
import json
from pathlib import Path

from XT_Harness.config import HarnessConfig, config_to_dict, dump_config, ensure_directories, load_config
from XT_Harness.errors import HarnessError
from XT_Harness.fleet import plan_fleet
from XT_Harness.genesis import save_genesis
from XT_Harness.logger import setup_logger
from XT_Harness.scenario import ScenarioDriver


def _apply_overrides(cfg: HarnessConfig, args: argparse.Namespace) -> HarnessConfig:
    if getattr(args, "participants", None) is not None:
        cfg.scenario.participants = args.participants
    if getattr(args, "client_exe", None):
        cfg.nodes.client_exe = args.client_exe
    if getattr(args, "server_exe", None):
        cfg.nodes.server_exe = args.server_exe
    if getattr(args, "config_dir", None):
        cfg.nodes.config_directory = args.config_dir
    if getattr(args, "base_rpc_port", None) is not None:
        cfg.nodes.base_rpc_port = args.base_rpc_port
    if getattr(args, "p2p", False):
        cfg.nodes.p2p_mode = True
    if getattr(args, "settle_seconds", None) is not None:
        cfg.scenario.settle_seconds = args.settle_seconds
    return cfg


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="XT node fleet harness")
    parser.add_argument("--config", default="xt_harness.yaml")

    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="provision a fleet and run the round-robin transfer scenario")
    run.add_argument("--participants", type=int, default=None)
    run.add_argument("--client-exe", default=None)
    run.add_argument("--server-exe", default=None)
    run.add_argument("--config-dir", default=None)
    run.add_argument("--base-rpc-port", type=int, default=None)
    run.add_argument("--settle-seconds", type=float, default=None)
    run.add_argument("--p2p", action="store_true")

    show = sub.add_parser("show-config")
    show.add_argument("--format", choices=["json", "yaml"], default="json")

    genesis = sub.add_parser("genesis", help="write a genesis allocation and matching keys")
    genesis.add_argument("--participants", type=int, required=True)
    genesis.add_argument("--balance", type=int, default=None)
    genesis.add_argument("--output", required=True, help="directory to write genesis.json and keys.json into")

    args = parser.parse_args(argv)
    cfg = _apply_overrides(load_config(args.config), args)
    logger = setup_logger("xt_harness", level=cfg.app.log_level, log_file=cfg.app.log_file or None)

    if args.cmd == "show-config":
        if args.format == "yaml":
            print(dump_config(cfg))
        else:
            print(json.dumps(config_to_dict(cfg), indent=2))
        return 0

    if args.cmd == "genesis":
        balance = args.balance if args.balance is not None else cfg.scenario.initial_balance
        plan = plan_fleet(args.participants, balance)
        out_dir = Path(args.output)
        out_dir.mkdir(parents=True, exist_ok=True)
        genesis_path = save_genesis(plan.allocation, out_dir)
        keys = {
            "trustee": {"address": plan.delegate_key.address, "secret": plan.delegate_key.secret},
            "participants": [{"address": k.address, "secret": k.secret} for k in plan.participant_keys],
        }
        keys_path = out_dir / "keys.json"
        keys_path.write_text(json.dumps(keys, indent=2), encoding="utf-8")
        print(json.dumps({"genesis": str(genesis_path), "keys": str(keys_path), "supply": plan.allocation.supply}, indent=2))
        return 0

    if args.cmd == "run":
        try:
            ensure_directories(cfg)
            report = ScenarioDriver(cfg).run()
        except HarnessError as exc:
            logger.error("scenario_failed", extra={"extra": {"error": str(exc), "type": type(exc).__name__}})
            return 1
        print(json.dumps(report.to_dict(), indent=2))
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
