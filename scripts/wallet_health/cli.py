#!/usr/bin/env python3
"""
Generate multisig wallet-health fixtures against a regtest bitcoin node.

Creates, for every scenario, two signer wallets, a watch-only watcher
wallet, funded 2-of-2 P2WSH addresses and a characteristic transaction
history, then writes `<out-dir>/<scenario>_caravan.json` for import into a
wallet coordinator. Scenarios whose fixture file exists are skipped.
"""
from __future__ import annotations

import argparse
import os
from pathlib import Path
import sys
import time

# scripts/wallet_health/ → scripts/
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from common import NodeUnreachable, RetryPolicy, RpcError, BitcoinCli, log, make_config
from wallet_health.fixtures import SCENARIOS, FixtureGenerator, GeneratorSettings, ScenarioResult
from wallet_health.funding import FundingSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate multisig wallet-health fixtures on a regtest node."
    )
    parser.add_argument(
        "--out-dir",
        default=os.environ.get("FIXTURE_DIR", "tmp"),
        help="Directory for <scenario>_caravan.json files (default: tmp).",
    )
    parser.add_argument(
        "--only",
        action="append",
        choices=SCENARIOS,
        help="Generate only this scenario; may be repeated.",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=int(os.environ["FIXTURE_SEED"]) if os.environ.get("FIXTURE_SEED") else None,
        help="Seed for amounts and pacing (default: random).",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Regenerate scenarios even when their fixture file exists.",
    )
    parser.add_argument(
        "--unload-first",
        action="store_true",
        help="Unload scenario wallets before generating.",
    )
    parser.add_argument(
        "--funding-threshold",
        type=float,
        default=5.0,
        help="Balance each signer wallet should reach, in BTC.",
    )
    parser.add_argument(
        "--poll-attempts",
        type=int,
        default=3,
        help="Balance polls after each funding step.",
    )
    parser.add_argument(
        "--poll-delay",
        type=float,
        default=2.0,
        help="Seconds to wait before each balance poll.",
    )
    parser.add_argument(
        "--poll-jitter",
        type=float,
        default=0.0,
        help="Extra random seconds added to each poll wait (default: 0).",
    )
    parser.add_argument(
        "--poll-max-delay",
        type=float,
        default=5.0,
        help="Upper bound on a single poll wait, jitter included.",
    )
    parser.add_argument(
        "--connect-attempts",
        type=int,
        default=5,
        help="getblockchaininfo attempts before giving up on the node.",
    )
    parser.add_argument(
        "--connect-delay",
        type=float,
        default=1.0,
        help="Seconds between connection attempts.",
    )
    return parser.parse_args(argv)


def print_summary(results: list[ScenarioResult]) -> None:
    print()
    print("Wallet Health Fixtures")
    print("=" * 90)
    print(f"{'scenario':<16} {'status':<10} {'fixture'}")
    print("-" * 90)
    for r in results:
        print(f"{r.name:<16} {r.status:<10} {r.path}")
    print("-" * 90)


def build_settings(args: argparse.Namespace) -> GeneratorSettings:
    poll = RetryPolicy(
        attempts=args.poll_attempts,
        delay=args.poll_delay,
        jitter=args.poll_jitter,
        max_delay=args.poll_max_delay,
    )
    return GeneratorSettings(
        out_dir=Path(args.out_dir),
        seed=args.seed,
        force=args.force,
        unload_first=args.unload_first,
        funding=FundingSettings(threshold=args.funding_threshold, poll=poll),
        connect=RetryPolicy(attempts=args.connect_attempts, delay=args.connect_delay),
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = make_config()
    generator = FixtureGenerator(node=BitcoinCli(cfg), settings=build_settings(args))

    start = time.monotonic()
    try:
        results = generator.run_all(args.only or SCENARIOS)
    except NodeUnreachable as exc:
        log(f"ERROR: {exc}")
        log("make sure bitcoind is running in regtest mode with RPC enabled")
        return 1
    except RpcError as exc:
        log(f"ERROR: unexpected node error, wallet state left as-is: {exc}")
        return 1
    except KeyboardInterrupt:
        log("interrupted, wallet state left as-is; rerun to resume")
        return 130

    print_summary(results)
    log(f"total time: {time.monotonic() - start:.2f} seconds")
    return 0


if __name__ == "__main__":
    sys.exit(main())
