from __future__ import annotations

import json
import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from common import BitcoinCli, NodeConfig, RetryPolicy, log
from wallet_health.funding import FundingReport, FundingSettings, fund_wallet
from wallet_health.keys import Signer, extract_keys
from wallet_health.lifecycle import (
    SIGNERS_PER_SCENARIO,
    check_connectivity,
    ensure_wallet,
    prepare_chain,
    signer_wallet_name,
    unload_scenario_wallets,
    watcher_wallet_name,
)
from wallet_health.multisig import ADDRESS_COUNT, REQUIRED_SIGNERS, MultisigSetup, assemble_multisig
from wallet_health.patterns import PatternRun, run_pattern

SCENARIOS = ("bad_privacy", "bad_waste", "good_privacy", "good_waste")


def fixture_path(out_dir: Path, scenario: str) -> Path:
    return Path(out_dir) / f"{scenario}_caravan.json"


def build_fixture_document(
    scenario: str,
    signers: list[Signer],
    cfg: NodeConfig,
    *,
    required: int = REQUIRED_SIGNERS,
) -> dict[str, Any]:
    total = len(signers)
    return {
        "name": f"{scenario.replace('_', ' ', 1)} Multisig ({required}-of-{total})",
        "addressType": "P2WSH",
        "network": "regtest",
        "quorum": {
            "requiredSigners": required,
            "totalSigners": total,
        },
        "extendedPublicKeys": [
            {
                "name": s.display_name,
                "xpub": s.xpub,
                "bip32Path": s.bip32_path,
                "xfp": s.xfp,
                "method": "text",
            }
            for s in signers
        ],
        "client": {
            "type": "private",
            "url": cfg.url,
            "username": cfg.rpc_user,
            "password": cfg.rpc_pass,
            "walletName": watcher_wallet_name(scenario),
        },
        "placeholderKeys": any(s.keys.placeholder for s in signers),
    }


def write_fixture(path: Path, document: dict[str, Any], *, overwrite: bool = False) -> bool:
    if path.exists() and not overwrite:
        log(f"fixture {path} already exists, leaving it untouched")
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(document, indent=2), encoding="utf-8")
    log(f"fixture saved: {path}")
    return True


@dataclass
class ScenarioResult:
    name: str
    path: Path
    status: str
    funding: list[FundingReport] = field(default_factory=list)
    multisig: MultisigSetup | None = None
    pattern: PatternRun | None = None


@dataclass
class GeneratorSettings:
    out_dir: Path = Path("tmp")
    seed: int | None = None
    address_count: int = ADDRESS_COUNT
    force: bool = False
    unload_first: bool = False
    funding: FundingSettings = field(default_factory=FundingSettings)
    connect: RetryPolicy = field(default_factory=lambda: RetryPolicy(attempts=5, delay=1.0))
    sleep: Callable[[float], None] = time.sleep


@dataclass
class FixtureGenerator:
    node: BitcoinCli
    settings: GeneratorSettings = field(default_factory=GeneratorSettings)
    rng: random.Random = field(init=False)

    def __post_init__(self) -> None:
        self.rng = random.Random(self.settings.seed)

    def path_for(self, scenario: str) -> Path:
        return fixture_path(self.settings.out_dir, scenario)

    def create_signers(self, scenario: str) -> tuple[list[Signer], list[FundingReport]]:
        signers: list[Signer] = []
        reports: list[FundingReport] = []
        for idx in range(SIGNERS_PER_SCENARIO):
            name = signer_wallet_name(scenario, idx)
            log(f"setting up {name}")
            wallet = ensure_wallet(self.node, name)
            reports.append(
                fund_wallet(
                    wallet,
                    self.settings.funding,
                    rng=self.rng,
                    sleep=self.settings.sleep,
                )
            )
            signers.append(Signer(wallet=wallet, keys=extract_keys(wallet, idx)))
            log(f"{name} ready")
        return signers, reports

    def run_scenario(self, scenario: str) -> ScenarioResult:
        if scenario not in SCENARIOS:
            raise ValueError(f"unknown scenario {scenario!r}, expected one of {SCENARIOS}")
        log(f"=== generating {scenario} wallet ===")
        signers, reports = self.create_signers(scenario)
        multisig = assemble_multisig(
            self.node,
            scenario,
            signers,
            count=self.settings.address_count,
        )
        pattern = run_pattern(scenario, signers, rng=self.rng, sleep=self.settings.sleep)
        path = self.path_for(scenario)
        document = build_fixture_document(scenario, signers, self.node.cfg)
        written = write_fixture(path, document, overwrite=self.settings.force)
        log(f"{scenario} wallet complete")
        return ScenarioResult(
            name=scenario,
            path=path,
            status="generated" if written else "kept",
            funding=reports,
            multisig=multisig,
            pattern=pattern,
        )

    def run_all(self, scenarios: Iterable[str] = SCENARIOS) -> list[ScenarioResult]:
        """Generate every scenario whose fixture file does not exist yet.

        Connectivity is checked first and is fatal. The chain is only
        bootstrapped (and wallets only unloaded) when there is work to do.
        """
        scenarios = list(dict.fromkeys(scenarios))
        check_connectivity(self.node, self.settings.connect, sleep=self.settings.sleep)

        results: list[ScenarioResult] = []
        pending: list[str] = []
        for scenario in scenarios:
            path = self.path_for(scenario)
            if path.exists() and not self.settings.force:
                log(f"{scenario} fixture already exists, skipping")
                results.append(ScenarioResult(name=scenario, path=path, status="skipped"))
            else:
                pending.append(scenario)

        if not pending:
            log("all requested scenarios already generated")
            return results

        if self.settings.unload_first:
            unload_scenario_wallets(self.node, pending)
        prepare_chain(self.node)

        for scenario in pending:
            path = self.path_for(scenario)
            if path.exists() and not self.settings.force:
                log(f"{scenario} fixture appeared during this run, skipping")
                results.append(ScenarioResult(name=scenario, path=path, status="skipped"))
                continue
            results.append(self.run_scenario(scenario))
        order = {name: idx for idx, name in enumerate(scenarios)}
        results.sort(key=lambda r: order[r.name])
        return results
