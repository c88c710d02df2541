from __future__ import annotations

import json
import math
from dataclasses import dataclass, field

from common import (
    BitcoinCli,
    RpcError,
    WalletClient,
    btc,
    log,
    mine_to_wallet,
)
from wallet_health.keys import Signer
from wallet_health.lifecycle import ensure_wallet, watcher_wallet_name

REQUIRED_SIGNERS = 2
ADDRESS_COUNT = 4
DESCRIPTOR_RANGE = (0, 1000)

FULL_FUNDING_AMOUNT = 2.0
FULL_FUNDING_MIN_BALANCE = 8.0
MIN_FUNDING_BALANCE = 0.1
FUNDING_FEE_RESERVE = 0.2
MIN_REDUCED_AMOUNT = 0.05
FUNDING_CONFIRMATIONS = 6


@dataclass(frozen=True)
class MultisigAddress:
    address: str
    pubkeys: tuple[str, ...]
    threshold: int
    total: int


@dataclass
class MultisigSetup:
    addresses: list[MultisigAddress]
    watcher: WalletClient
    descriptor: str | None
    funded: dict[str, float] = field(default_factory=dict)


def origin_key(signer: Signer) -> str:
    path = signer.bip32_path.removeprefix("m/").replace("'", "h")
    return f"[{signer.xfp}/{path}]{signer.xpub}/0/*"


def watcher_descriptor(signers: list[Signer], threshold: int) -> str:
    ordered = sorted(signers, key=lambda s: s.xpub)
    keys = ",".join(origin_key(s) for s in ordered)
    return f"wsh(sortedmulti({threshold},{keys}))"


def build_multisig_addresses(
    node: BitcoinCli,
    signers: list[Signer],
    *,
    count: int = ADDRESS_COUNT,
    threshold: int = REQUIRED_SIGNERS,
) -> list[MultisigAddress]:
    if len(signers) < threshold:
        raise ValueError(f"{len(signers)} signers cannot satisfy a {threshold}-of-n quorum")

    addresses: list[MultisigAddress] = []
    for idx in range(count):
        pubkeys = []
        for signer in signers:
            addr = signer.wallet.new_address()
            info = signer.wallet.cli_json(["getaddressinfo", addr])
            pubkeys.append(info["pubkey"])
        result = node.cli_json(
            ["createmultisig", str(threshold), json.dumps(pubkeys), "bech32"]
        )
        addresses.append(
            MultisigAddress(
                address=result["address"],
                pubkeys=tuple(pubkeys),
                threshold=threshold,
                total=len(signers),
            )
        )
        log(f"multisig address {idx + 1}/{count}: {result['address'][:20]}...")
    return addresses


def import_watcher_descriptor(
    watcher: WalletClient,
    signers: list[Signer],
    threshold: int,
) -> str | None:
    desc = watcher_descriptor(signers, threshold)
    try:
        info = watcher.node.cli_json(["getdescriptorinfo", desc])
        request = [
            {
                "desc": f"{desc}#{info['checksum']}",
                "active": True,
                "range": list(DESCRIPTOR_RANGE),
                "timestamp": "now",
            }
        ]
        result = watcher.cli_json(["importdescriptors", json.dumps(request)])
    except RpcError as exc:
        log(f"WARNING: descriptor import failed for {watcher.name}: {exc}")
        return None

    failed = [r for r in result or [] if not r.get("success")]
    if failed:
        log(f"WARNING: descriptor import rejected for {watcher.name}: {failed[0].get('error')}")
        return None
    log(f"imported multisig descriptor into {watcher.name}")
    return request[0]["desc"]


def create_watcher_wallet(
    node: BitcoinCli,
    scenario: str,
    signers: list[Signer],
    threshold: int = REQUIRED_SIGNERS,
) -> tuple[WalletClient, str | None]:
    watcher = ensure_wallet(node, watcher_wallet_name(scenario), watch_only=True)
    return watcher, import_watcher_descriptor(watcher, signers, threshold)


def funding_amount(balance: float, count: int) -> float:
    if balance < MIN_FUNDING_BALANCE or count == 0:
        return 0.0
    if balance >= FULL_FUNDING_MIN_BALANCE:
        return FULL_FUNDING_AMOUNT
    per_address = max(MIN_REDUCED_AMOUNT, (balance - FUNDING_FEE_RESERVE) / count)
    return math.floor(per_address * 100) / 100


def fund_multisig_addresses(
    coordinator: WalletClient,
    addresses: list[MultisigAddress],
) -> dict[str, float]:
    funded = {a.address: 0.0 for a in addresses}
    balance = coordinator.balance()
    amount = funding_amount(balance, len(addresses))
    log(f"coordinator {coordinator.name} balance {balance} BTC")
    if amount <= 0:
        log("WARNING: no balance available, multisig addresses left unfunded")
        return funded
    if amount < FULL_FUNDING_AMOUNT:
        log(f"WARNING: balance too low for full funding, sending {amount} BTC per address")

    for multisig in addresses:
        try:
            coordinator.cli(["sendtoaddress", multisig.address, btc(amount)])
        except RpcError as exc:
            log(f"WARNING: funding {multisig.address[:20]} failed: {exc}")
            break
        funded[multisig.address] = amount
        log(f"sent {amount} BTC to {multisig.address[:20]}...")

    mine_to_wallet(coordinator, blocks=FUNDING_CONFIRMATIONS)
    return funded


def assemble_multisig(
    node: BitcoinCli,
    scenario: str,
    signers: list[Signer],
    *,
    count: int = ADDRESS_COUNT,
    threshold: int = REQUIRED_SIGNERS,
) -> MultisigSetup:
    log(f"creating {threshold}-of-{len(signers)} multisig for {scenario}")
    addresses = build_multisig_addresses(node, signers, count=count, threshold=threshold)
    watcher, descriptor = create_watcher_wallet(node, scenario, signers, threshold)
    funded = fund_multisig_addresses(signers[0].wallet, addresses)
    return MultisigSetup(
        addresses=addresses,
        watcher=watcher,
        descriptor=descriptor,
        funded=funded,
    )
