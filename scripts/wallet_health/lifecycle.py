from __future__ import annotations

import time
from typing import Any, Callable, Iterable

from common import (
    RPC_WALLET_ALREADY_LOADED,
    RPC_WALLET_NOT_FOUND,
    BitcoinCli,
    NodeUnreachable,
    RetryPolicy,
    RpcError,
    WalletClient,
    bool_arg,
    log,
    mine_to_wallet,
)

MINER_WALLET = "miner"
COINBASE_MATURITY = 100
BOOTSTRAP_BLOCKS = COINBASE_MATURITY + 1
SIGNERS_PER_SCENARIO = 2


def signer_wallet_name(scenario: str, index: int) -> str:
    return f"{scenario}_signer_{index + 1}"


def watcher_wallet_name(scenario: str) -> str:
    return f"{scenario}_watcher"


def scenario_wallet_names(scenario: str) -> list[str]:
    names = [signer_wallet_name(scenario, idx) for idx in range(SIGNERS_PER_SCENARIO)]
    names.append(watcher_wallet_name(scenario))
    return names


def loaded_wallets(node: BitcoinCli) -> list[str]:
    return node.cli_json(["listwallets"]) or []


def ensure_wallet(node: BitcoinCli, name: str, *, watch_only: bool = False) -> WalletClient:
    """Return a client bound to ``name``, loading or creating the wallet first.

    A wallet that is already loaded is reused as-is. Otherwise a load is
    attempted, and only a "wallet not found" answer leads to creation (with
    descriptor support, and without private keys when ``watch_only``). If the
    node then reports the wallet already exists, it is loaded once more and
    reused. Any other failure propagates.
    """
    if name in loaded_wallets(node):
        log(f"wallet {name} already loaded")
        return node.wallet(name)

    try:
        load_wallet(node, name)
    except RpcError as exc:
        if exc.code != RPC_WALLET_NOT_FOUND:
            raise
        try:
            # createwallet wallet_name disable_private_keys blank passphrase avoid_reuse descriptors
            node.cli(["createwallet", name, bool_arg(watch_only), "false", "", "false", "true"])
        except RpcError as create_exc:
            if "already exists" not in create_exc.message:
                raise
            log(f"wallet {name} already exists, loading it")
            load_wallet(node, name)
        else:
            kind = "watch-only wallet" if watch_only else "wallet"
            log(f"created new {kind} {name}")
    return node.wallet(name)


def load_wallet(node: BitcoinCli, name: str) -> None:
    """loadwallet, treating "already loaded" as success."""
    try:
        node.cli(["loadwallet", name])
        log(f"loaded existing wallet {name}")
    except RpcError as exc:
        if exc.code != RPC_WALLET_ALREADY_LOADED:
            raise
        log(f"wallet {name} was loaded concurrently, reusing it")


def check_connectivity(
    node: BitcoinCli,
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    policy = policy or RetryPolicy(attempts=5, delay=1.0)
    log(f"checking bitcoin node at {node.cfg.url}")
    last_error: Exception | None = None
    for attempt in range(policy.attempts):
        if attempt:
            sleep(policy.delay_for())
        try:
            info = node.cli_json(["getblockchaininfo"])
        except (NodeUnreachable, RpcError) as exc:
            last_error = exc
            continue
        log(f"node ready chain={info.get('chain')} blocks={info.get('blocks')}")
        return info
    raise NodeUnreachable(
        f"bitcoin node at {node.cfg.url} not reachable after {policy.attempts} attempts: {last_error}"
    )


def prepare_chain(node: BitcoinCli) -> WalletClient:
    """Make sure the miner wallet exists and holds matured coinbase coins."""
    info = node.cli_json(["getblockchaininfo"])
    miner = ensure_wallet(node, MINER_WALLET)
    blocks = int(info.get("blocks", 0))
    if blocks < BOOTSTRAP_BLOCKS:
        log(f"chain height {blocks} below coinbase maturity, mining {BOOTSTRAP_BLOCKS} blocks")
        mine_to_wallet(miner, blocks=BOOTSTRAP_BLOCKS)
    else:
        log(f"chain height {blocks} already past coinbase maturity")
    return miner


def unload_scenario_wallets(node: BitcoinCli, scenarios: Iterable[str]) -> list[str]:
    loaded = set(loaded_wallets(node))
    unloaded: list[str] = []
    for scenario in scenarios:
        for name in scenario_wallet_names(scenario):
            if name not in loaded:
                continue
            node.cli(["unloadwallet", name])
            unloaded.append(name)
            log(f"unloaded {name}")
    return unloaded
