from __future__ import annotations

import enum
import random
import time
from dataclasses import dataclass, field
from typing import Callable

from common import (
    RetryPolicy,
    RpcError,
    WalletClient,
    btc,
    log,
    mine_to_address,
    mine_to_wallet,
)
from wallet_health.lifecycle import BOOTSTRAP_BLOCKS, MINER_WALLET, ensure_wallet


class FundingOutcome(enum.Enum):
    FUNDED = "funded"
    PARTIAL = "partial"
    UNFUNDED = "unfunded"


@dataclass(frozen=True)
class FundingSettings:
    threshold: float = 5.0
    mine_blocks: int = 50
    miner_transfer: float = 5.0
    miner_safety_margin: float = 10.0
    poll: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class FundingReport:
    wallet: str
    threshold: float
    outcome: FundingOutcome
    balance: float
    strategy: str | None
    history: list[float]


@dataclass
class FundingAttempt:
    """State shared by the funding strategies for one wallet."""

    wallet: WalletClient
    settings: FundingSettings
    rng: random.Random
    sleep: Callable[[float], None]
    history: list[float] = field(default_factory=list)
    address: str | None = None

    @property
    def threshold(self) -> float:
        return self.settings.threshold

    def read_balance(self) -> float:
        balance = self.wallet.balance()
        self.history.append(balance)
        return balance

    def receive_address(self) -> str:
        if self.address is None:
            self.address = self.wallet.new_address()
        return self.address

    def classify(self, balance: float) -> FundingOutcome:
        if balance >= self.threshold:
            return FundingOutcome.FUNDED
        if balance > 0:
            return FundingOutcome.PARTIAL
        return FundingOutcome.UNFUNDED

    def poll_balance(self) -> float:
        policy = self.settings.poll
        balance = self.history[-1] if self.history else 0.0
        for _ in range(max(1, policy.attempts)):
            self.sleep(policy.delay_for(self.rng))
            balance = self.read_balance()
            if balance >= self.threshold:
                break
        return balance


def existing_balance(attempt: FundingAttempt) -> FundingOutcome:
    balance = attempt.read_balance()
    log(f"{attempt.wallet.name} balance {balance} BTC")
    return attempt.classify(balance)


def block_rewards(attempt: FundingAttempt) -> FundingOutcome:
    address = attempt.receive_address()
    blocks = attempt.settings.mine_blocks
    log(f"mining {blocks} blocks to {address[:20]}...")
    mine_to_address(attempt.wallet.node, address, blocks=blocks)
    return attempt.classify(attempt.poll_balance())


def miner_transfer(attempt: FundingAttempt) -> FundingOutcome:
    settings = attempt.settings
    miner = ensure_wallet(attempt.wallet.node, MINER_WALLET)
    miner_balance = miner.balance()
    log(f"miner balance {miner_balance} BTC")
    if miner_balance <= settings.miner_safety_margin:
        log(f"miner below {settings.miner_safety_margin} BTC, mining {BOOTSTRAP_BLOCKS} blocks to it")
        mine_to_wallet(miner, blocks=BOOTSTRAP_BLOCKS)
        miner_balance = miner.balance()
    if miner_balance <= settings.miner_safety_margin:
        log(f"WARNING: miner still holds only {miner_balance} BTC, not transferring")
        return attempt.classify(attempt.history[-1] if attempt.history else 0.0)

    address = attempt.receive_address()
    miner.cli(["sendtoaddress", address, btc(settings.miner_transfer)])
    mine_to_address(attempt.wallet.node, address, blocks=1)
    log(f"sent {settings.miner_transfer} BTC from miner to {attempt.wallet.name}")
    return attempt.classify(attempt.poll_balance())


FundingStrategy = Callable[[FundingAttempt], FundingOutcome]

FUNDING_STRATEGIES: tuple[tuple[str, FundingStrategy], ...] = (
    ("existing balance", existing_balance),
    ("block rewards", block_rewards),
    ("miner transfer", miner_transfer),
)


def fund_wallet(
    wallet: WalletClient,
    settings: FundingSettings | None = None,
    *,
    rng: random.Random | None = None,
    sleep: Callable[[float], None] = time.sleep,
    strategies: tuple[tuple[str, FundingStrategy], ...] = FUNDING_STRATEGIES,
) -> FundingReport:
    """Bring ``wallet`` up to the funding threshold on a best-effort basis.

    Strategies run in order until one reports FUNDED. Gateway errors inside a
    strategy are logged and the next strategy is tried; a wallet that ends
    below the threshold is reported, never raised.
    """
    attempt = FundingAttempt(
        wallet=wallet,
        settings=settings or FundingSettings(),
        rng=rng or random.Random(),
        sleep=sleep,
    )
    outcome = FundingOutcome.UNFUNDED
    used: str | None = None
    for name, strategy in strategies:
        try:
            outcome = strategy(attempt)
        except RpcError as exc:
            log(f"WARNING: funding via {name} failed for {wallet.name}: {exc}")
            continue
        used = name
        if outcome is FundingOutcome.FUNDED:
            break

    try:
        balance = attempt.read_balance()
    except RpcError as exc:
        log(f"WARNING: could not read final balance of {wallet.name}: {exc}")
        balance = attempt.history[-1] if attempt.history else 0.0
    outcome = attempt.classify(balance)

    if outcome is FundingOutcome.FUNDED:
        log(f"{wallet.name} funded with {balance} BTC")
    else:
        log(
            f"WARNING: {wallet.name} holds {balance} BTC, below {attempt.threshold} BTC; continuing"
        )
    return FundingReport(
        wallet=wallet.name,
        threshold=attempt.threshold,
        outcome=outcome,
        balance=balance,
        strategy=used,
        history=list(attempt.history),
    )
