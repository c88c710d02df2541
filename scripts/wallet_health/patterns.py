from __future__ import annotations

import json
import random
import time
from dataclasses import dataclass, field
from typing import Callable

from common import RpcError, WalletClient, btc, log, mine_to_wallet, sat_to_btc
from wallet_health.keys import Signer

DEFAULT_MIN_BALANCE = 1.0
MINIMAL_PAYMENTS = 3
MINIMAL_AMOUNT_RANGE = (0.01, 0.06)

REUSED_PAYMENTS = 8
REUSED_AMOUNT = 0.5
ROUND_AMOUNTS = (1.0, 2.0, 5.0)
BAD_PRIVACY_MIN_BALANCE = 5.0

DUST_OUTPUTS = 15
DUST_SATS = 1_000
HIGH_FEE_SENDS = 5
HIGH_FEE_AMOUNT = 0.001
SCATTERED_SENDS = 10
SCATTERED_AMOUNT_RANGE = (0.001, 0.101)

FRESH_PAYMENTS = 8
FRESH_AMOUNT_RANGE = (0.01, 0.11)
PACING_RANGE = (0.1, 0.6)

EFFICIENT_SENDS = 5
EFFICIENT_AMOUNT_RANGE = (0.02, 0.12)
BATCH_OUTPUTS = 3
BATCH_AMOUNT_RANGE = (0.01, 0.06)
CONSOLIDATION_SENDS = 2
CONSOLIDATION_AMOUNT_RANGE = (0.2, 0.3)


@dataclass
class Payment:
    address: str
    amount: float
    txid: str | None


@dataclass
class PatternRun:
    """Spends issued by one pattern generator from the coordinator wallet."""

    name: str
    coordinator: WalletClient
    rng: random.Random
    sleep: Callable[[float], None]
    payments: list[Payment] = field(default_factory=list)
    batches: list[dict[str, float]] = field(default_factory=list)
    degraded: bool = False

    def amount(self, bounds: tuple[float, float]) -> float:
        low, high = bounds
        return round(self.rng.uniform(low, high), 8)

    def pay(self, address: str, amount: float) -> bool:
        try:
            txid = self.coordinator.cli(["sendtoaddress", address, btc(amount)])
        except RpcError as exc:
            log(f"WARNING: {self.name}: payment of {amount} BTC failed: {exc}")
            self.payments.append(Payment(address=address, amount=amount, txid=None))
            return False
        self.payments.append(Payment(address=address, amount=amount, txid=txid))
        return True

    def pay_fresh(self, amount: float) -> bool:
        return self.pay(self.coordinator.new_address(), amount)

    def send_batch(self, outputs: dict[str, float]) -> bool:
        self.batches.append(dict(outputs))
        try:
            self.coordinator.cli(
                ["sendmany", "", json.dumps({addr: btc(v) for addr, v in outputs.items()})]
            )
        except RpcError as exc:
            log(f"WARNING: {self.name}: batch of {len(outputs)} outputs failed: {exc}")
            return False
        return True

    @property
    def sent(self) -> list[Payment]:
        return [p for p in self.payments if p.txid is not None]


def has_balance(run: PatternRun, minimum: float) -> bool:
    balance = run.coordinator.balance()
    log(f"{run.name}: coordinator balance {balance} BTC")
    if balance >= minimum:
        return True
    log(f"WARNING: {run.name}: balance below {minimum} BTC, creating minimal transactions")
    run.degraded = True
    return False


def minimal_payments(run: PatternRun) -> None:
    for idx in range(MINIMAL_PAYMENTS):
        amount = run.amount(MINIMAL_AMOUNT_RANGE)
        if run.pay_fresh(amount):
            log(f"  small transaction {idx + 1}/{MINIMAL_PAYMENTS}: {amount} BTC")


def confirm(run: PatternRun, blocks: int) -> None:
    mine_to_wallet(run.coordinator, blocks=blocks)
    log(f"{run.name}: mined {blocks} confirmation blocks")


def bad_privacy(run: PatternRun) -> None:
    if not has_balance(run, BAD_PRIVACY_MIN_BALANCE):
        minimal_payments(run)
        confirm(run, 3)
        return

    reused = run.coordinator.new_address()
    log("reusing one address for repeated payments")
    for idx in range(REUSED_PAYMENTS):
        if not run.pay(reused, REUSED_AMOUNT):
            break
        log(f"  payment {idx + 1}/{REUSED_PAYMENTS} to the same address")

    log("sending round amounts")
    for amount in ROUND_AMOUNTS:
        if not run.pay_fresh(amount):
            break
        log(f"  sent {amount} BTC (round number)")
    confirm(run, 3)


def bad_waste(run: PatternRun) -> None:
    if not has_balance(run, DEFAULT_MIN_BALANCE):
        minimal_payments(run)
        confirm(run, 3)
        return

    dust = {run.coordinator.new_address(): sat_to_btc(DUST_SATS) for _ in range(DUST_OUTPUTS)}
    if run.send_batch(dust):
        log(f"  created {DUST_OUTPUTS} dust outputs ({DUST_SATS} sats each)")

    for idx in range(HIGH_FEE_SENDS):
        if not run.pay_fresh(HIGH_FEE_AMOUNT):
            break
        log(f"  high fee ratio send {idx + 1}/{HIGH_FEE_SENDS}")

    for idx in range(SCATTERED_SENDS):
        amount = run.amount(SCATTERED_AMOUNT_RANGE)
        if not run.pay_fresh(amount):
            break
        log(f"  scattered send {idx + 1}/{SCATTERED_SENDS}: {amount} BTC")
    confirm(run, 3)


def good_privacy(run: PatternRun) -> None:
    if not has_balance(run, DEFAULT_MIN_BALANCE):
        minimal_payments(run)
        confirm(run, 2)
        return

    log("using a fresh address for every payment")
    for idx in range(FRESH_PAYMENTS):
        amount = run.amount(FRESH_AMOUNT_RANGE)
        if not run.pay_fresh(amount):
            break
        log(f"  fresh address payment {idx + 1}/{FRESH_PAYMENTS}: {amount} BTC")
        run.sleep(run.rng.uniform(*PACING_RANGE))
    confirm(run, 2)


def good_waste(run: PatternRun) -> None:
    if not has_balance(run, DEFAULT_MIN_BALANCE):
        minimal_payments(run)
        confirm(run, 2)
        return

    for idx in range(EFFICIENT_SENDS):
        amount = run.amount(EFFICIENT_AMOUNT_RANGE)
        if not run.pay_fresh(amount):
            break
        log(f"  well-sized payment {idx + 1}/{EFFICIENT_SENDS}: {amount} BTC")

    batch = {run.coordinator.new_address(): run.amount(BATCH_AMOUNT_RANGE) for _ in range(BATCH_OUTPUTS)}
    if run.send_batch(batch):
        log(f"  batched {BATCH_OUTPUTS} payments in one transaction")

    for idx in range(CONSOLIDATION_SENDS):
        amount = run.amount(CONSOLIDATION_AMOUNT_RANGE)
        if not run.pay_fresh(amount):
            break
        log(f"  consolidation send {idx + 1}/{CONSOLIDATION_SENDS}: {amount} BTC")
    confirm(run, 2)


PATTERNS: dict[str, Callable[[PatternRun], None]] = {
    "bad_privacy": bad_privacy,
    "bad_waste": bad_waste,
    "good_privacy": good_privacy,
    "good_waste": good_waste,
}


def run_pattern(
    scenario: str,
    signers: list[Signer],
    *,
    rng: random.Random | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PatternRun:
    run = PatternRun(
        name=scenario,
        coordinator=signers[0].wallet,
        rng=rng or random.Random(),
        sleep=sleep,
    )
    log(f"creating {scenario.replace('_', ' ')} transaction pattern")
    PATTERNS[scenario](run)
    log(f"{scenario}: {len(run.sent)} payments, {len(run.batches)} batches")
    return run
