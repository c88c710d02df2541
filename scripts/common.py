#!/usr/bin/env python3
from __future__ import annotations

import json
import os
import random
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any


RPC_WALLET_INSUFFICIENT_FUNDS = -6
RPC_WALLET_ERROR = -4
RPC_WALLET_NOT_FOUND = -18
RPC_WALLET_ALREADY_LOADED = -35

SATS_PER_BTC = 100_000_000

_ERROR_CODE_RE = re.compile(r"error code:\s*(-?\d+)")
_ERROR_MESSAGE_RE = re.compile(r"error message:\s*(.*)", re.DOTALL)
_UNREACHABLE_MARKERS = ("Could not connect to the server", "couldn't connect to server")


def log(msg: str) -> None:
    print(f"[wallet-health] {msg}", flush=True)


def run(
    cmd: list[str],
    *,
    capture: bool = True,
    check: bool = True,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        cmd,
        check=check,
        text=True,
        capture_output=capture,
        env=env,
    )


class RpcError(RuntimeError):
    """A command reached the node and the node answered with an error."""

    def __init__(self, method: str, code: int | None, message: str) -> None:
        super().__init__(f"{method} failed (code {code}): {message}")
        self.method = method
        self.code = code
        self.message = message


class NodeUnreachable(RuntimeError):
    pass


def rpc_error_from_stderr(method: str, stderr: str) -> Exception:
    text = (stderr or "").strip()
    if any(marker in text for marker in _UNREACHABLE_MARKERS):
        return NodeUnreachable(text)
    code_match = _ERROR_CODE_RE.search(text)
    msg_match = _ERROR_MESSAGE_RE.search(text)
    code = int(code_match.group(1)) if code_match else None
    message = msg_match.group(1).strip() if msg_match else text
    return RpcError(method, code, message)


@dataclass(frozen=True)
class NodeConfig:
    host: str
    port: int
    rpc_user: str
    rpc_pass: str
    datadir: Path | None = None
    cli_binary: str = "bitcoin-cli"

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


def make_config() -> NodeConfig:
    datadir = os.environ.get("BITCOIN_DATADIR")
    return NodeConfig(
        host=os.environ.get("BITCOIN_RPC_HOST", "localhost"),
        port=int(os.environ.get("BITCOIN_RPC_PORT", "18443")),
        rpc_user=os.environ.get("BITCOIN_RPC_USER", "rpcuser"),
        rpc_pass=os.environ.get("BITCOIN_RPC_PASSWORD", "rpcpass"),
        datadir=Path(datadir) if datadir else None,
        cli_binary=os.environ.get("BITCOIN_CLI", "bitcoin-cli"),
    )


@dataclass
class BitcoinCli:
    cfg: NodeConfig

    def base_args(self, rpc_wallet: str | None = None) -> list[str]:
        base = [
            self.cfg.cli_binary,
            "-regtest",
            f"-rpcconnect={self.cfg.host}",
            f"-rpcport={self.cfg.port}",
            f"-rpcuser={self.cfg.rpc_user}",
            f"-rpcpassword={self.cfg.rpc_pass}",
        ]
        if self.cfg.datadir is not None:
            base.append(f"-datadir={self.cfg.datadir}")
        if rpc_wallet:
            base.append(f"-rpcwallet={rpc_wallet}")
        return base

    def cli(self, args: list[str], *, rpc_wallet: str | None = None) -> str:
        try:
            cp = run(self.base_args(rpc_wallet) + args, capture=True)
        except FileNotFoundError as exc:
            raise NodeUnreachable(f"{self.cfg.cli_binary} not found on PATH") from exc
        except subprocess.CalledProcessError as exc:
            raise rpc_error_from_stderr(args[0], exc.stderr) from exc
        return cp.stdout.strip()

    def cli_json(self, args: list[str], *, rpc_wallet: str | None = None) -> Any:
        out = self.cli(args, rpc_wallet=rpc_wallet)
        if not out:
            return None
        return json.loads(out)

    def wallet(self, name: str) -> WalletClient:
        return WalletClient(node=self, name=name)


@dataclass(frozen=True)
class WalletClient:
    """Commands scoped to one named wallet on the node."""

    node: BitcoinCli
    name: str

    def cli(self, args: list[str]) -> str:
        return self.node.cli(args, rpc_wallet=self.name)

    def cli_json(self, args: list[str]) -> Any:
        return self.node.cli_json(args, rpc_wallet=self.name)

    def balance(self) -> float:
        return float(self.cli_json(["getbalance"]))

    def new_address(self) -> str:
        return self.cli(["getnewaddress", "", "bech32"])


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    delay: float = 2.0
    jitter: float = 0.0
    max_delay: float = 5.0

    def delay_for(self, rng: random.Random | None = None) -> float:
        wait = self.delay
        if self.jitter > 0 and rng is not None:
            wait += rng.uniform(0, self.jitter)
        return min(wait, self.max_delay)


def btc(amount: float) -> str:
    return f"{amount:.8f}"


def sat_to_btc(sats: int) -> float:
    return round(sats / SATS_PER_BTC, 8)


def bool_arg(value: bool) -> str:
    return "true" if value else "false"


def mine_to_wallet(wallet: WalletClient, *, blocks: int) -> str:
    mine_addr = wallet.new_address()
    mine_to_address(wallet.node, mine_addr, blocks=blocks)
    return mine_addr


def mine_to_address(node: BitcoinCli, address: str, *, blocks: int) -> list[str]:
    return node.cli_json(["generatetoaddress", str(blocks), address]) or []
