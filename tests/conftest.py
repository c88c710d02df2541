from __future__ import annotations

import hashlib
import json
import random
from dataclasses import dataclass, field
from typing import Any

import pytest

from common import (
    RPC_WALLET_ALREADY_LOADED,
    RPC_WALLET_ERROR,
    RPC_WALLET_INSUFFICIENT_FUNDS,
    RPC_WALLET_NOT_FOUND,
    BitcoinCli,
    NodeConfig,
    NodeUnreachable,
    RpcError,
    btc,
)

WALLET_METHODS = {
    "getbalance",
    "getnewaddress",
    "getaddressinfo",
    "sendtoaddress",
    "sendmany",
    "listdescriptors",
    "importdescriptors",
}
MUTATING_METHODS = {
    "createwallet",
    "loadwallet",
    "unloadwallet",
    "getnewaddress",
    "generatetoaddress",
    "sendtoaddress",
    "sendmany",
    "importdescriptors",
}


def digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class FakeWallet:
    name: str
    watch_only: bool = False
    balance: float = 0.0
    addresses: list[str] = field(default_factory=list)
    imported: list[dict[str, Any]] = field(default_factory=list)

    @property
    def xfp(self) -> str:
        return digest(f"xfp-{self.name}")[:8]

    @property
    def xpub(self) -> str:
        return "tpubD6NzVbkrYhZ4" + digest(f"xpub-{self.name}")[:60]


@dataclass
class Payment:
    wallet: str
    address: str
    amount: float


class FakeNode(BitcoinCli):
    """In-memory stand-in for bitcoin-cli talking to a regtest node.

    Coinbase rewards are credited immediately; every call is recorded.
    """

    def __init__(self, *, blocks: int = 0, coinbase_reward: float = 50.0, reachable: bool = True):
        super().__init__(
            NodeConfig(host="127.0.0.1", port=18443, rpc_user="rpcuser", rpc_pass="rpcpass")
        )
        self.blocks = blocks
        self.coinbase_reward = coinbase_reward
        self.reachable = reachable
        self.wallets: dict[str, FakeWallet] = {}
        self.loaded: list[str] = []
        self.owners: dict[str, str] = {}
        self.calls: list[tuple[str | None, str, list[str]]] = []
        self.payments: list[Payment] = []
        self.failures: dict[str, RpcError] = {}
        self.failure_budget: dict[str, int] = {}
        self.broken_descriptors: set[str] = set()

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------
    def add_wallet(
        self,
        name: str,
        *,
        balance: float = 0.0,
        loaded: bool = True,
        watch_only: bool = False,
    ) -> FakeWallet:
        wallet = FakeWallet(name=name, watch_only=watch_only, balance=balance)
        self.wallets[name] = wallet
        if loaded:
            self.loaded.append(name)
        return wallet

    def fail(self, method: str, code: int, message: str, *, times: int | None = None) -> None:
        """Make `method` raise; `times` limits how many calls fail."""
        self.failures[method] = RpcError(method, code, message)
        if times is not None:
            self.failure_budget[method] = times

    def methods(self, *, wallet: str | None = None) -> list[str]:
        return [m for w, m, _ in self.calls if wallet is None or w == wallet]

    def mutating_calls(self) -> list[tuple[str | None, str, list[str]]]:
        return [c for c in self.calls if c[1] in MUTATING_METHODS]

    def calls_to(self, method: str) -> list[tuple[str | None, str, list[str]]]:
        return [c for c in self.calls if c[1] == method]

    # ------------------------------------------------------------------
    # bitcoin-cli surface
    # ------------------------------------------------------------------
    def cli(self, args: list[str], *, rpc_wallet: str | None = None) -> str:
        method, params = args[0], list(args[1:])
        self.calls.append((rpc_wallet, method, params))
        if not self.reachable:
            raise NodeUnreachable("error: Could not connect to the server 127.0.0.1:18443")
        if method in self.failures:
            error = self.failures[method]
            if method in self.failure_budget:
                self.failure_budget[method] -= 1
                if self.failure_budget[method] <= 0:
                    del self.failures[method], self.failure_budget[method]
            raise error
        wallet = None
        if method in WALLET_METHODS:
            if rpc_wallet is None or rpc_wallet not in self.loaded:
                raise RpcError(
                    method,
                    RPC_WALLET_NOT_FOUND,
                    "Requested wallet does not exist or is not loaded",
                )
            wallet = self.wallets[rpc_wallet]
        result = getattr(self, f"rpc_{method}")(wallet, *params)
        if isinstance(result, str):
            return result
        return json.dumps(result)

    def rpc_getblockchaininfo(self, _w) -> dict[str, Any]:
        return {"chain": "regtest", "blocks": self.blocks}

    def rpc_listwallets(self, _w) -> list[str]:
        return list(self.loaded)

    def rpc_loadwallet(self, _w, name: str) -> dict[str, Any]:
        if name in self.loaded:
            raise RpcError("loadwallet", RPC_WALLET_ALREADY_LOADED, f'Wallet "{name}" is already loaded.')
        if name not in self.wallets:
            raise RpcError(
                "loadwallet",
                RPC_WALLET_NOT_FOUND,
                f"Wallet file verification failed. Failed to load database path '{name}'. Path does not exist.",
            )
        self.loaded.append(name)
        return {"name": name, "warning": ""}

    def rpc_createwallet(
        self,
        _w,
        name: str,
        disable_private_keys: str = "false",
        blank: str = "false",
        passphrase: str = "",
        avoid_reuse: str = "false",
        descriptors: str = "true",
    ) -> dict[str, Any]:
        if name in self.wallets:
            raise RpcError("createwallet", RPC_WALLET_ERROR, "Database already exists.")
        self.add_wallet(name, watch_only=disable_private_keys == "true")
        return {"name": name, "warning": ""}

    def rpc_unloadwallet(self, _w, name: str) -> dict[str, Any]:
        if name not in self.loaded:
            raise RpcError("unloadwallet", RPC_WALLET_NOT_FOUND, "Requested wallet does not exist or is not loaded")
        self.loaded.remove(name)
        return {"warning": ""}

    def rpc_getbalance(self, w: FakeWallet) -> str:
        return btc(w.balance)

    def rpc_getnewaddress(self, w: FakeWallet, label: str = "", address_type: str = "bech32") -> str:
        addr = "bcrt1q" + digest(f"{w.name}-{len(w.addresses)}")[:38]
        w.addresses.append(addr)
        self.owners[addr] = w.name
        return addr

    def rpc_getaddressinfo(self, w: FakeWallet, address: str) -> dict[str, Any]:
        return {
            "address": address,
            "ismine": self.owners.get(address) == w.name,
            "pubkey": "02" + digest(f"pubkey-{address}"),
        }

    def rpc_generatetoaddress(self, _w, nblocks: str, address: str) -> list[str]:
        count = int(nblocks)
        hashes = [digest(f"block-{self.blocks + i}") for i in range(count)]
        self.blocks += count
        owner = self.owners.get(address)
        if owner is not None:
            self.wallets[owner].balance += self.coinbase_reward * count
        return hashes

    def _spend(self, w: FakeWallet, outputs: dict[str, float]) -> str:
        total = sum(outputs.values())
        if total > w.balance + 1e-9:
            raise RpcError("send", RPC_WALLET_INSUFFICIENT_FUNDS, "Insufficient funds")
        w.balance = round(w.balance - total, 8)
        for addr, amount in outputs.items():
            owner = self.owners.get(addr)
            if owner is not None:
                self.wallets[owner].balance = round(self.wallets[owner].balance + amount, 8)
            self.payments.append(Payment(wallet=w.name, address=addr, amount=amount))
        return digest(f"tx-{len(self.payments)}-{w.name}")

    def rpc_sendtoaddress(self, w: FakeWallet, address: str, amount: str) -> str:
        return self._spend(w, {address: float(amount)})

    def rpc_sendmany(self, w: FakeWallet, _dummy: str, outputs: str) -> str:
        return self._spend(w, {addr: float(v) for addr, v in json.loads(outputs).items()})

    def rpc_createmultisig(self, _w, nrequired: str, keys: str, address_type: str = "legacy") -> dict[str, Any]:
        pubkeys = json.loads(keys)
        if len(pubkeys) < int(nrequired):
            raise RpcError("createmultisig", -8, "not enough keys supplied")
        return {
            "address": "bcrt1qms" + digest("".join(pubkeys))[:54],
            "redeemScript": "52" + "".join(pubkeys) + "52ae",
        }

    def rpc_listdescriptors(self, w: FakeWallet) -> dict[str, Any]:
        if w.name in self.broken_descriptors:
            raise RpcError("listdescriptors", RPC_WALLET_ERROR, "This type of wallet does not support this command")
        if w.watch_only:
            return {"wallet_name": w.name, "descriptors": list(w.imported)}
        descriptors = []
        for script, purpose in (("pkh", 44), ("sh(wpkh", 49), ("wpkh", 84), ("tr", 86)):
            closing = "))" if script == "sh(wpkh" else ")"
            for chain in (0, 1):
                desc = f"{script}([{w.xfp}/{purpose}h/1h/0h]{w.xpub}/{chain}/*{closing}"
                descriptors.append(
                    {
                        "desc": f"{desc}#{digest(desc)[:8]}",
                        "active": True,
                        "internal": chain == 1,
                        "range": [0, 999],
                        "next": 0,
                    }
                )
        return {"wallet_name": w.name, "descriptors": descriptors}

    def rpc_getdescriptorinfo(self, _w, desc: str) -> dict[str, Any]:
        if "PLACEHOLDER" in desc:
            raise RpcError("getdescriptorinfo", -5, "key is not valid")
        return {
            "descriptor": desc,
            "checksum": digest(desc)[:8],
            "isrange": True,
            "issolvable": True,
            "hasprivatekeys": False,
        }

    def rpc_importdescriptors(self, w: FakeWallet, requests: str) -> list[dict[str, Any]]:
        reqs = json.loads(requests)
        if not w.watch_only:
            return [{"success": False, "error": {"code": -4, "message": "Cannot import into a signing wallet"}} for _ in reqs]
        w.imported.extend(reqs)
        return [{"success": True} for _ in reqs]


class Sleeper:
    def __init__(self) -> None:
        self.waits: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()


@pytest.fixture
def make_node():
    return FakeNode


@pytest.fixture
def sleeper() -> Sleeper:
    return Sleeper()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)
