from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from common import RpcError, WalletClient, log

DESCRIPTOR_KEY_RE = re.compile(r"\[([a-fA-F0-9]{8})/([^\]]+)\]([xt]pub[a-zA-Z0-9]+)")
RECEIVE_CHAIN = "/0/*"
DEFAULT_SCRIPT_TYPE = "wpkh"

# Synthetic values keep the pipeline moving when a wallet cannot report its
# keys. They are not valid key material.
PLACEHOLDER_XPUB_PREFIX = "tpub661MyMwAqRbcFPLACEHOLDER"
PLACEHOLDER_PATH = "m/84'/1'/0'"


@dataclass(frozen=True)
class KeyMaterial:
    xpub: str
    xfp: str
    bip32_path: str
    placeholder: bool = False


@dataclass(frozen=True)
class Signer:
    wallet: WalletClient
    keys: KeyMaterial

    @property
    def name(self) -> str:
        return self.wallet.name

    @property
    def display_name(self) -> str:
        return self.name.replace("_", " ")

    @property
    def xpub(self) -> str:
        return self.keys.xpub

    @property
    def xfp(self) -> str:
        return self.keys.xfp

    @property
    def bip32_path(self) -> str:
        return self.keys.bip32_path


def parse_descriptor_key(desc: str) -> KeyMaterial | None:
    match = DESCRIPTOR_KEY_RE.search(desc)
    if not match:
        return None
    xfp, path, xpub = match.groups()
    bip32_path = "m/" + path.replace("h", "'").replace("H", "'")
    return KeyMaterial(xpub=xpub, xfp=xfp.lower(), bip32_path=bip32_path)


def pick_receive_descriptor(
    descriptors: list[dict[str, Any]],
    script_type: str = DEFAULT_SCRIPT_TYPE,
) -> str | None:
    receive = [
        d["desc"]
        for d in descriptors
        if RECEIVE_CHAIN in d.get("desc", "") and not d.get("internal", False)
    ]
    for desc in receive:
        if desc.startswith(f"{script_type}("):
            return desc
    # Any single-key receive chain carries the same master key.
    for desc in receive:
        if "pkh(" in desc:
            return desc
    return None


def placeholder_keys(signer_index: int) -> KeyMaterial:
    tag = f"{signer_index + 1:04d}"
    return KeyMaterial(
        xpub=f"{PLACEHOLDER_XPUB_PREFIX}{tag}",
        xfp=tag * 2,
        bip32_path=PLACEHOLDER_PATH,
        placeholder=True,
    )


def extract_keys(wallet: WalletClient, signer_index: int) -> KeyMaterial:
    try:
        listing = wallet.cli_json(["listdescriptors"]) or {}
        desc = pick_receive_descriptor(listing.get("descriptors", []))
        keys = parse_descriptor_key(desc) if desc else None
    except RpcError as exc:
        log(f"WARNING: descriptor listing failed for {wallet.name}: {exc}")
        keys = None

    if keys is not None:
        log(f"extracted xfp={keys.xfp} path={keys.bip32_path} for {wallet.name}")
        return keys

    keys = placeholder_keys(signer_index)
    log(f"WARNING: using placeholder keys xfp={keys.xfp} path={keys.bip32_path} for {wallet.name}")
    return keys
