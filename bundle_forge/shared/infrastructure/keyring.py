"""
Key Material Loader
===================
Resolves wallet files into signing identities.

A wallet file holds either one object or an array of objects:

    {"publicKey": "...", "secretKey": "<base58 64-byte secret>"}
    [{"publicKey": "...", "secretKey": "..."}, ...]

The shape is resolved once at load time into a uniform ordered tuple.
"""

from __future__ import annotations

import json
import os
import random
from dataclasses import dataclass
from typing import Any, Sequence, Tuple, Union

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from bundle_forge.shared.system.logging import Logger


class KeyFileError(ValueError):
    """Wallet file missing, empty, or malformed."""


@dataclass(frozen=True)
class SingleIdentity:
    entry: dict


@dataclass(frozen=True)
class IdentityCollection:
    entries: Tuple[dict, ...]


WalletFile = Union[SingleIdentity, IdentityCollection]


def parse_wallet_file(data: Any, source: str = "<memory>") -> WalletFile:
    """Tag raw JSON as a single identity or a collection."""
    if isinstance(data, list):
        for entry in data:
            if not isinstance(entry, dict):
                raise KeyFileError(f"Invalid entry in {source}: {entry!r}")
        return IdentityCollection(entries=tuple(data))
    if isinstance(data, dict) and ("secretKey" in data or "publicKey" in data):
        return SingleIdentity(entry=data)
    raise KeyFileError(
        f"Invalid format in {source}. Expected an array or an object with a 'secretKey' field."
    )


def _entries(wallet: WalletFile) -> Tuple[dict, ...]:
    if isinstance(wallet, SingleIdentity):
        return (wallet.entry,)
    return wallet.entries


def _read_json(path: str) -> Any:
    if not os.path.exists(path):
        raise KeyFileError(f"Wallet file not found at path: {path}")
    with open(path, "r", encoding="utf-8") as f:
        content = f.read()
    if not content.strip():
        raise KeyFileError(f"File at {path} is empty.")
    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise KeyFileError(f"Invalid JSON in {path}: {e}") from e


def keypair_from_entry(entry: dict) -> Keypair:
    secret = entry.get("secretKey")
    if not secret:
        raise KeyFileError(f"Missing 'secretKey' field in wallet entry for {entry.get('publicKey', '?')}")
    try:
        keypair = Keypair.from_bytes(base58.b58decode(secret))
    except ValueError as e:
        raise KeyFileError(f"Invalid secretKey for {entry.get('publicKey', '?')}: {e}") from e

    declared = entry.get("publicKey")
    if declared and declared != str(keypair.pubkey()):
        raise KeyFileError(f"publicKey {declared} does not match its secretKey")
    return keypair


def resolve_identities(wallet: WalletFile) -> Tuple[Keypair, ...]:
    return tuple(keypair_from_entry(entry) for entry in _entries(wallet))


def load_signing_identities(path: str) -> Tuple[Keypair, ...]:
    """Load every keypair in a wallet file, in file order."""
    wallet = parse_wallet_file(_read_json(path), source=path)
    keypairs = resolve_identities(wallet)
    kind = "single object" if isinstance(wallet, SingleIdentity) else f"array ({len(keypairs)} entries)"
    Logger.debug(f"[KEYS] Parsed {os.path.basename(path)} as {kind}")
    return keypairs


def load_signing_identity(path: str) -> Keypair:
    """Load exactly one keypair."""
    keypairs = load_signing_identities(path)
    if len(keypairs) != 1:
        raise KeyFileError(f"Expected one identity in {path}, found {len(keypairs)}")
    return keypairs[0]


def load_recipients(path: str) -> Tuple[Pubkey, ...]:
    """Load public keys only (recipient lists carry no secrets)."""
    wallet = parse_wallet_file(_read_json(path), source=path)
    recipients = []
    for entry in _entries(wallet):
        if entry.get("publicKey"):
            recipients.append(Pubkey.from_string(entry["publicKey"]))
        else:
            recipients.append(keypair_from_entry(entry).pubkey())
    return tuple(recipients)


def choose_payer(payers: Sequence[Keypair], rng: random.Random) -> Keypair:
    """Pick a fee payer uniformly at random from the payer collection."""
    if not payers:
        raise KeyFileError("No payer wallets loaded.")
    return payers[rng.randrange(len(payers))]


def dump_identity(keypair: Keypair) -> dict:
    """Wallet-file entry for a keypair (inverse of keypair_from_entry)."""
    return {
        "publicKey": str(keypair.pubkey()),
        "secretKey": base58.b58encode(bytes(keypair)).decode("utf-8"),
    }
