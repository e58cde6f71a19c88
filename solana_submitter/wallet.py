"""
Keypair loading and instruction helpers for the sample driver.
"""

import json
import logging
from pathlib import Path
from typing import List, Union

import base58
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from .exceptions import InvalidKeypairError

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
KEYPAIR_LENGTH = 64


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def keypair_from_secret(secret: Union[str, bytes, List[int]]) -> Keypair:
    """
    Build a keypair from secret key material.

    Args:
        secret: base58 string, JSON byte-array string, raw 64 bytes,
            or list of ints

    Returns:
        Keypair
    """
    key_bytes: bytes
    try:
        if isinstance(secret, str):
            text = secret.strip()
            if text.startswith("["):
                key_bytes = bytes(json.loads(text))
            else:
                key_bytes = base58.b58decode(text)
        elif isinstance(secret, list):
            key_bytes = bytes(secret)
        else:
            key_bytes = secret

        if len(key_bytes) != KEYPAIR_LENGTH:
            raise ValueError(f"expected {KEYPAIR_LENGTH} bytes, got {len(key_bytes)}")

        return Keypair.from_bytes(key_bytes)
    except Exception as e:
        raise InvalidKeypairError(f"Invalid private key format: {e}") from e


def load_keypair(path: Union[str, Path]) -> Keypair:
    """Load a keypair file (Solana CLI JSON array, base58 text or raw bytes)."""
    path = Path(path).expanduser()
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise InvalidKeypairError(f"Cannot read keypair file {path}: {e}") from e

    if len(raw) == KEYPAIR_LENGTH:
        keypair = keypair_from_secret(raw)
    else:
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidKeypairError(f"Keypair file {path} is not text: {e}") from e
        keypair = keypair_from_secret(text)

    logger.debug(f"Loaded keypair {keypair.pubkey()} from {path}")
    return keypair


def transfer_instruction(from_pubkey: Pubkey, to_pubkey: Pubkey, lamports: int) -> Instruction:
    return transfer(
        TransferParams(
            from_pubkey=from_pubkey,
            to_pubkey=to_pubkey,
            lamports=lamports,
        )
    )


__all__ = [
    "LAMPORTS_PER_SOL",
    "KEYPAIR_LENGTH",
    "lamports_to_sol",
    "keypair_from_secret",
    "load_keypair",
    "transfer_instruction",
]
