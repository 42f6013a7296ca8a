"""Block hashing and the bounded proof-of-work used to seal blocks.

The proof-of-work is tamper evidence for a single-writer chain. With the
default difficulty and iteration cap it costs milliseconds and proves
nothing about who wrote the block.
"""

from __future__ import annotations

from typing import Iterable

from src.verification.hashing import sha256_hex

GENESIS_HASH = "0" * 64


def calculate_block_hash(index: int, previous_hash: str, content_hashes: Iterable[str], nonce: int) -> str:
    return sha256_hex(f"{index}{previous_hash}{''.join(content_hashes)}{nonce}")


def meets_difficulty(block_hash: str, difficulty: int) -> bool:
    return block_hash.startswith("0" * difficulty)


def mine_block(
    index: int,
    previous_hash: str,
    content_hashes: list[str],
    difficulty: int,
    max_iterations: int,
) -> tuple[str, int, bool]:
    """Search nonces from 0 until the hash has ``difficulty`` leading zeros.

    Returns (hash, nonce, solved). When the cap is hit the last nonce tried
    is kept, so the returned hash is still recomputable from the block.
    """
    nonce = 0
    block_hash = calculate_block_hash(index, previous_hash, content_hashes, nonce)
    while not meets_difficulty(block_hash, difficulty) and nonce < max_iterations:
        nonce += 1
        block_hash = calculate_block_hash(index, previous_hash, content_hashes, nonce)
    return block_hash, nonce, meets_difficulty(block_hash, difficulty)
