"""Keccak-256 merkle trees over wallet addresses.

Trees are built the way on-chain allowlist guards verify them: every leaf is
the keccak-256 of the address's UTF-8 bytes, each pair is sorted before it
is hashed, and an unpaired node at the end of a level is carried up as is.
Callers sort and deduplicate the address list first so that the root only
depends on the set of addresses.
"""

from typing import Iterable, List, Optional

from Crypto.Hash import keccak

EMPTY_ROOT = bytes(32)

def keccak256(data: bytes) -> bytes:
    digest = keccak.new(digest_bits=256)
    digest.update(data)
    return digest.digest()

def hash_pair(left: bytes, right: bytes) -> bytes:
    return keccak256(b''.join(sorted((left, right))))

def leaf(address: str) -> bytes:
    return keccak256(address.encode('utf-8'))

def canonical_addresses(addresses: Iterable[str]) -> List[str]:
    """Trim, drop blanks, deduplicate and sort."""
    return sorted({str(address).strip() for address in addresses if str(address).strip()})

def build_levels(addresses: List[str]) -> List[List[bytes]]:
    """All tree levels, leaves first and the root level last."""
    level = [leaf(address) for address in addresses]
    levels = [level]
    while len(level) > 1:
        parents = []
        for i in range(0, len(level) - 1, 2):
            parents.append(hash_pair(level[i], level[i + 1]))
        if len(level) % 2:
            parents.append(level[-1])
        levels.append(parents)
        level = parents
    return levels

def merkle_root(addresses: Iterable[str]) -> bytes:
    """Root over the canonical address list. An empty list has a zero root."""
    canonical = canonical_addresses(addresses)
    if not canonical:
        return EMPTY_ROOT
    return build_levels(canonical)[-1][0]

def merkle_proof(addresses: Iterable[str], wallet: str) -> Optional[List[bytes]]:
    """Sibling hashes from the wallet's leaf to the root.

    Returns None when the wallet is not in the list. A single-address list
    yields an empty proof, since its leaf is the root.
    """
    canonical = canonical_addresses(addresses)
    wallet = str(wallet).strip()
    if wallet not in canonical:
        return None

    index = canonical.index(wallet)
    proof = []
    for level in build_levels(canonical)[:-1]:
        sibling = index ^ 1
        if sibling < len(level):
            proof.append(level[sibling])
        index //= 2
    return proof

def verify_proof(proof: Iterable[bytes], root: bytes, wallet: str) -> bool:
    node = leaf(str(wallet).strip())
    for sibling in proof:
        node = hash_pair(node, sibling)
    return node == root
