"""
Merkle commitment over an aggregated ledger.

Leaf: keccak256(abi.encodePacked(address, uint256 amount)), i.e. 20 address bytes
followed by a 32 byte big-endian amount, so every leaf preimage is exactly 52 bytes.

Nodes: pairs are sorted before hashing so proofs carry no left/right flags.
An odd node at the end of a layer is promoted to the next layer as is, it is
never paired with a copy of itself. Proof generation and `verify` share this rule.
"""
from itertools import zip_longest
from typing import Optional, Sequence, Union

from eth_abi.packed import encode_packed
from eth_utils import encode_hex, keccak, to_bytes

from distributor.errors import EmptyLedgerError, InvalidLeafError
from distributor.models import (
    UINT256_MAX,
    AggregatedLedger,
    EthereumAddress,
    HexStr,
    MerkleClaim,
    MerkleDistribution,
    checksum,
)
from distributor.utils import format_units

HASH_LENGTH = 32
Hashish = Union[bytes, bytearray, HexStr]


def leaf(address: EthereumAddress, amount: int) -> bytes:
    try:
        address = checksum(address)
    except ValueError as e:
        raise InvalidLeafError(str(e))
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidLeafError(f"Amount must be an integer, got {amount!r}")
    if not 0 <= amount <= UINT256_MAX:
        raise InvalidLeafError(f"Amount does not fit in uint256: {amount}")
    return keccak(encode_packed(["address", "uint256"], [address, amount]))


def combined_hash(a: Optional[bytes], b: Optional[bytes]) -> bytes:
    if a is None:
        return b  # type: ignore
    if b is None:
        return a
    return keccak(b"".join(sorted([a, b])))


class MerkleTree:
    def __init__(self, leaves: Sequence[bytes]):
        if not leaves:
            raise EmptyLedgerError("Cannot build a merkle tree without leaves")
        self.leaves = list(leaves)
        self.layers = MerkleTree.get_layers(self.leaves)

    @property
    def root(self) -> bytes:
        return self.layers[-1][0]

    @property
    def hex_root(self) -> HexStr:
        return encode_hex(self.root)

    def get_proof(self, index: int) -> list[bytes]:
        """Sibling hashes for the leaf at `index`, bottom up"""
        if not 0 <= index < len(self.leaves):
            raise IndexError(f"No leaf at index {index}")
        proof = []
        for layer in self.layers[:-1]:
            pair_idx = index + 1 if index % 2 == 0 else index - 1
            # promoted nodes have no sibling on this layer
            if pair_idx < len(layer):
                proof.append(layer[pair_idx])
            index //= 2
        return proof

    def get_hex_proof(self, index: int) -> list[HexStr]:
        return [encode_hex(p) for p in self.get_proof(index)]

    @staticmethod
    def get_layers(leaves: list[bytes]) -> list[list[bytes]]:
        layers = [leaves]
        while len(layers[-1]) > 1:
            layers.append(MerkleTree.get_next_layer(layers[-1]))
        return layers

    @staticmethod
    def get_next_layer(nodes: list[bytes]) -> list[bytes]:
        return [combined_hash(a, b) for a, b in zip_longest(nodes[::2], nodes[1::2])]


def _to_hash(value: Hashish) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        raw = to_bytes(hexstr=value)
    else:
        raise TypeError(f"Expected bytes or hex string, got {type(value).__name__}")
    if len(raw) != HASH_LENGTH:
        raise ValueError(f"Expected {HASH_LENGTH} bytes, got {len(raw)}")
    return raw


def verify(leaf_hash: Hashish, proof: Sequence[Hashish], root: Hashish) -> bool:
    """Recompute the root from a leaf and its proof. Malformed input verifies as False."""
    try:
        computed = _to_hash(leaf_hash)
        for sibling in proof:
            computed = combined_hash(computed, _to_hash(sibling))
        return computed == _to_hash(root)
    except (ValueError, TypeError):
        return False


def build_tree(ledger: AggregatedLedger) -> MerkleTree:
    return MerkleTree([leaf(address, amount) for address, amount in ledger.items()])


def build(ledger: AggregatedLedger) -> tuple[HexStr, dict[EthereumAddress, list[HexStr]]]:
    """Returns the hex root and every recipient's proof"""
    tree = build_tree(ledger)
    proofs = {
        address: tree.get_hex_proof(index)
        for index, address in enumerate(ledger.addresses)
    }
    return tree.hex_root, proofs


def build_distribution(ledger: AggregatedLedger, decimals: int = 18) -> MerkleDistribution:
    tree = build_tree(ledger)
    claims = {
        address: MerkleClaim(
            address=address,
            amount=str(amount),
            amountFormatted=format_units(amount, decimals),
            leaf=encode_hex(tree.leaves[index]),
            proof=tree.get_hex_proof(index),
        )
        for index, (address, amount) in enumerate(ledger.items())
    }
    return MerkleDistribution(
        merkleRoot=tree.hex_root,
        totalRecipients=len(ledger),
        totalAmount=str(ledger.total),
        claims=claims,
    )
