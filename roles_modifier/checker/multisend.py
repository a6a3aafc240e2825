"""
MultiSend batches — decoding the aggregator's packed transaction list.

A batch is a delegate call to `multiSend(bytes transactions)`. After the
selector the calldata holds a single ABI `bytes` argument: an offset word
that must be exactly 32, a length word, then the packed transactions:

    [uint8 operation][address to][uint256 value][uint256 dataLength][bytes data]
     1 byte           20 bytes    32 bytes       32 bytes            dataLength

Each transaction is checked independently by the dispatcher, so a batch can
never carry a call its role could not make on its own.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from eth_abi import encode
from eth_abi.packed import encode_packed
from eth_utils import decode_hex, encode_hex

from roles_modifier.checker.decoder import CalldataOutOfBounds, WordReader
from roles_modifier.errors import ConditionViolation, UnacceptableMultiSendOffset
from roles_modifier.policy.schema import (
    SELECTOR_SIZE,
    WORD_SIZE,
    Operation,
    Status,
    Verdict,
    normalize_address,
)

MULTISEND_SELECTOR = "0x8d80ff0a"
CANONICAL_OFFSET = WORD_SIZE

_ADDRESS_SIZE = 20
_ENTRY_HEADER_SIZE = 1 + _ADDRESS_SIZE + WORD_SIZE + WORD_SIZE


@dataclass(frozen=True)
class Transaction:
    """One call inside a batch."""

    operation: Operation
    to: str
    value: int
    data: bytes


def _malformed(reason: str) -> ConditionViolation:
    return ConditionViolation(Verdict(status=Status.MALFORMED_MULTI_ENTRYPOINT, reason=reason))


def unwrap(data: bytes) -> list[Transaction]:
    """
    Split multiSend calldata into its transactions.

    Raises:
        UnacceptableMultiSendOffset: The payload offset word is not 32.
        ConditionViolation: MalformedMultiEntrypoint for truncated entries,
            unknown operations or an empty batch.
    """
    reader = WordReader(data)
    try:
        offset = reader.uint(SELECTOR_SIZE)
        if offset != CANONICAL_OFFSET:
            raise UnacceptableMultiSendOffset(offset)
        length = reader.uint(SELECTOR_SIZE + WORD_SIZE)
        payload = WordReader(reader.slice(SELECTOR_SIZE + 2 * WORD_SIZE, length))
    except CalldataOutOfBounds as e:
        raise _malformed(f"batch payload out of bounds: {e}") from e

    transactions = []
    position = 0
    while position < len(payload):
        try:
            header = payload.slice(position, _ENTRY_HEADER_SIZE)
            data_length = int.from_bytes(header[-WORD_SIZE:], "big")
            body = payload.slice(position + _ENTRY_HEADER_SIZE, data_length)
        except CalldataOutOfBounds as e:
            raise _malformed(f"batch entry {len(transactions)} is truncated") from e

        if header[0] not in (Operation.CALL, Operation.DELEGATE_CALL):
            raise _malformed(f"batch entry {len(transactions)} has operation {header[0]}")
        transactions.append(
            Transaction(
                operation=Operation(header[0]),
                to=normalize_address(encode_hex(header[1 : 1 + _ADDRESS_SIZE])),
                value=int.from_bytes(header[1 + _ADDRESS_SIZE : 1 + _ADDRESS_SIZE + WORD_SIZE], "big"),
                data=body,
            )
        )
        position += _ENTRY_HEADER_SIZE + data_length

    if not transactions:
        raise _malformed("batch is empty")
    return transactions


def encode_multisend(
    transactions: Iterable[Transaction],
    selector: str = MULTISEND_SELECTOR,
) -> bytes:
    """Build multiSend calldata for a list of transactions."""
    packed = b"".join(
        encode_packed(
            ["uint8", "address", "uint256", "uint256", "bytes"],
            [int(tx.operation), tx.to, tx.value, len(tx.data), tx.data],
        )
        for tx in transactions
    )
    return decode_hex(selector) + encode(["bytes"], [packed])
