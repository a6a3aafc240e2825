"""Shared addresses, role keys and calldata builders for the test suite."""

from __future__ import annotations

from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector

from roles_modifier.modifier import ExecutionResult
from roles_modifier.policy.schema import (
    ConditionNode,
    Operation,
    Operator,
    ParameterKind,
)

OWNER = "0x" + "0a" * 20
INVOKER = "0x" + "0b" * 20
STRANGER = "0x" + "0c" * 20
TARGET = "0x" + "11" * 20
OTHER_TARGET = "0x" + "22" * 20
MULTISEND = "0x" + "40" * 20
RECIPIENT = "0x" + "a1" * 20

ROLE = "0x" + "00" * 31 + "01"
OTHER_ROLE = "0x" + "00" * 31 + "02"

MINT = "0x40c10f19"
TRANSFER = "0xa9059cbb"

K = ParameterKind
O = Operator


def calldata(signature: str, types: list[str], values: list) -> bytes:
    return function_signature_to_4byte_selector(signature) + encode(types, values)


def mint(to: str, amount: int) -> bytes:
    return calldata("mint(address,uint256)", ["address", "uint256"], [to, amount])


def transfer(to: str, amount: int) -> bytes:
    return calldata("transfer(address,uint256)", ["address", "uint256"], [to, amount])


def word(value: int) -> bytes:
    return value.to_bytes(32, "big")


def dynamic(value: bytes | str) -> bytes:
    """Standalone ABI encoding of a bytes or string value."""
    return encode(["string" if isinstance(value, str) else "bytes"], [value])


def node(parent: int, kind: ParameterKind, operator: Operator = Operator.PASS, **kwargs) -> ConditionNode:
    return ConditionNode(parent=parent, kind=kind, operator=operator, **kwargs)


ROOT = node(0, K.CALLDATA, O.MATCHES)


class RecordingExecutor:
    """Executor double that remembers every call it was asked to make."""

    def __init__(self, success: bool = True, return_data: bytes = b"") -> None:
        self.success = success
        self.return_data = return_data
        self.calls: list[tuple[str, int, bytes, Operation]] = []

    def execute(self, to: str, value: int, data: bytes, operation: Operation) -> ExecutionResult:
        self.calls.append((to, value, data, operation))
        return ExecutionResult(success=self.success, return_data=self.return_data)
