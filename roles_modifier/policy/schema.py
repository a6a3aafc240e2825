"""
Policy Schema — Pydantic models for every Roles Modifier policy entity.

These models are the canonical data structures of the permission system.
They govern the shape of role policies held by the policy store, the
condition trees read by the evaluator, and the audit events emitted by
governance mutations.

Numeric enum values are wire-compatible with the on-chain encoding of the
policy (parameter kinds, operators, clearances, execution options and
operations), so a policy exported as JSON keeps the same integers.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any

from eth_utils import (
    decode_hex,
    encode_hex,
    is_address,
    is_checksum_address,
    is_checksum_formatted_address,
    to_normalized_address,
)
from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    PrivateAttr,
    model_validator,
)

WORD_SIZE = 32
SELECTOR_SIZE = 4


# ════════════════════════════════════════════════════════════════
# Scalar Normalisation
# ════════════════════════════════════════════════════════════════


def to_raw_bytes(value: Any) -> Any:
    """Accept `0x`-prefixed hex strings wherever raw bytes are expected."""
    if isinstance(value, str):
        return decode_hex(value)
    if isinstance(value, bytearray):
        return bytes(value)
    return value


def normalize_address(value: str) -> str:
    """Lower-case 20-byte hex address; raises ValueError when malformed."""
    if not isinstance(value, str) or not is_address(value):
        raise ValueError(f"expected a 20-byte hex address, got {value!r}")
    if is_checksum_formatted_address(value) and not is_checksum_address(value):
        raise ValueError(f"address has an invalid checksum: {value!r}")
    return to_normalized_address(value)


def normalize_role_key(value: Any) -> str:
    """Role keys are opaque 32-byte values, stored as 0x-prefixed hex."""
    if isinstance(value, bool):
        raise ValueError("role key cannot be a boolean")
    if isinstance(value, int):
        if value < 0 or value >= 2**256:
            raise ValueError(f"role key out of range: {value}")
        raw = value.to_bytes(WORD_SIZE, "big")
    else:
        raw = to_raw_bytes(value)
    if not isinstance(raw, bytes) or len(raw) != WORD_SIZE:
        raise ValueError(f"expected a 32-byte role key, got {value!r}")
    return encode_hex(raw)


def normalize_selector(value: Any) -> str:
    """Function selectors are 4-byte values, stored as 0x-prefixed hex."""
    raw = to_raw_bytes(value)
    if not isinstance(raw, bytes) or len(raw) != SELECTOR_SIZE:
        raise ValueError(f"expected a 4-byte function selector, got {value!r}")
    return encode_hex(raw)


HexBytes = Annotated[
    bytes,
    BeforeValidator(to_raw_bytes),
    PlainSerializer(encode_hex, return_type=str),
]
Address = Annotated[str, AfterValidator(normalize_address)]
RoleKey = Annotated[str, BeforeValidator(normalize_role_key)]
Selector = Annotated[str, BeforeValidator(normalize_selector)]


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class ParameterKind(enum.IntEnum):
    """How a condition node's slice of calldata is laid out."""

    NONE = 0  # Unchecked one-word placeholder
    STATIC = 1  # Fixed 32-byte word
    DYNAMIC = 2  # Length-prefixed bytes / string
    TUPLE = 3
    ARRAY = 4
    CALLDATA = 5  # Selector followed by ABI-encoded arguments


CONTAINER_KINDS = frozenset(
    {ParameterKind.TUPLE, ParameterKind.ARRAY, ParameterKind.CALLDATA}
)


class Operator(enum.IntEnum):
    """Comparison applied by a condition node. Gaps are reserved slots."""

    PASS = 0
    MATCHES = 5
    EQUAL_TO = 16
    GREATER_THAN = 17
    LESS_THAN = 18
    ONE_OF = 19


class ExecutionOptions(enum.IntFlag):
    """Value-transfer and delegate-call permissions."""

    NONE = 0
    SEND = 1
    DELEGATE_CALL = 2
    BOTH = 3


class Clearance(enum.IntEnum):
    """Target-level authorization clearance."""

    DENIED = 0
    TARGET = 1  # Allowed wholesale
    FUNCTION = 2  # Scoped by function selector


class Operation(enum.IntEnum):
    """Kind of call forwarded to the avatar."""

    CALL = 0
    DELEGATE_CALL = 1


class Status(str, enum.Enum):
    """User-visible outcome of an authorization step."""

    OK = "Ok"
    NO_MEMBERSHIP = "NoMembership"
    TARGET_ADDRESS_NOT_ALLOWED = "TargetAddressNotAllowed"
    FUNCTION_NOT_ALLOWED = "FunctionNotAllowed"
    PARAMETER_NOT_ALLOWED = "ParameterNotAllowed"
    SEND_NOT_ALLOWED = "SendNotAllowed"
    DELEGATE_CALL_NOT_ALLOWED = "DelegateCallNotAllowed"
    FUNCTION_SIGNATURE_TOO_SHORT = "FunctionSignatureTooShort"
    UNACCEPTABLE_MULTISEND_OFFSET = "UnacceptableMultiSendOffset"
    MALFORMED_MULTI_ENTRYPOINT = "MalformedMultiEntrypoint"
    MODULE_TRANSACTION_FAILED = "ModuleTransactionFailed"


class ConditionFailure(str, enum.Enum):
    """Diagnostic cause behind a ParameterNotAllowed verdict."""

    CALLDATA_OUT_OF_BOUNDS = "CalldataOutOfBounds"
    PARAMETER_NOT_EQUAL = "ParameterNotEqual"
    PARAMETER_NOT_ONE_OF = "ParameterNotOneOf"
    PARAMETER_GREATER_THAN_ALLOWED = "ParameterGreaterThanAllowed"
    PARAMETER_LESS_THAN_ALLOWED = "ParameterLessThanAllowed"
    ARRAY_LENGTH_MISMATCH = "ArrayLengthMismatch"

    @property
    def is_decode_error(self) -> bool:
        return self == ConditionFailure.CALLDATA_OUT_OF_BOUNDS


# ════════════════════════════════════════════════════════════════
# Condition Trees
# ════════════════════════════════════════════════════════════════


class ConditionNode(BaseModel):
    """
    One node of a condition tree.

    `parent` indexes the enclosing node in the flat arena; the root refers
    to itself (index 0). `literal` holds the comparison value for EQUAL_TO,
    GREATER_THAN and LESS_THAN; `one_of` holds the members of a ONE_OF set.
    """

    model_config = ConfigDict(frozen=True)

    parent: int = Field(ge=0, description="Index of the enclosing node")
    kind: ParameterKind
    operator: Operator = Operator.PASS
    literal: HexBytes = b""
    one_of: tuple[HexBytes, ...] = ()


@dataclass(frozen=True)
class TreeLayout:
    """ABI layout facts derived from a tree's parameter kinds."""

    children: tuple[tuple[int, ...], ...]
    inline: tuple[bool, ...]
    head_size: tuple[int, ...]
    depth: tuple[int, ...]


class ConditionTree(BaseModel):
    """
    Flat arena of condition nodes with integer parent links.

    Nodes are stored parents-first, so every non-root node's parent has a
    smaller index. The root (index 0) describes the whole call body.
    """

    model_config = ConfigDict(frozen=True)

    nodes: tuple[ConditionNode, ...] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_parent_links(self) -> ConditionTree:
        if self.nodes[0].parent != 0:
            raise ValueError("root node must be its own parent")
        for index, node in enumerate(self.nodes[1:], start=1):
            if node.parent >= index:
                raise ValueError(
                    f"node {index} must come after its parent {node.parent}"
                )
        return self

    @property
    def root(self) -> ConditionNode:
        return self.nodes[0]

    _layout: TreeLayout = PrivateAttr()

    def model_post_init(self, __context: Any) -> None:
        self._layout = self._compute_layout()

    @property
    def layout(self) -> TreeLayout:
        return self._layout

    def _compute_layout(self) -> TreeLayout:
        count = len(self.nodes)
        children: list[list[int]] = [[] for _ in range(count)]
        depth = [0] * count
        for index in range(1, count):
            parent = self.nodes[index].parent
            children[parent].append(index)
            depth[index] = depth[parent] + 1

        inline = [False] * count
        head_size = [WORD_SIZE] * count
        # Children always follow their parent, so a reverse sweep sees
        # every child before the node that encloses it.
        for index in reversed(range(count)):
            kind = self.nodes[index].kind
            kids = children[index]
            if kind in (ParameterKind.STATIC, ParameterKind.NONE):
                inline[index] = True
            elif kind == ParameterKind.TUPLE and kids and all(inline[c] for c in kids):
                inline[index] = True
                head_size[index] = sum(head_size[c] for c in kids)

        return TreeLayout(
            children=tuple(tuple(kids) for kids in children),
            inline=tuple(inline),
            head_size=tuple(head_size),
            depth=tuple(depth),
        )

    def children(self, index: int) -> tuple[int, ...]:
        return self.layout.children[index]

    @property
    def max_depth(self) -> int:
        return max(self.layout.depth)


# ════════════════════════════════════════════════════════════════
# Role Policy Models
# ════════════════════════════════════════════════════════════════


class TargetRule(BaseModel):
    """Per-role, per-address clearance and execution options."""

    model_config = ConfigDict(frozen=True)

    clearance: Clearance = Clearance.DENIED
    options: ExecutionOptions = ExecutionOptions.NONE


class FunctionRule(BaseModel):
    """
    Per-target, per-selector rule.

    `options` of None falls back to the target's options. `conditions` of
    None allows any arguments.
    """

    model_config = ConfigDict(frozen=True)

    options: ExecutionOptions | None = None
    conditions: ConditionTree | None = None


class RoleAssignment(BaseModel):
    """Roles currently held by one invoker and its default role."""

    roles: set[RoleKey] = Field(default_factory=set)
    default_role: RoleKey | None = None


class PolicyEvent(BaseModel):
    """Audit record of one governance mutation."""

    name: str = Field(description="Governance operation, e.g. 'AllowTarget'")
    role_key: RoleKey | None = None
    args: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ════════════════════════════════════════════════════════════════
# Verdicts
# ════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Verdict:
    """Result of checking a call (or one condition tree) against a policy."""

    status: Status
    reason: str = ""
    cause: ConditionFailure | None = None
    node_index: int | None = None
    target: str | None = None
    selector: str | None = None
    batch_index: int | None = None

    @property
    def is_allowed(self) -> bool:
        return self.status == Status.OK
