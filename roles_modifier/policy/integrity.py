"""
Condition Tree Integrity — governance-time validation of policy trees.

Every condition tree submitted through governance passes through
`build_condition_tree` before it reaches the policy store. Validation is
all-or-nothing: a rejected tree raises a `GovernanceError` and nothing is
stored.

Checks, in order:
1. Size and shape — node count bound, a single CALLDATA root, breadth-first
   ordering, only container kinds as parents.
2. Operator suitability — the (kind, operator) pair must appear in
   `SUITABLE_OPERATORS`.
3. Children — MATCHES and TUPLE nodes need children, ARRAY children share
   one kind, nesting depth is bounded.
4. Literals — normalised per kind (see `normalize_literal`).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from roles_modifier.checker.decoder import padded_size
from roles_modifier.config import settings
from roles_modifier.errors import (
    ConditionTreeTooLarge,
    GovernanceError,
    NotBFS,
    NotEnoughCompValuesForOneOf,
    UnsuitableCompValue,
    UnsuitableOneOfComparison,
    UnsuitableParameterType,
    UnsuitableParent,
    UnsuitableRelativeComparison,
    UnsuitableRootNode,
)
from roles_modifier.policy.schema import (
    CONTAINER_KINDS,
    WORD_SIZE,
    ConditionNode,
    ConditionTree,
    Operator,
    ParameterKind,
)

logger = logging.getLogger(__name__)

K = ParameterKind
O = Operator

SUITABLE_OPERATORS: frozenset[tuple[ParameterKind, Operator]] = frozenset(
    {
        (K.NONE, O.PASS),
        (K.STATIC, O.PASS),
        (K.STATIC, O.EQUAL_TO),
        (K.STATIC, O.GREATER_THAN),
        (K.STATIC, O.LESS_THAN),
        (K.DYNAMIC, O.PASS),
        (K.DYNAMIC, O.EQUAL_TO),
        (K.DYNAMIC, O.ONE_OF),
        (K.TUPLE, O.PASS),
        (K.TUPLE, O.MATCHES),
        (K.ARRAY, O.PASS),
        (K.ARRAY, O.MATCHES),
        (K.CALLDATA, O.PASS),
        (K.CALLDATA, O.MATCHES),
    }
)

_REJECTION_BY_OPERATOR: dict[Operator, type[GovernanceError]] = {
    O.ONE_OF: UnsuitableOneOfComparison,
    O.GREATER_THAN: UnsuitableRelativeComparison,
    O.LESS_THAN: UnsuitableRelativeComparison,
}

# Kinds that governance may scope as a single top-level argument.
PARAMETER_KINDS = frozenset({K.STATIC, K.DYNAMIC})


def check_operator(kind: ParameterKind, operator: Operator) -> None:
    """Raise if `operator` is not meaningful for a parameter of `kind`."""
    if (kind, operator) in SUITABLE_OPERATORS:
        return
    error = _REJECTION_BY_OPERATOR.get(operator, UnsuitableParameterType)
    raise error(f"operator {operator.name} is not suitable for {kind.name} parameters")


def strip_dynamic_offset(encoded: bytes) -> bytes:
    """
    Turn a standalone ABI encoding of a bytes/string value into the form
    found in a calldata tail: length word followed by the padded payload.

    An empty literal stands for the empty value: a zero length word.
    """
    if not encoded:
        return bytes(WORD_SIZE)
    if len(encoded) < 2 * WORD_SIZE or len(encoded) % WORD_SIZE:
        raise UnsuitableCompValue(
            f"dynamic literal must be a word-aligned ABI encoding, got {len(encoded)} bytes"
        )
    offset = int.from_bytes(encoded[:WORD_SIZE], "big")
    if offset != WORD_SIZE:
        raise UnsuitableCompValue(f"dynamic literal must start with offset 32, got {offset}")
    length = int.from_bytes(encoded[WORD_SIZE : 2 * WORD_SIZE], "big")
    if 2 * WORD_SIZE + padded_size(length) != len(encoded):
        raise UnsuitableCompValue("dynamic literal length word does not match its payload")
    return encoded[WORD_SIZE:]


def normalize_literal(
    kind: ParameterKind,
    operator: Operator,
    literal: bytes,
    one_of: Sequence[bytes] = (),
) -> tuple[bytes, tuple[bytes, ...]]:
    """Validate a node's comparison values and return their stored form."""
    if operator in (O.PASS, O.MATCHES):
        if literal or one_of:
            raise UnsuitableCompValue(f"{operator.name} does not take a comparison value")
        return b"", ()

    if operator == O.ONE_OF:
        if literal:
            raise UnsuitableCompValue("ONE_OF takes its values as a set, not a literal")
        if len(one_of) < 2:
            raise NotEnoughCompValuesForOneOf(
                f"ONE_OF needs at least 2 values, got {len(one_of)}"
            )
        return b"", tuple(strip_dynamic_offset(value) for value in one_of)

    if one_of:
        raise UnsuitableCompValue(f"{operator.name} takes a single literal")
    if kind == K.STATIC:
        if len(literal) != WORD_SIZE:
            raise UnsuitableCompValue(
                f"static literal must be exactly {WORD_SIZE} bytes, got {len(literal)}"
            )
        return literal, ()
    return strip_dynamic_offset(literal), ()


def _coerce_nodes(nodes: Iterable[ConditionNode | dict[str, Any]]) -> list[ConditionNode]:
    return [
        node if isinstance(node, ConditionNode) else ConditionNode.model_validate(node)
        for node in nodes
    ]


def _check_shape(nodes: list[ConditionNode], max_nodes: int) -> None:
    if not nodes:
        raise UnsuitableRootNode("a condition tree needs a root node")
    if len(nodes) > max_nodes:
        raise ConditionTreeTooLarge(f"{len(nodes)} nodes exceed the limit of {max_nodes}")

    root = nodes[0]
    if root.parent != 0 or root.kind != K.CALLDATA:
        raise UnsuitableRootNode("the root must be a CALLDATA node at index 0")
    if root.operator not in (O.PASS, O.MATCHES):
        raise UnsuitableRootNode("the root only accepts PASS or MATCHES")

    previous_parent = 0
    for index, node in enumerate(nodes[1:], start=1):
        if node.parent == index:
            raise UnsuitableRootNode(f"node {index} is a second root")
        if node.parent > index or node.parent < previous_parent:
            raise NotBFS(f"node {index} (parent {node.parent}) breaks breadth-first order")
        if nodes[node.parent].kind not in CONTAINER_KINDS:
            raise UnsuitableParent(
                f"node {index} cannot be nested under a {nodes[node.parent].kind.name} node"
            )
        previous_parent = node.parent


def _check_children(tree: ConditionTree, max_depth: int) -> None:
    if tree.max_depth > max_depth:
        raise ConditionTreeTooLarge(
            f"nesting depth {tree.max_depth} exceeds the limit of {max_depth}"
        )
    for index, node in enumerate(tree.nodes):
        kids = tree.children(index)
        if node.operator == O.MATCHES and not kids:
            raise UnsuitableParameterType(f"MATCHES node {index} has no children")
        if node.kind == K.TUPLE and not kids:
            raise UnsuitableParameterType(f"TUPLE node {index} has no fields")
        if node.kind == K.ARRAY and len({tree.nodes[c].kind for c in kids}) > 1:
            raise UnsuitableParameterType(f"ARRAY node {index} mixes element kinds")


def build_condition_tree(
    nodes: Iterable[ConditionNode | dict[str, Any]],
    max_nodes: int | None = None,
    max_depth: int | None = None,
) -> ConditionTree:
    """
    Validate a flat node list and return the tree stored by the policy.

    Args:
        nodes: Nodes in breadth-first order, root first.
        max_nodes: Node count bound. Defaults to settings.max_condition_nodes.
        max_depth: Nesting bound. Defaults to settings.max_condition_depth.

    Returns:
        A ConditionTree with literals in their stored form.

    Raises:
        GovernanceError: The tree is rejected.
    """
    flat = _coerce_nodes(nodes)
    _check_shape(flat, max_nodes if max_nodes is not None else settings.max_condition_nodes)

    normalized = []
    for node in flat:
        check_operator(node.kind, node.operator)
        literal, one_of = normalize_literal(node.kind, node.operator, node.literal, node.one_of)
        normalized.append(node.model_copy(update={"literal": literal, "one_of": one_of}))

    tree = ConditionTree(nodes=tuple(normalized))
    _check_children(tree, max_depth if max_depth is not None else settings.max_condition_depth)
    logger.debug("Condition tree accepted: %d nodes, depth %d", len(tree.nodes), tree.max_depth)
    return tree


def parameter_node(
    kind: ParameterKind,
    operator: Operator,
    literal: bytes = b"",
    one_of: Sequence[bytes] = (),
) -> ConditionNode:
    """
    Validate a single top-level argument scope and return its node.

    Only STATIC and DYNAMIC arguments can be scoped one at a time, and
    only with a comparison. A single-literal scope never accepts ONE_OF;
    sets go through `one_of`.
    """
    check_operator(kind, operator)
    if kind not in PARAMETER_KINDS:
        raise UnsuitableParameterType(f"{kind.name} arguments cannot be scoped individually")
    if operator == O.PASS:
        raise UnsuitableParameterType("scoping an argument requires a comparison")
    if operator == O.ONE_OF and not one_of:
        raise UnsuitableOneOfComparison("ONE_OF must be scoped with a set of values")
    stored_literal, stored_one_of = normalize_literal(kind, operator, literal, one_of)
    return ConditionNode(
        parent=0,
        kind=kind,
        operator=operator,
        literal=stored_literal,
        one_of=stored_one_of,
    )
