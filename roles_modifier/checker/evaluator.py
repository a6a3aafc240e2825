"""
Condition Tree Evaluator — walks a condition tree and calldata in lock-step.

The walk is an iterative pre-order traversal over an explicit stack of
pending nodes. A container node positions its children with a
`HeadCursor`: inline children (static words, static tuples) sit directly
in the head region, every other child is found at the container's base
plus the offset word stored in its head. That offset is only read when
the child is popped, so an earlier sibling's failure is always reported
first.

Locations by kind:
- root CALLDATA: arguments start right after the 4-byte selector
- nested CALLDATA: length word, then selector, then arguments
- ARRAY: length word, then element heads
- TUPLE: field heads start at the tuple's location
- DYNAMIC: length word, then the padded payload

Every pending node carries the end of its enclosing container. A nested
CALLDATA node ends at its length word plus the declared length; reads
under it never reach padding or trailing bytes of the outer encoding.

The evaluator is read-only and deterministic. A read outside the buffer
or the enclosing container is a decode failure (`CalldataOutOfBounds`);
a value that decodes but does not satisfy its operator is a comparison
failure. Both produce a ParameterNotAllowed verdict, distinguished by
`Verdict.cause`.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

from roles_modifier.checker.decoder import (
    CalldataOutOfBounds,
    HeadCursor,
    WordReader,
    padded_size,
)
from roles_modifier.policy.schema import (
    SELECTOR_SIZE,
    WORD_SIZE,
    ConditionFailure,
    ConditionNode,
    ConditionTree,
    Operator,
    ParameterKind,
    Status,
    Verdict,
)

logger = logging.getLogger(__name__)

ALLOWED = Verdict(status=Status.OK)


class _NotAMatch(Exception):
    def __init__(self, cause: ConditionFailure) -> None:
        self.cause = cause
        super().__init__(cause.value)


class _Pending(NamedTuple):
    """A node waiting on the stack.

    With `base` unset, `position` is the node's own location. Otherwise it
    is the node's head, holding an offset relative to `base`.
    """

    index: int
    position: int
    base: int | None
    end: int


def evaluate(tree: ConditionTree, data: bytes) -> Verdict:
    """
    Check calldata (selector included) against a function's condition tree.

    Returns:
        An OK verdict, or ParameterNotAllowed carrying the failing node and
        the cause of the failure.
    """
    reader = WordReader(data)
    stack = [_Pending(0, SELECTOR_SIZE, None, len(reader))]

    while stack:
        pending = stack.pop()
        index = pending.index
        node = tree.nodes[index]
        if node.operator == Operator.PASS:
            continue
        try:
            location = _locate(reader, pending)
            if node.operator == Operator.MATCHES:
                placed = _place_children(tree, reader, index, location, pending.end)
                stack.extend(reversed(placed))
            else:
                _compare(node, reader, location, pending.end)
        except CalldataOutOfBounds as e:
            logger.debug("Condition %d: calldata decode failed: %s", index, e)
            return _failure(ConditionFailure.CALLDATA_OUT_OF_BOUNDS, index, str(e))
        except _NotAMatch as e:
            return _failure(e.cause, index, f"condition {index} not satisfied")

    return ALLOWED


def _failure(cause: ConditionFailure, index: int, reason: str) -> Verdict:
    return Verdict(
        status=Status.PARAMETER_NOT_ALLOWED,
        reason=reason,
        cause=cause,
        node_index=index,
    )


def _locate(reader: WordReader, pending: _Pending) -> int:
    if pending.base is None:
        return pending.position
    location = pending.base + reader.uint(pending.position, pending.end)
    reader.check(location, WORD_SIZE, pending.end)
    return location


def _place_children(
    tree: ConditionTree,
    reader: WordReader,
    index: int,
    location: int,
    end: int,
) -> list[_Pending]:
    """Lay out the heads of every child of container `index`."""
    node = tree.nodes[index]
    layout = tree.layout

    if node.kind == ParameterKind.ARRAY:
        length = reader.uint(location, end)
        if length != len(tree.children(index)):
            raise _NotAMatch(ConditionFailure.ARRAY_LENGTH_MISMATCH)
        base = location + WORD_SIZE
    elif node.kind == ParameterKind.CALLDATA and index != 0:
        length = reader.uint(location, end)
        start = location + WORD_SIZE
        if length < SELECTOR_SIZE:
            raise CalldataOutOfBounds(start, SELECTOR_SIZE, start + length)
        reader.check(start, length, end)
        end = start + length
        base = start + SELECTOR_SIZE
    else:
        base = location

    cursor = HeadCursor.at(base)
    placed = []
    for child in tree.children(index):
        head = cursor.advance(layout.head_size[child])
        if layout.inline[child]:
            placed.append(_Pending(child, head, None, end))
        else:
            placed.append(_Pending(child, head, base, end))
    return placed


def _compare(node: ConditionNode, reader: WordReader, location: int, end: int) -> None:
    if node.kind == ParameterKind.STATIC:
        value = reader.word(location, end)
    else:
        length = reader.uint(location, end)
        value = reader.slice(location, WORD_SIZE + padded_size(length), end)

    operator = node.operator
    if operator == Operator.EQUAL_TO:
        if value != node.literal:
            raise _NotAMatch(ConditionFailure.PARAMETER_NOT_EQUAL)
    elif operator == Operator.ONE_OF:
        if value not in node.one_of:
            raise _NotAMatch(ConditionFailure.PARAMETER_NOT_ONE_OF)
    elif operator == Operator.GREATER_THAN:
        if int.from_bytes(value, "big") <= int.from_bytes(node.literal, "big"):
            raise _NotAMatch(ConditionFailure.PARAMETER_LESS_THAN_ALLOWED)
    elif operator == Operator.LESS_THAN:
        if int.from_bytes(value, "big") >= int.from_bytes(node.literal, "big"):
            raise _NotAMatch(ConditionFailure.PARAMETER_GREATER_THAN_ALLOWED)
    else:
        raise _NotAMatch(ConditionFailure.PARAMETER_NOT_EQUAL)
