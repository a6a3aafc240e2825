"""
Policy Store — per-role target and function rules.

The store is the single source of truth read by the permission checker and
written only by governance mutations. Each mutation is atomic: it either
validates fully and replaces the affected rule, or raises a
`GovernanceError` and leaves the store untouched. Every accepted mutation
appends a `PolicyEvent` to the audit trail.

Function rules are keyed by (target, selector) independently of the
target's clearance. While a target is allowed wholesale or denied its
function rules are dormant: they are kept, but only consulted again once
the target is scoped.

A function's execution options are held apart from its conditions. They
are set by `scope_function` and `scope_function_execution_options`,
cleared by `scope_revoke_function`, and survive parameter edits that
remove and re-create the function.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Sequence
from typing import Any

from roles_modifier.config import settings
from roles_modifier.errors import ConditionTreeTooLarge, UnsuitableParameterType
from roles_modifier.policy.integrity import build_condition_tree, parameter_node
from roles_modifier.policy.schema import (
    Clearance,
    ConditionNode,
    ConditionTree,
    ExecutionOptions,
    FunctionRule,
    Operator,
    ParameterKind,
    PolicyEvent,
    TargetRule,
    normalize_address,
    normalize_role_key,
    normalize_selector,
)

logger = logging.getLogger(__name__)

DENIED = TargetRule()

_ROOT = ConditionNode(parent=0, kind=ParameterKind.CALLDATA, operator=Operator.MATCHES)
_PLACEHOLDER = ConditionNode(parent=0, kind=ParameterKind.NONE, operator=Operator.PASS)

# A condition subtree detached from its arena: (node, children).
_Subtree = tuple[ConditionNode, list[Any]]


class PolicyStore:
    """
    Role policies: target rules and function rules per role key.

    Usage:
        store = PolicyStore()
        store.scope_target(role, token)
        store.scope_function(role, token, "0xa9059cbb", conditions=[...])
        rule = store.function_rule(role, token, "0xa9059cbb")
    """

    def __init__(self) -> None:
        self._targets: dict[str, dict[str, TargetRule]] = {}
        # Presence of a key means the function is allowed; None allows any arguments.
        self._functions: dict[str, dict[tuple[str, str], ConditionTree | None]] = {}
        self._options: dict[str, dict[tuple[str, str], ExecutionOptions]] = {}
        self.events: list[PolicyEvent] = []

    # ── Reads ──────────────────────────────────────────────────

    def target_rule(self, role_key: str, target: str) -> TargetRule:
        """The target's rule; absent targets are denied."""
        role_key = normalize_role_key(role_key)
        return self._targets.get(role_key, {}).get(normalize_address(target), DENIED)

    def function_rule(self, role_key: str, target: str, selector: str) -> FunctionRule | None:
        role_key = normalize_role_key(role_key)
        key = (normalize_address(target), normalize_selector(selector))
        functions = self._functions.get(role_key, {})
        if key not in functions:
            return None
        return FunctionRule(
            options=self._options.get(role_key, {}).get(key),
            conditions=functions[key],
        )

    def roles(self) -> set[str]:
        """Role keys that have ever been configured."""
        return set(self._targets) | set(self._functions)

    def snapshot(self, role_key: str) -> dict[str, tuple[TargetRule, dict[str, FunctionRule]]]:
        """
        Effective policy of a role, for comparison and display.

        Denied targets are omitted and dormant function rules (under targets
        that are not scoped) are left out, so two stores that authorize
        exactly the same calls produce equal snapshots.
        """
        role_key = normalize_role_key(role_key)
        functions = self._functions.get(role_key, {})
        result = {}
        for target, rule in sorted(self._targets.get(role_key, {}).items()):
            if rule.clearance == Clearance.DENIED:
                continue
            scoped: dict[str, FunctionRule] = {}
            if rule.clearance == Clearance.FUNCTION:
                scoped = {
                    selector: self.function_rule(role_key, target, selector)
                    for address, selector in sorted(functions)
                    if address == target
                }
            result[target] = (rule, scoped)
        return result

    def effective_policy(self) -> dict[str, dict[str, tuple[TargetRule, dict[str, FunctionRule]]]]:
        """Snapshots of every role with at least one allowed target."""
        policies = {role: self.snapshot(role) for role in sorted(self.roles())}
        return {role: policy for role, policy in policies.items() if policy}

    # ── Target-level mutations ─────────────────────────────────

    def allow_target(
        self,
        role_key: str,
        target: str,
        options: ExecutionOptions = ExecutionOptions.NONE,
    ) -> None:
        """Allow every call to `target`, subject to execution options."""
        role_key, target = normalize_role_key(role_key), normalize_address(target)
        options = ExecutionOptions(options)
        self._set_target(role_key, target, TargetRule(clearance=Clearance.TARGET, options=options))
        self.record("AllowTarget", role_key, target=target, options=int(options))

    def revoke_target(self, role_key: str, target: str) -> None:
        """Deny every call to `target`."""
        role_key, target = normalize_role_key(role_key), normalize_address(target)
        self._targets.get(role_key, {}).pop(target, None)
        self.record("RevokeTarget", role_key, target=target)

    def scope_target(self, role_key: str, target: str) -> None:
        """Only allow calls to `target` that match a function rule."""
        role_key, target = normalize_role_key(role_key), normalize_address(target)
        self._set_target(role_key, target, TargetRule(clearance=Clearance.FUNCTION))
        self.record("ScopeTarget", role_key, target=target)

    # ── Function-level mutations ───────────────────────────────

    def scope_function(
        self,
        role_key: str,
        target: str,
        selector: str,
        conditions: Iterable[ConditionNode | dict[str, Any]] | None = None,
        options: ExecutionOptions | None = None,
    ) -> None:
        """
        Replace the rule of one function.

        Args:
            conditions: Flat condition nodes, root first. None allows any
                arguments.
            options: Function-level execution options. None falls back to
                the target's options.
        """
        role_key, target = normalize_role_key(role_key), normalize_address(target)
        selector = normalize_selector(selector)
        tree = build_condition_tree(conditions) if conditions is not None else None
        if options is not None:
            options = ExecutionOptions(options)
        self._set_function(role_key, target, selector, tree)
        self._set_options(role_key, target, selector, options)
        self.record(
            "ScopeFunction",
            role_key,
            target=target,
            selector=selector,
            conditions=len(tree.nodes) if tree else None,
            options=None if options is None else int(options),
        )

    def scope_function_execution_options(
        self,
        role_key: str,
        target: str,
        selector: str,
        options: ExecutionOptions,
    ) -> None:
        """
        Replace only the execution options of a function.

        Options set on a function that is not allowed are kept and take
        effect once the function is scoped through its parameters.
        """
        role_key, target = normalize_role_key(role_key), normalize_address(target)
        selector = normalize_selector(selector)
        options = ExecutionOptions(options)
        if (target, selector) not in self._functions.get(role_key, {}):
            logger.warning(
                "Execution options set on %s at %s, which is not allowed for role %s",
                selector, target, role_key[:10],
            )
        self._set_options(role_key, target, selector, options)
        self.record(
            "ScopeFunctionExecutionOptions",
            role_key,
            target=target,
            selector=selector,
            options=int(options),
        )

    def scope_revoke_function(self, role_key: str, target: str, selector: str) -> None:
        """Remove the rule of one function, denying it."""
        role_key, target = normalize_role_key(role_key), normalize_address(target)
        selector = normalize_selector(selector)
        self._functions.get(role_key, {}).pop((target, selector), None)
        self._set_options(role_key, target, selector, None)
        self.record("ScopeRevokeFunction", role_key, target=target, selector=selector)

    # ── Parameter-level mutations ──────────────────────────────

    def scope_parameter(
        self,
        role_key: str,
        target: str,
        selector: str,
        index: int,
        kind: ParameterKind,
        operator: Operator,
        literal: bytes,
    ) -> None:
        """Constrain top-level argument `index` with a single comparison."""
        node = parameter_node(ParameterKind(kind), Operator(operator), literal)
        self._edit_argument("ScopeParameter", role_key, target, selector, index, node)

    def scope_parameter_as_one_of(
        self,
        role_key: str,
        target: str,
        selector: str,
        index: int,
        kind: ParameterKind,
        values: Sequence[bytes],
    ) -> None:
        """Constrain top-level argument `index` to a set of values."""
        node = parameter_node(ParameterKind(kind), Operator.ONE_OF, one_of=tuple(values))
        self._edit_argument("ScopeParameterAsOneOf", role_key, target, selector, index, node)

    def unscope_parameter(self, role_key: str, target: str, selector: str, index: int) -> None:
        """
        Lift the constraint on top-level argument `index`.

        A function left without any constrained argument is removed, so it
        is no longer allowed at all.
        """
        self._edit_argument("UnscopeParameter", role_key, target, selector, index, None)

    def _edit_argument(
        self,
        event: str,
        role_key: str,
        target: str,
        selector: str,
        index: int,
        node: ConditionNode | None,
    ) -> None:
        role_key, target = normalize_role_key(role_key), normalize_address(target)
        selector = normalize_selector(selector)
        if index < 0:
            raise UnsuitableParameterType(f"parameter index must not be negative, got {index}")
        if index >= settings.max_condition_nodes - 1:
            raise ConditionTreeTooLarge(f"parameter index {index} is out of range")

        current = self._functions.get(role_key, {}).get((target, selector))
        tree = _with_argument(current, index, node)
        if tree is not None and len(tree.nodes) > settings.max_condition_nodes:
            raise ConditionTreeTooLarge(f"{len(tree.nodes)} nodes exceed the limit")

        if tree is None:
            self._functions.get(role_key, {}).pop((target, selector), None)
        else:
            self._set_function(role_key, target, selector, tree)

        args: dict[str, Any] = {"target": target, "selector": selector, "index": index}
        if node is not None:
            args.update(kind=int(node.kind), operator=int(node.operator))
        self.record(event, role_key, **args)

    # ── Internals ──────────────────────────────────────────────

    def _set_target(self, role_key: str, target: str, rule: TargetRule) -> None:
        self._targets.setdefault(role_key, {})[target] = rule

    def _set_function(
        self, role_key: str, target: str, selector: str, tree: ConditionTree | None
    ) -> None:
        self._functions.setdefault(role_key, {})[(target, selector)] = tree

    def _set_options(
        self, role_key: str, target: str, selector: str, options: ExecutionOptions | None
    ) -> None:
        if options is None:
            self._options.get(role_key, {}).pop((target, selector), None)
        else:
            self._options.setdefault(role_key, {})[(target, selector)] = options

    def record(self, name: str, role_key: str | None, **args: Any) -> None:
        self.events.append(PolicyEvent(name=name, role_key=role_key, args=args))
        logger.info("Policy %s: role=%s %s", name, role_key[:10] if role_key else "-", args)


# ════════════════════════════════════════════════════════════════
# Tree editing
# ════════════════════════════════════════════════════════════════


def _detach(tree: ConditionTree, index: int) -> _Subtree:
    return tree.nodes[index], [_detach(tree, child) for child in tree.children(index)]


def _attach(root: _Subtree) -> tuple[ConditionNode, ...]:
    """Lay a detached tree out breadth-first, rewriting parent links."""
    nodes: list[ConditionNode] = []
    queue: deque[tuple[_Subtree, int]] = deque([(root, 0)])
    while queue:
        (node, kids), parent = queue.popleft()
        position = len(nodes)
        nodes.append(node.model_copy(update={"parent": parent}))
        queue.extend((kid, position) for kid in kids)
    return tuple(nodes)


def _is_unscoped(argument: _Subtree) -> bool:
    return argument[0].operator == Operator.PASS


def _with_argument(
    tree: ConditionTree | None,
    index: int,
    node: ConditionNode | None,
) -> ConditionTree | None:
    """
    Return `tree` with top-level argument `index` replaced by `node`, or by
    an unchecked placeholder when `node` is None.

    Trailing unchecked arguments are dropped. Returns None when no argument
    remains constrained.
    """
    arguments: list[_Subtree] = list(_detach(tree, 0)[1]) if tree is not None else []
    while len(arguments) <= index:
        arguments.append((_PLACEHOLDER, []))
    arguments[index] = (node, []) if node is not None else (_PLACEHOLDER, [])

    while arguments and _is_unscoped(arguments[-1]):
        arguments.pop()
    if not arguments:
        return None
    return ConditionTree(nodes=_attach((_ROOT, arguments)))
