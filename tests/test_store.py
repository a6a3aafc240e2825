"""
Tests for the Policy Store.

Validates:
- Target clearance lifecycle (allow, revoke, scope) and idempotence
- Function rules, dormancy under non-scoped targets
- Single-parameter scoping and unscoping
- Atomic rejection of invalid mutations
"""

from __future__ import annotations

import pytest

from helpers import MINT, OTHER_ROLE, OTHER_TARGET, ROLE, ROOT, TARGET, TRANSFER, K, O, dynamic, node, word
from roles_modifier.errors import (
    NotEnoughCompValuesForOneOf,
    UnsuitableOneOfComparison,
    UnsuitableParameterType,
)
from roles_modifier.policy.schema import Clearance, ExecutionOptions
from roles_modifier.policy.store import PolicyStore


class TestTargets:
    """Target clearance lifecycle."""

    def setup_method(self):
        self.store = PolicyStore()

    def test_absent_target_is_denied(self):
        """Targets start out denied."""
        assert self.store.target_rule(ROLE, TARGET).clearance == Clearance.DENIED
        assert self.store.snapshot(ROLE) == {}

    def test_allow_is_idempotent(self):
        """Allowing twice leaves the same policy."""
        self.store.allow_target(ROLE, TARGET, ExecutionOptions.SEND)
        once = self.store.snapshot(ROLE)
        self.store.allow_target(ROLE, TARGET, ExecutionOptions.SEND)
        assert self.store.snapshot(ROLE) == once
        assert [event.name for event in self.store.events] == ["AllowTarget", "AllowTarget"]

    def test_allow_then_revoke_restores_denial(self):
        """Revoking returns the target to its initial state."""
        self.store.allow_target(ROLE, TARGET)
        self.store.revoke_target(ROLE, TARGET)
        assert self.store.target_rule(ROLE, TARGET).clearance == Clearance.DENIED
        assert self.store.snapshot(ROLE) == {}

    def test_checksummed_and_lowercase_addresses_match(self):
        """Address case does not create separate rules."""
        self.store.allow_target(ROLE, "0x" + "AB" * 20)
        assert self.store.target_rule(ROLE, "0x" + "ab" * 20).clearance == Clearance.TARGET

    def test_roles_are_isolated(self):
        """Rules for one role never leak to another."""
        self.store.allow_target(ROLE, TARGET)
        assert self.store.target_rule(OTHER_ROLE, TARGET).clearance == Clearance.DENIED

    def test_effective_policy_lists_roles_with_allowed_targets(self):
        """Roles with nothing allowed are left out."""
        self.store.allow_target(ROLE, TARGET)
        self.store.allow_target(OTHER_ROLE, OTHER_TARGET)
        self.store.revoke_target(OTHER_ROLE, OTHER_TARGET)
        assert list(self.store.effective_policy()) == [ROLE]


class TestFunctions:
    """Function rules and execution options."""

    def setup_method(self):
        self.store = PolicyStore()
        self.store.scope_target(ROLE, TARGET)

    def test_scope_function_without_conditions(self):
        """A function can be allowed with any arguments."""
        self.store.scope_function(ROLE, TARGET, MINT)
        rule = self.store.function_rule(ROLE, TARGET, MINT)
        assert rule is not None
        assert rule.conditions is None
        assert rule.options is None

    def test_scope_function_with_conditions(self):
        """A whole condition tree can be installed at once."""
        self.store.scope_function(
            ROLE,
            TARGET,
            MINT,
            conditions=[ROOT, node(0, K.STATIC), node(0, K.STATIC, O.EQUAL_TO, literal=word(99))],
            options=ExecutionOptions.SEND,
        )
        rule = self.store.function_rule(ROLE, TARGET, MINT)
        assert len(rule.conditions.nodes) == 3
        assert rule.options == ExecutionOptions.SEND

    def test_revoke_function(self):
        """Revoking removes the function rule."""
        self.store.scope_function(ROLE, TARGET, MINT)
        self.store.scope_revoke_function(ROLE, TARGET, MINT)
        assert self.store.function_rule(ROLE, TARGET, MINT) is None

    def test_function_rules_are_dormant_while_target_allowed(self):
        """Function rules only show while the target is scoped."""
        self.store.scope_function(ROLE, TARGET, MINT)
        self.store.allow_target(ROLE, TARGET)
        assert self.store.snapshot(ROLE)[TARGET][1] == {}

        self.store.scope_target(ROLE, TARGET)
        assert list(self.store.snapshot(ROLE)[TARGET][1]) == [MINT]

    def test_execution_options_only(self):
        """Options can be changed without touching conditions."""
        self.store.scope_function(ROLE, TARGET, MINT)
        self.store.scope_function_execution_options(ROLE, TARGET, MINT, ExecutionOptions.BOTH)
        assert self.store.function_rule(ROLE, TARGET, MINT).options == ExecutionOptions.BOTH

    def test_execution_options_do_not_allow_a_function(self):
        """Options alone never allow a function."""
        self.store.scope_function_execution_options(ROLE, TARGET, MINT, ExecutionOptions.SEND)
        assert self.store.function_rule(ROLE, TARGET, MINT) is None

        self.store.scope_parameter(ROLE, TARGET, MINT, 1, K.STATIC, O.EQUAL_TO, word(99))
        assert self.store.function_rule(ROLE, TARGET, MINT).options == ExecutionOptions.SEND

    def test_revoke_function_clears_options(self):
        """Revoking a function forgets its options."""
        self.store.scope_function(ROLE, TARGET, MINT, options=ExecutionOptions.SEND)
        self.store.scope_revoke_function(ROLE, TARGET, MINT)
        self.store.scope_parameter(ROLE, TARGET, MINT, 0, K.STATIC, O.EQUAL_TO, word(1))
        assert self.store.function_rule(ROLE, TARGET, MINT).options is None


class TestParameters:
    """Single-argument scoping and unscoping."""

    def setup_method(self):
        self.store = PolicyStore()
        self.store.scope_target(ROLE, TARGET)

    def _tree(self):
        return self.store.function_rule(ROLE, TARGET, MINT).conditions

    def test_scope_parameter_pads_earlier_arguments(self):
        """Earlier arguments are filled with unchecked placeholders."""
        self.store.scope_parameter(ROLE, TARGET, MINT, 2, K.STATIC, O.EQUAL_TO, word(7))
        tree = self._tree()
        assert [n.kind for n in tree.nodes] == [K.CALLDATA, K.NONE, K.NONE, K.STATIC]
        assert tree.nodes[0].operator == O.MATCHES
        assert tree.nodes[3].literal == word(7)

    def test_rescoping_replaces_the_argument(self):
        """Scoping an argument again replaces its condition."""
        self.store.scope_parameter(ROLE, TARGET, MINT, 1, K.STATIC, O.EQUAL_TO, word(7))
        self.store.scope_parameter(ROLE, TARGET, MINT, 1, K.STATIC, O.LESS_THAN, word(8))
        tree = self._tree()
        assert len(tree.nodes) == 3
        assert tree.nodes[2].operator == O.LESS_THAN

    def test_scope_parameter_keeps_function_conditions(self):
        """Scoping one argument keeps the rest of the tree."""
        self.store.scope_function(
            ROLE,
            TARGET,
            MINT,
            conditions=[ROOT, node(0, K.STATIC, O.EQUAL_TO, literal=word(5))],
            options=ExecutionOptions.SEND,
        )
        self.store.scope_parameter(ROLE, TARGET, MINT, 1, K.STATIC, O.EQUAL_TO, word(9))
        rule = self.store.function_rule(ROLE, TARGET, MINT)
        assert [n.literal for n in rule.conditions.nodes[1:]] == [word(5), word(9)]
        assert rule.options == ExecutionOptions.SEND

    def test_unscope_middle_argument(self):
        """Unscoping an argument leaves a placeholder."""
        self.store.scope_parameter(ROLE, TARGET, MINT, 0, K.STATIC, O.EQUAL_TO, word(1))
        self.store.scope_parameter(ROLE, TARGET, MINT, 1, K.STATIC, O.EQUAL_TO, word(2))
        self.store.unscope_parameter(ROLE, TARGET, MINT, 0)
        tree = self._tree()
        assert [n.kind for n in tree.nodes] == [K.CALLDATA, K.NONE, K.STATIC]

    def test_unscope_last_argument_removes_function(self):
        """Unscoping the only constrained argument removes the function."""
        self.store.scope_parameter(ROLE, TARGET, MINT, 1, K.STATIC, O.EQUAL_TO, word(2))
        self.store.unscope_parameter(ROLE, TARGET, MINT, 1)
        assert self.store.function_rule(ROLE, TARGET, MINT) is None

    def test_scope_as_one_of(self):
        """ONE_OF values are stored in calldata form."""
        values = [dynamic("a"), dynamic("b")]
        self.store.scope_parameter_as_one_of(ROLE, TARGET, TRANSFER, 0, K.DYNAMIC, values)
        rule = self.store.function_rule(ROLE, TARGET, TRANSFER)
        assert rule.conditions.nodes[1].one_of == tuple(v[32:] for v in values)

    def test_empty_dynamic_literal(self):
        """An empty dynamic literal is accepted as the empty value."""
        self.store.scope_parameter(ROLE, TARGET, MINT, 0, K.DYNAMIC, O.EQUAL_TO, b"")
        assert self._tree().nodes[1].literal == word(0)

    def test_rejected_mutation_leaves_store_untouched(self):
        """A rejected mutation changes nothing and records nothing."""
        self.store.scope_parameter(ROLE, TARGET, MINT, 1, K.STATIC, O.EQUAL_TO, word(2))
        before = self.store.snapshot(ROLE)
        events = len(self.store.events)

        with pytest.raises(UnsuitableOneOfComparison):
            self.store.scope_parameter(ROLE, TARGET, MINT, 1, K.STATIC, O.ONE_OF, word(3))
        with pytest.raises(NotEnoughCompValuesForOneOf):
            self.store.scope_parameter_as_one_of(ROLE, TARGET, MINT, 1, K.DYNAMIC, [dynamic("a")])
        with pytest.raises(UnsuitableParameterType):
            self.store.scope_parameter(ROLE, TARGET, MINT, -1, K.STATIC, O.EQUAL_TO, word(3))

        assert self.store.snapshot(ROLE) == before
        assert len(self.store.events) == events
