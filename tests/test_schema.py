"""
Tests for the policy schema.

Validates:
- Scalar normalisation of addresses, role keys and selectors
- Wire-compatible enum values
- Condition tree parent links and derived ABI layout
"""

from __future__ import annotations

import pytest
from pydantic import TypeAdapter, ValidationError

from helpers import ROLE, ROOT, K, O, node, word
from roles_modifier.policy.schema import (
    Address,
    ConditionFailure,
    ConditionNode,
    ConditionTree,
    ExecutionOptions,
    PolicyEvent,
    RoleAssignment,
    Status,
    Verdict,
    normalize_address,
    normalize_role_key,
    normalize_selector,
)


class TestNormalisation:
    """Scalar inputs normalise to one canonical form."""

    def test_checksum_address_lowercased(self):
        """Valid checksummed addresses are stored lower-case."""
        checksummed = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
        assert normalize_address(checksummed) == checksummed.lower()

    def test_bad_checksum_rejected(self):
        """Mixed case is a checksum claim and must verify."""
        with pytest.raises(ValueError):
            normalize_address("0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAeD")

    def test_uniform_case_needs_no_checksum(self):
        """All-lower and all-upper hex carry no checksum to verify."""
        lower = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
        assert normalize_address(lower) == lower
        assert normalize_address("0x" + lower[2:].upper()) == lower

    def test_bad_checksum_rejected_by_address_fields(self):
        """Fields typed as Address apply the same check."""
        with pytest.raises(ValidationError):
            TypeAdapter(Address).validate_python("0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAeD")

    def test_short_address_rejected(self):
        """Addresses must be 20 bytes."""
        with pytest.raises(ValueError):
            normalize_address("0x1234")

    def test_role_key_forms(self):
        """Integers, bytes and hex all name the same role."""
        assert normalize_role_key(1) == ROLE
        assert normalize_role_key(bytes.fromhex(ROLE[2:])) == ROLE
        assert normalize_role_key(ROLE.upper().replace("0X", "0x")) == ROLE

    @pytest.mark.parametrize("value", [True, -1, 2**256, b"\x01" * 31, "0x01"])
    def test_invalid_role_keys(self, value):
        """Booleans and wrong-sized values are not role keys."""
        with pytest.raises(ValueError):
            normalize_role_key(value)

    def test_selector(self):
        assert normalize_selector("0x40C10F19") == "0x40c10f19"
        assert normalize_selector(b"\x40\xc1\x0f\x19") == "0x40c10f19"
        with pytest.raises(ValueError):
            normalize_selector("0x40c10f")


class TestEnums:
    """Enum values match the on-chain encoding."""

    def test_operator_values(self):
        """Operator codes match the wire values."""
        assert [int(o) for o in (O.PASS, O.MATCHES, O.EQUAL_TO, O.GREATER_THAN, O.LESS_THAN, O.ONE_OF)] == [
            0, 5, 16, 17, 18, 19,
        ]

    def test_kind_values(self):
        assert [int(k) for k in K] == [0, 1, 2, 3, 4, 5]

    def test_execution_options_flags(self):
        assert ExecutionOptions.BOTH == ExecutionOptions.SEND | ExecutionOptions.DELEGATE_CALL

    def test_status_codes_are_user_visible_names(self):
        """Status values are the names shown to users."""
        assert Status.PARAMETER_NOT_ALLOWED.value == "ParameterNotAllowed"
        assert Status.UNACCEPTABLE_MULTISEND_OFFSET.value == "UnacceptableMultiSendOffset"

    def test_decode_error_cause(self):
        assert ConditionFailure.CALLDATA_OUT_OF_BOUNDS.is_decode_error
        assert not ConditionFailure.PARAMETER_NOT_EQUAL.is_decode_error


class TestConditionTree:
    """Parent links and the derived ABI layout."""

    def test_literal_accepts_hex_and_serialises_to_hex(self):
        """Literals accept hex strings and dump back to hex."""
        scoped = ConditionNode(parent=0, kind=K.STATIC, operator=O.EQUAL_TO, literal="0x" + "00" * 31 + "63")
        assert scoped.literal == word(99)
        assert scoped.model_dump(mode="json")["literal"] == "0x" + "00" * 31 + "63"

    def test_parent_must_precede_child(self):
        """A node's parent must come before it."""
        with pytest.raises(ValidationError):
            ConditionTree(nodes=(ROOT, node(1, K.STATIC)))

    def test_root_is_its_own_parent(self):
        with pytest.raises(ValidationError):
            ConditionTree(nodes=(node(1, K.CALLDATA),))

    def test_static_tuple_layout(self):
        """Static tuples are inline and sized by their fields."""
        tree = ConditionTree(
            nodes=(
                ROOT,
                node(0, K.TUPLE, O.MATCHES),
                node(0, K.DYNAMIC),
                node(1, K.STATIC),
                node(1, K.STATIC),
            )
        )
        layout = tree.layout
        assert layout.children[0] == (1, 2)
        assert layout.inline[1] is True
        assert layout.head_size[1] == 64
        assert layout.inline[2] is False
        assert layout.head_size[2] == 32
        assert tree.max_depth == 2

    def test_tuple_with_dynamic_field_is_not_inline(self):
        """A tuple with a dynamic field sits behind an offset."""
        tree = ConditionTree(nodes=(ROOT, node(0, K.TUPLE, O.MATCHES), node(1, K.DYNAMIC)))
        assert tree.layout.inline[1] is False
        assert tree.layout.head_size[1] == 32

    def test_trees_compare_by_nodes(self):
        nodes = (ROOT, node(0, K.STATIC, O.EQUAL_TO, literal=word(1)))
        assert ConditionTree(nodes=nodes) == ConditionTree(nodes=nodes)


class TestRecords:
    def test_role_assignment_normalises_keys(self):
        """Role keys in assignments are normalised."""
        assignment = RoleAssignment(roles={1}, default_role=1)
        assert assignment.roles == {ROLE}
        assert assignment.default_role == ROLE

    def test_policy_event_timestamp(self):
        event = PolicyEvent(name="AllowTarget", role_key=ROLE)
        assert event.timestamp.tzinfo is not None

    def test_verdict_is_allowed(self):
        assert Verdict(Status.OK).is_allowed
        assert not Verdict(Status.FUNCTION_NOT_ALLOWED).is_allowed
