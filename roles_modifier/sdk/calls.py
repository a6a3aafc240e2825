"""
Policy calls — serialisable policy mutations and the call-list optimizer.

A role's policy is usually shipped as an ordered list of mutation calls
(JSON, camelCase fields, discriminated by `call`):

    [
        {"call": "scopeTarget", "roleKey": "0x…01", "targetAddress": "0x…"},
        {"call": "scopeFunction", "roleKey": "0x…01", "targetAddress": "0x…",
         "functionSig": "0x40c10f19", "conditions": [...]}
    ]

`remove_obsolete_calls` drops every call whose effect a later call fully
replaces, so replaying the pruned list yields the same effective policy
with fewer mutations.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from roles_modifier.policy.schema import (
    Address,
    ConditionNode,
    ExecutionOptions,
    HexBytes,
    Operator,
    ParameterKind,
    RoleKey,
    Selector,
)
from roles_modifier.policy.store import PolicyStore

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Mutation Calls
# ════════════════════════════════════════════════════════════════


class _Call(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    role_key: RoleKey
    target_address: Address

    def apply(self, store: PolicyStore) -> None:
        raise NotImplementedError


class AllowTarget(_Call):
    call: Literal["allowTarget"] = "allowTarget"
    options: ExecutionOptions = ExecutionOptions.NONE

    def apply(self, store: PolicyStore) -> None:
        store.allow_target(self.role_key, self.target_address, self.options)


class RevokeTarget(_Call):
    call: Literal["revokeTarget"] = "revokeTarget"

    def apply(self, store: PolicyStore) -> None:
        store.revoke_target(self.role_key, self.target_address)


class ScopeTarget(_Call):
    call: Literal["scopeTarget"] = "scopeTarget"

    def apply(self, store: PolicyStore) -> None:
        store.scope_target(self.role_key, self.target_address)


class ScopeFunction(_Call):
    call: Literal["scopeFunction"] = "scopeFunction"
    function_sig: Selector
    conditions: tuple[ConditionNode, ...] | None = None
    options: ExecutionOptions | None = None

    def apply(self, store: PolicyStore) -> None:
        store.scope_function(
            self.role_key, self.target_address, self.function_sig, self.conditions, self.options
        )


class ScopeFunctionExecutionOptions(_Call):
    call: Literal["scopeFunctionExecutionOptions"] = "scopeFunctionExecutionOptions"
    function_sig: Selector
    options: ExecutionOptions

    def apply(self, store: PolicyStore) -> None:
        store.scope_function_execution_options(
            self.role_key, self.target_address, self.function_sig, self.options
        )


class ScopeParameter(_Call):
    call: Literal["scopeParameter"] = "scopeParameter"
    function_sig: Selector
    param_index: int = Field(ge=0)
    kind: ParameterKind
    operator: Operator
    literal: HexBytes

    def apply(self, store: PolicyStore) -> None:
        store.scope_parameter(
            self.role_key,
            self.target_address,
            self.function_sig,
            self.param_index,
            self.kind,
            self.operator,
            self.literal,
        )


class ScopeParameterAsOneOf(_Call):
    call: Literal["scopeParameterAsOneOf"] = "scopeParameterAsOneOf"
    function_sig: Selector
    param_index: int = Field(ge=0)
    kind: ParameterKind
    values: tuple[HexBytes, ...]

    def apply(self, store: PolicyStore) -> None:
        store.scope_parameter_as_one_of(
            self.role_key,
            self.target_address,
            self.function_sig,
            self.param_index,
            self.kind,
            self.values,
        )


class UnscopeParameter(_Call):
    call: Literal["unscopeParameter"] = "unscopeParameter"
    function_sig: Selector
    param_index: int = Field(ge=0)

    def apply(self, store: PolicyStore) -> None:
        store.unscope_parameter(
            self.role_key, self.target_address, self.function_sig, self.param_index
        )


class ScopeRevokeFunction(_Call):
    call: Literal["scopeRevokeFunction"] = "scopeRevokeFunction"
    function_sig: Selector

    def apply(self, store: PolicyStore) -> None:
        store.scope_revoke_function(self.role_key, self.target_address, self.function_sig)


PolicyMutation = Annotated[
    Union[
        AllowTarget,
        RevokeTarget,
        ScopeTarget,
        ScopeFunction,
        ScopeFunctionExecutionOptions,
        ScopeParameter,
        ScopeParameterAsOneOf,
        UnscopeParameter,
        ScopeRevokeFunction,
    ],
    Field(discriminator="call"),
]

_CALL_LIST = TypeAdapter(list[PolicyMutation])

TARGET_CALLS = frozenset({"allowTarget", "revokeTarget"})
FUNCTION_CALLS = frozenset({"scopeFunction", "scopeRevokeFunction"})
PARAMETER_CALLS = frozenset({"scopeParameter", "scopeParameterAsOneOf", "unscopeParameter"})
OPTIONS_CALLS = frozenset({"scopeFunctionExecutionOptions"})


def load_calls(raw: str | bytes) -> list[PolicyMutation]:
    """Parse a JSON list of policy calls."""
    return _CALL_LIST.validate_json(raw)


def dump_calls(calls: Sequence[PolicyMutation]) -> str:
    return _CALL_LIST.dump_json(list(calls), by_alias=True, indent=2).decode()


def apply_calls(store: PolicyStore, calls: Iterable[PolicyMutation]) -> PolicyStore:
    """Replay calls on `store` in order and return it."""
    for call in calls:
        call.apply(store)
    return store


# ════════════════════════════════════════════════════════════════
# Optimizer
# ════════════════════════════════════════════════════════════════


def is_overridden_by(obsolete: PolicyMutation, override: PolicyMutation) -> bool:
    """
    True when `override`, applied after `obsolete`, fully replaces its effect.

    Calls on different roles or target addresses never override each other.
    """
    if obsolete.role_key != override.role_key:
        return False
    if obsolete.target_address != override.target_address:
        return False

    if override.call in TARGET_CALLS:
        return True
    if override.call == "scopeTarget":
        return obsolete.call in TARGET_CALLS or obsolete.call == "scopeTarget"

    # Everything below is function-level and needs a matching selector.
    if obsolete.call in TARGET_CALLS or obsolete.call == "scopeTarget":
        return False
    if obsolete.function_sig != override.function_sig:
        return False

    if override.call in FUNCTION_CALLS:
        return True
    if override.call in PARAMETER_CALLS:
        return obsolete.call in PARAMETER_CALLS and obsolete.param_index == override.param_index
    if override.call in OPTIONS_CALLS:
        return obsolete.call in OPTIONS_CALLS
    return False


def remove_obsolete_calls(calls: Sequence[PolicyMutation]) -> list[PolicyMutation]:
    """
    Drop calls overridden by a later call, keeping the survivors in order.

    Calls are taken back to front; each is compared only against the calls
    kept so far, so a call that was itself overridden cannot override an
    earlier one.
    """
    kept: list[PolicyMutation] = []
    for call in reversed(calls):
        if any(is_overridden_by(call, later) for later in kept):
            continue
        kept.append(call)
    kept.reverse()
    if len(kept) < len(calls):
        logger.info("Pruned %d obsolete policy calls, %d remain", len(calls) - len(kept), len(kept))
    return kept
