"""
Roles Modifier — the call dispatcher and its governance surface.

Flow of a dispatched call:

    invoker ──► resolve role ──► permission check ──► executor
                    │                  │                  │
              NoMembership    ConditionViolation   ModuleTransactionFailed
                                                   (when asked to revert)

Nothing reaches the executor before the whole call is authorized. A batch
sent to a registered MultiSend aggregator is unrolled and every
transaction in it is checked under the same role; the first denial aborts
the batch.

Policy mutations go through the same object and are only accepted from
the owner. They are delegated to the policy store and role registry,
which validate before writing.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import structlog
from eth_utils import decode_hex

from roles_modifier.checker.multisend import unwrap
from roles_modifier.checker.permissions import PermissionChecker
from roles_modifier.config import RolesSettings, settings
from roles_modifier.errors import (
    ConditionViolation,
    ModuleTransactionFailed,
    NotAuthorized,
    RolesError,
)
from roles_modifier.policy.membership import RoleRegistry
from roles_modifier.policy.schema import (
    SELECTOR_SIZE,
    ConditionNode,
    ExecutionOptions,
    Operation,
    Operator,
    ParameterKind,
    RoleAssignment,
    Verdict,
    normalize_address,
    normalize_selector,
)
from roles_modifier.policy.store import PolicyStore

log = structlog.get_logger()


@dataclass(frozen=True)
class ExecutionResult:
    """What the avatar reports back for one executed call."""

    success: bool
    return_data: bytes = b""


class Executor(Protocol):
    """The avatar side: performs a call once it has been authorized."""

    def execute(self, to: str, value: int, data: bytes, operation: Operation) -> ExecutionResult: ...


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of an authorized dispatch."""

    success: bool
    return_data: bytes
    role_key: str
    verdicts: tuple[Verdict, ...]


class RolesModifier:
    """
    Role-gated forwarding of module calls to an avatar.

    Usage:
        modifier = RolesModifier(owner, executor)
        modifier.assign_roles(owner, module, [role], [True])
        modifier.set_default_role(owner, module, role)
        modifier.allow_target(owner, role, token)
        ok = modifier.exec_transaction_from_module(module, token, 0, data, Operation.CALL)
    """

    def __init__(
        self,
        owner: str,
        executor: Executor,
        config: RolesSettings = settings,
        store: PolicyStore | None = None,
        registry: RoleRegistry | None = None,
    ) -> None:
        self.owner = normalize_address(owner)
        self.executor = executor
        self.store = store if store is not None else PolicyStore()
        self.registry = registry if registry is not None else RoleRegistry()
        self.checker = PermissionChecker(self.store)
        self.multisend_selector = normalize_selector(config.multisend_selector)
        self.unwrappers: set[str] = {
            normalize_address(address) for address in config.multisend_addresses
        }

    # ═══════════════════════════════════════════════════════════════
    # Dispatch
    # ═══════════════════════════════════════════════════════════════

    def dispatch(
        self,
        invoker: str,
        to: str,
        value: int,
        data: bytes,
        operation: Operation = Operation.CALL,
        role_key: str | None = None,
        revert_on_failure: bool = True,
    ) -> DispatchResult:
        """
        Authorize a call and forward it to the executor.

        Args:
            invoker: Module requesting the call.
            to: Target address.
            value: Wei to send.
            data: Calldata, selector included.
            operation: CALL or DELEGATE_CALL.
            role_key: Role to act under; None uses the invoker's default role.
            revert_on_failure: Raise when the executed call fails.

        Returns:
            DispatchResult with the execution outcome and the verdicts of
            every checked call.

        Raises:
            NoMembership: The invoker may not act under the role.
            ConditionViolation: The call, or a call in the batch, is denied.
            UnacceptableMultiSendOffset: A batch payload is not at offset 32.
            ModuleTransactionFailed: Execution failed and revert_on_failure is set.
        """
        data = bytes(data)
        operation = Operation(operation)
        try:
            role = self.registry.resolve_role(invoker, role_key)
            verdicts = self._authorize(role, to, value, data, operation)
        except RolesError as e:
            log.info(
                "roles.dispatch.denied",
                invoker=invoker,
                to=to,
                status=e.status.value if e.status else None,
                error=str(e),
            )
            raise

        result = self.executor.execute(normalize_address(to), value, data, operation)
        if not result.success:
            log.warning(
                "roles.dispatch.execution_failed",
                invoker=invoker,
                to=to,
                role_key=role,
                revert=revert_on_failure,
            )
            if revert_on_failure:
                raise ModuleTransactionFailed(result.return_data)
        else:
            log.debug("roles.dispatch.executed", invoker=invoker, to=to, role_key=role)

        return DispatchResult(
            success=result.success,
            return_data=result.return_data,
            role_key=role,
            verdicts=verdicts,
        )

    def _authorize(
        self,
        role_key: str,
        to: str,
        value: int,
        data: bytes,
        operation: Operation,
    ) -> tuple[Verdict, ...]:
        if not self._is_batch(to, data, operation):
            return (self.checker.authorize(role_key, to, value, data, operation),)

        verdicts = []
        for position, transaction in enumerate(unwrap(data)):
            verdict = self.checker.check(
                role_key,
                transaction.to,
                transaction.value,
                transaction.data,
                transaction.operation,
            )
            if not verdict.is_allowed:
                raise ConditionViolation(dataclasses.replace(verdict, batch_index=position))
            verdicts.append(verdict)
        return tuple(verdicts)

    def _is_batch(self, to: str, data: bytes, operation: Operation) -> bool:
        return (
            operation == Operation.DELEGATE_CALL
            and normalize_address(to) in self.unwrappers
            and data[:SELECTOR_SIZE] == decode_hex(self.multisend_selector)
        )

    # ── Request shapes ─────────────────────────────────────────

    def exec_transaction_from_module(
        self, invoker: str, to: str, value: int, data: bytes, operation: Operation
    ) -> bool:
        """Default role; a failed execution is reported, not raised."""
        return self.dispatch(invoker, to, value, data, operation, revert_on_failure=False).success

    def exec_transaction_from_module_return_data(
        self, invoker: str, to: str, value: int, data: bytes, operation: Operation
    ) -> tuple[bool, bytes]:
        result = self.dispatch(invoker, to, value, data, operation, revert_on_failure=False)
        return result.success, result.return_data

    def exec_transaction_with_role(
        self,
        invoker: str,
        to: str,
        value: int,
        data: bytes,
        operation: Operation,
        role_key: str,
        should_revert: bool,
    ) -> bool:
        """Explicit role; `should_revert` turns a failed execution into an error."""
        return self.dispatch(
            invoker, to, value, data, operation, role_key=role_key, revert_on_failure=should_revert
        ).success

    def exec_transaction_with_role_return_data(
        self,
        invoker: str,
        to: str,
        value: int,
        data: bytes,
        operation: Operation,
        role_key: str,
        should_revert: bool,
    ) -> tuple[bool, bytes]:
        result = self.dispatch(
            invoker, to, value, data, operation, role_key=role_key, revert_on_failure=should_revert
        )
        return result.success, result.return_data

    # ═══════════════════════════════════════════════════════════════
    # Governance
    # ═══════════════════════════════════════════════════════════════

    def _only_owner(self, sender: str, operation: str) -> None:
        if normalize_address(sender) != self.owner:
            log.warning("roles.policy.unauthorized", sender=sender, operation=operation)
            raise NotAuthorized(sender)
        log.info(f"roles.policy.{operation}", sender=sender)

    def assign_roles(
        self,
        sender: str,
        module: str,
        role_keys: Sequence[str],
        member_of: Sequence[bool],
    ) -> RoleAssignment:
        self._only_owner(sender, "assign_roles")
        assignment = self.registry.assign_roles(module, role_keys, member_of)
        self.store.record(
            "AssignRoles",
            None,
            module=normalize_address(module),
            role_keys=list(role_keys),
            member_of=list(member_of),
        )
        return assignment

    def set_default_role(self, sender: str, module: str, role_key: str) -> RoleAssignment:
        self._only_owner(sender, "set_default_role")
        assignment = self.registry.set_default_role(module, role_key)
        self.store.record("SetDefaultRole", assignment.default_role, module=normalize_address(module))
        return assignment

    def allow_target(
        self,
        sender: str,
        role_key: str,
        target: str,
        options: ExecutionOptions = ExecutionOptions.NONE,
    ) -> None:
        self._only_owner(sender, "allow_target")
        self.store.allow_target(role_key, target, options)

    def revoke_target(self, sender: str, role_key: str, target: str) -> None:
        self._only_owner(sender, "revoke_target")
        self.store.revoke_target(role_key, target)

    def scope_target(self, sender: str, role_key: str, target: str) -> None:
        self._only_owner(sender, "scope_target")
        self.store.scope_target(role_key, target)

    def scope_function(
        self,
        sender: str,
        role_key: str,
        target: str,
        selector: str,
        conditions: Iterable[ConditionNode | dict[str, Any]] | None = None,
        options: ExecutionOptions | None = None,
    ) -> None:
        self._only_owner(sender, "scope_function")
        self.store.scope_function(role_key, target, selector, conditions, options)

    def scope_function_execution_options(
        self,
        sender: str,
        role_key: str,
        target: str,
        selector: str,
        options: ExecutionOptions,
    ) -> None:
        self._only_owner(sender, "scope_function_execution_options")
        self.store.scope_function_execution_options(role_key, target, selector, options)

    def scope_parameter(
        self,
        sender: str,
        role_key: str,
        target: str,
        selector: str,
        index: int,
        kind: ParameterKind,
        operator: Operator,
        literal: bytes,
    ) -> None:
        self._only_owner(sender, "scope_parameter")
        self.store.scope_parameter(role_key, target, selector, index, kind, operator, literal)

    def scope_parameter_as_one_of(
        self,
        sender: str,
        role_key: str,
        target: str,
        selector: str,
        index: int,
        kind: ParameterKind,
        values: Sequence[bytes],
    ) -> None:
        self._only_owner(sender, "scope_parameter_as_one_of")
        self.store.scope_parameter_as_one_of(role_key, target, selector, index, kind, values)

    def unscope_parameter(
        self, sender: str, role_key: str, target: str, selector: str, index: int
    ) -> None:
        self._only_owner(sender, "unscope_parameter")
        self.store.unscope_parameter(role_key, target, selector, index)

    def scope_revoke_function(self, sender: str, role_key: str, target: str, selector: str) -> None:
        self._only_owner(sender, "scope_revoke_function")
        self.store.scope_revoke_function(role_key, target, selector)

    def set_transaction_unwrapper(self, sender: str, address: str, enabled: bool = True) -> None:
        """Register or unregister a MultiSend aggregator address."""
        self._only_owner(sender, "set_transaction_unwrapper")
        address = normalize_address(address)
        if enabled:
            self.unwrappers.add(address)
        else:
            self.unwrappers.discard(address)
        self.store.record("SetTransactionUnwrapper", None, address=address, enabled=enabled)
