"""
Permission Check — decides whether a role may make one call.

Every call forwarded to the avatar, including each sub-call of a batch,
passes through `PermissionChecker.check` first. Steps, each a possible
terminal failure:

1. TARGET        — the target must be allowed or scoped for the role
2. SIGNATURE     — scoped targets need at least a 4-byte selector
3. FUNCTION      — scoped targets need a rule for that selector
4. PARAMETERS    — the function's condition tree must accept the calldata
5. OPTIONS       — value transfer and delegate calls need explicit options

The check is a pure read of the policy store: no state changes, no
exceptions for denials. `authorize` is the raising form used by the
dispatcher.
"""

from __future__ import annotations

import logging

from eth_utils import encode_hex

from roles_modifier.checker.evaluator import evaluate
from roles_modifier.errors import ConditionViolation
from roles_modifier.policy.schema import (
    SELECTOR_SIZE,
    Clearance,
    ExecutionOptions,
    Operation,
    Status,
    Verdict,
    normalize_address,
)
from roles_modifier.policy.store import PolicyStore

logger = logging.getLogger(__name__)


class PermissionChecker:
    """
    Central permission enforcement over a policy store.

    The checker holds no state of its own: two checks of the same call
    against the same store always return the same verdict.
    """

    def __init__(self, store: PolicyStore) -> None:
        self.store = store

    def check(
        self,
        role_key: str,
        target: str,
        value: int,
        data: bytes,
        operation: Operation = Operation.CALL,
    ) -> Verdict:
        """
        Check a call against a role's policy.

        Args:
            role_key: Role the call acts under.
            target: Address being called.
            value: Wei sent along with the call.
            data: Calldata, selector included.
            operation: CALL or DELEGATE_CALL.

        Returns:
            Verdict with status OK or the first failing status.
        """
        target = normalize_address(target)
        rule = self.store.target_rule(role_key, target)

        if rule.clearance == Clearance.DENIED:
            return Verdict(
                status=Status.TARGET_ADDRESS_NOT_ALLOWED,
                reason=f"target {target} is not allowed for role {role_key}",
                target=target,
            )

        if rule.clearance == Clearance.TARGET:
            return self._check_options(rule.options, value, operation, target, None)

        if len(data) < SELECTOR_SIZE:
            return Verdict(
                status=Status.FUNCTION_SIGNATURE_TOO_SHORT,
                reason=f"calldata of {len(data)} bytes has no function selector",
                target=target,
            )

        selector = encode_hex(data[:SELECTOR_SIZE])
        function = self.store.function_rule(role_key, target, selector)
        if function is None:
            return Verdict(
                status=Status.FUNCTION_NOT_ALLOWED,
                reason=f"function {selector} is not allowed on {target}",
                target=target,
                selector=selector,
            )

        if function.conditions is not None:
            verdict = evaluate(function.conditions, data)
            if not verdict.is_allowed:
                logger.info(
                    "Parameters rejected: target=%s selector=%s node=%s cause=%s",
                    target, selector, verdict.node_index, verdict.cause.value,
                )
                return Verdict(
                    status=verdict.status,
                    reason=verdict.reason,
                    cause=verdict.cause,
                    node_index=verdict.node_index,
                    target=target,
                    selector=selector,
                )

        options = function.options if function.options is not None else rule.options
        return self._check_options(options, value, operation, target, selector)

    def authorize(
        self,
        role_key: str,
        target: str,
        value: int,
        data: bytes,
        operation: Operation = Operation.CALL,
    ) -> Verdict:
        """Like `check`, but raise ConditionViolation on denial."""
        verdict = self.check(role_key, target, value, data, operation)
        if not verdict.is_allowed:
            raise ConditionViolation(verdict)
        return verdict

    @staticmethod
    def _check_options(
        options: ExecutionOptions,
        value: int,
        operation: Operation,
        target: str,
        selector: str | None,
    ) -> Verdict:
        if value > 0 and not options & ExecutionOptions.SEND:
            return Verdict(
                status=Status.SEND_NOT_ALLOWED,
                reason=f"sending value to {target} is not allowed",
                target=target,
                selector=selector,
            )
        if operation == Operation.DELEGATE_CALL and not options & ExecutionOptions.DELEGATE_CALL:
            return Verdict(
                status=Status.DELEGATE_CALL_NOT_ALLOWED,
                reason=f"delegate calls to {target} are not allowed",
                target=target,
                selector=selector,
            )
        return Verdict(status=Status.OK, target=target, selector=selector)
