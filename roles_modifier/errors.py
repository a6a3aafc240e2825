"""
Roles Modifier errors.

Two families share the `RolesError` root:

- Call-time authorization errors, raised by the dispatcher before anything
  is forwarded to the avatar. A failing permission check surfaces as
  `ConditionViolation`, carrying the verdict (status code and, for
  parameter failures, the diagnostic cause).
- Governance-time validation errors, raised when a policy mutation is
  rejected. The policy store is left untouched.
"""

from __future__ import annotations

from roles_modifier.policy.schema import Status, Verdict


class RolesError(Exception):
    """Base class for every error raised by the Roles Modifier."""

    status: Status | None = None


# ════════════════════════════════════════════════════════════════
# Call-time
# ════════════════════════════════════════════════════════════════


class NoMembership(RolesError):
    """The invoker does not hold the role it tried to act under."""

    status = Status.NO_MEMBERSHIP

    def __init__(self, invoker: str, role_key: str | None = None) -> None:
        self.invoker = invoker
        self.role_key = role_key
        detail = f" for role {role_key}" if role_key else ""
        super().__init__(f"{invoker} has no membership{detail}")


class NoDefaultRole(NoMembership):
    """The invoker holds roles but has no default role to fall back on."""

    def __init__(self, invoker: str) -> None:
        super().__init__(invoker)
        self.args = (
            f"{invoker} holds roles but has no default role; select one explicitly",
        )


class ConditionViolation(RolesError):
    """A call failed the permission check."""

    def __init__(self, verdict: Verdict) -> None:
        self.verdict = verdict
        self.status = verdict.status
        message = verdict.status.value
        if verdict.reason:
            message = f"{message}: {verdict.reason}"
        super().__init__(message)


class UnacceptableMultiSendOffset(RolesError):
    """A batched call does not place its payload at the canonical offset."""

    status = Status.UNACCEPTABLE_MULTISEND_OFFSET

    def __init__(self, offset: int) -> None:
        self.offset = offset
        super().__init__(f"multisend payload offset must be 32, got {offset}")


class ModuleTransactionFailed(RolesError):
    """The avatar reported a failed execution and the caller asked to revert."""

    status = Status.MODULE_TRANSACTION_FAILED

    def __init__(self, return_data: bytes = b"") -> None:
        self.return_data = return_data
        super().__init__("module transaction failed")


# ════════════════════════════════════════════════════════════════
# Governance-time
# ════════════════════════════════════════════════════════════════


class GovernanceError(RolesError):
    """A policy mutation was rejected; the store is unchanged."""


class NotAuthorized(GovernanceError):
    """Only the controlling authority may mutate the policy."""

    def __init__(self, sender: str) -> None:
        self.sender = sender
        super().__init__(f"{sender} is not the owner")


class ArraysDifferentLength(GovernanceError):
    pass


class UnsuitableOneOfComparison(GovernanceError):
    pass


class UnsuitableRelativeComparison(GovernanceError):
    pass


class UnsuitableParameterType(GovernanceError):
    pass


class UnsuitableCompValue(GovernanceError):
    pass


class UnsuitableRootNode(GovernanceError):
    pass


class UnsuitableParent(GovernanceError):
    pass


class NotBFS(GovernanceError):
    """Condition nodes must be listed breadth-first."""


class NotEnoughCompValuesForOneOf(GovernanceError):
    pass


class ConditionTreeTooLarge(GovernanceError):
    pass
