"""
Role membership — which invokers hold which roles.

An invoker (a module enabled on the modifier) may hold any number of roles.
Calls that do not name a role act under the invoker's default role, which
must be configured explicitly: holding roles without a default and
omitting the role is rejected rather than guessed.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from roles_modifier.errors import ArraysDifferentLength, NoDefaultRole, NoMembership
from roles_modifier.policy.schema import RoleAssignment, normalize_address, normalize_role_key

logger = logging.getLogger(__name__)


class RoleRegistry:
    """Role assignments and default roles per invoker address."""

    def __init__(self) -> None:
        self._assignments: dict[str, RoleAssignment] = {}

    def assignment(self, invoker: str) -> RoleAssignment:
        return self._assignments.get(normalize_address(invoker), RoleAssignment())

    def roles_of(self, invoker: str) -> set[str]:
        return set(self.assignment(invoker).roles)

    def is_member(self, invoker: str, role_key: str) -> bool:
        return normalize_role_key(role_key) in self.assignment(invoker).roles

    def assign_roles(
        self,
        invoker: str,
        role_keys: Sequence[str],
        member_of: Sequence[bool],
    ) -> RoleAssignment:
        """
        Grant or revoke several roles at once.

        Raises:
            ArraysDifferentLength: role_keys and member_of differ in length.
        """
        if len(role_keys) != len(member_of):
            raise ArraysDifferentLength(
                f"{len(role_keys)} role keys but {len(member_of)} membership flags"
            )
        invoker = normalize_address(invoker)
        keys = [normalize_role_key(key) for key in role_keys]

        current = self._assignments.get(invoker, RoleAssignment())
        roles = set(current.roles)
        for key, member in zip(keys, member_of):
            if member:
                roles.add(key)
            else:
                roles.discard(key)

        updated = RoleAssignment(roles=roles, default_role=current.default_role)
        self._assignments[invoker] = updated
        logger.info("Roles assigned: invoker=%s roles=%d", invoker, len(roles))
        return updated

    def set_default_role(self, invoker: str, role_key: str) -> RoleAssignment:
        invoker = normalize_address(invoker)
        current = self._assignments.get(invoker, RoleAssignment())
        updated = RoleAssignment(roles=current.roles, default_role=role_key)
        self._assignments[invoker] = updated
        logger.info("Default role set: invoker=%s role=%s", invoker, updated.default_role)
        return updated

    def resolve_role(self, invoker: str, requested: str | None = None) -> str:
        """
        Determine the role a call acts under.

        Args:
            invoker: The module requesting the call.
            requested: Explicitly selected role, or None for the default.

        Raises:
            NoMembership: The invoker holds no role, or not the selected /
                default one.
            NoDefaultRole: The invoker holds roles, selected none, and has
                no default role configured.
        """
        invoker = normalize_address(invoker)
        assignment = self._assignments.get(invoker)
        if assignment is None or not assignment.roles:
            raise NoMembership(invoker)

        if requested is None:
            if assignment.default_role is None:
                raise NoDefaultRole(invoker)
            role_key = assignment.default_role
        else:
            role_key = normalize_role_key(requested)

        if role_key not in assignment.roles:
            raise NoMembership(invoker, role_key)
        return role_key
