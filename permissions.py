"""
Permission evaluation for project and team membership actions.

``evaluate`` is a pure function over an already loaded ``EntityContext``: it never
touches the store, so the policy tables below can be read and tested on their own.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Union

from schemas import EntityKind, Membership, MembershipStatus, ProjectRole, TeamRole


class Action(str, Enum):
    INVITE_MEMBER = "invite_member"
    REMOVE_MEMBER = "remove_member"
    CHANGE_ROLE = "change_role"
    VIEW_MEMBERS = "view_members"
    MANAGE_SETTINGS = "manage_settings"
    DELETE = "delete"


@dataclass(frozen=True)
class Allowed:
    allowed = True


@dataclass(frozen=True)
class Denied:
    reason: str
    allowed = False


Decision = Union[Allowed, Denied]


@dataclass(frozen=True)
class EntityContext:
    """A project or team together with the acting user's membership, if any."""

    kind: EntityKind
    id: str
    owner_id: str
    membership: Optional[Membership] = None
    # False for a team whose project the actor no longer belongs to.
    in_project: bool = True


# Roles permitted to perform each action, per entity kind.
PROJECT_POLICY: Dict[Action, FrozenSet[ProjectRole]] = {
    Action.INVITE_MEMBER: frozenset({ProjectRole.ADMIN}),
    Action.MANAGE_SETTINGS: frozenset({ProjectRole.ADMIN}),
    Action.DELETE: frozenset(),
    Action.REMOVE_MEMBER: frozenset({ProjectRole.ADMIN}),
    Action.CHANGE_ROLE: frozenset({ProjectRole.ADMIN}),
    Action.VIEW_MEMBERS: frozenset(ProjectRole),
}

TEAM_POLICY: Dict[Action, FrozenSet[TeamRole]] = {
    Action.INVITE_MEMBER: frozenset({TeamRole.OWNER, TeamRole.ADMIN}),
    Action.MANAGE_SETTINGS: frozenset({TeamRole.OWNER, TeamRole.ADMIN}),
    Action.DELETE: frozenset(),
    Action.REMOVE_MEMBER: frozenset({TeamRole.OWNER, TeamRole.ADMIN}),
    Action.CHANGE_ROLE: frozenset({TeamRole.OWNER, TeamRole.ADMIN}),
    Action.VIEW_MEMBERS: frozenset(TeamRole),
}

POLICIES = {EntityKind.PROJECT: PROJECT_POLICY, EntityKind.TEAM: TEAM_POLICY}

# Actions aimed at another member; those members are protected by their own role.
TARGETED_ACTIONS = frozenset({Action.REMOVE_MEMBER, Action.CHANGE_ROLE})
PROTECTED_ROLES = frozenset({"owner", "admin"})

for _kind, _policy in POLICIES.items():
    _missing = set(Action) - set(_policy)
    if _missing:
        raise RuntimeError(f"{_kind.value} policy has no rule for {sorted(a.value for a in _missing)}")


def evaluate(
    actor_id: str,
    entity: EntityContext,
    action: Union[Action, str],
    target_role: Optional[str] = None,
) -> Decision:
    """Decide whether ``actor_id`` may perform ``action`` on ``entity``.

    ``target_role`` is the current role of the member being removed or re-roled;
    it is ignored for actions that do not target another member.
    """
    try:
        action = Action(action)
    except ValueError:
        return Denied("unrecognized action")

    if not entity.in_project:
        return Denied("not a member of the team's project")

    if actor_id == entity.owner_id:
        return Allowed()

    membership = entity.membership
    if membership is None or membership.user_id != actor_id or membership.status is not MembershipStatus.ACCEPTED:
        return Denied("not a member")

    allowed_roles = POLICIES[entity.kind][action]
    if membership.role not in allowed_roles:
        return Denied(f"role '{membership.role.value}' lacks {action.value}")

    if action in TARGETED_ACTIONS and target_role is not None and _role_value(target_role) in PROTECTED_ROLES:
        return Denied(f"target is an {_role_value(target_role)}; only the owner may {action.value}")

    return Allowed()


def _role_value(role: Union[str, Enum]) -> str:
    return role.value if isinstance(role, Enum) else str(role)
