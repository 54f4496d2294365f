"""
Invitation workflow for project and team memberships.

Every operation takes the acting ``Identity`` explicitly, checks it against the
permission tables in :mod:`permissions`, and performs its reads and membership
mutation inside a single store transaction. Notifications and activity entries are
queued while the transaction runs and handed to ``defer`` after it commits; their
failures are logged and never reach the caller.

Project membership lifecycle::

    (none) --invite--> pending --accept--> accepted --change_role--> accepted
                          |                    |
                          +--decline/remove----+--remove--> (deleted)
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Tuple, TypeVar

from activity import ActivityRecorder
from database import Store, UniqueViolation
from errors import AlreadyMember, InvalidRole, NotFound, SelfRemoval, Unauthorized
from memberships import EntityRef, MembershipStore
from notifications import NotificationDispatcher
from permissions import Action, EntityContext, evaluate
from schemas import (
    INVITE_NOTIFICATION_TYPES,
    Activity,
    ActivityType,
    EntityKind,
    Identity,
    Membership,
    MembershipRef,
    MembershipStatus,
    NotificationType,
    Project,
    ProjectRole,
    ROLE_TYPES,
    Team,
    TeamRole,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Defer = Callable[[Callable[[], None]], None]


def run_now(task: Callable[[], None]) -> None:
    task()


class SideEffects:
    """Secondary writes collected during a membership change."""

    def __init__(self) -> None:
        self._pending: List[Tuple[Callable[..., Any], tuple, dict]] = []

    def add(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self._pending.append((fn, args, kwargs))

    def __len__(self) -> int:
        return len(self._pending)

    def run(self) -> None:
        pending, self._pending = self._pending, []
        for fn, args, kwargs in pending:
            try:
                fn(*args, **kwargs)
            except Exception:
                logger.exception("Secondary effect %s failed", getattr(fn, "__qualname__", fn))


class InvitationWorkflow:
    def __init__(
        self,
        store: Store,
        notifier: Optional[NotificationDispatcher] = None,
        recorder: Optional[ActivityRecorder] = None,
        defer: Defer = run_now,
    ) -> None:
        self.store = store
        self.members = MembershipStore(store)
        self.notifier = notifier or NotificationDispatcher(store)
        self.recorder = recorder or ActivityRecorder(store)
        self.defer = defer

    # ---------------------------- helpers -----------------------------
    @staticmethod
    def _require(actor: Optional[Identity]) -> Identity:
        if actor is None:
            raise Unauthorized("Not authenticated", authenticated=False)
        return actor

    @staticmethod
    def _parse_role(kind: EntityKind, role: Any) -> Enum:
        role_type = ROLE_TYPES[kind]
        try:
            parsed = role_type(role)
        except ValueError:
            raise InvalidRole(f"'{role}' is not a valid {kind.value} role") from None
        if parsed.value == "owner":
            raise InvalidRole("The owner role cannot be assigned")
        return parsed

    def _context(self, actor: Identity, ref: EntityRef):
        entity = self.members.get_entity(ref)
        if entity is None:
            raise NotFound(f"{ref.kind.value.capitalize()} not found")
        membership = self.members.get(ref, actor.id)
        in_project = True
        if ref.kind is EntityKind.TEAM:
            in_project = self.members.is_accepted_project_member(entity.project_id, actor.id)
        return entity, EntityContext(ref.kind, ref.id, entity.owner_id, membership, in_project)

    def _authorize(
        self, actor: Identity, ctx: EntityContext, action: Action, target_role: Optional[Enum] = None
    ) -> None:
        decision = evaluate(actor.id, ctx, action, target_role)
        if not decision.allowed:
            logger.info(
                "Denied %s on %s %s for user %s: %s",
                action.value, ctx.kind.value, ctx.id, actor.id, decision.reason,
            )
            raise Unauthorized(f"You do not have permission to {action.value.replace('_', ' ')}: {decision.reason}")

    @staticmethod
    def _project_id(entity) -> str:
        return entity.project_id if isinstance(entity, Team) else entity.id

    def _atomic(self, body: Callable[[SideEffects], T]) -> T:
        """Run ``body`` in a store transaction, then hand its queued effects to ``defer``.

        A retried transaction starts over with an empty queue.
        """
        def attempt() -> Tuple[T, SideEffects]:
            effects = SideEffects()
            return body(effects), effects

        result, effects = self.store.run_in_transaction(attempt)
        if len(effects):
            self.defer(effects.run)
        return result

    @staticmethod
    def _membership_ref(ref: EntityRef, membership: Membership) -> MembershipRef:
        return MembershipRef(
            entity=ref.kind,
            entity_id=ref.id,
            user_id=membership.user_id,
            role=membership.role.value,
            status=membership.status,
        )

    # ---------------------------- entities -----------------------------
    def create_project(self, actor: Identity, name: str, description: Optional[str] = None) -> Project:
        actor = self._require(actor)

        def body(effects: SideEffects) -> Project:
            project = self.members.insert_project(actor.id, name, description)
            self.members.insert(EntityRef.project(project.id), actor.id, ProjectRole.OWNER.value)
            effects.add(
                self.recorder.record,
                project.id, actor.id, ActivityType.PROJECT_CREATED, f"{actor.email} created the project",
            )
            return project

        project = self._atomic(body)
        logger.info("Project %s created by %s", project.id, actor.id)
        return project

    def create_team(
        self, actor: Identity, project_id: str, name: str, description: Optional[str] = None
    ) -> Team:
        actor = self._require(actor)

        def body(effects: SideEffects) -> Team:
            _, ctx = self._context(actor, EntityRef.project(project_id))
            self._authorize(actor, ctx, Action.MANAGE_SETTINGS)
            team = self.members.insert_team(project_id, actor.id, name, description)
            self.members.insert(EntityRef.team(team.id), actor.id, TeamRole.OWNER.value)
            effects.add(
                self.recorder.record,
                project_id, actor.id, ActivityType.TEAM_CREATED, f"{actor.email} created team {name}",
                {"team_id": team.id},
            )
            return team

        team = self._atomic(body)
        logger.info("Team %s created in project %s by %s", team.id, project_id, actor.id)
        return team

    def update_entity(
        self,
        actor: Identity,
        ref: EntityRef,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ):
        """Rename a project or team or change its description.

        Fields left as ``None`` are not touched; a call that changes nothing returns
        the entity without recording activity.
        """
        actor = self._require(actor)

        def body(effects: SideEffects):
            entity, ctx = self._context(actor, ref)
            self._authorize(actor, ctx, Action.MANAGE_SETTINGS)
            changes = {
                field: value
                for field, value in (("name", name), ("description", description))
                if value is not None and getattr(entity, field) != value
            }
            if not changes:
                return entity
            self.members.update_entity(ref, changes)
            activity_type = (
                ActivityType.PROJECT_UPDATED if ref.kind is EntityKind.PROJECT else ActivityType.TEAM_UPDATED
            )
            effects.add(
                self.recorder.record,
                self._project_id(entity), actor.id, activity_type,
                f"{actor.email} updated {ref.kind.value} {changes.get('name', entity.name)}",
                {"entity_id": ref.id, "fields": sorted(changes)},
            )
            return self.members.get_entity(ref)

        updated = self._atomic(body)
        logger.info("%s %s updated by %s", ref.kind.value.capitalize(), ref.id, actor.id)
        return updated

    def delete_project(self, actor: Identity, project_id: str) -> None:
        """Delete a project with its teams and memberships. Only the owner may do this."""
        actor = self._require(actor)
        ref = EntityRef.project(project_id)

        def body(effects: SideEffects) -> None:
            project, ctx = self._context(actor, ref)
            self._authorize(actor, ctx, Action.DELETE)
            pending = [
                m.user_id for m in self.members.list_members(ref) if m.status is MembershipStatus.PENDING
            ]
            removed = self.members.delete_project(project_id)
            for user_id in pending:
                effects.add(self.notifier.resolve_invites, user_id, project_id, INVITE_NOTIFICATION_TYPES)
            effects.add(
                self.recorder.record,
                project_id, actor.id, ActivityType.PROJECT_DELETED,
                f"{actor.email} deleted the project {project.name}",
                removed,
            )

        self._atomic(body)
        logger.info("Project %s deleted by %s", project_id, actor.id)

    def delete_team(self, actor: Identity, team_id: str) -> None:
        """Delete a team and its memberships. Only the team owner may do this."""
        actor = self._require(actor)
        ref = EntityRef.team(team_id)

        def body(effects: SideEffects) -> None:
            team, ctx = self._context(actor, ref)
            self._authorize(actor, ctx, Action.DELETE)
            removed = self.members.delete_team(team_id)
            effects.add(
                self.recorder.record,
                team.project_id, actor.id, ActivityType.TEAM_DELETED,
                f"{actor.email} deleted team {team.name}",
                {"team_id": team_id, "team_members": removed},
            )

        self._atomic(body)
        logger.info("Team %s deleted by %s", team_id, actor.id)

    def list_members(self, actor: Identity, ref: EntityRef) -> List[Membership]:
        actor = self._require(actor)

        def body(effects: SideEffects) -> List[Membership]:
            _, ctx = self._context(actor, ref)
            self._authorize(actor, ctx, Action.VIEW_MEMBERS)
            return self.members.list_members(ref)

        return self._atomic(body)

    def project_activity(self, actor: Identity, project_id: str, limit: Optional[int] = None) -> List[Activity]:
        actor = self._require(actor)
        _, ctx = self._context(actor, EntityRef.project(project_id))
        self._authorize(actor, ctx, Action.VIEW_MEMBERS)
        return self.recorder.list_for_project(project_id, limit)

    # ---------------------------- invitations -----------------------------
    def invite(self, actor: Identity, ref: EntityRef, email: str, role: Any = "member") -> MembershipRef:
        """Invite the account registered under ``email`` to a project or team.

        Project invitations create a pending membership that the invitee answers with
        :meth:`respond`. Teams have no pending phase: the user is added directly, and
        must already be an accepted member of the team's project.
        """
        actor = self._require(actor)
        parsed_role = self._parse_role(ref.kind, role)

        def body(effects: SideEffects) -> Tuple[str, Membership]:
            entity, ctx = self._context(actor, ref)
            self._authorize(actor, ctx, Action.INVITE_MEMBER)
            user_id = self._lookup(email)

            if ref.kind is EntityKind.TEAM:
                if not self.members.is_accepted_project_member(entity.project_id, user_id):
                    raise NotFound("User is not an accepted member of the team's project")
                status = MembershipStatus.ACCEPTED
            else:
                status = MembershipStatus.PENDING

            try:
                membership = self.members.insert(
                    ref, user_id, parsed_role.value, status=status, invited_by=actor.id
                )
            except UniqueViolation:
                raise AlreadyMember(f"User is already a member of this {ref.kind.value}") from None

            project_id = self._project_id(entity)
            if ref.kind is EntityKind.PROJECT:
                effects.add(
                    self.notifier.notify,
                    user_id, NotificationType.PROJECT_INVITE,
                    f"You have been invited to join the project {entity.name} by {actor.email}",
                    entity.id,
                )
                effects.add(
                    self.recorder.record,
                    project_id, actor.id, ActivityType.MEMBER_INVITED,
                    f"{actor.email} invited {email} as {parsed_role.value}",
                    {"user_id": user_id, "role": parsed_role.value},
                )
            else:
                effects.add(
                    self.notifier.notify,
                    user_id, NotificationType.TEAM_INVITATION,
                    f"You have been added to the team {entity.name} by {actor.email}",
                    entity.id,
                )
                effects.add(
                    self.recorder.record,
                    project_id, actor.id, ActivityType.TEAM_MEMBER_ADDED,
                    f"{actor.email} added {email} to team {entity.name}",
                    {"team_id": entity.id, "user_id": user_id, "role": parsed_role.value},
                )
            return user_id, membership

        user_id, membership = self._atomic(body)
        logger.info("User %s invited to %s %s by %s", user_id, ref.kind.value, ref.id, actor.id)
        return self._membership_ref(ref, membership)

    def invite_to_workspace(
        self,
        actor: Identity,
        project_id: str,
        email: str,
        role: Any = "member",
        team_ids: Iterable[str] = (),
        message: Optional[str] = None,
    ) -> MembershipRef:
        """Invite a user to a project and, once they accept, to some of its teams.

        The invitation is a pending project membership like :meth:`invite`, but the
        invitee receives a ``workspace_invite`` notification carrying ``message``. The
        listed teams are joined as ``member`` when the invitation is accepted, since
        only accepted project members may sit on a team.
        """
        actor = self._require(actor)
        parsed_role = self._parse_role(EntityKind.PROJECT, role)
        team_ids = list(dict.fromkeys(team_ids))
        ref = EntityRef.project(project_id)

        def body(effects: SideEffects) -> Tuple[str, Membership]:
            project, ctx = self._context(actor, ref)
            self._authorize(actor, ctx, Action.INVITE_MEMBER)
            user_id = self._lookup(email)
            for team_id in team_ids:
                team = self.members.get_team(team_id)
                if team is None or team.project_id != project_id:
                    raise NotFound(f"Team {team_id} not found in this project")
            try:
                membership = self.members.insert(
                    ref, user_id, parsed_role.value,
                    status=MembershipStatus.PENDING, invited_by=actor.id, pending_team_ids=team_ids,
                )
            except UniqueViolation:
                raise AlreadyMember("User is already a member of this project") from None

            effects.add(
                self.notifier.notify,
                user_id, NotificationType.WORKSPACE_INVITE,
                message or f"You've been invited to join the workspace {project.name} by {actor.email}",
                project_id,
            )
            effects.add(
                self.recorder.record,
                project_id, actor.id, ActivityType.MEMBER_INVITED,
                f"{actor.email} invited {email} to the workspace as {parsed_role.value}",
                {"user_id": user_id, "role": parsed_role.value, "team_ids": team_ids},
            )
            return user_id, membership

        user_id, membership = self._atomic(body)
        logger.info("User %s invited to workspace %s by %s", user_id, project_id, actor.id)
        return self._membership_ref(ref, membership)

    def _lookup(self, email: str) -> str:
        user_id = self.members.find_user_id_by_email(email)
        if user_id is None:
            raise NotFound("User with this email not found. They must have an account first.")
        return user_id

    def respond(self, actor: Identity, ref: EntityRef, accept: bool) -> Optional[MembershipRef]:
        """Accept or decline the actor's own pending project invitation.

        Accepting an already accepted membership succeeds without side effects on the
        row. Declining deletes the pending row and returns ``None``. Teams named by a
        workspace invitation are joined on acceptance.
        """
        actor = self._require(actor)
        if ref.kind is not EntityKind.PROJECT:
            raise NotFound("Team memberships have no pending invitations")

        def body(effects: SideEffects) -> Membership:
            project = self.members.get_project(ref.id)
            if project is None:
                raise NotFound("Project not found")
            membership = self.members.get(ref, actor.id)
            if membership is None:
                raise NotFound("No invitation found for this project")

            if accept:
                if membership.status is MembershipStatus.PENDING:
                    self.members.mark_accepted(ref, actor.id)
                    effects.add(
                        self.recorder.record,
                        project.id, actor.id, ActivityType.MEMBER_JOINED,
                        f"{actor.email} joined the project",
                        {"role": membership.role.value},
                    )
                    self._join_pending_teams(actor, project, membership.pending_team_ids, effects)
                    membership = self.members.get(ref, actor.id)
            else:
                if membership.status is not MembershipStatus.PENDING:
                    raise NotFound("No pending invitation for this project")
                self.members.delete(ref, actor.id)
                effects.add(
                    self.recorder.record,
                    project.id, actor.id, ActivityType.MEMBER_DECLINED,
                    f"{actor.email} declined the invitation",
                )
            effects.add(self.notifier.resolve_invites, actor.id, project.id, INVITE_NOTIFICATION_TYPES)
            return membership

        membership = self._atomic(body)
        logger.info(
            "User %s %s invitation to project %s", actor.id, "accepted" if accept else "declined", ref.id
        )
        return self._membership_ref(ref, membership) if accept else None

    def _join_pending_teams(
        self, actor: Identity, project: Project, team_ids: List[str], effects: SideEffects
    ) -> None:
        for team_id in team_ids:
            team = self.members.get_team(team_id)
            # Teams deleted since the invitation are skipped.
            if team is None or team.project_id != project.id:
                continue
            team_ref = EntityRef.team(team_id)
            if self.members.get(team_ref, actor.id) is not None:
                continue
            self.members.insert(team_ref, actor.id, TeamRole.MEMBER.value)
            effects.add(
                self.recorder.record,
                project.id, actor.id, ActivityType.TEAM_MEMBER_ADDED,
                f"{actor.email} joined team {team.name}",
                {"team_id": team_id, "user_id": actor.id, "role": TeamRole.MEMBER.value},
            )

    # ---------------------------- members -----------------------------
    def remove_member(self, actor: Identity, ref: EntityRef, user_id: str) -> None:
        """Remove a member or revoke a pending invitation.

        Leaving a project also ends the user's team memberships in it, and teams the
        user owned pass to the project owner.
        """
        actor = self._require(actor)

        def body(effects: SideEffects) -> None:
            entity, ctx = self._context(actor, ref)
            if user_id == actor.id and actor.id == entity.owner_id:
                raise SelfRemoval(
                    f"The owner cannot leave their own {ref.kind.value}; transfer ownership first"
                )
            target = self.members.get(ref, user_id)
            self._authorize(actor, ctx, Action.REMOVE_MEMBER, target.role if target else None)
            if target is None:
                raise NotFound("Membership not found")

            self.members.delete(ref, user_id)
            metadata = {"user_id": user_id, "role": target.role.value}
            if ref.kind is EntityKind.PROJECT:
                metadata["teams_transferred"] = self.members.transfer_team_ownership(
                    ref.id, user_id, entity.owner_id
                )
                metadata["team_memberships_removed"] = self.members.delete_team_memberships(ref.id, user_id)
                if target.status is MembershipStatus.PENDING:
                    effects.add(self.notifier.resolve_invites, user_id, ref.id, INVITE_NOTIFICATION_TYPES)
            else:
                metadata["team_id"] = ref.id
            effects.add(
                self.recorder.record,
                self._project_id(entity), actor.id, ActivityType.MEMBER_REMOVED,
                f"{actor.email} removed a member from {ref.kind.value} {entity.name}",
                metadata,
            )

        self._atomic(body)
        logger.info("User %s removed from %s %s by %s", user_id, ref.kind.value, ref.id, actor.id)

    def change_role(self, actor: Identity, ref: EntityRef, user_id: str, role: Any) -> MembershipRef:
        actor = self._require(actor)
        new_role = self._parse_role(ref.kind, role)

        def body(effects: SideEffects) -> Membership:
            entity, ctx = self._context(actor, ref)
            target = self.members.get(ref, user_id)
            self._authorize(actor, ctx, Action.CHANGE_ROLE, target.role if target else None)
            if target is None:
                raise NotFound("Membership not found")
            if user_id == entity.owner_id:
                raise Unauthorized("The owner's role can only change through an ownership transfer")
            if target.role == new_role:
                return target

            self.members.update_role(ref, user_id, new_role.value)
            effects.add(
                self.recorder.record,
                self._project_id(entity), actor.id, ActivityType.ROLE_CHANGED,
                f"{actor.email} changed a member's role from {target.role.value} to {new_role.value}",
                {"user_id": user_id, "from": target.role.value, "to": new_role.value, "entity": ref.kind.value},
            )
            return self.members.get(ref, user_id)

        updated = self._atomic(body)
        logger.info(
            "Role of %s on %s %s changed to %s by %s", user_id, ref.kind.value, ref.id, new_role.value, actor.id
        )
        return self._membership_ref(ref, updated)
