"""Membership rows and the entities they bind, keyed by (entity id, user id)."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from database import Document, Store, serialize, utcnow
from schemas import (
    EntityKind,
    Membership,
    MembershipStatus,
    Project,
    ProjectMembership,
    Team,
    TeamMembership,
    TeamRole,
)

MEMBER_COLLECTIONS = {EntityKind.PROJECT: "project_member", EntityKind.TEAM: "team_member"}
KEY_FIELDS = {EntityKind.PROJECT: "project_id", EntityKind.TEAM: "team_id"}


@dataclass(frozen=True)
class EntityRef:
    kind: EntityKind
    id: str

    @classmethod
    def project(cls, project_id: str) -> "EntityRef":
        return cls(EntityKind.PROJECT, project_id)

    @classmethod
    def team(cls, team_id: str) -> "EntityRef":
        return cls(EntityKind.TEAM, team_id)


def _to_membership(kind: EntityKind, doc: Optional[Document]) -> Optional[Membership]:
    if doc is None:
        return None
    data = serialize(doc)
    if kind is EntityKind.PROJECT:
        return ProjectMembership.model_validate(data)
    return TeamMembership.model_validate(data)


class MembershipStore:
    """CRUD over project and team memberships on top of a document store."""

    def __init__(self, store: Store) -> None:
        self.store = store

    # ---------------------------- entities -----------------------------
    def get_project(self, project_id: str) -> Optional[Project]:
        doc = self.store.find_one("project", {"_id": project_id})
        return Project.model_validate(serialize(doc)) if doc else None

    def get_team(self, team_id: str) -> Optional[Team]:
        doc = self.store.find_one("team", {"_id": team_id})
        return Team.model_validate(serialize(doc)) if doc else None

    def get_entity(self, ref: EntityRef):
        if ref.kind is EntityKind.PROJECT:
            return self.get_project(ref.id)
        return self.get_team(ref.id)

    def insert_project(self, owner_id: str, name: str, description: Optional[str]) -> Project:
        doc = self.store.insert_one(
            "project",
            {"name": name, "description": description, "owner_id": owner_id, "created_at": utcnow()},
        )
        return Project.model_validate(serialize(doc))

    def insert_team(self, project_id: str, owner_id: str, name: str, description: Optional[str]) -> Team:
        doc = self.store.insert_one(
            "team",
            {
                "project_id": project_id,
                "name": name,
                "description": description,
                "owner_id": owner_id,
                "created_at": utcnow(),
            },
        )
        return Team.model_validate(serialize(doc))

    def teams_in_project(self, project_id: str) -> List[Team]:
        return [Team.model_validate(serialize(d)) for d in self.store.find("team", {"project_id": project_id})]

    def update_entity(self, ref: EntityRef, values: Dict[str, Any]) -> bool:
        collection = "project" if ref.kind is EntityKind.PROJECT else "team"
        matched = self.store.update_one(collection, {"_id": ref.id}, {**values, "updated_at": utcnow()})
        return matched > 0

    def delete_team(self, team_id: str) -> int:
        """Delete a team and its memberships; returns the number of memberships removed."""
        removed = self.store.delete_many("team_member", {"team_id": team_id})
        self.store.delete_one("team", {"_id": team_id})
        return removed

    def delete_project(self, project_id: str) -> Dict[str, int]:
        """Delete a project together with its teams and every membership row."""
        teams = self.teams_in_project(project_id)
        team_members = sum(self.delete_team(team.id) for team in teams)
        members = self.store.delete_many("project_member", {"project_id": project_id})
        self.store.delete_one("project", {"_id": project_id})
        return {"teams": len(teams), "team_members": team_members, "members": members}

    def transfer_team_ownership(self, project_id: str, from_user: str, to_user: str) -> List[str]:
        """Hand every team ``from_user`` owns in a project over to ``to_user``."""
        moved = []
        for team in self.teams_in_project(project_id):
            if team.owner_id != from_user:
                continue
            ref = EntityRef.team(team.id)
            self.update_entity(ref, {"owner_id": to_user})
            if self.get(ref, to_user) is None:
                self.insert(ref, to_user, TeamRole.OWNER.value)
            else:
                self.update_role(ref, to_user, TeamRole.OWNER.value)
            moved.append(team.id)
        return moved

    # ---------------------------- users -----------------------------
    def find_user_id_by_email(self, email: str) -> Optional[str]:
        # User emails are stored lower-cased by the account service.
        doc = self.store.find_one("user", {"email": email.strip().lower()})
        return str(doc["_id"]) if doc else None

    def is_accepted_project_member(self, project_id: str, user_id: str) -> bool:
        membership = self.get(EntityRef.project(project_id), user_id)
        return membership is not None and membership.status is MembershipStatus.ACCEPTED

    # ---------------------------- memberships -----------------------------
    def _key(self, ref: EntityRef, user_id: str) -> Document:
        return {KEY_FIELDS[ref.kind]: ref.id, "user_id": user_id}

    def get(self, ref: EntityRef, user_id: str) -> Optional[Membership]:
        doc = self.store.find_one(MEMBER_COLLECTIONS[ref.kind], self._key(ref, user_id))
        return _to_membership(ref.kind, doc)

    def list_members(self, ref: EntityRef) -> List[Membership]:
        docs = self.store.find(
            MEMBER_COLLECTIONS[ref.kind], {KEY_FIELDS[ref.kind]: ref.id}, sort=[("created_at", 1)]
        )
        return [_to_membership(ref.kind, d) for d in docs]

    def insert(
        self,
        ref: EntityRef,
        user_id: str,
        role: str,
        status: MembershipStatus = MembershipStatus.ACCEPTED,
        invited_by: Optional[str] = None,
        pending_team_ids: Sequence[str] = (),
    ) -> Membership:
        """Insert a membership row; raises ``UniqueViolation`` on a duplicate pair."""
        now = utcnow()
        doc: Document = {**self._key(ref, user_id), "role": role, "created_at": now}
        if ref.kind is EntityKind.PROJECT:
            doc["status"] = status.value
            doc["invited_by"] = invited_by
            doc["joined_at"] = now if status is MembershipStatus.ACCEPTED else None
            if pending_team_ids:
                doc["pending_team_ids"] = list(pending_team_ids)
        inserted = self.store.insert_one(MEMBER_COLLECTIONS[ref.kind], doc)
        return _to_membership(ref.kind, inserted)

    def mark_accepted(self, ref: EntityRef, user_id: str) -> bool:
        matched = self.store.update_one(
            MEMBER_COLLECTIONS[ref.kind],
            self._key(ref, user_id),
            {"status": MembershipStatus.ACCEPTED.value, "joined_at": utcnow(), "pending_team_ids": []},
        )
        return matched > 0

    def update_role(self, ref: EntityRef, user_id: str, role: str) -> bool:
        matched = self.store.update_one(MEMBER_COLLECTIONS[ref.kind], self._key(ref, user_id), {"role": role})
        return matched > 0

    def delete(self, ref: EntityRef, user_id: str) -> bool:
        return self.store.delete_one(MEMBER_COLLECTIONS[ref.kind], self._key(ref, user_id)) > 0

    def delete_team_memberships(self, project_id: str, user_id: str) -> int:
        """Drop a user from every team of a project."""
        removed = 0
        for team in self.teams_in_project(project_id):
            removed += self.store.delete_many("team_member", {"team_id": team.id, "user_id": user_id})
        return removed
