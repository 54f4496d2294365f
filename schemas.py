"""
Schemas for the project membership API

Each stored model maps to a document collection named after it, e.g.
ProjectMembership -> "project_member". Request bodies live next to the models
they create.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, computed_field


# Identity
@dataclass(frozen=True)
class Identity:
    """The authenticated caller, passed explicitly into every operation."""

    id: str
    email: str


class EntityKind(str, Enum):
    PROJECT = "project"
    TEAM = "team"


# Roles
class ProjectRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    MEMBER = "member"


class TeamRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class MembershipStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"


ROLE_TYPES = {EntityKind.PROJECT: ProjectRole, EntityKind.TEAM: TeamRole}


# Projects and teams
class Project(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    owner_id: str = Field(..., description="User id of project owner")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Team(BaseModel):
    id: str
    project_id: str
    name: str
    description: Optional[str] = None
    owner_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class EntityUpdate(BaseModel):
    """Partial update of a project or team; omitted fields are left alone."""

    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None


# Memberships
class ProjectMembership(BaseModel):
    id: str
    project_id: str
    user_id: str
    role: ProjectRole
    status: MembershipStatus = MembershipStatus.PENDING
    invited_by: Optional[str] = None
    created_at: Optional[datetime] = None
    joined_at: Optional[datetime] = None
    # Teams joined once a workspace invitation is accepted.
    pending_team_ids: List[str] = Field(default_factory=list)


class TeamMembership(BaseModel):
    id: str
    team_id: str
    user_id: str
    role: TeamRole
    created_at: Optional[datetime] = None

    @property
    def status(self) -> MembershipStatus:
        # Team assignment is direct; there is no pending phase.
        return MembershipStatus.ACCEPTED


Membership = Union[ProjectMembership, TeamMembership]


class MembershipRef(BaseModel):
    entity: EntityKind
    entity_id: str
    user_id: str
    role: str
    status: MembershipStatus


class InviteRequest(BaseModel):
    email: EmailStr
    role: str = "member"


class WorkspaceInviteRequest(BaseModel):
    email: EmailStr
    role: str = "member"
    team_ids: List[str] = Field(default_factory=list)
    message: Optional[str] = None


class RoleChangeRequest(BaseModel):
    role: str


class InvitationResponse(BaseModel):
    accept: bool


# Notifications
class NotificationType(str, Enum):
    PROJECT_INVITE = "project_invite"
    TEAM_INVITATION = "team_invitation"
    WORKSPACE_INVITE = "workspace_invite"
    TASK_UPDATE = "task_update"
    TASK_ASSIGNMENT = "task_assignment"


INVITE_NOTIFICATION_TYPES = (NotificationType.PROJECT_INVITE, NotificationType.WORKSPACE_INVITE)


class ProjectInviteTarget(BaseModel):
    type: Literal["project_invite"] = "project_invite"
    project_id: str


class TeamInvitationTarget(BaseModel):
    type: Literal["team_invitation"] = "team_invitation"
    team_id: str


class WorkspaceInviteTarget(BaseModel):
    type: Literal["workspace_invite"] = "workspace_invite"
    project_id: str


class TaskTarget(BaseModel):
    type: Literal["task_update", "task_assignment"]
    task_id: str


NotificationTarget = Annotated[
    Union[ProjectInviteTarget, TeamInvitationTarget, WorkspaceInviteTarget, TaskTarget],
    Field(discriminator="type"),
]


def notification_target(type_: NotificationType, related_id: Optional[str]) -> Optional[NotificationTarget]:
    """Resolve the polymorphic ``related_id`` of a notification by its type."""
    if related_id is None:
        return None
    if type_ is NotificationType.PROJECT_INVITE:
        return ProjectInviteTarget(project_id=related_id)
    if type_ is NotificationType.TEAM_INVITATION:
        return TeamInvitationTarget(team_id=related_id)
    if type_ is NotificationType.WORKSPACE_INVITE:
        return WorkspaceInviteTarget(project_id=related_id)
    return TaskTarget(type=type_.value, task_id=related_id)


class Notification(BaseModel):
    id: str
    user_id: str
    type: NotificationType
    message: str
    related_id: Optional[str] = None
    read: bool = False
    created_at: Optional[datetime] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def target(self) -> Optional[NotificationTarget]:
        return notification_target(self.type, self.related_id)


# Activity
class ActivityType(str, Enum):
    PROJECT_CREATED = "project_created"
    PROJECT_UPDATED = "project_updated"
    PROJECT_DELETED = "project_deleted"
    TEAM_CREATED = "team_created"
    TEAM_UPDATED = "team_updated"
    TEAM_DELETED = "team_deleted"
    MEMBER_INVITED = "member_invited"
    MEMBER_JOINED = "member_joined"
    MEMBER_DECLINED = "member_declined"
    MEMBER_REMOVED = "member_removed"
    ROLE_CHANGED = "role_changed"
    TEAM_MEMBER_ADDED = "team_member_added"


class Activity(BaseModel):
    id: str
    project_id: str
    user_id: str
    task_id: Optional[str] = None
    type: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
