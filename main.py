import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from activity import ActivityRecorder
from config import Settings, configure_logging
from database import Document, Store, StoreError, create_store, serialize
from errors import AlreadyMember, Forbidden, InvalidRole, MembershipError, NotFound, SelfRemoval, Unauthorized
from memberships import EntityRef
from notifications import NotificationDispatcher
from schemas import (
    Activity,
    EntityUpdate,
    Identity,
    InvitationResponse,
    InviteRequest,
    MembershipRef,
    Notification,
    Project,
    ProjectCreate,
    ProjectMembership,
    RoleChangeRequest,
    Team,
    TeamCreate,
    TeamMembership,
    WorkspaceInviteRequest,
)
from workflow import InvitationWorkflow

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    Unauthorized: 403,
    Forbidden: 403,
    NotFound: 404,
    AlreadyMember: 409,
    SelfRemoval: 409,
    InvalidRole: 422,
}


# -----------------------------
# Identity
# -----------------------------

def identity_from_token(store: Store, token: Optional[str]) -> Identity:
    """Resolve a session token issued by the auth service into the calling user."""
    if not token:
        raise Unauthorized("Missing token", authenticated=False)
    session = store.find_one("session", {"token": token})
    if not session:
        raise Unauthorized("Invalid token", authenticated=False)
    expires_at = session.get("expires_at")
    if expires_at is not None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at < datetime.now(timezone.utc):
            raise Unauthorized("Session expired", authenticated=False)
    user = store.find_one("user", {"_id": session["user_id"]})
    if not user:
        raise Unauthorized("User not found", authenticated=False)
    return Identity(id=str(user["_id"]), email=user["email"])


# -----------------------------
# Realtime fan-out per user
# -----------------------------
class ConnectionManager:
    def __init__(self):
        self.user_connections: Dict[str, List[WebSocket]] = {}
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, user_id: str, websocket: WebSocket):
        await websocket.accept()
        self.user_connections.setdefault(user_id, []).append(websocket)

    def disconnect(self, user_id: str, websocket: WebSocket):
        conns = self.user_connections.get(user_id, [])
        if websocket in conns:
            conns.remove(websocket)
        if not conns and user_id in self.user_connections:
            del self.user_connections[user_id]

    async def send(self, user_id: str, message: Dict[str, Any]):
        for ws in list(self.user_connections.get(user_id, [])):
            try:
                await ws.send_json(message)
            except Exception:
                self.disconnect(user_id, ws)

    def publish(self, doc: Document) -> None:
        """Store insert listener for the notification collection.

        Runs on whichever thread performed the insert, so delivery is handed to the
        server's event loop and not awaited.
        """
        user_id = str(doc["user_id"])
        if self.loop is None or user_id not in self.user_connections:
            return
        notification = Notification.model_validate(serialize(doc))
        message = {"type": "notification_created", "notification": notification.model_dump(mode="json")}
        asyncio.run_coroutine_threadsafe(self.send(user_id, message), self.loop)


# -----------------------------
# Application
# -----------------------------

def create_app(settings: Optional[Settings] = None, store: Optional[Store] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    store = store or create_store(settings)
    manager = ConnectionManager()
    store.on_insert("notification", manager.publish)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        manager.loop = asyncio.get_running_loop()
        yield
        manager.loop = None

    app = FastAPI(title="Project Membership API", lifespan=lifespan)
    app.state.store = store
    app.state.connections = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MembershipError)
    async def _handle_membership_error(request: Request, exc: MembershipError):
        status_code = ERROR_STATUS.get(type(exc), 400)
        if isinstance(exc, Unauthorized) and not exc.authenticated:
            status_code = 401
        return JSONResponse(status_code=status_code, content={"detail": exc.message, "error": exc.kind})

    @app.exception_handler(StoreError)
    async def _handle_store_error(request: Request, exc: StoreError):
        logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=503, content={"detail": "The data store is unavailable", "error": "store_unavailable"}
        )

    def get_current_user(authorization: Optional[str] = Header(default=None)) -> Identity:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise Unauthorized("Missing token", authenticated=False)
        return identity_from_token(store, authorization.split(" ", 1)[1].strip())

    def get_notifications() -> NotificationDispatcher:
        return NotificationDispatcher(store, page_size=settings.notification_page_size)

    def get_workflow(
        background_tasks: BackgroundTasks,
        notifier: NotificationDispatcher = Depends(get_notifications),
    ) -> InvitationWorkflow:
        # Notifications and activity are written after the response is produced.
        return InvitationWorkflow(
            store,
            notifier=notifier,
            recorder=ActivityRecorder(store, page_size=settings.activity_page_size),
            defer=background_tasks.add_task,
        )

    # -----------------------------
    # Health
    # -----------------------------
    @app.get("/")
    def read_root():
        return {"message": "Project Membership API running"}

    @app.get("/health")
    def health():
        response = {"backend": "running", "store": settings.store_backend, "database": "unknown"}
        try:
            store.find_one("project", {})
            response["database"] = "connected"
        except StoreError as e:
            response["database"] = f"error: {str(e)[:50]}"
        return response

    @app.get("/me")
    def me(user: Identity = Depends(get_current_user)):
        return {"id": user.id, "email": user.email}

    # -----------------------------
    # Projects and teams
    # -----------------------------
    @app.post("/projects", response_model=Project)
    def create_project(
        body: ProjectCreate,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        return workflow.create_project(user, body.name, body.description)

    @app.post("/projects/{project_id}/teams", response_model=Team)
    def create_team(
        project_id: str,
        body: TeamCreate,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        return workflow.create_team(user, project_id, body.name, body.description)

    @app.patch("/projects/{project_id}", response_model=Project)
    def update_project(
        project_id: str,
        body: EntityUpdate,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        return workflow.update_entity(user, EntityRef.project(project_id), body.name, body.description)

    @app.delete("/projects/{project_id}")
    def delete_project(
        project_id: str,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        workflow.delete_project(user, project_id)
        return {"deleted": project_id}

    @app.patch("/teams/{team_id}", response_model=Team)
    def update_team(
        team_id: str,
        body: EntityUpdate,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        return workflow.update_entity(user, EntityRef.team(team_id), body.name, body.description)

    @app.delete("/teams/{team_id}")
    def delete_team(
        team_id: str,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        workflow.delete_team(user, team_id)
        return {"deleted": team_id}

    @app.post("/projects/{project_id}/workspace-invitations", response_model=MembershipRef)
    def invite_to_workspace(
        project_id: str,
        body: WorkspaceInviteRequest,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        return workflow.invite_to_workspace(
            user, project_id, body.email, body.role, body.team_ids, body.message
        )

    @app.get("/projects/{project_id}/activity", response_model=List[Activity])
    def list_activity(
        project_id: str,
        limit: Optional[int] = None,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        return workflow.project_activity(user, project_id, limit)

    # -----------------------------
    # Project members
    # -----------------------------
    @app.get("/projects/{project_id}/members", response_model=List[ProjectMembership])
    def list_project_members(
        project_id: str,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        return workflow.list_members(user, EntityRef.project(project_id))

    @app.post("/projects/{project_id}/members", response_model=MembershipRef)
    def invite_project_member(
        project_id: str,
        body: InviteRequest,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        return workflow.invite(user, EntityRef.project(project_id), body.email, body.role)

    @app.post("/projects/{project_id}/invitation")
    def respond_to_invitation(
        project_id: str,
        body: InvitationResponse,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        membership = workflow.respond(user, EntityRef.project(project_id), body.accept)
        return {"accepted": body.accept, "membership": membership.model_dump(mode="json") if membership else None}

    @app.delete("/projects/{project_id}/members/{user_id}")
    def remove_project_member(
        project_id: str,
        user_id: str,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        workflow.remove_member(user, EntityRef.project(project_id), user_id)
        return {"removed": user_id}

    @app.patch("/projects/{project_id}/members/{user_id}", response_model=MembershipRef)
    def change_project_role(
        project_id: str,
        user_id: str,
        body: RoleChangeRequest,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        return workflow.change_role(user, EntityRef.project(project_id), user_id, body.role)

    # -----------------------------
    # Team members
    # -----------------------------
    @app.get("/teams/{team_id}/members", response_model=List[TeamMembership])
    def list_team_members(
        team_id: str,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        return workflow.list_members(user, EntityRef.team(team_id))

    @app.post("/teams/{team_id}/members", response_model=MembershipRef)
    def add_team_member(
        team_id: str,
        body: InviteRequest,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        return workflow.invite(user, EntityRef.team(team_id), body.email, body.role)

    @app.delete("/teams/{team_id}/members/{user_id}")
    def remove_team_member(
        team_id: str,
        user_id: str,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        workflow.remove_member(user, EntityRef.team(team_id), user_id)
        return {"removed": user_id}

    @app.patch("/teams/{team_id}/members/{user_id}", response_model=MembershipRef)
    def change_team_role(
        team_id: str,
        user_id: str,
        body: RoleChangeRequest,
        user: Identity = Depends(get_current_user),
        workflow: InvitationWorkflow = Depends(get_workflow),
    ):
        return workflow.change_role(user, EntityRef.team(team_id), user_id, body.role)

    # -----------------------------
    # Notifications
    # -----------------------------
    @app.get("/notifications", response_model=List[Notification])
    def list_notifications(
        user: Identity = Depends(get_current_user),
        notifier: NotificationDispatcher = Depends(get_notifications),
    ):
        return notifier.list_for(user.id)

    @app.post("/notifications/read-all")
    def mark_all_notifications_read(
        user: Identity = Depends(get_current_user),
        notifier: NotificationDispatcher = Depends(get_notifications),
    ):
        return {"updated": notifier.mark_all_read(user.id)}

    @app.post("/notifications/{notification_id}/read")
    def mark_notification_read(
        notification_id: str,
        user: Identity = Depends(get_current_user),
        notifier: NotificationDispatcher = Depends(get_notifications),
    ):
        notifier.mark_read(notification_id, user.id)
        return {"id": notification_id, "read": True}

    @app.delete("/notifications/{notification_id}")
    def delete_notification(
        notification_id: str,
        user: Identity = Depends(get_current_user),
        notifier: NotificationDispatcher = Depends(get_notifications),
    ):
        notifier.delete(notification_id, user.id)
        return {"deleted": notification_id}

    @app.delete("/notifications")
    def clear_notifications(
        user: Identity = Depends(get_current_user),
        notifier: NotificationDispatcher = Depends(get_notifications),
    ):
        return {"deleted": notifier.clear_all(user.id)}

    @app.websocket("/ws/notifications")
    async def notifications_ws(websocket: WebSocket, token: Optional[str] = None):
        try:
            identity = identity_from_token(store, token)
        except Unauthorized:
            await websocket.close(code=4401)
            return
        await manager.connect(identity.id, websocket)
        try:
            while True:
                # Keep alive / receive pings from client if any
                await websocket.receive_text()
        except WebSocketDisconnect:
            manager.disconnect(identity.id, websocket)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = Settings.from_env()
    uvicorn.run("main:app", host="0.0.0.0", port=settings.port)
