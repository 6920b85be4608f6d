import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import AliasChoices, BaseModel, EmailStr, Field
from pymongo.database import Database
from starlette.datastructures import UploadFile as StarletteUploadFile

import comments
import config
import database
import issues
import notifications
import queries
import storage
import workflow
from auth import (
    CurrentUser,
    authenticate,
    create_token,
    get_current_user,
    public_user,
    register_user,
    require_admin,
    seed_admin,
    set_user_active,
)
from database import get_db, utcnow
from errors import ValidationError, register_exception_handlers
from log import RequestLoggingMiddleware, configure_logging, get_logger
from schemas import Category, Priority, Status, VoteType

logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    if database.db is not None:
        database.ensure_indexes(database.db)
        seed_admin(database.db)
    else:
        logger.warning("database_not_configured")
    logger.info("api_started", env=config.ENV, email_enabled=bool(config.MAIL_USER))
    yield


app = FastAPI(title=config.APP_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)
register_exception_handlers(app)
app.mount(
    config.UPLOAD_URL_PREFIX,
    StaticFiles(directory=config.UPLOAD_DIR, check_dir=False),
    name="uploads",
)


# ---------- Models for requests ----------
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class StatusUpdateRequest(BaseModel):
    status: str
    note: Optional[str] = Field(None, validation_alias=AliasChoices("note", "comment"))


class VoteRequest(BaseModel):
    voteType: VoteType


class CommentCreateRequest(BaseModel):
    content: str
    issueId: str
    parentCommentId: Optional[str] = None


class CommentUpdateRequest(BaseModel):
    content: str


class AssignRequest(BaseModel):
    assignedTo: str


class UserStatusRequest(BaseModel):
    isActive: bool


def page_response(result: dict) -> dict:
    return {
        "success": True,
        "count": result["count"],
        "total": result["total"],
        "page": result["page"],
        "pages": result["pages"],
        "data": result["items"],
    }


# ---------- Basic routes ----------
@app.get("/")
def root():
    return {"message": f"{config.APP_NAME} running"}


@app.get("/health")
def health():
    return {
        "success": True,
        "message": f"{config.APP_NAME} is running",
        "timestamp": utcnow().isoformat(),
        "environment": config.ENV,
    }


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    info = {
        "backend": "running",
        "database": "connected",
        "collections": db.list_collection_names()[:10],
    }
    return info


# ---------- Auth endpoints ----------
@app.post("/auth/register", status_code=201)
def register(req: RegisterRequest, db: Database = Depends(get_db)):
    user = register_user(db, req.name, req.email, req.password)
    token = create_token(str(user["_id"]), user.get("is_admin", False))
    return {"success": True, "token": token, "user": public_user(user)}


@app.post("/auth/login")
def login(req: LoginRequest, db: Database = Depends(get_db)):
    user = authenticate(db, req.email, req.password)
    token = create_token(str(user["_id"]), user.get("is_admin", False))
    return {"success": True, "token": token, "user": public_user(user)}


@app.get("/me")
def me(user: CurrentUser = Depends(get_current_user)):
    return {"success": True, "data": {"id": user.id, "name": user.name, "email": user.email, "isAdmin": user.is_admin}}


# ---------- Issue endpoints ----------
@app.get("/issues")
def list_issues(
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    category: Optional[Category] = None,
    status: Optional[Status] = None,
    priority: Optional[Priority] = None,
    search: Optional[str] = Query(None, min_length=1, max_length=queries.MAX_SEARCH_LENGTH),
    db: Database = Depends(get_db),
):
    filters = {"category": category, "status": status, "priority": priority, "search": search}
    return page_response(queries.list_issues(db, filters, page, limit))


@app.get("/issues/{issue_id}")
def get_issue(issue_id: str, db: Database = Depends(get_db)):
    issue = issues.get(db, issue_id)
    return {
        "success": True,
        "data": {
            "issue": issues.present(db, issue),
            "comments": comments.list_for_issue(db, issue["_id"]),
        },
    }


@app.post("/issues", status_code=201)
async def create_issue(
    request: Request,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    """Create a report from a JSON body, or from multipart form fields plus an optional ``image`` file."""
    image_url = None
    if request.headers.get("content-type", "").startswith("multipart/form-data"):
        async with request.form() as form:
            report = issues.validate(issues.form_payload(form.multi_items()))
            image = form.get("image")
            if isinstance(image, StarletteUploadFile) and image.filename:
                image_url = storage.save_image(image.filename, image.content_type, await image.read())
    else:
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationError.single("body", "Request body must be JSON or multipart form data")
        report = issues.validate(payload)

    if image_url:
        report.imageUrl = image_url
    issue = issues.present(db, issues.create(db, report, user.id))
    background_tasks.add_task(
        notifications.dispatch,
        notifications.ISSUE_CREATED,
        {"name": user.name, "email": user.email},
        issue,
    )
    return {"success": True, "message": "Issue created successfully", "data": issue}


@app.put("/issues/{issue_id}/status")
def update_issue_status(
    issue_id: str,
    body: StatusUpdateRequest,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    updated, note_comment = workflow.set_status(
        db, issue_id, user.id, user.is_admin, body.status, body.note
    )
    issue = issues.present(db, updated)
    background_tasks.add_task(
        notifications.dispatch,
        notifications.STATUS_CHANGED,
        issue["reportedBy"],
        issue,
        note=note_comment["content"] if note_comment else None,
    )
    return {
        "success": True,
        "message": "Issue status updated successfully",
        "data": issue,
        "comment": comments.present(db, note_comment) if note_comment else None,
    }


@app.post("/issues/{issue_id}/vote")
def vote_issue(
    issue_id: str,
    body: VoteRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    toggle = config.VOTE_RESUBMIT == "toggle"
    result = issues.vote(db, issue_id, user.id, body.voteType, toggle=toggle)
    return {"success": True, "message": "Vote recorded successfully", "data": result}


@app.delete("/issues/{issue_id}")
def delete_issue(
    issue_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    issues.delete(db, issue_id, user.is_admin)
    return {"success": True, "message": "Issue deleted successfully"}


# ---------- Comment endpoints ----------
@app.get("/comments/issue/{issue_id}")
def list_comments(issue_id: str, db: Database = Depends(get_db)):
    items = comments.list_for_issue(db, issue_id)
    return {"success": True, "count": len(items), "data": items}


@app.post("/comments", status_code=201)
def add_comment(
    body: CommentCreateRequest,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    created = comments.create(
        db, body.issueId, user.id, body.content, user.is_admin, body.parentCommentId
    )
    comment = comments.present(db, created)

    issue = issues.present(db, issues.get(db, created["issue"]))
    reporter = issue["reportedBy"]
    if reporter and reporter["id"] != user.id:
        background_tasks.add_task(
            notifications.dispatch,
            notifications.COMMENT_ADDED,
            reporter,
            issue,
            comment=comment,
        )
    return {"success": True, "message": "Comment added successfully", "data": comment}


@app.put("/comments/{comment_id}")
def update_comment(
    comment_id: str,
    body: CommentUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    updated = comments.edit(db, comment_id, user.id, user.is_admin, body.content)
    return {"success": True, "message": "Comment updated successfully", "data": comments.present(db, updated)}


@app.delete("/comments/{comment_id}")
def delete_comment(
    comment_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    comments.soft_delete(db, comment_id, user.id, user.is_admin)
    return {"success": True, "message": "Comment deleted successfully"}


@app.post("/comments/{comment_id}/like")
def like_comment(
    comment_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    return {"success": True, "message": "Like toggled successfully", "data": comments.toggle_like(db, comment_id, user.id)}


# ---------- Admin endpoints ----------
@app.get("/admin/stats", dependencies=[Depends(require_admin)])
def admin_stats(db: Database = Depends(get_db)):
    return {"success": True, "data": queries.stats(db)}


@app.get("/admin/issues", dependencies=[Depends(require_admin)])
def admin_issues(
    page: int = Query(1, ge=1),
    limit: int = Query(config.ADMIN_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    category: Optional[Category] = None,
    status: Optional[Status] = None,
    priority: Optional[Priority] = None,
    db: Database = Depends(get_db),
):
    filters = {"category": category, "status": status, "priority": priority}
    return page_response(queries.list_issues(db, filters, page, limit))


@app.put("/admin/issues/{issue_id}/assign")
def admin_assign_issue(
    issue_id: str,
    body: AssignRequest,
    user: CurrentUser = Depends(require_admin),
    db: Database = Depends(get_db),
):
    issue = workflow.assign(db, issue_id, body.assignedTo, user.is_admin)
    return {"success": True, "message": "Issue assigned successfully", "data": issues.present(db, issue)}


@app.get("/admin/users", dependencies=[Depends(require_admin)])
def admin_users(
    page: int = Query(1, ge=1),
    limit: int = Query(config.ADMIN_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    db: Database = Depends(get_db),
):
    return page_response(queries.list_users(db, page, limit))


@app.put("/admin/users/{user_id}/status")
def admin_user_status(
    user_id: str,
    body: UserStatusRequest,
    user: CurrentUser = Depends(require_admin),
    db: Database = Depends(get_db),
):
    updated = set_user_active(db, user_id, user.id, body.isActive)
    state = "activated" if body.isActive else "deactivated"
    return {"success": True, "message": f"User {state} successfully", "data": public_user(updated)}


@app.get("/admin/analytics", dependencies=[Depends(require_admin)])
def admin_analytics(
    period: int = Query(30, ge=1, le=365),
    db: Database = Depends(get_db),
):
    return {"success": True, "data": queries.analytics(db, period)}


def run() -> None:
    """Serve the API with uvicorn (console entry point)."""
    uvicorn.run(app, host=config.HOST, port=config.PORT, log_config=None)


if __name__ == "__main__":
    run()
