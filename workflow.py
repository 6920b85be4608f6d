"""
Issue workflow: status transitions and assignment, both admin only.

Any status may follow any other. Entering ``resolved`` stamps
``resolvedAt`` every time; leaving it keeps the last stamp.
"""

from typing import Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import comments
from database import ISSUES, USERS, parse_id, utcnow
from errors import AppError, Forbidden, NotFound, ValidationError
from log import get_logger
from schemas import STATUSES

logger = get_logger("workflow")

MAX_NOTE_LENGTH = 1000


def status_update(new_status: str, now) -> dict:
    changes = {"status": new_status, "updated_at": now}
    if new_status == "resolved":
        changes["resolvedAt"] = now
    return {"$set": changes}


def set_status(
    db: Database,
    issue_id,
    actor_id,
    actor_is_admin: bool,
    new_status: str,
    note: Optional[str] = None,
):
    """Change an issue's status and optionally attach an official note.

    Returns ``(issue, note_comment)``. The note is best effort: if it cannot
    be stored the status change still stands and ``note_comment`` is None.
    """
    if not actor_is_admin:
        raise Forbidden("Only administrators can change issue status")

    errors = []
    if new_status not in STATUSES:
        errors.append({"field": "status", "message": "Invalid status"})
    note = (note or "").strip()
    if len(note) > MAX_NOTE_LENGTH:
        errors.append({"field": "note", "message": "Comment must be less than 1000 characters"})
    if errors:
        raise ValidationError(errors)

    oid = parse_id(issue_id)
    issue = db[ISSUES].find_one_and_update(
        {"_id": oid},
        status_update(new_status, utcnow()),
        return_document=ReturnDocument.AFTER,
    )
    if issue is None:
        raise NotFound("Issue not found")
    logger.info("issue_status_changed", issue_id=str(oid), status=new_status)

    note_comment = None
    if note:
        try:
            note_comment = comments.create(db, oid, actor_id, note, is_author_admin=True)
        except (AppError, PyMongoError) as exc:
            logger.warning("status_note_failed", issue_id=str(oid), error=str(exc))

    return issue, note_comment


def assign(db: Database, issue_id, target_user_id, actor_is_admin: bool) -> dict:
    if not actor_is_admin:
        raise Forbidden("Only administrators can assign issues")

    target = db[USERS].find_one({"_id": parse_id(target_user_id, "assignedTo")}, {"is_admin": 1})
    if target is None or not target.get("is_admin", False):
        raise ValidationError.single("assignedTo", "Assigned user must be an admin")

    oid = parse_id(issue_id)
    issue = db[ISSUES].find_one_and_update(
        {"_id": oid},
        {"$set": {"assignedTo": target["_id"], "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if issue is None:
        raise NotFound("Issue not found")
    logger.info("issue_assigned", issue_id=str(oid), assigned_to=str(target["_id"]))
    return issue
