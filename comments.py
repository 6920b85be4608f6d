"""Comment store: threaded comments, likes and soft deletion."""

from typing import NamedTuple, Optional

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database

from auth import lookup_users
from database import COMMENTS, ISSUES, create_document, parse_id, serialize, utcnow
from errors import Conflict, Forbidden, NotFound, ValidationError
from log import get_logger
from schemas import Comment as CommentSchema

logger = get_logger("comments")

LIKE_RETRIES = 5
LIKE_PROJECTION = {"likedBy": 1, "likes": 1}


class LikePlan(NamedTuple):
    liked: bool
    filter: dict
    update: dict
    likes: int


def plan_like(comment: dict, user_id: ObjectId) -> LikePlan:
    """Toggle ``user_id`` in ``likedBy``; the filter pins the membership the plan was made from."""
    liked_by = comment.get("likedBy") or []
    likes = comment.get("likes", 0)

    if user_id in liked_by:
        return LikePlan(
            False,
            {"_id": comment["_id"], "isDeleted": False, "likedBy": user_id},
            {"$pull": {"likedBy": user_id}, "$inc": {"likes": -1}},
            likes - 1,
        )
    return LikePlan(
        True,
        {"_id": comment["_id"], "isDeleted": False, "likedBy": {"$ne": user_id}},
        {"$push": {"likedBy": user_id}, "$inc": {"likes": 1}},
        likes + 1,
    )


def _validated_content(content: str) -> str:
    try:
        return CommentSchema(content=content).content
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc)


def _get_visible(db: Database, comment_id) -> dict:
    comment = db[COMMENTS].find_one({"_id": parse_id(comment_id), "isDeleted": False})
    if comment is None:
        raise NotFound("Comment not found")
    return comment


def _check_can_modify(comment: dict, actor_id, actor_is_admin: bool, action: str) -> None:
    if actor_is_admin:
        return
    if comment["author"] != parse_id(actor_id, "user"):
        raise Forbidden(f"Not authorized to {action} this comment")


def create(
    db: Database,
    issue_id,
    author_id,
    content: str,
    is_author_admin: bool,
    parent_comment_id=None,
) -> dict:
    content = _validated_content(content)
    issue_oid = parse_id(issue_id, "issueId")

    if db[ISSUES].find_one({"_id": issue_oid}, {"_id": 1}) is None:
        raise NotFound("Issue not found")

    parent_oid = None
    if parent_comment_id:
        parent_oid = parse_id(parent_comment_id, "parentCommentId")
        parent = db[COMMENTS].find_one({"_id": parent_oid}, {"issue": 1})
        if parent is None:
            raise NotFound("Parent comment not found")
        if parent["issue"] != issue_oid:
            raise ValidationError.single("parentCommentId", "Parent comment belongs to a different issue")

    doc = create_document(db, COMMENTS, {
        "content": content,
        "issue": issue_oid,
        "author": parse_id(author_id, "author"),
        "isOfficial": bool(is_author_admin),
        "parentComment": parent_oid,
        "likes": 0,
        "likedBy": [],
        "isEdited": False,
        "editedAt": None,
        "isDeleted": False,
    })
    logger.info(
        "comment_created",
        comment_id=str(doc["_id"]),
        issue_id=str(issue_oid),
        official=doc["isOfficial"],
        reply=parent_oid is not None,
    )
    return doc


def list_for_issue(db: Database, issue_id) -> list:
    """Visible comments of an issue, oldest first, with authors resolved."""
    issue_oid = parse_id(issue_id, "issueId")
    if db[ISSUES].find_one({"_id": issue_oid}, {"_id": 1}) is None:
        raise NotFound("Issue not found")

    docs = list(
        db[COMMENTS]
        .find({"issue": issue_oid, "isDeleted": False})
        .sort([("created_at", ASCENDING), ("_id", ASCENDING)])
    )
    users = lookup_users(db, [d["author"] for d in docs])
    return [present(db, d, users) for d in docs]


def edit(db: Database, comment_id, actor_id, actor_is_admin: bool, new_content: str) -> dict:
    content = _validated_content(new_content)
    comment = _get_visible(db, comment_id)
    _check_can_modify(comment, actor_id, actor_is_admin, "update")

    now = utcnow()
    updated = db[COMMENTS].find_one_and_update(
        {"_id": comment["_id"], "isDeleted": False},
        {"$set": {"content": content, "isEdited": True, "editedAt": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFound("Comment not found")
    logger.info("comment_edited", comment_id=str(comment["_id"]))
    return updated


def soft_delete(db: Database, comment_id, actor_id, actor_is_admin: bool) -> None:
    comment = _get_visible(db, comment_id)
    _check_can_modify(comment, actor_id, actor_is_admin, "delete")

    db[COMMENTS].update_one(
        {"_id": comment["_id"]},
        {"$set": {"isDeleted": True, "updated_at": utcnow()}},
    )
    logger.info("comment_deleted", comment_id=str(comment["_id"]))


def toggle_like(db: Database, comment_id, user_id) -> dict:
    oid = parse_id(comment_id)
    liker = parse_id(user_id, "user")

    for _ in range(LIKE_RETRIES):
        comment = db[COMMENTS].find_one({"_id": oid, "isDeleted": False}, LIKE_PROJECTION)
        if comment is None:
            raise NotFound("Comment not found")

        plan = plan_like(comment, liker)
        updated = db[COMMENTS].find_one_and_update(
            plan.filter,
            plan.update,
            projection=LIKE_PROJECTION,
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            return {"likes": updated["likes"], "likedByCaller": liker in updated.get("likedBy", [])}

    raise Conflict("Comment is being updated concurrently, please retry")


def delete_all_for_issue(db: Database, issue_oid: ObjectId) -> int:
    """Hard delete every comment of an issue. Only used when the issue itself is removed."""
    return db[COMMENTS].delete_many({"issue": issue_oid}).deleted_count


def present(db: Database, comment: dict, users: Optional[dict] = None) -> dict:
    if users is None:
        users = lookup_users(db, [comment.get("author")])
    out = serialize(comment)
    out["author"] = users.get(comment.get("author"))
    return out
