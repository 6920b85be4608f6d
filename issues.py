"""
Issue store.

Voting is split in two: ``plan_vote`` is a pure function deciding what a
vote does to the current document, and ``vote`` applies the plan as one
conditional ``find_one_and_update``. The plan's filter encodes the state
it was computed from, so a concurrent vote that changed that state makes
the update match nothing and the vote is re-planned.
"""

from typing import NamedTuple, Optional

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.database import Database

import comments
import storage
from auth import lookup_users
from database import ISSUES, create_document, parse_id, serialize
from errors import Conflict, DuplicateVote, Forbidden, NotFound, ValidationError
from log import get_logger
from schemas import Issue as IssueSchema

logger = get_logger("issues")

VOTE_RETRIES = 5
COUNTERS = {"up": "upvotes", "down": "downvotes"}
VOTE_PROJECTION = {"voters": 1, "upvotes": 1, "downvotes": 1}
LIST_FIELDS = {"tags"}


class VotePlan(NamedTuple):
    action: str  # "add", "remove" or "flip"
    filter: dict
    update: dict
    user_vote: Optional[str]
    upvotes: int
    downvotes: int
    voters: list


def current_vote(voters: list, user_id: ObjectId) -> Optional[str]:
    for voter in voters or []:
        if voter.get("user") == user_id:
            return voter.get("voteType")
    return None


def plan_vote(
    issue: dict,
    user_id: ObjectId,
    vote_type: str,
    toggle: bool = True,
) -> VotePlan:
    """Decide how ``user_id`` voting ``vote_type`` changes ``issue``.

    A first vote is added, a vote of the other type is flipped, and a repeat
    of the same type is removed when ``toggle`` is set or rejected with
    DuplicateVote otherwise. The returned plan carries the atomic update and
    the counters/voters the document will hold once it is applied.
    """
    if vote_type not in COUNTERS:
        raise ValidationError.single("voteType", "Vote type must be either up or down")

    voters = list(issue.get("voters") or [])
    upvotes = issue.get("upvotes", 0)
    downvotes = issue.get("downvotes", 0)
    counts = {"upvotes": upvotes, "downvotes": downvotes}
    existing = current_vote(voters, user_id)

    if existing is None:
        counts[COUNTERS[vote_type]] += 1
        update = {
            "$push": {"voters": {"user": user_id, "voteType": vote_type}},
            "$inc": {COUNTERS[vote_type]: 1},
        }
        return VotePlan(
            "add",
            {"_id": issue["_id"], "voters.user": {"$ne": user_id}},
            update,
            vote_type,
            counts["upvotes"],
            counts["downvotes"],
            voters + [{"user": user_id, "voteType": vote_type}],
        )

    matches_existing = {
        "_id": issue["_id"],
        "voters": {"$elemMatch": {"user": user_id, "voteType": existing}},
    }

    if existing == vote_type:
        if not toggle:
            raise DuplicateVote()
        counts[COUNTERS[vote_type]] -= 1
        update = {
            "$pull": {"voters": {"user": user_id}},
            "$inc": {COUNTERS[vote_type]: -1},
        }
        return VotePlan(
            "remove",
            matches_existing,
            update,
            None,
            counts["upvotes"],
            counts["downvotes"],
            [v for v in voters if v.get("user") != user_id],
        )

    counts[COUNTERS[existing]] -= 1
    counts[COUNTERS[vote_type]] += 1
    return VotePlan(
        "flip",
        matches_existing,
        {
            "$set": {"voters.$.voteType": vote_type},
            "$inc": {COUNTERS[existing]: -1, COUNTERS[vote_type]: 1},
        },
        vote_type,
        counts["upvotes"],
        counts["downvotes"],
        [
            {"user": user_id, "voteType": vote_type} if v.get("user") == user_id else v
            for v in voters
        ],
    )


def vote_summary(issue: dict, user_id: ObjectId) -> dict:
    upvotes = issue.get("upvotes", 0)
    downvotes = issue.get("downvotes", 0)
    return {
        "upvotes": upvotes,
        "downvotes": downvotes,
        "voteCount": upvotes - downvotes,
        "userVote": current_vote(issue.get("voters"), user_id),
    }


def validate(data) -> IssueSchema:
    """Check a report payload, collecting every failing field."""
    if isinstance(data, IssueSchema):
        return data
    try:
        return IssueSchema.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc)


def form_payload(items) -> dict:
    """Rebuild a report from multipart fields such as ``location[coordinates][latitude]``.

    File parts are skipped. ``tags`` (or ``tags[]``) may repeat.
    """
    data: dict = {}
    for key, value in items:
        if not isinstance(value, str):
            continue
        parts = key.replace("]", "").split("[")
        if parts[-1] == "":
            parts = parts[:-1]
        node = data
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        if parts[-1] in LIST_FIELDS:
            node.setdefault(parts[-1], []).append(value)
        else:
            node[parts[-1]] = value
    return data


def create(db: Database, data, reporter_id) -> dict:
    doc = validate(data).model_dump()
    doc.update(
        reportedBy=parse_id(reporter_id, "reportedBy"),
        status="pending",
        assignedTo=None,
        resolvedAt=None,
        upvotes=0,
        downvotes=0,
        voters=[],
    )
    doc = create_document(db, ISSUES, doc)
    logger.info("issue_created", issue_id=str(doc["_id"]), category=doc["category"])
    return doc


def get(db: Database, issue_id) -> dict:
    issue = db[ISSUES].find_one({"_id": parse_id(issue_id)})
    if issue is None:
        raise NotFound("Issue not found")
    return issue


def delete(db: Database, issue_id, actor_is_admin: bool) -> None:
    if not actor_is_admin:
        raise Forbidden("Only administrators can delete issues")
    issue = get(db, issue_id)

    removed = comments.delete_all_for_issue(db, issue["_id"])
    db[ISSUES].delete_one({"_id": issue["_id"]})
    if issue.get("imageUrl"):
        storage.delete_image(issue["imageUrl"])
    logger.info("issue_deleted", issue_id=str(issue["_id"]), comments_removed=removed)


def vote(db: Database, issue_id, user_id, vote_type: str, toggle: bool = True) -> dict:
    """Record ``user_id``'s vote and return the resulting tallies."""
    oid = parse_id(issue_id)
    voter = parse_id(user_id, "user")

    for _ in range(VOTE_RETRIES):
        issue = db[ISSUES].find_one({"_id": oid}, VOTE_PROJECTION)
        if issue is None:
            raise NotFound("Issue not found")

        plan = plan_vote(issue, voter, vote_type, toggle=toggle)
        updated = db[ISSUES].find_one_and_update(
            plan.filter,
            plan.update,
            projection=VOTE_PROJECTION,
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            logger.info("vote_recorded", issue_id=str(oid), action=plan.action, vote_type=vote_type)
            return vote_summary(updated, voter)

        logger.debug("vote_replanned", issue_id=str(oid))

    raise Conflict("Issue is being updated concurrently, please retry")


def present(db: Database, issue: dict, users: Optional[dict] = None) -> dict:
    """Serialize an issue with reporter and assignee resolved to display fields."""
    if users is None:
        users = lookup_users(db, [issue.get("reportedBy"), issue.get("assignedTo")])

    out = serialize(issue)
    out["reportedBy"] = users.get(issue.get("reportedBy"))
    out["assignedTo"] = users.get(issue.get("assignedTo"))
    out["voteCount"] = issue.get("upvotes", 0) - issue.get("downvotes", 0)
    return out


def present_many(db: Database, docs: list) -> list:
    ids = []
    for doc in docs:
        ids.extend([doc.get("reportedBy"), doc.get("assignedTo")])
    users = lookup_users(db, ids)
    return [present(db, doc, users) for doc in docs]
