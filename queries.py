"""
Listing, search and admin aggregations over the issue and comment collections.
"""

import math
import re
from datetime import timedelta
from datetime import timezone as dt_timezone
from typing import Optional

from pymongo import DESCENDING
from pymongo.database import Database

import config
import issues
from auth import public_user
from database import COMMENTS, ISSUES, USERS, as_utc, get_documents, utcnow
from errors import ValidationError
from log import get_logger
from schemas import CATEGORIES, PRIORITIES, STATUSES

logger = get_logger("queries")

SEARCH_FIELDS = ("title", "description", "location.address")
MAX_SEARCH_LENGTH = 100
RECENT_ISSUES = 10
NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]
TOP_REPORTERS = 10


def build_filter(
    category: Optional[str] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
) -> dict:
    """Equality constraints ANDed with a case-insensitive substring match over the search fields."""
    errors = []
    mongo_filter = {}

    for field, value, allowed in (
        ("category", category, CATEGORIES),
        ("status", status, STATUSES),
        ("priority", priority, PRIORITIES),
    ):
        if value is None:
            continue
        if value not in allowed:
            errors.append({"field": field, "message": f"Invalid {field}"})
        else:
            mongo_filter[field] = value

    if search is not None:
        if not 1 <= len(search) <= MAX_SEARCH_LENGTH:
            errors.append({"field": "search", "message": "Search term must be between 1 and 100 characters"})
        else:
            pattern = re.escape(search)
            mongo_filter["$or"] = [
                {field: {"$regex": pattern, "$options": "i"}} for field in SEARCH_FIELDS
            ]

    if errors:
        raise ValidationError(errors)
    return mongo_filter


def check_pagination(page: int, limit: int) -> None:
    errors = []
    if page < 1:
        errors.append({"field": "page", "message": "Page must be a positive integer"})
    if not 1 <= limit <= config.MAX_PAGE_SIZE:
        errors.append({"field": "limit", "message": "Limit must be between 1 and 100"})
    if errors:
        raise ValidationError(errors)


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit)


def list_issues(
    db: Database,
    filters: Optional[dict] = None,
    page: int = 1,
    limit: int = config.DEFAULT_PAGE_SIZE,
) -> dict:
    check_pagination(page, limit)
    mongo_filter = build_filter(**(filters or {}))

    docs = get_documents(db, ISSUES, mongo_filter, limit=limit, skip=(page - 1) * limit, sort=NEWEST_FIRST)
    total = db[ISSUES].count_documents(mongo_filter)

    return {
        "items": issues.present_many(db, docs),
        "count": len(docs),
        "total": total,
        "page": page,
        "pages": page_count(total, limit),
    }


def list_users(db: Database, page: int = 1, limit: int = config.ADMIN_PAGE_SIZE) -> dict:
    check_pagination(page, limit)
    docs = get_documents(
        db, USERS, limit=limit, skip=(page - 1) * limit, sort=NEWEST_FIRST, projection={"password_hash": 0}
    )
    total = db[USERS].count_documents({})
    return {
        "items": [public_user(u) for u in docs],
        "count": len(docs),
        "total": total,
        "page": page,
        "pages": page_count(total, limit),
    }


def _grouped_counts(db: Database, field: str) -> list:
    rows = db[ISSUES].aggregate([
        {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
        {"$sort": {"count": -1, "_id": 1}},
    ])
    return [{field: row["_id"], "count": row["count"]} for row in rows]


def average_response_time(db: Database) -> float:
    """Mean milliseconds between an issue's creation and its first comment."""
    first_comments = {
        row["_id"]: row["first"]
        for row in db[COMMENTS].aggregate([
            {"$group": {"_id": "$issue", "first": {"$min": "$created_at"}}},
        ])
    }
    if not first_comments:
        return 0

    durations = []
    for issue in db[ISSUES].find({"_id": {"$in": list(first_comments)}}, {"created_at": 1}):
        delta = as_utc(first_comments[issue["_id"]]) - as_utc(issue["created_at"])
        durations.append(delta.total_seconds() * 1000)

    if not durations:
        return 0
    return sum(durations) / len(durations)


def stats(db: Database) -> dict:
    status_counts = {
        row["_id"]: row["count"]
        for row in db[ISSUES].aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}])
    }
    total = sum(status_counts.values())
    resolved = status_counts.get("resolved", 0)
    resolution_rate = round(resolved / total * 100, 2) if total else 0

    total_users = db[USERS].count_documents({})
    admin_users = db[USERS].count_documents({"is_admin": True})

    recent = get_documents(db, ISSUES, limit=RECENT_ISSUES, sort=NEWEST_FIRST)

    return {
        "issues": {
            "total": total,
            "pending": status_counts.get("pending", 0),
            "inProgress": status_counts.get("in-progress", 0),
            "resolved": resolved,
            "rejected": status_counts.get("rejected", 0),
            "resolutionRate": resolution_rate,
        },
        "users": {
            "total": total_users,
            "admin": admin_users,
            "regular": total_users - admin_users,
        },
        "categories": _grouped_counts(db, "category"),
        "priorities": _grouped_counts(db, "priority"),
        "avgResponseTime": average_response_time(db),
        "recentIssues": issues.present_many(db, recent),
    }


def _daily_series(db: Database, match: dict, date_field: str, timezone: str) -> list:
    def part(op):
        return {op: {"date": f"${date_field}", "timezone": timezone}}

    rows = db[ISSUES].aggregate([
        {"$match": match},
        {"$group": {
            "_id": {
                "year": part("$year"),
                "month": part("$month"),
                "day": part("$dayOfMonth"),
            },
            "count": {"$sum": 1},
        }},
        {"$sort": {"_id.year": 1, "_id.month": 1, "_id.day": 1}},
    ])
    series = []
    for row in rows:
        key = row["_id"]
        series.append({
            "date": f"{key['year']:04d}-{key['month']:02d}-{key['day']:02d}",
            "year": key["year"],
            "month": key["month"],
            "day": key["day"],
            "count": row["count"],
        })
    return series


def analytics(db: Database, period_days: int = 30, timezone: str = config.REPORT_TIMEZONE, now=None) -> dict:
    if period_days < 1:
        raise ValidationError.single("period", "Period must be a positive number of days")

    # stored dates are naive UTC
    start = ((now or utcnow()) - timedelta(days=period_days)).astimezone(dt_timezone.utc).replace(tzinfo=None)

    issues_over_time = _daily_series(db, {"created_at": {"$gte": start}}, "created_at", timezone)
    resolved_over_time = _daily_series(
        db, {"status": "resolved", "resolvedAt": {"$gte": start}}, "resolvedAt", timezone
    )

    top_reporters = list(db[ISSUES].aggregate([
        {"$match": {"created_at": {"$gte": start}}},
        {"$group": {"_id": "$reportedBy", "count": {"$sum": 1}}},
        {"$lookup": {"from": USERS, "localField": "_id", "foreignField": "_id", "as": "user"}},
        {"$unwind": "$user"},
        {"$project": {"name": "$user.name", "email": "$user.email", "issueCount": "$count"}},
        {"$sort": {"issueCount": -1, "_id": 1}},
        {"$limit": TOP_REPORTERS},
    ]))
    for row in top_reporters:
        row["userId"] = str(row.pop("_id"))

    logger.info("analytics_computed", period_days=period_days, days=len(issues_over_time))
    return {
        "issuesOverTime": issues_over_time,
        "resolvedOverTime": resolved_over_time,
        "topReporters": top_reporters,
        "period": period_days,
    }
