"""
Read-only reporting over the lesson and user collections.

Nothing here writes or caches: every call recomputes from the stored data.
All windows are computed in UTC.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from database import PUBLIC_LESSONS, USERS, now, to_public
from errors import NotFound

TOP_CONTRIBUTORS_LIMIT = 7
RECENT_LIMIT = 5
WEEK = timedelta(days=7)

LESSON_WEIGHT = 5
LIKE_WEIGHT = 1
FAVORITE_WEIGHT = 2


def week_start(at: Optional[datetime] = None) -> datetime:
    # naive UTC, matching how the driver hands stored dates back
    start = (at or now()) - WEEK
    return start.astimezone(timezone.utc).replace(tzinfo=None)


def contributor_score(total_lessons: int, total_likes: int, total_favorites: int) -> int:
    return LESSON_WEIGHT * total_lessons + LIKE_WEIGHT * total_likes + FAVORITE_WEIGHT * total_favorites


def top_contributors(db: Database, limit: int = TOP_CONTRIBUTORS_LIMIT) -> List[Dict[str, Any]]:
    """Public-lesson creators ranked by weighted score.

    Lessons are ordered oldest first before grouping, so "photo" is the
    snapshot from the creator's earliest public lesson. Equal scores are
    ordered by creator name.
    """
    pipeline = [
        {"$match": {"visibility": "public"}},
        {"$sort": {"createdAt": ASCENDING, "_id": ASCENDING}},
        {
            "$group": {
                "_id": "$creator.name",
                "photo": {"$first": "$creator.photo"},
                "totalLessons": {"$sum": 1},
                "totalLikes": {"$sum": "$likesCount"},
                "totalFavorites": {"$sum": "$favoritesCount"},
            }
        },
        {
            "$addFields": {
                "score": {
                    "$add": [
                        {"$multiply": ["$totalLessons", LESSON_WEIGHT]},
                        {"$multiply": ["$totalLikes", LIKE_WEIGHT]},
                        {"$multiply": ["$totalFavorites", FAVORITE_WEIGHT]},
                    ]
                }
            }
        },
        {"$sort": {"score": DESCENDING, "_id": ASCENDING}},
        {"$limit": limit},
    ]
    return list(db[PUBLIC_LESSONS].aggregate(pipeline))


def weekly_stats(db: Database, email: str, at: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Lessons created by `email` in the trailing 7 days, per day of week (1 = Sunday)."""
    since = week_start(at)
    pipeline = [
        {"$match": {"creator.email": email, "createdAt": {"$gte": since}}},
        {"$group": {"_id": {"$dayOfWeek": "$createdAt"}, "count": {"$sum": 1}}},
        {"$sort": {"_id": ASCENDING}},
    ]
    return list(db[PUBLIC_LESSONS].aggregate(pipeline))


def dashboard_overview(db: Database, email: str, at: Optional[datetime] = None) -> Dict[str, Any]:
    lessons = db[PUBLIC_LESSONS]
    recent = (
        lessons.find({"creator.email": email}, {"title": 1, "category": 1, "createdAt": 1})
        .sort([("createdAt", DESCENDING), ("_id", DESCENDING)])
        .limit(RECENT_LIMIT)
    )
    return {
        "totalLessons": lessons.count_documents({"creator.email": email}),
        "totalFavorites": lessons.count_documents({"favoritedBy.email": email}),
        "recentLessons": [to_public(d) for d in recent],
        "weeklyStats": weekly_stats(db, email, at),
    }


def community_stats(db: Database) -> Dict[str, Any]:
    lessons = db[PUBLIC_LESSONS]
    favorites = list(lessons.aggregate([
        {"$group": {"_id": None, "totalFavorites": {"$sum": "$favoritesCount"}}}
    ]))
    categories = [c for c in lessons.distinct("category") if c]
    return {
        "totalLessons": lessons.count_documents({"visibility": "public"}),
        "totalUsers": db[USERS].count_documents({}),
        "totalFavorites": favorites[0]["totalFavorites"] if favorites else 0,
        "totalCategories": len(categories),
    }


def admin_stats(db: Database, at: Optional[datetime] = None) -> Dict[str, Any]:
    lessons = db[PUBLIC_LESSONS]
    since = week_start(at)
    weekly = lessons.count_documents({"createdAt": {"$gte": since}})
    return {
        "totalUsers": db[USERS].count_documents({}),
        "totalLessons": lessons.count_documents({}),
        "reportedLessons": lessons.count_documents({"isReported": True}),
        "weeklyGrowth": f"+{weekly}",
    }


def user_profile(db: Database, email: str) -> Dict[str, Any]:
    user = db[USERS].find_one({"email": email})
    if not user:
        raise NotFound("User not found")
    lessons = db[PUBLIC_LESSONS]
    return {
        "name": user.get("name"),
        "email": user.get("email"),
        "photoURL": user.get("photoURL") or "",
        "isPremium": bool(user.get("isPremium")),
        "lessonsCreated": lessons.count_documents({"creator.email": email}),
        "lessonsSaved": lessons.count_documents({"favoritedBy.email": email}),
    }


# -------------------------------------------------------------------
# Admin listings
# -------------------------------------------------------------------
def _listing(db: Database, collection: str, fields: List[str], query: Optional[dict] = None,
             limit: int = 0) -> List[Dict[str, Any]]:
    cursor = (
        db[collection]
        .find(query or {}, {f: 1 for f in fields})
        .sort([("createdAt", DESCENDING), ("_id", DESCENDING)])
    )
    if limit:
        cursor = cursor.limit(limit)
    return [to_public(d) for d in cursor]


def recent_users(db: Database) -> List[Dict[str, Any]]:
    return _listing(db, USERS, ["name", "email", "createdAt"], limit=RECENT_LIMIT)


def recent_lessons(db: Database) -> List[Dict[str, Any]]:
    return _listing(db, PUBLIC_LESSONS, ["title", "visibility", "createdAt"], limit=RECENT_LIMIT)


def all_users(db: Database) -> List[Dict[str, Any]]:
    return _listing(db, USERS, ["name", "email", "role", "isPremium", "createdAt"])


def all_lessons(db: Database) -> List[Dict[str, Any]]:
    fields = ["title", "category", "visibility", "accessLevel", "isReported", "createdAt"]
    return _listing(db, PUBLIC_LESSONS, fields)


def reported_lessons(db: Database) -> List[Dict[str, Any]]:
    fields = ["title", "category", "creator", "createdAt"]
    return _listing(db, PUBLIC_LESSONS, fields, query={"isReported": True})
