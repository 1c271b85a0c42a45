"""
Lesson storage across the two lesson collections.

Every lesson lives twice: once in the Public Content Index ("public-lesson",
queried by visibility/category) and once in the Owner Content Index
("my-lessons", queried by creator email). LessonRepository is the only code
allowed to write either collection. Mutations land on the public copy first
and the owner copy is then brought up to the same revision, so the two
documents stay equal.
"""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import ValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import OWNER_LESSONS, PUBLIC_LESSONS, now
from errors import BadRequest, Internal, NotFound
from schemas import PLACEHOLDER_NAME, Comment, CreatorSnapshot, Lesson

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "title",
    "shortDescription",
    "fullDescription",
    "category",
    "emotionalTone",
    "visibility",
    "accessLevel",
    "image",
)
VISIBILITIES = ("public", "private")
ACCESS_LEVELS = ("free", "premium")


class LessonRepository:
    def __init__(self, db: Database):
        self.public = db[PUBLIC_LESSONS]
        self.owned = db[OWNER_LESSONS]

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def get(self, lesson_id: ObjectId) -> dict:
        lesson = self.public.find_one({"_id": lesson_id})
        if not lesson:
            raise NotFound("Lesson not found")
        return lesson

    def list_public(self, category: Optional[str] = None) -> List[dict]:
        query: Dict[str, Any] = {"visibility": "public"}
        if category:
            query["category"] = category
        return list(self.public.find(query).sort([("createdAt", DESCENDING), ("_id", DESCENDING)]))

    def list_public_by_creator(self, email: str) -> List[dict]:
        query = {"creator.email": email, "visibility": "public"}
        return list(self.public.find(query).sort([("createdAt", DESCENDING), ("_id", DESCENDING)]))

    def list_owned(self, email: str) -> List[dict]:
        query = {"creator.email": email}
        return list(self.owned.find(query).sort([("createdAt", DESCENDING), ("_id", DESCENDING)]))

    def find_divergent(self) -> List[str]:
        """Ids whose two stored copies differ or exist in only one collection."""
        public = {doc["_id"]: doc for doc in self.public.find()}
        owned = {doc["_id"]: doc for doc in self.owned.find()}
        divergent = [
            lesson_id
            for lesson_id in set(public) | set(owned)
            if public.get(lesson_id) != owned.get(lesson_id)
        ]
        return sorted(str(i) for i in divergent)

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------
    def create(self, draft: Dict[str, Any], creator: CreatorSnapshot) -> dict:
        content = {k: v for k, v in draft.items() if k in EDITABLE_FIELDS and v is not None}
        try:
            lesson = Lesson(
                **content,
                creator=creator,
                likesCount=0,
                favoritesCount=0,
                likedBy=[],
                favoritedBy=[],
                comments=[],
                isReported=False,
                revision=0,
                createdAt=now(),
            )
        except ValidationError as exc:
            raise BadRequest(_first_error(exc))

        doc = {"_id": ObjectId(), **lesson.model_dump()}
        self.public.insert_one({**doc})
        try:
            self.owned.insert_one({**doc})
        except PyMongoError:
            logger.exception("owner index insert failed, removing public copy id=%s", doc["_id"])
            self._compensate_create(doc["_id"])
            raise Internal("Failed to add lesson")
        logger.info("lesson created id=%s creator=%s", doc["_id"], creator.email)
        return doc

    def _compensate_create(self, lesson_id: ObjectId) -> None:
        try:
            self.public.delete_one({"_id": lesson_id})
        except PyMongoError:
            logger.error("lesson indexes diverged: public copy left behind id=%s", lesson_id)
            raise Internal("Lesson storage is inconsistent")

    def update(self, lesson_id: ObjectId, patch: Dict[str, Any]) -> Dict[str, Any]:
        if not patch:
            raise BadRequest("Nothing to update")
        unknown = sorted(set(patch) - set(EDITABLE_FIELDS))
        if unknown:
            raise BadRequest(f"Field cannot be updated: {unknown[0]}")
        if "visibility" in patch and patch["visibility"] not in VISIBILITIES:
            raise BadRequest("Invalid visibility")
        if "accessLevel" in patch and patch["accessLevel"] not in ACCESS_LEVELS:
            raise BadRequest("Invalid access level")
        for field in ("title", "fullDescription"):
            if field in patch and not patch[field]:
                raise BadRequest("Title & Full Description required")
        self._update_both(lesson_id, {"$set": patch})
        return patch

    def set_access_level(self, lesson_id: ObjectId, level: Any) -> None:
        if level not in ACCESS_LEVELS:
            raise BadRequest("Invalid access level")
        self._update_both(lesson_id, {"$set": {"accessLevel": level}})

    def delete(self, lesson_id: ObjectId) -> None:
        removed = self.public.delete_one({"_id": lesson_id}).deleted_count
        removed += self.owned.delete_one({"_id": lesson_id}).deleted_count
        if removed == 0:
            raise NotFound("Lesson not found")
        if removed == 1:
            logger.warning("lesson was present in one index only id=%s", lesson_id)
        logger.info("lesson deleted id=%s", lesson_id)

    def delete_by_creator(self, email: str) -> int:
        removed = self.public.delete_many({"creator.email": email}).deleted_count
        self.owned.delete_many({"creator.email": email})
        return removed

    # -------------------------------------------------------------------
    # Engagement and moderation
    # -------------------------------------------------------------------
    def toggle_like(self, lesson_id: ObjectId, email: str) -> Dict[str, Any]:
        liked = self._toggle_marker(lesson_id, email, "likedBy", "likesCount")
        return {"liked": liked, "likesCount": self.get(lesson_id)["likesCount"]}

    def toggle_favorite(self, lesson_id: ObjectId, email: str) -> Dict[str, Any]:
        favorited = self._toggle_marker(lesson_id, email, "favoritedBy", "favoritesCount")
        return {"favorited": favorited, "favoritesCount": self.get(lesson_id)["favoritesCount"]}

    def add_comment(self, lesson_id: ObjectId, author: Dict[str, Any], text: str) -> dict:
        try:
            comment = Comment(
                text=(text or "").strip(),
                authorName=author.get("name") or PLACEHOLDER_NAME,
                authorEmail=author["email"],
                authorPhoto=author.get("photoURL") or "",
                createdAt=now(),
            )
        except ValidationError:
            raise BadRequest("Comment text is required")
        doc = comment.model_dump()
        self._update_both(lesson_id, {"$push": {"comments": doc}})
        return doc

    def report(self, lesson_id: ObjectId) -> None:
        self._update_both(lesson_id, {"$set": {"isReported": True}})
        logger.warning("lesson reported id=%s", lesson_id)

    def clear_report(self, lesson_id: ObjectId) -> None:
        self._update_both(lesson_id, {"$set": {"isReported": False}})

    def _toggle_marker(self, lesson_id: ObjectId, email: str, field: str, counter: str) -> bool:
        self.get(lesson_id)
        marker = {"email": email}
        # Conditional on current membership so concurrent toggles never drift the counter.
        added = self._update_both(
            lesson_id,
            {"$push": {field: marker}, "$inc": {counter: 1}},
            condition={f"{field}.email": {"$ne": email}},
        )
        if added:
            return True
        self._update_both(
            lesson_id,
            {"$pull": {field: marker}, "$inc": {counter: -1}},
            condition={f"{field}.email": email, counter: {"$gt": 0}},
        )
        return False

    def _update_both(
        self,
        lesson_id: ObjectId,
        update: Dict[str, Any],
        condition: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Apply one update to both copies; False when the condition did not match.

        The condition and the update run against the public copy only. The
        owner copy is then replaced by the resulting document unless it
        already holds a newer revision, so concurrent writers converge on
        whatever the public copy ends up as. Without a condition an unknown
        id raises NotFound.
        """
        query = {"_id": lesson_id, **(condition or {})}
        update = {**update, "$inc": {**update.get("$inc", {}), "revision": 1}}
        after = self.public.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        if after is None:
            if condition is None:
                raise NotFound("Lesson not found")
            return False
        self._sync_owner_copy(after)
        return True

    def _sync_owner_copy(self, latest: dict) -> None:
        lesson_id = latest["_id"]
        older = {
            "_id": lesson_id,
            "$or": [{"revision": {"$lt": latest["revision"]}}, {"revision": {"$exists": False}}],
        }
        if self.owned.replace_one(older, latest).matched_count:
            return
        if self.owned.find_one({"_id": lesson_id}, {"_id": 1}) is None:
            logger.error("lesson indexes diverged: owner copy missing id=%s", lesson_id)
            raise Internal("Lesson storage is inconsistent")
        # owner copy already carries a later revision


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ()))
    if field in ("title", "fullDescription"):
        return "Title & Full Description required"
    return f"Invalid {field}" if field else "Invalid lesson"
