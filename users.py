import logging
from typing import Any, Dict, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import USERS, now
from errors import BadRequest, NotFound
from lessons import LessonRepository
from schemas import Account, PLACEHOLDER_NAME

logger = logging.getLogger(__name__)

# Fields an administrator may change on an account.
ADMIN_PATCHABLE_FIELDS = ("role", "isPremium")
ROLES = ("user", "admin")


class UserDirectory:
    """Account records, keyed by identity-provider uid and by email."""

    def __init__(self, db: Database):
        self.db = db
        self.users = db[USERS]

    def upsert_on_first_sight(
        self,
        uid: str,
        email: str,
        name: Optional[str] = None,
        photo: Optional[str] = None,
    ) -> dict:
        account = Account(
            uid=uid,
            email=email,
            name=name or PLACEHOLDER_NAME,
            photoURL=photo or "",
            createdAt=now(),
        )
        try:
            result = self.users.update_one(
                {"uid": uid},
                {"$setOnInsert": account.model_dump()},
                upsert=True,
            )
        except DuplicateKeyError:
            raise BadRequest("Email already registered")
        if result.upserted_id is not None:
            logger.info("account created uid=%s email=%s", uid, email)
        elif name and name != PLACEHOLDER_NAME:
            # Only a placeholder name is ever replaced on this path.
            patch: Dict[str, Any] = {"name": name}
            if photo:
                patch["photoURL"] = photo
            self.users.update_one({"uid": uid, "name": PLACEHOLDER_NAME}, {"$set": patch})
        return self.get_by_uid(uid)

    def get_by_uid(self, uid: str) -> dict:
        account = self.users.find_one({"uid": uid})
        if not account:
            raise NotFound("User not found")
        return account

    def get_by_email(self, email: str) -> dict:
        account = self.users.find_one({"email": email})
        if not account:
            raise NotFound("User not found")
        return account

    def update_profile(self, uid: str, name: Optional[str], photo: Optional[str]) -> int:
        patch: Dict[str, Any] = {}
        if name is not None:
            patch["name"] = name
        if photo is not None:
            patch["photoURL"] = photo
        if not patch:
            raise BadRequest("Nothing to update")
        result = self.users.update_one({"uid": uid}, {"$set": patch})
        if result.matched_count == 0:
            raise NotFound("User not found")
        return result.modified_count

    def set_role_or_premium(self, email: str, patch: Dict[str, Any]) -> int:
        if not patch:
            raise BadRequest("Nothing to update")
        unknown = sorted(set(patch) - set(ADMIN_PATCHABLE_FIELDS))
        if unknown:
            raise BadRequest(f"Field cannot be updated: {unknown[0]}")
        if "role" in patch and patch["role"] not in ROLES:
            raise BadRequest("Invalid role")
        if "isPremium" in patch and not isinstance(patch["isPremium"], bool):
            raise BadRequest("Invalid premium flag")
        result = self.users.update_one({"email": email}, {"$set": patch})
        if result.matched_count == 0:
            raise NotFound("User not found")
        logger.info("account updated by admin email=%s patch=%s", email, patch)
        return result.modified_count

    def set_premium(self, email: str) -> int:
        result = self.users.update_one({"email": email}, {"$set": {"isPremium": True}})
        if result.matched_count == 0:
            raise NotFound("User not found")
        logger.info("account upgraded to premium email=%s", email)
        return result.modified_count

    def delete_account(self, email: str, lessons: LessonRepository) -> int:
        """Delete the account and every lesson it created; returns the lesson count."""
        result = self.users.delete_one({"email": email})
        if result.deleted_count == 0:
            raise NotFound("User not found")
        removed = lessons.delete_by_creator(email)
        logger.info("account deleted email=%s lessons_removed=%s", email, removed)
        return removed
