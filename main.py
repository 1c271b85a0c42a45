import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, Dict, Any, Literal

from fastapi import FastAPI, Depends, File, Header, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import reports
from auth import Identity, IdentityProvider, get_identity_provider
from database import (
    POSTS,
    connection,
    create_document,
    ensure_indexes,
    get_db,
    get_documents,
    now,
    parse_object_id,
    to_public,
)
from errors import BadRequest, Forbidden, NotFound, Unauthorized
from lessons import LessonRepository
from payments import PaymentGateway, get_payment_gateway, lookup, to_minor_units
from schemas import CreatorSnapshot, Post, PLACEHOLDER_NAME
from storage import LocalBlobStorage, get_storage
from users import UserDirectory

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if connection.configured:
        try:
            ensure_indexes(connection.get())
        except PyMongoError:
            logger.exception("index creation failed; continuing without it")
    else:
        logger.warning("DATABASE_URL not set; database routes will fail")
    yield
    connection.close()


app = FastAPI(title="WisdomVault API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
Path(config.UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=config.UPLOAD_DIR), name="uploads")


# -------------------------------------------------------------------
# Error responses: every failure is {"message": ...}
# -------------------------------------------------------------------
@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    err = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in err.get("loc", ())[1:])
    msg = err.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"message": f"{field}: {msg}" if field else msg})


@app.exception_handler(PyMongoError)
async def database_error(request: Request, exc: PyMongoError):
    logger.error("database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"message": "Database error"})


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Something went wrong!"})


# -------------------------------------------------------------------
# Dependencies
# -------------------------------------------------------------------
security = HTTPBearer(auto_error=False)


def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    provider: IdentityProvider = Depends(get_identity_provider),
) -> Identity:
    if credentials is None or not credentials.credentials:
        raise Unauthorized()
    return provider.verify_token(credentials.credentials)


def get_users(db: Database = Depends(get_db)) -> UserDirectory:
    return UserDirectory(db)


def get_lessons(db: Database = Depends(get_db)) -> LessonRepository:
    return LessonRepository(db)


def is_admin(users: UserDirectory, identity: Identity) -> bool:
    try:
        return users.get_by_uid(identity.uid).get("role") == "admin"
    except NotFound:
        return False


def require_admin(
    identity: Identity = Depends(get_identity),
    users: UserDirectory = Depends(get_users),
) -> Identity:
    if not is_admin(users, identity):
        logger.warning("admin route refused uid=%s email=%s", identity.uid, identity.email)
        raise Forbidden()
    return identity


def account_or_identity(users: UserDirectory, identity: Identity) -> Dict[str, Any]:
    """The caller's stored account, or the token's claims if they never synced."""
    try:
        return users.get_by_uid(identity.uid)
    except NotFound:
        return {"name": identity.name, "email": identity.email, "photoURL": identity.picture or ""}


# -------------------------------------------------------------------
# Models
# -------------------------------------------------------------------
class SyncUserIn(BaseModel):
    name: Optional[str] = None
    photoURL: Optional[str] = None


class ProfileUpdateIn(BaseModel):
    name: Optional[str] = None
    photoURL: Optional[str] = None


class AccountPatchIn(BaseModel):
    role: Optional[str] = None
    isPremium: Optional[bool] = None


class LessonCreateIn(BaseModel):
    title: str
    shortDescription: Optional[str] = ""
    fullDescription: str
    category: Optional[str] = None
    emotionalTone: Optional[str] = None
    visibility: Literal["public", "private"] = "public"
    accessLevel: Literal["free", "premium"] = "free"
    imageURL: Optional[str] = None


class LessonUpdateIn(BaseModel):
    title: Optional[str] = None
    shortDescription: Optional[str] = None
    fullDescription: Optional[str] = None
    category: Optional[str] = None
    emotionalTone: Optional[str] = None
    visibility: Optional[Literal["public", "private"]] = None
    accessLevel: Optional[Literal["free", "premium"]] = None
    image: Optional[str] = None


class AccessLevelIn(BaseModel):
    accessLevel: str


class CommentIn(BaseModel):
    text: str


class PostIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    content: str


class PaymentIntentIn(BaseModel):
    price: float = Field(..., gt=0)


class UpgradeIn(BaseModel):
    paymentIntentId: str


# -------------------------------------------------------------------
# Root + health
# -------------------------------------------------------------------
@app.get("/")
def root():
    return {"app": "WisdomVault API", "status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if connection.configured:
            db = connection.get()
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if config.DATABASE_URL else "❌ Not Set"
    response["database_name"] = config.DATABASE_NAME
    return response


# -------------------------------------------------------------------
# Public lessons + engagement
# -------------------------------------------------------------------
@app.get("/lessons")
def list_lessons(category: Optional[str] = Query(None), lessons: LessonRepository = Depends(get_lessons)):
    return [to_public(d) for d in lessons.list_public(category)]


@app.get("/lessons/{lesson_id}")
def get_lesson(lesson_id: str, lessons: LessonRepository = Depends(get_lessons)):
    lesson = lessons.get(parse_object_id(lesson_id, "lesson id"))
    if lesson.get("visibility") != "public":
        raise NotFound("Lesson not found")
    return to_public(lesson)


@app.post("/lessons/{lesson_id}/like")
def like_lesson(lesson_id: str, identity: Identity = Depends(get_identity),
                lessons: LessonRepository = Depends(get_lessons)):
    return lessons.toggle_like(parse_object_id(lesson_id, "lesson id"), identity.email)


@app.post("/lessons/{lesson_id}/favorite")
def favorite_lesson(lesson_id: str, identity: Identity = Depends(get_identity),
                    lessons: LessonRepository = Depends(get_lessons)):
    return lessons.toggle_favorite(parse_object_id(lesson_id, "lesson id"), identity.email)


@app.post("/lessons/{lesson_id}/comments")
def comment_lesson(
    lesson_id: str,
    data: CommentIn,
    identity: Identity = Depends(get_identity),
    users: UserDirectory = Depends(get_users),
    lessons: LessonRepository = Depends(get_lessons),
):
    author = account_or_identity(users, identity)
    comment = lessons.add_comment(parse_object_id(lesson_id, "lesson id"), author, data.text)
    return {"success": True, "comment": comment}


@app.post("/lessons/{lesson_id}/report")
def report_lesson(lesson_id: str, identity: Identity = Depends(get_identity),
                  lessons: LessonRepository = Depends(get_lessons)):
    lessons.report(parse_object_id(lesson_id, "lesson id"))
    return {"success": True}


@app.get("/top-contributors")
def top_contributors(db: Database = Depends(get_db)):
    return reports.top_contributors(db)


@app.get("/community-stats")
def community_stats(db: Database = Depends(get_db)):
    return reports.community_stats(db)


# -------------------------------------------------------------------
# Users
# -------------------------------------------------------------------
@app.post("/users")
def sync_user(
    data: Optional[SyncUserIn] = None,
    identity: Identity = Depends(get_identity),
    users: UserDirectory = Depends(get_users),
):
    data = data or SyncUserIn()
    account = users.upsert_on_first_sight(
        identity.uid,
        identity.email,
        name=data.name or identity.name,
        photo=data.photoURL or identity.picture,
    )
    return {"success": True, "user": to_public(account)}


@app.get("/users/status/{email}")
def user_status(email: str, identity: Identity = Depends(get_identity),
                users: UserDirectory = Depends(get_users)):
    if email != identity.email and not is_admin(users, identity):
        raise Forbidden()
    account = users.get_by_email(email)
    return {"role": account.get("role", "user"), "isPremium": bool(account.get("isPremium"))}


@app.get("/users/profile/{email}")
def user_profile(email: str, identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    return reports.user_profile(db, email)


@app.put("/users/update-profile")
def update_profile(
    data: ProfileUpdateIn,
    identity: Identity = Depends(get_identity),
    users: UserDirectory = Depends(get_users),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    modified = users.update_profile(identity.uid, data.name, data.photoURL)
    provider.update_user(identity.uid, display_name=data.name, photo_url=data.photoURL)
    return {"success": True, "modifiedCount": modified}


@app.post("/users/upload-profile")
def upload_profile_image(
    profileImage: UploadFile = File(...),
    identity: Identity = Depends(get_identity),
    users: UserDirectory = Depends(get_users),
    storage: LocalBlobStorage = Depends(get_storage),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    if not (profileImage.content_type or "").startswith("image/"):
        raise BadRequest("Only image uploads are allowed")
    data = profileImage.file.read()
    if not data:
        raise BadRequest("No file uploaded")
    ext = Path(profileImage.filename or "").suffix.lower()
    key = f"profile/{int(time.time() * 1000)}-{identity.uid}{ext}"
    photo_url = storage.put(data, key)
    users.update_profile(identity.uid, None, photo_url)
    provider.update_user(identity.uid, photo_url=photo_url)
    return {"photoURL": photo_url}


# -------------------------------------------------------------------
# Payments
# -------------------------------------------------------------------
@app.post("/create-payment-intent")
def create_payment_intent(
    data: PaymentIntentIn,
    identity: Identity = Depends(get_identity),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    secret = gateway.create_payment_intent(
        to_minor_units(data.price), metadata={"email": identity.email, "uid": identity.uid}
    )
    return {"clientSecret": secret}


@app.patch("/users/upgrade")
def upgrade_user(
    data: UpgradeIn,
    identity: Identity = Depends(get_identity),
    users: UserDirectory = Depends(get_users),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    intent = gateway.retrieve_payment_intent(data.paymentIntentId)
    if lookup(intent, "status") != "succeeded":
        raise BadRequest("Payment not completed")
    if lookup(intent, "metadata", "email") != identity.email:
        raise Forbidden("Payment belongs to another account")
    users.set_premium(identity.email)
    return {"success": True, "isPremium": True}


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    users: UserDirectory = Depends(get_users),
):
    payload = await request.body()
    event = gateway.construct_event(payload, stripe_signature)
    if lookup(event, "type") == "payment_intent.succeeded":
        email = lookup(event, "data", "object", "metadata", "email")
        if email:
            try:
                await run_in_threadpool(users.set_premium, email)
            except NotFound:
                logger.warning("paid upgrade for unknown account email=%s", email)
    return {"received": True}


# -------------------------------------------------------------------
# Dashboard (owner)
# -------------------------------------------------------------------
def owned_lesson(lessons: LessonRepository, users: UserDirectory, identity: Identity, lesson_id: str):
    oid = parse_object_id(lesson_id, "lesson id")
    lesson = lessons.get(oid)
    if lesson["creator"]["email"] != identity.email and not is_admin(users, identity):
        raise Forbidden("You can only modify your own lessons")
    return oid


@app.post("/dashboard/add-lesson")
def add_lesson(
    data: LessonCreateIn,
    identity: Identity = Depends(get_identity),
    users: UserDirectory = Depends(get_users),
    lessons: LessonRepository = Depends(get_lessons),
):
    account = account_or_identity(users, identity)
    creator = CreatorSnapshot(
        name=account.get("name") or PLACEHOLDER_NAME,
        email=identity.email,
        uid=identity.uid,
        photo=account.get("photoURL") or "",
    )
    draft = data.model_dump(exclude={"imageURL"})
    draft["image"] = data.imageURL or ""
    lesson = lessons.create(draft, creator)
    return {"success": True, "lesson": to_public(lesson)}


@app.get("/dashboard/my-lessons")
def my_lessons(identity: Identity = Depends(get_identity), lessons: LessonRepository = Depends(get_lessons)):
    return [to_public(d) for d in lessons.list_owned(identity.email)]


@app.put("/dashboard/my-lessons/{lesson_id}")
def update_my_lesson(
    lesson_id: str,
    data: LessonUpdateIn,
    identity: Identity = Depends(get_identity),
    users: UserDirectory = Depends(get_users),
    lessons: LessonRepository = Depends(get_lessons),
):
    oid = owned_lesson(lessons, users, identity, lesson_id)
    patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    return {"success": True, "updatedLesson": lessons.update(oid, patch)}


@app.delete("/dashboard/my-lessons/{lesson_id}")
def delete_my_lesson(
    lesson_id: str,
    identity: Identity = Depends(get_identity),
    users: UserDirectory = Depends(get_users),
    lessons: LessonRepository = Depends(get_lessons),
):
    lessons.delete(owned_lesson(lessons, users, identity, lesson_id))
    return {"success": True}


@app.get("/dashboard/overview")
def dashboard_overview(identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    return reports.dashboard_overview(db, identity.email)


@app.get("/public-lessons/user/{email}")
def public_lessons_by_user(email: str, identity: Identity = Depends(get_identity),
                           lessons: LessonRepository = Depends(get_lessons)):
    return [to_public(d) for d in lessons.list_public_by_creator(email)]


# -------------------------------------------------------------------
# Posts
# -------------------------------------------------------------------
@app.post("/add-post")
def add_post(data: PostIn, identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    body = data.model_dump()
    for reserved in ("_id", "authorEmail", "createdAt"):
        body.pop(reserved, None)
    post = Post(**body, authorEmail=identity.email, createdAt=now())
    inserted_id = create_document(db, POSTS, post.model_dump())
    return {"success": True, "insertedId": inserted_id}


@app.get("/posts")
def list_posts(db: Database = Depends(get_db)):
    return get_documents(db, POSTS, sort=[("createdAt", -1), ("_id", 1)])


# -------------------------------------------------------------------
# Admin
# -------------------------------------------------------------------
@app.get("/admin/dashboard-stats")
def admin_dashboard_stats(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return reports.admin_stats(db)


@app.get("/admin/recent-users")
def admin_recent_users(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return reports.recent_users(db)


@app.get("/admin/recent-lessons")
def admin_recent_lessons(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return reports.recent_lessons(db)


@app.get("/admin/manage-users")
def admin_list_users(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return reports.all_users(db)


@app.delete("/admin/manage-users/{email}")
def admin_delete_user(
    email: str,
    admin: Identity = Depends(require_admin),
    users: UserDirectory = Depends(get_users),
    lessons: LessonRepository = Depends(get_lessons),
):
    if email == admin.email:
        raise BadRequest("You cannot delete your own account")
    removed = users.delete_account(email, lessons)
    return {"success": True, "deletedLessons": removed}


@app.put("/admin/manage-users/{email}/promote")
def admin_promote_user(email: str, admin: Identity = Depends(require_admin),
                       users: UserDirectory = Depends(get_users)):
    users.set_role_or_premium(email, {"role": "admin"})
    return {"success": True, "role": "admin"}


@app.patch("/admin/users/{email}")
def admin_patch_user(
    email: str,
    data: AccountPatchIn,
    admin: Identity = Depends(require_admin),
    users: UserDirectory = Depends(get_users),
):
    modified = users.set_role_or_premium(email, data.model_dump(exclude_none=True))
    return {"success": True, "modifiedCount": modified}


@app.get("/admin/manage-lessons")
def admin_list_lessons(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return reports.all_lessons(db)


@app.get("/admin/reported-lessons")
def admin_reported_lessons(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return reports.reported_lessons(db)


@app.delete("/admin/lessons/{lesson_id}")
def admin_delete_lesson(lesson_id: str, admin: Identity = Depends(require_admin),
                        lessons: LessonRepository = Depends(get_lessons)):
    lessons.delete(parse_object_id(lesson_id, "lesson id"))
    return {"success": True}


@app.delete("/admin/lessons/{lesson_id}/report")
def admin_clear_report(lesson_id: str, admin: Identity = Depends(require_admin),
                       lessons: LessonRepository = Depends(get_lessons)):
    lessons.clear_report(parse_object_id(lesson_id, "lesson id"))
    return {"success": True}


@app.patch("/admin/lessons/access/{lesson_id}")
def admin_set_access_level(
    lesson_id: str,
    data: AccessLevelIn,
    admin: Identity = Depends(require_admin),
    lessons: LessonRepository = Depends(get_lessons),
):
    lessons.set_access_level(parse_object_id(lesson_id, "lesson id"), data.accessLevel)
    return {"success": True, "accessLevel": data.accessLevel}


@app.get("/admin/consistency")
def admin_consistency(admin: Identity = Depends(require_admin), lessons: LessonRepository = Depends(get_lessons)):
    divergent = lessons.find_divergent()
    return {"consistent": not divergent, "divergent": divergent}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
