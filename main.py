import os
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional, List

import bcrypt
from fastapi import FastAPI, HTTPException, Depends, Header, Request, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

import config
import database
from database import (
    as_utc,
    create_document,
    ensure_indexes,
    get_documents,
    get_collection,
    now_utc,
    require_object_id,
    serialize,
    to_object_id,
)
from identity import Identity, find_user, resolve_identity, user_summary
from notifications import notify
from otp import RateLimited, issue_code, send_whatsapp_otp, verify_code
from realtime import ConnectionManager, get_realtime, router as realtime_router
from schemas import (
    User as UserSchema,
    Session as SessionSchema,
    Post as PostSchema,
    Comment as CommentSchema,
    Like as LikeSchema,
    Share as ShareSchema,
    Follow as FollowSchema,
    Bookmark as BookmarkSchema,
    Message as MessageSchema,
    Poll as PollSchema,
    Group as GroupSchema,
    AuditLog as AuditLogSchema,
)

logger = logging.getLogger("devconnect")

# _id breaks ties between documents written in the same millisecond
NEWEST_FIRST = [("created_at", -1), ("_id", -1)]


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.realtime = ConnectionManager()
    try:
        ensure_indexes()
    except PyMongoError as e:
        logger.error("Could not ensure indexes: %s", e)
    yield


app = FastAPI(title="DevConnect API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(realtime_router)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Database temporarily unavailable"})


# --- Helpers ---
class AuthUser(BaseModel):
    id: str
    alternate_ids: List[str] = []
    name: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def identity(self) -> Identity:
        return Identity(canonical_id=self.id, alternate_ids=list(self.alternate_ids))

    def summary(self) -> dict:
        return {"id": self.id, "name": self.name or self.username or "Someone", "username": self.username, "avatar_url": self.avatar_url}


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode(), salt).decode()


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except (ValueError, TypeError):
        return False


def create_session(user_id: str, ttl_minutes: int = config.SESSION_TTL_MINUTES) -> str:
    token = secrets.token_urlsafe(32)
    session = SessionSchema(token=token, user_id=user_id, expires_at=now_utc() + timedelta(minutes=ttl_minutes))
    create_document("session", session)
    return token


def get_user_from_token(authorization: Optional[str]) -> Optional[AuthUser]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        token = parts[1]
    else:
        token = authorization
    sessions = get_collection("session")
    sess = sessions.find_one({"token": token})
    if not sess:
        return None
    if sess.get("expires_at") and as_utc(sess["expires_at"]) < now_utc():
        sessions.delete_one({"_id": sess["_id"]})
        return None
    identity = resolve_identity(sess["user_id"])
    if not identity.exists:
        return None
    u = identity.user
    return AuthUser(
        id=identity.canonical_id,
        alternate_ids=identity.alternate_ids,
        name=u.get("name"),
        username=u.get("username"),
        email=u.get("email"),
        avatar_url=u.get("avatar_url"),
        role=u.get("role", "user"),
    )


async def get_current_user(authorization: Optional[str] = Header(None)) -> AuthUser:
    user = get_user_from_token(authorization)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


async def get_optional_user(authorization: Optional[str] = Header(None)) -> Optional[AuthUser]:
    return get_user_from_token(authorization)


def record_audit_log(user_id: str, action: str, details: dict, request: Request):
    entry = AuditLogSchema(
        user_id=user_id,
        action=action,
        details=details,
        ip=request.headers.get("x-forwarded-for") or (request.client.host if request.client else "unknown"),
        user_agent=request.headers.get("user-agent") or "unknown",
    )
    try:
        create_document("auditlog", entry)
    except PyMongoError as e:
        logger.warning("Audit log write failed for %s: %s", action, e)


def load_post(post_id: str) -> dict:
    post = get_collection("post").find_one({"_id": require_object_id(post_id, "post id")})
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")
    return post


def post_key(post_id: str) -> str:
    # hex ids are case-insensitive; rows are keyed on the stored form
    return str(require_object_id(post_id, "post id"))


def post_counter(post_id, field: str) -> int:
    post = get_collection("post").find_one({"_id": post_id}, {field: 1})
    return (post or {}).get(field, 0)


def decrement_counter(collection: str, oid, field: str):
    # never below zero
    get_collection(collection).update_one({"_id": oid, field: {"$gt": 0}}, {"$inc": {field: -1}})


# --- Routes ---
@app.get("/")
def root():
    return {"service": "DevConnect API", "status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
            response["connection_status"] = "Connected"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


@app.get("/api/health")
def health():
    if database.db is None:
        return JSONResponse(status_code=503, content={"status": "degraded", "database": "not configured"})
    try:
        database.db.list_collection_names()
    except PyMongoError as e:
        logger.warning("Health check failed: %s", e)
        return JSONResponse(status_code=503, content={"status": "degraded", "database": "unreachable"})
    return {"status": "ok", "database": "connected"}


# --- Auth ---
class RegisterBody(BaseModel):
    username: str = Field(..., min_length=3, max_length=32)
    email: EmailStr
    password: str
    name: Optional[str] = None


def session_response(token: str, user: dict) -> dict:
    return {"token": token, "user": {**user_summary(user), "email": user.get("email"), "role": user.get("role", "user")}}


@app.post("/auth/register", status_code=201)
def register(body: RegisterBody):
    users = get_collection("user")
    if users.find_one({"$or": [{"email": body.email}, {"username": body.username}]}):
        raise HTTPException(status_code=409, detail="User already exists")
    user = UserSchema(
        name=body.name or body.username,
        username=body.username,
        email=body.email,
        password_hash=hash_password(body.password),
    )
    user_id = create_document("user", user)
    token = create_session(user_id)
    return session_response(token, users.find_one({"_id": to_object_id(user_id)}))


class LoginBody(BaseModel):
    email_or_username: str
    password: str


@app.post("/auth/login")
def login(body: LoginBody):
    users = get_collection("user")
    u = users.find_one({"$or": [{"email": body.email_or_username}, {"username": body.email_or_username}]})
    if not u or not verify_password(body.password, u.get("password_hash") or ""):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return session_response(create_session(str(u["_id"])), u)


@app.post("/auth/guest", status_code=201)
def guest_login():
    suffix = secrets.token_hex(4)
    user = UserSchema(name="Guest", username=f"guest_{suffix}", is_guest=True)
    user_id = create_document("user", user)
    token = create_session(user_id, ttl_minutes=60 * 6)
    return session_response(token, get_collection("user").find_one({"_id": to_object_id(user_id)}))


class OAuthBody(BaseModel):
    provider: str
    subject: str
    name: str
    email: Optional[EmailStr] = None
    avatar_url: Optional[str] = None


@app.post("/auth/oauth")
def oauth_sign_in(body: OAuthBody, x_auth_gateway_secret: Optional[str] = Header(None)):
    """Link a provider-verified identity and open a session keyed by the provider subject.

    Called by the auth gateway after it verified the provider token.
    """
    expected = config.AUTH_GATEWAY_SECRET
    if expected:
        if not x_auth_gateway_secret or not secrets.compare_digest(x_auth_gateway_secret, expected):
            raise HTTPException(status_code=403, detail="Forbidden")
    elif config.IS_PRODUCTION:
        raise HTTPException(status_code=403, detail="OAuth gateway not configured")

    users = get_collection("user")
    u = users.find_one({"oauth_id": body.subject})
    if u is None and body.email:
        u = users.find_one({"email": body.email})
    if u is None:
        base = (body.email.split("@")[0] if body.email else body.name.replace(" ", "").lower()) or "user"
        user = UserSchema(
            name=body.name,
            username=f"{base[:24]}_{secrets.token_hex(3)}",
            email=body.email,
            oauth_id=body.subject,
            oauth_provider=body.provider,
            avatar_url=body.avatar_url,
        )
        create_document("user", user)
    else:
        users.update_one(
            {"_id": u["_id"]},
            {"$set": {"oauth_id": body.subject, "oauth_provider": body.provider, "updated_at": now_utc()}},
        )
    u = users.find_one({"oauth_id": body.subject})
    return session_response(create_session(body.subject), u)


@app.get("/me")
async def me(current: AuthUser = Depends(get_current_user)):
    return {"user": current.model_dump()}


class OtpSendBody(BaseModel):
    phone: str
    purpose: str = "login"


@app.post("/api/auth/otp/send")
def send_otp(body: OtpSendBody):
    phone = body.phone.strip()
    if not phone:
        raise HTTPException(status_code=400, detail="Phone number required")
    try:
        code = issue_code(phone, body.purpose)
    except RateLimited as e:
        raise HTTPException(status_code=429, detail=str(e), headers={"Retry-After": str(e.retry_after)})
    result = send_whatsapp_otp(phone, code)
    if not result.success:
        raise HTTPException(status_code=502, detail=result.error or "Failed to send code")
    return {"success": True, "expires_in": config.OTP_TTL_MINUTES * 60, "message_id": result.message_id}


class OtpVerifyBody(BaseModel):
    phone: str
    code: str
    purpose: Optional[str] = None


@app.post("/api/auth/otp/verify")
def verify_otp(body: OtpVerifyBody, current: Optional[AuthUser] = Depends(get_optional_user)):
    phone = body.phone.strip()
    if not verify_code(phone, body.code.strip(), body.purpose):
        raise HTTPException(status_code=400, detail="Invalid or expired code")
    if current is not None:
        get_collection("user").update_one(
            {"_id": to_object_id(current.id)},
            {"$set": {"phone": phone, "phone_verified": True, "updated_at": now_utc()}},
        )
    return {"verified": True}


# --- Posts ---
class CreatePostBody(BaseModel):
    content: str
    poll_options: Optional[List[str]] = None
    poll_expires_at: Optional[datetime] = None


@app.post("/api/posts", status_code=201)
async def create_post(body: CreatePostBody, current: AuthUser = Depends(get_current_user)):
    content = body.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Content required")
    options = [o.strip() for o in (body.poll_options or []) if o.strip()]
    if body.poll_options is not None and len(options) < 2:
        raise HTTPException(status_code=400, detail="A poll needs at least 2 options")
    post = PostSchema(
        user_id=current.id,
        content=content,
        type="poll" if options else "text",
        poll_options=[{"option": o, "votes": 0} for o in options],
    ).model_dump()
    if options and body.poll_expires_at:
        post["poll_expires_at"] = as_utc(body.poll_expires_at)
    post_id = create_document("post", post)
    return serialize(get_collection("post").find_one({"_id": to_object_id(post_id)}))


@app.get("/api/posts")
async def feed(limit: int = Query(50, ge=1, le=100)):
    items = get_documents("post", {}, limit=limit, sort=NEWEST_FIRST)
    return {"items": serialize(items)}


@app.get("/api/posts/{post_id}")
async def get_post(post_id: str):
    return serialize(load_post(post_id))


# --- Likes ---
class PostRefBody(BaseModel):
    post_id: str


@app.post("/api/likes")
async def toggle_like(body: PostRefBody, current: AuthUser = Depends(get_current_user),
                      realtime: ConnectionManager = Depends(get_realtime)):
    post = load_post(body.post_id)
    post_id = str(post["_id"])
    pid = post["_id"]
    me = current.identity()
    likes = get_collection("like")

    existing = likes.find_one({"user_id": {"$in": me.all_ids}, "post_id": post_id})
    if existing:
        likes.delete_one({"_id": existing["_id"]})
        decrement_counter("post", pid, "likes_count")
        liked = False
    else:
        try:
            create_document("like", LikeSchema(user_id=me.canonical_id, post_id=post_id))
            get_collection("post").update_one({"_id": pid}, {"$inc": {"likes_count": 1}})
        except DuplicateKeyError:
            pass
        liked = True

    likes_count = post_counter(pid, "likes_count")
    if liked and post["user_id"] not in me.all_ids:
        owner = resolve_identity(post["user_id"])
        await notify(realtime, owner, type="like", title="New Like",
                     message=f"{current.summary()['name']} liked your post",
                     link=f"/feed?post={post_id}", actor_id=me.canonical_id, post_id=post_id)
        await realtime.emit_to_user(owner, "post_liked", {"post_id": post_id, "liked": True})

    await realtime.emit("like_updated", {
        "post_id": post_id, "liked": liked, "user_id": me.canonical_id, "likes_count": likes_count,
    }, [f"post:{post_id}"])
    return {"liked": liked, "likes_count": likes_count}


# --- Shares ---
class ShareBody(BaseModel):
    post_id: str
    content: Optional[str] = None


@app.post("/api/shares", status_code=201)
async def share_post(body: ShareBody, current: AuthUser = Depends(get_current_user),
                     realtime: ConnectionManager = Depends(get_realtime)):
    post = load_post(body.post_id)
    post_id = str(post["_id"])
    pid = post["_id"]
    me = current.identity()
    shares = get_collection("share")

    if shares.find_one({"user_id": {"$in": me.all_ids}, "post_id": post_id}):
        raise HTTPException(status_code=400, detail="Already shared")
    try:
        share_id = create_document("share", ShareSchema(user_id=me.canonical_id, post_id=post_id,
                                                        content=body.content or None))
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Already shared")
    doc = shares.find_one({"_id": to_object_id(share_id)})
    get_collection("post").update_one({"_id": pid}, {"$inc": {"shares_count": 1}})
    shares_count = post_counter(pid, "shares_count")

    if post["user_id"] not in me.all_ids:
        owner = resolve_identity(post["user_id"])
        await notify(realtime, owner, type="share", title="Post Shared",
                     message=f"{current.summary()['name']} shared your post",
                     link=f"/feed?post={post_id}", actor_id=me.canonical_id, post_id=post_id)
        await realtime.emit_to_user(owner, "post_shared", {"post_id": post_id})
    await realtime.emit("share_updated", {"post_id": post_id, "shares_count": shares_count},
                        [f"post:{post_id}"])

    return {**serialize(doc), "shares_count": shares_count, "user": current.summary()}


@app.get("/api/shares")
async def list_shares(post_id: str):
    items = []
    for s in get_collection("share").find({"post_id": post_key(post_id)}).sort(NEWEST_FIRST):
        items.append({**serialize(s), "user": user_summary(find_user(s["user_id"]), s["user_id"])})
    return {"items": items}


# --- Comments ---
class CreateCommentBody(BaseModel):
    post_id: str
    content: str


class UpdateCommentBody(BaseModel):
    content: str


def load_comment(comment_id: str) -> dict:
    comment = get_collection("comment").find_one({"_id": require_object_id(comment_id, "comment id")})
    if not comment:
        raise HTTPException(status_code=404, detail="Comment not found")
    return comment


def comment_out(comment: dict) -> dict:
    return {**serialize(comment), "user": user_summary(find_user(comment["user_id"]), comment["user_id"])}


@app.post("/api/comments", status_code=201)
async def add_comment(body: CreateCommentBody, current: AuthUser = Depends(get_current_user),
                      realtime: ConnectionManager = Depends(get_realtime)):
    content = body.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Post ID and content required")
    post = load_post(body.post_id)
    post_id = str(post["_id"])
    me = current.identity()

    comment_id = create_document("comment", CommentSchema(post_id=post_id, user_id=me.canonical_id, content=content))
    get_collection("post").update_one({"_id": post["_id"]}, {"$inc": {"comments_count": 1}})
    comment = comment_out(get_collection("comment").find_one({"_id": to_object_id(comment_id)}))
    comments_count = post_counter(post["_id"], "comments_count")

    if post["user_id"] not in me.all_ids:
        owner = resolve_identity(post["user_id"])
        await notify(realtime, owner, type="comment", title="New Comment",
                     message=f"{current.summary()['name']} commented on your post",
                     link=f"/feed?post={post_id}", actor_id=me.canonical_id, post_id=post_id)
        await realtime.emit_to_user(owner, "new_comment", comment)
    await realtime.emit("comment_added", {
        "post_id": post_id, "comments_count": comments_count, "comment": comment,
    }, [f"post:{post_id}"])
    return comment


@app.get("/api/comments")
async def list_comments(post_id: str):
    items = get_collection("comment").find({"post_id": post_key(post_id)}).sort(NEWEST_FIRST)
    return {"items": [comment_out(c) for c in items]}


@app.get("/api/comments/{comment_id}")
async def get_comment(comment_id: str):
    return comment_out(load_comment(comment_id))


@app.put("/api/comments/{comment_id}")
async def update_comment(comment_id: str, body: UpdateCommentBody, current: AuthUser = Depends(get_current_user)):
    content = body.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Content required")
    comment = load_comment(comment_id)
    if not current.identity().matches(comment["user_id"]):
        raise HTTPException(status_code=403, detail="Forbidden")
    comments = get_collection("comment")
    comments.update_one({"_id": comment["_id"]}, {"$set": {"content": content, "updated_at": now_utc()}})
    return comment_out(comments.find_one({"_id": comment["_id"]}))


@app.delete("/api/comments/{comment_id}")
async def delete_comment(comment_id: str, current: AuthUser = Depends(get_current_user),
                         realtime: ConnectionManager = Depends(get_realtime)):
    comment = load_comment(comment_id)
    if not current.identity().matches(comment["user_id"]):
        raise HTTPException(status_code=403, detail="Forbidden")

    result = get_collection("comment").delete_one({"_id": comment["_id"]})
    post_oid = to_object_id(comment["post_id"])
    comments_count = 0
    if result.deleted_count and post_oid is not None:
        decrement_counter("post", post_oid, "comments_count")
        comments_count = post_counter(post_oid, "comments_count")
    await realtime.emit("comment_deleted", {
        "post_id": comment["post_id"], "comment_id": comment_id, "comments_count": comments_count,
    }, [f"post:{comment['post_id']}"])
    return {"success": True}


# --- Bookmarks ---
class BookmarkBody(BaseModel):
    post_id: str
    tags: Optional[List[str]] = None


@app.get("/api/bookmarks")
async def list_bookmarks(current: AuthUser = Depends(get_current_user)):
    posts = get_collection("post")
    items = []
    for b in get_collection("bookmark").find({"user_id": {"$in": current.identity().all_ids}}).sort("saved_at", -1):
        post = posts.find_one({"_id": to_object_id(b["post_id"])}) if to_object_id(b["post_id"]) else None
        if post is None:
            continue
        items.append({
            "id": str(b["_id"]),
            "post_id": b["post_id"],
            "post": {**serialize(post), "user": user_summary(find_user(post.get("user_id")), post.get("user_id"))},
            "saved_at": serialize(b.get("saved_at")),
            "tags": b.get("tags") or [],
        })
    return {"bookmarks": items}


@app.post("/api/bookmarks")
async def add_bookmark(body: BookmarkBody, current: AuthUser = Depends(get_current_user),
                       realtime: ConnectionManager = Depends(get_realtime)):
    post = load_post(body.post_id)
    post_id = str(post["_id"])
    pid = post["_id"]
    me = current.identity()
    bookmarks = get_collection("bookmark")

    selector = {"user_id": {"$in": me.all_ids}, "post_id": {"$in": [post_id, pid]}}
    existing = bookmarks.find_one(selector)
    if existing:
        if body.tags is not None:
            bookmarks.update_one({"_id": existing["_id"]}, {"$set": {"tags": body.tags, "updated_at": now_utc()}})
        return {"success": True, "bookmarked": True, "bookmarks_count": post_counter(pid, "bookmarks_count")}

    try:
        create_document("bookmark", BookmarkSchema(
            user_id=me.canonical_id, post_id=post_id, tags=body.tags or [], saved_at=now_utc(),
        ))
        get_collection("post").update_one({"_id": pid}, {"$inc": {"bookmarks_count": 1}})
    except DuplicateKeyError:
        pass
    bookmarks_count = post_counter(pid, "bookmarks_count")
    await realtime.emit("bookmark_updated", {
        "post_id": post_id, "user_id": me.canonical_id, "bookmarked": True, "bookmarks_count": bookmarks_count,
    }, [f"post:{post_id}"])
    return {"success": True, "bookmarked": True, "bookmarks_count": bookmarks_count}


@app.delete("/api/bookmarks")
async def remove_bookmark(post_id: str, current: AuthUser = Depends(get_current_user),
                          realtime: ConnectionManager = Depends(get_realtime)):
    pid = require_object_id(post_id, "post id")
    post_id = str(pid)
    me = current.identity()
    result = get_collection("bookmark").delete_one(
        {"user_id": {"$in": me.all_ids}, "post_id": {"$in": [post_id, pid]}}
    )
    if result.deleted_count:
        decrement_counter("post", pid, "bookmarks_count")
    bookmarks_count = post_counter(pid, "bookmarks_count")
    await realtime.emit("bookmark_updated", {
        "post_id": post_id, "user_id": me.canonical_id, "bookmarked": False, "bookmarks_count": bookmarks_count,
    }, [f"post:{post_id}"])
    return {"success": True, "bookmarked": False, "bookmarks_count": bookmarks_count}


# --- Follow ---
class FollowBody(BaseModel):
    following_id: str


def adjust_follow_counts(follower: Identity, following: Identity, delta: int):
    users = get_collection("user")
    for user_id, field in ((follower.canonical_id, "following_count"), (following.canonical_id, "followers_count")):
        oid = to_object_id(user_id)
        if oid is None:
            continue
        if delta > 0:
            users.update_one({"_id": oid}, {"$inc": {field: delta}})
        else:
            decrement_counter("user", oid, field)


@app.post("/api/follow")
async def toggle_follow(body: FollowBody, current: AuthUser = Depends(get_current_user),
                        realtime: ConnectionManager = Depends(get_realtime)):
    me = current.identity()
    if not body.following_id:
        raise HTTPException(status_code=400, detail="Following ID required")
    target = resolve_identity(body.following_id)
    if me.matches(body.following_id) or me.matches(target.canonical_id):
        raise HTTPException(status_code=400, detail="Cannot follow yourself")

    follows = get_collection("follow")
    existing = follows.find_one({"follower_id": {"$in": me.all_ids}, "following_id": {"$in": target.all_ids}})

    if existing:
        follows.delete_one({"_id": existing["_id"]})
        if existing.get("status") != "pending":
            adjust_follow_counts(me, target, -1)
        await realtime.emit_to_user(target, "unfollowed", {"follower_id": me.canonical_id})
        return {"is_following": False, "is_requested": False}

    if not target.exists:
        raise HTTPException(status_code=404, detail="User not found")

    status = "pending" if target.user.get("is_private") else "accepted"
    try:
        create_document("follow", FollowSchema(follower_id=me.canonical_id, following_id=target.canonical_id, status=status))
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Follow already recorded")

    follower = current.summary()
    if status == "accepted":
        adjust_follow_counts(me, target, 1)
        await notify(realtime, target, type="follow", title="New Follower",
                     message=f"{follower['name']} started following you",
                     link=f"/profile/{current.username or me.canonical_id}", actor_id=me.canonical_id)
        await realtime.emit_to_user(target, "new_follower", {"follower_id": me.canonical_id, "follower": follower})
        return {"is_following": True, "is_requested": False}

    await notify(realtime, target, type="follow_request", title="Follow Request",
                 message=f"{follower['name']} requested to follow you",
                 link="/notifications", actor_id=me.canonical_id)
    await realtime.emit_to_user(target, "follow_request", {"follower_id": me.canonical_id, "follower": follower})
    return {"is_following": False, "is_requested": True}


# --- Polls ---
class CreatePollBody(BaseModel):
    post_id: str
    question: str
    options: List[str]
    expires_at: Optional[datetime] = None


class PollVoteBody(BaseModel):
    poll_id: str
    option_index: int


class EmbeddedVoteBody(BaseModel):
    option_index: int


def record_vote(poll_id: str, me: Identity, option_index: int):
    votes = get_collection("pollvote")
    ts = now_utc()
    existing = votes.find_one({"poll_id": poll_id, "user_id": {"$in": me.all_ids}})
    if existing:
        votes.update_one({"_id": existing["_id"]}, {"$set": {"option_index": option_index, "updated_at": ts}})
        return
    votes.update_one(
        {"poll_id": poll_id, "user_id": me.canonical_id},
        {"$set": {"option_index": option_index, "updated_at": ts}, "$setOnInsert": {"created_at": ts}},
        upsert=True,
    )


def tally_votes(poll_id: str, option_count: int) -> List[int]:
    counts = [0] * option_count
    pipeline = [
        {"$match": {"poll_id": poll_id}},
        {"$group": {"_id": "$option_index", "count": {"$sum": 1}}},
    ]
    for row in get_collection("pollvote").aggregate(pipeline):
        idx = row["_id"]
        if isinstance(idx, int) and 0 <= idx < option_count:
            counts[idx] = row["count"]
    return counts


def check_vote(option_index: int, option_count: int, expires_at: Optional[datetime]):
    if expires_at is not None and as_utc(expires_at) < now_utc():
        raise HTTPException(status_code=400, detail="Poll has expired")
    if not 0 <= option_index < option_count:
        raise HTTPException(status_code=400, detail="Invalid option")


async def publish_poll_update(realtime: ConnectionManager, poll_id: str, post_id: str, counts: List[int]) -> dict:
    update = {"poll_id": poll_id, "post_id": post_id, "vote_counts": counts, "total_votes": sum(counts)}
    await realtime.emit("poll_update", update, [f"post:{post_id}", f"poll:{poll_id}"])
    await realtime.broadcast("poll_refreshed", {"poll_id": poll_id, "post_id": post_id})
    return update


@app.post("/api/polls", status_code=201)
async def create_poll(body: CreatePollBody, current: AuthUser = Depends(get_current_user)):
    question = body.question.strip()
    options = [o.strip() for o in body.options if o.strip()]
    if not question or len(options) < 2:
        raise HTTPException(status_code=400, detail="Post ID, question, and at least 2 options required")
    post = load_post(body.post_id)
    poll = PollSchema(post_id=str(post["_id"]), question=question, options=options,
                      expires_at=as_utc(body.expires_at) if body.expires_at else None)
    poll_id = create_document("poll", poll)
    return serialize(get_collection("poll").find_one({"_id": to_object_id(poll_id)}))


@app.put("/api/polls")
async def vote_poll(body: PollVoteBody, current: AuthUser = Depends(get_current_user),
                    realtime: ConnectionManager = Depends(get_realtime)):
    poll = get_collection("poll").find_one({"_id": require_object_id(body.poll_id, "poll id")})
    if not poll:
        raise HTTPException(status_code=404, detail="Poll not found")
    option_count = len(poll.get("options") or [])
    check_vote(body.option_index, option_count, poll.get("expires_at"))

    poll_id = str(poll["_id"])
    record_vote(poll_id, current.identity(), body.option_index)
    counts = tally_votes(poll_id, option_count)
    update = await publish_poll_update(realtime, poll_id, poll["post_id"], counts)
    return {**update, "option_index": body.option_index}


@app.post("/api/posts/{post_id}/poll/vote")
async def vote_embedded_poll(post_id: str, body: EmbeddedVoteBody, current: AuthUser = Depends(get_current_user),
                             realtime: ConnectionManager = Depends(get_realtime)):
    post = load_post(post_id)
    post_id = str(post["_id"])
    options = post.get("poll_options") or []
    if not options:
        raise HTTPException(status_code=400, detail="Post has no poll")
    check_vote(body.option_index, len(options), post.get("poll_expires_at"))

    record_vote(post_id, current.identity(), body.option_index)
    counts = tally_votes(post_id, len(options))
    get_collection("post").update_one(
        {"_id": post["_id"]},
        {"$set": {f"poll_options.{i}.votes": c for i, c in enumerate(counts)}},
    )
    update = await publish_poll_update(realtime, post_id, post_id, counts)
    return {**update, "option_index": body.option_index}


# --- Notifications ---
class NotificationPatchBody(BaseModel):
    notification_id: Optional[str] = None
    mark_all: bool = False


@app.get("/api/notifications")
async def list_notifications(current: AuthUser = Depends(get_current_user)):
    ids = current.identity().all_ids
    notifications = get_collection("notification")
    items = list(
        notifications.find({"user_id": {"$in": ids}}).sort(NEWEST_FIRST).limit(config.NOTIFICATION_PAGE_LIMIT)
    )
    unread_count = notifications.count_documents({"user_id": {"$in": ids}, "read": False})
    return {"notifications": serialize(items), "unread_count": unread_count}


@app.patch("/api/notifications")
async def mark_notifications_read(body: NotificationPatchBody, current: AuthUser = Depends(get_current_user)):
    ids = current.identity().all_ids
    notifications = get_collection("notification")
    if body.mark_all:
        result = notifications.update_many({"user_id": {"$in": ids}, "read": False}, {"$set": {"read": True}})
        return {"success": True, "updated": result.modified_count}
    if not body.notification_id:
        raise HTTPException(status_code=400, detail="notification_id or mark_all required")
    oid = require_object_id(body.notification_id, "notification id")
    result = notifications.update_one({"_id": oid, "user_id": {"$in": ids}}, {"$set": {"read": True}})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True, "updated": result.modified_count}


# --- Messages ---
class SendMessageBody(BaseModel):
    receiver_id: str
    content: Optional[str] = Field(None, max_length=5000)
    type: str = "text"
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None


class EditMessageBody(BaseModel):
    content: Optional[str] = Field(None, max_length=5000)


def conversation_filter(a: Identity, b: Identity) -> dict:
    return {"$or": [
        {"sender_id": {"$in": a.all_ids}, "receiver_id": {"$in": b.all_ids}},
        {"sender_id": {"$in": b.all_ids}, "receiver_id": {"$in": a.all_ids}},
    ]}


class IdentityCache:
    def __init__(self):
        self._seen = {}

    def get(self, user_id: str) -> Identity:
        if user_id not in self._seen:
            self._seen[user_id] = resolve_identity(user_id)
        return self._seen[user_id]


def format_message(msg: dict, cache: IdentityCache) -> dict:
    sender = cache.get(msg["sender_id"])
    receiver = cache.get(msg["receiver_id"])
    return {
        **serialize(msg),
        "sender_id": sender.canonical_id,
        "receiver_id": receiver.canonical_id,
        "sender": user_summary(sender.user, sender.canonical_id),
    }


def build_chat_list(me: Identity) -> List[dict]:
    messages = get_collection("message")
    partner_ids = set()
    for m in messages.find(
        {"$or": [{"sender_id": {"$in": me.all_ids}}, {"receiver_id": {"$in": me.all_ids}}]},
        {"sender_id": 1, "receiver_id": 1},
    ):
        other = m["receiver_id"] if m["sender_id"] in me.all_ids else m["sender_id"]
        if other not in me.all_ids:
            partner_ids.add(other)

    partners = {}
    for raw in sorted(partner_ids):
        partner = resolve_identity(raw)
        if not partner.exists:
            continue
        if partner.canonical_id in partners:
            known = partners[partner.canonical_id]
            if raw not in known.alternate_ids and raw != known.canonical_id:
                known.alternate_ids.append(raw)
        else:
            partners[partner.canonical_id] = partner

    chats = []
    for partner in partners.values():
        last = list(messages.find(conversation_filter(me, partner)).sort(NEWEST_FIRST).limit(1))
        unread_count = messages.count_documents({
            "sender_id": {"$in": partner.all_ids},
            "receiver_id": {"$in": me.all_ids},
            "read": False,
        })
        last_message = None
        if last:
            m = last[0]
            last_message = {
                "content": m.get("content"),
                "created_at": serialize(m.get("created_at")),
                "read": m.get("read", False),
                "sender_id": partner.canonical_id if partner.matches(m["sender_id"]) else me.canonical_id,
                "receiver_id": partner.canonical_id if partner.matches(m["receiver_id"]) else me.canonical_id,
            }
        summary = user_summary(partner.user, partner.canonical_id)
        summary["status"] = "online" if partner.user.get("is_online") else "offline"
        summary["last_seen"] = serialize(partner.user.get("last_seen"))
        chats.append({
            "id": partner.canonical_id,
            "user_id": partner.canonical_id,
            "user": summary,
            "last_message": last_message,
            "unread_count": unread_count,
        })
    chats.sort(key=lambda c: (c["last_message"] or {}).get("created_at") or "", reverse=True)
    return chats


async def mark_conversation_read(me: Identity, partner: Identity, realtime: ConnectionManager) -> int:
    messages = get_collection("message")
    unread = list(messages.find(
        {"sender_id": {"$in": partner.all_ids}, "receiver_id": {"$in": me.all_ids}, "read": False},
        {"_id": 1},
    ))
    if not unread:
        return 0
    messages.update_many(
        {"_id": {"$in": [m["_id"] for m in unread]}},
        {"$set": {"read": True, "read_at": now_utc()}},
    )
    for m in unread:
        await realtime.emit_to_user(partner, "message_read", {"message_id": str(m["_id"]), "user_id": me.canonical_id})
    return len(unread)


@app.get("/api/messages")
async def list_chats(current: AuthUser = Depends(get_current_user)):
    try:
        return {"chats": build_chat_list(current.identity())}
    except ConnectionFailure as e:
        logger.warning("Chat list served empty, database unreachable: %s", e)
        return {"chats": [], "error": "Database temporarily unavailable"}


@app.post("/api/messages", status_code=201)
async def send_message(body: SendMessageBody, current: AuthUser = Depends(get_current_user),
                       realtime: ConnectionManager = Depends(get_realtime)):
    if not body.receiver_id or not (body.content or body.image_url or body.video_url or body.file_url):
        raise HTTPException(status_code=400, detail="Missing required fields")
    if body.type not in ("text", "image", "video", "file"):
        raise HTTPException(status_code=400, detail="Invalid message type")
    receiver = resolve_identity(body.receiver_id)
    if not receiver.exists:
        raise HTTPException(status_code=404, detail="User not found")
    me = current.identity()

    content = body.content
    if not content:
        if body.image_url:
            content = "[Image]"
        elif body.video_url:
            content = "[Video]"
        else:
            content = f"[File: {body.file_name or 'File'}]"

    message = MessageSchema(
        sender_id=me.canonical_id,
        receiver_id=receiver.canonical_id,
        content=content,
        type=body.type,
        image_url=body.image_url,
        video_url=body.video_url,
        file_url=body.file_url,
        file_name=body.file_name,
    )
    message_id = create_document("message", message)
    out = serialize(get_collection("message").find_one({"_id": to_object_id(message_id)}))
    out["sender"] = current.summary()
    await realtime.emit("new_message", out, receiver.rooms + me.rooms)
    return {"message": out}


@app.get("/api/messages/{item_id}")
async def get_message_or_conversation(item_id: str, mark_read: bool = False,
                                      current: AuthUser = Depends(get_current_user),
                                      realtime: ConnectionManager = Depends(get_realtime)):
    me = current.identity()
    messages = get_collection("message")
    cache = IdentityCache()

    oid = to_object_id(item_id)
    message = messages.find_one({"_id": oid}) if oid is not None else None
    if message:
        if not (me.matches(message["sender_id"]) or me.matches(message["receiver_id"])):
            raise HTTPException(status_code=403, detail="Forbidden")
        return {"message": format_message(message, cache)}

    partner = resolve_identity(item_id)
    newest = list(messages.find(conversation_filter(me, partner)).sort(NEWEST_FIRST).limit(config.MESSAGE_PAGE_LIMIT))
    newest.reverse()
    result = {
        "messages": [format_message(m, cache) for m in newest],
        "user": user_summary(partner.user, partner.canonical_id),
    }
    if mark_read:
        result["marked_read"] = await mark_conversation_read(me, partner, realtime)
    return result


@app.post("/api/messages/{partner_id}/read")
async def mark_messages_read(partner_id: str, current: AuthUser = Depends(get_current_user),
                             realtime: ConnectionManager = Depends(get_realtime)):
    marked = await mark_conversation_read(current.identity(), resolve_identity(partner_id), realtime)
    return {"marked": marked}


def load_message(message_id: str) -> dict:
    message = get_collection("message").find_one({"_id": require_object_id(message_id, "message ID")})
    if not message:
        raise HTTPException(status_code=404, detail="Message not found")
    return message


@app.delete("/api/messages/{message_id}")
async def delete_message(message_id: str, request: Request, current: AuthUser = Depends(get_current_user),
                         realtime: ConnectionManager = Depends(get_realtime)):
    message = load_message(message_id)
    me = current.identity()
    is_sender = me.matches(message["sender_id"])
    if not is_sender and not current.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")

    get_collection("message").delete_one({"_id": message["_id"]})
    record_audit_log(me.canonical_id, "DELETE_MESSAGE", {
        "message_id": message_id,
        "message_sender_id": message["sender_id"],
        "message_receiver_id": message["receiver_id"],
        "reason": "USER_ACTION" if is_sender else "ADMIN_ACTION",
    }, request)

    rooms = resolve_identity(message["sender_id"]).rooms + resolve_identity(message["receiver_id"]).rooms
    await realtime.emit("message_deleted", {
        "message_id": message_id, "user_id": me.canonical_id, "receiver_id": message["receiver_id"],
    }, rooms)
    return {"success": True}


@app.patch("/api/messages/{message_id}")
async def edit_message(message_id: str, body: EditMessageBody, current: AuthUser = Depends(get_current_user),
                       realtime: ConnectionManager = Depends(get_realtime)):
    content = (body.content or "").strip()
    if not content:
        raise HTTPException(status_code=400, detail="Content required")
    message = load_message(message_id)
    me = current.identity()
    if not me.matches(message["sender_id"]):
        raise HTTPException(status_code=403, detail="Forbidden")

    edits = list(message.get("edits") or [])
    edits.append({"content": message["content"], "created_at": now_utc()})
    get_collection("message").update_one(
        {"_id": message["_id"]},
        {"$set": {"content": content, "edits": edits, "updated_at": now_utc()}},
    )

    payload = {"id": message_id, "content": content, "edits": serialize(edits)}
    rooms = me.rooms + resolve_identity(message["receiver_id"]).rooms
    await realtime.emit("message_edited", {**payload, "message_id": message_id, "user_id": me.canonical_id}, rooms)
    return payload


class ReactionBody(BaseModel):
    emoji: str = Field(..., max_length=32)


def toggle_reaction(reactions: List[dict], emoji: str, me: Identity) -> List[dict]:
    """Add or remove the caller under one emoji; entries with no users are dropped."""
    result = []
    found = False
    for r in reactions:
        users = list(r.get("users") or [])
        if r.get("emoji") == emoji:
            found = True
            if any(me.matches(u) for u in users):
                users = [u for u in users if not me.matches(u)]
            else:
                users.append(me.canonical_id)
        if users:
            result.append({"emoji": r.get("emoji"), "users": users, "count": len(users)})
    if not found:
        result.append({"emoji": emoji, "users": [me.canonical_id], "count": 1})
    return result


@app.post("/api/messages/{message_id}/reactions")
async def react_to_message(message_id: str, body: ReactionBody, current: AuthUser = Depends(get_current_user),
                           realtime: ConnectionManager = Depends(get_realtime)):
    emoji = body.emoji.strip()
    if not emoji:
        raise HTTPException(status_code=400, detail="Emoji required")
    message = load_message(message_id)
    me = current.identity()
    if not me.matches(message["sender_id"]) and not me.matches(message["receiver_id"]):
        raise HTTPException(status_code=403, detail="Forbidden")

    reactions = toggle_reaction(message.get("reactions") or [], emoji, me)
    get_collection("message").update_one({"_id": message["_id"]}, {"$set": {"reactions": reactions}})

    rooms = resolve_identity(message["sender_id"]).rooms + resolve_identity(message["receiver_id"]).rooms
    await realtime.emit("message_reaction", {
        "message_id": message_id, "user_id": me.canonical_id, "reactions": reactions,
    }, rooms)
    return {"reactions": reactions}


# --- Groups ---
class CreateGroupBody(BaseModel):
    name: str
    description: Optional[str] = None
    privacy: str = "public"


class UpdateGroupBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    privacy: Optional[str] = None


@app.post("/api/groups", status_code=201)
async def create_group(body: CreateGroupBody, current: AuthUser = Depends(get_current_user)):
    if not body.name.strip():
        raise HTTPException(status_code=400, detail="Group name required")
    if body.privacy not in ("public", "private"):
        raise HTTPException(status_code=400, detail="Invalid privacy setting")
    group = GroupSchema(name=body.name.strip(), description=body.description, privacy=body.privacy, owner_id=current.id)
    group_id = create_document("group", group)
    return serialize(get_collection("group").find_one({"_id": to_object_id(group_id)}))


@app.patch("/api/groups/{group_id}")
async def update_group(group_id: str, body: UpdateGroupBody, current: AuthUser = Depends(get_current_user),
                       realtime: ConnectionManager = Depends(get_realtime)):
    groups = get_collection("group")
    group = groups.find_one({"_id": require_object_id(group_id, "group id")})
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    if not current.identity().matches(group["owner_id"]) and not current.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")

    updates = body.model_dump(exclude_none=True)
    if "privacy" in updates and updates["privacy"] not in ("public", "private"):
        raise HTTPException(status_code=400, detail="Invalid privacy setting")
    if not updates:
        return {"updated": False, "group": serialize(group)}
    updates["updated_at"] = now_utc()
    groups.update_one({"_id": group["_id"]}, {"$set": updates})
    group = serialize(groups.find_one({"_id": group["_id"]}))
    await realtime.emit("group_updated", {"group_id": group_id, "group": group}, [f"group:{group_id}"])
    return {"updated": True, "group": group}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
