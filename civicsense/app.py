# Citizen Issue Reporting Portal
# FastAPI + MongoDB + OpenAI

import asyncio
import logging
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from fastapi.staticfiles import StaticFiles
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo import ASCENDING, DESCENDING, MongoClient
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from . import config
from .ai import build_model_client
from .assets import LocalAssetStore
from .enrichment import EnrichmentService
from .errors import IssueValidationError, PortalError
from .geo import heat_points, valid_coordinates
from .models import (AIGenerateResponse, BeforeAfterResponse, Category, CommentCreate,
                     CommentResponse, DuplicateReport, EnhanceRequest, EnhanceResponse,
                     HeatmapResponse, ImageData, IssueInsights, IssueResponse, IssueStatus,
                     IssueSubmission, LeaderboardEntry, Priority, StatisticsResponse,
                     StatusUpdate, SubmissionResult, TokenResponse, UpvoteState, UpvoteToggle,
                     UserCreate, UserLogin, UserResponse, UserRole)
from .scoring import (COMMENT_POINTS, RESOLUTION_BONUS_POINTS, award_points, leaderboard,
                      toggle_upvote, upvote_status, voter_key)
from .workflow import IssueWorkflow, check_image_type, issue_to_response, parse_coordinate

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

# ---------------------------------------------------------------------------
# App & Globals
# ---------------------------------------------------------------------------
app = FastAPI(title="CivicSense Citizen Issue Portal")
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ---------------------------------------------------------------------------
# Security Headers Middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(self), camera=(self), microphone=()"
        return response

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(CORSMiddleware, allow_origins=config.CORS_ORIGINS, allow_credentials=False,
                   allow_methods=["*"], allow_headers=["*"])
app.mount(config.MEDIA_URL, StaticFiles(directory=str(config.MEDIA_DIR), check_dir=False), name="media")

db_client = None
db = None
model_client = None
asset_store = LocalAssetStore(config.MEDIA_DIR, config.MEDIA_URL)
executor = ThreadPoolExecutor(max_workers=10)

# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    global model_client
    if len(config.JWT_SECRET) < 32:
        raise RuntimeError(
            "FATAL: JWT_SECRET must be set in the environment and be at least 32 characters. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\"")
    config.MEDIA_DIR.mkdir(parents=True, exist_ok=True)
    await startup_db()
    model_client = build_model_client(config.OPENAI_API_KEY, config.OPENAI_MODEL, config.AI_MAX_RETRIES)
    logger.info("OpenAI model: %s | AI enabled: %s", config.OPENAI_MODEL, model_client is not None)
    yield
    if db_client:
        db_client.close()

app.router.lifespan_context = lifespan

async def startup_db():
    global db_client, db
    db_client = MongoClient(config.MONGODB_URL, tz_aware=True)
    db = db_client[config.MONGODB_DB]
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(executor, db.issues.create_index, "created_at")
    await loop.run_in_executor(executor, db.issues.create_index, "status")
    await loop.run_in_executor(executor, db.issues.create_index, "category")
    await loop.run_in_executor(executor, lambda: db.issues.create_index([("lat", ASCENDING), ("lng", ASCENDING)]))
    await loop.run_in_executor(executor, lambda: db.issues.create_index(
        [("reporter_id", ASCENDING), ("client_submission_id", ASCENDING)]))
    await loop.run_in_executor(executor, lambda: db.users.create_index([("username", 1)], unique=True))
    await loop.run_in_executor(executor, lambda: db.users.create_index([("points", DESCENDING)]))
    await loop.run_in_executor(executor, lambda: db.upvotes.create_index(
        [("issue_id", ASCENDING), ("voter_key", ASCENDING)], unique=True))
    await loop.run_in_executor(executor, lambda: db.upvote_awards.create_index(
        [("issue_id", ASCENDING), ("voter_key", ASCENDING)], unique=True))
    await loop.run_in_executor(executor, db.comments.create_index, "issue_id")
    await loop.run_in_executor(executor, db.before_after.create_index, "issue_id")
    logger.info("Database initialized")

# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
async def get_db():
    return db

async def get_ai():
    return model_client

async def get_assets():
    return asset_store

async def get_enrichment(db=Depends(get_db), ai=Depends(get_ai), assets=Depends(get_assets)):
    return EnrichmentService(ai, db=db, executor=executor, assets=assets)

async def get_workflow(db=Depends(get_db), assets=Depends(get_assets),
                       enrichment=Depends(get_enrichment)):
    return IssueWorkflow(db, executor, assets, enrichment)

@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})

# ---------------------------------------------------------------------------
# Auth Helpers
# ---------------------------------------------------------------------------
def hash_password(password: str) -> str:
    if len(password.encode("utf-8")) > 72:
        raise ValueError("Password cannot exceed 72 bytes")
    return pwd_context.hash(password)

def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)

def create_access_token(data: dict) -> str:
    to_encode = data.copy()
    to_encode["exp"] = config.now_utc() + timedelta(hours=config.JWT_EXPIRE_HOURS)
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)

async def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db)):
    if token is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
        username: str = payload.get("sub")
        if username is None:
            raise HTTPException(status_code=401, detail="Invalid token")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    loop = asyncio.get_running_loop()
    user = await loop.run_in_executor(executor, db.users.find_one, {"username": username})
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user

async def get_optional_user(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db)):
    if token is None:
        return None
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
        username = payload.get("sub")
        if username is None:
            return None
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(executor, db.users.find_one, {"username": username})
    except JWTError:
        return None

def require_role(*roles):
    async def role_checker(user=Depends(get_current_user)):
        if user["role"] not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user
    return role_checker

def user_to_response(user: dict) -> UserResponse:
    return UserResponse(
        id=str(user["_id"]), username=user["username"], full_name=user["full_name"],
        email=user["email"], role=user["role"], points=user.get("points", 0),
        created_at=user["created_at"])

# ---------------------------------------------------------------------------
# Utility Helpers
# ---------------------------------------------------------------------------
async def read_image(upload: Optional[UploadFile]) -> Optional[ImageData]:
    if upload is None or not upload.filename:
        return None
    content = await upload.read()
    if not content:
        return None
    if len(content) > config.MAX_IMAGE_BYTES:
        raise IssueValidationError(
            "image", f"Image must be {config.MAX_IMAGE_BYTES // (1024 * 1024)}MB or smaller")
    return ImageData(content=content, mime_type=upload.content_type or "image/jpeg",
                     filename=upload.filename)

def present_issues(db, docs: List[dict]) -> List[IssueResponse]:
    """Attach reporters and live upvote counts. Runs on the executor."""
    reporter_ids = list({d["reporter_id"] for d in docs if d.get("reporter_id")})
    reporters = {u["_id"]: u for u in db.users.find({"_id": {"$in": reporter_ids}},
                                                    {"full_name": 1, "email": 1})}
    return [issue_to_response(d, reporters.get(d.get("reporter_id")),
                              db.upvotes.count_documents({"issue_id": d["_id"]}))
            for d in docs]

async def load_issue(db, issue_id: str) -> dict:
    loop = asyncio.get_running_loop()
    issue = await loop.run_in_executor(executor, db.issues.find_one, {"_id": issue_id})
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")
    return issue

async def get_issue_response(db, issue_id: str) -> IssueResponse:
    issue = await load_issue(db, issue_id)
    loop = asyncio.get_running_loop()
    return (await loop.run_in_executor(executor, present_issues, db, [issue]))[0]

# ---------------------------------------------------------------------------
# AUTH ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/auth/register", response_model=TokenResponse)
@limiter.limit("3/minute")
async def register(request: Request, user_data: UserCreate, db=Depends(get_db)):
    # Admin accounts come from the importer, never from public sign-up
    if user_data.role != UserRole.CITIZEN:
        raise HTTPException(status_code=403, detail="Public registration is for citizens only.")
    loop = asyncio.get_running_loop()
    existing = await loop.run_in_executor(executor, db.users.find_one, {"username": user_data.username})
    if existing:
        raise HTTPException(status_code=400, detail="Username already exists")
    user_doc = {
        "_id": config.new_id(), "username": user_data.username,
        "hashed_password": hash_password(user_data.password),
        "full_name": user_data.full_name, "email": user_data.email,
        "role": user_data.role.value, "points": 0, "created_at": config.now_utc(),
    }
    await loop.run_in_executor(executor, db.users.insert_one, user_doc)
    logger.info("Registered citizen %s", user_data.username)
    token = create_access_token({"sub": user_data.username, "role": user_data.role.value})
    return TokenResponse(access_token=token, user=user_to_response(user_doc))

@app.post("/auth/login", response_model=TokenResponse)
@limiter.limit("5/minute")
async def login(request: Request, form: UserLogin, db=Depends(get_db)):
    loop = asyncio.get_running_loop()
    user = await loop.run_in_executor(executor, db.users.find_one, {"username": form.username})
    if not user or not verify_password(form.password, user["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": user["username"], "role": user["role"]})
    return TokenResponse(access_token=token, user=user_to_response(user))

@app.get("/auth/me", response_model=UserResponse)
async def get_me(user=Depends(get_current_user)):
    return user_to_response(user)

# ---------------------------------------------------------------------------
# ISSUE ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/issues", response_model=SubmissionResult)
async def create_issue(
    image: Optional[UploadFile] = File(None),
    description: str = Form(""), category: Optional[str] = Form(None),
    ward: str = Form(""), municipality: str = Form(""), location_name: str = Form(""),
    lat: Optional[str] = Form(None), lng: Optional[str] = Form(None),
    is_anonymous: bool = Form(False),
    client_submission_id: Optional[str] = Form(None, max_length=64),
    user=Depends(get_current_user), workflow: IssueWorkflow = Depends(get_workflow)):
    submission = IssueSubmission(
        description=description or "", category=category, ward=ward or "",
        municipality=municipality or "", location_name=location_name or "", lat=lat, lng=lng,
        is_anonymous=is_anonymous, client_submission_id=client_submission_id)
    return await workflow.submit_issue(submission, await read_image(image), user)

@app.get("/issues", response_model=List[IssueResponse])
async def list_issues(
    status: Optional[IssueStatus] = None, category: Optional[Category] = None,
    priority: Optional[Priority] = None,
    limit: int = Query(50, ge=1, le=200), skip: int = Query(0, ge=0, le=10000),
    db=Depends(get_db)):
    fq = {}
    if status: fq["status"] = status.value
    if category: fq["category"] = category.value
    if priority: fq["priority"] = priority.value
    def fetch():
        docs = list(db.issues.find(fq).sort("created_at", -1).skip(skip).limit(limit))
        return present_issues(db, docs)
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, fetch)

# Static paths are registered before /issues/{issue_id} routes
@app.post("/issues/ai-generate", response_model=AIGenerateResponse)
@limiter.limit("10/minute")
async def ai_generate(request: Request, image: UploadFile = File(...), description: str = Form(""),
                      user=Depends(get_current_user),
                      enrichment: EnrichmentService = Depends(get_enrichment)):
    data = await read_image(image)
    if data is None:
        raise IssueValidationError("image", "Please upload an image first")
    ai_description = await enrichment.generate_description(data)
    text = description if len(description.strip()) >= 10 else ai_description
    category = await enrichment.classify_category(data)
    return AIGenerateResponse(
        ai_description=ai_description, category=category,
        priority=await enrichment.suggest_priority(data, text),
        severity=await enrichment.assess_severity(data, text),
        tags=await enrichment.generate_tags(data, text, category.value),
        categories=await enrichment.suggest_categories(data, text))

@app.post("/issues/ai-enhance", response_model=EnhanceResponse)
@limiter.limit("10/minute")
async def ai_enhance(request: Request, req: EnhanceRequest, user=Depends(get_current_user),
                     enrichment: EnrichmentService = Depends(get_enrichment)):
    return EnhanceResponse(enhanced=await enrichment.enhance_description(req.description))

@app.post("/issues/ai-duplicates", response_model=DuplicateReport)
@limiter.limit("10/minute")
async def ai_duplicates(request: Request, image: Optional[UploadFile] = File(None),
                        lat: Optional[str] = Form(None), lng: Optional[str] = Form(None),
                        description: str = Form(""), user=Depends(get_current_user),
                        enrichment: EnrichmentService = Depends(get_enrichment)):
    lat_f = parse_coordinate("lat", lat, 90)
    lng_f = parse_coordinate("lng", lng, 180)
    return await enrichment.detect_duplicate_with_details(lat_f, lng_f, await read_image(image), description)

@app.get("/issues/{issue_id}", response_model=IssueResponse)
async def get_issue(issue_id: str, db=Depends(get_db)):
    return await get_issue_response(db, issue_id)

@app.put("/issues/{issue_id}/status", response_model=IssueResponse)
async def update_status(issue_id: str, update: StatusUpdate,
                        user=Depends(require_role(UserRole.ADMIN.value)), db=Depends(get_db)):
    issue = await load_issue(db, issue_id)
    now = config.now_utc()
    loop = asyncio.get_running_loop()

    def apply():
        if update.status != IssueStatus.RESOLVED:
            db.issues.update_one({"_id": issue_id}, {"$set": {
                "status": update.status.value, "updated_at": now, "resolved_at": None}})
            return False
        db.issues.update_one({"_id": issue_id, "status": {"$ne": IssueStatus.RESOLVED.value}},
                             {"$set": {"status": update.status.value, "resolved_at": now}})
        db.issues.update_one({"_id": issue_id}, {"$set": {"updated_at": now}})
        # One resolution bonus per issue
        claimed = db.issues.update_one({"_id": issue_id, "resolution_bonus_awarded": {"$ne": True}},
                                       {"$set": {"resolution_bonus_awarded": True}})
        return claimed.modified_count == 1

    bonus_due = await loop.run_in_executor(executor, apply)
    logger.info("Issue %s: %s -> %s by %s", issue_id, issue.get("status"), update.status.value, user["username"])
    if bonus_due:
        await award_points(db, executor, issue.get("reporter_id"), RESOLUTION_BONUS_POINTS, "issue resolved")
    return await get_issue_response(db, issue_id)

@app.post("/issues/{issue_id}/comments", response_model=CommentResponse)
async def add_comment(issue_id: str, body: CommentCreate, user=Depends(get_current_user),
                      db=Depends(get_db)):
    await load_issue(db, issue_id)
    doc = {"_id": config.new_id(), "issue_id": issue_id, "user_id": user["_id"],
           "full_name": user["full_name"], "comment": body.comment, "created_at": config.now_utc()}
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(executor, db.comments.insert_one, doc)
    await award_points(db, executor, user["_id"], COMMENT_POINTS, "comment")
    return CommentResponse(id=doc["_id"], **{k: v for k, v in doc.items() if k != "_id"})

@app.get("/issues/{issue_id}/comments", response_model=List[CommentResponse])
async def list_comments(issue_id: str, db=Depends(get_db)):
    await load_issue(db, issue_id)
    def fetch():
        return list(db.comments.find({"issue_id": issue_id}).sort("created_at", 1))
    loop = asyncio.get_running_loop()
    docs = await loop.run_in_executor(executor, fetch)
    return [CommentResponse(id=d["_id"], issue_id=d["issue_id"], user_id=d["user_id"],
                            full_name=d.get("full_name", ""), comment=d["comment"],
                            created_at=d["created_at"]) for d in docs]

@app.post("/issues/{issue_id}/before-after", response_model=BeforeAfterResponse)
async def add_before_after(issue_id: str, image: UploadFile = File(...), note: str = Form(""),
                           user=Depends(require_role(UserRole.ADMIN.value)), db=Depends(get_db),
                           assets=Depends(get_assets)):
    issue = await load_issue(db, issue_id)
    data = await read_image(image)
    if data is None:
        raise IssueValidationError("image", "Please upload the completed work photo")
    check_image_type(data)
    after = await assets.upload(data, folder="resolutions")
    doc = {"_id": config.new_id(), "issue_id": issue_id, "before_image": issue.get("image"),
           "after_image": after, "note": note[:1000], "uploaded_by": user["_id"],
           "created_at": config.now_utc()}
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(executor, db.before_after.insert_one, doc)
    return BeforeAfterResponse(id=doc["_id"], **{k: v for k, v in doc.items() if k != "_id"})

@app.get("/issues/{issue_id}/before-after", response_model=List[BeforeAfterResponse])
async def get_before_after(issue_id: str, db=Depends(get_db)):
    def fetch():
        return list(db.before_after.find({"issue_id": issue_id}).sort("created_at", -1))
    loop = asyncio.get_running_loop()
    docs = await loop.run_in_executor(executor, fetch)
    return [BeforeAfterResponse(id=d["_id"], **{k: v for k, v in d.items() if k != "_id"}) for d in docs]

@app.post("/issues/{issue_id}/ai-insights", response_model=IssueInsights)
@limiter.limit("10/minute")
async def ai_insights(request: Request, issue_id: str, user=Depends(get_current_user),
                      db=Depends(get_db), assets=Depends(get_assets),
                      enrichment: EnrichmentService = Depends(get_enrichment)):
    issue = await load_issue(db, issue_id)
    image = await assets.fetch(issue["image"]) if issue.get("image") else None
    description = issue.get("description", "")
    category = issue.get("category")
    return IssueInsights(
        department=await enrichment.suggest_department(image, description, category),
        resolution_time=await enrichment.predict_resolution_time(
            category, issue.get("priority") or Priority.MEDIUM.value, description),
        similar_issues=await enrichment.find_similar_issues(
            description, category, issue["lat"], issue["lng"], exclude_id=issue_id),
        sentiment=await enrichment.analyze_sentiment(description),
        impact=await enrichment.predict_impact(image, description, category, issue.get("location_name")))

# ---------------------------------------------------------------------------
# UPVOTE & LEADERBOARD ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/upvotes/toggle", response_model=UpvoteState)
async def toggle(body: UpvoteToggle, user=Depends(get_optional_user), db=Depends(get_db)):
    key = voter_key(user, body.session_id)
    if key is None:
        raise HTTPException(status_code=400, detail="Session ID or login required")
    issue = await load_issue(db, body.issue_id)
    return await toggle_upvote(db, executor, issue, key)

@app.get("/upvotes/status/{issue_id}", response_model=UpvoteState)
async def get_upvote_status(issue_id: str, session_id: Optional[str] = Query(None, max_length=128),
                            user=Depends(get_optional_user), db=Depends(get_db)):
    await load_issue(db, issue_id)
    return await upvote_status(db, executor, issue_id, voter_key(user, session_id))

@app.get("/users/leaderboard", response_model=List[LeaderboardEntry])
async def get_leaderboard(limit: int = Query(50, ge=1, le=200), db=Depends(get_db)):
    return await leaderboard(db, executor, limit)

# ---------------------------------------------------------------------------
# MAP & STATISTICS
# ---------------------------------------------------------------------------
@app.get("/heatmap", response_model=HeatmapResponse)
async def get_heatmap(status: Optional[IssueStatus] = None, category: Optional[Category] = None,
                      db=Depends(get_db)):
    fq = {"lat": {"$exists": True, "$ne": None}, "lng": {"$exists": True, "$ne": None}}
    if status: fq["status"] = status.value
    if category: fq["category"] = category.value
    def fetch():
        docs = [d for d in db.issues.find(fq).sort("created_at", -1)
                if valid_coordinates(d.get("lat"), d.get("lng")) is not None]
        return present_issues(db, docs), heat_points(docs)
    loop = asyncio.get_running_loop()
    issues, clusters = await loop.run_in_executor(executor, fetch)
    return HeatmapResponse(issues=issues, clusters=clusters)

@app.get("/statistics", response_model=StatisticsResponse)
async def get_statistics(db=Depends(get_db)):
    def fetch():
        def group_by(field):
            return {r["_id"]: r["count"] for r in db.issues.aggregate([
                {"$group": {"_id": f"${field}", "count": {"$sum": 1}}}]) if r["_id"] is not None}
        budget = list(db.issues.aggregate([
            {"$group": {"_id": None, "total": {"$sum": "$budget_allocation.allocated_amount"}}}]))
        return {"total": db.issues.count_documents({}), "status": group_by("status"),
                "category": group_by("category"), "priority": group_by("priority"),
                "budget": budget[0]["total"] if budget else 0}
    loop = asyncio.get_running_loop()
    data = await loop.run_in_executor(executor, fetch)
    resolved = data["status"].get(IssueStatus.RESOLVED.value, 0)
    rate = round(resolved / data["total"] * 100, 1) if data["total"] else 0.0
    return StatisticsResponse(
        total_issues=data["total"], resolution_rate=rate,
        status_distribution=data["status"], category_distribution=data["category"],
        priority_distribution=data["priority"], total_allocated_budget=int(data["budget"] or 0))

# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "healthy", "system": "CivicSense Issue Portal",
            "ai_enabled": model_client is not None, "timestamp": config.now_utc()}

def run():
    uvicorn.run(app, host="0.0.0.0", port=8000)

if __name__ == "__main__":
    run()
