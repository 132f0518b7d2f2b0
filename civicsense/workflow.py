"""Issue submission pipeline.

A submission moves through VALIDATING -> UPLOADING -> ENRICHING ->
PERSISTING -> SCORED -> COMPLETE, strictly in that order. Validation and
upload failures stop it with nothing stored; enrichment never stops it.
"""

import asyncio
import logging
import math
from concurrent.futures import Executor
from enum import Enum
from typing import Any, Optional, Tuple

from .assets import ALLOWED_IMAGE_TYPES, AssetStore
from .budget import BudgetAllocator
from .config import new_id, now_utc
from .enrichment import PLACEHOLDER_DESCRIPTION, EnrichmentService
from .errors import AssetUploadError, IssuePersistenceError, IssueValidationError
from .models import (BudgetAllocation, Category, ImageData, IssueResponse, IssueStatus,
                     IssueSubmission, Priority, ReporterSummary, SubmissionResult)
from .scoring import REPORT_POINTS, award_points

logger = logging.getLogger(__name__)

MIN_DESCRIPTION_CHARS = 10
MAX_DESCRIPTION_CHARS = 5000

ANONYMOUS_REPORTER = {"full_name": "Anonymous", "email": "anonymous@example.com"}


class SubmissionStage(str, Enum):
    DRAFT = "draft"
    VALIDATING = "validating"
    UPLOADING = "uploading"
    ENRICHING = "enriching"
    PERSISTING = "persisting"
    SCORED = "scored"
    COMPLETE = "complete"
    REJECTED = "rejected"
    QUEUED = "queued"


def parse_coordinate(name: str, value: Any, limit: float) -> float:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise IssueValidationError(name, f"{name} is required")
    if isinstance(value, bool):
        raise IssueValidationError(name, f"{name} must be a valid number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise IssueValidationError(name, f"{name} must be a valid number")
    if math.isnan(number) or math.isinf(number):
        raise IssueValidationError(name, f"{name} must be a valid number")
    if not -limit <= number <= limit:
        raise IssueValidationError(name, f"{name} must be between -{limit:g} and {limit:g}")
    return number


def check_image_type(image: ImageData):
    if image.mime_type not in ALLOWED_IMAGE_TYPES:
        raise IssueValidationError(
            "image", f"Unsupported image type {image.mime_type}; use JPEG, PNG, WebP or GIF")


def validate_submission(submission: IssueSubmission, image: Optional[ImageData]) -> Tuple[float, float]:
    """Check required fields and return the parsed ``(lat, lng)``."""
    if image is None or not image.content:
        raise IssueValidationError("image", "Please upload an image before submitting")
    check_image_type(image)
    if len(submission.description or "") > MAX_DESCRIPTION_CHARS:
        raise IssueValidationError("description", f"Description cannot exceed {MAX_DESCRIPTION_CHARS} characters")
    if not (submission.location_name or "").strip():
        raise IssueValidationError("location_name", "Please provide complete location information")
    lat = parse_coordinate("lat", submission.lat, 90)
    lng = parse_coordinate("lng", submission.lng, 180)
    return lat, lng


def issue_to_response(doc: dict, reporter: Optional[dict] = None, upvote_count: int = 0) -> IssueResponse:
    """Build the public view of an issue; anonymous reports hide the reporter's identity."""
    summary = None
    if doc.get("is_anonymous"):
        summary = ReporterSummary(id=None, **ANONYMOUS_REPORTER)
    elif reporter is not None:
        summary = ReporterSummary(id=str(reporter["_id"]), full_name=reporter.get("full_name", ""),
                                  email=reporter.get("email", ""))
    budget = doc.get("budget_allocation")
    return IssueResponse(
        id=doc["_id"], description=doc.get("description", ""),
        category=Category.coerce(doc.get("category")),
        ward=doc.get("ward") or "", municipality=doc.get("municipality") or "",
        location_name=doc.get("location_name", ""), lat=doc["lat"], lng=doc["lng"],
        image=doc.get("image"), status=doc.get("status", IssueStatus.PENDING.value),
        is_anonymous=bool(doc.get("is_anonymous")),
        priority=doc.get("priority") or Priority.MEDIUM.value,
        reporter=summary, upvote_count=upvote_count,
        budget_allocation=BudgetAllocation(**budget) if budget else None,
        created_at=doc["created_at"], updated_at=doc["updated_at"],
        resolved_at=doc.get("resolved_at"))


class IssueWorkflow:
    def __init__(self, db, executor: Optional[Executor], assets: AssetStore,
                 enrichment: EnrichmentService):
        self.db = db
        self.executor = executor
        self.assets = assets
        self.enrichment = enrichment
        self.budget = BudgetAllocator(enrichment)

    def _stage(self, submission_id: str, stage: SubmissionStage):
        logger.info("Submission %s: %s", submission_id, stage.value)

    async def _existing(self, reporter: dict, client_submission_id: Optional[str]) -> Optional[dict]:
        if not client_submission_id:
            return None
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, self.db.issues.find_one, {
            "reporter_id": reporter["_id"], "client_submission_id": client_submission_id})

    async def submit_issue(self, submission: IssueSubmission, image: Optional[ImageData],
                           reporter: dict) -> SubmissionResult:
        submission_id = new_id()
        self._stage(submission_id, SubmissionStage.VALIDATING)
        try:
            lat, lng = validate_submission(submission, image)
        except IssueValidationError as e:
            self._stage(submission_id, SubmissionStage.REJECTED)
            logger.info("Submission %s rejected on %s: %s", submission_id, e.field, e.message)
            raise

        # Replays of an offline entry that already reached the server
        existing = await self._existing(reporter, submission.client_submission_id)
        if existing is not None:
            logger.info("Submission %s duplicates %s, returning stored issue", submission_id, existing["_id"])
            budget = existing.get("budget_allocation")
            return SubmissionResult(issue=issue_to_response(existing, reporter),
                                    budget=BudgetAllocation(**budget) if budget else None)

        self._stage(submission_id, SubmissionStage.UPLOADING)
        try:
            image_ref = await self.assets.upload(image, folder="issues")
        except AssetUploadError:
            raise
        except Exception as e:
            logger.error("Submission %s upload failed: %s", submission_id, e)
            raise AssetUploadError() from e

        self._stage(submission_id, SubmissionStage.ENRICHING)
        category = submission.category
        if category and category.strip():
            category = Category.coerce(category)
        else:
            category = await self.enrichment.classify_category(image) or Category.OTHER

        description = (submission.description or "").strip()
        if len(description) < MIN_DESCRIPTION_CHARS:
            generated = await self.enrichment.generate_description(image)
            if generated and generated != PLACEHOLDER_DESCRIPTION:
                description = generated
            else:
                description = description or PLACEHOLDER_DESCRIPTION

        priority = await self.enrichment.suggest_priority(image, description)
        budget = await self.budget.allocate_budget(image, description, category.value,
                                                   submission.location_name.strip(), priority)

        self._stage(submission_id, SubmissionStage.PERSISTING)
        now = now_utc()
        doc = {
            "_id": submission_id, "reporter_id": reporter["_id"],
            "description": description, "category": category.value,
            "ward": submission.ward or "", "municipality": submission.municipality or "",
            "location_name": submission.location_name.strip(), "lat": lat, "lng": lng,
            "image": image_ref, "status": IssueStatus.PENDING.value,
            "is_anonymous": submission.is_anonymous, "priority": priority.value,
            "budget_allocation": budget.model_dump(),
            "client_submission_id": submission.client_submission_id,
            "created_at": now, "updated_at": now, "resolved_at": None,
        }
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self.executor, self.db.issues.insert_one, doc)
        except Exception as e:
            logger.error("Submission %s persistence failed: %s", submission_id, e)
            try:
                await self.assets.delete(image_ref)
            except Exception as cleanup_error:
                logger.error("Orphaned asset %s left behind: %s", image_ref, cleanup_error)
            raise IssuePersistenceError() from e

        await award_points(self.db, self.executor, reporter["_id"], REPORT_POINTS, "new report")
        self._stage(submission_id, SubmissionStage.SCORED)

        self._stage(submission_id, SubmissionStage.COMPLETE)
        return SubmissionResult(issue=issue_to_response(doc, reporter), budget=budget)
