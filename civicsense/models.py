import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Category(str, Enum):
    ROAD_MANAGEMENT = "Road Management"
    WASTE = "Waste"
    ELECTRICITY = "Electricity"
    WATER = "Water"
    OTHER = "Other"

    @classmethod
    def coerce(cls, value: Optional[str]) -> "Category":
        """Map any user or model supplied string onto one of the five categories."""
        if isinstance(value, Category):
            return value
        if not value or not isinstance(value, str):
            return cls.OTHER
        text = value.strip().strip(".").strip().lower()
        for member in cls:
            if text == member.value.lower():
                return member
        if re.search(r"\bother\b", text):
            return cls.OTHER
        # Model answers often use the long names ("Water Supply", "Waste Management")
        named = [member for member in (cls.ROAD_MANAGEMENT, cls.WASTE, cls.ELECTRICITY, cls.WATER)
                 if re.search(rf"\b{re.escape(member.value.lower())}\b", text)]
        return named[0] if len(named) == 1 else cls.OTHER

class IssueStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"

class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"

class Urgency(str, Enum):
    IMMEDIATE = "immediate"
    URGENT = "urgent"
    MEDIUM = "medium"
    LOW = "low"

class UserRole(str, Enum):
    CITIZEN = "citizen"
    ADMIN = "admin"

# ---------------------------------------------------------------------------
# Pydantic Models
# ---------------------------------------------------------------------------
class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, max_length=72)
    full_name: str = Field(..., max_length=200)
    email: str = Field(..., max_length=320)
    role: UserRole = UserRole.CITIZEN

class UserLogin(BaseModel):
    username: str
    password: str

class UserResponse(BaseModel):
    id: str
    username: str
    full_name: str
    email: str
    role: UserRole
    points: int = 0
    created_at: datetime

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse

class BudgetAllocation(BaseModel):
    allocated_amount: int
    estimated_cost: int
    probability_factor: float = Field(..., ge=0.6, le=1.4)
    confidence: int = Field(..., ge=0, le=100)
    complexity: int = Field(..., ge=1, le=10)
    reasoning: str
    ai_generated: bool = False

class ImageData(BaseModel):
    """Raw image bytes handed to the model client and the asset store."""
    content: bytes
    mime_type: str = "image/jpeg"
    filename: str = "upload.jpg"

class IssueSubmission(BaseModel):
    # Fields are loose on purpose: the workflow reports field-level errors itself
    description: str = ""
    category: Optional[str] = None
    ward: str = ""
    municipality: str = ""
    location_name: str = ""
    lat: Optional[Any] = None
    lng: Optional[Any] = None
    is_anonymous: bool = False
    client_submission_id: Optional[str] = Field(None, max_length=64)

class ReporterSummary(BaseModel):
    id: Optional[str] = None
    full_name: str
    email: str

class IssueResponse(BaseModel):
    id: str
    description: str
    category: Category
    ward: str = ""
    municipality: str = ""
    location_name: str
    lat: float
    lng: float
    image: Optional[str] = None
    status: IssueStatus
    is_anonymous: bool = False
    priority: Priority = Priority.MEDIUM
    reporter: Optional[ReporterSummary] = None
    upvote_count: int = 0
    budget_allocation: Optional[BudgetAllocation] = None
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None

class SubmissionResult(BaseModel):
    issue: IssueResponse
    budget: Optional[BudgetAllocation] = None

class StatusUpdate(BaseModel):
    status: IssueStatus

class CommentCreate(BaseModel):
    comment: str = Field(..., min_length=1, max_length=2000)

    @field_validator("comment")
    @classmethod
    def not_blank(cls, v):
        if not v.strip():
            raise ValueError("Comment cannot be blank")
        return v.strip()

class CommentResponse(BaseModel):
    id: str
    issue_id: str
    user_id: str
    full_name: str
    comment: str
    created_at: datetime

class UpvoteToggle(BaseModel):
    issue_id: str
    session_id: Optional[str] = Field(None, max_length=128)

class UpvoteState(BaseModel):
    upvoted: bool
    upvote_count: int

class LeaderboardEntry(BaseModel):
    full_name: str
    email: str
    points: int

class HeatCluster(BaseModel):
    centroid_lat: float
    centroid_lng: float
    member_count: int
    intensity: float = Field(..., ge=0, le=1)

class HeatmapResponse(BaseModel):
    issues: List[IssueResponse]
    clusters: List[HeatCluster]

class EnhanceRequest(BaseModel):
    description: str = Field(..., max_length=5000)

class EnhanceResponse(BaseModel):
    enhanced: str

class CategorySuggestion(BaseModel):
    category: Category
    confidence: float = Field(..., ge=0, le=1)
    reasoning: str = "AI analysis"

class SeverityAssessment(BaseModel):
    severity: Severity = Severity.MODERATE
    urgency: Urgency = Urgency.MEDIUM
    reasoning: str = ""

class AIGenerateResponse(BaseModel):
    ai_description: str
    category: Category
    priority: Priority
    severity: SeverityAssessment
    tags: List[str] = Field(default_factory=list)
    categories: List[CategorySuggestion] = Field(default_factory=list)

class DuplicateReport(BaseModel):
    is_duplicate: bool
    confidence: float = 0.0
    similar_issues: List[Dict[str, Any]] = Field(default_factory=list)

class StatisticsResponse(BaseModel):
    total_issues: int
    resolution_rate: float
    status_distribution: Dict[str, int]
    category_distribution: Dict[str, int]
    priority_distribution: Dict[str, int]
    total_allocated_budget: int = 0

class BeforeAfterResponse(BaseModel):
    id: str
    issue_id: str
    before_image: Optional[str] = None
    after_image: str
    note: str = ""
    uploaded_by: str
    created_at: datetime

class IssueInsights(BaseModel):
    department: Dict[str, Any]
    resolution_time: Dict[str, Any]
    similar_issues: List[Dict[str, Any]] = Field(default_factory=list)
    sentiment: Dict[str, Any]
    impact: Dict[str, Any]
