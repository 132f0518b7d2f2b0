"""AI enrichment for issue reports.

Every judgment here is advisory. Each public coroutine catches its own
failures, logs them and returns a documented fallback, so a missing API key,
a network error or an unparseable answer can never fail a submission.
"""

import asyncio
import logging
from concurrent.futures import Executor
from typing import Any, Dict, List, Optional

from .ai import (ModelClient, clamp, parse_structured_or_fallback, scan_keywords,
                 split_tags, truncate_text)
from .assets import AssetStore
from .geo import (DUPLICATE_BOX_DEG, DUPLICATE_DETAIL_BOX_DEG, SIMILAR_BOX_DEG,
                  bounding_box_query)
from .models import (Category, CategorySuggestion, DuplicateReport, ImageData,
                     IssueStatus, Priority, Severity, SeverityAssessment, Urgency)

logger = logging.getLogger(__name__)

PLACEHOLDER_DESCRIPTION = "Issue detected in the image. Please provide more details."
DEFAULT_RESOLUTION_DAYS = 7

CATEGORY_LIST = ", ".join(f'"{c.value}"' for c in Category)

DEPARTMENTS = [
    "Public Works Department", "Environmental Services", "Electrical Department",
    "Water Supply Department", "Road Maintenance", "Waste Management",
    "Emergency Services", "General Services",
]

CATEGORY_DEPARTMENTS = {
    Category.ROAD_MANAGEMENT: "Road Maintenance",
    Category.WASTE: "Waste Management",
    Category.ELECTRICITY: "Electrical Department",
    Category.WATER: "Water Supply Department",
}

SEVERITY_KEYWORDS = [("critical", Severity.CRITICAL), ("high", Severity.HIGH), ("low", Severity.LOW)]
URGENCY_KEYWORDS = [("immediate", Urgency.IMMEDIATE), ("urgent", Urgency.URGENT), ("low", Urgency.LOW)]
PRIORITY_KEYWORDS = [("high", Priority.HIGH), ("low", Priority.LOW)]

POSITIVE_WORDS = ["good", "great", "excellent", "thanks", "appreciate", "helpful"]
NEGATIVE_WORDS = ["bad", "terrible", "awful", "urgent", "dangerous", "broken", "failed"]


def _enum_or(enum_cls, value, default):
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default


def _with_description(prompt: str, description: Optional[str]) -> str:
    if description and len(description.strip()) > 10:
        return f'{prompt}\n\nIssue Description: "{truncate_text(description, 2000)}"'
    return prompt


def _issue_summary(issue: dict, similarity: str) -> dict:
    return {"id": str(issue["_id"]), "category": issue.get("category"),
            "description": issue.get("description"),
            "location_name": issue.get("location_name"),
            "status": issue.get("status"), "created_at": issue.get("created_at"),
            "similarity": similarity}


class EnrichmentService:
    def __init__(self, client: Optional[ModelClient], db=None,
                 executor: Optional[Executor] = None, assets: Optional[AssetStore] = None):
        self.client = client
        self.db = db
        self.executor = executor
        self.assets = assets

    @property
    def available(self) -> bool:
        return self.client is not None

    async def _ask(self, prompt: str, *images: Optional[ImageData]) -> str:
        media = [i for i in images if i is not None]
        return await self.client.generate(prompt, media or None)

    async def _find(self, query: dict, sort=None, limit: int = 10) -> List[dict]:
        def fetch():
            cursor = self.db.issues.find(query)
            if sort:
                cursor = cursor.sort(*sort)
            return list(cursor.limit(limit))
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, fetch)

    # -- category -----------------------------------------------------------
    async def classify_category(self, image: Optional[ImageData]) -> Category:
        if not self.available or image is None:
            return Category.OTHER
        prompt = (
            "Analyze this image and determine which category it belongs to.\n"
            f"Categories are: {CATEGORY_LIST}.\n\n"
            "Look for:\n"
            "- Road Management: potholes, damaged roads, broken pavements, road sign issues\n"
            "- Waste: garbage, trash, waste disposal issues, littering\n"
            "- Electricity: broken street lights, electrical hazards, power line issues\n"
            "- Water: water leaks, broken pipes, water quality issues, drainage problems\n"
            "- Other: anything that doesn't fit the above categories\n\n"
            "Respond with ONLY the category name, nothing else."
        )
        try:
            return Category.coerce(await self._ask(prompt, image))
        except Exception as e:
            logger.error("Category classification error: %s", e)
            return Category.OTHER

    async def suggest_categories(self, image: Optional[ImageData],
                                 description: str = "") -> List[CategorySuggestion]:
        default = [CategorySuggestion(category=Category.OTHER, confidence=0.5, reasoning="Default category")]
        if not self.available:
            return default
        prompt = _with_description(
            "Analyze this community issue and suggest the top 3 most likely categories from:\n"
            f"{CATEGORY_LIST}\n\n"
            "Respond in JSON array format:\n"
            '[{"category": "Category Name", "confidence": 0.0-1.0, "reasoning": "brief explanation"}, ...]\n\n'
            "Sort by confidence (highest first).", description)

        def build(data):
            suggestions = []
            for item in data:
                name = item.get("category")
                if name not in {c.value for c in Category}:
                    continue
                suggestions.append(CategorySuggestion(
                    category=Category(name),
                    confidence=clamp(item.get("confidence"), 0, 1, 0.5),
                    reasoning=item.get("reasoning") or "AI analysis"))
            if not suggestions:
                raise ValueError("no valid categories")
            suggestions.sort(key=lambda s: s.confidence, reverse=True)
            return suggestions[:3]

        try:
            text = await self._ask(prompt, image)
        except Exception as e:
            logger.error("Category suggestion error: %s", e)
            return default
        suggestions = parse_structured_or_fallback(text, lambda _: None, build, array=True)
        if suggestions is not None:
            return suggestions
        single = await self.classify_category(image)
        return [CategorySuggestion(category=single, confidence=0.7, reasoning="AI analysis")]

    # -- description --------------------------------------------------------
    async def generate_description(self, image: Optional[ImageData]) -> str:
        if not self.available or image is None:
            return PLACEHOLDER_DESCRIPTION
        prompt = (
            "Analyze this image of a community issue reported by a citizen.\n"
            "Generate a clear, concise description in English that describes:\n"
            "1. What the problem is\n"
            "2. Where it appears to be located (if visible)\n"
            "3. The severity/urgency of the issue\n"
            "4. Any relevant details that would help authorities address it\n\n"
            "Keep the description professional, factual, and under 200 words."
        )
        try:
            text = await self._ask(prompt, image)
            return text or PLACEHOLDER_DESCRIPTION
        except Exception as e:
            logger.error("Description generation error: %s", e)
            return PLACEHOLDER_DESCRIPTION

    async def enhance_description(self, text: str) -> str:
        if not self.available or not text or len(text.strip()) < 10:
            return text
        prompt = (
            "Improve this community issue description while keeping the original meaning and facts intact.\n\n"
            f'Original Description: "{truncate_text(text, 3000)}"\n\n'
            "Enhance by making it professional and clear, improving grammar and structure, "
            "and keeping it under 300 words. Do not invent facts.\n\n"
            "Respond with ONLY the enhanced description, no other text."
        )
        try:
            enhanced = await self._ask(prompt)
            return enhanced or text
        except Exception as e:
            logger.error("Description enhancement error: %s", e)
            return text

    # -- triage -------------------------------------------------------------
    async def assess_severity(self, image: Optional[ImageData], description: str = "") -> SeverityAssessment:
        if not self.available:
            return SeverityAssessment(reasoning="Unable to analyze. Please review manually.")
        prompt = _with_description(
            "Analyze this community issue and assess:\n"
            '1. Severity: "critical", "high", "moderate", "low"\n'
            '2. Urgency: "immediate", "urgent", "medium", "low"\n'
            "3. Brief reasoning (one sentence)\n\n"
            'Respond in JSON format:\n{"severity": "...", "urgency": "...", "reasoning": "brief explanation"}',
            description)
        try:
            text = await self._ask(prompt, image)
        except Exception as e:
            logger.warning("Severity assessment unavailable: %s", e)
            return SeverityAssessment(reasoning="Unable to assess severity - using default")

        def build(data):
            return SeverityAssessment(
                severity=_enum_or(Severity, data.get("severity"), Severity.MODERATE),
                urgency=_enum_or(Urgency, data.get("urgency"), Urgency.MEDIUM),
                reasoning=data.get("reasoning") or "AI analysis completed")

        def keyword_scan(raw):
            return SeverityAssessment(
                severity=scan_keywords(raw, SEVERITY_KEYWORDS, Severity.MODERATE),
                urgency=scan_keywords(raw, URGENCY_KEYWORDS, Urgency.MEDIUM),
                reasoning=raw[:200] or "AI analysis completed")

        return parse_structured_or_fallback(text, keyword_scan, build)

    async def suggest_priority(self, image: Optional[ImageData], description: str = "") -> Priority:
        if not self.available:
            return Priority.MEDIUM
        prompt = _with_description(
            'Analyze this community issue and suggest a priority level: "high", "medium", or "low".\n\n'
            "- High: safety hazards, urgent public health issues, blocking infrastructure\n"
            "- Medium: moderate impact on community, needs attention soon\n"
            "- Low: minor issues, cosmetic problems, non-urgent matters\n\n"
            'Respond with ONLY one word: "high", "medium", or "low".', description)
        try:
            return scan_keywords(await self._ask(prompt, image), PRIORITY_KEYWORDS, Priority.MEDIUM)
        except Exception as e:
            logger.warning("Priority suggestion unavailable: %s", e)
            return Priority.MEDIUM

    async def generate_tags(self, image: Optional[ImageData], description: str = "",
                            category: Optional[str] = None) -> List[str]:
        if not self.available:
            return []
        prompt = _with_description(
            "Analyze this community issue and generate 3-5 relevant tags/keywords.\n"
            "Tags should be short (1-2 words), specific, and useful for searching/filtering.\n"
            'Examples: "pothole", "broken pipe", "garbage dump", "street light", "water leak"\n\n'
            "Respond with ONLY a comma-separated list of tags, no other text.", description)
        if category:
            prompt += f'\n\nCategory: "{category}"'
        try:
            return split_tags(await self._ask(prompt, image))
        except Exception as e:
            logger.error("Tag generation error: %s", e)
            return []

    # -- duplicates ---------------------------------------------------------
    async def _compare_images(self, image: ImageData, existing: dict, description: Optional[str]):
        """Return the model's raw answer comparing ``image`` with an existing issue's photo, or None."""
        if not existing.get("image") or self.assets is None:
            return None
        other = await self.assets.fetch(existing["image"])
        if other is None:
            return None
        prompt = "Compare these two images. Are they showing the same issue/problem?\n"
        if description is None:
            prompt += 'Respond with only "YES" if they are the same issue, or "NO" if they are different issues.'
        else:
            prompt += (
                "Also check if the descriptions match:\n"
                f'New: "{truncate_text(description or "No description", 1000)}"\n'
                f'Existing: "{truncate_text(existing.get("description") or "No description", 1000)}"\n\n'
                'Respond with JSON:\n{"is_duplicate": true/false, "confidence": 0.0-1.0, "reasoning": "brief explanation"}'
            )
        return await self._ask(prompt, image, other)

    async def detect_duplicate(self, lat: float, lng: float, image: Optional[ImageData]) -> bool:
        if not self.available or self.db is None:
            return False
        try:
            query = {**bounding_box_query(lat, lng, DUPLICATE_BOX_DEG),
                     "status": {"$ne": IssueStatus.RESOLVED.value}}
            nearby = await self._find(query, sort=("created_at", -1), limit=5)
        except Exception as e:
            logger.error("Duplicate lookup error: %s", e)
            return False
        if not nearby:
            return False
        if image is not None:
            try:
                answer = await self._compare_images(image, nearby[0], None)
                if answer is not None:
                    return "YES" in answer.upper()
            except Exception as e:
                logger.error("Image comparison error: %s", e)
        return True

    async def detect_duplicate_with_details(self, lat: float, lng: float, image: Optional[ImageData],
                                            description: str = "") -> DuplicateReport:
        if not self.available or self.db is None:
            return DuplicateReport(is_duplicate=False)
        try:
            query = {**bounding_box_query(lat, lng, DUPLICATE_DETAIL_BOX_DEG),
                     "status": {"$ne": IssueStatus.RESOLVED.value}}
            nearby = await self._find(query, sort=("created_at", -1), limit=10)
        except Exception as e:
            logger.error("Duplicate lookup error: %s", e)
            return DuplicateReport(is_duplicate=False)
        if not nearby:
            return DuplicateReport(is_duplicate=False)

        fallback = DuplicateReport(
            is_duplicate=True, confidence=0.3,
            similar_issues=[_issue_summary(i, "Nearby issue found") for i in nearby[:3]])
        if image is None:
            return fallback
        try:
            answer = await self._compare_images(image, nearby[0], description or "")
        except Exception as e:
            logger.error("Image comparison error: %s", e)
            return fallback
        if answer is None:
            return fallback

        def build(data):
            flag = data.get("is_duplicate", data.get("isDuplicate"))
            reasoning = data.get("reasoning") or "Nearby similar issue"
            return DuplicateReport(
                is_duplicate=flag is True or str(flag).lower() == "true",
                confidence=clamp(data.get("confidence"), 0, 1, 0.5),
                similar_issues=[_issue_summary(i, reasoning) for i in nearby[:3]])

        return parse_structured_or_fallback(answer, lambda _: fallback, build)

    async def find_similar_issues(self, description: str, category: str, lat: float, lng: float,
                                  limit: int = 5, exclude_id: Optional[str] = None) -> List[dict]:
        if not self.available or self.db is None or not description or len(description.strip()) < 10:
            return []
        try:
            query = {**bounding_box_query(lat, lng, SIMILAR_BOX_DEG),
                     "category": Category.coerce(category).value,
                     "status": {"$ne": IssueStatus.RESOLVED.value}}
            if exclude_id:
                query["_id"] = {"$ne": exclude_id}
            nearby = await self._find(query, sort=("created_at", -1), limit=10)
        except Exception as e:
            logger.error("Similar issue lookup error: %s", e)
            return []
        if not nearby:
            return []
        listing = "\n".join(f'{n}. "{truncate_text(i.get("description") or "No description", 300)}"'
                            for n, i in enumerate(nearby, 1))
        prompt = (
            f'Given this new issue description:\n"{truncate_text(description, 1500)}"\n\n'
            f"Compare it with these existing issues and rank them by similarity (1 = most similar):\n{listing}\n\n"
            f'Respond with JSON of the top {limit} most similar issue numbers:\n'
            '{"similar": [1, 3, 5], "reasoning": "brief explanation"}\n\n'
            "Only include issues that are actually similar (not just in same location)."
        )
        fallback = [_issue_summary(i, "Nearby issue in same category") for i in nearby[:limit]]

        def build(data):
            reasoning = data.get("reasoning") or "Similar issue found"
            picked = [nearby[int(n) - 1] for n in data.get("similar", [])
                      if isinstance(n, (int, float, str)) and str(n).isdigit() and 0 < int(n) <= len(nearby)]
            return [_issue_summary(i, reasoning) for i in picked[:limit]]

        try:
            text = await self._ask(prompt)
        except Exception as e:
            logger.error("Similar issue ranking error: %s", e)
            return fallback
        return parse_structured_or_fallback(text, lambda _: fallback, build)

    # -- routing and planning -----------------------------------------------
    async def suggest_department(self, image: Optional[ImageData], description: str,
                                 category: Optional[str]) -> Dict[str, Any]:
        static = {
            "department": CATEGORY_DEPARTMENTS.get(Category.coerce(category), "General Services"),
            "confidence": 0.6,
            "reasoning": f"Based on category: {category or Category.OTHER.value}",
            "alternative_departments": [],
        }
        if not self.available:
            return static
        prompt = (
            "Analyze this community issue and suggest the most appropriate department to handle it.\n\n"
            f"Available departments: {', '.join(DEPARTMENTS)}\n\n"
            f"Issue Category: {category or 'Not specified'}\n"
            f"Description: {truncate_text(description or 'Not provided', 2000)}\n\n"
            "Respond with JSON:\n"
            '{"department": "Department Name", "confidence": 0.0-1.0, '
            '"reasoning": "brief explanation", "alternative_departments": ["Dept1", "Dept2"]}'
        )

        def build(data):
            department = data.get("department")
            if department not in DEPARTMENTS:
                raise ValueError(f"unknown department {department!r}")
            alternatives = data.get("alternative_departments", data.get("alternativeDepartments")) or []
            return {"department": department,
                    "confidence": clamp(data.get("confidence"), 0, 1, 0.5),
                    "reasoning": data.get("reasoning") or "AI analysis",
                    "alternative_departments": [d for d in alternatives if d in DEPARTMENTS]}

        try:
            text = await self._ask(prompt, image)
        except Exception as e:
            logger.error("Department suggestion error: %s", e)
            return static
        return parse_structured_or_fallback(text, lambda _: static, build)

    async def historical_resolution_days(self, category: str) -> tuple:
        """Mean days from creation to resolution over recent resolved issues of ``category``."""
        if self.db is None:
            return float(DEFAULT_RESOLUTION_DAYS), 0
        resolved = await self._find(
            {"category": Category.coerce(category).value, "status": IssueStatus.RESOLVED.value},
            sort=("created_at", -1), limit=10)
        durations = []
        for issue in resolved:
            end = issue.get("resolved_at") or issue.get("updated_at")
            start = issue.get("created_at")
            if end and start:
                durations.append((end - start).total_seconds() / 86400)
        if not durations:
            return float(DEFAULT_RESOLUTION_DAYS), 0
        return sum(durations) / len(durations), len(durations)

    async def predict_resolution_time(self, category: str, priority: str,
                                      description: str = "") -> Dict[str, Any]:
        default = {"estimated_days": DEFAULT_RESOLUTION_DAYS, "confidence": "low",
                   "reasoning": "Based on default estimates"}
        if not self.available:
            return default
        try:
            average, sample = await self.historical_resolution_days(category)
        except Exception as e:
            logger.error("Resolution history lookup error: %s", e)
            return default

        def adjusted(_raw):
            days = average
            if priority == Priority.HIGH.value:
                days *= 0.7
            elif priority == Priority.LOW.value:
                days *= 1.3
            return {"estimated_days": round(days),
                    "confidence": "high" if sample > 5 else "medium",
                    "reasoning": f"Based on {sample} similar resolved issues"}

        prompt = (
            "Based on the following information, predict resolution time:\n"
            f"- Category: {category}\n- Priority: {priority}\n"
            f"- Description: {truncate_text(description or 'Not provided', 1500)}\n"
            f"- Historical average for similar issues: {average:.1f} days\n\n"
            "High priority issues typically resolve faster; complex issues may take longer.\n\n"
            'Respond with JSON:\n{"estimated_days": number, "confidence": "high|medium|low", "reasoning": "brief explanation"}'
        )

        def build(data):
            days = data.get("estimated_days", data.get("estimatedDays"))
            return {"estimated_days": round(float(days)) if days else round(average),
                    "confidence": data.get("confidence") or "medium",
                    "reasoning": data.get("reasoning") or "Based on historical data"}

        try:
            text = await self._ask(prompt)
        except Exception as e:
            logger.error("Resolution prediction error: %s", e)
            return adjusted("")
        return parse_structured_or_fallback(text, adjusted, build)

    # -- community signals --------------------------------------------------
    async def analyze_sentiment(self, text: str) -> Dict[str, Any]:
        neutral = {"sentiment": "neutral", "score": 0.0, "emotions": [], "urgency": "medium"}
        if not self.available or not text or len(text.strip()) < 5:
            return neutral

        def keyword_count(_raw):
            lowered = text.lower()
            positive = sum(1 for w in POSITIVE_WORDS if w in lowered)
            negative = sum(1 for w in NEGATIVE_WORDS if w in lowered)
            sentiment, score = "neutral", 0.0
            if positive > negative:
                sentiment, score = "positive", 0.5
            elif negative > positive:
                sentiment, score = "negative", -0.5
            return {"sentiment": sentiment, "score": score, "emotions": [],
                    "urgency": "high" if negative > 2 else "medium"}

        def build(data):
            return {"sentiment": data.get("sentiment") or "neutral",
                    "score": clamp(data.get("score"), -1, 1, 0.0),
                    "emotions": list(data.get("emotions") or []),
                    "urgency": data.get("urgency") or "medium"}

        prompt = (
            f'Analyze the sentiment of this text from a community issue reporting platform:\n"{truncate_text(text, 2000)}"\n\n'
            'Respond with JSON:\n{"sentiment": "positive|negative|neutral", "score": -1.0 to 1.0, '
            '"emotions": ["emotion1"], "urgency": "high|medium|low"}'
        )
        try:
            answer = await self._ask(prompt)
        except Exception as e:
            logger.error("Sentiment analysis error: %s", e)
            return neutral
        return parse_structured_or_fallback(answer, keyword_count, build)

    async def predict_impact(self, image: Optional[ImageData], description: str,
                             category: Optional[str], location_name: Optional[str]) -> Dict[str, Any]:
        default = {"impact_level": "medium", "affected_people": 50, "economic_impact": "low",
                   "reasoning": "Based on default estimates"}
        if not self.available:
            return default
        prompt = (
            "Analyze this community issue and predict its impact:\n\n"
            f"Category: {category or 'Not specified'}\nLocation: {location_name or 'Not specified'}\n"
            f"Description: {truncate_text(description or 'Not provided', 2000)}\n\n"
            'Respond with JSON:\n{"impact_level": "low|medium|high|critical", "affected_people": number (0-1000), '
            '"economic_impact": "low|medium|high", "reasoning": "brief explanation"}'
        )

        def build(data):
            return {"impact_level": data.get("impact_level") or "medium",
                    "affected_people": int(clamp(data.get("affected_people"), 0, 1000, 50)),
                    "economic_impact": data.get("economic_impact") or "low",
                    "reasoning": data.get("reasoning") or "AI analysis"}

        try:
            text = await self._ask(prompt, image)
        except Exception as e:
            logger.error("Impact prediction error: %s", e)
            return {**default, "reasoning": "Unable to predict"}
        return parse_structured_or_fallback(text, lambda _: default, build)
