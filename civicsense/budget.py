"""Budget estimation for a reported issue.

Three tiers, tried in order: a model judgment (needs an image and a
configured model), a keyword heuristic over the description, and the fixed
category average. Whichever tier answers, the amount is clamped into the
category envelope.
"""

import logging
from typing import Dict, Optional

from .ai import clamp, parse_structured_or_fallback, truncate_text
from .enrichment import EnrichmentService
from .models import BudgetAllocation, Category, ImageData, Priority

logger = logging.getLogger(__name__)

# Envelopes in Nepali Rupees
BUDGET_ENVELOPES: Dict[Category, Dict[str, int]] = {
    Category.ROAD_MANAGEMENT: {"min": 50000, "max": 500000, "avg": 150000},
    Category.WASTE:           {"min": 20000, "max": 200000, "avg": 75000},
    Category.ELECTRICITY:     {"min": 30000, "max": 300000, "avg": 100000},
    Category.WATER:           {"min": 40000, "max": 400000, "avg": 125000},
    Category.OTHER:           {"min": 25000, "max": 250000, "avg": 85000},
}

URGENT_KEYWORDS = ["urgent", "emergency", "dangerous", "hazard", "critical", "immediate", "severe"]
SIMPLE_KEYWORDS = ["small", "minor", "simple", "quick", "easy", "cosmetic"]

URGENT_FACTOR = 1.15
SIMPLE_FACTOR = 0.75
DEFAULT_FACTOR = 0.85


def envelope_for(category: Optional[str]) -> Dict[str, int]:
    return BUDGET_ENVELOPES[Category.coerce(category)]


def clamp_amount(amount: float, envelope: Dict[str, int]) -> int:
    return int(min(envelope["max"], max(envelope["min"], round(amount))))


def heuristic_factor(description: Optional[str]) -> float:
    text = (description or "").lower()
    if any(k in text for k in URGENT_KEYWORDS):
        return URGENT_FACTOR
    if any(k in text for k in SIMPLE_KEYWORDS):
        return SIMPLE_FACTOR
    return DEFAULT_FACTOR


def _allocation(amount: int, factor: float, confidence: int, complexity: int,
                reasoning: str, ai_generated: bool) -> BudgetAllocation:
    return BudgetAllocation(allocated_amount=amount, estimated_cost=amount,
                            probability_factor=round(factor, 2), confidence=confidence,
                            complexity=complexity, reasoning=reasoning, ai_generated=ai_generated)


def heuristic_allocation(description: Optional[str], category: Optional[str]) -> BudgetAllocation:
    envelope = envelope_for(category)
    factor = heuristic_factor(description)
    return _allocation(
        clamp_amount(envelope["avg"] * factor, envelope), factor, 65, 5,
        f"Probability-based calculation for {Category.coerce(category).value}: "
        f"{factor * 100:.0f}% of average budget", False)


def default_allocation(category: Optional[str]) -> BudgetAllocation:
    envelope = envelope_for(category)
    return _allocation(clamp_amount(envelope["avg"], envelope), 1.0, 50, 5,
                       "Default budget allocation", False)


class BudgetAllocator:
    def __init__(self, enrichment: EnrichmentService):
        self.enrichment = enrichment

    async def _ai_allocation(self, image: ImageData, description: str, category: Category,
                             location_name: str, priority: Optional[Priority] = None) -> Optional[BudgetAllocation]:
        envelope = BUDGET_ENVELOPES[category]
        if priority is None:
            priority = await self.enrichment.suggest_priority(image, description)
        severity = await self.enrichment.assess_severity(image, description)
        prompt = (
            "Analyze this community issue and estimate budget allocation:\n\n"
            f"Category/Department: {category.value}\n"
            f"Location: {location_name or 'Not specified'}\n"
            f"Description: {truncate_text(description or 'Not provided', 2000)}\n"
            f"Priority: {priority.value}\nSeverity: {severity.severity.value}\n\n"
            "Based on the image analysis, estimate:\n"
            "1. Complexity level (1-10): simple repair (1-3), moderate work (4-6), complex project (7-10)\n"
            f"2. Estimated budget in Nepali Rupees: between {envelope['min']:,} and {envelope['max']:,}\n"
            "3. Confidence level (0-100): how confident you are in this estimate\n"
            "4. Probability factor (0.6-1.4): 0.6-0.8 for simple, 0.8-1.0 for moderate, 1.0-1.4 for complex\n\n"
            "Respond with JSON:\n"
            '{"complexity": number, "estimated_budget": number, "confidence": number, '
            '"probability_factor": number, "reasoning": "brief explanation of budget calculation"}'
        )
        try:
            text = await self.enrichment.client.generate(prompt, [image])
        except Exception as e:
            logger.warning("AI budget estimate unavailable, using heuristic: %s", e)
            return None

        def build(data):
            factor = clamp(data.get("probability_factor", data.get("probabilityFactor")), 0.6, 1.4, 1.0)
            return _allocation(
                clamp_amount(envelope["avg"] * factor, envelope), factor,
                round(clamp(data.get("confidence"), 0, 100, 70)),
                round(clamp(data.get("complexity"), 1, 10, 5)),
                data.get("reasoning") or f"AI-analyzed: {priority.value} priority, "
                                         f"{severity.severity.value} severity",
                True)

        return parse_structured_or_fallback(text, lambda _: None, build)

    async def allocate_budget(self, image: Optional[ImageData], description: str,
                              category: Optional[str], location_name: str = "",
                              priority: Optional[Priority] = None) -> BudgetAllocation:
        try:
            resolved = Category.coerce(category)
            if self.enrichment.available and image is not None:
                allocation = await self._ai_allocation(image, description, resolved, location_name, priority)
                if allocation is not None:
                    return allocation
            return heuristic_allocation(description, resolved)
        except Exception as e:
            logger.error("Budget allocation error: %s", e)
            return default_allocation(category)
