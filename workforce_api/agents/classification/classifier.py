"""
App → productivity label, via the SMART model.

The model sees the usage profile produced by the analyzer and answers with
JSON; anything it gets wrong degrades to a low-confidence neutral label so a
human reviews it.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel, ValidationError, field_validator

from workforce_api.agents.classification.analyzer import AppAnalysis
from workforce_api.services import llm
from workforce_api.services.runtime import log_event

logger = logging.getLogger("classification.classifier")

DEFAULT_CONFIDENCE = 0.5
CONTEXT_BOOST = 0.1

SYSTEM_PROMPT = """You classify software applications for a workforce productivity platform
as productive, neutral or unproductive, using their name and usage patterns.

PRODUCTIVE:
- development tools (VS Code, IntelliJ, GitHub)
- project management (Jira, Asana, Linear)
- work communication (Slack, Teams, Zoom meetings)
- documentation (Confluence, Notion, Google Docs)
- design tools (Figma, Adobe Creative Suite)
- CRM and business tools (Salesforce, HubSpot)
- analytics (Tableau, Power BI)

NEUTRAL:
- browsers (depends on what is accessed)
- system utilities (Finder, File Explorer)
- calendar and email
- music (can aid focus)
- general utilities

UNPRODUCTIVE:
- social media (Facebook, Twitter, Instagram, TikTok)
- entertainment (Netflix, YouTube for non-work)
- gaming (Steam, Discord for gaming)
- shopping (Amazon, eBay)

Context matters:
- role: YouTube can be productive for Marketing but not for Finance
- duration: long social media sessions weigh towards unproductive
- team norms: some teams use Discord for work

Reply with JSON only:
{"classification": "productive|neutral|unproductive", "confidence": 0.0-1.0,
 "reasoning": "short explanation", "factors": ["factor", "..."]}"""


@dataclass
class ClassificationResult:
    classification: str
    confidence: float
    reasoning: str
    factors: List[str] = field(default_factory=list)


def normalize_classification(value) -> str:
    label = str(value or "").strip().lower()
    return label if label in ("productive", "unproductive") else "neutral"


class _ModelVerdict(BaseModel):
    classification: str = "neutral"
    confidence: float = DEFAULT_CONFIDENCE
    reasoning: str = "No reasoning provided"
    factors: List[str] = []

    @field_validator("classification", mode="before")
    @classmethod
    def _label(cls, value):
        return normalize_classification(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value):
        try:
            value = float(value)
        except (TypeError, ValueError):
            return DEFAULT_CONFIDENCE
        # 0 reads as "not given"
        if not value:
            return DEFAULT_CONFIDENCE
        return min(max(value, 0.0), 1.0)

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning(cls, value):
        return str(value) if value else "No reasoning provided"

    @field_validator("factors", mode="before")
    @classmethod
    def _factors(cls, value):
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value] if isinstance(value, (list, tuple)) else []


def _unclassifiable() -> ClassificationResult:
    return ClassificationResult(
        classification="neutral",
        confidence=0.3,
        reasoning="Unable to classify automatically - requires manual review",
        factors=["parsing_error"],
    )


def build_user_prompt(analysis: AppAnalysis) -> str:
    teams = "\n".join(f"- {t}: {n} sessions" for t, n in analysis.team_distribution.items()) or "- none"
    roles = "\n".join(f"- {r}: {n} sessions" for r, n in analysis.role_distribution.items()) or "- none"
    similar = "\n".join(
        f"- {a['name']}: {a['classification']}" for a in analysis.existing_similar_apps
    ) or "None found"
    return (
        "Classify this application:\n\n"
        f"Application Name: {analysis.app_name}\n\n"
        "Usage Statistics:\n"
        f"- Total usage: {round(analysis.total_usage_minutes / 60)} hours\n"
        f"- Unique users: {analysis.unique_users}\n"
        f"- Average session: {round(analysis.avg_duration_per_session)} minutes\n\n"
        f"Team Distribution:\n{teams}\n\n"
        f"Role Distribution:\n{roles}\n\n"
        f"Similar Apps Already Classified:\n{similar}\n\n"
        "Based on this data, classify the application."
    )


def classify_app(analysis: AppAnalysis) -> ClassificationResult:
    """Raises llm.LLMError when the model cannot be reached."""
    raw = llm.chat(
        [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_user_prompt(analysis)},
        ],
        model=llm.MODEL_SMART,
        temperature=0.1,
    )

    payload = llm.extract_json(raw)
    if payload is None:
        log_event(logger, logging.WARNING, "classify_invalid_json", app=analysis.app_name, raw=(raw or "")[:200])
        return _unclassifiable()
    try:
        verdict = _ModelVerdict.model_validate(payload)
    except ValidationError as exc:
        log_event(logger, logging.WARNING, "classify_invalid_shape", app=analysis.app_name, error=str(exc)[:200])
        return _unclassifiable()

    log_event(
        logger,
        logging.INFO,
        "classify_ok",
        app=analysis.app_name,
        classification=verdict.classification,
        confidence=verdict.confidence,
    )
    return ClassificationResult(verdict.classification, verdict.confidence, verdict.reasoning, verdict.factors)


def classify_app_for_context(
    analysis: AppAnalysis,
    team_id: Optional[str] = None,
    role: Optional[str] = None,
) -> ClassificationResult:
    result = classify_app(analysis)
    if not (team_id or role):
        return result
    # widely used apps are less likely to be misjudged
    sessions = sum(analysis.team_distribution.values())
    if analysis.unique_users > 10 and sessions > 100:
        result.confidence = round(min(result.confidence + CONTEXT_BOOST, 1.0), 4)
    return result
