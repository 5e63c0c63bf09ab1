"""
Safety Filter: Output Validation and Sanitization

Applied to every provider response before it leaves the core:

1. Structured parsing: strip markdown fences, extract the first balanced
   JSON object, validate against a per-task schema (pydantic).
2. Sanitization: script/iframe tags and control characters removed, text
   truncated, arrays capped at 50 items.
3. Advisory detectors: data exfiltration (long base64/hex runs, links to
   unexpected domains), PII (SSN, credit card, email, phone) and system
   prompt leaks. Detectors never raise; they only produce flags that the
   interaction ledger records.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Type, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from exceptions import ValidationFailure

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 5000
MAX_ARRAY_ITEMS = 50
LEAK_WINDOW = 100


@dataclass
class ValidationResult:
    """Outcome of parse_structured(). Callers must not use data unless valid."""
    valid: bool
    data: Optional[Any] = None
    errors: List[str] = field(default_factory=list)
    sanitized: bool = False

    def raise_for_errors(self):
        if not self.valid:
            raise ValidationFailure(self.errors)
        return self.data


@dataclass
class SecurityDetection:
    """Non-fatal finding. The response is still returned, marked for review."""
    kind: str  # "exfiltration" | "pii" | "system_prompt_leak"
    detail: str


@dataclass
class PIIReport:
    detected: bool
    types: List[str] = field(default_factory=list)


@dataclass
class SafetyReport:
    detections: List[SecurityDetection] = field(default_factory=list)

    @property
    def flagged(self) -> bool:
        return bool(self.detections)

    @property
    def reason(self) -> Optional[str]:
        if not self.detections:
            return None
        return "; ".join(f"{d.kind}: {d.detail}" for d in self.detections)

    def as_metadata(self) -> List[Dict[str, str]]:
        return [{"kind": d.kind, "detail": d.detail} for d in self.detections]


# --- Sanitization patterns ---

_SCRIPT_TAG = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_IFRAME_TAG = re.compile(r"<iframe\b[^<]*(?:(?!</iframe>)<[^<]*)*</iframe>", re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

_CODE_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_CODE_FENCE_CLOSE = re.compile(r"\s*```$")

# --- Detector patterns ---

_URL = re.compile(r"https?://([a-z0-9.-]+)", re.IGNORECASE)
_BASE64_RUN = re.compile(r"[A-Za-z0-9+/]{200,}={0,2}")
_HEX_RUN = re.compile(r"[0-9a-f]{200,}", re.IGNORECASE)

PII_PATTERNS = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "credit_card": re.compile(r"\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"\b\d{3}[-.]\d{3}[-.]\d{4}\b"),
}


def sanitize_text(text: Any, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Strip script/iframe tags and control characters, truncate, trim. Non-strings become ''."""
    if not isinstance(text, str):
        return ""
    cleaned = _SCRIPT_TAG.sub("", text)
    cleaned = _IFRAME_TAG.sub("", cleaned)
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    return cleaned[:max_length].strip()


def sanitize_array(items: Any, max_items: int = MAX_ARRAY_ITEMS) -> List[str]:
    """Keep string items only, sanitized and non-empty, at most max_items."""
    if not isinstance(items, list):
        return []
    cleaned = [sanitize_text(item) for item in items if isinstance(item, str)]
    return [item for item in cleaned if item][:max_items]


def extract_json_object(text: str) -> Optional[str]:
    """
    Return the first balanced {...} block in text, or None.

    Braces inside JSON strings are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        # Unbalanced from this brace, try the next one
        start = text.find("{", start + 1)
    return None


# =============================================================================
# Task schemas
# =============================================================================

Confidence = Literal["low", "medium", "high"]


class _Schema(BaseModel):
    class Config:
        populate_by_name = True


class RCSBreakdown(_Schema):
    content_quality: float = Field(alias="contentQuality", ge=0, le=30)
    authenticity: float = Field(ge=0, le=25)
    completeness: float = Field(ge=0, le=20)
    verifiability: float = Field(ge=0, le=15)
    presentation: float = Field(ge=0, le=10)

    def total(self) -> float:
        return (self.content_quality + self.authenticity + self.completeness
                + self.verifiability + self.presentation)


class RCSResponse(_Schema):
    """Reference Credibility Score: five sub-scores that add up to rcsScore (±1)."""
    rcs_score: float = Field(alias="rcsScore", ge=0, le=100)
    confidence: Confidence
    breakdown: RCSBreakdown
    strengths: List[Any]
    weaknesses: List[Any]
    recommendations: List[Any]
    red_flags: List[Any] = Field(alias="redFlags")

    @model_validator(mode="after")
    def breakdown_matches_total(self):
        if abs(self.breakdown.total() - self.rcs_score) > 1:
            raise ValueError("breakdown scores must sum to approximately rcsScore")
        return self

    def sanitized(self) -> Dict[str, Any]:
        b = self.breakdown
        return {
            "rcsScore": round(self.rcs_score, 2),
            "confidence": self.confidence,
            "breakdown": {
                "contentQuality": round(b.content_quality, 2),
                "authenticity": round(b.authenticity, 2),
                "completeness": round(b.completeness, 2),
                "verifiability": round(b.verifiability, 2),
                "presentation": round(b.presentation, 2),
            },
            "strengths": sanitize_array(self.strengths),
            "weaknesses": sanitize_array(self.weaknesses),
            "recommendations": sanitize_array(self.recommendations),
            "redFlags": sanitize_array(self.red_flags),
        }


class AuthenticityResponse(_Schema):
    authenticity_score: float = Field(alias="authenticityScore", ge=0, le=100)
    deepfake_probability: float = Field(alias="deepfakeProbability", ge=0, le=100)
    confidence: Confidence
    indicators: Dict[str, float]
    findings: List[Any]
    recommended_actions: List[Any] = Field(alias="recommendedActions")

    @field_validator("indicators")
    @classmethod
    def indicators_in_range(cls, value: Dict[str, float]) -> Dict[str, float]:
        out_of_range = [k for k, v in value.items() if v < 0 or v > 100]
        if out_of_range:
            raise ValueError(f"indicators {', '.join(out_of_range)} must be between 0 and 100")
        return value

    def sanitized(self) -> Dict[str, Any]:
        return {
            "authenticityScore": round(self.authenticity_score, 2),
            "deepfakeProbability": round(self.deepfake_probability, 2),
            "confidence": self.confidence,
            "indicators": dict(self.indicators),
            "findings": sanitize_array(self.findings),
            "recommendedActions": sanitize_array(self.recommended_actions),
        }


class GeneratedQuestion(_Schema):
    id: int
    category: Literal["technical", "behavioral", "collaboration", "leadership", "problem-solving"]
    question: str = Field(min_length=10)
    rationale: str = Field(min_length=10)


class QuestionsResponse(_Schema):
    questions: List[GeneratedQuestion] = Field(min_length=3, max_length=15)
    recommended_question_count: float = Field(alias="recommendedQuestionCount")
    estimated_response_time: float = Field(alias="estimatedResponseTime")

    def sanitized(self) -> Dict[str, Any]:
        return {
            "questions": [
                {
                    "id": q.id,
                    "category": q.category,
                    "question": sanitize_text(q.question),
                    "rationale": sanitize_text(q.rationale),
                }
                for q in self.questions
            ],
            "recommendedQuestionCount": self.recommended_question_count,
            "estimatedResponseTime": self.estimated_response_time,
        }


TASK_SCHEMAS: Dict[str, Type[BaseModel]] = {
    "rcs": RCSResponse,
    "authenticity": AuthenticityResponse,
    "questions": QuestionsResponse,
}


def _format_errors(error: ValidationError) -> List[str]:
    messages = []
    for err in error.errors():
        location = ".".join(str(part) for part in err["loc"])
        message = err["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        messages.append(f"{location}: {message}" if location else message)
    return messages


Validator = Union[str, Type[BaseModel], Callable[[Any], ValidationResult], None]


class SafetyFilter:
    """
    Output validation and advisory detection.

    Usage:
        >>> safety = SafetyFilter(allowed_domains=["example.com"])
        >>> result = safety.parse_structured(raw, "rcs")
        >>> if result.valid: use(result.data)
    """

    def __init__(self, allowed_domains: Optional[Iterable[str]] = None, max_text_length: int = MAX_TEXT_LENGTH):
        self.allowed_domains = [d.lower().lstrip(".") for d in (allowed_domains or []) if d]
        self.max_text_length = max_text_length
        self.logger = logging.getLogger(__name__)

    # =========================================================================
    # Structured parsing
    # =========================================================================

    def parse_structured(self, content: str, validator: Validator = None) -> ValidationResult:
        """
        Parse model output as JSON and validate it.

        validator may be a task name ("rcs", "authenticity", "questions"),
        a pydantic model class, or a callable returning ValidationResult.
        """
        if not isinstance(content, str) or not content.strip():
            return ValidationResult(valid=False, errors=["Response is empty"])

        cleaned = _CODE_FENCE_OPEN.sub("", content.strip())
        cleaned = _CODE_FENCE_CLOSE.sub("", cleaned)
        candidate = extract_json_object(cleaned) or cleaned

        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as e:
            self.logger.error(f"JSON parsing failed: {e.msg} at position {e.pos}")
            return ValidationResult(valid=False, errors=[f"Failed to parse JSON: {e.msg}"])

        if validator is None:
            return ValidationResult(valid=True, data=parsed)

        if isinstance(validator, str):
            schema = TASK_SCHEMAS.get(validator)
            if schema is None:
                raise ValueError(f"Unknown validation task: {validator}")
            return self._validate_model(schema, parsed)

        if isinstance(validator, type) and issubclass(validator, BaseModel):
            return self._validate_model(validator, parsed)

        return validator(parsed)

    def _validate_model(self, schema: Type[BaseModel], parsed: Any) -> ValidationResult:
        if not isinstance(parsed, dict):
            return ValidationResult(valid=False, errors=["Response must be a JSON object"])
        try:
            model = schema.model_validate(parsed)
        except ValidationError as e:
            errors = _format_errors(e)
            self.logger.warning(f"{schema.__name__} validation failed: {len(errors)} error(s)")
            return ValidationResult(valid=False, errors=errors)

        if hasattr(model, "sanitized"):
            return ValidationResult(valid=True, data=model.sanitized(), sanitized=True)
        return ValidationResult(valid=True, data=model.model_dump(by_alias=True))

    # =========================================================================
    # Sanitization
    # =========================================================================

    def sanitize_text(self, text: Any, max_length: Optional[int] = None) -> str:
        return sanitize_text(text, max_length or self.max_text_length)

    def sanitize_array(self, items: Any) -> List[str]:
        return sanitize_array(items)

    # =========================================================================
    # Detectors (advisory)
    # =========================================================================

    def _is_allowed_host(self, host: str) -> bool:
        host = host.lower().rstrip(".")
        return any(host == d or host.endswith("." + d) for d in self.allowed_domains)

    def exfiltration_signals(self, content: str) -> List[str]:
        if not content:
            return []
        signals = []
        external = sorted({m.group(1).lower() for m in _URL.finditer(content) if not self._is_allowed_host(m.group(1))})
        if external:
            signals.append(f"external link to {', '.join(external[:5])}")
        if _BASE64_RUN.search(content):
            signals.append("long base64 run")
        if _HEX_RUN.search(content):
            signals.append("long hex run")
        return signals

    def detect_exfiltration(self, content: str) -> bool:
        signals = self.exfiltration_signals(content)
        if signals:
            self.logger.warning(f"Potential data exfiltration detected in AI output: {'; '.join(signals)}")
        return bool(signals)

    def detect_pii(self, content: str) -> PIIReport:
        if not content:
            return PIIReport(detected=False)
        types = [name for name, pattern in PII_PATTERNS.items() if pattern.search(content)]
        if types:
            self.logger.warning(f"PII detected in AI output: {', '.join(types)}")
        return PIIReport(detected=bool(types), types=types)

    def detect_prompt_leak(self, content: str, secret: Optional[str], window: int = LEAK_WINDOW) -> bool:
        """
        True if content contains any window-length substring of secret
        (or the whole secret when it is shorter). Case-insensitive.
        """
        if not content or not secret:
            return False

        haystack = content.lower()
        needle = secret.lower()

        if len(needle) <= window:
            return needle in haystack
        if len(haystack) < window:
            return False

        windows = {needle[i:i + window] for i in range(len(needle) - window + 1)}
        return any(haystack[i:i + window] in windows for i in range(len(haystack) - window + 1))

    def inspect(self, content: str) -> SafetyReport:
        """Run every output-side detector. Never raises."""
        report = SafetyReport()
        for signal in self.exfiltration_signals(content):
            report.detections.append(SecurityDetection(kind="exfiltration", detail=signal))
        pii = self.detect_pii(content)
        if pii.detected:
            report.detections.append(SecurityDetection(kind="pii", detail=", ".join(pii.types)))
        if report.flagged:
            self.logger.warning(f"AI output flagged for review: {len(report.detections)} detection(s)")
        return report
