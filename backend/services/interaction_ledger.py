"""
Interaction Ledger

Durable, sanitized record of every exchange.

- User input is stripped of template markers ({system}, {prompt},
  {instruction}, chat-template tokens) before storage.
- Raw user input is checked against prompt-injection heuristics; any match
  flags the interaction. Output-side detections from SafetyFilter are
  added to the same flag reason.
- The system prompt is never stored in plaintext: only its SHA-256 hash
  and, when enabled, an encrypted copy of the full hidden prompt.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from analytics.model_pricing import calculate_cost
from exceptions import InteractionNotFound
from models import AIInteraction, InteractionStatus
from services.safety_filter import SecurityDetection
from services.secret_store import SecretStore

logger = logging.getLogger(__name__)

FINE_TUNE_MIN_QUALITY = 0.7

# Raw-input heuristics for prompt injection / extraction attempts
INJECTION_PATTERNS = {
    "ignore_instructions": re.compile(r"ignore.*previous.*instructions", re.IGNORECASE | re.DOTALL),
    "forget_system_prompt": re.compile(r"forget.*system.*prompt", re.IGNORECASE | re.DOTALL),
    "reveal_prompt": re.compile(r"reveal.*prompt", re.IGNORECASE | re.DOTALL),
    "ask_instructions": re.compile(r"what.*are.*your.*instructions", re.IGNORECASE | re.DOTALL),
    "show_system_message": re.compile(r"show.*me.*system.*message", re.IGNORECASE | re.DOTALL),
}

_TEMPLATE_MARKERS = re.compile(
    r"\{(?:system|prompt|instruction|assistant)\}|<\|(?:system|im_start|im_end)\|>", re.IGNORECASE
)


def sanitize_input(text: str) -> str:
    return _TEMPLATE_MARKERS.sub("", text or "").strip()


def detect_injection(text: str) -> List[str]:
    """Names of the injection heuristics that match the raw input."""
    if not text:
        return []
    return [name for name, pattern in INJECTION_PATTERNS.items() if pattern.search(text)]


def is_eligible_for_fine_tuning(interaction: AIInteraction) -> bool:
    """Successful, rated >= 0.7, not flagged, and with a non-empty response."""
    return bool(
        interaction.success
        and interaction.quality_score is not None
        and interaction.quality_score >= FINE_TUNE_MIN_QUALITY
        and not interaction.flagged
        and interaction.ai_response
        and interaction.ai_response.strip()
    )


@dataclass
class InteractionEntry:
    """Everything the orchestrator knows about one exchange."""
    session_id: str
    prompt_id: str
    user_input: str
    ai_response: str = ""
    model_used: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost: Optional[float] = None  # None: priced from MODEL_PRICING
    latency_ms: int = 0
    success: bool = True
    status: str = InteractionStatus.SUCCESS
    error_message: Optional[str] = None
    cache_hit: bool = False
    prompt_hash: Optional[str] = None
    full_prompt: Optional[str] = None  # Encrypted before storage, or dropped
    detections: List[SecurityDetection] = field(default_factory=list)
    flag_reasons: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HistoryMessage:
    """
    One entry of a client-visible transcript.

    Only user and assistant roles can be constructed.
    """
    role: Literal["user", "assistant"]
    content: str
    timestamp: Optional[datetime]

    def __post_init__(self):
        if self.role not in ("user", "assistant"):
            raise ValueError(f"History cannot contain role: {self.role}")

    @classmethod
    def user(cls, content: str, timestamp: Optional[datetime]) -> "HistoryMessage":
        return cls("user", content, timestamp)

    @classmethod
    def assistant(cls, content: str, timestamp: Optional[datetime]) -> "HistoryMessage":
        return cls("assistant", content, timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class InteractionLedger:
    """Append-only interaction log with auto-flagging and cost accounting."""

    def __init__(self, db: Session, secret_store: Optional[SecretStore] = None, store_full_prompt: bool = False):
        self.db = db
        self.secret_store = secret_store
        self.store_full_prompt = store_full_prompt and secret_store is not None

    def log(self, entry: InteractionEntry) -> AIInteraction:
        reasons = []

        injection = detect_injection(entry.user_input)
        if injection:
            reasons.append(f"possible prompt injection ({', '.join(injection)})")
            logger.warning(f"Prompt injection heuristics matched for session {entry.session_id}: {injection}")

        for detection in entry.detections:
            reasons.append(f"{detection.kind}: {detection.detail}")
        reasons.extend(entry.flag_reasons)

        input_tokens = max(entry.input_tokens or 0, 0)
        output_tokens = max(entry.output_tokens or 0, 0)
        cost = entry.cost if entry.cost is not None else calculate_cost(entry.model_used, input_tokens, output_tokens)

        full_prompt_encrypted = None
        if self.store_full_prompt and entry.full_prompt:
            full_prompt_encrypted = self.secret_store.encrypt(entry.full_prompt)

        metadata = dict(entry.metadata)
        if entry.detections:
            metadata["detections"] = [{"kind": d.kind, "detail": d.detail} for d in entry.detections]

        interaction = AIInteraction(
            session_id=entry.session_id,
            prompt_id=entry.prompt_id,
            prompt_hash=entry.prompt_hash,
            full_prompt_encrypted=full_prompt_encrypted,
            user_input=sanitize_input(entry.user_input),
            ai_response=(entry.ai_response or "").strip(),
            model_used=entry.model_used,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            tokens_used=input_tokens + output_tokens,
            cost=cost,
            latency_ms=entry.latency_ms,
            cache_hit=entry.cache_hit,
            success=entry.success,
            status=entry.status,
            error_message=entry.error_message,
            flagged=bool(reasons),
            flag_reason="; ".join(reasons) if reasons else None,
            response_metadata=metadata,
        )

        try:
            self.db.add(interaction)
            self.db.commit()
            self.db.refresh(interaction)
        except Exception:
            self.db.rollback()
            raise

        logger.debug(
            f"Logged interaction for session {entry.session_id}: "
            f"{interaction.tokens_used} tokens, status={interaction.status}, flagged={interaction.flagged}"
        )
        return interaction

    def get(self, interaction_id: str) -> AIInteraction:
        interaction = self.db.query(AIInteraction).filter(AIInteraction.id == interaction_id).first()
        if not interaction:
            raise InteractionNotFound(interaction_id)
        return interaction

    def history(self, session_id: str, limit: int = 50) -> List[HistoryMessage]:
        """
        Latest `limit` exchanges of a session, oldest first.

        Failed exchanges are left out; an exchange without a response
        contributes only its user message.
        """
        rows = self.db.query(AIInteraction).filter(
            AIInteraction.session_id == session_id,
            AIInteraction.status != InteractionStatus.FAILED
        ).order_by(AIInteraction.created_at.desc()).limit(max(limit, 0)).all()

        messages: List[HistoryMessage] = []
        for interaction in reversed(rows):
            messages.append(HistoryMessage.user(interaction.user_input, interaction.created_at))
            if interaction.ai_response:
                messages.append(HistoryMessage.assistant(interaction.ai_response, interaction.created_at))
        return messages

    def stats(self, session_id: str) -> Dict[str, Any]:
        row = self.db.query(
            func.count(AIInteraction.id),
            func.coalesce(func.sum(AIInteraction.tokens_used), 0),
            func.coalesce(func.sum(AIInteraction.cost), 0.0),
            func.coalesce(func.avg(AIInteraction.latency_ms), 0.0),
        ).filter(AIInteraction.session_id == session_id).one()

        flagged = self.db.query(func.count(AIInteraction.id)).filter(
            AIInteraction.session_id == session_id,
            AIInteraction.flagged == True
        ).scalar()
        failed = self.db.query(func.count(AIInteraction.id)).filter(
            AIInteraction.session_id == session_id,
            AIInteraction.success == False
        ).scalar()

        return {
            "total_interactions": row[0],
            "total_tokens": int(row[1]),
            "total_cost": round(float(row[2]), 6),
            "average_latency": round(float(row[3]), 2),
            "flagged_count": flagged,
            "failed_count": failed,
        }

    def flag_interaction(self, interaction_id: str, reason: str) -> AIInteraction:
        interaction = self.get(interaction_id)
        interaction.flagged = True
        interaction.flag_reason = f"{interaction.flag_reason}; {reason}" if interaction.flag_reason else reason
        self.db.commit()
        logger.info(f"Flagged interaction {interaction_id}: {reason}")
        return interaction

    def rate_interaction(self, interaction_id: str, quality_score: float) -> AIInteraction:
        """Attach a 0.0-1.0 quality score (used by fine-tune eligibility)."""
        if quality_score is None or not 0.0 <= quality_score <= 1.0:
            raise ValueError("quality_score must be between 0.0 and 1.0")
        interaction = self.get(interaction_id)
        interaction.quality_score = quality_score
        self.db.commit()
        return interaction

    def decrypt_full_prompt(self, interaction: AIInteraction) -> Optional[str]:
        """Stored hidden prompt, for the training export only."""
        if not interaction.full_prompt_encrypted or self.secret_store is None:
            return None
        return self.secret_store.decrypt(interaction.full_prompt_encrypted)
