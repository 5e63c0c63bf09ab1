from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, JSON, Float, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import uuid

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite stores no tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_uuid() -> str:
    return str(uuid.uuid4())


def new_agent_id() -> str:
    """Public session handle. Unrelated to the internal session id."""
    return str(uuid.uuid4())


class SessionStatus:
    ACTIVE = "active"
    ENDED = "ended"
    EXPIRED = "expired"


class InteractionStatus:
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DatasetStatus:
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class AIPrompt(Base):
    """
    Versioned, encrypted system prompt.

    At most one row per session_type has is_active=True. Rows are never
    deleted, only superseded by a newer version.
    """
    __tablename__ = "ai_prompt"

    id = Column(String(36), primary_key=True, default=new_uuid)
    session_type = Column(String(50), nullable=False, index=True)  # "reference_coach" | "verification" | ...
    version = Column(Integer, nullable=False)  # Monotonic per session_type

    # iv:tag:ciphertext (hex), produced by SecretStore
    system_prompt_encrypted = Column(Text, nullable=False)
    prompt_hash = Column(String(64), nullable=False)  # SHA-256 of the plaintext, for versioning only

    model_preference = Column(String(100), nullable=False)
    model_config = Column(JSON, default=dict)  # PromptModelConfig.dict()
    notes = Column(Text, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('session_type', 'version', name='uq_ai_prompt_session_type_version'),
        Index(
            'uq_ai_prompt_one_active_per_type', 'session_type',
            unique=True,
            sqlite_where=text('is_active = 1'),
            postgresql_where=text('is_active'),
        ),
    )


class AISession(Base):
    """
    Chat session owned by a single user.

    agent_id is the only identifier that ever leaves the service.
    """
    __tablename__ = "ai_session"

    id = Column(String(36), primary_key=True, default=new_uuid)
    agent_id = Column(String(36), unique=True, nullable=False, index=True, default=new_agent_id)
    owner_id = Column(String(100), nullable=False, index=True)
    session_type = Column(String(50), nullable=False, index=True)
    prompt_id = Column(String(36), ForeignKey("ai_prompt.id"), nullable=True)  # Active prompt at session start

    status = Column(String(20), default=SessionStatus.ACTIVE, nullable=False, index=True)
    meta_data = Column(JSON, default=dict)

    # Aggregates (updated with SQL-side increments)
    interaction_count = Column(Integer, default=0, nullable=False)
    total_tokens = Column(Integer, default=0, nullable=False)
    total_cost = Column(Float, default=0.0, nullable=False)

    started_at = Column(DateTime, default=utcnow)
    last_activity_at = Column(DateTime, default=utcnow)
    idle_timeout_seconds = Column(Integer, default=1800, nullable=False)  # 30 minutes
    expires_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    termination_reason = Column(Text, nullable=True)

    interactions = relationship("AIInteraction", back_populates="session")


class AIInteraction(Base):
    """
    One exchange. Append-only.

    Never stores the plaintext system prompt: only its hash and, when
    enabled, an encrypted copy of the full hidden prompt.
    """
    __tablename__ = "ai_interaction"

    id = Column(String(36), primary_key=True, default=new_uuid)
    session_id = Column(String(36), ForeignKey("ai_session.id"), nullable=False, index=True)
    prompt_id = Column(String(36), ForeignKey("ai_prompt.id"), nullable=False, index=True)

    prompt_hash = Column(String(64), nullable=True)
    full_prompt_encrypted = Column(Text, nullable=True)

    user_input = Column(Text, nullable=False)  # Sanitized
    ai_response = Column(Text, nullable=True)  # Sanitized, never contains the system prompt

    model_used = Column(String(100), nullable=True, index=True)
    input_tokens = Column(Integer, default=0)
    output_tokens = Column(Integer, default=0)
    tokens_used = Column(Integer, default=0)
    cost = Column(Float, default=0.0)
    latency_ms = Column(Integer, default=0)
    cache_hit = Column(Boolean, default=False)

    success = Column(Boolean, default=False, index=True)
    status = Column(String(20), default=InteractionStatus.SUCCESS)
    error_message = Column(Text, nullable=True)

    flagged = Column(Boolean, default=False, index=True)
    flag_reason = Column(Text, nullable=True)
    quality_score = Column(Float, nullable=True)  # 0.0 - 1.0

    response_metadata = Column(JSON, default=dict)  # detections, streaming, cache info

    created_at = Column(DateTime, default=utcnow, index=True)

    session = relationship("AISession", back_populates="interactions")
    prompt = relationship("AIPrompt")


class AIFinetuneRecord(Base):
    """
    Curated training example, one per interaction.

    Mutated only by human review; export only appends to export_history.
    """
    __tablename__ = "ai_finetune_record"

    id = Column(String(36), primary_key=True, default=new_uuid)
    interaction_id = Column(String(36), ForeignKey("ai_interaction.id"), unique=True, nullable=False)

    quality_score = Column(Integer, nullable=True)  # 1-5
    human_feedback = Column(Text, nullable=True)
    included_in_training = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), default=DatasetStatus.PENDING_REVIEW, nullable=False, index=True)

    # {"messages": [{"role": "system"|"user"|"assistant", "content": "..."}], "metadata": {...}}
    training_data = Column(JSON, nullable=True)
    corrected_response = Column(Text, nullable=True)
    tags = Column(JSON, default=list)
    dataset_version = Column(String(20), nullable=True)  # YYYY-MM-DD batch
    evaluation_metrics = Column(JSON, nullable=True)
    original_context = Column(JSON, nullable=True)

    is_positive_example = Column(Boolean, default=False)
    is_negative_example = Column(Boolean, default=False)

    reviewed_by = Column(String(100), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)

    # [{"export_id": ..., "exported_at": ..., "export_format": ...}]
    export_history = Column(JSON, default=list)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    interaction = relationship("AIInteraction")
