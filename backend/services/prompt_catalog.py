"""
Prompt Catalog

Versioned registry of encrypted system prompts, one active version per
session type. decrypt_for() is server-side only: its result is passed to
the provider call or the training export and never to an API response.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import settings
from exceptions import PromptNotFound
from models import AIPrompt, utcnow
from services.secret_store import SecretStore

logger = logging.getLogger(__name__)

# Concurrent creates for the same session type collide on (session_type, version)
MAX_CREATE_ATTEMPTS = 3


class PromptModelConfig(BaseModel):
    """Recognised per-prompt model options. Anything else is rejected."""
    temperature: Optional[float] = Field(None, ge=0.0, le=1.0)
    max_tokens: Optional[int] = Field(None, ge=1, le=200000)
    stop_sequences: Optional[List[str]] = None

    class Config:
        extra = "forbid"

    @classmethod
    def parse(cls, raw: Optional[Dict[str, Any]]) -> "PromptModelConfig":
        """Build from a stored or submitted dict. Raises ValueError on unknown or out-of-range options."""
        try:
            return cls(**(raw or {}))
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise ValueError(f"Invalid model_config: {fields}")


class PromptCatalog:
    """
    Registry built on SecretStore.

    Activation and deactivation of siblings happen inside one transaction,
    and the partial unique index on (session_type WHERE is_active) makes a
    second concurrent activation fail instead of leaving two active rows.
    """

    def __init__(self, db: Session, secret_store: SecretStore):
        self.db = db
        self.secret_store = secret_store

    # =========================================================================
    # Reads
    # =========================================================================

    def get_active(self, session_type: str) -> AIPrompt:
        prompt = self.db.query(AIPrompt).filter(
            AIPrompt.session_type == session_type,
            AIPrompt.is_active == True
        ).order_by(AIPrompt.version.desc()).first()

        if not prompt:
            raise PromptNotFound(session_type=session_type)
        return prompt

    def get(self, prompt_id: str) -> AIPrompt:
        prompt = self.db.query(AIPrompt).filter(AIPrompt.id == prompt_id).first()
        if not prompt:
            raise PromptNotFound(prompt_id=prompt_id)
        return prompt

    def list_prompts(self, session_type: Optional[str] = None) -> List[AIPrompt]:
        query = self.db.query(AIPrompt)
        if session_type:
            query = query.filter(AIPrompt.session_type == session_type)
        return query.order_by(AIPrompt.session_type.asc(), AIPrompt.version.desc()).all()

    def decrypt_for(self, prompt_id: str) -> str:
        """Plaintext system prompt. Privileged: orchestrator and curator only."""
        prompt = self.get(prompt_id)
        return self.secret_store.decrypt(prompt.system_prompt_encrypted)

    def model_config_for(self, prompt: AIPrompt) -> PromptModelConfig:
        return PromptModelConfig.parse(prompt.model_config)

    @staticmethod
    def describe(prompt: AIPrompt) -> Dict[str, Any]:
        """Admin view of a prompt. Carries neither ciphertext nor plaintext."""
        return {
            "id": prompt.id,
            "session_type": prompt.session_type,
            "version": prompt.version,
            "prompt_hash": prompt.prompt_hash,
            "model_preference": prompt.model_preference,
            "model_config": prompt.model_config or {},
            "notes": prompt.notes,
            "is_active": prompt.is_active,
            "created_by": prompt.created_by,
            "created_at": prompt.created_at.isoformat() if prompt.created_at else None,
            "updated_at": prompt.updated_at.isoformat() if prompt.updated_at else None,
        }

    # =========================================================================
    # Writes
    # =========================================================================

    def create(
        self,
        session_type: str,
        system_prompt: str,
        model_preference: Optional[str] = None,
        model_config: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> AIPrompt:
        """
        Create the next version for session_type and make it the only active one.

        version = max(existing) + 1. Prior versions are deactivated in the
        same commit as the insert.
        """
        if not session_type or not session_type.strip():
            raise ValueError("session_type is required")
        if not system_prompt or not system_prompt.strip():
            raise ValueError("system_prompt cannot be empty")

        config = PromptModelConfig.parse(model_config)
        encrypted = self.secret_store.encrypt(system_prompt)
        prompt_hash = SecretStore.fingerprint(system_prompt)

        last_error = None
        for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
            try:
                current = self.db.query(func.max(AIPrompt.version)).filter(
                    AIPrompt.session_type == session_type
                ).scalar()
                next_version = (current or 0) + 1

                self._deactivate_siblings(session_type)

                prompt = AIPrompt(
                    session_type=session_type,
                    version=next_version,
                    system_prompt_encrypted=encrypted,
                    prompt_hash=prompt_hash,
                    model_preference=model_preference or settings.DEFAULT_MODEL,
                    model_config=config.model_dump(exclude_none=True),
                    notes=notes,
                    is_active=True,
                    created_by=created_by,
                )
                self.db.add(prompt)
                self.db.commit()
                self.db.refresh(prompt)

                logger.info(f"Created new prompt for {session_type}, version {next_version}")
                return prompt
            except IntegrityError as e:
                self.db.rollback()
                last_error = e
                logger.warning(
                    f"Concurrent prompt creation for {session_type} (attempt {attempt}/{MAX_CREATE_ATTEMPTS})"
                )

        raise last_error

    def update(self, prompt_id: str, patch: Dict[str, Any]) -> AIPrompt:
        """
        Apply an admin patch.

        Recognised keys: system_prompt, model_preference, model_config,
        is_active, notes. Activating a prompt deactivates its siblings in
        the same commit.
        """
        prompt = self.get(prompt_id)

        if patch.get("system_prompt") is not None and not patch["system_prompt"].strip():
            raise ValueError("system_prompt cannot be empty")

        try:
            if patch.get("system_prompt"):
                prompt.system_prompt_encrypted = self.secret_store.encrypt(patch["system_prompt"])
                prompt.prompt_hash = SecretStore.fingerprint(patch["system_prompt"])

            if patch.get("model_preference"):
                prompt.model_preference = patch["model_preference"]

            if patch.get("model_config") is not None:
                prompt.model_config = PromptModelConfig.parse(patch["model_config"]).model_dump(exclude_none=True)

            if patch.get("is_active") is not None:
                if patch["is_active"]:
                    self._deactivate_siblings(prompt.session_type, exclude_id=prompt.id)
                prompt.is_active = bool(patch["is_active"])

            if patch.get("notes") is not None:
                prompt.notes = patch["notes"]

            prompt.updated_at = utcnow()
            self.db.commit()
            self.db.refresh(prompt)
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Updated prompt {prompt_id}")
        return prompt

    def _deactivate_siblings(self, session_type: str, exclude_id: Optional[str] = None):
        query = self.db.query(AIPrompt).filter(
            AIPrompt.session_type == session_type,
            AIPrompt.is_active == True
        )
        if exclude_id:
            query = query.filter(AIPrompt.id != exclude_id)
        # Flush the deactivation before the new active row is inserted
        query.update({AIPrompt.is_active: False}, synchronize_session="fetch")
        self.db.flush()
