"""
Dataset Curator

Turns the interaction ledger into a reviewed fine-tuning dataset:

1. prepare()  - eligible interactions without a record get a pending-review
                record whose training_data embeds the decrypted system prompt
2. review()   - a human rates the record, optionally corrects the answer
3. export()   - approved records are written as JSONL in one of three
                formats, with a sidecar *_metadata.json

The decrypted prompt only ever lives in training_data and in export files.
Read views (pending_reviews) drop the system message.
"""

import glob
import json
import logging
import os
import time
import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

import settings
from exceptions import DatasetEntryNotFound, NoQualifyingData
from models import AIFinetuneRecord, AIInteraction, AISession, DatasetStatus, utcnow
from services.chat_orchestrator import recover_system_prompt
from services.interaction_ledger import FINE_TUNE_MIN_QUALITY, InteractionLedger, is_eligible_for_fine_tuning
from services.prompt_catalog import PromptCatalog
from services.secret_store import SecretStore

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("openai", "anthropic", "jsonl")

# Weights of the composite score computed from evaluation_metrics
METRIC_WEIGHTS = {
    "relevance_score": 0.25,
    "accuracy_score": 0.25,
    "helpfulness_score": 0.2,
    "safety_score": 0.1,
    "coherence_score": 0.1,
    "completeness_score": 0.1,
}

QUALITY_BUCKETS = {
    5: "excellent",
    4: "good",
    3: "acceptable",
    2: "poor",
    1: "unacceptable",
}


class PrepareCriteria(BaseModel):
    session_type: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_tokens: Optional[int] = Field(None, ge=0)


class ExportOptions(BaseModel):
    format: Literal["openai", "anthropic", "jsonl"] = "openai"
    min_quality_score: Optional[int] = Field(None, ge=1, le=5)
    include_negative_examples: bool = False
    dataset_version: Optional[str] = None
    session_types: Optional[List[str]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_examples: Optional[int] = Field(None, ge=1)


def composite_score(record: AIFinetuneRecord) -> float:
    """Weighted mean of the evaluation metrics (0..1), or the raw rating when unset."""
    metrics = record.evaluation_metrics
    if not metrics:
        return float(record.quality_score or 0)

    total = 0.0
    weight = 0.0
    for name, w in METRIC_WEIGHTS.items():
        if metrics.get(name) is not None:
            total += metrics[name] * w
            weight += w
    return total / weight if weight else 0.0


def default_metrics(rating: int) -> Dict[str, float]:
    score = rating / 5
    return {
        "relevance_score": score,
        "accuracy_score": score,
        "helpfulness_score": score,
        "safety_score": 1.0,
        "coherence_score": score,
        "completeness_score": score,
    }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================================
# Format adapters
# ============================================================================

def _record_metadata(record: AIFinetuneRecord) -> Dict[str, Any]:
    return {
        "quality_score": record.quality_score,
        "dataset_version": record.dataset_version,
        "tags": record.tags or [],
        **((record.training_data or {}).get("metadata") or {}),
    }


def format_openai(record: AIFinetuneRecord) -> Dict[str, Any]:
    return {
        "messages": record.training_data["messages"],
        "metadata": _record_metadata(record),
    }


def format_anthropic(record: AIFinetuneRecord) -> Dict[str, Any]:
    # Human/Assistant transcript; the system turn is not part of it
    conversation = [
        {"role": "Human" if m["role"] == "user" else "Assistant", "content": m["content"]}
        for m in record.training_data["messages"]
        if m["role"] != "system"
    ]
    return {
        "conversation": conversation,
        "metadata": _record_metadata(record),
    }


def format_jsonl(record: AIFinetuneRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "interaction_id": record.interaction_id,
        "messages": record.training_data["messages"],
        "quality_score": record.quality_score,
        "tags": record.tags or [],
        "dataset_version": record.dataset_version,
        "metadata": {
            **((record.training_data or {}).get("metadata") or {}),
            "reviewed_at": _iso(record.reviewed_at),
            "is_corrected": bool(record.corrected_response),
        },
    }


FORMATTERS = {
    "openai": format_openai,
    "anthropic": format_anthropic,
    "jsonl": format_jsonl,
}


class DatasetCurator:
    """Builds and exports the fine-tuning dataset. Runs off the request path."""

    def __init__(self, db: Session, catalog: PromptCatalog, export_dir: Optional[str] = None):
        self.db = db
        self.catalog = catalog
        self.ledger = InteractionLedger(db, catalog.secret_store)
        self.export_dir = export_dir or settings.FINETUNE_EXPORT_DIR

    # =========================================================================
    # Curation
    # =========================================================================

    def prepare(self, criteria: Optional[PrepareCriteria] = None) -> int:
        """
        Create pending-review records for eligible interactions that have none.

        Returns the number of records created. A prompt that fails to
        decrypt aborts the whole batch. Interactions answered with an
        earlier text of an edited prompt are skipped unless that text can
        be recovered from their stored full prompt.
        """
        criteria = criteria or PrepareCriteria()

        query = self.db.query(AIInteraction, AISession).join(
            AISession, AIInteraction.session_id == AISession.id
        ).outerjoin(
            AIFinetuneRecord, AIFinetuneRecord.interaction_id == AIInteraction.id
        ).filter(
            AIFinetuneRecord.id.is_(None),
            AIInteraction.success == True,
            AIInteraction.flagged == False,
            AIInteraction.quality_score >= FINE_TUNE_MIN_QUALITY,
        )

        if criteria.session_type:
            query = query.filter(AISession.session_type == criteria.session_type)
        if criteria.start_date:
            query = query.filter(AIInteraction.created_at >= criteria.start_date)
        if criteria.end_date:
            query = query.filter(AIInteraction.created_at <= criteria.end_date)
        if criteria.min_tokens:
            query = query.filter(AIInteraction.tokens_used >= criteria.min_tokens)

        rows = query.order_by(AIInteraction.created_at.asc()).all()

        dataset_version = utcnow().strftime("%Y-%m-%d")
        prompts: Dict[str, Tuple[str, str]] = {}
        created = 0
        skipped = 0

        try:
            for interaction, session in rows:
                if not is_eligible_for_fine_tuning(interaction):
                    continue

                system_prompt = self._system_prompt_for(interaction, prompts)
                if system_prompt is None:
                    skipped += 1
                    continue

                self.db.add(AIFinetuneRecord(
                    interaction_id=interaction.id,
                    status=DatasetStatus.PENDING_REVIEW,
                    included_in_training=False,
                    dataset_version=dataset_version,
                    tags=[],
                    export_history=[],
                    training_data={
                        "messages": [
                            {"role": "system", "content": system_prompt},
                            {"role": "user", "content": interaction.user_input},
                            {"role": "assistant", "content": interaction.ai_response},
                        ],
                        "metadata": {
                            "model": interaction.model_used,
                            "tokens": interaction.tokens_used,
                            "session_type": session.session_type,
                        },
                    },
                    original_context={
                        "session_type": session.session_type,
                        "interaction_number": self._interaction_number(interaction),
                    },
                ))
                created += 1

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        finally:
            prompts.clear()

        if skipped:
            logger.warning(f"Skipped {skipped} interactions whose prompt version could not be recovered")
        logger.info(f"Prepared {created} dataset entries (version {dataset_version})")
        return created

    def _system_prompt_for(self, interaction: AIInteraction, prompts: Dict[str, Tuple[str, str]]) -> Optional[str]:
        """
        The system prompt the interaction was actually answered with.

        The prompt row is re-encrypted in place on edit, so its current text
        is only used when its fingerprint still equals the interaction's
        prompt_hash. Otherwise the system part is recovered from the stored
        full prompt, or None when there is none.
        """
        if interaction.prompt_id not in prompts:
            current = self.catalog.decrypt_for(interaction.prompt_id)
            prompts[interaction.prompt_id] = (current, SecretStore.fingerprint(current))
        current, current_hash = prompts[interaction.prompt_id]

        if not interaction.prompt_hash or interaction.prompt_hash == current_hash:
            return current

        recovered = recover_system_prompt(self.ledger.decrypt_full_prompt(interaction), interaction.prompt_hash)
        if recovered is None:
            logger.warning(f"Prompt for interaction {interaction.id} was edited since it was answered, skipping")
        return recovered

    def _interaction_number(self, interaction: AIInteraction) -> int:
        return self.db.query(func.count(AIInteraction.id)).filter(
            AIInteraction.session_id == interaction.session_id,
            AIInteraction.created_at <= interaction.created_at
        ).scalar()

    def get(self, entry_id: str) -> AIFinetuneRecord:
        record = self.db.query(AIFinetuneRecord).filter(AIFinetuneRecord.id == entry_id).first()
        if not record:
            raise DatasetEntryNotFound(entry_id)
        return record

    def review(
        self,
        entry_id: str,
        rating: int,
        feedback: Optional[str],
        include: bool,
        corrected_response: Optional[str] = None,
        reviewer: Optional[str] = None,
        tags: Optional[List[str]] = None,
        evaluation_metrics: Optional[Dict[str, float]] = None,
    ) -> AIFinetuneRecord:
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValueError("rating must be an integer between 1 and 5")

        record = self.get(entry_id)

        record.quality_score = rating
        record.human_feedback = feedback
        record.included_in_training = bool(include)
        record.status = DatasetStatus.APPROVED if include else DatasetStatus.REJECTED
        record.reviewed_by = reviewer
        record.reviewed_at = utcnow()
        record.is_positive_example = rating >= 4
        record.is_negative_example = rating <= 2

        if corrected_response:
            record.corrected_response = corrected_response
            if record.training_data:
                # Reassign so the JSON column is marked dirty
                training_data = dict(record.training_data)
                training_data["messages"] = [
                    {**m, "content": corrected_response} if m["role"] == "assistant" else m
                    for m in training_data["messages"]
                ]
                record.training_data = training_data

        if tags is not None:
            record.tags = list(tags)

        metrics = default_metrics(rating)
        if evaluation_metrics:
            metrics.update({k: v for k, v in evaluation_metrics.items() if k in METRIC_WEIGHTS})
        record.evaluation_metrics = metrics

        self.db.commit()
        logger.info(f"Reviewed dataset entry {entry_id}: score={rating}, included={record.included_in_training}")
        return record

    def pending_reviews(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Records awaiting review, oldest first, without the system message."""
        records = self.db.query(AIFinetuneRecord).filter(
            AIFinetuneRecord.status == DatasetStatus.PENDING_REVIEW
        ).order_by(AIFinetuneRecord.created_at.asc()).limit(limit).all()

        views = []
        for record in records:
            messages = (record.training_data or {}).get("messages") or []
            views.append({
                "id": record.id,
                "interaction_id": record.interaction_id,
                "dataset_version": record.dataset_version,
                "session_type": (record.original_context or {}).get("session_type"),
                "messages": [m for m in messages if m["role"] in ("user", "assistant")],
                "created_at": _iso(record.created_at),
            })
        return views

    # =========================================================================
    # Export
    # =========================================================================

    def _query_dataset(self, options: ExportOptions) -> List[AIFinetuneRecord]:
        query = self.db.query(AIFinetuneRecord).filter(
            AIFinetuneRecord.included_in_training == True,
            AIFinetuneRecord.status == DatasetStatus.APPROVED,
        )

        if options.min_quality_score:
            query = query.filter(AIFinetuneRecord.quality_score >= options.min_quality_score)
        if not options.include_negative_examples:
            query = query.filter(AIFinetuneRecord.is_negative_example == False)
        if options.dataset_version:
            query = query.filter(AIFinetuneRecord.dataset_version == options.dataset_version)
        if options.start_date:
            query = query.filter(AIFinetuneRecord.created_at >= options.start_date)
        if options.end_date:
            query = query.filter(AIFinetuneRecord.created_at <= options.end_date)
        if options.session_types:
            query = query.join(
                AIInteraction, AIFinetuneRecord.interaction_id == AIInteraction.id
            ).join(
                AISession, AIInteraction.session_id == AISession.id
            ).filter(AISession.session_type.in_(options.session_types))

        records = query.order_by(AIFinetuneRecord.created_at.asc()).all()
        return [r for r in records if r.training_data and r.training_data.get("messages")]

    def export(self, options: Optional[ExportOptions] = None, exported_by: Optional[str] = None) -> Dict[str, Any]:
        """
        Write approved records as JSONL plus a sidecar metadata file.

        Records are only annotated (export_history), never removed, so the
        same record can appear in several exports.
        """
        options = options or ExportOptions()

        records = self._query_dataset(options)
        if options.max_examples:
            records = records[:options.max_examples]
        if not records:
            raise NoQualifyingData()

        export_id = f"ft_export_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        formatter = FORMATTERS[options.format]
        examples = [formatter(record) for record in records]

        os.makedirs(self.export_dir, exist_ok=True)
        file_path = os.path.join(self.export_dir, f"{export_id}_{options.format}.jsonl")
        with open(file_path, "w", encoding="utf-8") as f:
            for example in examples:
                f.write(json.dumps(example, ensure_ascii=False) + "\n")

        exported_at = utcnow()
        self._mark_exported(records, export_id, options.format, exported_at)

        metadata = {
            "exportId": export_id,
            "exportedAt": exported_at.isoformat(),
            "exportedBy": exported_by,
            "format": options.format,
            "options": options.model_dump(mode="json"),
            "statistics": self.calculate_statistics(records),
        }
        metadata_path = os.path.join(self.export_dir, f"{export_id}_metadata.json")
        with open(metadata_path, "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=2)

        logger.info(f"Exported {len(examples)} examples as {options.format} ({export_id})")
        return {
            "export_id": export_id,
            "file_path": file_path,
            "record_count": len(examples),
            "format": options.format,
            "statistics": metadata["statistics"],
        }

    def _mark_exported(self, records: List[AIFinetuneRecord], export_id: str, export_format: str, exported_at: datetime):
        entry = {
            "export_id": export_id,
            "exported_at": exported_at.isoformat(),
            "export_format": export_format,
        }
        try:
            for record in records:
                record.export_history = list(record.export_history or []) + [entry]
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    @staticmethod
    def calculate_statistics(records: List[AIFinetuneRecord]) -> Dict[str, Any]:
        scores = [r.quality_score for r in records if r.quality_score is not None]

        tag_frequency = Counter()
        for record in records:
            tag_frequency.update(record.tags or [])

        distribution = {name: 0 for name in QUALITY_BUCKETS.values()}
        for score in scores:
            if score in QUALITY_BUCKETS:
                distribution[QUALITY_BUCKETS[score]] += 1

        return {
            "total_examples": len(records),
            "average_quality_score": round(sum(scores) / len(scores), 2) if scores else 0,
            "quality_distribution": distribution,
            "corrected_responses": sum(1 for r in records if r.corrected_response),
            "positive_examples": sum(1 for r in records if r.is_positive_example),
            "negative_examples": sum(1 for r in records if r.is_negative_example),
            "tag_frequency": dict(tag_frequency),
        }

    def export_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Sidecar metadata of past exports, newest first."""
        if not os.path.isdir(self.export_dir):
            return []

        exports = []
        for path in glob.glob(os.path.join(self.export_dir, "*_metadata.json")):
            with open(path, "r", encoding="utf-8") as f:
                exports.append(json.load(f))

        exports.sort(key=lambda e: e.get("exportedAt") or "", reverse=True)
        return exports[:limit]
