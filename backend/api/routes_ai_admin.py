"""
Admin API Routes for the AI core

- Prompt catalog: list / create / update (metadata only, never the prompt text)
- Interaction review: rate and flag interactions
- Fine-tune dataset: prepare, pending reviews, review, export, export history
- Response cache: statistics, invalidation, warm-up and counter reset

Every endpoint requires X-Admin-Token.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.dependencies import get_catalog, get_curator, require_admin
from db import get_db
from services.dataset_curator import DatasetCurator, ExportOptions, PrepareCriteria
from services.interaction_ledger import InteractionLedger
from services.prompt_catalog import PromptCatalog

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai/admin", tags=["ai-admin"], dependencies=[Depends(require_admin)])


# ============================================================================
# Prompt Models
# ============================================================================

class PromptResponse(BaseModel):
    id: str
    session_type: str
    version: int
    prompt_hash: str
    model_preference: str
    model_config_: Dict[str, Any] = Field(default_factory=dict, alias="model_config")
    notes: Optional[str] = None
    is_active: bool
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    class Config:
        populate_by_name = True
        protected_namespaces = ()


class PromptCreate(BaseModel):
    session_type: str = Field(..., min_length=1, max_length=50)
    system_prompt: str = Field(..., min_length=1)
    model_preference: Optional[str] = Field(None, max_length=100)
    model_config_: Optional[Dict[str, Any]] = Field(None, alias="model_config")
    notes: Optional[str] = None
    created_by: Optional[str] = Field(None, max_length=100)

    class Config:
        populate_by_name = True
        protected_namespaces = ()


class PromptUpdate(BaseModel):
    system_prompt: Optional[str] = Field(None, min_length=1)
    model_preference: Optional[str] = Field(None, max_length=100)
    model_config_: Optional[Dict[str, Any]] = Field(None, alias="model_config")
    is_active: Optional[bool] = None
    notes: Optional[str] = None

    class Config:
        populate_by_name = True
        protected_namespaces = ()


# ============================================================================
# Review / Dataset Models
# ============================================================================

class RateInteractionRequest(BaseModel):
    quality_score: float = Field(..., ge=0.0, le=1.0)


class FlagInteractionRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ReviewRequest(BaseModel):
    quality_score: int = Field(..., ge=1, le=5)
    human_feedback: Optional[str] = None
    include_in_training: bool
    corrected_response: Optional[str] = None
    tags: Optional[List[str]] = None
    evaluation_metrics: Optional[Dict[str, float]] = None
    reviewer_id: Optional[str] = Field(None, max_length=100)


class ExportRequest(ExportOptions):
    exported_by: Optional[str] = Field(None, max_length=100)


class CacheWarmUpEntry(BaseModel):
    task_type: str = Field(..., min_length=1, max_length=50)
    prompt: str = Field(..., min_length=1)
    data: Any
    cost: float = Field(0.0, ge=0.0)
    token_usage: int = Field(0, ge=0)
    options: Optional[Dict[str, Any]] = None


class CacheWarmUpRequest(BaseModel):
    entries: List[CacheWarmUpEntry] = Field(..., max_length=1000)


def _prompt_response(prompt) -> PromptResponse:
    return PromptResponse(**PromptCatalog.describe(prompt))


# ============================================================================
# Prompt Endpoints
# ============================================================================

@router.get("/prompts", response_model=List[PromptResponse], response_model_by_alias=True)
def list_prompts(
    session_type: Optional[str] = Query(None),
    catalog: PromptCatalog = Depends(get_catalog),
):
    return [_prompt_response(p) for p in catalog.list_prompts(session_type)]


@router.post("/prompts", response_model=PromptResponse, response_model_by_alias=True, status_code=201)
def create_prompt(request: PromptCreate, catalog: PromptCatalog = Depends(get_catalog)):
    try:
        prompt = catalog.create(
            session_type=request.session_type,
            system_prompt=request.system_prompt,
            model_preference=request.model_preference,
            model_config=request.model_config_,
            notes=request.notes,
            created_by=request.created_by,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _prompt_response(prompt)


@router.patch("/prompts/{prompt_id}", response_model=PromptResponse, response_model_by_alias=True)
def update_prompt(prompt_id: str, request: PromptUpdate, catalog: PromptCatalog = Depends(get_catalog)):
    patch = request.model_dump(exclude_none=True)
    if "model_config_" in patch:
        patch["model_config"] = patch.pop("model_config_")
    try:
        prompt = catalog.update(prompt_id, patch)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _prompt_response(prompt)


# ============================================================================
# Interaction Endpoints
# ============================================================================

@router.post("/interactions/{interaction_id}/rate")
def rate_interaction(interaction_id: str, request: RateInteractionRequest, db: Session = Depends(get_db)):
    interaction = InteractionLedger(db).rate_interaction(interaction_id, request.quality_score)
    return {"id": interaction.id, "quality_score": interaction.quality_score}


@router.post("/interactions/{interaction_id}/flag")
def flag_interaction(interaction_id: str, request: FlagInteractionRequest, db: Session = Depends(get_db)):
    interaction = InteractionLedger(db).flag_interaction(interaction_id, request.reason)
    return {"id": interaction.id, "flagged": interaction.flagged, "flag_reason": interaction.flag_reason}


@router.get("/sessions/{session_id}/stats")
def session_stats(session_id: str, db: Session = Depends(get_db)):
    return InteractionLedger(db).stats(session_id)


# ============================================================================
# Fine-tune Dataset Endpoints
# ============================================================================

@router.post("/finetune/prepare")
def prepare_dataset(
    criteria: Optional[PrepareCriteria] = None,
    curator: DatasetCurator = Depends(get_curator),
):
    return {"created": curator.prepare(criteria)}


@router.get("/finetune/pending")
def pending_reviews(
    limit: int = Query(50, ge=1, le=500),
    curator: DatasetCurator = Depends(get_curator),
):
    return curator.pending_reviews(limit)


@router.post("/finetune/{entry_id}/review")
def review_entry(entry_id: str, request: ReviewRequest, curator: DatasetCurator = Depends(get_curator)):
    record = curator.review(
        entry_id,
        rating=request.quality_score,
        feedback=request.human_feedback,
        include=request.include_in_training,
        corrected_response=request.corrected_response,
        reviewer=request.reviewer_id,
        tags=request.tags,
        evaluation_metrics=request.evaluation_metrics,
    )
    return {
        "id": record.id,
        "status": record.status,
        "quality_score": record.quality_score,
        "included_in_training": record.included_in_training,
        "is_positive_example": record.is_positive_example,
        "is_negative_example": record.is_negative_example,
        "evaluation_metrics": record.evaluation_metrics,
    }


@router.post("/finetune/export")
def export_dataset(request: ExportRequest, curator: DatasetCurator = Depends(get_curator)):
    options = ExportOptions(**request.model_dump(exclude={"exported_by"}))
    return curator.export(options, exported_by=request.exported_by)


@router.get("/finetune/exports")
def export_history(
    limit: int = Query(10, ge=1, le=100),
    curator: DatasetCurator = Depends(get_curator),
):
    return curator.export_history(limit)


# ============================================================================
# Cache Endpoints
# ============================================================================

@router.get("/cache/stats")
def cache_stats(request: Request):
    cache = request.app.state.cache
    return {**cache.statistics(), "healthy": cache.is_healthy()}


@router.post("/cache/invalidate")
def invalidate_cache(request: Request, task_type: Optional[str] = Query(None)):
    removed = request.app.state.cache.invalidate(task_type)
    logger.info(f"Cache invalidated via admin API: task_type={task_type or '*'}, removed={removed}")
    return {"removed": removed}


@router.post("/cache/warm-up")
def warm_up_cache(request: Request, body: CacheWarmUpRequest):
    stored = request.app.state.cache.warm_up(entry.model_dump() for entry in body.entries)
    return {"stored": stored}


@router.post("/cache/reset-stats")
def reset_cache_statistics(request: Request):
    request.app.state.cache.reset_statistics()
    return request.app.state.cache.statistics()
