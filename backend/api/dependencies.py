"""
Shared FastAPI dependencies for the AI routes.

Caller identity is an opaque X-User-Id header set by the upstream auth
layer. Admin routes additionally require X-Admin-Token.

Process-wide collaborators (SecretStore, ResponseCache, ProviderGateway,
SafetyFilter) live on app.state; everything bound to a DB session is
built per request.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

import settings
from db import get_db
from services.chat_orchestrator import ChatOrchestrator
from services.dataset_curator import DatasetCurator
from services.interaction_ledger import InteractionLedger
from services.prompt_catalog import PromptCatalog
from services.session_manager import SessionManager

logger = logging.getLogger(__name__)


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id.strip()


def require_admin(x_admin_token: Optional[str] = Header(None)) -> str:
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        logger.warning("Admin route called but PV_ADMIN_API_TOKEN is not configured")
        raise HTTPException(status_code=403, detail="Admin API is disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=403, detail="Admin access required")
    return "admin"


def get_catalog(request: Request, db: Session = Depends(get_db)) -> PromptCatalog:
    return PromptCatalog(db, request.app.state.secret_store)


def build_orchestrator(request: Request, db: Session) -> ChatOrchestrator:
    """Wire a ChatOrchestrator around one DB session."""
    state = request.app.state
    catalog = PromptCatalog(db, state.secret_store)
    return ChatOrchestrator(
        sessions=SessionManager(db, catalog),
        catalog=catalog,
        ledger=InteractionLedger(db, state.secret_store, store_full_prompt=settings.STORE_FULL_PROMPT),
        gateway=state.gateway,
        safety=state.safety,
        cache=state.cache,
    )


def get_orchestrator(request: Request, db: Session = Depends(get_db)) -> ChatOrchestrator:
    return build_orchestrator(request, db)


def get_curator(request: Request, db: Session = Depends(get_db)) -> DatasetCurator:
    return DatasetCurator(db, PromptCatalog(db, request.app.state.secret_store))
