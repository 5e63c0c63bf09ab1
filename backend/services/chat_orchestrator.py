"""
Chat Orchestrator

Runs one chat turn end to end:

    session auth -> active prompt -> decrypt -> hidden prompt
    -> provider (optionally through the response cache)
    -> sanitize / inspect / leak check -> ledger -> session counters
    -> sanitized assistant text only

run_task() follows the same path for structured tasks, with the
response parsed and validated against the task schema instead of being
returned as text.

The decrypted system prompt and the hidden prompt built from it are
locals of a single call. They are never returned, logged, cached in
plaintext, or put into an exception message.
"""

import asyncio
import json
import logging
import math
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from pydantic import BaseModel

import settings
from agent.provider_gateway import ProviderGateway, ProviderOptions, ProviderResult
from exceptions import ProviderUnavailable
from models import AIPrompt, AISession, InteractionStatus
from services.interaction_ledger import HistoryMessage, InteractionEntry, InteractionLedger
from services.log_redaction import mask_token
from services.prompt_catalog import PromptCatalog
from services.response_cache import ResponseCache
from services.safety_filter import TASK_SCHEMAS, SafetyFilter, SecurityDetection, ValidationResult
from services.secret_store import SecretStore
from services.session_manager import SessionManager

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 5000
LEAK_FLAG = "system_prompt_leak"
INVALID_OUTPUT_FLAG = "invalid_structured_output"
WITHHELD_RESPONSE = "I'm sorry, but I can't help with that request."
USER_TURN_MARKER = "\n\nUser: "


class ChatResponse(BaseModel):
    """Client payload. Has no field that could carry a system prompt."""
    message: str
    interaction_id: str
    tokens_used: int
    model_used: str

    class Config:
        extra = "forbid"


class StreamChunk(BaseModel):
    chunk: str
    done: bool
    interaction_id: Optional[str] = None

    class Config:
        extra = "forbid"


class TaskResponse(BaseModel):
    """Validated structured output of run_task()."""
    task_type: str
    data: Dict[str, Any]
    interaction_id: str
    tokens_used: int
    model_used: str

    class Config:
        extra = "forbid"


def build_hidden_prompt(system_prompt: str, user_message: str) -> str:
    return f"{system_prompt}{USER_TURN_MARKER}{user_message}\n\nAssistant:"


def recover_system_prompt(full_prompt: Optional[str], prompt_hash: Optional[str]) -> Optional[str]:
    """
    System part of a stored hidden prompt.

    Either side of the marker may contain the marker itself, so every split
    point is tried and only a prefix whose fingerprint equals prompt_hash
    is returned.
    """
    if not full_prompt or not prompt_hash:
        return None

    index = full_prompt.find(USER_TURN_MARKER)
    while index >= 0:
        candidate = full_prompt[:index]
        if SecretStore.fingerprint(candidate) == prompt_hash:
            return candidate
        index = full_prompt.find(USER_TURN_MARKER, index + 1)
    return None


def split_into_chunks(text: str, chunk_size: int) -> List[str]:
    size = max(chunk_size, 1)
    return [text[i:i + size] for i in range(0, len(text), size)]


def estimate_tokens(text: str) -> int:
    # ~4 characters per token
    return math.ceil(len(text or "") / 4)


class ChatOrchestrator:
    """
    Secure chat pipeline.

    Collaborators are injected so tests can swap the gateway and cache.
    """

    def __init__(
        self,
        sessions: SessionManager,
        catalog: PromptCatalog,
        ledger: InteractionLedger,
        gateway: ProviderGateway,
        safety: SafetyFilter,
        cache: Optional[ResponseCache] = None,
        max_response_chars: Optional[int] = None,
        chunk_size: Optional[int] = None,
        chunk_delay_seconds: Optional[float] = None,
    ):
        self.sessions = sessions
        self.catalog = catalog
        self.ledger = ledger
        self.gateway = gateway
        self.safety = safety
        self.cache = cache
        self.max_response_chars = max_response_chars or settings.CHAT_MAX_RESPONSE_CHARS
        self.chunk_size = chunk_size or settings.CHAT_STREAM_CHUNK_SIZE
        self.chunk_delay_seconds = (
            settings.CHAT_STREAM_CHUNK_DELAY_SECONDS if chunk_delay_seconds is None else chunk_delay_seconds
        )

    # =========================================================================
    # Public API
    # =========================================================================

    async def chat(self, agent_id: str, user_message: str, owner_id: str) -> ChatResponse:
        start = time.monotonic()
        self._check_message(user_message)

        session = self.sessions.get_authorized(agent_id, owner_id)
        prompt = self.catalog.get_active(session.session_type)
        system_prompt = self.catalog.decrypt_for(prompt.id)
        full_prompt = build_hidden_prompt(system_prompt, user_message)

        result, cache_hit = await self._complete(session, prompt, full_prompt, user_message, start)
        message, detections, flag_reasons = self._screen(result.content, system_prompt)
        if not cache_hit and not flag_reasons:
            self._remember(session, prompt, full_prompt, result)

        interaction = self.ledger.log(InteractionEntry(
            session_id=session.id,
            prompt_id=prompt.id,
            user_input=user_message,
            ai_response=message,
            model_used=result.model,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost=result.cost,
            latency_ms=self._elapsed_ms(start),
            cache_hit=cache_hit,
            prompt_hash=prompt.prompt_hash,
            full_prompt=full_prompt,
            detections=detections,
            flag_reasons=flag_reasons,
            metadata={
                "session_type": session.session_type,
                "prompt_version": prompt.version,
                "cache_hit": cache_hit,
            },
        ))

        self.sessions.record_interaction(session.id, interaction.tokens_used, interaction.cost)

        return ChatResponse(
            message=message,
            interaction_id=interaction.id,
            tokens_used=interaction.tokens_used,
            model_used=result.model,
        )

    async def chat_stream(self, agent_id: str, user_message: str, owner_id: str) -> AsyncIterator[StreamChunk]:
        """
        Yield the validated response in ordered chunks, then a terminal
        chunk carrying the interaction id.

        If the consumer stops early the ledger entry is still written with
        the chunks already delivered and status=cancelled.
        """
        start = time.monotonic()
        self._check_message(user_message)

        session = self.sessions.get_authorized(agent_id, owner_id)
        prompt = self.catalog.get_active(session.session_type)
        system_prompt = self.catalog.decrypt_for(prompt.id)
        full_prompt = build_hidden_prompt(system_prompt, user_message)

        result, cache_hit = await self._complete(session, prompt, full_prompt, user_message, start)
        message, detections, flag_reasons = self._screen(result.content, system_prompt)
        if not cache_hit and not flag_reasons:
            self._remember(session, prompt, full_prompt, result)

        chunks = split_into_chunks(message, self.chunk_size)
        emitted: List[str] = []
        completed = False
        interaction = None

        try:
            for piece in chunks:
                emitted.append(piece)
                yield StreamChunk(chunk=piece, done=False)
                if self.chunk_delay_seconds:
                    await asyncio.sleep(self.chunk_delay_seconds)
            completed = True
        finally:
            interaction = self.ledger.log(InteractionEntry(
                session_id=session.id,
                prompt_id=prompt.id,
                user_input=user_message,
                ai_response="".join(emitted),
                model_used=result.model,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                cost=result.cost,
                latency_ms=self._elapsed_ms(start),
                success=completed,
                status=InteractionStatus.SUCCESS if completed else InteractionStatus.CANCELLED,
                cache_hit=cache_hit,
                prompt_hash=prompt.prompt_hash,
                full_prompt=full_prompt,
                detections=detections,
                flag_reasons=flag_reasons,
                metadata={
                    "session_type": session.session_type,
                    "prompt_version": prompt.version,
                    "cache_hit": cache_hit,
                    "streaming": True,
                    "chunks_emitted": len(emitted),
                    "chunks_total": len(chunks),
                },
            ))
            self.sessions.record_interaction(session.id, interaction.tokens_used, interaction.cost)
            if not completed:
                logger.info(
                    f"Stream cancelled for session {mask_token(agent_id)} after {len(emitted)}/{len(chunks)} chunks"
                )

        yield StreamChunk(chunk="", done=True, interaction_id=interaction.id)

    async def run_task(self, agent_id: str, owner_id: str, task_type: str, payload: Dict[str, Any]) -> TaskResponse:
        """
        One structured-output call against the session's prompt.

        The provider text must parse as the task's JSON schema; otherwise
        the exchange is logged as failed and flagged, and ValidationFailure
        is raised with the schema errors. Only the validated, sanitized
        object is returned.
        """
        start = time.monotonic()
        if task_type not in TASK_SCHEMAS:
            raise ValueError(f"Unknown task type: {task_type}")

        user_message = json.dumps(payload, sort_keys=True, default=str)
        self._check_message(user_message)

        session = self.sessions.get_authorized(agent_id, owner_id)
        prompt = self.catalog.get_active(session.session_type)
        system_prompt = self.catalog.decrypt_for(prompt.id)
        full_prompt = build_hidden_prompt(system_prompt, f"Task: {task_type}\n{user_message}")

        result, cache_hit = await self._complete(session, prompt, full_prompt, user_message, start)

        flag_reasons = []
        if self.safety.detect_prompt_leak(result.content, system_prompt):
            logger.error("System prompt detected in structured provider response, response withheld")
            flag_reasons.append(LEAK_FLAG)
            validation = ValidationResult(valid=False, errors=["Response withheld"])
        else:
            validation = self.safety.parse_structured(result.content, task_type)
            if not validation.valid:
                flag_reasons.append(INVALID_OUTPUT_FLAG)

        response_text = json.dumps(validation.data, sort_keys=True) if validation.valid else ""
        detections = self.safety.inspect(response_text).detections if response_text else []
        if validation.valid and not cache_hit and not detections:
            self._remember(session, prompt, full_prompt, result)

        interaction = self.ledger.log(InteractionEntry(
            session_id=session.id,
            prompt_id=prompt.id,
            user_input=user_message,
            ai_response=response_text,
            model_used=result.model,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost=result.cost,
            latency_ms=self._elapsed_ms(start),
            success=validation.valid,
            status=InteractionStatus.SUCCESS if validation.valid else InteractionStatus.FAILED,
            error_message=None if validation.valid else "; ".join(validation.errors),
            cache_hit=cache_hit,
            prompt_hash=prompt.prompt_hash,
            full_prompt=full_prompt,
            detections=detections,
            flag_reasons=flag_reasons,
            metadata={
                "session_type": session.session_type,
                "prompt_version": prompt.version,
                "cache_hit": cache_hit,
                "task_type": task_type,
            },
        ))
        self.sessions.record_interaction(session.id, interaction.tokens_used, interaction.cost)

        data = validation.raise_for_errors()
        return TaskResponse(
            task_type=task_type,
            data=data,
            interaction_id=interaction.id,
            tokens_used=interaction.tokens_used,
            model_used=result.model,
        )

    async def history(self, agent_id: str, owner_id: str, limit: int = 50) -> List[HistoryMessage]:
        session = self.sessions.get_authorized(agent_id, owner_id)
        return self.ledger.history(session.id, limit)

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _check_message(user_message: str):
        if not isinstance(user_message, str) or not user_message.strip():
            raise ValueError("Message cannot be empty")
        if len(user_message) > MAX_MESSAGE_CHARS:
            raise ValueError(f"Message too long (max {MAX_MESSAGE_CHARS} characters)")

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    def _options_for(self, prompt: AIPrompt) -> ProviderOptions:
        config = self.catalog.model_config_for(prompt)
        return ProviderOptions(
            model=prompt.model_preference or settings.DEFAULT_MODEL,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            stop_sequences=config.stop_sequences or [],
        )

    async def _complete(
        self,
        session: AISession,
        prompt: AIPrompt,
        full_prompt: str,
        user_message: str,
        start: float,
    ) -> Tuple[ProviderResult, bool]:
        """
        Provider result for the hidden prompt, from cache when possible.

        A provider failure is recorded as a failed interaction, then
        re-raised as ProviderUnavailable.
        """
        options = self._options_for(prompt)
        task_type = f"chat:{session.session_type}"
        cache_options = options.cache_key_options()

        if self.cache is not None:
            cached = self.cache.get(task_type, full_prompt, cache_options)
            if cached is not None:
                data = cached.data
                logger.debug(f"Serving {task_type} response from cache")
                return ProviderResult(
                    content=data["content"],
                    model=data.get("model") or options.model,
                    input_tokens=0,
                    output_tokens=0,
                    cost=0.0,
                ), True

        try:
            result = await self.gateway.execute(full_prompt, options)
        except ProviderUnavailable as e:
            self._record_failure(session, prompt, user_message, options.model, str(e), start)
            raise
        except Exception as e:
            logger.error(f"Provider gateway raised {type(e).__name__}")
            self._record_failure(session, prompt, user_message, options.model, "AI provider unavailable", start)
            raise ProviderUnavailable() from e

        if not result.input_tokens and not result.output_tokens:
            result.input_tokens = estimate_tokens(full_prompt)
            result.output_tokens = estimate_tokens(result.content)

        return result, False

    def _remember(self, session: AISession, prompt: AIPrompt, full_prompt: str, result: ProviderResult):
        """Cache a fresh provider result that passed the leak check."""
        if self.cache is None:
            return
        self.cache.set(
            f"chat:{session.session_type}",
            full_prompt,
            {"content": result.content, "model": result.model},
            cost=result.cost or 0.0,
            token_usage=result.total_tokens,
            options=self._options_for(prompt).cache_key_options(),
        )

    def _record_failure(self, session, prompt, user_message, model, error_message, start):
        logger.warning(f"LLM call failed for session {mask_token(session.agent_id)}: {error_message}")
        self.ledger.log(InteractionEntry(
            session_id=session.id,
            prompt_id=prompt.id,
            user_input=user_message,
            model_used=model,
            latency_ms=self._elapsed_ms(start),
            success=False,
            status=InteractionStatus.FAILED,
            error_message=error_message,
            prompt_hash=prompt.prompt_hash,
            cost=0.0,
            metadata={"session_type": session.session_type, "prompt_version": prompt.version},
        ))

    def _screen(self, content: str, system_prompt: str) -> Tuple[str, List[SecurityDetection], List[str]]:
        """
        Sanitize the provider text and run the output detectors.

        A response containing a window of the system prompt is replaced by
        WITHHELD_RESPONSE and flagged.
        """
        message = self.safety.sanitize_text(content, self.max_response_chars)
        report = self.safety.inspect(message)
        flag_reasons = []

        if self.safety.detect_prompt_leak(content, system_prompt) or self.safety.detect_prompt_leak(message, system_prompt):
            logger.error("System prompt detected in provider response, response withheld")
            message = WITHHELD_RESPONSE
            flag_reasons.append(LEAK_FLAG)

        return message, report.detections, flag_reasons
