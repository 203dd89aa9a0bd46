import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Protocol

import google.genai as genai
import httpx
from google.genai import errors as genai_errors
from google.genai import types
from loguru import logger
from pydantic import ValidationError
from sqlalchemy import update
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..config import PipelineConfig, settings
from ..database import SessionLocal, session_scope
from ..exceptions import AIErrorKind, AIServiceError, ContractNotFoundError
from ..models.analysis import PatternResult, SemanticAnalysis
from ..models.models import ContractRecord, ProcessingMode, ProcessingStatus
from ..utils.text_normalizer import normalize_hyphens
from .alert_scheduler import AlertScheduler
from .circuit_breaker import CircuitBreaker
from .consolidation import SCHEDULE_FIELDS, apply_updates, commit_candidates
from .constants import CONTRACT_SEMANTIC_ANALYSIS_PROMPT
from .credit_ledger import CreditLedgerService
from .pattern_analyzer import summarize

generate_content_config = types.GenerateContentConfig(
    temperature=0.1,
    response_mime_type="application/json",
)


class SemanticEngine(Protocol):
    configured: bool

    def analyze(self, text: str) -> SemanticAnalysis:
        ...


def parse_json_response(response_text: str) -> Optional[Any]:
    """Parse JSON from a model response, tolerating markdown fences."""
    text = (response_text or "").strip()
    if text.startswith("```json"):
        text = text[len("```json"):].strip()
    elif text.startswith("```"):
        text = text[len("```"):].strip()
    if text.endswith("```"):
        text = text[:-len("```")].strip()

    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse JSON from response: {e}. Content: '{text[:500]}'")
        return None


def classify_api_error(error: genai_errors.APIError) -> AIErrorKind:
    code = getattr(error, "code", None) or 0
    if code == 429:
        return AIErrorKind.QUOTA
    if code >= 500:
        return AIErrorKind.TRANSIENT
    return AIErrorKind.CONFIGURATION


class GeminiSemanticEngine:
    """Semantic contract analysis backed by Gemini."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 max_input_chars: Optional[int] = None, client=None):
        self.api_key = settings.GEMINI_API_KEY if api_key is None else api_key
        self.model = model or settings.GEMINI_MODEL
        self.max_input_chars = max_input_chars or settings.AI_MAX_INPUT_CHARS
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.api_key) or self._client is not None

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise AIServiceError("Gemini API key is not configured", AIErrorKind.CONFIGURATION)
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def analyze(self, text: str) -> SemanticAnalysis:
        truncated = text[:self.max_input_chars]
        contents = [
            types.Content(
                role="user",
                parts=[types.Part.from_text(text=CONTRACT_SEMANTIC_ANALYSIS_PROMPT + truncated)],
            ),
        ]
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=contents,
                config=generate_content_config,
            )
        except genai_errors.APIError as e:
            kind = classify_api_error(e)
            logger.error(f"Gemini API error ({e.code}): {str(e)}")
            raise AIServiceError(f"Gemini API error {e.code}: {e.message}", kind) from e
        except (httpx.TimeoutException, httpx.TransportError, TimeoutError, ConnectionError) as e:
            logger.warning(f"Gemini connection problem: {str(e)}")
            raise AIServiceError(f"Gemini request failed: {str(e)}", AIErrorKind.TRANSIENT) from e

        payload = parse_json_response(response.text)
        if not isinstance(payload, dict):
            raise AIServiceError("Gemini returned no usable JSON object", AIErrorKind.INVALID_RESPONSE)

        try:
            analysis = SemanticAnalysis.model_validate(payload)
        except ValidationError as ve:
            logger.error(f"Pydantic validation error for semantic analysis: {ve}")
            raise AIServiceError(f"Invalid semantic analysis payload: {ve}", AIErrorKind.INVALID_RESPONSE) from ve

        analysis.key_clauses = [normalize_hyphens(c) for c in analysis.key_clauses]
        analysis.termination_conditions = [normalize_hyphens(c) for c in analysis.termination_conditions]
        return analysis


@dataclass
class AnalysisOutcome:
    status: str
    analysis: Optional[SemanticAnalysis] = None
    from_cache: bool = False
    has_cached_analysis: bool = False
    credits_remaining: Optional[int] = None
    error: Optional[str] = None


def _as_utc(moment: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def has_valid_cache(record: ContractRecord, now: datetime, ttl_days: int) -> bool:
    if not record.ai_analysis_cached or record.ai_analysis_cached_at is None:
        return False
    return _as_utc(now) - _as_utc(record.ai_analysis_cached_at) < timedelta(days=ttl_days)


def get_tacit_renewal_info(record: ContractRecord, now: datetime,
                           config: Optional[PipelineConfig] = None) -> Dict[str, Any]:
    """Tacit renewal verdict, preferring a valid cached AI analysis over the pattern result."""
    config = config or PipelineConfig()
    if has_valid_cache(record, now, config.ai_cache_ttl_days):
        analysis = SemanticAnalysis.from_stored(record.ai_analysis_cached)
        return {
            "is_tacit_renewal": analysis.is_tacit_renewal,
            "confidence": analysis.field_confidence("is_tacit_renewal"),
            "notice_period_days": analysis.notice_period_days or record.notice_period_days,
            "source": ProcessingMode.AI_ENHANCED.value,
            "key_findings": analysis.key_clauses,
        }

    pattern = PatternResult.from_stored(record.pattern_result)
    return {
        "is_tacit_renewal": pattern.tacit_renewal_detected if pattern else False,
        "confidence": pattern.confidence_score if pattern else 0.0,
        "notice_period_days": record.notice_period_days,
        "source": ProcessingMode.PATTERN_ONLY.value,
        "key_findings": summarize(pattern)["key_findings"] if pattern else [],
    }


class SemanticAnalyzer:
    """Credit-gated, cached and single-flight AI re-analysis of a contract."""

    def __init__(self, engine: SemanticEngine, ledger: CreditLedgerService,
                 session_factory=SessionLocal, config: Optional[PipelineConfig] = None,
                 scheduler: Optional[AlertScheduler] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
                 breaker: Optional[CircuitBreaker] = None):
        self.engine = engine
        self.ledger = ledger
        self.session_factory = session_factory
        self.config = config or PipelineConfig()
        self.scheduler = scheduler or AlertScheduler()
        self.clock = clock
        self.breaker = breaker or CircuitBreaker(
            "semantic engine",
            failure_threshold=self.config.ai_breaker_failure_threshold,
            recovery_timeout=self.config.ai_breaker_recovery_seconds,
            success_threshold=self.config.ai_breaker_success_threshold,
        )

    def _precondition_error(self, record: ContractRecord) -> Optional[str]:
        if record.ocr_status != ProcessingStatus.COMPLETED.value:
            return "Text extraction has not completed"
        if not (record.ocr_text or "").strip():
            return "No extracted text available for analysis"
        if not self.engine.configured:
            return "AI engine is not configured"
        return None

    async def reanalyze(self, contract_id: str, user_id: str, force: bool = False) -> AnalysisOutcome:
        """
        Run (or serve from cache) the semantic analysis of a contract.

        Raises:
            ContractNotFoundError: Unknown contract
            InsufficientCreditsError: No credit left; nothing is changed
            AIServiceError: Engine failure after retries, open circuit breaker or a
                fault while applying the result; the credit is refunded
        """
        now = self.clock()
        today = now.date()

        with session_scope(self.session_factory) as db:
            record = db.get(ContractRecord, contract_id)
            if record is None:
                raise ContractNotFoundError(contract_id)

            problem = self._precondition_error(record)
            if problem:
                logger.warning(f"AI analysis skipped for contract {contract_id}: {problem}")
                record.ai_status = ProcessingStatus.FAILED.value
                record.ai_error = problem
            elif not force and has_valid_cache(record, now, self.config.ai_cache_ttl_days):
                logger.info(f"Serving cached AI analysis for contract {contract_id}")
                return AnalysisOutcome(
                    status=ProcessingStatus.COMPLETED.value,
                    analysis=SemanticAnalysis.from_stored(record.ai_analysis_cached),
                    from_cache=True,
                    has_cached_analysis=True,
                )
            text = record.ocr_text

        if problem:
            return AnalysisOutcome(status=ProcessingStatus.FAILED.value, error=problem)

        remaining = self.ledger.consume(user_id, today)

        if not self._claim(contract_id):
            remaining = self.ledger.refund(user_id)
            logger.info(f"AI analysis already running for contract {contract_id}, credit refunded")
            return AnalysisOutcome(
                status=ProcessingStatus.PROCESSING.value,
                credits_remaining=remaining,
                error="An analysis is already running for this contract",
            )

        logger.info(f"Starting AI analysis for contract {contract_id}")
        try:
            analysis = await self._run_engine(text)
            with session_scope(self.session_factory) as db:
                record = db.get(ContractRecord, contract_id)
                if record.ai_status != ProcessingStatus.PROCESSING.value:
                    stale = True
                else:
                    stale = False
                    self._apply_analysis(db, record, analysis, now)
        except AIServiceError as e:
            self._fail(contract_id, user_id, e)
            raise
        except Exception as e:
            error = AIServiceError(f"Failed to apply AI analysis: {str(e)}", AIErrorKind.INVALID_RESPONSE)
            self._fail(contract_id, user_id, error)
            raise error from e

        if stale:
            remaining = self.ledger.refund(user_id)
            logger.warning(f"Contract {contract_id} was reprocessed during AI analysis, result discarded")
            return AnalysisOutcome(
                status=ProcessingStatus.FAILED.value,
                credits_remaining=remaining,
                error="Contract was reprocessed during analysis",
            )

        logger.info(f"AI analysis completed for contract {contract_id}")
        return AnalysisOutcome(
            status=ProcessingStatus.COMPLETED.value,
            analysis=analysis,
            from_cache=False,
            has_cached_analysis=True,
            credits_remaining=remaining,
        )

    def _claim(self, contract_id: str) -> bool:
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(ContractRecord)
                .where(
                    ContractRecord.id == contract_id,
                    ContractRecord.ai_status != ProcessingStatus.PROCESSING.value,
                    ContractRecord.ocr_status == ProcessingStatus.COMPLETED.value,
                )
                .values(ai_status=ProcessingStatus.PROCESSING.value, ai_error=None)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def _fail(self, contract_id: str, user_id: str, error: AIServiceError) -> None:
        """Refund the credit and mark the claimed run failed."""
        self.ledger.refund(user_id)
        with session_scope(self.session_factory) as db:
            record = db.get(ContractRecord, contract_id)
            if record is not None and record.ai_status == ProcessingStatus.PROCESSING.value:
                record.ai_status = ProcessingStatus.FAILED.value
                record.ai_error = str(error)[:500]
        logger.error(f"AI analysis failed for contract {contract_id} ({error.kind.value}): {str(error)}")

    async def _call_engine(self, text: str) -> SemanticAnalysis:
        self.breaker.before_call()
        try:
            analysis = await self._invoke_engine(text)
        except AIServiceError as e:
            self.breaker.record_failure(e)
            raise
        self.breaker.record_success()
        return analysis

    async def _invoke_engine(self, text: str) -> SemanticAnalysis:
        timeout = self.config.ai_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.engine.analyze, text), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise AIServiceError(f"Semantic analysis timed out after {timeout}s", AIErrorKind.TRANSIENT) from e
        except AIServiceError:
            raise
        except Exception as e:
            raise AIServiceError(f"Semantic engine error: {str(e)}", AIErrorKind.TRANSIENT) from e

    async def _run_engine(self, text: str) -> SemanticAnalysis:
        def log_retry(retry_state):
            logger.warning(
                f"Retrying AI analysis (attempt {retry_state.attempt_number} failed): "
                f"{retry_state.outcome.exception()}"
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.ai_max_attempts),
            wait=wait_exponential(multiplier=self.config.ai_retry_base_delay, max=30),
            retry=retry_if_exception(lambda e: isinstance(e, AIServiceError) and e.retryable),
            before_sleep=log_retry,
            reraise=True,
        ):
            with attempt:
                return await self._call_engine(text)

    def _apply_analysis(self, db, record: ContractRecord, analysis: SemanticAnalysis, now: datetime) -> None:
        stored = analysis.to_stored()
        record.ai_analysis = stored
        record.ai_analysis_cached = stored
        record.ai_analysis_cached_at = now
        record.ai_status = ProcessingStatus.COMPLETED.value
        record.ai_error = None
        record.processing_mode = ProcessingMode.AI_ENHANCED.value

        canonical = commit_candidates(
            analysis.to_selected(self.config.default_currency),
            self.config.commit_threshold,
            self.config.default_currency,
        )
        changed = apply_updates(record, canonical)
        if SCHEDULE_FIELDS.intersection(changed):
            self.scheduler.regenerate(db, record, now.date())
