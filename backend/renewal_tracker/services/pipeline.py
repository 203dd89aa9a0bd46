import asyncio
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from loguru import logger
from sqlalchemy import select, update

from ..config import CONTRACTS_DIR, PipelineConfig, settings
from ..database import SessionLocal, session_scope
from ..exceptions import (
    AIServiceError,
    ContractNotFoundError,
    ExtractionError,
    InsufficientCreditsError,
    PatternAnalysisError,
)
from ..models.analysis import ExtractionResult
from ..models.contract import AlertResponse, ContractResponse, ContractStatusResponse
from ..models.models import AlertEvent, ContractRecord, ContractStatus, ProcessingMode, ProcessingStatus
from ..utils.file_handlers import cleanup_file, file_extension, save_contract_file
from .alert_scheduler import AlertScheduler
from .consolidation import apply_updates, consolidate
from .constants import SUPPORTED_DOCUMENT_FILE_TYPES
from .credit_ledger import CreditLedgerService
from .document_extractor import DocumentExtractor
from .pattern_analyzer import analyze_patterns
from .semantic_analyzer import (
    AnalysisOutcome,
    GeminiSemanticEngine,
    SemanticAnalyzer,
    SemanticEngine,
    get_tacit_renewal_info,
)


class TextExtractor(Protocol):
    def extract(self, file_path: str) -> ExtractionResult:
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ContractPipeline:
    """
    Runs a contract through extraction, pattern analysis, consolidation and
    alert scheduling, with optional AI re-analysis.

    Every step opens its own session from ``session_factory``; the run's
    ``now`` comes from ``clock`` and is passed down explicitly.
    """

    def __init__(self, extractor: Optional[TextExtractor] = None, engine: Optional[SemanticEngine] = None,
                 session_factory=SessionLocal, config: Optional[PipelineConfig] = None,
                 clock: Callable[[], datetime] = utc_now, contracts_dir: Path = CONTRACTS_DIR):
        self.config = config or settings.pipeline_config()
        self.session_factory = session_factory
        self.clock = clock
        self.contracts_dir = Path(contracts_dir)
        self.extractor = extractor or DocumentExtractor()
        self.scheduler = AlertScheduler()
        self.ledger = CreditLedgerService(session_factory, self.config)
        self.semantic = SemanticAnalyzer(
            engine or GeminiSemanticEngine(),
            self.ledger,
            session_factory=session_factory,
            config=self.config,
            scheduler=self.scheduler,
            clock=clock,
        )

    # --- Upload ---

    def create_contract(self, user_id: str, title: str, filename: str, content: bytes) -> ContractResponse:
        file_ext = file_extension(filename)
        if file_ext not in SUPPORTED_DOCUMENT_FILE_TYPES:
            raise ValueError(f"Unsupported file type '{file_ext}'")

        contract_id = str(uuid.uuid4())
        file_path = save_contract_file(content, contract_id, file_ext, self.contracts_dir)
        try:
            with session_scope(self.session_factory) as db:
                record = ContractRecord(
                    id=contract_id,
                    user_id=user_id,
                    title=title,
                    file_path=file_path,
                    file_original_name=filename,
                    currency=self.config.default_currency,
                    is_tacit_renewal=False,
                    status=ContractStatus.ACTIVE.value,
                    ocr_status=ProcessingStatus.PENDING.value,
                    ai_status=ProcessingStatus.PENDING.value,
                    processing_mode=ProcessingMode.PATTERN_ONLY.value,
                )
                db.add(record)
                db.flush()
                db.refresh(record)
                response = ContractResponse.model_validate(record)
        except Exception as e:
            logger.error(f"Error creating contract '{title}': {str(e)}")
            cleanup_file(file_path)
            raise

        logger.info(f"Contract {contract_id} created for user {user_id} ({filename})")
        return response

    # --- Extraction pipeline ---

    def _claim_extraction(self, contract_id: str) -> Optional[Dict[str, Any]]:
        """Single-flight claim; resets the AI state and returns the fields the run needs."""
        with session_scope(self.session_factory) as db:
            record = db.get(ContractRecord, contract_id)
            if record is None:
                raise ContractNotFoundError(contract_id)
            result = db.execute(
                update(ContractRecord)
                .where(
                    ContractRecord.id == contract_id,
                    ContractRecord.ocr_status != ProcessingStatus.PROCESSING.value,
                )
                .values(
                    ocr_status=ProcessingStatus.PROCESSING.value,
                    ocr_text=None,
                    ai_status=ProcessingStatus.PENDING.value,
                    ai_error=None,
                    ai_analysis=None,
                    ai_analysis_cached=None,
                    ai_analysis_cached_at=None,
                    processing_mode=ProcessingMode.PATTERN_ONLY.value,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return {"file_path": record.file_path, "user_id": record.user_id}

    def _fail_processing(self, contract_id: str, error: Exception, elapsed: float, now: datetime) -> None:
        """Leave the claimed contract in an explicit failed state."""
        if isinstance(error, ExtractionError):
            logger.error(f"Text extraction failed for contract {contract_id}: {str(error)}")
        else:
            logger.exception(f"Processing failed for contract {contract_id}: {str(error)}")
        with session_scope(self.session_factory) as db:
            record = db.get(ContractRecord, contract_id)
            record.ocr_status = ProcessingStatus.FAILED.value
            record.ai_status = ProcessingStatus.FAILED.value
            record.ocr_metadata = {
                "error": str(error),
                "processing_time": elapsed,
                "failed_at": now.isoformat(),
            }

    async def _extract(self, file_path: str) -> ExtractionResult:
        timeout = self.config.extraction_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.extractor.extract, file_path), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ExtractionError(f"Text extraction timed out after {timeout}s") from e
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(f"Text extraction failed: {str(e)}") from e

    async def process_contract(self, contract_id: str, trigger_ai: bool = False) -> bool:
        """
        Extract, analyse and consolidate a contract, then rebuild its alerts.

        Args:
            contract_id: Contract to process
            trigger_ai: Follow up with an AI analysis when extraction confidence allows it

        Returns:
            False when another run already holds the contract, True otherwise
        """
        now = self.clock()
        started = time.monotonic()

        claim = self._claim_extraction(contract_id)
        if claim is None:
            logger.info(f"Contract {contract_id} is already being processed, skipping")
            return False

        logger.info(f"Starting text extraction for contract {contract_id}")
        try:
            extraction = await self._extract(claim["file_path"])
            consolidation, changed = self._analyse_and_store(contract_id, extraction, now, started)
        except Exception as e:
            self._fail_processing(contract_id, e, round(time.monotonic() - started, 3), now)
            return True

        logger.info(
            f"Contract {contract_id} processed: extraction={extraction.confidence}, "
            f"final_confidence={consolidation.final_confidence}, changed={changed}"
        )

        if trigger_ai:
            await self._follow_up_with_ai(contract_id, claim["user_id"], extraction.confidence)
        return True

    def _analyse_and_store(self, contract_id: str, extraction: ExtractionResult, now: datetime, started: float):
        try:
            pattern_result = analyze_patterns(extraction.text, self.config, now)
        except PatternAnalysisError as e:
            logger.warning(f"Pattern analysis failed for contract {contract_id}, continuing with extraction data only: {e}")
            pattern_result = None

        consolidation = consolidate(extraction, pattern_result, self.config)

        with session_scope(self.session_factory) as db:
            record = db.get(ContractRecord, contract_id)
            record.ocr_text = extraction.text
            record.ocr_metadata = {
                "confidence": extraction.confidence,
                "method": extraction.method.value,
                "final_confidence": consolidation.final_confidence,
                "processing_time": round(time.monotonic() - started, 3),
                "processed_at": now.isoformat(),
                **{k: v for k, v in extraction.metadata.items() if k != "processing_time"},
            }
            record.pattern_result = pattern_result.to_stored() if pattern_result else None
            record.pattern_confidence = pattern_result.confidence_score if pattern_result else None
            record.tacit_renewal_detected_by_pattern = (
                pattern_result.tacit_renewal_detected if pattern_result else None
            )
            record.recommendations = [r.model_dump(mode="json") for r in consolidation.recommendations]
            changed = apply_updates(record, consolidation.updates)
            record.ocr_status = ProcessingStatus.COMPLETED.value
            record.processing_mode = ProcessingMode.PATTERN_ONLY.value
            self.scheduler.regenerate(db, record, now.date())

        return consolidation, changed

    async def reprocess(self, contract_id: str, trigger_ai: bool = False) -> bool:
        logger.info(f"Reprocessing contract {contract_id}")
        return await self.process_contract(contract_id, trigger_ai=trigger_ai)

    async def _follow_up_with_ai(self, contract_id: str, user_id: str, extraction_confidence: float) -> None:
        if extraction_confidence < self.config.ai_min_ocr_confidence:
            logger.info(
                f"Skipping AI analysis for contract {contract_id}: extraction confidence "
                f"{extraction_confidence} below {self.config.ai_min_ocr_confidence}"
            )
            return
        try:
            await self.semantic.reanalyze(contract_id, user_id)
        except InsufficientCreditsError:
            logger.warning(f"Skipping AI analysis for contract {contract_id}: no credits left for user {user_id}")
        except AIServiceError as e:
            logger.warning(f"AI analysis after extraction failed for contract {contract_id}: {str(e)}")

    # --- Recovery ---

    def recover_stuck_contracts(self, now: Optional[datetime] = None) -> int:
        """
        Fail runs left in ``processing`` longer than the configured cutoff.

        A worker that died mid-run never releases its claim; failing the
        run frees the contract for ``reprocess`` and ``reanalyze``.

        Returns:
            Number of runs released
        """
        now = now or self.clock()
        cutoff = now - timedelta(minutes=self.config.stuck_processing_minutes)
        message = f"Processing abandoned: no progress since {cutoff.isoformat()}"

        with session_scope(self.session_factory) as db:
            extraction = db.execute(
                update(ContractRecord)
                .where(
                    ContractRecord.ocr_status == ProcessingStatus.PROCESSING.value,
                    ContractRecord.updated_at < cutoff,
                )
                .values(
                    ocr_status=ProcessingStatus.FAILED.value,
                    ai_status=ProcessingStatus.FAILED.value,
                    ocr_metadata={"error": message, "failed_at": now.isoformat()},
                )
                .execution_options(synchronize_session=False)
            )
            analysis = db.execute(
                update(ContractRecord)
                .where(
                    ContractRecord.ai_status == ProcessingStatus.PROCESSING.value,
                    ContractRecord.updated_at < cutoff,
                )
                .values(ai_status=ProcessingStatus.FAILED.value, ai_error=message)
                .execution_options(synchronize_session=False)
            )

        recovered = extraction.rowcount + analysis.rowcount
        if recovered:
            logger.warning(
                f"Recovered {recovered} stuck runs ({extraction.rowcount} extraction, {analysis.rowcount} AI)"
            )
        return recovered

    # --- AI ---

    async def reanalyze(self, contract_id: str, user_id: str, force: bool = False) -> AnalysisOutcome:
        return await self.semantic.reanalyze(contract_id, user_id, force=force)

    # --- Queries ---

    def _get_record(self, db, contract_id: str) -> ContractRecord:
        record = db.get(ContractRecord, contract_id)
        if record is None:
            raise ContractNotFoundError(contract_id)
        return record

    def get_contract(self, contract_id: str) -> ContractResponse:
        with session_scope(self.session_factory) as db:
            return ContractResponse.model_validate(self._get_record(db, contract_id))

    def get_status(self, contract_id: str) -> ContractStatusResponse:
        with session_scope(self.session_factory) as db:
            record = self._get_record(db, contract_id)
            return ContractStatusResponse(
                id=record.id,
                ocr_status=record.ocr_status,
                ai_status=record.ai_status,
                has_ocr_text=bool(record.ocr_text),
                has_ai_analysis=bool(record.ai_analysis),
                updated_at=record.updated_at,
            )

    def list_alerts(self, contract_id: str) -> List[AlertResponse]:
        with session_scope(self.session_factory) as db:
            self._get_record(db, contract_id)
            events = db.execute(
                select(AlertEvent)
                .where(AlertEvent.contract_id == contract_id)
                .order_by(AlertEvent.scheduled_for, AlertEvent.type)
            ).scalars().all()
            return [AlertResponse.model_validate(event) for event in events]

    def get_tacit_renewal_info(self, contract_id: str) -> Dict[str, Any]:
        with session_scope(self.session_factory) as db:
            record = self._get_record(db, contract_id)
            return get_tacit_renewal_info(record, self.clock(), self.config)
