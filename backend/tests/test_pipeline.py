"""
Tests for the end-to-end contract pipeline with fake extractor and engine.
"""
import asyncio
from datetime import date, timedelta

import pytest

from renewal_tracker.config import PipelineConfig
from renewal_tracker.exceptions import ContractNotFoundError, ExtractionError, PatternAnalysisError
from renewal_tracker.models.analysis import RecommendationType, SemanticAnalysis
from renewal_tracker.models.models import ContractRecord, ProcessingMode, ProcessingStatus

from conftest import FIXED_NOW, SAMPLE_CONTRACT_EN, SAMPLE_CONTRACT_FR, FakeEngine, FakeExtractor


def _upload(pipeline, filename="contrat.txt", content=None):
    content = content if content is not None else SAMPLE_CONTRACT_FR.encode("utf-8")
    return pipeline.create_contract(user_id="user-1", title="Box internet", filename=filename, content=content)


class TestCreateContract:

    def test_creates_pending_contract(self, make_pipeline, tmp_path):
        pipeline = make_pipeline()

        contract = _upload(pipeline)

        assert contract.ocr_status == ProcessingStatus.PENDING.value
        assert contract.ai_status == ProcessingStatus.PENDING.value
        assert contract.processing_mode == ProcessingMode.PATTERN_ONLY.value
        assert contract.currency == "EUR"
        assert (tmp_path / f"{contract.id}.txt").exists()

    def test_rejects_unsupported_extension(self, make_pipeline, tmp_path):
        with pytest.raises(ValueError):
            _upload(make_pipeline(), filename="contrat.docx")

        assert list(tmp_path.iterdir()) == []


class TestProcessContract:

    def test_french_contract_end_to_end(self, make_pipeline):
        pipeline = make_pipeline()
        contract = _upload(pipeline)

        assert asyncio.run(pipeline.process_contract(contract.id)) is True

        result = pipeline.get_contract(contract.id)
        assert result.ocr_status == ProcessingStatus.COMPLETED.value
        assert result.ai_status == ProcessingStatus.PENDING.value
        assert result.is_tacit_renewal is True
        assert result.start_date == date(2025, 1, 1)
        assert result.end_date == date(2025, 12, 31)
        assert result.next_renewal_date == date(2025, 12, 31)
        assert result.notice_period_days == 60
        assert result.amount == 600.0
        assert result.pattern_confidence == 1.0
        assert result.tacit_renewal_detected_by_pattern is True
        assert result.ocr_metadata["final_confidence"] == 91.0
        assert result.ocr_metadata["processed_at"] == FIXED_NOW.isoformat()
        assert [r.type for r in result.recommendations] == [
            RecommendationType.TACIT_RENEWAL_WARNING,
            RecommendationType.SCHEDULE_ALERT,
        ]

        alerts = pipeline.list_alerts(contract.id)
        assert [(a.type, a.scheduled_for) for a in alerts] == [
            ("renewal_warning", date(2025, 10, 2)),
            ("notice_deadline", date(2025, 11, 1)),
            ("renewal_warning", date(2025, 12, 1)),
            ("renewal_warning", date(2025, 12, 24)),
        ]

    def test_english_contract(self, make_pipeline):
        pipeline = make_pipeline(extractor=FakeExtractor(text=SAMPLE_CONTRACT_EN))
        contract = _upload(pipeline, content=SAMPLE_CONTRACT_EN.encode("utf-8"))

        asyncio.run(pipeline.process_contract(contract.id))

        result = pipeline.get_contract(contract.id)
        assert result.amount == 1440.0
        assert result.currency == "USD"
        assert result.notice_period_days == 30
        alerts = pipeline.list_alerts(contract.id)
        assert [a.scheduled_for for a in alerts] == [
            date(2025, 3, 2),
            date(2025, 5, 1),
            date(2025, 5, 1),
            date(2025, 5, 24),
        ]

    def test_already_processing_is_skipped(self, make_pipeline, session_factory):
        extractor = FakeExtractor()
        pipeline = make_pipeline(extractor=extractor)
        contract = _upload(pipeline)
        db = session_factory()
        db.get(ContractRecord, contract.id).ocr_status = ProcessingStatus.PROCESSING.value
        db.commit()
        db.close()

        assert asyncio.run(pipeline.process_contract(contract.id)) is False
        assert extractor.calls == []

    def test_unknown_contract(self, make_pipeline):
        with pytest.raises(ContractNotFoundError):
            asyncio.run(make_pipeline().process_contract("missing"))

    def test_extraction_failure(self, make_pipeline):
        pipeline = make_pipeline(extractor=FakeExtractor(error=ExtractionError("scanner on fire")))
        contract = _upload(pipeline)

        assert asyncio.run(pipeline.process_contract(contract.id)) is True

        result = pipeline.get_contract(contract.id)
        assert result.ocr_status == ProcessingStatus.FAILED.value
        assert result.ai_status == ProcessingStatus.FAILED.value
        assert result.ocr_metadata["error"] == "scanner on fire"
        assert result.end_date is None

    def test_unexpected_extractor_error_is_wrapped(self, make_pipeline):
        pipeline = make_pipeline(extractor=FakeExtractor(error=OSError("disk gone")))
        contract = _upload(pipeline)

        asyncio.run(pipeline.process_contract(contract.id))

        result = pipeline.get_contract(contract.id)
        assert result.ocr_status == ProcessingStatus.FAILED.value
        assert "disk gone" in result.ocr_metadata["error"]

    def test_extraction_timeout(self, make_pipeline, config):
        slow = FakeExtractor(delay=0.5)
        pipeline = make_pipeline(
            extractor=slow,
            pipeline_config=config.model_copy(update={"extraction_timeout_seconds": 0.05}),
        )
        contract = _upload(pipeline)

        asyncio.run(pipeline.process_contract(contract.id))

        result = pipeline.get_contract(contract.id)
        assert result.ocr_status == ProcessingStatus.FAILED.value
        assert "timed out" in result.ocr_metadata["error"]

    def test_pattern_failure_falls_back_to_manual_review(self, make_pipeline, monkeypatch):
        def broken(*args, **kwargs):
            raise PatternAnalysisError("regex engine exploded")

        monkeypatch.setattr("renewal_tracker.services.pipeline.analyze_patterns", broken)
        pipeline = make_pipeline()
        contract = _upload(pipeline)

        asyncio.run(pipeline.process_contract(contract.id))

        result = pipeline.get_contract(contract.id)
        assert result.ocr_status == ProcessingStatus.COMPLETED.value
        assert result.end_date is None
        assert result.pattern_confidence is None
        assert result.ocr_metadata["final_confidence"] == 51.0
        assert [r.type for r in result.recommendations] == [RecommendationType.MANUAL_VERIFICATION]

    def test_low_extraction_confidence_is_flagged(self, make_pipeline):
        pipeline = make_pipeline(extractor=FakeExtractor(confidence=40.0))
        contract = _upload(pipeline)

        asyncio.run(pipeline.process_contract(contract.id))

        types = [r.type for r in pipeline.get_contract(contract.id).recommendations]
        assert RecommendationType.LOW_OCR_QUALITY in types

    def test_oversized_notice_period_still_completes(self, make_pipeline):
        text = SAMPLE_CONTRACT_EN.replace("Cancellation notice days: 30", "Cancellation notice days: 1000000")
        pipeline = make_pipeline(extractor=FakeExtractor(text=text))
        contract = _upload(pipeline, content=text.encode("utf-8"))

        assert asyncio.run(pipeline.process_contract(contract.id)) is True

        result = pipeline.get_contract(contract.id)
        assert result.ocr_status == ProcessingStatus.COMPLETED.value
        assert result.end_date == date(2025, 5, 31)
        assert all(a.type != "notice_deadline" for a in pipeline.list_alerts(contract.id))
        assert asyncio.run(pipeline.reprocess(contract.id)) is True

    def test_failure_after_extraction_leaves_explicit_failed_state(self, make_pipeline, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        pipeline = make_pipeline()
        contract = _upload(pipeline)
        monkeypatch.setattr(pipeline.scheduler, "regenerate", broken)

        assert asyncio.run(pipeline.process_contract(contract.id)) is True

        result = pipeline.get_contract(contract.id)
        assert result.ocr_status == ProcessingStatus.FAILED.value
        assert result.ai_status == ProcessingStatus.FAILED.value
        assert result.ocr_metadata["error"] == "disk full"
        assert result.end_date is None
        assert pipeline.list_alerts(contract.id) == []

        monkeypatch.undo()
        assert asyncio.run(pipeline.reprocess(contract.id)) is True
        assert pipeline.get_contract(contract.id).ocr_status == ProcessingStatus.COMPLETED.value


class TestReprocess:

    def test_reprocess_is_idempotent(self, make_pipeline):
        pipeline = make_pipeline()
        contract = _upload(pipeline)
        asyncio.run(pipeline.process_contract(contract.id))
        first = pipeline.get_contract(contract.id)
        first_alerts = [(a.type, a.scheduled_for) for a in pipeline.list_alerts(contract.id)]

        asyncio.run(pipeline.reprocess(contract.id))

        second = pipeline.get_contract(contract.id)
        assert second.end_date == first.end_date
        assert second.notice_period_days == first.notice_period_days
        assert second.amount == first.amount
        assert [(a.type, a.scheduled_for) for a in pipeline.list_alerts(contract.id)] == first_alerts

    def test_reprocess_clears_ai_cache(self, make_pipeline, session_factory):
        pipeline = make_pipeline()
        contract = _upload(pipeline)
        asyncio.run(pipeline.process_contract(contract.id))
        asyncio.run(pipeline.reanalyze(contract.id, "user-1"))
        assert pipeline.get_contract(contract.id).processing_mode == ProcessingMode.AI_ENHANCED.value

        asyncio.run(pipeline.reprocess(contract.id))

        db = session_factory()
        record = db.get(ContractRecord, contract.id)
        assert record.ai_analysis_cached is None
        assert record.ai_analysis_cached_at is None
        assert record.ai_status == ProcessingStatus.PENDING.value
        assert record.ai_analysis is None
        assert record.processing_mode == ProcessingMode.PATTERN_ONLY.value
        db.close()
        assert pipeline.get_status(contract.id).has_ai_analysis is False


class TestAIFollowUp:

    def test_trigger_ai_after_extraction(self, make_pipeline):
        engine = FakeEngine(SemanticAnalysis(
            is_tacit_renewal=True, end_date=date(2026, 1, 31), notice_period_days=30, confidence_score=0.9,
        ))
        pipeline = make_pipeline(semantic_engine=engine)
        contract = _upload(pipeline)

        asyncio.run(pipeline.process_contract(contract.id, trigger_ai=True))

        result = pipeline.get_contract(contract.id)
        assert engine.calls == 1
        assert result.ai_status == ProcessingStatus.COMPLETED.value
        assert result.processing_mode == ProcessingMode.AI_ENHANCED.value
        assert result.next_renewal_date == date(2026, 1, 31)
        assert result.notice_period_days == 30
        assert pipeline.ledger.get_state("user-1", FIXED_NOW.date()).remaining == 9

    def test_trigger_ai_skipped_on_poor_extraction(self, make_pipeline):
        engine = FakeEngine()
        pipeline = make_pipeline(extractor=FakeExtractor(confidence=40.0), semantic_engine=engine)
        contract = _upload(pipeline)

        asyncio.run(pipeline.process_contract(contract.id, trigger_ai=True))

        assert engine.calls == 0
        assert pipeline.get_contract(contract.id).ai_status == ProcessingStatus.PENDING.value

    def test_trigger_ai_without_credits_keeps_pattern_result(self, make_pipeline):
        engine = FakeEngine()
        pipeline = make_pipeline(semantic_engine=engine)
        for _ in range(10):
            pipeline.ledger.consume("user-1", FIXED_NOW.date())
        contract = _upload(pipeline)

        assert asyncio.run(pipeline.process_contract(contract.id, trigger_ai=True)) is True

        result = pipeline.get_contract(contract.id)
        assert engine.calls == 0
        assert result.ocr_status == ProcessingStatus.COMPLETED.value
        assert result.end_date == date(2025, 12, 31)


class TestQueries:

    def test_status(self, make_pipeline):
        pipeline = make_pipeline()
        contract = _upload(pipeline)

        before = pipeline.get_status(contract.id)
        asyncio.run(pipeline.process_contract(contract.id))
        after = pipeline.get_status(contract.id)

        assert before.has_ocr_text is False
        assert after.has_ocr_text is True
        assert after.has_ai_analysis is False

    def test_tacit_renewal_info(self, make_pipeline):
        pipeline = make_pipeline()
        contract = _upload(pipeline)
        asyncio.run(pipeline.process_contract(contract.id))

        info = pipeline.get_tacit_renewal_info(contract.id)

        assert info["is_tacit_renewal"] is True
        assert info["source"] == ProcessingMode.PATTERN_ONLY.value

    def test_queries_on_unknown_contract(self, make_pipeline):
        pipeline = make_pipeline()

        for query in (pipeline.get_contract, pipeline.get_status, pipeline.list_alerts):
            with pytest.raises(ContractNotFoundError):
                query("missing")

    def test_pipeline_config_from_settings(self):
        from renewal_tracker.config import settings

        config = settings.pipeline_config()

        assert isinstance(config, PipelineConfig)
        assert config.commit_threshold == settings.CONFIDENCE_THRESHOLD
        assert config.plan_monthly_credits["basic"] == settings.BASIC_MONTHLY_CREDITS


def _set_fields(session_factory, contract_id, **values):
    db = session_factory()
    record = db.get(ContractRecord, contract_id)
    for name, value in values.items():
        setattr(record, name, value)
    db.commit()
    db.close()


class TestRecoverStuckContracts:

    def test_stale_runs_are_failed(self, make_pipeline, session_factory):
        pipeline = make_pipeline()
        stuck_extraction = _upload(pipeline)
        stuck_analysis = _upload(pipeline)
        running = _upload(pipeline)
        _set_fields(
            session_factory, stuck_extraction.id,
            ocr_status=ProcessingStatus.PROCESSING.value,
            updated_at=FIXED_NOW - timedelta(hours=3),
        )
        _set_fields(
            session_factory, stuck_analysis.id,
            ocr_status=ProcessingStatus.COMPLETED.value,
            ai_status=ProcessingStatus.PROCESSING.value,
            updated_at=FIXED_NOW - timedelta(hours=3),
        )
        _set_fields(
            session_factory, running.id,
            ocr_status=ProcessingStatus.PROCESSING.value,
            updated_at=FIXED_NOW - timedelta(minutes=10),
        )

        assert pipeline.recover_stuck_contracts() == 2

        extraction = pipeline.get_contract(stuck_extraction.id)
        assert extraction.ocr_status == ProcessingStatus.FAILED.value
        assert extraction.ai_status == ProcessingStatus.FAILED.value
        assert "abandoned" in extraction.ocr_metadata["error"]

        analysis = pipeline.get_contract(stuck_analysis.id)
        assert analysis.ocr_status == ProcessingStatus.COMPLETED.value
        assert analysis.ai_status == ProcessingStatus.FAILED.value

        assert pipeline.get_contract(running.id).ocr_status == ProcessingStatus.PROCESSING.value

    def test_recovered_contract_can_be_reprocessed(self, make_pipeline, session_factory):
        pipeline = make_pipeline()
        contract = _upload(pipeline)
        _set_fields(
            session_factory, contract.id,
            ocr_status=ProcessingStatus.PROCESSING.value,
            updated_at=FIXED_NOW - timedelta(hours=3),
        )
        assert asyncio.run(pipeline.reprocess(contract.id)) is False

        pipeline.recover_stuck_contracts()

        assert asyncio.run(pipeline.reprocess(contract.id)) is True
        assert pipeline.get_contract(contract.id).ocr_status == ProcessingStatus.COMPLETED.value

    def test_nothing_stuck(self, make_pipeline):
        pipeline = make_pipeline()
        _upload(pipeline)

        assert pipeline.recover_stuck_contracts() == 0
