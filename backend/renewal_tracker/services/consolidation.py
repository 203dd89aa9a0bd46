"""
Consolidation of extraction and pattern results into the canonical contract record.

Only candidates whose own confidence reaches the commit threshold are ever
written. The combined extraction/pattern confidence drives recommendations
and telemetry, never a commit.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger

from ..config import PipelineConfig
from ..models.analysis import (
    ExtractionResult,
    PatternResult,
    Recommendation,
    RecommendationType,
    SelectedCandidates,
)

# Fields a CanonicalUpdate may write on a ContractRecord
CANONICAL_FIELDS = (
    "is_tacit_renewal",
    "start_date",
    "end_date",
    "next_renewal_date",
    "notice_period_days",
    "amount",
    "currency",
)

# Changes to these fields invalidate the alert schedule
SCHEDULE_FIELDS = {"end_date", "next_renewal_date", "notice_period_days"}


@dataclass
class CanonicalUpdate:
    values: Dict[str, Any] = field(default_factory=dict)
    confidences: Dict[str, float] = field(default_factory=dict)

    def set(self, name: str, value: Any, confidence: float) -> None:
        self.values[name] = value
        self.confidences[name] = confidence

    def __bool__(self) -> bool:
        return bool(self.values)


@dataclass
class ConsolidationResult:
    final_confidence: float
    updates: CanonicalUpdate
    recommendations: List[Recommendation]


def final_confidence(ocr_confidence: float, pattern_confidence: float,
                     config: Optional[PipelineConfig] = None) -> float:
    """Weighted blend of extraction (0-100) and pattern (0-1) confidence, on a 0-100 scale."""
    config = config or PipelineConfig()
    combined = (ocr_confidence / 100.0) * config.ocr_weight + pattern_confidence * config.pattern_weight
    return round(max(0.0, min(1.0, combined)) * 100, 2)


def commit_candidates(selected: SelectedCandidates, threshold: float,
                      default_currency: str = "EUR") -> CanonicalUpdate:
    """Build the canonical update from the candidates that clear the threshold."""
    update = CanonicalUpdate()

    def accepted(candidate) -> bool:
        return candidate is not None and candidate.confidence >= threshold

    if accepted(selected.tacit_renewal):
        update.set("is_tacit_renewal", selected.tacit_renewal.value, selected.tacit_renewal.confidence)

    if accepted(selected.start_date):
        update.set("start_date", selected.start_date.value, selected.start_date.confidence)

    if accepted(selected.end_date):
        update.set("end_date", selected.end_date.value, selected.end_date.confidence)
        update.set("next_renewal_date", selected.end_date.value, selected.end_date.confidence)

    if accepted(selected.notice_period):
        update.set("notice_period_days", selected.notice_period.days, selected.notice_period.confidence)

    # Annual amount wins; a monthly-only commit is annualised
    if accepted(selected.annual_amount):
        amount = selected.annual_amount
        update.set("amount", amount.value, amount.confidence)
        update.set("currency", amount.currency or default_currency, amount.confidence)
    elif accepted(selected.monthly_amount):
        amount = selected.monthly_amount
        update.set("amount", round(amount.value * 12, 2), amount.confidence)
        update.set("currency", amount.currency or default_currency, amount.confidence)

    return update


def apply_updates(record, update: CanonicalUpdate) -> List[str]:
    """Write the update onto the record and return the names of fields that changed."""
    changed = []
    for name in CANONICAL_FIELDS:
        if name not in update.values:
            continue
        value = update.values[name]
        if getattr(record, name) != value:
            setattr(record, name, value)
            changed.append(name)
    if changed:
        logger.debug(f"Canonical fields updated on contract {record.id}: {changed}")
    return changed


def build_recommendations(ocr_confidence: float, pattern_result: Optional[PatternResult],
                          config: Optional[PipelineConfig] = None) -> List[Recommendation]:
    config = config or PipelineConfig()
    recommendations = []

    if pattern_result is None:
        recommendations.append(Recommendation(
            type=RecommendationType.MANUAL_VERIFICATION,
            priority="medium",
            message="Automatic clause analysis was unavailable. Review the contract terms manually.",
            action_required=True,
        ))
    else:
        notice_days = pattern_result.extracted_data.notice_period_days
        if pattern_result.tacit_renewal_detected:
            if notice_days:
                recommendations.append(Recommendation(
                    type=RecommendationType.TACIT_RENEWAL_WARNING,
                    priority="high",
                    message=(
                        f"This contract renews automatically. "
                        f"Cancel at least {notice_days} days before the renewal date."
                    ),
                    action_required=True,
                ))
            else:
                recommendations.append(Recommendation(
                    type=RecommendationType.TACIT_RENEWAL_CHECK,
                    priority="medium",
                    message="Tacit renewal detected but no notice period was found. Check the termination conditions.",
                    action_required=True,
                ))

    if ocr_confidence < config.low_ocr_confidence:
        recommendations.append(Recommendation(
            type=RecommendationType.LOW_OCR_QUALITY,
            priority="medium",
            message=f"Text extraction quality is low ({ocr_confidence:.0f}%). Verify the extracted data.",
            action_required=True,
        ))

    if pattern_result is not None:
        if pattern_result.validation_warnings:
            recommendations.append(Recommendation(
                type=RecommendationType.DATA_INCONSISTENCY,
                priority="medium",
                message="Inconsistencies were found in the extracted data.",
                action_required=True,
                details=list(pattern_result.validation_warnings),
            ))

        end_date = pattern_result.selected.end_date
        if pattern_result.tacit_renewal_detected and end_date:
            recommendations.append(Recommendation(
                type=RecommendationType.SCHEDULE_ALERT,
                priority="low",
                message=f"Schedule a reminder ahead of the renewal on {end_date.value.isoformat()}.",
                action_required=False,
            ))

    return recommendations


def consolidate(extraction: ExtractionResult, pattern_result: Optional[PatternResult],
                config: Optional[PipelineConfig] = None) -> ConsolidationResult:
    """
    Combine extraction and pattern analysis.

    Args:
        extraction: Text extraction result (confidence 0-100)
        pattern_result: Pattern analysis, or None when it was unavailable
        config: Pipeline tunables

    Returns:
        ConsolidationResult with the combined confidence, the canonical update
        and the recommendations
    """
    config = config or PipelineConfig()
    pattern_confidence = pattern_result.confidence_score if pattern_result else 0.0
    combined = final_confidence(extraction.confidence, pattern_confidence, config)

    if pattern_result is not None:
        updates = commit_candidates(pattern_result.selected, config.commit_threshold, config.default_currency)
    else:
        updates = CanonicalUpdate()

    recommendations = build_recommendations(extraction.confidence, pattern_result, config)
    logger.info(
        f"Consolidation: final_confidence={combined}, committed={sorted(updates.values)}, "
        f"recommendations={len(recommendations)}"
    )
    return ConsolidationResult(
        final_confidence=combined,
        updates=updates,
        recommendations=recommendations,
    )
