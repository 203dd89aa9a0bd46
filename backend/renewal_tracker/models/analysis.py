from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator

PATTERN_SCHEMA_VERSION = 1
SEMANTIC_SCHEMA_VERSION = 1


def _parse_iso_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.strptime(value.strip(), "%Y-%m-%d").date()
        except ValueError:
            return None
    return None


class ExtractionMethod(str, Enum):
    NATIVE_TEXT = "native_text"
    GEMINI_VISION = "gemini_vision"


class ExtractionResult(BaseModel):
    text: str
    confidence: float = Field(ge=0.0, le=100.0)
    method: ExtractionMethod
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------

class Candidate(BaseModel):
    confidence: float = Field(ge=0.0, le=1.0)
    source_span: Optional[Tuple[int, int]] = None
    source_text: Optional[str] = None


class DateCandidate(Candidate):
    kind: Literal["date"] = "date"
    field: Literal["start_date", "end_date", "renewal_date"]
    value: date


class AmountCandidate(Candidate):
    kind: Literal["amount"] = "amount"
    field: Literal["monthly_amount", "annual_amount", "total_amount"]
    value: float
    currency: Optional[str] = None


class DurationCandidate(Candidate):
    kind: Literal["duration"] = "duration"
    field: Literal["notice_period", "contract_duration"]
    days: int
    original_value: Optional[int] = None
    original_unit: Optional[str] = None


class FlagCandidate(Candidate):
    kind: Literal["flag"] = "flag"
    field: Literal["tacit_renewal"] = "tacit_renewal"
    value: bool


PatternCandidate = Annotated[
    Union[DateCandidate, AmountCandidate, DurationCandidate, FlagCandidate],
    Field(discriminator="kind"),
]


class SelectedCandidates(BaseModel):
    """At most one candidate per field; the only input to commit decisions."""
    tacit_renewal: Optional[FlagCandidate] = None
    start_date: Optional[DateCandidate] = None
    end_date: Optional[DateCandidate] = None
    renewal_date: Optional[DateCandidate] = None
    monthly_amount: Optional[AmountCandidate] = None
    annual_amount: Optional[AmountCandidate] = None
    notice_period: Optional[DurationCandidate] = None
    contract_duration: Optional[DurationCandidate] = None


# ---------------------------------------------------------------------------
# Pattern analysis result
# ---------------------------------------------------------------------------

class PatternMatch(BaseModel):
    type: Literal["explicit_tacit_renewal", "implicit_tacit_renewal", "termination_condition"]
    pattern: str
    match: str
    source_span: Optional[Tuple[int, int]] = None
    confidence: float


class ExtractedData(BaseModel):
    start_dates: List[DateCandidate] = Field(default_factory=list)
    end_dates: List[DateCandidate] = Field(default_factory=list)
    renewal_dates: List[DateCandidate] = Field(default_factory=list)
    monthly_amount: List[AmountCandidate] = Field(default_factory=list)
    annual_amount: List[AmountCandidate] = Field(default_factory=list)
    total_amount: List[AmountCandidate] = Field(default_factory=list)
    notice_periods: List[DurationCandidate] = Field(default_factory=list)
    contract_durations: List[DurationCandidate] = Field(default_factory=list)
    notice_period_days: Optional[int] = None


class PatternResult(BaseModel):
    schema_version: int = PATTERN_SCHEMA_VERSION
    tacit_renewal_detected: bool = False
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)
    patterns_matched: List[PatternMatch] = Field(default_factory=list)
    extracted_data: ExtractedData = Field(default_factory=ExtractedData)
    selected: SelectedCandidates = Field(default_factory=SelectedCandidates)
    validation_warnings: List[str] = Field(default_factory=list)
    data_quality_score: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_stored(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_stored(cls, payload: Optional[Dict[str, Any]]) -> Optional["PatternResult"]:
        """Load a stored payload, upgrading unversioned ones."""
        if not payload:
            return None
        if payload.get("schema_version") is None:
            payload = _upgrade_pattern_v0(payload)
        return cls.model_validate(payload)


def _upgrade_pattern_v0(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Version 0 stored raw lists of {date|amount|days, confidence, source_text} maps."""
    data = payload.get("extracted_data") or {}

    def dates(key, field):
        return [
            {"field": field, "value": item.get("date"), "confidence": item.get("confidence", 0.0),
             "source_text": item.get("source_text")}
            for item in data.get(key) or []
            if item.get("date")
        ]

    def amounts(key, field):
        return [
            {"field": field, "value": item.get("amount"), "confidence": item.get("confidence", 0.0),
             "source_text": item.get("source_text")}
            for item in data.get(key) or []
            if item.get("amount") is not None
        ]

    def durations(key, field):
        return [
            {"field": field, "days": item.get("days"), "original_value": item.get("original_value"),
             "original_unit": item.get("original_unit"), "confidence": item.get("confidence", 0.0),
             "source_text": item.get("source_text")}
            for item in data.get(key) or []
            if item.get("days")
        ]

    extracted = {
        "start_dates": dates("start_dates", "start_date"),
        "end_dates": dates("end_dates", "end_date"),
        "renewal_dates": dates("renewal_dates", "renewal_date"),
        "monthly_amount": amounts("monthly_amount", "monthly_amount"),
        "annual_amount": amounts("annual_amount", "annual_amount"),
        "total_amount": amounts("total_amount", "total_amount"),
        "notice_periods": durations("notice_period", "notice_period"),
        "contract_durations": durations("contract_duration", "contract_duration"),
        "notice_period_days": data.get("notice_period_days"),
    }

    # Version 0 consolidation always took the first entry of each list
    selected = {
        "start_date": (extracted["start_dates"] or [None])[0],
        "end_date": (extracted["end_dates"] or [None])[0],
        "renewal_date": (extracted["renewal_dates"] or [None])[0],
        "monthly_amount": (extracted["monthly_amount"] or [None])[0],
        "annual_amount": (extracted["annual_amount"] or [None])[0],
        "notice_period": (extracted["notice_periods"] or [None])[0],
        "contract_duration": (extracted["contract_durations"] or [None])[0],
        "tacit_renewal": {
            "value": bool(payload.get("tacit_renewal_detected")),
            "confidence": payload.get("confidence_score", 0.0),
        },
    }

    matches = [
        {"type": m.get("type"), "pattern": m.get("pattern", ""), "match": m.get("match", ""),
         "confidence": m.get("confidence", 0.0)}
        for m in payload.get("patterns_matched") or []
        if m.get("type") in ("explicit_tacit_renewal", "implicit_tacit_renewal", "termination_condition")
    ]

    return {
        "schema_version": PATTERN_SCHEMA_VERSION,
        "tacit_renewal_detected": bool(payload.get("tacit_renewal_detected")),
        "confidence_score": payload.get("confidence_score", 0.0),
        "patterns_matched": matches,
        "extracted_data": extracted,
        "selected": selected,
        "validation_warnings": payload.get("validation_warnings") or [],
        "metadata": payload.get("metadata") or {},
    }


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------

class RecommendationType(str, Enum):
    TACIT_RENEWAL_WARNING = "tacit_renewal_warning"
    TACIT_RENEWAL_CHECK = "tacit_renewal_check"
    LOW_OCR_QUALITY = "low_ocr_quality"
    DATA_INCONSISTENCY = "data_inconsistency"
    SCHEDULE_ALERT = "schedule_alert"
    MANUAL_VERIFICATION = "manual_verification"


class Recommendation(BaseModel):
    type: RecommendationType
    priority: Literal["high", "medium", "low"]
    message: str
    action_required: bool = False
    details: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Semantic (AI) analysis
# ---------------------------------------------------------------------------

_LEGACY_FREQUENCIES = {
    "mensuel": "monthly",
    "annuel": "annual",
    "trimestriel": "quarterly",
    "autre": "other",
}


class SemanticAnalysis(BaseModel):
    schema_version: int = SEMANTIC_SCHEMA_VERSION
    contract_type: Optional[str] = "other"
    is_tacit_renewal: bool = False
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    notice_period_days: Optional[int] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    payment_frequency: Optional[str] = None
    termination_conditions: List[str] = Field(default_factory=list)
    key_clauses: List[str] = Field(default_factory=list)
    confidence_score: float = 0.5
    field_confidences: Dict[str, float] = Field(default_factory=dict)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def parse_dates(cls, value):
        return _parse_iso_date(value)

    @field_validator("notice_period_days", mode="before")
    @classmethod
    def parse_notice(cls, value):
        if value is None:
            return None
        try:
            days = int(value)
        except (ValueError, TypeError):
            return None
        return days if days > 0 else None

    @field_validator("amount", mode="before")
    @classmethod
    def parse_amount(cls, value):
        if value is None:
            return None
        try:
            amount = float(value)
        except (ValueError, TypeError):
            return None
        return amount if amount > 0 else None

    @field_validator("confidence_score", mode="before")
    @classmethod
    def clamp_confidence(cls, value):
        try:
            return max(0.0, min(1.0, float(value)))
        except (ValueError, TypeError):
            return 0.0

    @field_validator("field_confidences", mode="before")
    @classmethod
    def clamp_field_confidences(cls, value):
        if not isinstance(value, dict):
            return {}
        cleaned = {}
        for key, raw in value.items():
            try:
                cleaned[key] = max(0.0, min(1.0, float(raw)))
            except (ValueError, TypeError):
                continue
        return cleaned

    @field_validator("termination_conditions", "key_clauses", mode="before")
    @classmethod
    def ensure_list(cls, value):
        if not isinstance(value, list):
            return []
        return [str(item) for item in value if item]

    @field_validator("payment_frequency", mode="before")
    @classmethod
    def normalize_frequency(cls, value):
        if not isinstance(value, str):
            return None
        value = value.strip().lower()
        return _LEGACY_FREQUENCIES.get(value, value)

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, value):
        if not isinstance(value, str) or not value.strip():
            return None
        return value.strip().upper()[:3]

    def field_confidence(self, name: str) -> float:
        return self.field_confidences.get(name, self.confidence_score)

    def to_selected(self, default_currency: str = "EUR") -> SelectedCandidates:
        """Express the analysis as candidates so the common commit rule applies."""
        selected = SelectedCandidates(
            tacit_renewal=FlagCandidate(
                value=self.is_tacit_renewal,
                confidence=self.field_confidence("is_tacit_renewal"),
            )
        )
        if self.start_date:
            selected.start_date = DateCandidate(
                field="start_date", value=self.start_date,
                confidence=self.field_confidence("start_date"),
            )
        if self.end_date:
            selected.end_date = DateCandidate(
                field="end_date", value=self.end_date,
                confidence=self.field_confidence("end_date"),
            )
        if self.notice_period_days:
            selected.notice_period = DurationCandidate(
                field="notice_period", days=self.notice_period_days,
                original_value=self.notice_period_days, original_unit="days",
                confidence=self.field_confidence("notice_period_days"),
            )
        if self.amount:
            currency = self.currency or default_currency
            confidence = self.field_confidence("amount")
            if self.payment_frequency == "monthly":
                selected.monthly_amount = AmountCandidate(
                    field="monthly_amount", value=self.amount, currency=currency, confidence=confidence,
                )
            elif self.payment_frequency == "quarterly":
                selected.annual_amount = AmountCandidate(
                    field="annual_amount", value=round(self.amount * 4, 2), currency=currency,
                    confidence=confidence,
                )
            else:
                selected.annual_amount = AmountCandidate(
                    field="annual_amount", value=self.amount, currency=currency, confidence=confidence,
                )
        return selected

    def to_stored(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_stored(cls, payload: Optional[Dict[str, Any]]) -> Optional["SemanticAnalysis"]:
        """Load a stored payload, upgrading unversioned ones."""
        if not payload:
            return None
        if payload.get("schema_version") is None:
            payload = _upgrade_semantic_v0(payload)
        return cls.model_validate(payload)


def _upgrade_semantic_v0(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Version 0 payloads used French keys from the first prompt revision."""
    legacy_keys = {
        "type_contrat": "contract_type",
        "reconduction_tacite": "is_tacit_renewal",
        "date_debut": "start_date",
        "date_fin": "end_date",
        "preavis_resiliation_jours": "notice_period_days",
        "montant": "amount",
        "frequence_paiement": "payment_frequency",
        "conditions_resiliation": "termination_conditions",
        "clauses_importantes": "key_clauses",
        "confidence": "confidence_score",
    }
    upgraded = {}
    for key, value in payload.items():
        upgraded[legacy_keys.get(key, key)] = value
    if upgraded.get("contract_type") == "autre":
        upgraded["contract_type"] = "other"
    upgraded["schema_version"] = SEMANTIC_SCHEMA_VERSION
    known = set(SemanticAnalysis.model_fields)
    return {key: value for key, value in upgraded.items() if key in known}
