from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .analysis import Recommendation, SemanticAnalysis


class ContractResponse(BaseModel):
    id: str
    user_id: str
    title: str
    file_original_name: Optional[str] = None
    amount: Optional[float] = None
    currency: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    next_renewal_date: Optional[date] = None
    notice_period_days: Optional[int] = None
    is_tacit_renewal: bool
    status: str
    ocr_status: str
    ai_status: str
    processing_mode: str
    pattern_confidence: Optional[float] = None
    tacit_renewal_detected_by_pattern: Optional[bool] = None
    recommendations: Optional[List[Recommendation]] = None
    ocr_metadata: Optional[Dict[str, Any]] = None
    ai_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ContractStatusResponse(BaseModel):
    id: str
    ocr_status: str
    ai_status: str
    has_ocr_text: bool
    has_ai_analysis: bool
    updated_at: Optional[datetime] = None


class AlertResponse(BaseModel):
    id: str
    contract_id: str
    type: str
    scheduled_for: date
    status: str
    notification_method: str
    message: Optional[str] = None
    sent_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AnalysisResponse(BaseModel):
    status: str
    from_cache: bool = False
    has_cached_analysis: bool = False
    credits_remaining: Optional[int] = None
    analysis: Optional[SemanticAnalysis] = None
    error: Optional[str] = None


class ProcessingResponse(BaseModel):
    id: str
    accepted: bool
    message: str


class CreditsInfo(BaseModel):
    plan: str
    remaining: int
    monthly_limit: int
    purchased: int
    used_this_month: int
    total_used: int
    reset_date: date
    can_use_ai: bool
    needs_upgrade: bool


class PurchaseRequest(BaseModel):
    credits: int = Field(ge=1)
