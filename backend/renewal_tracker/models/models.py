from enum import Enum

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, JSON, String,
    Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingMode(str, Enum):
    PATTERN_ONLY = "pattern_only"
    AI_ENHANCED = "ai_enhanced"


class ContractStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class AlertType(str, Enum):
    RENEWAL_WARNING = "renewal_warning"
    NOTICE_DEADLINE = "notice_deadline"
    CONTRACT_EXPIRED = "contract_expired"
    RENEWAL = "renewal"
    EXPIRY = "expiry"
    CUSTOM = "custom"


class AlertStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"


class ContractRecord(Base):
    __tablename__ = "contracts"

    id = Column(String(36), primary_key=True, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    file_path = Column(String, nullable=True)
    file_original_name = Column(String(255), nullable=True)

    # Canonical fields, only written from candidates above the commit threshold
    amount = Column(Float, nullable=True)  # Annualised amount
    currency = Column(String(3), nullable=False, default="EUR")
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    next_renewal_date = Column(Date, nullable=True, index=True)
    notice_period_days = Column(Integer, nullable=True)
    is_tacit_renewal = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=ContractStatus.ACTIVE.value)

    # Pipeline state
    ocr_status = Column(String(20), nullable=False, default=ProcessingStatus.PENDING.value)
    ai_status = Column(String(20), nullable=False, default=ProcessingStatus.PENDING.value)
    processing_mode = Column(String(20), nullable=False, default=ProcessingMode.PATTERN_ONLY.value)
    ocr_text = Column(Text, nullable=True)
    ocr_metadata = Column(JSON, nullable=True)
    pattern_result = Column(JSON, nullable=True)  # Versioned PatternResult payload
    pattern_confidence = Column(Float, nullable=True)
    tacit_renewal_detected_by_pattern = Column(Boolean, nullable=True)
    recommendations = Column(JSON, nullable=True)
    ai_analysis = Column(JSON, nullable=True)  # Versioned SemanticAnalysis payload
    ai_analysis_cached = Column(JSON, nullable=True)
    ai_analysis_cached_at = Column(DateTime(timezone=True), nullable=True)
    ai_error = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    alerts = relationship("AlertEvent", back_populates="contract", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<ContractRecord(id='{self.id}', ocr_status='{self.ocr_status}', ai_status='{self.ai_status}')>"


class AlertEvent(Base):
    __tablename__ = "alerts"

    id = Column(String(36), primary_key=True, index=True)
    contract_id = Column(String(36), ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(30), nullable=False)
    scheduled_for = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default=AlertStatus.PENDING.value)
    notification_method = Column(String(20), nullable=False, default="email")
    message = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    contract = relationship("ContractRecord", back_populates="alerts")

    __table_args__ = (
        UniqueConstraint("contract_id", "type", "scheduled_for", name="uq_alert_contract_type_date"),
    )


class CreditLedger(Base):
    __tablename__ = "credit_ledgers"

    user_id = Column(String(36), primary_key=True)
    plan = Column(String(20), nullable=False, default="basic")
    remaining = Column(Integer, nullable=False, default=0)
    monthly_limit = Column(Integer, nullable=False, default=0)
    purchased = Column(Integer, nullable=False, default=0)
    used_this_month = Column(Integer, nullable=False, default=0)
    total_used = Column(Integer, nullable=False, default=0)
    reset_date = Column(Date, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
