import os
from pathlib import Path
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings
from typing import Dict, Set, Tuple

# Load environment variables
load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
CONTRACTS_DIR = DATA_DIR / "contracts"
TEMP_DIR = DATA_DIR / "temp"
LOGS_DIR = DATA_DIR / "logs"

# Ensure directories exist
CONTRACTS_DIR.mkdir(parents=True, exist_ok=True)
TEMP_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)


class PipelineConfig(BaseModel):
    """Tunables passed explicitly into every pipeline function."""

    model_config = ConfigDict(frozen=True)

    # Consolidation
    commit_threshold: float = 0.7
    ocr_weight: float = 0.6
    pattern_weight: float = 0.4
    low_ocr_confidence: float = 70.0

    # Pattern analysis
    detection_threshold: float = 0.3
    explicit_weight: int = 3
    implicit_weight: int = 2
    termination_weight: int = 1
    candidate_floors: Dict[str, float] = {
        "date": 0.7,
        "amount": 0.7,
        "duration": 0.7,
    }
    amount_tolerance: float = 0.15
    notice_period_window: Tuple[int, int] = (1, 365)
    contract_duration_window: Tuple[int, int] = (1, 3650)
    amount_window: Tuple[float, float] = (0.0, 1_000_000.0)
    context_window_chars: int = 80
    default_currency: str = "EUR"

    # AI analysis
    ai_cache_ttl_days: int = 30
    ai_max_attempts: int = 2
    ai_retry_base_delay: float = 1.0
    ai_timeout_seconds: float = 120.0
    ai_min_ocr_confidence: float = 60.0
    ai_breaker_failure_threshold: int = 5
    ai_breaker_recovery_seconds: float = 60.0
    ai_breaker_success_threshold: int = 3

    # Extraction
    extraction_timeout_seconds: float = 600.0

    # Recovery
    stuck_processing_minutes: int = 120

    # Credits
    plan_monthly_credits: Dict[str, int] = {"basic": 10, "premium": 30}
    max_credit_purchase: int = 100


class Settings(BaseSettings):
    # API Configuration
    PROJECT_NAME: str = "Renewal Tracker"
    API_PREFIX: str = "/api/v1"

    # File upload settings
    ALLOWED_EXTENSIONS_STR: str = "pdf,png,jpg,jpeg,txt"
    MAX_CONTENT_LENGTH: int = 16 * 1024 * 1024  # 16MB

    # Gemini configuration
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
    AI_MAX_INPUT_CHARS: int = 8000

    # Pipeline thresholds
    CONFIDENCE_THRESHOLD: float = float(os.getenv("CONFIDENCE_THRESHOLD", "0.7"))
    OCR_WEIGHT: float = 0.6
    PATTERN_WEIGHT: float = 0.4
    LOW_OCR_CONFIDENCE: float = 70.0
    TACIT_DETECTION_THRESHOLD: float = 0.3
    AMOUNT_TOLERANCE_PERCENT: float = 0.15
    DEFAULT_CURRENCY: str = "EUR"

    # Task timeouts and retries
    EXTRACTION_TIMEOUT_SECONDS: float = 600.0
    AI_TIMEOUT_SECONDS: float = 120.0
    AI_MAX_ATTEMPTS: int = 2
    AI_RETRY_BASE_DELAY: float = 1.0
    AI_CACHE_TTL_DAYS: int = 30
    AUTO_AI_AFTER_OCR: bool = False
    AI_MIN_OCR_CONFIDENCE: float = 60.0
    AI_BREAKER_FAILURE_THRESHOLD: int = 5
    AI_BREAKER_RECOVERY_SECONDS: float = 60.0
    STUCK_PROCESSING_MINUTES: int = 120

    # Credits
    BASIC_MONTHLY_CREDITS: int = 10
    PREMIUM_MONTHLY_CREDITS: int = 30
    MAX_CREDIT_PURCHASE: int = 100

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./renewal_tracker.db"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = str(LOGS_DIR / "renewal_tracker.log")

    @property
    def ALLOWED_EXTENSIONS(self) -> Set[str]:
        return set(self.ALLOWED_EXTENSIONS_STR.split(","))

    @property
    def ai_engine_configured(self) -> bool:
        return bool(self.GEMINI_API_KEY)

    def pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            commit_threshold=self.CONFIDENCE_THRESHOLD,
            ocr_weight=self.OCR_WEIGHT,
            pattern_weight=self.PATTERN_WEIGHT,
            low_ocr_confidence=self.LOW_OCR_CONFIDENCE,
            detection_threshold=self.TACIT_DETECTION_THRESHOLD,
            amount_tolerance=self.AMOUNT_TOLERANCE_PERCENT,
            default_currency=self.DEFAULT_CURRENCY,
            ai_cache_ttl_days=self.AI_CACHE_TTL_DAYS,
            ai_max_attempts=self.AI_MAX_ATTEMPTS,
            ai_retry_base_delay=self.AI_RETRY_BASE_DELAY,
            ai_timeout_seconds=self.AI_TIMEOUT_SECONDS,
            ai_min_ocr_confidence=self.AI_MIN_OCR_CONFIDENCE,
            ai_breaker_failure_threshold=self.AI_BREAKER_FAILURE_THRESHOLD,
            ai_breaker_recovery_seconds=self.AI_BREAKER_RECOVERY_SECONDS,
            extraction_timeout_seconds=self.EXTRACTION_TIMEOUT_SECONDS,
            stuck_processing_minutes=self.STUCK_PROCESSING_MINUTES,
            plan_monthly_credits={
                "basic": self.BASIC_MONTHLY_CREDITS,
                "premium": self.PREMIUM_MONTHLY_CREDITS,
            },
            max_credit_purchase=self.MAX_CREDIT_PURCHASE,
        )

    class Config:
        env_file = os.path.join(BASE_DIR, ".env")
        env_file_encoding = "utf-8"
        extra = "ignore"

# Create settings instance
settings = Settings()
