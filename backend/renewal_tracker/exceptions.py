"""
Domain exception classes
"""
from enum import Enum


class RenewalTrackerError(Exception):
    """Base class for pipeline errors"""


class ContractNotFoundError(RenewalTrackerError):
    """Raised when a contract doesn't exist"""
    def __init__(self, contract_id: str):
        self.contract_id = contract_id
        super().__init__(f"Contract {contract_id} not found")


class ExtractionError(RenewalTrackerError):
    """Raised when the text extractor fails or times out"""


class PatternAnalysisError(RenewalTrackerError):
    """Raised when the rule engine hits an internal fault"""


class AIErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    QUOTA = "quota"
    TRANSIENT = "transient"
    INVALID_RESPONSE = "invalid_response"
    UNAVAILABLE = "unavailable"


class AIServiceError(RenewalTrackerError):
    """Raised by the semantic engine boundary, tagged with an explicit kind"""
    def __init__(self, message: str, kind: AIErrorKind = AIErrorKind.TRANSIENT):
        self.kind = kind
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind == AIErrorKind.TRANSIENT


class InsufficientCreditsError(RenewalTrackerError):
    """Raised when a user has no AI credit left"""
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"No AI credits remaining for user {user_id}")
