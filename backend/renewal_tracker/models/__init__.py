# This file makes Python treat the 'models' directory as a package.

# Expose SQLAlchemy models at the package level
from .models import (
    AlertEvent,
    AlertStatus,
    AlertType,
    Base,
    ContractRecord,
    ContractStatus,
    CreditLedger,
    ProcessingMode,
    ProcessingStatus,
)

__all__ = [
    "AlertEvent",
    "AlertStatus",
    "AlertType",
    "Base",
    "ContractRecord",
    "ContractStatus",
    "CreditLedger",
    "ProcessingMode",
    "ProcessingStatus",
]
