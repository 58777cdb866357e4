from app.services.auth_service import create_access_token, decode_access_token, get_or_create_user
from app.services.credit_service import (
    CreditLedger, InsufficientCreditError, StorageConflictError, get_credit_ledger,
)
from app.services.memory_extractor import (
    MemoryCandidate, MemoryExtractor, RegexSensitiveDataDetector, SensitiveDataDetector,
    extract, get_memory_extractor,
)
from app.services.memory_service import MemoryService
from app.services.pricing import calculate_credit_cost, calculate_actual_cost, format_credits

__all__ = [
    "create_access_token",
    "decode_access_token",
    "get_or_create_user",
    # Ledger
    "CreditLedger",
    "InsufficientCreditError",
    "StorageConflictError",
    "get_credit_ledger",
    "calculate_credit_cost",
    "calculate_actual_cost",
    "format_credits",
    # Memories
    "MemoryCandidate",
    "MemoryExtractor",
    "RegexSensitiveDataDetector",
    "SensitiveDataDetector",
    "extract",
    "get_memory_extractor",
    "MemoryService",
]
