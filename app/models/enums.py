"""
Python enums matching PostgreSQL enum types.
Names and values MUST match the DB DDL exactly.
"""

from enum import Enum


class SessionStatus(str, Enum):
    INITIATED = "initiated"
    ANALYZING = "analyzing"
    MAPPING = "mapping"
    MAPPING_COMPLETE = "mapping_complete"
    GENERATING_PREVIEW = "generating_preview"
    PREVIEW_READY = "preview_ready"
    AWAITING_APPROVAL = "awaiting_approval"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


TERMINAL_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.CANCELLED,
    SessionStatus.TIMEOUT,
})


class StrategyKind(str, Enum):
    """Field mapping strategies, in tie-break priority order."""
    EXACT = "exact"
    HISTORICAL = "historical"
    STATISTICAL = "statistical"
    FUZZY = "fuzzy"
    EXTERNAL = "external"


class DataType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    JSON = "json"


class SemanticType(str, Enum):
    CURRENCY = "currency"
    PERCENTAGE = "percentage"
    EMAIL = "email"
    URL = "url"
    PHONE = "phone"
    DATE = "date"
    SKU = "sku"
    BARCODE = "barcode"
    IMAGE = "image"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class FixType(str, Enum):
    STRIP_CURRENCY = "strip_currency"
    ABSOLUTE_VALUE = "absolute_value"
    COERCE_STRING = "coerce_string"
    DEFAULT_ZERO = "default_zero"
    NORMALIZE_EMAIL = "normalize_email"
    NORMALIZE_DATE = "normalize_date"
    TRIM_WHITESPACE = "trim_whitespace"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ApprovalType(str, Enum):
    IMPORT_APPROVAL = "import_approval"
    MAPPING_REVIEW = "mapping_review"
    DATA_QUALITY = "data_quality"
    SECURITY_REVIEW = "security_review"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    TIMEOUT = "timeout"


class DecisionType(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    ESCALATE = "escalate"
    DELEGATE = "delegate"


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RecordOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class EventType(str, Enum):
    PROGRESS = "progress"
    ERROR = "error"
    COMPLETE = "complete"
