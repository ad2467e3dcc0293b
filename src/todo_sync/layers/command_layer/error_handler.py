"""
エラー分類 - コマンド結果に載せるエラータイプ
"""

from enum import Enum

from ...core.exceptions import (
    InvalidTransitionError, NoIdentityError, NotFoundError,
    StorageError, TransportError, ValidationError,
)


class ErrorType(Enum):
    """エラータイプ分類"""
    STORAGE_ERROR = "storage_error"
    NOT_FOUND = "not_found"
    TRANSPORT_ERROR = "transport_error"
    NO_IDENTITY = "no_identity"
    VALIDATION_ERROR = "validation_error"
    INVALID_TRANSITION = "invalid_transition"
    UNKNOWN_ERROR = "unknown_error"


ERROR_TYPES = (
    (StorageError, ErrorType.STORAGE_ERROR),
    (NotFoundError, ErrorType.NOT_FOUND),
    (TransportError, ErrorType.TRANSPORT_ERROR),
    (NoIdentityError, ErrorType.NO_IDENTITY),
    (ValidationError, ErrorType.VALIDATION_ERROR),
    (InvalidTransitionError, ErrorType.INVALID_TRANSITION),
)


def classify_error(error: Exception) -> ErrorType:
    """例外をエラータイプに分類"""
    for exception_type, error_type in ERROR_TYPES:
        if isinstance(error, exception_type):
            return error_type
    return ErrorType.UNKNOWN_ERROR
