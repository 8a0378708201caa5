"""
同期エラーの分類とレスポンス変換
"""

import asyncio
import logging
from enum import Enum
from typing import Dict, Optional, Any

import aiohttp

logger = logging.getLogger(__name__)


class SyncErrorType(Enum):
    """エラータイプ分類"""
    CONFIG_INVALID = "ConfigInvalid"
    SYNC_IN_PROGRESS = "SyncInProgress"
    NETWORK_ERROR = "NetworkError"
    CONFLICT_DETECTED = "ConflictDetected"
    UNKNOWN = "Unknown"


DEFAULT_MESSAGES: Dict[SyncErrorType, str] = {
    SyncErrorType.CONFIG_INVALID: "WebDAV configuration is missing or invalid",
    SyncErrorType.SYNC_IN_PROGRESS: "A sync operation is already in progress",
    SyncErrorType.NETWORK_ERROR: "Remote server request failed",
    SyncErrorType.CONFLICT_DETECTED: "Local and remote data conflict",
    SyncErrorType.UNKNOWN: "Unexpected error",
}


class SyncError(Exception):
    """同期エラー基底クラス"""
    error_type = SyncErrorType.UNKNOWN

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or DEFAULT_MESSAGES[self.error_type])


class ConfigInvalidError(SyncError):
    error_type = SyncErrorType.CONFIG_INVALID


class SyncInProgressError(SyncError):
    error_type = SyncErrorType.SYNC_IN_PROGRESS


class NetworkError(SyncError):
    error_type = SyncErrorType.NETWORK_ERROR


def classify_error(error: BaseException) -> SyncErrorType:
    """エラーを分類してタイプを返す"""
    if isinstance(error, SyncError):
        return error.error_type

    if isinstance(error, (aiohttp.ClientError, ConnectionError, asyncio.TimeoutError, TimeoutError)):
        return SyncErrorType.NETWORK_ERROR

    error_message = str(error).lower()
    if any(keyword in error_message for keyword in ['connection', 'timeout', 'network']):
        return SyncErrorType.NETWORK_ERROR

    return SyncErrorType.UNKNOWN


def error_response(error: BaseException, **extra: Any) -> Dict[str, Any]:
    """例外をUI向けレスポンスに変換"""
    error_type = classify_error(error)
    return {
        'success': False,
        'error': error_type.value,
        'message': str(error) or DEFAULT_MESSAGES[error_type],
        **extra
    }


class ErrorHandler:
    """エラー集計とレスポンス変換"""

    def __init__(self):
        self.error_counts: Dict[SyncErrorType, int] = {}

    def handle_error(self, error: BaseException, operation: str = "unknown") -> Dict[str, Any]:
        error_type = classify_error(error)
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        # 競合中の実行拒否は通常動作
        if error_type == SyncErrorType.SYNC_IN_PROGRESS:
            logger.info(f"{operation} rejected: {error}")
        elif error_type == SyncErrorType.UNKNOWN:
            logger.exception(f"{operation} failed with unexpected error: {error}", exc_info=error)
        else:
            logger.warning(f"{operation} failed ({error_type.value}): {error}")

        return error_response(error)

    def get_error_counts(self) -> Dict[str, int]:
        return {error_type.value: count for error_type, count in self.error_counts.items()}
