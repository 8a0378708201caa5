"""
同期層 - WebDAVリモートとの双方向同期を管理
"""

from .conflict_resolver import ConflictDetector, ConflictDetectionResult
from .error_handler import (
    SyncErrorType, SyncError, ConfigInvalidError, SyncInProgressError,
    NetworkError, classify_error, error_response
)
from .remote_service import RemoteSyncService
from .webdav_client import WebDAVSyncService, WebDAVError

__all__ = [
    'ConflictDetector', 'ConflictDetectionResult',
    'SyncErrorType', 'SyncError', 'ConfigInvalidError', 'SyncInProgressError',
    'NetworkError', 'classify_error', 'error_response',
    'RemoteSyncService',
    'WebDAVSyncService', 'WebDAVError'
]
