"""データモデル定義"""

import hashlib
import json
import re
import time
import uuid
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any


# 同期データのスキーマバージョン
SCHEMA_VERSION = "2.0.0"

URL_PATTERN = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in data.items() if key in names}


def generate_device_id() -> str:
    """インストール単位のデバイスID生成"""
    return f"device_{uuid.uuid4().hex[:12]}"


class SyncStatus(Enum):
    """同期ステータス"""
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"
    CONFLICT = "conflict"


class TaskKind(Enum):
    """同期タスク種別"""
    MANUAL = "manual"
    AUTO = "auto"
    UPLOAD = "upload"
    DOWNLOAD = "download"


class ConflictKind(Enum):
    """競合タイプ"""
    DATA_CONFLICT = "data_conflict"
    TIMESTAMP_CONFLICT = "timestamp_conflict"
    HASH_MISMATCH = "hash_mismatch"


class ConflictResolution(Enum):
    """競合解決戦略"""
    MANUAL = "manual"
    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    MERGE = "merge"


class SyncEventType(Enum):
    """自動同期イベント種別"""
    DATA_CHANGED = "data_changed"
    TAB_OPENED = "tab_opened"


@dataclass
class WebDAVConfig:
    """WebDAVサーバー設定"""
    server_url: str = ""
    username: str = ""
    password: str = ""
    sync_path: str = "/DualTab"
    enabled: bool = False
    auto_sync_interval: Optional[int] = 30  # 分

    def validate(self) -> List[str]:
        """設定値の検証（エラーメッセージのリストを返す）"""
        errors = []
        server_url = (self.server_url or "").strip()
        if not server_url:
            errors.append("server_url is required")
        elif not URL_PATTERN.match(server_url):
            errors.append(f"server_url is not a valid http(s) URL: {server_url}")

        if not (self.username or "").strip():
            errors.append("username is required")

        if self.sync_path and not self.sync_path.startswith("/"):
            errors.append("sync_path must start with '/'")

        if self.auto_sync_interval is not None and self.auto_sync_interval < 0:
            errors.append("auto_sync_interval must not be negative")

        return errors

    def is_valid(self) -> bool:
        return not self.validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebDAVConfig":
        return cls(**_known_fields(cls, data))


@dataclass
class SyncTask:
    """同期タスク（1回のコーディネーター操作内でのみ存在）"""
    id: str
    kind: TaskKind
    options: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    retry_count: int = 0

    @classmethod
    def create(cls, kind: TaskKind, options: Optional[Dict[str, Any]] = None) -> "SyncTask":
        task_id = f"{kind.value}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:4]}"
        return cls(id=task_id, kind=kind, options=dict(options or {}))


@dataclass
class SyncStatusRecord:
    """永続化される同期ステータス"""
    status: SyncStatus = SyncStatus.IDLE
    message: Optional[str] = None
    timestamp: Optional[datetime] = None
    task_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'message': self.message,
            'timestamp': to_iso(self.timestamp),
            'task_id': self.task_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncStatusRecord":
        return cls(
            status=SyncStatus(data.get('status', 'idle')),
            message=data.get('message'),
            timestamp=from_iso(data.get('timestamp')),
            task_id=data.get('task_id'),
        )


@dataclass
class ConflictInfo:
    """競合情報"""
    kind: ConflictKind
    local_data: Any
    remote_data: Any
    local_timestamp: Optional[datetime] = None
    remote_timestamp: Optional[datetime] = None
    conflict_time: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'local_data': self.local_data,
            'remote_data': self.remote_data,
            'local_timestamp': to_iso(self.local_timestamp),
            'remote_timestamp': to_iso(self.remote_timestamp),
            'conflict_time': to_iso(self.conflict_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConflictInfo":
        return cls(
            kind=ConflictKind(data['kind']),
            local_data=data.get('local_data'),
            remote_data=data.get('remote_data'),
            local_timestamp=from_iso(data.get('local_timestamp')),
            remote_timestamp=from_iso(data.get('remote_timestamp')),
            conflict_time=from_iso(data.get('conflict_time')) or datetime.now(),
        )


@dataclass
class SyncMetadata:
    """同期メタデータ（device_idはインストール期間中不変）"""
    device_id: str
    version: str = SCHEMA_VERSION
    last_sync_time: Optional[datetime] = None
    total_syncs: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'device_id': self.device_id,
            'version': self.version,
            'last_sync_time': to_iso(self.last_sync_time),
            'total_syncs': self.total_syncs,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncMetadata":
        return cls(
            device_id=data['device_id'],
            version=data.get('version', SCHEMA_VERSION),
            last_sync_time=from_iso(data.get('last_sync_time')),
            total_syncs=int(data.get('total_syncs', 0)),
        )


@dataclass
class AutoSyncConfig:
    """自動同期設定"""
    enable_auto_upload: bool = True
    enable_auto_download: bool = True
    upload_delay_ms: int = 2000
    download_on_page_open: bool = True
    check_remote_freshness: bool = True

    def validate(self) -> List[str]:
        errors = []
        if not isinstance(self.upload_delay_ms, (int, float)) or self.upload_delay_ms < 0:
            errors.append("upload_delay_ms must be a non-negative number")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutoSyncConfig":
        return cls(**_known_fields(cls, data))


@dataclass
class SyncTimeRecord:
    """自動同期の時刻記録"""
    last_data_change_time: Optional[datetime] = None
    last_upload_time: Optional[datetime] = None
    last_download_time: Optional[datetime] = None
    device_id: str = ""

    def last_local_sync_time(self) -> Optional[datetime]:
        """最終アップロード・ダウンロードのうち新しい方"""
        times = [t for t in (self.last_download_time, self.last_upload_time) if t]
        return max(times) if times else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'last_data_change_time': to_iso(self.last_data_change_time),
            'last_upload_time': to_iso(self.last_upload_time),
            'last_download_time': to_iso(self.last_download_time),
            'device_id': self.device_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncTimeRecord":
        return cls(
            last_data_change_time=from_iso(data.get('last_data_change_time')),
            last_upload_time=from_iso(data.get('last_upload_time')),
            last_download_time=from_iso(data.get('last_download_time')),
            device_id=data.get('device_id', ''),
        )


@dataclass
class SyncLock:
    """リース付き同期ロック"""
    owner: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'owner': self.owner,
            'acquired_at': self.acquired_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncLock":
        return cls(
            owner=data['owner'],
            acquired_at=datetime.fromisoformat(data['acquired_at']),
            expires_at=datetime.fromisoformat(data['expires_at']),
        )


@dataclass
class LocalSnapshot:
    """ローカルデータスナップショット"""
    bookmarks: List[Any] = field(default_factory=list)
    categories: List[Any] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)
    modified_at: Optional[datetime] = None

    def is_empty(self) -> bool:
        return not self.bookmarks and not self.categories and not self.settings

    def calculate_hash(self) -> str:
        """データ内容のハッシュ計算"""
        content = json.dumps(
            {'bookmarks': self.bookmarks, 'categories': self.categories, 'settings': self.settings},
            sort_keys=True, ensure_ascii=False, default=str
        )
        return hashlib.sha256(content.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'bookmarks': self.bookmarks,
            'categories': self.categories,
            'settings': self.settings,
            'modified_at': to_iso(self.modified_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocalSnapshot":
        return cls(
            bookmarks=list(data.get('bookmarks') or []),
            categories=list(data.get('categories') or []),
            settings=dict(data.get('settings') or {}),
            modified_at=from_iso(data.get('modified_at')),
        )


@dataclass
class PackageMetadata:
    """リモートデータパッケージのヘッダー"""
    data_hash: str
    device_id: str = ""
    modified_at: Optional[datetime] = None
    last_sync_time: Optional[datetime] = None
    version: str = SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            'data_hash': self.data_hash,
            'device_id': self.device_id,
            'modified_at': to_iso(self.modified_at),
            'last_sync_time': to_iso(self.last_sync_time),
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PackageMetadata":
        return cls(
            data_hash=data.get('data_hash', ''),
            device_id=data.get('device_id', ''),
            modified_at=from_iso(data.get('modified_at')),
            last_sync_time=from_iso(data.get('last_sync_time')),
            version=data.get('version', SCHEMA_VERSION),
        )


@dataclass
class SyncDataPackage:
    """WebDAV上に保存される同期データパッケージ"""
    metadata: PackageMetadata
    bookmarks: List[Any] = field(default_factory=list)
    categories: List[Any] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snapshot: LocalSnapshot, device_id: str = "",
                      last_sync_time: Optional[datetime] = None) -> "SyncDataPackage":
        return cls(
            metadata=PackageMetadata(
                data_hash=snapshot.calculate_hash(),
                device_id=device_id,
                modified_at=snapshot.modified_at,
                last_sync_time=last_sync_time,
            ),
            bookmarks=list(snapshot.bookmarks),
            categories=list(snapshot.categories),
            settings=dict(snapshot.settings),
        )

    def snapshot(self) -> LocalSnapshot:
        return LocalSnapshot(
            bookmarks=list(self.bookmarks),
            categories=list(self.categories),
            settings=dict(self.settings),
            modified_at=self.metadata.modified_at,
        )

    def is_intact(self) -> bool:
        """ヘッダーのハッシュと内容が一致するか"""
        return self.metadata.data_hash == self.snapshot().calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'metadata': self.metadata.to_dict(),
            'bookmarks': self.bookmarks,
            'categories': self.categories,
            'settings': self.settings,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncDataPackage":
        return cls(
            metadata=PackageMetadata.from_dict(data.get('metadata') or {}),
            bookmarks=list(data.get('bookmarks') or []),
            categories=list(data.get('categories') or []),
            settings=dict(data.get('settings') or {}),
        )


@dataclass
class RemoteResult:
    """リモート同期サービスの正規化された結果"""
    status: SyncStatus
    message: Optional[str] = None
    error: Optional[str] = None
    data: Optional[SyncDataPackage] = None
    conflict_info: Optional[ConflictInfo] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def has_conflict(self) -> bool:
        return self.status == SyncStatus.CONFLICT and self.conflict_info is not None

    def is_successful(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    @classmethod
    def success(cls, message: str, data: Optional[SyncDataPackage] = None) -> "RemoteResult":
        return cls(status=SyncStatus.SUCCESS, message=message, data=data)

    @classmethod
    def failure(cls, error: str) -> "RemoteResult":
        return cls(status=SyncStatus.ERROR, error=error)

    @classmethod
    def conflict(cls, conflict_info: ConflictInfo, message: str = "Data conflict detected") -> "RemoteResult":
        return cls(status=SyncStatus.CONFLICT, message=message, conflict_info=conflict_info)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'message': self.message,
            'error': self.error,
            'timestamp': to_iso(self.timestamp),
            'has_conflict': self.has_conflict,
            'conflict_info': self.conflict_info.to_dict() if self.conflict_info else None,
            'data': self.data.to_dict() if self.data else None,
        }


@dataclass
class SyncHistoryEntry:
    """同期履歴"""
    id: Optional[int]
    task_id: str
    kind: TaskKind
    status: SyncStatus
    message: Optional[str]
    started_at: datetime
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['kind'] = self.kind.value
        data['status'] = self.status.value
        data['started_at'] = self.started_at.isoformat()
        data['finished_at'] = to_iso(self.finished_at)
        return data
