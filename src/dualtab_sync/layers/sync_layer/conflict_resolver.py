"""
競合検出・解決 - ローカルスナップショットとリモートパッケージの比較
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Any

from ...core.models import (
    ConflictInfo, ConflictKind, ConflictResolution, PackageMetadata, SyncDataPackage,
)

logger = logging.getLogger(__name__)


@dataclass
class ConflictDetectionResult:
    """競合検出結果"""
    has_conflict: bool = False
    should_use_local: bool = False
    should_use_remote: bool = False
    conflict_info: Optional[ConflictInfo] = None
    reason: str = ""

    @property
    def is_up_to_date(self) -> bool:
        return not (self.has_conflict or self.should_use_local or self.should_use_remote)


class ConflictDetector:
    """競合検出・解決エンジン"""

    def __init__(self):
        # 統計情報
        self.conflicts_detected = 0
        self.conflicts_resolved = 0
        self.manual_reviews_required = 0

    def detect(self, local: SyncDataPackage, remote: Optional[SyncDataPackage]) -> ConflictDetectionResult:
        """競合検出"""
        if remote is None:
            return ConflictDetectionResult(should_use_local=True, reason="remote data not found")

        local_snapshot = local.snapshot()
        remote_intact = remote.is_intact()

        # 一度も編集されていない空のローカルはリモートを採用
        if local_snapshot.is_empty() and local.metadata.modified_at is None:
            if remote_intact:
                return ConflictDetectionResult(should_use_remote=True, reason="local data is empty")
            return self._conflict(ConflictKind.HASH_MISMATCH, local, remote, "remote data is corrupted")

        if not remote_intact:
            logger.warning("Remote data hash mismatch, keeping local data")
            return ConflictDetectionResult(should_use_local=True, reason="remote data is corrupted")

        if local.metadata.data_hash == remote.metadata.data_hash:
            return ConflictDetectionResult(reason="data is identical")

        local_time = local.metadata.modified_at
        remote_time = remote.metadata.modified_at
        if local_time is None or remote_time is None:
            return self._conflict(ConflictKind.TIMESTAMP_CONFLICT, local, remote, "modification time unknown")

        if local_time > remote_time:
            return ConflictDetectionResult(should_use_local=True, reason="local data is newer")
        if remote_time > local_time:
            return ConflictDetectionResult(should_use_remote=True, reason="remote data is newer")

        return self._conflict(ConflictKind.DATA_CONFLICT, local, remote, "same timestamp, different data")

    def _conflict(self, kind: ConflictKind, local: SyncDataPackage, remote: SyncDataPackage,
                  reason: str) -> ConflictDetectionResult:
        self.conflicts_detected += 1
        logger.info(f"Conflict detected ({kind.value}): {reason}")
        info = ConflictInfo(
            kind=kind,
            local_data=local.snapshot().to_dict(),
            remote_data=remote.snapshot().to_dict(),
            local_timestamp=local.metadata.modified_at,
            remote_timestamp=remote.metadata.modified_at,
        )
        return ConflictDetectionResult(has_conflict=True, conflict_info=info, reason=reason)

    def recommend_resolution(self, info: ConflictInfo) -> ConflictResolution:
        """自動解決時の推奨戦略"""
        # 整合性が確認できないデータは自動で上書きしない
        if info.kind == ConflictKind.HASH_MISMATCH:
            return ConflictResolution.MANUAL

        # 一方のデータ量が2倍を超える場合はその側を採用
        local_score = self._data_score(info.local_data)
        remote_score = self._data_score(info.remote_data)
        if local_score > remote_score * 2:
            return ConflictResolution.USE_LOCAL
        if remote_score > local_score * 2:
            return ConflictResolution.USE_REMOTE

        if info.kind == ConflictKind.TIMESTAMP_CONFLICT and info.local_timestamp and info.remote_timestamp:
            if info.local_timestamp > info.remote_timestamp:
                return ConflictResolution.USE_LOCAL
            return ConflictResolution.USE_REMOTE

        return ConflictResolution.MERGE

    def _data_score(self, data: Optional[Dict[str, Any]]) -> int:
        data = data or {}
        return len(data.get('bookmarks') or []) + len(data.get('categories') or [])

    def resolve(self, resolution: ConflictResolution, local: SyncDataPackage,
                remote: SyncDataPackage, device_id: str = "") -> Optional[SyncDataPackage]:
        """競合解決（採用するパッケージを返す。手動の場合はNone）"""
        if resolution == ConflictResolution.MANUAL:
            self.manual_reviews_required += 1
            return None

        self.conflicts_resolved += 1
        if resolution == ConflictResolution.USE_LOCAL:
            return local
        if resolution == ConflictResolution.USE_REMOTE:
            return remote
        return self.merge(local, remote, device_id)

    def merge(self, local: SyncDataPackage, remote: SyncDataPackage, device_id: str = "") -> SyncDataPackage:
        """ID単位の和集合マージ（新しい側を優先）"""
        local_time = local.metadata.modified_at or datetime.min
        remote_time = remote.metadata.modified_at or datetime.min
        local_wins = local_time >= remote_time

        merged = SyncDataPackage(
            metadata=PackageMetadata(data_hash="", device_id=device_id,
                                     modified_at=datetime.now()),
            bookmarks=self._merge_items(local.bookmarks, remote.bookmarks, local_wins),
            categories=self._merge_items(local.categories, remote.categories, local_wins),
            settings=dict(local.settings if local_wins else remote.settings),
        )
        merged.metadata.data_hash = merged.snapshot().calculate_hash()

        logger.info(f"Merged data: {len(merged.bookmarks)} bookmarks, {len(merged.categories)} categories")
        return merged

    def _merge_items(self, local_items: List[Any], remote_items: List[Any], local_wins: bool) -> List[Any]:
        primary, secondary = (local_items, remote_items) if local_wins else (remote_items, local_items)

        merged: Dict[str, Any] = {}
        for item in list(secondary) + list(primary):
            merged[self._item_key(item)] = item

        # 優先側の順序を保持し、もう一方にしかない項目を後ろに追加
        order = dict.fromkeys([self._item_key(item) for item in primary] +
                              [self._item_key(item) for item in secondary])
        return [merged[key] for key in order]

    def _item_key(self, item: Any) -> str:
        if isinstance(item, dict) and item.get('id') is not None:
            return f"id:{item['id']}"
        return "raw:" + json.dumps(item, sort_keys=True, ensure_ascii=False, default=str)

    def get_statistics(self) -> Dict[str, Any]:
        """統計情報取得"""
        return {
            'conflicts_detected': self.conflicts_detected,
            'conflicts_resolved': self.conflicts_resolved,
            'manual_reviews_required': self.manual_reviews_required,
        }
