"""
リモート同期サービスの抽象インターフェース
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Any

from ...core.models import LocalSnapshot, PackageMetadata, RemoteResult, SyncStatus, WebDAVConfig

logger = logging.getLogger(__name__)


class RemoteSyncService(ABC):
    """リモート同期サービス抽象基底クラス

    データ操作はすべて RemoteResult を返す。呼び出し内のリトライと
    競合判定はサービス側の責務。
    """

    def __init__(self, config: WebDAVConfig, device_id: str = ""):
        self.config = config
        self.device_id = device_id

        # 統計情報
        self.total_requests = 0
        self.total_success = 0
        self.total_failed = 0

    def update_config(self, config: WebDAVConfig):
        """設定の差し替え"""
        self.config = config
        logger.info(f"Remote service reconfigured: {config.server_url}{config.sync_path}")

    @abstractmethod
    async def upload(self, snapshot: LocalSnapshot, options: Dict[str, Any]) -> RemoteResult:
        """ローカルデータのアップロード"""

    @abstractmethod
    async def download(self) -> RemoteResult:
        """リモートデータのダウンロード"""

    @abstractmethod
    async def sync(self, snapshot: LocalSnapshot, options: Dict[str, Any]) -> RemoteResult:
        """双方向同期"""

    @abstractmethod
    async def test_connection(self) -> bool:
        """接続テスト"""

    @abstractmethod
    async def fetch_remote_metadata(self) -> Optional[PackageMetadata]:
        """リモートデータのヘッダーのみ取得（存在しない場合はNone）"""

    async def close(self):
        """リソース解放"""

    def _record(self, result: RemoteResult) -> RemoteResult:
        self.total_requests += 1
        if result.status == SyncStatus.ERROR:
            self.total_failed += 1
        else:
            self.total_success += 1
        return result

    def get_statistics(self) -> Dict[str, Any]:
        total = self.total_requests
        return {
            "total_requests": total,
            "successful": self.total_success,
            "failed": self.total_failed,
            "success_rate": (self.total_success / total * 100) if total > 0 else 0.0
        }
