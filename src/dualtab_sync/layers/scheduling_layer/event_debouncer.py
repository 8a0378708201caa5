"""
自動同期イベント処理 - データ変更のデバウンスとページオープン時のダウンロード判定
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from ...core.models import AutoSyncConfig, SyncEventType, SyncTimeRecord
from ..storage_layer.storage_bridge import SNAPSHOT_KEYS, StorageBridge, StorageChange
from ..sync_layer.error_handler import ConfigInvalidError

logger = logging.getLogger(__name__)

WATCHED_KEYS = {key.value for key in SNAPSHOT_KEYS}


class EventDebouncer:
    """データ変更・ページオープンイベントのデバウンス処理

    イベントはキュー経由で単一のワーカータスクが処理する。保留中の
    アップロード期限は常に高々1つ。
    """

    def __init__(self, storage: StorageBridge, coordinator: Any,
                 defaults: Optional[AutoSyncConfig] = None):
        self.storage = storage
        self.coordinator = coordinator
        self.defaults = defaults or AutoSyncConfig()
        self.config = AutoSyncConfig.from_dict(self.defaults.to_dict())
        self.time_record = SyncTimeRecord()

        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._deadline: Optional[float] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def start(self):
        """設定と時刻記録を読み込みワーカーを起動"""
        if self.is_running():
            return

        self.config = await self.storage.load_auto_sync_config(self.defaults)
        self.time_record = await self.storage.load_time_record()
        if not self.time_record.device_id:
            metadata = await self.storage.load_metadata()
            self.time_record.device_id = metadata.device_id
            await self.storage.save_time_record(self.time_record)

        self._queue = asyncio.Queue()
        self._deadline = None
        self._worker = asyncio.create_task(self._run())
        self._unsubscribe = self.storage.add_change_listener(self._on_storage_change)
        logger.info("Auto sync event handler started")

    async def stop(self):
        """ワーカーと保留中のデバウンスを停止"""
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

        self._queue = None
        self._deadline = None
        logger.info("Auto sync event handler stopped")

    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def has_pending_upload(self) -> bool:
        return self._deadline is not None

    def notify(self, event_type: Union[SyncEventType, str]):
        """イベント投入"""
        if self._queue is None:
            raise RuntimeError("Auto sync event handler is not running")
        self._queue.put_nowait(SyncEventType(event_type))

    def _on_storage_change(self, change: StorageChange):
        # リモートデータ適用による変更はアップロードしない
        if change.source == StorageChange.REMOTE or self._queue is None:
            return
        if WATCHED_KEYS.intersection(change.keys):
            self._queue.put_nowait(SyncEventType.DATA_CHANGED)

    async def _run(self):
        loop = asyncio.get_running_loop()
        while True:
            if self._deadline is None:
                event = await self._queue.get()
            else:
                timeout = self._deadline - loop.time()
                try:
                    if timeout <= 0:
                        raise asyncio.TimeoutError
                    event = await asyncio.wait_for(self._queue.get(), timeout)
                except asyncio.TimeoutError:
                    self._deadline = None
                    await self.perform_auto_upload()
                    continue

            try:
                await self._handle_event(event)
            except Exception as e:
                logger.error(f"Auto sync event {event.value} failed: {e}")

    async def _handle_event(self, event: SyncEventType):
        if event == SyncEventType.DATA_CHANGED:
            self.time_record.last_data_change_time = datetime.now()
            self._deadline = asyncio.get_running_loop().time() + self.config.upload_delay_ms / 1000
            await self._save_time_record()
        elif event == SyncEventType.TAB_OPENED:
            await self.perform_auto_download()

    async def _remote_enabled(self) -> bool:
        webdav_config = await self.storage.load_config()
        return bool(webdav_config and webdav_config.enabled)

    async def perform_auto_upload(self):
        """デバウンス満了時の自動アップロード"""
        try:
            if not self.config.enable_auto_upload or not await self._remote_enabled():
                return

            response = await self.coordinator.upload({'create_backup': False, 'auto_resolve_conflicts': True})
            if response.get('success'):
                self.time_record.last_upload_time = datetime.now()
                await self._save_time_record()
                logger.info("Auto upload completed")
            else:
                logger.info(f"Auto upload skipped: {response.get('error')} {response.get('message', '')}")

        except Exception as e:
            logger.error(f"Auto upload failed: {e}")

    async def perform_auto_download(self):
        """ページオープン時の自動ダウンロード"""
        try:
            if not (self.config.enable_auto_download and self.config.download_on_page_open):
                return
            if not await self._remote_enabled():
                return

            if self.config.check_remote_freshness:
                remote_time = await self.coordinator.fetch_remote_last_sync_time()
                if not self.should_perform_download(remote_time):
                    logger.debug(f"Remote data not newer (remote={remote_time}), download skipped")
                    return

            response = await self.coordinator.download()
            if response.get('success'):
                self.time_record.last_download_time = datetime.now()
                await self._save_time_record()
                logger.info("Auto download completed")
            else:
                logger.info(f"Auto download skipped: {response.get('error')} {response.get('message', '')}")

        except Exception as e:
            logger.error(f"Auto download failed: {e}")

    def should_perform_download(self, remote_time: Optional[datetime]) -> bool:
        """リモートが最終ローカル同期より新しいか"""
        if remote_time is None:
            return False
        local_time = self.time_record.last_local_sync_time()
        return local_time is None or remote_time > local_time

    async def update_config(self, updates: Union[AutoSyncConfig, Dict[str, Any]]) -> AutoSyncConfig:
        """自動同期設定の更新"""
        if isinstance(updates, AutoSyncConfig):
            updates = updates.to_dict()
        merged = AutoSyncConfig.from_dict({**self.config.to_dict(), **(updates or {})})
        errors = merged.validate()
        if errors:
            raise ConfigInvalidError("; ".join(errors))

        await self.storage.save_auto_sync_config(merged)
        self.config = merged
        logger.info(f"Auto sync config updated: {merged.to_dict()}")
        return merged

    async def reset_time_record(self):
        """時刻記録のリセット（device_idは保持）"""
        self.time_record = SyncTimeRecord(device_id=self.time_record.device_id)
        await self._save_time_record()

    async def _save_time_record(self):
        await self.storage.save_time_record(self.time_record)
