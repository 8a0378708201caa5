"""
同期コーディネーター - ロック制御・タスク実行・状態管理
"""

import asyncio
from dataclasses import asdict
from datetime import datetime
from typing import Callable, Dict, Optional, Any, Union

from ..config.sync_config import SyncEngineConfig
from ..layers.scheduling_layer.event_debouncer import EventDebouncer
from ..layers.scheduling_layer.interval_scheduler import IntervalScheduler
from ..layers.storage_layer.storage_bridge import StorageBridge
from ..layers.sync_layer.error_handler import (
    ConfigInvalidError, ErrorHandler, SyncErrorType, SyncInProgressError, error_response,
)
from ..layers.sync_layer.remote_service import RemoteSyncService
from ..layers.sync_layer.webdav_client import WebDAVSyncService
from ..utils.enhanced_logger import get_logger
from .models import (
    AutoSyncConfig, ConflictResolution, RemoteResult, SyncEventType, SyncHistoryEntry,
    SyncStatus, SyncStatusRecord, SyncTask, TaskKind, WebDAVConfig, to_iso,
)

RemoteFactory = Callable[[WebDAVConfig, str], RemoteSyncService]


class SyncCoordinator:
    """同期コーディネーター

    sync / upload / download は永続ロックで相互排他される。ロックが
    保持されていれば待たずに SyncInProgress を返す。公開操作は例外を
    外に出さず、常にレスポンス辞書を返す。
    """

    def __init__(self,
                 storage: StorageBridge,
                 config: Optional[SyncEngineConfig] = None,
                 remote_factory: Optional[RemoteFactory] = None):
        self.storage = storage
        self.config = config or SyncEngineConfig()
        self.remote_factory = remote_factory or self._create_webdav_service
        self.remote: Optional[RemoteSyncService] = None
        self.current_task: Optional[SyncTask] = None
        self.device_id = ""

        self.logger = get_logger()
        self.error_handler = ErrorHandler()

        scheduler_config = self.config.scheduler
        self.interval_scheduler = IntervalScheduler(
            self.perform_auto_sync,
            min_interval_minutes=scheduler_config.min_interval_minutes,
            max_interval_minutes=scheduler_config.max_interval_minutes,
            unit_seconds=scheduler_config.unit_seconds,
        )
        self.event_debouncer = EventDebouncer(
            storage, self, defaults=AutoSyncConfig.from_dict(asdict(self.config.auto_sync))
        )

    def _create_webdav_service(self, config: WebDAVConfig, device_id: str) -> RemoteSyncService:
        return WebDAVSyncService(config, device_id, timeout_seconds=self.config.remote.timeout_seconds)

    async def initialize(self):
        """起動処理（期限切れロック削除・保存済み設定の復元・イベント処理開始）"""
        metadata = await self.storage.load_metadata()
        self.device_id = metadata.device_id
        await self.storage.purge_expired_lock()

        config = await self.storage.load_config()
        if config and config.is_valid():
            await self._apply_config(config)

        await self.event_debouncer.start()
        self.logger.info("Sync coordinator initialized", device_id=self.device_id)

    async def shutdown(self):
        self.interval_scheduler.stop()
        await self.interval_scheduler.wait_idle()
        await self.event_debouncer.stop()
        if self.remote:
            await self.remote.close()
        self.logger.info("Sync coordinator shut down")

    # ------------------------------------------------------------------
    # 設定

    async def update_config(self, config: Union[WebDAVConfig, Dict[str, Any]]) -> Dict[str, Any]:
        """WebDAV設定の検証・保存・クライアント再構築"""
        try:
            if not isinstance(config, WebDAVConfig):
                config = WebDAVConfig.from_dict(config or {})

            errors = config.validate()
            if errors:
                raise ConfigInvalidError("; ".join(errors))

            await self.storage.save_config(config)
            await self._apply_config(config)
            self.logger.info("WebDAV config updated", server_url=config.server_url,
                             enabled=config.enabled, interval=config.auto_sync_interval)
            return {'success': True}

        except Exception as e:
            return self.error_handler.handle_error(e, "update_config")

    async def _apply_config(self, config: WebDAVConfig):
        if not self.device_id:
            self.device_id = (await self.storage.load_metadata()).device_id

        if self.remote is None:
            self.remote = self.remote_factory(config, self.device_id)
        else:
            self.remote.update_config(config)

        if config.enabled and config.auto_sync_interval:
            if self.interval_scheduler.is_running():
                self.interval_scheduler.update_interval(config.auto_sync_interval)
            else:
                self.interval_scheduler.start(config.auto_sync_interval)
        else:
            self.interval_scheduler.stop()

    # ------------------------------------------------------------------
    # データ操作

    async def sync(self, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """双方向同期"""
        return await self._run_task(SyncTask.create(TaskKind.MANUAL, options))

    async def upload(self, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._run_task(SyncTask.create(TaskKind.UPLOAD, options))

    async def download(self) -> Dict[str, Any]:
        return await self._run_task(SyncTask.create(TaskKind.DOWNLOAD))

    async def _run_task(self, task: SyncTask) -> Dict[str, Any]:
        """タスク実行とレスポンス変換"""
        operation = self.logger.log_operation_start(task.kind.value, task_id=task.id)
        try:
            result = await self._execute_task(task)
        except Exception as e:
            response = self.error_handler.handle_error(e, task.kind.value)
            self.logger.log_operation_end(operation, success=False, error_type=response['error'])
            return response

        if result.is_successful():
            self.logger.log_operation_end(operation, success=True)
            return {'success': True, 'result': result.to_dict()}

        if result.has_conflict:
            error_type = SyncErrorType.CONFLICT_DETECTED
        else:
            error_type = SyncErrorType.NETWORK_ERROR
        self.logger.log_operation_end(operation, success=False, error_type=error_type.value)
        return {
            'success': False,
            'error': error_type.value,
            'message': result.error or result.message or "",
            'result': result.to_dict(),
        }

    async def _execute_task(self, task: SyncTask) -> RemoteResult:
        """ロック取得からロック解放までの実行プロトコル"""
        if self.remote is None:
            raise ConfigInvalidError("WebDAV service is not configured")
        if self.current_task is not None:
            raise SyncInProgressError(f"Task {self.current_task.id} is running")
        if not await self.storage.acquire_lock(task.id):
            raise SyncInProgressError()

        self.current_task = task
        heartbeat = asyncio.create_task(self._keep_lock_alive(task.id))
        started_at = datetime.now()
        status = SyncStatus.ERROR
        message: Optional[str] = None
        try:
            await self._save_status(SyncStatus.SYNCING, "Synchronizing", task.id)
            snapshot = await self.storage.load_local_snapshot()

            if task.kind == TaskKind.UPLOAD:
                result = await self.remote.upload(snapshot, task.options)
            elif task.kind == TaskKind.DOWNLOAD:
                result = await self.remote.download()
            else:
                result = await self.remote.sync(snapshot, task.options)

            if result.is_successful() and result.data is not None:
                await self.storage.replace_local_snapshot(result.data.snapshot())

            status = result.status
            message = result.message if result.status != SyncStatus.ERROR else result.error
            await self._save_status(status, message, task.id)

            if result.has_conflict:
                await self.storage.save_conflict(result.conflict_info)
            elif result.is_successful():
                await self.storage.clear_conflict()
                await self.storage.record_sync(datetime.now())

            return result

        except Exception as e:
            message = str(e)
            try:
                await self._save_status(SyncStatus.ERROR, message, task.id)
            except Exception as status_error:
                self.logger.error("Failed to persist error status", error=status_error)
            raise

        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            self.current_task = None
            await self.storage.release_lock(task.id)
            await self._add_history(task, status, message, started_at)

    async def _keep_lock_alive(self, owner: str):
        """実行中はTTLの1/3ごとにリースを延長"""
        interval = max(self.storage.lock_ttl.total_seconds() / 3, 0.01)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.storage.renew_lock(owner):
                    self.logger.warning("Sync lock lost during task", task_id=owner)
                    return
            except Exception as e:
                self.logger.error("Failed to renew sync lock", error=e, task_id=owner)

    async def _save_status(self, status: SyncStatus, message: Optional[str], task_id: Optional[str] = None):
        await self.storage.save_status(SyncStatusRecord(
            status=status, message=message, timestamp=datetime.now(), task_id=task_id
        ))

    async def _add_history(self, task: SyncTask, status: SyncStatus, message: Optional[str],
                           started_at: datetime):
        try:
            await self.storage.add_history(SyncHistoryEntry(
                id=None, task_id=task.id, kind=task.kind, status=status, message=message,
                started_at=started_at, finished_at=datetime.now()
            ))
        except Exception as e:
            self.logger.error("Failed to record sync history", error=e, task_id=task.id)

    async def test_connection(self) -> Dict[str, Any]:
        try:
            if self.remote is None:
                raise ConfigInvalidError("WebDAV service is not configured")

            if await self.remote.test_connection():
                return {'success': True}
            return {'success': False, 'error': SyncErrorType.NETWORK_ERROR.value,
                    'message': "Could not reach the WebDAV server"}

        except Exception as e:
            return self.error_handler.handle_error(e, "test_connection")

    async def resolve_conflict(self, resolution: Union[ConflictResolution, str]) -> Dict[str, Any]:
        """保存された競合を指定戦略で再同期して解決"""
        try:
            resolution = ConflictResolution(resolution)
        except ValueError:
            return {'success': False, 'error': SyncErrorType.UNKNOWN.value,
                    'message': f"Unsupported conflict resolution: {resolution}"}

        try:
            if await self.storage.load_conflict() is None:
                return {'success': False, 'error': SyncErrorType.UNKNOWN.value,
                        'message': "No pending conflict to resolve"}
        except Exception as e:
            return self.error_handler.handle_error(e, "resolve_conflict")

        response = await self.sync({
            'conflict_resolution': resolution.value,
            'auto_resolve_conflicts': True,
        })
        if response.get('success'):
            self.logger.info(f"Conflict resolved with {resolution.value}")
        return response

    # ------------------------------------------------------------------
    # 状態取得

    async def get_status(self) -> Dict[str, Any]:
        try:
            record = await self.storage.load_status()
            metadata = await self.storage.load_metadata()
            conflict = await self.storage.load_conflict()
            last_sync_time = await self.storage.get_last_sync_time()

            return {
                'success': True,
                'status': record.status.value,
                'message': record.message,
                'last_sync_time': to_iso(last_sync_time),
                'has_conflict': conflict is not None,
                'is_auto_sync_enabled': self.interval_scheduler.is_running(),
                'current_task': self.current_task.id if self.current_task else None,
                'metadata': metadata.to_dict(),
            }

        except Exception as e:
            return self.error_handler.handle_error(e, "get_status")

    async def get_sync_stats(self) -> Dict[str, Any]:
        try:
            metadata = await self.storage.load_metadata()
            record = await self.storage.load_status()
            history = await self.storage.get_history(limit=10)

            return {
                'success': True,
                'stats': {
                    'last_sync_time': to_iso(metadata.last_sync_time),
                    'total_syncs': metadata.total_syncs,
                    'last_status': record.status.value,
                    'device_id': metadata.device_id,
                    'is_auto_sync_enabled': self.interval_scheduler.is_running(),
                    'recent_history': [entry.to_dict() for entry in history],
                    'errors': self.error_handler.get_error_counts(),
                    'health': self.logger.get_health_status(),
                },
            }

        except Exception as e:
            return self.error_handler.handle_error(e, "get_sync_stats")

    # ------------------------------------------------------------------
    # 自動同期

    async def enable_auto_sync(self, enabled: bool, interval_minutes: Optional[float] = None) -> Dict[str, Any]:
        """定期同期の有効化・無効化（設定にも反映）"""
        try:
            config = await self.storage.load_config() or WebDAVConfig()
            if enabled:
                interval = interval_minutes or config.auto_sync_interval or \
                    self.config.scheduler.default_interval_minutes
                self.interval_scheduler.start(interval)
                config.enabled = True
                config.auto_sync_interval = interval
            else:
                self.interval_scheduler.stop()
                config.enabled = False

            await self.storage.save_config(config)
            return {'success': True}

        except Exception as e:
            return self.error_handler.handle_error(e, "enable_auto_sync")

    async def perform_auto_sync(self):
        """定期同期のエントリポイント（実行中タスクがあれば何もしない）"""
        if self.current_task is not None:
            self.logger.debug("Auto sync skipped, task in progress", task_id=self.current_task.id)
            return

        try:
            response = await self._run_task(SyncTask.create(TaskKind.AUTO, {
                'auto_resolve_conflicts': True,
                'create_backup': True,
            }))
            if not response.get('success'):
                self.logger.info(f"Auto sync did not complete: {response.get('error')}")
        except Exception as e:
            self.logger.error("Auto sync failed", error=e)

    async def trigger_auto_sync(self, event_type: Union[SyncEventType, str]) -> Dict[str, Any]:
        try:
            event = SyncEventType(event_type)
        except ValueError:
            return {'success': False, 'error': SyncErrorType.UNKNOWN.value,
                    'message': f"Unsupported event type: {event_type}"}

        if not self.event_debouncer.is_running():
            return {'success': False, 'error': SyncErrorType.UNKNOWN.value,
                    'message': "Auto sync event handler is not running"}

        self.event_debouncer.notify(event)
        return {'success': True}

    async def get_auto_sync_config(self) -> Dict[str, Any]:
        return {
            'success': True,
            'config': self.event_debouncer.config.to_dict(),
            'time_record': self.event_debouncer.time_record.to_dict(),
        }

    async def update_auto_sync_config(self, config: Union[AutoSyncConfig, Dict[str, Any]]) -> Dict[str, Any]:
        try:
            await self.event_debouncer.update_config(config)
            return {'success': True}
        except Exception as e:
            return self.error_handler.handle_error(e, "update_auto_sync_config")

    async def fetch_remote_last_sync_time(self) -> Optional[datetime]:
        """リモートデータの最終同期時刻（不明ならNone）"""
        if self.remote is None:
            return None
        try:
            metadata = await self.remote.fetch_remote_metadata()
        except Exception as e:
            self.logger.warning(f"Could not fetch remote metadata: {e}")
            return None
        if metadata is None:
            return None
        return metadata.last_sync_time or metadata.modified_at

    # ------------------------------------------------------------------
    # クリア

    async def clear_sync_data(self) -> Dict[str, Any]:
        """同期データのクリア（デバイスIDは保持）"""
        try:
            await self.storage.clear_all()
            await self.event_debouncer.reset_time_record()
            self.interval_scheduler.stop()
            if self.remote:
                await self.remote.close()
            self.remote = None
            self.current_task = None
            self.logger.info("Sync data cleared")
            return {'success': True}

        except Exception as e:
            return self.error_handler.handle_error(e, "clear_sync_data")
