"""
同期ストレージブリッジ - SQLiteによる設定・スナップショット・ロック・同期履歴の永続化
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Any, Iterable, Union

import aiosqlite

from ...config.sync_config import SecurityManager
from ...core.models import (
    AutoSyncConfig, ConflictInfo, LocalSnapshot, SyncHistoryEntry, SyncLock,
    SyncMetadata, SyncStatus, SyncStatusRecord, SyncTimeRecord, TaskKind,
    WebDAVConfig, from_iso, generate_device_id, to_iso,
)

logger = logging.getLogger(__name__)


class StorageKey(str, Enum):
    """永続化キー"""
    WEBDAV_CONFIG = "webdav-config"
    SYNC_STATUS = "sync-status"
    SYNC_LOCK = "sync-lock"
    SYNC_METADATA = "sync-metadata"
    CONFLICT_DATA = "conflict-data"
    AUTO_SYNC_CONFIG = "auto-sync-config"
    SYNC_TIME_RECORD = "sync-time-record"
    LAST_SYNC_TIME = "last-sync-time"
    BOOKMARKS = "bookmarks"
    CATEGORIES = "categories"
    SETTINGS = "settings"
    SNAPSHOT_MODIFIED_AT = "snapshot-modified-at"


SNAPSHOT_KEYS = (StorageKey.BOOKMARKS, StorageKey.CATEGORIES, StorageKey.SETTINGS)


@dataclass
class StorageChange:
    """ストレージ変更通知"""
    keys: List[str]
    source: str = "local"
    timestamp: datetime = field(default_factory=datetime.now)

    LOCAL = "local"
    REMOTE = "remote"


ChangeListener = Callable[[StorageChange], None]


class StorageBridge:
    """同期エンジン用の永続キーバリューストア"""

    def __init__(self,
                 database_path: Union[str, Path] = "data/dualtab_sync.db",
                 security_manager: Optional[SecurityManager] = None,
                 lock_ttl_seconds: float = 300,
                 history_limit: int = 100):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.security_manager = security_manager
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self.history_limit = history_limit

        # プロセス内のロック取得直列化
        self._lock_guard = asyncio.Lock()
        self._listeners: List[ChangeListener] = []

    async def initialize(self) -> bool:
        """データベース初期化"""
        try:
            await self._create_tables()
            logger.info(f"Sync storage initialized: {self.database_path}")
            return True

        except Exception as e:
            logger.error(f"Failed to initialize sync storage: {e}")
            return False

    async def _create_tables(self):
        """テーブル作成"""
        store_table_sql = """
        CREATE TABLE IF NOT EXISTS sync_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """

        history_table_sql = """
        CREATE TABLE IF NOT EXISTS sync_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            started_at TIMESTAMP NOT NULL,
            finished_at TIMESTAMP
        )
        """

        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(store_table_sql)
            await db.execute(history_table_sql)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_sync_history_started_at ON sync_history(started_at)")
            await db.commit()

    # ------------------------------------------------------------------
    # 低レベルアクセス

    @asynccontextmanager
    async def _transaction(self):
        """書き込みトランザクション（BEGIN IMMEDIATEでプロセス間も排他）"""
        async with aiosqlite.connect(self.database_path, isolation_level=None) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    async def _get(self, db: aiosqlite.Connection, key: str) -> Optional[Any]:
        cursor = await db.execute("SELECT value FROM sync_store WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def _put(self, db: aiosqlite.Connection, key: str, value: Any):
        sql = "INSERT OR REPLACE INTO sync_store (key, value, updated_at) VALUES (?, ?, ?)"
        await db.execute(sql, (key, json.dumps(value, ensure_ascii=False, default=str),
                               datetime.now().isoformat()))

    async def _delete(self, db: aiosqlite.Connection, keys: Iterable[str]):
        for key in keys:
            await db.execute("DELETE FROM sync_store WHERE key = ?", (key,))

    async def _read(self, key: str) -> Optional[Any]:
        async with aiosqlite.connect(self.database_path) as db:
            return await self._get(db, key)

    async def _read_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        async with aiosqlite.connect(self.database_path) as db:
            return {key: await self._get(db, key) for key in keys}

    async def _write(self, values: Dict[str, Any]):
        async with self._transaction() as db:
            for key, value in values.items():
                await self._put(db, key, value)

    async def _remove(self, *keys: str):
        async with self._transaction() as db:
            await self._delete(db, keys)

    # ------------------------------------------------------------------
    # WebDAV設定

    async def load_config(self) -> Optional[WebDAVConfig]:
        data = await self._read(StorageKey.WEBDAV_CONFIG.value)
        if data is None:
            return None

        config = WebDAVConfig.from_dict(data)
        if self.security_manager:
            config.password = self.security_manager.unseal(config.password)
        return config

    async def save_config(self, config: WebDAVConfig):
        data = config.to_dict()
        if self.security_manager and self.security_manager.is_enabled:
            data['password'] = self.security_manager.seal(config.password)
        await self._write({StorageKey.WEBDAV_CONFIG.value: data})

    # ------------------------------------------------------------------
    # ローカルスナップショット

    async def load_local_snapshot(self) -> LocalSnapshot:
        keys = [key.value for key in SNAPSHOT_KEYS] + [StorageKey.SNAPSHOT_MODIFIED_AT.value]
        values = await self._read_many(keys)
        return LocalSnapshot(
            bookmarks=values[StorageKey.BOOKMARKS.value] or [],
            categories=values[StorageKey.CATEGORIES.value] or [],
            settings=values[StorageKey.SETTINGS.value] or {},
            modified_at=from_iso(values[StorageKey.SNAPSHOT_MODIFIED_AT.value]),
        )

    async def save_local_snapshot(self, snapshot: LocalSnapshot):
        """ローカル編集による保存（変更時刻を更新）"""
        snapshot.modified_at = datetime.now()
        await self._write_snapshot(snapshot, StorageChange.LOCAL)

    async def replace_local_snapshot(self, snapshot: LocalSnapshot):
        """リモートデータによる置換（全キーを1トランザクションで更新）"""
        await self._write_snapshot(snapshot, StorageChange.REMOTE)

    async def _write_snapshot(self, snapshot: LocalSnapshot, source: str):
        await self._write({
            StorageKey.BOOKMARKS.value: snapshot.bookmarks,
            StorageKey.CATEGORIES.value: snapshot.categories,
            StorageKey.SETTINGS.value: snapshot.settings,
            StorageKey.SNAPSHOT_MODIFIED_AT.value: to_iso(snapshot.modified_at),
        })
        self._notify(StorageChange(keys=[key.value for key in SNAPSHOT_KEYS], source=source))

    # ------------------------------------------------------------------
    # ステータス・競合

    async def load_status(self) -> SyncStatusRecord:
        data = await self._read(StorageKey.SYNC_STATUS.value)
        return SyncStatusRecord.from_dict(data) if data else SyncStatusRecord()

    async def save_status(self, record: SyncStatusRecord):
        await self._write({StorageKey.SYNC_STATUS.value: record.to_dict()})

    async def load_conflict(self) -> Optional[ConflictInfo]:
        data = await self._read(StorageKey.CONFLICT_DATA.value)
        return ConflictInfo.from_dict(data) if data else None

    async def save_conflict(self, conflict_info: ConflictInfo):
        await self._write({StorageKey.CONFLICT_DATA.value: conflict_info.to_dict()})

    async def clear_conflict(self):
        await self._remove(StorageKey.CONFLICT_DATA.value)

    # ------------------------------------------------------------------
    # 同期ロック

    async def acquire_lock(self, owner: str) -> bool:
        """ロック取得（保持中なら即座にFalse）"""
        async with self._lock_guard:
            now = datetime.now()
            async with self._transaction() as db:
                current = await self._get(db, StorageKey.SYNC_LOCK.value)
                if current:
                    lease = SyncLock.from_dict(current)
                    if not lease.is_expired(now):
                        logger.debug(f"Sync lock held by {lease.owner}, rejecting {owner}")
                        return False
                    logger.warning(f"Reclaiming expired sync lock from {lease.owner}")

                lease = SyncLock(owner=owner, acquired_at=now, expires_at=now + self.lock_ttl)
                await self._put(db, StorageKey.SYNC_LOCK.value, lease.to_dict())

            logger.debug(f"Sync lock acquired by {owner}")
            return True

    async def renew_lock(self, owner: str) -> bool:
        """リース延長（自分のリースのみ）"""
        async with self._lock_guard:
            now = datetime.now()
            async with self._transaction() as db:
                current = await self._get(db, StorageKey.SYNC_LOCK.value)
                if current is None or current.get('owner') != owner:
                    return False

                lease = SyncLock.from_dict(current)
                lease.expires_at = now + self.lock_ttl
                await self._put(db, StorageKey.SYNC_LOCK.value, lease.to_dict())

        return True

    async def release_lock(self, owner: Optional[str] = None) -> bool:
        """ロック解放（ownerを指定した場合は自分のリースのみ）"""
        async with self._transaction() as db:
            current = await self._get(db, StorageKey.SYNC_LOCK.value)
            if current is None:
                return False

            if owner is not None and current.get('owner') != owner:
                logger.warning(f"Sync lock owned by {current.get('owner')}, not released for {owner}")
                return False

            await self._delete(db, [StorageKey.SYNC_LOCK.value])

        logger.debug(f"Sync lock released by {owner}")
        return True

    async def get_lock(self) -> Optional[SyncLock]:
        data = await self._read(StorageKey.SYNC_LOCK.value)
        return SyncLock.from_dict(data) if data else None

    async def is_locked(self) -> bool:
        lease = await self.get_lock()
        return lease is not None and not lease.is_expired()

    async def purge_expired_lock(self) -> bool:
        """期限切れリースの削除（起動時）"""
        async with self._lock_guard:
            async with self._transaction() as db:
                current = await self._get(db, StorageKey.SYNC_LOCK.value)
                if current is None or not SyncLock.from_dict(current).is_expired():
                    return False
                await self._delete(db, [StorageKey.SYNC_LOCK.value])

        logger.info("Expired sync lock purged")
        return True

    # ------------------------------------------------------------------
    # メタデータ

    async def load_metadata(self) -> SyncMetadata:
        """メタデータ取得（初回はデバイスIDを生成して保存）"""
        async with self._transaction() as db:
            data = await self._get(db, StorageKey.SYNC_METADATA.value)
            if data:
                return SyncMetadata.from_dict(data)

            metadata = SyncMetadata(device_id=generate_device_id())
            await self._put(db, StorageKey.SYNC_METADATA.value, metadata.to_dict())

        logger.info(f"Generated device id: {metadata.device_id}")
        return metadata

    async def record_sync(self, sync_time: Optional[datetime] = None) -> SyncMetadata:
        """同期成功の記録"""
        sync_time = sync_time or datetime.now()
        async with self._transaction() as db:
            data = await self._get(db, StorageKey.SYNC_METADATA.value)
            metadata = SyncMetadata.from_dict(data) if data else SyncMetadata(device_id=generate_device_id())
            metadata.last_sync_time = sync_time
            metadata.total_syncs += 1
            await self._put(db, StorageKey.SYNC_METADATA.value, metadata.to_dict())
            await self._put(db, StorageKey.LAST_SYNC_TIME.value, sync_time.isoformat())
        return metadata

    async def get_last_sync_time(self) -> Optional[datetime]:
        return from_iso(await self._read(StorageKey.LAST_SYNC_TIME.value))

    # ------------------------------------------------------------------
    # 自動同期設定・時刻記録

    async def load_auto_sync_config(self, defaults: Optional[AutoSyncConfig] = None) -> AutoSyncConfig:
        stored = await self._read(StorageKey.AUTO_SYNC_CONFIG.value) or {}
        base = (defaults or AutoSyncConfig()).to_dict()
        return AutoSyncConfig.from_dict({**base, **stored})

    async def save_auto_sync_config(self, config: AutoSyncConfig):
        await self._write({StorageKey.AUTO_SYNC_CONFIG.value: config.to_dict()})

    async def load_time_record(self) -> SyncTimeRecord:
        data = await self._read(StorageKey.SYNC_TIME_RECORD.value)
        return SyncTimeRecord.from_dict(data) if data else SyncTimeRecord()

    async def save_time_record(self, record: SyncTimeRecord):
        await self._write({StorageKey.SYNC_TIME_RECORD.value: record.to_dict()})

    # ------------------------------------------------------------------
    # 同期履歴

    async def add_history(self, entry: SyncHistoryEntry) -> Optional[int]:
        """同期履歴の記録"""
        sql = """
        INSERT INTO sync_history (task_id, kind, status, message, started_at, finished_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """
        async with self._transaction() as db:
            cursor = await db.execute(sql, (
                entry.task_id, entry.kind.value, entry.status.value, entry.message,
                entry.started_at.isoformat(), to_iso(entry.finished_at)
            ))
            entry.id = cursor.lastrowid

            # 保持件数を超えた古い履歴を削除
            await db.execute(
                "DELETE FROM sync_history WHERE id NOT IN "
                "(SELECT id FROM sync_history ORDER BY id DESC LIMIT ?)",
                (self.history_limit,)
            )
        return entry.id

    async def get_history(self, limit: int = 20) -> List[SyncHistoryEntry]:
        """同期履歴取得（新しい順）"""
        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute("SELECT * FROM sync_history ORDER BY id DESC LIMIT ?", (limit,))
                rows = await cursor.fetchall()

            return [
                SyncHistoryEntry(
                    id=row['id'],
                    task_id=row['task_id'],
                    kind=TaskKind(row['kind']),
                    status=SyncStatus(row['status']),
                    message=row['message'],
                    started_at=datetime.fromisoformat(row['started_at']),
                    finished_at=from_iso(row['finished_at']),
                )
                for row in rows
            ]

        except Exception as e:
            logger.error(f"Failed to get sync history: {e}")
            return []

    # ------------------------------------------------------------------
    # 変更通知・クリア

    def add_change_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """変更リスナー登録（解除関数を返す）"""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, change: StorageChange):
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Storage change listener failed: {e}")

    async def clear_all(self):
        """同期データのクリア（デバイスIDは保持）"""
        async with self._transaction() as db:
            data = await self._get(db, StorageKey.SYNC_METADATA.value)
            device_id = data['device_id'] if data else generate_device_id()

            await self._delete(db, [
                StorageKey.SYNC_STATUS.value,
                StorageKey.SYNC_LOCK.value,
                StorageKey.CONFLICT_DATA.value,
                StorageKey.LAST_SYNC_TIME.value,
                StorageKey.SYNC_TIME_RECORD.value,
            ])
            await self._put(db, StorageKey.SYNC_METADATA.value, SyncMetadata(device_id=device_id).to_dict())
            await db.execute("DELETE FROM sync_history")

        logger.info("Sync data cleared")


if __name__ == "__main__":
    async def demo_storage():
        storage = StorageBridge("test_sync.db")
        if not await storage.initialize():
            print("Failed to initialize storage")
            return

        metadata = await storage.load_metadata()
        print(f"Device: {metadata.device_id}")

        await storage.save_local_snapshot(LocalSnapshot(bookmarks=[{"id": "b1", "title": "Example"}]))
        print(f"Lock acquired: {await storage.acquire_lock('demo')}")
        print(f"Second acquire: {await storage.acquire_lock('other')}")
        await storage.release_lock('demo')

        Path("test_sync.db").unlink(missing_ok=True)

    asyncio.run(demo_storage())
