"""
WebDAV同期サービス - aiohttpによるリモートデータの読み書き
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Dict, Optional, Any, Tuple

import aiohttp

from ...core.models import (
    ConflictResolution, LocalSnapshot, PackageMetadata, RemoteResult, SyncDataPackage, WebDAVConfig,
)
from .conflict_resolver import ConflictDetectionResult, ConflictDetector
from .error_handler import NetworkError, SyncError
from .remote_service import RemoteSyncService

logger = logging.getLogger(__name__)

DATA_FILE_NAME = "dualtab-data.json"
BACKUP_PREFIX = "dualtab-backup-"

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop><d:resourcetype/><d:getlastmodified/></d:prop></d:propfind>'
)


class WebDAVError(NetworkError):
    """WebDAVサーバーのエラー応答"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class WebDAVSyncService(RemoteSyncService):
    """WebDAV同期サービス"""

    def __init__(self,
                 config: WebDAVConfig,
                 device_id: str = "",
                 timeout_seconds: float = 30.0,
                 max_retries: int = 2,
                 retry_backoff: float = 0.5):
        super().__init__(config, device_id)
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.conflict_detector = ConflictDetector()

    # ------------------------------------------------------------------
    # HTTP

    def _auth(self) -> Optional[aiohttp.BasicAuth]:
        if not self.config.username:
            return None
        return aiohttp.BasicAuth(self.config.username, self.config.password or "")

    def _collection_url(self) -> str:
        base = self.config.server_url.rstrip('/')
        path = (self.config.sync_path or '').strip('/')
        return f"{base}/{path}/" if path else f"{base}/"

    def _file_url(self, name: str) -> str:
        return self._collection_url() + name

    async def _request(self, method: str, url: str, **kwargs) -> Tuple[int, str]:
        """HTTPリクエスト（接続エラーと5xxは指数バックオフでリトライ）"""
        for attempt in range(self.max_retries + 1):
            try:
                async with aiohttp.ClientSession(timeout=self.timeout) as session:
                    async with session.request(method, url, auth=self._auth(), **kwargs) as response:
                        body = await response.text()
                        status = response.status
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if attempt >= self.max_retries:
                    raise WebDAVError(f"{method} {url} failed: {str(e) or e.__class__.__name__}") from e
                logger.warning(f"{method} {url} failed (attempt {attempt + 1}): {e}")
            else:
                if status < 500 or attempt >= self.max_retries:
                    return status, body
                logger.warning(f"{method} {url} returned {status} (attempt {attempt + 1})")

            await asyncio.sleep(self.retry_backoff * (2 ** attempt))

        raise WebDAVError(f"{method} {url} failed")

    async def _propfind(self, url: str) -> int:
        status, _ = await self._request(
            "PROPFIND", url,
            data=PROPFIND_BODY,
            headers={"Depth": "0", "Content-Type": "application/xml; charset=utf-8"}
        )
        return status

    async def _ensure_collection(self):
        """同期ディレクトリが無ければ作成"""
        status = await self._propfind(self._collection_url())
        if status in (200, 207):
            return
        if status in (401, 403):
            raise WebDAVError(f"Authentication failed ({status})", status)
        if status != 404:
            raise WebDAVError(f"PROPFIND returned {status}", status)

        current = self.config.server_url.rstrip('/')
        for segment in (self.config.sync_path or '').strip('/').split('/'):
            if not segment:
                continue
            current = f"{current}/{segment}"
            status, _ = await self._request("MKCOL", current + "/")
            # 405は既存ディレクトリ
            if status not in (200, 201, 204, 301, 405):
                raise WebDAVError(f"MKCOL {current} returned {status}", status)
            logger.info(f"Created remote directory: {current}")

    async def _download_package(self) -> Optional[SyncDataPackage]:
        status, body = await self._request("GET", self._file_url(DATA_FILE_NAME))
        if status == 404:
            return None
        if status != 200:
            raise WebDAVError(f"GET {DATA_FILE_NAME} returned {status}", status)

        try:
            return SyncDataPackage.from_dict(json.loads(body))
        except (ValueError, TypeError, AttributeError) as e:
            raise SyncError(f"Remote data file is malformed: {e}") from e

    async def _put_package(self, name: str, package: SyncDataPackage):
        payload = json.dumps(package.to_dict(), ensure_ascii=False, indent=2)
        status, body = await self._request(
            "PUT", self._file_url(name),
            data=payload.encode('utf-8'),
            headers={"Content-Type": "application/json; charset=utf-8"}
        )
        if status not in (200, 201, 204):
            raise WebDAVError(f"PUT {name} returned {status}: {body[:200]}", status)

    async def _backup(self, package: SyncDataPackage):
        """バックアップ作成（失敗しても同期は継続）"""
        name = f"{BACKUP_PREFIX}{datetime.now().strftime('%Y%m%d-%H%M%S')}.json"
        try:
            await self._put_package(name, package)
            logger.info(f"Remote backup created: {name}")
        except SyncError as e:
            logger.warning(f"Remote backup failed: {e}")

    def _build_package(self, snapshot: LocalSnapshot) -> SyncDataPackage:
        return SyncDataPackage.from_snapshot(snapshot, self.device_id, last_sync_time=datetime.now())

    # ------------------------------------------------------------------
    # 公開API

    async def test_connection(self) -> bool:
        """接続テスト"""
        try:
            await self._ensure_collection()
            logger.info(f"WebDAV connection OK: {self._collection_url()}")
            return True
        except SyncError as e:
            logger.warning(f"WebDAV connection test failed: {e}")
            return False

    async def upload(self, snapshot: LocalSnapshot, options: Optional[Dict[str, Any]] = None) -> RemoteResult:
        options = options or {}
        try:
            await self._ensure_collection()
            if options.get('create_backup'):
                remote_package = await self._download_package()
                if remote_package:
                    await self._backup(remote_package)

            await self._put_package(DATA_FILE_NAME, self._build_package(snapshot))
            logger.info(f"Uploaded {len(snapshot.bookmarks)} bookmarks to WebDAV")
            return self._record(RemoteResult.success("Upload completed"))

        except Exception as e:
            logger.error(f"WebDAV upload failed: {e}")
            return self._record(RemoteResult.failure(str(e)))

    async def download(self) -> RemoteResult:
        try:
            package = await self._download_package()
            if package is None:
                return self._record(RemoteResult.failure("FileNotFound: remote data file does not exist"))

            if not package.is_intact():
                logger.warning("Remote data hash mismatch, repairing header")
                package.metadata.data_hash = package.snapshot().calculate_hash()

            logger.info(f"Downloaded {len(package.bookmarks)} bookmarks from WebDAV")
            return self._record(RemoteResult.success("Download completed", data=package))

        except Exception as e:
            logger.error(f"WebDAV download failed: {e}")
            return self._record(RemoteResult.failure(str(e)))

    async def sync(self, snapshot: LocalSnapshot, options: Optional[Dict[str, Any]] = None) -> RemoteResult:
        options = options or {}
        try:
            await self._ensure_collection()
            local_package = self._build_package(snapshot)
            remote_package = await self._download_package()
            detection = self.conflict_detector.detect(local_package, remote_package)
            logger.debug(f"Sync decision: {detection.reason}")

            if detection.has_conflict:
                result = await self._handle_conflict(detection, local_package, remote_package, options)
            elif detection.should_use_local:
                if options.get('create_backup') and remote_package:
                    await self._backup(remote_package)
                await self._put_package(DATA_FILE_NAME, local_package)
                result = RemoteResult.success("Local data uploaded")
            elif detection.should_use_remote:
                result = RemoteResult.success("Remote data downloaded", data=remote_package)
            else:
                result = RemoteResult.success("Already up to date")

            return self._record(result)

        except Exception as e:
            logger.error(f"WebDAV sync failed: {e}")
            return self._record(RemoteResult.failure(str(e)))

    async def _handle_conflict(self, detection: ConflictDetectionResult, local: SyncDataPackage,
                               remote: SyncDataPackage, options: Dict[str, Any]) -> RemoteResult:
        """競合処理（明示的な解決指定・自動解決・手動待ち）"""
        info = detection.conflict_info
        requested = options.get('conflict_resolution')
        if requested:
            resolution = ConflictResolution(requested)
        elif options.get('auto_resolve_conflicts'):
            resolution = self.conflict_detector.recommend_resolution(info)
        else:
            resolution = ConflictResolution.MANUAL

        resolved = self.conflict_detector.resolve(resolution, local, remote, self.device_id)
        if resolved is None:
            return RemoteResult.conflict(info)

        if resolution == ConflictResolution.USE_REMOTE:
            return RemoteResult.success("Conflict resolved with remote data", data=remote)

        resolved.metadata.last_sync_time = datetime.now()
        if options.get('create_backup'):
            await self._backup(remote)
        await self._put_package(DATA_FILE_NAME, resolved)

        if resolution == ConflictResolution.MERGE:
            return RemoteResult.success("Conflict resolved by merge", data=resolved)
        return RemoteResult.success("Conflict resolved with local data")

    async def fetch_remote_metadata(self) -> Optional[PackageMetadata]:
        package = await self._download_package()
        return package.metadata if package else None

    def get_statistics(self) -> Dict[str, Any]:
        return {
            **super().get_statistics(),
            "conflicts": self.conflict_detector.get_statistics(),
        }


if __name__ == "__main__":
    async def demo_webdav():
        service = WebDAVSyncService(WebDAVConfig(
            server_url="https://dav.example.com/remote.php/webdav",
            username="demo",
            password="demo",
        ))
        print(f"Connection: {await service.test_connection()}")

    asyncio.run(demo_webdav())
