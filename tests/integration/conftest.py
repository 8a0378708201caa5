"""
統合テスト共通フィクスチャ
"""

import asyncio
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from dualtab_sync.config.sync_config import SyncEngineConfig
from dualtab_sync.core.models import PackageMetadata, RemoteResult, WebDAVConfig
from dualtab_sync.core.sync_coordinator import SyncCoordinator
from dualtab_sync.layers.storage_layer.storage_bridge import StorageBridge
from dualtab_sync.layers.sync_layer.remote_service import RemoteSyncService


VALID_CONFIG = {
    'server_url': "https://dav.example.com/remote.php/webdav",
    'username': "alice",
    'password': "secret",
    'sync_path': "/DualTab",
    'enabled': False,
    'auto_sync_interval': 30,
}


class StubRemoteService(RemoteSyncService):
    """テスト用リモートサービス

    results に操作名ごとの RemoteResult / 例外 / それらのリストを設定する。
    gate を設定すると応答前にイベント待ちする。
    """

    def __init__(self, config: WebDAVConfig, device_id: str = ""):
        super().__init__(config, device_id)
        self.calls: List[str] = []
        self.options: List[Dict[str, Any]] = []
        self.results: Dict[str, Any] = {}
        self.delay = 0.0
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.connection_ok = True
        self.remote_metadata: Optional[PackageMetadata] = None

    async def _respond(self, kind: str, options: Optional[Dict[str, Any]] = None) -> RemoteResult:
        self.calls.append(kind)
        self.options.append(dict(options or {}))
        self.started.set()

        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)

        outcome = self.results.get(kind)
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if outcome is None:
            outcome = RemoteResult.success(f"{kind} completed")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def upload(self, snapshot, options):
        return await self._respond('upload', options)

    async def download(self):
        return await self._respond('download')

    async def sync(self, snapshot, options):
        return await self._respond('sync', options)

    async def test_connection(self) -> bool:
        self.calls.append('test_connection')
        return self.connection_ok

    async def fetch_remote_metadata(self) -> Optional[PackageMetadata]:
        return self.remote_metadata


@pytest.fixture
def valid_config() -> Dict[str, Any]:
    return dict(VALID_CONFIG)


@pytest.fixture
async def temp_storage():
    """テンポラリストレージ"""
    with tempfile.TemporaryDirectory() as temp_dir:
        storage = StorageBridge(Path(temp_dir) / "sync.db")
        await storage.initialize()
        yield storage


@pytest.fixture
def engine_config():
    """高速に動作するテスト用エンジン設定"""
    config = SyncEngineConfig()
    config.scheduler.unit_seconds = 0.05
    config.auto_sync.upload_delay_ms = 150
    return config


@pytest.fixture
async def stub_remote():
    return StubRemoteService(WebDAVConfig())


@pytest.fixture
async def coordinator(temp_storage, engine_config, stub_remote):
    """スタブリモートを使うコーディネーター"""
    def factory(config: WebDAVConfig, device_id: str) -> RemoteSyncService:
        stub_remote.update_config(config)
        stub_remote.device_id = device_id
        return stub_remote

    coordinator = SyncCoordinator(temp_storage, engine_config, remote_factory=factory)
    await coordinator.initialize()
    yield coordinator
    await coordinator.shutdown()


@pytest.fixture
async def configured_coordinator(coordinator, valid_config):
    """WebDAV設定済みのコーディネーター"""
    response = await coordinator.update_config(valid_config)
    assert response['success'], response
    return coordinator
