"""
アプリケーション組み立て テスト
"""

import pytest
from cryptography.fernet import Fernet

from dualtab_sync.app import create_application
from dualtab_sync.config.sync_config import SyncEngineConfig


@pytest.fixture
def app_config(tmp_path):
    config = SyncEngineConfig()
    config.storage.database_path = str(tmp_path / "data" / "sync.db")
    config.security.encryption_key = Fernet.generate_key().decode()
    return config


class TestCreateApplication:
    """同期エンジンの組み立てテスト"""

    @pytest.mark.asyncio
    async def test_application_serves_requests(self, app_config, valid_config, stub_remote):
        """組み立てたエンジンでリクエストを処理できる"""
        app = await create_application(app_config, remote_factory=lambda config, device_id: stub_remote,
                                       configure_logging=False)
        try:
            status = await app.handler.handle('get_status')
            assert status['success'] is True
            assert status['status'] == "idle"

            assert (await app.handler.handle('update_config', {'config': valid_config}))['success'] is True
            assert (await app.handler.handle('upload'))['success'] is True
            assert stub_remote.calls == ['upload']
        finally:
            await app.shutdown()

    @pytest.mark.asyncio
    async def test_saved_config_is_restored(self, app_config, valid_config, stub_remote):
        """再起動後も保存済み設定（暗号化パスワード含む）で動作"""
        app = await create_application(app_config, remote_factory=lambda config, device_id: stub_remote,
                                       configure_logging=False)
        await app.handler.handle('update_config', {'config': {**valid_config, 'enabled': True}})
        device_id = (await app.handler.handle('get_status'))['metadata']['device_id']
        await app.shutdown()

        restored = []

        def factory(config, device_id):
            restored.append(config)
            return stub_remote

        app = await create_application(app_config, remote_factory=factory, configure_logging=False)
        try:
            assert restored[0].password == "secret"
            assert app.coordinator.interval_scheduler.is_running()
            status = await app.handler.handle('get_status')
            assert status['metadata']['device_id'] == device_id
        finally:
            await app.shutdown()
