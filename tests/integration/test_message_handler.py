"""
メッセージハンドラー テスト
"""

import pytest

from dualtab_sync.core.message_handler import MessageHandler


@pytest.fixture
async def handler(coordinator):
    return MessageHandler(coordinator)


class TestMessageHandler:
    """アクションのディスパッチテスト"""

    @pytest.mark.asyncio
    async def test_all_actions_are_routed(self, handler):
        assert set(handler.routes) == {
            'sync', 'upload', 'download', 'test_connection', 'get_status', 'update_config',
            'resolve_conflict', 'enable_auto_sync', 'clear_sync_data', 'trigger_auto_sync',
            'get_auto_sync_config', 'update_auto_sync_config', 'get_sync_stats',
        }

    @pytest.mark.asyncio
    async def test_unknown_action(self, handler):
        response = await handler.handle('format_disk')

        assert response['success'] is False
        assert response['error'] == "Unknown"

    @pytest.mark.asyncio
    async def test_config_then_upload(self, handler, valid_config, stub_remote):
        """設定更新からアップロードまでの流れ"""
        assert (await handler.handle('sync'))['error'] == "ConfigInvalid"

        assert (await handler.handle('update_config', {'config': valid_config}))['success'] is True

        response = await handler.handle('upload', {'options': {'create_backup': True}})
        assert response['success'] is True
        assert stub_remote.options[-1] == {'create_backup': True}

        status = await handler.handle('get_status')
        assert status['status'] == "success"

    @pytest.mark.asyncio
    async def test_enable_auto_sync_payload(self, handler, valid_config, coordinator):
        await handler.handle('update_config', {'config': valid_config})

        response = await handler.handle('enable_auto_sync', {'enabled': True, 'interval_minutes': 5})

        assert response['success'] is True
        assert coordinator.interval_scheduler.interval_minutes == 5

    @pytest.mark.asyncio
    async def test_auto_sync_config_actions(self, handler):
        response = await handler.handle('update_auto_sync_config', {'config': {'upload_delay_ms': 500}})
        assert response['success'] is True

        response = await handler.handle('get_auto_sync_config')
        assert response['config']['upload_delay_ms'] == 500

    @pytest.mark.asyncio
    async def test_route_exception_becomes_error_response(self, handler, coordinator, monkeypatch):
        """ルート内の例外はエラーレスポンスに変換"""
        async def broken_stats():
            raise ConnectionError("network is down")

        monkeypatch.setattr(coordinator, 'get_sync_stats', broken_stats)

        response = await handler.handle('get_sync_stats')

        assert response['success'] is False
        assert response['error'] == "NetworkError"
