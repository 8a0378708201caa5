"""
UI向けリクエスト/レスポンスチャンネル
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from ..layers.sync_layer.error_handler import SyncErrorType, error_response
from .sync_coordinator import SyncCoordinator

logger = logging.getLogger(__name__)

Route = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class MessageHandler:
    """アクション名でコーディネーター操作を呼び出すディスパッチャー"""

    def __init__(self, coordinator: SyncCoordinator):
        self.coordinator = coordinator
        self.routes: Dict[str, Route] = {
            'sync': lambda p: coordinator.sync(p.get('options')),
            'upload': lambda p: coordinator.upload(p.get('options')),
            'download': lambda p: coordinator.download(),
            'test_connection': lambda p: coordinator.test_connection(),
            'get_status': lambda p: coordinator.get_status(),
            'update_config': lambda p: coordinator.update_config(p.get('config') or {}),
            'resolve_conflict': lambda p: coordinator.resolve_conflict(p.get('resolution')),
            'enable_auto_sync': lambda p: coordinator.enable_auto_sync(
                bool(p.get('enabled')), p.get('interval_minutes')),
            'clear_sync_data': lambda p: coordinator.clear_sync_data(),
            'trigger_auto_sync': lambda p: coordinator.trigger_auto_sync(p.get('event_type')),
            'get_auto_sync_config': lambda p: coordinator.get_auto_sync_config(),
            'update_auto_sync_config': lambda p: coordinator.update_auto_sync_config(p.get('config') or {}),
            'get_sync_stats': lambda p: coordinator.get_sync_stats(),
        }

    async def handle(self, action: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        route = self.routes.get(action)
        if route is None:
            logger.warning(f"Unknown action received: {action}")
            return {'success': False, 'error': SyncErrorType.UNKNOWN.value,
                    'message': f"Unknown action: {action}"}

        try:
            return await route(payload or {})
        except Exception as e:
            logger.error(f"Action {action} failed: {e}")
            return error_response(e)
