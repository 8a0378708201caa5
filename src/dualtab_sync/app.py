"""
アプリケーション構築 - ストレージ・コーディネーター・メッセージハンドラーの組み立て
"""

import asyncio
import json
from dataclasses import asdict, dataclass
from typing import Optional

from .config.sync_config import ConfigManager, SecurityManager, SyncEngineConfig
from .core.message_handler import MessageHandler
from .core.sync_coordinator import RemoteFactory, SyncCoordinator
from .layers.storage_layer.storage_bridge import StorageBridge
from .utils.enhanced_logger import setup_logging


@dataclass
class SyncApplication:
    """組み立て済みの同期エンジン"""
    config: SyncEngineConfig
    storage: StorageBridge
    coordinator: SyncCoordinator
    handler: MessageHandler

    async def shutdown(self):
        await self.coordinator.shutdown()


async def create_application(config: Optional[SyncEngineConfig] = None,
                             remote_factory: Optional[RemoteFactory] = None,
                             configure_logging: bool = True) -> SyncApplication:
    """同期エンジンの生成と初期化"""
    config = config or ConfigManager().load_config()
    if configure_logging:
        setup_logging(asdict(config.logging))

    storage = StorageBridge(
        config.storage.database_path,
        security_manager=SecurityManager(config.security.encryption_key),
        lock_ttl_seconds=config.lock.ttl_seconds,
        history_limit=config.storage.history_limit,
    )
    if not await storage.initialize():
        raise RuntimeError(f"Failed to initialize sync storage: {config.storage.database_path}")

    coordinator = SyncCoordinator(storage, config, remote_factory)
    await coordinator.initialize()

    return SyncApplication(config=config, storage=storage, coordinator=coordinator,
                           handler=MessageHandler(coordinator))


if __name__ == "__main__":
    async def main():
        app = await create_application()
        try:
            status = await app.handler.handle('get_status')
            print(json.dumps(status, indent=2, ensure_ascii=False))
        finally:
            await app.shutdown()

    asyncio.run(main())
