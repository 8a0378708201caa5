"""
ストレージ層 - 同期状態とローカルスナップショットの永続化
"""

from .storage_bridge import StorageBridge, StorageChange, StorageKey

__all__ = ['StorageBridge', 'StorageChange', 'StorageKey']
