from board_sync.store.object_store import ObjectStore, StoreListener

__all__ = ["ObjectStore", "StoreListener"]
