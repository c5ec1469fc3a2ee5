from strandworks.state.store import EntityStore, StoreError

__all__ = ["EntityStore", "StoreError"]
