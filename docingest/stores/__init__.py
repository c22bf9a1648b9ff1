from docingest.stores.base import BaseStore, StoreOutcome, classify_store_exception
from docingest.stores.factory import StoreSet, build_store_set

__all__ = [
    "BaseStore", "StoreOutcome", "classify_store_exception",
    "StoreSet", "build_store_set",
]
