from marketplace.db.models.store_node import StoreNode

__all__ = ["StoreNode"]
