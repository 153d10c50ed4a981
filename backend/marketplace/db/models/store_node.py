from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.db.base import Base

# Key of the row that holds a non-mapping value stored directly at a collection path.
COLLECTION_VALUE_KEY = ""


class StoreNode(Base):
    __tablename__ = "store_nodes"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    # keys compare by byte value on every backend
    key: Mapped[str] = mapped_column(
        String(128).with_variant(String(128, collation="C"), "postgresql"),
        primary_key=True,
    )
    value: Mapped[object] = mapped_column(JSON)
