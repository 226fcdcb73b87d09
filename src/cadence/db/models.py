"""Table definitions.

Schedules and wizard sessions are opaque JSON values in one key-value table,
partitioned by namespace. ``revision`` is bumped on every write and is the
compare-and-swap token; ``updated_at`` holds an ISO-8601 UTC timestamp.
"""

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class KVEntry(Base):
    __tablename__ = "kv_entries"

    namespace: Mapped[str] = mapped_column(String, primary_key=True)
    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)
