"""SQLAlchemy models for the durable state tier."""

from typing import Optional

from sqlalchemy import Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gatekeeper.db.base import Base


class StateRecord(Base):
    """
    One persisted limiter or quota state.

    Keys are identical to the cache tier keys so a cache miss can be
    reconstructed from this table without translation. `version` increases
    with every write made through a tiered store; older versions never
    replace newer ones.
    """

    __tablename__ = "state_records"

    key: Mapped[str] = mapped_column(String(512), unique=True, nullable=False, index=True)
    namespace: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (Index("ix_state_records_namespace", "namespace"),)
