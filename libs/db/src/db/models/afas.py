from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ---------------------------
# Cache: afas_data_cache
# ---------------------------


class AfasDataCache(Base):
    """One cached AFAS dataset per key.

    ``payload`` holds the gzip+base64 encoded JSON row list produced by
    ``afas_finance.cache.compress_records``.
    """

    __tablename__ = "afas_data_cache"

    cache_key: Mapped[str] = mapped_column(String, primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False)
    last_refreshed: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------
# Mapping: afas_category_mappings
# ---------------------------


class AfasCategoryMapping(Base):
    __tablename__ = "afas_category_mappings"
    __table_args__ = (
        UniqueConstraint("user_id", "category_3", name="uniq_afas_mapping_user_category"),
        CheckConstraint("source IN ('ai', 'manual')", name="ck_afas_mapping_source"),
        CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_afas_mapping_confidence",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    # AFAS Omschrijving_3 sub-category as it appears in the ledger rows.
    category_3: Mapped[str] = mapped_column(String, nullable=False)
    type_rekening: Mapped[str | None] = mapped_column(String, nullable=True)
    mapped_category: Mapped[str] = mapped_column(String, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
