from sqlalchemy import Column, Integer, String, Numeric, DateTime, JSON, Index
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from datetime import datetime, timezone
from typing import Optional

Base = declarative_base()


class CostLedger(Base):
    """Append-only ledger of persisted cost events"""
    __tablename__ = "cost_ledger"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(32), nullable=False, index=True)  # not unique: retried flushes may duplicate

    # Attribution
    tenant_id = Column(String(255), nullable=False, index=True)
    service = Column(String(100), nullable=False)
    operation = Column(String(100), nullable=False)

    # Charge
    amount_cents = Column(Numeric(18, 4), nullable=False)
    units = Column(Numeric(18, 6), nullable=True)
    metadata_json = Column(JSON, nullable=True)

    # Timestamps
    tracked_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Reporting indexes
    __table_args__ = (
        Index('ix_ledger_tenant_tracked', 'tenant_id', 'tracked_at'),
        Index('ix_ledger_tenant_service_tracked', 'tenant_id', 'service', 'tracked_at'),
    )


class BudgetConfigRecord(Base):
    """Per-tenant monthly budget and alert thresholds"""
    __tablename__ = "budget_configs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(255), unique=True, nullable=False, index=True)
    tier = Column(String(50), nullable=False, default="free")  # free, premium, ultimate

    monthly_budget_cents = Column(Numeric(18, 4), nullable=True)  # NULL -> tier default
    alert_thresholds = Column(JSON, nullable=True)  # NULL -> [75, 90, 100]

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class ProcessedContent(Base):
    """Fingerprints of already-processed content, used to skip repeat billing"""
    __tablename__ = "processed_content"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    content_hash = Column(String(64), nullable=False)  # sha256 hex
    perceptual_hash = Column(String(16), nullable=True)  # 64-bit hex
    media_type = Column(String(20), nullable=True)  # image, video
    result_json = Column(JSON, nullable=True)
    cost_cents = Column(Numeric(18, 4), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    __table_args__ = (
        Index('ix_processed_tenant_hash', 'tenant_id', 'content_hash'),
        Index('ix_processed_tenant_created', 'tenant_id', 'created_at'),
    )


def as_utc(moment: Optional[datetime] = None) -> datetime:
    """Normalize to a UTC-aware datetime for storage and range queries"""
    if moment is None:
        return datetime.now(timezone.utc)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)
