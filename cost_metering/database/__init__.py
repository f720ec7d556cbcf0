"""
Database module for the cost metering engine

This module provides database models, connections, and repositories
for the append-only cost ledger, budget configuration and processed
content fingerprints.
"""

from .connection import DatabaseManager
from .models import Base, CostLedger, BudgetConfigRecord, ProcessedContent, as_utc
from .repositories import (
    BaseRepository, CostLedgerRepository, BudgetConfigRepository,
    ProcessedContentRepository
)
from .service import DatabaseService, LedgerWriteError

__all__ = [
    # Connection management
    "DatabaseManager",

    # Models
    "Base",
    "CostLedger",
    "BudgetConfigRecord",
    "ProcessedContent",
    "as_utc",

    # Repositories
    "BaseRepository",
    "CostLedgerRepository",
    "BudgetConfigRepository",
    "ProcessedContentRepository",

    # Service
    "DatabaseService",
    "LedgerWriteError",
]
