"""Durable storage: async SQLAlchemy engine, tables and stores."""

from src.storage.database import Database
from src.storage.job_store import SearchJobStore
from src.storage.lead_store import LeadStore
from src.storage.tables import Base

__all__ = ["Base", "Database", "LeadStore", "SearchJobStore"]
