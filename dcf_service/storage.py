"""
Persistence for analyses and cached provider responses.

Two collections live in one SQLAlchemy database:
- ``stock_analyses``: one document per analysis run. Unsaved analyses expire
  after ANALYSIS_RETENTION_SECONDS; saved ones are kept until deleted.
- ``cache_entries``: key/value cache with a per-entry expiry timestamp.

Expiry is enforced on read for the cache and by ``purge_expired`` for both
collections.
"""

import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, create_engine, delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./dcf_analyses.db")
ANALYSIS_RETENTION_SECONDS = int(os.environ.get("ANALYSIS_RETENTION_SECONDS", "2592000"))  # 30 days
HISTORY_LIMIT = 50

Base = declarative_base()


class AnalysisNotFoundError(LookupError):
    """Raised when an analysis id does not exist."""
    pass


def _utcnow() -> datetime:
    # Naive UTC: SQLite drops tzinfo on the way back out.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return uuid.uuid4().hex


class StockAnalysis(Base):
    __tablename__ = "stock_analyses"

    id = Column(String(32), primary_key=True, default=_new_id)
    ticker = Column(String(16), nullable=False, index=True)
    company_name = Column(String(255))
    current_price = Column(Float)

    # {intrinsicValue, upside, recommendation, enterpriseValue, equityValue,
    #  pvFcf5Year, pvTerminalValue}
    dcf_analysis = Column(JSON, nullable=False, default=dict)
    assumptions = Column(JSON, nullable=False, default=dict)
    financials = Column(JSON, nullable=False, default=dict)
    multiples = Column(JSON, nullable=False, default=dict)

    analysis_date = Column(DateTime, nullable=False, default=_utcnow, index=True)
    user_id = Column(String(64))
    is_public = Column(Boolean, nullable=False, default=False)
    views = Column(Integer, nullable=False, default=0)
    saved = Column(Boolean, nullable=False, default=False, index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ticker": self.ticker,
            "companyName": self.company_name,
            "currentPrice": self.current_price,
            "dcfAnalysis": dict(self.dcf_analysis or {}),
            "assumptions": dict(self.assumptions or {}),
            "financials": dict(self.financials or {}),
            "multiples": dict(self.multiples or {}),
            "analysisDate": self.analysis_date.isoformat() if self.analysis_date else None,
            "userId": self.user_id,
            "isPublic": bool(self.is_public),
            "views": self.views or 0,
            "saved": bool(self.saved),
        }

    def to_summary(self) -> Dict[str, Any]:
        dcf = self.dcf_analysis or {}
        return {
            "id": self.id,
            "ticker": self.ticker,
            "companyName": self.company_name,
            "currentPrice": self.current_price,
            "dcfAnalysis": {
                "intrinsicValue": dcf.get("intrinsicValue"),
                "recommendation": dcf.get("recommendation"),
            },
            "analysisDate": self.analysis_date.isoformat() if self.analysis_date else None,
        }

    def __repr__(self):
        return f"<StockAnalysis {self.ticker} {self.id}>"


class CacheEntry(Base):
    __tablename__ = "cache_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(255), nullable=False, unique=True, index=True)
    data = Column(JSON)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<CacheEntry {self.key}>"


def _create_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            # Every session must see the same in-memory database.
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


class AnalysisStore:
    """
    Typed helpers around the analyses and cache tables.

    Each call opens its own session, so one store can be shared across
    request handlers.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        retention_seconds: Optional[int] = None,
        engine: Optional[Engine] = None,
    ):
        self.database_url = database_url or DATABASE_URL
        self.retention_seconds = ANALYSIS_RETENTION_SECONDS if retention_seconds is None else retention_seconds
        self.engine = engine or _create_engine(self.database_url)
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    # ------------------------------------------------------------------ #
    # Analyses
    def create_analysis(self, record: Dict[str, Any]) -> Dict[str, Any]:
        ticker = (record.get("ticker") or "").upper()
        if not ticker:
            raise ValueError("An analysis requires a ticker")
        analysis = StockAnalysis(
            ticker=ticker,
            company_name=record.get("companyName"),
            current_price=record.get("currentPrice"),
            dcf_analysis=record.get("dcfAnalysis") or {},
            assumptions=record.get("assumptions") or {},
            financials=record.get("financials") or {},
            multiples=record.get("multiples") or {},
            user_id=record.get("userId"),
            is_public=bool(record.get("isPublic", False)),
            saved=bool(record.get("saved", False)),
        )
        if record.get("analysisDate") is not None:
            analysis.analysis_date = record["analysisDate"]
        with self._session_factory() as session:
            session.add(analysis)
            session.commit()
            logger.info("Stored analysis %s for %s", analysis.id, ticker)
            return analysis.to_dict()

    def get_analysis(self, analysis_id: str, count_view: bool = False) -> Dict[str, Any]:
        with self._session_factory() as session:
            analysis = session.get(StockAnalysis, analysis_id)
            if analysis is None:
                raise AnalysisNotFoundError(analysis_id)
            if count_view:
                analysis.views = (analysis.views or 0) + 1
                session.commit()
            return analysis.to_dict()

    def list_recent(self, limit: int = HISTORY_LIMIT) -> List[Dict[str, Any]]:
        self.purge_expired()
        with self._session_factory() as session:
            rows = session.scalars(
                select(StockAnalysis).order_by(StockAnalysis.analysis_date.desc()).limit(limit)
            ).all()
            return [row.to_summary() for row in rows]

    def mark_saved(self, analysis_id: str) -> Dict[str, Any]:
        with self._session_factory() as session:
            analysis = session.get(StockAnalysis, analysis_id)
            if analysis is None:
                raise AnalysisNotFoundError(analysis_id)
            analysis.saved = True
            session.commit()
            return analysis.to_dict()

    def delete_analysis(self, analysis_id: str) -> None:
        with self._session_factory() as session:
            analysis = session.get(StockAnalysis, analysis_id)
            if analysis is None:
                raise AnalysisNotFoundError(analysis_id)
            session.delete(analysis)
            session.commit()

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Drop unsaved analyses past retention and cache entries past expiry."""
        now = now or _utcnow()
        cutoff = now - timedelta(seconds=self.retention_seconds)
        with self._session_factory() as session:
            analyses = session.execute(
                delete(StockAnalysis).where(
                    StockAnalysis.saved.is_(False),
                    StockAnalysis.analysis_date < cutoff,
                )
            ).rowcount
            cache = session.execute(delete(CacheEntry).where(CacheEntry.expires_at <= now)).rowcount
            session.commit()
        if analyses or cache:
            logger.info("Purged %d expired analyses and %d cache entries", analyses, cache)
        return {"analyses": analyses or 0, "cache": cache or 0}

    # ------------------------------------------------------------------ #
    # Cache
    def cache_get(self, key: str, now: Optional[datetime] = None) -> Optional[Any]:
        now = now or _utcnow()
        with self._session_factory() as session:
            entry = session.scalar(select(CacheEntry).where(CacheEntry.key == key))
            if entry is None:
                return None
            if entry.expires_at <= now:
                session.delete(entry)
                session.commit()
                return None
            return entry.data

    def cache_set(self, key: str, data: Any, ttl_seconds: int, now: Optional[datetime] = None) -> None:
        now = now or _utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)
        with self._session_factory() as session:
            entry = session.scalar(select(CacheEntry).where(CacheEntry.key == key))
            if entry is None:
                session.add(CacheEntry(key=key, data=data, expires_at=expires_at))
            else:
                entry.data = data
                entry.expires_at = expires_at
            session.commit()


_STORE: Optional[AnalysisStore] = None


def get_store() -> AnalysisStore:
    """FastAPI dependency returning the process-wide store."""
    global _STORE
    if _STORE is None:
        _STORE = AnalysisStore()
    return _STORE
