# Overview: Persistent named response caches backing the network cache worker.

"""
CacheStorage keeps HTTP responses in SQLite, grouped in named caches the way
a browser's cache storage does. Each NamedCache can carry an expiry policy:
entries older than max_age are dropped when read, and the least recently
used entries beyond max_entries are evicted on write. The policy is stored
with the cache name, so it still applies after a restart.

Bodies are stored decoded, so content-encoding and length headers are not
kept.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator

import httpx
from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    LargeBinary,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from ..time_utils import utcnow
from .store import build_engine

logger = logging.getLogger(__name__)

DROPPED_HEADERS = {"content-encoding", "content-length", "transfer-encoding", "connection"}


class CacheBase(DeclarativeBase):
    pass


class CacheName(CacheBase):
    __tablename__ = "cache_names"

    name = Column(String(128), primary_key=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    max_entries = Column(Integer, nullable=True)
    max_age_seconds = Column(Integer, nullable=True)

    def set_policy(self, max_entries: int | None, max_age: timedelta | None) -> None:
        self.max_entries = max_entries
        self.max_age_seconds = None if max_age is None else int(max_age.total_seconds())

    @property
    def policy(self) -> dict:
        max_age = None if self.max_age_seconds is None else timedelta(seconds=self.max_age_seconds)
        return {"max_entries": self.max_entries, "max_age": max_age}


class CachedResponse(CacheBase):
    __tablename__ = "cached_responses"
    __table_args__ = (
        UniqueConstraint("cache_name", "url", name="uq_cached_responses_cache_url"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    cache_name = Column(String(128), ForeignKey("cache_names.name", ondelete="CASCADE"), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    status_code = Column(Integer, nullable=False)
    headers = Column(JSON, nullable=False, default=list)
    content = Column(LargeBinary, nullable=False, default=b"")
    stored_at = Column(DateTime, nullable=False, default=utcnow)
    last_accessed_at = Column(DateTime, nullable=False, default=utcnow, index=True)


def storable_headers(headers: httpx.Headers) -> list[list[str]]:
    return [[k, v] for k, v in headers.multi_items() if k.lower() not in DROPPED_HEADERS]


class NamedCache:
    def __init__(self, storage: "CacheStorage", name: str, *, max_entries: int | None = None,
                 max_age: timedelta | None = None):
        self.storage = storage
        self.name = name
        self.max_entries = max_entries
        self.max_age = max_age

    def _expired(self, row: CachedResponse, now: datetime) -> bool:
        return self.max_age is not None and row.stored_at < now - self.max_age

    def match(self, url: str, request: httpx.Request | None = None) -> httpx.Response | None:
        now = self.storage.clock()
        with self.storage.session() as session:
            row = session.query(CachedResponse).filter_by(cache_name=self.name, url=str(url)).first()
            if row is None:
                return None
            if self._expired(row, now):
                session.delete(row)
                return None
            row.last_accessed_at = now
            return httpx.Response(
                row.status_code,
                headers=row.headers,
                content=row.content,
                request=request,
            )

    def put(self, url: str, response: httpx.Response) -> None:
        """`response` must already be read."""
        now = self.storage.clock()
        with self.storage.session() as session:
            if session.get(CacheName, self.name) is None:
                cache_name = CacheName(name=self.name, created_at=now)
                cache_name.set_policy(self.max_entries, self.max_age)
                session.add(cache_name)
            row = session.query(CachedResponse).filter_by(cache_name=self.name, url=str(url)).first()
            if row is None:
                row = CachedResponse(cache_name=self.name, url=str(url))
                session.add(row)
            row.status_code = response.status_code
            row.headers = storable_headers(response.headers)
            row.content = response.content
            row.stored_at = now
            row.last_accessed_at = now
            session.flush()
            self._evict(session, now)

    def _evict(self, session: Session, now: datetime) -> None:
        query = session.query(CachedResponse).filter(CachedResponse.cache_name == self.name)
        if self.max_age is not None:
            query.filter(CachedResponse.stored_at < now - self.max_age).delete(synchronize_session=False)
        if self.max_entries is not None:
            stale_ids = [
                row_id for (row_id,) in session.query(CachedResponse.id)
                .filter(CachedResponse.cache_name == self.name)
                .order_by(CachedResponse.last_accessed_at.desc(), CachedResponse.id.desc())
                .offset(self.max_entries)
            ]
            if stale_ids:
                session.query(CachedResponse).filter(CachedResponse.id.in_(stale_ids)).delete(
                    synchronize_session=False
                )

    def delete(self, url: str) -> bool:
        with self.storage.session() as session:
            return bool(
                session.query(CachedResponse)
                .filter_by(cache_name=self.name, url=str(url))
                .delete(synchronize_session=False)
            )

    def keys(self) -> list[str]:
        with self.storage.session() as session:
            return [
                url for (url,) in session.query(CachedResponse.url)
                .filter(CachedResponse.cache_name == self.name)
                .order_by(CachedResponse.id.asc())
            ]

    def __len__(self) -> int:
        with self.storage.session() as session:
            return session.query(CachedResponse).filter(CachedResponse.cache_name == self.name).count()


class CacheStorage:
    def __init__(self, url: str = "sqlite:///offline-cache.sqlite3", *, clock: Callable = utcnow):
        self.url = url
        self.clock = clock
        self.engine = None
        self._session_factory: sessionmaker | None = None
        self._lock = threading.RLock()

    def init(self) -> "CacheStorage":
        if self.engine is None:
            self.engine = build_engine(self.url)
            CacheBase.metadata.create_all(self.engine)
            self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
            self._session_factory = None

    @contextmanager
    def session(self) -> Iterator[Session]:
        """One locked transaction, committed on success."""
        if self._session_factory is None:
            raise RuntimeError("CacheStorage.init() has not been called")
        with self._lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def open(self, name: str, *, max_entries: int | None = None, max_age: timedelta | None = None) -> NamedCache:
        """
        Open (creating if needed) a named cache.

        A policy given once is stored with the name and applies to every
        later open, across restarts.
        """
        with self.session() as session:
            cache_name = session.get(CacheName, name)
            if cache_name is None:
                cache_name = CacheName(name=name, created_at=self.clock())
                session.add(cache_name)
            if max_entries is not None or max_age is not None:
                cache_name.set_policy(max_entries, max_age)
            policy = cache_name.policy
        return NamedCache(self, name, **policy)

    def has(self, name: str) -> bool:
        with self.session() as session:
            return session.get(CacheName, name) is not None

    def keys(self) -> list[str]:
        with self.session() as session:
            return [name for (name,) in session.query(CacheName.name).order_by(CacheName.created_at.asc())]

    def delete(self, name: str) -> bool:
        with self.session() as session:
            session.query(CachedResponse).filter(CachedResponse.cache_name == name).delete(
                synchronize_session=False
            )
            deleted = session.query(CacheName).filter(CacheName.name == name).delete(synchronize_session=False)
        if deleted:
            logger.info("Deleted cache %s", name)
        return bool(deleted)

    def clear(self) -> int:
        """Delete every cache. Returns how many were deleted."""
        return sum(1 for name in self.keys() if self.delete(name))

    def match(self, url: str, request: httpx.Request | None = None) -> httpx.Response | None:
        """First hit across all caches, oldest cache first."""
        for name in self.keys():
            response = self.open(name).match(url, request)
            if response is not None:
                return response
        return None

