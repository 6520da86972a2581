"""
Query Data Models

SQLAlchemy ORM tables for users, comparison queries, per-model
responses and comparison metrics.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class User(Base):
    """Owner of queries and of encrypted per-provider API keys."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    # provider name -> encrypted API key
    encrypted_api_keys: Mapped[Dict[str, str]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    queries: Mapped[List["Query"]] = relationship(back_populates="user")


class Query(Base):
    """One prompt sent to several models."""

    __tablename__ = "queries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    models_requested: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    parameters: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), default="PENDING", index=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    user: Mapped[User] = relationship(back_populates="queries")
    responses: Mapped[List["ModelResponse"]] = relationship(
        back_populates="query",
        cascade="all, delete-orphan",
        order_by="ModelResponse.position",
    )
    comparison: Mapped[Optional["Comparison"]] = relationship(
        back_populates="query", cascade="all, delete-orphan", uselist=False
    )


class ModelResponse(Base):
    """Outcome of one provider call. Written once, never updated."""

    __tablename__ = "model_responses"
    __table_args__ = (UniqueConstraint("query_id", "model_id", name="uq_response_query_model"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    query_id: Mapped[str] = mapped_column(ForeignKey("queries.id", ondelete="CASCADE"), index=True)
    model_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)
    prompt_tokens: Mapped[int] = mapped_column(Integer, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    cost_usd: Mapped[float] = mapped_column(Float, default=0.0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_kind: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    finish_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    model_version: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    query: Mapped[Query] = relationship(back_populates="responses")


class Comparison(Base):
    """Comparison metrics for a query; at most one row per query."""

    __tablename__ = "comparisons"

    query_id: Mapped[str] = mapped_column(
        ForeignKey("queries.id", ondelete="CASCADE"), primary_key=True
    )
    semantic_similarity: Mapped[int] = mapped_column(Integer, nullable=False)
    length_consistency: Mapped[int] = mapped_column(Integer, nullable=False)
    sentiment_alignment: Mapped[int] = mapped_column(Integer, nullable=False)
    factual_consistency: Mapped[int] = mapped_column(Integer, nullable=False)
    timing_consistency: Mapped[int] = mapped_column(Integer, nullable=False)
    aggregate_score: Mapped[float] = mapped_column(Float, nullable=False)
    explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    query: Mapped[Query] = relationship(back_populates="comparison")
