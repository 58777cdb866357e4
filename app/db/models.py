"""
Database models for Turion

- Credit ledger: a derived per-user balance plus an append-only transaction log
- Conversations and their messages
- Durable per-user memories mined from chat turns
- Projects, their dev-server lifecycle state and build steps
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from enum import Enum
import uuid

from sqlalchemy import (
    String, Text, DateTime, Integer, Numeric,
    ForeignKey, Index, UniqueConstraint, text
)
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.ext.declarative import declarative_base

Base = declarative_base()

# Credits are stored with two decimal places (pricing rounds up to 0.01)
CreditAmount = Numeric(14, 2)


def _uuid() -> str:
    return str(uuid.uuid4())


class TransactionType(str, Enum):
    """Kinds of ledger entries"""
    BONUS = "bonus"         # Signup / referral grants
    PURCHASE = "purchase"   # Credit package bought through Stripe
    REFUND = "refund"       # Manual or automatic refund
    USAGE = "usage"         # Generation usage (negative amount)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MemoryKind(str, Enum):
    """Kinds of durable memories"""
    NOTE = "note"
    PREFERENCE = "preference"
    INSTRUCTION = "instruction"
    FACT = "fact"


class ProjectType(str, Enum):
    NEXTJS = "nextjs"
    REACT = "react"
    REACT_NATIVE = "react-native"


class ProjectStatus(str, Enum):
    """
    Project lifecycle.

    planning -> generating -> ready -> running -> stopped
    error is reachable from generating, running or any failed transition.
    """
    PLANNING = "planning"
    GENERATING = "generating"
    READY = "ready"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


# Statuses whose port stays reserved; one project per port among them
PORT_HOLDING_STATUSES = (
    ProjectStatus.PLANNING.value,
    ProjectStatus.GENERATING.value,
    ProjectStatus.READY.value,
    ProjectStatus.RUNNING.value,
)
HELD_PORT_PREDICATE = text(
    "port IS NOT NULL AND status IN (" + ", ".join(f"'{s}'" for s in PORT_HOLDING_STATUSES) + ")"
)


class BuildStepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


DEFAULT_CONVERSATION_TITLE = "New Chat"


class User(Base):
    """Local mirror of an identity issued by the upstream auth provider"""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    conversations: Mapped[List["Conversation"]] = relationship("Conversation", back_populates="user")
    projects: Mapped[List["Project"]] = relationship("Project", back_populates="user")


class CreditBalance(Base):
    """
    Per-user balance.

    current == lifetime_earned - lifetime_spent and current never drops
    below the ledger floor. Only the credit ledger mutates these rows.
    """
    __tablename__ = "credit_balances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), unique=True, index=True)
    current: Mapped[Decimal] = mapped_column(CreditAmount, default=Decimal("0"))
    lifetime_earned: Mapped[Decimal] = mapped_column(CreditAmount, default=Decimal("0"))
    lifetime_spent: Mapped[Decimal] = mapped_column(CreditAmount, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CreditTransaction(Base):
    """Immutable ledger entry. Usage entries carry a negative amount."""
    __tablename__ = "credit_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), index=True)
    type: Mapped[str] = mapped_column(String(20))  # TransactionType value
    amount: Mapped[Decimal] = mapped_column(CreditAmount)
    description: Mapped[str] = mapped_column(String(500), default="")
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # External id (e.g. Stripe checkout session) that makes an earn idempotent
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_credit_tx_user_created", "user_id", "created_at"),
    )


class Conversation(Base):
    """A chat thread owned by one user"""
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String(500), default=DEFAULT_CONVERSATION_TITLE)
    conversation_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    user: Mapped["User"] = relationship("User", back_populates="conversations")
    messages: Mapped[List["Message"]] = relationship(
        "Message", back_populates="conversation",
        order_by="Message.created_at", cascade="all, delete-orphan",
    )


class Message(Base):
    """One chat message; never edited after insert"""
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    conversation_id: Mapped[str] = mapped_column(String(36), ForeignKey("conversations.id"), index=True)
    role: Mapped[str] = mapped_column(String(20))  # MessageRole value
    content: Mapped[str] = mapped_column(Text, default="")
    tokens_used: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    credit_cost: Mapped[Optional[Decimal]] = mapped_column(CreditAmount, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    conversation: Mapped["Conversation"] = relationship("Conversation", back_populates="messages")


class Memory(Base):
    """
    Durable fact about a user.

    Deduplicated by exact content per user: a repeat observation refreshes
    kind/source/updated_at instead of inserting a second row.
    """
    __tablename__ = "memories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), index=True)
    content: Mapped[str] = mapped_column(String(500))
    kind: Mapped[str] = mapped_column(String(20), default=MemoryKind.NOTE.value)
    source: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_memories_user_content", "user_id", "content"),
    )


class Project(Base):
    """
    A generated app with at most one dev server bound to its reserved port.

    Persisted port/subdomain/path/status are the source of truth; live
    process handles are only a cache rebuilt by reconciliation.
    """
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    project_type: Mapped[str] = mapped_column(String(30))  # ProjectType value
    status: Mapped[str] = mapped_column(String(20), default=ProjectStatus.PLANNING.value, index=True)
    port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    subdomain: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    preview_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    project_path: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    error_log: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_accessed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    user: Mapped["User"] = relationship("User", back_populates="projects")
    build_steps: Mapped[List["ProjectBuildStep"]] = relationship(
        "ProjectBuildStep", back_populates="project",
        order_by="ProjectBuildStep.step", cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index(
            "uq_projects_held_port", "port", unique=True,
            sqlite_where=HELD_PORT_PREDICATE, postgresql_where=HELD_PORT_PREDICATE,
        ),
    )


class ProjectBuildStep(Base):
    """One tracked unit of a project's build; status only moves forward"""
    __tablename__ = "project_build_steps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"), index=True)
    step: Mapped[int] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), default=BuildStepStatus.PENDING.value)
    output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    project: Mapped["Project"] = relationship("Project", back_populates="build_steps")

    __table_args__ = (
        UniqueConstraint("project_id", "step", name="uq_build_step_project_step"),
    )
