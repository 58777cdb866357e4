from app.db.models import (
    Base, User, CreditBalance, CreditTransaction, TransactionType,
    Conversation, Message, MessageRole, DEFAULT_CONVERSATION_TITLE,
    Memory, MemoryKind,
    Project, ProjectBuildStep, ProjectType, ProjectStatus, BuildStepStatus, PORT_HOLDING_STATUSES,
)
from app.db.database import get_db, init_db, drop_db, dispose_db, async_session_maker, engine

__all__ = [
    "Base",
    "User",
    # Ledger
    "CreditBalance",
    "CreditTransaction",
    "TransactionType",
    # Chat
    "Conversation",
    "Message",
    "MessageRole",
    "DEFAULT_CONVERSATION_TITLE",
    "Memory",
    "MemoryKind",
    # Projects
    "Project",
    "ProjectBuildStep",
    "ProjectType",
    "ProjectStatus",
    "BuildStepStatus",
    "PORT_HOLDING_STATUSES",
    # Database
    "get_db",
    "init_db",
    "drop_db",
    "dispose_db",
    "async_session_maker",
    "engine",
]
