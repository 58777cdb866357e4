"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, Field

from app.db.models import ProjectType


# ============ Users ============

class UserResponse(BaseModel):
    id: str
    email: Optional[str]
    name: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


# ============ Conversations ============

class ConversationCreate(BaseModel):
    title: Optional[str] = Field(None, max_length=500)


class ConversationUpdate(BaseModel):
    title: str = Field(min_length=1, max_length=500)


class ConversationResponse(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    id: str
    role: str
    content: str
    tokens_used: Optional[int] = None
    credit_cost: Optional[Decimal] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ConversationDetailResponse(ConversationResponse):
    conversation_summary: Optional[str] = None
    messages: List[MessageResponse] = []


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=50000)


# ============ Credits ============

class BalanceResponse(BaseModel):
    current: Decimal
    lifetime_earned: Decimal
    lifetime_spent: Decimal

    class Config:
        from_attributes = True


class TransactionResponse(BaseModel):
    id: str
    type: str
    amount: Decimal
    description: str
    created_at: datetime

    class Config:
        from_attributes = True


class CreditsResponse(BaseModel):
    balance: BalanceResponse
    formatted: str
    transactions: List[TransactionResponse]


class CreditPackageResponse(BaseModel):
    id: str
    credits: int
    price_gbp: Decimal
    label: str
    popular: bool = False

    class Config:
        from_attributes = True


class CheckoutRequest(BaseModel):
    package_id: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str


# ============ Projects ============

class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    project_type: ProjectType = ProjectType.NEXTJS


class BuildStepResponse(BaseModel):
    step: int
    title: str
    status: str
    output: Optional[str] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ProjectResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    project_type: str
    status: str
    port: Optional[int] = None
    subdomain: Optional[str] = None
    preview_url: Optional[str] = None
    error_log: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ProjectDetailResponse(ProjectResponse):
    build_steps: List[BuildStepResponse] = []


# ============ Memories ============

class MemoryResponse(BaseModel):
    id: str
    content: str
    kind: str
    source: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
