"""
Pydantic API schemas for the v1 endpoints.

WHAT: Request and response models for FastAPI
WHY: Type-safe validation and serialization of the HTTP surface
HOW: Pydantic v2 models; views from models.marketplace are returned as-is
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator
from datetime import datetime

from ..core.config import settings
from .marketplace import MessageView


# ========== Offers ==========

class SubmitOfferRequest(BaseModel):
    """Make an offer on a listing."""
    amount: float = Field(..., description="Offered price, at most the asking price")
    message: Optional[str] = Field(
        None,
        max_length=settings.OFFER_MESSAGE_MAX_LENGTH,
        description="Optional note to the seller"
    )


# ========== Conversations ==========

class FindConversationRequest(BaseModel):
    """Open (or create) the conversation about a listing with its owner."""
    listing_id: str = Field(..., min_length=1)
    seller_id: Optional[str] = Field(
        None,
        description="Listing owner; defaults to the owner looked up from the listing"
    )


class SendMessageRequest(BaseModel):
    """Send a chat message."""
    content: str = Field(..., description="Message text")

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        """Trim and reject blank content."""
        v = v.strip()
        if not v:
            raise ValueError("Message cannot be empty")
        if len(v) > settings.MESSAGE_MAX_LENGTH:
            raise ValueError(f"Message cannot exceed {settings.MESSAGE_MAX_LENGTH} characters")
        return v


class MessageHistoryResponse(BaseModel):
    """Conversation history, oldest first."""
    conversation_id: str
    messages: List[MessageView]


class MarkReadResponse(BaseModel):
    """Result of marking a conversation read."""
    conversation_id: str
    marked_read: int


# ========== Notifications ==========

class UnreadCountResponse(BaseModel):
    """Account-wide unread badge value."""
    user_id: str
    unread_count: int


# ========== Errors ==========

class ErrorResponse(BaseModel):
    """Standard error body."""
    error: str
    message: str
    details: Optional[Any] = None
    timestamp: datetime


# ========== Status ==========

class StatusResponse(BaseModel):
    """Database health plus feed state."""
    status: str
    version: str
    app_name: str
    database: Dict[str, Any]
    active_channels: int
