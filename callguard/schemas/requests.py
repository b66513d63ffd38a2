"""
Request Schemas - Pydantic models for API requests
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from callguard.schemas.events import CallDirection, DetectionType, MessageDirection


class DetectCallRequest(BaseModel):
    """Request schema for scoring a call"""

    phone_number: str = Field(..., min_length=1, max_length=32, description="Caller identifier")
    contact_name: Optional[str] = Field(default=None, description="Address book name, if any")
    timestamp: Optional[datetime] = Field(default=None, description="When the call happened")
    duration: Optional[int] = Field(default=None, ge=0, description="Call duration in seconds")
    direction: CallDirection = Field(default=CallDirection.INCOMING)

    class Config:
        json_schema_extra = {
            "example": {
                "phone_number": "+5511999990000",
                "contact_name": None,
                "timestamp": "2026-01-26T23:15:00",
                "duration": 3,
                "direction": "incoming"
            }
        }


class DetectSmsRequest(BaseModel):
    """Request schema for scoring a text message"""

    phone_number: str = Field(..., min_length=1, max_length=32, description="Sender identifier")
    content: str = Field(..., max_length=10000, description="Message body")
    sender: Optional[str] = Field(default=None, description="Sender display name, if any")
    timestamp: Optional[datetime] = Field(default=None, description="When the message arrived")
    direction: MessageDirection = Field(default=MessageDirection.RECEIVED)

    class Config:
        json_schema_extra = {
            "example": {
                "phone_number": "+5511999990000",
                "content": "Oferta grátis! Acesse http://promo.example agora",
                "timestamp": "2026-01-26T23:15:00"
            }
        }


class FeedbackRequest(BaseModel):
    """Ground truth reported by the user for a sender"""

    phone_number: str = Field(..., min_length=1, max_length=32)
    is_spam: bool = Field(..., description="True when the user confirms spam")
    content: Optional[str] = Field(default=None, max_length=10000)
    kind: Optional[DetectionType] = Field(default=None, description="call or sms; inferred from content")


class CreateRuleRequest(BaseModel):
    """Request schema for adding a blocking or allowing rule"""

    id: Optional[str] = Field(default=None, description="Rule id; generated when omitted")
    name: str = Field(..., min_length=1, max_length=200)
    type: str = Field(..., description="blacklist, whitelist, prefix, keyword, regex, pattern, "
                                       "international, shortCode or timeBased")
    pattern: Optional[str] = Field(default=None, max_length=500)
    active: bool = True
    priority: int = 0

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Block telemarketing",
                "type": "prefix",
                "pattern": "0800",
                "priority": 10
            }
        }
