"""
Event Schemas - Observed calls and messages handed to the engine
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class DetectionType(str, Enum):
    """Kind of traffic a detection was made for"""
    CALL = "call"
    SMS = "sms"


class CallDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"
    MISSED = "missed"


class MessageDirection(str, Enum):
    RECEIVED = "received"
    SENT = "sent"


class CallEvent(BaseModel):
    """A single observed call"""

    phone_number: str = Field(..., min_length=1, description="Caller identifier")
    contact_name: Optional[str] = Field(default=None, description="Name from the address book, if any")
    timestamp: datetime = Field(default_factory=datetime.now)
    duration: Optional[int] = Field(default=None, ge=0, description="Call duration in seconds")
    direction: CallDirection = CallDirection.INCOMING

    class Config:
        frozen = True


class SmsEvent(BaseModel):
    """A single observed text message"""

    phone_number: str = Field(..., min_length=1, description="Sender identifier")
    content: str = Field(..., description="Message body")
    sender: Optional[str] = Field(default=None, description="Display name of the sender, if any")
    timestamp: datetime = Field(default_factory=datetime.now)
    direction: MessageDirection = MessageDirection.RECEIVED

    class Config:
        frozen = True
