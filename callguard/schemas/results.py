"""
Result Schemas - Fusion output and engine statistics
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from callguard.schemas.events import DetectionType


class SpamLevel(str, Enum):
    """Discrete fusion verdict"""
    SPAM = "spam"
    SUSPICIOUS = "suspicious"
    QUESTIONABLE = "questionable"
    CLEAN = "clean"
    UNKNOWN = "unknown"


class IntegratedResult(BaseModel):
    """Result of fusing rule, behavioral and learned signals for one event"""

    sender_id: str = Field(..., description="Phone number or short code")
    kind: DetectionType = Field(..., description="Call or SMS")
    final_score: float = Field(..., ge=0, le=1, description="Fused spam score")
    spam_level: SpamLevel
    confidence: float = Field(..., ge=0, le=1, description="Confidence in the verdict")

    # Component scores
    rule_score: float = Field(default=0.0, ge=0, le=1)
    behavior_score: float = Field(default=0.0, ge=0, le=1)
    learned_score: float = Field(default=0.0, ge=0, le=1)

    behavior_level: Optional[str] = Field(default=None, description="Behavioral suspicion level, if analysed")
    behavior_confidence: float = Field(default=0.0, ge=0, le=1)
    matched_rule_id: Optional[str] = Field(default=None, description="User rule that decided the verdict")

    reasons: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    timestamp: datetime
    processing_time_ms: int = 0

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "sender_id": "+5511999990000",
                "kind": "sms",
                "final_score": 0.74,
                "spam_level": "spam",
                "confidence": 0.68,
                "rule_score": 0.83,
                "behavior_score": 0.9,
                "learned_score": 0.56,
                "reasons": ["behavior:high_sms_frequency", "content:contains_link"],
                "recommendations": ["block_immediately", "report_spam", "add_to_blacklist"],
                "timestamp": "2026-01-26T00:00:00"
            }
        }

    @property
    def should_block(self) -> bool:
        return self.spam_level == SpamLevel.SPAM

    @property
    def is_suspicious(self) -> bool:
        return self.spam_level in (SpamLevel.SPAM, SpamLevel.SUSPICIOUS)


class DetectionStats(BaseModel):
    """Engine-wide detection statistics"""

    total_detections: int = 0
    spam_detected: int = 0
    suspicious_detected: int = 0
    false_positives: int = 0
    false_negatives: int = 0
    accuracy: float = 0.0
    model_accuracy: float = 0.0
    profile_count: int = 0
    activity_count: int = 0
    cache_size: int = 0
    cache_hit_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()
