"""
API Routes - Thin routing layer
All business logic is delegated to the fusion engine
"""

import uuid
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import APIKeyHeader

from callguard.config import get_settings
from callguard.schemas.requests import (
    CreateRuleRequest, DetectCallRequest, DetectSmsRequest, FeedbackRequest,
)
from callguard.schemas.responses import UnifiedResponse
from callguard.schemas.results import DetectionStats, IntegratedResult
from callguard.schemas.rules import rule_from_record
from callguard.scoring.fusion_engine import FusionEngine

router = APIRouter()

# API Key authentication
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: str = Depends(api_key_header)) -> str:
    """Verify API key from header"""
    if not api_key or api_key != get_settings().api_key:
        raise HTTPException(
            status_code=401,
            detail={
                "code": "UNAUTHORIZED",
                "message": "Invalid or missing API key"
            }
        )
    return api_key


def get_engine(request: Request) -> FusionEngine:
    """The engine built at startup"""
    return request.app.state.engine


@router.post("/detect/call", response_model=UnifiedResponse[IntegratedResult])
async def detect_call(
    request: DetectCallRequest,
    engine: FusionEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key)
) -> UnifiedResponse[IntegratedResult]:
    """
    Score an incoming call

    Runs user rules, heuristics, the learned scorer and the caller's
    behavioral profile, and returns the fused verdict with explanations.
    """
    result = await engine.detect_call_spam(
        phone_number=request.phone_number,
        contact_name=request.contact_name,
        timestamp=request.timestamp,
        duration=request.duration,
        direction=request.direction
    )
    return UnifiedResponse(success=True, data=result, error=None)


@router.post("/detect/sms", response_model=UnifiedResponse[IntegratedResult])
async def detect_sms(
    request: DetectSmsRequest,
    engine: FusionEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key)
) -> UnifiedResponse[IntegratedResult]:
    """Score an incoming text message"""
    result = await engine.detect_sms_spam(
        phone_number=request.phone_number,
        content=request.content,
        sender=request.sender,
        timestamp=request.timestamp,
        direction=request.direction
    )
    return UnifiedResponse(success=True, data=result, error=None)


@router.post("/feedback", response_model=UnifiedResponse[Dict[str, Any]])
async def submit_feedback(
    request: FeedbackRequest,
    engine: FusionEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key)
) -> UnifiedResponse[Dict[str, Any]]:
    """Report whether a sender really was spam"""
    outcome = await engine.train_with_feedback(
        phone_number=request.phone_number,
        is_spam=request.is_spam,
        content=request.content,
        kind=request.kind
    )
    return UnifiedResponse(success=True, data=outcome, error=None)


@router.get("/stats", response_model=UnifiedResponse[DetectionStats])
async def get_stats(
    engine: FusionEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key)
) -> UnifiedResponse[DetectionStats]:
    """Engine-wide detection statistics"""
    return UnifiedResponse(success=True, data=engine.get_detection_stats(), error=None)


@router.get("/rules", response_model=UnifiedResponse[List[Dict[str, Any]]])
async def list_rules(
    engine: FusionEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key)
) -> UnifiedResponse[List[Dict[str, Any]]]:
    """Rules in evaluation order"""
    rules = [rule.to_record() for rule in engine.rule_matcher.list_rules()]
    return UnifiedResponse(success=True, data=rules, error=None)


@router.post("/rules", status_code=201, response_model=UnifiedResponse[Dict[str, Any]])
async def create_rule(
    request: CreateRuleRequest,
    engine: FusionEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key)
) -> UnifiedResponse[Dict[str, Any]]:
    """Add a rule; cached verdicts are dropped so it applies immediately"""
    record = request.model_dump()
    record["id"] = record["id"] or f"rule_{uuid.uuid4().hex[:12]}"

    rule = rule_from_record(record, engine.rule_matcher.home_country_code)
    if rule is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_RULE_TYPE", "message": f"Unsupported rule type: {request.type}"}
        )

    if not engine.create_rule(rule):
        raise HTTPException(
            status_code=409,
            detail={"code": "RULE_EXISTS", "message": f"Rule {rule.id} already exists"}
        )

    return UnifiedResponse(success=True, data=rule.to_record(), error=None)


@router.delete("/rules/{rule_id}", response_model=UnifiedResponse[Dict[str, Any]])
async def delete_rule(
    rule_id: str,
    engine: FusionEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key)
) -> UnifiedResponse[Dict[str, Any]]:
    """Remove a rule"""
    if not engine.delete_rule(rule_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "RULE_NOT_FOUND", "message": f"Rule {rule_id} not found"}
        )
    return UnifiedResponse(success=True, data={"id": rule_id, "deleted": True}, error=None)


@router.get("/metrics", response_model=UnifiedResponse[Dict[str, Any]])
async def get_metrics(
    engine: FusionEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key)
) -> UnifiedResponse[Dict[str, Any]]:
    """Counters, latencies, feedback agreement and recent errors"""
    return UnifiedResponse(success=True, data=engine.metrics.get_all_metrics(), error=None)
