"""
Health Check Endpoint
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from callguard.config import get_settings

router = APIRouter()


@router.get("/health")
async def health_check() -> JSONResponse:
    """
    Health check endpoint for load balancers and monitoring
    """
    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "service": get_settings().app_name,
            "version": "1.0.0"
        }
    )


@router.get("/ready")
async def readiness_check(request: Request) -> JSONResponse:
    """
    Readiness check - the engine is built and its rule store answers
    """
    engine = getattr(request.app.state, "engine", None)

    checks = {"engine": "ok" if engine is not None else "missing"}
    if engine is not None:
        try:
            engine.rule_matcher.store.list_rules(engine.rule_matcher.scope)
            checks["rule_store"] = "ok"
        except Exception as e:
            checks["rule_store"] = f"error: {e}"

    all_healthy = all(v == "ok" for v in checks.values())

    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={
            "status": "ready" if all_healthy else "not_ready",
            "checks": checks
        }
    )
