from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
import time
import psutil
import logging
from datetime import datetime, timedelta, timezone
from urllib.parse import urlparse

from ..db import get_db
from ..config import settings
from ..models import CreditTransaction, GeneratedModel, ModelStatus, TransactionType, User
from ..services.catalog import catalog

router = APIRouter()
logger = logging.getLogger(__name__)

def _now() -> datetime:
    return datetime.now(timezone.utc)

@router.get("/health")
async def basic_health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "timestamp": _now().isoformat()}

@router.get("/healthz")
async def health_alias():
    """Health check alias for platforms that expect /healthz."""
    return await basic_health_check()

@router.get("/readyz")
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check for container orchestration.
    Returns 200 when the database answers and the service catalog is loaded.
    """
    checks = {}
    all_healthy = True

    try:
        start_time = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = int((time.time() - start_time) * 1000)
        checks["database"] = {"status": "healthy", "latency_ms": latency_ms}
    except SQLAlchemyError as e:
        checks["database"] = {"status": "unhealthy", "error": str(e)}
        all_healthy = False

    if all_healthy:
        try:
            catalog.ensure_loaded(db)
            checks["catalog"] = {"status": "healthy", "service_types": len(catalog.names())}
            if not catalog.names():
                checks["catalog"] = {"status": "unhealthy", "error": "no active service types"}
                all_healthy = False
        except SQLAlchemyError as e:
            checks["catalog"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    checks["provider"] = {"status": "configured", "backend": settings.provider_backend}

    response_data = {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "timestamp": _now().isoformat(),
    }
    if not all_healthy:
        raise HTTPException(status_code=503, detail=response_data)
    return response_data

@router.get("/livez")
async def liveness_check():
    """
    Liveness check.
    Should only fail if the application is in an unrecoverable state.
    """
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage('/')
    disk_percent = (disk.used / disk.total) * 100

    if memory.percent > 95:
        reason = f"Critical memory usage: {memory.percent}%"
    elif disk_percent > 95:
        reason = f"Critical disk usage: {disk_percent:.1f}%"
    else:
        reason = None
    if reason:
        logger.critical(f"Liveness check failed: {reason}")
        raise HTTPException(status_code=503, detail=f"Application not alive: {reason}")

    return {
        "status": "alive",
        "memory_percent": memory.percent,
        "disk_percent": round(disk_percent, 1),
        "timestamp": _now().isoformat(),
    }

@router.get("/metrics")
def prometheus_metrics(db: Session = Depends(get_db)):
    """
    Prometheus-style metrics endpoint.
    Returns ledger and model metrics in a format that Prometheus can scrape.
    """
    since = _now() - timedelta(hours=24)
    try:
        total_users = db.query(func.count(User.id)).scalar() or 0
        transactions_24h = (
            db.query(func.count(CreditTransaction.id))
            .filter(CreditTransaction.created_at >= since)
            .scalar()
        ) or 0
        spent_24h = (
            db.query(func.coalesce(func.sum(-CreditTransaction.amount), 0))
            .filter(
                CreditTransaction.created_at >= since,
                CreditTransaction.type == TransactionType.SPEND.value,
            )
            .scalar()
        ) or 0
        models_by_status = dict(
            db.query(GeneratedModel.status, func.count(GeneratedModel.id))
            .group_by(GeneratedModel.status)
            .all()
        )
    except SQLAlchemyError as e:
        logger.error(f"Failed to generate metrics: {e}")
        raise HTTPException(status_code=500, detail="Metrics generation failed")

    memory = psutil.virtual_memory()
    cpu_percent = psutil.cpu_percent()
    disk = psutil.disk_usage('/')
    disk_percent = (disk.used / disk.total) * 100

    model_lines = "\n".join(
        f'forge3d_models_total{{status="{status.value}"}} {models_by_status.get(status.value, 0)}'
        for status in ModelStatus
    )

    metrics = f"""# HELP forge3d_users_total Total number of known users
# TYPE forge3d_users_total gauge
forge3d_users_total {total_users}

# HELP forge3d_credit_transactions_24h Ledger rows written in the last 24 hours
# TYPE forge3d_credit_transactions_24h gauge
forge3d_credit_transactions_24h {transactions_24h}

# HELP forge3d_credits_spent_24h Credits spent in the last 24 hours
# TYPE forge3d_credits_spent_24h gauge
forge3d_credits_spent_24h {spent_24h}

# HELP forge3d_models_total Generated models by status
# TYPE forge3d_models_total gauge
{model_lines}

# HELP forge3d_memory_usage_percent Memory usage percentage
# TYPE forge3d_memory_usage_percent gauge
forge3d_memory_usage_percent {memory.percent}

# HELP forge3d_cpu_usage_percent CPU usage percentage
# TYPE forge3d_cpu_usage_percent gauge
forge3d_cpu_usage_percent {cpu_percent}

# HELP forge3d_disk_usage_percent Disk usage percentage
# TYPE forge3d_disk_usage_percent gauge
forge3d_disk_usage_percent {disk_percent:.1f}
"""
    return Response(content=metrics, media_type="text/plain")

@router.get("/debug")
def debug_info(db: Session = Depends(get_db)):
    """
    Debug information endpoint (only available in debug mode).
    """
    if not settings.debug:
        raise HTTPException(status_code=404, detail="Debug endpoint not available")

    memory = psutil.virtual_memory()
    disk = psutil.disk_usage('/')

    try:
        pending_models = (
            db.query(func.count(GeneratedModel.id))
            .filter(GeneratedModel.status == ModelStatus.PENDING.value)
            .scalar()
        ) or 0
    except SQLAlchemyError as e:
        logger.error(f"Failed to generate debug info: {e}")
        raise HTTPException(status_code=500, detail="Debug info generation failed")

    # Only the driver is exposed, never credentials
    db_driver = urlparse(settings.database_url).scheme or "unknown"

    return {
        "system": {
            "memory": {
                "total_gb": round(memory.total / (1024**3), 2),
                "available_gb": round(memory.available / (1024**3), 2),
                "percent_used": memory.percent,
            },
            "disk": {
                "total_gb": round(disk.total / (1024**3), 2),
                "free_gb": round(disk.free / (1024**3), 2),
                "percent_used": round((disk.used / disk.total) * 100, 2),
            },
            "cpu_count": psutil.cpu_count(),
        },
        "application": {
            "debug_mode": True,
            "database_driver": db_driver,
            "provider_backend": settings.provider_backend,
            "service_types": catalog.names(),
            "pending_models": pending_models,
        },
        "timestamp": _now().isoformat(),
    }
