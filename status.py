import os
import threading
import time

import psutil
from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

router = APIRouter()


@router.get("/health")
def health_check(request: Request):
    """Liveness plus database connectivity"""
    db = request.app.state.session_factory()
    try:
        db.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError as e:
        db_status = f"unhealthy: {e}"
    finally:
        db.close()

    return {"status": "healthy", "database": db_status, "timestamp": time.time()}


@router.get("/system-status")
def get_system_status(request: Request):
    process = psutil.Process(os.getpid())
    mem_mb = process.memory_info().rss / (1024 * 1024)

    return {
        "memory": {
            "used_mb": round(mem_mb, 2),
            "limit_mb": 512,
            "utilization": f"{(mem_mb / 512) * 100:.1f}%"
        },
        "cpu_percent": process.cpu_percent(interval=0.1),
        "threads": threading.active_count(),
        "online_users": len(request.app.state.presence),
    }
