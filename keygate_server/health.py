"""
Health check and monitoring endpoints for production readiness.
"""
import os
import threading
import time
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(prefix="/api/v1", tags=["health"])


class AdmissionMetrics:
    """In-memory counters of admission outcomes since process start"""

    def __init__(self):
        self.start_time = time.time()
        self._lock = threading.Lock()
        self._outcomes: Counter = Counter()

    def record(self, outcome: str) -> None:
        """Count one decision: ``admitted`` or an error code."""
        with self._lock:
            self._outcomes[outcome] += 1

    def count(self, outcome: str) -> int:
        with self._lock:
            return self._outcomes[outcome]

    def get_uptime_seconds(self) -> float:
        return time.time() - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            outcomes = dict(self._outcomes)
        admitted = outcomes.get("admitted", 0)
        total = sum(outcomes.values())
        return {
            "uptime_seconds": round(self.get_uptime_seconds(), 2),
            "admission": {
                "total": total,
                "admitted": admitted,
                "rejected": total - admitted,
                "by_outcome": outcomes,
            },
        }


def check_store(request: Request) -> Dict[str, Any]:
    """Check that the record store has a path and its directory is writable"""
    store = request.app.state.store
    path = store.path
    if not path:
        return {"status": "unhealthy", "message": "data path not configured"}

    directory = Path(path).parent
    if directory.exists() and not os.access(directory, os.W_OK):
        return {"status": "unhealthy", "path": path, "message": "data directory not writable"}

    snapshot = store.snapshot()
    return {
        "status": "healthy",
        "path": path,
        "version": snapshot.version,
        "users": len(snapshot.users),
        "api_keys": len(snapshot.api_keys),
    }


@router.get("/health")
async def health():
    """Liveness probe"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/ready")
def readiness(request: Request):
    """Readiness probe: the store must be usable"""
    store_status = check_store(request)
    status_code = 200 if store_status["status"] == "healthy" else 503
    return JSONResponse(
        status_code=status_code,
        content={
            "status": store_status["status"],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {"store": store_status},
        },
    )


@router.get("/metrics")
def get_metrics(request: Request):
    """Admission counters plus record counts"""
    metrics: AdmissionMetrics = request.app.state.metrics
    snapshot = request.app.state.store.snapshot()
    payload = metrics.to_dict()
    payload["records"] = {
        "users": len(snapshot.users),
        "api_keys": len(snapshot.api_keys),
    }
    return payload
