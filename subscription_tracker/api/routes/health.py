"""
Health and status routes.
"""

import os
import sys
from dataclasses import asdict
from datetime import datetime

import psutil
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

import structlog

from subscription_tracker.api.context import ServiceContext
from subscription_tracker.api.dependencies import get_context
from subscription_tracker.api.schemas.common import (
    DatabaseStatus,
    HealthCheckResponse,
    HiveStatus,
    StatusResponse,
    UnhealthyResponse,
)


logger = structlog.get_logger(__name__)

router = APIRouter()
debug_router = APIRouter()


@router.get(
    "/health",
    response_model=HealthCheckResponse,
    responses={503: {"model": UnhealthyResponse}},
    summary="Health Check",
    description="Database reachable, periodic checks running, Hive connected"
)
async def health_check(ctx: ServiceContext = Depends(get_context)):
    try:
        await ctx.database.run(lambda session: session.execute(text("SELECT 1")))

        if ctx.health_monitor.is_stalled():
            raise RuntimeError("Periodic checks may be stalled")

        if not ctx.supervisor.is_connected:
            raise RuntimeError("Hive connection is not established")

        return HealthCheckResponse(last_check=ctx.health_monitor.last_check_iso())
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=UnhealthyResponse(error=str(e)).model_dump(mode="json")
        )


@router.get(
    "/status",
    response_model=StatusResponse,
    summary="Service Status",
    description="Breaker states, connection state and subscription totals"
)
async def service_status(ctx: ServiceContext = Depends(get_context)):
    try:
        db_state = ctx.database.circuit_breaker.get_state().to_dict()
        hive_state = ctx.supervisor.get_state()
        hive_breaker = hive_state["circuit_breaker_state"]
        stats = await ctx.ledger.get_statistics()

        return StatusResponse(
            uptime=ctx.health_monitor.uptime,
            last_check=ctx.health_monitor.last_check_iso(),
            database=DatabaseStatus(
                connected=not db_state["is_open"],
                failures=db_state["failure_count"],
                last_failure=db_state["last_failure_time"],
                statistics={
                    "total_subscriptions": stats.total,
                    "active_subscriptions": stats.active,
                },
            ),
            hive=HiveStatus(
                connected=hive_state["is_connected"],
                failures=hive_breaker["failure_count"],
                last_failure=hive_breaker["last_failure_time"],
                reconnect_attempts=hive_state["reconnect_attempts"],
                phase=hive_state["phase"],
            ),
            sweeper=ctx.sweeper.get_status() if ctx.sweeper else {},
            processing=_processing_stats(ctx),
        )
    except Exception as e:
        logger.error("Status check failed", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "status": "error",
                "error": str(e),
                "timestamp": datetime.utcnow().isoformat(),
            }
        )


@debug_router.get(
    "/debug",
    summary="Debug Information",
    description="Only registered outside production"
)
async def debug_info(ctx: ServiceContext = Depends(get_context)):
    return {
        "env": {
            "environment": ctx.config.environment,
            "health_check_port": ctx.config.health_check_port,
        },
        "process": _process_info(ctx),
        "database": {
            "circuit_breaker": ctx.database.circuit_breaker.get_state().to_dict(),
            "pool_status": ctx.database.pool_status() or "Not available",
        },
        "hive": ctx.supervisor.get_state(),
    }


def _processing_stats(ctx: ServiceContext) -> dict:
    if ctx.processor is None:
        return {}
    stats = asdict(ctx.processor.stats)
    if stats.get("start_time"):
        stats["start_time"] = stats["start_time"].isoformat()
    return stats


def _process_info(ctx: ServiceContext) -> dict:
    process = psutil.Process(os.getpid())
    memory = process.memory_info()
    cpu = process.cpu_times()
    return {
        "pid": process.pid,
        "python": sys.version.split()[0],
        "uptime": ctx.health_monitor.uptime,
        "memory_usage": {"rss": memory.rss, "vms": memory.vms},
        "cpu_usage": {"user": cpu.user, "system": cpu.system},
    }
