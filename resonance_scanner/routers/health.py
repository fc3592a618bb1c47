"""健康检查路由"""

import time

from fastapi import APIRouter

from resonance_scanner import __version__, db

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health():
    """服务健康检查（含缓存后端状态）"""
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "Resonance Scanner",
            "cache_backends": await db.check_health(),
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}
