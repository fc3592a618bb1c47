"""
共振选股扫描服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn resonance_scanner.main:app --host 0.0.0.0 --port 8002
    python -m resonance_scanner.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from resonance_scanner import __version__, db
from resonance_scanner.config import settings
from resonance_scanner.errors import InvalidScanRequest, MarketDataUnavailable
from resonance_scanner.models.response import ApiResponse
from resonance_scanner.routers import cache, health, market, scan

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 Resonance Scanner v{__version__} 启动中")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info(f"   FinMind   : {'enabled' if settings.FINMIND_ENABLED else 'disabled'}")
    logger.info(f"   Pipeline  : batch={settings.BATCH_SIZE} delay={settings.BATCH_DELAY}s top={settings.FILTER_TOP_N}")
    logger.info("=" * 60)

    # 缓存后端失败不阻断启动，降级运行
    redis_ok = await db.init_redis()
    mongo_ok = await db.init_mongodb()

    if redis_ok and mongo_ok:
        logger.info("✅ 所有缓存后端就绪")
    elif redis_ok or mongo_ok:
        logger.warning("⚠️ 部分缓存后端不可用，按 Redis → MongoDB → 文件 顺序降级")
    else:
        logger.warning("⚠️ 缓存后端均不可用，降级为文件缓存模式")

    yield

    logger.info("🔄 扫描服务正在关闭...")
    await db.close_connections()
    logger.info("✅ 扫描服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="Resonance Scanner",
    description=(
        "台股量能 / 均线 / 法人三信号共振扫描服务：\n"
        "- 📊 上市（TWSE）+ 上柜（TPEx）双市场行情，单一来源故障自动降级\n"
        "- 🔎 初筛 → 精筛 → 专家 三阶段扫描\n"
        "- 🗄️ 多级缓存（Redis → MongoDB → 文件），单股分析每日最多计算一次\n"
        "- 📈 量比、均线收敛、突破、POC、半凯利仓位"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 异常处理 ──────────────────────────────────────────────
@app.exception_handler(InvalidScanRequest)
async def invalid_request_handler(request: Request, exc: InvalidScanRequest):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ApiResponse.fail(error=str(exc), message="invalid request").model_dump(),
    )


@app.exception_handler(MarketDataUnavailable)
async def market_unavailable_handler(request: Request, exc: MarketDataUnavailable):
    logger.error(f"行情数据不可用: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=ApiResponse.fail(error=str(exc), message="market data unavailable").model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ApiResponse.fail(error="内部服务错误", message=str(exc)).model_dump(),
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(scan.router)
app.include_router(market.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Resonance Scanner",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "resonance_scanner.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
