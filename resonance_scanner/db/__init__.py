"""
缓存后端连接管理
Redis 为一级缓存，MongoDB 为二级缓存（持久化，TTL 索引自动过期）。
任一后端不可用时对应的 getter 返回 None，缓存层据此跳过该后端。
"""

import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from redis.asyncio import Redis

from resonance_scanner.config import ScannerSettings, get_settings

logger = logging.getLogger(__name__)

ANALYSIS_COLLECTION = "analysis_cache"

# ── 全局连接实例 ─────────────────────────────────────────
_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None
_redis_client: Optional[Redis] = None


async def _ensure_indexes(database: AsyncIOMotorDatabase) -> None:
    """缓存键唯一；expires_at 到期后由 MongoDB 后台删除"""
    collection = database[ANALYSIS_COLLECTION]
    await collection.create_index("key", unique=True)
    await collection.create_index("expires_at", expireAfterSeconds=0)


async def init_mongodb(cfg: Optional[ScannerSettings] = None) -> bool:
    """连接 MongoDB 并建立缓存索引，返回是否可用"""
    global _mongo_client, _mongo_db
    cfg = cfg or get_settings()
    if not cfg.MONGODB_ENABLED:
        logger.info("MongoDB 二级缓存未启用")
        return False

    client = AsyncIOMotorClient(
        cfg.MONGO_URI,
        maxPoolSize=cfg.MONGO_MAX_CONNECTIONS,
        serverSelectionTimeoutMS=cfg.MONGO_SERVER_SELECTION_TIMEOUT_MS,
    )
    try:
        await client.admin.command("ping")
        database = client[cfg.MONGODB_DATABASE]
        await _ensure_indexes(database)
    except Exception as exc:
        logger.warning(f"⚠️ MongoDB 不可用，二级缓存停用: {exc}")
        client.close()
        return False

    _mongo_client, _mongo_db = client, database
    logger.info(f"✅ MongoDB 二级缓存就绪: {cfg.MONGODB_HOST}:{cfg.MONGODB_PORT}/{cfg.MONGODB_DATABASE}")
    return True


async def init_redis(cfg: Optional[ScannerSettings] = None) -> bool:
    """连接 Redis，返回是否可用"""
    global _redis_client
    cfg = cfg or get_settings()
    if not cfg.REDIS_ENABLED:
        logger.info("Redis 一级缓存未启用")
        return False

    client = Redis.from_url(
        cfg.REDIS_URL,
        max_connections=cfg.REDIS_MAX_CONNECTIONS,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    try:
        await client.ping()
    except Exception as exc:
        logger.warning(f"⚠️ Redis 不可用，一级缓存停用: {exc}")
        await client.aclose()
        return False

    _redis_client = client
    logger.info(f"✅ Redis 一级缓存就绪: {cfg.REDIS_HOST}:{cfg.REDIS_PORT}/{cfg.REDIS_DB}")
    return True


async def close_connections() -> None:
    global _mongo_client, _mongo_db, _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis 连接已关闭")
    if _mongo_client is not None:
        _mongo_client.close()
        _mongo_client, _mongo_db = None, None
        logger.info("MongoDB 连接已关闭")


def get_mongo_db() -> Optional[AsyncIOMotorDatabase]:
    return _mongo_db


def get_redis() -> Optional[Redis]:
    return _redis_client


async def _timed_ping(ping: Callable[[], Awaitable[object]]) -> Dict[str, object]:
    start = time.perf_counter()
    try:
        await ping()
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}
    return {"status": "healthy", "latency_ms": round((time.perf_counter() - start) * 1000, 1)}


async def check_health(cfg: Optional[ScannerSettings] = None) -> dict:
    """各缓存后端状态：disabled / disconnected / healthy / unhealthy"""
    cfg = cfg or get_settings()
    result: Dict[str, Dict[str, object]] = {}

    if _redis_client is not None:
        result["redis"] = await _timed_ping(_redis_client.ping)
    else:
        result["redis"] = {"status": "disconnected" if cfg.REDIS_ENABLED else "disabled"}

    if _mongo_client is not None:
        result["mongodb"] = await _timed_ping(lambda: _mongo_client.admin.command("ping"))
    else:
        result["mongodb"] = {"status": "disconnected" if cfg.MONGODB_ENABLED else "disabled"}

    result["file"] = {"status": "healthy", "dir": cfg.CACHE_DIR}
    return result
