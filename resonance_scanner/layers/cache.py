"""
Layer 3 – 缓存层
优先级：Redis（内存） → MongoDB（持久化） → 文件（本地）

键格式：{namespace}:{purpose}:{version}:{scope}:{date}
单个后端失败只降级到下一级；全部失败时读返回 None、写静默放弃，
扫描流程永远不会因缓存而失败。
"""

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from resonance_scanner.config import ScannerSettings, get_settings
from resonance_scanner.db import ANALYSIS_COLLECTION, get_mongo_db, get_redis
from resonance_scanner.errors import CacheUnavailable

logger = logging.getLogger(__name__)

_COLLECTION = ANALYSIS_COLLECTION


def make_key(purpose: str, scope: str, day: str, settings: Optional[ScannerSettings] = None) -> str:
    """生成规范化缓存键，如 resonance:analysis:v1:2330:2024-11-01"""
    settings = settings or get_settings()
    return ":".join([settings.CACHE_NAMESPACE, purpose, settings.CACHE_VERSION, scope, day])


class CacheLayer:
    """多级缓存层，自动根据可用连接选择后端"""

    def __init__(
        self,
        settings: Optional[ScannerSettings] = None,
        redis_getter: Callable = get_redis,
        mongo_getter: Callable = get_mongo_db,
    ):
        self._settings = settings or get_settings()
        self._redis_getter = redis_getter
        self._mongo_getter = mongo_getter

    def key(self, purpose: str, scope: str, day: str) -> str:
        return make_key(purpose, scope, day, self._settings)

    def _file_path(self, key: str) -> str:
        safe = key.replace(":", "_").replace("/", "_")
        return os.path.join(self._settings.CACHE_DIR, f"{safe}.json")

    # ── 读 ────────────────────────────────────────────────

    async def get(self, key: str) -> Optional[Any]:
        for backend, reader in (
            ("redis", self._redis_get),
            ("mongodb", self._mongo_get),
            ("file", self._file_get),
        ):
            try:
                value = await reader(key)
            except CacheUnavailable as exc:
                logger.warning(f"缓存读取降级: {exc}")
                continue
            if value is not None:
                logger.debug(f"缓存命中（{backend}）: {key}")
                return value
        return None

    async def _redis_get(self, key: str) -> Optional[Any]:
        redis = self._redis_getter()
        if redis is None:
            return None
        try:
            raw = await redis.get(key)
        except Exception as exc:
            raise CacheUnavailable("redis", exc) from exc
        return json.loads(raw) if raw else None

    async def _mongo_get(self, key: str) -> Optional[Any]:
        db = self._mongo_getter()
        if db is None:
            return None
        try:
            doc = await db[_COLLECTION].find_one({"key": key})
            if not doc:
                return None
            expires_at = doc.get("expires_at")
            if expires_at is not None and expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at and expires_at < datetime.now(tz=timezone.utc):
                await db[_COLLECTION].delete_one({"key": key})
                return None
        except Exception as exc:
            raise CacheUnavailable("mongodb", exc) from exc
        return doc.get("value")

    async def _file_get(self, key: str) -> Optional[Any]:
        path = self._file_path(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as fh:
                doc = json.load(fh)
            if doc.get("expires_at", 0) < datetime.now(tz=timezone.utc).timestamp():
                os.remove(path)
                return None
        except (OSError, ValueError) as exc:
            raise CacheUnavailable("file", exc) from exc
        return doc.get("value")

    # ── 写 ────────────────────────────────────────────────

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        """写入第一个可用后端，返回是否写入成功"""
        serialized = json.dumps(value, ensure_ascii=False, default=str)
        for writer in (self._redis_set, self._mongo_set, self._file_set):
            try:
                if await writer(key, value, serialized, ttl):
                    logger.debug(f"缓存写入: {key} (ttl={ttl}s)")
                    return True
            except CacheUnavailable as exc:
                logger.warning(f"缓存写入降级: {exc}")
        return False

    async def _redis_set(self, key: str, value: Any, serialized: str, ttl: int) -> bool:
        redis = self._redis_getter()
        if redis is None:
            return False
        try:
            await redis.setex(key, ttl, serialized)
        except Exception as exc:
            raise CacheUnavailable("redis", exc) from exc
        return True

    async def _mongo_set(self, key: str, value: Any, serialized: str, ttl: int) -> bool:
        db = self._mongo_getter()
        if db is None:
            return False
        expires_at = datetime.now(tz=timezone.utc) + timedelta(seconds=ttl)
        try:
            await db[_COLLECTION].update_one(
                {"key": key},
                {"$set": {"key": key, "value": json.loads(serialized), "expires_at": expires_at}},
                upsert=True,
            )
        except Exception as exc:
            raise CacheUnavailable("mongodb", exc) from exc
        return True

    async def _file_set(self, key: str, value: Any, serialized: str, ttl: int) -> bool:
        expires_ts = (datetime.now(tz=timezone.utc) + timedelta(seconds=ttl)).timestamp()
        try:
            os.makedirs(self._settings.CACHE_DIR, exist_ok=True)
            with open(self._file_path(key), "w", encoding="utf-8") as fh:
                fh.write(f'{{"expires_at": {expires_ts}, "value": {serialized}}}')
        except OSError as exc:
            raise CacheUnavailable("file", exc) from exc
        return True

    # ── 删除 / 统计 ──────────────────────────────────────

    async def delete(self, key: str) -> None:
        redis = self._redis_getter()
        if redis is not None:
            try:
                await redis.delete(key)
            except Exception as exc:
                logger.warning(f"Redis 删除失败: {exc}")
        db = self._mongo_getter()
        if db is not None:
            try:
                await db[_COLLECTION].delete_one({"key": key})
            except Exception as exc:
                logger.warning(f"MongoDB 删除失败: {exc}")
        path = self._file_path(key)
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as exc:
                logger.warning(f"文件缓存删除失败: {exc}")

    async def stats(self) -> dict:
        """返回各缓存后端统计信息"""
        result: dict = {}
        redis = self._redis_getter()
        if redis is not None:
            try:
                result["redis"] = {"keys": await redis.dbsize(), "status": "healthy"}
            except Exception as exc:
                result["redis"] = {"status": "error", "error": str(exc)}
        else:
            result["redis"] = {"status": "disabled"}

        db = self._mongo_getter()
        if db is not None:
            try:
                count = await db[_COLLECTION].count_documents({})
                result["mongodb"] = {"documents": count, "status": "healthy"}
            except Exception as exc:
                result["mongodb"] = {"status": "error", "error": str(exc)}
        else:
            result["mongodb"] = {"status": "disabled"}

        cache_dir = self._settings.CACHE_DIR
        file_count = len([
            f for f in os.listdir(cache_dir) if f.endswith(".json")
        ]) if os.path.isdir(cache_dir) else 0
        result["file"] = {"files": file_count, "dir": cache_dir, "status": "healthy"}
        return result


# ── 模块级别单例 ──────────────────────────────────────────
_cache: Optional[CacheLayer] = None


def get_cache_layer() -> CacheLayer:
    global _cache
    if _cache is None:
        _cache = CacheLayer()
    return _cache
