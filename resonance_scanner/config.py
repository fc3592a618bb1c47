"""
共振扫描服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现

配置对象在进程内只加载一次，之后不可修改（frozen），
由调用方在构造编排器 / 数据获取层时显式传入。
"""

import os
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import List, Optional
from zoneinfo import ZoneInfo

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class ScannerSettings(BaseSettings):
    """共振扫描服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── MongoDB 配置（二级缓存，支持服务发现） ──────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="resonance")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_MAX_CONNECTIONS: int = Field(default=20)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=3000)

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis 配置（一级缓存，支持服务发现） ────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 上游行情源 ────────────────────────────────────────
    TWSE_BASE_URL: str = Field(default="https://www.twse.com.tw")
    TWSE_OPENAPI_URL: str = Field(default="https://openapi.twse.com.tw/v1")
    TPEX_BASE_URL: str = Field(default="https://www.tpex.org.tw")
    HTTP_TIMEOUT: float = Field(default=8.0)         # 单次请求超时（秒）
    HTTP_USER_AGENT: str = Field(default="Mozilla/5.0 (resonance-scanner)")

    # ── 增强数据源（FinMind，可选） ───────────────────────
    FINMIND_API_URL: str = Field(default="https://api.finmindtrade.com/api/v4/data")
    FINMIND_TOKEN: str = Field(default="")
    FINMIND_ENABLED: bool = Field(default=True)

    # ── 扫描流水线 ────────────────────────────────────────
    BATCH_SIZE: int = Field(default=10)              # 每批并发抓取的股票数
    BATCH_DELAY: float = Field(default=0.5)          # 批次间节流间隔（秒）
    DISCOVERY_CAP: int = Field(default=100)          # 初筛候选上限
    DISCOVERY_MIN_VOLUME: float = Field(default=2_000_000)  # 成交股数下限（2000 张）
    FILTER_TOP_N: int = Field(default=30)            # 精筛保留数量
    SHALLOW_HISTORY_DAYS: int = Field(default=45)    # 精筛历史窗口（日历日）
    DEEP_HISTORY_DAYS: int = Field(default=70)       # 专家阶段历史窗口（日历日）
    MIN_SHALLOW_SESSIONS: int = Field(default=20)    # 精筛最少交易日（MA20）
    MIN_DEEP_SESSIONS: int = Field(default=20)
    REVENUE_LOOKBACK_DAYS: int = Field(default=100)

    # ── 缓存配置 ──────────────────────────────────────────
    CACHE_NAMESPACE: str = Field(default="resonance")
    CACHE_VERSION: str = Field(default="v1")
    ANALYSIS_CACHE_TTL: int = Field(default=12 * 3600)      # 单股分析结果（小时级）
    SNAPSHOT_CACHE_TTL: int = Field(default=3600)           # 全市场快照
    INDUSTRY_CACHE_TTL: int = Field(default=7 * 24 * 3600)  # 产业对照表（天级）
    CACHE_DIR: str = Field(default="./cache")               # 文件缓存目录

    # ── 日志 / 时区 ──────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    TZ: str = Field(default="Asia/Taipei")


@lru_cache
def get_settings() -> ScannerSettings:
    """获取全局配置（单例）"""
    return ScannerSettings()


def market_today(cfg: Optional[ScannerSettings] = None, now: Optional[datetime] = None) -> date:
    """交易所所在时区（TZ）的当日日期，与主机时区无关"""
    cfg = cfg or get_settings()
    now = now or datetime.now(tz=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(cfg.TZ)).date()


settings = get_settings()
