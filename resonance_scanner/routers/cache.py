"""
缓存管理路由
GET    /api/cache/stats                      - 各缓存后端统计
DELETE /api/cache/analysis/{symbol}/{day}    - 清除单股某日分析结果
"""

from fastapi import APIRouter, Depends

from resonance_scanner.layers.cache import CacheLayer, get_cache_layer
from resonance_scanner.models.response import ApiResponse
from resonance_scanner.services.scanner import ANALYSIS_PURPOSE

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


@router.get("/stats", response_model=ApiResponse)
async def cache_stats(cache: CacheLayer = Depends(get_cache_layer)):
    """获取缓存统计信息（各后端键数量）"""
    return ApiResponse.ok(data=await cache.stats())


@router.delete("/analysis/{symbol}/{day}", response_model=ApiResponse)
async def clear_analysis(symbol: str, day: str, cache: CacheLayer = Depends(get_cache_layer)):
    """清除指定股票某日的分析缓存，下次请求将重新计算"""
    key = cache.key(ANALYSIS_PURPOSE, symbol, day)
    await cache.delete(key)
    return ApiResponse.ok(message=f"缓存已清理: {key}")
