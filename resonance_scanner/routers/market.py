"""
市场数据路由
GET /api/market/snapshot           - 全市场 / 类股快照
GET /api/market/industry-mapping   - 代号 → 产业别对照表
GET /api/market/sectors            - 类股代码列表
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from resonance_scanner.models.response import ApiResponse
from resonance_scanner.services.scanner import ScanOrchestrator, get_scan_orchestrator

router = APIRouter(prefix="/api/market", tags=["市场数据"])

TAIWAN_SECTORS = {
    "01": "水泥工業", "02": "食品工業", "03": "塑膠工業", "04": "紡織纖維",
    "05": "電機機械", "06": "電器電纜", "08": "玻璃陶瓷", "09": "造紙工業",
    "10": "鋼鐵工業", "11": "橡膠工業", "12": "汽車工業", "14": "建材營造",
    "15": "航運業", "16": "觀光餐旅", "17": "金融保險", "18": "貿易百貨",
    "20": "其他", "21": "化學工業", "22": "生技醫療", "23": "油電燃氣",
    "24": "半導體", "25": "電腦週邊", "26": "光電業", "27": "通信網路",
    "28": "電子零組件", "29": "電子通路", "30": "資訊服務", "31": "其他電子",
}


@router.get("/snapshot", response_model=ApiResponse)
async def snapshot(
    market: str = Query(default="ALL", description="ALL / TWSE / TPEX"),
    sector: Optional[str] = Query(default=None, description="类股代码，默认全部"),
    orchestrator: ScanOrchestrator = Depends(get_scan_orchestrator),
):
    """当日行情快照，附带各来源状态"""
    result = await orchestrator.get_snapshot(market, sector)
    return ApiResponse.ok(
        data={
            "quotes": [q.model_dump(mode="json") for q in result.quotes],
            "statuses": [s.model_dump() for s in result.statuses],
            "partial": result.partial,
        },
        count=len(result.quotes),
    )


@router.get("/industry-mapping", response_model=ApiResponse)
async def industry_mapping(orchestrator: ScanOrchestrator = Depends(get_scan_orchestrator)):
    """代号 → 产业别"""
    mapping = await orchestrator.get_industry_mapping()
    return ApiResponse.ok(data=mapping, count=len(mapping))


@router.get("/sectors", response_model=ApiResponse)
async def sectors():
    return ApiResponse.ok(data=TAIWAN_SECTORS, count=len(TAIWAN_SECTORS))
