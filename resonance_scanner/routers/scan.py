"""
扫描路由
POST /api/scan              - 按阶段执行（discovery / filter / expert）
POST /api/scan/full         - 完整三阶段扫描
GET  /api/analyze/{symbol}  - 单股专家分析（按日缓存）
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from resonance_scanner.models.quote import ScanReport, ScanSettings
from resonance_scanner.models.response import ApiResponse
from resonance_scanner.services.scanner import ScanOrchestrator, get_scan_orchestrator

router = APIRouter(prefix="/api", tags=["共振扫描"])


class StageRequest(BaseModel):
    stage: str
    symbols: Optional[List[str]] = None
    symbol: Optional[str] = None
    market: str = "ALL"
    sector: Optional[str] = None
    settings: Optional[ScanSettings] = None


class FullScanRequest(BaseModel):
    market: str = "ALL"
    sector: Optional[str] = None
    settings: ScanSettings = Field(default_factory=ScanSettings)


def _report_response(report: ScanReport) -> ApiResponse:
    failed = len(report.failures)
    return ApiResponse.ok(
        data=report.model_dump(mode="json"),
        count=report.count,
        message=f"{report.stage.value}: 成功 {report.count} 只" + (f"，失败 {failed} 只" if failed else ""),
    )


@router.post("/scan", response_model=ApiResponse)
async def run_stage(
    body: StageRequest,
    orchestrator: ScanOrchestrator = Depends(get_scan_orchestrator),
):
    """执行单个扫描阶段；expert 阶段可传 symbol 或 symbols"""
    symbols = body.symbols or ([body.symbol] if body.symbol else None)
    report = await orchestrator.run_stage(
        body.stage,
        symbols=symbols,
        scan_settings=body.settings,
        market=body.market,
        sector=body.sector,
    )
    return _report_response(report)


@router.post("/scan/full", response_model=ApiResponse)
async def run_full_scan(
    body: FullScanRequest,
    orchestrator: ScanOrchestrator = Depends(get_scan_orchestrator),
):
    """完整扫描：初筛 → 精筛 → 专家"""
    report = await orchestrator.run_full_scan(body.market, body.sector, body.settings)
    return _report_response(report)


@router.get("/analyze/{symbol}", response_model=ApiResponse)
async def analyze(
    symbol: str,
    orchestrator: ScanOrchestrator = Depends(get_scan_orchestrator),
):
    """单股深度分析"""
    result = await orchestrator.run_expert(symbol)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{symbol} 分析失败或历史数据不足",
        )
    return ApiResponse.ok(data=result.model_dump(mode="json"))
