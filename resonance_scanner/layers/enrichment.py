"""
增强数据源（FinMind）
以 token 查询参数认证，响应格式 {status, msg, data[]}。
仅用于补充法人买卖与月营收，失败时抛 UpstreamUnavailable，由调用方降级处理。
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from resonance_scanner.config import ScannerSettings, get_settings
from resonance_scanner.errors import MalformedRecord, UpstreamUnavailable
from resonance_scanner.layers.normalizer import parse_number, to_gregorian
from resonance_scanner.models.quote import InstitutionalFlow, InvestorClass, MonthlyRevenue

logger = logging.getLogger(__name__)

_SOURCE = "finmind"
_DATASET_INSTITUTIONAL = "TaiwanStockInstitutionalInvestorsBuySell"
_DATASET_REVENUE = "TaiwanStockMonthRevenue"

_INVESTOR_NAMES: Dict[str, InvestorClass] = {
    "Foreign_Investor": InvestorClass.FOREIGN,
    "Foreign_Dealer_Self": InvestorClass.FOREIGN,
    "Investment_Trust": InvestorClass.INVESTMENT_TRUST,
    "Dealer_self": InvestorClass.DEALER_SELF,
    "Dealer_Self": InvestorClass.DEALER_SELF,
    "Dealer_Hedging": InvestorClass.DEALER_HEDGE,
}


class EnrichmentClient:
    """FinMind 查询客户端"""

    def __init__(
        self,
        settings: Optional[ScannerSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings or get_settings()
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return self._settings.FINMIND_ENABLED

    async def _query(self, dataset: str, symbol: str, start_date: date) -> List[Dict[str, Any]]:
        if not self.enabled:
            raise UpstreamUnavailable(_SOURCE, "未启用")
        params = {
            "dataset": dataset,
            "data_id": symbol,
            "start_date": start_date.isoformat(),
        }
        if self._settings.FINMIND_TOKEN:
            params["token"] = self._settings.FINMIND_TOKEN

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.HTTP_TIMEOUT),
                transport=self._transport,
            ) as client:
                response = await client.get(self._settings.FINMIND_API_URL, params=params)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(_SOURCE, str(exc) or type(exc).__name__) from exc

        if response.status_code != 200:
            raise UpstreamUnavailable(_SOURCE, f"HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(_SOURCE, "响应不是合法 JSON") from exc
        if body.get("status") != 200:
            raise UpstreamUnavailable(_SOURCE, f"status={body.get('status')} msg={body.get('msg')}")
        return body.get("data") or []

    async def fetch_institutional(self, symbol: str, start_date: date) -> List[InstitutionalFlow]:
        """三大法人逐日买卖金额"""
        flows: List[InstitutionalFlow] = []
        for row in await self._query(_DATASET_INSTITUTIONAL, symbol, start_date):
            investor = _INVESTOR_NAMES.get(str(row.get("name", "")))
            if investor is None:
                continue
            try:
                flows.append(InstitutionalFlow(
                    symbol=symbol,
                    date=to_gregorian(row.get("date")),
                    buy=parse_number(row.get("buy")),
                    sell=parse_number(row.get("sell")),
                    investor=investor,
                ))
            except MalformedRecord as exc:
                logger.debug(f"丢弃法人记录: {exc}")
        return flows

    async def fetch_month_revenue(self, symbol: str, start_date: date) -> List[MonthlyRevenue]:
        """月营收"""
        revenues: List[MonthlyRevenue] = []
        for row in await self._query(_DATASET_REVENUE, symbol, start_date):
            try:
                if row.get("revenue_year") and row.get("revenue_month"):
                    month = date(int(row["revenue_year"]), int(row["revenue_month"]), 1).isoformat()
                else:
                    month = to_gregorian(row.get("date"))
                revenues.append(MonthlyRevenue(
                    symbol=symbol, date=month, revenue=parse_number(row.get("revenue")),
                ))
            except (MalformedRecord, ValueError) as exc:
                logger.debug(f"丢弃营收记录: {exc}")
        return revenues


# ── 模块级别单例 ──────────────────────────────────────────
_enrichment: Optional[EnrichmentClient] = None


def get_enrichment_client() -> EnrichmentClient:
    global _enrichment
    if _enrichment is None:
        _enrichment = EnrichmentClient()
    return _enrichment
