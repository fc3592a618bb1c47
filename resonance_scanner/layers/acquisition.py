"""
Layer 2 – 数据获取层
并发抓取上市（TWSE）与上柜（TPEx）行情，单一来源失败不影响另一来源，
统一经标准化层输出 Quote。每次抓取都是无状态、幂等的。
"""

import asyncio
import logging
import re
from datetime import date, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import httpx

from resonance_scanner.config import ScannerSettings, get_settings, market_today
from resonance_scanner.errors import (
    InsufficientHistory,
    InvalidScanRequest,
    MalformedRecord,
    MarketDataUnavailable,
    ScannerError,
    ScheduleUnavailable,
    UpstreamUnavailable,
)
from resonance_scanner.layers.normalizer import normalize_payload, to_roc
from resonance_scanner.layers.processing import get_processing_layer
from resonance_scanner.models.quote import Market, MarketSnapshot, Quote, SourceStatus

logger = logging.getLogger(__name__)

_TWSE_ALL = "ALLBUT0999"     # 全部（不含权证、牛熊证）
_TPEX_ALL = "AL"
_TITLE_NAME_RE = re.compile(r"\b\d{4}\s+(\S+)")

_INDUSTRY_CODE_KEYS = ["公司代號", "Code", "SecuritiesCompanyCode"]
_INDUSTRY_NAME_KEYS = ["產業別", "SecuritiesIndustryCode", "掛牌類別"]


def parse_markets(market: Optional[str]) -> List[Market]:
    """ALL / TWSE / TPEX → 市场列表"""
    key = (market or "ALL").upper()
    if key == "ALL":
        return [Market.TWSE, Market.TPEX]
    try:
        return [Market(key)]
    except ValueError as exc:
        raise InvalidScanRequest(f"未知市场: {market}") from exc


def month_starts(start: date, end: date) -> List[date]:
    """覆盖 [start, end] 的每个月的 1 日"""
    cursor = start.replace(day=1)
    months = []
    while cursor <= end:
        months.append(cursor)
        cursor = (cursor.replace(day=28) + timedelta(days=4)).replace(day=1)
    return months


def _pick(record: Dict[str, Any], keys: Iterable[str]) -> Optional[Any]:
    return next((record[k] for k in keys if record.get(k) not in (None, "")), None)


class ExchangeAggregator:
    """数据获取层：封装两大交易所，提供统一的数据拉取接口"""

    def __init__(
        self,
        settings: Optional[ScannerSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], date]] = None,
    ):
        self._settings = settings or get_settings()
        self._transport = transport
        self._clock = clock or (lambda: market_today(self._settings))
        self._proc = get_processing_layer()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._settings.HTTP_TIMEOUT),
            headers={"User-Agent": self._settings.HTTP_USER_AGENT, "Accept": "application/json"},
            transport=self._transport,
            follow_redirects=True,
        )

    async def _get_json(
        self,
        client: httpx.AsyncClient,
        source: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        try:
            response = await client.get(url, params=params)
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailable(source, "请求超时") from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(source, str(exc)) from exc
        if response.status_code != 200:
            raise UpstreamUnavailable(source, f"HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(source, "响应不是合法 JSON") from exc

    # ── 全市场 / 类股快照 ─────────────────────────────────

    async def fetch_market(
        self,
        trade_date: Optional[date] = None,
        symbols: Optional[Iterable[str]] = None,
        market: str = "ALL",
        sector: Optional[str] = None,
    ) -> MarketSnapshot:
        """
        并发抓取各市场日行情

        Args:
            trade_date: 交易日，None 表示最新
            symbols: 只保留这些代号
            market: ALL / TWSE / TPEX
            sector: 类股代码，None 表示全部

        Raises:
            MarketDataUnavailable: 所有来源均失败或无数据
        """
        markets = parse_markets(market)
        async with self._client() as client:
            results = await asyncio.gather(
                *(self._fetch_source(client, m, trade_date, sector) for m in markets),
                return_exceptions=True,
            )

        quotes: List[Quote] = []
        statuses: List[SourceStatus] = []
        for m, result in zip(markets, results):
            if isinstance(result, ScannerError):
                logger.warning(f"{m.value} 行情获取失败: {result}")
                statuses.append(SourceStatus(source=m.value, ok=False, error=str(result)))
            elif isinstance(result, BaseException):
                raise result
            else:
                logger.info(f"{m.value} 行情获取成功，共 {len(result)} 条")
                statuses.append(SourceStatus(source=m.value, ok=True, count=len(result)))
                quotes.extend(result)

        if symbols is not None:
            wanted = set(symbols)
            quotes = [q for q in quotes if q.symbol in wanted]

        if not quotes:
            detail = "; ".join(f"{s.source}: {s.error or 'empty'}" for s in statuses)
            raise MarketDataUnavailable(f"所有市场均无行情数据（{detail}）")
        return MarketSnapshot(quotes=quotes, statuses=statuses)

    async def _fetch_source(
        self,
        client: httpx.AsyncClient,
        market: Market,
        trade_date: Optional[date],
        sector: Optional[str],
    ) -> List[Quote]:
        day = trade_date or self._clock()
        if trade_date is None and sector is None:
            # 未指定日期：取最近一个已收盘交易日的 OpenAPI 快照，休市或盘中也有数据
            url = (
                f"{self._settings.TWSE_OPENAPI_URL}/exchangeReport/STOCK_DAY_ALL"
                if market is Market.TWSE
                else f"{self._settings.TPEX_BASE_URL}/openapi/v1/tpex_mainboard_daily_close_quotes"
            )
            payload = await self._get_json(client, market.value, url)
            return normalize_payload(payload, market, "quotes", trade_date=day.isoformat())

        if market is Market.TWSE:
            payload = await self._get_json(
                client, market.value,
                f"{self._settings.TWSE_BASE_URL}/rwd/zh/afterTrading/MI_INDEX",
                {"date": day.strftime("%Y%m%d"), "type": sector or _TWSE_ALL, "response": "json"},
            )
            return normalize_payload(payload, market, "quotes", trade_date=day.isoformat())

        payload = await self._get_json(
            client, market.value,
            f"{self._settings.TPEX_BASE_URL}/web/stock/aftertrading/otc_quotes_no14/stk_orderby_result.php",
            {"l": "zh-tw", "se": sector or _TPEX_ALL, "d": to_roc(day)},
        )
        return normalize_payload(payload, market, "quotes", trade_date=day.isoformat())

    # ── 个股历史 ──────────────────────────────────────────

    async def fetch_history(
        self,
        symbol: str,
        days: int = 70,
        today: Optional[date] = None,
        market: Optional[Market] = None,
        min_days: int = 0,
    ) -> List[Quote]:
        """
        组装最近 days 个日历日的日 K（按日期升序、已去重）

        各月份页面并发抓取，单月失败可容忍；市场未知时先查上市，无数据再查上柜。

        Raises:
            UpstreamUnavailable: 所有月份页面均抓取失败
            InsufficientHistory: 交易日数少于 min_days
        """
        today = today or self._clock()
        start = today - timedelta(days=days)
        months = month_starts(start, today)
        markets = [market] if market else [Market.TWSE, Market.TPEX]

        quotes: List[Quote] = []
        last_error: Optional[UpstreamUnavailable] = None
        async with self._client() as client:
            for m in markets:
                try:
                    quotes = await self._fetch_history_pages(client, m, symbol, months)
                except UpstreamUnavailable as exc:
                    last_error = exc
                    continue
                if quotes:
                    break

        if not quotes and last_error is not None:
            raise last_error
        quotes = self._proc.filter_date_range(quotes, start.isoformat(), today.isoformat())
        if len(quotes) < min_days:
            raise InsufficientHistory(symbol, len(quotes), min_days)
        return quotes

    async def _fetch_history_pages(
        self,
        client: httpx.AsyncClient,
        market: Market,
        symbol: str,
        months: Sequence[date],
    ) -> List[Quote]:
        results = await asyncio.gather(
            *(self._fetch_history_page(client, market, symbol, m) for m in months),
            return_exceptions=True,
        )
        pages: List[List[Quote]] = []
        failures = 0
        for month, result in zip(months, results):
            if isinstance(result, ScheduleUnavailable):
                continue
            if isinstance(result, (UpstreamUnavailable, MalformedRecord)):
                failures += 1
                logger.warning(f"{symbol} {month:%Y-%m} 历史行情获取失败（{market.value}）: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            pages.append(result)

        if failures and failures == len(months):
            raise UpstreamUnavailable(market.value, f"{symbol} 所有月份历史行情均获取失败")
        return self._proc.merge_history(pages)

    async def _fetch_history_page(
        self,
        client: httpx.AsyncClient,
        market: Market,
        symbol: str,
        month: date,
    ) -> List[Quote]:
        if market is Market.TWSE:
            payload = await self._get_json(
                client, market.value,
                f"{self._settings.TWSE_BASE_URL}/rwd/zh/afterTrading/STOCK_DAY",
                {"date": month.strftime("%Y%m01"), "stockNo": symbol, "response": "json"},
            )
            match = _TITLE_NAME_RE.search(str(payload.get("title", ""))) if isinstance(payload, dict) else None
            name = match.group(1) if match else ""
        else:
            payload = await self._get_json(
                client, market.value,
                f"{self._settings.TPEX_BASE_URL}/web/stock/aftertrading/daily_trading_info/st43_result.php",
                {"l": "zh-tw", "d": to_roc(month, with_day=False), "stkno": symbol},
            )
            name = str(payload.get("stkName") or "") if isinstance(payload, dict) else ""

        quotes = normalize_payload(payload, market, "history", symbol=symbol)
        if name:
            quotes = [q if q.name else q.model_copy(update={"name": name}) for q in quotes]
        return quotes

    # ── 产业对照表 ────────────────────────────────────────

    async def fetch_industry_mapping(self) -> Dict[str, str]:
        """代号 → 产业别；任一来源失败时返回另一来源的部分结果"""
        sources = {
            Market.TWSE.value: f"{self._settings.TWSE_OPENAPI_URL}/opendata/t187ap03_L",
            Market.TPEX.value: f"{self._settings.TPEX_BASE_URL}/openapi/v1/tpex_mainboard_per_quotes",
        }
        async with self._client() as client:
            results = await asyncio.gather(
                *(self._get_json(client, name, url) for name, url in sources.items()),
                return_exceptions=True,
            )

        mapping: Dict[str, str] = {}
        failed = []
        for name, result in zip(sources, results):
            if isinstance(result, ScannerError):
                logger.warning(f"{name} 产业对照表获取失败: {result}")
                failed.append(name)
                continue
            if isinstance(result, BaseException):
                raise result
            for record in result if isinstance(result, list) else []:
                code = _pick(record, _INDUSTRY_CODE_KEYS)
                industry = _pick(record, _INDUSTRY_NAME_KEYS)
                if code and industry:
                    mapping[str(code).strip()] = str(industry).strip()

        if len(failed) == len(sources):
            raise UpstreamUnavailable("industry", "所有来源均失败")
        return mapping


# ── 模块级别单例 ──────────────────────────────────────────
_aggregator: Optional[ExchangeAggregator] = None


def get_exchange_aggregator() -> ExchangeAggregator:
    global _aggregator
    if _aggregator is None:
        _aggregator = ExchangeAggregator()
    return _aggregator
