"""
共振扫描服务
整合数据获取、缓存、评分三层，驱动 初筛 → 精筛 → 专家 三阶段流水线

  Discovery : 一次全市场快照，按流动性与方向过滤，按成交量取前 N
  Filter    : 逐股抓取短历史（MA20 所需），评分后保留前 N
  Expert    : 逐股抓取深历史 + 法人 + 月营收，完整评分并写入缓存
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from resonance_scanner.config import ScannerSettings, get_settings, market_today
from resonance_scanner.errors import (
    InsufficientHistory,
    InvalidScanRequest,
    ScannerError,
    UpstreamUnavailable,
)
from resonance_scanner.layers import indicators as ind
from resonance_scanner.layers.acquisition import ExchangeAggregator, get_exchange_aggregator
from resonance_scanner.layers.cache import CacheLayer, get_cache_layer
from resonance_scanner.layers.enrichment import EnrichmentClient, get_enrichment_client
from resonance_scanner.layers.scoring import ScoringEngine, get_scoring_engine
from resonance_scanner.models.quote import (
    AnalysisResult,
    InstitutionalFlow,
    ItemFailure,
    Market,
    MarketSnapshot,
    Quote,
    ScanReport,
    ScanSettings,
    ScanStage,
    SourceStatus,
)
from resonance_scanner.services.batching import ItemOutcome, Throttle, run_batched

logger = logging.getLogger(__name__)

ANALYSIS_PURPOSE = "analysis"
SNAPSHOT_PURPOSE = "snapshot"
INDUSTRY_PURPOSE = "industry"
CANDIDATE_VERDICT = "候選（未評分）"     # 初筛结果只按成交量排名，score 恒为 0
_INST_LOOKBACK_DAYS = 20

_TRANSITIONS: Dict[ScanStage, Tuple[ScanStage, ...]] = {
    ScanStage.IDLE: (ScanStage.DISCOVERY, ScanStage.FILTERING, ScanStage.ANALYZING),
    ScanStage.DISCOVERY: (ScanStage.FILTERING, ScanStage.COMPLETE),
    ScanStage.FILTERING: (ScanStage.ANALYZING, ScanStage.COMPLETE),
    ScanStage.ANALYZING: (ScanStage.COMPLETE,),
    ScanStage.COMPLETE: (),
}


class ScanRun:
    """单次扫描调用的状态，不在调用之间共享"""

    def __init__(self, settings: ScanSettings):
        self.settings = settings
        self.state = ScanStage.IDLE
        self.failures: List[ItemFailure] = []
        self.statuses: List[SourceStatus] = []

    def advance(self, stage: ScanStage) -> None:
        if stage not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"非法状态迁移: {self.state.value} → {stage.value}")
        logger.debug(f"扫描状态: {self.state.value} → {stage.value}")
        self.state = stage

    def abort(self) -> None:
        self.state = ScanStage.IDLE

    def record(self, symbol: str, error: BaseException) -> None:
        self.failures.append(ItemFailure(
            symbol=symbol,
            stage=self.state,
            reason=type(error).__name__,
            message=str(error),
        ))

    def report(self, stage: ScanStage, results: List[AnalysisResult]) -> ScanReport:
        return ScanReport(
            stage=stage,
            results=results,
            failures=list(self.failures),
            statuses=list(self.statuses),
        )


def select_candidates(quotes: Iterable[Quote], min_volume: float, cap: int) -> List[Quote]:
    """流动性（成交股数）达标且当日收红或平盘（收盘 ≥ 开盘），按成交量降序取前 cap 只"""
    liquid = [q for q in quotes if q.volume >= min_volume and q.close >= q.open]
    liquid.sort(key=lambda q: (-q.volume, q.symbol))
    return liquid[:cap]


def rank_by_score(results: Iterable[AnalysisResult]) -> List[AnalysisResult]:
    return sorted(results, key=lambda r: (-r.score, r.symbol))


class ScanOrchestrator:
    """三阶段扫描编排器"""

    def __init__(
        self,
        aggregator: Optional[ExchangeAggregator] = None,
        scorer: Optional[ScoringEngine] = None,
        cache: Optional[CacheLayer] = None,
        enrichment: Optional[EnrichmentClient] = None,
        settings: Optional[ScannerSettings] = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Optional[Callable[[], date]] = None,
    ):
        self._settings = settings or get_settings()
        self._agg = aggregator or get_exchange_aggregator()
        self._scorer = scorer or get_scoring_engine()
        self._cache = cache or get_cache_layer()
        self._enrichment = enrichment if enrichment is not None else get_enrichment_client()
        self._sleep = sleep
        self._clock = clock or (lambda: market_today(self._settings))

    def _throttle(self) -> Throttle:
        return Throttle(self._settings.BATCH_DELAY, sleep=self._sleep)

    # ── 流水线入口 ────────────────────────────────────────

    async def run_discovery(
        self,
        market: str = "ALL",
        sector: Optional[str] = None,
        scan_settings: Optional[ScanSettings] = None,
    ) -> ScanReport:
        """阶段一：全市场快照初筛"""
        run = ScanRun(scan_settings or ScanSettings())
        try:
            candidates = await self._discover(run, market, sector)
        except ScannerError:
            run.abort()
            raise
        run.advance(ScanStage.COMPLETE)
        return run.report(ScanStage.DISCOVERY, [self._candidate_result(q, i + 1) for i, q in enumerate(candidates)])

    async def run_filter(
        self,
        symbols: Sequence[str],
        scan_settings: Optional[ScanSettings] = None,
    ) -> ScanReport:
        """阶段二：短历史评分精筛"""
        run = ScanRun(scan_settings or ScanSettings())
        try:
            results = await self._filter(run, self._validate_symbols(symbols))
        except ScannerError:
            run.abort()
            raise
        run.advance(ScanStage.COMPLETE)
        return run.report(ScanStage.FILTERING, results)

    async def run_expert(
        self,
        symbol: str,
        scan_settings: Optional[ScanSettings] = None,
    ) -> Optional[AnalysisResult]:
        """阶段三（单股）：深度分析，结果按 (代号, 日期) 缓存；失败返回 None"""
        (symbol,) = self._validate_symbols([symbol])
        run = ScanRun(scan_settings or ScanSettings())
        run.advance(ScanStage.ANALYZING)
        try:
            result = await self._expert_one(run, symbol)
        except ScannerError as exc:
            logger.warning(f"{symbol} 专家分析失败: {exc}")
            run.abort()
            return None
        run.advance(ScanStage.COMPLETE)
        return result

    async def run_full_scan(
        self,
        market: str = "ALL",
        sector: Optional[str] = None,
        scan_settings: Optional[ScanSettings] = None,
    ) -> ScanReport:
        """完整三阶段扫描"""
        run = ScanRun(scan_settings or ScanSettings())
        try:
            candidates = await self._discover(run, market, sector)
            markets = {q.symbol: q.market for q in candidates}
            shortlisted = await self._filter(run, [q.symbol for q in candidates], markets)
            run.advance(ScanStage.ANALYZING)
            results = await self._expert_batch(run, [r.symbol for r in shortlisted], markets)
        except ScannerError:
            run.abort()
            raise
        run.advance(ScanStage.COMPLETE)
        logger.info(
            f"完整扫描结束: 候选 {len(candidates)} → 精筛 {len(shortlisted)} → 专家 {len(results)}，"
            f"失败 {len(run.failures)}"
        )
        return run.report(ScanStage.COMPLETE, results)

    async def run_stage(
        self,
        stage: str,
        symbols: Optional[Sequence[str]] = None,
        scan_settings: Optional[ScanSettings] = None,
        market: str = "ALL",
        sector: Optional[str] = None,
    ) -> ScanReport:
        """按阶段名分派（discovery / filter / expert）"""
        if stage == ScanStage.DISCOVERY.value:
            return await self.run_discovery(market, sector, scan_settings)
        if stage == ScanStage.FILTERING.value:
            return await self.run_filter(symbols or [], scan_settings)
        if stage == ScanStage.ANALYZING.value:
            run = ScanRun(scan_settings or ScanSettings())
            try:
                run.advance(ScanStage.ANALYZING)
                results = await self._expert_batch(run, self._validate_symbols(symbols or []))
            except ScannerError:
                run.abort()
                raise
            run.advance(ScanStage.COMPLETE)
            return run.report(ScanStage.ANALYZING, results)
        raise InvalidScanRequest(f"未知的扫描阶段: {stage}")

    # ── 辅助数据 ──────────────────────────────────────────

    async def get_snapshot(self, market: str = "ALL", sector: Optional[str] = None) -> MarketSnapshot:
        """全市场 / 类股快照（缓存 1 小时）"""
        key = self._cache.key(SNAPSHOT_PURPOSE, f"{market.upper()}-{sector or 'ALL'}", self._today())
        cached = await self._cache.get(key)
        if cached is not None:
            try:
                return MarketSnapshot.model_validate(cached)
            except ValidationError:
                logger.warning(f"快照缓存格式失效，重新抓取: {key}")

        snapshot = await self._agg.fetch_market(market=market, sector=sector)
        if not snapshot.partial:
            await self._cache.set(key, snapshot.model_dump(mode="json"), self._settings.SNAPSHOT_CACHE_TTL)
        return snapshot

    async def get_industry_mapping(self) -> Dict[str, str]:
        """产业对照表（缓存 7 天）"""
        key = self._cache.key(INDUSTRY_PURPOSE, "all", self._today())
        cached = await self._cache.get(key)
        if isinstance(cached, dict):
            return cached
        mapping = await self._agg.fetch_industry_mapping()
        if mapping:
            await self._cache.set(key, mapping, self._settings.INDUSTRY_CACHE_TTL)
        return mapping

    # ── 各阶段实现 ────────────────────────────────────────

    def _today(self) -> str:
        return self._clock().isoformat()

    @staticmethod
    def _validate_symbols(symbols: Sequence[str]) -> List[str]:
        cleaned = list(dict.fromkeys(s.strip() for s in symbols if s and s.strip()))
        if not cleaned:
            raise InvalidScanRequest("股票列表为空")
        return cleaned

    async def _discover(self, run: ScanRun, market: str, sector: Optional[str]) -> List[Quote]:
        run.advance(ScanStage.DISCOVERY)
        snapshot = await self.get_snapshot(market, sector)
        run.statuses = snapshot.statuses
        candidates = select_candidates(
            snapshot.quotes,
            self._settings.DISCOVERY_MIN_VOLUME,
            self._settings.DISCOVERY_CAP,
        )
        logger.info(f"初筛: 快照 {len(snapshot.quotes)} 只 → 候选 {len(candidates)} 只")
        return candidates

    @staticmethod
    def _candidate_result(quote: Quote, rank: int) -> AnalysisResult:
        prev_close = quote.close - quote.change
        return AnalysisResult(
            symbol=quote.symbol,
            name=quote.name,
            as_of=quote.date,
            close=quote.close,
            change_percent=round(quote.change / prev_close, 4) if prev_close > 0 else 0.0,
            verdict=CANDIDATE_VERDICT,
            daily_volume_trend=[quote.volume],
            rank=rank,
            hints={"stage": "初篩候選，尚未評分"},
        )

    async def _filter(
        self,
        run: ScanRun,
        symbols: Sequence[str],
        markets: Optional[Dict[str, Optional[Market]]] = None,
    ) -> List[AnalysisResult]:
        run.advance(ScanStage.FILTERING)
        markets = markets or {}
        today = self._clock()

        async def evaluate(symbol: str) -> AnalysisResult:
            quotes = await self._agg.fetch_history(
                symbol,
                days=self._settings.SHALLOW_HISTORY_DAYS,
                today=today,
                market=markets.get(symbol),
                min_days=self._settings.MIN_SHALLOW_SESSIONS,
            )
            result = self._scorer.evaluate(
                symbol, quotes, (), run.settings,
                min_history=self._settings.MIN_SHALLOW_SESSIONS,
            )
            if result is None:
                raise InsufficientHistory(symbol, len(quotes), self._settings.MIN_SHALLOW_SESSIONS)
            return result

        outcomes = await run_batched(symbols, evaluate, self._settings.BATCH_SIZE, self._throttle())
        results = self._collect(run, outcomes)
        shortlisted = rank_by_score(results)[: self._settings.FILTER_TOP_N]
        logger.info(f"精筛: {len(symbols)} 只 → 评分成功 {len(results)} 只 → 保留 {len(shortlisted)} 只")
        return shortlisted

    async def _expert_batch(
        self,
        run: ScanRun,
        symbols: Sequence[str],
        markets: Optional[Dict[str, Optional[Market]]] = None,
    ) -> List[AnalysisResult]:
        markets = markets or {}
        outcomes = await run_batched(
            symbols,
            lambda s: self._expert_one(run, s, markets.get(s)),
            self._settings.BATCH_SIZE,
            self._throttle(),
        )
        return rank_by_score(self._collect(run, outcomes))

    def _collect(self, run: ScanRun, outcomes: Iterable[ItemOutcome]) -> List[AnalysisResult]:
        results = []
        for outcome in outcomes:
            if outcome.ok:
                results.append(outcome.value)
            elif isinstance(outcome.error, ScannerError):
                logger.warning(f"{outcome.key} 跳过: {outcome.error}")
                run.record(outcome.key, outcome.error)
            else:
                raise outcome.error
        return results

    async def _expert_one(
        self,
        run: ScanRun,
        symbol: str,
        market: Optional[Market] = None,
    ) -> AnalysisResult:
        today = self._clock()
        cacheable = run.settings == ScanSettings()
        key = self._cache.key(ANALYSIS_PURPOSE, symbol, today.isoformat())

        if cacheable:
            cached = await self._cache.get(key)
            if cached is not None:
                try:
                    return AnalysisResult.model_validate(cached)
                except ValidationError:
                    logger.warning(f"分析缓存格式失效，重新计算: {key}")

        quotes = await self._agg.fetch_history(
            symbol,
            days=self._settings.DEEP_HISTORY_DAYS,
            today=today,
            market=market,
            min_days=self._settings.MIN_DEEP_SESSIONS,
        )
        flows, bonus = await self._enrich(symbol, today)
        result = self._scorer.evaluate(
            symbol, quotes, flows, run.settings,
            min_history=self._settings.MIN_DEEP_SESSIONS,
            fundamental_bonus=bonus,
        )
        if result is None:
            raise InsufficientHistory(symbol, len(quotes), self._settings.MIN_DEEP_SESSIONS)

        if cacheable:
            await self._cache.set(key, result.model_dump(mode="json"), self._settings.ANALYSIS_CACHE_TTL)
        return result

    async def _enrich(self, symbol: str, today: date) -> Tuple[List[InstitutionalFlow], float]:
        """法人与月营收：尽力而为，失败时返回空数据"""
        if not self._enrichment.enabled:
            return [], 0.0
        start = today - timedelta(days=_INST_LOOKBACK_DAYS)
        revenue_start = today - timedelta(days=self._settings.REVENUE_LOOKBACK_DAYS)
        flows_result, revenue_result = await asyncio.gather(
            self._enrichment.fetch_institutional(symbol, start),
            self._enrichment.fetch_month_revenue(symbol, revenue_start),
            return_exceptions=True,
        )

        flows: List[InstitutionalFlow] = []
        if isinstance(flows_result, UpstreamUnavailable):
            logger.warning(f"{symbol} 法人数据不可用，筹码分以 0 计: {flows_result}")
        elif isinstance(flows_result, BaseException):
            raise flows_result
        else:
            flows = flows_result

        bonus = 0.0
        if isinstance(revenue_result, UpstreamUnavailable):
            logger.warning(f"{symbol} 月营收不可用: {revenue_result}")
        elif isinstance(revenue_result, BaseException):
            raise revenue_result
        else:
            bonus = ind.fundamental_bonus(revenue_result)
        return flows, bonus


# ── 模块级别单例 ──────────────────────────────────────────
_orchestrator: Optional[ScanOrchestrator] = None


def get_scan_orchestrator() -> ScanOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ScanOrchestrator()
    return _orchestrator
