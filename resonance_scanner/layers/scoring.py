"""
Layer 6 – 共振评分引擎
量能 40% / 均线技术 30% / 投信筹码 30%，另有至多 10 分基本面加分，
汇总后归一化到 [0, 1]。结果只依赖输入，不读取系统时间。
"""

import logging
from typing import Dict, List, Optional, Sequence

from resonance_scanner.layers import indicators as ind
from resonance_scanner.layers.processing import get_processing_layer
from resonance_scanner.models.quote import (
    AnalysisResult,
    InstitutionalFlow,
    InvestorClass,
    Quote,
    ScanSettings,
    ScoreBreakdown,
    Tag,
)

logger = logging.getLogger(__name__)

VOLUME_WEIGHT = 40.0
MA_WEIGHT = 30.0
CHIP_WEIGHT = 30.0
MAX_FUNDAMENTAL_BONUS = 10.0

VOLUME_SCORE_CAP = 5.0        # 量比 5 倍即满分
BLOW_OFF_RATIO = 10.0         # 量比超过 10 倍提示出货风险
INST_STREAK_DAYS = 3
POC_LOOKBACK_DAYS = 20
VOLUME_TREND_DAYS = 10

MIN_SHALLOW_HISTORY = 5
MIN_FULL_HISTORY = 20

RISK_BELOW_MA5 = "股價跌破 5 日線，短線轉弱"
RISK_BLOW_OFF = "成交量過熱 (>10倍)，防主力出貨"


class ScoringEngine:
    """单只股票的共振评分"""

    def __init__(self, inst_streak_days: int = INST_STREAK_DAYS):
        self._proc = get_processing_layer()
        self._inst_streak_days = inst_streak_days

    def evaluate(
        self,
        symbol: str,
        prices: Sequence[Quote],
        flows: Sequence[InstitutionalFlow] = (),
        settings: Optional[ScanSettings] = None,
        min_history: int = MIN_SHALLOW_HISTORY,
        fundamental_bonus: float = 0.0,
    ) -> Optional[AnalysisResult]:
        """
        评估单只股票

        Args:
            symbol: 股票代号
            prices: 日 K 行情（顺序不限，内部会校验并排序）
            flows: 法人买卖明细，可为空
            settings: 阈值设置，默认 ScanSettings()
            min_history: 最少交易日数，不足返回 None
            fundamental_bonus: 基本面加分（0 ~ 10）

        Returns:
            AnalysisResult；历史不足时返回 None
        """
        settings = settings or ScanSettings()
        prices = self._proc.ensure_chronological(prices)
        if len(prices) < max(min_history, 2):
            return None

        today = prices[-1]
        closes = [q.close for q in prices]
        volumes = [q.volume for q in prices]

        # ── 1. 量能 ────────────────────────────────────────
        observation, baseline = ind.split_volume_windows(volumes)
        v_ratio = ind.volume_ratio(observation, baseline)
        volume_increasing = ind.is_volume_increasing(volumes)

        # ── 2. 均线 ────────────────────────────────────────
        ma5 = ind.trailing_sma(closes, 5)
        ma10 = ind.trailing_sma(closes, 10)
        ma20 = ind.trailing_sma(closes, 20)
        change_pct = ind.change_percent(closes)

        gap: Optional[float] = None
        squeezing = False
        if ma5 is not None and ma20 is not None:
            gap, squeezing = ind.ma_constriction(ma5, ma20, settings.ma_constriction_threshold)
        is_breakout = ind.breakout(
            today.close, [ma5, ma10, ma20], change_pct, settings.breakout_threshold
        )

        # ── 3. 筹码（投信） ────────────────────────────────
        trust_net = self._proc.daily_net_flow(flows, InvestorClass.INVESTMENT_TRUST)
        streak = ind.buy_streak(trust_net)
        inst_buying = streak >= self._inst_streak_days

        # ── 4. 评分 ────────────────────────────────────────
        volume_score = min(v_ratio, VOLUME_SCORE_CAP) / VOLUME_SCORE_CAP * VOLUME_WEIGHT
        ma_score = ((0.5 if squeezing else 0.0) + (0.5 if is_breakout else 0.0)) * MA_WEIGHT
        chip_score = CHIP_WEIGHT if inst_buying else 0.0
        bonus = max(0.0, min(fundamental_bonus, MAX_FUNDAMENTAL_BONUS))
        total = min(volume_score + ma_score + chip_score + bonus, 100.0)
        score = round(total / 100.0, 4)

        # ── 5. 标签 / 风险 / 凯利 ──────────────────────────
        tags: List[Tag] = []
        if v_ratio >= settings.volume_ratio_threshold:
            tags.append(Tag.VOLUME_EXPLOSION)
        if squeezing:
            tags.append(Tag.MA_SQUEEZE)
        if is_breakout:
            tags.append(Tag.BREAKOUT)
        if inst_buying:
            tags.append(Tag.INST_BUYING)
        if volume_increasing:
            tags.append(Tag.VOLUME_INCREASING)

        risk_warning = None
        if ma5 is not None and today.close < ma5:
            risk_warning = RISK_BELOW_MA5
        elif v_ratio > BLOW_OFF_RATIO:
            risk_warning = RISK_BLOW_OFF

        kelly = ind.kelly_position(score, today.close, ma5 if ma5 is not None else today.close * 0.95)

        return AnalysisResult(
            symbol=symbol,
            name=today.name,
            as_of=today.date,
            close=today.close,
            change_percent=round(change_pct, 4),
            score=score,
            volume_ratio=round(v_ratio, 2),
            ma_constriction=round(gap, 4) if gap is not None else None,
            is_ma_aligned=squeezing,
            is_breakout=is_breakout,
            consecutive_buy=streak,
            poc=ind.point_of_control(prices, POC_LOOKBACK_DAYS),
            verdict=self._verdict(score, is_breakout, inst_buying, tags),
            tags=tags,
            daily_volume_trend=volumes[-VOLUME_TREND_DAYS:],
            kelly=kelly,
            score_details=ScoreBreakdown(
                volume_score=round(volume_score, 1),
                ma_score=round(ma_score, 1),
                chip_score=round(chip_score, 1),
                fundamental_bonus=round(bonus, 1),
                total=round(total, 1),
            ),
            risk_warning=risk_warning,
            hints=self._hints(v_ratio, gap, squeezing, is_breakout, streak, bonus),
        )

    # ── 文案 ──────────────────────────────────────────────

    @staticmethod
    def _verdict(score: float, is_breakout: bool, inst_buying: bool, tags: List[Tag]) -> str:
        if score > 0.7 and {Tag.VOLUME_EXPLOSION, Tag.BREAKOUT}.issubset(tags):
            return "三大信號共振 - 爆發前兆"
        if score > 0.7:
            return "Strong Buy - 籌碼與技術面共振"
        if is_breakout:
            return "Bullish - 技術面突破"
        if inst_buying:
            return "Accumulating - 投信佈局"
        return "Neutral"

    @staticmethod
    def _hints(
        v_ratio: float,
        gap: Optional[float],
        squeezing: bool,
        is_breakout: bool,
        streak: int,
        bonus: float,
    ) -> Dict[str, str]:
        hints = {"volume": f"近 3 日均量為基線的 {v_ratio:.1f} 倍"}
        if gap is None:
            hints["technical"] = "歷史不足 20 日，僅以 5 日線判斷"
        elif squeezing and is_breakout:
            hints["technical"] = f"均線糾結 {gap:.1%} 後帶量突破"
        elif squeezing:
            hints["technical"] = f"均線糾結 {gap:.1%}，等待方向"
        else:
            hints["technical"] = f"5/20 日線間距 {gap:.1%}"
        hints["chip"] = f"投信連續買超 {streak} 日" if streak else "投信未見連續買超"
        if bonus >= MAX_FUNDAMENTAL_BONUS:
            hints["fundamental"] = "月營收環比大幅成長"
        elif bonus > 0:
            hints["fundamental"] = "營收環比正成長"
        return hints


# ── 模块级别单例 ──────────────────────────────────────────
_engine: Optional[ScoringEngine] = None


def get_scoring_engine() -> ScoringEngine:
    global _engine
    if _engine is None:
        _engine = ScoringEngine()
    return _engine
