"""
Layer 5 – 技术指标
纯函数，无副作用；输入序列一律为时间正序（最后一个元素为最新交易日）。
"""

from typing import List, Optional, Sequence, Tuple

from resonance_scanner.models.quote import KellyResult, MonthlyRevenue, Quote

# 量比观察窗口 / 基线窗口（交易日）
VOLUME_OBSERVATION_DAYS = 3
VOLUME_BASELINE_DAYS = 45

# 凯利公式参数
KELLY_TARGET_GAIN = 0.10
KELLY_STOP_LOSS = 0.03
KELLY_SAFETY = 0.5
KELLY_MAX_PERCENT = 20.0
_WIN_RATE_BREAKPOINTS = ((0.8, 0.75), (0.6, 0.60), (0.4, 0.50))
_DEFAULT_WIN_RATE = 0.45


# ── 均线 ──────────────────────────────────────────────────

def sma(prices: Sequence[float], period: int) -> Optional[float]:
    """前 period 个元素的算术平均；元素不足时返回 None（由调用方决定传入哪一段）"""
    if period <= 0 or len(prices) < period:
        return None
    return sum(prices[:period]) / period


def trailing_sma(prices: Sequence[float], period: int) -> Optional[float]:
    """时间正序序列最近 period 日的均线"""
    return sma(prices[-period:], period) if period > 0 else None


# ── 量能 ──────────────────────────────────────────────────

def volume_ratio(observation: Sequence[float], baseline: Sequence[float]) -> float:
    """mean(observation) / mean(baseline)；基线为空或均值为 0 时返回 0"""
    if not baseline or not observation:
        return 0.0
    base = sum(baseline) / len(baseline)
    if base == 0:
        return 0.0
    return (sum(observation) / len(observation)) / base


def split_volume_windows(
    volumes: Sequence[float],
    observation_days: int = VOLUME_OBSERVATION_DAYS,
    baseline_days: int = VOLUME_BASELINE_DAYS,
) -> Tuple[List[float], List[float]]:
    """
    切分量比窗口：观察期 = 最近 observation_days 日，
    基线期 = 观察期之前（不含观察期）最多 baseline_days 日
    """
    observation = list(volumes[-observation_days:])
    remaining = list(volumes[:-observation_days]) if len(volumes) > observation_days else []
    return observation, remaining[-baseline_days:]


def is_volume_increasing(volumes: Sequence[float], days: int = 3) -> bool:
    """最近 days 日成交量严格递增"""
    recent = list(volumes[-days:])
    if len(recent) < days or days < 2:
        return False
    return all(b > a for a, b in zip(recent, recent[1:]))


# ── 均线收敛 / 突破 ───────────────────────────────────────

def ma_constriction(ma5: float, ma20: float, threshold: float) -> Tuple[float, bool]:
    """相对间距 |ma5 - ma20| / ma20，间距 ≤ threshold 视为收敛（squeezing）"""
    if not ma20:
        return float("inf"), False
    gap = abs(ma5 - ma20) / ma20
    return gap, gap <= threshold


def breakout(
    close: float,
    mas: Sequence[Optional[float]],
    change_pct: float,
    threshold: float,
) -> bool:
    """收盘价站上所有均线，且涨幅（相对前收）达到阈值"""
    valid = [m for m in mas if m is not None]
    if not valid:
        return False
    return close > max(valid) and change_pct >= threshold


def change_percent(closes: Sequence[float]) -> float:
    """最新收盘相对前一日收盘的涨跌幅（小数）"""
    if len(closes) < 2 or not closes[-2]:
        return 0.0
    return (closes[-1] - closes[-2]) / closes[-2]


# ── 成交量分布（POC） ─────────────────────────────────────

def volume_profile(
    quotes: Sequence[Quote],
    lookback_days: int,
    bin_count: int = 50,
) -> Tuple[float, float, List[float]]:
    """
    成交量分布直方图

    Returns:
        (价格下界, 单箱宽度, 各箱累计成交量)；区间退化时宽度为 0、只有一个箱
    """
    window = list(quotes[-lookback_days:]) if lookback_days > 0 else []
    if not window:
        return 0.0, 0.0, []

    lows = [q.low if q.low > 0 else q.close for q in window]
    highs = [q.high if q.high > 0 else q.close for q in window]
    lo, hi = min(lows), max(highs)
    if hi <= lo:
        return lo, 0.0, [sum(q.volume for q in window)]

    width = (hi - lo) / bin_count
    bins = [0.0] * bin_count
    for q in window:
        idx = int((q.typical_price - lo) / width)
        bins[min(max(idx, 0), bin_count - 1)] += q.volume
    return lo, width, bins


def point_of_control(
    quotes: Sequence[Quote],
    lookback_days: int,
    bin_count: int = 50,
) -> Optional[float]:
    """成交量最集中价位（最大箱的中心价）"""
    lo, width, bins = volume_profile(quotes, lookback_days, bin_count)
    if not bins:
        return None
    if width == 0:
        return round(lo, 2)
    heaviest = max(range(len(bins)), key=lambda i: bins[i])
    return round(lo + (heaviest + 0.5) * width, 2)


# ── 法人 / 基本面 ─────────────────────────────────────────

def buy_streak(net_flows: Sequence[float]) -> int:
    """从最新一日往回数，连续净买超（> 0）的天数"""
    streak = 0
    for net in reversed(net_flows):
        if net <= 0:
            break
        streak += 1
    return streak


def fundamental_bonus(revenues: Sequence[MonthlyRevenue]) -> float:
    """月营收环比：≥20% 加 10 分，正成长加 5 分"""
    ordered = sorted(revenues, key=lambda r: r.date)
    if len(ordered) < 2 or ordered[-2].revenue <= 0:
        return 0.0
    growth = (ordered[-1].revenue - ordered[-2].revenue) / ordered[-2].revenue
    if growth >= 0.2:
        return 10.0
    if growth > 0:
        return 5.0
    return 0.0


# ── 凯利仓位 ──────────────────────────────────────────────

def estimate_win_rate(score: float) -> float:
    for floor, rate in _WIN_RATE_BREAKPOINTS:
        if score >= floor:
            return rate
    return _DEFAULT_WIN_RATE


def kelly_position(score: float, close: float, ma5: float) -> KellyResult:
    """
    半凯利仓位建议

    f* = (b·p − q) / b，b = (目标价 − 收盘) / (收盘 − 停损价)，
    目标价 = 收盘 × 1.10，停损价 = min(MA5, 收盘 × 0.97)
    """
    win_rate = estimate_win_rate(score)
    target = close * (1 + KELLY_TARGET_GAIN)
    stop = min(ma5, close * (1 - KELLY_STOP_LOSS))
    loss = close - stop
    if loss <= 0:
        return KellyResult(action="Avoid", percentage=0.0, win_rate=win_rate, risk_reward=0.0)

    b = (target - close) / loss
    f = (b * win_rate - (1 - win_rate)) / b * KELLY_SAFETY
    percentage = max(0.0, min(f * 100, KELLY_MAX_PERCENT))
    return KellyResult(
        action="Invest" if f > 0 else "Avoid",
        percentage=round(percentage, 1),
        win_rate=win_rate,
        risk_reward=round(b, 2),
    )
