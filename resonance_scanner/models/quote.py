"""行情、法人、扫描结果等领域模型"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Market(str, Enum):
    TWSE = "TWSE"   # 上市
    TPEX = "TPEX"   # 上柜


class InvestorClass(str, Enum):
    FOREIGN = "FOREIGN"                    # 外资
    INVESTMENT_TRUST = "INVESTMENT_TRUST"  # 投信
    DEALER_SELF = "DEALER_SELF"            # 自营商（自行买卖）
    DEALER_HEDGE = "DEALER_HEDGE"          # 自营商（避险）


class Tag(str, Enum):
    VOLUME_EXPLOSION = "VOLUME_EXPLOSION"
    MA_SQUEEZE = "MA_SQUEEZE"
    BREAKOUT = "BREAKOUT"
    INST_BUYING = "INST_BUYING"
    VOLUME_INCREASING = "VOLUME_INCREASING"


class ScanStage(str, Enum):
    IDLE = "idle"
    DISCOVERY = "discovery"
    FILTERING = "filter"
    ANALYZING = "expert"
    COMPLETE = "complete"


class Quote(BaseModel):
    """标准日 K 行情（成交量单位：股）"""

    symbol: str
    name: str = ""
    date: str                      # YYYY-MM-DD
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float
    volume: float = 0.0
    turnover: float = 0.0          # 成交金额
    transactions: float = 0.0      # 成交笔数
    change: float = 0.0            # 涨跌价差
    market: Optional[Market] = None

    @field_validator("close")
    @classmethod
    def _positive_close(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("close must be > 0")
        return v

    @field_validator("volume")
    @classmethod
    def _non_negative_volume(cls, v: float) -> float:
        if v < 0:
            raise ValueError("volume must be >= 0")
        return v

    @property
    def typical_price(self) -> float:
        """(O+H+L+C)/4，缺失的 OHLC 以收盘价代替"""
        parts = [p if p > 0 else self.close for p in (self.open, self.high, self.low)]
        return (sum(parts) + self.close) / 4


class InstitutionalFlow(BaseModel):
    """单日单类法人买卖金额"""

    symbol: str
    date: str
    buy: float = 0.0
    sell: float = 0.0
    investor: InvestorClass

    @property
    def net(self) -> float:
        return self.buy - self.sell


class MonthlyRevenue(BaseModel):
    symbol: str
    date: str          # 营收所属月份（YYYY-MM-01）
    revenue: float


class ScanSettings(BaseModel):
    """单次扫描的阈值设置，扫描过程中不可变更"""

    model_config = ConfigDict(frozen=True)

    volume_ratio_threshold: float = Field(default=3.5, gt=0)
    ma_constriction_threshold: float = Field(default=0.02, gt=0)
    breakout_threshold: float = Field(default=0.03, ge=0)


class KellyResult(BaseModel):
    action: str             # Invest / Avoid
    percentage: float       # 建议单笔仓位（%），0 ~ 20
    win_rate: float
    risk_reward: float


class ScoreBreakdown(BaseModel):
    volume_score: float
    ma_score: float
    chip_score: float
    fundamental_bonus: float = 0.0
    total: float


class AnalysisResult(BaseModel):
    """单只股票的共振分析结果"""

    symbol: str
    name: str = ""
    as_of: str = ""
    close: float
    change_percent: float = 0.0
    score: float = 0.0
    volume_ratio: float = 0.0
    ma_constriction: Optional[float] = None
    is_ma_aligned: bool = False
    is_breakout: bool = False
    consecutive_buy: int = 0
    poc: Optional[float] = None
    verdict: str = ""
    tags: List[Tag] = Field(default_factory=list)
    daily_volume_trend: List[float] = Field(default_factory=list)
    kelly: Optional[KellyResult] = None
    score_details: Optional[ScoreBreakdown] = None
    risk_warning: Optional[str] = None
    hints: Dict[str, str] = Field(default_factory=dict)
    rank: Optional[int] = None


class SourceStatus(BaseModel):
    source: str
    ok: bool
    count: int = 0
    error: Optional[str] = None


class MarketSnapshot(BaseModel):
    quotes: List[Quote] = Field(default_factory=list)
    statuses: List[SourceStatus] = Field(default_factory=list)

    @property
    def partial(self) -> bool:
        return any(not s.ok for s in self.statuses)


class ItemFailure(BaseModel):
    symbol: str
    stage: ScanStage
    reason: str
    message: str = ""


class ScanReport(BaseModel):
    """一次流水线阶段的输出：部分成功也返回结果与失败明细"""

    stage: ScanStage
    results: List[AnalysisResult] = Field(default_factory=list)
    failures: List[ItemFailure] = Field(default_factory=list)
    statuses: List[SourceStatus] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.results)
