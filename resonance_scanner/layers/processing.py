"""
Layer 4 – 数据处理层
对标准化后的行情 / 法人序列做合并、去重、排序、按窗口裁剪。
均线等指标只在经过本层排序的时间正序序列上计算。
"""

import logging
from typing import Iterable, List, Optional, Sequence

import pandas as pd

from resonance_scanner.models.quote import InstitutionalFlow, InvestorClass, Quote

logger = logging.getLogger(__name__)


class ProcessingLayer:
    """数据处理层：合并 + 去重 + 排序"""

    def quotes_to_frame(self, quotes: Iterable[Quote]) -> pd.DataFrame:
        """Quote 列表 → DataFrame（列与 Quote 字段一致）"""
        records = [q.model_dump() for q in quotes]
        if not records:
            return pd.DataFrame()
        return pd.DataFrame(records)

    def frame_to_quotes(self, df: pd.DataFrame) -> List[Quote]:
        if df.empty:
            return []
        df = df.astype(object).where(pd.notna(df), None)
        return [Quote.model_validate(r) for r in df.to_dict(orient="records")]

    def merge_history(self, pages: Iterable[Sequence[Quote]]) -> List[Quote]:
        """
        合并多个月份页面的历史行情

        重叠日期只保留最后出现的一条，结果按日期升序排列
        """
        df = self.quotes_to_frame(q for page in pages for q in page)
        if df.empty:
            return []
        before = len(df)
        df = df.drop_duplicates(subset=["date"], keep="last")
        if len(df) < before:
            logger.debug(f"历史行情去重: {before} → {len(df)}")
        df = df.sort_values("date").reset_index(drop=True)
        return self.frame_to_quotes(df)

    def filter_date_range(
        self,
        quotes: Sequence[Quote],
        start_date: Optional[str],
        end_date: Optional[str] = None,
    ) -> List[Quote]:
        """按日期范围过滤（闭区间，YYYY-MM-DD 字符串比较）"""
        return [
            q for q in quotes
            if (not start_date or q.date >= start_date) and (not end_date or q.date <= end_date)
        ]

    def ensure_chronological(self, quotes: Sequence[Quote]) -> List[Quote]:
        """校验时间正序，乱序时按日期重新排序"""
        dates = [q.date for q in quotes]
        if dates == sorted(dates):
            return list(quotes)
        logger.debug("行情序列非时间正序，已重新排序")
        return sorted(quotes, key=lambda q: q.date)

    def daily_net_flow(
        self,
        flows: Iterable[InstitutionalFlow],
        investor: InvestorClass = InvestorClass.INVESTMENT_TRUST,
    ) -> List[float]:
        """指定法人类别的逐日净买卖（同日多笔合并），按日期升序"""
        rows = [
            {"date": f.date, "net": f.net}
            for f in flows if f.investor == investor
        ]
        if not rows:
            return []
        df = pd.DataFrame(rows).groupby("date", as_index=False)["net"].sum()
        return df.sort_values("date")["net"].astype(float).tolist()


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
