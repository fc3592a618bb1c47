"""
Layer 1 – 行情标准化层
将 TWSE / TPEx 两种结构不同、字段顺序会漂移的原始响应解析为标准 Quote。

  - 日期：民国紧凑格式（YYYMMDD / YYMMDD）、民国分隔格式（YYY/MM/DD）、西元 YYYYMMDD
  - 字段：按表头同义词做子串匹配定位列，不依赖位置索引
  - 数值：去千分位，"--" / 除权息 等占位符视为 0
"""

import logging
import re
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from resonance_scanner.errors import (
    MalformedRecord,
    ScheduleUnavailable,
    UnrecognizedDateFormat,
)
from resonance_scanner.models.quote import Market, Quote

logger = logging.getLogger(__name__)

_ROC_OFFSET = 1911
_TAG_RE = re.compile(r"<[^>]*>")
_NON_DIGIT_RE = re.compile(r"\D")
_DATE_SPLIT_RE = re.compile(r"[/\-.]")

# 占位符 → 0
_SENTINELS = {"", "--", "---", "----", "除權息", "除權", "除息", "X", "N/A"}


class FeedShape(str, Enum):
    TABLE = "table"                # 带表头的多表响应（TWSE，及新版 TPEx）
    OPENAPI = "openapi"            # OpenAPI 最新交易日：字典记录数组（TWSE STOCK_DAY_ALL / TPEx）
    TPEX_ROWS = "tpex_rows"        # TPEx 旧版 aaData：无表头的行数组


# ── 表头同义词（按优先级排列） ─────────────────────────────
# 解析顺序即下列顺序；"sign" 必须先于 "change" 以免 "漲跌" 抢占符号列
FIELD_SYNONYMS: Dict[str, List[str]] = {
    "symbol": ["證券代號", "股票代號", "代號", "代碼", "Code"],
    "name": ["證券名稱", "股票名稱", "公司名稱", "名稱", "Name"],
    "date": ["日期", "資料日期", "Date"],
    "volume": ["成交股數", "成交仟股", "成交量", "TradeVolume"],
    "turnover": ["成交金額", "成交仟元", "TradeValue"],
    "transactions": ["成交筆數", "筆數", "Transaction"],
    "open": ["開盤價", "開盤", "Opening"],
    "high": ["最高價", "最高", "Highest"],
    "low": ["最低價", "最低", "Lowest"],
    "close": ["收盤價", "收盤", "收市", "Closing"],
    "sign": ["漲跌(+/-)", "漲跌(+/－)"],
    "change": ["漲跌價差", "漲跌", "Change"],
}

# TPEx 旧版 aaData 的两种已知布局（由调用端声明 kind，绝不按位置猜测）
TPEX_QUOTE_LAYOUT: Dict[str, int] = {
    "symbol": 0, "name": 1, "close": 2, "change": 3, "open": 4,
    "high": 5, "low": 6, "volume": 7, "turnover": 8, "transactions": 9,
}
TPEX_HISTORY_LAYOUT: Dict[str, int] = {
    "date": 0, "volume": 1, "turnover": 2, "open": 3, "high": 4,
    "low": 5, "close": 6, "change": 7, "transactions": 8,
}
TPEX_HISTORY_SCALES: Dict[str, float] = {"volume": 1000.0, "turnover": 1000.0}

# OpenAPI 字段名（TWSE 与 TPEx 命名不同，同一语义可能有多个名称）
_OPENAPI_KEYS: Dict[str, List[str]] = {
    "symbol": ["SecuritiesCompanyCode", "Code"],
    "name": ["CompanyName", "Name"],
    "date": ["Date"],
    "close": ["Close", "ClosingPrice"],
    "change": ["Change"],
    "open": ["Open", "OpeningPrice"],
    "high": ["High", "HighestPrice"],
    "low": ["Low", "LowestPrice"],
    "volume": ["TradingShares", "Volume", "TradeVolume"],
    "turnover": ["TransactionAmount", "TradeValue"],
    "transactions": ["TransactionNumber", "Transaction"],
}


# ── 日期 ──────────────────────────────────────────────────

def to_gregorian(raw: Any) -> str:
    """
    将上游日期统一为西元 YYYY-MM-DD

    - 分隔格式（/ - .）三段：首段 < 1000 视为民国年，+1911
    - 去除非数字后：8 位 → 西元；7 位 → 前 3 位民国年；6 位 → 前 2 位民国年
    """
    if raw is None:
        raise UnrecognizedDateFormat(raw)
    text = _TAG_RE.sub("", str(raw)).strip()
    parts = [p for p in _DATE_SPLIT_RE.split(text) if p]

    try:
        if len(parts) == 3 and all(p.isdigit() for p in parts):
            year, month, day = (int(p) for p in parts)
            if year < 1000:
                year += _ROC_OFFSET
        else:
            digits = _NON_DIGIT_RE.sub("", text)
            if len(digits) == 8:
                year, month, day = int(digits[:4]), int(digits[4:6]), int(digits[6:])
            elif len(digits) == 7:
                year, month, day = int(digits[:3]) + _ROC_OFFSET, int(digits[3:5]), int(digits[5:])
            elif len(digits) == 6:
                year, month, day = int(digits[:2]) + _ROC_OFFSET, int(digits[2:4]), int(digits[4:])
            else:
                raise UnrecognizedDateFormat(raw)
        return date(year, month, day).isoformat()
    except ValueError as exc:
        raise UnrecognizedDateFormat(raw) from exc


def to_roc(d: date, sep: str = "/", with_day: bool = True) -> str:
    """西元日期 → 民国格式（TPEx 查询参数使用），如 113/11/01 或 113/11"""
    head = f"{d.year - _ROC_OFFSET}{sep}{d.month:02d}"
    return f"{head}{sep}{d.day:02d}" if with_day else head


# ── 数值 ──────────────────────────────────────────────────

def parse_number(raw: Any) -> float:
    """去千分位 / HTML / 空白；占位符返回 0；其余无法解析的值抛 MalformedRecord"""
    if raw is None:
        return 0.0
    if isinstance(raw, (int, float)):
        return float(raw)
    text = _TAG_RE.sub("", str(raw)).replace(",", "").strip()
    if text in _SENTINELS:
        return 0.0
    if text.startswith("X"):
        text = text[1:]
    try:
        return float(text)
    except ValueError as exc:
        raise MalformedRecord(f"无法解析的数值: {raw!r}") from exc


def parse_sign(raw: Any) -> int:
    """涨跌符号列（可能包在 HTML 里）→ +1 / -1"""
    text = _TAG_RE.sub("", str(raw or "")).strip()
    return -1 if text.startswith("-") or text.startswith("－") else 1


# ── 表头解析 ──────────────────────────────────────────────

def _clean_header(header: Any) -> str:
    return re.sub(r"\s+", "", _TAG_RE.sub("", str(header)))


def resolve_columns(fields: Sequence[Any]) -> Dict[str, int]:
    """按同义词子串匹配定位各语义列，返回 {语义: 列索引}"""
    headers = [_clean_header(f) for f in fields]
    taken = set()
    columns: Dict[str, int] = {}
    for key, synonyms in FIELD_SYNONYMS.items():
        for synonym in synonyms:
            idx = next(
                (i for i, h in enumerate(headers) if i not in taken and synonym in h),
                None,
            )
            if idx is not None:
                columns[key] = idx
                taken.add(idx)
                break
    return columns


def column_scales(fields: Sequence[Any], columns: Dict[str, int]) -> Dict[str, float]:
    """表头带 "仟" 单位的列换算为股 / 元"""
    scales = {}
    for key in ("volume", "turnover"):
        if key in columns and "仟" in _clean_header(fields[columns[key]]):
            scales[key] = 1000.0
    return scales


def _candidate_tables(payload: Dict[str, Any]) -> Iterable[Tuple[Sequence[Any], Sequence[Any]]]:
    for table in payload.get("tables") or []:
        if isinstance(table, dict) and table.get("fields") and table.get("data") is not None:
            yield table["fields"], table["data"]
    # 旧版：fields / data、fields9 / data9 ...
    for key, fields in payload.items():
        if key.startswith("fields") and isinstance(fields, list):
            rows = payload.get("data" + key[len("fields"):])
            if isinstance(rows, list):
                yield fields, rows


def locate_table(
    payload: Dict[str, Any],
    required: Sequence[str] = ("symbol", "close"),
) -> Tuple[Dict[str, int], Dict[str, float], Sequence[Any]]:
    """
    在多表响应中找到第一张包含所需语义列的行情表

    Raises:
        ScheduleUnavailable: 没有任何表满足条件（休市日 / 查无资料）
    """
    stat = payload.get("stat")
    if stat is not None and str(stat).upper() != "OK":
        raise ScheduleUnavailable(str(stat))
    for fields, rows in _candidate_tables(payload):
        columns = resolve_columns(fields)
        if all(k in columns for k in required):
            return columns, column_scales(fields, columns), rows
    raise ScheduleUnavailable("响应中没有可识别的行情表")


# ── 形态判别 ──────────────────────────────────────────────

def detect_shape(payload: Any) -> FeedShape:
    if isinstance(payload, list):
        if not payload:
            return FeedShape.OPENAPI
        first = payload[0]
        if isinstance(first, dict) and any(k in first for k in _OPENAPI_KEYS["symbol"]):
            return FeedShape.OPENAPI
    elif isinstance(payload, dict):
        if "tables" in payload or any(k.startswith("fields") for k in payload):
            return FeedShape.TABLE
        if "aaData" in payload:
            return FeedShape.TPEX_ROWS
        if "stat" in payload:
            return FeedShape.TABLE
    raise MalformedRecord(f"未知的上游响应形态: {type(payload).__name__}")


# ── 单条记录 ──────────────────────────────────────────────

def _cell(row: Sequence[Any], columns: Dict[str, int], key: str) -> Any:
    idx = columns.get(key)
    if idx is None or idx >= len(row):
        return None
    return row[idx]


def build_quote(
    values: Dict[str, Any],
    market: Optional[Market],
    scales: Optional[Dict[str, float]] = None,
    symbol: Optional[str] = None,
    trade_date: Optional[str] = None,
) -> Quote:
    """由已按语义取出的原始值构造 Quote，不合格记录抛 MalformedRecord"""
    scales = scales or {}
    code = str(values.get("symbol") or symbol or "").strip()
    if len(code) != 4:
        raise MalformedRecord(f"非普通股代号: {code!r}")

    close = parse_number(values.get("close"))
    if close <= 0:
        raise MalformedRecord(f"{code} 收盘价无效")

    raw_date = values.get("date") or trade_date
    change = parse_number(values.get("change"))
    if "sign" in values:
        change = abs(change) * parse_sign(values["sign"])

    volume = parse_number(values.get("volume")) * scales.get("volume", 1.0)
    if volume < 0:
        raise MalformedRecord(f"{code} 成交量为负")

    return Quote(
        symbol=code,
        name=str(values.get("name") or "").strip(),
        date=to_gregorian(raw_date),
        open=parse_number(values.get("open")),
        high=parse_number(values.get("high")),
        low=parse_number(values.get("low")),
        close=close,
        volume=volume,
        turnover=parse_number(values.get("turnover")) * scales.get("turnover", 1.0),
        transactions=parse_number(values.get("transactions")),
        change=change,
        market=market,
    )


def _collect(
    rows: Iterable[Any],
    columns: Dict[str, int],
    market: Optional[Market],
    scales: Dict[str, float],
    symbol: Optional[str],
    trade_date: Optional[str],
) -> List[Quote]:
    quotes: List[Quote] = []
    dropped = 0
    for row in rows:
        values = {k: _cell(row, columns, k) for k in columns}
        try:
            quotes.append(build_quote(values, market, scales, symbol, trade_date))
        except MalformedRecord as exc:
            dropped += 1
            logger.debug(f"丢弃记录: {exc}")
    if dropped:
        logger.debug(f"{market.value if market else '-'} 共丢弃 {dropped} 条不合格记录")
    return quotes


# ── 整包解析 ──────────────────────────────────────────────

def normalize_payload(
    payload: Any,
    market: Market,
    kind: str = "quotes",
    symbol: Optional[str] = None,
    trade_date: Optional[str] = None,
) -> List[Quote]:
    """
    按响应形态选择解析器，输出标准 Quote 列表

    Args:
        payload: 上游 JSON
        market: 来源市场
        kind: "quotes"（全市场 / 类股快照）或 "history"（单股历史）
        symbol: 历史数据没有代号列时使用
        trade_date: 快照数据没有日期列时使用
    """
    shape = detect_shape(payload)

    if shape is FeedShape.OPENAPI:
        quotes = []
        for record in payload:
            values = {
                key: next((record[n] for n in names if n in record), None)
                for key, names in _OPENAPI_KEYS.items()
            }
            try:
                quotes.append(build_quote(values, market, None, symbol, trade_date))
            except MalformedRecord as exc:
                logger.debug(f"丢弃记录: {exc}")
        return quotes

    if shape is FeedShape.TPEX_ROWS:
        if kind == "history":
            columns, scales = TPEX_HISTORY_LAYOUT, TPEX_HISTORY_SCALES
        else:
            columns, scales = TPEX_QUOTE_LAYOUT, {}
        trade_date = trade_date or payload.get("reportDate")
        return _collect(payload.get("aaData") or [], columns, market, scales, symbol, trade_date)

    required = ("date", "close") if kind == "history" else ("symbol", "close")
    columns, scales, rows = locate_table(payload, required)
    trade_date = trade_date or payload.get("date")
    return _collect(rows, columns, market, scales, symbol, trade_date)
