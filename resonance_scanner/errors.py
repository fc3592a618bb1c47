"""
错误分类

  单源 / 单股级别的失败只记录、不外抛；
  只有全市场数据不可用或调用参数非法才会中断一次扫描。
"""

from typing import Optional


class ScannerError(Exception):
    """扫描服务异常基类"""


class UpstreamUnavailable(ScannerError):
    """单个上游数据源不可用（超时、非 200、响应无法解析）"""

    def __init__(self, source: str, message: str = ""):
        self.source = source
        super().__init__(f"{source}: {message}" if message else source)


class MarketDataUnavailable(ScannerError):
    """两个市场均无数据，当前扫描无法继续"""


class MalformedRecord(ScannerError):
    """单条上游记录格式错误，丢弃该条后继续"""


class UnrecognizedDateFormat(MalformedRecord):
    """无法识别的日期格式"""

    def __init__(self, raw: object):
        self.raw = raw
        super().__init__(f"无法识别的日期格式: {raw!r}")


class ScheduleUnavailable(ScannerError):
    """响应中找不到行情表，通常是休市日"""


class InsufficientHistory(ScannerError):
    """个股历史交易日不足，跳过该股"""

    def __init__(self, symbol: str, available: int, required: int):
        self.symbol = symbol
        self.available = available
        self.required = required
        super().__init__(f"{symbol} 历史数据不足: {available} < {required}")


class CacheUnavailable(ScannerError):
    """缓存后端读写失败，降级为直接计算"""

    def __init__(self, backend: str, cause: Optional[Exception] = None):
        self.backend = backend
        super().__init__(f"{backend} 不可用: {cause}" if cause else f"{backend} 不可用")


class InvalidScanRequest(ScannerError):
    """非法的扫描请求（空股票列表、未知阶段等）"""
