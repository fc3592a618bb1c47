"""
resonance_scanner 分层单元测试

覆盖范围：
  - 配置模块（服务发现、环境变量解析、不可变）
  - 标准化层（日期转换、数值清洗、表头同义词、多表定位、响应形态）
  - 处理层（历史合并去重、时间排序、法人净额）
  - 指标层（SMA / 量比 / 均线收敛 / 突破 / POC / 凯利）
  - 评分引擎（情境 A / D、幂等、风险提示）
  - 缓存层（键格式、多级降级）
  - 分批节流
"""

import os
import sys
from datetime import date, timedelta
from unittest.mock import patch

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from resonance_scanner.errors import (  # noqa: E402
    CacheUnavailable,
    MalformedRecord,
    ScheduleUnavailable,
    UnrecognizedDateFormat,
)
from resonance_scanner.models.quote import (  # noqa: E402
    InstitutionalFlow,
    InvestorClass,
    Market,
    MonthlyRevenue,
    Quote,
    ScanSettings,
    Tag,
)


# ─────────────────────────────────────────────────────────
# 辅助函数
# ─────────────────────────────────────────────────────────

def _quotes(closes, volumes=None, symbol="2330", start=date(2024, 10, 1)):
    volumes = volumes or [1000.0] * len(closes)
    prev = closes[0]
    records = []
    for i, (close, volume) in enumerate(zip(closes, volumes)):
        records.append(Quote(
            symbol=symbol,
            name="台積電",
            date=(start + timedelta(days=i)).isoformat(),
            open=prev,
            high=max(prev, close),
            low=min(prev, close),
            close=close,
            volume=volume,
            change=close - prev,
            market=Market.TWSE,
        ))
        prev = close
    return records


def _trust_flows(nets, symbol="2330", start=date(2024, 10, 1)):
    return [
        InstitutionalFlow(
            symbol=symbol,
            date=(start + timedelta(days=i)).isoformat(),
            buy=max(net, 0) + 100,
            sell=max(-net, 0) + 100,
            investor=InvestorClass.INVESTMENT_TRUST,
        )
        for i, net in enumerate(nets)
    ]


def _scenario_a():
    """25 个交易日：最后一日放量 9 倍，收盘略高于平坦均线"""
    closes = [100.0] * 24 + [104.0]
    volumes = [1000.0] * 21 + [1000.0, 1000.0, 1000.0, 9000.0]
    return _quotes(closes, volumes)


_TWSE_FIELDS = [
    "證券代號", "證券名稱", "成交股數", "成交筆數", "成交金額",
    "開盤價", "最高價", "最低價", "收盤價", "漲跌(+/-)", "漲跌價差",
]


# ─────────────────────────────────────────────────────────
# 1. 配置模块测试
# ─────────────────────────────────────────────────────────

class TestConfig:
    def test_defaults(self):
        from resonance_scanner.config import ScannerSettings
        s = ScannerSettings()
        assert s.BATCH_SIZE == 10
        assert s.ANALYSIS_CACHE_TTL == 12 * 3600
        assert s.CACHE_NAMESPACE == "resonance"

    def test_settings_are_frozen(self):
        from resonance_scanner.config import ScannerSettings
        s = ScannerSettings()
        with pytest.raises(Exception):
            s.BATCH_SIZE = 99

    def test_redis_url_with_auth(self):
        from resonance_scanner.config import ScannerSettings
        s = ScannerSettings(REDIS_PASSWORD="secret", REDIS_HOST="cache", REDIS_PORT=6379)
        assert ":secret@cache:6379" in s.REDIS_URL

    def test_mongo_uri_no_auth(self):
        from resonance_scanner.config import ScannerSettings
        s = ScannerSettings(MONGODB_USERNAME="", MONGODB_PASSWORD="")
        assert s.MONGO_URI.startswith("mongodb://") and "@" not in s.MONGO_URI

    def test_docker_service_discovery(self):
        with patch.dict(os.environ, {"DOCKER_CONTAINER": "true"}, clear=False):
            from resonance_scanner import config as cfg_module
            assert cfg_module._default_redis_host() == "redis"
            assert cfg_module._default_mongo_host() == "mongodb"

    def test_scan_settings_immutable(self):
        s = ScanSettings()
        assert (s.volume_ratio_threshold, s.ma_constriction_threshold, s.breakout_threshold) == (3.5, 0.02, 0.03)
        with pytest.raises(Exception):
            s.volume_ratio_threshold = 1.0

    def test_market_today_uses_exchange_timezone(self):
        from datetime import datetime, timezone
        from resonance_scanner.config import ScannerSettings, market_today
        # UTC 20:00 已是台北隔日凌晨 04:00
        now = datetime(2024, 11, 14, 20, 0, tzinfo=timezone.utc)
        assert market_today(ScannerSettings(TZ="Asia/Taipei"), now) == date(2024, 11, 15)
        assert market_today(ScannerSettings(TZ="UTC"), now) == date(2024, 11, 14)
        assert market_today(ScannerSettings(TZ="Asia/Taipei"), datetime(2024, 11, 14, 20, 0)) == date(2024, 11, 15)

    def test_orchestrator_default_clock_follows_timezone(self):
        from datetime import datetime, timezone
        from resonance_scanner.config import ScannerSettings
        from resonance_scanner.services.scanner import ScanOrchestrator

        fixed = datetime(2024, 11, 14, 20, 0, tzinfo=timezone.utc)

        class FrozenDatetime(datetime):
            @classmethod
            def now(cls, tz=None):
                return fixed.astimezone(tz) if tz else fixed.replace(tzinfo=None)

        orchestrator = ScanOrchestrator(
            aggregator=object(), scorer=object(), cache=object(), enrichment=object(),
            settings=ScannerSettings(TZ="Asia/Taipei"),
        )
        with patch("resonance_scanner.config.datetime", FrozenDatetime):
            assert orchestrator._today() == "2024-11-15"


# ─────────────────────────────────────────────────────────
# 2. 标准化层测试
# ─────────────────────────────────────────────────────────

class TestDateConversion:
    @pytest.mark.parametrize("raw, expected", [
        ("20241101", "2024-11-01"),
        ("1131101", "2024-11-01"),
        ("991231", "2010-12-31"),
        ("113/11/01", "2024-11-01"),
        ("99/01/05", "2010-01-05"),
        ("2024-11-01", "2024-11-01"),
        ("2024/11/01", "2024-11-01"),
        (20241101, "2024-11-01"),
    ])
    def test_to_gregorian(self, raw, expected):
        from resonance_scanner.layers.normalizer import to_gregorian
        assert to_gregorian(raw) == expected

    @pytest.mark.parametrize("raw", ["12345", "", None, "113/13/01", "abc", "2024110112"])
    def test_unrecognized(self, raw):
        from resonance_scanner.layers.normalizer import to_gregorian
        with pytest.raises(UnrecognizedDateFormat):
            to_gregorian(raw)

    def test_unrecognized_is_malformed_record(self):
        assert issubclass(UnrecognizedDateFormat, MalformedRecord)

    def test_to_roc(self):
        from resonance_scanner.layers.normalizer import to_roc
        assert to_roc(date(2024, 11, 5)) == "113/11/05"
        assert to_roc(date(2024, 11, 5), with_day=False) == "113/11"


class TestNumericHygiene:
    def test_thousands_separator(self):
        from resonance_scanner.layers.normalizer import parse_number
        assert parse_number("1,234,567") == 1234567.0
        assert parse_number(" 12.50 ") == 12.5

    @pytest.mark.parametrize("raw", ["--", "---", "除權息", "除息", "", None])
    def test_sentinels_are_zero(self, raw):
        from resonance_scanner.layers.normalizer import parse_number
        assert parse_number(raw) == 0.0

    def test_garbage_raises(self):
        from resonance_scanner.layers.normalizer import parse_number
        with pytest.raises(MalformedRecord):
            parse_number("n/a-price")

    def test_sign_column(self):
        from resonance_scanner.layers.normalizer import parse_sign
        assert parse_sign("<p style= color:red>+</p>") == 1
        assert parse_sign("<p style= color:green>-</p>") == -1
        assert parse_sign("") == 1


class TestColumnResolution:
    def test_order_drift(self):
        from resonance_scanner.layers.normalizer import resolve_columns
        fields = ["收盤價", "證券名稱", "成交股數", "股票代號", "開盤價", "最高價", "最低價", "漲跌(+/-)", "漲跌價差"]
        cols = resolve_columns(fields)
        assert cols["symbol"] == 3
        assert cols["close"] == 0
        assert cols["sign"] == 7
        assert cols["change"] == 8

    def test_unit_scale(self):
        from resonance_scanner.layers.normalizer import column_scales, resolve_columns
        fields = ["日期", "成交仟股", "成交仟元", "開盤", "最高", "最低", "收盤", "漲跌", "筆數"]
        cols = resolve_columns(fields)
        assert column_scales(fields, cols) == {"volume": 1000.0, "turnover": 1000.0}

    def test_locate_second_table(self):
        from resonance_scanner.layers.normalizer import locate_table
        payload = {
            "stat": "OK",
            "tables": [
                {"title": "價格指數", "fields": ["指數", "收盤指數", "漲跌(+/-)"], "data": [["發行量加權", "22,000", "+"]]},
                {"title": "每日收盤行情", "fields": _TWSE_FIELDS, "data": []},
            ],
        }
        cols, _, rows = locate_table(payload)
        assert cols["symbol"] == 0 and rows == []

    def test_legacy_numbered_tables(self):
        from resonance_scanner.layers.normalizer import locate_table
        payload = {"fields1": ["指數", "收盤指數"], "data1": [], "fields9": _TWSE_FIELDS, "data9": [["2330"]]}
        cols, _, rows = locate_table(payload)
        assert cols["close"] == 8 and rows == [["2330"]]

    def test_holiday_fails_closed(self):
        from resonance_scanner.layers.normalizer import locate_table
        with pytest.raises(ScheduleUnavailable):
            locate_table({"stat": "很抱歉，沒有符合條件的資料!"})
        with pytest.raises(ScheduleUnavailable):
            locate_table({"stat": "OK", "tables": [{"fields": ["指數", "收盤指數"], "data": []}]})


class TestNormalizePayload:
    def test_twse_table(self):
        from resonance_scanner.layers.normalizer import normalize_payload
        payload = {
            "stat": "OK",
            "date": "20241101",
            "tables": [{"fields": _TWSE_FIELDS, "data": [
                ["2330", "台積電", "30,000,000", "50,000", "30,000,000,000",
                 "1,000.00", "1,020.00", "995.00", "1,015.00", "<p style= color:red>+</p>", "15.00"],
                ["2317", "鴻海", "20,000,000", "40,000", "4,000,000,000",
                 "200.00", "201.00", "195.00", "196.00", "<p style= color:green>-</p>", "4.00"],
                ["030001", "元大權證", "1,000", "1", "1,000", "1.00", "1.00", "1.00", "1.00", "+", "0.00"],
                ["1101", "台泥", "0", "0", "0", "--", "--", "--", "--", " ", "0.00"],
            ]}],
        }
        quotes = normalize_payload(payload, Market.TWSE)
        assert [q.symbol for q in quotes] == ["2330", "2317"]
        tsmc, foxconn = quotes
        assert tsmc.date == "2024-11-01"
        assert tsmc.close == 1015.0 and tsmc.volume == 30_000_000
        assert tsmc.change == 15.0
        assert foxconn.change == -4.0
        assert all(q.close > 0 for q in quotes)

    def test_tpex_openapi(self):
        from resonance_scanner.layers.normalizer import FeedShape, detect_shape, normalize_payload
        payload = [{
            "Date": "1131101", "SecuritiesCompanyCode": "6488", "CompanyName": "環球晶",
            "Close": "500.00", "Change": "-5.00", "Open": "505.00", "High": "510.00",
            "Low": "498.00", "TradingShares": "1,234,000", "TransactionAmount": "617,000,000",
            "TransactionNumber": "1,500",
        }, {
            "Date": "1131101", "SecuritiesCompanyCode": "70001U", "CompanyName": "權證",
            "Close": "1.00",
        }]
        assert detect_shape(payload) is FeedShape.OPENAPI
        quotes = normalize_payload(payload, Market.TPEX)
        assert len(quotes) == 1
        q = quotes[0]
        assert (q.symbol, q.date, q.close, q.change, q.volume) == ("6488", "2024-11-01", 500.0, -5.0, 1_234_000)
        assert q.market is Market.TPEX

    def test_tpex_rows_history(self):
        from resonance_scanner.layers.normalizer import FeedShape, detect_shape, normalize_payload
        payload = {"stkNo": "6488", "aaData": [
            ["113/10/01", "1,234", "617,000", "505.00", "510.00", "498.00", "500.00", "-5.00", "1,500"],
            ["113/10/02", "----", "----", "----", "----", "----", "----", "----", "0"],
        ]}
        assert detect_shape(payload) is FeedShape.TPEX_ROWS
        quotes = normalize_payload(payload, Market.TPEX, "history", symbol="6488")
        assert len(quotes) == 1
        assert quotes[0].volume == 1_234_000 and quotes[0].turnover == 617_000_000
        assert quotes[0].date == "2024-10-01"

    def test_tpex_rows_quotes_layout(self):
        from resonance_scanner.layers.normalizer import normalize_payload
        payload = {"reportDate": "113/11/01", "aaData": [
            ["6488", "環球晶", "500.00", "+5.00", "495.00", "505.00", "490.00", "1,000,000", "500,000,000", "900"],
        ]}
        (q,) = normalize_payload(payload, Market.TPEX, "quotes")
        assert (q.close, q.open, q.volume, q.change, q.date) == (500.0, 495.0, 1_000_000, 5.0, "2024-11-01")

    def test_twse_history_uses_given_symbol(self):
        from resonance_scanner.layers.normalizer import normalize_payload
        payload = {
            "stat": "OK",
            "fields": ["日期", "成交股數", "成交金額", "開盤價", "最高價", "最低價", "收盤價", "漲跌價差", "成交筆數"],
            "data": [["113/11/01", "1,000", "100,000", "100", "101", "99", "100.5", "+0.5", "10"]],
        }
        (q,) = normalize_payload(payload, Market.TWSE, "history", symbol="2330")
        assert (q.symbol, q.date, q.close, q.change) == ("2330", "2024-11-01", 100.5, 0.5)

    @pytest.mark.parametrize("payload", ["oops", {"foo": 1}, [1, 2]])
    def test_unknown_shape(self, payload):
        from resonance_scanner.layers.normalizer import detect_shape
        with pytest.raises(MalformedRecord):
            detect_shape(payload)

    def test_build_quote_rejects_zero_close(self):
        from resonance_scanner.layers.normalizer import build_quote
        with pytest.raises(MalformedRecord):
            build_quote({"symbol": "2330", "close": "0", "date": "20241101"}, Market.TWSE)


# ─────────────────────────────────────────────────────────
# 3. 数据处理层测试
# ─────────────────────────────────────────────────────────

class TestProcessingLayer:
    def setup_method(self):
        from resonance_scanner.layers.processing import ProcessingLayer
        self.proc = ProcessingLayer()

    def test_merge_empty(self):
        assert self.proc.merge_history([[], []]) == []

    def test_merge_dedupes_and_sorts(self):
        oct_page = _quotes([10.0, 11.0], start=date(2024, 10, 30))
        nov_page = _quotes([12.0, 13.0], start=date(2024, 10, 31))
        merged = self.proc.merge_history([nov_page, oct_page])
        assert [q.date for q in merged] == ["2024-10-30", "2024-10-31", "2024-11-01"]
        # 重叠日期保留最后出现的一条
        assert merged[1].close == 11.0
        assert merged[0].market is Market.TWSE

    def test_ensure_chronological(self):
        quotes = _quotes([1.0, 2.0, 3.0])
        assert self.proc.ensure_chronological(quotes[::-1]) == quotes

    def test_filter_date_range(self):
        quotes = _quotes([1.0] * 10)
        kept = self.proc.filter_date_range(quotes, "2024-10-03", "2024-10-05")
        assert [q.date for q in kept] == ["2024-10-03", "2024-10-04", "2024-10-05"]

    def test_daily_net_flow_groups_by_date(self):
        flows = _trust_flows([5.0, -2.0]) + [
            InstitutionalFlow(symbol="2330", date="2024-10-02", buy=10, sell=0,
                              investor=InvestorClass.INVESTMENT_TRUST),
            InstitutionalFlow(symbol="2330", date="2024-10-02", buy=999, sell=0,
                              investor=InvestorClass.FOREIGN),
        ]
        assert self.proc.daily_net_flow(flows) == [5.0, 8.0]


# ─────────────────────────────────────────────────────────
# 4. 指标层测试
# ─────────────────────────────────────────────────────────

class TestIndicators:
    def test_sma(self):
        from resonance_scanner.layers.indicators import sma, trailing_sma
        assert sma([1, 2, 3, 4, 5], 5) == 3
        assert sma([10, 20, 30], 2) == 15
        assert sma([1, 2], 5) is None
        assert trailing_sma([10, 20, 30], 2) == 25

    def test_volume_ratio_degenerate(self):
        from resonance_scanner.layers.indicators import volume_ratio
        assert volume_ratio([5000], []) == 0
        assert volume_ratio([5000], [0, 0]) == 0

    def test_volume_ratio_linear(self):
        from resonance_scanner.layers.indicators import volume_ratio
        baseline = [1000, 2000, 3000]
        assert volume_ratio([4000], baseline) == pytest.approx(2 * volume_ratio([2000], baseline))

    def test_split_volume_windows_excludes_observation(self):
        from resonance_scanner.layers.indicators import split_volume_windows
        volumes = list(range(1, 61))
        observation, baseline = split_volume_windows(volumes)
        assert observation == [58, 59, 60]
        assert baseline == list(range(13, 58))

    def test_ma_constriction_scenario_b(self):
        from resonance_scanner.layers.indicators import ma_constriction
        gap, squeezing = ma_constriction(100.4, 100.0, 0.02)
        assert gap == pytest.approx(0.004)
        assert squeezing is True
        assert ma_constriction(103.0, 100.0, 0.02)[1] is False

    def test_breakout(self):
        from resonance_scanner.layers.indicators import breakout
        assert breakout(105.0, [100.0, 101.0, 102.0], 0.04, 0.03) is True
        assert breakout(105.0, [100.0, 101.0, 102.0], 0.02, 0.03) is False
        assert breakout(101.5, [100.0, 101.0, 102.0], 0.05, 0.03) is False
        assert breakout(105.0, [None, None], 0.05, 0.03) is False

    def test_volume_increasing(self):
        from resonance_scanner.layers.indicators import is_volume_increasing
        assert is_volume_increasing([5, 1, 2, 3]) is True
        assert is_volume_increasing([1, 3, 3]) is False
        assert is_volume_increasing([1, 2]) is False

    def test_poc_volume_conserved(self):
        from resonance_scanner.layers.indicators import volume_profile
        closes = [10 + (i % 7) * 1.5 for i in range(30)]
        volumes = [1000 + i * 37 for i in range(30)]
        quotes = _quotes(closes, volumes)
        for lookback in (1, 5, 20, 30, 100):
            _, _, bins = volume_profile(quotes, lookback)
            assert sum(bins) == sum(volumes[-lookback:])

    def test_poc_heaviest_bin(self):
        from resonance_scanner.layers.indicators import point_of_control
        quotes = [
            Quote(symbol="2330", date=f"2024-10-{i + 1:02d}", open=10, high=10, low=10, close=10, volume=100)
            for i in range(9)
        ] + [Quote(symbol="2330", date="2024-10-10", open=20, high=20, low=20, close=20, volume=10000)]
        assert point_of_control(quotes, 20) == pytest.approx(19.9)

    def test_poc_degenerate(self):
        from resonance_scanner.layers.indicators import point_of_control
        quotes = _quotes([50.0] * 5)
        assert point_of_control(quotes, 5) == 50.0
        assert point_of_control([], 5) is None

    def test_kelly_capped(self):
        from resonance_scanner.layers.indicators import kelly_position
        k = kelly_position(0.9, 100.0, 98.0)
        assert k.action == "Invest"
        assert k.percentage == 20.0
        assert k.win_rate == 0.75
        assert k.risk_reward == pytest.approx(3.33)

    def test_kelly_half(self):
        from resonance_scanner.layers.indicators import kelly_position
        k = kelly_position(0.5, 100.0, 99.0)
        assert k.action == "Invest" and k.percentage == pytest.approx(17.5)

    def test_kelly_avoid(self):
        from resonance_scanner.layers.indicators import kelly_position
        k = kelly_position(0.1, 100.0, 90.0)
        assert k.action == "Avoid" and k.percentage == 0.0

    def test_kelly_no_risk_denominator(self):
        from resonance_scanner.layers.indicators import kelly_position
        k = kelly_position(0.9, 0.0, 0.0)
        assert (k.action, k.percentage) == ("Avoid", 0.0)

    def test_kelly_percentage_bounds(self):
        from resonance_scanner.layers.indicators import kelly_position
        for score in (0.0, 0.3, 0.45, 0.65, 0.85, 1.0):
            for ma5 in (50.0, 90.0, 97.5, 99.9, 100.0, 150.0):
                assert 0.0 <= kelly_position(score, 100.0, ma5).percentage <= 20.0

    def test_buy_streak(self):
        from resonance_scanner.layers.indicators import buy_streak
        assert buy_streak([1, -1, 2, 3, 4]) == 3
        assert buy_streak([5, 0]) == 0
        assert buy_streak([]) == 0

    def test_fundamental_bonus(self):
        from resonance_scanner.layers.indicators import fundamental_bonus

        def rev(*values):
            return [MonthlyRevenue(symbol="2330", date=f"2024-{i + 1:02d}-01", revenue=v) for i, v in enumerate(values)]

        assert fundamental_bonus(rev(100, 125)) == 10.0
        assert fundamental_bonus(rev(100, 105)) == 5.0
        assert fundamental_bonus(rev(100, 90)) == 0.0
        assert fundamental_bonus(rev(100)) == 0.0


# ─────────────────────────────────────────────────────────
# 5. 评分引擎测试
# ─────────────────────────────────────────────────────────

class TestScoringEngine:
    def setup_method(self):
        from resonance_scanner.layers.scoring import ScoringEngine
        self.engine = ScoringEngine()

    def test_scenario_a_volume_explosion(self):
        result = self.engine.evaluate("2330", _scenario_a())
        assert result.volume_ratio == pytest.approx(3.67, abs=0.01)
        assert Tag.VOLUME_EXPLOSION in result.tags
        assert Tag.MA_SQUEEZE in result.tags
        assert Tag.BREAKOUT in result.tags
        assert Tag.VOLUME_INCREASING not in result.tags
        assert result.score_details.ma_score == 30.0
        assert result.score == pytest.approx(0.5933, abs=1e-4)
        assert result.risk_warning is None
        assert result.as_of == "2024-10-25"
        assert len(result.daily_volume_trend) == 10

    def test_scenario_d_institutional_streak(self):
        flows = _trust_flows([-50.0, 10.0, 20.0, 30.0])
        result = self.engine.evaluate("2330", _scenario_a(), flows)
        assert result.consecutive_buy == 3
        assert result.score_details.chip_score == 30.0
        assert Tag.INST_BUYING in result.tags

    def test_two_day_streak_gets_no_chip_credit(self):
        flows = _trust_flows([-50.0, 20.0, 30.0])
        result = self.engine.evaluate("2330", _scenario_a(), flows)
        assert result.consecutive_buy == 2
        assert result.score_details.chip_score == 0.0
        assert Tag.INST_BUYING not in result.tags

    def test_other_investors_ignored(self):
        flows = [
            InstitutionalFlow(symbol="2330", date=f"2024-10-0{i}", buy=1000, sell=0, investor=InvestorClass.FOREIGN)
            for i in range(1, 5)
        ]
        assert self.engine.evaluate("2330", _scenario_a(), flows).consecutive_buy == 0

    def test_idempotent(self):
        quotes, flows = _scenario_a(), _trust_flows([1.0, 2.0, 3.0])
        first = self.engine.evaluate("2330", quotes, flows)
        second = self.engine.evaluate("2330", quotes, flows)
        assert first == second
        assert first.model_dump_json() == second.model_dump_json()

    def test_order_independent(self):
        quotes = _scenario_a()
        assert self.engine.evaluate("2330", quotes[::-1]) == self.engine.evaluate("2330", quotes)

    def test_insufficient_history(self):
        assert self.engine.evaluate("2330", _quotes([100.0] * 4)) is None
        assert self.engine.evaluate("2330", _quotes([100.0] * 10), min_history=20) is None

    def test_short_history_has_no_squeeze(self):
        result = self.engine.evaluate("2330", _quotes([100.0] * 9 + [104.0]))
        assert result.ma_constriction is None
        assert Tag.MA_SQUEEZE not in result.tags
        assert Tag.BREAKOUT in result.tags

    def test_risk_below_ma5(self):
        from resonance_scanner.layers.scoring import RISK_BELOW_MA5
        result = self.engine.evaluate("2330", _quotes([110.0 - i for i in range(25)]))
        assert result.risk_warning == RISK_BELOW_MA5

    def test_risk_blow_off(self):
        from resonance_scanner.layers.scoring import RISK_BLOW_OFF
        volumes = [1000.0] * 22 + [1000.0, 1000.0, 40000.0]
        result = self.engine.evaluate("2330", _quotes([100.0] * 25, volumes))
        assert result.volume_ratio > 10
        assert result.risk_warning == RISK_BLOW_OFF

    def test_fundamental_bonus_capped(self):
        with_bonus = self.engine.evaluate("2330", _scenario_a(), fundamental_bonus=50.0)
        assert with_bonus.score_details.fundamental_bonus == 10.0
        assert with_bonus.score == pytest.approx(0.6933, abs=1e-4)
        assert with_bonus.hints["fundamental"]

    def test_score_bounded(self):
        volumes = [1000.0] * 22 + [1000.0, 1000.0, 40000.0]
        result = self.engine.evaluate(
            "2330", _quotes([100.0] * 24 + [110.0], volumes),
            _trust_flows([1.0, 1.0, 1.0]), fundamental_bonus=10.0,
        )
        assert 0.0 <= result.score <= 1.0

    def test_custom_settings_thresholds(self):
        strict = ScanSettings(volume_ratio_threshold=5.0)
        assert Tag.VOLUME_EXPLOSION not in self.engine.evaluate("2330", _scenario_a(), settings=strict).tags


# ─────────────────────────────────────────────────────────
# 6. 缓存层测试
# ─────────────────────────────────────────────────────────

class FakeRedis:
    def __init__(self, broken: bool = False):
        self.store = {}
        self.broken = broken

    async def get(self, key):
        if self.broken:
            raise ConnectionError("redis down")
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        if self.broken:
            raise ConnectionError("redis down")
        self.store[key] = value

    async def delete(self, key):
        self.store.pop(key, None)

    async def dbsize(self):
        return len(self.store)


class TestCacheLayer:
    def _cache(self, tmp_path, redis=None):
        from resonance_scanner.config import ScannerSettings
        from resonance_scanner.layers.cache import CacheLayer
        return CacheLayer(
            ScannerSettings(CACHE_DIR=str(tmp_path)),
            redis_getter=lambda: redis,
            mongo_getter=lambda: None,
        )

    def test_key_format(self, tmp_path):
        assert self._cache(tmp_path).key("analysis", "2330", "2024-11-01") == "resonance:analysis:v1:2330:2024-11-01"

    @pytest.mark.asyncio
    async def test_redis_roundtrip(self, tmp_path):
        redis = FakeRedis()
        cache = self._cache(tmp_path, redis)
        assert await cache.set("k", {"score": 0.5}, ttl=60) is True
        assert "k" in redis.store
        assert await cache.get("k") == {"score": 0.5}

    @pytest.mark.asyncio
    async def test_broken_redis_degrades_to_file(self, tmp_path):
        cache = self._cache(tmp_path, FakeRedis(broken=True))
        assert await cache.set("k", [1, 2, 3], ttl=60) is True
        assert await cache.get("k") == [1, 2, 3]
        assert os.listdir(tmp_path)

    @pytest.mark.asyncio
    async def test_expired_file_entry(self, tmp_path):
        cache = self._cache(tmp_path)
        await cache.set("k", "v", ttl=-1)
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_miss_returns_none(self, tmp_path):
        assert await self._cache(tmp_path, FakeRedis()).get("missing") is None

    @pytest.mark.asyncio
    async def test_all_backends_down(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        from resonance_scanner.config import ScannerSettings
        from resonance_scanner.layers.cache import CacheLayer
        cache = CacheLayer(
            ScannerSettings(CACHE_DIR=str(blocker)),
            redis_getter=lambda: FakeRedis(broken=True),
            mongo_getter=lambda: None,
        )
        assert await cache.set("k", "v", ttl=60) is False
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_file_backend_raises_typed_error(self, tmp_path):
        cache = self._cache(tmp_path)
        (tmp_path / "bad.json").write_text("{not json")
        with pytest.raises(CacheUnavailable):
            await cache._file_get("bad")

    @pytest.mark.asyncio
    async def test_delete_and_stats(self, tmp_path):
        redis = FakeRedis()
        cache = self._cache(tmp_path, redis)
        await cache.set("k", 1, ttl=60)
        assert (await cache.stats())["redis"]["keys"] == 1
        await cache.delete("k")
        assert await cache.get("k") is None


# ─────────────────────────────────────────────────────────
# 7. 分批节流测试
# ─────────────────────────────────────────────────────────

class TestBatching:
    @pytest.mark.asyncio
    async def test_throttle_skips_first_wait(self):
        from resonance_scanner.services.batching import Throttle
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        throttle = Throttle(0.5, sleep=fake_sleep)
        for _ in range(3):
            await throttle.wait()
        assert sleeps == [0.5, 0.5]
        assert throttle.waits == 2

    def test_chunked(self):
        from resonance_scanner.services.batching import chunked
        assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        with pytest.raises(ValueError):
            chunked([1], 0)

    @pytest.mark.asyncio
    async def test_failure_isolated_per_item(self):
        from resonance_scanner.services.batching import Throttle, run_batched

        async def worker(n):
            if n == 3:
                raise RuntimeError("boom")
            return n * 10

        async def fake_sleep(seconds):
            return None

        throttle = Throttle(0.2, sleep=fake_sleep)
        outcomes = await run_batched([1, 2, 3, 4, 5], worker, 2, throttle)
        assert len(outcomes) == 5
        by_key = {o.key: o for o in outcomes}
        assert by_key[3].ok is False and isinstance(by_key[3].error, RuntimeError)
        assert [by_key[k].value for k in (1, 2, 4, 5)] == [10, 20, 40, 50]
        assert throttle.waits == 2

    @pytest.mark.asyncio
    async def test_caller_can_stop_early(self):
        from resonance_scanner.services.batching import iter_batches
        calls = []

        async def worker(n):
            calls.append(n)
            return n

        async for batch in iter_batches(list(range(10)), worker, 3):
            assert len(batch) == 3
            break
        assert sorted(calls) == [0, 1, 2]
