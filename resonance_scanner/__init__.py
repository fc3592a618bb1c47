"""
共振选股扫描服务
台股（上市 TWSE / 上柜 TPEx）量能、均线、法人三信号共振扫描微服务

架构分层：
  数据获取层 (Acquisition)  → 两大交易所行情抓取与标准化
  缓存层     (Cache)        → Redis / MongoDB / 文件三级缓存
  处理层     (Processing)   → 行情序列去重、排序、合并
  指标层     (Indicators)   → 纯函数技术指标
  评分层     (Scoring)      → 综合评分、标签、风险提示
  服务层     (Scanner)      → 初筛 → 精筛 → 专家 三阶段流水线
"""

__version__ = "1.0.0"
