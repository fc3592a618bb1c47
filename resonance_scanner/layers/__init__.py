"""
数据流分层架构
  Layer 1 – Normalizer   : 上游原始记录 → 标准 Quote
  Layer 2 – Acquisition  : 双市场并发抓取（TWSE / TPEx）+ 增强数据源
  Layer 3 – Cache        : 多级缓存（Redis → MongoDB → 文件）
  Layer 4 – Processing   : 行情序列清洗与合并
  Layer 5 – Indicators   : 技术指标纯函数
  Layer 6 – Scoring      : 共振评分引擎
"""
