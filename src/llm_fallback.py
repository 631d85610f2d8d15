"""
Model fallback: ask an OpenAI-compatible chat model for one T-SQL statement.

Used only for questions the rule-based planner and formula library cannot express.
The prompt is built from the catalog entries of the involved sources plus a short
cookbook of query shapes; the reply is returned raw and cleaned by the sanitizer.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from config import LLMConfig, get_config
from errors import ModelUnavailable
from ir_models import TimeRange
from llm_utils import call_chat_completion, choose_model, get_llm_client
from source_catalog import SourceCatalog, get_catalog

logger = logging.getLogger(__name__)


DIALECT_RULES = """\
- 目标数据库是 SQL Server 2008 R2：不要使用 FORMAT、IIF、TRY_CAST、CONCAT、EOMONTH、DATEFROMPARTS、OFFSET/FETCH。
- 表名和字段名一律加方括号，表名必须与下方目录完全一致，不要在表名后加“表”字。
- 只使用目录中列出的字段；文本型数值先 CAST(... AS FLOAT)。
- 求和、平均时排除空值和非正数：字段 IS NOT NULL AND 字段 > 0。
- 时间条件写成区间：[时间] >= '2024-01-01' AND [时间] < '2025-01-01'，不要在 WHERE 中对时间列套 YEAR()/MONTH()。
- 多张表的结果先在各表内部汇总，再用 UNION ALL 合并后在外层汇总，不要直接 JOIN 明细。
- 只输出一条 SELECT 语句，不要解释，不要输出多条语句。"""

COOKBOOK: Dict[str, str] = {
    '月均': (
        "总量除以有数据的月份数：\n"
        "SELECT SUM([值]) * 1.0 / NULLIF(COUNT(DISTINCT YEAR([时间]) * 100 + MONTH([时间])), 0) AS [月均值] "
        "FROM [表] WHERE ..."
    ),
    '两期对比': (
        "先按年汇总，再用 CASE 取两期之差与增长率：\n"
        "SELECT MAX(CASE WHEN [年份] = 2025 THEN [总计] END) - MAX(CASE WHEN [年份] = 2024 THEN [总计] END) AS [增减量] "
        "FROM (SELECT YEAR([时间]) AS [年份], SUM([值]) AS [总计] FROM [表] "
        "WHERE [时间] >= '2024-01-01' AND [时间] < '2026-01-01' GROUP BY YEAR([时间])) AS y"
    ),
    '最高的一年': (
        "SELECT TOP 1 [年份], [总计] FROM (SELECT YEAR([时间]) AS [年份], SUM([值]) AS [总计] "
        "FROM [表] GROUP BY YEAR([时间])) AS y ORDER BY [总计] DESC"
    ),
    '终端排名': (
        "终端用 电站名称 + '|' + 终端名称 唯一标识：\n"
        "SELECT TOP 1 [电站名称] + '|' + [终端名称] AS [终端], SUM([充电电量(度)]) AS [总计] FROM [特来电] "
        "WHERE [终端名称] IS NOT NULL AND [充电电量(度)] > 0 GROUP BY [电站名称] + '|' + [终端名称] ORDER BY [总计] DESC"
    ),
    '占比': (
        "分组值除以总量：\n"
        "SELECT [分组], SUM([值]) * 100.0 / NULLIF((SELECT SUM([值]) FROM [表] WHERE ...), 0) AS [占比] "
        "FROM [表] WHERE ... GROUP BY [分组]"
    ),
}


def build_messages(question: str, catalog: SourceCatalog, sources: List[str],
                   site: Optional[str], time_range: Optional[TimeRange]) -> List[Dict[str, str]]:
    snippet = catalog.to_prompt_snippet(sources or None)
    for entry in snippet:
        site_filters = entry.pop('site_filters', None)
        if site and site_filters and site in site_filters:
            entry['site_filter'] = site_filters[site]
    cookbook = '\n\n'.join(f"【{name}】{body}" for name, body in COOKBOOK.items())
    system = (
        "你是充电站经营数据的 SQL 助手，根据用户问题生成一条 SQL Server 2008 R2 查询。\n\n"
        f"规则：\n{DIALECT_RULES}\n\n"
        f"可用数据表（字段映射：实际列 -> 用户关键词）：\n{json.dumps(snippet, ensure_ascii=False, indent=2)}\n\n"
        f"常用写法：\n{cookbook}"
    )
    user_lines = [f"问题：{question}"]
    if sources:
        user_lines.append(f"涉及的表：{', '.join(sources)}")
    if site:
        user_lines.append(f"站点：{site}（使用 site_filter 条件）")
    if time_range is not None and time_range.has_time:
        user_lines.append(f"时间范围：{time_range.start.isoformat()} 至 {time_range.end.isoformat()}（含）")
    return [
        {'role': 'system', 'content': system},
        {'role': 'user', 'content': '\n'.join(user_lines)},
    ]


class LLMFallback:
    """Wraps the chat client; raises ModelUnavailable instead of returning nothing."""

    def __init__(self, client: Any = None, catalog: Optional[SourceCatalog] = None,
                 llm_cfg: Optional[LLMConfig] = None):
        self.llm_cfg = llm_cfg or get_config().llm
        self.catalog = catalog or get_catalog()
        self._client = client
        self._client_checked = client is not None

    @property
    def client(self):
        if not self._client_checked:
            self._client = get_llm_client(self.llm_cfg)
            self._client_checked = True
        return self._client

    @property
    def available(self) -> bool:
        return self.llm_cfg.enabled and self.client is not None

    def generate_sql(self, question: str, sources: List[str], site: Optional[str] = None,
                     time_range: Optional[TimeRange] = None) -> Dict[str, Any]:
        """Return {'sql': raw model text, 'meta': call metadata}."""
        if not self.available:
            raise ModelUnavailable('model fallback is not configured', model=self.llm_cfg.model)
        params = choose_model('sql_generation', self.llm_cfg)
        messages = build_messages(question, self.catalog, sources, site, time_range)
        content, meta = call_chat_completion(
            self.client,
            messages,
            model=params['model'],
            max_tokens=params['max_tokens'],
            temperature=params['temperature'],
        )
        if meta.get('error'):
            raise ModelUnavailable('model call failed', model=params['model'], reason=meta['error'])
        if not content:
            raise ModelUnavailable('model returned an empty reply', model=params['model'])
        logger.info(f"Model SQL generated | model={params['model']} latency_ms={meta.get('latency_ms')}")
        return {'sql': content, 'meta': meta}
