"""Public API surface for the ``afas_finance`` package.

Stable re-exports of the aggregation engine, the analysis tools, the
assistant and the cache/mapping helpers. Implementations live in the sibling
modules; import-time cost stays low because DB access is deferred to call time.
"""

from __future__ import annotations

from .afas_client import AfasClient
from .assistant import AssistantReply, ask, execute_tool_call, generate_title
from .cache import (
    CacheEntry,
    DatabaseCacheBackend,
    FallbackCache,
    FileCacheBackend,
    load_or_fetch,
)
from .category_mapping import (
    ENHANCED_PNL_CATEGORIES,
    collect_unmapped,
    enhanced_profit_loss,
    map_categories_with_ai,
)
from .checks import run_financial_checks
from .models import FinancialView, PeriodRange
from .statements import AnalysisTools, sanitize_range
from .transform import build_financial_view, derive_account_type_name, derive_category

__all__ = [
    "AfasClient",
    "AnalysisTools",
    "AssistantReply",
    "CacheEntry",
    "DatabaseCacheBackend",
    "ENHANCED_PNL_CATEGORIES",
    "FallbackCache",
    "FileCacheBackend",
    "FinancialView",
    "PeriodRange",
    "ask",
    "build_financial_view",
    "collect_unmapped",
    "derive_account_type_name",
    "derive_category",
    "enhanced_profit_loss",
    "execute_tool_call",
    "generate_title",
    "load_or_fetch",
    "map_categories_with_ai",
    "run_financial_checks",
    "sanitize_range",
]
