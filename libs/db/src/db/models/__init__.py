"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the AFAS cache and category-mapping models used by
``afas_finance``.
"""

from .afas import AfasCategoryMapping, AfasDataCache, Base

__all__ = [
    "AfasCategoryMapping",
    "AfasDataCache",
    "Base",
]
