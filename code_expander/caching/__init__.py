"""
Local RF2 snapshot caches
"""

from .rf2_cache import (
    Rf2Caches,
    Rf2DescriptionIndex,
    Rf2RefsetIndex,
    get_rf2_caches,
    reset_rf2_caches,
    resolve_rf2_path,
)

__all__ = [
    'Rf2Caches',
    'Rf2RefsetIndex',
    'Rf2DescriptionIndex',
    'get_rf2_caches',
    'reset_rf2_caches',
    'resolve_rf2_path',
]
