"""
Data Sources Package
API clients, caches and CMS extract loaders for the SNF referral service
"""

from . import cms_api
from . import cms_metrics
from . import directory
from . import geocoding
from . import historical_quality
from . import historical_regulatory
from . import place_resolver
from . import reviews

__all__ = [
    'cms_api',
    'cms_metrics',
    'directory',
    'geocoding',
    'historical_quality',
    'historical_regulatory',
    'place_resolver',
    'reviews',
]
