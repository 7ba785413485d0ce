"""
Ranking Package
Metric resolution, sorting and the analysis engine for SNF referrals
"""

from . import analysis
from . import inference
from . import metrics
from . import sorting

__all__ = ['analysis', 'inference', 'metrics', 'sorting']
