"""
Live CMS quality metrics per facility
Four Provider Data datasets queried by CCN; each failure only blanks its own metric
"""

import asyncio
from typing import Any, Dict, Optional

from logging_config import get_logger
from .http_client import AsyncHttpClient
from .retry_config import RetryProfile
from .utils import normalize_ccn

logger = get_logger(__name__)

CMS_DATASET_URL = "https://data.cms.gov/data-api/v1/dataset/{dataset}/data"

# metric label -> (dataset id, source field)
LIVE_METRICS = {
    "Mobility at Discharge": ("7n6i-h54b", "mobility_percent"),
    "Discharge to Community Rate": ("wx4g-vf68", "discharge_to_community_percent"),
    "Fall with Major Injury Rate": ("pudx-xr8z", "fall_with_major_injury_percent"),
    "Healthcare-Associated Infection Rate": ("9v7z-2f5y", "hai_percent"),
}


class CMSQualityMetricsClient:
    def __init__(self, http: AsyncHttpClient):
        self.http = http

    async def _fetch_first_row(self, ccn: str, dataset: str) -> Optional[Dict[str, Any]]:
        rows = await self.http.get_json(
            CMS_DATASET_URL.format(dataset=dataset),
            params={"provider_number": ccn},
            profile=RetryProfile.CMS_METRICS,
            api_name="cms_quality",
        )
        if isinstance(rows, list) and rows:
            return rows[0]
        return None

    async def fetch_quality_metrics(self, ccn: Any) -> Dict[str, Any]:
        """
        Current values for the four live quality metrics.

        Returns:
            {label: value or None}; {} when the CCN is unusable
        """
        normalized = normalize_ccn(ccn)
        if not normalized:
            return {}

        labels = list(LIVE_METRICS)
        results = await asyncio.gather(
            *(self._fetch_first_row(normalized, LIVE_METRICS[label][0]) for label in labels),
            return_exceptions=True,
        )

        metrics: Dict[str, Any] = {}
        for label, result in zip(labels, results):
            if isinstance(result, BaseException):
                logger.warning(f"CMS metric '{label}' fetch failed: {result}", extra={"ccn": normalized})
                metrics[label] = None
                continue
            metrics[label] = (result or {}).get(LIVE_METRICS[label][1])
        return metrics
