import asyncio
import unittest
from unittest.mock import patch

from data_sources.error_handling import (
    APIError,
    Result,
    check_api_credentials,
    with_degraded_fallback,
)
from settings import Settings


class TestDegradedFallback(unittest.TestCase):
    """
    Unit test (no network): enrichment sub-calls that fail or stall must
    return the fallback and emit one structured enrichment_degraded record.
    """

    def test_success_passes_through(self):
        async def ok():
            return {"value": 1}

        with patch("data_sources.error_handling.log_error") as log_error:
            result = asyncio.run(with_degraded_fallback(ok(), {}, 1.0, "quality_metrics"))
        self.assertEqual(result, {"value": 1})
        log_error.assert_not_called()

    def test_failure_returns_fallback_and_logs(self):
        async def boom():
            raise APIError("status 503", "cms_quality", 503)

        with patch("data_sources.error_handling.log_error") as log_error:
            result = asyncio.run(with_degraded_fallback(boom(), {}, 1.0, "quality_metrics", ccn="055001"))
        self.assertEqual(result, {})
        log_error.assert_called_once()
        args, kwargs = log_error.call_args
        self.assertEqual(args[1], "enrichment_degraded")
        self.assertIn("status 503", args[2])
        self.assertEqual(kwargs["operation"], "quality_metrics")
        self.assertEqual(kwargs["ccn"], "055001")

    def test_timeout_returns_fallback(self):
        async def stall():
            await asyncio.sleep(1.0)
            return "late"

        with patch("data_sources.error_handling.log_error") as log_error:
            result = asyncio.run(with_degraded_fallback(stall(), None, 0.01, "review_snapshot"))
        self.assertIsNone(result)
        self.assertIn("timed out", log_error.call_args[0][2])


class TestResult(unittest.TestCase):
    def test_success_and_failure(self):
        ok = Result.success({"lat": 1.0, "lon": 2.0}, "census")
        self.assertTrue(ok.ok)
        self.assertEqual(ok.provider, "census")

        failed = Result.failure("ZERO_RESULTS", "google")
        self.assertFalse(failed.ok)
        self.assertEqual(failed.error, "ZERO_RESULTS")

    def test_empty_success_is_not_ok(self):
        self.assertFalse(Result.success(None).ok)


class TestCredentials(unittest.TestCase):
    def test_reports_configured_keys(self):
        creds = check_api_credentials(Settings(google_places_api_key="k"))
        self.assertTrue(creds["google_places"])
        self.assertFalse(creds["google_geocoding"])
        self.assertTrue(creds["nominatim"])


if __name__ == "__main__":
    unittest.main()
