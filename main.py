from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import asyncio
import time
import uuid
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from logging_config import get_logger, setup_logging, log_error
from settings import Settings

from data_sources.cache import EnrichmentCache, SingleFlight, clear_cache, get_cache_stats
from data_sources.cms_api import CMSDirectoryClient
from data_sources.cms_metrics import CMSQualityMetricsClient
from data_sources.directory import load_hospitals, load_place_id_seed, load_snfs
from data_sources.error_handling import (
    APIError,
    GeocodingFailedError,
    HospitalNotFoundError,
    check_api_credentials,
)
from data_sources.geocoding import HospitalGeocoder, build_providers
from data_sources.historical_quality import build_quality_timelines
from data_sources.historical_regulatory import build_regulatory_timelines
from data_sources.http_client import AsyncHttpClient
from data_sources.place_resolver import PlaceIdResolver
from data_sources.places_api import PlacesClient
from data_sources.reviews import ReviewSnapshotService
from data_sources.store import KeyValueStore, build_store
from ranking.analysis import AnalysisEngine
from ranking.inference import compose_reply, infer_sort

logger = get_logger(__name__)

VERSION = "1.0.0"
CACHE_NAMESPACES = ("geocode", "place_ids", "reviews")


@dataclass
class AppContext:
    """Everything built once at boot and shared by request handlers."""
    settings: Settings
    engine: AnalysisEngine
    caches: Dict[str, EnrichmentCache] = field(default_factory=dict)
    store: Optional[KeyValueStore] = None
    http: Optional[AsyncHttpClient] = None
    directory_client: Optional[CMSDirectoryClient] = None

    async def close(self):
        if self.http is not None:
            await self.http.close()
        if self.store is not None:
            self.store.close()


async def build_context(settings: Settings) -> AppContext:
    """Load directories and timelines, then wire caches and clients into the engine."""
    start = time.time()
    store = build_store(settings.redis_url, settings.cache_db_path)
    caches = {name: EnrichmentCache(store, name) for name in CACHE_NAMESPACES}
    http = AsyncHttpClient(user_agent=settings.nominatim_user_agent)
    directory_client = CMSDirectoryClient(
        settings.cms_base_url,
        settings.cms_hospital_dataset,
        settings.cms_snf_dataset,
        api_token=settings.cms_api_token,
    )

    hospitals, snfs, quality, regulatory, seed = await asyncio.gather(
        asyncio.to_thread(load_hospitals, store, directory_client, settings.hospitals_csv_path,
                          settings.use_local_hospital_fallback, settings.cms_force_refresh),
        asyncio.to_thread(load_snfs, store, directory_client, settings.snfs_csv_path,
                          settings.use_local_snf_fallback, settings.cms_force_refresh),
        asyncio.to_thread(build_quality_timelines, settings.historical_years, settings.historical_dir),
        asyncio.to_thread(build_regulatory_timelines, settings.historical_years, settings.historical_dir),
        asyncio.to_thread(load_place_id_seed, settings.place_ids_seed_path),
    )

    places = PlacesClient(http, settings.google_places_api_key)
    geocoder = HospitalGeocoder(
        caches["geocode"],
        build_providers(settings.geocoder_order, http, settings.google_maps_key,
                        settings.nominatim_user_agent, settings.geocoder_timeout_seconds),
        single_flight=SingleFlight(),
    )
    engine = AnalysisEngine(
        hospitals,
        snfs,
        geocoder=geocoder,
        quality_timelines=quality,
        regulatory_timelines=regulatory,
        metrics_client=CMSQualityMetricsClient(http),
        place_resolver=PlaceIdResolver(caches["place_ids"], places, seed=seed,
                                       max_age_days=settings.place_id_max_age_days,
                                       single_flight=SingleFlight(),
                                       fetch_timeout=settings.enrichment_timeout_seconds),
        review_service=ReviewSnapshotService(caches["reviews"], places,
                                             max_age_days=settings.reviews_max_age_days,
                                             single_flight=SingleFlight(),
                                             fetch_timeout=settings.enrichment_timeout_seconds),
        enrichment_timeout=settings.enrichment_timeout_seconds,
    )

    logger.info(
        f"Loaded {len(hospitals)} hospitals, {len(snfs)} SNFs, {len(quality)} quality timelines, "
        f"{len(regulatory)} regulatory timelines, {len(seed)} seeded place ids "
        f"in {time.time() - start:.1f}s"
    )
    return AppContext(settings=settings, engine=engine, caches=caches, store=store,
                      http=http, directory_client=directory_client)


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hospital_name: Optional[str] = Field(None, alias="hospitalName")
    mode: Optional[str] = None
    radius_miles: Optional[float] = Field(None, alias="radiusMiles")
    limit: Optional[int] = None
    sort_by: Optional[str] = Field(None, alias="sortBy")
    order: Optional[str] = None


class ChatRequest(AnalyzeRequest):
    question: Optional[str] = None
    history: Optional[List[Dict[str, Any]]] = None


def _request_id(request: Request) -> str:
    return request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]


async def _run_engine(ctx: AppContext, method: str, request_id: str, hospital_name: Optional[str],
                      **options) -> Dict[str, Any]:
    """Call the engine and map domain errors to HTTP errors."""
    if not hospital_name or not hospital_name.strip():
        raise HTTPException(status_code=400, detail="hospitalName required")
    try:
        return await getattr(ctx.engine, method)(hospital_name, request_id=request_id, **options)
    except HospitalNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GeocodingFailedError as e:
        log_error(logger, "geocoding_failed", str(e), request_id=request_id, hospital=hospital_name)
        raise HTTPException(status_code=502, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def create_app(context: Optional[AppContext] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI app.

    With ``context`` the app uses it as-is (tests); otherwise the context is
    built from ``settings`` (or the environment) at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if app.state.context is None:
            resolved = settings or Settings.from_env()
            setup_logging(resolved.log_level, resolved.log_json)
            owned = await build_context(resolved)
            app.state.context = owned
        try:
            yield
        finally:
            if owned is not None:
                await owned.close()
                app.state.context = None

    app = FastAPI(
        title="SNF Referral API",
        description="Ranks skilled nursing facilities near a hospital and enriches them with CMS quality, regulatory and review history",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_context() -> AppContext:
        ctx = app.state.context
        if ctx is None:
            raise HTTPException(status_code=503, detail="Service is still loading")
        return ctx

    @app.get("/")
    def root():
        """Health check endpoint."""
        return {
            "service": "SNF Referral API",
            "status": "running",
            "version": VERSION,
            "endpoints": {
                "analyze": "POST /api/analyze",
                "view": "/api/chat/view?hospitalName=NAME",
                "chat": "POST /api/chat",
                "hospital_search": "/api/hospitals/search?q=QUERY",
                "docs": "/docs",
            },
        }

    @app.post("/api/analyze")
    async def analyze(body: AnalyzeRequest, request: Request):
        ctx = get_context()
        request_id = _request_id(request)
        result = await _run_engine(
            ctx, "analyze", request_id, body.hospital_name,
            mode=body.mode, radius_miles=body.radius_miles, limit=body.limit,
            sort_by=body.sort_by, order=body.order,
        )
        logger.info(
            f"Analyzed {result['hospital']['name']}: {result['totalWithinRadius']} within radius, "
            f"returning {len(result['facilities'])}",
            extra={"request_id": request_id, "hospital": result["hospital"]["name"]},
        )
        return result

    @app.get("/api/chat/view")
    async def chat_view(request: Request,
                        hospital_name: Optional[str] = Query(None, alias="hospitalName"),
                        mode: Optional[str] = None,
                        radius_miles: Optional[float] = Query(None, alias="radiusMiles"),
                        limit: Optional[int] = None,
                        sort_by: Optional[str] = Query(None, alias="sortBy"),
                        order: Optional[str] = None):
        """Sorted view of the ranking without any free-text handling."""
        ctx = get_context()
        return await _run_engine(
            ctx, "view", _request_id(request), hospital_name,
            mode=mode, radius_miles=radius_miles, limit=limit, sort_by=sort_by, order=order,
        )

    @app.post("/api/chat")
    async def chat(body: ChatRequest, request: Request):
        ctx = get_context()
        if not body.hospital_name or not body.question:
            raise HTTPException(status_code=400, detail="hospitalName and question required")

        sort_by, order = infer_sort(body.question, body.sort_by, body.order)
        analysis = await _run_engine(
            ctx, "analyze", _request_id(request), body.hospital_name,
            mode=body.mode, radius_miles=body.radius_miles, limit=body.limit,
            sort_by=sort_by, order=order,
        )
        reply = compose_reply(body.question, analysis, body.hospital_name, sort_by, order)
        return {
            "reply": reply["reply"],
            "reply_kind": reply["kind"],
            "hospital": analysis["hospital"],
            "facilities": analysis["facilities"],
        }

    @app.get("/api/hospitals/search")
    def hospital_search(q: str = ""):
        ctx = get_context()
        return [
            {
                "hospital_name": h.get("hospital_name"),
                "city": h.get("city"),
                "state": h.get("state"),
                "latitude": h.get("latitude"),
                "longitude": h.get("longitude"),
            }
            for h in ctx.engine.search_hospitals(q)
        ]

    @app.get("/api/hospitals/by-name")
    def hospital_by_name(name: str = ""):
        ctx = get_context()
        found = ctx.engine.hospital_by_name(name)
        if found is None:
            raise HTTPException(status_code=404, detail="Not found")
        return found

    @app.get("/api/hospitals/cms/search")
    async def hospital_cms_search(q: str = "", limit: Optional[int] = None):
        """Live search against the CMS hospital catalog."""
        ctx = get_context()
        if not q.strip() or ctx.directory_client is None:
            return []
        try:
            return await asyncio.to_thread(ctx.directory_client.search_hospitals_by_name, q, limit or 20)
        except APIError as e:
            log_error(logger, "api_error", f"CMS hospital search failed: {e}", api_name=e.api_name)
            raise HTTPException(status_code=502, detail="CMS hospital search failed")

    @app.get("/health")
    def health_check():
        """Detailed health check with API credential validation."""
        ctx = get_context()
        credentials = check_api_credentials(ctx.settings)
        checks = {
            "google_places": "✅ Places API key configured" if credentials["google_places"] else "⚠️ Places API key missing - reviews served from cache only",
            "google_geocoding": "✅ Geocoding key configured" if credentials["google_geocoding"] else "⚠️ Google geocoding disabled - Nominatim/Census fallback",
            "nominatim": "✅ Nominatim (no credentials required)",
            "census_geocoder": "✅ Census geocoder (no credentials required)",
            "cms": "✅ CMS Provider Data (token optional)",
        }
        return {
            "status": "healthy",
            "checks": checks,
            "geocoder_order": ctx.settings.geocoder_order,
            "hospitals_loaded": len(ctx.engine.hospitals),
            "snfs_loaded": len(ctx.engine.snfs),
            "quality_timelines": len(ctx.engine.quality_timelines),
            "regulatory_timelines": len(ctx.engine.regulatory_timelines),
            "cache_stats": get_cache_stats(ctx.caches),
            "version": VERSION,
        }

    @app.post("/cache/clear")
    def clear_cache_endpoint(cache_type: Optional[str] = None):
        """Clear cache entries."""
        ctx = get_context()
        if cache_type and cache_type not in ctx.caches:
            raise HTTPException(status_code=400, detail=f"Unknown cache type: {cache_type}")
        cleared = clear_cache(ctx.caches, cache_type)
        return {
            "status": "success",
            "message": f"Cache cleared for {cache_type or 'all'}",
            "namespaces_cleared": cleared,
        }

    @app.get("/cache/stats")
    def cache_stats_endpoint():
        """Get cache statistics."""
        ctx = get_context()
        return {
            "status": "success",
            "cache_stats": get_cache_stats(ctx.caches),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
