"""
End-to-end tests: real source clients, cache, limiter and breakers behind
an httpx mock transport
"""
import httpx
import pytest

from climate_risk import ClimateRiskService, Settings, create_service
from climate_risk.circuit_breakers import CircuitState, InMemoryCircuitBreaker
from climate_risk.exceptions import InvalidInputError, NoDataAvailableError
from climate_risk.http_client import HTTPClient
from climate_risk.models import HazardType, RiskAssessment, RiskLevel

pytest_plugins = ('pytest_asyncio',)

FEMA = "www.fema.gov"
FIRST_STREET = "api.firststreet.org"
CLIMATE_CHECK = "api.climatecheck.com"
CENSUS = "geocoding.geo.census.gov"

TRACT = "22071001700"
GEOGRAPHIES = {
    "Census Tracts": [{"GEOID": TRACT}],
    "Counties": [{"NAME": "Orleans Parish"}],
    "States": [{"STUSAB": "LA"}],
}


def census_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/geographies/coordinates"):
        return httpx.Response(200, json={"result": {"geographies": GEOGRAPHIES}})
    if request.url.path.endswith("/geographies/onelineaddress"):
        return httpx.Response(200, json={"result": {"addressMatches": [{
            "matchedAddress": "1300 CANAL ST, NEW ORLEANS, LA, 70112",
            "coordinates": {"x": -90.0715, "y": 29.9511},
            "geographies": GEOGRAPHIES,
        }]}})
    return httpx.Response(200, json={"benchmarks": []})


def fema_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"NationalRiskIndex": [{
        "TRACTFIPS": TRACT, "RFLD_RISKS": 85.0, "RFLD_RISKR": "Very High",
    }]})


def first_street_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"data": {
        "flood": {"risk_score": 8.8, "confidence": 0.9, "projections": {"2050": 9.4}},
    }})


def make_settings(**overrides) -> Settings:
    values = dict(
        _env_file=None,
        ENABLED_SOURCES=["FEMA_NRI", "FirstStreet", "ClimateCheck", "Census_Geocoding"],
        FIRST_STREET_API_KEY="fs-key",
        CLIMATE_CHECK_API_KEY="cc-key",
        SOURCE_OVERRIDES={"FEMA_NRI": {"reliability_weight": 0.9}},
        HEALTH_CHECK_ENABLED=False,
        HTTP_MAX_RETRIES=1,
        SOURCE_CALL_TIMEOUT_SECONDS=5,
        ASSESSMENT_DEADLINE_SECONDS=5,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def healthy_router(router):
    router.add(FEMA, fema_handler)
    router.add(FIRST_STREET, first_street_handler)
    router.add(CLIMATE_CHECK, (503, {"error": "maintenance"}))
    router.add(CENSUS, census_handler)
    return router


def build_service(router, sleep_recorder, settings=None, **kwargs):
    settings = settings or make_settings()
    http_client = HTTPClient(max_retries=settings.HTTP_MAX_RETRIES, retry_delay=0.01,
                             transport=router.transport, sleep=sleep_recorder)
    return ClimateRiskService(settings, http_client=http_client, **kwargs)


@pytest.mark.asyncio
class TestAssessEndToEnd:
    """assess() across geocoding, fan-out and aggregation"""

    async def test_partial_results_with_weighted_flood_score(self, healthy_router, sleep_recorder):
        service = build_service(healthy_router, sleep_recorder)

        assessment = await service.assess((29.9511, -90.0715))

        assert isinstance(assessment, RiskAssessment)
        flood = assessment.hazards[HazardType.FLOOD]
        assert 86 <= flood.score <= 87
        assert flood.score not in (85.0, 88.0)
        assert flood.risk_level == RiskLevel.EXTREME
        assert flood.confidence == pytest.approx(0.6)
        assert assessment.sources_used == ["FEMA_NRI", "FirstStreet"]
        assert assessment.sources_failed == {"ClimateCheck": "source_unavailable"}
        assert assessment.location.census_tract == TRACT
        assert assessment.overall_score == flood.score

        await service.close()

    async def test_repeat_assessment_is_served_from_cache(self, healthy_router, sleep_recorder):
        service = build_service(healthy_router, sleep_recorder)

        first = await service.assess((29.9511, -90.0715))
        counts = {host: healthy_router.count(host) for host in (FEMA, FIRST_STREET, CENSUS)}
        hits_before = service.cache.get_stats()["hits"]
        second = await service.assess((29.9511, -90.0715))

        assert {host: healthy_router.count(host) for host in (FEMA, FIRST_STREET, CENSUS)} == counts
        assert service.cache.get_stats()["hits"] >= hits_before + 2
        assert second.hazards[HazardType.FLOOD].score == first.hazards[HazardType.FLOOD].score
        assert second.overall_confidence == first.overall_confidence

    async def test_address_input_is_geocoded(self, healthy_router, sleep_recorder):
        service = build_service(healthy_router, sleep_recorder)

        assessment = await service.assess("1300 Canal St, New Orleans, LA")

        assert assessment.location.geocode_source == "Census_Geocoding"
        assert assessment.location.address == "1300 Canal St, New Orleans, LA"
        fema_url = str(healthy_router.requests_to(FEMA)[0].url)
        assert TRACT in fema_url

    async def test_camel_case_options_and_projections(self, healthy_router, sleep_recorder):
        service = build_service(healthy_router, sleep_recorder)

        assessment = await service.assess(
            {"lat": 29.9511, "lon": -90.0715},
            {"sources": ["FirstStreet"], "includeProjections": True, "hazardFilter": ["flood"]},
        )

        flood = assessment.hazards[HazardType.FLOOD]
        assert assessment.sources_used == ["FirstStreet"]
        assert flood.projections == {"2050": 94.0}
        assert healthy_router.count(FEMA) == 0

    async def test_census_maintenance_page_degrades_to_remaining_sources(self, healthy_router, sleep_recorder):
        healthy_router.add(CENSUS, lambda request: httpx.Response(200, html="<html>maintenance</html>"))
        service = build_service(healthy_router, sleep_recorder)

        assessment = await service.assess({"lat": 29.9511, "lon": -90.0715})

        assert assessment.sources_used == ["FirstStreet"]
        assert assessment.sources_failed["FEMA_NRI"] == "invalid_input"
        assert healthy_router.count(FEMA) == 0
        assert assessment.hazards[HazardType.FLOOD].score == pytest.approx(88.0)

    async def test_all_sources_unavailable_raises_no_data(self, router, sleep_recorder):
        for host in (FEMA, FIRST_STREET, CLIMATE_CHECK, CENSUS):
            router.add(host, (503, {}))
        service = build_service(router, sleep_recorder)

        with pytest.raises(NoDataAvailableError) as exc_info:
            await service.assess((29.9511, -90.0715))

        assert set(exc_info.value.failures) == {"FEMA_NRI", "FirstStreet", "ClimateCheck"}
        assert service.stats["no_data"] == 1
        assert "failures" in exc_info.value.to_dict()

    async def test_open_circuit_stops_outbound_calls(self, router, sleep_recorder, clock, new_orleans):
        router.add(FEMA, (503, {}))
        settings = make_settings(ENABLED_SOURCES=["FEMA_NRI"], HTTP_MAX_RETRIES=0,
                                 CIRCUIT_FAILURE_THRESHOLD=2, CIRCUIT_COOLDOWN_SECONDS=60)
        breaker = InMemoryCircuitBreaker(clock=clock)
        service = build_service(router, sleep_recorder, settings, circuit_breaker=breaker)

        for _ in range(2):
            with pytest.raises(NoDataAvailableError):
                await service.assess(new_orleans)
        assert router.count(FEMA) == 2
        assert await breaker.get_state("FEMA_NRI") == CircuitState.OPEN

        with pytest.raises(NoDataAvailableError) as exc_info:
            await service.assess(new_orleans)
        assert router.count(FEMA) == 2
        assert exc_info.value.failures["FEMA_NRI"].error_type == "source_unavailable"

        clock.advance(60)
        router.add(FEMA, fema_handler)
        assessment = await service.assess(new_orleans)

        assert router.count(FEMA) == 3
        assert assessment.sources_used == ["FEMA_NRI"]
        assert await breaker.get_state("FEMA_NRI") == CircuitState.CLOSED

    async def test_bulk_assessment_returns_errors_in_place(self, healthy_router, sleep_recorder):
        service = build_service(healthy_router, sleep_recorder)

        results = await service.assess_many([(29.9511, -90.0715), (95.0, 0.0)], concurrency=2)

        assert isinstance(results[0], RiskAssessment)
        assert isinstance(results[1], InvalidInputError)


@pytest.mark.asyncio
class TestInvalidInput:
    """Malformed input is rejected before any source is called"""

    @pytest.mark.parametrize("target", [
        (95.0, 0.0),
        (0.0, 200.0),
        {"latitude": 1, "longitude": 2},
        (1.0, 2.0, 3.0),
        42,
        "   ",
    ])
    async def test_bad_targets(self, healthy_router, sleep_recorder, target):
        service = build_service(healthy_router, sleep_recorder)

        with pytest.raises(InvalidInputError):
            await service.assess(target)

        assert healthy_router.count(FEMA) == 0
        assert service.stats["invalid_input"] == 1

    @pytest.mark.parametrize("options", [
        {"sources": ["NotASource"]},
        {"sources": []},
        {"hazardFilter": ["volcano"]},
        {"unexpected": True},
    ])
    async def test_bad_options(self, healthy_router, sleep_recorder, options):
        service = build_service(healthy_router, sleep_recorder)

        with pytest.raises(InvalidInputError):
            await service.assess((29.9511, -90.0715), options)

        assert healthy_router.calls == []


@pytest.mark.asyncio
class TestHealthAndLifecycle:
    """health() snapshot, statistics and lifecycle"""

    async def test_health_snapshot_after_probes(self, healthy_router, sleep_recorder):
        service = build_service(healthy_router, sleep_recorder)

        before = service.health()
        assert before["overall"] == "unknown"
        assert before["per_source"]["FEMA_NRI"]["last_probe"] is None

        report = await service.check_health()

        assert set(report["per_source"]) == {"FEMA_NRI", "FirstStreet", "ClimateCheck", "Census_Geocoding"}
        assert report["per_source"]["FEMA_NRI"]["status"] == "healthy"
        assert report["per_source"]["FEMA_NRI"]["uptime_percent"] == 100.0
        assert report["per_source"]["ClimateCheck"]["status"] == "degraded"
        assert report["overall"] == "degraded"
        assert report["monitoring"] is False

    async def test_health_reports_circuit_states(self, router, sleep_recorder, clock, new_orleans):
        router.add(FEMA, (503, {}))
        settings = make_settings(ENABLED_SOURCES=["FEMA_NRI"], HTTP_MAX_RETRIES=0,
                                 CIRCUIT_FAILURE_THRESHOLD=2, CIRCUIT_COOLDOWN_SECONDS=60)
        breaker = InMemoryCircuitBreaker(clock=clock)
        service = build_service(router, sleep_recorder, settings, circuit_breaker=breaker)
        assert service.health()["circuit_breakers"]["FEMA_NRI"]["state"] == "CLOSED"

        for _ in range(2):
            with pytest.raises(NoDataAvailableError):
                await service.assess(new_orleans)

        circuit = service.health()["circuit_breakers"]["FEMA_NRI"]
        assert circuit["state"] == "OPEN"
        assert circuit["cooldown_remaining_seconds"] == 60
        assert circuit["times_opened"] == 1

    async def test_health_alert_removes_source_from_fan_out(self, healthy_router, sleep_recorder):
        settings = make_settings(HEALTH_FAILURE_THRESHOLD=1)
        service = build_service(healthy_router, sleep_recorder, settings)

        await service.check_health()
        calls_before = healthy_router.count(CLIMATE_CHECK)
        assessment = await service.assess((29.9511, -90.0715))

        assert healthy_router.count(CLIMATE_CHECK) == calls_before
        assert assessment.sources_failed == {"ClimateCheck": "source_unavailable"}
        assert service.manager.probe_unhealthy == ["ClimateCheck"]

    async def test_statistics_cover_every_component(self, healthy_router, sleep_recorder):
        service = build_service(healthy_router, sleep_recorder)
        await service.assess((29.9511, -90.0715))

        stats = await service.get_statistics()

        assert stats["service"]["successful"] == 1
        assert stats["sources"]["source_stats"]["FEMA_NRI"]["successes"] == 1
        assert stats["cache"]["sets"] >= 2
        assert stats["transport"]["total_requests"] >= 3
        assert stats["rate_limits"]["FirstStreet"]["daily_cost"] == pytest.approx(0.003)

    async def test_reset_circuit_validates_source(self, healthy_router, sleep_recorder):
        service = build_service(healthy_router, sleep_recorder)

        await service.reset_circuit("FEMA_NRI")
        with pytest.raises(InvalidInputError):
            await service.reset_circuit("Unknown")

    async def test_context_manager_starts_and_stops_monitoring(self, healthy_router, sleep_recorder):
        settings = make_settings(HEALTH_CHECK_ENABLED=True, HEALTH_CHECK_INTERVAL_SECONDS=3600)

        async with build_service(healthy_router, sleep_recorder, settings) as service:
            assert service.health()["monitoring"] is True

        assert service.health()["monitoring"] is False

    async def test_premium_sources_without_keys_are_disabled(self, healthy_router, sleep_recorder):
        settings = make_settings(FIRST_STREET_API_KEY=None, CLIMATE_CHECK_API_KEY=None)

        service = create_service(settings, http_client=HTTPClient(transport=healthy_router.transport))

        assert list(service.manager.sources) == ["FEMA_NRI"]
        assert [g.name for g in service.geocoder.geocoders] == ["Census_Geocoding"]

    async def test_redis_backend_selected_from_settings(self):
        settings = make_settings(CACHE_BACKEND="redis", REDIS_URL="redis://localhost:6379/0")

        service = ClimateRiskService(settings)

        assert service.cache.get_stats()["backend"] == "redis"
        assert service.cache.fallback is not None
