"""
Composite geocoding

Tries geocoders in order until one resolves the address, skipping any
whose circuit is open, and enriches coordinate-only locations with census
geography when a Census geocoder is available.
"""
import logging
from typing import Any, Dict, List, Optional

from ..circuit_breakers import InMemoryCircuitBreaker
from ..exceptions import (
    ClimateDataError,
    InvalidInputError,
    NoDataAvailableError,
    RateLimitedError,
    SourceUnavailableError,
)
from ..models import Location
from .geocoding_source import BaseGeocoder, CensusGeocoder

logger = logging.getLogger(__name__)


class FallbackGeocoder:
    """
    Geocoding chain with per-geocoder circuit breakers.

    Outcomes count against a geocoder's breaker the same way hazard source
    calls do: an answer (even "no match") is a success, unavailability and
    timeouts are failures, local rate limiting is neutral.
    """

    def __init__(self, geocoders: List[BaseGeocoder], circuit_breaker: InMemoryCircuitBreaker,
                 name: str = "geocoding"):
        self.geocoders = geocoders
        self.circuit_breaker = circuit_breaker
        self.name = name
        self.source_stats = {g.name: {"attempts": 0, "successes": 0} for g in geocoders}
        for geocoder in geocoders:
            circuit_breaker.register(geocoder.name, geocoder.descriptor.circuit_breaker)

        logger.info(f"FallbackGeocoder '{name}' initialized with {len(geocoders)} geocoders: "
                    f"{[g.name for g in geocoders]}")

    @property
    def census(self) -> Optional[CensusGeocoder]:
        for geocoder in self.geocoders:
            if isinstance(geocoder, CensusGeocoder):
                return geocoder
        return None

    async def resolve_address(self, address: str) -> Location:
        """Geocode an address into a Location, trying geocoders in order

        Raises:
            InvalidInputError: the address is blank or no geocoder could match it
            NoDataAvailableError: no geocoder was able to answer
        """
        if not address or not address.strip():
            raise InvalidInputError("Address must not be empty", field="address")
        if not self.geocoders:
            raise NoDataAvailableError("No geocoding sources configured")

        failures: Dict[str, ClimateDataError] = {}
        no_match = False

        for geocoder in self.geocoders:
            if not await self.circuit_breaker.allow_request(geocoder.name):
                failures[geocoder.name] = SourceUnavailableError(
                    f"Circuit open for {geocoder.name}", source_id=geocoder.name
                )
                continue

            self.source_stats[geocoder.name]["attempts"] += 1
            try:
                result = await geocoder.geocode(address)
            except InvalidInputError as e:
                await self.circuit_breaker.record_success(geocoder.name)
                failures[geocoder.name] = e
                no_match = True
                continue
            except RateLimitedError as e:
                await self.circuit_breaker.release_trial(geocoder.name)
                failures[geocoder.name] = e
                continue
            except ClimateDataError as e:
                await self.circuit_breaker.record_failure(geocoder.name)
                failures[geocoder.name] = e
                logger.warning(f"Geocoder {geocoder.name} failed: {e.message}")
                continue
            except Exception as e:
                logger.exception(f"Unexpected error from geocoder {geocoder.name}")
                await self.circuit_breaker.record_failure(geocoder.name)
                failures[geocoder.name] = SourceUnavailableError(
                    f"{geocoder.name} failed unexpectedly: {type(e).__name__}", source_id=geocoder.name
                )
                continue

            await self.circuit_breaker.record_success(geocoder.name)
            self.source_stats[geocoder.name]["successes"] += 1
            location = result.to_location(address)
            if location.census_tract is None:
                location = await self.enrich(location)
            return location

        if no_match:
            raise InvalidInputError("Address could not be geocoded", field="address")
        raise NoDataAvailableError("All geocoding sources are unavailable", failures=failures)

    async def enrich(self, location: Location) -> Location:
        """Best-effort census geography for a location; returns it unchanged on failure"""
        census = self.census
        if census is None or location.census_tract:
            return location
        if not await self.circuit_breaker.allow_request(census.name):
            return location

        try:
            geography = await census.lookup_geography(location.point)
        except RateLimitedError:
            await self.circuit_breaker.release_trial(census.name)
            return location
        except InvalidInputError:
            await self.circuit_breaker.record_success(census.name)
            return location
        except ClimateDataError as e:
            await self.circuit_breaker.record_failure(census.name)
            logger.warning(f"Census geography lookup failed: {e.message}")
            return location
        except Exception:
            logger.exception("Census geography lookup raised unexpectedly")
            await self.circuit_breaker.record_failure(census.name)
            return location

        await self.circuit_breaker.record_success(census.name)
        return location.model_copy(update={
            "census_tract": geography.census_tract,
            "state_code": location.state_code or geography.state_code,
            "county_name": location.county_name or geography.county_name,
        })

    def get_statistics(self) -> Dict[str, Any]:
        return {"chain": self.name, "geocoders": dict(self.source_stats)}
