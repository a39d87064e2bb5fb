"""
Provider clients for hazard data and geocoding.
"""

from .base_models import DataSourceDescriptor, HazardReading, ProbeResult, RawSourceResult
from .base_source import BaseHazardSource, SourceClient
from .composite_source import FallbackGeocoder
from .fema_source import FEMANationalRiskIndexSource
from .geocoding_source import BaseGeocoder, CensusGeocoder, GeocodeResult, MapBoxGeocoder
from .premium_sources import ClimateCheckSource, FirstStreetSource
from .usgs_source import USGSEarthquakeSource

# Source name -> client class, used when building clients from configuration
HAZARD_SOURCE_CLASSES = {
    "FEMA_NRI": FEMANationalRiskIndexSource,
    "USGS_Earthquake": USGSEarthquakeSource,
    "FirstStreet": FirstStreetSource,
    "ClimateCheck": ClimateCheckSource,
}

GEOCODER_CLASSES = {
    "MapBox_Geocoding": MapBoxGeocoder,
    "Census_Geocoding": CensusGeocoder,
}

__all__ = [
    'DataSourceDescriptor', 'HazardReading', 'ProbeResult', 'RawSourceResult',
    'BaseHazardSource', 'SourceClient', 'FallbackGeocoder', 'FEMANationalRiskIndexSource',
    'BaseGeocoder', 'CensusGeocoder', 'GeocodeResult', 'MapBoxGeocoder',
    'ClimateCheckSource', 'FirstStreetSource', 'USGSEarthquakeSource',
    'HAZARD_SOURCE_CLASSES', 'GEOCODER_CLASSES',
]
