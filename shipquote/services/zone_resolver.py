"""
Zone Resolver.

Maps an origin/destination pincode pair (optionally for one carrier) to a
zone. The most specific source wins:

1. Carrier-specific pincode range mappings
2. Carrier-agnostic pincode range mappings
3. State/region classification from the postal directory
4. UNCLASSIFIED, so a wildcard (ALL) zone rule can still price the shipment
"""
from dataclasses import dataclass
from typing import List, Optional
import logging

from shipquote.config import settings
from shipquote.core.exceptions import ErrorCode, ValidationError
from shipquote.schemas.rate_card import UNCLASSIFIED_ZONE, normalize_zone_key
from shipquote.services.cache_service import CacheService
from shipquote.services.postal_directory import (
    PostalDataSource, PostalRecord, is_valid_pincode,
)

logger = logging.getLogger(__name__)


class ZoneSource:
    CARRIER_RANGE = "carrier_range"
    RANGE = "range"
    STATE_CLASSIFICATION = "state_classification"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class ZoneRangeMapping:
    """Pincode range pair mapped to a zone, optionally for one carrier only."""
    origin_start: int
    origin_end: int
    destination_start: int
    destination_end: int
    zone: str
    carrier: Optional[str] = None

    def matches(self, origin: int, destination: int) -> bool:
        return (
            self.origin_start <= origin <= self.origin_end
            and self.destination_start <= destination <= self.destination_end
        )


class ZoneResolution:
    """Resolved zone plus the facts downstream pricing needs."""

    def __init__(
        self,
        zone: str,
        source: str,
        is_same_city: bool = False,
        is_same_state: bool = False,
        is_remote: bool = False,
        origin_state_code: Optional[str] = None,
        destination_state_code: Optional[str] = None,
    ):
        self.zone = zone
        self.source = source
        self.is_same_city = is_same_city
        self.is_same_state = is_same_state
        self.is_remote = is_remote
        self.origin_state_code = origin_state_code
        self.destination_state_code = destination_state_code

    def to_dict(self) -> dict:
        return {
            "zone": self.zone,
            "source": self.source,
            "is_same_city": self.is_same_city,
            "is_same_state": self.is_same_state,
            "is_remote": self.is_remote,
            "origin_state_code": self.origin_state_code,
            "destination_state_code": self.destination_state_code,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ZoneResolution":
        return cls(**data)


class ZoneResolver:
    """Read-only zone classification over a preloaded postal directory."""

    def __init__(
        self,
        directory: PostalDataSource,
        range_mappings: Optional[List[ZoneRangeMapping]] = None,
        zone_b_type: Optional[str] = None,
        cache: Optional[CacheService] = None,
    ):
        self.directory = directory
        self.range_mappings = list(range_mappings or [])
        self.zone_b_type = (zone_b_type or settings.ZONE_B_TYPE).lower()
        self.cache = cache

    @staticmethod
    def validate_pincode(pincode: str, field_name: str) -> None:
        if not is_valid_pincode(pincode):
            raise ValidationError(
                f"{field_name} must be a valid 6-digit pincode",
                code=ErrorCode.VAL_INVALID_PINCODE,
                details={"field": field_name, "value": pincode},
            )

    def classify(
        self,
        origin_pincode: str,
        destination_pincode: str,
        carrier: Optional[str] = None,
    ) -> ZoneResolution:
        """Resolve a zone without touching the cache."""
        self.validate_pincode(origin_pincode, "origin_pincode")
        self.validate_pincode(destination_pincode, "destination_pincode")

        origin = self.directory.lookup(origin_pincode)
        destination = self.directory.lookup(destination_pincode)
        facts = self._facts(origin, destination)

        mapped = self._match_range(int(origin_pincode), int(destination_pincode), carrier)
        if mapped is not None:
            mapping, source = mapped
            return ZoneResolution(zone=normalize_zone_key(mapping.zone), source=source, **facts)

        if origin is None or destination is None:
            logger.debug(
                f"No postal data for {origin_pincode}->{destination_pincode}, "
                f"zone {UNCLASSIFIED_ZONE}"
            )
            return ZoneResolution(zone=UNCLASSIFIED_ZONE, source=ZoneSource.UNCLASSIFIED, **facts)

        return ZoneResolution(
            zone=self._classify_by_state(origin, destination),
            source=ZoneSource.STATE_CLASSIFICATION,
            **facts,
        )

    async def resolve(
        self,
        origin_pincode: str,
        destination_pincode: str,
        carrier: Optional[str] = None,
    ) -> ZoneResolution:
        """Resolve a zone, consulting the cache when one is configured."""
        if self.cache is not None:
            cached = await self.cache.get_zone(origin_pincode, destination_pincode, carrier)
            if cached:
                return ZoneResolution.from_dict(cached)

        resolution = self.classify(origin_pincode, destination_pincode, carrier)

        if self.cache is not None:
            await self.cache.set_zone(
                origin_pincode, destination_pincode, carrier, resolution.to_dict()
            )
        return resolution

    # ============================================
    # HELPERS
    # ============================================

    def _match_range(self, origin: int, destination: int, carrier: Optional[str]):
        carrier_key = carrier.lower() if carrier else None
        generic = None
        for mapping in self.range_mappings:
            if not mapping.matches(origin, destination):
                continue
            if mapping.carrier is None:
                if generic is None:
                    generic = mapping
            elif carrier_key and mapping.carrier.lower() == carrier_key:
                return mapping, ZoneSource.CARRIER_RANGE
        if generic is not None:
            return generic, ZoneSource.RANGE
        return None

    @staticmethod
    def _facts(origin: Optional[PostalRecord], destination: Optional[PostalRecord]) -> dict:
        if origin is None or destination is None:
            return {
                "is_remote": bool(destination and destination.is_remote),
                "origin_state_code": origin.state_code if origin else None,
                "destination_state_code": destination.state_code if destination else None,
            }
        return {
            "is_same_city": origin.same_city(destination),
            "is_same_state": origin.same_state(destination),
            "is_remote": destination.is_remote,
            "origin_state_code": origin.state_code,
            "destination_state_code": destination.state_code,
        }

    def _classify_by_state(self, origin: PostalRecord, destination: PostalRecord) -> str:
        """
        zoneA within city, zoneB within state (or region), zoneE to or from
        special-category states, zoneC metro to metro, zoneD elsewhere.
        """
        if origin.same_city(destination):
            return "zoneA"
        if origin.same_state(destination):
            return "zoneB"
        if origin.is_special_category or destination.is_special_category:
            return "zoneE"
        if (
            self.zone_b_type == "region"
            and origin.region is not None
            and origin.region == destination.region
        ):
            return "zoneB"
        if origin.is_metro and destination.is_metro:
            return "zoneC"
        return "zoneD"
