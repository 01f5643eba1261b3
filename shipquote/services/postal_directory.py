"""
Postal code reference data for zone resolution and GST state lookup.

PincodeDirectory is the in-memory data source. It is preloaded at startup
(from a seed file, a database export, or a test fixture) and is read-only
afterwards. Lookups try the exact pincode first, then its 3-digit sorting
district prefix.
"""
import re
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Protocol

PINCODE_PATTERN = re.compile(r"^[1-9][0-9]{5}$")


def is_valid_pincode(pincode: str) -> bool:
    return bool(pincode) and bool(PINCODE_PATTERN.match(pincode))


# GST state codes
STATE_CODE_MAP: Dict[str, str] = {
    "JAMMU AND KASHMIR": "01",
    "HIMACHAL PRADESH": "02",
    "PUNJAB": "03",
    "CHANDIGARH": "04",
    "UTTARAKHAND": "05",
    "HARYANA": "06",
    "DELHI": "07",
    "RAJASTHAN": "08",
    "UTTAR PRADESH": "09",
    "BIHAR": "10",
    "SIKKIM": "11",
    "ARUNACHAL PRADESH": "12",
    "NAGALAND": "13",
    "MANIPUR": "14",
    "MIZORAM": "15",
    "TRIPURA": "16",
    "MEGHALAYA": "17",
    "ASSAM": "18",
    "WEST BENGAL": "19",
    "JHARKHAND": "20",
    "ODISHA": "21",
    "CHHATTISGARH": "22",
    "MADHYA PRADESH": "23",
    "GUJARAT": "24",
    "DAMAN AND DIU": "25",
    "DADRA AND NAGAR HAVELI": "26",
    "MAHARASHTRA": "27",
    "KARNATAKA": "29",
    "GOA": "30",
    "LAKSHADWEEP": "31",
    "KERALA": "32",
    "TAMIL NADU": "33",
    "PUDUCHERRY": "34",
    "ANDAMAN AND NICOBAR ISLANDS": "35",
    "TELANGANA": "36",
    "ANDHRA PRADESH": "37",
    "LADAKH": "38",
}

# Destinations priced as special-category (zone E) by Indian couriers
SPECIAL_CATEGORY_STATES = frozenset({
    "ARUNACHAL PRADESH", "ASSAM", "MANIPUR", "MEGHALAYA", "MIZORAM",
    "NAGALAND", "SIKKIM", "TRIPURA", "JAMMU AND KASHMIR", "LADAKH",
    "ANDAMAN AND NICOBAR ISLANDS", "LAKSHADWEEP",
})

REGION_BY_STATE: Dict[str, str] = {
    "JAMMU AND KASHMIR": "NORTH", "HIMACHAL PRADESH": "NORTH", "PUNJAB": "NORTH",
    "CHANDIGARH": "NORTH", "UTTARAKHAND": "NORTH", "HARYANA": "NORTH",
    "DELHI": "NORTH", "RAJASTHAN": "NORTH", "UTTAR PRADESH": "NORTH", "LADAKH": "NORTH",
    "BIHAR": "EAST", "WEST BENGAL": "EAST", "JHARKHAND": "EAST", "ODISHA": "EAST",
    "ANDAMAN AND NICOBAR ISLANDS": "EAST",
    "SIKKIM": "NORTHEAST", "ARUNACHAL PRADESH": "NORTHEAST", "NAGALAND": "NORTHEAST",
    "MANIPUR": "NORTHEAST", "MIZORAM": "NORTHEAST", "TRIPURA": "NORTHEAST",
    "MEGHALAYA": "NORTHEAST", "ASSAM": "NORTHEAST",
    "CHHATTISGARH": "CENTRAL", "MADHYA PRADESH": "CENTRAL",
    "GUJARAT": "WEST", "DAMAN AND DIU": "WEST", "DADRA AND NAGAR HAVELI": "WEST",
    "MAHARASHTRA": "WEST", "GOA": "WEST",
    "KARNATAKA": "SOUTH", "LAKSHADWEEP": "SOUTH", "KERALA": "SOUTH",
    "TAMIL NADU": "SOUTH", "PUDUCHERRY": "SOUTH", "TELANGANA": "SOUTH",
    "ANDHRA PRADESH": "SOUTH",
}

METRO_CITIES = frozenset({
    "DELHI", "NEW DELHI", "MUMBAI", "KOLKATA", "CHENNAI",
    "BENGALURU", "BANGALORE", "HYDERABAD", "AHMEDABAD", "PUNE",
})


@dataclass(frozen=True)
class PostalRecord:
    """Reference data for one pincode (or 3-digit prefix)."""
    city: str
    state: str
    is_remote: bool = False

    @property
    def city_key(self) -> str:
        return self.city.strip().upper()

    @property
    def state_key(self) -> str:
        return self.state.strip().upper()

    @property
    def state_code(self) -> Optional[str]:
        return STATE_CODE_MAP.get(self.state_key)

    @property
    def region(self) -> Optional[str]:
        return REGION_BY_STATE.get(self.state_key)

    @property
    def is_metro(self) -> bool:
        return self.city_key in METRO_CITIES

    @property
    def is_special_category(self) -> bool:
        return self.state_key in SPECIAL_CATEGORY_STATES

    def same_city(self, other: "PostalRecord") -> bool:
        """Prefix rows often carry no city; blanks never match."""
        return bool(self.city_key) and self.city_key == other.city_key

    def same_state(self, other: "PostalRecord") -> bool:
        return bool(self.state_key) and self.state_key == other.state_key


class PostalDataSource(Protocol):
    """Anything that can look up a pincode."""

    def lookup(self, pincode: str) -> Optional[PostalRecord]:
        ...


class PincodeDirectory:
    """In-memory pincode directory with 3-digit prefix fallback."""

    def __init__(
        self,
        records: Optional[Dict[str, PostalRecord]] = None,
        prefix_records: Optional[Dict[str, PostalRecord]] = None,
    ):
        self._records = dict(records or {})
        self._prefix_records = dict(prefix_records or {})

    @classmethod
    def from_rows(cls, rows: Iterable[dict]) -> "PincodeDirectory":
        """
        Build from rows like {"pincode": "110001", "city": ..., "state": ...,
        "is_remote": bool}. A 3-character "pincode" registers a prefix.
        """
        records: Dict[str, PostalRecord] = {}
        prefixes: Dict[str, PostalRecord] = {}
        for row in rows:
            key = str(row["pincode"]).strip()
            record = PostalRecord(
                city=row.get("city", ""),
                state=row.get("state", ""),
                is_remote=bool(row.get("is_remote", False)),
            )
            if len(key) == 3:
                prefixes[key] = record
            else:
                records[key] = record
        return cls(records, prefixes)

    def lookup(self, pincode: str) -> Optional[PostalRecord]:
        record = self._records.get(pincode)
        if record is None:
            record = self._prefix_records.get(pincode[:3])
        return record

    def __len__(self) -> int:
        return len(self._records) + len(self._prefix_records)
