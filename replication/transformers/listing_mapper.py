"""
Map upstream listing and media records to storage rows.

Mapping is table-driven: each FieldMapping names the upstream source
field(s), the target column and a parser. The tables are checked against
the ORM columns at import time so a typo fails loudly instead of silently
dropping data.

Field Mapping Strategy (listings):
- ListingKey -> id
- StateOrProvince -> province
- BuildingAreaTotal -> living_area
- BathroomsTotalInteger -> bathrooms_total
- WaterfrontFeatures -> water_features
- FrontageLength -> lot_frontage
- ListingContractDate -> list_date
- VirtualTourURLUnbranded, else VirtualTourURLBranded -> virtual_tour_url
- everything else: CamelCase -> snake_case of the same name
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.exceptions import MappingError
from models.listing import Listing
from models.media import ListingMedia
from replication.checkpoint import parse_timestamp


# ============================================================================
# Parsers
# ============================================================================

def parse_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, str):
        return value
    return str(value)


def parse_float(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def parse_int(value: Any) -> Optional[int]:
    """Integer parser; accepts numeric strings such as "10.0" """
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def parse_array(value: Any) -> Optional[List[str]]:
    """Non-empty list of strings, otherwise None"""
    if not isinstance(value, list) or not value:
        return None
    return [str(v) for v in value if v is not None]


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def parse_datetime(value: Any) -> Optional[datetime]:
    """ISO-8601 timestamp to naive UTC datetime"""
    if value is None or value == "":
        return None
    parsed = parse_timestamp(str(value))
    if parsed is None:
        return None
    return parsed.astimezone(timezone.utc).replace(tzinfo=None)


def parse_bool(value: Any) -> bool:
    """Only a literal JSON true counts as true"""
    return value is True


# ============================================================================
# Mapping tables
# ============================================================================

@dataclass(frozen=True)
class FieldMapping:
    sources: Tuple[str, ...]
    column: str
    parser: Callable[[Any], Any] = parse_text

    def extract(self, record: Dict[str, Any]) -> Any:
        for source in self.sources:
            value = self.parser(record.get(source))
            if value is not None and value != "":
                return value
        return self.parser(None)


def _m(source, column, parser=parse_text) -> FieldMapping:
    sources = (source,) if isinstance(source, str) else tuple(source)
    return FieldMapping(sources=sources, column=column, parser=parser)


LISTING_FIELD_MAP: Tuple[FieldMapping, ...] = (
    # Location data
    _m("UnparsedAddress", "unparsed_address"),
    _m("StreetNumber", "street_number"),
    _m("StreetName", "street_name"),
    _m("StreetSuffix", "street_suffix"),
    _m("UnitNumber", "unit_number"),
    _m("City", "city"),
    _m("StateOrProvince", "province"),
    _m("PostalCode", "postal_code"),
    _m("Country", "country"),
    _m("CountyOrParish", "county_or_parish"),

    # Geolocation
    _m("Latitude", "latitude", parse_float),
    _m("Longitude", "longitude", parse_float),
    _m("GeoSource", "geo_source"),

    # Property details
    _m("PropertyType", "property_type"),
    _m("PropertySubType", "property_sub_type"),
    _m("TransactionType", "transaction_type"),
    _m("ContractStatus", "contract_status"),
    _m("BuildingName", "building_name"),
    _m("YearBuilt", "year_built", parse_int),

    # Dimensions and areas
    _m("LotSizeArea", "lot_size_area", parse_float),
    _m("LotSizeUnits", "lot_size_units"),
    _m("BuildingAreaTotal", "living_area", parse_float),
    _m("AboveGradeFinishedArea", "above_grade_finished_area", parse_float),
    _m("BelowGradeFinishedArea", "below_grade_finished_area", parse_float),
    _m("LotWidth", "lot_width", parse_float),
    _m("LotDepth", "lot_depth", parse_float),
    _m("FrontageLength", "lot_frontage"),

    # Room counts
    _m("BedroomsTotal", "bedrooms_total", parse_int),
    _m("BedroomsAboveGrade", "bedrooms_above_grade", parse_int),
    _m("BedroomsBelowGrade", "bedrooms_below_grade", parse_int),
    _m("BathroomsTotalInteger", "bathrooms_total", parse_int),
    _m("KitchensTotal", "kitchens_total", parse_int),
    _m("RoomsTotal", "rooms_total", parse_int),

    # Features
    _m("InteriorFeatures", "interior_features", parse_array),
    _m("ExteriorFeatures", "exterior_features", parse_array),
    _m("ParkingFeatures", "parking_features", parse_array),
    _m("WaterfrontFeatures", "water_features", parse_array),

    # Commercial-specific
    _m("Zoning", "zoning"),
    _m("BusinessType", "business_type", parse_array),

    # Financial data
    _m("ListPrice", "list_price", parse_decimal),
    _m("OriginalListPrice", "original_list_price", parse_decimal),
    _m("ClosePrice", "close_price", parse_decimal),
    _m("AssociationFee", "association_fee", parse_decimal),
    _m("TaxAnnualAmount", "tax_annual_amount", parse_decimal),
    _m("TaxYear", "tax_year", parse_int),

    # Media
    _m(("VirtualTourURLUnbranded", "VirtualTourURLBranded"), "virtual_tour_url"),

    # Textual information
    _m("PublicRemarks", "public_remarks"),
    _m("PrivateRemarks", "private_remarks"),
    _m("TaxLegalDescription", "tax_legal_description"),
    _m("Directions", "directions"),

    # Important dates
    _m("ListingContractDate", "list_date", parse_date),
    _m("ExpirationDate", "expiration_date", parse_date),
    _m("CloseDate", "close_date", parse_date),

    # System fields
    _m("StandardStatus", "standard_status"),
    _m("OriginatingSystemID", "originating_system_id"),
    _m("OriginatingSystemName", "originating_system_name"),
)

MEDIA_FIELD_MAP: Tuple[FieldMapping, ...] = (
    _m("MediaType", "media_type"),
    _m("MediaCategory", "media_category"),
    _m("MediaURL", "media_url"),
    _m("MediaStatus", "media_status"),
    _m("ImageHeight", "image_height", parse_int),
    _m("ImageWidth", "image_width", parse_int),
    _m("PreferredPhotoYN", "is_preferred", parse_bool),
    _m("Order", "display_order", parse_int),
    _m("ShortDescription", "short_description"),
    _m("ModificationTimestamp", "modification_timestamp", parse_datetime),
)

# Columns written by every listing upsert, in addition to the mapped ones
LISTING_SYSTEM_COLUMNS = ("id", "modification_timestamp", "raw")

# Columns owned by the media reconciliation pass
LISTING_MEDIA_CACHE_COLUMNS = ("media_keys", "preferred_media_key")


def _validate_mapping(table, mappings: Tuple[FieldMapping, ...], extra: Tuple[str, ...] = ()):
    known = set(table.c.keys())
    columns = [m.column for m in mappings] + list(extra)
    unknown = sorted(set(columns) - known)
    if unknown:
        raise RuntimeError(f"Mapping for {table.name} references unknown columns: {unknown}")
    duplicates = sorted({c for c in columns if columns.count(c) > 1})
    if duplicates:
        raise RuntimeError(f"Mapping for {table.name} maps columns more than once: {duplicates}")


_validate_mapping(Listing.__table__, LISTING_FIELD_MAP, LISTING_SYSTEM_COLUMNS + LISTING_MEDIA_CACHE_COLUMNS)
_validate_mapping(ListingMedia.__table__, MEDIA_FIELD_MAP, ("media_key", "listing_id"))

LISTING_MAPPED_COLUMNS: Tuple[str, ...] = tuple(m.column for m in LISTING_FIELD_MAP)
MEDIA_MAPPED_COLUMNS: Tuple[str, ...] = tuple(m.column for m in MEDIA_FIELD_MAP)


# ============================================================================
# Record mapping
# ============================================================================

def map_listing(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map one upstream listing record to a listings row.

    Every mapped column is present (absent source -> None), plus id,
    modification_timestamp and the full payload in raw.

    Raises:
        MappingError: ListingKey missing or ModificationTimestamp unparseable
    """
    if not isinstance(record, dict):
        raise MappingError(
            "Listing record is not an object",
            context={"record_type": type(record).__name__}
        )

    listing_key = record.get("ListingKey")
    if listing_key is None or str(listing_key).strip() == "":
        raise MappingError("Listing record has no ListingKey", context={"field_name": "ListingKey"})

    modified = parse_datetime(record.get("ModificationTimestamp"))
    if modified is None:
        raise MappingError(
            "Listing record has no valid ModificationTimestamp",
            context={
                "record_key": listing_key,
                "field_name": "ModificationTimestamp",
                "field_value": record.get("ModificationTimestamp"),
            }
        )

    row = {mapping.column: mapping.extract(record) for mapping in LISTING_FIELD_MAP}
    row["id"] = str(listing_key)
    row["modification_timestamp"] = modified
    row["raw"] = record
    return row


def map_media(item: Dict[str, Any], listing_id: str) -> Dict[str, Any]:
    """
    Map one upstream media item to a listing_media row.

    Raises:
        MappingError: MediaKey missing
    """
    media_key = item.get("MediaKey") if isinstance(item, dict) else None
    if media_key is None or str(media_key).strip() == "":
        raise MappingError(
            "Media item has no MediaKey",
            context={"listing_id": listing_id, "field_name": "MediaKey"}
        )

    row = {mapping.column: mapping.extract(item) for mapping in MEDIA_FIELD_MAP}
    row["media_key"] = str(media_key)
    row["listing_id"] = listing_id
    return row
