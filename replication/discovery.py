"""
Best-effort upstream schema discovery.

Reads the upstream metadata document, works out which Property fields the
listings table has no column for yet, and adds those columns. Metadata comes
in several layouts, so parsing is a chain of strategies tried in order with
a hard-coded field list as the last resort.

Discovery never drops or alters existing columns, and nothing in here is
allowed to stop replication: every failure is logged and absorbed.
"""

import logging
import re
from typing import Any, Iterable, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import ReplicationException, SchemaDiscoveryError
from models.listing import Listing
from replication.extractors.upstream_client import ENTITY_RESOURCE, UpstreamClient
from replication.transformers.listing_mapper import LISTING_FIELD_MAP
from schemas.replication import DiscoveredField

logger = logging.getLogger(__name__)

EDM_TYPE_MAP = {
    "Edm.String": "TEXT",
    "Edm.Int32": "INTEGER",
    "Edm.Int64": "BIGINT",
    "Edm.Decimal": "NUMERIC",
    "Edm.Double": "DOUBLE PRECISION",
    "Edm.Boolean": "BOOLEAN",
    "Edm.DateTimeOffset": "TIMESTAMP WITH TIME ZONE",
    "Edm.Date": "DATE",
    "Edm.Time": "TIME",
    "Collection(Edm.String)": "TEXT[]",
}

DEFAULT_FIELDS = (
    DiscoveredField(name="ListingKey", type="Edm.String", nullable=False),
    DiscoveredField(name="ModificationTimestamp", type="Edm.DateTimeOffset", nullable=False),
    DiscoveredField(name="MediaChangeTimestamp", type="Edm.DateTimeOffset"),
    DiscoveredField(name="PropertyType", type="Edm.String"),
    DiscoveredField(name="PropertySubType", type="Edm.String"),
    DiscoveredField(name="ListPrice", type="Edm.Decimal"),
    DiscoveredField(name="BedroomsTotal", type="Edm.Int32"),
    DiscoveredField(name="BathroomsTotalInteger", type="Edm.Int32"),
    DiscoveredField(name="City", type="Edm.String"),
    DiscoveredField(name="StateOrProvince", type="Edm.String"),
    DiscoveredField(name="PostalCode", type="Edm.String"),
    DiscoveredField(name="UnparsedAddress", type="Edm.String"),
    DiscoveredField(name="Latitude", type="Edm.Decimal"),
    DiscoveredField(name="Longitude", type="Edm.Decimal"),
    DiscoveredField(name="PublicRemarks", type="Edm.String"),
    DiscoveredField(name="StandardStatus", type="Edm.String"),
)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def to_column_name(field_name: str) -> str:
    """CamelCase upstream field name to snake_case column name"""
    return _CAMEL_BOUNDARY.sub("_", field_name.strip()).lower()


def _as_list(value: Any) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


# ============================================================================
# Parser strategies
# ============================================================================

class MetadataParser:
    """Extract Property fields from one metadata layout; None if not applicable"""

    name = "base"

    def parse(self, metadata: Any) -> Optional[List[DiscoveredField]]:
        raise NotImplementedError


class EdmxParser(MetadataParser):
    """OData v4 JSON: edmx:Edmx -> edmx:DataServices -> Schema -> EntityType"""

    name = "edmx"

    def parse(self, metadata):
        if not isinstance(metadata, dict):
            return None
        services = (metadata.get("edmx:Edmx") or {}).get("edmx:DataServices") or {}
        schemas = _as_list(services.get("Schema"))

        for schema in schemas:
            if not isinstance(schema, dict):
                continue
            for entity_type in _as_list(schema.get("EntityType")):
                if isinstance(entity_type, dict) and entity_type.get("Name") == ENTITY_RESOURCE:
                    fields = []
                    for prop in _as_list(entity_type.get("Property")):
                        if not isinstance(prop, dict) or not prop.get("Name"):
                            continue
                        nullable = prop.get("Nullable", "true")
                        fields.append(DiscoveredField(
                            name=prop["Name"],
                            type=prop.get("Type") or "Edm.String",
                            nullable=str(nullable).lower() != "false"
                        ))
                    return fields or None
        return None


class EntitySetsParser(MetadataParser):
    """Simplified layout: EntitySets[name=Property].entityType.properties"""

    name = "entity_sets"

    def parse(self, metadata):
        if not isinstance(metadata, dict) or not isinstance(metadata.get("EntitySets"), list):
            return None
        for entity_set in metadata["EntitySets"]:
            if not isinstance(entity_set, dict) or entity_set.get("name") != ENTITY_RESOURCE:
                continue
            properties = (entity_set.get("entityType") or {}).get("properties") or []
            fields = [
                DiscoveredField(
                    name=prop["name"],
                    type=prop.get("type") or "Edm.String",
                    nullable=prop.get("nullable") is not False
                )
                for prop in properties
                if isinstance(prop, dict) and prop.get("name")
            ]
            return fields or None
        return None


class SampleRecordParser(MetadataParser):
    """Infer field types from the first record of a collection response"""

    name = "sample_record"

    @staticmethod
    def infer_type(value: Any) -> str:
        if isinstance(value, bool):
            return "Edm.Boolean"
        if isinstance(value, int):
            return "Edm.Int32"
        if isinstance(value, float):
            return "Edm.Decimal"
        if isinstance(value, list):
            return "Collection(Edm.String)"
        return "Edm.String"

    def parse(self, metadata):
        if not isinstance(metadata, dict):
            return None
        values = metadata.get("value")
        if not isinstance(values, list) or not values or not isinstance(values[0], dict):
            return None
        return [
            DiscoveredField(name=key, type=self.infer_type(value), nullable=True)
            for key, value in values[0].items()
        ] or None


DEFAULT_PARSERS: Sequence[MetadataParser] = (EdmxParser(), EntitySetsParser(), SampleRecordParser())


def extract_fields(metadata: Any, parsers: Sequence[MetadataParser] = DEFAULT_PARSERS) -> List[DiscoveredField]:
    """Run the parser chain; fall back to DEFAULT_FIELDS when nothing matches"""
    for parser in parsers:
        try:
            fields = parser.parse(metadata)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Metadata parser '{parser.name}' failed: {e}")
            continue
        if fields:
            logger.info(f"Discovered {len(fields)} Property fields using '{parser.name}' layout")
            return fields

    logger.warning("Metadata format not recognized, using default field list")
    return list(DEFAULT_FIELDS)


def plan_column_additions(
    fields: Iterable[DiscoveredField],
    known_columns: Iterable[str],
    mapped_fields: Iterable[str] = ()
) -> List[str]:
    """
    ALTER TABLE statements for fields without a column.

    Skips known columns, fields already mapped to a differently named
    column, and names that do not form a safe SQL identifier.
    """
    known = set(known_columns)
    mapped = set(mapped_fields)
    statements: List[str] = []

    for field in fields:
        if not field.name or field.name in mapped:
            continue
        column = to_column_name(field.name)
        if column in known:
            continue
        if not _IDENTIFIER.match(column):
            logger.warning(f"Skipping field {field.name!r}: not a valid column name")
            continue

        sql_type = EDM_TYPE_MAP.get(field.type, "TEXT")
        statements.append(f"ALTER TABLE {Listing.__tablename__} ADD COLUMN IF NOT EXISTS {column} {sql_type} NULL")
        known.add(column)

    return statements


class SchemaDiscovery:
    """Fetch metadata and extend the listings table"""

    def __init__(self, client: UpstreamClient, session_factory: async_sessionmaker):
        self.client = client
        self.session_factory = session_factory

    @staticmethod
    def mapped_source_fields() -> List[str]:
        sources = ["ListingKey", "ModificationTimestamp"]
        for mapping in LISTING_FIELD_MAP:
            sources.extend(mapping.sources)
        return sources

    async def _apply(self, statements: List[str]):
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for statement in statements:
                        await session.execute(text(statement))
        except SQLAlchemyError as e:
            raise SchemaDiscoveryError(
                "Failed to apply schema additions",
                context={"statements": len(statements)},
                original_exception=e
            )

    async def run(self, apply: bool = True) -> List[str]:
        """
        Discover and (optionally) apply column additions.

        Returns:
            The planned statements; empty when discovery failed
        """
        try:
            try:
                metadata = await self.client.fetch_metadata()
            except ReplicationException as e:
                raise SchemaDiscoveryError(
                    "Failed to fetch upstream metadata",
                    original_exception=e
                )

            fields = extract_fields(metadata)
            statements = plan_column_additions(
                fields,
                Listing.__table__.c.keys(),
                self.mapped_source_fields()
            )

            if not statements:
                logger.info("Schema discovery found no new columns")
                return []

            logger.info(f"Schema discovery planned {len(statements)} column additions")
            if apply:
                await self._apply(statements)
                logger.info(f"Applied {len(statements)} column additions to {Listing.__tablename__}")
            return statements

        except SchemaDiscoveryError as e:
            logger.error(f"Schema discovery failed: {e}", extra={"error_context": e.to_dict()})
            return []
