"""
Transform raw supplier rows into validated PartRecords
"""

from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional
from pydantic import ValidationError
import logging

from ingestion.transformers.columns import ColumnResolver
from ingestion.transformers.parsers import (
    detect_currency,
    is_on_order,
    parse_days,
    parse_price,
    parse_quantity,
    parse_weight,
)
from schemas.part import PartRecord

logger = logging.getLogger(__name__)


class RecordNormalizer:
    """
    Normalize rows from one file (or API endpoint) into PartRecords.

    Handles:
    - Header alias resolution (column mapping overrides first)
    - Price / quantity / weight coercion
    - Currency detection
    - Rejection of rows without a part number

    A row never raises: it is either turned into a PartRecord or counted in
    ``stats["rejected"]``.
    """

    def __init__(
        self,
        integration_id: int,
        file_name: str,
        integration_name: Optional[str] = None,
        column_mapping: Optional[Mapping[str, str]] = None,
        default_currency: str = "USD",
    ):
        self.integration_id = integration_id
        self.integration_name = integration_name
        self.file_name = file_name
        self.default_currency = default_currency
        self.resolver = ColumnResolver(column_mapping)
        self.stats = {"processed": 0, "accepted": 0, "rejected": 0}

    @classmethod
    def for_integration(cls, config, file_name: str) -> "RecordNormalizer":
        return cls(
            integration_id=config.id,
            integration_name=config.name,
            file_name=file_name,
            column_mapping=config.column_mapping,
            default_currency=config.default_currency,
        )

    def normalize(
        self,
        row: Mapping[str, Any],
        columns: Optional[Dict[str, List[str]]] = None
    ) -> Optional[PartRecord]:
        """
        Normalize one row.

        Args:
            row: Raw row keyed by source header
            columns: Pre-resolved columns for the row's headers (resolved
                from ``row.keys()`` when omitted)

        Returns:
            PartRecord, or None when the row was rejected
        """
        self.stats["processed"] += 1
        if columns is None:
            columns = self.resolver.resolve(row.keys())

        def value(field: str) -> str:
            return ColumnResolver.pick(row, columns.get(field, ()))

        part_number = value("part_number")
        if not part_number:
            self.stats["rejected"] += 1
            return None

        raw_price = value("price")
        weight, weight_unit = parse_weight(value("weight"))

        try:
            record = PartRecord(
                part_number=part_number,
                integration_id=self.integration_id,
                integration_name=self.integration_name,
                file_name=self.file_name,
                description=value("description") or None,
                brand=value("brand") or None,
                supplier=value("supplier") or None,
                origin=value("origin") or None,
                category=value("category") or None,
                price=parse_price(raw_price),
                currency=(
                    value("currency")
                    or detect_currency(raw_price)
                    or self.default_currency
                ),
                quantity=parse_quantity(value("quantity")),
                on_order=is_on_order(value("availability")),
                weight=weight,
                weight_unit=value("weight_unit") or weight_unit,
                delivery_days=parse_days(value("delivery_days")),
            )
        except ValidationError as e:
            self.stats["rejected"] += 1
            logger.debug(
                f"Rejected row {part_number!r} from {self.file_name}: "
                f"{e.error_count()} validation errors"
            )
            return None

        self.stats["accepted"] += 1
        return record

    def normalize_rows(
        self,
        rows: Iterable[Mapping[str, Any]],
        headers: Optional[List[str]] = None
    ) -> Iterator[PartRecord]:
        """
        Lazily normalize rows, skipping rejected ones.

        When all rows share the same headers (CSV), pass them once so column
        resolution runs a single time per file.
        """
        columns = self.resolver.resolve(headers) if headers is not None else None
        for row in rows:
            record = self.normalize(row, columns)
            if record is not None:
                yield record
