"""
Header alias table and column resolution.

Supplier exports name the same column in dozens of ways. The table below is
the ordered list of known aliases per logical field; matching is
case-insensitive and a caller-supplied column mapping always wins.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Tuple


# (logical field, aliases in priority order)
PART_FIELD_ALIASES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("part_number", (
        "Part Number", "PartNumber", "part_number", "Part No", "Part No.",
        "Part #", "PN", "P/N", "SKU", "Vendor Code", "vendor_code", "Item Number",
        "Item #", "Item No", "Product Code", "MPN", "Code",
    )),
    ("description", (
        "Description", "Product Description", "Part Description",
        "Item Description", "Title", "Name", "Product Name",
    )),
    ("supplier", (
        "Supplier", "Supplier Name", "Vendor", "Vendor Name", "Manufacturer", "MFR",
    )),
    ("brand", (
        "Brand", "Make", "Manufacturer", "Mfg",
    )),
    ("price", (
        "Price", "Unit Price", "Cost", "List Price", "Net Price",
        "PRICE,AED", "Price (AED)", "Price (USD)", "Price (EUR)",
    )),
    ("currency", (
        "Currency", "Currency Code", "Curr",
    )),
    ("quantity", (
        "Quantity", "Qty", "Stock", "Available", "Qty Available",
        "On Hand", "Stock Qty", "Inventory",
    )),
    ("availability", (
        "Availability", "Stock Status", "Status",
    )),
    ("origin", (
        "Origin", "Country of Origin", "COO", "Country", "Made In",
    )),
    ("weight", (
        "Weight", "Weight (kg)", "Weight KG", "Gross Weight", "Net Weight",
    )),
    ("weight_unit", (
        "Weight Unit", "Unit of Weight", "Weight UOM",
    )),
    ("delivery_days", (
        "Delivery Days", "Lead Time", "Lead Time (days)", "Lead Time Days",
        "Delivery Time", "Delivery",
    )),
    ("category", (
        "Category", "Product Group", "Group", "Class",
    )),
)

PART_FIELDS = tuple(field for field, _ in PART_FIELD_ALIASES)


def clean_header(header) -> str:
    """Trim whitespace and surrounding quotes from a header cell."""
    text = str(header).lstrip("\ufeff").strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        text = text[1:-1].strip()
    return text


class ColumnResolver:
    """
    Maps the headers actually present in a source to logical fields.

    For each field the result is the list of present headers to try, in
    priority order: override first, then the alias table. A row's value for
    the field is the first non-empty cell among them.
    """

    def __init__(
        self,
        overrides: Optional[Mapping[str, str]] = None,
        aliases: Tuple[Tuple[str, Tuple[str, ...]], ...] = PART_FIELD_ALIASES,
    ):
        self.overrides = {k: v for k, v in (overrides or {}).items() if v}
        self.aliases = aliases
        self._cache: Dict[Tuple[str, ...], Dict[str, List[str]]] = {}

    def candidates(self, field: str) -> List[str]:
        names = []
        if field in self.overrides:
            names.append(self.overrides[field])
        for f, alias_list in self.aliases:
            if f == field:
                names.extend(alias_list)
        return names

    def resolve(self, headers: Iterable[str]) -> Dict[str, List[str]]:
        """
        Args:
            headers: Header names exactly as they appear in the source

        Returns:
            {field: [present header, ...]} for fields with at least one match
        """
        headers = tuple(headers)
        cached = self._cache.get(headers)
        if cached is not None:
            return cached

        by_lower: Dict[str, str] = {}
        for header in headers:
            by_lower.setdefault(clean_header(header).lower(), header)

        resolved: Dict[str, List[str]] = {}
        for field in dict.fromkeys(f for f, _ in self.aliases):
            present = []
            for name in self.candidates(field):
                header = by_lower.get(name.strip().lower())
                if header is not None and header not in present:
                    present.append(header)
            if present:
                resolved[field] = present

        # JSON sources produce many distinct key sets; keep the cache small
        if len(self._cache) < 256:
            self._cache[headers] = resolved
        return resolved

    @staticmethod
    def pick(row: Mapping, headers: List[str]) -> str:
        """First non-empty value among ``headers`` in ``row``, cleaned."""
        for header in headers:
            value = row.get(header)
            if value is None:
                continue
            text = clean_header(value)
            if text:
                return text
        return ""
