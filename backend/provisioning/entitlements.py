"""
Entitlement Normalizer — canonical entitlements from heterogeneous PS payloads.

Payload shapes have drifted across historical submissions:
  - properties.provisioningDetail.entitlements.{model,data,app}Entitlements  (current)
  - {model,data,app,product}Entitlements at the payload root               (legacy)
  - entitlements.{model,data,app}Entitlements                              (alternate)

Each location is an accessor strategy tried in order; the first one that
yields a non-empty entitlements block wins. Within a block, entry attributes
are read through alias lists (first alias present wins) to tolerate the
casing drift between payload versions.

Parsing never raises: absent or malformed payloads produce an empty result
carrying a `parse_error` note.
"""

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()


class EntitlementCategory(str, Enum):
    MODEL = "Model"
    DATA = "Data"
    APP = "App"


@dataclass(frozen=True)
class Entitlement:
    product_code: str
    product_name: str | None
    category: EntitlementCategory
    package_name: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    quantity: float | None = None


# ── Accessor strategies ────────────────────────────────────────────────────

EntitlementsBlock = dict[str, Any]

BUCKET_KEYS: dict[EntitlementCategory, tuple[str, ...]] = {
    # productEntitlements is the pre-2023 name for model grants
    EntitlementCategory.MODEL: ("modelEntitlements", "productEntitlements"),
    EntitlementCategory.DATA: ("dataEntitlements",),
    EntitlementCategory.APP: ("appEntitlements",),
}
_ALL_BUCKET_KEYS = tuple(key for keys in BUCKET_KEYS.values() for key in keys)


def _dig(payload: Any, *path: str) -> Any:
    node = payload
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _as_block(node: Any) -> EntitlementsBlock | None:
    if not isinstance(node, dict):
        return None
    block = {key: node[key] for key in _ALL_BUCKET_KEYS if key in node}
    return block or None


def provisioning_detail_block(payload: Any) -> EntitlementsBlock | None:
    return _as_block(_dig(payload, "properties", "provisioningDetail", "entitlements"))


def root_block(payload: Any) -> EntitlementsBlock | None:
    return _as_block(payload)


def entitlements_key_block(payload: Any) -> EntitlementsBlock | None:
    return _as_block(_dig(payload, "entitlements"))


BLOCK_ACCESSORS: list[tuple[str, Callable[[Any], EntitlementsBlock | None]]] = [
    ("provisioning_detail", provisioning_detail_block),
    ("root", root_block),
    ("entitlements_key", entitlements_key_block),
]

TENANT_NAME_PATHS: list[tuple[str, ...]] = [
    ("properties", "provisioningDetail", "tenantName"),
    ("properties", "tenantName"),
    ("preferredSubdomain1",),
    ("preferredSubdomain2",),
    ("properties", "preferredSubdomain1"),
    ("properties", "preferredSubdomain2"),
    ("tenantName",),
]

REGION_PATHS: list[tuple[str, ...]] = [
    ("properties", "provisioningDetail", "region"),
    ("properties", "region"),
    ("region",),
]


# ── Field aliases ─────────────────────────────────────────────────────────

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "product_code": ("productCode", "ProductCode", "product_code", "code", "id"),
    "product_name": ("name", "productName", "ProductName", "product_name"),
    "package_name": ("packageName", "PackageName", "package_name"),
    "start_date": ("startDate", "StartDate", "start_date"),
    "end_date": ("endDate", "EndDate", "end_date"),
    "quantity": ("quantity", "Quantity", "qty"),
}


def _first_alias(entry: dict[str, Any], attribute: str) -> Any:
    for alias in FIELD_ALIASES[attribute]:
        value = entry.get(alias)
        if value not in (None, ""):
            return value
    return None


def parse_entitlement_date(value: Any) -> date | None:
    """Parse `YYYY-MM-DD` or an ISO timestamp; anything else is treated as absent."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _parse_quantity(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def map_entry(entry: Any, category: EntitlementCategory) -> Entitlement | None:
    """Map one raw entitlement entry; entries without any product identity are dropped."""
    if not isinstance(entry, dict):
        return None

    code = _first_alias(entry, "product_code")
    name = _first_alias(entry, "product_name")
    if code is None and category is not EntitlementCategory.MODEL:
        # Data and app grants are sometimes keyed by name only
        code = name
    if code is None:
        return None

    return Entitlement(
        product_code=str(code),
        product_name=str(name) if name is not None else str(code),
        category=category,
        package_name=_first_alias(entry, "package_name"),
        start_date=parse_entitlement_date(_first_alias(entry, "start_date")),
        end_date=parse_entitlement_date(_first_alias(entry, "end_date")),
        quantity=_parse_quantity(_first_alias(entry, "quantity")),
    )


# ── Parse result ──────────────────────────────────────────────────────────

EMPTY_PAYLOAD = "empty payload"


@dataclass
class PayloadParseResult:
    entitlements: list[Entitlement] = field(default_factory=list)
    tenant_name: str | None = None
    region: str | None = None
    source: str | None = None
    parse_error: str | None = None

    @property
    def has_details(self) -> bool:
        return bool(self.entitlements)

    @property
    def failed(self) -> bool:
        """True for malformed payloads; an absent payload is not a failure."""
        return self.parse_error is not None and self.parse_error != EMPTY_PAYLOAD

    @property
    def product_codes(self) -> set[str]:
        return {e.product_code for e in self.entitlements}

    def by_category(self, category: EntitlementCategory) -> list[Entitlement]:
        return [e for e in self.entitlements if e.category is category]

    @property
    def summary(self) -> str:
        if self.parse_error == EMPTY_PAYLOAD:
            return "No entitlements data"
        if self.parse_error:
            return "Invalid JSON data"

        parts = []
        models = self.by_category(EntitlementCategory.MODEL)
        if models:
            parts.append(f"Models: {', '.join(e.product_code for e in models)}")
        data = self.by_category(EntitlementCategory.DATA)
        if data:
            parts.append(f"{len(data)} Data")
        apps = self.by_category(EntitlementCategory.APP)
        if apps:
            parts.append(f"{len(apps)} App{'s' if len(apps) != 1 else ''}")
        return ", ".join(parts) if parts else "No entitlements"


def _first_string(payload: Any, paths: list[tuple[str, ...]]) -> str | None:
    for path in paths:
        value = _dig(payload, *path)
        if isinstance(value, str) and value:
            return value
    return None


def parse_payload(raw_payload: str | None) -> PayloadParseResult:
    """Parse a raw payload into entitlements plus tenant/region metadata. Never raises."""
    if raw_payload is None or not raw_payload.strip():
        return PayloadParseResult(parse_error=EMPTY_PAYLOAD)

    try:
        payload = json.loads(raw_payload)
    except (TypeError, ValueError) as exc:
        logger.warning("entitlements.parse_failed", error=str(exc))
        return PayloadParseResult(parse_error=f"invalid JSON: {exc}")

    if not isinstance(payload, dict):
        logger.warning("entitlements.parse_failed", error="payload is not an object")
        return PayloadParseResult(parse_error="payload is not an object")

    result = PayloadParseResult(
        tenant_name=_first_string(payload, TENANT_NAME_PATHS),
        region=_first_string(payload, REGION_PATHS),
    )

    for source, accessor in BLOCK_ACCESSORS:
        block = accessor(payload)
        if block is None:
            continue
        result.source = source
        for category, keys in BUCKET_KEYS.items():
            for key in keys:
                entries = block.get(key)
                if not isinstance(entries, list):
                    continue
                for entry in entries:
                    entitlement = map_entry(entry, category)
                    if entitlement is not None:
                        result.entitlements.append(entitlement)
        break

    return result


def normalize(raw_payload: str | None) -> list[Entitlement]:
    """Canonical entitlement list for a payload; empty on absent or malformed input."""
    return parse_payload(raw_payload).entitlements


ProductKey = tuple[EntitlementCategory, str]


def _supersedes(current: Entitlement | None, ent: Entitlement) -> bool:
    if current is None:
        return True
    return ent.end_date is not None and (current.end_date is None or ent.end_date > current.end_date)


def latest_by_product(entitlements: list[Entitlement]) -> dict[ProductKey, Entitlement]:
    """
    Collapse line items sharing a category and product code to the one with
    the latest end date.

    Dated line items win over undated ones so a product with any expiring line
    still has an expiration to reason about. A code granted as both Model and
    Data keeps one entry per category.
    """
    latest: dict[ProductKey, Entitlement] = {}
    for ent in entitlements:
        key = (ent.category, ent.product_code)
        if _supersedes(latest.get(key), ent):
            latest[key] = ent
    return latest


def latest_by_code(entitlements: list[Entitlement]) -> dict[str, Entitlement]:
    """The latest-ending grant per product code, whatever its category."""
    latest: dict[str, Entitlement] = {}
    for ent in entitlements:
        if _supersedes(latest.get(ent.product_code), ent):
            latest[ent.product_code] = ent
    return latest


def find_removed_products(previous: list[Entitlement], current: list[Entitlement]) -> dict[str, list[Entitlement]]:
    """
    Products present in `previous` but absent from `current`, per category.

    Returns {"Model": [...], "Data": [...], "App": [...]} with one entry per
    removed product code.
    """
    removed: dict[str, list[Entitlement]] = {c.value: [] for c in EntitlementCategory}
    for category in EntitlementCategory:
        current_codes = {e.product_code for e in current if e.category is category}
        seen: set[str] = set()
        for ent in previous:
            if ent.category is not category or ent.product_code in current_codes or ent.product_code in seen:
                continue
            seen.add(ent.product_code)
            removed[category.value].append(ent)
    return removed
