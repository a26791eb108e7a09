"""
trialmeter/features/variants/service.py

Trial variant resolution and A/B assignment.

Handles:
- Built-in variant table (control, generous, short, soft, very_generous, strict)
- Loading a replacement table from TRIAL_VARIANTS_FILE (JSON)
- Atomic install of the active table
- Resolving a tenant's variant (unknown keys fall back to the default)
- Deterministic A/B bucketing for new tenants
"""

import hashlib
import json
import logging
import threading
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from trialmeter.core.config import settings as default_settings
from trialmeter.core.errors import ConfigurationError
from trialmeter.core.metrics import variant_table_info
from trialmeter.models.trial_variant import TrialVariant, VariantTable


logger = logging.getLogger("trialmeter")

BUILTIN_TABLE_VERSION = "builtin-1"

# Limits are given in minutes and stored in seconds
DEFAULT_VARIANTS = {
    "control": {
        "name": "Control (Standard)",
        "description": "10 calls, 25 minutes, 14 days, hard limits",
        "call_limit": 10,
        "duration_limit_minutes": 25,
        "trial_period_days": 14,
        "behavior": "hard",
        "allow_wait_for_auto_convert": True,
    },
    "generous": {
        "name": "Generous Trial",
        "description": "20 calls, 50 minutes, 14 days, hard limits",
        "call_limit": 20,
        "duration_limit_minutes": 50,
        "trial_period_days": 14,
        "behavior": "hard",
        "allow_wait_for_auto_convert": True,
    },
    "short": {
        "name": "Short Trial",
        "description": "10 calls, 25 minutes, 7 days, hard limits",
        "call_limit": 10,
        "duration_limit_minutes": 25,
        "trial_period_days": 7,
        "behavior": "hard",
        "allow_wait_for_auto_convert": True,
    },
    "soft": {
        "name": "Soft Limits",
        "description": "10 calls, 25 minutes, 14 days, soft limits (can continue)",
        "call_limit": 10,
        "duration_limit_minutes": 25,
        "trial_period_days": 14,
        "behavior": "soft",
        "allow_wait_for_auto_convert": True,
    },
    "very_generous": {
        "name": "Very Generous",
        "description": "50 calls, 100 minutes, 21 days, hard limits",
        "call_limit": 50,
        "duration_limit_minutes": 100,
        "trial_period_days": 21,
        "behavior": "hard",
        "allow_wait_for_auto_convert": True,
    },
    "strict": {
        "name": "Strict Trial",
        "description": "5 calls, 15 minutes, 7 days, hard limits, no waiting",
        "call_limit": 5,
        "duration_limit_minutes": 15,
        "trial_period_days": 7,
        "behavior": "hard",
        "allow_wait_for_auto_convert": False,
    },
}

DEFAULT_DISTRIBUTION = {
    "control": 50,
    "generous": 30,
    "short": 20,
}


_table_lock = threading.Lock()
_active_table: Optional[VariantTable] = None


def _build_variant(key: str, definition: Dict[str, Any]) -> TrialVariant:
    data = dict(definition)
    minutes = data.pop("duration_limit_minutes", None)
    if minutes is not None and "duration_limit_seconds" not in data:
        data["duration_limit_seconds"] = int(minutes) * 60
    data.setdefault("key", key)
    if data["key"] != key:
        raise ConfigurationError(f"Variant '{key}' declares mismatched key '{data['key']}'")
    return TrialVariant(**data)


def build_variant_table(raw: Dict[str, Any]) -> VariantTable:
    """
    Validate a raw table definition and return an immutable VariantTable.

    Raises:
        ConfigurationError: malformed variants, missing default, or a bad
            A/B distribution.
    """
    raw_variants = raw.get("variants")
    if not isinstance(raw_variants, dict) or not raw_variants:
        raise ConfigurationError("Variant table must define at least one variant")

    try:
        variants = {key: _build_variant(key, definition) for key, definition in raw_variants.items()}
        table = VariantTable(
            version=str(raw.get("version") or "unversioned"),
            default_key=raw.get("default_key") or "control",
            variants=variants,
            ab_test_enabled=bool(raw.get("ab_test_enabled", False)),
            distribution=raw.get("distribution") or {},
        )
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid variant table: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid variant table: {exc}") from exc

    if table.default_key not in table.variants:
        raise ConfigurationError(f"Default variant '{table.default_key}' is not defined")

    unknown = [key for key in table.distribution if key not in table.variants]
    if unknown:
        raise ConfigurationError(f"Distribution references unknown variants: {', '.join(unknown)}")

    if any(weight < 0 for weight in table.distribution.values()):
        raise ConfigurationError("Distribution weights must be non-negative")

    if table.ab_test_enabled and sum(table.distribution.values()) != 100:
        raise ConfigurationError(
            f"Distribution weights must sum to 100 (got {sum(table.distribution.values())})"
        )

    return table


def builtin_variant_table(default_key: str = "control", ab_test_enabled: bool = False) -> VariantTable:
    return build_variant_table({
        "version": BUILTIN_TABLE_VERSION,
        "default_key": default_key,
        "variants": DEFAULT_VARIANTS,
        "ab_test_enabled": ab_test_enabled,
        "distribution": DEFAULT_DISTRIBUTION,
    })


def load_variant_table(settings=None) -> VariantTable:
    """Load the table named by TRIAL_VARIANTS_FILE, or the built-in one."""
    cfg = settings or default_settings
    path = getattr(cfg, "TRIAL_VARIANTS_FILE", None)
    if not path:
        return builtin_variant_table(
            default_key=cfg.TRIAL_DEFAULT_VARIANT,
            ab_test_enabled=cfg.TRIAL_AB_TEST_ENABLED,
        )

    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read variant table {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Variant table {path} is not valid JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Variant table {path} must be a JSON object")

    table = build_variant_table(raw)
    logger.info(
        "variants.loaded",
        extra={"path": path, "version": table.version, "variants": len(table.variants)},
    )
    return table


def install_variant_table(table: VariantTable) -> VariantTable:
    """Swap the active table. Returns the previous one (may be None)."""
    global _active_table
    with _table_lock:
        previous = _active_table
        _active_table = table
    variant_table_info.reset()
    variant_table_info.set(1, labels={"version": table.version})
    logger.info("variants.installed", extra={"version": table.version, "default_key": table.default_key})
    return previous


def get_variant_table() -> VariantTable:
    global _active_table
    with _table_lock:
        if _active_table is None:
            _active_table = load_variant_table()
        return _active_table


def reset_variant_table() -> None:
    """Forget the active table (tests)."""
    global _active_table
    with _table_lock:
        _active_table = None


def resolve_variant_key(key: Optional[str], table: Optional[VariantTable] = None) -> TrialVariant:
    active = table or get_variant_table()
    variant = active.get(key)
    if variant is not None:
        return variant
    if key:
        logger.warning(
            "variants.unknown_key_fallback",
            extra={"variant_key": key, "default_key": active.default_key},
        )
    return active.default


def resolve_variant(tenant, table: Optional[VariantTable] = None) -> TrialVariant:
    """Return the tenant's variant. Total: never raises for unknown keys."""
    return resolve_variant_key(getattr(tenant, "trial_variant_key", None), table)


def _bucket(tenant_id: str) -> int:
    digest = hashlib.sha256(tenant_id.encode("utf-8")).hexdigest()
    return int(digest, 16) % 100


def assign_variant(tenant_id: str, table: Optional[VariantTable] = None) -> str:
    """
    Pick the variant key for a new tenant.

    With A/B testing enabled the tenant id is hashed into one of 100 buckets
    and walked over the cumulative distribution, so a tenant always lands in
    the same variant for a given table.
    """
    active = table or get_variant_table()
    if not active.ab_test_enabled:
        return active.default_key

    bucket = _bucket(tenant_id)
    cumulative = 0
    for key, weight in active.distribution.items():
        cumulative += weight
        if bucket < cumulative:
            return key
    return active.default_key
