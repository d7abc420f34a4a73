"""
Canonical profile schema and field-name normalization.

Callers may send camelCase keys; the relational and document stores use the
canonical snake_case names, the hierarchical store uses camelCase. The schema
table below is the single place where a canonical field and its native names
are declared.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

Profile = Dict[str, Any]

ID_FIELD = "user_id"
ID_ALIASES = frozenset({"_id", "id", "userid", "uid"})
# spellings of the user id itself; these beat any alias
ID_KEYS = frozenset({ID_FIELD, f"_{ID_FIELD}", "user_i_d"})

TEXT = "text"
INT = "int"
FLOAT = "float"
BOOL = "bool"
TIMESTAMP = "timestamp"
JSON = "json"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: str


PROFILE_SCHEMA: Tuple[FieldSpec, ...] = (
    FieldSpec("user_id", TEXT),
    FieldSpec("name", TEXT),
    FieldSpec("age", INT),
    FieldSpec("email", TEXT),
    FieldSpec("phone", TEXT),
    FieldSpec("phone_verified", BOOL),
    FieldSpec("email_verified", BOOL),
    FieldSpec("city", TEXT),
    FieldSpec("state", TEXT),
    FieldSpec("bio", TEXT),
    FieldSpec("avatar", TEXT),
    FieldSpec("move_in_date", TIMESTAMP),
    FieldSpec("budget_min", INT),
    FieldSpec("budget_max", INT),
    FieldSpec("roommate_pref_gender", TEXT),
    FieldSpec("verified", BOOL),
    FieldSpec("stripe_connect_id", TEXT),
    FieldSpec("background_check_status", TEXT),
    FieldSpec("background_check_date", TIMESTAMP),
    FieldSpec("trust_score", FLOAT),
    FieldSpec("identity_verified_at", TIMESTAMP),
    FieldSpec("identity_document_selfie_verified", BOOL),
    FieldSpec("cleanliness", INT),
    FieldSpec("sleep_schedule", TEXT),
    FieldSpec("social_frequency", INT),
    FieldSpec("noise_tolerance", INT),
    FieldSpec("financial_reliability", INT),
    FieldSpec("has_pets", BOOL),
    FieldSpec("pet_tolerance", INT),
    FieldSpec("guest_policy", INT),
    FieldSpec("privacy_need", INT),
    FieldSpec("kitchen_habits", INT),
    FieldSpec("is_active", BOOL),
    FieldSpec("is_suspended", BOOL),
    FieldSpec("suspension_reason", TEXT),
    FieldSpec("last_active_at", TIMESTAMP),
    FieldSpec("neighborhoods", JSON),
    FieldSpec("trust_badge_ids", JSON),
    FieldSpec("created_at", TIMESTAMP),
    FieldSpec("updated_at", TIMESTAMP),
)

FIELD_KINDS: Dict[str, str] = {f.name: f.kind for f in PROFILE_SCHEMA}

# Relational column allow-list: anything else is dropped before the INSERT.
RELATIONAL_COLUMNS: Tuple[str, ...] = tuple(f.name for f in PROFILE_SCHEMA)

# Projection used when the users table is missing columns.
CORE_FIELDS: Tuple[str, ...] = ("user_id", "name", "email", "city", "is_active", "updated_at")

PREFERENCE_FIELDS: Tuple[str, ...] = (
    "cleanliness",
    "social_frequency",
    "noise_tolerance",
    "financial_reliability",
    "pet_tolerance",
    "guest_policy",
    "privacy_need",
    "kitchen_habits",
)

_UPPER = re.compile(r"([A-Z])")


def snake_case(key: str) -> str:
    return _UPPER.sub(r"_\1", key).lower()


def camelize(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


# canonical -> hierarchical (camelCase) and back
HIERARCHICAL_KEYS: Dict[str, str] = {f.name: camelize(f.name) for f in PROFILE_SCHEMA}
CANONICAL_KEYS: Dict[str, str] = {v: k for k, v in HIERARCHICAL_KEYS.items()}


def normalize(record: Mapping[str, Any]) -> Profile:
    """
    Rename every key of `record` to canonical snake_case.

    Identifier aliases (`_id`, `id`, `userid`, `uid`) become `user_id` unless
    the record also carries an explicit user id (`userId`, `user_id`,
    `userID`), which wins. Unknown keys pass
    through renamed; this never raises on key content.
    """
    normalized: Profile = {}
    explicit_id = False
    for key, value in record.items():
        canonical = snake_case(str(key))
        if canonical in ID_KEYS:
            normalized[ID_FIELD] = value
            explicit_id = True
        elif canonical in ID_ALIASES:
            if not explicit_id:
                normalized[ID_FIELD] = value
        else:
            normalized[canonical] = value
    return normalized


def relational_projection(record: Mapping[str, Any], columns: Iterable[str] = RELATIONAL_COLUMNS) -> Profile:
    allowed = set(columns)
    return {k: v for k, v in record.items() if k in allowed}


def to_hierarchical(record: Mapping[str, Any]) -> Profile:
    return {HIERARCHICAL_KEYS.get(k) or camelize(k): v for k, v in record.items()}


def from_hierarchical(node: Mapping[str, Any]) -> Profile:
    return {CANONICAL_KEYS.get(k) or snake_case(k): v for k, v in node.items()}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_iso(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def jsonable(record: Mapping[str, Any]) -> Profile:
    """Return a copy safe for JSON encoding (timestamps as ISO strings)."""
    return {k: to_iso(v) for k, v in record.items()}


def relational_row_to_document(row: Mapping[str, Any]) -> Profile:
    doc = jsonable(row)
    now = utc_now_iso()
    doc["created_at"] = doc.get("created_at") or now
    doc["updated_at"] = doc.get("updated_at") or now
    return doc


def document_to_relational(doc: Mapping[str, Any]) -> Profile:
    row = {k: v for k, v in doc.items() if k != "_id"}
    return normalize(row)


def missing_fields(record: Mapping[str, Any], required: Iterable[str]) -> List[str]:
    return [name for name in required if record.get(name) in (None, "")]


def coerce_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "t", "yes")
    return bool(value)
