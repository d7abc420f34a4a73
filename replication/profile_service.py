"""
Profile operations built on top of the replicated store.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from errors import InvalidProfileError, ProfileNotFoundError
from stores.normalizer import ID_FIELD, Profile, coerce_bool, jsonable, normalize, utc_now_iso

from .replicated_store import ReplicatedStore, WriteOutcome

logger = logging.getLogger(__name__)


class ProfileInput(BaseModel):
    """Accepted shape of a new profile; camelCase and snake_case keys both work."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    user_id: str = Field(min_length=1)
    name: str
    city: str
    age: int = 0
    email: Optional[str] = None
    phone: str = ""
    phone_verified: bool = False
    email_verified: bool = False
    state: str = ""
    bio: str = ""
    avatar: Optional[str] = None
    move_in_date: Optional[datetime] = None
    budget_min: int = 0
    budget_max: int = 0
    roommate_pref_gender: Optional[str] = None
    verified: bool = False
    stripe_connect_id: Optional[str] = None
    trust_score: float = 50
    cleanliness: int = Field(5, ge=1, le=10)
    sleep_schedule: str = "normal"
    social_frequency: int = Field(5, ge=1, le=10)
    noise_tolerance: int = Field(5, ge=1, le=10)
    financial_reliability: int = Field(5, ge=1, le=10)
    has_pets: bool = False
    pet_tolerance: int = Field(5, ge=1, le=10)
    guest_policy: int = Field(5, ge=1, le=10)
    privacy_need: int = Field(5, ge=1, le=10)
    kitchen_habits: int = Field(5, ge=1, le=10)
    is_active: bool = True
    is_suspended: bool = False


_FIELD_NAMES = {field.alias or name: name for name, field in ProfileInput.model_fields.items()}


def _validate(record: Mapping[str, Any]) -> ProfileInput:
    try:
        return ProfileInput.model_validate(record)
    except ValidationError as e:
        fields = [_FIELD_NAMES.get(str(err["loc"][0]), str(err["loc"][0])) for err in e.errors() if err["loc"]]
        raise InvalidProfileError(f"{e.error_count()} invalid field(s)", fields=fields) from e


def _number(profile: Mapping[str, Any], key: str, default: float) -> float:
    value = profile.get(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _band(diff: float, near: float, far: float, scores: tuple) -> int:
    if diff <= near:
        return scores[0]
    if diff <= far:
        return scores[1]
    return scores[2]


def compatibility_score(user: Mapping[str, Any], other: Mapping[str, Any]) -> int:
    """Score how well two profiles fit as roommates, clamped to 0..100."""
    score = 50

    score += _band(abs(_number(user, "age", 0) - _number(other, "age", 0)), 5, 10, (20, 10, -10))

    min1, max1 = _number(user, "budget_min", 0) or 0, _number(user, "budget_max", 0) or 10000
    min2, max2 = _number(other, "budget_min", 0) or 0, _number(other, "budget_max", 0) or 10000
    score += 20 if (min2 <= max1 and min1 <= max2) else -15

    score += _band(abs(_number(user, "cleanliness", 5) - _number(other, "cleanliness", 5)), 2, 4, (15, 8, -5))
    score += _band(abs(_number(user, "social_frequency", 5) - _number(other, "social_frequency", 5)), 2, 4, (12, 6, -3))
    score += _band(abs(_number(user, "noise_tolerance", 5) - _number(other, "noise_tolerance", 5)), 2, 4, (12, 6, -3))

    pets1, pets2 = bool(coerce_bool(user.get("has_pets"))), bool(coerce_bool(other.get("has_pets")))
    if pets1 == pets2:
        score += 10
    elif pets1 and _number(other, "pet_tolerance", 5) >= 6:
        score += 5
    elif pets2 and _number(user, "pet_tolerance", 5) >= 6:
        score += 5
    else:
        score -= 10

    preferred = user.get("roommate_pref_gender")
    gender = other.get("gender")
    if preferred and gender:
        score += 15 if preferred in (gender, "any") else -20

    return max(0, min(100, int(score)))


class ProfileService:
    def __init__(self, store: ReplicatedStore) -> None:
        self._store = store

    def create_profile(self, data: Mapping[str, Any]) -> WriteOutcome:
        """Validate, fill defaults and write a new profile through every store."""
        normalized = normalize(data)
        profile = _validate(normalized)
        record = dict(normalized)
        record.update(jsonable(profile.model_dump()))
        now = utc_now_iso()
        record["move_in_date"] = record.get("move_in_date") or now
        record["created_at"] = now
        record["updated_at"] = now

        logger.info(f"Creating profile for user {profile.user_id}")
        outcome = self._store.create_or_update_profile(profile.user_id, record)
        if outcome.degraded:
            logger.warning(
                f"Profile {profile.user_id} missing from: {', '.join(r.store for r in outcome.failed_stores)}; "
                "scheduled for background repair"
            )
        return outcome

    def get_profile(self, user_id: str) -> Profile:
        return self._store.get_profile(user_id)

    def list_profiles(self, limit: int = 50, offset: int = 0) -> List[Profile]:
        """
        Page through active, non-suspended profiles in user id order.

        `offset` counts listed profiles, not raw ids, so pages stay stable
        while inactive users are skipped.
        """
        if limit <= 0:
            return []
        offset = max(0, offset)

        page: List[Profile] = []
        skipped = 0
        for user_id in self._store.list_user_ids():
            try:
                profile = self._store.get_profile(user_id)
            except ProfileNotFoundError:
                continue
            if coerce_bool(profile.get("is_active")) is False or coerce_bool(profile.get("is_suspended")):
                continue
            if skipped < offset:
                skipped += 1
                continue
            page.append(profile)
            if len(page) >= limit:
                break

        logger.info(f"Retrieved {len(page)} profiles (offset {offset})")
        return page

    def update_profile(self, user_id: str, changes: Mapping[str, Any]) -> WriteOutcome:
        """Merge `changes` into the current profile and rewrite it everywhere."""
        existing = self._store.get_profile(user_id)
        merged = dict(existing)
        merged.update(normalize(changes))
        merged[ID_FIELD] = user_id
        _validate({k: v for k, v in merged.items() if v is not None})
        merged.pop("created_at", None)
        outcome = self._store.create_or_update_profile(user_id, merged)
        logger.info(f"Profile updated for {user_id}")
        return outcome

    def get_compatible_feed(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Same-city feed candidates ordered by compatibility score."""
        current = self._store.get_profile(user_id)
        candidates = self._store.get_feed_candidates(user_id, limit * 2)

        scored = []
        for candidate in candidates:
            if candidate.get("city") != current.get("city"):
                continue
            if coerce_bool(candidate.get("is_active")) is not True or coerce_bool(candidate.get("is_suspended")):
                continue
            entry = dict(candidate)
            entry["compatibility_score"] = compatibility_score(current, candidate)
            scored.append(entry)

        scored.sort(key=lambda p: p["compatibility_score"], reverse=True)
        return scored[:limit]
