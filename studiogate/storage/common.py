"""Helpers shared between the memory and Postgres account stores.

Both backends accept the same ``update_account`` arguments: a match filter
over indexed account fields, fields to ``$set`` and fields to ``$unset``.
Validation lives here so the two backends reject the same inputs.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from studiogate.storage.models import UPDATABLE_FIELDS

MATCHABLE_FIELDS = frozenset({"id", "email", "otp", "session_token"})


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def validate_update(
    match: Mapping[str, Any],
    set_fields: Optional[Mapping[str, Any]],
    unset_fields: Optional[Iterable[str]],
) -> Tuple[Dict[str, Any], Dict[str, Any], Tuple[str, ...]]:
    """Normalize and check an update, returning ``(match, set, unset)``.

    Raises:
        ValueError: empty match, unknown fields, a ``None`` match value, or a
            field that is both set and unset.
    """
    if not match:
        raise ValueError("update_account requires a non-empty match")
    unknown_match = set(match) - MATCHABLE_FIELDS
    if unknown_match:
        raise ValueError(f"cannot match on {sorted(unknown_match)}")
    if any(value is None for value in match.values()):
        raise ValueError("match values must not be None")

    to_set = dict(set_fields or {})
    to_unset = tuple(dict.fromkeys(unset_fields or ()))
    unknown = (set(to_set) | set(to_unset)) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"fields not updatable: {sorted(unknown)}")
    overlap = set(to_set) & set(to_unset)
    if overlap:
        raise ValueError(f"fields both set and unset: {sorted(overlap)}")

    normalized_match = dict(match)
    if "email" in normalized_match:
        normalized_match["email"] = normalize_email(normalized_match["email"])
    return normalized_match, to_set, to_unset
