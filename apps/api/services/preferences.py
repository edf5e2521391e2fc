"""
Derived preference fields.

The onboarding questionnaire produces a flat answer map; the profile keeps two
small derived records from it so clients do not have to re-read raw answers:
measurement units and smoking preferences.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

MEASUREMENT_KEYS = ("height", "weight", "waist")
UNITS = ("metric", "imperial")
PROFILE_SMOKING_KEYS = ("cigarettes", "vape", "weed")

_TRUE_STRINGS = {"true", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "no", "n", "0"}


def coerce_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
        return None
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
    return None


def _unit(value: Any) -> Optional[str]:
    return value if value in UNITS else None


def normalize_measurement_prefs(raw: Any) -> Optional[Dict[str, str]]:
    """Keep only known keys with known units; empty means "not set"."""
    if not isinstance(raw, Mapping):
        return None
    prefs = {key: raw[key] for key in MEASUREMENT_KEYS if _unit(raw.get(key))}
    return prefs or None


def measurement_prefs_from_answers(answers: Any) -> Optional[Dict[str, str]]:
    """Units from a nested ``measurement_prefs`` answer plus flat ``<key>_unit`` answers."""
    if not isinstance(answers, Mapping):
        return None
    merged: Dict[str, str] = dict(normalize_measurement_prefs(answers.get("measurement_prefs")) or {})
    for key in MEASUREMENT_KEYS:
        unit = _unit(answers.get(f"{key}_unit"))
        if unit:
            merged[key] = unit
    return merged or None


def merge_measurement_prefs(existing: Any, incoming: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    """Merged prefs when ``incoming`` changes something, else None."""
    if not incoming:
        return None
    current = normalize_measurement_prefs(existing) or {}
    merged = {**current, **{k: v for k, v in incoming.items() if _unit(v)}}
    return merged if merged != current else None


def normalize_smoking_prefs(raw: Any) -> Optional[Dict[str, bool]]:
    if not isinstance(raw, Mapping) or not raw:
        return None
    return {key: bool(raw.get(key)) for key in PROFILE_SMOKING_KEYS}


def smoking_prefs_from_answers(answers: Any) -> Optional[Dict[str, bool]]:
    """
    Smoking prefs from ``smoke_now`` / ``smoke_type`` answers.

    None when the user never answered ``smoke_now``.
    """
    if not isinstance(answers, Mapping):
        return None
    smoke_now = coerce_boolean(answers.get("smoke_now"))
    if smoke_now is None:
        return None

    prefs = {key: False for key in PROFILE_SMOKING_KEYS}
    if not smoke_now:
        return prefs

    smoke_type = answers.get("smoke_type")
    smoke_type = smoke_type.strip().lower() if isinstance(smoke_type, str) else ""
    if smoke_type in prefs:
        prefs[smoke_type] = True
    # cigars and other types have no profile flag
    return prefs
