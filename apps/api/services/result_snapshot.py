"""
Versioned "last result" snapshot stored on the profile.

Older rows carry the unversioned shape written by the first release:
    {"score", "potential", "model_version_at_score",
     "model_version_at_potential", "generated_at"}
``parse_snapshot`` upgrades those on read; writes always use the current
version.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 2
LEGACY_SOURCE = "unknown"


@dataclass(frozen=True)
class ResultSnapshot:
    score: float
    generated_at: datetime
    model_version: str
    source: str
    potential: Optional[float] = None
    potential_model_version: Optional[str] = None
    version: int = SNAPSHOT_VERSION

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "version": SNAPSHOT_VERSION,
            "score": self.score,
            "generated_at": self.generated_at.astimezone(timezone.utc).isoformat(),
            "model_version": self.model_version,
            "source": self.source,
        }
        if self.potential is not None:
            data["potential"] = self.potential
            data["potential_model_version"] = self.potential_model_version or self.model_version
        return data


def _parse_instant(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_snapshot(raw: Any) -> Optional[ResultSnapshot]:
    """
    Read a stored snapshot of any known version.

    Returns None for empty or unreadable blobs instead of raising; a bad
    snapshot must never break a profile read.
    """
    if not isinstance(raw, dict) or not raw:
        return None

    score = _parse_number(raw.get("score"))
    generated_at = _parse_instant(raw.get("generated_at"))
    if score is None or generated_at is None:
        logger.warning("Discarding unreadable result snapshot", extra={"extra_fields": {"keys": sorted(raw)}})
        return None

    potential = _parse_number(raw.get("potential"))
    version = raw.get("version")

    if version is None:
        # v1: unversioned, model versions split per field, no source recorded
        model_version = str(raw.get("model_version_at_score") or raw.get("model_version") or "")
        return ResultSnapshot(
            score=score,
            generated_at=generated_at,
            model_version=model_version,
            source=LEGACY_SOURCE,
            potential=potential,
            potential_model_version=raw.get("model_version_at_potential") if potential is not None else None,
        )

    return ResultSnapshot(
        score=score,
        generated_at=generated_at,
        model_version=str(raw.get("model_version") or ""),
        source=str(raw.get("source") or LEGACY_SOURCE),
        potential=potential,
        potential_model_version=raw.get("potential_model_version") if potential is not None else None,
    )


def merge_snapshot(existing: Optional[ResultSnapshot], incoming: ResultSnapshot) -> ResultSnapshot:
    """
    Newer score wins; a score without a potential keeps the previous potential.
    """
    if incoming.potential is not None or existing is None or existing.potential is None:
        return incoming
    return replace(
        incoming,
        potential=existing.potential,
        potential_model_version=existing.potential_model_version or existing.model_version,
    )
