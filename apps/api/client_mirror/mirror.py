"""
Client-side mirror reconciliation.

Server values always win. The one local computation is the fallback due
instant (trial start + 7 days at 19:00 local), used only while the server has
not started a cadence (no week number and no due instant). Once the server
supplies either, the fallback is never applied again.
"""
import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from client_mirror.api_client import CadenceApiClient, MirrorApiError
from client_mirror.store import JsonFileStore
from services.scheduler import next_due_instant

logger = logging.getLogger(__name__)

DUE_SOURCE_SERVER = "server"
DUE_SOURCE_FALLBACK = "fallback"


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


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def fallback_due_instant(trial_started_at: datetime, timezone_name: Optional[str]) -> datetime:
    """Trial start + 7 days at 19:00 in the device timezone."""
    return next_due_instant(trial_started_at, timezone_name, due_local_hour=19, interval_days=7)


@dataclass(frozen=True)
class MirrorState:
    entitlement_status: str = "none"
    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    current_week_number: Optional[int] = None
    next_due_at: Optional[datetime] = None
    due_source: Optional[str] = None  # server|fallback
    last_result: Optional[Dict[str, Any]] = None
    synced_at: Optional[datetime] = None

    @property
    def server_cadence_started(self) -> bool:
        return self.current_week_number is not None or self.due_source == DUE_SOURCE_SERVER

    def to_json(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("trial_started_at", "trial_ends_at", "next_due_at", "synced_at"):
            data[key] = _iso(data[key])
        return data

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "MirrorState":
        if not data:
            return cls()
        week = data.get("current_week_number")
        return cls(
            entitlement_status=str(data.get("entitlement_status") or "none"),
            trial_started_at=_parse_instant(data.get("trial_started_at")),
            trial_ends_at=_parse_instant(data.get("trial_ends_at")),
            current_week_number=week if isinstance(week, int) else None,
            next_due_at=_parse_instant(data.get("next_due_at")),
            due_source=data.get("due_source"),
            last_result=data.get("last_result") if isinstance(data.get("last_result"), dict) else None,
            synced_at=_parse_instant(data.get("synced_at")),
        )


def merge_server_snapshot(
    local: MirrorState,
    server: Dict[str, Any],
    *,
    timezone_name: Optional[str],
    now: datetime,
) -> MirrorState:
    """
    Overlay a server entitlement snapshot on the local state.

    Each field takes the server value unless the server has none yet. A
    snapshot that explicitly nulls both cadence fields (the profile was reset
    or deleted) clears the local cadence.
    """
    trial_started_at = _parse_instant(server.get("trial_started_at")) or local.trial_started_at
    trial_ends_at = _parse_instant(server.get("trial_ends_at")) or local.trial_ends_at
    cleared = all(key in server and server[key] is None for key in ("current_week_number", "next_week_due_at"))
    week = server.get("current_week_number")
    if not isinstance(week, int):
        week = None if cleared else local.current_week_number
    server_due = _parse_instant(server.get("next_week_due_at"))

    if server_due is not None:
        next_due, source = server_due, DUE_SOURCE_SERVER
    elif not cleared and (week is not None or local.due_source == DUE_SOURCE_SERVER):
        # Server cadence exists; keep whatever it last told us, never a fallback.
        if local.due_source == DUE_SOURCE_SERVER:
            next_due, source = local.next_due_at, DUE_SOURCE_SERVER
        else:
            next_due, source = None, None
    elif trial_started_at is not None:
        next_due, source = fallback_due_instant(trial_started_at, timezone_name), DUE_SOURCE_FALLBACK
    elif cleared:
        next_due, source = None, None
    else:
        next_due, source = local.next_due_at, local.due_source

    last_result = server.get("last_result")
    return MirrorState(
        entitlement_status=str(server.get("entitlement_status") or local.entitlement_status),
        trial_started_at=trial_started_at,
        trial_ends_at=trial_ends_at,
        current_week_number=week,
        next_due_at=next_due,
        due_source=source,
        last_result=last_result if isinstance(last_result, dict) else local.last_result,
        synced_at=now,
    )


class ClientMirror:
    """
    Local cache of the entitlement snapshot.

    Single-threaded, last writer wins. A failed fetch keeps the local copy;
    the next reconciliation simply fetches again.
    """

    def __init__(self, api: CadenceApiClient, store: JsonFileStore, *, timezone_name: Optional[str] = None, clock=None):
        self.api = api
        self.store = store
        self.timezone_name = timezone_name
        self._now = clock.now if clock is not None else (lambda: datetime.now(timezone.utc))
        self.state = MirrorState.from_json(store.load())

    def _save(self, state: MirrorState) -> MirrorState:
        self.state = state
        self.store.save(state.to_json())
        return state

    def reconcile(self) -> MirrorState:
        """Fetch the server snapshot and merge it in (app foreground, after check-ins)."""
        try:
            server = self.api.get_entitlement()
        except MirrorApiError as e:
            logger.warning(f"Entitlement reconciliation failed, keeping local copy: {e}")
            return self.state
        merged = merge_server_snapshot(self.state, server, timezone_name=self.timezone_name, now=self._now())
        return self._save(merged)

    def record_checkin_result(self, completion: Dict[str, Any]) -> MirrorState:
        """Apply a check-in response locally, then reconcile with the server."""
        next_due = _parse_instant(completion.get("next_due_at"))
        week = completion.get("current_week_number")
        generated_at = completion.get("generated_at")
        last_result = self.state.last_result
        if completion.get("score") is not None:
            last_result = {
                "score": completion.get("score"),
                "potential": completion.get("potential"),
                "model_version": completion.get("model_version"),
                "generated_at": generated_at,
                "source": "weekly_checkin",
            }
        updated = replace(
            self.state,
            current_week_number=week if isinstance(week, int) else self.state.current_week_number,
            next_due_at=next_due or self.state.next_due_at,
            due_source=DUE_SOURCE_SERVER if next_due is not None else self.state.due_source,
            last_result=last_result,
        )
        self._save(updated)
        return self.reconcile()

    def submit_checkin(self, *, week_number: int, payload: Dict[str, Any], checkin_id: str) -> MirrorState:
        completion = self.api.submit_checkin(
            week_number=week_number,
            payload=payload,
            checkin_id=checkin_id,
            completed_at=self._now(),
        )
        return self.record_checkin_result(completion)

    def is_week_due(self) -> bool:
        if self.state.next_due_at is None:
            return False
        return self._now() >= self.state.next_due_at
