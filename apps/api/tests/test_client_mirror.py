"""
Client mirror reconciliation against a fake API.
"""
from datetime import datetime, timedelta, timezone

import pytest
import requests

from client_mirror import (
    CadenceApiClient,
    ClientMirror,
    JsonFileStore,
    MirrorApiError,
    MirrorState,
    fallback_due_instant,
)
from client_mirror.mirror import DUE_SOURCE_FALLBACK, DUE_SOURCE_SERVER, merge_server_snapshot
from core.clock import FixedClock

NOW = datetime(2024, 3, 8, 12, 0, tzinfo=timezone.utc)


class _FakeApi:
    def __init__(self, snapshot=None, error=None):
        self.snapshot = snapshot or {}
        self.error = error
        self.submitted = []

    def get_entitlement(self):
        if self.error is not None:
            raise self.error
        return dict(self.snapshot)

    def submit_checkin(self, *, week_number, payload, checkin_id, completed_at):
        self.submitted.append((week_number, checkin_id, completed_at))
        return {
            "score": 555.0,
            "potential": None,
            "model_version": "v1.0.0",
            "generated_at": completed_at.isoformat(),
            "next_due_at": "2024-03-15T19:00:00+00:00",
            "reused": False,
            "current_week_number": 2,
        }


@pytest.fixture
def store(tmp_path):
    return JsonFileStore(tmp_path / "mirror" / "state.json")


def test_fallback_due_instant_is_seven_days_at_local_evening():
    assert fallback_due_instant(NOW, "America/New_York") == datetime(2024, 3, 15, 23, 0, tzinfo=timezone.utc)
    assert fallback_due_instant(NOW, None) == datetime(2024, 3, 15, 19, 0, tzinfo=timezone.utc)


def test_fallback_applies_only_before_server_cadence():
    local = MirrorState()
    server = {"entitlement_status": "trial", "trial_started_at": NOW.isoformat()}

    merged = merge_server_snapshot(local, server, timezone_name="UTC", now=NOW)

    assert merged.due_source == DUE_SOURCE_FALLBACK
    assert merged.next_due_at == datetime(2024, 3, 15, 19, 0, tzinfo=timezone.utc)


def test_server_due_always_wins():
    local = MirrorState(next_due_at=NOW, due_source=DUE_SOURCE_FALLBACK, trial_started_at=NOW)
    server = {
        "entitlement_status": "trial",
        "trial_started_at": NOW.isoformat(),
        "current_week_number": 1,
        "next_week_due_at": "2024-03-14T19:00:00Z",
    }

    merged = merge_server_snapshot(local, server, timezone_name="UTC", now=NOW)

    assert merged.due_source == DUE_SOURCE_SERVER
    assert merged.next_due_at == datetime(2024, 3, 14, 19, 0, tzinfo=timezone.utc)
    assert merged.current_week_number == 1


def test_fallback_never_replaces_server_value():
    server_due = datetime(2024, 3, 14, 19, 0, tzinfo=timezone.utc)
    local = MirrorState(current_week_number=2, next_due_at=server_due, due_source=DUE_SOURCE_SERVER, trial_started_at=NOW)

    merged = merge_server_snapshot(local, {"trial_started_at": NOW.isoformat()}, timezone_name="UTC", now=NOW)

    assert merged.next_due_at == server_due
    assert merged.due_source == DUE_SOURCE_SERVER



def test_explicit_server_nulls_clear_stale_cadence():
    local = MirrorState(
        current_week_number=4,
        next_due_at=datetime(2024, 3, 14, 19, 0, tzinfo=timezone.utc),
        due_source=DUE_SOURCE_SERVER,
    )
    server = {"entitlement_status": "none", "current_week_number": None, "next_week_due_at": None}

    merged = merge_server_snapshot(local, server, timezone_name="UTC", now=NOW)

    assert merged.current_week_number is None
    assert merged.next_due_at is None
    assert merged.due_source is None
    assert merged.server_cadence_started is False

    restarted = merge_server_snapshot(
        merged,
        {"entitlement_status": "trial", "trial_started_at": NOW.isoformat(), "current_week_number": None, "next_week_due_at": None},
        timezone_name="UTC",
        now=NOW,
    )

    assert restarted.due_source == DUE_SOURCE_FALLBACK
    assert restarted.next_due_at == datetime(2024, 3, 15, 19, 0, tzinfo=timezone.utc)

def test_reconcile_persists_and_reloads(store):
    api = _FakeApi(
        {
            "entitlement_status": "active",
            "current_week_number": 3,
            "next_week_due_at": "2024-03-10T19:00:00Z",
            "last_result": {"score": 565.0, "generated_at": "2024-03-03T19:00:00Z"},
        }
    )
    mirror = ClientMirror(api, store, timezone_name="UTC", clock=FixedClock(NOW))

    state = mirror.reconcile()

    assert state.entitlement_status == "active"
    assert state.synced_at == NOW
    reloaded = ClientMirror(api, store, clock=FixedClock(NOW)).state
    assert reloaded == state


def test_failed_fetch_keeps_local_copy(store):
    store.save(MirrorState(entitlement_status="trial", current_week_number=2).to_json())
    mirror = ClientMirror(_FakeApi(error=MirrorApiError("offline")), store, clock=FixedClock(NOW))

    state = mirror.reconcile()

    assert state.entitlement_status == "trial"
    assert state.current_week_number == 2


def test_submit_checkin_applies_result_then_reconciles(store):
    api = _FakeApi({"entitlement_status": "trial", "current_week_number": 2, "next_week_due_at": "2024-03-15T19:00:00Z"})
    clock = FixedClock(NOW)
    mirror = ClientMirror(api, store, timezone_name="UTC", clock=clock)

    state = mirror.submit_checkin(week_number=1, payload={"weight": 80}, checkin_id="c-1")

    assert api.submitted == [(1, "c-1", NOW)]
    assert state.current_week_number == 2
    assert state.last_result["score"] == 555.0
    assert state.due_source == DUE_SOURCE_SERVER
    assert mirror.is_week_due() is False
    clock.advance(days=8)
    assert mirror.is_week_due() is True


def test_corrupt_store_starts_empty(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")

    assert JsonFileStore(path).load() is None
    assert ClientMirror(_FakeApi(), JsonFileStore(path)).state == MirrorState()


def test_state_json_roundtrip_normalizes_instants():
    state = MirrorState(
        entitlement_status="active",
        trial_started_at=NOW,
        next_due_at=NOW + timedelta(days=7),
        due_source=DUE_SOURCE_SERVER,
        current_week_number=4,
    )
    assert MirrorState.from_json(state.to_json()) == state


class _Response:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body

    def json(self):
        return self._body


class _Session:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def test_api_client_surfaces_error_code():
    session = _Session(_Response(409, {"detail": "Already has paid access", "error_code": "CONFLICT"}))
    api = CadenceApiClient("https://api.test/", "tok", session=session)

    with pytest.raises(MirrorApiError) as exc:
        api.start_trial("UTC")

    assert exc.value.status_code == 409
    assert exc.value.error_code == "CONFLICT"
    assert exc.value.retryable is False
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "https://api.test/v1/billing/trial/start")
    assert kwargs["headers"]["Authorization"] == "Bearer tok"


def test_api_client_network_error_is_retryable():
    api = CadenceApiClient("https://api.test", "tok", session=_Session(error=requests.ConnectionError("down")))

    with pytest.raises(MirrorApiError) as exc:
        api.get_entitlement()

    assert exc.value.retryable is True
