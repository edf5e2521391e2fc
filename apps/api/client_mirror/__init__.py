"""
Offline-tolerant client mirror of the entitlement / cadence state.

The mobile client keeps a local copy of the server snapshot and reconciles it
on every foreground and after every check-in submission.
"""
from client_mirror.api_client import CadenceApiClient, MirrorApiError
from client_mirror.mirror import ClientMirror, MirrorState, fallback_due_instant
from client_mirror.store import JsonFileStore

__all__ = [
    "CadenceApiClient",
    "ClientMirror",
    "JsonFileStore",
    "MirrorApiError",
    "MirrorState",
    "fallback_due_instant",
]
