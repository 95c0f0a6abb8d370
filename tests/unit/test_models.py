from __future__ import annotations

import pytest
from pydantic import ValidationError

from state.models import ClientEvent, PairingSnapshot, PairingStatus


def test_snapshot_rejects_code_outside_awaiting_scan():
    with pytest.raises(ValidationError):
        PairingSnapshot(status=PairingStatus.READY, pairing_code="ABC", client_identity="x")
    with pytest.raises(ValidationError):
        PairingSnapshot(status=PairingStatus.AWAITING_SCAN, client_identity="x")
    snap = PairingSnapshot(status=PairingStatus.AWAITING_SCAN, pairing_code="ABC", client_identity="x")
    assert snap.pairing_code == "ABC"


def test_event_payload_validation():
    with pytest.raises(ValidationError):
        ClientEvent(type="qr")
    with pytest.raises(ValidationError):
        ClientEvent(type="message")
    with pytest.raises(ValidationError):
        ClientEvent(type="logged_in")


def test_event_session_blob_decoding():
    assert ClientEvent(type="ready").session_blob() is None
    assert ClientEvent(type="ready", session="YmxvYg==").session_blob() == b"blob"
    with pytest.raises(ValueError):
        ClientEvent(type="ready", session="not base64!").session_blob()
