import os
import sys

import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `common.*`, `state.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


class FakeSessionStore:
    """In-memory stand-in for S3SessionStore that records every call."""

    def __init__(self) -> None:
        self.records = {}
        self.saves = []
        self.deletes = []
        self.extracts = []
        self.failing = set()  # operation names that raise StoreUnavailable

    def _maybe_fail(self, op: str) -> None:
        if op in self.failing:
            from state.s3_store import StoreUnavailable

            raise StoreUnavailable(f"{op} failed (fake)")

    def save(self, identity, blob):
        self._maybe_fail("save")
        self.saves.append((identity, blob))
        self.records[identity] = blob

    def extract(self, identity):
        self._maybe_fail("extract")
        self.extracts.append(identity)
        return self.records.get(identity)

    def delete(self, identity):
        self._maybe_fail("delete")
        self.deletes.append(identity)
        self.records.pop(identity, None)

    def check(self):
        self._maybe_fail("check")


class FakeAutomationClient:
    """Records what the state machine asked of the automation client."""

    def __init__(self) -> None:
        self.initialized = []
        self.blob = b"session-from-client"
        self.logouts = 0
        self.sent = []
        self.fail_initialize = False

    def initialize(self, session):
        if self.fail_initialize:
            from pairing.client import AutomationClientError

            raise AutomationClientError("bridge down (fake)")
        self.initialized.append(session)

    def session_blob(self):
        return self.blob

    def logout(self):
        self.logouts += 1

    def send_text(self, chat_id, text):
        self.sent.append((chat_id, text))


@pytest.fixture
def store():
    return FakeSessionStore()


@pytest.fixture
def automation():
    return FakeAutomationClient()


@pytest.fixture
def machine(store, automation):
    from pairing.machine import PairingStateMachine

    return PairingStateMachine(store=store, client=automation, identity="store-bot")
