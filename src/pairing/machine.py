from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Optional

from state.models import ClientEvent, PairingSnapshot, PairingStatus, SessionBlob
from state.s3_store import StoreUnavailable

from .client import AutomationClient, AutomationClientError


logger = logging.getLogger(__name__)

_PAIRING = (PairingStatus.CONNECTING, PairingStatus.AWAITING_SCAN)


class StartResult(str, Enum):
    INITIALIZING = "initializing"  # a new pairing/resume cycle was started
    CONNECTING = "connecting"  # a cycle is already in progress
    READY = "ready"  # already paired


class PairingStateMachine:
    """
    Single authority for the process-wide pairing state.

    The automation client's lifecycle events and router commands are applied
    under one lock, in arrival order. That lock only guards in-memory state,
    so `current_status` never waits on the network. Store I/O is serialized by
    a second lock, always taken before the state lock, and each write checks
    the cycle counter before committing its result. Calls into the automation
    client run under neither lock, since the client reports back through the
    same event channel.

    Session blob policy
    - `ready` saves the blob (durability checkpoint).
    - `auth_failure` and `logout` delete it.
    - a plain `disconnected` leaves it in place so the next `start` resumes.
    """

    def __init__(self, *, store, client: AutomationClient, identity: str) -> None:
        if not identity:
            raise ValueError("identity is required")
        self._store = store
        self._client = client
        self._identity = identity
        self._lock = threading.RLock()
        # held across store calls; never acquired while holding _lock
        self._store_lock = threading.Lock()

        self._status = PairingStatus.IDLE
        self._code: Optional[str] = None
        self._reason: Optional[str] = None
        self._resumed = False
        self._cycle = 0
        # set when an auth-failure delete could not reach the store
        self._erase_pending = False

    @property
    def identity(self) -> str:
        return self._identity

    # --------------- Queries ---------------
    def current_status(self) -> PairingSnapshot:
        with self._lock:
            return PairingSnapshot(
                status=self._status,
                pairing_code=self._code,
                client_identity=self._identity,
                last_reason=self._reason,
                resumed=self._resumed,
            )

    # --------------- Commands ---------------
    def start(self) -> StartResult:
        """
        Begin a pairing cycle unless one is already running.

        Resumes from the stored session blob when there is one. Raises
        StoreUnavailable (state unchanged) when the store cannot be read, and
        AutomationClientError when the client refuses to initialize (state
        moves to disconnected).
        """
        with self._lock:
            if self._status is PairingStatus.READY:
                logger.info("start() ignored: client already ready")
                return StartResult.READY
            if self._status in _PAIRING:
                logger.info("start() ignored: pairing already in progress (%s)", self._status.value)
                return StartResult.CONNECTING

            previous = (self._status, self._reason, self._resumed)
            self._cycle += 1
            cycle = self._cycle
            self._reason = None
            self._transition(PairingStatus.CONNECTING)

        with self._store_lock:
            with self._lock:
                erase = self._erase_pending
            try:
                if erase:
                    self._store.delete(self._identity)
                    logger.info("Deferred session erase for %s completed", self._identity)
                blob = self._store.extract(self._identity)
            except StoreUnavailable:
                with self._lock:
                    if self._cycle == cycle and self._status in _PAIRING:
                        status, self._reason, self._resumed = previous
                        self._transition(status)
                raise

            with self._lock:
                if erase:
                    self._erase_pending = False
                if self._cycle != cycle or self._status not in _PAIRING:
                    logger.warning("Pairing cycle ended before the client was initialized")
                    return StartResult.INITIALIZING
                self._resumed = blob is not None

        try:
            self._client.initialize(blob)
        except AutomationClientError as e:
            logger.error("Automation client failed to initialize: %s", e)
            with self._lock:
                if self._cycle == cycle and self._status in _PAIRING:
                    self._enter_disconnected(f"initialize failed: {e}")
            raise
        return StartResult.INITIALIZING

    def logout(self) -> None:
        """Explicit logout: end the client session and erase the stored blob."""
        try:
            self._client.logout()
        except AutomationClientError as e:
            logger.warning("Automation client logout failed, erasing session anyway: %s", e)

        with self._store_lock:
            try:
                self._store.delete(self._identity)
            except StoreUnavailable:
                with self._lock:
                    self._erase_pending = True
                    self._enter_disconnected("logout")
                raise
            with self._lock:
                self._erase_pending = False
                self._enter_disconnected("logout")

    # --------------- Automation client events ---------------
    def pairing_code_issued(self, code: str) -> bool:
        """Record a new pairing code; returns False when the event was stale."""
        if not code:
            raise ValueError("code is required")
        with self._lock:
            if self._status not in _PAIRING:
                logger.warning("Ignoring pairing code received while %s", self._status.value)
                return False
            if self._code is not None:
                logger.info("Pairing code rotated; previous code invalidated")
            self._transition(PairingStatus.AWAITING_SCAN, code=code)
            return True

    def authenticated(self) -> None:
        with self._lock:
            logger.info("Client authenticated (status=%s)", self._status.value)

    def ready(self, session: Optional[SessionBlob] = None) -> None:
        """Mark the client ready and checkpoint its session blob to the store."""
        with self._lock:
            if self._status is PairingStatus.READY:
                logger.info("Duplicate ready event ignored")
                return
            if self._status not in _PAIRING:
                logger.warning("Ignoring ready event received while %s", self._status.value)
                return
            self._transition(PairingStatus.READY)
            cycle = self._cycle

        blob = session
        if blob is None:
            try:
                blob = self._client.session_blob()
            except AutomationClientError as e:
                logger.error("Could not fetch session blob from client: %s", e)
                with self._lock:
                    if self._cycle == cycle and self._status is PairingStatus.READY:
                        self._reason = f"session fetch failed: {e}"
                return
        if blob is None:
            logger.warning("Client reported ready without a session blob; nothing saved")
            return

        with self._store_lock:
            with self._lock:
                if self._cycle != cycle or self._status is not PairingStatus.READY:
                    logger.info("Skipping session save: state moved on before checkpoint")
                    return
            try:
                self._store.save(self._identity, blob)
            except StoreUnavailable as e:
                logger.error("Session checkpoint failed: %s", e)
                with self._lock:
                    if self._cycle == cycle and self._status is PairingStatus.READY:
                        self._reason = f"session save failed: {e}"

    def disconnected(self, reason: Optional[str] = None) -> None:
        """Plain disconnect; the stored blob is kept for the next resume."""
        with self._lock:
            self._enter_disconnected(reason or "disconnected")

    def auth_failure(self, message: Optional[str] = None) -> None:
        """Authentication failed: erase the stored blob, then disconnect."""
        with self._store_lock:
            try:
                self._store.delete(self._identity)
                erased = True
            except StoreUnavailable as e:
                logger.error("Could not erase session after auth failure, will retry on start: %s", e)
                erased = False
            with self._lock:
                self._erase_pending = not erased
                self._enter_disconnected(f"auth_failure: {message}" if message else "auth_failure")

    def dispatch(self, event: ClientEvent) -> PairingSnapshot:
        """Apply one lifecycle event and return the resulting snapshot."""
        if event.type == "qr":
            self.pairing_code_issued(event.qr or "")
        elif event.type == "authenticated":
            self.authenticated()
        elif event.type == "ready":
            self.ready(event.session_blob())
        elif event.type == "disconnected":
            self.disconnected(event.reason)
        elif event.type == "auth_failure":
            self.auth_failure(event.reason)
        else:
            raise ValueError(f"{event.type!r} is not a lifecycle event")
        return self.current_status()

    # --------------- Internal ---------------
    def _enter_disconnected(self, reason: str) -> None:
        self._reason = reason
        self._transition(PairingStatus.DISCONNECTED)

    def _transition(self, status: PairingStatus, *, code: Optional[str] = None) -> None:
        # callers hold the lock; the code only survives in awaiting_scan
        previous = self._status
        self._status = status
        self._code = code if status is PairingStatus.AWAITING_SCAN else None
        if previous is not status:
            logger.info("Pairing status %s -> %s", previous.value, status.value)
