"""
poller.py
Watches the biometric terminal for an identification event and resolves it
to a member record.

One `IdentificationPoller` owns one device session at a time. `start()` runs
the session on a background thread and hands exactly one `PollOutcome` to the
callback (or nothing, when the session is cancelled).
"""

from __future__ import annotations

import enum
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import config
import db
from device import DeviceCapability, DeviceConnectionError, DeviceError
from models import DeviceEvent, MemberSnapshot, OutcomeKind, PollOutcome
from status import compute_member_status, utc_today

logger = logging.getLogger(__name__)

# 5 = access control event, 1 = alarm
ACCEPTED_MAJORS = frozenset({5, 1})


class ConfigurationError(Exception):
    pass


class PollerState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    REPORTING = "reporting"


@dataclass(frozen=True)
class PollerSettings:
    interval: float = 1.0
    lookback: float = 5.0
    history_limit: int = 20
    accepted_majors: frozenset = ACCEPTED_MAJORS

    @classmethod
    def from_env(cls) -> "PollerSettings":
        return cls(
            interval=config.POLL_INTERVAL,
            lookback=config.POLL_LOOKBACK,
            history_limit=config.HISTORY_LIMIT,
        )


def qualifying_member_id(event: DeviceEvent, accepted_majors=ACCEPTED_MAJORS) -> int | None:
    """Member id carried by `event`, or None if the event does not identify anyone."""
    subject = (event.subject_id or "").strip()
    if not subject or subject == "0":
        return None
    if event.major not in accepted_majors:
        return None
    try:
        member_id = int(subject)
    except ValueError:
        return None
    return member_id if member_id > 0 else None


class IdentificationPoller:
    def __init__(self, device: DeviceCapability, repo=db, settings: PollerSettings | None = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.device = device
        self.repo = repo
        self.settings = settings or PollerSettings.from_env()
        self.clock = clock
        self._lock = threading.Lock()
        self._state = PollerState.IDLE
        self._cancel: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> PollerState:
        with self._lock:
            return self._state

    def _set_state(self, state: PollerState) -> None:
        with self._lock:
            self._state = state

    @property
    def is_listening(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self, on_outcome: Callable[[PollOutcome], None] | None = None) -> bool:
        """
        Start a session, or cancel the running one. Returns True if a new
        session was started.
        """
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                self._cancel.set()
                logger.info("Identification session cancelled")
                return False
            cancel = threading.Event()
            self._cancel = cancel
            self._thread = threading.Thread(
                target=self.run_session,
                args=(cancel, on_outcome),
                name="identification-poller",
                daemon=True,
            )
            self._thread.start()
            return True

    def cancel(self) -> None:
        with self._lock:
            if self._cancel is not None:
                self._cancel.set()

    def join(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def close(self) -> None:
        self.cancel()
        self.join(timeout=self.settings.interval * 2 + 1)
        self.device.disconnect()

    def run_session(self, cancel: threading.Event,
                    on_outcome: Callable[[PollOutcome], None] | None = None) -> PollOutcome | None:
        """Run one session to completion on the calling thread."""
        try:
            try:
                outcome = self._session(cancel)
            except Exception as e:
                logger.exception("Identification session failed")
                self.device.disconnect()
                outcome = PollOutcome(OutcomeKind.CONNECTION_ERROR, f"Error listening for events: {e}")
            if outcome is None or cancel.is_set():
                return None
            self._set_state(PollerState.REPORTING)
            logger.info("Identification session finished: %s", outcome.kind.value)
            if on_outcome is not None:
                on_outcome(outcome)
            return outcome
        finally:
            self._set_state(PollerState.IDLE)

    def _ensure_connected(self) -> None:
        """
        Reuse an open device session as is; the stored config is read only to
        open a new one. Sessions that end on a device failure disconnect, so
        the next one reconnects with the current config.
        """
        if self.device.is_connected:
            return
        record = self.repo.get_configured_device()
        if record is None:
            raise ConfigurationError("No biometric device configured in the system. Please add a device first.")
        ok, message = self.device.connect(record.to_config())
        if not ok:
            raise DeviceConnectionError(message)

    def _session(self, cancel: threading.Event) -> PollOutcome | None:
        self._set_state(PollerState.CONNECTING)
        try:
            self._ensure_connected()
        except ConfigurationError as e:
            return PollOutcome(OutcomeKind.CONFIG_ERROR, str(e))
        except sqlite3.Error as e:
            return PollOutcome(OutcomeKind.DATABASE_ERROR, f"Database error loading device config: {e}")
        except DeviceError as e:
            logger.warning("Could not connect to device")
            self.device.disconnect()
            return PollOutcome(OutcomeKind.CONNECTION_ERROR, f"Could not connect to device: {e}")

        if cancel.is_set():
            return None

        self._set_state(PollerState.LISTENING)
        # Look back slightly so a scan made just before listening still counts
        checkpoint = self.clock() - timedelta(seconds=self.settings.lookback)
        logger.info("Listening for identification events since %s", checkpoint)

        while not cancel.is_set():
            try:
                events = self.device.get_recent_events(checkpoint)
            except DeviceError as e:
                logger.warning("Lost device session: %s", e)
                self.device.disconnect()
                return PollOutcome(OutcomeKind.CONNECTION_ERROR, f"Error listening for events: {e}")

            if cancel.is_set():
                return None

            if events:
                checkpoint = self.clock()
                member_id = self._first_match(events)
                if member_id is not None:
                    return self._resolve(member_id, cancel)

            if cancel.wait(self.settings.interval):
                break
        return None

    def _first_match(self, events: list[DeviceEvent]) -> int | None:
        for event in events:
            member_id = qualifying_member_id(event, self.settings.accepted_majors)
            if member_id is not None:
                return member_id
            logger.debug("Ignoring device event subject=%r major=%s", event.subject_id, event.major)
        return None

    def _resolve(self, member_id: int, cancel: threading.Event) -> PollOutcome | None:
        try:
            found = self.repo.get_member_with_package(member_id)
            if found is None:
                return PollOutcome(
                    OutcomeKind.NOT_FOUND,
                    f"Member ID {member_id} found on device but not in database.",
                    subject_id=str(member_id),
                )
            if cancel.is_set():
                return None
            member, package = found
            history = self.repo.recent_attendance(member_id, self.settings.history_limit)
            payment = self.repo.latest_payment(member_id, member.assigned_package_id)
        except sqlite3.Error as e:
            return PollOutcome(OutcomeKind.DATABASE_ERROR, f"Error loading member data: {e}", subject_id=str(member_id))

        view = compute_member_status(
            utc_today(),
            member.assigned_package_id is not None,
            package.duration_months if package is not None else None,
            payment,
        )
        logger.info("Identified member %s", member_id)
        return PollOutcome(
            OutcomeKind.MATCH,
            subject_id=str(member_id),
            snapshot=MemberSnapshot(member=member, package=package, status=view, recent_attendance=history),
        )
