"""
device.py
Biometric access-control terminal integration.

`DeviceCapability` is what the rest of the app talks to; `HikvisionDevice`
implements it over the terminal's ISAPI HTTP interface with digest auth.
"""

from __future__ import annotations

import abc
import logging
import uuid
from datetime import datetime, timedelta

import requests
from requests.auth import HTTPDigestAuth

from config import DEVICE_TIMEOUT
from models import DeviceConfig, DeviceEvent
from status import add_months

logger = logging.getLogger(__name__)

# Ports tried when the configured one does not answer
FALLBACK_PORTS = [(80, "http"), (443, "https"), (8080, "http")]

DISCOVERY_TIMEOUT = 5
MAX_EVENTS = 30


class DeviceError(Exception):
    pass


class DeviceConnectionError(DeviceError):
    pass


class DeviceTransportError(DeviceError):
    pass


class DeviceNotConnectedError(DeviceError):
    pass


class DeviceCapability(abc.ABC):
    @abc.abstractmethod
    def connect(self, config: DeviceConfig) -> tuple[bool, str]:
        """Open a session. Returns (success, message)."""

    @property
    @abc.abstractmethod
    def is_connected(self) -> bool:
        ...

    @abc.abstractmethod
    def get_recent_events(self, since: datetime) -> list[DeviceEvent]:
        """Events observed since `since`, in device order."""

    @abc.abstractmethod
    def disconnect(self) -> None:
        ...

    @abc.abstractmethod
    def enroll_member(self, member_id: int, name: str) -> bool:
        ...

    @abc.abstractmethod
    def capture_fingerprint(self, member_id: int) -> tuple[bool, str]:
        ...


def describe_event(event: DeviceEvent) -> str:
    if event.major == 5 and event.minor == 0:
        return "Access Granted"
    return f"Event {event.major}-{event.minor}"


def _parse_time(value) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def parse_events(payload: dict) -> list[DeviceEvent]:
    """
    Pull the event list out of an AcsEvent search response. Firmware
    versions disagree on the root and list key names.

    A response without a known root means no events. A root, list or item of
    the wrong shape raises DeviceTransportError.
    """
    if not isinstance(payload, dict):
        raise DeviceTransportError(f"Unexpected event response: {type(payload).__name__}")
    root = payload.get("AcsEvent") or payload.get("AcsEventSearchResult") or payload.get("AcsEventSearch")
    if root is None:
        return []
    if not isinstance(root, dict):
        raise DeviceTransportError(f"Unexpected event root: {type(root).__name__}")
    items = root.get("InfoList") or root.get("AcsEventTable") or root.get("AcsEvent") or []
    if not isinstance(items, list):
        raise DeviceTransportError(f"Unexpected event list: {type(items).__name__}")

    events = []
    for item in items:
        if not isinstance(item, dict):
            raise DeviceTransportError(f"Unexpected event item: {type(item).__name__}")
        subject = item.get("employeeNoString") or item.get("employeeNo") or ""
        try:
            major = int(item.get("major", 0))
            minor = int(item.get("minor", 0))
        except (TypeError, ValueError):
            continue
        events.append(
            DeviceEvent(
                subject_id=str(subject),
                major=major,
                minor=minor,
                timestamp=_parse_time(item.get("time")),
                name=item.get("name"),
            )
        )
    return events


def _device_time(value: datetime) -> str:
    return value.astimezone().isoformat(timespec="seconds")


class HikvisionDevice(DeviceCapability):
    def __init__(self, timeout: float = DEVICE_TIMEOUT):
        self.timeout = timeout
        self._session: requests.Session | None = None
        self._base_url = ""

    @property
    def is_connected(self) -> bool:
        return self._session is not None and bool(self._base_url)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _new_session(self, config: DeviceConfig) -> requests.Session:
        session = requests.Session()
        if config.username and config.password:
            session.auth = HTTPDigestAuth(config.username, config.password)
        # Terminals ship self-signed certificates
        session.verify = False
        session.headers.update({"Accept": "application/json, text/xml, */*"})
        return session

    def _find_protocol(self, session: requests.Session, address: str, port: int, log: list[str]) -> str | None:
        protocols = ["https"] if port == 443 else ["http", "https"]
        for proto in protocols:
            url = f"{proto}://{address}:{port}/ISAPI/System/deviceInfo"
            try:
                resp = session.get(url, timeout=DISCOVERY_TIMEOUT)
            except requests.RequestException as e:
                log.append(f"[{port}] {proto.upper()}: {e}")
                continue
            log.append(f"[{port}] {proto.upper()}: HTTP {resp.status_code}")
            # 401 still means an ISAPI service is listening
            if resp.ok or resp.status_code == 401:
                return proto
        return None

    def connect(self, config: DeviceConfig) -> tuple[bool, str]:
        self.disconnect()
        session = self._new_session(config)
        log: list[str] = [f"Connecting to {config.address}:{config.port}"]

        candidates = [(config.port, None)] + [(p, proto) for p, proto in FALLBACK_PORTS if p != config.port]
        for port, _ in candidates:
            proto = self._find_protocol(session, config.address, port, log)
            if proto:
                self._session = session
                self._base_url = f"{proto}://{config.address}:{port}/ISAPI"
                if port != config.port:
                    log.append(f"Found working ISAPI port {port}; update the device settings to use it.")
                logger.info("Connected to device at %s", self._base_url)
                return True, "\n".join(log)

        session.close()
        log.append("Could not find a working ISAPI endpoint. Check the address, network and credentials.")
        logger.warning("Device connection failed for %s:%s", config.address, config.port)
        return False, "\n".join(log)

    def disconnect(self) -> None:
        if self._session is not None:
            self._session.close()
        self._session = None
        self._base_url = ""

    def _require_session(self) -> requests.Session:
        if self._session is None or not self._base_url:
            raise DeviceNotConnectedError("Device not connected.")
        return self._session

    def _post(self, path: str, **kwargs) -> requests.Response:
        session = self._require_session()
        try:
            return session.post(f"{self._base_url}{path}", timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning("Device request %s failed: %s", path, e)
            raise DeviceTransportError(str(e)) from e

    def get_recent_events(self, since: datetime) -> list[DeviceEvent]:
        payload = {
            "AcsEventSearchDescription": {
                "searchID": str(uuid.uuid4()),
                "searchResultPosition": 0,
                "maxResults": MAX_EVENTS,
                "AcsEventCond": {
                    "searchID": str(uuid.uuid4()),
                    "startTime": _device_time(since),
                    "endTime": _device_time(datetime.now() + timedelta(days=1)),
                    "searchNum": MAX_EVENTS,
                },
            }
        }
        resp = self._post("/AccessControl/AcsEvent?format=json", json=payload)
        if not resp.ok:
            raise DeviceTransportError(f"Event search failed: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise DeviceTransportError(f"Unreadable event response: {e}") from e
        return parse_events(data)

    def enroll_member(self, member_id: int, name: str) -> bool:
        now = datetime.now()
        payload = {
            "UserInfo": {
                "employeeNo": str(member_id),
                "name": name,
                "userType": "normal",
                "closeDelayEnabled": False,
                "Valid": {
                    "enable": True,
                    "beginTime": now.strftime("%Y-%m-%dT%H:%M:%S"),
                    "endTime": datetime.combine(add_months(now.date(), 120), now.time()).strftime("%Y-%m-%dT%H:%M:%S"),
                    "timeType": "local",
                },
                "doorRight": "1",
                "RightPlan": [{"doorNo": 1, "planTemplateNo": "1"}],
            }
        }
        resp = self._post("/AccessControl/UserInfo/Record?format=json", json=payload)
        if resp.ok:
            return True
        body = resp.text.lower()
        if resp.status_code == 409 or "already" in body or "exist" in body:
            return True
        raise DeviceError(f"Failed to create user: HTTP {resp.status_code} - {resp.text}")

    def capture_fingerprint(self, member_id: int) -> tuple[bool, str]:
        xml = (
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<CaptureFingerPrintCond version="2.0" xmlns="http://www.isapi.org/ver20/XMLSchema">'
            "<searchID>1</searchID>"
            f"<employeeNo>{member_id}</employeeNo>"
            "<fingerNo>1</fingerNo>"
            f"<sessionID>Session{uuid.uuid4().hex}</sessionID>"
            "<fingerPrintType>normalFP</fingerPrintType>"
            "<overWrite>true</overWrite>"
            "</CaptureFingerPrintCond>"
        )
        resp = self._post(
            "/AccessControl/CaptureFingerPrint",
            data=xml.encode("utf-8"),
            headers={"Content-Type": "application/xml"},
        )
        if resp.ok:
            return True, "Device is in enrollment mode. Place the finger on the sensor when it beeps."
        return False, f"Device rejected capture command: HTTP {resp.status_code}\n{resp.text}"
