"""
External calendar clients
One adapter per platform behind a common interface; CALENDAR_CLIENTS maps a
CalendarPlatform value to its adapter.

- Google Calendar API v3 (OAuth)
- Microsoft Graph for Outlook and Teams (OAuth, separate app registrations)
- iCloud CalDAV for Apple (Apple ID + app-specific password)
"""

import json
import logging
import uuid
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator, Optional
from urllib.parse import urlencode, urljoin, urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from ...config import (
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REDIRECT_URI,
    OUTLOOK_CLIENT_ID,
    OUTLOOK_CLIENT_SECRET,
    OUTLOOK_REDIRECT_URI,
    TEAMS_CLIENT_ID,
    TEAMS_CLIENT_SECRET,
    TEAMS_REDIRECT_URI,
)
from ...models_calendar import CalendarPlatform

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - OAuth endpoint URL
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]

MICROSOFT_AUTH_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"  # noqa: S105
GRAPH_API = "https://graph.microsoft.com/v1.0"
MICROSOFT_SCOPES = [
    "https://graph.microsoft.com/Calendars.Read",
    "https://graph.microsoft.com/Calendars.ReadWrite",
    "https://graph.microsoft.com/User.Read",
    "offline_access",
]

CALDAV_BASE_URL = "https://caldav.icloud.com"
CALDAV_SKIP_SEGMENTS = ("/inbox/", "/outbox/", "/notification/", "/dropbox/", "/attachments/")
DAV_NS = {"d": "DAV:", "c": "urn:ietf:params:xml:ns:caldav", "a": "http://apple.com/ns/ical/"}

REQUEST_TIMEOUT = 30.0


class CalendarAPIError(Exception):
    """An external calendar API call failed"""


class CalendarReauthorizationRequired(CalendarAPIError):
    """Stored credentials no longer work; the provider must reconnect"""


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    email: Optional[str] = None


@dataclass
class AvailableCalendar:
    id: str
    name: str
    is_default: bool = False
    can_write: bool = False
    description: Optional[str] = None
    color: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "isDefault": self.is_default,
            "canWrite": self.can_write,
            "color": self.color,
        }


@dataclass
class ExternalEvent:
    external_id: str
    title: Optional[str]
    start: datetime  # naive UTC
    end: datetime  # naive UTC
    is_all_day: bool = False


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _rfc3339(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat() + "Z"


class CalendarClient(ABC):
    """Interface every calendar platform adapter implements"""

    platform: str = ""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    @asynccontextmanager
    async def http(self, **kwargs) -> AsyncIterator[httpx.AsyncClient]:
        """AsyncClient whose transport failures surface as CalendarAPIError"""
        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self.transport, **kwargs) as client:
                yield client
        except httpx.HTTPError as e:
            logger.error(f"❌ {self.platform} calendar request failed: {e!r}")
            raise CalendarAPIError(f"{self.platform} calendar unreachable: {e}") from e

    @property
    def uses_oauth(self) -> bool:
        return self.platform in CalendarPlatform.OAUTH

    def authorization_url(self, state: str) -> str:
        raise CalendarAPIError(f"{self.platform} does not use OAuth")

    async def exchange_code(self, code: str) -> TokenGrant:
        raise CalendarAPIError(f"{self.platform} does not use OAuth")

    async def refresh(self, refresh_token: str) -> TokenGrant:
        raise CalendarReauthorizationRequired(f"{self.platform} credentials cannot be refreshed")

    @abstractmethod
    async def list_calendars(self, credential: str) -> list[AvailableCalendar]:
        """All calendars visible to the account"""

    @abstractmethod
    async def fetch_events(
        self, credential: str, calendar_id: str, start: datetime, end: datetime
    ) -> list[ExternalEvent]:
        """Busy events in [start, end) (naive UTC)"""

    @abstractmethod
    async def create_event(self, credential: str, calendar_id: str, event: dict) -> str:
        """Create an event and return its external id"""

    @abstractmethod
    async def delete_event(self, credential: str, calendar_id: str, event_id: str) -> None:
        pass


# ============================================================================
# GOOGLE
# ============================================================================


class GoogleCalendarClient(CalendarClient):
    platform = CalendarPlatform.GOOGLE

    def authorization_url(self, state: str) -> str:
        if not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET:
            raise CalendarAPIError("Google Calendar not configured")
        params = {
            "client_id": GOOGLE_CLIENT_ID,
            "redirect_uri": GOOGLE_REDIRECT_URI,
            "response_type": "code",
            "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, data: dict) -> dict:
        async with self.http() as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={"client_id": GOOGLE_CLIENT_ID, "client_secret": GOOGLE_CLIENT_SECRET, **data},
            )
        if response.status_code != 200:
            logger.error(f"❌ Google token request failed: {response.text}")
            raise CalendarReauthorizationRequired("Google token request failed")
        return response.json()

    async def exchange_code(self, code: str) -> TokenGrant:
        tokens = await self._token_request(
            {"code": code, "redirect_uri": GOOGLE_REDIRECT_URI, "grant_type": "authorization_code"}
        )
        access_token = tokens.get("access_token")
        if not access_token:
            raise CalendarAPIError("Invalid token response")

        async with self.http() as client:
            user_info = await client.get(
                GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
            )
        if user_info.status_code != 200:
            logger.error(f"❌ Failed to get Google user info: {user_info.text}")
            raise CalendarAPIError("Failed to get user info")

        return TokenGrant(
            access_token=access_token,
            refresh_token=tokens.get("refresh_token"),
            expires_in=int(tokens.get("expires_in", 3600)),
            email=user_info.json().get("email"),
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        tokens = await self._token_request(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"}
        )
        if not tokens.get("access_token"):
            raise CalendarReauthorizationRequired("No access token in refresh response")
        return TokenGrant(
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token") or refresh_token,
            expires_in=int(tokens.get("expires_in", 3600)),
        )

    async def _get(self, credential: str, path: str, params: Optional[dict] = None) -> dict:
        async with self.http() as client:
            response = await client.get(
                f"{GOOGLE_CALENDAR_API}{path}",
                headers={"Authorization": f"Bearer {credential}"},
                params=params,
            )
        if response.status_code == 401:
            raise CalendarReauthorizationRequired("Google rejected the access token")
        if response.status_code != 200:
            raise CalendarAPIError(f"Google Calendar API error {response.status_code}: {response.text}")
        return response.json()

    async def list_calendars(self, credential: str) -> list[AvailableCalendar]:
        data = await self._get(
            credential, "/users/me/calendarList", {"minAccessRole": "reader", "showHidden": "false"}
        )
        return [
            AvailableCalendar(
                id=item["id"],
                name=item.get("summary") or item.get("summaryOverride") or "Unnamed Calendar",
                description=item.get("description"),
                is_default=bool(item.get("primary")),
                can_write=item.get("accessRole") in ("owner", "writer"),
                color=item.get("backgroundColor"),
            )
            for item in data.get("items", [])
        ]

    @staticmethod
    def _parse_time(value: dict) -> tuple[datetime, bool]:
        if "dateTime" in value:
            return _naive_utc(datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))), False
        return datetime.combine(date.fromisoformat(value["date"]), datetime.min.time()), True

    async def fetch_events(
        self, credential: str, calendar_id: str, start: datetime, end: datetime
    ) -> list[ExternalEvent]:
        data = await self._get(
            credential,
            f"/calendars/{calendar_id}/events",
            {
                "timeMin": _rfc3339(start),
                "timeMax": _rfc3339(end),
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": 2500,
            },
        )
        events = []
        for item in data.get("items", []):
            # Cancelled and "show as available" events do not block time
            if item.get("status") == "cancelled" or item.get("transparency") == "transparent":
                continue
            if "start" not in item or "end" not in item:
                continue
            event_start, all_day = self._parse_time(item["start"])
            event_end, _ = self._parse_time(item["end"])
            events.append(
                ExternalEvent(
                    external_id=item["id"],
                    title=item.get("summary"),
                    start=event_start,
                    end=event_end,
                    is_all_day=all_day,
                )
            )
        return events

    async def create_event(self, credential: str, calendar_id: str, event: dict) -> str:
        body = {
            "summary": event["title"],
            "description": event.get("description", ""),
            "start": {"dateTime": _rfc3339(event["start"]), "timeZone": "UTC"},
            "end": {"dateTime": _rfc3339(event["end"]), "timeZone": "UTC"},
        }
        if event.get("location"):
            body["location"] = event["location"]
        if event.get("attendee_email"):
            body["attendees"] = [{"email": event["attendee_email"]}]

        async with self.http() as client:
            response = await client.post(
                f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events",
                headers={"Authorization": f"Bearer {credential}"},
                json=body,
            )
        if response.status_code not in (200, 201):
            raise CalendarAPIError(f"Failed to create Google event: {response.text}")
        return response.json()["id"]

    async def delete_event(self, credential: str, calendar_id: str, event_id: str) -> None:
        async with self.http() as client:
            response = await client.delete(
                f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events/{event_id}",
                headers={"Authorization": f"Bearer {credential}"},
            )
        if response.status_code not in (200, 204, 410):
            raise CalendarAPIError(f"Failed to delete Google event: {response.text}")


# ============================================================================
# MICROSOFT GRAPH (OUTLOOK / TEAMS)
# ============================================================================


class MicrosoftGraphClient(CalendarClient):
    """Outlook and Teams share Graph endpoints and differ only in app registration"""

    def __init__(
        self,
        platform: str,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(transport)
        self.platform = platform
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri

    def authorization_url(self, state: str) -> str:
        if not self.client_id or not self.client_secret:
            raise CalendarAPIError(f"{self.platform.title()} calendar not configured")
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(MICROSOFT_SCOPES),
            "response_mode": "query",
            "prompt": "select_account",
            "state": state,
        }
        return f"{MICROSOFT_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, data: dict) -> dict:
        async with self.http() as client:
            response = await client.post(
                MICROSOFT_TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": " ".join(MICROSOFT_SCOPES),
                    **data,
                },
            )
        if response.status_code != 200:
            logger.error(f"❌ Microsoft token request failed: {response.text}")
            raise CalendarReauthorizationRequired("Microsoft token request failed")
        return response.json()

    async def exchange_code(self, code: str) -> TokenGrant:
        tokens = await self._token_request(
            {"code": code, "redirect_uri": self.redirect_uri, "grant_type": "authorization_code"}
        )
        access_token = tokens.get("access_token")
        if not access_token:
            raise CalendarAPIError("Invalid token response")

        me = await self._get(access_token, "/me")
        return TokenGrant(
            access_token=access_token,
            refresh_token=tokens.get("refresh_token"),
            expires_in=int(tokens.get("expires_in", 3600)),
            email=me.get("mail") or me.get("userPrincipalName"),
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        tokens = await self._token_request(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"}
        )
        if not tokens.get("access_token"):
            raise CalendarReauthorizationRequired("No access token in refresh response")
        return TokenGrant(
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token") or refresh_token,
            expires_in=int(tokens.get("expires_in", 3600)),
        )

    async def _get(self, credential: str, path: str, params: Optional[dict] = None) -> dict:
        async with self.http() as client:
            response = await client.get(
                f"{GRAPH_API}{path}",
                headers={
                    "Authorization": f"Bearer {credential}",
                    "Prefer": 'outlook.timezone="UTC"',
                },
                params=params,
            )
        if response.status_code == 401:
            raise CalendarReauthorizationRequired("Microsoft rejected the access token")
        if response.status_code != 200:
            raise CalendarAPIError(f"Microsoft Graph error {response.status_code}: {response.text}")
        return response.json()

    @staticmethod
    def _calendar_path(calendar_id: str) -> str:
        return "/me/calendar" if calendar_id in ("", "primary") else f"/me/calendars/{calendar_id}"

    async def list_calendars(self, credential: str) -> list[AvailableCalendar]:
        data = await self._get(
            credential, "/me/calendars", {"$select": "id,name,color,isDefaultCalendar,canEdit,owner"}
        )
        return [
            AvailableCalendar(
                id=item["id"],
                name=item.get("name") or "Unnamed Calendar",
                is_default=bool(item.get("isDefaultCalendar")),
                can_write=bool(item.get("canEdit")),
                color=item.get("color"),
            )
            for item in data.get("value", [])
        ]

    async def fetch_events(
        self, credential: str, calendar_id: str, start: datetime, end: datetime
    ) -> list[ExternalEvent]:
        data = await self._get(
            credential,
            f"{self._calendar_path(calendar_id)}/calendarView",
            {
                "startDateTime": _rfc3339(start),
                "endDateTime": _rfc3339(end),
                "$top": 500,
                "$select": "id,subject,start,end,isAllDay,showAs,isCancelled",
            },
        )
        events = []
        for item in data.get("value", []):
            if item.get("isCancelled") or item.get("showAs") == "free":
                continue
            events.append(
                ExternalEvent(
                    external_id=item["id"],
                    title=item.get("subject"),
                    # Times come back in UTC because of the Prefer header
                    start=datetime.fromisoformat(item["start"]["dateTime"][:19]),
                    end=datetime.fromisoformat(item["end"]["dateTime"][:19]),
                    is_all_day=bool(item.get("isAllDay")),
                )
            )
        return events

    async def create_event(self, credential: str, calendar_id: str, event: dict) -> str:
        body: dict[str, Any] = {
            "subject": event["title"],
            "body": {"contentType": "text", "content": event.get("description", "")},
            "start": {"dateTime": event["start"].isoformat(), "timeZone": "UTC"},
            "end": {"dateTime": event["end"].isoformat(), "timeZone": "UTC"},
        }
        if event.get("location"):
            body["location"] = {"displayName": event["location"]}
        if event.get("attendee_email"):
            body["attendees"] = [
                {"emailAddress": {"address": event["attendee_email"]}, "type": "required"}
            ]
        if self.platform == CalendarPlatform.TEAMS:
            body["isOnlineMeeting"] = True
            body["onlineMeetingProvider"] = "teamsForBusiness"

        async with self.http() as client:
            response = await client.post(
                f"{GRAPH_API}{self._calendar_path(calendar_id)}/events",
                headers={"Authorization": f"Bearer {credential}"},
                json=body,
            )
        if response.status_code not in (200, 201):
            raise CalendarAPIError(f"Failed to create {self.platform} event: {response.text}")
        return response.json()["id"]

    async def delete_event(self, credential: str, calendar_id: str, event_id: str) -> None:
        async with self.http() as client:
            response = await client.delete(
                f"{GRAPH_API}/me/events/{event_id}",
                headers={"Authorization": f"Bearer {credential}"},
            )
        if response.status_code not in (200, 204, 404):
            raise CalendarAPIError(f"Failed to delete {self.platform} event: {response.text}")


# ============================================================================
# APPLE (iCloud CalDAV)
# ============================================================================


def _ical_unfold(data: str) -> list[str]:
    lines: list[str] = []
    for raw in data.replace("\r\n", "\n").split("\n"):
        if raw[:1] in (" ", "\t") and lines:
            lines[-1] += raw[1:]
        elif raw:
            lines.append(raw)
    return lines


def _ical_datetime(name_and_params: str, value: str) -> tuple[datetime, bool]:
    """DTSTART/DTEND value -> (naive UTC, is_all_day)"""
    params = dict(p.split("=", 1) for p in name_and_params.split(";")[1:] if "=" in p)
    if params.get("VALUE") == "DATE" or len(value) == 8:
        return datetime.strptime(value, "%Y%m%d"), True
    if value.endswith("Z"):
        return datetime.strptime(value, "%Y%m%dT%H%M%SZ"), False
    local = datetime.strptime(value, "%Y%m%dT%H%M%S")
    tzid = params.get("TZID")
    if tzid:
        try:
            return _naive_utc(local.replace(tzinfo=ZoneInfo(tzid))), False
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"⚠️ Unknown TZID '{tzid}' in CalDAV event, treating as UTC")
    return local, False


def parse_ical_events(data: str) -> list[ExternalEvent]:
    """VEVENTs of an iCalendar payload as busy events"""
    events = []
    current: Optional[dict] = None
    for line in _ical_unfold(data):
        if line == "BEGIN:VEVENT":
            current = {}
            continue
        if line == "END:VEVENT" and current is not None:
            if "uid" in current and "start" in current and current.get("transp") != "TRANSPARENT":
                start, all_day = current["start"]
                end = current.get("end", (start + timedelta(days=1 if all_day else 0), all_day))[0]
                events.append(
                    ExternalEvent(
                        external_id=current["uid"],
                        title=current.get("summary"),
                        start=start,
                        end=end,
                        is_all_day=all_day,
                    )
                )
            current = None
            continue
        if current is None or ":" not in line:
            continue
        head, value = line.split(":", 1)
        name = head.split(";", 1)[0].upper()
        if name == "UID":
            current["uid"] = value
        elif name == "SUMMARY":
            current["summary"] = value
        elif name == "TRANSP":
            current["transp"] = value.upper()
        elif name == "DTSTART":
            current["start"] = _ical_datetime(head, value)
        elif name == "DTEND":
            current["end"] = _ical_datetime(head, value)
    return events


def build_ical_event(uid: str, event: dict) -> str:
    def fmt(value: datetime) -> str:
        return value.strftime("%Y%m%dT%H%M%SZ")

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Zone Meet//Bookings//EN",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"DTSTAMP:{fmt(datetime.now(timezone.utc).replace(tzinfo=None))}",
        f"DTSTART:{fmt(event['start'])}",
        f"DTEND:{fmt(event['end'])}",
        f"SUMMARY:{event['title']}",
    ]
    if event.get("description"):
        lines.append("DESCRIPTION:" + event["description"].replace("\n", "\\n"))
    if event.get("location"):
        lines.append(f"LOCATION:{event['location']}")
    lines += ["STATUS:CONFIRMED", "END:VEVENT", "END:VCALENDAR"]
    return "\r\n".join(lines)


class AppleCalDAVClient(CalendarClient):
    """The stored credential is JSON {"appleId": ..., "appSpecificPassword": ...}"""

    platform = CalendarPlatform.APPLE

    @staticmethod
    def credentials(credential: str) -> tuple[str, str]:
        data = json.loads(credential)
        return data["appleId"], data["appSpecificPassword"]

    async def _request(
        self, client: httpx.AsyncClient, method: str, url: str, body: str, depth: str
    ) -> ET.Element:
        response = await client.request(
            method,
            url,
            content=body,
            headers={"Content-Type": "application/xml; charset=utf-8", "Depth": depth},
        )
        if response.status_code in (401, 403):
            raise CalendarReauthorizationRequired("iCloud rejected the Apple ID or app-specific password")
        if not 200 <= response.status_code < 300:
            raise CalendarAPIError(f"CalDAV {method} failed with {response.status_code}")
        return ET.fromstring(response.content)

    async def _discover(self, client: httpx.AsyncClient) -> list[tuple[str, str, Optional[str]]]:
        """(url, display name, color) of each calendar collection"""
        # 1. current-user-principal
        root = await self._request(
            client,
            "PROPFIND",
            f"{CALDAV_BASE_URL}/",
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<propfind xmlns="DAV:"><prop><current-user-principal/></prop></propfind>',
            "0",
        )
        principal = root.find(".//d:current-user-principal/d:href", DAV_NS)
        if principal is None or not principal.text:
            raise CalendarAPIError("CalDAV principal not found")

        # 2. calendar-home-set
        root = await self._request(
            client,
            "PROPFIND",
            urljoin(CALDAV_BASE_URL, principal.text),
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<propfind xmlns="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">'
            "<prop><c:calendar-home-set/></prop></propfind>",
            "0",
        )
        home = root.find(".//c:calendar-home-set/d:href", DAV_NS)
        if home is None or not home.text:
            raise CalendarAPIError("CalDAV calendar home not found")
        home_url = urljoin(CALDAV_BASE_URL, home.text.strip())

        # 3. calendars inside the home set
        root = await self._request(
            client,
            "PROPFIND",
            home_url,
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<propfind xmlns="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav" xmlns:a="http://apple.com/ns/ical/">'
            "<prop><resourcetype/><displayname/><a:calendar-color/></prop></propfind>",
            "1",
        )
        home_path = urlparse(home_url).path
        calendars = []
        for response in root.findall("d:response", DAV_NS):
            href = response.findtext("d:href", default="", namespaces=DAV_NS)
            if not href or urlparse(href).path == home_path:
                continue
            if any(segment in href for segment in CALDAV_SKIP_SEGMENTS):
                continue
            if response.find(".//d:resourcetype/c:calendar", DAV_NS) is None:
                continue
            name = response.findtext(".//d:displayname", default="", namespaces=DAV_NS) or "Calendar"
            color = response.findtext(".//a:calendar-color", default=None, namespaces=DAV_NS)
            calendars.append((urljoin(home_url, href), name, color))
        return calendars

    async def list_calendars(self, credential: str) -> list[AvailableCalendar]:
        apple_id, password = self.credentials(credential)
        async with self.http(auth=(apple_id, password)) as client:
            discovered = await self._discover(client)
        return [
            AvailableCalendar(id=url, name=name, is_default=index == 0, can_write=True, color=color)
            for index, (url, name, color) in enumerate(discovered)
        ]

    async def fetch_events(
        self, credential: str, calendar_id: str, start: datetime, end: datetime
    ) -> list[ExternalEvent]:
        apple_id, password = self.credentials(credential)
        fmt = "%Y%m%dT%H%M%SZ"
        body = (
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">'
            "<d:prop><d:getetag/><c:calendar-data/></d:prop>"
            '<c:filter><c:comp-filter name="VCALENDAR"><c:comp-filter name="VEVENT">'
            f'<c:time-range start="{start.strftime(fmt)}" end="{end.strftime(fmt)}"/>'
            "</c:comp-filter></c:comp-filter></c:filter></c:calendar-query>"
        )
        async with self.http(auth=(apple_id, password)) as client:
            calendar_urls = (
                [url for url, _, _ in await self._discover(client)]
                if calendar_id in ("", "primary")
                else [calendar_id]
            )
            events = []
            for url in calendar_urls:
                root = await self._request(client, "REPORT", url, body, "1")
                for data in root.iter(f"{{{DAV_NS['c']}}}calendar-data"):
                    events.extend(parse_ical_events(data.text or ""))
        return events

    async def create_event(self, credential: str, calendar_id: str, event: dict) -> str:
        apple_id, password = self.credentials(credential)
        uid = f"{uuid.uuid4()}@zone-meet"
        async with self.http(auth=(apple_id, password)) as client:
            if calendar_id in ("", "primary"):
                discovered = await self._discover(client)
                if not discovered:
                    raise CalendarAPIError("No writable iCloud calendar found")
                calendar_id = discovered[0][0]
            response = await client.put(
                f"{calendar_id.rstrip('/')}/{uid}.ics",
                content=build_ical_event(uid, event),
                headers={"Content-Type": "text/calendar; charset=utf-8", "If-None-Match": "*"},
            )
        if not 200 <= response.status_code < 300:
            raise CalendarAPIError(f"Failed to create Apple calendar event ({response.status_code})")
        return uid

    async def delete_event(self, credential: str, calendar_id: str, event_id: str) -> None:
        apple_id, password = self.credentials(credential)
        if calendar_id in ("", "primary"):
            logger.warning(f"⚠️ Cannot delete Apple event {event_id} without a calendar URL")
            return
        async with self.http(auth=(apple_id, password)) as client:
            response = await client.delete(f"{calendar_id.rstrip('/')}/{event_id}.ics")
        if response.status_code not in (200, 204, 404):
            raise CalendarAPIError(f"Failed to delete Apple calendar event ({response.status_code})")


def default_calendar_clients(
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[str, CalendarClient]:
    """Platform -> adapter map"""
    return {
        CalendarPlatform.GOOGLE: GoogleCalendarClient(transport),
        CalendarPlatform.OUTLOOK: MicrosoftGraphClient(
            CalendarPlatform.OUTLOOK, OUTLOOK_CLIENT_ID, OUTLOOK_CLIENT_SECRET, OUTLOOK_REDIRECT_URI, transport
        ),
        CalendarPlatform.TEAMS: MicrosoftGraphClient(
            CalendarPlatform.TEAMS, TEAMS_CLIENT_ID, TEAMS_CLIENT_SECRET, TEAMS_REDIRECT_URI, transport
        ),
        CalendarPlatform.APPLE: AppleCalDAVClient(transport),
    }


CALENDAR_CLIENTS = default_calendar_clients()
