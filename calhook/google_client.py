from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import requests

from calhook.errors import (
    GoogleCalendarNotConfiguredError,
    GoogleCalendarRequestError,
    SyncProtocolError,
)
from calhook.models import CalendarInfo, EventPage, GoogleConfig, WatchResponse


logger = logging.getLogger(__name__)

SYNC_TOKEN_INVALID_STATUS = 410
STOP_SUCCESS_STATUS = 204


def _calendar_path(calendar_id: str) -> str:
    return quote(str(calendar_id), safe="")


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:300]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return response.text[:300]


class GoogleCalendarClient:
    """Thin wrapper over the Calendar v3 REST endpoints the connector needs."""

    def __init__(self, config: GoogleConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self._session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.access_token)

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> requests.Response:
        if not self.is_configured():
            raise GoogleCalendarNotConfiguredError("Google Calendar config incomplete: base_url/access_token required.")
        try:
            return self._session.request(
                method,
                self._url(path),
                headers={
                    "Authorization": f"Bearer {self.config.access_token}",
                    "Content-Type": "application/json",
                },
                params=params,
                json=json_body,
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise GoogleCalendarRequestError(f"{type(exc).__name__}: {exc}") from exc

    @staticmethod
    def _raise_for_status(response: requests.Response, action: str) -> None:
        if 200 <= response.status_code < 300:
            return
        raise GoogleCalendarRequestError(
            f"{action} failed with HTTP {response.status_code}: {_error_message(response)}",
            status_code=response.status_code,
        )

    def watch(self, calendar_id: str, channel_id: str, address: str) -> WatchResponse:
        response = self._request(
            "POST",
            f"calendars/{_calendar_path(calendar_id)}/events/watch",
            json_body={"id": channel_id, "type": "web_hook", "address": address},
        )
        self._raise_for_status(response, "watch")
        payload = response.json() or {}
        expiration = payload.get("expiration")
        return WatchResponse(
            channel_id=str(payload.get("id") or channel_id),
            channel_resource_id=str(payload.get("resourceId", "")),
            expiration=int(expiration) if expiration not in (None, "") else None,
        )

    def stop(self, channel_id: str, channel_resource_id: str) -> int:
        response = self._request(
            "POST",
            "channels/stop",
            json_body={"id": channel_id, "resourceId": channel_resource_id},
        )
        return response.status_code

    def list_events(
        self,
        calendar_id: str,
        sync_token: str | None = None,
        page_token: str | None = None,
    ) -> EventPage:
        params: dict[str, Any] = {}
        if sync_token:
            params["syncToken"] = sync_token
        if page_token:
            params["pageToken"] = page_token
        response = self._request(
            "GET",
            f"calendars/{_calendar_path(calendar_id)}/events",
            params=params,
        )
        if response.status_code == SYNC_TOKEN_INVALID_STATUS:
            return EventPage(status_code=response.status_code)
        self._raise_for_status(response, "events.list")
        payload = response.json() or {}
        items = payload.get("items") or []
        return EventPage(
            items=[item for item in items if isinstance(item, dict)],
            next_page_token=payload.get("nextPageToken") or None,
            next_sync_token=payload.get("nextSyncToken") or None,
            status_code=response.status_code,
        )

    def full_sync(self, calendar_id: str) -> str:
        """Walk the complete event list and return the sync token it ends on."""
        page_token: str | None = None
        pages = 0
        while True:
            page = self.list_events(calendar_id, page_token=page_token)
            if page.status_code == SYNC_TOKEN_INVALID_STATUS:
                raise GoogleCalendarRequestError(
                    f"full sync of {calendar_id} was rejected with HTTP {page.status_code}",
                    status_code=page.status_code,
                )
            pages += 1
            if page.next_page_token:
                page_token = page.next_page_token
                continue
            if not page.next_sync_token:
                raise SyncProtocolError(f"full sync of {calendar_id} ended without a sync token")
            logger.debug("full sync of %s finished after %d page(s)", calendar_id, pages)
            return page.next_sync_token

    def list_calendars(self) -> list[CalendarInfo]:
        calendars: list[CalendarInfo] = []
        page_token: str | None = None
        while True:
            params = {"pageToken": page_token} if page_token else None
            response = self._request("GET", "users/me/calendarList", params=params)
            self._raise_for_status(response, "calendarList.list")
            payload = response.json() or {}
            for item in payload.get("items") or []:
                calendar_id = str((item or {}).get("id", "")).strip()
                if not calendar_id:
                    continue
                calendars.append(
                    CalendarInfo(
                        calendar_id=calendar_id,
                        summary=str(item.get("summary", "") or calendar_id),
                        primary=bool(item.get("primary", False)),
                    )
                )
            page_token = payload.get("nextPageToken")
            if not page_token:
                return calendars
