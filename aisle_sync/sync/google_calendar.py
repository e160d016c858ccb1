"""Google Calendar API wrapper."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional
from urllib.parse import quote

import httplib2
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from pydantic import ValidationError

from aisle_sync.auth.tokens import get_valid_tokens
from aisle_sync.config import get_settings
from aisle_sync.sync.models import CalendarResult
from aisle_sync.sync.schemas import (
    as_utc,
    parse_calendar,
    parse_event,
    parse_events,
)

logger = logging.getLogger(__name__)


def _rfc3339(value: datetime) -> str:
    return as_utc(value).isoformat().replace("+00:00", "Z")


class GoogleCalendarClient:
    """
    Wrapper around the Google Calendar API for one tenant.

    Every method obtains valid tokens first and returns a CalendarResult
    instead of raising.
    """

    def __init__(self, tenant_id: str, provider: str = "google"):
        self.tenant_id = tenant_id
        self.provider = provider
        self.settings = get_settings()
        self._service = None
        self._service_token: Optional[str] = None

    def _get_service(self, access_token: str):
        """Build (or reuse) the discovery service for an access token."""
        if self._service is None or self._service_token != access_token:
            credentials = Credentials(token=access_token)
            self._service = build(
                "calendar", "v3", credentials=credentials, cache_discovery=False
            )
            self._service_token = access_token
        return self._service

    async def _call(
        self,
        action: str,
        make_request: Callable[[Any], Any],
        treat_missing_as_success: bool = False,
        parse: Optional[Callable[[Any], Any]] = None,
    ) -> CalendarResult:
        """
        Run one API request with valid credentials.

        ``make_request`` receives the service and returns an unexecuted request.
        ``parse`` turns a successful response into the result's data.
        """
        token_result = await get_valid_tokens(self.tenant_id, self.provider)
        if not token_result.success:
            return CalendarResult.fail(
                token_result.error or "Could not obtain credentials",
                needs_reauth=token_result.needs_reauth,
            )

        try:
            service = self._get_service(token_result.tokens.access_token)
            request = make_request(service)
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    request.execute, num_retries=self.settings.provider_max_retries
                ),
                timeout=self.settings.provider_request_timeout_seconds,
            )
            return CalendarResult.ok(parse(response) if parse else response)

        except RefreshError as e:
            # The API answered 401 and the bare access token cannot be refreshed here
            logger.warning(f"Calendar API rejected credentials for tenant {self.tenant_id}: {e}")
            return CalendarResult.fail(
                "Calendar access was revoked. Please reconnect your account.",
                needs_reauth=True,
                status_code=401,
            )

        except HttpError as e:
            status = e.resp.status
            if treat_missing_as_success and status in (404, 410):
                # Already gone
                return CalendarResult.ok(None)
            if status == 401:
                logger.warning(f"Calendar API rejected credentials for tenant {self.tenant_id}")
                return CalendarResult.fail(
                    "Calendar access was revoked. Please reconnect your account.",
                    needs_reauth=True,
                    status_code=status,
                )
            logger.warning(f"Calendar API error during {action} for tenant {self.tenant_id}: {e}")
            return CalendarResult.fail(
                f"Calendar API error during {action}: {status}",
                status_code=status,
            )

        except asyncio.TimeoutError:
            logger.warning(f"Calendar API timed out during {action} for tenant {self.tenant_id}")
            return CalendarResult.fail(f"Calendar API timed out during {action}")

        except (httplib2.HttpLib2Error, OSError) as e:
            logger.warning(f"Network error during {action} for tenant {self.tenant_id}: {e}")
            return CalendarResult.fail(f"Network error during {action}: {e}")

        except ValidationError as e:
            logger.warning(f"Malformed Calendar API response during {action} for tenant {self.tenant_id}: {e}")
            return CalendarResult.fail(f"Malformed response during {action}")

    async def list_calendars(self) -> CalendarResult:
        """List all calendars the account has access to."""
        return await self._call(
            "list_calendars",
            lambda service: service.calendarList().list(),
            parse=lambda response: [
                parse_calendar(item) for item in (response or {}).get("items", [])
            ],
        )

    async def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        max_results: Optional[int] = None,
    ) -> CalendarResult:
        """
        List events in a time range, following pagination.

        Recurring events are expanded into single instances. ``max_results``
        caps the total number of events returned.
        """
        limit = max_results or self.settings.sync_max_results
        events = []
        page_token = None

        while True:
            params = {
                "calendarId": calendar_id,
                "timeMin": _rfc3339(time_min),
                "timeMax": _rfc3339(time_max),
                "maxResults": min(limit - len(events), 2500),
                "singleEvents": True,
                "orderBy": "startTime",
            }
            if page_token:
                params["pageToken"] = page_token

            result = await self._call(
                "list_events",
                lambda service: service.events().list(**params),
            )
            if not result.success:
                return result

            page = result.data or {}
            events.extend(parse_events(page.get("items", [])))

            page_token = page.get("nextPageToken")
            if not page_token or len(events) >= limit:
                break

        return CalendarResult.ok(events[:limit])

    async def create_event(self, calendar_id: str, event_body: dict) -> CalendarResult:
        """Create an event; the result carries the created ProviderEvent."""
        return await self._call(
            "create_event",
            lambda service: service.events().insert(
                calendarId=calendar_id,
                body=event_body,
                sendUpdates="none",
            ),
            parse=parse_event,
        )

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        event_patch: dict,
    ) -> CalendarResult:
        """Patch an event. A 404/410 failure means it no longer exists."""
        return await self._call(
            "update_event",
            lambda service: service.events().patch(
                calendarId=calendar_id,
                eventId=event_id,
                body=event_patch,
                sendUpdates="none",
            ),
            parse=parse_event,
        )

    async def get_event(self, calendar_id: str, event_id: str) -> CalendarResult:
        """Read one event. A 404/410 failure means it no longer exists."""
        return await self._call(
            "get_event",
            lambda service: service.events().get(calendarId=calendar_id, eventId=event_id),
            parse=parse_event,
        )

    async def delete_event(self, calendar_id: str, event_id: str) -> CalendarResult:
        """Delete an event. An already missing event counts as deleted."""
        return await self._call(
            "delete_event",
            lambda service: service.events().delete(
                calendarId=calendar_id,
                eventId=event_id,
                sendUpdates="none",
            ),
            treat_missing_as_success=True,
        )

    async def create_dedicated_calendar(
        self,
        name: str,
        description: Optional[str] = None,
        time_zone: Optional[str] = None,
    ) -> CalendarResult:
        """Create a new secondary calendar owned by the account."""
        body = {
            "summary": name,
            "timeZone": time_zone or self.settings.calendar_time_zone,
        }
        if description:
            body["description"] = description

        return await self._call(
            "create_calendar",
            lambda service: service.calendars().insert(body=body),
            parse=parse_calendar,
        )

    async def delete_calendar(self, calendar_id: str) -> CalendarResult:
        """Delete a secondary calendar. An already missing calendar counts as deleted."""
        return await self._call(
            "delete_calendar",
            lambda service: service.calendars().delete(calendarId=calendar_id),
            treat_missing_as_success=True,
        )


def get_share_link(calendar_id: str, public: bool = False) -> str:
    """Link for viewing (public) or adding (private) a calendar."""
    encoded = quote(calendar_id, safe="")
    if public:
        return f"https://calendar.google.com/calendar/embed?src={encoded}"
    return f"https://calendar.google.com/calendar/r?cid={encoded}"
