"""Reservation and menu tools backed by the restaurant GraphQL API.

Each tool is a thin client: it builds one GraphQL document, posts it with
the shared API key and returns the ``data`` field for the operation. What
the backend does with the request is its own business.

Uses a separate httpx client (NOT the model invoker's, which carries
Anthropic credentials).
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from maitre.api.tools import ToolRegistry
from maitre.config import Settings
from maitre.errors import ToolExecutionError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# GraphQL documents
# ---------------------------------------------------------------------------

_AVAILABILITY_QUERY = """
query Availability($date: String!, $partySize: Int!) {
  availability(date: $date, partySize: $partySize) { times }
}
"""

_CREATE_RESERVATION_MUTATION = """
mutation CreateReservation($date: String!, $time: String!, $partySize: Int!,
                           $name: String!, $phone: String!, $email: String) {
  createReservation(date: $date, time: $time, partySize: $partySize,
                    contact: {name: $name, phone: $phone, email: $email}) {
    confirmationId status tableNumber
  }
}
"""

_LOOKUP_QUERY = """
query ReservationLookup($confirmationId: ID!) {
  reservationLookup(confirmationId: $confirmationId) {
    confirmationId date time partySize status tableNumber
    contact { name phone email }
  }
}
"""

_UPDATE_RESERVATION_MUTATION = """
mutation UpdateReservation($confirmationId: ID!, $date: String, $time: String, $partySize: Int) {
  updateReservation(confirmationId: $confirmationId, date: $date, time: $time, partySize: $partySize) {
    confirmationId date time partySize status
  }
}
"""

_CANCEL_RESERVATION_MUTATION = """
mutation CancelReservation($confirmationId: ID!) {
  cancelReservation(confirmationId: $confirmationId) { confirmationId status }
}
"""

_MENU_QUERY = """
query Menu($query: String, $dietaryTag: String) {
  menu(query: $query, dietaryTag: $dietaryTag) {
    name description price dietaryTags allergens
  }
}
"""


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class BackendClient:
    """Posts GraphQL operations to the backend and unwraps the result."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._settings.backend_api_key:
            headers["authorization"] = f"apikey {self._settings.backend_api_key}"
        return headers

    async def execute(self, operation: str, document: str, variables: dict[str, Any]) -> Any:
        """Run one GraphQL operation and return ``data[operation]``.

        Raises ToolExecutionError on transport errors, non-2xx responses
        and GraphQL ``errors``.
        """
        # Drop unset optionals so the backend applies its own defaults
        variables = {k: v for k, v in variables.items() if v is not None}
        try:
            response = await self._http.post(
                self._settings.backend_url,
                json={"query": document, "variables": variables},
                headers=self._headers(),
            )
        except httpx.TimeoutException as e:
            raise ToolExecutionError(f"{operation}: backend timed out ({e})") from e
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"{operation}: backend unreachable ({e})") from e

        if not response.is_success:
            raise ToolExecutionError(
                f"{operation}: backend returned HTTP {response.status_code}: {response.text[:300]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ToolExecutionError(f"{operation}: backend returned invalid JSON") from e

        errors = body.get("errors")
        if errors:
            messages = "; ".join(str(err.get("message", err)) for err in errors)
            raise ToolExecutionError(f"{operation}: {messages}")

        data = body.get("data") or {}
        if operation not in data:
            raise ToolExecutionError(f"{operation}: response has no data")
        return data[operation]


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_DATE = {"type": "string", "description": "Date as YYYY-MM-DD", "pattern": r"^\d{4}-\d{2}-\d{2}$"}
_TIME = {"type": "string", "description": "Time as HH:MM (24h)", "pattern": r"^\d{2}:\d{2}$"}
_PARTY = {"type": "integer", "description": "Number of guests", "minimum": 1, "maximum": 20}
_CONFIRMATION = {"type": "string", "description": "Reservation confirmation id", "minLength": 1}

_AVAILABILITY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "List open reservation times for a date and party size.",
    "properties": {"date": _DATE, "partySize": _PARTY},
    "required": ["date", "partySize"],
    "additionalProperties": False,
}

_CREATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Book a table. Returns confirmationId, status and tableNumber.",
    "properties": {
        "date": _DATE,
        "time": _TIME,
        "partySize": _PARTY,
        "name": {"type": "string", "minLength": 1},
        "phone": {"type": "string", "minLength": 5},
        "email": {"type": "string"},
    },
    "required": ["date", "time", "partySize", "name", "phone"],
    "additionalProperties": False,
}

_LOOKUP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Look up an existing reservation by confirmation id.",
    "properties": {"confirmationId": _CONFIRMATION},
    "required": ["confirmationId"],
    "additionalProperties": False,
}

_UPDATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Change the date, time or party size of a reservation.",
    "properties": {
        "confirmationId": _CONFIRMATION,
        "date": _DATE,
        "time": _TIME,
        "partySize": _PARTY,
    },
    "required": ["confirmationId"],
    "minProperties": 2,
    "additionalProperties": False,
}

_CANCEL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Cancel a reservation by confirmation id.",
    "properties": {"confirmationId": _CONFIRMATION},
    "required": ["confirmationId"],
    "additionalProperties": False,
}

_MENU_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Search the menu for dishes, prices, dietary tags and allergens.",
    "properties": {
        "query": {"type": "string", "description": "Dish name or keyword"},
        "dietaryTag": {"type": "string", "description": "e.g. vegan, gluten-free"},
    },
    "additionalProperties": False,
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_reservation_tools(
    registry: ToolRegistry,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> BackendClient:
    """Register reservation and menu tools with the registry.

    Creates closure wrappers that share one BackendClient.
    """
    backend = BackendClient(settings, http_client)

    async def _availability(date: str, partySize: int) -> Any:
        return await backend.execute(
            "availability", _AVAILABILITY_QUERY, {"date": date, "partySize": partySize}
        )

    async def _create(
        date: str, time: str, partySize: int, name: str, phone: str, email: str | None = None
    ) -> Any:
        return await backend.execute(
            "createReservation",
            _CREATE_RESERVATION_MUTATION,
            {"date": date, "time": time, "partySize": partySize, "name": name, "phone": phone, "email": email},
        )

    async def _lookup(confirmationId: str) -> Any:
        return await backend.execute("reservationLookup", _LOOKUP_QUERY, {"confirmationId": confirmationId})

    async def _update(
        confirmationId: str, date: str | None = None, time: str | None = None, partySize: int | None = None
    ) -> Any:
        return await backend.execute(
            "updateReservation",
            _UPDATE_RESERVATION_MUTATION,
            {"confirmationId": confirmationId, "date": date, "time": time, "partySize": partySize},
        )

    async def _cancel(confirmationId: str) -> Any:
        return await backend.execute(
            "cancelReservation", _CANCEL_RESERVATION_MUTATION, {"confirmationId": confirmationId}
        )

    async def _menu(query: str | None = None, dietaryTag: str | None = None) -> Any:
        return await backend.execute("menu", _MENU_QUERY, {"query": query, "dietaryTag": dietaryTag})

    registry.register(
        "availability", _availability, _AVAILABILITY_SCHEMA,
        narration="Checking availability for {partySize} on {date}...",
    )
    registry.register(
        "createReservation", _create, _CREATE_SCHEMA,
        narration="Booking a table for {partySize} on {date} at {time}...",
    )
    registry.register(
        "reservationLookup", _lookup, _LOOKUP_SCHEMA,
        narration="Looking up reservation {confirmationId}...",
    )
    registry.register(
        "updateReservation", _update, _UPDATE_SCHEMA,
        narration="Updating reservation {confirmationId}...",
    )
    registry.register(
        "cancelReservation", _cancel, _CANCEL_SCHEMA,
        narration="Cancelling reservation {confirmationId}...",
    )
    registry.register("menu", _menu, _MENU_SCHEMA, narration="Checking the menu...")
    return backend
