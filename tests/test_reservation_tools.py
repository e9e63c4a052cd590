"""Tests for the GraphQL-backed reservation and menu tools.

Uses httpx.MockTransport to capture requests; no backend is contacted.
"""

import json

import httpx
import pytest

from maitre.api.models import ToolCall
from maitre.api.reservation_tools import BackendClient, register_reservation_tools
from maitre.api.tools import ToolExecutor, ToolRegistry
from maitre.errors import ErrorKind, ToolExecutionError


class Backend:
    """Records GraphQL requests and answers from a queue of (status, body)."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body)

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


@pytest.fixture
def backend():
    return Backend((200, {"data": {"availability": {"slots": ["18:00", "19:30"]}}}))


@pytest.fixture
def http(backend):
    return httpx.AsyncClient(transport=httpx.MockTransport(backend))


class TestRegistration:
    def test_registers_all_tools(self, settings, http):
        reg = ToolRegistry()
        register_reservation_tools(reg, settings, http)
        assert set(reg.names()) == {
            "availability",
            "createReservation",
            "reservationLookup",
            "updateReservation",
            "cancelReservation",
            "menu",
        }
        for definition in reg.tool_definitions():
            assert definition["description"]
            assert definition["input_schema"]["type"] == "object"

    def test_schemas_reject_bad_input(self, settings, http):
        reg = ToolRegistry()
        register_reservation_tools(reg, settings, http)
        assert reg.get("availability").validate({"date": "2026-03-01", "partySize": 0})
        assert reg.get("createReservation").validate({"date": "2026-03-01"})
        # update needs at least one field besides the confirmation id
        assert reg.get("updateReservation").validate({"confirmationId": "R1"})
        assert not reg.get("updateReservation").validate({"confirmationId": "R1", "partySize": 3})


class TestBackendClient:
    @pytest.mark.asyncio
    async def test_posts_graphql_with_apikey(self, settings, http, backend):
        client = BackendClient(settings, http)
        data = await client.execute("availability", "query { availability }", {"date": "2026-03-01", "x": None})
        assert data == {"slots": ["18:00", "19:30"]}

        request = backend.requests[0]
        assert str(request.url) == "http://backend.test/graphql"
        assert request.headers["authorization"] == "apikey backend-key"
        assert backend.body() == {"query": "query { availability }", "variables": {"date": "2026-03-01"}}

    @pytest.mark.asyncio
    async def test_http_error_raises(self, settings):
        http = httpx.AsyncClient(transport=httpx.MockTransport(Backend((500, "boom"))))
        with pytest.raises(ToolExecutionError, match="HTTP 500"):
            await BackendClient(settings, http).execute("availability", "q", {})

    @pytest.mark.asyncio
    async def test_graphql_errors_raise(self, settings):
        body = {"errors": [{"message": "Reservation not found"}], "data": None}
        http = httpx.AsyncClient(transport=httpx.MockTransport(Backend((200, body))))
        with pytest.raises(ToolExecutionError, match="Reservation not found"):
            await BackendClient(settings, http).execute("reservationLookup", "q", {})

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self, settings):
        http = httpx.AsyncClient(transport=httpx.MockTransport(Backend((200, "<html>"))))
        with pytest.raises(ToolExecutionError, match="invalid JSON"):
            await BackendClient(settings, http).execute("menu", "q", {})

    @pytest.mark.asyncio
    async def test_transport_error_raises(self, settings):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        with pytest.raises(ToolExecutionError, match="unreachable"):
            await BackendClient(settings, http).execute("menu", "q", {})


class TestToolsThroughExecutor:
    @pytest.mark.asyncio
    async def test_availability_call(self, settings, http, backend):
        reg = ToolRegistry()
        register_reservation_tools(reg, settings, http)
        call = ToolCall(id="toolu_1", name="availability", arguments={"date": "2026-03-01", "partySize": 2})
        turn = await ToolExecutor(reg).invoke(call)
        assert turn.payload == {"slots": ["18:00", "19:30"]}
        assert backend.body()["variables"] == {"date": "2026-03-01", "partySize": 2}

    @pytest.mark.asyncio
    async def test_backend_500_retried_then_failed(self, settings):
        backend = Backend((500, "Internal Server Error"))
        http = httpx.AsyncClient(transport=httpx.MockTransport(backend))
        reg = ToolRegistry()
        register_reservation_tools(reg, settings, http)
        call = ToolCall(id="toolu_1", name="reservationLookup", arguments={"confirmationId": "R1"})

        turn = await ToolExecutor(reg).invoke(call)

        assert turn.error.kind == ErrorKind.TOOL_EXECUTION_FAILED
        assert "HTTP 500" in turn.error.message
        assert len(backend.requests) == 2
        assert backend.body(0) == backend.body(1)

    @pytest.mark.asyncio
    async def test_update_omits_unset_fields(self, settings):
        backend = Backend((200, {"data": {"updateReservation": {"confirmationId": "R1", "partySize": 3}}}))
        http = httpx.AsyncClient(transport=httpx.MockTransport(backend))
        reg = ToolRegistry()
        register_reservation_tools(reg, settings, http)
        call = ToolCall(
            id="toolu_2", name="updateReservation", arguments={"confirmationId": "R1", "partySize": 3}
        )
        turn = await ToolExecutor(reg).invoke(call)
        assert turn.error is None
        assert backend.body()["variables"] == {"confirmationId": "R1", "partySize": 3}
