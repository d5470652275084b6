"""Tests for the REST data store using an httpx mock transport."""

import json

import httpx
import pytest

from storefront_billing.errors import ErrorCode
from storefront_billing.repositories.data_store import DataStoreError
from storefront_billing.repositories.rest_store import RestDataStore


class RecordingTransport:
    """Captures requests and answers with a canned response."""

    def __init__(self, status_code=200, body=None):
        self.requests: list[httpx.Request] = []
        self.status_code = status_code
        self.body = [] if body is None else body

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.body, Exception):
            raise self.body
        return httpx.Response(self.status_code, json=self.body)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def rest_store(transport):
    client = httpx.AsyncClient(base_url="http://db.local/rest/v1", transport=httpx.MockTransport(transport))
    return RestDataStore("http://db.local", client=client)


class TestQueries:
    """Test request construction."""

    async def test_select_filters_and_order(self, rest_store, transport):
        transport.body = [{"id": "sub-1"}]

        rows = await rest_store.select(
            "subscriptions", {"store_id": "store-1", "active": True}, order_by="created_at", descending=True, limit=5
        )

        assert rows == [{"id": "sub-1"}]
        request = transport.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/subscriptions"
        params = dict(request.url.params)
        assert params["store_id"] == "eq.store-1"
        assert params["active"] == "eq.true"
        assert params["order"] == "created_at.desc"
        assert params["limit"] == "5"

    async def test_null_filter(self, rest_store, transport):
        await rest_store.select("subscriptions", {"billing_reference": None})
        assert transport.requests[0].url.params["billing_reference"] == "is.null"

    async def test_insert_asks_for_representation(self, rest_store, transport):
        transport.body = [{"id": "n1", "user_id": "u1"}]

        rows = await rest_store.insert("notifications", [{"user_id": "u1"}])

        request = transport.requests[0]
        assert rows[0]["id"] == "n1"
        assert request.method == "POST"
        assert request.headers["Prefer"] == "return=representation"
        assert json.loads(request.content) == [{"user_id": "u1"}]

    async def test_update_and_delete(self, rest_store, transport):
        await rest_store.update("subscriptions", {"status": "active"}, {"id": "sub-1"})
        await rest_store.delete("subscriptions", {"id": "sub-1"})

        patch, delete = transport.requests
        assert patch.method == "PATCH"
        assert patch.url.params["id"] == "eq.sub-1"
        assert delete.method == "DELETE"

    async def test_upsert_merges_duplicates(self, rest_store, transport):
        await rest_store.upsert("subscription_projections", [{"subscription_id": "sub-1"}], on_conflict="subscription_id")

        request = transport.requests[0]
        assert request.url.params["on_conflict"] == "subscription_id"
        assert "resolution=merge-duplicates" in request.headers["Prefer"]

    async def test_single_object_response_is_wrapped(self, rest_store, transport):
        transport.body = {"id": "sub-1"}
        assert await rest_store.select("subscriptions") == [{"id": "sub-1"}]


class TestErrors:
    """Test HTTP failure mapping."""

    async def test_http_error_becomes_data_store_error(self, transport, rest_store):
        transport.status_code = 409
        transport.body = {"message": "duplicate key"}

        with pytest.raises(DataStoreError) as exc_info:
            await rest_store.insert("subscriptions", [{"id": "sub-1"}])

        assert exc_info.value.status_code == 409
        assert exc_info.value.code == ErrorCode.SERVER_DATABASE_ERROR
        assert exc_info.value.operation == "insert"

    async def test_connection_error_is_normalized(self, transport, rest_store):
        transport.body = httpx.ConnectError("refused")

        with pytest.raises(Exception) as exc_info:
            await rest_store.select("subscriptions")

        assert exc_info.value.code == ErrorCode.NETWORK_CONNECTION_ERROR


def test_api_key_headers():
    store = RestDataStore("http://db.local/", api_key="service-key")
    assert store._client.headers["apikey"] == "service-key"
    assert store._client.headers["Authorization"] == "Bearer service-key"
    assert str(store._client.base_url).rstrip("/") == "http://db.local/rest/v1"
