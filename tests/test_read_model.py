"""Tests for the GraphQL read-model client."""

import json

import httpx
import pytest
from eth_account import Account

from deputy.errors import ReadModelError
from deputy.read_model import ReadModelClient
from deputy.schedule import AgentKind


URL = "http://indexer.test/v1/graphql"
USER = Account.create().address


def client_for(handler, **kwargs):
    return ReadModelClient(URL, transport=httpx.MockTransport(handler), **kwargs)


def test_active_dca_schedules_parsed():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "data": {
                    "DCASchedule": [
                        {
                            "id": f"{USER.lower()}-2",
                            "user": USER.lower(),
                            "scheduleId": "2",
                            "amountPerPurchase": "10000000",
                            "intervalSeconds": "86400",
                            "lastExecutionTime": "1700000000",
                            "totalExecutions": "4",
                        }
                    ]
                }
            },
        )

    schedules = client_for(handler).active_schedules(AgentKind.DCA)

    assert "active: {_eq: true}" in seen["body"]["query"]
    assert len(schedules) == 1
    s = schedules[0]
    assert s.owner == USER
    assert s.schedule_id == 2
    assert s.amount_per_action == 10_000_000
    assert s.last_execution_time == 1_700_000_000
    assert s.params["total_executions"] == 4


def test_null_last_execution_means_never_executed():
    rows = [{"id": "a", "user": USER, "scheduleId": "0", "amountPerPurchase": "1",
             "intervalSeconds": "60", "lastExecutionTime": None}]
    client = client_for(lambda r: httpx.Response(200, json={"data": {"DCASchedule": rows}}))
    assert client.active_schedules(AgentKind.DCA)[0].last_execution_time == 0


def test_yield_rows_use_configured_interval():
    rows = [{"id": "a", "user": USER, "strategyId": "1", "isActive": True,
             "lastDepositAt": "500", "totalDeposited": "1000"}]
    client = client_for(
        lambda r: httpx.Response(200, json={"data": {"YieldStrategy": rows}}),
        yield_interval=3600,
    )
    s = client.active_schedules(AgentKind.YIELD)[0]
    assert s.interval_seconds == 3600
    assert s.last_execution_time == 500
    assert s.kind is AgentKind.YIELD


def test_malformed_rows_skipped():
    rows = [
        {"id": "bad", "user": "not-an-address", "scheduleId": "0",
         "amountPerPurchase": "1", "intervalSeconds": "60"},
        {"id": "good", "user": USER, "scheduleId": "1",
         "amountPerPurchase": "1", "intervalSeconds": "60", "lastExecutionTime": "0"},
    ]
    client = client_for(lambda r: httpx.Response(200, json={"data": {"DCASchedule": rows}}))
    assert [s.schedule_id for s in client.active_schedules(AgentKind.DCA)] == [1]


def test_graphql_errors_raise():
    client = client_for(
        lambda r: httpx.Response(200, json={"errors": [{"message": "field not found"}]})
    )
    with pytest.raises(ReadModelError, match="field not found"):
        client.active_schedules(AgentKind.DCA)


def test_http_error_status_raises():
    client = client_for(lambda r: httpx.Response(502))
    with pytest.raises(ReadModelError, match="502"):
        client.active_schedules(AgentKind.DCA)


def test_connection_failure_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ReadModelError, match="ConnectError"):
        client_for(handler).active_schedules(AgentKind.DCA)


def test_non_json_body_raises():
    client = client_for(lambda r: httpx.Response(200, text="<html>"))
    with pytest.raises(ReadModelError, match="non-JSON"):
        client.query("{ x }")
