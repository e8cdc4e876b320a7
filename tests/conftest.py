"""
Global pytest configuration and fixtures for apexrunner tests.

This module provides:
- StubConnection: an in-memory org connection that records every call and
  answers queries from canned responses matched by substring
- Record builders for queue items, run summaries and test results
- FakeBayeuxServer: a CometD endpoint behind httpx.MockTransport
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Union

import httpx
import pytest

from apexrunner.models.test_result import ApexTestQueueItem
from apexrunner.streaming.client import StreamingClient
from apexrunner.streaming.helpers import (
    META_CONNECT,
    META_DISCONNECT,
    META_HANDSHAKE,
    META_SUBSCRIBE,
    TEST_RESULT_CHANNEL,
)

RUN_ID = "707000000000001AAA"
CLASS_ID = "01p000000000001AAA"

Response = Union[dict[str, Any], list[dict[str, Any]], Callable[[str], dict[str, Any]]]


class StubConnection:
    """
    Org connection double.

    `responses` maps a query substring to a response. A list response is
    consumed one page at a time (the last one repeats); a callable receives
    the full query text.
    """

    def __init__(self, responses: dict[str, Response] | None = None) -> None:
        self.instance_url = "https://example.my.salesforce.com"
        self.api_version = "61.0"
        self.access_token = "00Dxx!token"
        self.username = "user@example.com"
        self.org_id = "00D000000000001AAA"
        self.user_id = "005000000000001AAA"
        self.responses: dict[str, Response] = dict(responses or {})
        self.pages: dict[str, dict[str, Any]] = {}
        self.queries: list[tuple[str, bool]] = []
        self.requests: list[tuple[str, str, Any]] = []
        self.updates: list[tuple[str, list[dict[str, Any]], bool]] = []
        self.creates: list[tuple[str, dict[str, Any], bool]] = []
        self.request_result: Any = RUN_ID
        self.refresh_calls = 0

    @property
    def data_base_url(self) -> str:
        return f"{self.instance_url}/services/data/v{self.api_version}"

    @property
    def tooling_base_url(self) -> str:
        return f"{self.data_base_url}/tooling"

    async def refresh_auth(self) -> str:
        self.refresh_calls += 1
        return self.access_token

    async def query(self, soql: str, tooling: bool = False) -> dict[str, Any]:
        self.queries.append((soql, tooling))
        for needle, response in self.responses.items():
            if needle in soql:
                if callable(response):
                    return response(soql)
                if isinstance(response, list):
                    return response.pop(0) if len(response) > 1 else response[0]
                return response
        return {"done": True, "totalSize": 0, "records": []}

    async def query_more(self, next_records_url: str) -> dict[str, Any]:
        self.queries.append((next_records_url, True))
        return self.pages[next_records_url]

    async def request(self, method: str, url: str, *, json: Any = None, headers=None) -> Any:
        self.requests.append((method, url, json))
        if callable(self.request_result):
            return await self.request_result(method, url, json)
        return self.request_result

    async def create(self, sobject: str, record: dict[str, Any], tooling: bool = False):
        self.creates.append((sobject, record, tooling))
        return {"id": f"new-{sobject}-{len(self.creates)}", "success": True}

    async def update(self, sobject: str, records: list[dict[str, Any]], tooling: bool = False):
        self.updates.append((sobject, records, tooling))
        return [{"id": r["Id"], "success": True} for r in records]


def page(records: list[dict[str, Any]], next_url: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {
        "done": next_url is None,
        "totalSize": len(records),
        "records": records,
    }
    if next_url:
        body["nextRecordsUrl"] = next_url
    return body


def queue_item_record(item_id: str, status: str = "Completed") -> dict[str, Any]:
    return {
        "Id": item_id,
        "Status": status,
        "ApexClassId": CLASS_ID,
        "TestRunResultId": "05m000000000001AAA",
    }


def queue_item(*statuses: str) -> ApexTestQueueItem:
    return ApexTestQueueItem.model_validate(
        {
            "done": True,
            "totalSize": len(statuses),
            "records": [
                queue_item_record(f"709{i:015d}", status)
                for i, status in enumerate(statuses)
            ],
        }
    )


def run_summary_record(status: str = "Completed", **overrides: Any) -> dict[str, Any]:
    record = {
        "AsyncApexJobId": RUN_ID,
        "Status": status,
        "ClassesCompleted": 1,
        "ClassesEnqueued": 1,
        "MethodsEnqueued": 2,
        "StartTime": "2020-11-09T18:02:50.000+0000",
        "EndTime": "2020-11-09T18:02:51.000+0000",
        "TestTime": 1500,
        "UserId": "005000000000001AAA",
    }
    record.update(overrides)
    return record


def apex_result_record(
    method_name: str,
    outcome: str = "Pass",
    *,
    class_id: str = CLASS_ID,
    class_name: str = "AccountServiceTest",
    namespace: str | None = None,
    message: str | None = None,
    stack_trace: str | None = None,
    run_time: int = 10,
    is_test_setup: bool | None = None,
) -> dict[str, Any]:
    record = {
        "Id": f"07M{method_name[:12]:0<15}",
        "QueueItemId": "709000000000000000",
        "StackTrace": stack_trace,
        "Message": message,
        "AsyncApexJobId": RUN_ID,
        "MethodName": method_name,
        "Outcome": outcome,
        "ApexLogId": None,
        "ApexClass": {
            "Id": class_id,
            "Name": class_name,
            "NamespacePrefix": namespace,
        },
        "RunTime": run_time,
        "TestTimestamp": "2020-11-09T18:02:51.000+0000",
    }
    if is_test_setup is not None:
        record["IsTestSetup"] = is_test_setup
    return record


class RecordingProgress:
    def __init__(self) -> None:
        self.events: list[Any] = []

    def report(self, value: Any) -> None:
        self.events.append(value)

    @property
    def values(self) -> list[str]:
        return [e.value if isinstance(e.value, str) else e.type for e in self.events]


@pytest.fixture
def stub_connection() -> StubConnection:
    return StubConnection()


@pytest.fixture
def progress() -> RecordingProgress:
    return RecordingProgress()


# =============================================================================
# Streaming server double
# =============================================================================


class FakeBayeuxServer:
    """
    In-process CometD endpoint served through httpx.MockTransport.

    `/meta/connect` long-polls for `long_poll` seconds waiting on pushed
    events; `connect_replies` are returned (one per connect) before that.
    """

    def __init__(self, long_poll: float = 0.05) -> None:
        self.long_poll = long_poll
        self.events: asyncio.Queue = asyncio.Queue()
        self.channels: list[str] = []
        self.connect_replies: list[dict[str, Any]] = []
        self.handshake_delay = 0.0
        self.handshake_reply: dict[str, Any] = {
            "channel": META_HANDSHAKE,
            "successful": True,
            "clientId": "client-1",
            "version": "1.0",
            "advice": {"reconnect": "retry", "interval": 0, "timeout": 110000},
        }
        self._replay_id = 0

    def count(self, channel: str) -> int:
        return self.channels.count(channel)

    def push_event(self, test_run_id: str) -> None:
        self._replay_id += 1
        self.events.put_nowait(
            {
                "channel": TEST_RESULT_CHANNEL,
                "data": {
                    "event": {
                        "createdDate": "2020-11-09T18:02:51.000Z",
                        "type": "updated",
                        "replayId": self._replay_id,
                    },
                    "sobject": {"Id": test_run_id},
                },
            }
        )

    async def handler(self, request: httpx.Request) -> httpx.Response:
        message = json.loads(request.content)[0]
        channel = message["channel"]
        self.channels.append(channel)

        if channel == META_HANDSHAKE:
            if self.handshake_delay:
                await asyncio.sleep(self.handshake_delay)
            return httpx.Response(200, json=[self.handshake_reply])
        if channel == META_SUBSCRIBE:
            return httpx.Response(
                200,
                json=[
                    {
                        "channel": META_SUBSCRIBE,
                        "successful": True,
                        "subscription": message["subscription"],
                    }
                ],
            )
        if channel == META_DISCONNECT:
            return httpx.Response(200, json=[{"channel": META_DISCONNECT, "successful": True}])

        if self.connect_replies:
            return httpx.Response(200, json=[self.connect_replies.pop(0)])
        reply = [{"channel": META_CONNECT, "successful": True}]
        try:
            event = await asyncio.wait_for(self.events.get(), timeout=self.long_poll)
        except asyncio.TimeoutError:
            return httpx.Response(200, json=reply)
        return httpx.Response(200, json=reply + [event])


def make_streaming_client(
    server: FakeBayeuxServer, connection: Any, progress: Any = None, **kwargs: Any
) -> StreamingClient:
    kwargs.setdefault("poll_interval", 60.0)
    kwargs.setdefault("handshake_timeout", 1.0)
    kwargs.setdefault("default_timeout", 5.0)
    kwargs.setdefault("retry_delay", 0.01)
    return StreamingClient(
        connection, progress, transport=httpx.MockTransport(server.handler), **kwargs
    )


@pytest.fixture
def bayeux_server() -> FakeBayeuxServer:
    return FakeBayeuxServer()
