"""
Streaming client for `/systemTopic/TestResult`.

A minimal Bayeux (CometD) long-poll client: handshake, subscribe to the test
result channel, then loop on `/meta/connect` following server advice. While
the stream waits for a matching event, the run's queue items are also polled
directly; whichever path sees a complete snapshot first wins.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from apexrunner.config import settings
from apexrunner.core.query_batcher import fetch_all
from apexrunner.core.utils import elapsed_time
from apexrunner.errors import (
    ApexRunnerError,
    AuthError,
    HandshakeError,
    NoResultsError,
    RunCancelledError,
    TransportError,
)
from apexrunner.models.progress import (
    Progress,
    StreamingClientProgress,
    TestQueueProgress,
    report,
)
from apexrunner.models.test_result import (
    ApexTestQueueItem,
    AsyncTestRun,
    TestRunIdResult,
)
from apexrunner.streaming.helpers import (
    BAYEUX_VERSION,
    CONNECTION_TYPE,
    FRAME_ACTIONS,
    META_CONNECT,
    META_DISCONNECT,
    META_HANDSHAKE,
    META_SUBSCRIBE,
    STATE_TRANSITIONS,
    TEST_RESULT_CHANNEL,
    Advice,
    ClientState,
    FrameAction,
    classify_frame,
    event_run_id,
    run_ids_match,
    stream_url,
)

logger = logging.getLogger(__name__)

SubmitAction = Callable[[], Awaitable[str]]

QUEUE_ITEM_QUERY = (
    "SELECT Id, Status, ApexClassId, TestRunResultId FROM ApexTestQueueItem "
    "WHERE ParentJobId = '%s'"
)

# Added to the advised long-poll timeout before the HTTP read gives up.
_READ_TIMEOUT_MARGIN_SECONDS = 30.0


class StreamingClient:
    """
    One subscription to the test result channel.

    Only a single `subscribe()` may be outstanding per instance; `disconnect()`
    tears the client down for good.
    """

    def __init__(
        self,
        connection: Any,
        progress: Optional[Progress] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        poll_interval: Optional[float] = None,
        handshake_timeout: Optional[float] = None,
        default_timeout: Optional[float] = None,
        retry_delay: float = 1.0,
    ):
        self.connection = connection
        self.progress = progress
        self.poll_interval = (
            settings.STREAMING_POLL_INTERVAL_SECONDS
            if poll_interval is None
            else poll_interval
        )
        self.handshake_timeout = (
            settings.STREAMING_HANDSHAKE_TIMEOUT_SECONDS
            if handshake_timeout is None
            else handshake_timeout
        )
        self.default_timeout = (
            settings.STREAMING_TIMEOUT_SECONDS
            if default_timeout is None
            else default_timeout
        )
        self.retry_delay = retry_delay

        self.url = stream_url(connection.instance_url, connection.api_version)
        self.state = ClientState.DISCONNECTED
        self.client_id: Optional[str] = None
        self.advice = Advice()
        self.replay_id: Optional[int] = None
        self.subscribed_test_run_id: Optional[str] = None
        self.has_disconnected = False

        self._headers: dict[str, str] = {"Content-Type": "application/json"}
        self._http = httpx.AsyncClient(transport=transport)
        self._run_id_future: Optional[asyncio.Future] = None
        self._disconnected = asyncio.Event()
        self._subscribing = False
        self._needs_handshake = False
        self._transport_up = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Refresh the org auth and attach it to every streaming request."""
        await self.connection.refresh_auth()
        token = self.connection.access_token
        if not token:
            raise AuthError("No access token found for the streaming connection.")
        self._headers["Authorization"] = f"OAuth {token}"

    async def handshake(self) -> None:
        if self.has_disconnected:
            raise RuntimeError("Streaming client is disconnected")
        self._set_state(ClientState.HANDSHAKING)
        message = {
            "channel": META_HANDSHAKE,
            "version": BAYEUX_VERSION,
            "minimumVersion": BAYEUX_VERSION,
            "supportedConnectionTypes": [CONNECTION_TYPE],
        }
        try:
            frames = await asyncio.wait_for(
                self._post([message], read_timeout=self.handshake_timeout),
                timeout=self.handshake_timeout,
            )
        except asyncio.TimeoutError as e:
            await self.disconnect()
            raise HandshakeError(
                f"Handshake did not complete within {self.handshake_timeout}s"
            ) from e
        except TransportError as e:
            await self.disconnect()
            raise HandshakeError(f"Handshake failed: {e.message}") from e

        for frame in await self._process_frames(frames):
            if frame.get("channel") == META_HANDSHAKE and frame.get("successful"):
                self.client_id = frame.get("clientId")
                self._needs_handshake = False
                self._set_state(ClientState.CONNECTED)
                logger.debug("Streaming handshake complete: client %s", self.client_id)
                return

        await self.disconnect()
        raise HandshakeError("Handshake response did not include a successful reply")

    async def disconnect(self) -> None:
        """Send one `/meta/disconnect` and close the transport; safe to repeat."""
        if self.has_disconnected:
            return
        self.has_disconnected = True
        self._disconnected.set()
        try:
            if self.client_id:
                await self._post(
                    [{"channel": META_DISCONNECT, "clientId": self.client_id}],
                    read_timeout=self.handshake_timeout,
                )
        except ApexRunnerError as e:
            logger.debug("Streaming disconnect failed: %s", e)
        finally:
            self.state = ClientState.DISCONNECTED
            self.client_id = None
            await self._http.aclose()

    def _set_state(self, new_state: ClientState) -> None:
        if new_state not in STATE_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid streaming state transition {self.state.value} -> {new_state.value}"
            )
        logger.debug("Streaming state %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(
        self, messages: list[dict[str, Any]], read_timeout: float
    ) -> list[dict[str, Any]]:
        if self._http.is_closed:
            raise TransportError("Streaming transport is closed")
        timeout = httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS, read=read_timeout)
        try:
            response = await self._http.post(
                self.url, json=messages, headers=self._headers, timeout=timeout
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            if self._transport_up:
                self._transport_up = False
                report(
                    self.progress,
                    StreamingClientProgress(
                        value="streamingTransportDown",
                        message="Streaming transport is down",
                    ),
                )
            raise TransportError(f"Streaming request failed: {e}") from e

        if not self._transport_up:
            self._transport_up = True
            report(
                self.progress,
                StreamingClientProgress(
                    value="streamingTransportUp", message="Streaming transport is up"
                ),
            )
        body = response.json()
        return body if isinstance(body, list) else [body]

    async def _process_frames(
        self, frames: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Apply the frame interceptor; returns the frames to forward."""
        forwarded: list[dict[str, Any]] = []
        for frame in frames:
            self.advice.update(frame.get("advice"))
            action = FRAME_ACTIONS[classify_frame(frame)]

            if action is FrameAction.RAISE_HANDSHAKE_ERROR:
                await self.disconnect()
                raise HandshakeError(f"Streaming handshake failed: {frame.get('error')}")

            if action is FrameAction.REINIT_AND_FORWARD:
                logger.info("Streaming auth invalid, refreshing credentials")
                await self.init()
            elif action is FrameAction.REHANDSHAKE:
                logger.info("Streaming server requested a new handshake")
                self._needs_handshake = True
            elif action is FrameAction.LOG_AND_FORWARD:
                logger.warning(
                    "Ignoring streaming error on %s: %s",
                    frame.get("channel"),
                    frame.get("error"),
                )
            forwarded.append(frame)
        return forwarded

    async def _send_subscribe(self) -> None:
        frames = await self._post(
            [
                {
                    "channel": META_SUBSCRIBE,
                    "clientId": self.client_id,
                    "subscription": TEST_RESULT_CHANNEL,
                }
            ],
            read_timeout=self.handshake_timeout,
        )
        for frame in await self._process_frames(frames):
            if frame.get("channel") == META_SUBSCRIBE and frame.get("successful"):
                if self.has_disconnected:
                    raise RunCancelledError("Client disconnected while subscribing")
                self._set_state(ClientState.SUBSCRIBED)
                return
        raise TransportError(f"Subscription to {TEST_RESULT_CHANNEL} was rejected")

    async def _connect(self) -> list[dict[str, Any]]:
        frames = await self._post(
            [
                {
                    "channel": META_CONNECT,
                    "clientId": self.client_id,
                    "connectionType": CONNECTION_TYPE,
                }
            ],
            read_timeout=self.advice.timeout_ms / 1000 + _READ_TIMEOUT_MARGIN_SECONDS,
        )
        return await self._process_frames(frames)

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    @property
    def subscribed_test_run_id_future(self) -> asyncio.Future:
        """Resolves with the run id once the submit action (or caller) provides it."""
        if self._run_id_future is None:
            self._run_id_future = asyncio.get_running_loop().create_future()
        return self._run_id_future

    async def wait_for_test_run_id(self) -> str:
        return await asyncio.shield(self.subscribed_test_run_id_future)

    def _set_test_run_id(self, test_run_id: str) -> None:
        self.subscribed_test_run_id = test_run_id
        future = self.subscribed_test_run_id_future
        if not future.done():
            future.set_result(test_run_id)

    async def _resolve_run_id(
        self, action: Optional[SubmitAction], test_run_id: Optional[str]
    ) -> str:
        if action is None:
            if not test_run_id:
                raise ValueError("subscribe() needs an action or a test run id")
            self._set_test_run_id(test_run_id)
            return test_run_id
        try:
            run_id = await action()
        except BaseException as e:
            future = self.subscribed_test_run_id_future
            if not future.done():
                future.set_exception(
                    e if isinstance(e, Exception) else RunCancelledError("Submit cancelled")
                )
                future.exception()
            raise
        self._set_test_run_id(run_id)
        return run_id

    async def submit(self, action: SubmitAction) -> str:
        """Run `action` without subscribing and publish the run id it returns."""
        return await self._resolve_run_id(action, None)

    @elapsed_time()
    async def subscribe(
        self,
        action: Optional[SubmitAction] = None,
        test_run_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Union[AsyncTestRun, TestRunIdResult]:
        """
        Subscribe to the result channel and run `action` concurrently.

        `action` submits the run and returns its id; without one, `test_run_id`
        is the run being awaited. Returns AsyncTestRun once a complete queue
        snapshot is seen, or TestRunIdResult when `timeout` (seconds) elapses
        first. Raises RunCancelledError if the client is disconnected while
        waiting.
        """
        if self._subscribing:
            raise RuntimeError("A subscription is already in progress on this client")
        self._subscribing = True
        wait_seconds = self.default_timeout if timeout is None else timeout

        # created up front so stream events arriving before the submit resolves wait for it
        self.subscribed_test_run_id_future
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds
        run_id_task = asyncio.create_task(self._resolve_run_id(action, test_run_id))
        listen_task: Optional[asyncio.Task] = None
        poll_task = asyncio.create_task(self._poll())
        disconnect_task = asyncio.create_task(self._disconnected.wait())
        pending: set[asyncio.Task] = {run_id_task, poll_task, disconnect_task}

        try:
            try:
                await self._send_subscribe()
            except TransportError as e:
                if self.has_disconnected:
                    raise RunCancelledError("Client disconnected while subscribing") from e
                raise
            listen_task = asyncio.create_task(self._listen())
            pending.add(listen_task)

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, _ = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    break
                pending -= done

                if run_id_task in done:
                    # submit failures surface here
                    run_id_task.result()

                for task in (listen_task, poll_task):
                    if task in done:
                        result = task.result()
                        if result is not None:
                            return result

                if disconnect_task in done:
                    raise RunCancelledError(
                        "Test run was cancelled",
                        test_run_id=self.subscribed_test_run_id,
                    )

            # Timed out: the submit request still has to finish to report an id.
            logger.info("Streaming subscription timed out after %ss", wait_seconds)
            for task in (listen_task, poll_task, disconnect_task):
                if task is not None:
                    task.cancel()
            run_id = await run_id_task
            return TestRunIdResult(test_run_id=run_id)
        finally:
            tasks = [
                t
                for t in (listen_task, poll_task, disconnect_task, run_id_task)
                if t is not None
            ]
            for task in tasks:
                if not task.done():
                    task.cancel()
            # retrieves every outcome so none is reported as never retrieved
            await asyncio.gather(*tasks, return_exceptions=True)
            if not self.has_disconnected:
                await self.disconnect()
            self._subscribing = False

    async def _listen(self) -> Optional[AsyncTestRun]:
        """Long-poll until a matching event yields a complete snapshot."""
        while not self.has_disconnected:
            try:
                if self._needs_handshake:
                    await self.handshake()
                    await self._send_subscribe()
                frames = await self._connect()
            except TransportError as e:
                if self.has_disconnected:
                    return None
                logger.warning("Streaming connect failed, retrying: %s", e)
                await asyncio.sleep(self.retry_delay)
                continue

            for frame in frames:
                if frame.get("channel") != TEST_RESULT_CHANNEL or "data" not in frame:
                    continue
                message = frame["data"]
                replay_id = (message.get("event") or {}).get("replayId")
                if replay_id is not None:
                    self.replay_id = replay_id
                result = await self.handler(message)
                if result is not None:
                    return AsyncTestRun(
                        run_id=self.subscribed_test_run_id, queue_item=result
                    )

            if self.advice.reconnect == "none":
                logger.warning("Streaming server advised not to reconnect")
                return None
            if self.advice.interval_ms:
                await asyncio.sleep(self.advice.interval_ms / 1000)
        return None

    async def _poll(self) -> Optional[AsyncTestRun]:
        """Directly check the queue every poll interval once the run id is known."""
        run_id = await self.wait_for_test_run_id()
        while not self.has_disconnected:
            await asyncio.sleep(self.poll_interval)
            try:
                result = await self.get_completed_test_run(run_id)
            except ApexRunnerError as e:
                logger.warning("Polling test run %s failed: %s", run_id, e)
                continue
            if result is not None:
                return AsyncTestRun(run_id=run_id, queue_item=result)
        return None

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @elapsed_time()
    async def handler(
        self, message: Optional[dict[str, Any]] = None, run_id: Optional[str] = None
    ) -> Optional[ApexTestQueueItem]:
        """
        Check the queue for the run named by `run_id` or the event `message`.

        Events for another run are ignored without querying. Returns the
        snapshot once every queue item has finished, otherwise None.
        """
        test_run_id = run_id or (event_run_id(message) if message else None)
        if not test_run_id:
            return None

        awaited = self.subscribed_test_run_id
        if message is not None and run_id is None and self._run_id_future is not None:
            awaited = await self.wait_for_test_run_id()
        if not run_ids_match(test_run_id, awaited):
            logger.debug("Ignoring event for run %s (awaiting %s)", test_run_id, awaited)
            return None

        result = await self.get_completed_test_run(test_run_id)
        if result is not None:
            return result

        report(
            self.progress,
            StreamingClientProgress(
                value="streamingProcessingTestRun",
                message=f"Processing test run {test_run_id}",
                test_run_id=test_run_id,
            ),
        )
        return None

    async def get_completed_test_run(
        self, test_run_id: str
    ) -> Optional[ApexTestQueueItem]:
        """Query one snapshot of the run's queue; None while any item is active."""
        page = await fetch_all(self.connection, QUEUE_ITEM_QUERY % test_run_id)
        if not page.records:
            raise NoResultsError(
                f"No test queue results found for test run {test_run_id}",
                test_run_id=test_run_id,
            )
        snapshot = ApexTestQueueItem.model_validate(
            {"done": True, "totalSize": page.total_size, "records": page.records}
        )
        report(self.progress, TestQueueProgress(value=snapshot))
        return snapshot if snapshot.is_complete else None
