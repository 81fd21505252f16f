import asyncio

import pytest

from ipcrpc import client as client_module
from ipcrpc.client import RpcClient
from ipcrpc.config import ClientSettings
from ipcrpc.errors import ConnectionLost, EndpointNotFound, NotConnected, RequestTimeout
from ipcrpc.network.session_state import SessionState
from ipcrpc.network.transport.dummy import DummyTransport
from ipcrpc.protocol.framing import Opcode, encode

READY = {"cmd": "DISPATCH", "evt": "READY", "data": {"v": 1, "user": {"id": "1", "username": "tester"}}}


async def _wait_for(predicate, *, timeout: float = 1.0, interval: float = 0.005) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class _Factory:
    def __init__(self) -> None:
        self.transports: list[DummyTransport] = []

    def __call__(self, path: str) -> DummyTransport:
        transport = DummyTransport(path)
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> DummyTransport:
        return self.transports[-1]


def _client(factory, **overrides) -> RpcClient:
    values = {
        "client_id": "180984871685062656",
        "request_timeout_seconds": 1.0,
        "heartbeat_interval_seconds": 60.0,
    }
    values.update(overrides)
    return RpcClient(settings=ClientSettings(**values), transport_factory=factory, candidates=lambda: ["/tmp/app-ipc-0"])


def _frames(transport, opcode=Opcode.FRAME):
    return [frame.payload for frame in transport.sent_frames() if frame.opcode is opcode]


async def _connect(client: RpcClient, factory: _Factory, count: int = 1) -> None:
    task = asyncio.create_task(client.connect())
    assert await _wait_for(lambda: len(factory.transports) == count and factory.last.written)
    factory.last.feed_frame(Opcode.FRAME, READY)
    await task


async def _answer(transport: DummyTransport, index: int, data, **extra) -> dict:
    assert await _wait_for(lambda: len(_frames(transport)) > index)
    request = _frames(transport)[index]
    transport.feed_frame(Opcode.FRAME, {"cmd": request["cmd"], "nonce": request["nonce"], "data": data, **extra})
    return request


@pytest.mark.asyncio
async def test_connect_reaches_ready_and_records_user():
    connected = []
    factory = _Factory()
    client = _client(factory)
    client.on("connected", lambda: connected.append(True))

    await _connect(client, factory)
    try:
        assert client.state is SessionState.READY
        assert client.user == {"id": "1", "username": "tester"}
        assert connected == [True]
        handshake = factory.last.sent_frames()[0]
        assert (handshake.opcode, handshake.payload) == (Opcode.HANDSHAKE, {"v": 1, "client_id": "180984871685062656"})
    finally:
        await client.destroy()


@pytest.mark.asyncio
async def test_concurrent_connect_calls_share_one_attempt():
    factory = _Factory()
    client = _client(factory)

    first = asyncio.create_task(client.connect())
    second = asyncio.create_task(client.connect())
    assert await _wait_for(lambda: factory.transports and factory.last.written)
    factory.last.feed_frame(Opcode.FRAME, READY)
    await asyncio.gather(first, second)
    try:
        assert len(factory.transports) == 1
    finally:
        await client.destroy()


@pytest.mark.asyncio
async def test_connect_times_out_without_ready():
    factory = _Factory()
    client = _client(factory, request_timeout_seconds=0.05)

    with pytest.raises(RequestTimeout):
        await client.connect()
    assert client.state is SessionState.DISCONNECTED
    assert factory.last.closed


@pytest.mark.asyncio
async def test_peer_rejecting_handshake_fails_connect():
    factory = _Factory()
    client = _client(factory)

    task = asyncio.create_task(client.connect())
    assert await _wait_for(lambda: factory.transports and factory.last.written)
    factory.last.feed_frame(Opcode.CLOSE, {"code": 4000, "message": "Invalid Client ID"})
    with pytest.raises(ConnectionLost):
        await task
    assert client.state is SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_request_round_trip():
    factory = _Factory()
    client = _client(factory)
    await _connect(client, factory)
    try:
        task = asyncio.create_task(client.request("GET_GUILDS"))
        request = await _answer(factory.last, 0, {"guilds": []})
        assert request["cmd"] == "GET_GUILDS"
        assert await task == {"guilds": []}
    finally:
        await client.destroy()


@pytest.mark.asyncio
async def test_request_before_connect_raises_not_connected():
    client = _client(_Factory())
    with pytest.raises(NotConnected):
        await client.request("GET_GUILDS")
    assert client.correlator.pending_tokens == []
    assert client.queue.running == 0


@pytest.mark.asyncio
async def test_disconnect_rejects_pending_and_emits_event():
    disconnected = []
    factory = _Factory()
    client = _client(factory)
    client.on("disconnected", disconnected.append)
    await _connect(client, factory)

    tasks = [asyncio.create_task(client.request(f"CMD_{index}")) for index in range(3)]
    assert await _wait_for(lambda: len(_frames(factory.last)) == 3)
    factory.last.feed_eof()

    results = await asyncio.gather(*tasks, return_exceptions=True)
    assert all(isinstance(result, ConnectionLost) for result in results)
    assert await _wait_for(lambda: disconnected)
    assert client.state is SessionState.DISCONNECTED
    assert client.queue.running == 0
    await client.destroy()


@pytest.mark.asyncio
async def test_close_sends_close_frame_and_rejects_pending():
    closed = []
    factory = _Factory()
    client = _client(factory)
    client.on("closed", lambda: closed.append(True))
    await _connect(client, factory)

    pending = asyncio.create_task(client.request("GET_CHANNELS", {"guild_id": "1"}))
    assert await _wait_for(lambda: _frames(factory.last))
    await client.close()

    with pytest.raises(ConnectionLost):
        await pending
    frames = factory.last.sent_frames()
    assert (frames[-1].opcode, frames[-1].payload) == (Opcode.CLOSE, {})
    assert client.state is SessionState.CLOSED
    assert closed == [True]


@pytest.mark.asyncio
async def test_auto_reconnect_after_unexpected_drop():
    events = []
    factory = _Factory()
    client = _client(
        factory,
        auto_reconnect=True,
        reconnect_base_delay_seconds=0.001,
        reconnect_max_delay_seconds=0.002,
    )
    for name in ("disconnected", "reconnecting", "reconnected"):
        client.on(name, lambda *args, name=name: events.append(name))
    await _connect(client, factory)

    factory.last.fail(ConnectionResetError("pipe broke"))
    assert await _wait_for(lambda: len(factory.transports) == 2 and factory.last.written)
    factory.last.feed_frame(Opcode.FRAME, READY)

    try:
        assert await _wait_for(lambda: "reconnected" in events)
        assert events[:2] == ["disconnected", "reconnecting"]
        assert client.state is SessionState.READY
        assert client.supervisor.state.attempts == 0
    finally:
        await client.destroy()


@pytest.mark.asyncio
async def test_no_reconnect_after_explicit_close():
    events = []
    factory = _Factory()
    client = _client(factory, auto_reconnect=True, reconnect_base_delay_seconds=0.001)
    client.on("reconnecting", lambda *args: events.append("reconnecting"))
    await _connect(client, factory)

    await client.close()
    await asyncio.sleep(0.02)
    assert events == []
    assert len(factory.transports) == 1


@pytest.mark.asyncio
async def test_broadcast_listener_errors_surface_as_error_event():
    errors, seen = [], []
    factory = _Factory()
    client = _client(factory)
    client.on("error", errors.append)

    def _broken(data):
        raise RuntimeError("listener bug")

    client.on("ACTIVITY_JOIN", _broken)
    client.on("ACTIVITY_JOIN", seen.append)
    await _connect(client, factory)
    try:
        factory.last.feed_frame(Opcode.FRAME, {"cmd": "DISPATCH", "evt": "ACTIVITY_JOIN", "data": {"secret": "s"}})
        assert await _wait_for(lambda: seen)
        assert seen == [{"secret": "s"}]
        assert len(errors) == 1 and isinstance(errors[0], RuntimeError)
    finally:
        await client.destroy()


@pytest.mark.asyncio
async def test_subscribe_through_client_delivers_events():
    seen = []
    factory = _Factory()
    client = _client(factory)
    await _connect(client, factory)
    try:
        task = asyncio.create_task(client.subscribe("MESSAGE_CREATE", {"channel_id": "9"}, seen.append))
        request = await _answer(factory.last, 0, {"evt": "MESSAGE_CREATE"})
        assert (request["cmd"], request["evt"]) == ("SUBSCRIBE", "MESSAGE_CREATE")
        subscription = await task

        factory.last.feed_frame(Opcode.FRAME, {"cmd": "DISPATCH", "evt": "MESSAGE_CREATE", "data": {"content": "hey"}})
        assert await _wait_for(lambda: seen)
        assert subscription.active
    finally:
        await client.destroy()
    assert not subscription.active


@pytest.mark.asyncio
async def test_cached_request_skips_the_wire_while_fresh():
    factory = _Factory()
    client = _client(factory, enable_cache=True, cache_ttl_seconds=60.0)
    await _connect(client, factory)
    try:
        task = asyncio.create_task(client.cached_request("GET_GUILD", {"guild_id": "3"}))
        await _answer(factory.last, 0, {"name": "guild"})
        assert await task == {"name": "guild"}

        assert await client.cached_request("GET_GUILD", {"guild_id": "3"}) == {"name": "guild"}
        assert len(_frames(factory.last)) == 1
    finally:
        await client.destroy()


@pytest.mark.asyncio
async def test_batch_request_returns_results_in_order():
    factory = _Factory()
    client = _client(factory, enable_batching=True, batch_delay_ms=1)
    await _connect(client, factory)
    try:
        task = asyncio.create_task(
            client.batch_request([{"cmd": "GET_GUILD", "args": {"guild_id": "1"}}, ("GET_CHANNELS",)])
        )
        assert await _wait_for(lambda: len(_frames(factory.last)) == 2)
        for request in reversed(_frames(factory.last)):
            factory.last.feed_frame(
                Opcode.FRAME,
                {"cmd": request["cmd"], "nonce": request["nonce"], "data": {"for": request["cmd"]}},
            )
        assert await task == [{"for": "GET_GUILD"}, {"for": "GET_CHANNELS"}]
    finally:
        await client.destroy()


@pytest.mark.asyncio
async def test_authorize_response_probes_http_side_channel(monkeypatch):
    async def _fake_probe(max_attempts, **kwargs):
        return "http://127.0.0.1:6463"

    monkeypatch.setattr(client_module, "probe_for_alternate_endpoint", _fake_probe)
    factory = _Factory()
    client = _client(factory)
    await _connect(client, factory)
    try:
        task = asyncio.create_task(client.request("AUTHORIZE", {"client_id": "1", "scopes": ["rpc"]}))
        await _answer(factory.last, 0, {"code": "oauth-code"})
        assert await task == {"code": "oauth-code"}
        assert await _wait_for(lambda: client.http_endpoint == "http://127.0.0.1:6463")
    finally:
        await client.destroy()


@pytest.mark.asyncio
async def test_missing_side_channel_is_reported_as_error(monkeypatch):
    async def _fake_probe(max_attempts, **kwargs):
        raise EndpointNotFound("nothing answered")

    monkeypatch.setattr(client_module, "probe_for_alternate_endpoint", _fake_probe)
    errors = []
    factory = _Factory()
    client = _client(factory)
    client.on("error", errors.append)
    await _connect(client, factory)
    try:
        task = asyncio.create_task(client.request("AUTHORIZE", {"client_id": "1"}))
        await _answer(factory.last, 0, {"code": "oauth-code"})
        await task
        assert await _wait_for(lambda: errors)
        assert isinstance(errors[0], EndpointNotFound)
        assert client.http_endpoint is None
    finally:
        await client.destroy()


@pytest.mark.asyncio
async def test_close_right_after_ready_keeps_reconnecting():
    events = []
    factory = _Factory()
    client = _client(
        factory,
        auto_reconnect=True,
        reconnect_base_delay_seconds=0.001,
        reconnect_max_delay_seconds=0.002,
    )
    for name in ("disconnected", "reconnecting", "reconnected"):
        client.on(name, lambda *args, name=name: events.append(name))
    await _connect(client, factory)

    factory.last.fail(ConnectionResetError("pipe broke"))
    assert await _wait_for(lambda: len(factory.transports) == 2 and factory.last.written)
    factory.last.feed(
        encode(Opcode.FRAME, READY) + encode(Opcode.CLOSE, {"code": 1000, "message": "going away"})
    )

    assert await _wait_for(lambda: len(factory.transports) == 3 and factory.last.written)
    assert "reconnected" not in events
    factory.last.feed_frame(Opcode.FRAME, READY)

    try:
        assert await _wait_for(lambda: "reconnected" in events)
        assert events == ["disconnected", "reconnecting", "disconnected", "reconnecting", "reconnected"]
        assert client.state is SessionState.READY
        assert not client.supervisor.in_progress
    finally:
        await client.destroy()


@pytest.mark.asyncio
async def test_unsubscribe_waits_for_a_free_slot():
    factory = _Factory()
    client = _client(factory, max_concurrent_requests=1)
    await _connect(client, factory)
    try:
        task = asyncio.create_task(client.subscribe("GUILD_STATUS", {"guild_id": "7"}))
        await _answer(factory.last, 0, {})
        subscription = await task

        in_flight = asyncio.create_task(client.request("GET_GUILDS"))
        assert await _wait_for(lambda: len(_frames(factory.last)) == 2)
        unsubscribe = asyncio.create_task(subscription.unsubscribe())
        await asyncio.sleep(0.02)
        assert [frame["cmd"] for frame in _frames(factory.last)] == ["SUBSCRIBE", "GET_GUILDS"]
        assert client.queue.waiting == 1

        await _answer(factory.last, 1, {"guilds": []})
        assert await in_flight == {"guilds": []}
        request = await _answer(factory.last, 2, {})
        assert (request["cmd"], request["evt"]) == ("UNSUBSCRIBE", "GUILD_STATUS")
        await unsubscribe
        assert client.queue.running == 0
    finally:
        await client.destroy()


@pytest.mark.asyncio
async def test_cached_null_response_is_served_from_cache():
    factory = _Factory()
    client = _client(factory, enable_cache=True, cache_ttl_seconds=60.0)
    await _connect(client, factory)
    try:
        task = asyncio.create_task(client.cached_request("GET_SELECTED_VOICE_CHANNEL", {}))
        await _answer(factory.last, 0, None)
        assert await task is None

        assert await client.cached_request("GET_SELECTED_VOICE_CHANNEL", {}) is None
        assert len(_frames(factory.last)) == 1
    finally:
        await client.destroy()


@pytest.mark.asyncio
async def test_timed_out_request_frees_its_slot():
    factory = _Factory()
    client = _client(factory, max_concurrent_requests=1, request_timeout_seconds=0.1)
    await _connect(client, factory)
    try:
        with pytest.raises(RequestTimeout):
            await client.request("GET_GUILDS")
        assert client.queue.running == 0

        task = asyncio.create_task(client.request("GET_CHANNELS"))
        request = await _answer(factory.last, 1, {"channels": []})
        assert request["cmd"] == "GET_CHANNELS"
        assert await task == {"channels": []}
    finally:
        await client.destroy()
