import asyncio
from types import SimpleNamespace

import pytest

from groupcast.client.base import (
    BecameReady,
    ChallengeIssued,
    ConnectionClosed,
    CredentialsUpdated,
    DisconnectReason,
)
from groupcast.config.schema import ConnectionConfig
from groupcast.session.credentials import CREDENTIALS_FILE, CredentialStore
from groupcast.session.errors import StorageError
from groupcast.session.scheduler import ReconnectScheduler
from groupcast.session.supervisor import (
    CloseDisposition,
    ConnectionState,
    ConnectionSupervisor,
    classify_close,
)


class FakeClient:
    def __init__(self, tenant_id, credentials, on_event):
        self.tenant_id = tenant_id
        self.credentials = credentials
        self.on_event = on_event
        self.connected = False
        self.closed = False
        self.logged_out = False

    async def connect(self):
        self.connected = True

    async def logout(self):
        self.logged_out = True

    async def close(self):
        self.closed = True


class FailingClient(FakeClient):
    async def connect(self):
        raise ConnectionError("bridge down")


def _env(tmp_path, client_cls=FakeClient, **overrides):
    settings = {
        "challenge_throttle_s": 3.0,
        "challenge_budget": 5,
        "reconnect_delay_s": 0.01,
        "timeout_reconnect_delay_s": 0.01,
        "error_reconnect_delay_s": 10.0,
        "reset_delay_s": 10.0,
        "logout_restart_delay_s": 10.0,
    }
    settings.update(overrides)
    env = SimpleNamespace(
        store=CredentialStore(tmp_path),
        scheduler=ReconnectScheduler(),
        clients=[],
        notified=[],
        now=0.0,
    )

    def factory(tenant_id, credentials, on_event):
        client = client_cls(tenant_id, credentials, on_event)
        env.clients.append(client)
        return client

    async def notify(name, payload):
        env.notified.append((name, payload))

    env.supervisor = ConnectionSupervisor(
        "t1",
        credentials=env.store,
        client_factory=factory,
        notify=notify,
        scheduler=env.scheduler,
        event_sink=lambda generation, event: None,
        config=ConnectionConfig(**settings),
        clock=lambda: env.now,
    )
    return env


def _names(env):
    return [name for name, _ in env.notified]


@pytest.mark.asyncio
async def test_start_twice_while_connecting_is_noop(tmp_path):
    env = _env(tmp_path)

    await env.supervisor.start()
    await env.supervisor.start()

    assert len(env.clients) == 1
    assert env.clients[0].connected is True
    assert env.clients[0].credentials is None
    assert env.supervisor.state is ConnectionState.CONNECTING


@pytest.mark.asyncio
async def test_start_uses_stored_credentials(tmp_path):
    env = _env(tmp_path)
    env.store.save("t1", {"me": "5511"})

    await env.supervisor.start()

    assert env.clients[0].credentials == {"me": "5511"}


@pytest.mark.asyncio
async def test_start_when_ready_is_noop(tmp_path):
    env = _env(tmp_path)
    await env.supervisor.start()
    await env.supervisor.handle_event(BecameReady())

    await env.supervisor.start()

    assert len(env.clients) == 1
    assert env.supervisor.state is ConnectionState.READY


@pytest.mark.asyncio
async def test_repeated_challenge_is_forwarded_once(tmp_path):
    env = _env(tmp_path)
    await env.supervisor.start()

    for _ in range(3):
        await env.supervisor.handle_event(ChallengeIssued("Q1"))
        env.now += 0.3

    assert env.supervisor.emitted_challenges == 1
    assert _names(env) == ["challenge"]
    assert env.notified[0][1]["payload"] == "Q1"
    assert env.supervisor.state is ConnectionState.AWAITING_CHALLENGE


@pytest.mark.asyncio
async def test_new_challenge_is_throttled_within_window(tmp_path):
    env = _env(tmp_path)
    await env.supervisor.start()

    await env.supervisor.handle_event(ChallengeIssued("Q1"))
    env.now = 1.0
    await env.supervisor.handle_event(ChallengeIssued("Q2"))
    env.now = 4.0
    await env.supervisor.handle_event(ChallengeIssued("Q3"))

    assert [p["payload"] for _, p in env.notified] == ["Q1", "Q3"]
    assert env.supervisor.retry_count == 2


@pytest.mark.asyncio
async def test_exhausted_challenge_budget_resets_credentials(tmp_path):
    env = _env(tmp_path, challenge_budget=2, challenge_throttle_s=0.0)
    env.store.save("t1", {"stale": True})
    await env.supervisor.start()

    for payload in ("Q1", "Q2", "Q3"):
        await env.supervisor.handle_event(ChallengeIssued(payload))

    assert env.supervisor.emitted_challenges == 2
    assert env.store.load("t1") is None
    assert env.clients[0].closed is True
    assert env.supervisor.client is None
    assert env.supervisor.retry_count == 0
    assert env.supervisor.state is ConnectionState.CLOSED
    assert env.scheduler.pending("t1") is True
    await env.scheduler.cancel_all()


@pytest.mark.asyncio
async def test_ready_is_emitted_once_and_resets_retries(tmp_path):
    env = _env(tmp_path)
    await env.supervisor.start()
    await env.supervisor.handle_event(ChallengeIssued("Q1"))

    await env.supervisor.handle_event(BecameReady())
    await env.supervisor.handle_event(BecameReady())

    assert _names(env) == ["challenge", "ready"]
    assert env.supervisor.retry_count == 0
    assert env.supervisor.is_ready is True


@pytest.mark.asyncio
async def test_logged_out_close_is_terminal(tmp_path):
    env = _env(tmp_path)
    env.store.save("t1", {"me": "5511"})
    await env.supervisor.start()
    await env.supervisor.handle_event(BecameReady())

    await env.supervisor.handle_event(ConnectionClosed(DisconnectReason.LOGGED_OUT))

    assert env.supervisor.state is ConnectionState.DISCONNECTED
    assert env.store.load("t1") is None
    assert env.scheduler.pending("t1") is False
    assert _names(env) == ["ready", "disconnected", "loggedOut"]
    await asyncio.sleep(0.05)
    assert len(env.clients) == 1


@pytest.mark.asyncio
async def test_transient_close_schedules_one_reconnect(tmp_path):
    env = _env(tmp_path)
    env.store.save("t1", {"me": "5511"})
    await env.supervisor.start()
    await env.supervisor.handle_event(BecameReady())

    await env.supervisor.handle_event(ConnectionClosed(DisconnectReason.CONNECTION_CLOSED))

    assert env.supervisor.state is ConnectionState.CLOSED
    assert env.scheduler.pending("t1") is True
    assert env.clients[0].closed is True
    assert _names(env) == ["ready", "disconnected"]

    await asyncio.sleep(0.05)

    assert len(env.clients) == 2
    assert env.supervisor.state is ConnectionState.CONNECTING
    assert env.clients[1].credentials == {"me": "5511"}


@pytest.mark.asyncio
async def test_corrupted_session_clears_credentials_before_reconnect(tmp_path):
    env = _env(tmp_path)
    env.store.save("t1", {"me": "5511"})
    await env.supervisor.start()

    await env.supervisor.handle_event(ConnectionClosed(DisconnectReason.BAD_SESSION))
    await asyncio.sleep(0.05)

    assert env.store.load("t1") is None
    assert len(env.clients) == 2
    assert env.clients[1].credentials is None


@pytest.mark.asyncio
async def test_events_from_replaced_client_are_ignored(tmp_path):
    env = _env(tmp_path)
    await env.supervisor.start()
    stale = env.supervisor.generation - 1

    await env.supervisor.handle_event(BecameReady(), generation=stale)

    assert env.supervisor.state is ConnectionState.CONNECTING
    assert env.notified == []


@pytest.mark.asyncio
async def test_connect_failure_closes_client_and_schedules_retry(tmp_path):
    env = _env(tmp_path, client_cls=FailingClient)

    with pytest.raises(ConnectionError):
        await env.supervisor.start()

    assert env.clients[0].closed is True
    assert env.supervisor.client is None
    assert env.supervisor.state is ConnectionState.CLOSED
    assert env.scheduler.pending("t1") is True
    await env.scheduler.cancel_all()


@pytest.mark.asyncio
async def test_storage_error_on_start_keeps_prior_state(tmp_path):
    env = _env(tmp_path)
    (tmp_path / "t1").mkdir()
    (tmp_path / "t1" / CREDENTIALS_FILE).write_text("not json", encoding="utf-8")

    with pytest.raises(StorageError):
        await env.supervisor.start()

    assert env.supervisor.state is ConnectionState.DISCONNECTED
    assert env.clients == []


@pytest.mark.asyncio
async def test_credentials_update_is_persisted(tmp_path):
    env = _env(tmp_path)
    await env.supervisor.start()

    await env.supervisor.handle_event(CredentialsUpdated({"me": "new"}))

    assert env.store.load("t1") == {"me": "new"}


@pytest.mark.asyncio
async def test_logout_clears_credentials_and_schedules_fresh_pairing(tmp_path):
    env = _env(tmp_path)
    env.store.save("t1", {"me": "5511"})
    await env.supervisor.start()
    await env.supervisor.handle_event(BecameReady())

    await env.supervisor.logout()

    assert env.clients[0].logged_out is True
    assert env.clients[0].closed is True
    assert env.store.load("t1") is None
    assert env.supervisor.state is ConnectionState.DISCONNECTED
    assert _names(env) == ["ready", "disconnected", "loggedOut"]
    assert env.scheduler.pending("t1") is True
    await env.scheduler.cancel_all()


def test_reconnect_delay_depends_on_reason_and_attempts(tmp_path):
    env = _env(
        tmp_path,
        reconnect_delay_s=5.0,
        timeout_reconnect_delay_s=2.0,
        reconnect_factor=2.0,
        reconnect_max_s=30.0,
    )
    supervisor = env.supervisor

    assert supervisor.reconnect_delay(DisconnectReason.TIMED_OUT) == 2.0
    assert supervisor.reconnect_delay(DisconnectReason.CONNECTION_CLOSED) == 5.0
    supervisor.reconnect_attempts = 2
    assert supervisor.reconnect_delay(DisconnectReason.CONNECTION_CLOSED) == 20.0
    supervisor.reconnect_attempts = 5
    assert supervisor.reconnect_delay(None) == 30.0


@pytest.mark.parametrize(
    ("reason", "expected"),
    [
        (DisconnectReason.LOGGED_OUT, CloseDisposition.TERMINAL),
        (DisconnectReason.BAD_SESSION, CloseDisposition.CORRUPTED),
        (DisconnectReason.VERSION_MISMATCH, CloseDisposition.CORRUPTED),
        (DisconnectReason.CONNECTION_LOST, CloseDisposition.TRANSIENT),
        (DisconnectReason.RESTART_REQUIRED, CloseDisposition.TRANSIENT),
        (None, CloseDisposition.TRANSIENT),
        (999, CloseDisposition.TRANSIENT),
    ],
)
def test_classify_close(reason, expected):
    assert classify_close(reason) is expected


@pytest.mark.asyncio
async def test_force_new_start_wipes_credentials_and_reconnects(tmp_path):
    env = _env(tmp_path)
    env.store.save("t1", {"me": "5511"})
    await env.supervisor.start()
    await env.supervisor.handle_event(BecameReady())

    await env.supervisor.start(force_new=True)

    assert len(env.clients) == 2
    assert env.clients[0].closed is True
    assert env.clients[1].credentials is None
    assert env.supervisor.state is ConnectionState.CONNECTING
    assert _names(env) == ["ready", "disconnected"]
