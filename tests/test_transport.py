import asyncio
import io
import threading

import paramiko
import pytest

from keymaster.errors import ConfigError, TransportError
from keymaster.hops import HopDescriptor
from keymaster.transport import SSHSession, close_orphan, connect_hop, load_private_key, make_connector

from helpers import make_hop, wait_for


def _rsa_material(password=None) -> bytes:
    buffer = io.StringIO()
    paramiko.RSAKey.generate(2048).write_private_key(buffer, password=password)
    return buffer.getvalue().encode('utf-8')


def test_load_private_key_parses_rsa():
    key = load_private_key(_rsa_material(), 'id_rsa')
    assert isinstance(key, paramiko.RSAKey)


def test_encrypted_key_is_rejected():
    with pytest.raises(ConfigError, match="encrypted"):
        load_private_key(_rsa_material(password='secret'), 'id_rsa')


@pytest.mark.parametrize("material", [b'not a key at all', b'\xff\xfe\x00binary'])
def test_invalid_key_material(material):
    with pytest.raises(ConfigError):
        load_private_key(material, 'broken')


class FakeTransport:
    def __init__(self, active=True, error=None):
        self.active = active
        self.error = error
        self.keepalive = None
        self.exception = None

    def is_active(self):
        return self.active

    def get_exception(self):
        return self.exception

    def set_keepalive(self, interval):
        self.keepalive = interval

    def open_channel(self, kind, dest, origin):
        if self.error is not None:
            raise self.error
        return ('channel', kind, dest, origin)


class FakeClient:
    instances = []
    connect_error = None

    def __init__(self):
        self.closed = False
        self.policy = None
        self.connect_kwargs = None
        self.transport = FakeTransport()
        FakeClient.instances.append(self)

    def load_system_host_keys(self):
        pass

    def set_missing_host_key_policy(self, policy):
        self.policy = policy

    def connect(self, **kwargs):
        self.connect_kwargs = kwargs
        if FakeClient.connect_error is not None:
            raise FakeClient.connect_error

    def get_transport(self):
        return self.transport

    def close(self):
        self.closed = True


@pytest.fixture
def fake_client(monkeypatch):
    FakeClient.instances = []
    FakeClient.connect_error = None
    monkeypatch.setattr(paramiko, 'SSHClient', FakeClient)
    return FakeClient


def _hop_with_key():
    return HopDescriptor(
        name='web',
        host='web.example.com',
        port=2222,
        username='tester',
        private_key=_rsa_material(),
        identity_file='/keys/web',
    )


def test_connect_hop_authenticates_with_the_hop_key(fake_client):
    hop = _hop_with_key()
    sock = object()

    session = connect_hop(hop, sock, auto_add_host_keys=False, keepalive_interval=15)

    (client,) = fake_client.instances
    kwargs = client.connect_kwargs
    assert kwargs['hostname'] == 'web.example.com'
    assert kwargs['port'] == 2222
    assert kwargs['username'] == 'tester'
    assert kwargs['sock'] is sock
    assert kwargs['allow_agent'] is False
    assert kwargs['look_for_keys'] is False
    assert isinstance(kwargs['pkey'], paramiko.RSAKey)
    assert isinstance(client.policy, paramiko.RejectPolicy)
    assert client.transport.keepalive == 15
    assert session.is_active()


def test_authentication_failure_closes_the_client(fake_client):
    fake_client.connect_error = paramiko.AuthenticationException('denied')

    with pytest.raises(TransportError, match="Authentication failed for tester@web.example.com:2222"):
        connect_hop(_hop_with_key())
    assert fake_client.instances[0].closed


def test_network_failure_is_a_transport_error(fake_client):
    fake_client.connect_error = ConnectionRefusedError('refused')

    with pytest.raises(TransportError, match="Unable to connect"):
        connect_hop(_hop_with_key())
    assert fake_client.instances[0].closed


def test_make_connector_uses_config(fake_client, ssh_home):
    connector = make_connector(ssh_home.make_config(ssh={'keepalive_interval': 5}))
    connector(_hop_with_key(), None)
    (client,) = fake_client.instances
    assert isinstance(client.policy, paramiko.AutoAddPolicy)
    assert client.transport.keepalive == 5


def test_open_channel_requests_direct_tcpip(fake_client):
    client = FakeClient()
    session = SSHSession(make_hop('web'), client)
    channel = session.open_channel('db.internal', 5432, ('127.0.0.1', 50000))
    assert channel == ('channel', 'direct-tcpip', ('db.internal', 5432), ('127.0.0.1', 50000))


def test_open_channel_rejection_is_a_transport_error(fake_client):
    client = FakeClient()
    client.transport.error = paramiko.ChannelException(2, 'Connect failed')
    session = SSHSession(make_hop('web'), client)
    with pytest.raises(TransportError, match="db.internal:5432"):
        session.open_channel('db.internal', 5432)


def test_inactive_session(fake_client):
    client = FakeClient()
    client.transport.active = False
    client.transport.exception = EOFError()
    session = SSHSession(make_hop('web'), client)

    assert not session.is_active()
    assert isinstance(session.failure(), EOFError)
    with pytest.raises(TransportError, match="not active"):
        session.open_channel('db.internal', 5432)

    session.close()
    assert client.closed


def test_orphaned_resources_are_closed_off_the_event_loop():
    closed_on = []

    class Resource:
        def close(self):
            closed_on.append(threading.current_thread())

    async def scenario():
        loop = asyncio.get_running_loop()
        finished = loop.create_future()
        finished.set_result(Resource())
        close_orphan(finished)

        failed = loop.create_future()
        failed.set_exception(TransportError('never opened'))
        close_orphan(failed)
        failed.exception()

        await wait_for(lambda: closed_on)
        return threading.current_thread()

    loop_thread = asyncio.run(scenario())
    assert len(closed_on) == 1
    assert closed_on[0] is not loop_thread
