from decimal import Decimal

import pytest
import requests

from washmap.clients.addresses import KeyServiceAddressProvider
from washmap.clients.balance import BalanceQueryError, RpcBalanceClient
from washmap.clients.transfer import HttpTransferClient, TransferError

SOURCE = '0x' + 'a' * 40
TARGET = '0x' + 'b' * 40


class DummyResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.content = b'{}' if payload is not None else b''

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'HTTP {self.status_code}')

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class DummySession:
    def __init__(self, response=None, error=None):
        self._response = response
        self._error = error
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        if self._error:
            raise self._error
        return self._response


def test_transfer_returns_signature():
    session = DummySession(DummyResponse({'signature': '5xSig'}))
    client = HttpTransferClient('https://relay.local/', rpc_endpoint='https://rpc.local', timeout=5, session=session)

    signature = client.submit(SOURCE, TARGET, 'sol', Decimal('1.25'), 9)

    assert signature == '5xSig'
    url, payload, timeout = session.posts[0]
    assert url == 'https://relay.local/transfers'
    assert payload == {
        'from': SOURCE,
        'to': TARGET,
        'token': 'sol',
        'amount': '1.25',
        'decimals': 9,
        'endpoint': 'https://rpc.local',
    }
    assert timeout == 5


@pytest.mark.parametrize(
    'response',
    [
        DummyResponse({'error': 'insufficient funds'}, status_code=400),
        DummyResponse({}, status_code=502),
        DummyResponse({'status': 'queued'}),
        DummyResponse(ValueError('not json')),
    ],
)
def test_transfer_failures_raise(response):
    client = HttpTransferClient('https://relay.local', session=DummySession(response))
    with pytest.raises(TransferError):
        client.submit(SOURCE, TARGET, 'sol', Decimal('1'), 9)


def test_transfer_network_error():
    client = HttpTransferClient('https://relay.local', session=DummySession(error=requests.ConnectionError('down')))
    with pytest.raises(TransferError) as excinfo:
        client.submit(SOURCE, TARGET, 'sol', Decimal('1'), 9)
    assert 'unreachable' in str(excinfo.value)


def test_transfer_requires_url():
    with pytest.raises(ValueError):
        HttpTransferClient('')


def test_native_balance_in_sol():
    session = DummySession(DummyResponse({'jsonrpc': '2.0', 'result': {'value': 2_500_000_000}}))
    balance = RpcBalanceClient('https://rpc.local', session=session).balance_of(SOURCE, 'SOL')

    assert balance == Decimal('2.5')
    assert session.posts[0][1]['method'] == 'getBalance'


def test_token_balance_sums_accounts():
    accounts = [
        {'account': {'data': {'parsed': {'info': {'tokenAmount': {'amount': '1500000', 'decimals': 6}}}}}},
        {'account': {'data': {'parsed': {'info': {'tokenAmount': {'amount': '500000', 'decimals': 6}}}}}},
        {'account': {'data': 'garbage'}},
    ]
    session = DummySession(DummyResponse({'result': {'value': accounts}}))

    balance = RpcBalanceClient('https://rpc.local', session=session).balance_of(SOURCE, 'MintAddress1111111111111111111111111111111')

    assert balance == Decimal('2')
    method, params = session.posts[0][1]['method'], session.posts[0][1]['params']
    assert method == 'getTokenAccountsByOwner'
    assert params[1] == {'mint': 'MintAddress1111111111111111111111111111111'}


def test_balance_rpc_error():
    session = DummySession(DummyResponse({'error': {'code': -32602, 'message': 'invalid param'}}))
    with pytest.raises(BalanceQueryError):
        RpcBalanceClient('https://rpc.local', session=session).balance_of(SOURCE, 'sol')


def test_balance_http_error():
    session = DummySession(DummyResponse({}, status_code=503))
    with pytest.raises(BalanceQueryError):
        RpcBalanceClient('https://rpc.local', session=session).balance_of(SOURCE, 'sol')


def test_key_service_allocates_normalized_addresses():
    upper = '0x' + 'AB' * 20
    session = DummySession(DummyResponse({'addresses': [upper]}))
    provider = KeyServiceAddressProvider('https://keys.local', session=session)

    assert provider.allocate(1) == [upper.lower()]
    assert session.posts[0][:2] == ('https://keys.local/addresses', {'count': 1})
    assert provider.allocate(0) == []


def test_key_service_failures():
    with pytest.raises(RuntimeError):
        KeyServiceAddressProvider(None).allocate(2)
    with pytest.raises(RuntimeError):
        KeyServiceAddressProvider('https://keys.local', session=DummySession(DummyResponse({'wallets': []}))).allocate(2)
    with pytest.raises(RuntimeError):
        KeyServiceAddressProvider('https://keys.local', session=DummySession(error=requests.Timeout())).allocate(2)
