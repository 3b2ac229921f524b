# Tests for the edge gateway HTTP surface
# Runs a real server on a loopback port with the printer transport and cloud client replaced

import base64
import socket
import threading

import pytest
import requests

from pos_edge.errors import CloudError, PrinterUnreachableError
from pos_edge.gateway import EdgeGateway, create_server
from pos_edge.local_store import LocalStore
from pos_edge.settings import GatewaySettings, load_settings


class CapturingTransport:
    def __init__(self):
        self.sent = []
        self.send_attempts = 0
        self.send_error = None
        self.discover_args = None

    def lan_address(self):
        return None

    def send(self, ip, port, data, timeout_ms=None):
        self.send_attempts += 1
        if self.send_error:
            raise self.send_error
        self.sent.append({'ip': ip, 'port': port, 'data': data})

    def discover(self, port, timeout_ms, concurrency):
        self.discover_args = (port, timeout_ms, concurrency)
        return [{'ip': '192.168.1.77', 'port': port}]


class FakeCloud:
    """Stands in for EdgeCloudClient; records calls per base URL"""

    def __init__(self):
        self.base_urls = []
        self.pair_calls = []
        self.pushed = []
        self.pair_response = {'gatewayId': 'g1', 'secret': 's1', 'restaurantId': 'r1'}
        self.push_response = None
        self.pair_error = None

    def __call__(self, base_url):
        self.base_urls.append(base_url)
        return self

    def complete_pairing(self, code, name):
        self.pair_calls.append((code, name))
        if self.pair_error:
            raise self.pair_error
        return self.pair_response

    def push_events(self, gateway_id, secret, events):
        self.pushed.append((gateway_id, secret, list(events)))
        if self.push_response is not None:
            return self.push_response
        return {'accepted': len(events), 'duplicate': 0}


class GatewayTestCase:

    @pytest.fixture(autouse=True)
    def setup_server(self, tmp_path):
        self.settings = GatewaySettings(port=0, host='127.0.0.1',
                                        cloud_base_url='http://cloud.test', data_dir=tmp_path / 'data')
        self.transport = CapturingTransport()
        self.cloud = FakeCloud()
        self.gateway = EdgeGateway(self.settings, transport=self.transport,
                                   cloud_client_factory=self.cloud)
        self.server = create_server(self.gateway)
        self.base = 'http://127.0.0.1:%d' % self.server.server_address[1]
        # loopback only; ignore any proxy settings in the environment
        self.http = requests.Session()
        self.http.trust_env = False
        thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        thread.start()
        yield
        self.http.close()
        self.server.shutdown()
        self.server.server_close()

    def get(self, path, **kwargs):
        return self.http.get(self.base + path, timeout=5, **kwargs)

    def post(self, path, body=None, **kwargs):
        return self.http.post(self.base + path, json=body, timeout=5, **kwargs)

    def pair(self):
        r = self.post('/pair/claim', {'code': 'ABC12345', 'name': 'Front counter'})
        assert r.status_code == 200, r.text

    def add_printer(self, **body):
        body = body or {'name': 'Front', 'ip': '192.168.1.50', 'port': 9100}
        r = self.post('/printers', body)
        assert r.status_code == 200, r.text
        return r.json()['printer']


class TestHealthAndPairing(GatewayTestCase):

    def test_health_before_pairing(self):
        body = self.get('/health').json()

        assert body['ok'] is True
        assert body['bound'] is False
        assert body['gatewayId'] is None
        assert body['cloudBaseUrl'] == 'http://cloud.test'

    def test_pair_then_health_reports_bound(self):
        self.pair()

        body = self.get('/health').json()

        assert self.cloud.pair_calls == [('ABC12345', 'Front counter')]
        assert body['bound'] is True
        assert body['gatewayId'] == 'g1'
        assert body['restaurantId'] == 'r1'

    def test_pair_requires_code(self):
        r = self.post('/pair/claim', {'name': 'x'})

        assert r.status_code == 400
        assert r.json() == {'error': 'Missing code'}

    def test_pair_rejects_incomplete_cloud_response(self):
        self.cloud.pair_response = {'gatewayId': 'g1'}

        r = self.post('/pair/claim', {'code': 'ABC12345'})

        assert r.status_code == 400
        assert r.json()['error'] == 'Invalid pairing response'
        assert self.get('/health').json()['bound'] is False

    def test_pair_surfaces_cloud_error(self):
        self.cloud.pair_error = CloudError('Invalid or expired code', 400)

        r = self.post('/pair/claim', {'code': 'BAD'})

        assert r.status_code == 400
        assert r.json() == {'error': 'Invalid or expired code'}

    def test_repairing_keeps_printers(self):
        self.add_printer()
        self.pair()

        assert len(self.get('/printers').json()['printers']) == 1

    def test_pair_without_cloud_url(self):
        self.gateway.settings.cloud_base_url = ''

        r = self.post('/pair/claim', {'code': 'ABC12345'})

        assert r.status_code == 400
        assert r.json() == {'error': 'Missing CLOUD_BASE_URL'}

    def test_stored_cloud_url_used_when_env_absent(self):
        self.gateway.settings.cloud_base_url = ''
        assert self.post('/config/cloud', {'cloudBaseUrl': 'https://pos.example.com'}).status_code == 200

        self.pair()

        assert self.cloud.base_urls[-1] == 'https://pos.example.com'

    def test_config_reset_unbinds(self):
        self.pair()

        assert self.post('/config/reset').json() == {'ok': True}
        assert self.get('/health').json()['bound'] is False

    def test_qr_payload(self):
        body = self.get('/qr').json()

        assert body['payload']['v'] == 1
        assert body['payload']['gatewayUrl'].startswith('http://127.0.0.1:')
        assert body['dataUrl'].startswith('data:image/svg+xml;base64,')
        assert b'svg' in base64.b64decode(body['dataUrl'].split(',', 1)[1])

    def test_status_page(self):
        r = self.get('/')

        assert r.status_code == 200
        assert 'text/html' in r.headers['Content-Type']
        assert 'Not paired' in r.text


class TestPrinters(GatewayTestCase):

    def test_add_list_remove(self):
        printer = self.add_printer()

        listed = self.get('/printers').json()['printers']
        assert [p['id'] for p in listed] == [printer['id']]
        assert listed[0]['ip'] == '192.168.1.50'

        r = self.http.delete(f"{self.base}/printers/{printer['id']}", timeout=5)
        assert r.json() == {'ok': True, 'removed': 1}
        assert self.get('/printers').json()['printers'] == []

    def test_add_printer_defaults_port(self):
        printer = self.add_printer(ip='192.168.1.60')

        assert printer['port'] == 9100

    @pytest.mark.parametrize('body,error', [
        ({'port': 9100}, 'Missing ip'),
        ({'ip': '10.0.0.1', 'port': 0}, 'Invalid port'),
        ({'ip': '10.0.0.1', 'port': 'abc'}, 'Invalid port'),
        ({'ip': '10.0.0.1', 'port': 70000}, 'Invalid port'),
    ])
    def test_add_printer_validation(self, body, error):
        r = self.post('/printers', body)

        assert r.status_code == 400
        assert r.json() == {'error': error}
        assert self.get('/printers').json()['printers'] == []

    def test_print_test_sends_escpos(self):
        printer = self.add_printer()

        r = self.post('/print/test', {'printerId': printer['id']})

        assert r.json() == {'ok': True, 'mode': 'escpos'}
        sent = self.transport.sent[0]
        assert (sent['ip'], sent['port']) == ('192.168.1.50', 9100)
        assert sent['data'][:2] == bytes.fromhex('1B40')
        assert sent['data'][-3:] == bytes.fromhex('1D5600')
        assert b'Printer: Front' in sent['data']

    def test_print_test_pcl_and_text(self):
        printer = self.add_printer()

        assert self.post('/print/test-pcl', {'printerId': printer['id']}).json()['mode'] == 'pcl'
        assert self.post('/print/test-text', {'printerId': printer['id']}).json()['mode'] == 'text'
        assert b'ISLAPOS - TEST PCL' in self.transport.sent[0]['data']
        assert self.transport.sent[1]['data'].endswith(b'\f')

    def test_print_test_unreachable_printer(self):
        printer = self.add_printer()
        self.transport.send_error = PrinterUnreachableError('Printer connection timed out')

        r = self.post('/print/test', {'printerId': printer['id']})

        assert r.status_code == 400
        assert r.json() == {'error': 'Printer connection timed out'}
        assert self.transport.send_attempts == 1
        assert self.transport.sent == []

    def test_print_test_unknown_printer(self):
        r = self.post('/print/test', {'printerId': 'nope'})

        assert r.status_code == 400
        assert r.json() == {'error': 'Printer not found'}

    def test_discover_clamps_query(self):
        r = self.get('/printers/discover?timeoutMs=99999&concurrency=0')

        assert r.json()['printers'] == [{'ip': '192.168.1.77', 'port': 9100}]
        assert self.transport.discover_args == (9100, 2000, 1)

    def test_discover_infinite_query_values(self):
        r = self.get('/printers/discover?timeoutMs=inf&concurrency=1e999')

        assert r.status_code == 200
        assert self.transport.discover_args == (9100, 2000, 200)

    def test_enqueue_infinite_max_attempts(self):
        self.add_printer()
        r = self.http.post(self.base + '/print/enqueue', timeout=5,
                           data='{"template": {"lines": ["x"]}, "maxAttempts": 1e999}',
                           headers={'Content-Type': 'application/json'})

        assert r.status_code == 200, r.text
        assert r.json()['job']['maxAttempts'] == 25

    def test_routes_and_enqueue(self):
        printer = self.add_printer()
        self.post('/print/routes', {'receiptPrinterId': printer['id']})

        assert self.get('/print/routes').json()['routes'] == {
            'receiptPrinterId': printer['id'], 'kitchenPrinterId': None}

        r = self.post('/print/enqueue', {'kind': 'receipt', 'template': {'lines': ['Total 21.30']}})
        body = r.json()
        assert body['processed']['succeeded'] == 1
        assert b'Total 21.30' in self.transport.sent[0]['data']

        jobs = self.get('/print/jobs?status=succeeded').json()['jobs']
        assert [j['id'] for j in jobs] == [body['job']['id']]

    def test_cancel_unknown_job(self):
        r = self.post('/print/jobs/missing/cancel')

        assert r.status_code == 404
        assert r.json() == {'error': 'Not found'}


class TestEventsAndSync(GatewayTestCase):

    def test_events_require_pairing(self):
        r = self.post('/events', {'events': [{'id': 'e1', 'type': 'order_created'}]})

        assert r.status_code == 400
        assert r.json() == {'error': 'Gateway not paired'}

    def test_events_missing_list(self):
        self.pair()

        r = self.post('/events', {'events': 'nope'})

        assert r.status_code == 400
        assert r.json() == {'error': 'Missing events'}

    def test_ingest_skips_incomplete_and_normalizes_time(self):
        self.pair()

        r = self.post('/events', {'events': [
            {'id': 'e1', 'type': 'order_created', 'createdAt': 'not a date', 'payload': {'total': 21.3}},
            {'type': 'no_id'},
            {'id': 'e2', 'type': 'order_paid', 'createdAt': '2024-05-01T10:00:00Z'},
            {'id': 'e3', 'type': 'order_paid', 'createdAt': '2024-05-01T10:00:00.1Z'},
        ]})

        assert r.json() == {'ok': True, 'accepted': 3, 'ids': ['e1', 'e2', 'e3']}
        events = LocalStore(self.settings.data_dir).read_outbox_events()
        assert [e['id'] for e in events] == ['e1', 'e2', 'e3']
        assert events[0]['createdAt'].endswith('Z')
        assert events[1]['createdAt'] == '2024-05-01T10:00:00.000Z'
        assert events[2]['createdAt'] == '2024-05-01T10:00:00.100Z'

    def test_push_drops_acknowledged_prefix(self):
        self.pair()
        self.post('/events', {'events': [{'id': f'e{i}', 'type': 't'} for i in range(5)]})
        self.cloud.push_response = {'accepted': 2, 'duplicate': 1}

        r = self.post('/sync/push')

        assert r.json() == {'ok': True, 'pushed': 3, 'accepted': 2, 'duplicate': 1}
        gateway_id, secret, events = self.cloud.pushed[0]
        assert (gateway_id, secret) == ('g1', 's1')
        assert len(events) == 5
        remaining = LocalStore(self.settings.data_dir).read_outbox_events()
        assert [e['id'] for e in remaining] == ['e3', 'e4']

    def test_push_requires_pairing(self):
        r = self.post('/sync/push')

        assert r.status_code == 400
        assert r.json() == {'error': 'Gateway not paired'}
        assert self.cloud.pushed == []

    def test_concurrent_push_does_not_lose_events(self):
        self.pair()
        store = LocalStore(self.settings.data_dir)
        for i in range(600):
            store.append_outbox_event({'id': f'e{i}', 'type': 't', 'createdAt': '2024-05-01T10:00:00.000Z'})

        in_flight = threading.Event()
        release = threading.Event()
        original_push = self.cloud.push_events

        def slow_push(gateway_id, secret, events):
            in_flight.set()
            assert release.wait(5)
            return original_push(gateway_id, secret, events)

        self.cloud.push_events = slow_push
        results = []
        first = threading.Thread(target=lambda: results.append(self.gateway.push_outbox()))
        first.start()
        assert in_flight.wait(5)

        assert self.gateway.push_outbox() == {'ok': True, 'skipped': True}

        release.set()
        first.join(5)
        assert results[0]['pushed'] == 500
        remaining = store.read_outbox_events(1000)
        assert [e['id'] for e in remaining] == [f'e{i}' for i in range(500, 600)]

        self.cloud.push_events = original_push
        assert self.gateway.push_outbox()['pushed'] == 100
        assert store.read_outbox_events() == []

    def test_push_empty_outbox(self):
        self.pair()

        assert self.post('/sync/push').json() == {'ok': True, 'pushed': 0}
        assert self.cloud.pushed == []

    def test_push_failure_keeps_outbox(self):
        self.pair()
        self.post('/events/test')

        def fail(*args):
            raise CloudError('Cloud unreachable: refused', 502)

        self.cloud.push_events = fail
        r = self.post('/sync/push')

        assert r.status_code == 502
        assert self.get('/health').json()['outboxPending'] == 1

    def test_invalid_json_body(self):
        r = self.http.post(self.base + '/events', data='{oops', timeout=5,
                          headers={'Content-Type': 'application/json'})

        assert r.status_code == 400
        assert r.json() == {'error': 'Invalid JSON body'}

    @pytest.mark.parametrize('length', ['abc', '-1'])
    def test_malformed_content_length(self, length):
        request = ('POST /events HTTP/1.1\r\nHost: 127.0.0.1\r\nContent-Length: %s\r\n'
                   'Connection: close\r\n\r\n' % length)
        with socket.create_connection(('127.0.0.1', self.server.server_address[1]), timeout=5) as sock:
            sock.sendall(request.encode('ascii'))
            response = sock.makefile('rb').read()

        assert response.split()[1] == b'400'
        assert response.endswith(b'{"error": "Invalid Content-Length"}')

    def test_unknown_route(self):
        r = self.get('/nope')

        assert r.status_code == 404
        assert r.json() == {'error': 'Not found'}

    def test_cors_preflight(self):
        r = self.http.options(self.base + '/events', headers={'Origin': 'http://pos.local'}, timeout=5)

        assert r.status_code == 204
        assert r.headers['Access-Control-Allow-Origin'] == 'http://pos.local'


class TestSettings:

    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        settings = load_settings({})

        assert settings.port == 9123
        assert settings.cloud_base_url == ''
        assert settings.data_dir == tmp_path / 'data'
        assert settings.log_file == tmp_path / 'data' / 'logs' / 'edge_gateway.log'

    def test_environment_overrides(self, tmp_path):
        settings = load_settings({
            'EDGE_GATEWAY_PORT': '8080',
            'CLOUD_BASE_URL': ' https://pos.example.com ',
            'EDGE_GATEWAY_DATA_DIR': str(tmp_path),
            'PRINT_WORKER_TICK_MS': '10',
        })

        assert settings.port == 8080
        assert settings.cloud_base_url == 'https://pos.example.com'
        assert settings.data_dir == tmp_path
        assert settings.print_worker_tick_ms == 500

    def test_bad_port_falls_back(self):
        assert load_settings({'EDGE_GATEWAY_PORT': 'abc'}).port == 9123
