# Edge Gateway - local HTTP surface for pairing, printers, printing and cloud sync
# JSON in, JSON out: {ok: true, ...} on success, {error} with a non-2xx status otherwise

import base64
import html
import io
import json
import logging
import re
import threading
import uuid
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import qrcode
import qrcode.image.svg

from .clock import utc_now_iso
from .cloud_client import EdgeCloudClient
from .errors import ConfigurationError, GatewayError, NotFoundError, ValidationError
from .local_store import LocalStore
from .logging_config import redact_value
from .print_queue import PrintQueue, normalize_print_routes, normalize_printers
from .printer_transport import RAW_PRINT_PORT, LanPrinterTransport, clamp
from .schemas import (
    CloudConfigRequest, DiscoverQuery, EventBatch, PairClaimRequest, PrintEnqueueRequest,
    PrinterCreateRequest, PrintRoutesRequest, PrintTestRequest,
)
from .settings import GatewaySettings
from .tickets import Ticket, encode_escpos, encode_pcl, encode_plain_text, printer_test_lines

logger = logging.getLogger(__name__)

OUTBOX_PUSH_BATCH = 500
MAX_BODY_BYTES = 2 * 1024 * 1024


def is_bound(config: Optional[Dict[str, Any]]) -> bool:
    """A gateway is bound iff gatewayId, secret and restaurantId are all non-empty."""
    config = config or {}
    return bool(config.get('gatewayId') and config.get('secret') and config.get('restaurantId'))


class EdgeGateway:
    """Orchestrates config store, outbox, printers and the cloud for the HTTP layer"""

    def __init__(self, settings: GatewaySettings, store: LocalStore = None,
                 transport: LanPrinterTransport = None,
                 cloud_client_factory: Callable[[str], EdgeCloudClient] = EdgeCloudClient):
        self.settings = settings
        self.store = store or LocalStore(settings.data_dir)
        self.transport = transport or LanPrinterTransport(send_timeout_ms=settings.printer_timeout_ms)
        self.cloud_client_factory = cloud_client_factory
        self.print_queue = PrintQueue(self.store, self.transport)
        self._push_lock = threading.Lock()

        config = self.store.read_config() or {}
        redact_value(config.get('secret') or '')

    # -- helpers ----------------------------------------------------------

    def resolve_cloud_base_url(self) -> str:
        if self.settings.cloud_base_url:
            return self.settings.cloud_base_url
        stored = (self.store.read_config() or {}).get('cloudBaseUrl')
        return stored.strip() if isinstance(stored, str) else ''

    def gateway_url(self, host_header: str = '') -> str:
        ip = self.transport.lan_address()
        if ip:
            return f'http://{ip}:{self.settings.port}'
        if host_header and host_header.strip():
            return f'http://{host_header.strip()}'
        return f'http://localhost:{self.settings.port}'

    def _require_cloud(self) -> EdgeCloudClient:
        base_url = self.resolve_cloud_base_url()
        if not base_url:
            raise ConfigurationError('Missing CLOUD_BASE_URL')
        return self.cloud_client_factory(base_url)

    def _require_paired(self) -> Dict[str, Any]:
        config = self.store.read_config()
        if not config or not config.get('gatewayId'):
            raise ConfigurationError('Gateway not paired')
        return config

    def _find_printer(self, printer_id: str) -> Dict[str, Any]:
        printers = normalize_printers(self.store.read_config())
        printer = next((p for p in printers if p['id'] == printer_id), None) if printer_id else None
        if printer is None:
            raise ValidationError('Printer not found')
        return printer

    # -- status -----------------------------------------------------------

    def health(self, host_header: str = '') -> Dict[str, Any]:
        config = self.store.read_config() or {}
        return {
            'ok': True,
            'bound': is_bound(config),
            'gatewayId': config.get('gatewayId') or None,
            'restaurantId': config.get('restaurantId') or None,
            'gatewayUrl': self.gateway_url(host_header),
            'lanAddress': self.transport.lan_address(),
            'cloudBaseUrl': self.resolve_cloud_base_url() or None,
            'outboxPending': self.store.count_outbox_events(),
            'time': utc_now_iso(),
        }

    def qr(self, host_header: str = '') -> Dict[str, Any]:
        payload = {'gatewayUrl': self.gateway_url(host_header), 'v': 1}
        image = qrcode.make(json.dumps(payload, separators=(',', ':')),
                            image_factory=qrcode.image.svg.SvgPathImage)
        buf = io.BytesIO()
        image.save(buf)
        data_url = 'data:image/svg+xml;base64,' + base64.b64encode(buf.getvalue()).decode('ascii')
        return {'ok': True, 'dataUrl': data_url, 'payload': payload}

    # -- pairing & config -------------------------------------------------

    def pair_claim(self, request: PairClaimRequest) -> Dict[str, Any]:
        cloud_base_url = self.resolve_cloud_base_url()
        if not cloud_base_url:
            raise ConfigurationError('Missing CLOUD_BASE_URL')

        result = self.cloud_client_factory(cloud_base_url).complete_pairing(request.code, request.name)
        gateway_id, secret, restaurant_id = (result.get('gatewayId'), result.get('secret'),
                                             result.get('restaurantId'))
        if not gateway_id or not secret or not restaurant_id:
            raise ValidationError('Invalid pairing response')

        redact_value(str(secret))

        def bind(config):
            config.update({
                'gatewayId': str(gateway_id),
                'secret': str(secret),
                'restaurantId': str(restaurant_id),
                'cloudBaseUrl': cloud_base_url,
                'boundAt': utc_now_iso(),
            })
            return config

        self.store.update_config(bind)
        logger.info("Paired as gateway %s for restaurant %s", gateway_id, restaurant_id)
        return {'ok': True, 'gatewayId': str(gateway_id), 'restaurantId': str(restaurant_id)}

    def set_cloud(self, request: CloudConfigRequest) -> Dict[str, Any]:
        def apply(config):
            config['cloudBaseUrl'] = request.cloud_base_url
            return config

        self.store.update_config(apply)
        logger.info("Cloud base URL set to %s", request.cloud_base_url)
        return {'ok': True, 'cloudBaseUrl': request.cloud_base_url}

    def reset_config(self) -> Dict[str, Any]:
        self.store.write_config({})
        logger.warning("Gateway config reset; pairing and printers cleared")
        return {'ok': True}

    # -- printers ---------------------------------------------------------

    def list_printers(self) -> Dict[str, Any]:
        return {'ok': True, 'printers': normalize_printers(self.store.read_config())}

    def add_printer(self, request: PrinterCreateRequest) -> Dict[str, Any]:
        printer = {
            'id': str(uuid.uuid4()),
            'name': request.name,
            'ip': request.ip,
            'port': request.port,
            'createdAt': utc_now_iso(),
        }

        def add(config):
            config['printers'] = normalize_printers(config) + [printer]
            return config

        self.store.update_config(add)
        logger.info("Added printer %s (%s:%s)", printer['id'], printer['ip'], printer['port'])
        return {'ok': True, 'printer': printer}

    def remove_printer(self, printer_id: str) -> Dict[str, Any]:
        if not printer_id:
            raise ValidationError('Missing id')
        removed = []

        def remove(config):
            printers = normalize_printers(config)
            config['printers'] = [p for p in printers if p['id'] != printer_id]
            removed.append(len(printers) - len(config['printers']))
            return config

        self.store.update_config(remove)
        return {'ok': True, 'removed': removed[0]}

    def discover(self, query: DiscoverQuery) -> Dict[str, Any]:
        printers = self.transport.discover(port=RAW_PRINT_PORT, timeout_ms=query.timeout_ms,
                                           concurrency=query.concurrency)
        return {'ok': True, 'printers': printers}

    def get_routes(self) -> Dict[str, Any]:
        return {'ok': True, 'routes': normalize_print_routes(self.store.read_config())}

    def set_routes(self, request: PrintRoutesRequest) -> Dict[str, Any]:
        def apply(config):
            config['printRoutes'] = request.to_config()
            return config

        self.store.update_config(apply)
        return {'ok': True, 'routes': request.to_config()}

    # -- printing ---------------------------------------------------------

    def print_test(self, request: PrintTestRequest, mode: str = 'escpos') -> Dict[str, Any]:
        """Encode a test ticket for the printer and send it once, synchronously."""
        printer = self._find_printer(request.printer_id)
        now_iso = utc_now_iso()
        if mode == 'pcl':
            data = encode_pcl(Ticket(lines=printer_test_lines(printer, now_iso, 'ISLAPOS - TEST PCL')))
        elif mode == 'text':
            data = encode_plain_text(Ticket(lines=printer_test_lines(printer, now_iso, 'ISLAPOS - TEST TEXT')))
        else:
            mode = 'escpos'
            data = encode_escpos(Ticket(title='ISLAPOS', subtitle='TEST PRINT',
                                        lines=printer_test_lines(printer, now_iso)))
        self.transport.send(printer['ip'], printer['port'], data)
        return {'ok': True, 'mode': mode}

    def enqueue_print(self, request: PrintEnqueueRequest) -> Dict[str, Any]:
        job = self.print_queue.enqueue(request)
        processed = self.print_queue.process_tick()
        return {'ok': True, 'job': job, 'processed': processed}

    def list_print_jobs(self, query: Dict[str, list]) -> Dict[str, Any]:
        status = ((query.get('status') or [''])[0] or '').strip()
        limit = clamp((query.get('limit') or [200])[0], 1, 1000, 200)
        return {'ok': True, 'jobs': self.print_queue.list_jobs(status, limit)}

    def cancel_print_job(self, job_id: str) -> Dict[str, Any]:
        job = self.print_queue.cancel(job_id)
        if job is None:
            raise NotFoundError('Not found')
        return {'ok': True, 'job': job}

    def retry_print_job(self, job_id: str) -> Dict[str, Any]:
        job = self.print_queue.retry(job_id)
        if job is None:
            raise NotFoundError('Not found')
        return {'ok': True, 'job': job}

    # -- events & sync ----------------------------------------------------

    def ingest_events(self, batch: EventBatch) -> Dict[str, Any]:
        self._require_paired()
        ids = []
        for event in batch.events:
            self.store.append_outbox_event(event.to_record())
            ids.append(event.id)
        if batch.skipped:
            logger.debug("Skipped %d event(s) without id/type", batch.skipped)
        logger.info("Queued %d event(s) in outbox", len(ids))
        return {'ok': True, 'accepted': len(ids), 'ids': ids}

    def queue_test_event(self) -> Dict[str, Any]:
        self._require_paired()
        event_id = str(uuid.uuid4())
        self.store.append_outbox_event({
            'id': event_id,
            'deviceId': None,
            'type': 'test_event',
            'payload': {'ok': True},
            'createdAt': utc_now_iso(),
        })
        return {'ok': True, 'queued': 1, 'id': event_id}

    def push_outbox(self) -> Dict[str, Any]:
        """Push the front of the outbox; drop accepted + duplicate on success."""
        if not self._push_lock.acquire(blocking=False):
            return {'ok': True, 'skipped': True}
        try:
            return self._push_batch()
        finally:
            self._push_lock.release()

    def _push_batch(self) -> Dict[str, Any]:
        config = self.store.read_config()
        if not config or not config.get('gatewayId') or not config.get('secret'):
            raise ConfigurationError('Gateway not paired')
        client = self._require_cloud()

        batch = self.store.read_outbox_events(OUTBOX_PUSH_BATCH)
        if not batch:
            return {'ok': True, 'pushed': 0}

        counts = client.push_events(config['gatewayId'], config['secret'], batch)
        acknowledged = min(len(batch), counts['accepted'] + counts['duplicate'])
        if acknowledged > 0:
            self.store.drop_outbox_events(acknowledged)
        return {'ok': True, 'pushed': acknowledged, 'accepted': counts['accepted'],
                'duplicate': counts['duplicate']}

    # -- page -------------------------------------------------------------

    def status_page(self, host_header: str = '') -> str:
        info = self.health(host_header)
        printers = normalize_printers(self.store.read_config())
        rows = ''.join(
            f"<tr><td>{html.escape(p['name'] or '(unnamed)')}</td><td>{html.escape(p['ip'])}:{p['port']}</td>"
            f"<td><code>{html.escape(p['id'])}</code></td></tr>"
            for p in printers
        ) or '<tr><td colspan="3">No printers yet.</td></tr>'
        bound = 'Bound' if info['bound'] else 'Not paired'
        return PAGE_TEMPLATE.format(
            status=bound,
            badge='green' if info['bound'] else 'yellow',
            gateway_url=html.escape(info['gatewayUrl']),
            cloud=html.escape(info['cloudBaseUrl'] or '(not set)'),
            restaurant=html.escape(info['restaurantId'] or '-'),
            outbox=info['outboxPending'],
            rows=rows,
        )


PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>IslaPOS Edge Gateway</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
               max-width: 800px; margin: 0 auto; padding: 20px; background: #f5f5f5; }}
        .card {{ background: white; padding: 20px; border-radius: 10px; margin-bottom: 20px; box-shadow: 0 2px 5px rgba(0,0,0,0.1); }}
        .badge {{ padding: 8px 16px; border-radius: 20px; font-weight: bold; }}
        .green {{ background: #d4edda; color: #155724; }}
        .yellow {{ background: #fff3cd; color: #856404; }}
        table {{ width: 100%; border-collapse: collapse; }}
        th, td {{ padding: 10px; text-align: left; border-bottom: 1px solid #ddd; }}
    </style>
</head>
<body>
    <h1>IslaPOS Edge Gateway</h1>
    <div class="card">
        <span class="badge {badge}">{status}</span>
        <p>Gateway URL: <code>{gateway_url}</code></p>
        <p>Cloud: <code>{cloud}</code></p>
        <p>Restaurant: <code>{restaurant}</code></p>
        <p>Outbox pending: {outbox}</p>
    </div>
    <div class="card">
        <h2>Printers</h2>
        <table><tr><th>Name</th><th>Address</th><th>Id</th></tr>{rows}</table>
    </div>
</body>
</html>
"""


class GatewayRequestHandler(BaseHTTPRequestHandler):
    """Routes JSON requests to the EdgeGateway bound on the server"""

    server_version = 'IslaPOSEdgeGateway/1.0'

    GET_ROUTES = [
        (re.compile(r'^/health$'), 'get_health'),
        (re.compile(r'^/qr$'), 'get_qr'),
        (re.compile(r'^/printers$'), 'get_printers'),
        (re.compile(r'^/printers/discover$'), 'get_discover'),
        (re.compile(r'^/print/routes$'), 'get_routes'),
        (re.compile(r'^/print/jobs$'), 'get_jobs'),
    ]
    POST_ROUTES = [
        (re.compile(r'^/pair/claim$'), 'post_pair_claim'),
        (re.compile(r'^/printers$'), 'post_printer'),
        (re.compile(r'^/print/test$'), 'post_print_test'),
        (re.compile(r'^/print/test-pcl$'), 'post_print_test_pcl'),
        (re.compile(r'^/print/test-text$'), 'post_print_test_text'),
        (re.compile(r'^/print/routes$'), 'post_routes'),
        (re.compile(r'^/print/enqueue$'), 'post_enqueue'),
        (re.compile(r'^/print/process$'), 'post_process'),
        (re.compile(r'^/print/jobs/(?P<job_id>[^/]+)/cancel$'), 'post_cancel_job'),
        (re.compile(r'^/print/jobs/(?P<job_id>[^/]+)/retry$'), 'post_retry_job'),
        (re.compile(r'^/events$'), 'post_events'),
        (re.compile(r'^/events/test$'), 'post_test_event'),
        (re.compile(r'^/sync/push$'), 'post_sync_push'),
        (re.compile(r'^/config/cloud$'), 'post_config_cloud'),
        (re.compile(r'^/config/reset$'), 'post_config_reset'),
    ]
    DELETE_ROUTES = [
        (re.compile(r'^/printers/(?P<printer_id>[^/]+)$'), 'delete_printer'),
    ]

    @property
    def gateway(self) -> EdgeGateway:
        return self.server.gateway

    # -- plumbing ---------------------------------------------------------

    def _send_cors_headers(self):
        origin = self.headers.get('Origin')
        if origin:
            self.send_header('Access-Control-Allow-Origin', origin)
            self.send_header('Vary', 'Origin')

    def send_json(self, payload: Dict[str, Any], status: int = 200):
        body = json.dumps(payload).encode('utf-8')
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self._send_cors_headers()
        self.end_headers()
        self.wfile.write(body)

    def send_html(self, page: str, status: int = 200):
        body = page.encode('utf-8')
        self.send_response(status)
        self.send_header('Content-Type', 'text/html; charset=utf-8')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def read_json(self):
        try:
            length = int(self.headers.get('Content-Length') or 0)
        except ValueError:
            raise ValidationError('Invalid Content-Length')
        if length < 0:
            raise ValidationError('Invalid Content-Length')
        if length > MAX_BODY_BYTES:
            raise GatewayError('Request body too large', 413)
        if length == 0:
            return {}
        raw = self.rfile.read(length)
        try:
            return json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, ValueError):
            raise ValidationError('Invalid JSON body')

    def _match(self, routes) -> Tuple[Optional[str], Dict[str, str]]:
        for pattern, name in routes:
            match = pattern.match(self.parsed.path)
            if match:
                return name, match.groupdict()
        return None, {}

    def _dispatch(self, routes):
        self.parsed = urlparse(self.path)
        name, params = self._match(routes)
        if name is None:
            self.send_json({'error': 'Not found'}, 404)
            return
        try:
            result = getattr(self, name)(**params)
        except GatewayError as e:
            self.send_json({'error': e.message}, e.status)
            return
        except Exception as e:
            logger.exception("Unhandled error on %s %s", self.command, self.parsed.path)
            self.send_json({'error': str(e) or 'Internal error'}, 500)
            return
        if result is not None:
            self.send_json(result)

    def do_OPTIONS(self):
        self.send_response(204)
        self._send_cors_headers()
        self.send_header('Access-Control-Allow-Methods', 'GET, POST, DELETE, OPTIONS')
        self.send_header('Access-Control-Allow-Headers', 'Content-Type')
        self.send_header('Content-Length', '0')
        self.end_headers()

    def do_GET(self):
        if urlparse(self.path).path == '/':
            self.send_html(self.gateway.status_page(self.headers.get('Host') or ''))
            return
        self._dispatch(self.GET_ROUTES)

    def do_POST(self):
        self._dispatch(self.POST_ROUTES)

    def do_DELETE(self):
        self._dispatch(self.DELETE_ROUTES)

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    # -- routes -----------------------------------------------------------

    def get_health(self):
        return self.gateway.health(self.headers.get('Host') or '')

    def get_qr(self):
        return self.gateway.qr(self.headers.get('Host') or '')

    def get_printers(self):
        return self.gateway.list_printers()

    def get_discover(self):
        return self.gateway.discover(DiscoverQuery.from_query(parse_qs(self.parsed.query)))

    def get_routes(self):
        return self.gateway.get_routes()

    def get_jobs(self):
        return self.gateway.list_print_jobs(parse_qs(self.parsed.query))

    def post_pair_claim(self):
        return self.gateway.pair_claim(PairClaimRequest.from_body(self.read_json()))

    def post_printer(self):
        return self.gateway.add_printer(PrinterCreateRequest.from_body(self.read_json()))

    def delete_printer(self, printer_id):
        return self.gateway.remove_printer(printer_id.strip())

    def post_print_test(self):
        return self.gateway.print_test(PrintTestRequest.from_body(self.read_json()), 'escpos')

    def post_print_test_pcl(self):
        return self.gateway.print_test(PrintTestRequest.from_body(self.read_json()), 'pcl')

    def post_print_test_text(self):
        return self.gateway.print_test(PrintTestRequest.from_body(self.read_json()), 'text')

    def post_routes(self):
        return self.gateway.set_routes(PrintRoutesRequest.from_body(self.read_json()))

    def post_enqueue(self):
        return self.gateway.enqueue_print(PrintEnqueueRequest.from_body(self.read_json()))

    def post_process(self):
        return self.gateway.print_queue.process_tick()

    def post_cancel_job(self, job_id):
        return self.gateway.cancel_print_job(job_id.strip())

    def post_retry_job(self, job_id):
        return self.gateway.retry_print_job(job_id.strip())

    def post_events(self):
        return self.gateway.ingest_events(EventBatch.from_body(self.read_json()))

    def post_test_event(self):
        return self.gateway.queue_test_event()

    def post_sync_push(self):
        return self.gateway.push_outbox()

    def post_config_cloud(self):
        return self.gateway.set_cloud(CloudConfigRequest.from_body(self.read_json()))

    def post_config_reset(self):
        return self.gateway.reset_config()


class GatewayHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, gateway: EdgeGateway):
        super().__init__(address, GatewayRequestHandler)
        self.gateway = gateway


def create_server(gateway: EdgeGateway, host: str = None, port: int = None) -> GatewayHTTPServer:
    host = gateway.settings.host if host is None else host
    port = gateway.settings.port if port is None else port
    return GatewayHTTPServer((host, port), gateway)
