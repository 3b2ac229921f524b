# Request schemas - gateway request bodies validated once at the HTTP boundary

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .clock import normalize_iso
from .errors import ValidationError
from .printer_transport import (
    DEFAULT_CONCURRENCY, DEFAULT_PROBE_TIMEOUT_MS, MAX_CONCURRENCY, MAX_PROBE_TIMEOUT_MS,
    MIN_CONCURRENCY, MIN_PROBE_TIMEOUT_MS, RAW_PRINT_PORT, clamp,
)
from .tickets import PROTOCOLS


def _text(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    return value.strip() if isinstance(value, str) else ''


def _require_object(body) -> Dict[str, Any]:
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError('Request body must be a JSON object')
    return body


@dataclass
class PairClaimRequest:
    code: str
    name: str = ''

    @classmethod
    def from_body(cls, body) -> 'PairClaimRequest':
        body = _require_object(body)
        code = _text(body, 'code')
        if not code:
            raise ValidationError('Missing code')
        return cls(code=code, name=_text(body, 'name'))


@dataclass
class PrinterCreateRequest:
    ip: str
    name: str = ''
    port: int = RAW_PRINT_PORT

    @classmethod
    def from_body(cls, body) -> 'PrinterCreateRequest':
        body = _require_object(body)
        ip = _text(body, 'ip')
        if not ip:
            raise ValidationError('Missing ip')
        raw_port = body.get('port', RAW_PRINT_PORT)
        if raw_port is None or isinstance(raw_port, bool):
            raise ValidationError('Invalid port')
        try:
            port = float(raw_port)
        except (TypeError, ValueError):
            raise ValidationError('Invalid port')
        if port <= 0 or port != int(port) or port > 65535:
            raise ValidationError('Invalid port')
        return cls(ip=ip, name=_text(body, 'name'), port=int(port))


@dataclass
class PrintTestRequest:
    printer_id: str

    @classmethod
    def from_body(cls, body) -> 'PrintTestRequest':
        return cls(printer_id=_text(_require_object(body), 'printerId'))


@dataclass
class IncomingEvent:
    id: str
    type: str
    device_id: Optional[str] = None
    payload: Any = field(default_factory=dict)
    created_at: str = ''

    def to_record(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'deviceId': self.device_id,
            'type': self.type,
            'payload': self.payload,
            'createdAt': self.created_at,
        }


@dataclass
class EventBatch:
    events: List[IncomingEvent]
    skipped: int = 0

    @classmethod
    def from_body(cls, body) -> 'EventBatch':
        body = _require_object(body)
        raw_events = body.get('events')
        if not isinstance(raw_events, list):
            raise ValidationError('Missing events')
        events = []
        skipped = 0
        for raw in raw_events:
            if not isinstance(raw, dict):
                skipped += 1
                continue
            event_id = _text(raw, 'id')
            event_type = _text(raw, 'type')
            if not event_id or not event_type:
                skipped += 1
                continue
            payload = raw.get('payload')
            events.append(IncomingEvent(
                id=event_id,
                type=event_type,
                device_id=_text(raw, 'deviceId') or None,
                payload=payload if payload is not None else {},
                created_at=normalize_iso(raw.get('createdAt')),
            ))
        return cls(events=events, skipped=skipped)


@dataclass
class CloudConfigRequest:
    cloud_base_url: str

    @classmethod
    def from_body(cls, body) -> 'CloudConfigRequest':
        url = _text(_require_object(body), 'cloudBaseUrl')
        if not url:
            raise ValidationError('Missing cloudBaseUrl')
        if not url.startswith(('http://', 'https://')):
            raise ValidationError('cloudBaseUrl must be an http(s) URL')
        return cls(cloud_base_url=url)


@dataclass
class DiscoverQuery:
    timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS
    concurrency: int = DEFAULT_CONCURRENCY

    @classmethod
    def from_query(cls, query: Dict[str, List[str]]) -> 'DiscoverQuery':
        def first(key):
            values = query.get(key) or []
            return values[0] if values else None

        return cls(
            timeout_ms=clamp(first('timeoutMs'), MIN_PROBE_TIMEOUT_MS, MAX_PROBE_TIMEOUT_MS,
                             DEFAULT_PROBE_TIMEOUT_MS),
            concurrency=clamp(first('concurrency'), MIN_CONCURRENCY, MAX_CONCURRENCY, DEFAULT_CONCURRENCY),
        )


@dataclass
class PrintRoutesRequest:
    receipt_printer_id: Optional[str] = None
    kitchen_printer_id: Optional[str] = None

    @classmethod
    def from_body(cls, body) -> 'PrintRoutesRequest':
        body = _require_object(body)
        return cls(
            receipt_printer_id=_text(body, 'receiptPrinterId') or None,
            kitchen_printer_id=_text(body, 'kitchenPrinterId') or None,
        )

    def to_config(self) -> Dict[str, Optional[str]]:
        return {
            'receiptPrinterId': self.receipt_printer_id,
            'kitchenPrinterId': self.kitchen_printer_id,
        }


@dataclass
class PrintEnqueueRequest:
    kind: str = 'receipt'
    protocol: str = 'escpos'
    printer_id: Optional[str] = None
    template: Optional[Dict[str, Any]] = None
    raw_base64: Optional[str] = None
    max_attempts: int = 10

    @classmethod
    def from_body(cls, body) -> 'PrintEnqueueRequest':
        body = _require_object(body)
        protocol = (_text(body, 'protocol') or 'escpos').lower()
        if protocol not in PROTOCOLS:
            raise ValidationError(f'Unsupported protocol: {protocol}')
        template = body.get('template') if isinstance(body.get('template'), dict) else None
        raw_base64 = _text(body, 'rawBase64') or None
        if not template and not raw_base64:
            raise ValidationError('Missing template or rawBase64')
        if protocol == 'raw' and not raw_base64:
            raise ValidationError('Missing rawBase64')
        return cls(
            kind=_text(body, 'kind') or 'receipt',
            protocol=protocol,
            printer_id=_text(body, 'printerId') or None,
            template=template,
            raw_base64=raw_base64,
            max_attempts=clamp(body.get('maxAttempts', 10), 1, 25, 10),
        )
