# Cloud Client - REST client for the cloud's edge endpoints
# Pairing completion and outbox event ingestion

import logging
from typing import Any, Dict, List, Optional

import requests

from .errors import CloudError

logger = logging.getLogger(__name__)

PAIR_COMPLETE_PATH = '/api/edge/pair/complete'
PUSH_EVENTS_PATH = '/api/edge/push-events'
USER_AGENT = 'IslaPOS-Edge-Gateway/1.0'


class EdgeCloudClient:
    """REST client for pairing the gateway and pushing its outbox"""

    def __init__(self, base_url: str, timeout: int = 30, session: requests.Session = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': USER_AGENT,
        })

    def _post(self, path: str, payload: Dict, headers: Dict[str, str] = None,
              default_error: str = 'Request failed') -> Dict[str, Any]:
        endpoint = f"{self.base_url}{path}"
        try:
            response = self.session.post(endpoint, json=payload, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout:
            logger.warning("Cloud request to %s timed out", path)
            raise CloudError('Cloud request timed out', 502)
        except requests.exceptions.RequestException as e:
            logger.warning("Cloud request to %s failed: %s", path, e)
            raise CloudError(f'Cloud unreachable: {e}', 502)

        body = _json_or_none(response)
        if not response.ok:
            message = body.get('error') if isinstance(body, dict) and body.get('error') else default_error
            logger.warning("Cloud %s returned %s: %s", path, response.status_code, message)
            raise CloudError(str(message), response.status_code)
        return body if isinstance(body, dict) else {}

    def complete_pairing(self, code: str, name: str) -> Dict[str, Any]:
        """Exchange a one-time pairing code for gateway credentials"""
        return self._post(PAIR_COMPLETE_PATH, {'code': code, 'name': name}, default_error='Pairing failed')

    def push_events(self, gateway_id: str, secret: str, events: List[Dict]) -> Dict[str, int]:
        """Push a batch of outbox events; returns accepted/duplicate counts"""
        headers = {
            'x-gateway-id': str(gateway_id),
            'x-gateway-secret': str(secret),
        }
        body = self._post(PUSH_EVENTS_PATH, {'events': events}, headers=headers, default_error='Push failed')
        accepted = _count(body.get('accepted'))
        duplicate = _count(body.get('duplicate'))
        logger.info("Cloud acknowledged %d accepted, %d duplicate of %d events",
                    accepted, duplicate, len(events))
        return {'accepted': accepted, 'duplicate': duplicate}


def _json_or_none(response: requests.Response) -> Optional[Any]:
    try:
        return response.json()
    except ValueError:
        return None


def _count(value) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0
