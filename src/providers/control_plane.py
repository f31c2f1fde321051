"""Control-plane backends.

- HttpControlPlane: REST endpoint reached with requests
- LocalControlPlane: JSON-file simulator, so stacks can be planned and
  applied without a cloud account

Both raise the error taxonomy from providers.base: TransientAPIError for
retryable failures, PermanentAPIError otherwise, ResourceNotFoundError when
the addressed resource does not exist.
"""

import json
import logging
import os
import secrets
import threading
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

import requests
import urllib3

from config import ControlPlaneSettings, DriverConfig
from providers.base import (
    PermanentAPIError,
    ResourceNotFoundError,
    TransientAPIError,
)

logger = logging.getLogger(__name__)

# Status codes that are worth retrying
RETRYABLE_STATUS = frozenset({408, 429})


class HttpControlPlane:
    """Control-plane reached over HTTP.

    Endpoints (resource type and physical id are URL-quoted):
        POST   {endpoint}/resources/{type}          body {"properties", "physical_id"}
        PUT    {endpoint}/resources/{type}/{id}     body {"properties"}
        DELETE {endpoint}/resources/{type}/{id}
        GET    {endpoint}/resources/{type}/{id}
    Responses carry {"id": ..., "attributes": {...}}.
    """

    def __init__(self, settings: ControlPlaneSettings, session: Optional[requests.Session] = None):
        self.endpoint = settings.endpoint.rstrip('/')
        self.timeout = settings.timeout
        self.verify_tls = settings.verify_tls
        self.session = session or requests.Session()
        if settings.token:
            self.session.headers['Authorization'] = f'Bearer {settings.token}'
        self.session.headers.setdefault('Content-Type', 'application/json')
        if not self.verify_tls:
            # Suppress SSL warnings for self-signed certs
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _url(self, resource_type: str, physical_id: Optional[str] = None) -> str:
        url = f"{self.endpoint}/resources/{quote(resource_type, safe='')}"
        if physical_id is not None:
            url += f"/{quote(physical_id, safe='')}"
        return url

    def _request(self, method: str, url: str, body: Optional[dict] = None) -> dict:
        try:
            resp = self.session.request(
                method,
                url,
                json=body,
                timeout=self.timeout,
                verify=self.verify_tls,
            )
        except requests.exceptions.Timeout:
            raise TransientAPIError(f"Timeout calling {method} {url}")
        except requests.exceptions.ConnectionError as e:
            raise TransientAPIError(f"Cannot connect to {self.endpoint}: {e}")

        status = resp.status_code
        if status == 404:
            raise ResourceNotFoundError(f"{method} {url}: not found", status)
        if status in RETRYABLE_STATUS or status >= 500:
            raise TransientAPIError(f"{method} {url}: HTTP {status} - {resp.text[:200]}", status)
        if status >= 400:
            raise PermanentAPIError(f"{method} {url}: HTTP {status} - {resp.text[:200]}", status)

        if status == 204 or not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            raise PermanentAPIError(f"{method} {url}: response is not JSON", status)
        return data if isinstance(data, dict) else {}

    def create_resource(self, resource_type: str, properties: dict,
                        physical_id: Optional[str] = None) -> dict:
        body: dict[str, Any] = {'properties': properties}
        if physical_id:
            body['physical_id'] = physical_id
        data = self._request('POST', self._url(resource_type), body)
        data.setdefault('id', physical_id)
        return data

    def update_resource(self, resource_type: str, physical_id: str, properties: dict) -> dict:
        data = self._request('PUT', self._url(resource_type, physical_id), {'properties': properties})
        data.setdefault('id', physical_id)
        return data

    def delete_resource(self, resource_type: str, physical_id: str) -> None:
        self._request('DELETE', self._url(resource_type, physical_id))

    def get_resource(self, resource_type: str, physical_id: str) -> dict:
        data = self._request('GET', self._url(resource_type, physical_id))
        data.setdefault('id', physical_id)
        return data


class LocalControlPlane:
    """Control-plane simulated in a JSON file.

    Layout: {"<type>": {"<physical id>": {"properties": {...}, "attributes": {...}}}}
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        with open(self.path, encoding='utf-8') as f:
            return json.load(f)

    def _save(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f'.{self.path.name}.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    def create_resource(self, resource_type: str, properties: dict,
                        physical_id: Optional[str] = None) -> dict:
        with self._lock:
            data = self._load()
            bucket = data.setdefault(resource_type, {})
            physical_id = physical_id or f"{resource_type.split('::')[-1].lower()}-{secrets.token_hex(6)}"
            if physical_id in bucket:
                raise PermanentAPIError(f"{resource_type} '{physical_id}' already exists", 409)
            bucket[physical_id] = {'properties': properties, 'attributes': {}}
            self._save(data)
        logger.debug(f"[local] Created {resource_type} {physical_id}")
        return {'id': physical_id, 'attributes': {}}

    def update_resource(self, resource_type: str, physical_id: str, properties: dict) -> dict:
        with self._lock:
            data = self._load()
            record = data.get(resource_type, {}).get(physical_id)
            if record is None:
                raise ResourceNotFoundError(f"{resource_type} '{physical_id}' not found", 404)
            record['properties'] = properties
            self._save(data)
        logger.debug(f"[local] Updated {resource_type} {physical_id}")
        return {'id': physical_id, 'attributes': dict(record.get('attributes') or {})}

    def delete_resource(self, resource_type: str, physical_id: str) -> None:
        with self._lock:
            data = self._load()
            if physical_id not in data.get(resource_type, {}):
                raise ResourceNotFoundError(f"{resource_type} '{physical_id}' not found", 404)
            del data[resource_type][physical_id]
            if not data[resource_type]:
                del data[resource_type]
            self._save(data)
        logger.debug(f"[local] Deleted {resource_type} {physical_id}")

    def get_resource(self, resource_type: str, physical_id: str) -> dict:
        with self._lock:
            record = self._load().get(resource_type, {}).get(physical_id)
        if record is None:
            raise ResourceNotFoundError(f"{resource_type} '{physical_id}' not found", 404)
        return {'id': physical_id, 'attributes': dict(record.get('attributes') or {})}


def build_control_plane(config: DriverConfig):
    """Create the control-plane backend selected by configuration."""
    settings = config.control_plane
    if settings.type == 'http':
        logger.debug(f"Using HTTP control-plane at {settings.endpoint}")
        return HttpControlPlane(settings)
    path = config.local_control_plane_path
    logger.debug(f"Using local control-plane simulator at {path}")
    return LocalControlPlane(path)
