"""
Caddy admin API client.

Caddy has no "swap this upstream" primitive, so a cutover is a whole-document
read-modify-write: GET /config/, rewrite every reverse_proxy upstream dialing the
old address, POST /load. Caddy applies a /load atomically. When the GET returns
an Etag it is sent back as If-Match so a concurrent writer turns into a hard
conflict instead of a silently lost update.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests

from deploy.errors import ConfigApplyFailed, ConfigConflict, ConfigUnreachable, UpstreamNotFound

logger = logging.getLogger(__name__)


@dataclass
class ConfigDocument:
    body: Any
    etag: Optional[str] = None


def _walk_upstreams(obj, path=()):
    """Yield (path, upstream_entry) for every reverse_proxy upstream in the document."""
    if isinstance(obj, dict):
        if obj.get("handler") == "reverse_proxy":
            upstreams = obj.get("upstreams")
            if isinstance(upstreams, list):
                for i, upstream in enumerate(upstreams):
                    if isinstance(upstream, dict):
                        yield path + ("upstreams", i), upstream
        for key, value in obj.items():
            yield from _walk_upstreams(value, path + (key,))
    elif isinstance(obj, list):
        for i, item in enumerate(obj):
            yield from _walk_upstreams(item, path + (i,))


def find_upstreams(document, address: str) -> list[tuple]:
    """Paths of every upstream entry whose dial address equals `address`."""
    return [path for path, upstream in _walk_upstreams(document) if upstream.get("dial") == address]


def rewrite_upstream(document, old_address: str, new_address: str):
    """Return a copy of `document` with every upstream dialing old_address moved to new_address."""
    patched = copy.deepcopy(document)
    for path, upstream in _walk_upstreams(patched):
        if upstream.get("dial") == old_address:
            upstream["dial"] = new_address
            logger.debug(f"  Patched upstream at {'/'.join(map(str, path))}: {old_address} -> {new_address}")
    return patched


class CaddyAdminClient:
    def __init__(
        self,
        admin_url: str = "http://localhost:2019",
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.admin_url = admin_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def read_config(self) -> ConfigDocument:
        url = f"{self.admin_url}/config/"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise ConfigUnreachable(f"Cannot reach Caddy admin API at {self.admin_url}: {e}") from e
        if not response.ok:
            raise ConfigUnreachable(
                f"Caddy admin GET /config/ failed {response.status_code}: {response.text.strip()}"
            )
        try:
            body = response.json()
        except ValueError as e:
            raise ConfigUnreachable(f"Caddy admin returned non-JSON config: {e}") from e
        return ConfigDocument(body=body, etag=response.headers.get("Etag"))

    def apply_config(self, document, etag: Optional[str] = None) -> None:
        url = f"{self.admin_url}/load"
        headers = {"Content-Type": "application/json"}
        if etag:
            headers["If-Match"] = etag
        try:
            response = self.session.post(url, json=document, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise ConfigApplyFailed(f"Caddy load failed: {e}") from e
        if response.status_code == 412:
            raise ConfigConflict(
                "Caddy config changed since it was read (If-Match rejected); "
                "another writer is active, review the live config before retrying"
            )
        if not response.ok:
            raise ConfigApplyFailed(f"Caddy load failed {response.status_code}: {response.text.strip()}")
        logger.debug(f"  Caddy reload status: {response.status_code}")

    def cutover(self, old_address: str, new_address: str) -> int:
        """Point every upstream at old_address to new_address. Returns entries rewritten."""
        config = self.read_config()
        matches = find_upstreams(config.body, old_address)
        if not matches:
            if find_upstreams(config.body, new_address):
                logger.info(f"  Caddy already routes to {new_address}, nothing to rewrite")
                return 0
            raise UpstreamNotFound(
                f"No reverse_proxy upstream dials {old_address} or {new_address}; "
                f"refusing to load an unchanged config"
            )
        patched = rewrite_upstream(config.body, old_address, new_address)
        self.apply_config(patched, etag=config.etag)
        logger.info(f"  Patched {len(matches)} upstream(s): {old_address} -> {new_address}")
        return len(matches)

    def routed_addresses(self) -> list[str]:
        """Every distinct upstream dial address in the live config."""
        seen = []
        for _, upstream in _walk_upstreams(self.read_config().body):
            dial = upstream.get("dial")
            if dial is not None and dial not in seen:
                seen.append(dial)
        return seen
