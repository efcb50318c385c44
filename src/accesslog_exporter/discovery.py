from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

import requests

from accesslog_exporter.config import Config
from accesslog_exporter.errors import DiscoveryError
from accesslog_exporter.shutdown import ShutdownCoordinator

log = logging.getLogger(__name__)


class ConsulRegistrator:
    """Registers the exporter with the local Consul agent and removes it again on shutdown."""

    def __init__(self, cfg: Config, session: Optional[requests.Session] = None, timeout: float = 5.0):
        self.consul = cfg.consul
        self.port = cfg.listen.port
        self.timeout = timeout
        self.session = session or requests.Session()
        self.base_url = f"{self.consul.scheme}://{self.consul.address}/v1/agent/service"

    def _headers(self) -> Dict[str, str]:
        return {"X-Consul-Token": self.consul.token} if self.consul.token else {}

    def _params(self) -> Dict[str, str]:
        return {"dc": self.consul.datacenter} if self.consul.datacenter else {}

    def register(self) -> None:
        svc = self.consul.service
        payload = {
            "ID": svc.id,
            "Name": svc.name,
            "Port": self.port,
            "Tags": list(svc.tags),
        }
        if svc.address:
            payload["Address"] = svc.address

        log.info("registering service %s in Consul at %s", svc.id, self.consul.address)
        try:
            resp = self.session.put(
                f"{self.base_url}/register",
                json=payload, headers=self._headers(), params=self._params(), timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise DiscoveryError(f"cannot register service {svc.id} in Consul: {e}") from e

    def deregister(self) -> None:
        svc_id = self.consul.service.id
        log.info("unregistering service %s in Consul", svc_id)
        try:
            resp = self.session.put(
                f"{self.base_url}/deregister/{svc_id}",
                headers=self._headers(), params=self._params(), timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            log.warning("cannot unregister service %s in Consul: %s", svc_id, e)

    async def deregister_on_shutdown(self, coordinator: ShutdownCoordinator) -> None:
        await coordinator.wait()
        await asyncio.to_thread(self.deregister)
