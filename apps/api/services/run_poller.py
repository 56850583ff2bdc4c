"""
Polling client for audit runs.

Mirrors what the product page does in the browser: remember the run id per
product in session storage, start or re-attach to a run, and poll the status
endpoint every 1.5s until the run reaches a terminal status.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, MutableMapping, Optional

import httpx

from services.stage_state import ACTIVE_RUN_STATUSES, TERMINAL_RUN_STATUSES, normalize_run_status

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 1.5


class AuditStartError(RuntimeError):
    """The API refused to start a run."""


class AuditRunPoller:
    def __init__(
        self,
        product_id: str,
        client: httpx.AsyncClient,
        storage: Optional[MutableMapping[str, str]] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        self.product_id = product_id
        self.client = client
        self.storage = storage if storage is not None else {}
        self.poll_interval = poll_interval
        self.run: Optional[Dict[str, Any]] = None
        self.is_polling = False
        self._stopped = False

    @property
    def storage_key(self) -> str:
        return f"auditRunId:{self.product_id}"

    @property
    def run_id(self) -> Optional[str]:
        return self.storage.get(self.storage_key)

    @property
    def status(self) -> Optional[str]:
        if not self.run:
            return None
        return normalize_run_status(self.run.get("status"))

    @property
    def is_live(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    def _persist(self, run_id: Optional[str]) -> None:
        if run_id:
            self.storage[self.storage_key] = run_id
        else:
            self.storage.pop(self.storage_key, None)

    async def start(self, force_refresh: bool = False) -> Dict[str, Any]:
        response = await self.client.post(
            "/audit",
            json={"productId": self.product_id, "forceRefresh": force_refresh},
        )
        payload = response.json() if response.content else {}
        if response.status_code >= 400 or not payload.get("runId"):
            raise AuditStartError(payload.get("error") or f"Failed to start audit ({response.status_code})")

        self._persist(payload["runId"])
        self.run = {"runId": payload["runId"], "status": payload.get("status") or "pending"}
        self._stopped = False
        return payload

    async def recover_active(self) -> Optional[Dict[str, Any]]:
        """Attach to an in-flight run for the product when none is stored."""
        if self.run_id:
            return None
        try:
            response = await self.client.get("/audit/status", params={"productId": self.product_id})
        except httpx.HTTPError as exc:
            logger.debug("Active run lookup failed for %s: %s", self.product_id, exc)
            return None
        if response.status_code >= 400:
            return None

        run = (response.json() or {}).get("run")
        if run and normalize_run_status(run.get("status")) in ACTIVE_RUN_STATUSES:
            self._persist(run["id"])
            self.run = {"runId": run["id"], **run}
            return run
        return None

    async def poll_once(self) -> Optional[Dict[str, Any]]:
        run_id = self.run_id
        if not run_id:
            return None

        response = await self.client.get(
            "/audit/status",
            params={"runId": run_id},
            headers={"cache-control": "no-cache"},
        )
        if response.status_code >= 400:
            # Unknown or reaped run: forget it.
            self._persist(None)
            self.run = None
            self.stop()
            return None

        self.run = response.json()
        if self.status in TERMINAL_RUN_STATUSES:
            self.stop()
        return self.run

    async def watch(
        self,
        on_update: Optional[Callable[[Dict[str, Any]], Any]] = None,
        timeout: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        """Poll until a terminal status, a cleared run or ``stop()``."""
        if not self.run_id:
            await self.recover_active()
        if not self.run_id:
            return None

        self._stopped = False
        self.is_polling = True

        async def _loop():
            while not self._stopped:
                snapshot = await self.poll_once()
                if snapshot is not None and on_update is not None:
                    on_update(snapshot)
                if self._stopped or snapshot is None:
                    break
                await asyncio.sleep(self.poll_interval)
            return self.run

        try:
            if timeout is None:
                return await _loop()
            return await asyncio.wait_for(_loop(), timeout=timeout)
        finally:
            self.is_polling = False

    def stop(self) -> None:
        self._stopped = True
        self.is_polling = False

    def clear(self) -> None:
        self.stop()
        self._persist(None)
        self.run = None
