"""
Jito Block Engine Adapter (Async)
=================================
JSON-RPC client for the relay side of bundle submission.

Features:
- Async HTTP (httpx) to keep the event loop free
- Regional failover with rotation on 429 / HTTP errors
- Tip account cache with TTL, static published list as fallback
- Status lookup that merges in-flight and landed views
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from bundle_forge.config.settings import Settings
from bundle_forge.shared.execution.errors import BundleRejectedError, TransportError
from bundle_forge.shared.execution.schemas import BundleStatusReport, RelayBundleStatus
from bundle_forge.shared.system.logging import Logger


class JitoAdapter:
    REGIONAL_ENDPOINTS = {
        "mainnet": "https://mainnet.block-engine.jito.wtf/api/v1/bundles",
        "frankfurt": "https://frankfurt.mainnet.block-engine.jito.wtf/api/v1/bundles",
        "amsterdam": "https://amsterdam.mainnet.block-engine.jito.wtf/api/v1/bundles",
        "ny": "https://ny.mainnet.block-engine.jito.wtf/api/v1/bundles",
        "tokyo": "https://tokyo.mainnet.block-engine.jito.wtf/api/v1/bundles",
        "slc": "https://slc.mainnet.block-engine.jito.wtf/api/v1/bundles",
    }

    REQUEST_TIMEOUT = 5
    ROTATE_DELAY = 0.2

    def __init__(
        self,
        endpoint: str = Settings.BLOCKENGINE_URL,
        region: Optional[str] = Settings.BLOCKENGINE_REGION,
        client: Optional[httpx.AsyncClient] = None,
        fallback_endpoints: Optional[List[str]] = None,
        tip_cache_ttl: float = Settings.TIP_CACHE_TTL_S,
        clock: Callable[[], float] = time.time,
    ):
        preferred = self.REGIONAL_ENDPOINTS.get(region, endpoint) if region else endpoint
        if fallback_endpoints is None:
            fallback_endpoints = [ep for ep in self.REGIONAL_ENDPOINTS.values() if ep != preferred]
        self._endpoints = [preferred] + [ep for ep in fallback_endpoints if ep != preferred]
        self._current_endpoint_idx = 0
        self.api_url = self._endpoints[0]

        self._client = client
        self._clock = clock
        self._tip_cache_ttl = tip_cache_ttl
        self._tip_accounts: List[str] = []
        self._tip_accounts_fetched = 0.0

        self._bundles_submitted = 0
        self._bundles_landed = 0

    def _rotate_endpoint(self):
        self._current_endpoint_idx = (self._current_endpoint_idx + 1) % len(self._endpoints)
        self.api_url = self._endpoints[self._current_endpoint_idx]
        Logger.debug(f"[JITO] Rotating endpoint to: {self.api_url.split('//')[1].split('.')[0]}")

    async def _post_all_regions(self, client: httpx.AsyncClient, payload: dict) -> Dict[str, Any]:
        last_error = "no endpoints"
        for _ in range(len(self._endpoints)):
            try:
                response = await client.post(self.api_url, json=payload)
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
                Logger.debug(f"[JITO] RPC Error: {last_error}")
                self._rotate_endpoint()
                await asyncio.sleep(self.ROTATE_DELAY)
                continue

            if response.status_code == 200:
                return response.json()
            if response.status_code == 429:
                last_error = "rate limited (429)"
                Logger.warning(f"[JITO] Rate Limit (429) on {self.api_url}")
            else:
                last_error = f"HTTP {response.status_code}"
                # JSON-RPC errors may come back as 400 with a body
                try:
                    body = response.json()
                except ValueError:
                    body = None
                if isinstance(body, dict) and body.get("error"):
                    return body
                Logger.debug(f"[JITO] {last_error} from {self.api_url}")
            self._rotate_endpoint()
            await asyncio.sleep(self.ROTATE_DELAY)

        raise TransportError(f"Block engine unreachable on all regions: {last_error}")

    async def _rpc_call(self, method: str, params: Optional[list] = None) -> Dict[str, Any]:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}
        if self._client is not None:
            return await self._post_all_regions(self._client, payload)
        async with httpx.AsyncClient(timeout=self.REQUEST_TIMEOUT) as client:
            return await self._post_all_regions(client, payload)

    # =========================================================================
    # TIP ACCOUNTS
    # =========================================================================

    async def get_tip_accounts(self, force_refresh: bool = False) -> List[str]:
        now = self._clock()
        if not force_refresh and self._tip_accounts:
            if now - self._tip_accounts_fetched < self._tip_cache_ttl:
                return self._tip_accounts

        try:
            response = await self._rpc_call("getTipAccounts")
        except TransportError as e:
            Logger.warning(f"[JITO] Tip account refresh failed, using published list: {e}")
            return self._tip_accounts or list(Settings.JITO_TIP_ACCOUNTS)

        accounts = response.get("result") if isinstance(response, dict) else None
        if isinstance(accounts, list) and accounts:
            self._tip_accounts = accounts
            self._tip_accounts_fetched = now
            Logger.debug(f"[JITO] Cached {len(accounts)} tip accounts")
            return accounts
        return self._tip_accounts or list(Settings.JITO_TIP_ACCOUNTS)

    # =========================================================================
    # BUNDLES
    # =========================================================================

    async def send_bundle(self, serialized_transactions: List[str], encoding: str = Settings.BUNDLE_ENCODING) -> str:
        """
        Submit an ordered list of encoded transactions. Returns the bundle id.

        The id is only a correlation key for status queries, not an inclusion
        guarantee. A JSON-RPC error is the relay refusing the bundle outright.
        """
        if not serialized_transactions:
            raise ValueError("Empty bundle")

        response = await self._rpc_call("sendBundle", [serialized_transactions, {"encoding": encoding}])
        self._bundles_submitted += 1

        bundle_id = response.get("result")
        if bundle_id:
            Logger.info(f"[JITO] Bundle submitted: {bundle_id[:16]}...")
            return bundle_id

        error = response.get("error") or {}
        reason = error.get("message") if isinstance(error, dict) else str(error)
        raise BundleRejectedError(reason or "sendBundle returned no bundle id")

    async def get_bundle_status(self, bundle_id: str) -> BundleStatusReport:
        """
        Relay view of one bundle.

        In-flight statuses cover the last few minutes (Pending / Landed / Failed /
        Invalid). Invalid means the relay no longer tracks the id, so the landed
        view is consulted before reporting pending.
        """
        response = await self._rpc_call("getInflightBundleStatuses", [[bundle_id]])
        entry = self._first_value(response)
        if entry:
            state = str(entry.get("status", ""))
            if state == "Landed":
                self._bundles_landed += 1
                return BundleStatusReport(bundle_id, RelayBundleStatus.LANDED, state, entry.get("landed_slot"))
            if state == "Failed":
                return BundleStatusReport(bundle_id, RelayBundleStatus.FAILED, state)
            if state == "Pending":
                return BundleStatusReport(bundle_id, RelayBundleStatus.PENDING, state)

        response = await self._rpc_call("getBundleStatuses", [[bundle_id]])
        entry = self._first_value(response)
        if entry:
            err = entry.get("err") or {}
            if isinstance(err, dict) and "Ok" in err:
                self._bundles_landed += 1
                return BundleStatusReport(
                    bundle_id, RelayBundleStatus.LANDED, str(entry.get("confirmation_status", "")), entry.get("slot")
                )
            return BundleStatusReport(bundle_id, RelayBundleStatus.FAILED, str(err))

        return BundleStatusReport(bundle_id, RelayBundleStatus.PENDING, "unknown")

    @staticmethod
    def _first_value(response: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        result = response.get("result") if isinstance(response, dict) else None
        if not isinstance(result, dict):
            return None
        values = result.get("value") or []
        if isinstance(values, list) and values and isinstance(values[0], dict):
            return values[0]
        return None

    def get_stats(self) -> Dict[str, int]:
        return {
            "bundles_submitted": self._bundles_submitted,
            "bundles_landed": self._bundles_landed,
        }
