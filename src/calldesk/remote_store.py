import logging

import httpx

from calldesk.circuit_breaker import CircuitBreaker
from calldesk.errors import NetworkError, NotFoundError
from calldesk.ids import RemoteId

logger = logging.getLogger(__name__)

CALLS_PATH = "/api/calls"


class RemoteCallStore:
    """HTTP client for the authenticated call-log collection.

    Collection endpoint for list/create, per-resource endpoint addressed by
    server-assigned id for update/delete. Every request carries the bearer
    credential supplied by the auth collaborator.

    Unlike the CRM connector this client raises: the history store needs to
    tell a missing record (NotFoundError) apart from a transport failure
    (NetworkError) to report and log them correctly.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="remote call store",
        )
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
            )

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.token}",
        }

    async def close(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, label: str, payload: dict | None = None):
        if not self._circuit.should_try():
            logger.warning("Remote store circuit breaker open - skipping %s", label)
            raise NetworkError(f"{label} skipped: remote store unavailable")
        try:
            resp = await self._client.request(
                method, path, json=payload, headers=self._headers()
            )
            if resp.status_code == 404:
                # The server answered; this is not a connectivity failure.
                self._circuit.record_success()
                raise NotFoundError(f"{label}: record not found")
            if resp.status_code >= 400:
                logger.error("%s returned %d: %s", label, resp.status_code, resp.text[:500])
            resp.raise_for_status()
            self._circuit.record_success()
            if not resp.content:
                return {}
            return resp.json()
        except NotFoundError:
            raise
        except (httpx.HTTPError, ValueError) as e:
            self._circuit.record_failure()
            logger.error("%s failed: %s", label, e)
            raise NetworkError(f"{label} failed: {e}") from e

    async def list_calls(self) -> list[dict]:
        data = await self._request("GET", CALLS_PATH, "List calls")
        if not isinstance(data, list):
            raise NetworkError("List calls: expected a JSON array")
        return data

    async def create_call(self, payload: dict) -> dict:
        """POST a new record; the response carries the server id in `_id`."""
        data = await self._request("POST", CALLS_PATH, "Create call", payload)
        if not isinstance(data, dict):
            raise NetworkError("Create call: expected a JSON object")
        return data

    async def update_call(self, remote_id: RemoteId, payload: dict) -> dict:
        return await self._request("PUT", f"{CALLS_PATH}/{remote_id}", "Update call", payload)

    async def delete_call(self, remote_id: RemoteId) -> None:
        await self._request("DELETE", f"{CALLS_PATH}/{remote_id}", "Delete call")
