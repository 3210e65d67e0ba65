import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from calldesk.circuit_breaker import CircuitBreaker
from calldesk.session import CallRecord

logger = logging.getLogger(__name__)


@dataclass
class Contact:
    id: str
    name: str = ""
    source: str = ""
    company: str = ""
    email: str = ""
    phone: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Contact":
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name") or "",
            source=data.get("source") or "",
            company=data.get("company") or "",
            email=data.get("email") or "",
            phone=data.get("phone") or "",
        )


class CRMConnector(Protocol):
    """What the call desk needs from a CRM provider."""

    @property
    def is_connected(self) -> bool: ...

    async def lookup_contact(self, search_term: str, search_type: str = "phone") -> list[Contact]: ...

    async def log_call(self, record: CallRecord) -> dict: ...


class HttpCRMConnector:
    """HTTP client for the CRM gateway that fronts the configured provider.

    Failures never raise: lookups fall back to no contacts and call logging
    reports {"success": False} so the call flow carries on without the CRM.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="CRM gateway",
        )
        if client is not None:
            self._client = client
        else:
            headers = {"Content-Type": "application/json"}
            if api_key:
                headers["X-API-Key"] = api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )

    @property
    def is_connected(self) -> bool:
        return bool(self.base_url)

    async def close(self):
        await self._client.aclose()

    async def lookup_contact(self, search_term: str, search_type: str = "phone") -> list[Contact]:
        if not self._circuit.should_try():
            logger.warning("CRM circuit breaker open - skipping contact lookup")
            return []
        try:
            resp = await self._client.post(
                "/contacts/lookup",
                json={"searchTerm": search_term, "searchType": search_type},
            )
            resp.raise_for_status()
            self._circuit.record_success()
            data = resp.json()
        except Exception as e:
            self._circuit.record_failure()
            logger.error("Contact lookup failed: %s", e)
            return []
        items = data.get("contacts", []) if isinstance(data, dict) else data
        return [Contact.from_dict(item) for item in items or [] if isinstance(item, dict)]

    async def log_call(self, record: CallRecord) -> dict:
        if not self._circuit.should_try():
            logger.warning("CRM circuit breaker open - skipping call log")
            return {"success": False, "error": "CRM unavailable"}
        try:
            resp = await self._client.post("/calls", json=record.to_public_dict())
            resp.raise_for_status()
            self._circuit.record_success()
            return resp.json()
        except Exception as e:
            self._circuit.record_failure()
            logger.error("log_call failed: %s", e)
            return {"success": False, "error": str(e)}
