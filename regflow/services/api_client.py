"""
Remote account service client

Async HTTP client (httpx) for the account service that stores registration
records and watches the mailbox for verification codes.

Endpoints (relative to ``ApiConfig.base_url``):
- POST   /api/accounts                 create a record
- PATCH  /api/accounts?email=...       update status / code
- GET    /api/accounts                 list records (optionally filtered by email)
- GET    /api/check-code/{session_id}  poll for a delivered code
- GET    /api/check-code?email=...     same, when only the email is known
- POST   /api/start-monitor            arm the delivery watch for a session
- GET    /api/health                   service health
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import ApiConfig
from ..exceptions import RegflowError, RemoteServiceError, RequestTimeoutError
from ..models.registration import RecordStatus, RegistrationRecord, utc_now_iso


class AccountServiceClient:
    """Client for the remote account service"""

    def __init__(self, config: Optional[ApiConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.config = config or ApiConfig()

        headers = {
            "Content-Type": "application/json",
            "Cache-Control": "no-store",
        }
        if self.config.api_key:
            headers["X-API-Key"] = self.config.api_key

        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=headers,
            timeout=self.config.timeout,
            transport=transport,
        )

    def _endpoint(self, name: str) -> str:
        return self.config.endpoints[name]

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"{method} {path}", self.config.timeout, {"error": str(e)})
        except httpx.HTTPError as e:
            raise RemoteServiceError(f"Request failed: {e}", url=path)

        if response.status_code >= 400:
            raise RemoteServiceError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                url=str(response.request.url),
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            raise RemoteServiceError("Response is not valid JSON", url=str(response.request.url),
                                     status_code=response.status_code)

    @staticmethod
    def _rows(payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            data = payload.get("data")
            if isinstance(data, list):
                return data
            if isinstance(data, dict):
                return [data]
        return []

    # ---- accounts ----

    async def create_account(self, record: RegistrationRecord) -> Dict[str, Any]:
        self.logger.info(f"💾 Saving account remotely: {record.email}")
        result = await self._request("POST", self._endpoint("accounts"), json=record.to_dict())
        return result or {}

    async def save_account_with_retry(self, record: RegistrationRecord, max_attempts: int = 3,
                                      backoff: float = 1.0) -> bool:
        """
        Create the remote record, retrying with a linear backoff

        Returns:
            bool: True once a create succeeded, False after the last failure
        """
        for attempt in range(1, max_attempts + 1):
            try:
                await self.create_account(record)
                return True
            except RegflowError as e:
                self.logger.warning(f"Remote save failed ({attempt}/{max_attempts}): {e}")
                if attempt < max_attempts:
                    await asyncio.sleep(backoff * attempt)
        self.logger.error(f"❌ Remote save gave up after {max_attempts} attempts: {record.email}")
        return False

    async def update_account(self, email: str, status: RecordStatus,
                             verification_code: Optional[str] = None,
                             error_message: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": status.value, "updated_at": utc_now_iso()}
        if verification_code:
            payload["verification_code"] = verification_code
        if status == RecordStatus.VERIFIED:
            payload["verified_at"] = payload["updated_at"]
        if error_message:
            payload["error_message"] = error_message

        result = await self._request("PATCH", self._endpoint("accounts"), params={"email": email}, json=payload)
        return result or {}

    async def list_accounts(self, limit: int = 50, status: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": limit}
        if status:
            params["status"] = status
        return self._rows(await self._request("GET", self._endpoint("accounts"), params=params))

    async def get_account(self, email: str) -> Optional[Dict[str, Any]]:
        """Latest remote row for ``email`` or None"""
        rows = self._rows(await self._request("GET", self._endpoint("accounts"), params={"email": email, "limit": 1}))
        return rows[0] if rows else None

    # ---- verification ----

    async def start_monitor(self, email: str, session_id: str) -> Dict[str, Any]:
        self.logger.info(f"📡 Arming code monitor: {email}")
        result = await self._request("POST", self._endpoint("start_monitor"),
                                     json={"email": email, "session_id": session_id})
        return result or {}

    async def check_code(self, session_id: Optional[str], email: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Ask whether a code was delivered for this session

        Without a session id the lookup is by ``email`` alone, on the bare
        endpoint.

        Returns:
            dict with ``code`` and ``received_at`` if one arrived, otherwise None

        Raises:
            ValueError: neither a session id nor an email was given
        """
        if not session_id and not email:
            raise ValueError("A session id or an email is required to check for a code")
        path = self._endpoint("check_code")
        if session_id:
            path = f"{path}/{session_id}"
        params = {"email": email} if email else None
        result = await self._request("GET", path, params=params)
        if not isinstance(result, dict):
            return None
        if result.get("success") is False or not result.get("code"):
            return None
        return {"code": str(result["code"]), "received_at": result.get("received_at")}

    async def health(self) -> Dict[str, Any]:
        return await self._request("GET", self._endpoint("health")) or {}

    async def aclose(self):
        await self._client.aclose()
