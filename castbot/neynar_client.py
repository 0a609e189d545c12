"""
Async client for the Neynar v2 REST API.

Read paths (feed, notifications, conversations) never raise: a non-2xx
response or a network failure is logged and reported as ``None`` so the
caller can render an empty page. Signer management and publishing raise
``NeynarError`` so the caller can tell the user the action failed.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from castbot.models import SignerRecord

logger = logging.getLogger(__name__)


class NeynarError(Exception):
    """A signer or publish call was rejected or could not be made."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def signer_rejected(self) -> bool:
        """The remote service no longer accepts the signer used for the call."""
        if self.status_code in (401, 403):
            return True
        return "signer" in str(self).lower() and self.status_code is not None and 400 <= self.status_code < 500


class NeynarClient:
    """Wrapper around an ``httpx.AsyncClient`` bound to the Neynar API.

    Pass ``http`` to share a client or to plug in an ``httpx.MockTransport``
    in tests; otherwise one is created and owned by this instance.
    """

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.neynar.com/v2",
        client_id: Optional[str] = None,
        timeout: float = 20.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self._api_key = api_key
        self._client_id = client_id
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "x-api-key": self._api_key,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self._client_id:
            headers["x-neynar-client-id"] = self._client_id
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            response = await self._http.request(
                method,
                f"{self.api_url}{path}",
                params=params,
                json=body,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise NeynarError(f"{method} {path} failed: {e}") from e

        if response.is_error:
            try:
                detail = response.json()
            except ValueError:
                detail = response.text
            message = detail.get("message") if isinstance(detail, dict) else None
            raise NeynarError(
                message or f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                body=detail,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise NeynarError(f"{method} {path} returned invalid JSON", response.status_code) from e
        if not isinstance(data, dict):
            raise NeynarError(f"{method} {path} returned unexpected payload", response.status_code, data)
        return data

    async def _read(self, path: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            return await self._request("GET", path, params=params)
        except NeynarError as e:
            logger.error("Neynar read %s failed (status=%s): %s", path, e.status_code, e)
            return None

    # -- read paths ---------------------------------------------------------

    async def fetch_feed(self, fid: int, cursor: Optional[str] = None, limit: int = 10) -> Optional[Dict[str, Any]]:
        """For-you feed page: ``{"casts": [...], "next": {"cursor": ...}}``."""
        return await self._read("/farcaster/feed/for_you", {
            "fid": fid,
            "viewer_fid": fid,
            "provider": "neynar",
            "limit": limit,
            "cursor": cursor or None,
        })

    async def fetch_notifications(
        self,
        fid: int,
        types: List[str],
        cursor: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Notifications page: ``{"notifications": [...], "next": {"cursor": ...}}``."""
        return await self._read("/farcaster/notifications", {
            "fid": fid,
            "type": ",".join(types),
            "cursor": cursor or None,
        })

    async def fetch_conversation(self, cast_hash: str, viewer_fid: Optional[int] = None) -> Optional[Dict[str, Any]]:
        return await self._read("/farcaster/cast/conversation", {
            "identifier": cast_hash,
            "type": "hash",
            "reply_depth": 1,
            "include_chronological_parent_casts": "false",
            "viewer_fid": viewer_fid,
        })

    # -- signers ------------------------------------------------------------

    async def create_signer(self) -> SignerRecord:
        data = await self._request("POST", "/farcaster/signer")
        return SignerRecord.from_api(data)

    async def lookup_signer(self, signer_id: str) -> SignerRecord:
        data = await self._request("GET", "/farcaster/signer", params={"signer_uuid": signer_id})
        return SignerRecord.from_api(data)

    async def register_signed_key(
        self,
        signer_id: str,
        app_fid: int,
        deadline: int,
        signature: str,
    ) -> SignerRecord:
        data = await self._request("POST", "/farcaster/signer/signed_key", body={
            "signer_uuid": signer_id,
            "app_fid": app_fid,
            "deadline": deadline,
            "signature": signature,
        })
        return SignerRecord.from_api(data)

    async def lookup_fid_by_custody_address(self, address: str) -> int:
        data = await self._request(
            "GET", "/farcaster/user/custody-address", params={"custody_address": address}
        )
        fid = (data.get("user") or {}).get("fid")
        if not fid:
            raise NeynarError(f"No FID found for custody address {address}")
        return int(fid)

    # -- publishing ---------------------------------------------------------

    async def publish_cast(
        self,
        signer_id: str,
        text: str,
        parent: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"signer_uuid": signer_id, "text": text}
        if parent:
            body["parent"] = parent
        if channel_id:
            body["channel_id"] = channel_id
        data = await self._request("POST", "/farcaster/cast", body=body)
        return data.get("cast") or {}

    async def publish_reaction(self, signer_id: str, reaction_type: str, target: str) -> Dict[str, Any]:
        return await self._request("POST", "/farcaster/reaction", body={
            "signer_uuid": signer_id,
            "reaction_type": reaction_type,
            "target": target,
        })
