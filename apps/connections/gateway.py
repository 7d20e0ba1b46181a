"""
Provider control plane: contract (ProviderGateway) and the UAZAPI implementation.
All operations are keyed by the provider session id (instance name). The gateway does not
retry; the pairing session simply tries again on its next tick.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from apps.connections.errors import GatewayError
from apps.connections.settings import ConnectionSettings
from apps.observability import get_logger

logger = get_logger(__name__)

# Providers are inconsistent about the word for "paired"; any of these means connected.
CONNECTED_STATUSES = frozenset({"open", "connected", "online"})

_QR_KEYS = ("qrcode", "qrCode", "base64", "qr")


def is_connected_status(status: Optional[str]) -> bool:
    return bool(status) and status.strip().lower() in CONNECTED_STATUSES


@dataclass(frozen=True)
class GatewayQr:
    """Result of init/reconnect. qr_code None means the provider gave nothing to scan."""

    qr_code: Optional[str]
    instance_token: Optional[str] = None


@dataclass(frozen=True)
class GatewayStatus:
    status: str
    phone_number: Optional[str] = None

    @property
    def connected(self) -> bool:
        return is_connected_status(self.status)


@runtime_checkable
class ProviderGateway(Protocol):
    async def init(self, session_id: str) -> GatewayQr:
        ...

    async def status(self, session_id: str) -> GatewayStatus:
        ...

    async def reconnect(self, session_id: str) -> GatewayQr:
        ...

    async def logout(self, session_id: str) -> None:
        ...

    async def delete(self, session_id: str) -> None:
        ...

    async def update_webhook(self, session_id: str, connection_id: str, receive_group_messages: bool) -> None:
        ...


def _extract_qr(data: dict) -> Optional[str]:
    instance = data.get("instance") if isinstance(data.get("instance"), dict) else {}
    for source in (data, instance):
        for key in _QR_KEYS:
            value = source.get(key)
            if isinstance(value, str) and value.strip():
                return value
    return None


def _parse_status(data: dict) -> GatewayStatus:
    """
    Map UAZAPI status bodies to GatewayStatus. Older bodies: {state, connected, phone|number};
    newer ones nest {instance: {status, owner}, status: {connected, jid}}.
    """
    instance = data.get("instance") if isinstance(data.get("instance"), dict) else {}
    nested = data.get("status") if isinstance(data.get("status"), dict) else {}

    state = data.get("state") or instance.get("status")
    if not isinstance(state, str) or not state:
        state = "connected" if (data.get("connected") is True or nested.get("connected") is True) else "pending"
    elif data.get("connected") is True and not is_connected_status(state):
        state = "connected"

    phone = data.get("phone") or data.get("number") or instance.get("owner")
    if not phone and isinstance(nested.get("jid"), str):
        phone = nested["jid"].split("@", 1)[0].split(":", 1)[0]
    return GatewayStatus(status=state, phone_number=str(phone) if phone else None)


class UazapiGateway:
    """
    httpx.AsyncClient client for the UAZAPI control plane.
    Admin operations authenticate with `admintoken`; instance operations with the instance
    token returned by init (remembered per session id, falling back to the API key).
    The token cache is only pruned by delete(); sessions that stay connected keep their entry for
    the life of the process, one short string per instance this worker created.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        system_name: str = "multiatendimento",
        webhook_url: str = "",
        timeout: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = (api_key or "").strip()
        self.system_name = system_name
        self.webhook_url = webhook_url.strip()
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._tokens: dict[str, str] = {}

    @classmethod
    def from_settings(cls, settings: ConnectionSettings) -> "UazapiGateway":
        return cls(
            settings.UAZAPI_BASE_URL,
            settings.UAZAPI_API_KEY,
            system_name=settings.UAZAPI_SYSTEM_NAME,
            webhook_url=settings.WEBHOOK_URL,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _instance_token(self, session_id: str) -> str:
        return self._tokens.get(session_id) or self.api_key

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        session_id: str,
        *,
        headers: dict[str, str],
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            r = await self._client.request(
                method,
                url,
                headers={"Accept": "application/json", **headers},
                json=json_body,
                params=params,
            )
        except httpx.HTTPError as e:
            raise GatewayError(
                f"{operation}: {type(e).__name__}", operation=operation, session_id=session_id
            ) from e

        try:
            data = r.json() if r.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}

        if r.is_error:
            message = data.get("message") or data.get("error") or r.text[:200] or f"HTTP {r.status_code}"
            raise GatewayError(
                f"{operation}: {message}",
                operation=operation,
                status_code=r.status_code,
                session_id=session_id,
            )
        return data

    async def _connect(self, session_id: str, operation: str) -> GatewayQr:
        data = await self._request(
            operation,
            "POST",
            "/instance/connect",
            session_id,
            headers={"token": self._instance_token(session_id)},
            json_body={},
        )
        return GatewayQr(qr_code=_extract_qr(data), instance_token=self._tokens.get(session_id))

    async def init(self, session_id: str) -> GatewayQr:
        data = await self._request(
            "init",
            "POST",
            "/instance/init",
            session_id,
            headers={"admintoken": self.api_key},
            json_body={"name": session_id, "systemName": self.system_name},
        )
        instance = data.get("instance") if isinstance(data.get("instance"), dict) else {}
        token = data.get("token") or instance.get("token")
        if token:
            self._tokens[session_id] = token
        logger.info("gateway_instance_created", session_id=session_id, token_from_response=bool(token))
        return await self._connect(session_id, "init")

    async def reconnect(self, session_id: str) -> GatewayQr:
        """Reconnect the existing instance; re-create it under the same name if the provider no longer has it."""
        try:
            return await self._connect(session_id, "reconnect")
        except GatewayError as e:
            if e.status_code not in (401, 404):
                raise
            logger.info("gateway_instance_missing_reinit", session_id=session_id, status_code=e.status_code)
            return await self.init(session_id)

    async def status(self, session_id: str) -> GatewayStatus:
        data = await self._request(
            "status",
            "GET",
            "/instance/status",
            session_id,
            headers={"token": self._instance_token(session_id)},
        )
        return _parse_status(data)

    async def logout(self, session_id: str) -> None:
        await self._request(
            "logout",
            "POST",
            "/instance/disconnect",
            session_id,
            headers={"token": self._instance_token(session_id)},
        )

    async def delete(self, session_id: str) -> None:
        await self._request(
            "delete",
            "DELETE",
            "/instance",
            session_id,
            headers={"token": self._instance_token(session_id)},
        )
        self._tokens.pop(session_id, None)

    async def update_webhook(self, session_id: str, connection_id: str, receive_group_messages: bool) -> None:
        if not self.webhook_url:
            raise GatewayError("webhook: WA_WEBHOOK_URL not configured", operation="webhook", session_id=session_id)
        exclude = ["wasSentByApi"]
        if not receive_group_messages:
            exclude.append("isGroupYes")
        sep = "&" if "?" in self.webhook_url else "?"
        await self._request(
            "webhook",
            "POST",
            "/webhook",
            session_id,
            headers={"token": self._instance_token(session_id)},
            json_body={
                "enabled": True,
                "url": f"{self.webhook_url}{sep}connection_id={connection_id}",
                "events": ["messages", "connection"],
                "excludeMessages": exclude,
            },
        )
