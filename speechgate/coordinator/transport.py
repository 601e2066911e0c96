"""Transport: the HTTP calls behind each coordinator call type.

``Transport`` is the protocol the coordinator dispatches to, one coroutine
per call type. ``HttpxTransport`` implements it against the batch
speech-to-text REST API (v3.1 by default):

    create  POST   {base}/transcriptions
    get     GET    {base}/transcriptions/{job_id}
    list    GET    {base}/transcriptions
    delete  DELETE {base}/transcriptions/{job_id}
    health  GET    {base}/healthstatus
    auth    POST   {token_url}

The credential is sent as ``Ocp-Apim-Subscription-Key``. Error responses
are raised as ``TransportError`` carrying the status code and the service
error code/message parsed from the body. Network failures propagate as
httpx exceptions; ``speechgate.errors.to_raw_failure`` understands both.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

import httpx

from speechgate.config.settings import TransportSettings
from speechgate.errors.adapter import response_error_details
from speechgate.exceptions import TransportError
from speechgate.logging import get_logger

if TYPE_CHECKING:
    from speechgate._types import ServiceConfig

logger = get_logger("coordinator.transport")

_SUBSCRIPTION_KEY_HEADER = "Ocp-Apim-Subscription-Key"
_HEALTHY_STATUS = "Healthy"


class Transport(Protocol):
    """One coroutine per call type. ``payload`` is the request payload."""

    async def create_transcription(
        self, service: ServiceConfig, payload: dict[str, Any]
    ) -> Any: ...

    async def get_transcription(self, service: ServiceConfig, payload: dict[str, Any]) -> Any: ...

    async def list_transcriptions(
        self, service: ServiceConfig, payload: dict[str, Any]
    ) -> Any: ...

    async def delete_transcription(
        self, service: ServiceConfig, payload: dict[str, Any]
    ) -> Any: ...

    async def get_health(self, service: ServiceConfig, payload: dict[str, Any]) -> Any: ...

    async def authenticate(self, service: ServiceConfig, payload: dict[str, Any]) -> Any: ...


def _job_id(payload: dict[str, Any]) -> str:
    job_id = payload.get("job_id")
    if not job_id:
        msg = "payload is missing 'job_id'"
        raise TransportError(msg, error_code="bad_request")
    return str(job_id)


class HttpxTransport:
    """``Transport`` over an ``httpx.AsyncClient``.

    Args:
        settings: Endpoint templates and connect timeout.
        client: Pre-built client (tests pass one with ``httpx.MockTransport``).
            When omitted, the transport owns and closes its own client.
    """

    def __init__(
        self,
        settings: TransportSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings if settings is not None else TransportSettings()
        self._owns_client = client is None
        # Overall call deadlines are applied by the coordinator.
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=self._settings.connect_timeout_s)
        )

    def base_url(self, region: str) -> str:
        return self._settings.base_url_template.format(
            region=region, api_version=self._settings.api_version
        )

    def token_url(self, region: str) -> str:
        return self._settings.token_url_template.format(region=region)

    async def _request(
        self,
        method: str,
        url: str,
        service: ServiceConfig,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        response = await self._client.request(
            method,
            url,
            headers={_SUBSCRIPTION_KEY_HEADER: service.credential},
            json=json,
            params=params,
        )
        if response.is_error:
            error_code, message = response_error_details(response)
            logger.debug(
                "transport_error_response",
                method=method,
                url=url,
                status_code=response.status_code,
                error_code=error_code,
            )
            raise TransportError(
                message or f"{method} {url} failed",
                status_code=response.status_code,
                error_code=error_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        return response.json()

    async def create_transcription(self, service: ServiceConfig, payload: dict[str, Any]) -> Any:
        body = dict(payload)
        body.setdefault("locale", service.language)
        response = await self._request(
            "POST", f"{self.base_url(service.region)}/transcriptions", service, json=body
        )
        return self._json(response)

    async def get_transcription(self, service: ServiceConfig, payload: dict[str, Any]) -> Any:
        url = f"{self.base_url(service.region)}/transcriptions/{_job_id(payload)}"
        return self._json(await self._request("GET", url, service))

    async def list_transcriptions(self, service: ServiceConfig, payload: dict[str, Any]) -> Any:
        params = {k: payload[k] for k in ("skip", "top") if k in payload}
        response = await self._request(
            "GET", f"{self.base_url(service.region)}/transcriptions", service, params=params or None
        )
        body = self._json(response)
        return body.get("values", []) if isinstance(body, dict) else body

    async def delete_transcription(self, service: ServiceConfig, payload: dict[str, Any]) -> Any:
        job_id = _job_id(payload)
        url = f"{self.base_url(service.region)}/transcriptions/{job_id}"
        await self._request("DELETE", url, service)
        return {"deleted": True, "job_id": job_id}

    async def get_health(self, service: ServiceConfig, payload: dict[str, Any]) -> Any:
        response = await self._request(
            "GET", f"{self.base_url(service.region)}/healthstatus", service
        )
        body = self._json(response)
        status = body.get("status") if isinstance(body, dict) else None
        return {
            "healthy": status == _HEALTHY_STATUS,
            "status": status,
            "components": body.get("components", []) if isinstance(body, dict) else [],
        }

    async def authenticate(self, service: ServiceConfig, payload: dict[str, Any]) -> Any:
        response = await self._request("POST", self.token_url(service.region), service)
        return {
            "token": response.text,
            "expires_in_s": self._settings.token_lifetime_s,
            "region": service.region,
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
