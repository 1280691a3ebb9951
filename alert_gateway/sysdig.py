from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger("alert-gateway.sysdig")

CREATE_ALERT_PATH = "/api/v2/alerts"


class SysdigError(RuntimeError):
    def __init__(self, status_code: int | None, body: str) -> None:
        if status_code is None:
            message = f"sysdig create alert failed: {body}"
        else:
            message = f"sysdig create alert failed: {status_code} - {body}"
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SysdigClient:
    def __init__(
        self,
        endpoint: str,
        timeout: float = 25.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def alerts_url(self) -> str:
        return self.endpoint + CREATE_ALERT_PATH

    async def create_alert(self, instance_id: str, team_id: str, bearer: str, body: bytes) -> dict[str, Any]:
        headers = {
            "Authorization": bearer,
            "IBMInstanceID": instance_id,
            "SysdigTeamID": team_id,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.alerts_url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("sysdig request failed", extra={"teamID": team_id, "error": str(exc)})
            raise SysdigError(None, f"{type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            logger.warning(
                "sysdig rejected alert",
                extra={"teamID": team_id, "status": response.status_code},
            )
            raise SysdigError(response.status_code, response.text)

        try:
            out = response.json()
        except ValueError:
            return {"raw": response.text}
        if not isinstance(out, dict):
            return {"raw": response.text}
        return out
