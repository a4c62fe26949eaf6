# Overview: Outbound Midtrans Snap client; registered as a Flask extension.

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
from flask import current_app

from ..errors import GatewayRejected, GatewayUnavailable


@dataclass
class _GatewaySettings:
    server_key: str
    snap_url: str
    timeout: float
    transport: Optional[httpx.BaseTransport] = None


class MidtransGateway:
    """
    Thin Snap API client.

    Only knows how to open a charge session; it never touches the database.
    Every request is bounded by GATEWAY_TIMEOUT_SECONDS and every failure is
    mapped to GatewayUnavailable (transient) or GatewayRejected (4xx).

    Settings live per app in app.extensions["payment_gateway"]. Tests swap
    the network out by passing an httpx transport to init_app().
    """

    def __init__(self, app=None, transport: httpx.BaseTransport | None = None):
        if app is not None:
            self.init_app(app, transport=transport)

    def init_app(self, app, transport: httpx.BaseTransport | None = None) -> None:
        app.extensions["payment_gateway"] = _GatewaySettings(
            server_key=app.config.get("MIDTRANS_SERVER_KEY", ""),
            snap_url=app.config["MIDTRANS_SNAP_URL"],
            timeout=float(app.config.get("GATEWAY_TIMEOUT_SECONDS", 10)),
            transport=transport,
        )

    @staticmethod
    def _settings() -> _GatewaySettings:
        return current_app.extensions["payment_gateway"]

    def _client(self, settings: _GatewaySettings) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(settings.timeout, connect=min(settings.timeout, 5.0)),
            auth=(settings.server_key, ""),
            transport=settings.transport,
        )

    def create_snap_transaction(self, external_order_id: str, gross_amount: int) -> dict:
        """
        Open a Snap charge session.

        Returns:
            {"token": ..., "redirect_url": ...}

        Raises:
            GatewayUnavailable: network error, timeout or 5xx
            GatewayRejected: 4xx or a response without token/redirect_url
        """
        payload = {
            "transaction_details": {
                "order_id": external_order_id,
                "gross_amount": gross_amount,
            },
        }

        settings = self._settings()
        try:
            with self._client(settings) as client:
                response = client.post(
                    settings.snap_url,
                    json=payload,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise GatewayUnavailable(f"Payment gateway timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise GatewayUnavailable(f"Payment gateway unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise GatewayUnavailable(f"Payment gateway error (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise GatewayRejected(
                f"Payment gateway rejected charge (HTTP {response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayRejected("Payment gateway returned a non-JSON body") from exc

        token = data.get("token")
        redirect_url = data.get("redirect_url")
        if not token or not redirect_url:
            raise GatewayRejected("Payment gateway response missing token or redirect_url")

        return {"token": token, "redirect_url": redirect_url}
