"""Platform API client over httpx.

Implements ``EngagementGateway`` against the strategist platform REST API.
All requests carry the strategist's bearer token; JSON bodies use the
platform's camelCase field names.

Endpoints used:
- GET   /users/{id}, /users/my-clients, /users/my-compliance-users
- GET   /agreements, /agreements/client/{clientId}
- PATCH /agreements/{id}
- GET   /documents/agreement/{agreementId}, /documents/{id}
- PATCH /documents/{id}/acceptance
- POST  /charges, /charges/{id}/payment-link, /agreements/{id}/payment
- GET   /charges/agreement/{agreementId}
- GET   /signature/agreements/{id}/envelopes/{envelopeId}/status
- GET   /signature/agreements/{id}/signing-info
- GET   /signature/envelopes/{envelopeId}/signed-document
"""

import asyncio
import logging
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from tax_engagement.app.config import Settings, get_settings
from tax_engagement.domain.enums import AcceptanceStatus, AgreementStatus, EnvelopeStatus
from tax_engagement.domain.schemas import (
    Agreement,
    Charge,
    ClientRecord,
    ComplianceUser,
    Document,
    EnvelopeSigningInfo,
)
from tax_engagement.infra.gateway import GatewayError

logger = logging.getLogger(__name__)

_RETRY_STATUSES = {502, 503, 504}

_AGREEMENTS = TypeAdapter(list[Agreement])
_DOCUMENTS = TypeAdapter(list[Document])
_CHARGES = TypeAdapter(list[Charge])
_CLIENTS = TypeAdapter(list[ClientRecord])
_COMPLIANCE_USERS = TypeAdapter(list[ComplianceUser])


def _unwrap_list(data: Any) -> list:
    """Some list endpoints wrap their payload as ``{"data": [...]}``."""
    if isinstance(data, dict):
        data = data.get("data", data.get("items", []))
    return data if isinstance(data, list) else []


class PlatformClient:
    """Async client for the strategist platform API."""

    def __init__(self, settings: Settings | None = None, access_token: str | None = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.api_base_url.rstrip("/")
        self._access_token = access_token if access_token is not None else self.settings.api_access_token

    @property
    def _configured(self) -> bool:
        return bool(self._access_token)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: dict | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        """Send one request with retry on gateway errors and timeouts.

        Returns the decoded JSON body (None for empty bodies, or for 404 when
        *allow_not_found*). Raises GatewayError on any other failure.
        """
        if not self._configured:
            raise GatewayError(operation, "platform access token not configured")

        url = f"{self.base_url}{path}"
        attempts = max(self.settings.max_retries, 1)

        for attempt in range(attempts):
            try:
                async with httpx.AsyncClient(timeout=self.settings.request_timeout_seconds) as client:
                    resp = await client.request(method, url, json=json, headers=self._headers())
            except httpx.TimeoutException:
                if attempt < attempts - 1:
                    wait = self.settings.retry_backoff_seconds * (attempt + 1)
                    logger.warning(
                        "%s timed out, retrying in %.1fs (attempt %d/%d)",
                        operation, wait, attempt + 1, attempts,
                    )
                    await asyncio.sleep(wait)
                    continue
                raise GatewayError(operation, "timeout")
            except httpx.RequestError as exc:
                raise GatewayError(operation, str(exc)) from exc

            if resp.status_code == 404 and allow_not_found:
                return None

            if 200 <= resp.status_code < 300:
                if not resp.content:
                    return None
                try:
                    return resp.json()
                except ValueError:
                    return {"raw": resp.text}

            if resp.status_code in _RETRY_STATUSES and attempt < attempts - 1:
                wait = self.settings.retry_backoff_seconds * (attempt + 1)
                logger.warning(
                    "%s got %d, retrying in %.1fs (attempt %d/%d)",
                    operation, resp.status_code, wait, attempt + 1, attempts,
                )
                await asyncio.sleep(wait)
                continue

            message = resp.text[:300]
            try:
                body = resp.json()
                if isinstance(body, dict) and body.get("message"):
                    message = str(body["message"])
            except ValueError:
                pass
            logger.error("%s failed (%d): %s", operation, resp.status_code, message)
            raise GatewayError(operation, message, status_code=resp.status_code)

        raise GatewayError(operation, "max_retries")

    def _parse(self, operation: str, adapter_or_model, data: Any):
        try:
            if isinstance(adapter_or_model, TypeAdapter):
                return adapter_or_model.validate_python(data)
            return adapter_or_model.model_validate(data)
        except ValidationError as exc:
            raise GatewayError(operation, f"unexpected response shape: {exc}") from exc

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    async def get_client(self, client_id: str) -> ClientRecord | None:
        data = await self._request("get_client", "GET", f"/users/{client_id}", allow_not_found=True)
        if data is None:
            return None
        return self._parse("get_client", ClientRecord, data)

    async def list_clients(self) -> list[ClientRecord]:
        data = await self._request("list_clients", "GET", "/users/my-clients")
        return self._parse("list_clients", _CLIENTS, _unwrap_list(data))

    async def get_linked_compliance_users(self) -> list[ComplianceUser]:
        data = await self._request(
            "get_linked_compliance_users", "GET", "/users/my-compliance-users"
        )
        return self._parse("get_linked_compliance_users", _COMPLIANCE_USERS, _unwrap_list(data))

    # ------------------------------------------------------------------
    # Agreements
    # ------------------------------------------------------------------

    async def list_client_agreements(self, client_id: str) -> list[Agreement]:
        data = await self._request(
            "list_client_agreements", "GET", f"/agreements/client/{client_id}"
        )
        return self._parse("list_client_agreements", _AGREEMENTS, _unwrap_list(data))

    async def list_agreements(self) -> list[Agreement]:
        data = await self._request("list_agreements", "GET", "/agreements")
        return self._parse("list_agreements", _AGREEMENTS, _unwrap_list(data))

    async def update_agreement_status(self, agreement_id: str, status: AgreementStatus) -> bool:
        await self._request(
            "update_agreement_status",
            "PATCH",
            f"/agreements/{agreement_id}",
            json={"status": status.value},
        )
        return True

    async def update_agreement_description(self, agreement_id: str, description: str) -> bool:
        await self._request(
            "update_agreement_description",
            "PATCH",
            f"/agreements/{agreement_id}",
            json={"description": description},
        )
        return True

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def list_agreement_documents(self, agreement_id: str) -> list[Document]:
        data = await self._request(
            "list_agreement_documents", "GET", f"/documents/agreement/{agreement_id}"
        )
        return self._parse("list_agreement_documents", _DOCUMENTS, _unwrap_list(data))

    async def get_document(self, document_id: str) -> Document | None:
        data = await self._request(
            "get_document", "GET", f"/documents/{document_id}", allow_not_found=True
        )
        if data is None:
            return None
        return self._parse("get_document", Document, data)

    async def get_document_download_url(self, document_id: str) -> str | None:
        data = await self._request(
            "get_document_download_url",
            "GET",
            f"/documents/{document_id}/download-url",
            allow_not_found=True,
        )
        if not isinstance(data, dict):
            return None
        return data.get("url") or data.get("downloadUrl")

    async def update_document_acceptance(
        self, document_id: str, status: AcceptanceStatus
    ) -> bool:
        await self._request(
            "update_document_acceptance",
            "PATCH",
            f"/documents/{document_id}/acceptance",
            json={"acceptanceStatus": status.value},
        )
        return True

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def create_charge(
        self, agreement_id: str, amount: float, currency: str, description: str
    ) -> Charge:
        data = await self._request(
            "create_charge",
            "POST",
            "/charges",
            json={
                "agreementId": agreement_id,
                "amount": amount,
                "currency": currency,
                "description": description,
            },
        )
        return self._parse("create_charge", Charge, data)

    async def generate_payment_link(self, charge_id: str) -> str:
        data = await self._request(
            "generate_payment_link", "POST", f"/charges/{charge_id}/payment-link"
        )
        link = None
        if isinstance(data, dict):
            link = data.get("paymentLink") or data.get("url")
        if not link:
            raise GatewayError("generate_payment_link", "response carried no link")
        return link

    async def attach_payment(self, agreement_id: str, amount: float, payment_link: str) -> bool:
        await self._request(
            "attach_payment",
            "POST",
            f"/agreements/{agreement_id}/payment",
            json={"amount": amount, "paymentLink": payment_link},
        )
        return True

    async def get_charges_for_agreement(self, agreement_id: str) -> list[Charge]:
        data = await self._request(
            "get_charges_for_agreement", "GET", f"/charges/agreement/{agreement_id}"
        )
        return self._parse("get_charges_for_agreement", _CHARGES, _unwrap_list(data))

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    async def get_agreement_envelope_status(
        self, agreement_id: str, envelope_id: str
    ) -> EnvelopeStatus:
        data = await self._request(
            "get_agreement_envelope_status",
            "GET",
            f"/signature/agreements/{agreement_id}/envelopes/{envelope_id}/status",
        )
        raw = data.get("status") if isinstance(data, dict) else None
        try:
            return EnvelopeStatus(raw)
        except ValueError as exc:
            raise GatewayError(
                "get_agreement_envelope_status", f"unknown envelope status {raw!r}"
            ) from exc

    async def get_strategist_signing_info(self, agreement_id: str) -> EnvelopeSigningInfo:
        data = await self._request(
            "get_strategist_signing_info",
            "GET",
            f"/signature/agreements/{agreement_id}/signing-info",
        )
        return self._parse("get_strategist_signing_info", EnvelopeSigningInfo, data or {})

    async def get_signed_agreement_document_url(self, envelope_id: str) -> str | None:
        data = await self._request(
            "get_signed_agreement_document_url",
            "GET",
            f"/signature/envelopes/{envelope_id}/signed-document",
            allow_not_found=True,
        )
        if not isinstance(data, dict):
            return None
        return data.get("url") or data.get("signedDocumentUrl")
