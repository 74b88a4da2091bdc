"""Interface of the platform API the engagement engine depends on."""

from typing import Protocol

from tax_engagement.domain.enums import AcceptanceStatus, AgreementStatus, EnvelopeStatus
from tax_engagement.domain.schemas import (
    Agreement,
    Charge,
    ClientRecord,
    ComplianceUser,
    Document,
    EnvelopeSigningInfo,
)


class GatewayError(Exception):
    """A platform call failed (transport error, timeout or non-2xx response)."""

    def __init__(self, operation: str, message: str, status_code: int | None = None):
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"{operation} failed: {message}")


class EngagementGateway(Protocol):
    """Every remote operation the engine performs.

    Boolean results report whether the platform accepted the mutation;
    transport failures raise ``GatewayError``.
    """

    # --- Clients ---

    async def get_client(self, client_id: str) -> ClientRecord | None: ...

    async def list_clients(self) -> list[ClientRecord]: ...

    async def get_linked_compliance_users(self) -> list[ComplianceUser]: ...

    # --- Agreements ---

    async def list_client_agreements(self, client_id: str) -> list[Agreement]: ...

    async def list_agreements(self) -> list[Agreement]: ...

    async def update_agreement_status(self, agreement_id: str, status: AgreementStatus) -> bool: ...

    async def update_agreement_description(self, agreement_id: str, description: str) -> bool: ...

    # --- Documents ---

    async def list_agreement_documents(self, agreement_id: str) -> list[Document]: ...

    async def get_document(self, document_id: str) -> Document | None: ...

    async def get_document_download_url(self, document_id: str) -> str | None: ...

    async def update_document_acceptance(
        self, document_id: str, status: AcceptanceStatus
    ) -> bool: ...

    # --- Payments ---

    async def create_charge(
        self, agreement_id: str, amount: float, currency: str, description: str
    ) -> Charge: ...

    async def generate_payment_link(self, charge_id: str) -> str: ...

    async def attach_payment(self, agreement_id: str, amount: float, payment_link: str) -> bool: ...

    async def get_charges_for_agreement(self, agreement_id: str) -> list[Charge]: ...

    # --- Signing ---

    async def get_agreement_envelope_status(
        self, agreement_id: str, envelope_id: str
    ) -> EnvelopeStatus: ...

    async def get_strategist_signing_info(self, agreement_id: str) -> EnvelopeSigningInfo: ...

    async def get_signed_agreement_document_url(self, envelope_id: str) -> str | None: ...
