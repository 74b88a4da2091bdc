"""Shared test infrastructure for the tax engagement test suite.

Provides:
- settings: Settings with a test token and no .env lookup
- fake_gateway: in-memory EngagementGateway with gated and failing calls
- make_agreement: factory for Agreement models
- make_todo: factory for document/sign/pay todos
- make_document: factory for Document models
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tax_engagement.app.config import Settings
from tax_engagement.domain.enums import (
    AcceptanceStatus,
    AgreementStatus,
    ChargeStatus,
    EnvelopeStatus,
    UploadStatus,
)
from tax_engagement.domain.schemas import (
    Agreement,
    Charge,
    ClientRecord,
    ComplianceUser,
    Document,
    EnvelopeSigningInfo,
    Todo,
    TodoDocument,
)
from tax_engagement.infra.gateway import GatewayError

BASE_TIME = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# In-memory gateway
# ---------------------------------------------------------------------------


class FakeGateway:
    """In-memory platform.

    ``gate(operation, key)`` returns an asyncio.Event the matching call waits
    on, so tests can control completion order. ``fail(operation)`` makes
    every call to that operation raise GatewayError; ``refuse(operation)``
    makes a mutation return False without applying it.
    """

    def __init__(self):
        self.clients: dict[str, ClientRecord] = {}
        self.agreements: dict[str, Agreement] = {}
        self.documents: dict[str, list[Document]] = {}
        self.extra_documents: dict[str, Document] = {}
        self.charges: dict[str, list[Charge]] = {}
        self.envelope_statuses: dict[str, EnvelopeStatus] = {}
        self.signing_info: dict[str, EnvelopeSigningInfo] = {}
        self.signed_document_urls: dict[str, str] = {}
        self.download_urls: dict[str, str] = {}
        self.compliance_users: list[ComplianceUser] = []
        self.calls: list[tuple[str, object]] = []
        self.attached_payments: list[tuple[str, float, str]] = []
        self._gates: dict[tuple[str, object], asyncio.Event] = {}
        self._failures: dict[str, GatewayError] = {}
        self._refusals: set[str] = set()
        self._link_seq = 0

    # --- test controls ---

    def gate(self, operation: str, key: object = None) -> asyncio.Event:
        event = asyncio.Event()
        self._gates[(operation, key)] = event
        return event

    def fail(self, operation: str, message: str = "boom") -> None:
        self._failures[operation] = GatewayError(operation, message, status_code=500)

    def recover(self, operation: str) -> None:
        self._failures.pop(operation, None)

    def refuse(self, operation: str) -> None:
        self._refusals.add(operation)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def add_agreement(self, agreement: Agreement) -> Agreement:
        self.agreements[agreement.id] = agreement
        return agreement

    async def _enter(self, operation: str, key: object = None) -> bool:
        self.calls.append((operation, key))
        gate = self._gates.get((operation, key))
        if gate is not None:
            await gate.wait()
        if operation in self._failures:
            raise self._failures[operation]
        return operation not in self._refusals

    # --- clients ---

    async def get_client(self, client_id):
        await self._enter("get_client", client_id)
        return self.clients.get(client_id)

    async def list_clients(self):
        await self._enter("list_clients")
        return list(self.clients.values())

    async def get_linked_compliance_users(self):
        await self._enter("get_linked_compliance_users")
        return list(self.compliance_users)

    # --- agreements ---

    async def list_client_agreements(self, client_id):
        await self._enter("list_client_agreements", client_id)
        return [a for a in self.agreements.values() if a.client_id == client_id]

    async def list_agreements(self):
        await self._enter("list_agreements")
        return list(self.agreements.values())

    async def update_agreement_status(self, agreement_id, status):
        if not await self._enter("update_agreement_status", agreement_id):
            return False
        self.agreements[agreement_id] = self.agreements[agreement_id].model_copy(
            update={"status": status}
        )
        return True

    async def update_agreement_description(self, agreement_id, description):
        if not await self._enter("update_agreement_description", agreement_id):
            return False
        self.agreements[agreement_id] = self.agreements[agreement_id].model_copy(
            update={"description": description}
        )
        return True

    # --- documents ---

    async def list_agreement_documents(self, agreement_id):
        await self._enter("list_agreement_documents", agreement_id)
        return list(self.documents.get(agreement_id, []))

    async def get_document(self, document_id):
        await self._enter("get_document", document_id)
        return self.extra_documents.get(document_id)

    async def get_document_download_url(self, document_id):
        await self._enter("get_document_download_url", document_id)
        return self.download_urls.get(document_id)

    async def update_document_acceptance(self, document_id, status):
        if not await self._enter("update_document_acceptance", document_id):
            return False
        for agreement_id, docs in self.documents.items():
            self.documents[agreement_id] = [
                doc.model_copy(update={"acceptance_status": status}) if doc.id == document_id else doc
                for doc in docs
            ]
        for agreement_id, agreement in list(self.agreements.items()):
            todos = [
                todo.model_copy(
                    update={
                        "document": todo.document.model_copy(update={"acceptance_status": status})
                    }
                )
                if todo.document is not None and todo.document.id == document_id
                else todo
                for todo in agreement.todos
            ]
            self.agreements[agreement_id] = agreement.model_copy(update={"todos": todos})
        return True

    # --- payments ---

    async def create_charge(self, agreement_id, amount, currency, description):
        await self._enter("create_charge", agreement_id)
        charges = self.charges.setdefault(agreement_id, [])
        charge = Charge(id=f"ch_{len(charges) + 1}", amount=amount, currency=currency)
        charges.append(charge)
        return charge

    async def generate_payment_link(self, charge_id):
        await self._enter("generate_payment_link", charge_id)
        self._link_seq += 1
        return f"https://pay.example.com/{charge_id}/{self._link_seq}"

    async def attach_payment(self, agreement_id, amount, payment_link):
        if not await self._enter("attach_payment", agreement_id):
            return False
        self.attached_payments.append((agreement_id, amount, payment_link))
        return True

    async def get_charges_for_agreement(self, agreement_id):
        await self._enter("get_charges_for_agreement", agreement_id)
        return list(self.charges.get(agreement_id, []))

    # --- signing ---

    async def get_agreement_envelope_status(self, agreement_id, envelope_id):
        await self._enter("get_agreement_envelope_status", agreement_id)
        return self.envelope_statuses.get(envelope_id, EnvelopeStatus.IN_PROGRESS)

    async def get_strategist_signing_info(self, agreement_id):
        await self._enter("get_strategist_signing_info", agreement_id)
        return self.signing_info.get(agreement_id, EnvelopeSigningInfo())

    async def get_signed_agreement_document_url(self, envelope_id):
        await self._enter("get_signed_agreement_document_url", envelope_id)
        return self.signed_document_urls.get(envelope_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return Settings(_env_file=None, api_access_token="test-token", retry_backoff_seconds=0)


@pytest.fixture
def fake_gateway():
    gateway = FakeGateway()
    gateway.clients["client-1"] = ClientRecord(
        id="client-1", email="pat@example.com", name="Pat Client"
    )
    return gateway


@pytest.fixture
def make_todo():
    """Factory for todos.

    Usage:
        todo = make_todo("doc-1", accepted=True)
        sign = make_todo(title="Sign agreement", document_id=None)
    """
    def _factory(
        document_id: str | None = "doc-1",
        title: str = "W-2 forms",
        uploaded: bool = True,
        accepted: bool = False,
        status: str = "pending",
        category=None,
    ) -> Todo:
        document = None
        if document_id is not None:
            document = TodoDocument(
                id=document_id,
                upload_status=UploadStatus.FILE_UPLOADED if uploaded else UploadStatus.PENDING,
                acceptance_status=(
                    AcceptanceStatus.ACCEPTED_BY_STRATEGIST if accepted else AcceptanceStatus.PENDING
                ),
            )
        return Todo(
            id=f"todo-{document_id or title}",
            title=title,
            status=status,
            category=category,
            document=document,
        )

    return _factory


@pytest.fixture
def make_agreement():
    """Factory for agreements; ``age_days`` pushes created_at into the past."""
    def _factory(
        agreement_id: str = "agr-1",
        status: AgreementStatus = AgreementStatus.DRAFT,
        client_id: str = "client-1",
        age_days: int = 0,
        todos: list[Todo] | None = None,
        **kwargs,
    ) -> Agreement:
        return Agreement(
            id=agreement_id,
            client_id=client_id,
            name=f"Engagement {agreement_id}",
            status=status,
            created_at=BASE_TIME - timedelta(days=age_days),
            todos=todos or [],
            **kwargs,
        )

    return _factory


@pytest.fixture
def make_document():
    def _factory(
        document_id: str = "doc-1",
        acceptance: AcceptanceStatus = AcceptanceStatus.PENDING,
        name: str = "Tax Strategy.pdf",
    ) -> Document:
        return Document(id=document_id, name=name, acceptance_status=acceptance)

    return _factory


@pytest.fixture
def paid_charge():
    return Charge(id="ch_paid", status=ChargeStatus.PAID, amount=499)
