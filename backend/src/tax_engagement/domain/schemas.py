"""Pydantic v2 schemas for platform API payloads.

The platform speaks camelCase JSON; every model accepts both the wire alias
and the Python field name.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from tax_engagement.domain.enums import (
    AcceptanceStatus,
    AgreementStatus,
    ChargeStatus,
    TodoCategory,
    UploadStatus,
)


class ApiModel(BaseModel):
    """Base for wire models: camelCase aliases, unknown fields ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class ClientRecord(ApiModel):
    """A strategist's client as returned by the users API."""

    id: str
    email: str = ""
    name: str | None = None
    full_name: str | None = None
    archived: bool = False
    created_at: datetime | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.full_name or self.email.split("@")[0]


class ComplianceUser(ApiModel):
    """A compliance reviewer linked to the current strategist.

    The platform returns either a user object or a strategist mapping row;
    ``compliance_user_id`` always resolves to the reviewer's user id.
    """

    id: str
    email: str = ""
    name: str | None = None
    compliance_user_id: str | None = None
    user_id: str | None = None

    @model_validator(mode="after")
    def _resolve_user_id(self):
        if not self.compliance_user_id:
            self.compliance_user_id = self.user_id or self.id
        return self


# ---------------------------------------------------------------------------
# Agreements & todos
# ---------------------------------------------------------------------------


class TodoDocument(ApiModel):
    """The document attached to a todo, if any."""

    id: str
    upload_status: UploadStatus = UploadStatus.PENDING
    acceptance_status: AcceptanceStatus = AcceptanceStatus.PENDING


class Todo(ApiModel):
    """A requested client action tracked on an agreement."""

    id: str
    title: str
    status: str = "pending"
    category: TodoCategory | None = None
    document: TodoDocument | None = None


class Agreement(ApiModel):
    """The contractual record driving one client's pipeline."""

    id: str
    client_id: str
    name: str = ""
    status: AgreementStatus = AgreementStatus.DRAFT
    description: str | None = None
    price: float | None = None
    contract_document_id: str | None = None
    envelope_id: str | None = Field(default=None, alias="signatureEnvelopeId")
    created_at: datetime
    todos: list[Todo] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _flatten_todo_lists(cls, data: Any) -> Any:
        """The platform nests todos in ``todoLists[].todos``; flatten them."""
        if isinstance(data, dict) and "todoLists" in data and "todos" not in data:
            data = dict(data)
            data["todos"] = [
                todo
                for todo_list in data.pop("todoLists") or []
                for todo in (todo_list or {}).get("todos") or []
            ]
        return data


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class Document(ApiModel):
    """A stored document and its review state."""

    id: str
    name: str = ""
    acceptance_status: AcceptanceStatus = AcceptanceStatus.PENDING
    file_id: str | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class Charge(ApiModel):
    """A payment charge at the payment provider."""

    id: str
    status: ChargeStatus = ChargeStatus.PENDING
    amount: float = 0
    currency: str = "usd"
    payment_link: str | None = None


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


class EnvelopeSigningInfo(ApiModel):
    """Signing-provider snapshot for one agreement. Never persisted locally."""

    strategist_has_signed: bool = False
    client_has_signed: bool = False
    strategist_ceremony_url: str | None = None
    signed_document_url: str | None = None


# ---------------------------------------------------------------------------
# Embedded metadata
# ---------------------------------------------------------------------------


class StrategyMetadata(ApiModel):
    """Typed view of the metadata embedded in an agreement description.

    Every field is optional; keys this model does not know are kept so a
    merge never drops them.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    price: float | None = None
    envelope_id: str | None = None
    strategy_document_id: str | None = None
    sent_at: str | None = None

    def to_wire(self) -> dict:
        """Serialize with camelCase keys, omitting unset values."""
        return self.model_dump(by_alias=True, exclude_none=True)
