"""Engagement session API endpoints.

A strategist opens a session per client detail view. The session loads
and reconciles the client's agreements; every command returns the fresh
snapshot so the caller never has to re-derive gating itself.
"""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from tax_engagement.app.config import get_settings
from tax_engagement.domain.enums import AgreementActor, WorkflowGroup
from tax_engagement.infra.gateway import EngagementGateway, GatewayError
from tax_engagement.infra.platform_client import PlatformClient
from tax_engagement.services.agreement_state_machine import (
    STATUS_LABELS,
    AgreementStateMachine,
    InvalidTransitionError,
    status_priority,
)
from tax_engagement.services.session_controller import EngagementSession
from tax_engagement.services.session_registry import SessionRegistry
from tax_engagement.services.status_projector import (
    CLIENT_STATUS_LABELS,
    WORKFLOW_GROUP_LABELS,
    group_clients_by_workflow,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/engagements", tags=["engagements"])

state_machine = AgreementStateMachine()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_gateway() -> EngagementGateway:
    return PlatformClient()


@lru_cache
def get_registry() -> SessionRegistry:
    settings = get_settings()
    return SessionRegistry(
        PlatformClient,
        idle_ttl_seconds=settings.session_idle_ttl_seconds,
        max_sessions=settings.max_sessions,
    )


def _get_session_or_404(registry: SessionRegistry, session_id: str) -> EngagementSession:
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


# ---------------------------------------------------------------------------
# Pydantic request schemas
# ---------------------------------------------------------------------------


class OpenSessionRequest(BaseModel):
    client_id: str
    agreement_id: Optional[str] = None


class SelectAgreementRequest(BaseModel):
    agreement_id: str


class SendAgreementRequest(BaseModel):
    price: Optional[float] = None
    envelope_id: Optional[str] = None


class SendStrategyRequest(BaseModel):
    strategy_document_id: str


class PaymentLinkRequest(BaseModel):
    amount: Optional[float] = None


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_session(session_id: str, session: EngagementSession) -> dict:
    """Snapshot plus derived view, JSON-ready."""
    state = session.state
    view = session.view
    agreement = view.agreement
    allowed = (
        state_machine.get_allowed_transitions(agreement.status, AgreementActor.STRATEGIST)
        if agreement
        else []
    )

    return {
        "session_id": session_id,
        "client_id": state.client_id,
        "client": state.client.model_dump(mode="json") if state.client else None,
        "selected_agreement_id": agreement.id if agreement else None,
        "agreements": [
            {
                "id": a.id,
                "name": a.name,
                "status": a.status.value,
                "status_label": STATUS_LABELS[a.status],
                "priority": status_priority(a.status),
                "created_at": a.created_at.isoformat(),
            }
            for a in state.agreements
        ],
        "status_key": view.status_key.value,
        "status_label": CLIENT_STATUS_LABELS[view.status_key],
        "workflow_group": view.workflow_group.value,
        "workflow_group_label": WORKFLOW_GROUP_LABELS[view.workflow_group],
        "agreement_sent": view.agreement_sent,
        "agreement_signed": view.agreement_signed,
        "payment_sent": view.payment_sent,
        "payment_received": view.payment_received,
        "payment_amount": view.payment_amount,
        "documents": {
            "uploaded": view.counts.uploaded,
            "accepted": view.counts.accepted,
            "total": view.counts.total,
            "all_uploaded": view.counts.all_uploaded,
            "all_accepted": view.counts.all_accepted,
            "items": [doc.model_dump(mode="json") for doc in state.documents],
        },
        "strategy": {
            "phase": view.step5.phase.value,
            "strategy_sent": view.step5.strategy_sent,
            "compliance_approved": view.step5.compliance_approved,
            "compliance_rejected": view.step5.compliance_rejected,
            "client_approved": view.step5.client_approved,
            "client_declined": view.step5.client_declined,
            "is_complete": view.step5.is_complete,
            "document_id": view.strategy_document.id if view.strategy_document else None,
            "document_url": state.strategy_document_url,
        },
        "active_charge": state.active_charge.model_dump(mode="json") if state.active_charge else None,
        "signing": {
            "info": state.signing_info.model_dump(mode="json") if state.signing_info else None,
            "signed_document_url": state.signed_document_url,
            "envelope_statuses": {k: v.value for k, v in state.envelope_statuses.items()},
        },
        "compliance_user_id": view.compliance_user_id,
        "actions": {
            "can_send_agreement": view.can_send_agreement,
            "can_send_payment_link": view.can_send_payment_link,
            "can_advance_to_strategy": view.can_advance_to_strategy,
            "can_send_strategy": view.can_send_strategy,
            "can_complete_agreement": view.can_complete_agreement,
            "allowed_transitions": [status.value for status in allowed],
            "pending": sorted(state.pending_actions),
        },
        "loading": sorted(section.value for section in state.loading),
        "errors": {section.value: message for section, message in state.errors.items()},
    }


async def _run_command(session_id: str, session: EngagementSession, command) -> dict:
    try:
        ok = await command
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": ok, "session": serialize_session(session_id, session)}


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@router.get("/triage")
async def triage_clients(gateway: EngagementGateway = Depends(get_gateway)):
    """Strategist dashboard: clients bucketed by who acts next."""
    try:
        clients = await gateway.list_clients()
        agreements = await gateway.list_agreements()
    except GatewayError as e:
        logger.error("Triage load failed: %s", e)
        raise HTTPException(status_code=502, detail=str(e))

    groups = group_clients_by_workflow(clients, agreements)
    return {
        group.value: {
            "label": WORKFLOW_GROUP_LABELS[group],
            "clients": [
                {"id": c.id, "name": c.display_name, "email": c.email} for c in groups[group]
            ],
        }
        for group in WorkflowGroup
    }


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/sessions", status_code=201)
async def open_session(
    body: OpenSessionRequest,
    registry: SessionRegistry = Depends(get_registry),
):
    session_id, session = registry.open()
    await session.init(body.client_id, body.agreement_id)
    return serialize_session(session_id, session)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = _get_session_or_404(registry, session_id)
    return serialize_session(session_id, session)


@router.delete("/sessions/{session_id}")
async def close_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    if not registry.close(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"closed": session_id}


@router.post("/sessions/{session_id}/select")
async def select_agreement(
    session_id: str,
    body: SelectAgreementRequest,
    registry: SessionRegistry = Depends(get_registry),
):
    session = _get_session_or_404(registry, session_id)
    await session.select_agreement(body.agreement_id)
    return serialize_session(session_id, session)


@router.post("/sessions/{session_id}/refresh")
async def refresh_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = _get_session_or_404(registry, session_id)
    await session.refresh()
    return serialize_session(session_id, session)


@router.post("/sessions/{session_id}/documents/{document_id}/accept")
async def accept_document(
    session_id: str, document_id: str, registry: SessionRegistry = Depends(get_registry)
):
    session = _get_session_or_404(registry, session_id)
    return await _run_command(session_id, session, session.accept_document(document_id))


@router.post("/sessions/{session_id}/documents/{document_id}/decline")
async def decline_document(
    session_id: str, document_id: str, registry: SessionRegistry = Depends(get_registry)
):
    session = _get_session_or_404(registry, session_id)
    return await _run_command(session_id, session, session.decline_document(document_id))


@router.post("/sessions/{session_id}/send-agreement")
async def send_agreement(
    session_id: str,
    body: SendAgreementRequest,
    registry: SessionRegistry = Depends(get_registry),
):
    session = _get_session_or_404(registry, session_id)
    return await _run_command(
        session_id, session, session.send_agreement(body.price, body.envelope_id)
    )


@router.post("/sessions/{session_id}/advance")
async def advance_to_strategy(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = _get_session_or_404(registry, session_id)
    return await _run_command(session_id, session, session.advance_to_strategy())


@router.post("/sessions/{session_id}/strategy")
async def send_strategy(
    session_id: str,
    body: SendStrategyRequest,
    registry: SessionRegistry = Depends(get_registry),
):
    session = _get_session_or_404(registry, session_id)
    return await _run_command(
        session_id, session, session.send_strategy(body.strategy_document_id)
    )


@router.post("/sessions/{session_id}/complete")
async def complete_agreement(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = _get_session_or_404(registry, session_id)
    return await _run_command(session_id, session, session.complete_agreement())


@router.post("/sessions/{session_id}/cancel")
async def cancel_agreement(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = _get_session_or_404(registry, session_id)
    return await _run_command(session_id, session, session.cancel_agreement())


@router.post("/sessions/{session_id}/payment-link")
async def send_payment_link(
    session_id: str,
    body: PaymentLinkRequest,
    registry: SessionRegistry = Depends(get_registry),
):
    session = _get_session_or_404(registry, session_id)
    return await _run_command(session_id, session, session.send_payment_link(body.amount))


@router.post("/sessions/{session_id}/payment-reminder")
async def send_payment_reminder(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = _get_session_or_404(registry, session_id)
    return await _run_command(session_id, session, session.send_payment_reminder())


@router.post("/sessions/{session_id}/signing-info/refresh")
async def refresh_signing_info(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = _get_session_or_404(registry, session_id)
    return await _run_command(session_id, session, session.refresh_signing_info())
