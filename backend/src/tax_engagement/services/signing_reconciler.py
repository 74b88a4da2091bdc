"""Signing reconciliation against the e-signature provider.

The provider can finish a signing ceremony before the platform's webhook
has moved the agreement past PENDING_SIGNATURE. Polling envelope status
lets the session notice that early and ask for a reload; it never writes
an agreement status itself.
"""

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from tax_engagement.domain.enums import EnvelopeStatus
from tax_engagement.domain.schemas import Agreement, EnvelopeSigningInfo
from tax_engagement.infra.gateway import EngagementGateway
from tax_engagement.services.agreement_state_machine import is_signed
from tax_engagement.services.metadata_codec import MetadataStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SigningSnapshot:
    """Result of one signing-info fetch.

    ``error`` is set when the provider lookup failed; a fallback signed
    document URL may still be present.
    """

    info: EnvelopeSigningInfo | None = None
    signed_document_url: str | None = None
    error: str | None = None

    @property
    def both_signed(self) -> bool:
        return bool(self.info and self.info.strategist_has_signed and self.info.client_has_signed)


def needs_reload(
    agreements: Iterable[Agreement],
    envelope_statuses: Mapping[str, EnvelopeStatus],
) -> bool:
    """True if an envelope completed but the cached agreement is not signed yet."""
    return any(
        envelope_statuses.get(agreement.id) == EnvelopeStatus.COMPLETED
        and not is_signed(agreement.status)
        for agreement in agreements
    )


class SigningReconciler:
    def __init__(self, gateway: EngagementGateway, metadata_store: MetadataStore):
        self.gateway = gateway
        self.metadata_store = metadata_store

    async def poll_envelopes(self, agreements: Iterable[Agreement]) -> dict[str, EnvelopeStatus]:
        """Envelope status per agreement id, for every agreement with an envelope.

        Polls run concurrently. A failed poll is logged and left out of the
        result; the others still count.
        """
        targets = [
            (agreement.id, envelope_id)
            for agreement in agreements
            if (envelope_id := self.metadata_store.envelope_id_for(agreement))
        ]
        if not targets:
            return {}

        results = await asyncio.gather(
            *(
                self.gateway.get_agreement_envelope_status(agreement_id, envelope_id)
                for agreement_id, envelope_id in targets
            ),
            return_exceptions=True,
        )

        statuses: dict[str, EnvelopeStatus] = {}
        for (agreement_id, envelope_id), result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Envelope %s status poll failed for agreement %s: %s",
                    envelope_id, agreement_id, result,
                )
                continue
            statuses[agreement_id] = result
        logger.debug("Polled %d envelope(s): %s", len(statuses), statuses)
        return statuses

    async def fetch_signed_document_url(self, agreement: Agreement) -> str | None:
        envelope_id = self.metadata_store.envelope_id_for(agreement)
        if not envelope_id:
            return None
        try:
            return await self.gateway.get_signed_agreement_document_url(envelope_id)
        except Exception as e:
            logger.warning("Signed document lookup failed for envelope %s: %s", envelope_id, e)
            return None

    async def fetch_signing_info(self, agreement: Agreement) -> SigningSnapshot:
        """Signing info for *agreement* plus the best signed-document URL.

        The provider's own URL wins. Once the agreement is signed, a missing
        URL falls back to the envelope's signed document.
        """
        try:
            info = await self.gateway.get_strategist_signing_info(agreement.id)
        except Exception as e:
            logger.error("Signing info failed for agreement %s: %s", agreement.id, e)
            url = None
            if is_signed(agreement.status):
                url = await self.fetch_signed_document_url(agreement)
            return SigningSnapshot(signed_document_url=url, error=str(e))

        url = info.signed_document_url
        if not url and is_signed(agreement.status):
            url = await self.fetch_signed_document_url(agreement)
        return SigningSnapshot(info=info, signed_document_url=url)
