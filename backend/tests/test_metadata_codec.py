"""Tests for description-embedded agreement metadata."""

import json

import pytest

from tax_engagement.domain.schemas import StrategyMetadata
from tax_engagement.services.metadata_codec import (
    LEGACY_STRATEGY_MARKER,
    METADATA_MARKER,
    DescriptionMetadataAdapter,
    embed,
    extract,
    strip,
)


class TestExtract:
    @pytest.mark.parametrize(
        "description",
        [
            None,
            "",
            "plain notes, no marker",
            f"notes{METADATA_MARKER}",
            f"notes{METADATA_MARKER}{{not json",
            f"notes{METADATA_MARKER}[1, 2, 3]",
        ],
    )
    def test_absent_or_malformed_is_none(self, description):
        assert extract(description) is None

    def test_reads_payload_after_marker(self):
        description = f'Onboarding{METADATA_MARKER}{{"price":750,"envelopeId":"env_9"}}'
        assert extract(description) == {"price": 750, "envelopeId": "env_9"}

    def test_falls_back_to_legacy_marker(self):
        description = f'old{LEGACY_STRATEGY_MARKER}{{"strategyDocumentId":"doc-7"}}'
        assert extract(description) == {"strategyDocumentId": "doc-7"}


class TestEmbed:
    def test_round_trip_preserves_free_text(self):
        metadata = {"price": 499, "envelopeId": "env_1"}
        description = embed("Client notes", metadata)
        assert description.startswith("Client notes" + METADATA_MARKER)
        assert extract(description) == metadata
        assert strip(description) == "Client notes"

    def test_appends_to_empty_description(self):
        description = embed(None, {"price": 100})
        assert description == f'{METADATA_MARKER}{{"price":100}}'

    def test_merge_keeps_old_keys_new_keys_win(self):
        first = embed("notes", {"price": 499, "envelopeId": "env_1"})
        second = embed(first, {"envelopeId": "env_2", "strategyDocumentId": "doc-3"})
        assert extract(second) == {
            "price": 499,
            "envelopeId": "env_2",
            "strategyDocumentId": "doc-3",
        }
        assert second.count(METADATA_MARKER) == 1

    def test_malformed_payload_is_replaced(self):
        description = embed(f"notes{METADATA_MARKER}{{broken", {"price": 10})
        assert extract(description) == {"price": 10}
        assert strip(description) == "notes"

    def test_legacy_marker_is_migrated(self):
        legacy = f'notes{LEGACY_STRATEGY_MARKER}{{"price":200}}'
        description = embed(legacy, {"sentAt": "2025-01-01T00:00:00Z"})
        assert LEGACY_STRATEGY_MARKER not in description
        assert extract(description) == {"price": 200, "sentAt": "2025-01-01T00:00:00Z"}

    def test_typed_metadata_serializes_camel_case(self):
        description = embed("", StrategyMetadata(strategy_document_id="doc-1", price=None))
        payload = json.loads(description[len(METADATA_MARKER):])
        assert payload == {"strategyDocumentId": "doc-1"}


class TestDescriptionMetadataAdapter:
    @pytest.fixture
    def store(self):
        return DescriptionMetadataAdapter()

    def test_read_returns_typed_metadata(self, store, make_agreement):
        agreement = make_agreement(
            description=embed("", {"price": 650, "strategyDocumentId": "doc-5", "custom": 1})
        )
        metadata = store.read(agreement)
        assert metadata.price == 650
        assert metadata.strategy_document_id == "doc-5"
        assert metadata.to_wire()["custom"] == 1

    def test_read_without_metadata(self, store, make_agreement):
        assert store.read(make_agreement(description="just text")) is None

    def test_read_with_wrongly_typed_field_is_none(self, store, make_agreement):
        agreement = make_agreement(description=embed("", {"price": "a lot"}))
        assert store.read(agreement) is None

    def test_envelope_id_prefers_dedicated_field(self, store, make_agreement):
        agreement = make_agreement(
            envelope_id="env_field", description=embed("", {"envelopeId": "env_meta"})
        )
        assert store.envelope_id_for(agreement) == "env_field"

    def test_envelope_id_from_metadata(self, store, make_agreement):
        agreement = make_agreement(description=embed("", {"envelopeId": "env_meta"}))
        assert store.envelope_id_for(agreement) == "env_meta"

    def test_price_prefers_metadata(self, store, make_agreement):
        agreement = make_agreement(price=300, description=embed("", {"price": 650}))
        assert store.price_for(agreement) == 650

    def test_price_falls_back_to_field_then_none(self, store, make_agreement):
        assert store.price_for(make_agreement(price=300)) == 300
        assert store.price_for(make_agreement()) is None

    def test_write_returns_merged_description(self, store, make_agreement):
        agreement = make_agreement(description=embed("notes", {"price": 499}))
        description = store.write(agreement, StrategyMetadata(envelope_id="env_4"))
        assert extract(description) == {"price": 499, "envelopeId": "env_4"}
