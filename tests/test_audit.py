"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection, integrity verification,
and rollback of events together with the unit of work that wrote them.
"""

import pytest
from datetime import datetime, date, timezone
from decimal import Decimal

from lending_core.storage import InMemoryStorage, SQLiteStorage
from lending_core.audit import AuditTrail, AuditEvent, AuditEventType


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def _event(self, **overrides):
        now = datetime.now(timezone.utc)
        fields = dict(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id="LOAN001",
            sequence=1,
            previous_hash="",
            current_hash="",
            user_id="officer-1",
            metadata={"loan_amount": "10000.00"}
        )
        fields.update(overrides)
        return AuditEvent(**fields)

    def test_metadata_serialization(self):
        """Decimals, dates and enums become JSON-friendly values"""
        event = self._event(metadata={
            "amount": Decimal('888.49'),
            "due": date(2024, 2, 15),
            "type": AuditEventType.PAYMENT_APPLIED,
            "nested": {"values": [Decimal('1.10')]}
        })
        assert event.metadata == {
            "amount": "888.49",
            "due": "2024-02-15",
            "type": "payment_applied",
            "nested": {"values": ["1.10"]}
        }

    def test_hash_covers_content(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.metadata["loan_amount"] = "99999.00"
        assert not event.verify_hash()

    def test_dict_round_trip(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        restored = AuditEvent.from_dict(event.to_dict())
        assert restored.event_type == AuditEventType.LOAN_CREATED
        assert restored.verify_hash()


class TestAuditTrail:
    """Test the hash chain"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)

    def test_chain_links_events(self):
        first = self.audit.log_event(AuditEventType.LOAN_CREATED, "loan", "L1", {"a": 1})
        second = self.audit.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1", user_id="u1")

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert self.audit.count_events() == 2

    def test_verify_integrity_on_clean_chain(self):
        for i in range(5):
            self.audit.log_event(AuditEventType.PAYMENT_APPLIED, "loan", "L1", {"n": i})

        result = self.audit.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_tampered_metadata_detected(self):
        self.audit.log_event(AuditEventType.LOAN_CREATED, "loan", "L1", {"amount": "100.00"})
        event = self.audit.log_event(AuditEventType.PAYMENT_APPLIED, "loan", "L1", {"amount": "50.00"})

        data = self.storage.load("audit_events", event.id)
        data["metadata"]["amount"] = "5000.00"
        self.storage.save("audit_events", event.id, data)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert [e["event_id"] for e in result["hash_errors"]] == [event.id]

    def test_deleted_event_breaks_chain(self):
        self.audit.log_event(AuditEventType.LOAN_CREATED, "loan", "L1")
        middle = self.audit.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1")
        self.audit.log_event(AuditEventType.PAYMENT_APPLIED, "loan", "L1")

        self.storage.delete("audit_events", middle.id)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert len(result["chain_breaks"]) == 1

    def test_events_for_entity(self):
        self.audit.log_event(AuditEventType.LOAN_CREATED, "loan", "L1")
        self.audit.log_event(AuditEventType.LOAN_CREATED, "loan", "L2")
        self.audit.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1")
        self.audit.log_event(AuditEventType.PAYMENT_APPLIED, "loan", "L1")

        events = self.audit.get_events_for_entity("loan", "L1")
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_CREATED, AuditEventType.LOAN_APPROVED, AuditEventType.PAYMENT_APPLIED
        ]
        latest = self.audit.get_events_for_entity("loan", "L1", limit=1)
        assert [e.event_type for e in latest] == [AuditEventType.PAYMENT_APPLIED]

    def test_events_roll_back_with_unit_of_work(self):
        self.audit.log_event(AuditEventType.LOAN_CREATED, "loan", "L1")

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1")
                raise RuntimeError("approval failed")

        assert self.audit.count_events() == 1
        following = self.audit.log_event(AuditEventType.LOAN_REJECTED, "loan", "L1")
        assert following.sequence == 2
        assert self.audit.verify_integrity()["valid"]


class TestAuditTrailSQLite:

    def test_chain_survives_reopen(self, tmp_path):
        path = tmp_path / "audit.db"
        storage = SQLiteStorage(path)
        AuditTrail(storage).log_event(AuditEventType.LOAN_CREATED, "loan", "L1")
        storage.close()

        storage = SQLiteStorage(path)
        audit = AuditTrail(storage)
        event = audit.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1")
        assert event.sequence == 2
        assert audit.verify_integrity()["valid"]
        storage.close()
