"""
Override audit log tests.

Verifies:
- Append-only rows (update and delete refused)
- Field validation and derived difference values
- History filters, ordering and pagination
- Summary grouping by day and by manager
"""

from datetime import timedelta

import pytest

from override_authority.errors import ValidationError
from override_authority.extensions import db
from override_authority.models import ImmutableRecordError, OverrideLog
from override_authority.services import audit_service

from conftest import NOW


def _log(**overrides):
    details = {"override_type": "discount_percent", "was_approved": True}
    details.update(overrides)
    now = details.pop("now", NOW)
    return audit_service.log_override(details, now=now)


# =============================================================================
# IMMUTABILITY
# =============================================================================


class TestImmutability:

    def test_update_refused(self, db_session):
        entry = _log()
        entry.reason = "rewritten"

        with pytest.raises(ImmutableRecordError):
            db.session.commit()
        db.session.rollback()

        assert db.session.get(OverrideLog, entry.id).reason is None

    def test_delete_refused(self, db_session):
        entry = _log()
        db.session.delete(entry)

        with pytest.raises(ImmutableRecordError):
            db.session.commit()
        db.session.rollback()

        assert db.session.query(OverrideLog).count() == 1


# =============================================================================
# LOG OVERRIDE
# =============================================================================


class TestLogOverride:

    def test_difference_values(self, db_session):
        entry = _log(original_value=80, override_value=60)
        assert entry.difference_value == -20
        assert entry.difference_percent == -25

    def test_zero_original_has_no_percent(self, db_session):
        entry = _log(original_value=0, override_value=5)
        assert entry.difference_value == 5
        assert entry.difference_percent is None

    def test_denial_gets_default_reason(self, db_session):
        entry = _log(was_approved=False)
        assert entry.denial_reason == "Denied"

    def test_created_at_uses_supplied_time(self, db_session):
        assert _log().created_at == NOW

    def test_was_approved_required(self, db_session):
        with pytest.raises(ValidationError):
            audit_service.log_override({"override_type": "void_item"})

    def test_unknown_type(self, db_session):
        with pytest.raises(ValidationError):
            audit_service.log_override({"override_type": "bribe", "was_approved": True})

    def test_unknown_verification_method(self, db_session):
        with pytest.raises(ValidationError):
            _log(verification_method="telepathy")

    def test_snapshot_must_be_object(self, db_session):
        with pytest.raises(ValidationError):
            _log(threshold_snapshot="threshold 4")
        assert db.session.query(OverrideLog).count() == 0

    def test_long_text_truncated(self, db_session):
        entry = _log(product_name="x" * 400, ip_address=" 10.0.0.1 ")
        assert len(entry.product_name) == 255
        assert entry.ip_address == "10.0.0.1"


# =============================================================================
# HISTORY
# =============================================================================


class TestHistory:

    @pytest.fixture
    def entries(self, cashier, manager):
        return [
            _log(now=NOW - timedelta(days=2), approved_by=manager.id, cashier_id=cashier.id),
            _log(now=NOW - timedelta(days=1), override_type="void_item", was_approved=False,
                 cashier_id=cashier.id),
            _log(now=NOW, approved_by=manager.id, request_id=None),
            _log(now=NOW + timedelta(hours=1), override_type="void_item", approved_by=manager.id),
        ]

    def test_newest_first(self, entries):
        result = audit_service.get_override_history()
        assert result["total"] == 4
        assert [row["id"] for row in result["overrides"]] == [e.id for e in reversed(entries)]

    def test_date_range(self, entries):
        result = audit_service.get_override_history(
            start=(NOW - timedelta(days=1, hours=1)).isoformat(),
            end=NOW.isoformat(),
        )
        assert {row["id"] for row in result["overrides"]} == {entries[1].id, entries[2].id}

    def test_filters(self, entries, manager, cashier):
        by_type = audit_service.get_override_history(override_type="void_item")
        assert by_type["total"] == 2

        by_manager = audit_service.get_override_history(manager_id=manager.id)
        assert by_manager["total"] == 3
        assert all(row["manager_name"] == "Morgan Tester" for row in by_manager["overrides"])

        by_cashier = audit_service.get_override_history(cashier_id=cashier.id)
        assert by_cashier["total"] == 2

        denied = audit_service.get_override_history(was_approved="false")
        assert [row["id"] for row in denied["overrides"]] == [entries[1].id]

    def test_pagination(self, entries):
        page = audit_service.get_override_history(limit=2, offset=1)
        assert page["total"] == 4
        assert page["limit"] == 2
        assert page["offset"] == 1
        assert [row["id"] for row in page["overrides"]] == [entries[2].id, entries[1].id]

    def test_limit_capped(self, entries):
        assert audit_service.get_override_history(limit=10000)["limit"] == audit_service.HISTORY_MAX_LIMIT

    def test_bad_range(self, db_session):
        with pytest.raises(ValidationError):
            audit_service.get_override_history(start=NOW.isoformat(), end=(NOW - timedelta(days=1)).isoformat())
        with pytest.raises(ValidationError):
            audit_service.get_override_history(start="yesterday")


# =============================================================================
# SUMMARY
# =============================================================================


class TestSummary:

    def test_by_day(self, db_session):
        _log(now=NOW, original_value=100, override_value=80)
        _log(now=NOW + timedelta(hours=2), original_value=50, override_value=40)
        _log(now=NOW + timedelta(hours=3), was_approved=False)
        _log(now=NOW - timedelta(days=1))

        result = audit_service.get_override_summary(group_by="day")
        assert result["group_by"] == "day"

        rows = {row["period"]: row for row in result["summary"]}
        today = rows["2025-06-04"]
        assert today["total_count"] == 3
        assert today["approved_count"] == 2
        assert today["denied_count"] == 1
        assert today["total_difference"] == 30
        assert today["avg_difference"] == 15
        assert rows["2025-06-03"]["total_count"] == 1

        # Newest period first
        assert [row["period"] for row in result["summary"]] == ["2025-06-04", "2025-06-03"]

    def test_by_manager(self, manager, admin):
        _log(approved_by=manager.id)
        _log(approved_by=manager.id)
        _log(approved_by=admin.id)

        result = audit_service.get_override_summary(group_by="manager")
        rows = {row["manager_id"]: row for row in result["summary"]}
        assert rows[manager.id]["total_count"] == 2
        assert rows[manager.id]["manager_name"] == "Morgan Tester"
        assert rows[admin.id]["total_count"] == 1

    def test_bad_group(self, db_session):
        with pytest.raises(ValidationError):
            audit_service.get_override_summary(group_by="week")
