"""
Asynchronous override request tests.

Verifies:
- Request codes and expiry on creation, TTL bounds
- Approval queue ordering and filters
- Resolution by id and by code, first resolution wins even from a stale read
- Failed PIN checks leave the request pending
- Lazy expiry and the expiry sweep
- Cancellation by the requester only
"""

import re
from datetime import timedelta

import pytest

from override_authority.errors import ConflictError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from override_authority.extensions import db
from override_authority.models import OverrideLog, OverrideRequest
from override_authority.services import request_service
from override_authority.services.request_service import (
    cancel_request,
    create_override_request,
    expire_stale_requests,
    get_pending_requests,
    get_request,
    get_request_by_code,
    resolve_request,
    resolve_request_by_code,
)

from conftest import ADMIN_PIN, MANAGER_PIN, NOW, SHIFT_LEAD_PIN


def _request_logs(request_id):
    return (
        db.session.query(OverrideLog)
        .filter_by(request_id=request_id)
        .order_by(OverrideLog.id)
        .all()
    )


@pytest.fixture
def pending(cashier, discount_threshold):
    """A 25% discount request: needs manager approval."""
    return create_override_request(
        {
            "override_type": "discount_percent",
            "value": 25,
            "original_value": 100,
            "requested_value": 75,
            "shift_id": 3,
            "register_id": 1,
            "reason": "Damaged packaging",
        },
        cashier.id,
        now=NOW,
    )


# =============================================================================
# CREATE
# =============================================================================


class TestCreateRequest:

    def test_create_evaluates_threshold(self, pending, discount_threshold, cashier):
        assert re.fullmatch(r"OVR-[A-HJ-NP-Z2-9]{6}", pending.request_code)
        assert pending.status == "pending"
        assert pending.required_level == "manager"
        assert pending.threshold_id == discount_threshold.id
        assert pending.requested_by == cashier.id
        assert pending.expires_at == NOW + timedelta(minutes=10)

    def test_explicit_required_level(self, cashier):
        request = create_override_request(
            {"override_type": "price_override", "required_level": "area_manager"},
            cashier.id,
            now=NOW,
        )
        assert request.required_level == "area_manager"

    def test_defaults_to_manager_without_threshold(self, cashier):
        request = create_override_request({"override_type": "void_item"}, cashier.id, now=NOW)
        assert request.required_level == "manager"
        assert request.threshold_id is None

    def test_custom_ttl(self, cashier):
        request = create_override_request(
            {"override_type": "void_item", "expires_in_minutes": 30}, cashier.id, now=NOW,
        )
        assert request.expires_at == NOW + timedelta(minutes=30)

    @pytest.mark.parametrize("ttl", [0, 61, "soon"])
    def test_ttl_bounds(self, cashier, ttl):
        with pytest.raises(ValidationError):
            create_override_request({"override_type": "void_item", "expires_in_minutes": ttl}, cashier.id, now=NOW)

    def test_unknown_type_rejected(self, cashier):
        with pytest.raises(ValidationError):
            create_override_request({"override_type": "free_lunch"}, cashier.id, now=NOW)

    def test_pin_verification_cannot_be_requested(self, cashier):
        with pytest.raises(ValidationError):
            create_override_request({"override_type": "pin_verification"}, cashier.id, now=NOW)

    def test_unknown_requester(self, db_session):
        with pytest.raises(NotFoundError):
            create_override_request({"override_type": "void_item"}, 999, now=NOW)

    def test_payload_must_be_object(self, cashier):
        with pytest.raises(ValidationError):
            create_override_request({"override_type": "void_item", "payload": [1, 2]}, cashier.id, now=NOW)

    def test_codes_are_unique(self, cashier):
        codes = {
            create_override_request({"override_type": "void_item"}, cashier.id, now=NOW).request_code
            for _ in range(20)
        }
        assert len(codes) == 20

    def test_unapprovable_value_rejected(self, cashier, admin):
        from override_authority.services import threshold_service

        threshold_service.create_threshold({
            "override_type": "refund_amount",
            "name": "Refunds",
            "approval_levels": [
                {"approval_level": "shift_lead", "max_value": 50},
                {"approval_level": "manager", "max_value": 500},
            ],
        })
        with pytest.raises(ConflictError):
            create_override_request({"override_type": "refund_amount", "value": 900}, cashier.id, now=NOW)
        assert db.session.query(OverrideRequest).count() == 0


# =============================================================================
# QUEUE AND LOOKUP
# =============================================================================


class TestPendingQueue:

    def test_oldest_first_and_unexpired_only(self, cashier):
        first = create_override_request({"override_type": "void_item"}, cashier.id, now=NOW)
        second = create_override_request(
            {"override_type": "void_item"}, cashier.id, now=NOW + timedelta(minutes=1),
        )
        short = create_override_request(
            {"override_type": "void_item", "expires_in_minutes": 1}, cashier.id, now=NOW,
        )

        queue = get_pending_requests(now=NOW + timedelta(minutes=2))
        assert [r.id for r in queue] == [first.id, second.id]
        assert short.id not in [r.id for r in queue]

    def test_filters(self, cashier):
        create_override_request({"override_type": "void_item", "shift_id": 1, "register_id": 1}, cashier.id, now=NOW)
        other = create_override_request(
            {"override_type": "void_item", "shift_id": 2, "register_id": 4}, cashier.id, now=NOW,
        )

        assert [r.id for r in get_pending_requests(shift_id=2, now=NOW)] == [other.id]
        assert [r.id for r in get_pending_requests(register_id=4, now=NOW)] == [other.id]
        assert len(get_pending_requests(limit=1, now=NOW)) == 1

    def test_lookup_by_code(self, pending):
        assert get_request_by_code(pending.request_code).id == pending.id
        # Prefix optional, case-insensitive
        bare = pending.request_code[len("OVR-"):].lower()
        assert get_request_by_code(bare).id == pending.id

    def test_unknown_request(self, db_session):
        with pytest.raises(NotFoundError):
            get_request(12345)
        with pytest.raises(NotFoundError):
            get_request_by_code("OVR-ZZZZZZ")


# =============================================================================
# RESOLVE
# =============================================================================


class TestResolveRequest:

    def test_approve(self, pending, manager, origin):
        result = resolve_request(pending.id, MANAGER_PIN, True, client=origin, now=NOW + timedelta(minutes=1))

        assert result["approved"] is True
        assert result["status"] == "approved"
        assert result["manager_id"] == manager.id

        request = get_request(pending.id)
        assert request.status == "approved"
        assert request.resolved_by == manager.id
        assert request.resolved_at == NOW + timedelta(minutes=1)

        logs = _request_logs(pending.id)
        assert len(logs) == 1
        assert logs[0].id == result["log_id"]
        assert logs[0].was_approved is True
        assert logs[0].verification_method == "remote"
        assert logs[0].reason == "Damaged packaging"
        assert logs[0].shift_id == 3

    def test_deny(self, pending, manager, origin):
        result = resolve_request(pending.id, MANAGER_PIN, False, "Not eligible", client=origin, now=NOW)

        assert result["approved"] is False
        assert result["status"] == "denied"
        request = get_request(pending.id)
        assert request.status == "denied"
        assert request.resolution_reason == "Not eligible"

        entry = _request_logs(pending.id)[0]
        assert entry.was_approved is False
        assert entry.approved_by == manager.id
        assert entry.denial_reason == "Not eligible"

    def test_second_resolution_conflicts(self, pending, manager, admin, origin):
        resolve_request(pending.id, MANAGER_PIN, True, client=origin, now=NOW)

        with pytest.raises(ConflictError):
            resolve_request(pending.id, ADMIN_PIN, False, client=origin, now=NOW)

        request = get_request(pending.id)
        assert request.status == "approved"
        assert request.resolved_by == manager.id

        logs = _request_logs(pending.id)
        assert [log.was_approved for log in logs] == [True, False]
        assert logs[1].denial_reason == "Override request already approved"

    def test_stale_read_loses_the_swap(self, pending, manager, admin, origin, monkeypatch):
        from override_authority.models import ManagerPin

        resolve_request(pending.id, MANAGER_PIN, True, client=origin, now=NOW)

        # A resolver that read the request while it was still pending
        monkeypatch.setattr(request_service, "_conflict_message", lambda request, now: None)

        with pytest.raises(ConflictError) as excinfo:
            resolve_request(pending.id, ADMIN_PIN, True, client=origin, now=NOW)
        assert excinfo.value.message == "Override request is no longer pending"

        request = get_request(pending.id)
        assert request.status == "approved"
        assert request.resolved_by == manager.id

        logs = _request_logs(pending.id)
        assert [log.was_approved for log in logs] == [True, False]
        assert logs[1].approved_by == admin.id
        assert logs[1].denial_reason == "Override request is no longer pending"

        admin_pin = db.session.query(ManagerPin).filter_by(user_id=admin.id, is_active=True).one()
        assert admin_pin.override_count_today == 0
        assert admin_pin.last_override_date is None

    def test_wrong_pin_leaves_pending(self, pending, manager, origin):
        with pytest.raises(UnauthorizedError):
            resolve_request(pending.id, "9153", True, client=origin, now=NOW)

        assert get_request(pending.id).status == "pending"
        assert len(_request_logs(pending.id)) == 1

        result = resolve_request(pending.id, MANAGER_PIN, True, client=origin, now=NOW)
        assert result["status"] == "approved"

    def test_tier_below_request_level(self, pending, shift_lead, origin):
        with pytest.raises(UnauthorizedError):
            resolve_request(pending.id, SHIFT_LEAD_PIN, True, client=origin, now=NOW)
        assert get_request(pending.id).status == "pending"

    def test_expired_request_conflicts(self, pending, manager, origin):
        later = NOW + timedelta(minutes=11)

        assert get_request(pending.id).to_dict(later)["status"] == "expired"
        with pytest.raises(ConflictError) as excinfo:
            resolve_request(pending.id, MANAGER_PIN, True, client=origin, now=later)
        assert "expired" in excinfo.value.message

        # Lazy: the stored row is untouched until the sweep
        assert get_request(pending.id).status == "pending"
        assert expire_stale_requests(later) == 1
        assert get_request(pending.id).status == "expired"
        assert expire_stale_requests(later) == 0

    def test_resolve_by_code(self, pending, manager, origin):
        result = resolve_request_by_code(pending.request_code, MANAGER_PIN, True, client=origin, now=NOW)
        assert result["request_id"] == pending.id
        assert get_request(pending.id).status == "approved"

    def test_approved_flag_required(self, pending, manager, origin):
        with pytest.raises(ValidationError):
            resolve_request(pending.id, MANAGER_PIN, None, client=origin, now=NOW)
        with pytest.raises(ValidationError):
            resolve_request(pending.id, "", True, client=origin, now=NOW)
        assert _request_logs(pending.id) == []

    def test_approval_consumes_daily_use_denial_does_not(self, cashier, origin):
        from override_authority.models import ManagerPin
        from override_authority.services import auth_service, credential_service

        user = auth_service.create_user(username="capped", password="Password123", role="manager")
        credential_service.set_manager_pin(user.id, "7264", "manager", max_daily_overrides=1)

        first = create_override_request({"override_type": "void_item"}, cashier.id, now=NOW)
        second = create_override_request({"override_type": "void_item"}, cashier.id, now=NOW)

        resolve_request(first.id, "7264", False, client=origin, now=NOW)
        resolve_request(second.id, "7264", True, client=origin, now=NOW)

        pin = db.session.query(ManagerPin).filter_by(user_id=user.id, is_active=True).one()
        assert pin.override_count_today == 1


# =============================================================================
# CANCEL
# =============================================================================


class TestCancelRequest:

    def test_requester_cancels(self, pending, cashier, origin):
        request = cancel_request(pending.id, cashier.id, "Customer left", client=origin, now=NOW)

        assert request.status == "cancelled"
        assert request.resolution_reason == "Customer left"
        entry = _request_logs(pending.id)[0]
        assert entry.verification_method == "manual"
        assert entry.was_approved is False
        assert entry.denial_reason == "Customer left"

    def test_only_requester_may_cancel(self, pending, manager):
        with pytest.raises(ForbiddenError):
            cancel_request(pending.id, manager.id, now=NOW)
        assert get_request(pending.id).status == "pending"

    def test_cannot_cancel_resolved(self, pending, cashier, manager, origin):
        resolve_request(pending.id, MANAGER_PIN, True, client=origin, now=NOW)
        with pytest.raises(ConflictError):
            cancel_request(pending.id, cashier.id, now=NOW)
        assert get_request(pending.id).status == "approved"
