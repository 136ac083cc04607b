"""Tests for exactly-once activation of verified payments."""

import threading

import pytest
from conftest import active_member_count, reload_group

from ajo.errors import UnknownReferenceError, VerificationPendingError
from ajo.models import (
    Contribution, GroupMembership, GroupStatus, MembershipStatus, PaymentRecord, PaymentStatus, Transaction,
)
from ajo.services.activation_service import ActivationOutcome, ActivationService, RejectionReason
from ajo.services.paystack_client import VerificationStatus

REF = "AJO-REF-0001"


def _record(db, reference=REF) -> PaymentRecord:
    db.expire_all()
    return db.query(PaymentRecord).filter(PaymentRecord.reference == reference).one()


def _membership(db, group, user_id="user-a") -> GroupMembership:
    db.expire_all()
    return db.query(GroupMembership).filter(
        GroupMembership.group_id == group.id, GroupMembership.user_id == user_id,
    ).first()


class TestMembershipActivation:
    def test_join_payment_activates_preferred_slot(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group, preferred_slot=3)
        gateway.confirm(REF, amount=550000)

        result = activation.activate(REF)

        assert result.outcome == ActivationOutcome.ACTIVATED
        assert result.rotation_position == 3
        member = _membership(db, group)
        assert member.status == MembershipStatus.ACTIVE
        assert member.rotation_position == 3
        assert member.has_paid_deposit is True
        assert member.payment_reference == REF
        assert reload_group(db, group.id).current_member_count == 1

        record = _record(db)
        assert record.verified is True
        assert record.status == PaymentStatus.SUCCESS
        assert record.channel == "card"
        assert record.fees == 150

        contribution = db.query(Contribution).filter(Contribution.group_id == group.id).one()
        assert contribution.cycle_number == 1
        assert contribution.status == "paid"
        assert db.query(Transaction).filter(Transaction.reference == REF).count() == 1

    def test_second_activation_is_a_no_op(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group, preferred_slot=3)
        gateway.confirm(REF, amount=550000)

        first = activation.activate(REF)
        second = activation.activate(REF)

        assert first.outcome == ActivationOutcome.ACTIVATED
        assert second.outcome == ActivationOutcome.ALREADY_ACTIVE
        assert second.rotation_position == 3
        assert reload_group(db, group.id).current_member_count == 1
        assert db.query(Transaction).filter(Transaction.reference == REF).count() == 1
        # Already verified, so the second call does not go back to the gateway.
        assert gateway.calls == [REF]

    def test_taken_preferred_slot_falls_back_to_lowest_free(
        self, db, activation, gateway, make_group, make_member, make_payment,
    ):
        group = make_group(capacity=5)
        make_member(group, "user-x", slot=1)
        make_member(group, "user-y", slot=3)
        make_payment(group, preferred_slot=3)
        gateway.confirm(REF, amount=550000)

        result = activation.activate(REF)

        assert result.outcome == ActivationOutcome.ACTIVATED
        assert result.rotation_position == 2
        assert reload_group(db, group.id).current_member_count == 3

    def test_pending_join_request_becomes_active(self, db, activation, gateway, make_group, make_member, make_payment):
        group = make_group(capacity=3)
        make_member(group, "user-a", status=MembershipStatus.PENDING.value, has_paid_deposit=False)
        make_payment(group)
        gateway.confirm(REF, amount=550000)

        result = activation.activate(REF)

        assert result.outcome == ActivationOutcome.ACTIVATED
        assert result.rotation_position == 1
        assert _membership(db, group).status == MembershipStatus.ACTIVE
        assert db.query(GroupMembership).filter(GroupMembership.group_id == group.id).count() == 1

    def test_join_request_slot_is_used_when_payment_names_none(
        self, db, activation, gateway, make_group, make_member, make_payment
    ):
        group = make_group(capacity=4)
        make_member(group, "user-a", status=MembershipStatus.PENDING.value, has_paid_deposit=False, preferred_slot=3)
        make_payment(group)
        gateway.confirm(REF, amount=550000)

        result = activation.activate(REF)

        assert result.rotation_position == 3
        assert _membership(db, group).rotation_position == 3

    def test_payment_slot_wins_over_join_request_slot(
        self, db, activation, gateway, make_group, make_member, make_payment
    ):
        group = make_group(capacity=4)
        make_member(group, "user-a", status=MembershipStatus.PENDING.value, has_paid_deposit=False, preferred_slot=3)
        make_payment(group, preferred_slot=2)
        gateway.confirm(REF, amount=550000)

        assert activation.activate(REF).rotation_position == 2

    def test_creator_payment_activates_creator(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=4, created_by="user-a")
        make_payment(group, payment_type="group_creation", preferred_slot=1)
        gateway.confirm(REF, amount=550000)

        result = activation.activate(REF)

        assert result.outcome == ActivationOutcome.ACTIVATED
        assert result.rotation_position == 1

    def test_creation_payment_from_non_creator_is_rejected(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=4, created_by="someone-else")
        make_payment(group, payment_type="group_creation")
        gateway.confirm(REF, amount=550000)

        result = activation.activate(REF)

        assert result.reason == RejectionReason.NOT_GROUP_CREATOR
        assert _membership(db, group) is None

    def test_filling_last_slot_starts_the_group(self, db, activation, gateway, make_group, make_member, make_payment):
        group = make_group(capacity=2)
        make_member(group, "user-x", slot=1)
        make_payment(group)
        gateway.confirm(REF, amount=550000)

        result = activation.activate(REF)

        assert result.rotation_position == 2
        refreshed = reload_group(db, group.id)
        assert refreshed.current_member_count == 2
        assert refreshed.status == GroupStatus.ACTIVE


class TestActivationRejections:
    def test_full_group_rejects_without_creating_membership(
        self, db, activation, gateway, make_group, make_member, make_payment,
    ):
        group = make_group(capacity=2)
        make_member(group, "user-x", slot=1)
        make_member(group, "user-y", slot=2)
        make_payment(group)
        gateway.confirm(REF, amount=550000)

        result = activation.activate(REF)

        assert result.outcome == ActivationOutcome.REJECTED
        assert result.reason == RejectionReason.GROUP_FULL
        assert _membership(db, group) is None
        assert reload_group(db, group.id).current_member_count == 2
        # The money moved, so the verification itself is kept.
        assert _record(db).verified is True

    def test_underpayment_stays_rejected_when_processed_again(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group)
        gateway.confirm(REF, amount=1000)

        first = activation.activate(REF)
        second = activation.activate(REF)

        assert first.reason == RejectionReason.AMOUNT_INSUFFICIENT
        assert second.outcome == ActivationOutcome.REJECTED
        assert second.reason == RejectionReason.AMOUNT_INSUFFICIENT
        assert _membership(db, group) is None
        assert reload_group(db, group.id).current_member_count == 0
        record = _record(db)
        assert record.verified is True
        assert record.paid_amount == 1000
        # The stored verification is reused, not re-fetched.
        assert gateway.calls == [REF]

    def test_underpayment_is_rejected(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group)
        gateway.confirm(REF, amount=1000)

        result = activation.activate(REF)

        assert result.reason == RejectionReason.AMOUNT_INSUFFICIENT
        assert _membership(db, group) is None
        assert reload_group(db, group.id).current_member_count == 0

    def test_rejected_join_request_is_not_activated(self, db, activation, gateway, make_group, make_member, make_payment):
        group = make_group(capacity=5)
        make_member(group, "user-a", status=MembershipStatus.REJECTED.value, has_paid_deposit=False)
        make_payment(group)
        gateway.confirm(REF, amount=550000)

        result = activation.activate(REF)

        assert result.reason == RejectionReason.MEMBERSHIP_REJECTED
        assert _membership(db, group).status == MembershipStatus.REJECTED
        assert reload_group(db, group.id).current_member_count == 0

    def test_closed_group_is_rejected(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5, status=GroupStatus.PAUSED.value)
        make_payment(group)
        gateway.confirm(REF, amount=550000)

        assert activation.activate(REF).reason == RejectionReason.GROUP_CLOSED

    def test_tampered_metadata_is_rejected_before_gateway_call(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group, metadata={
            "app": "smart-ajo", "user_id": "user-b", "purpose": "group_join", "entity_id": group.id,
        })

        result = activation.activate(REF)

        assert result.reason == RejectionReason.INVALID_METADATA
        assert gateway.calls == []

    def test_unknown_fields_in_metadata_are_rejected(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group, metadata={
            "app": "smart-ajo", "user_id": "user-a", "purpose": "group_join",
            "entity_id": group.id, "card_number": "4084084084084081",
        })

        assert activation.activate(REF).reason == RejectionReason.INVALID_METADATA

    def test_unknown_reference(self, activation):
        with pytest.raises(UnknownReferenceError):
            activation.activate("AJO-DOES-NOT-EXIST")


class TestGatewayAuthority:
    def test_unconfirmed_payment_stays_unverified(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group)
        gateway.set_status(REF, VerificationStatus.PENDING, "Transaction is ongoing")

        with pytest.raises(VerificationPendingError) as excinfo:
            activation.activate(REF)

        assert excinfo.value.verification_status == "pending"
        record = _record(db)
        assert record.verified is False
        assert record.status == PaymentStatus.PENDING
        assert _membership(db, group) is None

    def test_gateway_outage_is_retryable_not_failed(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group)
        gateway.set_status(REF, VerificationStatus.GATEWAY_ERROR, "Payment gateway unavailable")

        with pytest.raises(VerificationPendingError) as excinfo:
            activation.activate(REF)

        assert excinfo.value.retryable is True
        assert _record(db).status == PaymentStatus.PENDING

    def test_declined_payment_is_marked_failed_for_good(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group)
        gateway.set_status(REF, VerificationStatus.DECLINED, "Declined")

        first = activation.activate(REF)
        gateway.confirm(REF, amount=550000)
        second = activation.activate(REF)

        assert first.reason == RejectionReason.PAYMENT_DECLINED
        assert second.reason == RejectionReason.ALREADY_REJECTED
        record = _record(db)
        assert record.status == PaymentStatus.FAILED
        assert record.verified is False
        assert _membership(db, group) is None

    def test_mismatched_verification_is_not_trusted(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group)
        gateway.confirm("AJO-OTHER-REF", amount=550000)
        gateway.set_status(REF, VerificationStatus.NOT_FOUND)

        with pytest.raises(VerificationPendingError):
            activation.activate(REF, gateway.responses["AJO-OTHER-REF"])

        assert gateway.calls == [REF]
        assert _record(db).verified is False


class TestFailureReports:
    def test_confirmed_decline_marks_failed(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group)
        gateway.set_status(REF, VerificationStatus.DECLINED, "Insufficient funds")

        result = activation.record_failure(REF)

        assert result.reason == RejectionReason.PAYMENT_DECLINED
        assert _record(db).status == PaymentStatus.FAILED

    def test_stale_failure_report_activates_confirmed_payment(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group)
        gateway.confirm(REF, amount=550000)

        result = activation.record_failure(REF)

        assert result.outcome == ActivationOutcome.ACTIVATED
        assert _record(db).status == PaymentStatus.SUCCESS

    def test_failure_report_for_settled_payment_is_ignored(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group)
        gateway.confirm(REF, amount=550000)
        activation.activate(REF)

        assert activation.record_failure(REF) is None
        assert _record(db).status == PaymentStatus.SUCCESS


class TestOtherPaymentTypes:
    def test_contribution_is_recorded_once(self, db, activation, gateway, make_group, make_member, make_payment):
        group = make_group(capacity=5)
        make_member(group, "user-a", slot=1)
        make_payment(group, payment_type="contribution", amount=500000, cycle_number=2)
        gateway.confirm(REF, amount=500000)

        first = activation.activate(REF)
        second = activation.activate(REF)

        assert first.outcome == ActivationOutcome.RECORDED
        assert second.outcome == ActivationOutcome.ALREADY_RECORDED
        paid = db.query(Contribution).filter(Contribution.cycle_number == 2).all()
        assert len(paid) == 1
        assert paid[0].transaction_ref == REF

    def test_contribution_from_non_member_is_rejected(self, db, activation, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group, payment_type="contribution", amount=500000, cycle_number=1)
        gateway.confirm(REF, amount=500000)

        assert activation.activate(REF).reason == RejectionReason.NOT_A_MEMBER

    def test_security_deposit_is_recorded_once(self, db, activation, gateway, make_group, make_member, make_payment):
        group = make_group(capacity=5)
        make_member(group, "user-a", slot=4, has_paid_deposit=False)
        make_payment(group, payment_type="security_deposit", amount=50000)
        gateway.confirm(REF, amount=50000)

        first = activation.activate(REF)
        second = activation.activate(REF)

        assert first.outcome == ActivationOutcome.RECORDED
        assert first.rotation_position == 4
        assert second.outcome == ActivationOutcome.ALREADY_RECORDED
        assert _membership(db, group).has_paid_deposit is True
        assert db.query(Transaction).filter(Transaction.reference == REF).count() == 1


class TestConcurrentActivation:
    def test_other_path_finishing_first_is_reported_not_repeated(
        self, db, activation, gateway, make_group, make_payment,
    ):
        group = make_group(capacity=5)
        make_payment(group, preferred_slot=2)
        gateway.confirm(REF, amount=550000)
        # While this call waits on the gateway, the webhook path activates the payment.
        gateway.on_verify = lambda reference: activation.activate(reference)

        result = activation.activate(REF)

        assert result.outcome == ActivationOutcome.ALREADY_ACTIVE
        assert result.rotation_position == 2
        assert reload_group(db, group.id).current_member_count == 1
        assert active_member_count(db, group.id) == 1

    def test_slot_collision_retries_with_fresh_slot(
        self, db, activation, gateway, make_group, make_member, make_payment, monkeypatch,
    ):
        group = make_group(capacity=5)
        make_member(group, "user-x", slot=1)
        make_payment(group, preferred_slot=2)
        gateway.confirm(REF, amount=550000)

        choose_slot = ActivationService._choose_slot
        picks = iter([1])

        def stale_then_real(session, grp, preferred):
            # First pick simulates a slot claimed after it was read as free.
            return next(picks, None) or choose_slot(session, grp, preferred)

        monkeypatch.setattr(ActivationService, "_choose_slot", staticmethod(stale_then_real))

        result = activation.activate(REF)

        assert result.outcome == ActivationOutcome.ACTIVATED
        assert result.rotation_position == 2
        assert reload_group(db, group.id).current_member_count == 2
        assert active_member_count(db, group.id) == 2

    def test_simultaneous_confirmations_activate_once(self, db, service_context, gateway, make_group, make_payment):
        group = make_group(capacity=5)
        make_payment(group, preferred_slot=4)
        gateway.confirm(REF, amount=550000)

        barrier = threading.Barrier(2)
        results, errors = [], []

        def confirm_path():
            service = ActivationService(service_context, gateway, max_attempts=3)
            barrier.wait()
            try:
                results.append(service.activate(REF))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=confirm_path) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["activated", "already_active"]
        assert {r.rotation_position for r in results} == {4}
        assert reload_group(db, group.id).current_member_count == 1
        assert active_member_count(db, group.id) == 1
        assert db.query(Transaction).filter(Transaction.reference == REF).count() == 1

    def test_member_count_matches_active_members(
        self, db, service_context, gateway, make_group, make_payment,
    ):
        group = make_group(capacity=3)
        users = ["user-1", "user-2", "user-3", "user-4"]
        for index, user in enumerate(users):
            make_payment(group, user_id=user, reference=f"AJO-REF-10{index}", preferred_slot=1)
            gateway.confirm(f"AJO-REF-10{index}", amount=550000)

        barrier = threading.Barrier(len(users))
        results, errors = [], []

        def confirm_path(reference):
            service = ActivationService(service_context, gateway, max_attempts=5)
            barrier.wait()
            try:
                results.append(service.activate(reference))
            except Exception as exc:
                errors.append(exc)

        threads = [
            threading.Thread(target=confirm_path, args=(f"AJO-REF-10{i}",)) for i in range(len(users))
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        activated = [r for r in results if r.outcome == ActivationOutcome.ACTIVATED]
        rejected = [r for r in results if r.outcome == ActivationOutcome.REJECTED]
        assert len(activated) == 3
        assert len(rejected) == 1
        assert rejected[0].reason in (RejectionReason.GROUP_FULL, RejectionReason.SLOT_UNAVAILABLE)
        assert sorted(r.rotation_position for r in activated) == [1, 2, 3]

        refreshed = reload_group(db, group.id)
        assert refreshed.current_member_count == active_member_count(db, group.id) == 3
        assert refreshed.status == GroupStatus.ACTIVE
