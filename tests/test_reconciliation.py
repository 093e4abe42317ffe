"""Reconciliation service: ledger conservation, idempotent confirmation, stale intents."""

import json
import re
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, func, select

from conftest import sign, sign_body
from learnpay.common.errors import (
    AlreadyEnrolled,
    AmountExceedsDue,
    ConcurrentUpdate,
    FreeCourse,
    GatewayUnavailable,
    IntentFailed,
    IntentNotFound,
    InvalidAmount,
    InvalidChannel,
    MalformedEvent,
    NotFound,
    NotOwner,
    NothingDue,
    RoleForbidden,
    SelfEnrollmentForbidden,
    SignatureInvalid,
    StaleIntent,
)
from learnpay.services.enrollment.models import CourseLearner, LearnerCourse
from learnpay.services.reconciliation.models import LedgerEntry, Obligation, OutboxEvent, PaymentIntent
from learnpay.services.reconciliation.receipts import PdfReceiptRenderer
from learnpay.services.reconciliation.service import COURSE_PURCHASE, ReconciliationService


def load_intent(session_factory, remote_order_id):
    with session_factory() as db:
        return db.execute(select(PaymentIntent).where(PaymentIntent.remote_order_id == remote_order_id)).scalar_one()


def ledger_rows(session_factory, obligation_id):
    with session_factory() as db:
        return db.execute(select(LedgerEntry).where(LedgerEntry.obligation_id == obligation_id)).scalars().all()


def assert_conserved(service, session_factory, obligation_id):
    view = service.get_obligation(obligation_id)
    entries = ledger_rows(session_factory, obligation_id)
    assert sum(entry.amount_minor for entry in entries) == view.amount_paid_minor
    assert view.amount_paid_minor + view.due_amount_minor == view.total_amount_minor
    return view


def test_apply_payment_appends_ledger_and_rederives(service, session_factory, seed):
    obligation_id = seed.obligation(total_minor=1000)

    view = service.apply_payment(obligation_id, 300, "cash", "counter-1", recorded_by="admin-1")
    assert view.status == "partial"
    view = service.apply_payment(obligation_id, 200, "upi", "upi-ref", recorded_by="admin-1", note="second")

    assert (view.amount_paid_minor, view.due_amount_minor) == (500, 500)
    assert assert_conserved(service, session_factory, obligation_id).status == "partial"
    ledger = service.list_ledger(obligation_id)
    assert [entry.channel for entry in ledger] == ["cash", "upi"]
    assert all(re.fullmatch(r"LRN-RCP-\d{8}-[0-9A-F]{6}", entry.receipt_number) for entry in ledger)
    assert ledger[0].recorded_by == "admin-1"


def test_final_payment_marks_paid_and_caches_status(service, session_factory, seed):
    obligation_id = seed.obligation(total_minor=1000)

    view = service.apply_payment(obligation_id, 1000, "card", "", recorded_by="admin-1")

    assert view.status == "paid"
    with session_factory() as db:
        row = db.get(Obligation, obligation_id)
        assert (row.status, row.due_amount_minor, row.state_version) == ("paid", 0, 1)


def test_overpayment_rejected_without_side_effects(service, session_factory, seed):
    obligation_id = seed.obligation(total_minor=1000)
    service.apply_payment(obligation_id, 400, "cash", "", recorded_by="admin-1")

    with pytest.raises(AmountExceedsDue):
        service.apply_payment(obligation_id, 601, "cash", "", recorded_by="admin-1")

    view = assert_conserved(service, session_factory, obligation_id)
    assert view.amount_paid_minor == 400
    assert len(ledger_rows(session_factory, obligation_id)) == 1


@pytest.mark.parametrize("amount", [0, -50])
def test_non_positive_amount_rejected(service, seed, amount):
    obligation_id = seed.obligation()

    with pytest.raises(InvalidAmount):
        service.apply_payment(obligation_id, amount, "cash", "", recorded_by="admin-1")


def test_unknown_channel_rejected(service, seed):
    obligation_id = seed.obligation()

    with pytest.raises(InvalidChannel):
        service.apply_payment(obligation_id, 100, "barter", "", recorded_by="admin-1")


def test_stale_writer_loses_optimistic_guard(service, session_factory, seed):
    """Two writers that read the same due amount cannot both succeed."""

    obligation_id = seed.obligation(total_minor=1000)
    with session_factory() as db:
        stale = db.get(Obligation, obligation_id)
        service.apply_payment(obligation_id, 600, "cash", "", recorded_by="admin-1")
        with pytest.raises(ConcurrentUpdate):
            service._apply_payment(db, stale, 600, "cash", "", recorded_by="admin-2")
        db.rollback()

    view = assert_conserved(service, session_factory, obligation_id)
    assert view.amount_paid_minor == 600


def test_lost_race_is_retried_against_fresh_state(service, session_factory, seed, monkeypatch):
    obligation_id = seed.obligation(total_minor=1000)
    original = service._apply_payment
    raced = []

    def racing_apply(db, obligation, amount_minor, *args, **kwargs):
        if not raced:
            raced.append(True)
            service.apply_payment(obligation.obligation_id, 200, "cash", "", recorded_by="admin-2")
        return original(db, obligation, amount_minor, *args, **kwargs)

    monkeypatch.setattr(service, "_apply_payment", racing_apply)
    view = service.apply_payment(obligation_id, 300, "upi", "", recorded_by="admin-1")

    assert view.amount_paid_minor == 500
    assert len(ledger_rows(session_factory, obligation_id)) == 2
    assert_conserved(service, session_factory, obligation_id)


def test_payment_emits_outbox_event(service, session_factory, seed):
    obligation_id = seed.obligation(total_minor=1000)

    service.apply_payment(obligation_id, 250, "cash", "", recorded_by="admin-1")

    with session_factory() as db:
        event = db.execute(select(OutboxEvent).where(OutboxEvent.aggregate_id == obligation_id)).scalar_one()
    assert event.event_type == "payments.applied"
    assert event.status == "PENDING"
    assert event.payload["payload"]["amount_minor"] == 250


@pytest.mark.asyncio
async def test_online_payment_end_to_end(service, session_factory, seed, gateway):
    obligation_id = seed.obligation(total_minor=1000)

    intent = await service.create_payment_intent(obligation_id)
    assert (intent.remote_order_id, intent.amount_minor, intent.status) == ("ro_1", 1000, "created")

    confirmation = service.verify_and_apply_online_payment("ro_1", "pay_1", sign("ro_1", "pay_1"), obligation_id)

    assert confirmation.replayed is False
    assert confirmation.obligation.status == "paid"
    ledger = service.list_ledger(obligation_id)
    assert [(entry.amount_minor, entry.channel, entry.recorded_by) for entry in ledger] == [(1000, "online", "gateway")]
    assert ledger[0].remote_payment_id == "pay_1"
    stored = load_intent(session_factory, "ro_1")
    assert (stored.status, stored.remote_payment_id) == ("paid", "pay_1")


@pytest.mark.asyncio
async def test_replayed_confirmation_applies_once(service, session_factory, seed):
    obligation_id = seed.obligation(total_minor=1000)
    await service.create_payment_intent(obligation_id)
    signature = sign("ro_1", "pay_1")
    first = service.verify_and_apply_online_payment("ro_1", "pay_1", signature)

    second = service.verify_and_apply_online_payment("ro_1", "pay_1", signature)

    assert second.replayed is True
    assert second.obligation == first.obligation
    assert len(ledger_rows(session_factory, obligation_id)) == 1


@pytest.mark.asyncio
async def test_fully_paid_obligation_has_nothing_due(service, seed):
    obligation_id = seed.obligation(total_minor=1000)
    service.apply_payment(obligation_id, 1000, "cash", "", recorded_by="admin-1")

    with pytest.raises(NothingDue):
        await service.create_payment_intent(obligation_id)


@pytest.mark.asyncio
async def test_offline_payment_makes_open_intent_stale(service, session_factory, seed):
    obligation_id = seed.obligation(total_minor=1000)
    await service.create_payment_intent(obligation_id)
    service.apply_payment(obligation_id, 600, "cash", "", recorded_by="admin-1")

    with pytest.raises(StaleIntent):
        service.verify_and_apply_online_payment("ro_1", "pay_1", sign("ro_1", "pay_1"))

    stored = load_intent(session_factory, "ro_1")
    assert (stored.status, stored.failure_reason) == ("failed", "due amount changed")
    view = assert_conserved(service, session_factory, obligation_id)
    assert (view.amount_paid_minor, view.due_amount_minor) == (600, 400)


@pytest.mark.asyncio
async def test_invalid_signature_fails_intent_terminally(service, session_factory, seed):
    obligation_id = seed.obligation(total_minor=1000)
    await service.create_payment_intent(obligation_id)

    with pytest.raises(SignatureInvalid):
        service.verify_and_apply_online_payment("ro_1", "pay_1", "0" * 64)
    assert load_intent(session_factory, "ro_1").failure_reason == "invalid signature"

    with pytest.raises(IntentFailed):
        service.verify_and_apply_online_payment("ro_1", "pay_1", sign("ro_1", "pay_1"))
    assert service.get_obligation(obligation_id).amount_paid_minor == 0


@pytest.mark.asyncio
async def test_unknown_or_mismatched_intent_not_found(service, seed):
    obligation_id = seed.obligation()
    other_id = seed.obligation()
    await service.create_payment_intent(obligation_id)

    with pytest.raises(IntentNotFound):
        service.verify_and_apply_online_payment("ro_missing", "pay_1", sign("ro_missing", "pay_1"))
    with pytest.raises(IntentNotFound):
        service.verify_and_apply_online_payment("ro_1", "pay_1", sign("ro_1", "pay_1"), obligation_id=other_id)


@pytest.mark.asyncio
async def test_partial_intent_and_limits(service, seed):
    obligation_id = seed.obligation(total_minor=1000, learner_id="learner-1")

    intent = await service.create_payment_intent(obligation_id, 400, learner_id="learner-1")
    assert intent.amount_minor == 400
    with pytest.raises(AmountExceedsDue):
        await service.create_payment_intent(obligation_id, 1001)
    with pytest.raises(NotOwner):
        await service.create_payment_intent(obligation_id, learner_id="someone-else")
    # Creating an intent never touches the obligation.
    assert service.get_obligation(obligation_id).amount_paid_minor == 0


@pytest.mark.asyncio
async def test_gateway_outage_persists_nothing(service, session_factory, seed, gateway):
    obligation_id = seed.obligation()
    gateway.unavailable = True

    with pytest.raises(GatewayUnavailable):
        await service.create_payment_intent(obligation_id)

    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(PaymentIntent)).scalar_one() == 0


def webhook_body(event="payment.captured", order_id="ro_1", payment_id="pay_w1"):
    return json.dumps(
        {"event": event, "payload": {"payment": {"entity": {"id": payment_id, "order_id": order_id}}}}
    ).encode("utf-8")


@pytest.mark.asyncio
async def test_webhook_settles_intent_once(service, session_factory, seed):
    obligation_id = seed.obligation(total_minor=1000)
    await service.create_payment_intent(obligation_id)
    body = webhook_body()

    first = service.apply_gateway_webhook(body, sign_body(body))
    again = service.apply_gateway_webhook(body, sign_body(body))
    checkout = service.verify_and_apply_online_payment("ro_1", "pay_w1", sign("ro_1", "pay_w1"))

    assert first.replayed is False and first.obligation.status == "paid"
    assert again.replayed is True
    assert checkout.replayed is True
    assert len(ledger_rows(session_factory, obligation_id)) == 1


def test_webhook_rejects_bad_signature_and_bodies(service):
    body = webhook_body()
    with pytest.raises(SignatureInvalid):
        service.apply_gateway_webhook(body, "deadbeef")

    garbage = b"not json"
    with pytest.raises(MalformedEvent):
        service.apply_gateway_webhook(garbage, sign_body(garbage))

    ignored = webhook_body(event="refund.created")
    assert service.apply_gateway_webhook(ignored, sign_body(ignored)) is None


@pytest.mark.asyncio
async def test_course_purchase_grants_enrollment(service, seed):
    learner_id = seed.learner()
    course_id = seed.course(price_minor=1000)

    intent = await service.start_course_purchase(learner_id, course_id)
    confirmation = service.verify_and_apply_online_payment(
        intent.remote_order_id, "pay_1", sign(intent.remote_order_id, "pay_1")
    )

    assert confirmation.obligation.kind == COURSE_PURCHASE
    assert confirmation.enrollment.granted_now is True
    assert service.enrollment.learners.find_by_id(learner_id).enrolled_course_ids == [course_id]
    assert service.enrollment.courses.find_by_id(course_id).enrolled_learner_ids == [learner_id]
    with pytest.raises(AlreadyEnrolled):
        await service.start_course_purchase(learner_id, course_id)


@pytest.mark.asyncio
async def test_course_purchase_reuses_open_obligation(service, seed):
    learner_id = seed.learner()
    course_id = seed.course(price_minor=1000)

    first = await service.start_course_purchase(learner_id, course_id)
    second = await service.start_course_purchase(learner_id, course_id)

    assert first.obligation_id == second.obligation_id
    assert (first.remote_order_id, second.remote_order_id) == ("ro_1", "ro_2")


@pytest.mark.asyncio
async def test_course_purchase_eligibility(service, seed):
    seed.learner("learner-1")
    seed.learner("mentor-1", role="instructor")
    seed.learner("creator-1")
    seed.course("course-1", creator_id="creator-1", price_minor=1000)
    seed.course("free-1", creator_id="creator-1", price_minor=0)

    with pytest.raises(FreeCourse):
        await service.start_course_purchase("learner-1", "free-1")
    with pytest.raises(SelfEnrollmentForbidden):
        await service.start_course_purchase("creator-1", "course-1")
    with pytest.raises(RoleForbidden):
        await service.start_course_purchase("mentor-1", "course-1")


@pytest.mark.asyncio
async def test_replay_heals_one_sided_enrollment(service, session_factory, seed):
    learner_id = seed.learner()
    course_id = seed.course()
    intent = await service.start_course_purchase(learner_id, course_id)
    signature = sign(intent.remote_order_id, "pay_1")
    service.verify_and_apply_online_payment(intent.remote_order_id, "pay_1", signature)
    with session_factory() as db:
        db.execute(delete(CourseLearner))
        db.commit()

    replay = service.verify_and_apply_online_payment(intent.remote_order_id, "pay_1", signature)

    assert replay.replayed is True
    assert replay.enrollment.granted_now is True
    assert service.enrollment.courses.find_by_id(course_id).enrolled_learner_ids == [learner_id]


@pytest.mark.asyncio
async def test_enrollment_failure_does_not_roll_back_payment(service, session_factory, seed):
    learner_id = seed.learner("mentor-1", role="instructor")
    course_id = seed.course()
    obligation_id = seed.obligation(total_minor=1000, learner_id=learner_id, kind=COURSE_PURCHASE, course_id=course_id)
    await service.create_payment_intent(obligation_id)

    confirmation = service.verify_and_apply_online_payment("ro_1", "pay_1", sign("ro_1", "pay_1"))

    assert confirmation.obligation.status == "paid"
    assert confirmation.enrollment.error
    assert len(ledger_rows(session_factory, obligation_id)) == 1


def test_reconciliation_report_flags_inconsistencies(service, session_factory, seed):
    healthy = seed.obligation(total_minor=1000)
    service.apply_payment(healthy, 300, "cash", "", recorded_by="admin-1")
    stale = seed.obligation(total_minor=500, due_date=datetime.now(timezone.utc) - timedelta(days=2))
    with session_factory() as db:
        db.add(
            Obligation(
                obligation_id="no-ledger",
                kind="fee_installment",
                learner_id="learner-1",
                total_amount_minor=1000,
                amount_paid_minor=500,
                due_amount_minor=500,
                status="partial",
                currency="INR",
            )
        )
        db.commit()

    report = service.reconciliation_report()

    issues = {row["obligation_id"]: row["issues"] for row in report["inconsistent_obligations"]}
    assert report["obligations_checked"] == 3
    assert healthy not in issues
    assert issues[stale] == ["stale_status"]
    assert issues["no-ledger"] == ["ledger_mismatch"]


def test_repair_grants_paid_purchases_and_heals_links(service, session_factory, seed):
    learner_id = seed.learner()
    seed.course("course-1")
    seed.course("course-2")
    with session_factory() as db:
        db.add(
            Obligation(
                obligation_id="paid-purchase",
                kind=COURSE_PURCHASE,
                learner_id=learner_id,
                course_id="course-1",
                total_amount_minor=1000,
                amount_paid_minor=1000,
                due_amount_minor=0,
                status="paid",
                currency="INR",
            )
        )
        db.add(LearnerCourse(learner_id=learner_id, course_id="course-2"))
        db.commit()

    result = service.repair_enrollments()

    assert result == {"healed_links": 1, "granted_purchases": 1, "errors": []}
    assert sorted(service.enrollment.learners.find_by_id(learner_id).enrolled_course_ids) == ["course-1", "course-2"]
    assert service.enrollment.find_one_sided_links() == []


@pytest.mark.asyncio
async def test_checkout_loses_claim_to_concurrent_webhook(service, session_factory, seed, monkeypatch):
    """The webhook settles the intent after checkout read it; checkout must replay, not apply twice."""

    obligation_id = seed.obligation(total_minor=1000)
    await service.create_payment_intent(obligation_id)
    original = service._load_obligation
    raced = []

    def racing_load(db, obligation_id):
        obligation = original(db, obligation_id)
        if not raced:
            raced.append(True)
            body = webhook_body(payment_id="pay_1")
            assert service.apply_gateway_webhook(body, sign_body(body)).replayed is False
        return obligation

    monkeypatch.setattr(service, "_load_obligation", racing_load)
    confirmation = service.verify_and_apply_online_payment("ro_1", "pay_1", sign("ro_1", "pay_1"))

    assert raced == [True]
    assert confirmation.replayed is True
    assert confirmation.obligation.status == "paid"
    assert len(ledger_rows(session_factory, obligation_id)) == 1
    assert_conserved(service, session_factory, obligation_id)
    assert load_intent(session_factory, "ro_1").signature is None


@pytest.mark.asyncio
async def test_replayed_course_confirmation_reports_existing_enrollment(service, seed):
    learner_id = seed.learner()
    course_id = seed.course()
    intent = await service.start_course_purchase(learner_id, course_id)
    signature = sign(intent.remote_order_id, "pay_1")

    first = service.verify_and_apply_online_payment(intent.remote_order_id, "pay_1", signature)
    second = service.verify_and_apply_online_payment(intent.remote_order_id, "pay_1", signature)

    assert second.obligation == first.obligation
    assert (first.enrollment.granted_now, first.enrollment.already_granted) == (True, False)
    assert (second.enrollment.granted_now, second.enrollment.already_granted) == (False, True)


class TextReceipts:
    media_type = "text/plain"

    def render(self, obligation, entry):
        return f"{entry.receipt_number}|{obligation.obligation_id}|{entry.amount_minor}".encode()


@pytest.fixture
def text_receipts(session_factory, gateway):
    return ReconciliationService(session_factory, gateway, receipt_renderer=TextReceipts())


def test_render_receipt_for_owner_only(text_receipts, seed):
    obligation_id = seed.obligation(total_minor=1000)
    other_id = seed.obligation(total_minor=500)
    text_receipts.apply_payment(obligation_id, 400, "cash", "counter-1", recorded_by="admin-1")
    entry = text_receipts.list_ledger(obligation_id)[0]

    receipt = text_receipts.render_receipt(obligation_id, entry.entry_id, learner_id="learner-1")
    as_admin = text_receipts.render_receipt(obligation_id, entry.entry_id)

    assert receipt.media_type == "text/plain"
    assert receipt.receipt_number == entry.receipt_number
    assert receipt.content == f"{entry.receipt_number}|{obligation_id}|400".encode()
    assert as_admin.content == receipt.content
    with pytest.raises(NotOwner):
        text_receipts.render_receipt(obligation_id, entry.entry_id, learner_id="learner-2")
    with pytest.raises(NotFound):
        text_receipts.render_receipt(other_id, entry.entry_id)
    with pytest.raises(NotFound):
        text_receipts.render_receipt(obligation_id, "missing")


def test_list_receipts_covers_only_the_learners_payments(text_receipts, seed):
    mine = seed.obligation(total_minor=1000)
    theirs = seed.obligation(total_minor=1000, learner_id="learner-2")
    text_receipts.apply_payment(mine, 300, "cash", "", recorded_by="admin-1")
    text_receipts.apply_payment(mine, 200, "upi", "", recorded_by="admin-1")
    text_receipts.apply_payment(theirs, 100, "cash", "", recorded_by="admin-1")

    receipts = text_receipts.list_receipts("learner-1")

    assert sorted(receipt.amount_minor for receipt in receipts) == [200, 300]
    assert {receipt.receipt_number for receipt in receipts} == {
        entry.receipt_number for entry in text_receipts.list_ledger(mine)
    }
    assert all(receipt.title == "Coaching Fee" and receipt.kind == "fee_installment" for receipt in receipts)
    assert text_receipts.list_receipts("learner-3") == []


def test_pdf_receipt_renderer_produces_pdf(service, seed):
    obligation_id = seed.obligation(total_minor=1000)
    service.apply_payment(obligation_id, 1000, "card", "txn-9", recorded_by="admin-1")
    entry = service.list_ledger(obligation_id)[0]

    content = PdfReceiptRenderer().render(service.get_obligation(obligation_id), entry)

    assert isinstance(service.receipts, PdfReceiptRenderer)
    assert content.startswith(b"%PDF")
