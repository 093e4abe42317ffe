"""Payment reconciliation logic.

Owns every mutation of obligation amounts. Manual payments, verified checkout
confirmations and gateway webhooks all funnel into `_apply_payment`, which
updates the obligation under an optimistic guard and appends the ledger entry
in the same transaction.
"""

import asyncio
import json
import secrets
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.attributes import set_committed_value

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
    LearnPayError,
    MalformedEvent,
    NotFound,
    NotOwner,
    NothingDue,
    SignatureInvalid,
    StaleIntent,
)
from learnpay.common.events import EventEnvelope, KafkaBus
from learnpay.common.logging import logger, obligation_id_ctx, remote_order_id_ctx
from learnpay.common.metrics import (
    duplicate_confirmations_total,
    obligation_update_conflicts_total,
    payment_amount_applied_minor_total,
    payment_confirmations_total,
    payment_intents_created_total,
    payments_applied_total,
)
from learnpay.common.outbox import (
    claim_outbox_batch,
    enqueue_event,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from learnpay.common.state_machine import derive_obligation_status, due_amount, validate_transition
from learnpay.services.enrollment.models import CourseLearner, LearnerCourse
from learnpay.services.enrollment.service import (
    EnrollmentResult,
    EnrollmentSynchronizer,
    check_enrollment_eligibility,
)
from learnpay.services.reconciliation.models import LedgerEntry, Obligation, OutboxEvent, PaymentIntent
from learnpay.services.reconciliation.receipts import PdfReceiptRenderer, ReceiptRenderer
from learnpay.services.reconciliation.schemas import (
    PAYMENT_CHANNELS,
    Confirmation,
    IntentView,
    LedgerEntryView,
    ObligationDetail,
    ObligationView,
    ReceiptSummary,
    RenderedReceipt,
)


COURSE_PURCHASE = "course_purchase"
FEE_INSTALLMENT = "fee_installment"
GATEWAY_RECORDER = "gateway"
WEBHOOK_PAYMENT_EVENTS = frozenset({"payment.captured", "order.paid"})


def new_receipt_number(now: datetime) -> str:
    return f"LRN-RCP-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


def obligation_view(obligation: Obligation, now: datetime | None = None) -> ObligationView:
    """Build a view from amounts, ignoring the cached status columns."""

    now = now or datetime.now(timezone.utc)
    total = obligation.total_amount_minor
    paid = obligation.amount_paid_minor
    return ObligationView(
        obligation_id=obligation.obligation_id,
        kind=obligation.kind,
        learner_id=obligation.learner_id,
        course_id=obligation.course_id,
        title=obligation.title,
        currency=obligation.currency,
        total_amount_minor=total,
        amount_paid_minor=paid,
        due_amount_minor=due_amount(total, paid),
        status=derive_obligation_status(total, paid, obligation.due_date, now),
        due_date=obligation.due_date,
        plan_type=obligation.plan_type,
        installment_number=obligation.installment_number,
        total_installments=obligation.total_installments,
    )


def intent_view(intent: PaymentIntent) -> IntentView:
    return IntentView(
        intent_id=intent.intent_id,
        obligation_id=intent.obligation_id,
        remote_order_id=intent.remote_order_id,
        amount_minor=intent.amount_minor,
        currency=intent.currency,
        status=intent.status,
        failure_reason=intent.failure_reason,
    )


def ledger_entry_view(entry: LedgerEntry, currency: str) -> LedgerEntryView:
    return LedgerEntryView(
        entry_id=entry.entry_id,
        obligation_id=entry.obligation_id,
        amount_minor=entry.amount_minor,
        currency=currency,
        channel=entry.channel,
        reference=entry.reference,
        note=entry.note,
        remote_order_id=entry.remote_order_id,
        remote_payment_id=entry.remote_payment_id,
        recorded_by=entry.recorded_by,
        receipt_number=entry.receipt_number,
        created_at=entry.created_at,
    )


class ReconciliationService:
    """Sole writer of obligation amounts, ledger entries and payment intents."""

    def __init__(
        self,
        session_factory,
        gateway,
        synchronizer: EnrollmentSynchronizer | None = None,
        service_name: str = "reconciliation",
        update_retries: int = 3,
        receipt_renderer: ReceiptRenderer | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.receipts = receipt_renderer or PdfReceiptRenderer()
        self.enrollment = synchronizer or EnrollmentSynchronizer(session_factory, service_name=service_name)
        self.kafka = KafkaBus()
        self.service_name = service_name
        self.update_retries = max(1, update_retries)

    def _load_obligation(self, db, obligation_id: str) -> Obligation:
        obligation = db.get(Obligation, obligation_id)
        if obligation is None:
            raise NotFound(f"obligation {obligation_id} not found")
        return obligation

    def _find_intent(self, db, remote_order_id: str) -> PaymentIntent:
        intent = db.execute(
            select(PaymentIntent).where(PaymentIntent.remote_order_id == remote_order_id)
        ).scalar_one_or_none()
        if intent is None:
            raise IntentNotFound(f"payment intent {remote_order_id} not found")
        return intent

    def _apply_payment(
        self,
        db,
        obligation: Obligation,
        amount_minor: int,
        channel: str,
        reference: str,
        recorded_by: str,
        note: str = "",
        remote_order_id: str | None = None,
        remote_payment_id: str | None = None,
    ) -> LedgerEntry:
        """Stage one payment inside the caller's transaction.

        The obligation write is guarded by `(state_version, amount_paid_minor)`
        so two writers that read the same due amount cannot both succeed. On a
        lost race this raises `ConcurrentUpdate` and the caller must roll back.
        """

        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            raise InvalidAmount("payment amount must be greater than zero")
        if channel not in PAYMENT_CHANNELS:
            raise InvalidChannel(f"unknown payment channel {channel!r}")
        current_due = due_amount(obligation.total_amount_minor, obligation.amount_paid_minor)
        if amount_minor > current_due:
            raise AmountExceedsDue(f"amount {amount_minor} exceeds due amount {current_due}")

        now = datetime.now(timezone.utc)
        current_paid = obligation.amount_paid_minor
        current_version = obligation.state_version
        new_paid = current_paid + amount_minor
        new_due = due_amount(obligation.total_amount_minor, new_paid)
        new_status = derive_obligation_status(obligation.total_amount_minor, new_paid, obligation.due_date, now)

        result = db.execute(
            update(Obligation)
            .where(
                Obligation.obligation_id == obligation.obligation_id,
                Obligation.state_version == current_version,
                Obligation.amount_paid_minor == current_paid,
            )
            .values(
                amount_paid_minor=new_paid,
                due_amount_minor=new_due,
                status=new_status,
                state_version=current_version + 1,
                updated_at=now,
                updated_by=recorded_by,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            obligation_update_conflicts_total.labels(service=self.service_name).inc()
            raise ConcurrentUpdate(
                f"optimistic concurrency conflict for obligation {obligation.obligation_id} "
                f"(expected version {current_version})"
            )

        for key, value in (
            ("amount_paid_minor", new_paid),
            ("due_amount_minor", new_due),
            ("status", new_status),
            ("state_version", current_version + 1),
            ("updated_by", recorded_by),
        ):
            set_committed_value(obligation, key, value)

        entry = LedgerEntry(
            entry_id=str(uuid4()),
            obligation_id=obligation.obligation_id,
            amount_minor=amount_minor,
            channel=channel,
            reference=(reference or "").strip(),
            note=(note or "").strip(),
            remote_order_id=remote_order_id,
            remote_payment_id=remote_payment_id,
            recorded_by=recorded_by,
            receipt_number=new_receipt_number(now),
            created_at=now,
        )
        db.add(entry)
        enqueue_event(
            db,
            OutboxEvent,
            aggregate_type="obligation",
            aggregate_id=obligation.obligation_id,
            event_type="payments.applied",
            payload={
                "entry_id": entry.entry_id,
                "receipt_number": entry.receipt_number,
                "learner_id": obligation.learner_id,
                "kind": obligation.kind,
                "amount_minor": amount_minor,
                "currency": obligation.currency,
                "channel": channel,
                "amount_paid_minor": new_paid,
                "due_amount_minor": new_due,
                "status": new_status,
            },
        )
        return entry

    def _record_applied(self, entry: LedgerEntry, currency: str) -> None:
        payments_applied_total.labels(service=self.service_name, channel=entry.channel).inc()
        payment_amount_applied_minor_total.labels(service=self.service_name, currency=currency).inc(
            entry.amount_minor
        )
        logger.info(
            "payment_applied obligation_id=%s entry_id=%s amount_minor=%s channel=%s recorded_by=%s",
            entry.obligation_id,
            entry.entry_id,
            entry.amount_minor,
            entry.channel,
            entry.recorded_by,
        )

    def apply_payment(
        self,
        obligation_id: str,
        amount_minor: int,
        channel: str,
        reference: str,
        recorded_by: str,
        note: str = "",
    ) -> ObligationView:
        """Apply a payment (typically a manual offline one) and return the new view."""

        obligation_id_ctx.set(obligation_id)
        for attempt in range(1, self.update_retries + 1):
            with self.session_factory() as db:
                obligation = self._load_obligation(db, obligation_id)
                try:
                    entry = self._apply_payment(db, obligation, amount_minor, channel, reference, recorded_by, note)
                except ConcurrentUpdate:
                    db.rollback()
                    if attempt == self.update_retries:
                        raise
                    logger.warning("obligation_update_retry obligation_id=%s attempt=%s", obligation_id, attempt)
                    continue
                db.commit()
                self._record_applied(entry, obligation.currency)
                return obligation_view(obligation)
        raise ConcurrentUpdate(f"could not apply payment to obligation {obligation_id}")

    async def create_payment_intent(
        self,
        obligation_id: str,
        requested_amount_minor: int | None = None,
        learner_id: str | None = None,
    ) -> IntentView:
        """Create a remote gateway order for (part of) the due amount.

        Nothing is persisted unless the gateway call succeeds, and no session
        is held open across it.
        """

        obligation_id_ctx.set(obligation_id)
        with self.session_factory() as db:
            obligation = self._load_obligation(db, obligation_id)
            if learner_id is not None and obligation.learner_id != learner_id:
                raise NotOwner("you can only pay your own obligations")
            current_due = due_amount(obligation.total_amount_minor, obligation.amount_paid_minor)
            currency = obligation.currency
            owner_id = obligation.learner_id
            kind = obligation.kind

        if current_due <= 0:
            raise NothingDue("nothing is due on this obligation")
        amount = requested_amount_minor if requested_amount_minor and requested_amount_minor > 0 else current_due
        if amount > current_due:
            raise AmountExceedsDue(f"amount {amount} exceeds due amount {current_due}")

        remote = await self.gateway.create_remote_order(
            amount,
            currency,
            idempotency_key=f"obl-{obligation_id[-8:]}-{uuid4().hex[:12]}",
        )
        if remote.amount_minor != amount:
            logger.error(
                "gateway_amount_mismatch remote_order_id=%s requested=%s acknowledged=%s",
                remote.remote_order_id,
                amount,
                remote.amount_minor,
            )
            raise GatewayUnavailable("gateway acknowledged a different amount")

        remote_order_id_ctx.set(remote.remote_order_id)
        with self.session_factory() as db:
            intent = PaymentIntent(
                intent_id=str(uuid4()),
                obligation_id=obligation_id,
                learner_id=owner_id,
                amount_minor=amount,
                currency=remote.currency,
                remote_order_id=remote.remote_order_id,
                status="created",
            )
            db.add(intent)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                logger.error("duplicate_remote_order_id remote_order_id=%s", remote.remote_order_id)
                raise GatewayUnavailable("gateway returned an order id that is already in use") from exc

        payment_intents_created_total.labels(service=self.service_name, kind=kind).inc()
        logger.info(
            "payment_intent_created obligation_id=%s remote_order_id=%s amount_minor=%s",
            obligation_id,
            remote.remote_order_id,
            amount,
        )
        return intent_view(intent)

    async def start_course_purchase(self, learner_id: str, course_id: str) -> IntentView:
        """Open (or reuse) a course-purchase obligation and create its intent."""

        learner = self.enrollment.learners.find_by_id(learner_id)
        if learner is None:
            raise NotFound(f"learner {learner_id} not found")
        course = self.enrollment.courses.find_by_id(course_id)
        if course is None:
            raise NotFound(f"course {course_id} not found")
        if course.price_minor <= 0:
            raise FreeCourse("this course is free; enroll directly without payment")
        check_enrollment_eligibility(learner, course)
        if course_id in learner.enrolled_course_ids and learner_id in course.enrolled_learner_ids:
            raise AlreadyEnrolled("you are already enrolled in this course")

        with self.session_factory() as db:
            purchases = db.execute(
                select(Obligation)
                .where(
                    Obligation.kind == COURSE_PURCHASE,
                    Obligation.learner_id == learner_id,
                    Obligation.course_id == course_id,
                )
                .order_by(Obligation.created_at.desc())
            ).scalars().all()
            paid = next((o for o in purchases if o.amount_paid_minor >= o.total_amount_minor), None)
            open_purchase = next((o for o in purchases if o.amount_paid_minor < o.total_amount_minor), None)
            if paid is None and open_purchase is None:
                now = datetime.now(timezone.utc)
                open_purchase = Obligation(
                    obligation_id=str(uuid4()),
                    kind=COURSE_PURCHASE,
                    learner_id=learner_id,
                    course_id=course_id,
                    title=course.title,
                    total_amount_minor=course.price_minor,
                    amount_paid_minor=0,
                    due_amount_minor=course.price_minor,
                    status=derive_obligation_status(course.price_minor, 0, None, now),
                    currency=course.currency,
                    created_by=learner_id,
                    updated_by=learner_id,
                )
                db.add(open_purchase)
                db.commit()
                logger.info(
                    "course_purchase_opened obligation_id=%s learner_id=%s course_id=%s",
                    open_purchase.obligation_id,
                    learner_id,
                    course_id,
                )

        if paid is not None:
            # Paid earlier but the link is incomplete: restore it instead of charging again.
            self._sync_course_enrollment(obligation_view(paid))
            raise AlreadyEnrolled("this course is already paid for; enrollment has been restored")
        return await self.create_payment_intent(open_purchase.obligation_id, None, learner_id)

    def _mark_intent_failed(
        self,
        remote_order_id: str,
        reason: str,
        remote_payment_id: str | None = None,
        signature: str | None = None,
    ) -> None:
        """Best-effort `created -> failed` transition for audit."""

        validate_transition("created", "failed")
        try:
            with self.session_factory() as db:
                result = db.execute(
                    update(PaymentIntent)
                    .where(PaymentIntent.remote_order_id == remote_order_id, PaymentIntent.status == "created")
                    .values(
                        status="failed",
                        failure_reason=reason,
                        remote_payment_id=remote_payment_id,
                        signature=signature,
                        resolved_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    enqueue_event(
                        db,
                        OutboxEvent,
                        aggregate_type="payment_intent",
                        aggregate_id=remote_order_id,
                        event_type="intents.failed",
                        payload={"remote_order_id": remote_order_id, "reason": reason},
                    )
                db.commit()
        except SQLAlchemyError:
            logger.exception("intent_mark_failed_error remote_order_id=%s reason=%s", remote_order_id, reason)
            return
        logger.warning("payment_intent_failed remote_order_id=%s reason=%s", remote_order_id, reason)

    def _sync_course_enrollment(self, view: ObligationView) -> EnrollmentResult | None:
        """Grant the enrollment for a paid course purchase; failures are reported, not raised."""

        if view.kind != COURSE_PURCHASE or view.status != "paid" or not view.course_id:
            return None
        try:
            learner = self.enrollment.learners.find_by_id(view.learner_id)
            course = self.enrollment.courses.find_by_id(view.course_id)
            if learner is None or course is None:
                raise NotFound("learner or course no longer exists")
            check_enrollment_eligibility(learner, course)
            result = self.enrollment.ensure_enrollment(view.learner_id, view.course_id)
            if result.granted_now:
                with self.session_factory() as db:
                    enqueue_event(
                        db,
                        OutboxEvent,
                        aggregate_type="enrollment",
                        aggregate_id=view.obligation_id,
                        event_type="enrollment.granted",
                        payload={"learner_id": view.learner_id, "course_id": view.course_id},
                    )
                    db.commit()
            return result
        except LearnPayError as exc:
            logger.error(
                "enrollment_sync_failed obligation_id=%s learner_id=%s course_id=%s error=%s",
                view.obligation_id,
                view.learner_id,
                view.course_id,
                exc.message,
            )
            return EnrollmentResult(error=exc.message)
        except SQLAlchemyError:
            logger.exception("enrollment_sync_error obligation_id=%s", view.obligation_id)
            return EnrollmentResult(error="enrollment could not be recorded; it will be repaired")

    def _resolve_closed_intent(self, intent: PaymentIntent, source: str) -> Confirmation:
        """Answer for an intent that already left `created`."""

        if intent.status == "paid":
            duplicate_confirmations_total.labels(service=self.service_name, source=source).inc()
            payment_confirmations_total.labels(service=self.service_name, outcome="replayed").inc()
            logger.info("duplicate confirmation skipped remote_order_id=%s source=%s", intent.remote_order_id, source)
            view = self.get_obligation(intent.obligation_id)
            return Confirmation(
                status="paid",
                replayed=True,
                obligation=view,
                enrollment=self._sync_course_enrollment(view),
            )
        payment_confirmations_total.labels(service=self.service_name, outcome="intent_failed").inc()
        raise IntentFailed(f"payment intent {intent.remote_order_id} already failed: {intent.failure_reason}")

    def _settle_intent(
        self,
        remote_order_id: str,
        remote_payment_id: str,
        signature: str | None,
        source: str,
    ) -> Confirmation:
        """Claim the intent, re-check the due amount and apply the payment atomically."""

        for attempt in range(1, self.update_retries + 1):
            closed = None
            stale_due = None
            with self.session_factory() as db:
                intent = self._find_intent(db, remote_order_id)
                if intent.status != "created":
                    closed = intent
                else:
                    obligation = self._load_obligation(db, intent.obligation_id)
                    current_due = due_amount(obligation.total_amount_minor, obligation.amount_paid_minor)
                    if intent.amount_minor > current_due:
                        stale_due = current_due
                    else:
                        validate_transition(intent.status, "paid")
                        claimed = db.execute(
                            update(PaymentIntent)
                            .where(PaymentIntent.intent_id == intent.intent_id, PaymentIntent.status == "created")
                            .values(
                                status="paid",
                                remote_payment_id=remote_payment_id,
                                signature=signature,
                                resolved_at=datetime.now(timezone.utc),
                            )
                            .execution_options(synchronize_session=False)
                        )
                        if claimed.rowcount != 1:
                            db.rollback()
                            continue
                        try:
                            entry = self._apply_payment(
                                db,
                                obligation,
                                intent.amount_minor,
                                "online",
                                reference=remote_payment_id,
                                recorded_by=GATEWAY_RECORDER,
                                note=f"Online payment via gateway ({source})",
                                remote_order_id=remote_order_id,
                                remote_payment_id=remote_payment_id,
                            )
                        except ConcurrentUpdate:
                            db.rollback()
                            logger.warning("intent_settle_retry remote_order_id=%s attempt=%s", remote_order_id, attempt)
                            continue
                        db.commit()
                        self._record_applied(entry, obligation.currency)
                        payment_confirmations_total.labels(service=self.service_name, outcome="applied").inc()
                        view = obligation_view(obligation)
                        return Confirmation(
                            status="paid",
                            replayed=False,
                            obligation=view,
                            enrollment=self._sync_course_enrollment(view),
                        )

            if closed is not None:
                return self._resolve_closed_intent(closed, source)
            self._mark_intent_failed(remote_order_id, "due amount changed", remote_payment_id, signature)
            payment_confirmations_total.labels(service=self.service_name, outcome="stale").inc()
            raise StaleIntent(
                f"intent amount {intent.amount_minor} no longer fits the due amount {stale_due}"
            )
        raise ConcurrentUpdate(f"could not settle payment intent {remote_order_id}")

    def verify_and_apply_online_payment(
        self,
        remote_order_id: str,
        remote_payment_id: str,
        signature: str,
        obligation_id: str | None = None,
    ) -> Confirmation:
        """Verify a checkout confirmation and apply it exactly once."""

        remote_order_id_ctx.set(remote_order_id)
        with self.session_factory() as db:
            intent = self._find_intent(db, remote_order_id)
            if obligation_id is not None and intent.obligation_id != obligation_id:
                raise IntentNotFound(f"payment intent {remote_order_id} not found for obligation {obligation_id}")
        obligation_id_ctx.set(intent.obligation_id)

        if intent.status != "created":
            return self._resolve_closed_intent(intent, "confirm")
        if not self.gateway.verify_signature(remote_order_id, remote_payment_id, signature):
            self._mark_intent_failed(remote_order_id, "invalid signature", remote_payment_id, signature)
            payment_confirmations_total.labels(service=self.service_name, outcome="signature_invalid").inc()
            raise SignatureInvalid("payment signature verification failed")
        return self._settle_intent(remote_order_id, remote_payment_id, signature, source="confirm")

    def apply_gateway_webhook(self, body: bytes, signature: str | None) -> Confirmation | None:
        """Apply a signed gateway webhook; events other than captures are ignored."""

        if not self.gateway.verify_webhook_signature(body, signature):
            payment_confirmations_total.labels(service=self.service_name, outcome="signature_invalid").inc()
            raise SignatureInvalid("webhook signature verification failed")
        try:
            event = json.loads(body)
            event_type = event["event"]
            payload = event.get("payload") or {}
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise MalformedEvent("webhook body is not a gateway event") from exc
        if event_type not in WEBHOOK_PAYMENT_EVENTS:
            logger.info("webhook_ignored event=%s", event_type)
            return None

        payment = (payload.get("payment") or {}).get("entity") or {}
        order = (payload.get("order") or {}).get("entity") or {}
        remote_order_id = payment.get("order_id") or order.get("id")
        remote_payment_id = payment.get("id")
        if not remote_order_id or not remote_payment_id:
            raise MalformedEvent(f"webhook {event_type} is missing order or payment id")

        remote_order_id_ctx.set(remote_order_id)
        with self.session_factory() as db:
            intent = self._find_intent(db, remote_order_id)
        obligation_id_ctx.set(intent.obligation_id)
        if intent.status != "created":
            return self._resolve_closed_intent(intent, "webhook")
        return self._settle_intent(remote_order_id, remote_payment_id, None, source="webhook")

    def get_obligation(self, obligation_id: str) -> ObligationView:
        with self.session_factory() as db:
            return obligation_view(self._load_obligation(db, obligation_id))

    def list_ledger(self, obligation_id: str) -> list[LedgerEntryView]:
        """Ledger entries of one obligation, oldest first."""

        return self.obligation_detail(obligation_id).ledger

    def obligation_detail(self, obligation_id: str) -> ObligationDetail:
        with self.session_factory() as db:
            obligation = self._load_obligation(db, obligation_id)
            entries = db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.obligation_id == obligation_id)
                .order_by(LedgerEntry.created_at, LedgerEntry.receipt_number)
            ).scalars().all()
            return ObligationDetail(
                obligation=obligation_view(obligation),
                ledger=[ledger_entry_view(entry, obligation.currency) for entry in entries],
            )

    def render_receipt(self, obligation_id: str, entry_id: str, learner_id: str | None = None) -> RenderedReceipt:
        """Render the receipt for one ledger entry; learners may only fetch their own."""

        with self.session_factory() as db:
            obligation = self._load_obligation(db, obligation_id)
            if learner_id is not None and obligation.learner_id != learner_id:
                raise NotOwner("you can only download receipts for your own payments")
            entry = db.get(LedgerEntry, entry_id)
            if entry is None or entry.obligation_id != obligation_id:
                raise NotFound(f"receipt {entry_id} not found for obligation {obligation_id}")
            view = obligation_view(obligation)
            entry_view = ledger_entry_view(entry, obligation.currency)
        content = self.receipts.render(view, entry_view)
        logger.info("receipt_rendered obligation_id=%s receipt_number=%s", obligation_id, entry_view.receipt_number)
        return RenderedReceipt(
            receipt_number=entry_view.receipt_number,
            media_type=self.receipts.media_type,
            content=content,
        )

    def list_receipts(self, learner_id: str, limit: int = 100) -> list[ReceiptSummary]:
        """Every ledger entry paid towards the learner's obligations, newest first."""

        with self.session_factory() as db:
            rows = db.execute(
                select(LedgerEntry, Obligation)
                .join(Obligation, Obligation.obligation_id == LedgerEntry.obligation_id)
                .where(Obligation.learner_id == learner_id)
                .order_by(LedgerEntry.created_at.desc(), LedgerEntry.receipt_number)
                .limit(limit)
            ).all()
        return [
            ReceiptSummary(
                **ledger_entry_view(entry, obligation.currency).model_dump(exclude={"amount"}),
                kind=obligation.kind,
                title=obligation.title,
                course_id=obligation.course_id,
            )
            for entry, obligation in rows
        ]

    def reconciliation_report(self, limit: int = 1000) -> dict:
        """Check ledger conservation and cache consistency across obligations."""

        now = datetime.now(timezone.utc)
        with self.session_factory() as db:
            rows = db.execute(
                select(
                    Obligation,
                    func.coalesce(func.sum(LedgerEntry.amount_minor), 0).label("ledger_total"),
                    func.count(LedgerEntry.entry_id).label("entry_count"),
                )
                .outerjoin(LedgerEntry, LedgerEntry.obligation_id == Obligation.obligation_id)
                .group_by(Obligation.obligation_id)
                .order_by(Obligation.obligation_id)
                .limit(limit)
            ).all()
        inconsistent = []
        for obligation, ledger_total, entry_count in rows:
            issues = []
            if int(ledger_total) != obligation.amount_paid_minor:
                issues.append("ledger_mismatch")
            if obligation.amount_paid_minor > obligation.total_amount_minor:
                issues.append("overpaid")
            if obligation.amount_paid_minor + obligation.due_amount_minor != obligation.total_amount_minor:
                issues.append("due_cache_mismatch")
            derived = derive_obligation_status(
                obligation.total_amount_minor, obligation.amount_paid_minor, obligation.due_date, now
            )
            if obligation.status != derived:
                issues.append("stale_status")
            if issues:
                inconsistent.append(
                    {
                        "obligation_id": obligation.obligation_id,
                        "issues": issues,
                        "ledger_total_minor": int(ledger_total),
                        "entry_count": int(entry_count),
                        "amount_paid_minor": obligation.amount_paid_minor,
                        "due_amount_minor": obligation.due_amount_minor,
                        "total_amount_minor": obligation.total_amount_minor,
                        "cached_status": obligation.status,
                        "derived_status": derived,
                    }
                )
        one_sided = self.enrollment.find_one_sided_links(limit=limit)
        return {
            "obligations_checked": len(rows),
            "inconsistent_count": len(inconsistent),
            "inconsistent_obligations": inconsistent,
            "one_sided_enrollments": [link.model_dump() for link in one_sided],
        }

    def repair_enrollments(self, limit: int = 1000) -> dict:
        """Heal one-sided links and grant missing enrollments for paid purchases."""

        healed = self.enrollment.heal_one_sided_links(limit=limit)
        with self.session_factory() as db:
            missing = db.execute(
                select(Obligation)
                .outerjoin(
                    LearnerCourse,
                    (LearnerCourse.learner_id == Obligation.learner_id)
                    & (LearnerCourse.course_id == Obligation.course_id),
                )
                .outerjoin(
                    CourseLearner,
                    (CourseLearner.learner_id == Obligation.learner_id)
                    & (CourseLearner.course_id == Obligation.course_id),
                )
                .where(
                    Obligation.kind == COURSE_PURCHASE,
                    Obligation.course_id.is_not(None),
                    Obligation.amount_paid_minor >= Obligation.total_amount_minor,
                    (LearnerCourse.learner_id.is_(None)) | (CourseLearner.course_id.is_(None)),
                )
                .limit(limit)
            ).scalars().all()
        granted = 0
        errors = []
        for obligation in missing:
            result = self._sync_course_enrollment(obligation_view(obligation))
            if result is None:
                continue
            if result.error:
                errors.append({"obligation_id": obligation.obligation_id, "error": result.error})
            elif result.granted_now:
                granted += 1
        logger.info("enrollment_repair healed_links=%s granted_purchases=%s errors=%s", len(healed), granted, len(errors))
        return {"healed_links": len(healed), "granted_purchases": granted, "errors": errors}

    async def outbox_publisher(self) -> None:
        """Continuously publish and ack pending outbox events."""

        while True:
            with self.session_factory() as db:
                rows = claim_outbox_batch(db, OutboxEvent, limit=100)
                update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                db.commit()
            for row in rows:
                try:
                    await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                    with self.session_factory() as db:
                        mark_outbox_sent(db, OutboxEvent, row["id"])
                        update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                        db.commit()
                except Exception as exc:
                    logger.exception("outbox publish failed: %s", exc)
                    with self.session_factory() as db:
                        requeue_outbox_event(db, OutboxEvent, row["id"])
                        update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                        db.commit()
            await asyncio.sleep(0.5)
