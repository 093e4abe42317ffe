"""Fee plans: one-time or monthly installment obligations created by admins."""

import calendar
import math
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import and_, case, func, or_, select

from learnpay.common.errors import AmountExceedsDue, InvalidAmount, NotFound, RoleForbidden
from learnpay.common.logging import logger
from learnpay.common.money import to_minor
from learnpay.common.state_machine import as_utc, derive_obligation_status
from learnpay.services.enrollment.service import ENROLLABLE_ROLES, EnrollmentResult, check_enrollment_eligibility
from learnpay.services.reconciliation.models import Obligation
from learnpay.services.reconciliation.schemas import (
    FeePlanCreated,
    FeePlanCreateRequest,
    FeeRecordsPage,
    FeeSummary,
    Pagination,
)
from learnpay.services.reconciliation.service import FEE_INSTALLMENT, ReconciliationService, obligation_view


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's end."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def split_installments(total_minor: int, count: int) -> list[int]:
    """Equal parts; the rounding remainder lands on the last installment."""

    if count < 1:
        raise InvalidAmount("a fee plan needs at least one installment")
    base = total_minor // count
    amounts = [base] * count
    amounts[-1] += total_minor - base * count
    return amounts


def derived_status_column(now: datetime):
    """SQL form of `derive_obligation_status` for filters and aggregates."""

    return case(
        (Obligation.amount_paid_minor >= Obligation.total_amount_minor, "paid"),
        (Obligation.amount_paid_minor > 0, "partial"),
        (and_(Obligation.due_date.is_not(None), Obligation.due_date < now), "overdue"),
        else_="pending",
    )


class FeePlanService:
    def __init__(
        self,
        session_factory,
        reconciliation: ReconciliationService,
        default_currency: str = "INR",
    ) -> None:
        self.session_factory = session_factory
        self.reconciliation = reconciliation
        self.default_currency = default_currency

    def create_fee_plan(self, req: FeePlanCreateRequest, created_by: str) -> FeePlanCreated:
        """Create the installment obligations for a fee plan.

        All checks run before the first write. The initial payment is spread
        over installments in order and goes through `apply_payment`, so it
        leaves ledger entries like any other manual payment.
        """

        enrollment = self.reconciliation.enrollment
        learner = enrollment.learners.find_by_id(req.learner_id)
        if learner is None:
            raise NotFound(f"learner {req.learner_id} not found")
        if learner.role not in ENROLLABLE_ROLES:
            raise RoleForbidden("fee plans can only be created for students")
        course = None
        if req.course_id:
            course = enrollment.courses.find_by_id(req.course_id)
            if course is None:
                raise NotFound(f"course {req.course_id} not found")

        currency = (req.currency or (course.currency if course else None) or self.default_currency).upper()
        total_minor = to_minor(req.total_fee, currency)
        discount_minor = to_minor(req.discount, currency)
        initial_minor = to_minor(req.initial_paid, currency)
        final_minor = total_minor - discount_minor
        if final_minor <= 0:
            raise InvalidAmount("final fee must be greater than zero")
        if initial_minor > final_minor:
            raise AmountExceedsDue("initial payment cannot exceed the final fee")
        if req.grant_portal_access and course is not None:
            check_enrollment_eligibility(learner, course)

        count = req.monthly_installments if req.plan_type == "monthly" else 1
        amounts = split_installments(final_minor, count)
        now = datetime.now(timezone.utc)
        base_due = as_utc(req.due_date) if req.due_date is not None else None
        title = req.title.strip() or "Coaching Fee"

        obligation_ids = []
        with self.session_factory() as db:
            for index, amount in enumerate(amounts):
                due_date = add_months(base_due, index) if base_due is not None else None
                obligation = Obligation(
                    obligation_id=str(uuid4()),
                    kind=FEE_INSTALLMENT,
                    learner_id=req.learner_id,
                    course_id=req.course_id,
                    title=f"{title} ({index + 1}/{count})" if count > 1 else title,
                    total_amount_minor=amount,
                    amount_paid_minor=0,
                    due_amount_minor=amount,
                    status=derive_obligation_status(amount, 0, due_date, now),
                    currency=currency,
                    due_date=due_date,
                    plan_type=req.plan_type,
                    installment_number=index + 1,
                    total_installments=count,
                    plan_total_minor=final_minor,
                    discount_minor=discount_minor,
                    center_name=req.center_name.strip(),
                    notes=req.notes.strip(),
                    created_by=created_by,
                    updated_by=created_by,
                )
                db.add(obligation)
                obligation_ids.append(obligation.obligation_id)
            db.commit()

        remaining = initial_minor
        for obligation_id, amount in zip(obligation_ids, amounts):
            if remaining <= 0:
                break
            portion = min(remaining, amount)
            self.reconciliation.apply_payment(
                obligation_id,
                portion,
                req.payment_channel,
                req.payment_reference,
                recorded_by=created_by,
                note="Initial payment",
            )
            remaining -= portion

        portal_access = EnrollmentResult()
        if req.grant_portal_access and course is not None:
            portal_access = enrollment.ensure_enrollment(req.learner_id, course.course_id)

        logger.info(
            "fee_plan_created learner_id=%s installments=%s final_minor=%s initial_minor=%s",
            req.learner_id,
            count,
            final_minor,
            initial_minor,
        )
        return FeePlanCreated(
            created_count=len(obligation_ids),
            obligations=[self.reconciliation.get_obligation(obligation_id) for obligation_id in obligation_ids],
            portal_access=portal_access,
        )

    def list_fee_records(
        self,
        learner_id: str | None = None,
        status: str | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> FeeRecordsPage:
        """One page of fee installments plus a summary over every match.

        Status is re-derived in SQL with `derived_status_column`; the cached
        `status` column is never used for filtering or counting.
        """

        page = max(1, page)
        limit = min(max(1, limit), 100)
        now = datetime.now(timezone.utc)
        derived = derived_status_column(now)
        filters = [Obligation.kind == FEE_INSTALLMENT]
        if learner_id:
            filters.append(Obligation.learner_id == learner_id)
        if search:
            pattern = f"%{search.strip()}%"
            filters.append(
                or_(
                    Obligation.title.ilike(pattern),
                    Obligation.center_name.ilike(pattern),
                    Obligation.notes.ilike(pattern),
                    Obligation.learner_id.ilike(pattern),
                )
            )
        if status:
            filters.append(derived == status)

        matches = select(
            Obligation.total_amount_minor,
            Obligation.amount_paid_minor,
            derived.label("derived_status"),
        ).where(*filters).subquery()
        summary_query = select(
            matches.c.derived_status,
            func.count(),
            func.coalesce(func.sum(matches.c.total_amount_minor), 0),
            func.coalesce(func.sum(matches.c.amount_paid_minor), 0),
        ).group_by(matches.c.derived_status)
        page_query = (
            select(Obligation)
            .where(*filters)
            .order_by(Obligation.created_at.desc(), Obligation.installment_number, Obligation.obligation_id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        with self.session_factory() as db:
            groups = db.execute(summary_query).all()
            obligations = db.execute(page_query).scalars().all()

        summary = FeeSummary()
        total_records = 0
        for derived_status, count, total_minor, paid_minor in groups:
            total_records += count
            summary.total_final_fee_minor += int(total_minor)
            summary.total_paid_minor += int(paid_minor)
            summary.total_due_minor += int(total_minor) - int(paid_minor)
            field = f"{derived_status}_count"
            setattr(summary, field, getattr(summary, field) + count)

        return FeeRecordsPage(
            records=[obligation_view(obligation, now) for obligation in obligations],
            summary=summary,
            pagination=Pagination(
                page=page,
                total_pages=max(1, math.ceil(total_records / limit)),
                total_records=total_records,
            ),
        )
