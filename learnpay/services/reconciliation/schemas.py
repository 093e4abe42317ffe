"""API request/response schemas for reconciliation endpoints.

Views carry integer minor units plus the display amounts derived from them;
requests accept display amounts and are converted at the route.
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, computed_field

from learnpay.common.money import to_major
from learnpay.services.enrollment.service import EnrollmentResult


PaymentChannel = Literal["cash", "card", "upi", "bank-transfer", "online", "other"]
PAYMENT_CHANNELS: frozenset[str] = frozenset({"cash", "card", "upi", "bank-transfer", "online", "other"})


class ObligationView(BaseModel):
    """Re-derived state of one obligation."""

    obligation_id: str
    kind: str
    learner_id: str
    course_id: str | None
    title: str
    currency: str
    total_amount_minor: int
    amount_paid_minor: int
    due_amount_minor: int
    status: str
    due_date: datetime | None
    plan_type: str | None = None
    installment_number: int = 1
    total_installments: int = 1

    @computed_field
    @property
    def total_amount(self) -> Decimal:
        return to_major(self.total_amount_minor, self.currency)

    @computed_field
    @property
    def amount_paid(self) -> Decimal:
        return to_major(self.amount_paid_minor, self.currency)

    @computed_field
    @property
    def due_amount(self) -> Decimal:
        return to_major(self.due_amount_minor, self.currency)


class LedgerEntryView(BaseModel):
    entry_id: str
    obligation_id: str
    amount_minor: int
    currency: str
    channel: str
    reference: str
    note: str
    remote_order_id: str | None
    remote_payment_id: str | None
    recorded_by: str
    receipt_number: str
    created_at: datetime | None

    @computed_field
    @property
    def amount(self) -> Decimal:
        return to_major(self.amount_minor, self.currency)


class IntentView(BaseModel):
    """Gateway payment intent as returned to the paying client."""

    intent_id: str
    obligation_id: str
    remote_order_id: str
    amount_minor: int
    currency: str
    status: str
    failure_reason: str | None = None

    @computed_field
    @property
    def amount(self) -> Decimal:
        return to_major(self.amount_minor, self.currency)


class Confirmation(BaseModel):
    """Result of confirming an online payment.

    `replayed` is True when the intent had already been paid and nothing new
    was applied. A replay carries the current obligation view, and for course
    purchases `enrollment` is the outcome of re-running the enrollment grant,
    so it reads `already_granted` where the first call read `granted_now`.
    """

    status: str
    replayed: bool
    obligation: ObligationView
    enrollment: EnrollmentResult | None = None


class ObligationDetail(BaseModel):
    obligation: ObligationView
    ledger: list[LedgerEntryView]


class PayableIntentRequest(BaseModel):
    obligation_id: str = Field(min_length=1)
    amount: Decimal | None = None


class PayableConfirmRequest(BaseModel):
    obligation_id: str = Field(min_length=1)
    remote_order_id: str = Field(min_length=1)
    remote_payment_id: str = Field(min_length=1)
    signature: str = Field(min_length=1)


class OfflinePaymentRequest(BaseModel):
    obligation_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    channel: PaymentChannel = "cash"
    reference: str = Field(default="", max_length=200)
    note: str = Field(default="", max_length=500)


class CoursePurchaseRequest(BaseModel):
    course_id: str = Field(min_length=1)


class FeePlanCreateRequest(BaseModel):
    """Admin payload for creating a one-time or monthly fee plan."""

    learner_id: str = Field(min_length=1)
    course_id: str | None = None
    title: str = Field(default="Coaching Fee", max_length=200)
    plan_type: Literal["one-time", "monthly"] = "one-time"
    monthly_installments: int = Field(default=1, ge=1, le=60)
    total_fee: Decimal = Field(gt=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    initial_paid: Decimal = Field(default=Decimal("0"), ge=0)
    due_date: datetime | None = None
    center_name: str = Field(default="", max_length=160)
    notes: str = Field(default="", max_length=1500)
    payment_channel: PaymentChannel = "cash"
    payment_reference: str = Field(default="", max_length=200)
    grant_portal_access: bool = False
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class FeePlanCreated(BaseModel):
    created_count: int
    obligations: list[ObligationView]
    portal_access: EnrollmentResult


class FeeSummary(BaseModel):
    total_final_fee_minor: int = 0
    total_paid_minor: int = 0
    total_due_minor: int = 0
    pending_count: int = 0
    partial_count: int = 0
    paid_count: int = 0
    overdue_count: int = 0


class Pagination(BaseModel):
    page: int
    total_pages: int
    total_records: int


class FeeRecordsPage(BaseModel):
    records: list[ObligationView]
    summary: FeeSummary
    pagination: Pagination


class ReceiptSummary(LedgerEntryView):
    """Ledger entry as listed under "my receipts", with the item it paid for."""

    kind: str
    title: str
    course_id: str | None


class RenderedReceipt(BaseModel):
    receipt_number: str
    media_type: str
    content: bytes
