import enum
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from app.timeutils import parse_erp_datetime

# ---------------------------------------------------------------------------
# Inbound ERP webhooks
# ---------------------------------------------------------------------------


class WebhookEventKind(str, enum.Enum):
    """Declared webhook kinds; the value is the route path segment."""

    POS_VERIFICATION = "pos-verification"
    POS_SESSION = "pos-session"
    POS_SESSION_CLOSE = "pos-session-close"
    EMPLOYEE_SHIFT = "employee-shift"
    ATTENDANCE = "attendance"
    DISCOUNT_ORDER = "discount-order"
    REFUND_ORDER = "refund-order"
    TOKEN_PAY_ORDER = "token-pay-order"
    NON_CASH_ORDER = "non-cash-order"
    ISPE_PURCHASE_ORDER = "ispe-purchase-order"
    REGISTER_CASH = "register-cash"


class ErpWebhookPayload(BaseModel):
    # The ERP adds its own bookkeeping keys (_action, _id, _model) to every record.
    action: str | None = Field(default=None, alias="_action")
    record_id: int | None = Field(default=None, alias="_id")
    record_model: str | None = Field(default=None, alias="_model")

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @property
    def is_delete(self) -> bool:
        return "delete" in (self.action or "").lower()

    def raw(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _check_erp_datetime(value: str) -> str:
    # The wire value is kept as sent; projection parses it again.
    try:
        parse_erp_datetime(value)
    except ValueError:
        raise ValueError(f"Invalid ERP datetime: {value!r}") from None
    return value


ErpDateTime = Annotated[str, AfterValidator(_check_erp_datetime)]


class PosVerificationPayload(ErpWebhookPayload):
    branch_id: int = Field(alias="branchId")
    transaction_id: str = Field(alias="transactionId", min_length=1)
    title: str
    description: str | None = None
    amount: float | None = None
    data: dict[str, Any] | None = None


class PosSessionPayload(ErpWebhookPayload):
    id: int | None = None
    name: str = Field(min_length=1)
    display_name: str | None = None
    company_id: int
    cash_register_balance_start: float | None = None
    cash_register_balance_end: float | None = None
    opening_notes: str | Literal[False] | None = None
    x_closing_pcf: float | None = None
    x_company_name: str | None = None


class ClosingOrderLine(BaseModel):
    order_id: int | None = None
    product_id: int | None = None
    product_name: str
    qty: float
    price_unit: float
    discount: float | None = None
    uom_name: str | None = None


class PaymentMethodTotal(BaseModel):
    payment_method_id: int | None = None
    payment_method_name: str
    amount: float


class StatementLine(BaseModel):
    amount: float
    payment_ref: str


class PosSessionClosePayload(PosSessionPayload):
    cash_register_balance_end_real: float | None = None
    cash_register_difference: float | None = None
    closing_notes: str | Literal[False] | None = None
    x_opening_pcf: float | None = None
    x_ispe_total: float | None = None
    x_pos_name: str | None = None
    x_discount_orders: list[ClosingOrderLine] = Field(default_factory=list)
    x_refund_orders: list[ClosingOrderLine] = Field(default_factory=list)
    x_payment_methods: list[PaymentMethodTotal] = Field(default_factory=list)
    x_statement_lines: list[StatementLine] = Field(default_factory=list)


class EmployeeShiftPayload(ErpWebhookPayload):
    id: int | None = None
    company_id: int
    start_datetime: ErpDateTime | None = None
    end_datetime: ErpDateTime | None = None
    x_employee_avatar: str | Literal[False] | None = None
    x_employee_contact_name: str | Literal[False] | None = None
    x_role_color: int | Literal[False] | None = None
    x_role_name: str | Literal[False] | None = None
    x_website_id: str | Literal[False] | None = None

    @model_validator(mode="after")
    def _validate_range(self) -> "EmployeeShiftPayload":
        if self.start_datetime and self.end_datetime:
            if parse_erp_datetime(self.end_datetime) <= parse_erp_datetime(self.start_datetime):
                raise ValueError("end_datetime must be after start_datetime")
        return self

    @property
    def erp_shift_id(self) -> int | None:
        return self.id if self.id is not None else self.record_id


class AttendancePayload(ErpWebhookPayload):
    id: int
    check_in: ErpDateTime
    check_out: ErpDateTime | Literal[False] | None = None
    worked_hours: float | None = None
    x_company_id: int
    x_cumulative_minutes: float = 0
    x_employee_avatar: str | Literal[False] | None = None
    x_employee_contact_name: str | Literal[False] | None = None
    x_planning_slot_id: int | Literal[False] | None = None
    x_prev_attendance_id: int | Literal[False] | None = None
    x_shift_start: ErpDateTime | Literal[False] | None = None
    x_shift_end: ErpDateTime | Literal[False] | None = None

    @property
    def is_check_out(self) -> bool:
        return bool(self.check_out)

    @property
    def planning_slot_id(self) -> int | None:
        if self.x_planning_slot_id is False or self.x_planning_slot_id is None:
            return None
        return self.x_planning_slot_id


class OrderLine(BaseModel):
    product_name: str
    qty: float
    uom_name: str | None = None
    price_unit: float
    discount: float | None = None


class OrderPayment(BaseModel):
    id: int | None = None
    name: str
    amount: float


class PosOrderPayload(ErpWebhookPayload):
    company_id: int
    pos_reference: str = Field(min_length=1)
    date_order: str | None = None
    cashier: str | None = None
    amount_total: float
    x_session_name: str | None = None
    x_company_name: str | None = None
    x_website_id: str | Literal[False] | None = None
    x_customer_website_id: str | Literal[False] | None = None
    x_order_lines: list[OrderLine] = Field(default_factory=list)
    x_payments: list[OrderPayment] = Field(default_factory=list)


class PurchaseOrderLine(BaseModel):
    product_id: int | None = None
    product_name: str
    quantity: float
    uom_name: str | None = None
    price_unit: float


class IspePurchaseOrderPayload(ErpWebhookPayload):
    company_id: int
    name: str = Field(min_length=1)
    date_approve: str | None = None
    partner_ref: str | Literal[False] | None = None
    amount_total: float
    x_pos_session: str | None = None
    x_order_line_details: list[PurchaseOrderLine] = Field(default_factory=list)


class RegisterCashPayload(ErpWebhookPayload):
    company_id: int
    amount_total: float
    create_date: str | None = None
    payment_ref: str = Field(min_length=1)


WEBHOOK_PAYLOAD_MODELS: dict[WebhookEventKind, type[ErpWebhookPayload]] = {
    WebhookEventKind.POS_VERIFICATION: PosVerificationPayload,
    WebhookEventKind.POS_SESSION: PosSessionPayload,
    WebhookEventKind.POS_SESSION_CLOSE: PosSessionClosePayload,
    WebhookEventKind.EMPLOYEE_SHIFT: EmployeeShiftPayload,
    WebhookEventKind.ATTENDANCE: AttendancePayload,
    WebhookEventKind.DISCOUNT_ORDER: PosOrderPayload,
    WebhookEventKind.REFUND_ORDER: PosOrderPayload,
    WebhookEventKind.TOKEN_PAY_ORDER: PosOrderPayload,
    WebhookEventKind.NON_CASH_ORDER: PosOrderPayload,
    WebhookEventKind.ISPE_PURCHASE_ORDER: IspePurchaseOrderPayload,
    WebhookEventKind.REGISTER_CASH: RegisterCashPayload,
}


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class BranchRead(BaseModel):
    id: int
    name: str
    erp_branch_id: str | None
    is_active: bool
    is_main_branch: bool

    model_config = ConfigDict(from_attributes=True)


class EmployeeShiftRead(BaseModel):
    id: int
    erp_shift_id: int
    branch_id: int
    user_id: int | None
    employee_name: str | None
    employee_avatar_url: str | None
    duty_type: str | None
    duty_color: int | None
    shift_start: datetime
    shift_end: datetime
    allocated_hours: float
    total_worked_hours: float | None
    status: str
    check_in_status: str | None
    pending_approvals: int
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ShiftLogRead(BaseModel):
    id: int
    shift_id: int | None
    branch_id: int
    log_type: str
    erp_attendance_id: int | None
    event_time: datetime
    worked_hours: float | None
    cumulative_minutes: float | None
    changes: dict[str, Any] | None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ShiftAuthorizationRead(BaseModel):
    id: int
    shift_id: int
    shift_log_id: int | None
    branch_id: int
    user_id: int | None
    auth_type: str
    diff_minutes: int
    needs_employee_reason: bool
    employee_reason: str | None
    status: str
    overtime_type: str | None
    resolved_by: int | None
    resolved_at: datetime | None
    rejection_reason: str | None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class PosSessionRead(BaseModel):
    id: int
    branch_id: int
    erp_session_id: str
    session_name: str
    status: str
    closed_at: datetime | None
    closing_reports: dict[str, Any] | None

    model_config = ConfigDict(from_attributes=True)


class PosVerificationRead(BaseModel):
    id: int
    branch_id: int
    pos_session_id: int | None
    verification_type: str
    external_ref: str
    title: str
    description: str | None
    amount: float | None
    status: str
    cashier_user_key: str | None

    model_config = ConfigDict(from_attributes=True)


class NotificationRead(BaseModel):
    id: int
    user_id: int
    title: str
    message: str
    type: str
    link_url: str | None
    is_read: bool
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class PushSubscriptionRead(BaseModel):
    id: int
    endpoint: str
    is_active: bool
    failure_count: int
    last_success_at: datetime | None
    last_failure_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class CompanyRead(BaseModel):
    id: int
    name: str
    slug: str
    db_name: str
    company_code: str
    is_active: bool
    migration_version: str | None
    last_migrated_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class ShiftExchangeRead(BaseModel):
    id: int
    requester_user_id: int
    accepting_user_id: int
    requester_company_id: int
    requester_branch_id: int
    requester_shift_id: int
    accepting_company_id: int
    accepting_branch_id: int
    accepting_shift_id: int
    status: str
    approval_stage: str
    employee_decision_at: datetime | None
    employee_rejection_reason: str | None
    hr_decision_by: int | None
    hr_decision_at: datetime | None
    hr_rejection_reason: str | None
    requester_swap_applied_at: datetime | None
    accepting_swap_applied_at: datetime | None
    swap_last_error: str | None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class SubmitReasonRequest(BaseModel):
    reason: str | None = None


class ApproveAuthorizationRequest(BaseModel):
    overtime_type: str | None = None


class RejectAuthorizationRequest(BaseModel):
    reason: str | None = None


class ShiftExchangeCreateRequest(BaseModel):
    from_shift_id: int = Field(ge=1)
    to_shift_id: int = Field(ge=1)
    to_company_id: int = Field(ge=1)


class ShiftExchangeRespondRequest(BaseModel):
    action: Literal["accept", "reject"]
    reason: str | None = None


class ShiftExchangeRejectRequest(BaseModel):
    reason: str | None = None


class PushSubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscribeRequest(BaseModel):
    endpoint: str
    keys: PushSubscriptionKeys


class PushUnsubscribeRequest(BaseModel):
    endpoint: str


class CompanyProvisionRequest(BaseModel):
    name: str = Field(min_length=2, max_length=255)
    slug: str = Field(min_length=2, max_length=100, pattern=r"^[a-z0-9][a-z0-9-]*$")
    company_code: str = Field(min_length=2, max_length=32)


class BranchCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    erp_branch_id: int = Field(ge=1)
    is_main_branch: bool = False
