"""
Pydantic schemas for laboratory billing records.

Models mirror rows of the remote schema (extra columns are ignored) plus
the request/response shapes used by the HTTP API.
"""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, Field


T = TypeVar("T")


class InvoiceStatus(str, Enum):
    """Lifecycle states of an invoice."""
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class InvoiceType(str, Enum):
    """Buckets that route invoices onto different payment timelines."""
    SNF = "SNF"
    INVALIDS = "Invalids"
    HOSPICE = "Hospice"
    REGULAR = "Regular"


class Organization(BaseModel):
    id: str
    name: str
    laboratory_id: Optional[str] = None


class ClinicContact(BaseModel):
    id: Optional[str] = None
    clinic_id: Optional[str] = None
    name: str
    title: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_primary: bool = False


class ClinicContactCreate(BaseModel):
    name: str = Field(..., min_length=1)
    title: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    # None: primary only if the clinic has no contacts yet
    is_primary: Optional[bool] = None


class ClinicContactUpdate(BaseModel):
    name: Optional[str] = None
    title: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_primary: Optional[bool] = None


class Clinic(BaseModel):
    id: Optional[str] = None
    client_id: Optional[str] = None
    name: str
    address: Optional[str] = None
    is_active: bool = True
    contacts: List[ClinicContact] = Field(default_factory=list)


class ClinicUpdate(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    is_active: Optional[bool] = None


class Client(BaseModel):
    """A billed customer (laboratory client) and its clinics."""
    id: Optional[str] = None
    organization_id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=200)
    code: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    logo_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    clinics: List[Clinic] = Field(default_factory=list)


class ClientUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    code: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    logo_url: Optional[str] = None


class Patient(BaseModel):
    id: Optional[str] = None
    organization_id: Optional[str] = None
    client_id: Optional[str] = None
    first_name: str
    last_name: str
    date_of_birth: Optional[date] = None
    mrn: Optional[str] = None
    gender: Optional[str] = None
    insurance_id: Optional[str] = None


class PatientUpdate(BaseModel):
    client_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    mrn: Optional[str] = None
    gender: Optional[str] = None
    insurance_id: Optional[str] = None


class CptCode(BaseModel):
    id: Optional[str] = None
    code: str
    description: Optional[str] = None
    default_price: Decimal = Field(Decimal("0"), ge=0)
    is_active: bool = True


class CptPrice(BaseModel):
    """Effective price of a CPT code for a client or clinic."""
    id: str
    cpt_code_id: str
    price: Decimal
    is_override: bool


class InvoiceLineItem(BaseModel):
    """Schema for a single CPT-coded service on an invoice."""
    id: Optional[str] = None
    invoice_id: Optional[str] = None
    organization_id: Optional[str] = None
    accession_number: Optional[str] = None
    patient_id: Optional[str] = None
    patient_first_name: Optional[str] = None
    patient_last_name: Optional[str] = None
    patient_dob: Optional[date] = None
    patient_mrn: Optional[str] = None
    cpt_code: str = Field("", description="CPT/HCPCS code billed on this line")
    description: Optional[str] = None
    service_date: Optional[date] = None
    units: int = Field(1, ge=0)
    unit_price: Decimal = Field(Decimal("0"), ge=0)
    invoice_type: Optional[InvoiceType] = None
    is_disputed: bool = False
    dispute_reason: Optional[str] = None

    @property
    def total_price(self) -> Decimal:
        return Decimal(self.units) * self.unit_price

    class Config:
        json_schema_extra = {
            "example": {
                "accession_number": "ACC-2025-0001",
                "patient_first_name": "Jane",
                "patient_last_name": "Doe",
                "cpt_code": "99306",
                "description": "Initial nursing facility care",
                "service_date": "2025-03-04",
                "units": 1,
                "unit_price": "185.00",
            }
        }


class Invoice(BaseModel):
    """Schema for an invoice row, optionally with its line items."""
    id: Optional[str] = None
    organization_id: Optional[str] = None
    client_id: Optional[str] = None
    clinic_id: Optional[str] = None
    invoice_number: Optional[str] = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    invoice_type: Optional[InvoiceType] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    billing_period_start: Optional[date] = None
    billing_period_end: Optional[date] = None
    subtotal: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    paid_amount: Decimal = Decimal("0")
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[InvoiceLineItem] = Field(default_factory=list)

    @property
    def balance_due(self) -> Decimal:
        return self.total_amount - self.paid_amount


class InvoiceCreate(BaseModel):
    """Schema for creating a draft invoice."""
    client_id: str
    clinic_id: Optional[str] = None
    invoice_type: Optional[InvoiceType] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None


class InvoiceUpdate(BaseModel):
    """Partial update; unset fields are left untouched."""
    client_id: Optional[str] = None
    clinic_id: Optional[str] = None
    invoice_number: Optional[str] = None
    status: Optional[InvoiceStatus] = None
    invoice_type: Optional[InvoiceType] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None
    subtotal: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    paid_amount: Optional[Decimal] = None
    write_off_amount: Optional[Decimal] = None
    write_off_reason: Optional[str] = None
    force_edit: bool = False


class StatusTransitionRequest(BaseModel):
    status: InvoiceStatus
    freeze_prices: bool = False
    user_id: Optional[str] = None


class FilterOptions(BaseModel):
    """Filter, sort and pagination options shared by list endpoints."""
    search: Optional[str] = None
    status: List[str] = Field(default_factory=list)
    client_ids: List[str] = Field(default_factory=list)
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    sort_by: Optional[str] = None
    sort_direction: Literal["asc", "desc"] = "asc"
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=500)


class PaginatedResponse(BaseModel, Generic[T]):
    data: List[T]
    total: int
    page: int
    limit: int
    total_pages: int


class InvoiceTotals(BaseModel):
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal


class TotalsRequest(BaseModel):
    items: List[InvoiceLineItem] = Field(..., min_length=1)
    tax_rate: Decimal = Field(Decimal("0"), ge=0, le=1)
    discount_amount: Optional[Decimal] = Field(None, ge=0)
    discount_percentage: Optional[Decimal] = Field(None, ge=0, le=1)


class LateFee(BaseModel):
    invoice_id: str
    balance_due: Decimal
    days_overdue: int = 0
    late_fee: Decimal = Decimal("0")


class InsuranceTerms(BaseModel):
    """One payer's benefit terms."""
    coverage_percent: Decimal = Field(..., ge=0, le=1, description="Fraction of the charge the payer covers")
    deductible: Decimal = Field(Decimal("0"), ge=0)
    copay: Decimal = Field(Decimal("0"), ge=0)
    max_benefit: Optional[Decimal] = Field(None, ge=0)


class PatientResponsibilityRequest(BaseModel):
    invoice_total: Decimal = Field(..., ge=0)
    primary: Optional[InsuranceTerms] = None
    secondary: Optional[InsuranceTerms] = None


class PatientResponsibilityResult(BaseModel):
    primary_coverage: Decimal
    secondary_coverage: Decimal
    total_coverage: Decimal
    patient_responsibility: Decimal


class SeparatedGroup(BaseModel):
    type: InvoiceType
    items: List[InvoiceLineItem] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    invoice_id: Optional[str] = None


class BillingPeriod(BaseModel):
    start: date
    end: date


class SeparationRequest(BaseModel):
    client_id: str
    items: List[InvoiceLineItem] = Field(..., min_length=1)
    billing_period: BillingPeriod
    metadata: Dict[str, Any] = Field(default_factory=dict)


class InvoiceMixAnalysis(BaseModel):
    recommendation: Literal["keep", "split"]
    reason: str
    type_breakdown: Dict[str, int] = Field(default_factory=dict)
    potential_delay_risk: Literal["low", "medium", "high"]


class SeparationStats(BaseModel):
    total_invoices: int = 0
    auto_separated: int = 0
    manually_split: int = 0
    by_type: Dict[str, int] = Field(
        default_factory=lambda: {t.value: 0 for t in InvoiceType}
    )


class InvoiceCounterStatus(BaseModel):
    prefix: str
    year: int
    last_value: int
    next_value: int
    format_pattern: str
    sample_number: str


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    POSTED = "posted"
    FAILED = "failed"
    REFUNDED = "refunded"


class Payment(BaseModel):
    id: Optional[str] = None
    organization_id: Optional[str] = None
    client_id: Optional[str] = None
    invoice_id: Optional[str] = None
    payment_number: Optional[str] = None
    amount: Decimal = Field(..., gt=0)
    payment_method: str = "check"
    reference_number: Optional[str] = None
    payment_date: Optional[date] = None
    status: PaymentStatus = PaymentStatus.PENDING
    idempotency_key: Optional[str] = None


class PaymentAllocation(BaseModel):
    id: Optional[str] = None
    payment_id: str
    invoice_id: str
    allocated_amount: Decimal = Field(..., ge=0)
    notes: Optional[str] = None


class PaymentCredit(BaseModel):
    id: Optional[str] = None
    payment_id: Optional[str] = None
    client_id: Optional[str] = None
    credit_amount: Decimal
    remaining_credit: Decimal
    status: str = "available"


class PaymentRequest(BaseModel):
    """Post a payment against one invoice."""
    invoice_id: str
    amount: Decimal = Field(..., gt=0)
    payment_method: str = "check"
    reference_number: Optional[str] = None


class MultiInvoicePaymentRequest(BaseModel):
    """Post one payment and spread it over several invoices, in order."""
    client_id: str
    amount: Decimal = Field(..., gt=0)
    invoice_ids: List[str] = Field(..., min_length=1)
    payment_method: str = "check"
    reference_number: Optional[str] = None


class AllocationResult(BaseModel):
    payment_id: str
    allocations: List[PaymentAllocation] = Field(default_factory=list)
    credit_amount: Decimal = Decimal("0")
    unallocated_amount: Decimal = Decimal("0")
    status: PaymentStatus = PaymentStatus.POSTED


class ReconciliationAllocation(BaseModel):
    invoice_number: str
    allocated_amount: Decimal
    allocation_date: Optional[datetime] = None


class ReconciliationRow(BaseModel):
    payment_id: str
    payment_number: Optional[str] = None
    payment_date: Optional[date] = None
    payment_method: Optional[str] = None
    client_name: str = "Unknown"
    payment_amount: Decimal
    allocated_amount: Decimal
    unallocated_amount: Decimal
    status: Optional[str] = None
    allocations: List[ReconciliationAllocation] = Field(default_factory=list)


class ReconciliationReport(BaseModel):
    rows: List[ReconciliationRow] = Field(default_factory=list)
    payment_amount: Decimal = Decimal("0")
    allocated_amount: Decimal = Decimal("0")
    unallocated_amount: Decimal = Decimal("0")
    count: int = 0


class DashboardStat(BaseModel):
    id: str
    title: str
    value: float
    change: float
    link: str


class AgingBucket(BaseModel):
    label: str
    value: float


class StatusCount(BaseModel):
    name: str
    count: int
    percentage: int = Field(..., description="Share of invoices in the range, rounded to a whole percent")


class TopClient(BaseModel):
    id: str
    name: str
    invoice_count: int
    total_value: float
    dispute_rate: int
