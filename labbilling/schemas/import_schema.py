"""
Pydantic schemas for CSV imports of clients and invoice line items.
"""
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from labbilling.core.invoice_calculations import validate_cpt_code


class ImportType(str, Enum):
    CLIENTS = "clients"
    LINE_ITEMS = "line_items"


class ImportMode(str, Enum):
    VALIDATE = "validate"
    INSERT = "insert"


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


class ClientImportRow(BaseModel):
    """One client row from an import file."""
    name: str = Field(..., min_length=1, max_length=200)
    code: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: str = "USA"
    tax_id: Optional[str] = None
    contact_person: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator(
        "code", "email", "phone", "address", "city", "state", "zip_code",
        "tax_id", "contact_person", mode="before",
    )
    @classmethod
    def blank_optional(cls, value):
        return _blank_to_none(value)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and ("@" not in value or value.startswith("@") or value.endswith("@")):
            raise ValueError("Invalid email address")
        return value


class LineItemImportRow(BaseModel):
    """One billable service row (accession + CPT) from an import file."""
    accession_number: str = Field(..., min_length=1, description="Accession number is required")
    cpt_code: str = Field(..., min_length=1, description="CPT code is required")
    service_date: date
    unit_price: Decimal = Field(..., ge=0)
    units: int = Field(1, ge=1)
    description: Optional[str] = None
    patient_first_name: Optional[str] = None
    patient_last_name: Optional[str] = None
    clinic_name: Optional[str] = None
    client_code: Optional[str] = None

    @field_validator("accession_number", "cpt_code", mode="before")
    @classmethod
    def strip_required(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("cpt_code")
    @classmethod
    def check_cpt_code(cls, value: str) -> str:
        value = value.upper()
        if not validate_cpt_code(value):
            raise ValueError(f"Invalid CPT code {value}")
        return value

    @field_validator(
        "description", "patient_first_name", "patient_last_name",
        "clinic_name", "client_code", mode="before",
    )
    @classmethod
    def blank_optional(cls, value):
        return _blank_to_none(value)

    @field_validator("units", mode="before")
    @classmethod
    def default_units(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return 1
        return value

    @field_validator("unit_price", mode="before")
    @classmethod
    def parse_price(cls, value):
        # "$1,234.50" -> 1234.50
        if isinstance(value, str):
            cleaned = "".join(ch for ch in value if ch.isdigit() or ch in ".-")
            try:
                return Decimal(cleaned)
            except InvalidOperation:
                raise ValueError("Unit price must be a number")
        return value


class ImportRowError(BaseModel):
    row: int
    field: Optional[str] = None
    message: str


class ImportResult(BaseModel):
    import_type: ImportType
    mode: ImportMode
    processed: int = 0
    success: int = 0
    failed: int = 0
    duplicates: int = 0
    errors: List[ImportRowError] = Field(default_factory=list)
