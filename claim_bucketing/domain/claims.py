"""
Claim domain model.

Claims arrive from the adjudication system as camelCase JSON snapshots
(payerId, paidAmount, ...). The model accepts either the wire names or the
Python field names.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class Claim(BaseModel):
    """
    A settled payment claim. Immutable once ingested.

    Payer and payee are optional at parse time so that a payload missing
    them can still be identified in the processing log; the aggregator
    rejects such claims before anything is counted.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    id: str = Field(..., min_length=1)
    claim_number: Optional[str] = None

    payer_id: Optional[str] = None
    payee_id: Optional[str] = None
    bin_number: Optional[str] = None
    pcn_number: Optional[str] = None

    total_charge_amount: Decimal = Field(default=Decimal("0"))
    paid_amount: Optional[Decimal] = None

    status: Optional[str] = None
    service_date: Optional[date] = None

    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    processed_date: Optional[datetime] = None

    @field_validator("id", "claim_number", "patient_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        """Numeric keys from the source table are carried as strings."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("bin_number", "pcn_number", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("status", mode="before")
    @classmethod
    def upper_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @property
    def has_bin(self) -> bool:
        return bool(self.bin_number)

    def field_values(self) -> dict[str, Any]:
        """Field values keyed by snake_case name, for expression evaluation."""
        return self.model_dump()
