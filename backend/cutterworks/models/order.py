from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


class OrderRecord(SQLModel, table=True):
    __tablename__ = "order"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_number: str = Field(index=True, unique=True)
    baker_id: str = Field(index=True)
    baker_email: str
    date_required: Optional[date] = None
    stage: str = Field(default="Draft", index=True)
    price: Optional[float] = None
    # completion details
    delivery_method: Optional[str] = None
    payment_method: Optional[str] = None
    details_confirmed: bool = False
    details_confirmed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    details_confirmed_by: Optional[str] = None
    pickup_schedule: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    delivery_address: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    update_request: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    update_request_status: Optional[str] = Field(default=None, index=True)
    # owned collections, stored whole with the order
    items: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    stage_history: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    version: int = 0
