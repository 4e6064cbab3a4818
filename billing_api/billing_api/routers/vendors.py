"""Vendor calendar routes."""

from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter
from pydantic import BaseModel, Field

from billing_api.dependencies import PlatformConfigDep, PrincipalDep, SessionDep
from billing_engine.models.enums import Slot
from billing_engine.models.orders import HolidayAdjustment
from billing_engine.orders.holidays import VendorHolidayService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vendors", tags=["vendors"])


class HolidayRequest(BaseModel):
    holiday_date: date
    slot: Slot | None = Field(default=None, description="Omit to close every slot for the day.")
    reason: str | None = Field(default=None, max_length=256)


@router.post("/{vendor_id}/holidays", response_model=HolidayAdjustment, status_code=201)
async def declare_holiday(
    vendor_id: str,
    body: HolidayRequest,
    session: SessionDep,
    config: PlatformConfigDep,
    principal_id: PrincipalDep,
) -> HolidayAdjustment:
    """Close a vendor for a day or slot and credit the displaced meals."""
    logger.info("Holiday for vendor %s on %s declared by %s", vendor_id, body.holiday_date, principal_id)
    return await VendorHolidayService(session, config).declare_holiday(
        vendor_id, body.holiday_date, body.slot, reason=body.reason
    )
