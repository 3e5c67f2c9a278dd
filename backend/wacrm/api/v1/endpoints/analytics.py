from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from wacrm.api.deps import require_session_id
from wacrm.core.db import get_session
from wacrm.services.analytics_service import AnalyticsService

router = APIRouter()


@router.get("/funnel")
def get_funnel(
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    """漏斗报表"""
    return AnalyticsService(session).funnel(session_id)


@router.get("/funnel/stages")
def get_funnel_stages(
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    return {"stages": AnalyticsService(session).funnel_stages(session_id)}


@router.get("/sources")
def get_sources(
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    """联系人来源分布"""
    return AnalyticsService(session).sources(session_id)


@router.get("/activities/summary")
def get_activities_summary(
    session_id: str = Depends(require_session_id),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    session: Session = Depends(get_session),
):
    return {"summary": AnalyticsService(session).activities_summary(session_id, start_date, end_date)}


@router.get("/conversion")
def get_conversion(
    session_id: str = Depends(require_session_id),
    period: int = Query(30, ge=1, le=365),
    session: Session = Depends(get_session),
):
    return AnalyticsService(session).conversion(session_id, period)


@router.get("/dashboard")
def get_dashboard(
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    return AnalyticsService(session).dashboard(session_id)
