import io
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from avr_tracker.api.deps import get_store, require_role
from avr_tracker.api.endpoints.projects import load_visible_project
from avr_tracker.schemas.user import AuthenticatedIdentity, UserRole
from avr_tracker.services.document_store import DocumentStore
from avr_tracker.services.reports import ReportService

router = APIRouter()


@router.get("/projects/{project_id}")
def get_report(
    project_id: str,
    department: Optional[str] = Query(None, description="Only this department"),
    period: Optional[str] = Query(None, description="this_month, last_month, this_quarter or this_year"),
    identity: AuthenticatedIdentity = Depends(require_role(UserRole.ADMIN, UserRole.APPROVER)),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: PROJECT SPEND REPORT

    WHO CAN USE: Admin & the project's approvers
    Approved expenses only, broken down by department, category and payment mode.
    """
    load_visible_project(project_id, identity, store)
    return ReportService(store).report(project_id, department=department, period=period)


@router.get("/projects/{project_id}/forecast")
def get_forecast(
    project_id: str,
    months: int = Query(6, ge=1, le=24, description="How many months back, current month included"),
    identity: AuthenticatedIdentity = Depends(require_role(UserRole.ADMIN, UserRole.APPROVER)),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: MONTHLY FORECAST

    WHO CAN USE: Admin & the project's approvers
    """
    load_visible_project(project_id, identity, store)
    return {"project_id": project_id, "months": ReportService(store).forecast(project_id, months)}


@router.get("/projects/{project_id}/export")
def export_report(
    project_id: str,
    department: Optional[str] = Query(None),
    period: Optional[str] = Query(None),
    identity: AuthenticatedIdentity = Depends(require_role(UserRole.ADMIN, UserRole.APPROVER)),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: EXPORT REPORT TO EXCEL

    WHO CAN USE: Admin & the project's approvers
    """
    load_visible_project(project_id, identity, store)
    service = ReportService(store)
    report = service.report(project_id, department=department, period=period)
    excel_file = io.BytesIO(service.export_workbook(report))

    filename = f"avr_report_{project_id}_{datetime.now().strftime('%Y-%m-%d')}.xlsx"

    return StreamingResponse(
        excel_file,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )
