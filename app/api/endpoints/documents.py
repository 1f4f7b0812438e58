# app/api/endpoints/documents.py

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db_session, get_document_renderer, http_error
from app.core.exceptions import WorkflowError
from app.models.enums import LeaveStatus, MarksheetStatus
from app.services import leave_service, marksheet_service
from app.services.pdf_service import DocumentRenderer

router = APIRouter(
    prefix="/api/documents",
    tags=["Documents"]
)

# Documents exist only once the HOD has signed off
LEAVE_DOCUMENT_STATUSES = {LeaveStatus.ApprovedByHOD.value}
MARKSHEET_DOCUMENT_STATUSES = {MarksheetStatus.ApprovedByHOD.value, MarksheetStatus.Dispatched.value}


def pdf_response(pdf_bytes: bytes, filename: str) -> Response:
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )


@router.get("/leaves/{leave_id}.pdf")
async def leave_letter_pdf(
    leave_id: UUID,
    session: AsyncSession = Depends(get_db_session),
    renderer: DocumentRenderer = Depends(get_document_renderer),
):
    try:
        leave = await leave_service.get_leave(session, leave_id)
    except WorkflowError as e:
        raise http_error(e)

    if leave.status not in LEAVE_DOCUMENT_STATUSES:
        raise HTTPException(status_code=409, detail=f"Leave letter not available while '{leave.status}'")

    pdf_bytes = await renderer.render_leave_letter(leave)
    if not pdf_bytes:
        raise HTTPException(status_code=503, detail="PDF rendering is not available on this server")
    return pdf_response(pdf_bytes, f"leave_{leave.student_snapshot.get('reg_number')}.pdf")


@router.get("/marksheets/{marksheet_id}.pdf")
async def marksheet_pdf(
    marksheet_id: UUID,
    session: AsyncSession = Depends(get_db_session),
    renderer: DocumentRenderer = Depends(get_document_renderer),
):
    try:
        marksheet = await marksheet_service.get_marksheet(session, marksheet_id)
    except WorkflowError as e:
        raise http_error(e)

    if marksheet.status not in MARKSHEET_DOCUMENT_STATUSES:
        raise HTTPException(status_code=409, detail=f"Marksheet not available while '{marksheet.status}'")

    pdf_bytes = await renderer.render_marksheet(marksheet)
    if not pdf_bytes:
        raise HTTPException(status_code=503, detail="PDF rendering is not available on this server")
    return pdf_response(pdf_bytes, f"marksheet_{marksheet.student_snapshot.get('reg_number')}.pdf")
