"""
API routes for CSV imports.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from labbilling.core.backend_client import BackendClient
from labbilling.routes.dependencies import get_backend_client, get_organization_id, raise_http_error
from labbilling.schemas.import_schema import ImportMode, ImportResult, ImportType
from labbilling.services.import_service import ImportService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/import", tags=["import"])

CSV_CONTENT_TYPES = {"text/csv", "application/csv", "application/vnd.ms-excel", "text/plain"}


@router.post("/{import_type}", response_model=ImportResult)
async def import_csv(
    import_type: ImportType,
    file: UploadFile = File(...),
    mode: ImportMode = Form(ImportMode.VALIDATE),
    invoice_id: Optional[str] = Form(None),
    client: BackendClient = Depends(get_backend_client),
    organization_id: Optional[str] = Depends(get_organization_id),
) -> ImportResult:
    """
    Upload a CSV of clients or line items.

    - ``mode=validate`` checks every row and writes nothing
    - ``mode=insert`` writes the valid rows in batches
    - Non-CSV upload or unreadable file -> HTTP 400
    """
    if not (file.filename or "").lower().endswith(".csv") and file.content_type not in CSV_CONTENT_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only CSV files are supported",
        )

    try:
        content = await file.read()
        service = ImportService(client, organization_id)
        if import_type == ImportType.CLIENTS:
            result = service.import_clients(content, mode)
        else:
            result = service.import_line_items(content, mode, invoice_id=invoice_id)
    except UnicodeDecodeError as exc:
        logger.warning("Unreadable import file", extra={"uploaded_filename": file.filename})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="CSV file must be UTF-8 encoded",
        ) from exc
    except Exception as exc:
        raise_http_error(exc, "Import CSV")

    logger.info(
        "CSV import processed",
        extra={"uploaded_filename": file.filename, "import_type": import_type.value, "mode": mode.value},
    )
    return result
