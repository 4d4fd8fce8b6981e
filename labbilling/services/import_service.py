"""
CSV import of clients and invoice line items.

Rows are validated one at a time with the import schemas; in ``insert``
mode valid rows are written in batches. Row numbers in errors count the
header as row 1.
"""
import csv
import io
import logging
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple, Type, Union

from pydantic import BaseModel, ValidationError

from labbilling.core.backend_client import BackendClient, BackendError
from labbilling.core.errors import handle_backend_error
from labbilling.core.invoice_types import determine_invoice_type
from labbilling.schemas.import_schema import (
    ClientImportRow,
    ImportMode,
    ImportResult,
    ImportRowError,
    ImportType,
    LineItemImportRow,
)
from labbilling.services.client_service import CLIENTS_TABLE
from labbilling.services.invoice_service import INVOICE_ITEMS_TABLE


logger = logging.getLogger(__name__)

BATCH_SIZE = 100
MAX_ROWS = 10000


def normalize_header(name: str) -> str:
    """``"Unit Price"`` -> ``"unit_price"``"""
    return "_".join(name.strip().lower().replace("-", " ").split())


def read_csv_rows(content: Union[str, bytes]) -> List[Tuple[int, Dict[str, str]]]:
    """
    Parse CSV text into ``(row_number, row)`` pairs with normalized headers.

    Raises:
        ValueError: Empty file, missing header or more than MAX_ROWS rows.
    """
    if isinstance(content, bytes):
        content = content.decode("utf-8-sig")
    reader = csv.DictReader(io.StringIO(content))
    if not reader.fieldnames:
        raise ValueError("CSV file is empty")
    reader.fieldnames = [normalize_header(name) for name in reader.fieldnames]

    rows = []
    for row_num, row in enumerate(reader, start=2):
        if not any((value or "").strip() for key, value in row.items() if key is not None):
            continue
        rows.append((row_num, {key: value for key, value in row.items() if key is not None}))
        if len(rows) > MAX_ROWS:
            raise ValueError(f"Import file exceeds {MAX_ROWS} rows")
    if not rows:
        raise ValueError("CSV file has no data rows")
    return rows


def _validation_errors(row_num: int, exc: ValidationError) -> List[ImportRowError]:
    errors = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ())) or None
        message = error.get("msg", "Invalid value").replace("Value error, ", "")
        errors.append(ImportRowError(row=row_num, field=field, message=message))
    return errors


def _batches(items: List[Any], size: int = BATCH_SIZE) -> Iterator[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class ImportService:
    def __init__(self, client: BackendClient, organization_id: Optional[str] = None):
        self.client = client
        self.organization_id = organization_id

    def import_clients(self, content: Union[str, bytes], mode: ImportMode = ImportMode.VALIDATE) -> ImportResult:
        """
        Import clients; a name already on file (case-insensitive) is a duplicate.
        """
        result = ImportResult(import_type=ImportType.CLIENTS, mode=mode)
        rows = read_csv_rows(content)
        existing = {name.lower() for name in self._existing_values(CLIENTS_TABLE, "name")}

        valid: List[Tuple[int, Dict[str, Any]]] = []
        for row_num, raw in rows:
            parsed = self._parse(ClientImportRow, row_num, raw, result)
            if parsed is None:
                continue
            key = parsed.name.lower()
            if key in existing:
                result.duplicates += 1
                result.errors.append(ImportRowError(row=row_num, field="name", message=f"Client '{parsed.name}' already exists"))
                continue
            existing.add(key)
            record = parsed.model_dump(exclude_none=True)
            if self.organization_id:
                record["organization_id"] = self.organization_id
            valid.append((row_num, record))

        return self._finish(CLIENTS_TABLE, valid, result)

    def import_line_items(
        self,
        content: Union[str, bytes],
        mode: ImportMode = ImportMode.VALIDATE,
        invoice_id: Optional[str] = None,
    ) -> ImportResult:
        """
        Import billable services; an accession number and CPT code pair
        already on file or repeated in the file is a duplicate.

        Each row is classified into its invoice type on the way in.
        """
        result = ImportResult(import_type=ImportType.LINE_ITEMS, mode=mode)
        rows = read_csv_rows(content)

        parsed_rows: List[Tuple[int, LineItemImportRow]] = []
        for row_num, raw in rows:
            parsed = self._parse(LineItemImportRow, row_num, raw, result)
            if parsed is not None:
                parsed_rows.append((row_num, parsed))

        seen = self._existing_accession_pairs([p.accession_number for _, p in parsed_rows])
        valid: List[Tuple[int, Dict[str, Any]]] = []
        for row_num, parsed in parsed_rows:
            key = (parsed.accession_number, parsed.cpt_code)
            if key in seen:
                result.duplicates += 1
                result.errors.append(
                    ImportRowError(
                        row=row_num,
                        field="accession_number",
                        message=f"Duplicate accession {parsed.accession_number} with CPT {parsed.cpt_code}",
                    )
                )
                continue
            seen.add(key)
            record = parsed.model_dump(exclude_none=True, exclude={"clinic_name", "client_code"})
            record["invoice_type"] = determine_invoice_type(parsed.cpt_code, parsed.description)
            record["line_total"] = parsed.unit_price * parsed.units
            if invoice_id:
                record["invoice_id"] = invoice_id
            if self.organization_id:
                record["organization_id"] = self.organization_id
            valid.append((row_num, record))

        return self._finish(INVOICE_ITEMS_TABLE, valid, result)

    def _parse(
        self, model: Type[BaseModel], row_num: int, raw: Dict[str, str], result: ImportResult
    ) -> Optional[Any]:
        result.processed += 1
        try:
            return model(**raw)
        except ValidationError as exc:
            result.failed += 1
            result.errors.extend(_validation_errors(row_num, exc))
            return None

    def _finish(self, table: str, valid: List[Tuple[int, Dict[str, Any]]], result: ImportResult) -> ImportResult:
        if result.mode == ImportMode.VALIDATE:
            result.success = len(valid)
            return result

        for batch in _batches(valid):
            try:
                self.client.table(table).insert([record for _, record in batch], returning=False).execute()
            except BackendError as exc:
                logger.warning(
                    "Import batch failed",
                    extra={"table": table, "first_row": batch[0][0], "size": len(batch), "error": str(exc)},
                )
                result.failed += len(batch)
                result.errors.extend(ImportRowError(row=row_num, message=str(exc)) for row_num, _ in batch)
                continue
            result.success += len(batch)

        logger.info(
            "Import finished",
            extra={"table": table, "success": result.success, "failed": result.failed, "duplicates": result.duplicates},
        )
        return result

    def _existing_values(self, table: str, column: str) -> List[str]:
        query = self.client.table(table).select(column)
        if self.organization_id:
            query = query.eq("organization_id", self.organization_id)
        try:
            rows = query.execute().data or []
        except BackendError as exc:
            handle_backend_error(exc, "Load Existing Records")
        return [str(row[column]) for row in rows if row.get(column)]

    def _existing_accession_pairs(self, accession_numbers: List[str]) -> Set[Tuple[str, str]]:
        pairs: Set[Tuple[str, str]] = set()
        unique = sorted(set(accession_numbers))
        for chunk in _batches(unique):
            query = self.client.table(INVOICE_ITEMS_TABLE).select("accession_number,cpt_code").in_("accession_number", chunk)
            if self.organization_id:
                query = query.eq("organization_id", self.organization_id)
            try:
                rows = query.execute().data or []
            except BackendError as exc:
                handle_backend_error(exc, "Load Existing Line Items")
            pairs.update((str(r["accession_number"]), str(r["cpt_code"])) for r in rows)
        return pairs


__all__ = ["BATCH_SIZE", "MAX_ROWS", "ImportService", "normalize_header", "read_csv_rows"]
