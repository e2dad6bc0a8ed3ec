"""Canonical export rows, plan gating and CSV / XLSX rendering."""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from uuid import UUID

import structlog
from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter

from .action_log import log_action
from .config import ExportSettings, export_settings
from .errors import DatasetNotFoundError
from .models import (
    ActionType,
    Business,
    CrawlResult,
    Dataset,
    ExportFormat,
    ExportLog,
    ExportResult,
    UsageAction,
    UserPermissions,
    Website,
    coerce_uuid,
    utcnow,
)
from .permissions import PermissionsResolver, check_user_usage, record_usage
from .pricing import check_pricing_gate

logger = structlog.get_logger(__name__)

SCHEMA_VERSION = "v1"

# Column order is part of the v1 schema; append-only changes need a new version.
EXPORT_COLUMNS: Tuple[str, ...] = (
    "business_id",
    "dataset_id",
    "business_name",
    "industry",
    "city",
    "address",
    "phone",
    "email",
    "website",
    "google_maps_url",
    "rating",
    "reviews_count",
    "contact_page_url",
    "facebook",
    "instagram",
    "linkedin",
    "twitter",
    "youtube",
    "crawl_status",
    "pages_visited",
    "emails_found",
    "last_crawled_at",
)

ExportRow = Dict[str, Any]

CONTENT_TYPES = {
    ExportFormat.CSV: "text/csv; charset=utf-8",
    ExportFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def google_maps_url(place_id: Optional[str]) -> Optional[str]:
    if not place_id:
        return None
    return f"https://www.google.com/maps/place/?q=place_id:{place_id}"


def build_export_row(
    business: Business,
    crawl: Optional[CrawlResult],
    website: Optional[Website] = None,
    industry: Optional[str] = None,
    city: Optional[str] = None,
) -> ExportRow:
    """One canonical row; every crawl-derived column is empty when ``crawl`` is None."""

    email = None
    phone = business.phone
    if crawl is not None:
        if crawl.emails:
            email = max(crawl.emails, key=lambda c: c.confidence).value
        if not phone and crawl.phones:
            phone = crawl.phones[0].value
    last_crawled = website.last_crawled_at if website and website.last_crawled_at else None
    if last_crawled is None and crawl is not None:
        last_crawled = crawl.finished_at

    social = crawl.social if crawl is not None else None
    return {
        "business_id": str(business.id),
        "dataset_id": str(business.dataset_id),
        "business_name": business.name,
        "industry": industry,
        "city": city,
        "address": business.address,
        "phone": phone,
        "email": email,
        "website": website.url if website else (crawl.website_url if crawl else None),
        "google_maps_url": google_maps_url(business.external_place_id),
        "rating": business.rating,
        "reviews_count": business.reviews_count,
        "contact_page_url": crawl.contact_pages[0] if crawl and crawl.contact_pages else None,
        "facebook": social.facebook if social else None,
        "instagram": social.instagram if social else None,
        "linkedin": social.linkedin if social else None,
        "twitter": social.twitter if social else None,
        "youtube": social.youtube if social else None,
        "crawl_status": crawl.crawl_status.value if crawl else "not_crawled",
        "pages_visited": crawl.pages_visited if crawl else 0,
        "emails_found": len(crawl.emails) if crawl else 0,
        "last_crawled_at": last_crawled.isoformat() if last_crawled else None,
    }


def build_export_rows(store, dataset: Dataset) -> List[ExportRow]:
    """Rows for every business in the dataset, in creation order."""

    city = store.get_city(dataset.city_id)
    industry = store.get_industry(dataset.industry_id)
    city_names: Dict[UUID, str] = {city.id: city.name} if city else {}

    rows: List[ExportRow] = []
    for business in store.list_businesses(dataset.id):
        if business.city_id and business.city_id not in city_names:
            other = store.get_city(business.city_id)
            city_names[business.city_id] = other.name if other else ""
        rows.append(
            build_export_row(
                business,
                store.get_crawl_result(business.id, dataset.id),
                store.get_website(business.id),
                industry=industry.name if industry else None,
                city=city_names.get(business.city_id or dataset.city_id) or None,
            )
        )
    return rows


@dataclass
class GatedRows:
    rows: List[ExportRow]
    total: int
    gated: bool
    watermark: Optional[str] = None
    reason: Optional[str] = None
    upgrade_hint: Optional[str] = None


def apply_export_gate(rows: Sequence[ExportRow], permissions: UserPermissions) -> GatedRows:
    """Truncate to the plan's row ceiling, keeping the first rows; internal users are exempt."""

    total = len(rows)
    if permissions.is_internal_user:
        return GatedRows(rows=list(rows), total=total, gated=False)
    gate = check_pricing_gate(permissions.plan, ActionType.EXPORT, export_rows=total)
    if gate.allowed:
        return GatedRows(rows=list(rows), total=total, gated=False)
    kept = list(rows[: gate.limit])
    watermark = f"{permissions.plan.value.upper()} PLAN EXPORT - truncated to {len(kept)} of {total} rows."
    if gate.upgrade_hint:
        watermark = f"{watermark} {gate.upgrade_hint}"
    return GatedRows(
        rows=kept,
        total=total,
        gated=True,
        watermark=watermark,
        reason=gate.reason,
        upgrade_hint=gate.upgrade_hint,
    )


def _cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def render_csv(rows: Sequence[ExportRow], watermark: Optional[str] = None) -> bytes:
    """RFC 4180 CSV with a BOM; a watermark is appended as a ``# ...`` comment record."""

    buffer = io.StringIO(newline="")
    writer = csv.writer(buffer, lineterminator="\r\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(EXPORT_COLUMNS)
    for row in rows:
        writer.writerow([_cell(row.get(column)) for column in EXPORT_COLUMNS])
    if watermark:
        writer.writerow([f"# {watermark}"])
    return buffer.getvalue().encode("utf-8-sig")


def read_csv_rows(content: Union[bytes, str]) -> Tuple[List[Dict[str, str]], Optional[str]]:
    """Parse ``render_csv`` output back into string rows plus the watermark, if any."""

    text = content.decode("utf-8-sig") if isinstance(content, bytes) else content.lstrip("\ufeff")
    records = list(csv.reader(io.StringIO(text, newline="")))
    if not records:
        return [], None
    header, body = records[0], records[1:]
    watermark = None
    if body and len(body[-1]) == 1 and body[-1][0].startswith("# "):
        watermark = body.pop()[0][2:]
    return [dict(zip(header, record)) for record in body], watermark


def _xlsx_value(value: Any) -> Any:
    """Scraped text without control characters, never read back as a formula."""

    if not isinstance(value, str):
        return value
    value = ILLEGAL_CHARACTERS_RE.sub("", value)
    if value.startswith("="):
        return "'" + value
    return value


def render_xlsx(
    rows: Sequence[ExportRow],
    watermark: Optional[str] = None,
    worksheet_name: str = "Export",
) -> bytes:
    """Single-sheet workbook: bold header, data rows, optional merged grey footer."""

    workbook = Workbook()
    sheet = workbook.active
    sheet.title = worksheet_name or "Export"
    sheet.append(list(EXPORT_COLUMNS))
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for index in range(1, len(EXPORT_COLUMNS) + 1):
        sheet.column_dimensions[get_column_letter(index)].width = 20
    for row in rows:
        sheet.append([_xlsx_value(row.get(column)) for column in EXPORT_COLUMNS])

    if watermark:
        sheet.append([_xlsx_value(watermark)])
        footer = sheet.max_row
        cell = sheet.cell(row=footer, column=1)
        cell.font = Font(italic=True, color="FF808080")
        cell.alignment = Alignment(horizontal="left", vertical="center")
        sheet.merge_cells(start_row=footer, start_column=1, end_row=footer, end_column=len(EXPORT_COLUMNS))

    workbook.properties.creator = "LeadScope export"
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def export_filename(dataset_id: UUID, fmt: ExportFormat) -> str:
    stamp = utcnow().strftime("%Y%m%dT%H%M%SZ")
    return f"export-{dataset_id}-{stamp}.{fmt.value}"


async def export_dataset(
    dataset_id: Union[UUID, str],
    user_id: Union[UUID, str],
    format: Union[ExportFormat, str] = ExportFormat.CSV,
    *,
    store,
    permissions: PermissionsResolver,
    settings: ExportSettings = export_settings,
) -> ExportResult:
    """Build, gate and render an export of one dataset.

    Raises ``ValueError`` for malformed ids or an unknown format and
    ``DatasetNotFoundError`` for an unknown dataset.
    """

    dataset_id = coerce_uuid(dataset_id, "dataset_id")
    user_id = coerce_uuid(user_id, "user_id")
    fmt = ExportFormat(format)

    dataset = store.get_dataset(dataset_id)
    if dataset is None:
        raise DatasetNotFoundError(dataset_id)

    def finish(result: ExportResult) -> ExportResult:
        log_action(
            user_id=user_id,
            action="export",
            dataset_id=dataset_id,
            result_summary=f"{result.rows_returned} of {result.rows_total} rows as {fmt.value}",
            gated=result.gated,
            error=result.error,
            metadata={"format": fmt.value, "filename": result.filename, "schema_version": SCHEMA_VERSION},
        )
        return result

    if dataset.user_id != user_id:
        return finish(ExportResult(success=False, format=fmt, error="Dataset does not belong to user"))

    user = permissions.resolve(user_id)
    usage = check_user_usage(store, user, user_id, UsageAction.EXPORT)
    if not usage.allowed:
        return finish(
            ExportResult(
                success=False,
                format=fmt,
                gated=True,
                reason=usage.reason,
                upgrade_hint=usage.upgrade_hint,
            )
        )

    rows = build_export_rows(store, dataset)
    gated = apply_export_gate(rows, user)
    if fmt is ExportFormat.CSV:
        content = render_csv(gated.rows, gated.watermark)
    else:
        content = render_xlsx(gated.rows, gated.watermark, settings.worksheet_name)
    filename = export_filename(dataset_id, fmt)

    record_usage(store, user_id, UsageAction.EXPORT)
    store.log_export(
        ExportLog(
            dataset_id=dataset_id,
            user_id=user_id,
            plan=user.plan,
            format=fmt,
            rows_returned=len(gated.rows),
            rows_total=gated.total,
            gated=gated.gated,
            watermark=gated.watermark or "",
            filename=filename,
        )
    )
    logger.info("export_rendered", dataset_id=str(dataset_id), rows=len(gated.rows), bytes=len(content))
    return finish(
        ExportResult(
            success=True,
            format=fmt,
            rows_returned=len(gated.rows),
            rows_total=gated.total,
            gated=gated.gated,
            watermark=gated.watermark,
            file=content,
            filename=filename,
            reason=gated.reason,
            upgrade_hint=gated.upgrade_hint,
            metadata={"schema_version": SCHEMA_VERSION, "content_type": CONTENT_TYPES[fmt]},
        )
    )
