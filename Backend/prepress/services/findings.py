"""
Findings and fix logs.

Findings record what preflight detected (missing DPI, spot colours, ...);
fix logs are the audit trail of automated or manual repairs. Both are
written while the job is running, become immutable once the job is
terminal, and are cascade-deleted with the job.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from prepress.core.config import settings
from prepress.core.errors import FindingsLockedError, PrepressError
from prepress.db import TERMINAL_STATUSES, get_async_db_connection, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

FINDING_TYPES = (
    "missing_dpi",
    "spot_color_detected",
    "font_not_embedded",
    "low_resolution_image",
    "rgb_colorspace",
    "transparency_detected",
    "other",
)

FIX_TYPES = (
    "rgb_to_cmyk",
    "normalize_dpi",
    "flatten_transparency",
    "embed_fonts",
    "remove_spot_color",
    "pdf_normalize",
    "other",
)

# Production marks, not inks: never reported as spot colours
OPERATIONAL_SPOT_COLORS = ("cutcontour", "spotwhite", "white", "cut", "dieline")


def is_operational_spot_color(color_name: str) -> bool:
    return color_name.lower().strip() in OPERATIONAL_SPOT_COLORS


@dataclass
class Finding:
    id: str
    organization_id: str
    job_id: str
    finding_type: str
    severity: str
    message: str
    created_at: datetime
    page_number: Optional[int] = None
    artboard_name: Optional[str] = None
    object_reference: Optional[str] = None
    spot_color_name: Optional[str] = None
    color_model: Optional[str] = None
    detected_dpi: Optional[int] = None
    required_dpi: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "jobId": self.job_id,
            "findingType": self.finding_type,
            "severity": self.severity,
            "message": self.message,
            "pageNumber": self.page_number,
            "artboardName": self.artboard_name,
            "objectReference": self.object_reference,
            "spotColorName": self.spot_color_name,
            "colorModel": self.color_model,
            "detectedDpi": self.detected_dpi,
            "requiredDpi": self.required_dpi,
            "metadata": self.metadata,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class FixLog:
    id: str
    organization_id: str
    job_id: str
    fix_type: str
    description: str
    created_at: datetime
    fixed_by_user_id: Optional[str] = None
    before_snapshot: Optional[Dict[str, Any]] = None
    after_snapshot: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "jobId": self.job_id,
            "fixType": self.fix_type,
            "description": self.description,
            "fixedByUserId": self.fixed_by_user_id,
            "beforeSnapshot": self.before_snapshot,
            "afterSnapshot": self.after_snapshot,
            "createdAt": self.created_at.isoformat(),
        }


def _load_json(value):
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def _dump_json(value) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _row_to_finding(row) -> Finding:
    r = dict(row)
    return Finding(
        id=r["id"],
        organization_id=r["organization_id"],
        job_id=r["job_id"],
        finding_type=r["finding_type"],
        severity=r["severity"],
        message=r["message"],
        created_at=parse_timestamp(r["created_at"]),
        page_number=r["page_number"],
        artboard_name=r["artboard_name"],
        object_reference=r["object_reference"],
        spot_color_name=r["spot_color_name"],
        color_model=r["color_model"],
        detected_dpi=r["detected_dpi"],
        required_dpi=r["required_dpi"],
        metadata=_load_json(r["metadata"]) or {},
    )


def _row_to_fix_log(row) -> FixLog:
    r = dict(row)
    return FixLog(
        id=r["id"],
        organization_id=r["organization_id"],
        job_id=r["job_id"],
        fix_type=r["fix_type"],
        description=r["description"],
        created_at=parse_timestamp(r["created_at"]),
        fixed_by_user_id=r["fixed_by_user_id"],
        before_snapshot=_load_json(r["before_snapshot"]),
        after_snapshot=_load_json(r["after_snapshot"]),
    )


class FindingsStore:
    """Append-only persistence for findings and fix logs."""

    async def _ensure_open(self, conn, job_id: str):
        cursor = await conn.execute("SELECT status FROM prepress_jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        if row is None:
            raise PrepressError(f"Prepress job {job_id} not found")
        status = dict(row)["status"]
        if status in TERMINAL_STATUSES:
            raise FindingsLockedError(
                f"Prepress job {job_id} is {status}; findings are immutable",
                details={"jobId": job_id, "status": status},
            )

    async def create_finding(
        self,
        job_id: str,
        organization_id: str,
        finding_type: str,
        message: str,
        severity: str = "info",
        page_number: Optional[int] = None,
        artboard_name: Optional[str] = None,
        object_reference: Optional[str] = None,
        spot_color_name: Optional[str] = None,
        color_model: Optional[str] = None,
        detected_dpi: Optional[int] = None,
        required_dpi: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Finding:
        if finding_type not in FINDING_TYPES:
            raise ValueError(f"Unknown finding type: {finding_type}")

        finding = Finding(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            job_id=job_id,
            finding_type=finding_type,
            severity=severity,
            message=message,
            created_at=utcnow(),
            page_number=page_number,
            artboard_name=artboard_name,
            object_reference=object_reference,
            spot_color_name=spot_color_name,
            color_model=color_model,
            detected_dpi=detected_dpi,
            required_dpi=required_dpi,
            metadata=metadata or {},
        )
        query = """
            INSERT INTO prepress_findings
                (id, organization_id, job_id, finding_type, severity, message, page_number,
                 artboard_name, object_reference, spot_color_name, color_model,
                 detected_dpi, required_dpi, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        args = (
            finding.id, organization_id, job_id, finding_type, severity, message, page_number,
            artboard_name, object_reference, spot_color_name, color_model,
            detected_dpi, required_dpi, _dump_json(finding.metadata), finding.created_at,
        )
        async with get_async_db_connection() as conn:
            await self._ensure_open(conn, job_id)
            await conn.execute(query, args)
            await conn.commit()
        return finding

    async def create_fix_log(
        self,
        job_id: str,
        organization_id: str,
        fix_type: str,
        description: str,
        fixed_by_user_id: Optional[str] = None,
        before_snapshot: Optional[Dict[str, Any]] = None,
        after_snapshot: Optional[Dict[str, Any]] = None,
    ) -> FixLog:
        if fix_type not in FIX_TYPES:
            raise ValueError(f"Unknown fix type: {fix_type}")

        fix_log = FixLog(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            job_id=job_id,
            fix_type=fix_type,
            description=description,
            created_at=utcnow(),
            fixed_by_user_id=fixed_by_user_id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )
        query = """
            INSERT INTO prepress_fix_logs
                (id, organization_id, job_id, fix_type, description, fixed_by_user_id,
                 before_snapshot, after_snapshot, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        args = (
            fix_log.id, organization_id, job_id, fix_type, description, fixed_by_user_id,
            _dump_json(before_snapshot), _dump_json(after_snapshot), fix_log.created_at,
        )
        async with get_async_db_connection() as conn:
            await self._ensure_open(conn, job_id)
            await conn.execute(query, args)
            await conn.commit()
        return fix_log

    async def get_job_findings(self, job_id: str, organization_id: str) -> List[Finding]:
        query = """
            SELECT * FROM prepress_findings
            WHERE job_id = ? AND organization_id = ?
            ORDER BY created_at
        """
        async with get_async_db_connection() as conn:
            cursor = await conn.execute(query, (job_id, organization_id))
            rows = await cursor.fetchall()
        return [_row_to_finding(r) for r in rows]

    async def get_job_fix_logs(self, job_id: str, organization_id: str) -> List[FixLog]:
        query = """
            SELECT * FROM prepress_fix_logs
            WHERE job_id = ? AND organization_id = ?
            ORDER BY created_at
        """
        async with get_async_db_connection() as conn:
            cursor = await conn.execute(query, (job_id, organization_id))
            rows = await cursor.fetchall()
        return [_row_to_fix_log(r) for r in rows]

    # ─── Helpers used by the pipeline ────────────────────────────────────────

    async def log_missing_dpi(
        self,
        job_id: str,
        organization_id: str,
        detected_dpi: Optional[int] = None,
        required_dpi: Optional[int] = None,
        page_number: Optional[int] = None,
        message: Optional[str] = None,
    ) -> Finding:
        # Informational until DPI requirements are enforced per product
        required_dpi = required_dpi or settings.MIN_REQUIRED_DPI
        return await self.create_finding(
            job_id,
            organization_id,
            "missing_dpi",
            message or "DPI metadata missing or below requirements",
            severity="info",
            page_number=page_number,
            detected_dpi=detected_dpi,
            required_dpi=required_dpi,
            metadata={"detectedDpi": detected_dpi, "requiredDpi": required_dpi, "pageNumber": page_number},
        )

    async def log_spot_color(
        self,
        job_id: str,
        organization_id: str,
        spot_color_name: str,
        color_model: str = "Spot",
        page_number: Optional[int] = None,
        artboard_name: Optional[str] = None,
        object_reference: Optional[str] = None,
    ) -> Optional[Finding]:
        """Returns None for operational colours (CutContour, White, ...)."""
        if is_operational_spot_color(spot_color_name):
            logger.info(f"Skipping operational spot color: {spot_color_name}")
            return None

        return await self.create_finding(
            job_id,
            organization_id,
            "spot_color_detected",
            f"Spot color detected: {spot_color_name}",
            severity="info",
            page_number=page_number,
            artboard_name=artboard_name,
            object_reference=object_reference,
            spot_color_name=spot_color_name,
            color_model=color_model,
            metadata={"spotColorName": spot_color_name, "colorModel": color_model, "pageNumber": page_number},
        )

    async def log_fix(
        self,
        job_id: str,
        organization_id: str,
        fix_type: str,
        description: str,
        fixed_by_user_id: Optional[str] = None,
        before_snapshot: Optional[Dict[str, Any]] = None,
        after_snapshot: Optional[Dict[str, Any]] = None,
    ) -> FixLog:
        """fixed_by_user_id=None marks an automated fix."""
        return await self.create_fix_log(
            job_id,
            organization_id,
            fix_type,
            description,
            fixed_by_user_id=fixed_by_user_id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )


findings_store = FindingsStore()
