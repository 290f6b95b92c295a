"""
Deployment service: bulk deploy, lifecycle transitions and catalog registration.

Bulk deploy modes:
    auto    → PENDING rows in the organization's workspace; the external
              report id arrives later via confirm_deployment or a scan.
    manual  → ACTIVE rows with operator-supplied external ids.
    bulk    → same as manual, many items in one request.

Every item is processed inside its own SAVEPOINT: a bad item lands in
``failed`` and the rest of the batch still commits. Re-selecting a template
that already has an active deployment lands in ``skipped`` with no new row
and no new log entry.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConfigurationError, NotFoundError, ValidationError
from app.models import db
from app.models.catalog import ReportTemplate
from app.models.deployment import DeployedReport, DeploymentLogEntry, write_deployment_log
from app.models.organization import Organization
from app.services.catalog_matcher import deployed_template_ids, get_organization_provider_codes
from app.services.match_scoring import calculate_match_score
from app.services.provider_codes import ParsedTemplate, parse_template_name

logger = logging.getLogger(__name__)

DEPLOY_MODES = ("auto", "manual", "bulk")
DEFAULT_LOG_LIMIT = 100
MAX_LOG_LIMIT = 500


def _get_organization(organization_id: int) -> Organization:
    org = db.session.get(Organization, organization_id)
    if org is None:
        raise NotFoundError(resource="Organization", resource_id=organization_id)
    return org


def _get_deployed_report(organization_id: int, report_id: int) -> DeployedReport:
    report = db.session.execute(
        select(DeployedReport).where(
            DeployedReport.id == report_id,
            DeployedReport.organization_id == organization_id,
        )
    ).scalar_one_or_none()
    if report is None:
        raise NotFoundError(
            resource="DeployedReport", resource_id=report_id, organization_id=organization_id,
        )
    return report


# ═════════════════════════════════════════════════════════════════════════════
# Catalog registration
# ═════════════════════════════════════════════════════════════════════════════


def create_template(data: dict) -> ReportTemplate:
    """Register a catalog template; structured code columns come from the name.

    Raises:
        ValidationError: If ``name`` is missing.
    """
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Template name is required", details={"field": "name"})

    template = ReportTemplate(
        name=name,
        category=data.get("category") or "general",
        description=data.get("description") or "",
        is_template=data.get("is_template", True),
        is_active=data.get("is_active", True),
        powerbi_report_id=data.get("powerbi_report_id"),
    )
    template.apply_parsed_codes(parse_template_name(name))
    db.session.add(template)
    db.session.commit()
    logger.info("Template registered id=%s name=%r codes=%s", template.id, name, template.provider_code)
    return template


def sync_template_codes() -> dict:
    """Re-derive stored code columns from every template's name. Idempotent."""
    counts = {"checked": 0, "updated": 0}
    templates = db.session.execute(select(ReportTemplate).order_by(ReportTemplate.id)).scalars().all()
    for template in templates:
        counts["checked"] += 1
        parsed = parse_template_name(template.name)
        if parsed.to_dict() == ParsedTemplate.from_template(template).to_dict():
            continue
        template.apply_parsed_codes(parsed)
        counts["updated"] += 1
    db.session.commit()
    logger.info("Template code sync: %s", counts)
    return counts


# ═════════════════════════════════════════════════════════════════════════════
# Bulk deploy
# ═════════════════════════════════════════════════════════════════════════════


def _coerce_template_id(value) -> int:
    """Integer template id from a request item. Raises ValidationError otherwise."""
    # bool is an int subclass
    if isinstance(value, bool):
        raise ValidationError(f"Invalid template_id: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    raise ValidationError(f"Invalid template_id: {value!r}")


def _external_id_or_none(item: dict) -> str | None:
    value = item.get("powerbi_report_id")
    return value if isinstance(value, str) else None


def _existing_template_id(template_id) -> int | None:
    if isinstance(template_id, int) and db.session.get(ReportTemplate, template_id) is not None:
        return template_id
    return None


def _normalize_items(mode: str, template_ids: list | None, deployments: list | None) -> list[dict]:
    if mode == "auto":
        if not template_ids:
            raise ValidationError("report_ids is required for auto mode", details={"field": "report_ids"})
        return [{"template_id": tid} for tid in template_ids]
    if not deployments:
        raise ValidationError(
            f"deployments is required for {mode} mode", details={"field": "deployments"},
        )
    return [dict(item) for item in deployments]


def _deploy_one(org: Organization, mode: str, item: dict, actor: str) -> DeployedReport:
    """Create one DeployedReport row. Raises ValidationError for per-item problems."""
    template_id = item["template_id"]
    template = db.session.get(ReportTemplate, template_id)
    if template is None or not template.is_active:
        raise ValidationError(f"Template {template_id} not found")

    if mode == "auto":
        score = calculate_match_score(
            ParsedTemplate.from_template(template), get_organization_provider_codes(org.id),
        )
        if score <= 0:
            raise ValidationError(f"Template {template.id} does not match the organization's providers")
        report = DeployedReport(
            organization_id=org.id,
            report_template_id=template.id,
            powerbi_workspace_id=org.powerbi_workspace_id,
            name=template.name,
            deployment_status="pending",
            deployed_by=actor,
            deployment_notes=f"Auto-deployed by {actor}",
        )
    else:
        external_id = _external_id_or_none(item)
        if not external_id:
            raise ValidationError(f"powerbi_report_id is required for template {template.id}")
        report = DeployedReport(
            organization_id=org.id,
            report_template_id=template.id,
            powerbi_report_id=external_id,
            powerbi_workspace_id=item.get("powerbi_workspace_id") or org.powerbi_workspace_id,
            powerbi_dataset_id=item.get("powerbi_dataset_id"),
            name=template.name,
            deployment_status="active",
            deployed_at=datetime.now(timezone.utc),
            deployed_by=actor,
            deployment_notes=item.get("notes") or "",
        )

    with db.session.begin_nested():
        db.session.add(report)
        db.session.flush()
    return report


def deploy_reports(
    organization_id: int,
    mode: str,
    template_ids: list | None = None,
    deployments: list | None = None,
    actor: str = "system",
) -> dict:
    """Deploy catalog templates to an organization.

    Returns:
        {"deployed": int, "deployments": [...], "skipped": [...], "failed": [...]}

    Raises:
        NotFoundError: Unknown organization.
        ValidationError: Unknown mode or empty selection.
        ConfigurationError: Auto mode without a workspace id.
    """
    if mode not in DEPLOY_MODES:
        raise ValidationError(
            f"Invalid deployment mode: {mode}", details={"allowed": list(DEPLOY_MODES)},
        )
    org = _get_organization(organization_id)
    if mode == "auto" and not org.powerbi_workspace_id:
        raise ConfigurationError("Organization does not have a Power BI workspace configured")

    items = _normalize_items(mode, template_ids, deployments)
    already = deployed_template_ids(org.id)
    method = "api" if mode == "auto" else "manual_upload"

    deployed, skipped, failed = [], [], []
    for item in items:
        template_id = item.get("template_id")
        try:
            template_id = item["template_id"] = _coerce_template_id(template_id)
        except ValidationError as exc:
            failed.append({"template_id": template_id, "error": str(exc)})
            write_deployment_log(
                organization_id=org.id,
                action="deploy",
                status="failed",
                actor=actor,
                deployment_method=method,
                powerbi_report_id=_external_id_or_none(item),
                error_message=str(exc),
                details={"template_id": repr(template_id)},
            )
            continue

        if template_id in already:
            skipped.append({"template_id": template_id, "reason": "already_deployed"})
            continue

        try:
            report = _deploy_one(org, mode, item, actor)
        except IntegrityError:
            skipped.append({"template_id": template_id, "reason": "already_deployed"})
            continue
        except ValidationError as exc:
            failed.append({"template_id": template_id, "error": str(exc)})
            write_deployment_log(
                organization_id=org.id,
                action="deploy",
                status="failed",
                actor=actor,
                deployment_method=method,
                report_template_id=_existing_template_id(template_id),
                powerbi_report_id=_external_id_or_none(item),
                error_message=str(exc),
            )
            continue

        already.add(template_id)
        write_deployment_log(
            organization_id=org.id,
            action="deploy",
            status="success",
            actor=actor,
            deployment_method=method,
            report_template_id=report.report_template_id,
            deployed_report_id=report.id,
            powerbi_report_id=report.powerbi_report_id,
            powerbi_workspace_id=report.powerbi_workspace_id,
            details={"mode": mode},
        )
        deployed.append(report.to_dict())

    db.session.commit()
    logger.info(
        "Bulk deploy org=%s mode=%s deployed=%d skipped=%d failed=%d",
        org.id, mode, len(deployed), len(skipped), len(failed),
    )
    return {
        "deployed": len(deployed),
        "deployments": deployed,
        "skipped": skipped,
        "failed": failed,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle transitions
# ═════════════════════════════════════════════════════════════════════════════


def _transition(report: DeployedReport, new_status: str) -> None:
    if not report.can_transition(new_status):
        raise ValidationError(
            f"Cannot move deployment {report.id} from {report.deployment_status} to {new_status}",
            details={"from": report.deployment_status, "to": new_status},
        )
    report.deployment_status = new_status


def remove_deployed_reports(organization_id: int, report_ids: list, actor: str = "system") -> dict:
    """Archive deployed reports. Rows are kept; ``is_active`` becomes false."""
    if not report_ids:
        raise ValidationError("report_ids is required", details={"field": "report_ids"})
    org = _get_organization(organization_id)

    removed, failed = [], []
    for report_id in report_ids:
        try:
            report = _get_deployed_report(org.id, report_id)
            _transition(report, "archived")
        except (NotFoundError, ValidationError) as exc:
            failed.append({"report_id": report_id, "error": str(exc)})
            continue
        report.deactivate()
        write_deployment_log(
            organization_id=org.id,
            action="delete",
            status="success",
            actor=actor,
            report_template_id=report.report_template_id,
            deployed_report_id=report.id,
            powerbi_report_id=report.powerbi_report_id,
            powerbi_workspace_id=report.powerbi_workspace_id,
        )
        removed.append(report.id)

    db.session.commit()
    logger.info("Archived deployments org=%s removed=%s failed=%d", org.id, removed, len(failed))
    return {"removed": len(removed), "report_ids": removed, "failed": failed}


def confirm_deployment(
    organization_id: int,
    report_id: int,
    actor: str = "system",
    powerbi_report_id: str | None = None,
) -> DeployedReport:
    """Move a pending deployment to active once the external report exists."""
    report = _get_deployed_report(organization_id, report_id)
    _transition(report, "active")
    if powerbi_report_id:
        report.powerbi_report_id = powerbi_report_id
    report.deployed_at = datetime.now(timezone.utc)
    report.error_message = None
    write_deployment_log(
        organization_id=organization_id,
        action="activate",
        status="success",
        actor=actor,
        deployment_method="api",
        report_template_id=report.report_template_id,
        deployed_report_id=report.id,
        powerbi_report_id=report.powerbi_report_id,
        powerbi_workspace_id=report.powerbi_workspace_id,
    )
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError(
            f"External report {powerbi_report_id} is already linked to another deployment",
        )
    return report


def mark_deployment_failed(
    organization_id: int,
    report_id: int,
    error: str,
    actor: str = "system",
) -> DeployedReport:
    report = _get_deployed_report(organization_id, report_id)
    _transition(report, "failed")
    report.error_message = error or "Deployment failed"
    write_deployment_log(
        organization_id=organization_id,
        action="fail",
        status="failed",
        actor=actor,
        report_template_id=report.report_template_id,
        deployed_report_id=report.id,
        powerbi_report_id=report.powerbi_report_id,
        powerbi_workspace_id=report.powerbi_workspace_id,
        error_message=report.error_message,
    )
    db.session.commit()
    return report


def list_deployment_log(organization_id: int, limit: int = DEFAULT_LOG_LIMIT) -> list[DeploymentLogEntry]:
    """Newest first."""
    _get_organization(organization_id)
    limit = max(1, min(int(limit), MAX_LOG_LIMIT))
    return db.session.execute(
        select(DeploymentLogEntry)
        .where(DeploymentLogEntry.organization_id == organization_id)
        .order_by(DeploymentLogEntry.id.desc())
        .limit(limit)
    ).scalars().all()
