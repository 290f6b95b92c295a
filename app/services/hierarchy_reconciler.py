"""Hierarchy reconciler: converge an organization's module → tab → report rows.

Desired state comes from the global hierarchy (GlobalModule / GlobalTab, each
tab pointing at one catalog template and optionally one page). Observed state
comes from a workspace scan (external reports and their pages). The
reconciler applies the minimal set of create / link operations so that
running it again against an unchanged scan changes nothing.

Ensure primitives (shared by every entry point):

    ensure_deployed_report      keyed by (organization, external report id)
    ensure_organization_module  keyed by (organization, module name)
    ensure_tenant_tab           keyed by (organization module, tab name)

Each primitive is check-then-act inside its own SAVEPOINT. The unique
constraint on the identifying key is the real guard: an IntegrityError on
insert means a concurrent run got there first, so the row is re-read and
treated as ensured.

Entry points:

    scan_organization_workspace  connector call + reconcile + commit
    reconcile_workspace_scan     pure DB pass over an already-fetched scan
    deploy_tab                   single operator-chosen tab
    hide_tab / remove_tab        tab overrides (status flips only)

Matching misses are data, not errors: they land in ``unmatched``. Per-tab
failures land in ``failed`` and the loop continues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, TypeVar

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConfigurationError, ExternalServiceError, NotFoundError, ValidationError
from app.integrations.powerbi_gateway import (
    PowerBIGateway,
    ScannedPage,
    ScannedReport,
    WorkspaceScanConnector,
)
from app.models import db
from app.models.catalog import GlobalModule, GlobalTab, ReportTemplate
from app.models.deployment import (
    DeployedReport,
    OrganizationModule,
    TenantTab,
    write_deployment_log,
)
from app.models.organization import Organization

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRIORITY_REPORT_MARKER = "immediate priorities"


# ─── Result container ──────────────────────────────────────────────────────────


@dataclass
class ReconciliationResult:
    deployed: list[dict] = field(default_factory=list)
    already_deployed: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)
    unmatched: list[dict] = field(default_factory=list)
    priority_deployed: list[dict] = field(default_factory=list)
    priority_already_deployed: list[dict] = field(default_factory=list)
    priority_failed: list[dict] = field(default_factory=list)
    total_workspace_reports: int = 0
    total_global_tabs: int = 0

    @property
    def matched(self) -> int:
        return len(self.deployed) + len(self.already_deployed) + len(self.failed)

    def summary(self) -> dict:
        return {
            "total_workspace_reports": self.total_workspace_reports,
            "total_global_tabs": self.total_global_tabs,
            "matched": self.matched,
            "deployed": len(self.deployed),
            "already_deployed": len(self.already_deployed),
            "failed": len(self.failed),
            "unmatched": len(self.unmatched),
            "priority_reports_deployed": len(self.priority_deployed),
            "priority_reports_already_deployed": len(self.priority_already_deployed),
            "priority_reports_failed": len(self.priority_failed),
        }

    def to_dict(self) -> dict:
        return {
            "summary": self.summary(),
            "deployed": self.deployed,
            "already_deployed": self.already_deployed,
            "failed": self.failed,
            "unmatched": self.unmatched,
            "priority_deployed": self.priority_deployed,
            "priority_already_deployed": self.priority_already_deployed,
            "priority_failed": self.priority_failed,
        }


# ─── Ensure primitives ─────────────────────────────────────────────────────────


def _get_or_create(lookup: Callable[[], T | None], factory: Callable[[], T], label: str) -> tuple[T, bool]:
    """Return (row, created). Uniqueness violations resolve to the existing row."""
    existing = lookup()
    if existing is not None:
        return existing, False
    try:
        with db.session.begin_nested():
            obj = factory()
            db.session.add(obj)
            db.session.flush()
        return obj, True
    except IntegrityError:
        existing = lookup()
        if existing is None:
            raise
        logger.info("%s inserted concurrently; reusing id=%s", label, existing.id)
        return existing, False


def _get_organization(organization_id: int) -> Organization:
    org = db.session.get(Organization, organization_id)
    if org is None:
        raise NotFoundError(resource="Organization", resource_id=organization_id)
    return org


def ensure_deployed_report(
    org: Organization,
    *,
    external_report_id: str,
    template_id: int | None,
    name: str | None,
    actor: str = "system",
    triggered_by: str = "scan",
    deployment_method: str = "workspace_scan",
) -> tuple[DeployedReport, bool]:
    """Ensure an active DeployedReport exists for (org, external report id).

    Falls back to an active row for the same template, so a template is
    never deployed twice for one organization. A pending placeholder for the same template (auto bulk-deploy awaiting
    its external id) is linked and activated instead of creating a second
    row. Archived rows are never resurrected.

    Raises:
        ValidationError: If the matching row is archived or failed.
    """

    def _lookup():
        return db.session.execute(
            select(DeployedReport).where(
                DeployedReport.organization_id == org.id,
                DeployedReport.powerbi_report_id == external_report_id,
            )
        ).scalar_one_or_none()

    existing = _lookup()
    if existing is not None:
        if existing.deployment_status in ("archived", "failed"):
            raise ValidationError(
                f"Deployed report {existing.id} for external report {external_report_id} "
                f"is {existing.deployment_status}",
            )
        return existing, False

    if template_id is not None:
        by_template = db.session.execute(
            select(DeployedReport).where(
                DeployedReport.organization_id == org.id,
                DeployedReport.report_template_id == template_id,
                DeployedReport.deployment_status == "active",
                DeployedReport.is_active.is_(True),
            ).order_by(DeployedReport.id)
        ).scalars().first()
        if by_template is not None:
            return by_template, False

        placeholder = db.session.execute(
            select(DeployedReport).where(
                DeployedReport.organization_id == org.id,
                DeployedReport.report_template_id == template_id,
                DeployedReport.powerbi_report_id.is_(None),
                DeployedReport.deployment_status == "pending",
            ).order_by(DeployedReport.id)
        ).scalars().first()
        if placeholder is not None:
            with db.session.begin_nested():
                placeholder.powerbi_report_id = external_report_id
                placeholder.powerbi_workspace_id = org.powerbi_workspace_id
                placeholder.deployment_status = "active"
                placeholder.deployed_at = datetime.now(timezone.utc)
                placeholder.name = placeholder.name or name
                db.session.flush()
            write_deployment_log(
                organization_id=org.id,
                action="activate",
                status="success",
                actor=actor,
                triggered_by=triggered_by,
                deployment_method=deployment_method,
                report_template_id=template_id,
                deployed_report_id=placeholder.id,
                powerbi_report_id=external_report_id,
                powerbi_workspace_id=org.powerbi_workspace_id,
            )
            return placeholder, False

    def _factory():
        return DeployedReport(
            organization_id=org.id,
            report_template_id=template_id,
            powerbi_report_id=external_report_id,
            powerbi_workspace_id=org.powerbi_workspace_id,
            name=name,
            deployment_status="active",
            deployed_at=datetime.now(timezone.utc),
            deployed_by=actor,
            deployment_notes="Linked from workspace scan" if triggered_by == "scan" else "",
        )

    report, created = _get_or_create(_lookup, _factory, "DeployedReport")
    if created:
        write_deployment_log(
            organization_id=org.id,
            action="deploy",
            status="success",
            actor=actor,
            triggered_by=triggered_by,
            deployment_method=deployment_method,
            report_template_id=template_id,
            deployed_report_id=report.id,
            powerbi_report_id=external_report_id,
            powerbi_workspace_id=org.powerbi_workspace_id,
        )
    return report, created


def ensure_organization_module(
    org: Organization,
    module_name: str,
    *,
    require_global: bool = True,
) -> tuple[OrganizationModule, bool]:
    """Ensure the organization has a module row for ``module_name``.

    Raises:
        ValidationError: If ``require_global`` and no GlobalModule has that name.
    """

    def _lookup():
        return db.session.execute(
            select(OrganizationModule).where(
                OrganizationModule.organization_id == org.id,
                OrganizationModule.name == module_name,
            )
        ).scalar_one_or_none()

    existing = _lookup()
    if existing is not None:
        if not existing.is_active:
            existing.reactivate()
        return existing, False

    global_module = db.session.execute(
        select(GlobalModule).where(GlobalModule.name == module_name)
    ).scalar_one_or_none()
    if global_module is None and require_global:
        raise ValidationError(f"Could not find or create organization module: {module_name}")

    def _factory():
        return OrganizationModule(
            organization_id=org.id,
            global_module_id=global_module.id if global_module else None,
            name=module_name,
            display_name=global_module.display_name if global_module else module_name,
        )

    return _get_or_create(_lookup, _factory, "OrganizationModule")


def ensure_tenant_tab(
    org: Organization,
    module: OrganizationModule,
    tab_name: str,
    *,
    deployed_report: DeployedReport | None,
    global_tab: GlobalTab | None = None,
    page: ScannedPage | None = None,
    sort_order: int = 0,
) -> tuple[TenantTab, bool]:
    """Ensure a TenantTab exists for (module, tab_name). Existing rows are left untouched."""

    def _lookup():
        return db.session.execute(
            select(TenantTab).where(
                TenantTab.organization_module_id == module.id,
                TenantTab.tab_name == tab_name,
            )
        ).scalar_one_or_none()

    def _factory():
        return TenantTab(
            organization_id=org.id,
            organization_module_id=module.id,
            global_tab_id=global_tab.id if global_tab else None,
            deployed_report_id=deployed_report.id if deployed_report else None,
            tab_name=tab_name,
            page_name=page.name if page else None,
            page_display_name=page.label if page else None,
            sort_order=sort_order,
            override_mode="add",
        )

    return _get_or_create(_lookup, _factory, "TenantTab")


# ─── Scan matching helpers ─────────────────────────────────────────────────────


def _index_reports_by_name(scan: list[ScannedReport], result: ReconciliationResult) -> dict[str, ScannedReport]:
    """Lower-cased name → first scanned report with that name."""
    index: dict[str, ScannedReport] = {}
    for report in scan:
        key = (report.name or "").lower()
        if key in index:
            result.unmatched.append({
                "type": "duplicate_name",
                "report_id": report.external_report_id,
                "report_name": report.name,
                "kept_report_id": index[key].external_report_id,
            })
            continue
        index[key] = report
    return index


def _find_page(report: ScannedReport, expected: str) -> ScannedPage | None:
    wanted = expected.lower()
    for page in report.pages:
        if page.label.lower() == wanted:
            return page
    return None


def _load_global_tabs() -> list[GlobalTab]:
    return db.session.execute(
        select(GlobalTab)
        .where(GlobalTab.is_active.is_(True))
        .order_by(GlobalTab.module_name, GlobalTab.sort_order, GlobalTab.tab_name, GlobalTab.id)
    ).scalars().all()


# ─── Scan reconciliation ───────────────────────────────────────────────────────


def _reconcile_tab(org: Organization, tab: GlobalTab, report: ScannedReport, page: ScannedPage,
                   actor: str, result: ReconciliationResult) -> None:
    template = tab.report_template
    info = {
        "module": tab.module_name,
        "tab": tab.tab_name,
        "report": report.name,
        "page": page.label,
    }

    deployed_report, _ = ensure_deployed_report(
        org,
        external_report_id=report.external_report_id,
        template_id=template.id,
        name=report.name,
        actor=actor,
    )
    module, _ = ensure_organization_module(org, tab.module_name)
    tenant_tab, created = ensure_tenant_tab(
        org, module, tab.tab_name,
        deployed_report=deployed_report,
        global_tab=tab,
        page=page,
        sort_order=tab.sort_order or 0,
    )
    info["tenant_tab_id"] = tenant_tab.id
    info["deployed_report_id"] = tenant_tab.deployed_report_id

    if not created:
        result.already_deployed.append(info)
        return

    write_deployment_log(
        organization_id=org.id,
        action="link",
        status="success",
        actor=actor,
        triggered_by="scan",
        deployment_method="workspace_scan",
        report_template_id=template.id,
        deployed_report_id=deployed_report.id,
        powerbi_report_id=report.external_report_id,
        powerbi_workspace_id=org.powerbi_workspace_id,
        details={"module": tab.module_name, "tab": tab.tab_name, "page": page.name},
    )
    result.deployed.append(info)


def reconcile_workspace_scan(
    org: Organization,
    scan: list[ScannedReport],
    actor: str = "system",
) -> ReconciliationResult:
    """Match a scan against the global tabs and ensure the hierarchy. Does NOT commit."""
    result = ReconciliationResult(total_workspace_reports=len(scan))
    reports_by_name = _index_reports_by_name(scan, result)

    global_tabs = _load_global_tabs()
    result.total_global_tabs = len(global_tabs)
    mapped_report_names: set[str] = set()

    for tab in global_tabs:
        template = tab.report_template
        if template is None:
            continue
        key = template.name.lower()
        mapped_report_names.add(key)

        report = reports_by_name.get(key)
        if report is None:
            result.unmatched.append({
                "type": "report_not_found",
                "module": tab.module_name,
                "tab": tab.tab_name,
                "report_name": template.name,
            })
            continue

        page = _find_page(report, tab.expected_page_name)
        if page is None:
            result.unmatched.append({
                "type": "page_not_found",
                "module": tab.module_name,
                "tab": tab.tab_name,
                "report_name": report.name,
                "expected_page": tab.expected_page_name,
                "available_pages": report.page_labels,
            })
            continue

        try:
            # Rolls back every row this tab wrote, leaving the other tabs intact
            with db.session.begin_nested():
                _reconcile_tab(org, tab, report, page, actor, result)
        except Exception as exc:
            logger.exception(
                "Tab reconciliation failed org=%s module=%s tab=%s",
                org.id, tab.module_name, tab.tab_name,
            )
            error = str(exc) or exc.__class__.__name__
            result.failed.append({
                "module": tab.module_name,
                "tab": tab.tab_name,
                "report": report.name,
                "report_id": report.external_report_id,
                "page": page.label,
                "error": error,
            })
            write_deployment_log(
                organization_id=org.id,
                action="link",
                status="failed",
                actor=actor,
                triggered_by="scan",
                deployment_method="workspace_scan",
                report_template_id=template.id,
                powerbi_report_id=report.external_report_id,
                powerbi_workspace_id=org.powerbi_workspace_id,
                error_message=error,
                details={"module": tab.module_name, "tab": tab.tab_name},
            )

    for key, report in reports_by_name.items():
        if key not in mapped_report_names:
            result.unmatched.append({
                "type": "report_not_mapped",
                "report_id": report.external_report_id,
                "report_name": report.name,
                "pages": [{"name": p.name, "display_name": p.label} for p in report.pages],
            })

    deploy_priority_reports(org, scan, actor, result)
    return result


def deploy_priority_reports(
    org: Organization,
    scan: list[ScannedReport],
    actor: str,
    result: ReconciliationResult,
) -> None:
    """Ensure "Immediate Priorities" reports found in the scan are deployed.

    These role-specific reports are not reachable through any tab; they are
    linked to the catalog template with the same name.
    """
    for report in scan:
        if PRIORITY_REPORT_MARKER not in (report.name or "").lower():
            continue
        entry = {"report_name": report.name, "report_id": report.external_report_id}
        template = db.session.execute(
            select(ReportTemplate)
            .where(db.func.lower(ReportTemplate.name) == report.name.lower())
            .order_by(ReportTemplate.id)
        ).scalars().first()
        if template is None:
            result.priority_failed.append({**entry, "error": "Template report not found in catalog"})
            continue
        try:
            with db.session.begin_nested():
                _, created = ensure_deployed_report(
                    org,
                    external_report_id=report.external_report_id,
                    template_id=template.id,
                    name=report.name,
                    actor=actor,
                )
        except Exception as exc:
            logger.exception("Priority report deployment failed org=%s report=%s", org.id, report.name)
            result.priority_failed.append({**entry, "error": str(exc) or exc.__class__.__name__})
            continue
        (result.priority_deployed if created else result.priority_already_deployed).append(entry)


def scan_organization_workspace(
    organization_id: int,
    actor: str = "system",
    connector: WorkspaceScanConnector | None = None,
) -> dict:
    """Scan the organization's BI workspace and reconcile its hierarchy.

    Raises:
        NotFoundError: Unknown organization.
        ConfigurationError: Organization has no workspace id, or BI credentials are missing.
        ExternalServiceError: The connector failed for the whole scan.
    """
    org = _get_organization(organization_id)
    if not org.powerbi_workspace_id:
        raise ConfigurationError("Organization does not have a Power BI workspace configured")

    if connector is None:
        connector = PowerBIGateway.from_app_config(current_app.config)

    try:
        scan = connector.scan_workspace(org.powerbi_workspace_id)
    except ExternalServiceError as exc:
        write_deployment_log(
            organization_id=org.id,
            action="scan",
            status="failed",
            actor=actor,
            triggered_by="scan",
            deployment_method="workspace_scan",
            powerbi_workspace_id=org.powerbi_workspace_id,
            error_message=str(exc),
        )
        db.session.commit()
        raise

    result = reconcile_workspace_scan(org, scan, actor)
    write_deployment_log(
        organization_id=org.id,
        action="scan",
        status="success" if not result.failed else "failed",
        actor=actor,
        triggered_by="scan",
        deployment_method="workspace_scan",
        powerbi_workspace_id=org.powerbi_workspace_id,
        details=result.summary(),
    )
    db.session.commit()
    logger.info("Workspace scan org=%s summary=%s", org.id, result.summary())

    payload = result.to_dict()
    payload["organization_name"] = org.name
    payload["workspace_name"] = org.powerbi_workspace_name
    return payload


# ─── Single-tab operations ─────────────────────────────────────────────────────


def deploy_tab(
    organization_id: int,
    *,
    module_name: str,
    tab_name: str,
    powerbi_report_id: str,
    page_name: str,
    template_id: int | None = None,
    sort_order: int = 0,
    actor: str = "system",
) -> dict:
    """Deploy one tab chosen by an operator.

    Unlike the scan, an existing custom tab for (module, tab) is re-pointed
    at the given report and page.
    """
    org = _get_organization(organization_id)

    name = None
    if template_id is not None:
        template = db.session.get(ReportTemplate, template_id)
        if template is None:
            raise NotFoundError(resource="ReportTemplate", resource_id=template_id)
        name = template.name

    report, _ = ensure_deployed_report(
        org,
        external_report_id=powerbi_report_id,
        template_id=template_id,
        name=name or "Deployed Report",
        actor=actor,
        triggered_by="manual",
        deployment_method="manual_upload",
    )
    module, _ = ensure_organization_module(org, module_name, require_global=False)

    global_tab = db.session.execute(
        select(GlobalTab).where(
            GlobalTab.module_name == module_name,
            GlobalTab.tab_name == tab_name,
            GlobalTab.is_active.is_(True),
        )
    ).scalar_one_or_none()

    page = ScannedPage(external_page_id=page_name, name=page_name, display_name=page_name)
    tab, created = ensure_tenant_tab(
        org, module, tab_name,
        deployed_report=report,
        global_tab=global_tab,
        page=page,
        sort_order=sort_order,
    )
    if not created:
        tab.deployed_report_id = report.id
        tab.page_name = page_name
        tab.page_display_name = page_name
        tab.sort_order = sort_order
        tab.override_mode = "add"
        tab.reactivate()

    write_deployment_log(
        organization_id=org.id,
        action="link",
        status="success",
        actor=actor,
        triggered_by="manual",
        deployment_method="manual_upload",
        report_template_id=template_id,
        deployed_report_id=report.id,
        powerbi_report_id=powerbi_report_id,
        powerbi_workspace_id=org.powerbi_workspace_id,
        details={"module": module_name, "tab": tab_name, "page": page_name, "created": created},
    )
    db.session.commit()
    return {"tab": tab.to_dict(), "report": report.to_dict(), "created": created}


def hide_tab(
    organization_id: int,
    *,
    module_name: str,
    tab_name: str,
    global_tab_id: int | None = None,
    actor: str = "system",
) -> dict:
    """Hide a global tab for one organization via a ``hidden`` override row."""
    org = _get_organization(organization_id)
    module, _ = ensure_organization_module(org, module_name, require_global=False)

    global_tab = db.session.get(GlobalTab, global_tab_id) if global_tab_id else None
    tab, created = ensure_tenant_tab(
        org, module, tab_name,
        deployed_report=None,
        global_tab=global_tab,
        sort_order=999,
    )
    tab.override_mode = "hidden"
    tab.deactivate()
    logger.info("Tab hidden org=%s module=%s tab=%s by=%s", org.id, module_name, tab_name, actor)
    db.session.commit()
    return {"tab": tab.to_dict(), "created": created}


def remove_tab(organization_id: int, tab_id: int, actor: str = "system") -> dict:
    """Deactivate a deployed tab. The row is kept for the audit trail."""
    org = _get_organization(organization_id)
    tab = db.session.execute(
        select(TenantTab).where(TenantTab.id == tab_id, TenantTab.organization_id == org.id)
    ).scalar_one_or_none()
    if tab is None:
        raise NotFoundError(resource="TenantTab", resource_id=tab_id, organization_id=org.id)

    tab.deactivate()
    write_deployment_log(
        organization_id=org.id,
        action="delete",
        status="success",
        actor=actor,
        triggered_by="manual",
        deployed_report_id=tab.deployed_report_id,
        details={"tenant_tab_id": tab.id, "tab": tab.tab_name},
    )
    db.session.commit()
    return tab.to_dict()
