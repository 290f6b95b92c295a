"""
BI Report Deployment Platform
Per-organization deployment hierarchy models.

Models:
    - OrganizationModule: a tenant's instantiation of a GlobalModule.
    - TenantTab: a tenant's instantiation of a GlobalTab (or a custom /
      hidden override), keyed by (organization module, tab name).
    - DeployedReport: links one template to one externally-hosted report
      for one organization.
    - DeploymentLogEntry: immutable, append-only audit trail of every
      attempted create / link / delete action.

Hierarchy:
    Organization ─┬─ OrganizationModule ── TenantTab ──▶ DeployedReport
                  └─ DeployedReport ──▶ ReportTemplate

DeployedReport lifecycle:
    pending ──▶ active ──▶ archived
       │          │           ▲
       └──────────┴──▶ failed ┘
"""

from datetime import datetime, timezone

from sqlalchemy import event as _sa_event

from app.models import db
from app.models.base import OrganizationModel
from app.models.soft_delete import SoftDeleteMixin

# ── Constants ────────────────────────────────────────────────────────────────

DEPLOYMENT_STATUSES = {"pending", "active", "failed", "archived"}
# Statuses that make a template count as deployed for its organization
LIVE_DEPLOYMENT_STATUSES = ("pending", "active")

# current status -> statuses it may move to
DEPLOYMENT_TRANSITIONS = {
    "pending": {"active", "failed"},
    "active": {"failed", "archived"},
    "failed": {"archived"},
    "archived": set(),
}

TAB_OVERRIDE_MODES = {"add", "hidden"}

LOG_ACTIONS = {"deploy", "link", "activate", "fail", "delete", "scan"}
LOG_STATUSES = {"success", "skipped", "failed"}
LOG_TRIGGERS = {"manual", "scan"}
DEPLOYMENT_METHODS = {"api", "manual_upload", "workspace_scan"}


def _utcnow():
    return datetime.now(timezone.utc)


class OrganizationModule(SoftDeleteMixin, OrganizationModel):
    __tablename__ = "organization_modules"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "name", name="uq_org_modules_org_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    global_module_id = db.Column(
        db.Integer,
        db.ForeignKey("global_modules.id", ondelete="SET NULL"),
        nullable=True,
    )
    name = db.Column(db.String(100), nullable=False)
    display_name = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    tabs = db.relationship("TenantTab", back_populates="organization_module", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "global_module_id": self.global_module_id,
            "name": self.name,
            "display_name": self.display_name,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<OrganizationModule {self.organization_id}/{self.name}>"


class TenantTab(SoftDeleteMixin, OrganizationModel):
    __tablename__ = "tenant_module_tabs"
    __table_args__ = (
        db.UniqueConstraint(
            "organization_module_id", "tab_name", name="uq_tenant_tabs_module_tab",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_module_id = db.Column(
        db.Integer,
        db.ForeignKey("organization_modules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    global_tab_id = db.Column(
        db.Integer,
        db.ForeignKey("module_tabs.id", ondelete="SET NULL"),
        nullable=True,
    )
    deployed_report_id = db.Column(
        db.Integer,
        db.ForeignKey("organization_reports.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    tab_name = db.Column(db.String(200), nullable=False)
    page_name = db.Column(
        db.String(200), nullable=True,
        comment="Internal page name in the external report",
    )
    page_display_name = db.Column(db.String(200), nullable=True)
    sort_order = db.Column(db.Integer, default=0)
    override_mode = db.Column(db.String(10), nullable=False, default="add")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    organization_module = db.relationship("OrganizationModule", back_populates="tabs")
    deployed_report = db.relationship("DeployedReport")

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "organization_module_id": self.organization_module_id,
            "global_tab_id": self.global_tab_id,
            "deployed_report_id": self.deployed_report_id,
            "tab_name": self.tab_name,
            "page_name": self.page_name,
            "page_display_name": self.page_display_name,
            "sort_order": self.sort_order,
            "override_mode": self.override_mode,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<TenantTab {self.organization_module_id}/{self.tab_name}>"


class DeployedReport(SoftDeleteMixin, OrganizationModel):
    __tablename__ = "organization_reports"
    __table_args__ = (
        db.UniqueConstraint(
            "organization_id", "powerbi_report_id", name="uq_org_reports_external_id",
        ),
        db.Index("ix_org_reports_org_template", "organization_id", "report_template_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    report_template_id = db.Column(
        db.Integer,
        db.ForeignKey("report_templates.id", ondelete="SET NULL"),
        nullable=True,
    )
    powerbi_report_id = db.Column(
        db.String(64), nullable=True,
        comment="NULL while an auto deployment is pending external confirmation",
    )
    powerbi_workspace_id = db.Column(db.String(64), nullable=True)
    powerbi_dataset_id = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(300), nullable=True)
    deployment_status = db.Column(db.String(20), nullable=False, default="pending")
    error_message = db.Column(db.Text, nullable=True)
    deployment_notes = db.Column(db.Text, default="")
    deployed_by = db.Column(db.String(150), nullable=False, default="system")
    deployed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    report_template = db.relationship("ReportTemplate")

    def can_transition(self, new_status: str) -> bool:
        return new_status in DEPLOYMENT_TRANSITIONS.get(self.deployment_status, set())

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "report_template_id": self.report_template_id,
            "powerbi_report_id": self.powerbi_report_id,
            "powerbi_workspace_id": self.powerbi_workspace_id,
            "powerbi_dataset_id": self.powerbi_dataset_id,
            "name": self.name,
            "deployment_status": self.deployment_status,
            "error_message": self.error_message,
            "deployment_notes": self.deployment_notes,
            "deployed_by": self.deployed_by,
            "deployed_at": self.deployed_at.isoformat() if self.deployed_at else None,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<DeployedReport {self.id}: {self.deployment_status}>"


class DeploymentLogEntry(OrganizationModel):
    """
    Immutable audit trail for deployment actions.

    One row per attempted action. Rows are never updated or deleted;
    the mapper events below reject both.
    """

    __tablename__ = "deployment_log"
    __table_args__ = (
        db.Index("idx_deployment_log_org_ts", "organization_id", "started_at"),
        db.Index("idx_deployment_log_action", "action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    report_template_id = db.Column(
        db.Integer,
        db.ForeignKey("report_templates.id", ondelete="SET NULL"),
        nullable=True,
    )
    deployed_report_id = db.Column(
        db.Integer,
        db.ForeignKey("organization_reports.id", ondelete="SET NULL"),
        nullable=True,
    )
    action = db.Column(db.String(20), nullable=False, comment="deploy | link | activate | fail | delete | scan")
    status = db.Column(db.String(20), nullable=False, comment="success | skipped | failed")
    powerbi_report_id = db.Column(db.String(64), nullable=True)
    powerbi_workspace_id = db.Column(db.String(64), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    details = db.Column(db.JSON, default=dict)
    triggered_by = db.Column(db.String(20), nullable=False, default="manual")
    triggered_by_user = db.Column(db.String(150), nullable=False, default="system")
    deployment_method = db.Column(db.String(30), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "report_template_id": self.report_template_id,
            "deployed_report_id": self.deployed_report_id,
            "action": self.action,
            "status": self.status,
            "powerbi_report_id": self.powerbi_report_id,
            "powerbi_workspace_id": self.powerbi_workspace_id,
            "error_message": self.error_message,
            "details": self.details or {},
            "triggered_by": self.triggered_by,
            "triggered_by_user": self.triggered_by_user,
            "deployment_method": self.deployment_method,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<DeploymentLogEntry {self.id}: {self.action}/{self.status}>"


@_sa_event.listens_for(DeploymentLogEntry, "before_update")
def _reject_log_update(mapper, connection, target):
    raise RuntimeError(f"DeploymentLogEntry {target.id} is immutable")


@_sa_event.listens_for(DeploymentLogEntry, "before_delete")
def _reject_log_delete(mapper, connection, target):
    raise RuntimeError(f"DeploymentLogEntry {target.id} cannot be deleted")


# ── Convenience writer ───────────────────────────────────────────────────────

def write_deployment_log(
    *,
    organization_id: int,
    action: str,
    status: str,
    actor: str = "system",
    triggered_by: str = "manual",
    deployment_method: str | None = None,
    report_template_id: int | None = None,
    deployed_report_id: int | None = None,
    powerbi_report_id: str | None = None,
    powerbi_workspace_id: str | None = None,
    error_message: str | None = None,
    details: dict | None = None,
) -> DeploymentLogEntry:
    """
    Append a single deployment log row.  Uses ``flush`` so callers keep
    transaction control.
    """
    now = _utcnow()
    entry = DeploymentLogEntry(
        organization_id=organization_id,
        report_template_id=report_template_id,
        deployed_report_id=deployed_report_id,
        action=action,
        status=status,
        powerbi_report_id=powerbi_report_id,
        powerbi_workspace_id=powerbi_workspace_id,
        error_message=error_message,
        details=details or {},
        triggered_by=triggered_by,
        triggered_by_user=actor or "system",
        deployment_method=deployment_method,
        started_at=now,
        completed_at=now,
    )
    db.session.add(entry)
    db.session.flush()
    return entry
