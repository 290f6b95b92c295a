"""
BI Report Deployment Platform
Template catalog & global navigation hierarchy models.

Models:
    - ReportTemplate: shared, tenant-independent BI report definition.
    - GlobalModule: top level of the navigation hierarchy.
    - GlobalTab: one tab under a module; points at exactly one template
      and optionally one page inside it.

Catalog naming convention:
    "<CODE1>-<CODE2>-...-<CODEn> - <RoleName> v<major>.<minor>"

    The structured code columns on ReportTemplate are derived from the name
    when a template is registered (see deployment_service.create_template)
    and are authoritative for matching afterwards.
"""

from datetime import datetime, timezone

from app.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class ReportTemplate(db.Model):
    __tablename__ = "report_templates"
    __table_args__ = (
        db.Index("ix_report_templates_catalog", "is_template", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(300), nullable=False)
    category = db.Column(db.String(100), nullable=False, default="general")
    description = db.Column(db.Text, default="")
    is_template = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Master copy in the catalog workspace
    powerbi_report_id = db.Column(db.String(64), nullable=True)

    # Stored structured fields
    provider_code = db.Column(db.String(200), nullable=True)
    lms_code = db.Column(db.String(40), nullable=True)
    english_maths_code = db.Column(db.String(40), nullable=True)
    crm_code = db.Column(db.String(40), nullable=True)
    hr_code = db.Column(db.String(40), nullable=True)
    role_name = db.Column(db.String(200), nullable=True)
    report_version = db.Column(db.String(20), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def apply_parsed_codes(self, parsed):
        """Copy a ParsedTemplate onto the stored structured columns."""
        self.provider_code = parsed.provider_code
        self.lms_code = parsed.lms
        self.english_maths_code = parsed.english_maths
        self.crm_code = parsed.crm
        self.hr_code = parsed.hr
        self.role_name = parsed.role_name
        self.report_version = parsed.version

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "is_template": self.is_template,
            "is_active": self.is_active,
            "powerbi_report_id": self.powerbi_report_id,
            "provider_code": self.provider_code,
            "lms_code": self.lms_code,
            "english_maths_code": self.english_maths_code,
            "crm_code": self.crm_code,
            "hr_code": self.hr_code,
            "role_name": self.role_name,
            "report_version": self.report_version,
        }

    def __repr__(self):
        return f"<ReportTemplate {self.id}: {self.name}>"


class GlobalModule(db.Model):
    __tablename__ = "global_modules"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    display_name = db.Column(db.String(200), nullable=True)
    description = db.Column(db.Text, default="")
    sort_order = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<GlobalModule {self.name}>"


class GlobalTab(db.Model):
    """Tab template: (module_name, tab_name) is unique."""

    __tablename__ = "module_tabs"
    __table_args__ = (
        db.UniqueConstraint("module_name", "tab_name", name="uq_module_tabs_module_tab"),
    )

    id = db.Column(db.Integer, primary_key=True)
    module_name = db.Column(db.String(100), nullable=False, index=True)
    tab_name = db.Column(db.String(200), nullable=False)
    page_name = db.Column(
        db.String(200), nullable=True,
        comment="Display name of the page inside the report; falls back to tab_name",
    )
    report_template_id = db.Column(
        db.Integer,
        db.ForeignKey("report_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sort_order = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    report_template = db.relationship("ReportTemplate", lazy="joined")

    @property
    def expected_page_name(self) -> str:
        return self.page_name or self.tab_name

    def to_dict(self):
        return {
            "id": self.id,
            "module_name": self.module_name,
            "tab_name": self.tab_name,
            "page_name": self.page_name,
            "report_template_id": self.report_template_id,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<GlobalTab {self.module_name}/{self.tab_name}>"
