"""
BI Report Deployment Platform
Organization (tenant) domain models.

Models:
    - IntegrationProvider: third-party system a tenant can be wired to
      (LMS, English & Maths assessment, CRM, HR), identified by a short code.
    - Organization: isolated customer account with its configured providers
      and its external BI workspace identity.
"""

from datetime import datetime, timezone

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

PROVIDER_CATEGORIES = {"lms", "english_maths", "crm", "hr"}


class IntegrationProvider(db.Model):
    """Provider entry shared by all tenants."""

    __tablename__ = "integration_providers"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(40), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    category = db.Column(
        db.String(20), nullable=False,
        comment="lms | english_maths | crm | hr",
    )
    is_active = db.Column(db.Boolean, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "category": self.category,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<IntegrationProvider {self.category}:{self.code}>"


class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    powerbi_workspace_id = db.Column(db.String(64), nullable=True)
    powerbi_workspace_name = db.Column(db.String(200), nullable=True)

    lms_provider_id = db.Column(
        db.Integer, db.ForeignKey("integration_providers.id", ondelete="SET NULL"), nullable=True,
    )
    english_maths_provider_id = db.Column(
        db.Integer, db.ForeignKey("integration_providers.id", ondelete="SET NULL"), nullable=True,
    )
    crm_provider_id = db.Column(
        db.Integer, db.ForeignKey("integration_providers.id", ondelete="SET NULL"), nullable=True,
    )
    hr_provider_id = db.Column(
        db.Integer, db.ForeignKey("integration_providers.id", ondelete="SET NULL"), nullable=True,
    )

    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def provider_ids(self) -> list[int]:
        """Configured provider FKs, absent slots skipped."""
        ids = [
            self.lms_provider_id,
            self.english_maths_provider_id,
            self.crm_provider_id,
            self.hr_provider_id,
        ]
        return [pid for pid in ids if pid is not None]

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "powerbi_workspace_id": self.powerbi_workspace_id,
            "powerbi_workspace_name": self.powerbi_workspace_name,
            "lms_provider_id": self.lms_provider_id,
            "english_maths_provider_id": self.english_maths_provider_id,
            "crm_provider_id": self.crm_provider_id,
            "hr_provider_id": self.hr_provider_id,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Organization {self.id}: {self.slug}>"
