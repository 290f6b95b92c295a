"""Catalog matcher: rank catalog templates for one organization.

Loads the organization's configured provider codes, scores every active
template in the catalog against them and returns the eligible ones as
MatchCandidate rows, best first, with an ``is_deployed`` flag.

Stored structured columns on ReportTemplate are authoritative here; names
are not re-parsed. The deployed-template membership set is computed from a
fresh query on every call and never cached, since tenant state changes
between runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.catalog import ReportTemplate
from app.models.deployment import LIVE_DEPLOYMENT_STATUSES, DeployedReport
from app.models.organization import IntegrationProvider, Organization
from app.services.match_scoring import MATCH_UNIVERSAL, calculate_match_score, get_match_type
from app.services.provider_codes import ParsedTemplate, ProviderCodes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchCandidate:
    template_id: int
    name: str
    category: str
    provider_code: str | None
    match_type: str
    match_score: int
    is_deployed: bool
    parsed: ParsedTemplate

    @property
    def sort_key(self) -> tuple:
        # Universal sorts after a genuine match with the same score (a single
        # English/Maths or CRM match also scores 25). Id breaks name ties.
        return (
            -self.match_score,
            self.match_type == MATCH_UNIVERSAL,
            self.category,
            self.name,
            self.template_id,
        )

    def to_dict(self) -> dict:
        return {
            "template_id": self.template_id,
            "name": self.name,
            "category": self.category,
            "provider_code": self.provider_code,
            "match_type": self.match_type,
            "match_score": self.match_score,
            "is_deployed": self.is_deployed,
            "lms_code": self.parsed.lms,
            "english_maths_code": self.parsed.english_maths,
            "crm_code": self.parsed.crm,
            "hr_code": self.parsed.hr,
            "role_name": self.parsed.role_name,
            "version": self.parsed.version,
        }


def _get_organization(organization_id: int) -> Organization:
    org = db.session.get(Organization, organization_id)
    if org is None:
        raise NotFoundError(resource="Organization", resource_id=organization_id)
    return org


def get_organization_provider_codes(organization_id: int) -> ProviderCodes:
    """Resolve the organization's provider FKs into a ProviderCodes record.

    Raises:
        NotFoundError: If the organization does not exist.
    """
    org = _get_organization(organization_id)
    provider_ids = org.provider_ids
    if not provider_ids:
        return ProviderCodes()

    providers = db.session.execute(
        select(IntegrationProvider).where(IntegrationProvider.id.in_(provider_ids))
    ).scalars().all()

    slots: dict[str, str] = {}
    for provider in providers:
        if provider.category in ("lms", "english_maths", "crm", "hr") and provider.code:
            slots[provider.category] = provider.code.strip().upper()
    return ProviderCodes(**slots)


def deployed_template_ids(organization_id: int) -> set[int]:
    """Template ids with a pending or active deployment for this organization.

    Failed and archived rows do not count, so such a template can be deployed again.
    """
    rows = db.session.execute(
        select(DeployedReport.report_template_id).where(
            DeployedReport.organization_id == organization_id,
            DeployedReport.is_active.is_(True),
            DeployedReport.deployment_status.in_(LIVE_DEPLOYMENT_STATUSES),
            DeployedReport.report_template_id.isnot(None),
        )
    ).scalars().all()
    return set(rows)


def is_template_deployed(organization_id: int, template_id: int) -> bool:
    return template_id in deployed_template_ids(organization_id)


def score_templates(
    templates: list[ReportTemplate],
    org_codes: ProviderCodes,
    deployed_ids: set[int] | None = None,
) -> list[MatchCandidate]:
    """Score, filter (score > 0) and sort templates. Pure apart from attribute reads."""
    deployed_ids = deployed_ids or set()
    candidates = []
    for template in templates:
        parsed = ParsedTemplate.from_template(template)
        score = calculate_match_score(parsed, org_codes)
        if score <= 0:
            continue
        candidates.append(MatchCandidate(
            template_id=template.id,
            name=template.name,
            category=template.category or "",
            provider_code=template.provider_code,
            match_type=get_match_type(parsed, org_codes),
            match_score=score,
            is_deployed=template.id in deployed_ids,
            parsed=parsed,
        ))
    candidates.sort(key=lambda c: c.sort_key)
    return candidates


def find_matching_templates(organization_id: int) -> list[MatchCandidate]:
    """Return eligible catalog templates for the organization, best first."""
    org_codes = get_organization_provider_codes(organization_id)

    templates = db.session.execute(
        select(ReportTemplate).where(
            ReportTemplate.is_template.is_(True),
            ReportTemplate.is_active.is_(True),
        )
    ).scalars().all()

    candidates = score_templates(templates, org_codes, deployed_template_ids(organization_id))
    logger.info(
        "Catalog match org=%s codes=%s templates=%d eligible=%d",
        organization_id, org_codes.present(), len(templates), len(candidates),
    )
    return candidates


def get_deployment_stats(organization_id: int) -> dict:
    """Return ranked candidates with aggregate counts.

    ``deployed`` counts eligible candidates that already have an active
    deployment, so ``pending`` is never negative.
    """
    candidates = find_matching_templates(organization_id)
    deployed = sum(1 for c in candidates if c.is_deployed)
    return {
        "total_matching": len(candidates),
        "deployed": deployed,
        "pending": len(candidates) - deployed,
        "candidates": candidates,
    }
