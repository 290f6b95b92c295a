"""
Shared pytest fixtures for the BI Report Deployment Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_organization / make_template / make_global_tab: row factories
    - stub_connector: in-memory WorkspaceScanConnector
"""

import itertools

import pytest

from app import create_app
from app.integrations.powerbi_gateway import ScannedPage, ScannedReport
from app.models import db as _db
from app.models.catalog import GlobalModule, GlobalTab, ReportTemplate
from app.models.organization import IntegrationProvider, Organization
from app.services.provider_codes import parse_template_name

_counter = itertools.count(1)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Row factories ────────────────────────────────────────────────────────


def _provider(category, code):
    existing = IntegrationProvider.query.filter_by(category=category, code=code).first()
    if existing:
        return existing
    provider = IntegrationProvider(code=code, name=f"{code} ({category})", category=category)
    _db.session.add(provider)
    _db.session.flush()
    return provider


@pytest.fixture()
def make_organization():
    """Factory: organization with providers given by code, e.g. lms="APTEM"."""

    def _make(*, lms=None, english_maths=None, crm=None, hr=None,
              workspace_id="ws-test", name=None):
        n = next(_counter)
        org = Organization(
            name=name or f"Test Org {n}",
            slug=f"org-{n}",
            powerbi_workspace_id=workspace_id,
            powerbi_workspace_name=f"Workspace {n}" if workspace_id else None,
        )
        if lms:
            org.lms_provider_id = _provider("lms", lms).id
        if english_maths:
            org.english_maths_provider_id = _provider("english_maths", english_maths).id
        if crm:
            org.crm_provider_id = _provider("crm", crm).id
        if hr:
            org.hr_provider_id = _provider("hr", hr).id
        _db.session.add(org)
        _db.session.flush()
        return org

    return _make


@pytest.fixture()
def make_template():
    """Factory: catalog template with code columns derived from its name."""

    def _make(name, *, category="general", is_template=True, is_active=True):
        template = ReportTemplate(
            name=name, category=category, is_template=is_template, is_active=is_active,
        )
        template.apply_parsed_codes(parse_template_name(name))
        _db.session.add(template)
        _db.session.flush()
        return template

    return _make


@pytest.fixture()
def make_global_tab():
    """Factory: global tab (and its GlobalModule unless with_module=False)."""

    def _make(module_name, tab_name, template, *, page_name=None, sort_order=0, with_module=True):
        if with_module and not GlobalModule.query.filter_by(name=module_name).first():
            _db.session.add(GlobalModule(name=module_name, display_name=module_name.title()))
        tab = GlobalTab(
            module_name=module_name,
            tab_name=tab_name,
            page_name=page_name,
            report_template_id=template.id,
            sort_order=sort_order,
        )
        _db.session.add(tab)
        _db.session.flush()
        return tab

    return _make


# ── Scan connector stub ──────────────────────────────────────────────────


class StubConnector:
    """WorkspaceScanConnector returning a fixed scan; records workspace ids."""

    def __init__(self, reports=None, error=None):
        self.reports = reports or []
        self.error = error
        self.calls = []

    def scan_workspace(self, workspace_id):
        self.calls.append(workspace_id)
        if self.error:
            raise self.error
        return list(self.reports)


def scanned(report_id, name, *pages):
    """Build a ScannedReport; pages given as display names."""
    return ScannedReport(
        external_report_id=report_id,
        name=name,
        pages=[
            ScannedPage(external_page_id=f"ReportSection{i}", name=f"ReportSection{i}", display_name=p)
            for i, p in enumerate(pages)
        ],
    )


@pytest.fixture()
def stub_connector():
    return StubConnector


@pytest.fixture()
def make_scanned_report():
    return scanned
