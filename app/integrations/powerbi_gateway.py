"""
Power BI REST Gateway: workspace scan connector.

All outbound HTTP calls to the Power BI REST API go through this class.
Direct `requests` calls in services or blueprints are FORBIDDEN.

Behaviour:
  - OAuth2 client credentials (Azure AD) with in-memory token cache
  - Timeout: 30 s per call (configurable)
  - A 401 evicts the cached token and retries once; nothing else is retried
  - Report listing failure fails the whole scan (ExternalServiceError)
  - Page listing runs concurrently per report; a failure degrades that
    report to an empty page list and the scan continues

The reconciler only depends on the WorkspaceScanConnector protocol, so
tests pass a stub connector instead of this gateway.

Testability: pass a mock `session` to PowerBIGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import requests

from app.core.exceptions import ConfigurationError, ExternalServiceError

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30
_DEFAULT_PAGE_WORKERS = 4
_TOKEN_SCOPE = "https://analysis.windows.net/powerbi/api/.default"
_DEFAULT_API_URL = "https://api.powerbi.com/v1.0/myorg"
_DEFAULT_AUTHORITY_URL = "https://login.microsoftonline.com"


# ── Scan feed types ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ScannedPage:
    external_page_id: str
    name: str
    display_name: str

    @property
    def label(self) -> str:
        return self.display_name or self.name


@dataclass(frozen=True)
class ScannedReport:
    external_report_id: str
    name: str
    pages: list[ScannedPage] = field(default_factory=list)

    @property
    def page_labels(self) -> list[str]:
        return [p.label for p in self.pages]


class WorkspaceScanConnector(Protocol):
    """Read-only feed of externally hosted reports and their pages."""

    def scan_workspace(self, workspace_id: str) -> list[ScannedReport]:
        ...


@dataclass(frozen=True)
class PowerBICredentials:
    client_id: str
    client_secret: str
    tenant_id: str
    api_url: str = _DEFAULT_API_URL
    authority_url: str = _DEFAULT_AUTHORITY_URL

    @classmethod
    def from_config(cls, config: dict) -> "PowerBICredentials":
        """Build from a Flask config mapping.

        Raises:
            ConfigurationError: If any of the three credentials is missing.
        """
        missing = [
            key for key in ("POWERBI_CLIENT_ID", "POWERBI_CLIENT_SECRET", "POWERBI_TENANT_ID")
            if not config.get(key)
        ]
        if missing:
            raise ConfigurationError(
                "Power BI credentials not configured",
                details={"missing": missing},
            )
        return cls(
            client_id=config["POWERBI_CLIENT_ID"],
            client_secret=config["POWERBI_CLIENT_SECRET"],
            tenant_id=config["POWERBI_TENANT_ID"],
            api_url=(config.get("POWERBI_API_URL") or _DEFAULT_API_URL).rstrip("/"),
            authority_url=(config.get("POWERBI_AUTHORITY_URL") or _DEFAULT_AUTHORITY_URL).rstrip("/"),
        )


class GatewayResult:
    """Structured return value from PowerBIGateway requests.

    Attributes:
        ok:             True if the call succeeded (HTTP 2xx + no exception).
        status_code:    HTTP status code (None if network-level failure).
        data:           Parsed JSON response body, else None.
        error:          Human-readable error message or None.
        duration_ms:    Round-trip latency in milliseconds.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | list | None,
        error: str | None,
        duration_ms: int,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms


class PowerBIGateway:
    """Power BI REST API gateway implementing WorkspaceScanConnector.

    Usage:
        gateway = PowerBIGateway(credentials=PowerBICredentials.from_config(app.config))
        reports = gateway.scan_workspace(org.powerbi_workspace_id)
    """

    def __init__(
        self,
        credentials: PowerBICredentials | None = None,
        session: requests.Session | None = None,
        *,
        timeout: int = _DEFAULT_TIMEOUT,
        page_workers: int = _DEFAULT_PAGE_WORKERS,
    ) -> None:
        self.credentials = credentials
        self._session: requests.Session | None = session
        self.timeout = timeout
        self.page_workers = max(1, page_workers)
        # {"access_token": str, "expires_at": datetime}
        self._token: dict | None = None

    @classmethod
    def from_app_config(cls, config: dict) -> "PowerBIGateway":
        return cls(
            credentials=PowerBICredentials.from_config(config),
            timeout=int(config.get("POWERBI_TIMEOUT_SECONDS", _DEFAULT_TIMEOUT)),
            page_workers=int(config.get("POWERBI_PAGE_FETCH_WORKERS", _DEFAULT_PAGE_WORKERS)),
        )

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── OAuth2 token management ───────────────────────────────────────────────

    def _get_cached_token(self) -> str | None:
        if not self._token:
            return None
        # Treat token as expired 60 s before actual expiry
        if datetime.now(timezone.utc) >= self._token["expires_at"] - timedelta(seconds=60):
            return None
        return self._token["access_token"]

    def get_token(self) -> str:
        """Return a valid Azure AD access token for the Power BI API.

        Raises:
            ConfigurationError: If no credentials were supplied.
            ExternalServiceError: If the token endpoint fails.
        """
        cached = self._get_cached_token()
        if cached:
            return cached
        if self.credentials is None:
            raise ConfigurationError("Power BI credentials not configured")

        creds = self.credentials
        token_url = f"{creds.authority_url}/{creds.tenant_id}/oauth2/v2.0/token"
        logger.info("Fetching Power BI token from %s", token_url)
        try:
            resp = self.session.post(
                token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": creds.client_id,
                    "client_secret": creds.client_secret,
                    "scope": _TOKEN_SCOPE,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ExternalServiceError("powerbi", f"Token request failed: {str(exc)[:300]}") from exc

        if not resp.ok:
            raise ExternalServiceError(
                "powerbi", f"Failed to get Azure AD token: HTTP {resp.status_code}", resp.status_code,
            )
        body = resp.json()
        access_token = body.get("access_token")
        if not access_token:
            raise ExternalServiceError("powerbi", "Token response missing access_token")

        expires_in = int(body.get("expires_in", 3600))
        self._token = {
            "access_token": access_token,
            "expires_at": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        }
        return access_token

    def invalidate_token(self) -> None:
        self._token = None

    # ── Core request dispatcher ───────────────────────────────────────────────

    def _do_request(self, method: str, url: str, headers: dict, **kwargs: Any) -> requests.Response:
        """Execute a single HTTP request, no retry logic here."""
        return self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)

    def request(self, method: str, path: str, **kwargs: Any) -> GatewayResult:
        """Execute an authenticated API call.

        Never raises for HTTP or network failures; callers check ``.ok``.
        A 401 triggers exactly one token refresh and re-send.
        """
        url = f"{self.credentials.api_url}{path}" if self.credentials else path
        token_refreshed = False
        while True:
            token = self.get_token()
            headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
            t0 = time.perf_counter()
            try:
                resp = self._do_request(method, url, headers, **kwargs)
            except requests.Timeout:
                return GatewayResult(
                    ok=False, status_code=None, data=None,
                    error=f"Request timed out after {self.timeout}s",
                    duration_ms=self.timeout * 1000,
                )
            except requests.RequestException as exc:
                return GatewayResult(
                    ok=False, status_code=None, data=None,
                    error=str(exc)[:500],
                    duration_ms=int((time.perf_counter() - t0) * 1000),
                )
            duration_ms = int((time.perf_counter() - t0) * 1000)

            if resp.status_code == 401 and not token_refreshed:
                self.invalidate_token()
                token_refreshed = True
                continue

            if resp.ok:
                try:
                    data = resp.json() if resp.content else {}
                except ValueError:
                    data = {}
                return GatewayResult(ok=True, status_code=resp.status_code, data=data,
                                     error=None, duration_ms=duration_ms)

            return GatewayResult(
                ok=False, status_code=resp.status_code, data=None,
                error=f"HTTP {resp.status_code}: {resp.text[:500]}",
                duration_ms=duration_ms,
            )

    # ── Workspace scan ────────────────────────────────────────────────────────

    def list_reports(self, workspace_id: str) -> list[dict]:
        """Return raw report dicts in the workspace.

        Raises:
            ExternalServiceError: If the listing call fails.
        """
        result = self.request("GET", f"/groups/{workspace_id}/reports")
        if not result.ok:
            logger.error(
                "Power BI report listing failed workspace=%s status=%s error=%s",
                workspace_id, result.status_code, result.error,
            )
            raise ExternalServiceError(
                "powerbi",
                f"Failed to fetch reports from workspace {workspace_id}: {result.error}",
                result.status_code,
            )
        return list((result.data or {}).get("value") or [])

    def list_pages(self, workspace_id: str, report_id: str) -> list[ScannedPage]:
        """Return pages of one report; [] on any failure."""
        try:
            result = self.request("GET", f"/groups/{workspace_id}/reports/{report_id}/pages")
        except ExternalServiceError as exc:
            logger.warning("Could not fetch pages for report=%s: %s", report_id, exc)
            return []
        if not result.ok:
            logger.warning(
                "Could not fetch pages for report=%s status=%s error=%s",
                report_id, result.status_code, result.error,
            )
            return []
        pages = []
        for raw in (result.data or {}).get("value") or []:
            name = raw.get("name") or ""
            pages.append(ScannedPage(
                external_page_id=name,
                name=name,
                display_name=raw.get("displayName") or name,
            ))
        return pages

    def scan_workspace(self, workspace_id: str) -> list[ScannedReport]:
        """List reports and their pages, preserving the API's report order."""
        raw_reports = self.list_reports(workspace_id)
        # Warm the token before fanning out so workers share it.
        self.get_token()

        report_ids = [r.get("id") for r in raw_reports]
        with ThreadPoolExecutor(max_workers=self.page_workers) as pool:
            page_lists = pool.map(lambda rid: self.list_pages(workspace_id, rid), report_ids)
            pages_by_id = dict(zip(report_ids, page_lists))

        scanned = [
            ScannedReport(
                external_report_id=raw.get("id"),
                name=raw.get("name") or "",
                pages=pages_by_id.get(raw.get("id"), []),
            )
            for raw in raw_reports
        ]
        logger.info(
            "Scanned workspace=%s reports=%d pages=%d",
            workspace_id, len(scanned), sum(len(r.pages) for r in scanned),
        )
        return scanned
