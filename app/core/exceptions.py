"""
Platform-wide exception hierarchy.

Services raise these types; the deployment blueprint registers one handler
per type and maps them to consistent HTTP status codes.

Taxonomy:
  NotFoundError         → 404  missing record (or record of another organization)
  ValidationError       → 422  well-formed input that breaks a business rule
  ConfigurationError    → 422  organization / platform not configured for the operation
  ExternalServiceError  → 502  BI service call failed for the whole operation

Uniqueness violations inside the reconciler's ensure-* steps are not
errors: they mean "already exists" and are absorbed.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Organization", resource_id=42)
    raise ValidationError("mode must be one of auto, manual, bulk")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-organization access
    attempts, so a 404 never confirms that another tenant's record exists.

    Args:
        resource: Human-readable model/entity name (e.g. "Organization").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        organization_id: Optional: the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        organization_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.organization_id = organization_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if organization_id is not None:
            msg += f" (organization={organization_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint): this
    exception signals that the data was well-formed but violated a business
    rule (e.g. invalid deployment status transition).

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(ValidationError):
    """Raised when an organization or the platform lacks required setup.

    Examples: organization has no BI workspace id, BI service credentials
    are missing. Never retried; the caller has to fix configuration first.
    """


class ExternalServiceError(Exception):
    """Raised when an external collaborator fails for the whole operation.

    Args:
        service: Name of the external system (e.g. "powerbi").
        message: Human-readable error, already truncated by the gateway.
        status_code: HTTP status returned by the service, if any.
    """

    def __init__(self, service: str, message: str, status_code: int | None = None) -> None:
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}")
