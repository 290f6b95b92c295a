"""app.integrations: External service gateway modules.

All outbound HTTP calls to the BI service go through a gateway in this
package, never via bare `requests` calls in services or blueprints. Every
call is:
  - Authenticated (token injected by the gateway)
  - Refreshed once on HTTP 401
  - Logged with the workspace / report it concerns

Current gateways:
  powerbi_gateway.PowerBIGateway: Power BI REST API workspace scans
"""
