"""Shared constants for ParcelGate.

Header names, key format, and lifecycle defaults used across the auth modules
are defined here. No magic strings in other modules; import from here.
"""

import re
import string

# ─── API Key Format ───────────────────────────────────────────────────────────

# Plain alphanumeric token with no prefix. The partner portal pastes the value
# verbatim into its "API Access Token" field, so prefixes such as "wh_" or
# "kcd_live_" are not used.
API_KEY_LENGTH: int = 48
API_KEY_ALPHABET: str = string.ascii_letters + string.digits
API_KEY_PATTERN: re.Pattern[str] = re.compile(r"^[A-Za-z0-9]{48}$")

# Number of trailing characters kept for masked display ("...abcd").
API_KEY_HINT_LENGTH: int = 4

# ─── Inbound Headers ──────────────────────────────────────────────────────────

# Canonical machine-credential header plus aliases accepted from first-party
# API clients. Matching is case-insensitive.
API_KEY_HEADER: str = "X-API-Key"
API_KEY_HEADER_ALIASES: tuple[str, ...] = ("X-KCD-API-Key",)

# Webhook senders are less consistent than API clients; accept a wider set.
WEBHOOK_KEY_HEADER_ALIASES: tuple[str, ...] = (
    "X-KCD-API-Key",
    "X-API-Key",
    "X-Webhook-Key",
    "X-Webhook-Token",
    "X-KCD-Webhook-Key",
)

AUTHORIZATION_HEADER: str = "Authorization"
REQUEST_ID_HEADER: str = "X-Request-ID"
BEARER_SCHEME: str = "Bearer"

# ─── Scope Identifiers ────────────────────────────────────────────────────────

COURIER_CODE_PATTERN: re.Pattern[str] = re.compile(r"^[A-Z0-9]{2,12}$")
WAREHOUSE_ID_PATTERN: re.Pattern[str] = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
PERMISSION_PATTERN: re.Pattern[str] = re.compile(r"^[a-z][a-z0-9_]*(:[a-z][a-z0-9_]*)?$")

# ─── Lifecycle Defaults ───────────────────────────────────────────────────────

DEFAULT_KEY_EXPIRY_DAYS: int = 365
MAX_KEY_EXPIRY_DAYS: int = 3650
DEFAULT_COURIER_PERMISSIONS: tuple[str, ...] = ("kcd_integration",)
MAX_DESCRIPTION_LENGTH: int = 500

# Default rate-limit policy values. Stored for an external throttler; this
# package never enforces them.
DEFAULT_RATE_PER_MINUTE: int = 60
DEFAULT_RATE_PER_HOUR: int = 1_000
DEFAULT_RATE_PER_DAY: int = 10_000

# ─── Partner Integration Endpoints ────────────────────────────────────────────

# Paths the logistics partner is configured with. Served by the business
# application; listed here only for the connection-info response.
PARTNER_ENDPOINT_PATHS: dict[str, str] = {
    "get_customers": "/api/kcd/customers",
    "add_package": "/api/kcd/packages/add",
    "update_package": "/api/kcd/packages/{trackingNumber}",
    "delete_package": "/api/kcd/packages/{trackingNumber}/delete",
    "update_manifest": "/api/kcd/packages/{trackingNumber}/manifest",
}

WEBHOOK_ENDPOINT_PATHS: dict[str, str] = {
    "package_created": "/api/webhooks/kcd/package-created",
    "package_updated": "/api/webhooks/kcd/package-updated",
    "package_delivered": "/api/webhooks/kcd/package-delivered",
    "package_deleted": "/api/webhooks/kcd/package-deleted",
    "manifest_created": "/api/webhooks/kcd/manifest-created",
}
