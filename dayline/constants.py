"""Shared constants for Dayline.

Protocol constants, size limits and rate-limit bounds used across modules
are defined here. No magic numbers in other modules - import from here.
"""

# ─── Signed Request Headers ──────────────────────────────────────────────────

# The four headers every signed request carries. Names are case-insensitive on
# the wire; Starlette's Headers lookup handles that for us.
HEADER_USER_ID: str = "x-user-id"
HEADER_DEVICE_ID: str = "x-device-id"
HEADER_TIMESTAMP: str = "x-ts"
HEADER_SIGNATURE: str = "x-sig"

# ─── Signature Freshness ─────────────────────────────────────────────────────

# Maximum allowed |server_now - x-ts| before a signature is rejected as expired.
# This is the full replay exposure: there is no nonce tracking.
DEFAULT_SIGNATURE_WINDOW_MS: int = 5 * 60 * 1000  # 5 minutes

# ─── Rate Limiter Bounds ─────────────────────────────────────────────────────

# Logical rate-limit keys longer than this are rejected as a caller error.
MAX_RATE_LIMIT_KEY_LENGTH: int = 200

# Windows below one second are rejected; bucket granularity is whole windows.
MIN_RATE_LIMIT_WINDOW_MS: int = 1000

# Counter retention is configured in days; windows are in milliseconds.
MS_PER_DAY: int = 24 * 60 * 60 * 1000

# ─── Registration Input Limits ───────────────────────────────────────────────

# Upper bound on a base64 SPKI public key submitted at registration.
MAX_PUBLIC_KEY_B64_LENGTH: int = 4096

# ─── Request Size Limit ──────────────────────────────────────────────────────

# Maximum allowed request body size. HTTP 413 is returned for larger bodies
# before any handler (and therefore before the body is hashed for signing).
MAX_REQUEST_BODY_BYTES: int = 1_048_576  # 1 MB = 1,048,576 bytes
