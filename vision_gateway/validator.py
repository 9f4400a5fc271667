"""
Credential validation status classification.

    2xx      -> valid
    401/403  -> invalid
    400      -> invalid only if the vendor error points at authentication,
                otherwise valid (the request shape is assumed to be at fault)
    other    -> invalid
"""

import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .adapters.base import VendorError


AUTH_KEYWORDS = (
    "authentication",
    "unauthorized",
    "forbidden",
    "invalid api key",
    "invalid x-api-key",
    "api key not valid",
)


def mentions_auth_failure(text: str | None) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(keyword in lowered for keyword in AUTH_KEYWORDS)


def classify_status(status_code: int, vendor_error: "VendorError | None" = None) -> bool:
    """
    Decide whether a probe response means the credential is valid.

    Args:
        status_code: HTTP status of the probe response
        vendor_error: Parsed error body; only consulted for 400

    Returns:
        True if the credential should be treated as valid
    """
    if 200 <= status_code < 300:
        return True
    if status_code in (401, 403):
        return False
    if status_code == 400:
        # TODO: product review of the optimistic default for unrecognized 400s
        if vendor_error is None:
            return True
        if vendor_error.is_auth_failure:
            return False
        raw_text = json.dumps(vendor_error.raw) if vendor_error.raw is not None else ""
        return not (mentions_auth_failure(vendor_error.message) or mentions_auth_failure(raw_text))
    return False
