"""Admin credentials for the counter reset endpoint.

Only ``DELETE /v1/quota/{identifier}`` is guarded; quota checks and status
reads are open to any caller. Operators list their admin keys in the
config's ``auth.api_keys`` map as ``name -> sha256 hex digest`` so the reset
log line can name who cleared a window without the key itself ever being
written to disk.
"""

import hashlib
import hmac
from typing import Dict, Optional


class AuthenticationError(Exception):
    """The reset request carried no admin key, or an unknown one."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


def hash_api_key(raw_key: str) -> str:
    """Digest to put under ``auth.api_keys`` for ``raw_key``::

        python -c "from quota_service.auth import hash_api_key; print(hash_api_key('k'))"
    """
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def authorize_admin(header_value: Optional[str], admin_keys: Dict[str, str]) -> str:
    """Return the configured name of the admin key sent in ``X-API-Key``.

    Configured digests are compared case-insensitively and with surrounding
    whitespace ignored, so hashes pasted from other tools still match.

    Raises:
        AuthenticationError: If the header is missing or matches no admin key.
    """
    if not header_value:
        raise AuthenticationError("Missing API key. Provide X-API-Key header.")

    presented = hash_api_key(header_value)
    for admin_name, digest in admin_keys.items():
        if hmac.compare_digest(presented, digest.strip().lower()):
            return admin_name

    raise AuthenticationError("Invalid API key.")
