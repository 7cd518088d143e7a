"""Caller identifier extraction.

Identifiers are the keys quota is tracked against: ``ip:<address>`` for
anonymous callers and ``user:<id>`` for signed-in users.
"""

from typing import Mapping, Optional

# Checked in order; the first non-empty value wins.
_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")


def client_identifier(headers: Mapping[str, str]) -> str:
    """Derive an ``ip:`` identifier from proxy headers.

    ``x-forwarded-for`` may carry a proxy chain; only the first (client)
    entry is used. Falls back to ``ip:unknown`` when no header is usable.
    """
    lowered = {key.lower(): value for key, value in headers.items()}

    for name in _IP_HEADERS:
        value: Optional[str] = lowered.get(name)
        if not value:
            continue
        ip = value.split(",")[0].strip()
        if ip:
            return "ip:{}".format(ip)

    return "ip:unknown"


def user_identifier(user_id: str) -> str:
    if not user_id:
        raise ValueError("user_id must be a non-empty string")
    return "user:{}".format(user_id)


def scoped_identifier(scope: Optional[str], identifier: str) -> str:
    """Namespace ``identifier`` by a named limit scope, if any."""
    if not scope:
        return identifier
    return "{}:{}".format(scope, identifier)
