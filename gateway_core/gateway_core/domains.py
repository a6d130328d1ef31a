"""Canonical form for tenant domains.

Every lookup and every upsert keyed on a tenant domain goes through
:func:`normalize_tenant_domain` so that casing or path differences never
split one tenant's state across two records.
"""

from __future__ import annotations

import re

DEFAULT_DOMAIN_SUFFIX = ".myshopify.com"

_PROTOCOL_RE = re.compile(r"^[a-z][a-z0-9+.-]*://")
_VALID_DOMAIN_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]*[a-z0-9])?)+$")


def normalize_tenant_domain(raw: str | None, suffix: str = DEFAULT_DOMAIN_SUFFIX) -> str:
    """Return the canonical tenant domain for *raw*.

    Lowercases, strips whitespace, the protocol, any path/query and a
    trailing dot.  A bare store handle without any dot gets *suffix*
    appended (``"acme"`` becomes ``"acme.myshopify.com"``); a value that
    already carries a domain is left on its own domain.

    Parameters
    ----------
    raw:
        The user- or platform-supplied domain.  ``None`` and blank strings
        normalize to ``""``.
    suffix:
        The canonical platform suffix used to complete bare handles.

    Returns
    -------
    str
        The normalized domain, or ``""`` when nothing usable was supplied.
    """
    if not raw:
        return ""
    domain = raw.strip().lower()
    domain = _PROTOCOL_RE.sub("", domain)
    for sep in ("/", "?", "#"):
        domain = domain.split(sep, 1)[0]
    domain = domain.rstrip(".")
    if not domain:
        return ""
    if "." not in domain and suffix:
        domain = f"{domain}{suffix}"
    return domain


def is_valid_tenant_domain(domain: str) -> bool:
    """Return ``True`` if *domain* (already normalized) is a plausible hostname."""
    return bool(domain) and len(domain) <= 255 and _VALID_DOMAIN_RE.match(domain) is not None


def display_name_from_domain(domain: str, suffix: str = DEFAULT_DOMAIN_SUFFIX) -> str:
    """Derive a default display name: the domain minus the platform suffix."""
    if suffix and domain.endswith(suffix):
        return domain[: -len(suffix)]
    return domain


def session_id_for(domain: str, *, is_online: bool = False) -> str:
    """Canonical session id: ``offline_<domain>`` or ``online_<domain>``."""
    prefix = "online" if is_online else "offline"
    return f"{prefix}_{domain}"
