"""Click identifier helpers shared by the correlator, mismatch detector and recovery.

A browser click cookie (`_fbc`) has the form `fb.<subdomain>.<timestamp>.<fbclid>`.
Identifiers of 50 characters or fewer were truncated by an upstream field
limit; longer ones are "long-form" and safe to compare exactly.
"""

from typing import Any, Dict, Optional

LONG_FORM_MIN_LENGTH = 51
AEM_MARKER = "_aem_"


def is_long_form(identifier: Optional[str]) -> bool:
    return bool(identifier) and len(identifier) >= LONG_FORM_MIN_LENGTH


def extract_fbclid(value: Optional[str]) -> Optional[str]:
    """Return the fbclid part of a click cookie, or the value itself."""
    if not value:
        return None
    if value.startswith("fb.") and value.count(".") >= 3:
        return value.split(".", 3)[3] or None
    return value


def metadata_identifiers(metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Pull the click identifiers out of a touchpoint metadata map."""
    if not isinstance(metadata, dict):
        return {}
    found = {}
    for key in ("click_id", "fbclid", "fbc"):
        value = metadata.get(key)
        if isinstance(value, str) and value:
            found[key] = value
    return found


def identifiers_match(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two identifiers, unwrapping the cookie form on both sides."""
    if not a or not b:
        return False
    return a == b or extract_fbclid(a) == extract_fbclid(b)


def truncated_match(truncated: Optional[str], full: Optional[str]) -> bool:
    """True if `truncated` looks like a cut-down copy of the long-form `full`."""
    if not truncated or not is_long_form(full) or is_long_form(truncated):
        return False
    core = extract_fbclid(truncated) or truncated
    return (
        full.startswith(core)
        or full.endswith(core)
        or f"{AEM_MARKER}{core}" in full
    )
