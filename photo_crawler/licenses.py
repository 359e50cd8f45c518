"""
License allow-list and canonicalization.

Strings are uppercased, whitespace is collapsed to hyphens and the result is
classified token by token, so "CC-BY-NC-4.0" is a non-commercial license and
never passes as "CC-BY" just because it contains that substring.

Accepted inputs include "CC BY-SA 4.0", "cc-by-4.0", Openverse codes ("by-sa",
"cc0", "pdm" plus a separate version column), Commons short names
("Public domain", "CC BY 2.0 de") and creativecommons.org license URLs.

Nothing in this module raises.
"""

from __future__ import annotations

import re
from typing import List, Optional, Tuple

PUBLIC_DOMAIN = "Public Domain"

ALLOWED_FAMILIES = {"PD", "BY", "BY-SA"}
KNOWN_VERSIONS = {"1.0", "2.0", "2.5", "3.0", "4.0"}

_PD_TOKENS = {"CC0", "PDM", "PD", "ZERO", "PUBLICDOMAIN"}
_CLAUSES = {"SA", "NC", "ND"}
_FILLER = {
    "LICENSE", "LICENCE", "LICENSES", "INTERNATIONAL", "GENERIC",
    "UNPORTED", "PORTED", "DEED", "LEGALCODE", "VERSION",
}
_PHRASES = [
    ("CREATIVE-COMMONS", "CC"),
    ("SHARE-ALIKE", "SHAREALIKE"),
    ("NON-COMMERCIAL", "NONCOMMERCIAL"),
    ("NO-DERIVATIVES", "NODERIVATIVES"),
    ("NO-DERIVS", "NODERIVS"),
    ("CC-0", "CC0"),
]
_WORDS = {
    "ATTRIBUTION":   "BY",
    "SHAREALIKE":    "SA",
    "NONCOMMERCIAL": "NC",
    "NODERIVATIVES": "ND",
    "NODERIVS":      "ND",
}

_WS_RE = re.compile(r"\s+")
_SPLIT_RE = re.compile(r"[-_/,;:()]+")
_VERSION_RE = re.compile(r"^V?(\d)(?:\.(\d))?\.?$")
_CC_URL_RE = re.compile(r"CREATIVECOMMONS\.ORG/(LICENSES|PUBLICDOMAIN)/([^?#]*)")


def _clean(license: object) -> str:
    if license is None:
        return ""
    try:
        text = str(license)
    except Exception:
        return ""
    return _WS_RE.sub("-", text.strip().upper())


def _as_version(token: str) -> Optional[str]:
    m = _VERSION_RE.match(token)
    if not m:
        return None
    return f"{m.group(1)}.{m.group(2) or '0'}"


def _tokens(cleaned: str) -> List[str]:
    m = _CC_URL_RE.search(cleaned)
    if m:
        kind, path = m.group(1), m.group(2)
        parts = [p for p in path.split("/") if p]
        if kind == "PUBLICDOMAIN":
            return ["PD"]
        return ["CC"] + [t for p in parts for t in _SPLIT_RE.split(p) if t]

    for phrase, repl in _PHRASES:
        cleaned = cleaned.replace(phrase, repl)
    if "PUBLIC-DOMAIN" in cleaned:
        cleaned = cleaned.replace("PUBLIC-DOMAIN", "PUBLICDOMAIN")
    return [_WORDS.get(t, t) for t in _SPLIT_RE.split(cleaned) if t]


def _parse(cleaned: str) -> Optional[Tuple[str, Optional[str]]]:
    """(family, version) for recognized licenses, None otherwise."""
    tokens = _tokens(cleaned)
    if not tokens:
        return None

    tset = set(tokens)
    if tset & _PD_TOKENS and not tset & {"NC", "ND"}:
        return "PD", None

    words: List[str] = []
    version: Optional[str] = None
    for tok in tokens:
        if tok in _FILLER:
            continue
        v = _as_version(tok)
        if v is not None:
            if version is None:
                version = v
            continue
        if version is not None and len(tok) == 2 and tok.isalpha() and tok not in _CLAUSES:
            continue  # jurisdiction port such as "DE" in "CC BY-SA 3.0 DE"
        words.append(tok)

    if words and words[0] == "CC":
        words = words[1:]
    if not words or words[0] != "BY":
        return None

    clauses = words[1:]
    if any(c not in _CLAUSES for c in clauses):
        return None
    cset = set(clauses)
    if {"SA", "ND"} <= cset:
        return None

    family = "-".join(["BY"] + [c for c in ("NC", "SA", "ND") if c in cset])
    if version not in KNOWN_VERSIONS:
        version = None
    return family, version


def is_allowed(license: object) -> bool:
    """True only for CC0 / Public Domain / PDM / CC-BY / CC-BY-SA (any version)."""
    parsed = _parse(_clean(license))
    return parsed is not None and parsed[0] in ALLOWED_FAMILIES


def normalize(license: object) -> str:
    """Canonical license string; unrecognized input comes back uppercased and hyphenated."""
    cleaned = _clean(license)
    parsed = _parse(cleaned)
    if parsed is None:
        return cleaned
    family, version = parsed
    if family == "PD":
        return PUBLIC_DOMAIN
    base = f"CC-{family}"
    return f"{base}-{version}" if version else base


def license_from_parts(code: object, version: object = None) -> str:
    """Join an index's separate license code and version columns ("by-sa", "4.0")."""
    c = _clean(code)
    v = _clean(version)
    if not c:
        return ""
    if not v or v in ("NAN", "NONE"):
        return c
    return f"{c}-{v}"
