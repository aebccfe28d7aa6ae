"""Deterministic identity derivation for compound assistants.

A display name is normalised once into a slug; the four remote resource names
are derived from that slug with fixed prefixes.  Because the derivation is a
pure function, retrying a create with the same display name always targets the
same remote resources.
"""

from __future__ import annotations

import re
from typing import NamedTuple

POOL_PREFIX = "pool_"
INDEX_PREFIX = "index_"
TEMPLATE_PREFIX = "prompt_"
AGENT_PREFIX = "bot_"

SLUG_SEPARATOR = "_"

# Applied after lowercasing, so upper-case umlauts fold too.
_DIACRITIC_FOLDS: tuple[tuple[str, str], ...] = (
    ("ä", "ae"),
    ("ö", "oe"),
    ("ü", "ue"),
    ("ß", "ss"),
)

_NON_ALNUM_RUN = re.compile(r"[^a-z0-9]+")


class ChildNames(NamedTuple):
    """Remote resource names belonging to one compound assistant."""

    pool: str
    index: str
    template: str
    agent: str


def derive_slug(display_name: str) -> str:
    """Normalise *display_name* into a canonical slug.

    Lowercases, folds German diacritics to their base-Latin digraphs, replaces
    every run of non-alphanumeric characters with a single ``_`` and trims
    separators from both ends.  Never raises; empty input yields ``""``.

    >>> derive_slug("Marketing Team")
    'marketing_team'
    >>> derive_slug("  Grüße / Übersicht ")
    'gruesse_uebersicht'
    """
    value = display_name.lower()
    for source, target in _DIACRITIC_FOLDS:
        value = value.replace(source, target)
    value = _NON_ALNUM_RUN.sub(SLUG_SEPARATOR, value)
    return value.strip(SLUG_SEPARATOR)


def derive_child_names(slug: str) -> ChildNames:
    """Return the pool, index, template and agent names for *slug*."""
    return ChildNames(
        pool=f"{POOL_PREFIX}{slug}",
        index=f"{INDEX_PREFIX}{slug}",
        template=f"{TEMPLATE_PREFIX}{slug}",
        agent=f"{AGENT_PREFIX}{slug}",
    )
