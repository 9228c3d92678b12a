"""Shared utility functions for the ownership-chain pipeline.

Consolidates logic used by the normalizer, the vigencia engine, the chain
builder and the detectors:
  - Date parsing and calendar arithmetic
  - Amount parsing ($ / MXN aware)
  - State, identifier and person-name normalization
  - Name similarity (Levenshtein ratio + token overlap)
  - RFC format validation and agency detection
"""

import re
import calendar
import logging
import unicodedata
from datetime import date, datetime, timedelta
from typing import Any, Optional

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════
# 1. DATE PARSING & CALENDAR ARITHMETIC
# ═══════════════════════════════════════════════════

_DATE_FORMATS = [
    "%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%d.%m.%Y",
    "%Y/%m/%d", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M",
    "%d/%m/%Y %H:%M:%S", "%d/%m/%Y %H:%M",
]

_ISO_DATETIME_RE = re.compile(r'^\d{4}-\d{2}-\d{2}T')
_YEAR_ONLY_RE = re.compile(r'^(19|20)\d{2}$')


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a date/datetime value into a naive datetime.

    Accepts datetime and date objects, ISO-8601 timestamps (with or without
    a trailing ``Z`` / UTC offset), the common Mexican ``dd/mm/yyyy`` forms
    and a bare year.  Returns None for anything unparseable; never raises.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s:
        return None

    if _ISO_DATETIME_RE.match(s):
        iso = s[:-1] + "+00:00" if s.endswith("Z") else s
        # fromisoformat before 3.11 rejects fractional seconds that are not 3 or 6 digits
        iso = re.sub(r'(\.\d+)', lambda m: m.group(1)[:7].ljust(7, "0"), iso, count=1)
        try:
            return datetime.fromisoformat(iso).replace(tzinfo=None)
        except ValueError:
            pass

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue

    if _YEAR_ONLY_RE.match(s):
        return datetime(int(s), 1, 1)
    return None


def to_date(value: Any) -> Optional[date]:
    """Like :func:`parse_date` but returns a plain ``date``."""
    dt = parse_date(value)
    return dt.date() if dt else None


def days_between(start: date, end: date) -> int:
    """Whole days from *start* to *end* (negative when end precedes start)."""
    return (end - start).days


def years_between(start: date, end: date) -> float:
    return (end - start).days / 365.25


def add_days(d: date, days: int) -> date:
    return d + timedelta(days=days)


def add_years(d: date, years: int) -> date:
    """Shift a date by whole years; 29 Feb falls back to 28 Feb."""
    try:
        return d.replace(year=d.year + years)
    except ValueError:
        return d.replace(year=d.year + years, day=28)


def last_day_of_month(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def date_iso(d: Optional[date]) -> Optional[str]:
    """ISO string for a date, None passes through."""
    return d.isoformat() if d else None


# ═══════════════════════════════════════════════════
# 2. AMOUNT PARSING
# ═══════════════════════════════════════════════════

def parse_amount(value: Any) -> Optional[float]:
    """Parse a monetary amount from various formats.

    Handles:
      - Numeric types (int, float)
      - Strings with $, MXN, M.N. prefixes/suffixes
      - Comma-separated thousands
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s:
        return None
    for token in ("MXN", "M.N.", "M.N", "$", "MN"):
        s = s.replace(token, "")
    s = s.replace(",", "").replace(" ", "").strip()
    try:
        return float(s)
    except ValueError:
        return None


# ═══════════════════════════════════════════════════
# 3. TEXT NORMALIZATION
# ═══════════════════════════════════════════════════

def strip_accents(s: str) -> str:
    """NFD-decompose and drop combining marks (á → a, Ñ → N)."""
    decomposed = unicodedata.normalize("NFD", s)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def normalize_state_name(name: Any) -> str:
    """Canonical jurisdiction key: upper-case, accent-free, single-spaced.

    "Nuevo León" → "NUEVO LEON", "  yucatán " → "YUCATAN"
    """
    if not name or not isinstance(name, str):
        return ""
    s = strip_accents(name.upper())
    s = s.replace(".", " ")
    return re.sub(r'\s+', ' ', s).strip()


def normalize_identifier(value: Any) -> str:
    """Strict normalization: upper-case, accent-free, only [A-Z0-9]."""
    if value is None:
        return ""
    s = strip_accents(str(value).upper())
    return re.sub(r'[^A-Z0-9]', '', s)


def normalize_rfc(value: Any) -> Optional[str]:
    """Trim and upper-case an RFC / VIN; empty → None."""
    if value is None:
        return None
    s = str(value).strip().upper()
    return s or None


def _name_tokens(name: Any) -> list[str]:
    if not name:
        return []
    s = strip_accents(str(name).upper())
    s = re.sub(r'[^A-Z0-9 ]', ' ', s)
    return [t for t in s.split() if t]


def normalize_name(name: Any) -> str:
    """Normalize a person/company name for comparison (strict, space-joined)."""
    return " ".join(_name_tokens(name))


# ═══════════════════════════════════════════════════
# 4. NAME SIMILARITY
# ═══════════════════════════════════════════════════

def _levenshtein_distance(s1: str, s2: str) -> int:
    """Compute Levenshtein edit distance between two strings."""
    if len(s1) < len(s2):
        return _levenshtein_distance(s2, s1)
    if len(s2) == 0:
        return len(s1)
    prev = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        curr = [i + 1]
        for j, c2 in enumerate(s2):
            ins = prev[j + 1] + 1
            dele = curr[j] + 1
            sub = prev[j] + (0 if c1 == c2 else 1)
            curr.append(min(ins, dele, sub))
        prev = curr
    return prev[-1]


def levenshtein_ratio(s1: str, s2: str) -> float:
    """(longer - distance) / longer, 1.0 for two empty strings."""
    longer = max(len(s1), len(s2))
    if longer == 0:
        return 1.0
    return (longer - _levenshtein_distance(s1, s2)) / longer


def name_similarity(name1: Any, name2: Any) -> float:
    """Compute similarity between two names (0.0 to 1.0).

    Both names go through the strict normalization (accents stripped, only
    A-Z/0-9 kept), then the best of three scores is returned:
      - Levenshtein ratio over the space-collapsed strings
      - Levenshtein ratio over alphabetically sorted tokens (word order)
      - Jaccard token overlap
    """
    t1 = _name_tokens(name1)
    t2 = _name_tokens(name2)
    if not t1 or not t2:
        return 0.0
    collapsed1, collapsed2 = "".join(t1), "".join(t2)
    if collapsed1 == collapsed2:
        return 1.0

    direct = levenshtein_ratio(collapsed1, collapsed2)
    reordered = levenshtein_ratio("".join(sorted(t1)), "".join(sorted(t2)))
    s1, s2 = set(t1), set(t2)
    jaccard = len(s1 & s2) / len(s1 | s2)
    return max(direct, reordered, jaccard)


def shared_surname(name1: Any, name2: Any) -> Optional[str]:
    """Return a surname-like token (≥4 chars, not a corporate suffix) both names share."""
    t1 = [t for t in _name_tokens(name1) if len(t) >= 4 and t not in _CORPORATE_TOKENS]
    t2 = set(t for t in _name_tokens(name2) if len(t) >= 4 and t not in _CORPORATE_TOKENS)
    for tok in t1:
        if tok in t2:
            return tok
    return None


# ═══════════════════════════════════════════════════
# 5. RFC VALIDATION & AGENCY DETECTION
# ═══════════════════════════════════════════════════

# 3 letters (moral) or 4 letters (física) + yymmdd + 3-char homoclave
_RFC_RE = re.compile(r'^[A-ZÑ&]{3,4}[0-9]{6}[A-Z0-9]{3}$')

_AGENCY_KEYWORDS = ("agencia", "agenc", "agency", "dealer", "distribui", "concesion")

_CORPORATE_TOKENS = {
    "SA", "DE", "CV", "SAB", "RL", "SAPI", "SOCIEDAD", "ANONIMA", "CAPITAL",
    "VARIABLE", "GRUPO", "AUTOMOTRIZ", "AUTOS", "MOTORS", "LOS", "LAS", "DEL",
}


def validate_rfc_format(rfc: Any) -> bool:
    """True if *rfc* matches the SAT RFC layout (persona física or moral)."""
    if not rfc or not isinstance(rfc, str):
        return False
    return bool(_RFC_RE.match(rfc.strip().upper()))


def is_agency_name(name: Any) -> bool:
    """Heuristic: dealership / distributor names are expected to recur in a chain."""
    if not name:
        return False
    s = strip_accents(str(name).lower())
    return any(kw in s for kw in _AGENCY_KEYWORDS)
