"""
Field parsers for heterogeneous scraped job data.

Every parser returns None (or an empty result) on failure instead of
raising. Missing salary and date values are normal: roughly a third of
postings carry no salary at all.
"""

import re
import html
import logging
import unicodedata
from dataclasses import dataclass
from datetime import datetime, date, timezone
from typing import Any, Dict, Optional, Tuple

from bs4 import BeautifulSoup
import dateparser
from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

WHITESPACE_RE = re.compile(r"\s+")
TAG_HINT_RE = re.compile(r"<[a-zA-Z/!][^>]*>")


def clean_text(value: Any) -> Optional[str]:
    """
    Decode HTML entities, strip markup, NFKC-normalize and collapse whitespace.

    Args:
        value: Raw field value (any type)

    Returns:
        Cleaned text, or None when nothing is left
    """
    if value is None:
        return None

    text = html.unescape(str(value))
    if TAG_HINT_RE.search(text):
        text = BeautifulSoup(text, "html.parser").get_text(" ")
    text = unicodedata.normalize("NFKC", text)
    text = WHITESPACE_RE.sub(" ", text).strip()
    return text or None


def fold_key(value: str) -> str:
    """Lowercase lookup key with German transliteration (ü -> ue, ß -> ss)."""
    text = unicodedata.normalize("NFKC", value).strip().lower()
    for src, dst in (("ä", "ae"), ("ö", "oe"), ("ü", "ue"), ("ß", "ss")):
        text = text.replace(src, dst)
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return WHITESPACE_RE.sub(" ", text)


def strip_accents_key(value: str) -> str:
    """Lowercase lookup key with diacritics simply dropped (ü -> u)."""
    text = unicodedata.normalize("NFKD", value.strip().lower().replace("ß", "ss"))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return WHITESPACE_RE.sub(" ", text)


# ---------------------------------------------------------------------------
# Salary
# ---------------------------------------------------------------------------

CURRENCY_PATTERNS = [
    (re.compile(r"€|\beur\b|\beuro?s?\b", re.IGNORECASE), "EUR"),
    (re.compile(r"£|\bgbp\b", re.IGNORECASE), "GBP"),
    (re.compile(r"\bchf\b|\bfr\.", re.IGNORECASE), "CHF"),
    (re.compile(r"\$|\busd\b", re.IGNORECASE), "USD"),
]

# Grouped thousands ("55.000,50", "55,000", "55 000") or plain decimals ("45,5", "1.5").
THOUSANDS_SEP = r"[.,' \u00a0\u202f]"
SALARY_NUMBER_RE = re.compile(
    r"(?P<num>\d{1,3}(?:" + THOUSANDS_SEP + r"\d{3})+(?:[.,]\d{1,2})?|\d+(?:[.,]\d+)?)"
    r"\s*(?P<k>k\b|tsd\.?|tausend)?",
    re.IGNORECASE,
)
GROUPED_RE = re.compile(r"^\d{1,3}(?:" + THOUSANDS_SEP + r"\d{3})+(?:[.,]\d{1,2})?$")


def _to_number(token: str) -> Optional[float]:
    """Convert one numeric token with European or English separators."""
    token = token.strip()
    if GROUPED_RE.match(token):
        decimal = ""
        tail = re.search(r"[.,](\d{1,2})$", token)
        body = token
        if tail and not re.search(THOUSANDS_SEP + r"\d{3}$", token):
            decimal = tail.group(1)
            body = token[: tail.start()]
        digits = re.sub(THOUSANDS_SEP, "", body)
        try:
            return float(f"{digits}.{decimal}" if decimal else digits)
        except ValueError:
            return None

    try:
        return float(token.replace(",", "."))
    except ValueError:
        return None


def detect_currency(text: str, default: str = "EUR") -> str:
    for pattern, code in CURRENCY_PATTERNS:
        if pattern.search(text):
            return code
    return default


def parse_salary(
    value: Any,
    default_currency: str = "EUR",
) -> Tuple[Optional[float], Optional[float], str]:
    """
    Parse a salary string into (min, max, currency).

    Examples:
        "45k-65k"                -> (45000.0, 65000.0, "EUR")
        "€ 55.000 - 70.000"      -> (55000.0, 70000.0, "EUR")
        "60.000,50 EUR"          -> (60000.5, 60000.5, "EUR")
        "$80,000 to $95,000"     -> (80000.0, 95000.0, "USD")
        "Marktgerecht"           -> (None, None, "EUR")

    Args:
        value: Raw salary string or number
        default_currency: Currency used when none is recognized

    Returns:
        Tuple of (salary_min, salary_max, currency); min/max are None when
        nothing numeric could be parsed
    """
    if value is None:
        return None, None, default_currency

    if isinstance(value, bool):
        return None, None, default_currency

    if isinstance(value, (int, float)):
        amount = float(value)
        if amount <= 0:
            return None, None, default_currency
        return amount, amount, default_currency

    text = clean_text(value)
    if not text:
        return None, None, default_currency

    currency = detect_currency(text, default_currency)

    amounts = []
    has_k = []
    for match in SALARY_NUMBER_RE.finditer(text):
        number = _to_number(match.group("num"))
        if number is None or number <= 0:
            continue
        amounts.append(number)
        has_k.append(bool(match.group("k")))
        if len(amounts) == 2:
            break

    if not amounts:
        return None, None, currency

    # "45-65k": the suffix on the upper bound applies to the lower bound too
    if len(amounts) == 2 and has_k[1] and not has_k[0] and amounts[0] < 1000:
        has_k[0] = True

    values = [amount * 1000 if k else amount for amount, k in zip(amounts, has_k)]
    low, high = min(values), max(values)
    return round(low, 2), round(high, 2), currency


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
OPEN_COUNT_RE = re.compile(r"(\d)\+")
LONE_NUMBER_RE = re.compile(r"^\d+$")

DATE_LANGUAGES = ["de", "en"]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_posted_date(value: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse absolute or relative posting dates into a UTC datetime.

    Relative expressions ("3 days ago", "vor 2 Wochen", "gestern") are
    resolved against ``now``, which defaults to the current time.

    Args:
        value: datetime, date, epoch number or string
        now: Anchor for relative expressions

    Returns:
        Timezone-aware UTC datetime or None when unparseable
    """
    if value is None or isinstance(value, bool):
        return None

    anchor = _as_utc(now) if now else datetime.now(timezone.utc)

    if isinstance(value, datetime):
        return _as_utc(value)

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        ts = float(value)
        # Epoch milliseconds
        if ts > 1e12:
            ts /= 1000.0
        try:
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    text = clean_text(value)
    if not text:
        return None

    if ISO_DATE_RE.match(text):
        try:
            return _as_utc(date_parser.isoparse(text))
        except (ValueError, OverflowError):
            pass

    # A lone number ("3") would parse as a day of the current month
    if LONE_NUMBER_RE.match(text):
        return None

    # "30+ days ago" -> "30 days ago"
    text = OPEN_COUNT_RE.sub(r"\1", text)

    try:
        parsed = dateparser.parse(
            text,
            languages=DATE_LANGUAGES,
            settings={
                "RELATIVE_BASE": anchor.replace(tzinfo=None),
                "DATE_ORDER": "DMY",
                "PREFER_DAY_OF_MONTH": "first",
                "PREFER_DATES_FROM": "past",
                "TIMEZONE": "UTC",
                "TO_TIMEZONE": "UTC",
                "RETURN_AS_TIMEZONE_AWARE": True,
            },
        )
    except Exception as e:
        logger.debug(f"dateparser failed for {text!r}: {e}")
        return None

    if parsed is None:
        logger.debug(f"Unparseable date {text!r}")
        return None

    return _as_utc(parsed)


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------

# canonical city -> (federal state, variants)
CITY_TABLE: Dict[str, Tuple[Optional[str], Tuple[str, ...]]] = {
    "Berlin": ("Berlin", ()),
    "Hamburg": ("Hamburg", ()),
    "München": ("Bayern", ("Munich", "Munchen", "Muenchen", "Monaco di Baviera")),
    "Köln": ("Nordrhein-Westfalen", ("Cologne", "Koln", "Koeln")),
    "Frankfurt am Main": ("Hessen", ("Frankfurt", "Frankfurt a.M.", "Frankfurt/Main", "Frankfurt a. M.")),
    "Stuttgart": ("Baden-Württemberg", ()),
    "Düsseldorf": ("Nordrhein-Westfalen", ("Dusseldorf", "Duesseldorf")),
    "Leipzig": ("Sachsen", ()),
    "Dortmund": ("Nordrhein-Westfalen", ()),
    "Essen": ("Nordrhein-Westfalen", ()),
    "Bremen": ("Bremen", ()),
    "Dresden": ("Sachsen", ()),
    "Hannover": ("Niedersachsen", ("Hanover",)),
    "Nürnberg": ("Bayern", ("Nuremberg", "Nurnberg", "Nuernberg")),
    "Duisburg": ("Nordrhein-Westfalen", ()),
    "Bochum": ("Nordrhein-Westfalen", ()),
    "Bonn": ("Nordrhein-Westfalen", ()),
    "Münster": ("Nordrhein-Westfalen", ("Munster", "Muenster")),
    "Karlsruhe": ("Baden-Württemberg", ()),
    "Mannheim": ("Baden-Württemberg", ()),
    "Augsburg": ("Bayern", ()),
    "Wiesbaden": ("Hessen", ()),
    "Mainz": ("Rheinland-Pfalz", ()),
    "Aachen": ("Nordrhein-Westfalen", ()),
    "Heidelberg": ("Baden-Württemberg", ()),
    "Freiburg im Breisgau": ("Baden-Württemberg", ("Freiburg",)),
    "Darmstadt": ("Hessen", ()),
    "Regensburg": ("Bayern", ()),
    "Ingolstadt": ("Bayern", ()),
    "Erlangen": ("Bayern", ()),
    "Potsdam": ("Brandenburg", ()),
    "Kiel": ("Schleswig-Holstein", ()),
    "Wolfsburg": ("Niedersachsen", ()),
    "Braunschweig": ("Niedersachsen", ("Brunswick",)),
    "Walldorf": ("Baden-Württemberg", ()),
    "Jena": ("Thüringen", ()),
    "Saarbrücken": ("Saarland", ("Saarbrucken", "Saarbruecken")),
    "Wien": (None, ("Vienna",)),
    "Zürich": (None, ("Zurich", "Zuerich")),
}

STATE_TABLE: Dict[str, Tuple[str, ...]] = {
    "Baden-Württemberg": ("Baden-Wurttemberg", "Baden Württemberg", "BW"),
    "Bayern": ("Bavaria", "Freistaat Bayern"),
    "Brandenburg": (),
    "Hessen": ("Hesse",),
    "Mecklenburg-Vorpommern": ("Mecklenburg-Western Pomerania", "Mecklenburg Vorpommern"),
    "Niedersachsen": ("Lower Saxony",),
    "Nordrhein-Westfalen": ("North Rhine-Westphalia", "North Rhine Westphalia", "NRW"),
    "Rheinland-Pfalz": ("Rhineland-Palatinate",),
    "Saarland": (),
    "Sachsen": ("Saxony", "Freistaat Sachsen"),
    "Sachsen-Anhalt": ("Saxony-Anhalt",),
    "Schleswig-Holstein": (),
    "Thüringen": ("Thuringia",),
}
# City-states resolve as cities first; listed here so "Land Berlin" etc. still match.
CITY_STATES = {"Berlin", "Hamburg", "Bremen"}

COUNTRY_TABLE: Dict[str, Tuple[str, ...]] = {
    "Germany": ("Deutschland", "DE", "DEU", "Bundesrepublik Deutschland"),
    "Austria": ("Österreich", "AT"),
    "Switzerland": ("Schweiz", "CH", "Suisse"),
    "Netherlands": ("Niederlande", "NL"),
}

NATIONWIDE_RE = re.compile(
    r"\b(bundesweit|deutschlandweit|germany[- ]wide|nationwide|multiple locations|"
    r"mehrere standorte|verschiedene standorte|diverse standorte)\b",
    re.IGNORECASE,
)
REMOTE_RE = re.compile(r"\b(remote|home[- ]?office|hybrid|mobiles arbeiten|telearbeit)\b", re.IGNORECASE)
LOCATION_SPLIT_RE = re.compile(r"\s*[,;|()\[\]]\s*|\s+[-–]\s+")
POSTCODE_RE = re.compile(r"^\d{4,5}\s+")


def _build_lookup(table: Dict[str, Tuple[str, ...]]) -> Dict[str, str]:
    lookup: Dict[str, str] = {}
    for canonical, variants in table.items():
        for name in (canonical,) + tuple(variants):
            lookup[fold_key(name.strip(" ."))] = canonical
            lookup[strip_accents_key(name.strip(" ."))] = canonical
    return lookup


CITY_LOOKUP = _build_lookup({city: entry[1] for city, entry in CITY_TABLE.items()})
STATE_LOOKUP = _build_lookup(STATE_TABLE)
for _city_state in CITY_STATES:
    STATE_LOOKUP.setdefault(fold_key(_city_state), _city_state)
COUNTRY_LOOKUP = _build_lookup(COUNTRY_TABLE)


@dataclass
class LocationParts:
    """Derived location components."""
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    is_multi: bool = False


def _lookup(table: Dict[str, str], token: str) -> Optional[str]:
    token = token.strip(" .")
    return table.get(fold_key(token)) or table.get(strip_accents_key(token))


def canonical_city(name: Optional[str]) -> Optional[str]:
    """Map a city spelling variant to its canonical name, or None if unknown."""
    if not name:
        return None
    return _lookup(CITY_LOOKUP, name)


def parse_location(value: Any) -> LocationParts:
    """
    Split a composite location string into city / state / country.

    Known spelling variants ("Munich", "Muenchen") collapse to one canonical
    city. Federal state names are returned as state, never as city. Strings
    naming several cities or the whole country keep city=None.

    Args:
        value: Raw location string

    Returns:
        LocationParts (all fields None when nothing is recognized)
    """
    text = clean_text(value)
    if not text:
        return LocationParts()

    parts = LocationParts()

    if NATIONWIDE_RE.search(text):
        parts.is_multi = True
        if re.search(r"germany|deutschland|bundesweit", text, re.IGNORECASE):
            parts.country = "Germany"
        return parts

    stripped = REMOTE_RE.sub(" ", text)
    tokens = [t.strip(" .") for t in LOCATION_SPLIT_RE.split(stripped)]
    tokens = [POSTCODE_RE.sub("", t) for t in tokens if t and t.strip(" .")]

    cities = []
    unknown = []
    for token in tokens:
        # "Berlin/Munich" or "Hamburg & Köln"
        sub_tokens = [s.strip() for s in re.split(r"\s*(?:/|&|\bund\b|\band\b|\boder\b|\bor\b)\s*", token) if s.strip()]
        resolved_cities = [c for c in (canonical_city(s) for s in sub_tokens) if c]
        if len(sub_tokens) > 1 and len(resolved_cities) > 1:
            cities.extend(resolved_cities)
            continue

        city = canonical_city(token)
        if city:
            cities.append(city)
            continue
        state = _lookup(STATE_LOOKUP, token)
        if state:
            parts.state = parts.state or state
            continue
        country = _lookup(COUNTRY_LOOKUP, token)
        if country:
            parts.country = parts.country or country
            continue
        unknown.append(token)

    distinct_cities = list(dict.fromkeys(cities))
    if len(distinct_cities) > 1:
        parts.is_multi = True
        return parts

    if distinct_cities:
        parts.city = distinct_cities[0]
        state = CITY_TABLE[parts.city][0]
        if state and not parts.state:
            parts.state = state
    elif unknown and re.fullmatch(r"[^\W\d_][\w .'-]*", unknown[0]) and len(unknown[0]) > 1:
        parts.city = unknown[0]

    if parts.state and not parts.country:
        parts.country = "Germany"

    return parts


# ---------------------------------------------------------------------------
# Employment type
# ---------------------------------------------------------------------------

EMPLOYMENT_TYPE_PATTERNS = [
    ("working_student", r"werkstudent|working student|studentische"),
    ("internship", r"praktikum|praktikant|intern(ship)?\b|pflichtpraktikum"),
    ("apprenticeship", r"ausbildung|apprentice|duales studium|azubi"),
    ("freelance", r"freelance|freiberuf|selbstständig|freie mitarbeit"),
    ("temporary", r"(?<!un)befristet|temporary|zeitarbeit|arbeitnehmerüberlassung|fixed[- ]term"),
    ("contract", r"\bcontract(or)?\b|vertrag auf zeit"),
    ("part_time", r"teilzeit|part[- ]?time|minijob"),
    ("full_time", r"vollzeit|full[- ]?time|festanstellung|permanent|unbefristet"),
]
EMPLOYMENT_TYPE_RES = [(label, re.compile(pattern, re.IGNORECASE)) for label, pattern in EMPLOYMENT_TYPE_PATTERNS]
EMPLOYMENT_TYPES = {label for label, _ in EMPLOYMENT_TYPE_PATTERNS}


def normalize_employment_type(value: Any) -> Optional[str]:
    """
    Map free-text employment types (German or English) onto a fixed label set.

    Returns:
        One of EMPLOYMENT_TYPES, or None
    """
    text = clean_text(value)
    if not text:
        return None

    if text in EMPLOYMENT_TYPES:
        return text

    for label, pattern in EMPLOYMENT_TYPE_RES:
        if pattern.search(text):
            return label
    return None
