"""Deterministic qualification field extraction.

Keyword and regex matching only, no model calls. The conversation state
machine depends on ``extract_fields`` alone, so the policy here can be swapped
without touching state handling.
"""

import re
from datetime import date
from typing import Optional

SERVICE_KEYWORDS = [
    ("FREEZONE_BUSINESS_SETUP", ("freezone", "free zone", "free-zone")),
    ("MAINLAND_BUSINESS_SETUP", ("mainland", "business setup", "company setup", "open a company", "trade license", "business license")),
    ("GOLDEN_VISA", ("golden visa", "golden")),
    ("FAMILY_VISA", ("family visa", "wife", "husband", "children", "child", "dependent", "dependents", "sponsor my")),
    ("FREELANCE_VISA", ("freelance visa", "freelance", "freelancer")),
    ("VISIT_VISA", ("visit visa", "tourist visa", "tourist")),
    ("EMPLOYMENT_VISA", ("employment visa", "work visa", "work permit")),
    ("VISA_RENEWAL", ("renew", "renewal")),
    ("EMIRATES_ID", ("emirates id",)),
    ("PRO_SERVICES", ("pro service", "pro services", "typing", "attestation")),
]

BUSINESS_SETUP_SERVICES = {"MAINLAND_BUSINESS_SETUP", "FREEZONE_BUSINESS_SETUP"}
RENEWAL_SERVICES = {"VISA_RENEWAL", "EMIRATES_ID"}

DEMONYMS = {
    "indian": "Indian",
    "pakistani": "Pakistani",
    "bangladeshi": "Bangladeshi",
    "filipino": "Filipino",
    "egyptian": "Egyptian",
    "syrian": "Syrian",
    "lebanese": "Lebanese",
    "jordanian": "Jordanian",
    "british": "British",
    "american": "American",
    "canadian": "Canadian",
    "australian": "Australian",
    "chinese": "Chinese",
    "russian": "Russian",
    "turkish": "Turkish",
    "iranian": "Iranian",
    "iraqi": "Iraqi",
    "sudanese": "Sudanese",
    "ethiopian": "Ethiopian",
    "kenyan": "Kenyan",
    "nigerian": "Nigerian",
    "south african": "South African",
}

COUNTRIES = {
    "india": "Indian",
    "pakistan": "Pakistani",
    "bangladesh": "Bangladeshi",
    "philippines": "Filipino",
    "egypt": "Egyptian",
    "syria": "Syrian",
    "lebanon": "Lebanese",
    "jordan": "Jordanian",
    "uk": "British",
    "united kingdom": "British",
    "usa": "American",
    "canada": "Canadian",
    "australia": "Australian",
    "china": "Chinese",
    "russia": "Russian",
    "turkey": "Turkish",
    "iran": "Iranian",
    "iraq": "Iraqi",
    "sudan": "Sudanese",
    "ethiopia": "Ethiopian",
    "kenya": "Kenyan",
    "nigeria": "Nigerian",
    "south africa": "South African",
}

LICENSE_TYPES = {"mainland": "MAINLAND", "freezone": "FREEZONE", "free zone": "FREEZONE", "offshore": "OFFSHORE"}

BUSINESS_ACTIVITIES = (
    "general trading",
    "trading",
    "consulting",
    "consultancy",
    "e-commerce",
    "ecommerce",
    "restaurant",
    "real estate",
    "it services",
    "marketing",
    "construction",
    "logistics",
)

_MONTHS = ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"]

_RELATIVE_DATE = [
    re.compile(r"\b(next|this|in)\s+(\d+\s+)?(month|week|year|days?|weeks?|months?|years?)\b", re.I),
    re.compile(r"\b(soon|tomorrow|today|end of (month|year))\b", re.I),
]

_NUMERIC_DATE = re.compile(r"\b(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2,4})\b")
_ISO_DATE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_DAY_MONTH_YEAR = re.compile(
    r"\b(\d{1,2})(?:st|nd|rd|th)?\s+(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*,?\s+(\d{2,4})\b", re.I
)
_MONTH_DAY_YEAR = re.compile(
    r"\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{2,4})\b", re.I
)

_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_NAME = re.compile(r"\b(?:my name is|this is|i am called)\s+([A-Za-z]+(?:\s+[A-Za-z]+)?)", re.I)
_NAME_STOPWORDS = {"looking", "interested", "from", "here", "a", "an", "the", "not"}

_NATIONALITY_PATTERNS = [
    re.compile(r"\bnationality\s*(?:is|:)?\s*([A-Za-z]+(?:\s+[A-Za-z]+)?)", re.I),
    re.compile(r"\b([A-Za-z]+(?:\s+[A-Za-z]+)?)\s+(?:national|citizen|passport holder)\b", re.I),
    re.compile(r"\bi(?:'m| am)\s+from\s+([A-Za-z]+(?:\s+[A-Za-z]+)?)", re.I),
]

_PARTNERS = [re.compile(r"(\d+)\s+(?:partners?|shareholders?|owners?)\b", re.I), re.compile(r"\bpartners?\s*[:=]?\s*(\d+)", re.I)]
_VISAS = [re.compile(r"(\d+)\s+(?:visas?|residence)\b", re.I), re.compile(r"\bvisas?\s*[:=]?\s*(\d+)", re.I)]

_OUTSIDE = ("outside uae", "outside the uae", "outside dubai", "abroad", "not in uae", "overseas")
_INSIDE = ("inside uae", "inside the uae", "in uae", "in the uae", "in dubai", "in abu dhabi", "in sharjah", "already in uae")


def _has_phrase(lower: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", lower) is not None


def extract_service(text: str) -> Optional[str]:
    lower = text.lower()
    for service, keywords in SERVICE_KEYWORDS:
        if any(_has_phrase(lower, keyword) for keyword in keywords):
            return service
    return None


def _normalize_nationality(candidate: str) -> Optional[str]:
    candidate = candidate.strip().lower()
    if candidate in DEMONYMS:
        return DEMONYMS[candidate]
    if candidate in COUNTRIES:
        return COUNTRIES[candidate]
    first = candidate.split()[0] if candidate else ""
    return DEMONYMS.get(first) or COUNTRIES.get(first)


def extract_nationality(text: str) -> Optional[str]:
    for pattern in _NATIONALITY_PATTERNS:
        match = pattern.search(text)
        if match:
            nationality = _normalize_nationality(match.group(1))
            if nationality:
                return nationality

    lower = text.lower()
    # longest first so "south african" wins over a shorter key
    for key in sorted(DEMONYMS, key=len, reverse=True):
        if _has_phrase(lower, key):
            return DEMONYMS[key]
    return None


def extract_location(text: str) -> Optional[str]:
    lower = text.lower()
    if any(phrase in lower for phrase in _OUTSIDE):
        return "outside_uae"
    if any(_has_phrase(lower, phrase) for phrase in _INSIDE):
        return "inside_uae"
    return None


def _full_year(year_text: str) -> int:
    year = int(year_text)
    if len(year_text) == 2:
        return 2000 + year if year <= 49 else 1900 + year
    return year


def extract_explicit_date(text: str) -> Optional[date]:
    """Only explicit calendar dates. Relative phrases ("next month") yield None."""
    if any(pattern.search(text) for pattern in _RELATIVE_DATE):
        return None

    candidates = []
    match = _ISO_DATE.search(text)
    if match:
        candidates.append((int(match.group(1)), int(match.group(2)), int(match.group(3))))
    match = _NUMERIC_DATE.search(text)
    if match:
        candidates.append((_full_year(match.group(3)), int(match.group(2)), int(match.group(1))))
    match = _DAY_MONTH_YEAR.search(text)
    if match:
        month = _MONTHS.index(match.group(2).lower()[:3]) + 1
        candidates.append((_full_year(match.group(3)), month, int(match.group(1))))
    match = _MONTH_DAY_YEAR.search(text)
    if match:
        month = _MONTHS.index(match.group(1).lower()[:3]) + 1
        candidates.append((_full_year(match.group(3)), month, int(match.group(2))))

    for year, month, day in candidates:
        try:
            return date(year, month, day)
        except ValueError:
            continue
    return None


def extract_identity(text: str) -> dict[str, str]:
    identity: dict[str, str] = {}
    email = _EMAIL.search(text)
    if email:
        identity["email"] = email.group(0)
    name = _NAME.search(text)
    if name:
        words = name.group(1).split()
        if words[0].lower() not in _NAME_STOPWORDS:
            words = [w for w in words if w.lower() not in _NAME_STOPWORDS]
            identity["name"] = " ".join(word.capitalize() for word in words)
    return identity


def _first_count(patterns, text: str, minimum: int) -> Optional[int]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            count = int(match.group(1))
            if minimum <= count <= 10:
                return count
    return None


def extract_counts(text: str) -> dict[str, int]:
    counts = {}
    partners = _first_count(_PARTNERS, text, minimum=1)
    if partners is not None:
        counts["partners_count"] = partners
    visas = _first_count(_VISAS, text, minimum=0)
    if visas is not None:
        counts["visas_count"] = visas
    return counts


def extract_business_fields(text: str) -> dict[str, str]:
    lower = text.lower()
    fields = {}
    for phrase, license_type in LICENSE_TYPES.items():
        if _has_phrase(lower, phrase):
            fields["license_type"] = license_type
            break
    for activity in BUSINESS_ACTIVITIES:
        if _has_phrase(lower, activity):
            fields["business_activity"] = activity
            break
    return fields


def extract_fields(text: str) -> dict[str, str]:
    """All fields recognizable in ``text``. Values are strings; absent keys mean unknown."""
    if not text or not text.strip():
        return {}

    fields: dict[str, str] = {}
    service = extract_service(text)
    if service:
        fields["service"] = service
    nationality = extract_nationality(text)
    if nationality:
        fields["nationality"] = nationality
    location = extract_location(text)
    if location:
        fields["location"] = location
    expiry = extract_explicit_date(text)
    if expiry:
        fields["expiry_date"] = expiry.isoformat()
    fields.update(extract_identity(text))
    fields.update(extract_business_fields(text))
    for key, value in extract_counts(text).items():
        fields[key] = str(value)
    return fields
