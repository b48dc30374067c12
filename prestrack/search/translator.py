"""
Search parameter translation.

Turns the flat string map a client sends (usually URL query parameters) into a
``SearchQuery``: an AND of per-parameter criteria evaluated against stored
documents, plus ordering and truncation. Comma-separated values inside one
parameter are alternatives, except for ``date``/``_lastUpdated`` where each
comma term narrows the range.

Unknown parameters are ignored. A filtering parameter whose value is the empty
string matches nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from prestrack.references import canonical

logger = logging.getLogger(__name__)

EMAIL_IDENTIFIER_SYSTEM = "http://prestack.com/email"

# param -> document field compared by equality
EXACT_FIELDS: dict[str, str] = {
    "status": "status",
    "_id": "id",
    "gender": "gender",
    "birthDate": "birthDate",
    "intent": "intent",
    "priority": "priority",
    "patientId": "patientId",
    "doctorId": "doctorId",
    "doctor": "doctorId",
    "facilityId": "facilityId",
}

# param -> (reference paths, default type for bare ids)
REFERENCE_PARAMS: dict[str, tuple[tuple[str, ...], str]] = {
    "subject": (("subject.reference",), "Patient"),
    "patient": (
        ("subject.reference", "patient.reference", "participant.actor.reference"),
        "Patient",
    ),
    "recipient": (("recipient.reference",), "Patient"),
    "performer": (("performer.reference",), "Practitioner"),
    "practitioner": (
        ("participant.actor.reference", "generalPractitioner.reference"),
        "Practitioner",
    ),
    "actor": (("participant.actor.reference",), "Practitioner"),
    "encounter": (("encounter.reference",), "Encounter"),
    "organization": (
        ("managingOrganization.reference", "organization.reference"),
        "Organization",
    ),
    "owner": (("owner.reference",), "Patient"),
    "about": (("about.reference",), "Appointment"),
    "questionnaire": (("questionnaire",), "Questionnaire"),
    "based-on": (("basedOn.reference",), "CarePlan"),
}

# param -> path of the coding/identifier elements it searches
TOKEN_PARAMS: dict[str, str] = {
    "code": "code.coding",
    "code.coding.code": "code.coding",
    "category": "category.coding",
}

DATE_FIELDS: dict[str, tuple[str, ...]] = {
    "Appointment": ("start", "date"),
    "Observation": ("effectiveDateTime", "effectivePeriod.start", "issued"),
    "Encounter": ("period.start",),
    "Communication": ("sent",),
    "QuestionnaireResponse": ("authored",),
    "Flag": ("period.start",),
    "CarePlan": ("period.start",),
}
DEFAULT_DATE_FIELDS: tuple[str, ...] = ("date",)

TEXT_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "comment",
    "code.text",
    "code.coding.display",
    "payload.contentString",
)

# reference params whose path holds a single reference, so a backend can pre-filter on it
NATIVE_REFERENCE_PARAMS: tuple[str, ...] = ("subject", "owner", "encounter")

DATE_PREFIXES = ("eq", "ge", "gt", "le", "lt")


def values_at(document: Any, path: str) -> list[Any]:
    """All values at a dotted path, flattening lists along the way."""
    nodes = [document]
    for part in path.split("."):
        found = []
        for node in nodes:
            if isinstance(node, list):
                node_items = node
            else:
                node_items = [node]
            for item in node_items:
                if isinstance(item, dict) and part in item:
                    found.append(item[part])
        nodes = found
    flat: list[Any] = []
    for node in nodes:
        if isinstance(node, list):
            flat.extend(node)
        else:
            flat.append(node)
    return [v for v in flat if v is not None]


def parse_instant(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_date_only(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _split(value: str) -> list[str]:
    return [term.strip() for term in value.split(",") if term.strip()]


@dataclass
class Criterion:
    param: str
    test: Callable[[dict[str, Any]], bool]

    def __call__(self, document: dict[str, Any]) -> bool:
        return self.test(document)


def _nothing(_: dict[str, Any]) -> bool:
    return False


def exact_criterion(param: str, path: str, value: str) -> Criterion:
    accepted = set(_split(value))

    def test(document: dict[str, Any]) -> bool:
        return any(str(v) in accepted for v in values_at(document, path)
                   if not isinstance(v, (dict, list)))

    return Criterion(param, test if accepted else _nothing)


def reference_criterion(
    param: str, paths: tuple[str, ...], default_type: str, value: str
) -> Criterion:
    wanted = {canonical(term, default_type) for term in _split(value)} - {None}
    # legacy flat patientId field holds a bare id
    bare_patient_ids = {
        ref.split("/", 1)[1] for ref in wanted if ref.startswith("Patient/")
    } if param == "patient" else set()

    def test(document: dict[str, Any]) -> bool:
        for path in paths:
            for stored in values_at(document, path):
                if isinstance(stored, str) and canonical(stored, default_type) in wanted:
                    return True
        if bare_patient_ids and document.get("patientId") in bare_patient_ids:
            return True
        return False

    return Criterion(param, test if wanted else _nothing)


def _token_matches(element: Any, term: str, value_key: str) -> bool:
    if not isinstance(element, dict):
        return False
    if "|" in term:
        system, _, code = term.partition("|")
        if system and element.get("system") != system:
            return False
        return element.get(value_key) == code
    return element.get(value_key) == term


def token_criterion(param: str, path: str, value: str, value_key: str = "code") -> Criterion:
    terms = _split(value)

    def test(document: dict[str, Any]) -> bool:
        return any(
            _token_matches(element, term, value_key)
            for element in values_at(document, path)
            for term in terms
        )

    return Criterion(param, test if terms else _nothing)


def _date_bounds(term: str) -> tuple[datetime | None, datetime | None] | None:
    """Half-open ``[lower, upper)`` range for one date term, or None if unparseable."""
    prefix = "eq"
    if term[:2] in DATE_PREFIXES:
        prefix, term = term[:2], term[2:]
    instant = parse_instant(term)
    if instant is None:
        return None
    if _is_date_only(term) or prefix == "eq":
        day = instant.replace(hour=0, minute=0, second=0, microsecond=0)
        start, end = day, day + timedelta(days=1)
    else:
        start, end = instant, instant
    return {
        "eq": (start, end),
        "ge": (start, None),
        "gt": (end if end != start else start + timedelta(microseconds=1), None),
        "le": (None, end if end != start else end + timedelta(microseconds=1)),
        "lt": (None, start),
    }[prefix]


def date_criterion(param: str, paths: Iterable[str], value: str) -> Criterion:
    paths = tuple(paths)
    bounds = [_date_bounds(term) for term in _split(value)]
    if not bounds or any(b is None for b in bounds):
        return Criterion(param, _nothing)

    def in_range(instant: datetime) -> bool:
        for lower, upper in bounds:
            if lower is not None and instant < lower:
                return False
            if upper is not None and instant >= upper:
                return False
        return True

    def test(document: dict[str, Any]) -> bool:
        for path in paths:
            for stored in values_at(document, path):
                instant = parse_instant(stored)
                if instant is not None and in_range(instant):
                    return True
        return False

    return Criterion(param, test)


def name_strings(document: dict[str, Any]) -> list[str]:
    strings: list[str] = []
    for name in values_at(document, "name"):
        if isinstance(name, str):
            strings.append(name)
        elif isinstance(name, dict):
            given = [g for g in name.get("given") or [] if isinstance(g, str)]
            family = name.get("family") if isinstance(name.get("family"), str) else ""
            strings.extend(given)
            strings.append(family)
            strings.append(" ".join([*given, family]).strip())
            if isinstance(name.get("text"), str):
                strings.append(name["text"])
    return [s for s in strings if s]


def email_strings(document: dict[str, Any]) -> list[str]:
    return [
        entry.get("value", "")
        for entry in values_at(document, "telecom") + values_at(document, "identifier")
        if isinstance(entry, dict)
        and (entry.get("system") == "email" or entry.get("system") == EMAIL_IDENTIFIER_SYSTEM)
    ]


def display_strings(document: dict[str, Any]) -> list[str]:
    strings = name_strings(document)
    for path in TEXT_FIELDS:
        strings.extend(v for v in values_at(document, path) if isinstance(v, str))
    return strings


def text_criterion(
    param: str, extract: Callable[[dict[str, Any]], list[str]], value: str
) -> Criterion:
    needles = [term.lower() for term in _split(value)]

    def test(document: dict[str, Any]) -> bool:
        haystack = [s.lower() for s in extract(document)]
        return any(needle in text for needle in needles for text in haystack)

    return Criterion(param, test if needles else _nothing)


def _sort_key_paths(resource_type: str, key: str) -> tuple[str, ...]:
    if key == "date":
        return DATE_FIELDS.get(resource_type, DEFAULT_DATE_FIELDS)
    if key == "_lastUpdated":
        return ("meta.lastUpdated",)
    return (key,)


@dataclass(frozen=True)
class FieldFilter:
    """
    Equality pre-filter a backend can evaluate natively.

    ``path`` names a field of the stored payload (``("id",)`` is the resource
    id). A row passes when the value there is one of ``values`` or ends with one
    of ``suffixes``. An ``exact`` filter selects precisely what its criterion
    matches; the others only narrow the candidates the criteria then test.
    """

    path: tuple[str, ...]
    values: tuple[str, ...]
    suffixes: tuple[str, ...] = ()
    exact: bool = True


def reference_filter(path: str, default_type: str, value: str) -> FieldFilter | None:
    wanted = sorted({canonical(term, default_type) for term in _split(value)} - {None})
    if not wanted:
        return None
    values = set(wanted)
    # bare ids and absolute URLs stored by older clients
    values.update(ref.split("/", 1)[1] for ref in wanted if ref.startswith(f"{default_type}/"))
    return FieldFilter(
        tuple(path.split(".")),
        tuple(sorted(values)),
        suffixes=tuple(f"/{ref}" for ref in wanted),
        exact=False,
    )


@dataclass
class SearchQuery:
    resource_type: str
    criteria: list[Criterion] = field(default_factory=list)
    filters: list[FieldFilter] = field(default_factory=list)
    sort: list[tuple[tuple[str, ...], bool]] = field(default_factory=list)
    count: int | None = None

    @property
    def native_limit(self) -> int | None:
        """``_count`` a backend may apply itself, before the criteria run."""
        exact = sum(1 for f in self.filters if f.exact)
        if self.sort or exact != len(self.criteria):
            return None
        return self.count

    def matches(self, document: dict[str, Any]) -> bool:
        return all(criterion(document) for criterion in self.criteria)

    def _ordered(self, documents: list[dict[str, Any]]) -> list[dict[str, Any]]:
        # stable sorts applied from the least to the most significant key
        for paths, descending in reversed(self.sort):
            def key(document: dict[str, Any], paths=paths) -> Any:
                for path in paths:
                    for v in values_at(document, path):
                        instant = parse_instant(v) if isinstance(v, str) else None
                        if instant is not None:
                            return (0, instant.timestamp())
                        if isinstance(v, (int, float)) and not isinstance(v, bool):
                            return (0, v)
                        return (1, str(v))
                return None

            present = [d for d in documents if key(d) is not None]
            missing = [d for d in documents if key(d) is None]
            present.sort(key=key, reverse=descending)
            documents = present + missing
        return documents

    def apply(self, documents: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        results = [d for d in documents if self.matches(d)]
        if self.sort:
            results = self._ordered(results)
        if self.count is not None:
            results = results[: self.count]
        return results


def translate(resource_type: str, params: dict[str, Any]) -> SearchQuery:
    query = SearchQuery(resource_type)

    for param, raw in params.items():
        if raw is None:
            continue
        value = str(raw)

        if param == "_count":
            try:
                query.count = max(int(value), 0)
            except ValueError:
                logger.debug("Ignoring non-numeric _count %r", value)
        elif param == "_sort":
            query.sort = [
                (_sort_key_paths(resource_type, key.lstrip("-")), key.startswith("-"))
                for key in _split(value)
            ]
        elif param in EXACT_FIELDS:
            query.criteria.append(exact_criterion(param, EXACT_FIELDS[param], value))
            terms = _split(value)
            if terms:
                query.filters.append(FieldFilter((EXACT_FIELDS[param],), tuple(terms)))
        elif param in REFERENCE_PARAMS:
            paths, default_type = REFERENCE_PARAMS[param]
            query.criteria.append(reference_criterion(param, paths, default_type, value))
            if param in NATIVE_REFERENCE_PARAMS:
                pre_filter = reference_filter(paths[0], default_type, value)
                if pre_filter is not None:
                    query.filters.append(pre_filter)
        elif param in TOKEN_PARAMS:
            query.criteria.append(token_criterion(param, TOKEN_PARAMS[param], value))
        elif param == "identifier":
            query.criteria.append(token_criterion(param, "identifier", value, "value"))
        elif param == "date":
            paths = DATE_FIELDS.get(resource_type, DEFAULT_DATE_FIELDS)
            query.criteria.append(date_criterion(param, paths, value))
        elif param == "_lastUpdated":
            query.criteria.append(date_criterion(param, ("meta.lastUpdated",), value))
        elif param == "name":
            query.criteria.append(text_criterion(param, name_strings, value))
        elif param == "email":
            query.criteria.append(text_criterion(param, email_strings, value))
        elif param in ("_text", "q"):
            query.criteria.append(text_criterion(param, display_strings, value))
        else:
            logger.debug("Ignoring unsupported search parameter %r on %s", param, resource_type)

    return query
