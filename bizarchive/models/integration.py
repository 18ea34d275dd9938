"""BizArchive - Integration Catalog.

An integration is one (source, destination) event flow. The catalog is fixed
at build time; every integration is processed by the same pipeline and only
differs by its parameters.
"""

from typing import Any, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, model_validator

MISSING_DESTINATION = "NA"
_MISSING_MARKERS = {"", "N/A", "NA"}


def normalize_destination(destination: Optional[str]) -> str:
    """Map an absent destination to the identity placeholder."""
    if destination is None or destination.strip().upper() in _MISSING_MARKERS:
        return MISSING_DESTINATION
    return destination


class Integration(BaseModel):
    """Immutable catalog entry.

    ``id`` is composed from code, source and the normalized destination so it
    is always safe to use as an object-key segment.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    source: str
    destination: str = "N/A"
    id: str = ""

    @model_validator(mode="before")
    @classmethod
    def _compose_id(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = {**data, "destination": data.get("destination") or "N/A"}
            if not data.get("id"):
                destination = normalize_destination(data["destination"])
                data["id"] = f"{data.get('code', '')}-{data.get('source', '')}-{destination}"
        return data

    @property
    def source_filter(self) -> str:
        return self.source.lower()

    @property
    def destination_filter(self) -> str:
        return self.destination.lower()


def _entry(code: str, source: str, destination: str) -> Integration:
    return Integration(code=code, source=source, destination=destination)


# ── Single integrations (no downstream system) ──
_SINGLES: Tuple[Integration, ...] = (
    _entry("IC-07", "INT08-1", "N/A"),
    _entry("IC-08", "INT09-1", "N/A"),
    _entry("IC-09", "INT10-1", "N/A"),
)

# ── Integration pairs ──
_PAIRS: Tuple[Integration, ...] = (
    _entry("IC-01", "INT03-1", "INT04"),
    _entry("IC-02", "INT03-2", "INT04"),
    _entry("IC-03", "INT04", "INT31"),
    _entry("IC-04", "INT11-2", "INT11"),
    _entry("IC-05", "INT12-2", "INT12-1"),
    _entry("IC-06", "INT04", "INT15-1-1"),
    _entry("IC-10", "INT15-2-2", "INT15-2-1"),
    _entry("IC-11", "INT15-3-2", "INT15-3-1"),
    _entry("IC-12", "INT27", "INT28"),
    _entry("IC-13", "INT17", "INT18"),
    _entry("IC-14", "INT28", "INT29"),
    _entry("IC-15", "INT25", "INT26"),
    _entry("IC-16", "INT26", "INT30"),
    _entry("IC-17", "INT32-2", "INT32-1"),
    _entry("IC-18", "INT33-2", "INT33-1"),
    _entry("IC-19", "INT15-2-2", "INT24-1"),
    _entry("IC-20", "INT21", "INT22"),
    _entry("IC-24", "INT16", "INT17"),
    _entry("IC-25", "INT20", "INT16"),
    _entry("IC-26", "INT15-1-1", "INT19-1"),
    _entry("IC-27", "INT15-2-1", "INT19-2"),
    _entry("IC-28", "INT15-3-1", "INT19-3"),
    _entry("IC-29", "INT19-1", "INT20"),
    _entry("IC-30", "INT19-2", "INT20"),
)

CATALOG: Tuple[Integration, ...] = _SINGLES + _PAIRS


def find_integration(code: Optional[str]) -> Optional[Integration]:
    """Case-insensitive lookup by integration code."""
    if not code:
        return None
    for integration in CATALOG:
        if integration.code.lower() == code.strip().lower():
            return integration
    return None


def select_integrations(codes: Iterable[str] = ()) -> List[Integration]:
    """Return the catalog, or only the listed codes when any are given.

    Unknown codes raise ValueError rather than being silently skipped.
    """
    codes = [c for c in codes if c and c.strip()]
    if not codes:
        return list(CATALOG)
    selected: List[Integration] = []
    for code in codes:
        integration = find_integration(code)
        if integration is None:
            raise ValueError(f"Unknown integration code: {code}")
        if integration not in selected:
            selected.append(integration)
    return selected
