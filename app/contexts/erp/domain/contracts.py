from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _safe_str(value: object | None) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    return raw or None


def normalize_modified_at(value: object | None) -> str | None:
    """Return an ISO UTC timestamp ("...Z") or None when the value is unusable."""
    raw = _safe_str(value)
    if not raw:
        return None
    normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    # Zoho sends offsets without a colon, e.g. 2024-05-01T10:00:00-0400.
    if len(normalized) >= 5 and normalized[-5] in "+-" and normalized[-4:].isdigit() and "T" in normalized:
        normalized = normalized[:-2] + ":" + normalized[-2:]
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass
class ExternalRecord:
    external_id: str
    kind: str
    modified_at: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "kind": self.kind,
            "modified_at": self.modified_at,
            "payload": dict(self.payload),
        }

    @staticmethod
    def from_payload(kind: str, payload: dict[str, Any], id_field: str) -> "ExternalRecord":
        # Records without an id are still surfaced so the mapper can reject them per record.
        data = dict(payload or {}) if isinstance(payload, dict) else {}
        return ExternalRecord(
            external_id=_safe_str(data.get(id_field)) or "",
            kind=kind,
            modified_at=normalize_modified_at(data.get("last_modified_time")),
            payload=data,
        )


@dataclass
class ErpPage:
    records: list[ExternalRecord] = field(default_factory=list)
    has_more: bool = False
    page: int = 1
