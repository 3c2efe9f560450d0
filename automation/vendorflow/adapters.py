"""
Legacy vendor field adapter.

Vendor records arrive from older sourcing tools under several spellings
(``businessName`` vs ``companyName``, ``aiScore`` vs ``fitScore``, a single
``address`` instead of ``location``). Everything past this boundary sees one
snake_case shape; nothing inside the engine looks at alternate names.
"""

from typing import Any

# canonical field → accepted input names, first present wins
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "company_name": ("company_name", "companyName", "businessName", "business_name", "name"),
    "specialty": ("specialty", "speciality", "trade"),
    "location": ("location", "address", "fullAddress"),
    "email": ("email", "contactEmail", "owner_email"),
    "phone": ("phone", "phoneNumber", "contactPhone"),
    "website": ("website", "websiteUrl", "url"),
    "fit_score": ("fit_score", "fitScore", "aiScore"),
    "ai_reasoning": ("ai_reasoning", "aiReasoning"),
    "has_active_contract": ("has_active_contract", "hasActiveContract"),
}


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _first(raw: dict, names: tuple[str, ...]) -> Any:
    for name in names:
        if not _blank(raw.get(name)):
            return raw[name]
    return None


def normalize_vendor_fields(raw: dict) -> dict:
    """Map a loosely-shaped vendor dict onto canonical snake_case fields.

    Only canonical keys are returned; missing values are omitted. A list of
    ``capabilities`` stands in for ``specialty`` and ``city``/``state`` for
    ``location`` when the direct fields are absent.
    """
    out: dict[str, Any] = {}
    for field, names in FIELD_ALIASES.items():
        value = _first(raw, names)
        if value is not None:
            out[field] = value.strip() if isinstance(value, str) else value

    if "specialty" not in out and raw.get("capabilities"):
        caps = raw["capabilities"]
        out["specialty"] = ", ".join(caps) if isinstance(caps, (list, tuple)) else str(caps)

    if "location" not in out:
        parts = [raw.get(k) for k in ("city", "state") if not _blank(raw.get(k))]
        if parts:
            out["location"] = ", ".join(parts)

    if "fit_score" in out:
        try:
            out["fit_score"] = int(round(float(out["fit_score"])))
        except (TypeError, ValueError):
            out.pop("fit_score")

    if "has_active_contract" in out:
        flag = out["has_active_contract"]
        if isinstance(flag, str):
            flag = flag.lower() in ("true", "yes", "1")
        out["has_active_contract"] = bool(flag)

    return out
