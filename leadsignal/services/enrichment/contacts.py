"""Normalization of agent-reported people into Contact rows."""

from __future__ import annotations

import re
import unicodedata
from typing import Any
from uuid import UUID

from leadsignal.models import Contact, OwnerType

TOP_PRIORITY_KEYWORDS = ("assistant", "office manager", "procurement")
HIGH_PRIORITY_KEYWORDS = ("admin", "operations")
PRIORITY_TARGET_THRESHOLD = 4


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def split_name(full_name: str | None) -> tuple[str | None, str | None]:
    """Split on whitespace: first token is the first name, the rest the last name."""
    if not full_name:
        return None, None
    parts = full_name.split()
    if not parts:
        return None, None
    if len(parts) == 1:
        return parts[0], None
    return parts[0], " ".join(parts[1:])


def priority_for_title(job_title: str | None) -> int:
    title = (job_title or "").lower()
    if any(keyword in title for keyword in TOP_PRIORITY_KEYWORDS):
        return 5
    if any(keyword in title for keyword in HIGH_PRIORITY_KEYWORDS):
        return 4
    return 3


def resolve_priority(raw: dict[str, Any], job_title: str | None) -> int:
    explicit = raw.get("priority_score")
    if isinstance(explicit, int) and not isinstance(explicit, bool):
        return max(1, min(explicit, 5))
    if raw.get("is_priority_persona") is True:
        return 5
    return priority_for_title(job_title)


def _ascii_slug(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    return normalized.lower()


def guess_domain(company_name: str | None) -> str | None:
    if not company_name:
        return None
    slug = re.sub(r"[^a-z0-9]", "", _ascii_slug(company_name))
    return f"{slug}.com" if slug else None


def guess_email(full_name: str | None, company_name: str | None) -> str | None:
    """Pattern-guess `first.last@company.com`; None without a two-part name and a company."""
    first, last = split_name(full_name)
    domain = guess_domain(company_name)
    if not first or not last or not domain:
        return None
    first_slug = re.sub(r"[^a-z0-9-]", "", _ascii_slug(first))
    last_slug = re.sub(r"[^a-z0-9-]", "", _ascii_slug(last))
    if not first_slug or not last_slug:
        return None
    return f"{first_slug}.{last_slug}@{domain}"


def normalize_contacts(
    raw_contacts: list[dict[str, Any]],
    *,
    owner_type: OwnerType,
    owner_id: UUID,
    task_id: UUID | None = None,
    external_task_id: str | None = None,
    source: str = "agent",
) -> list[Contact]:
    """Build Contact rows, dropping repeats of the same person."""
    contacts: list[Contact] = []
    seen: set[tuple[str, str]] = set()
    for raw in raw_contacts:
        full_name = _clean(raw.get("full_name"))
        derived_first, derived_last = split_name(full_name)
        first_name = _clean(raw.get("first_name")) or derived_first
        last_name = _clean(raw.get("last_name")) or derived_last
        full_name = full_name or " ".join(part for part in (first_name, last_name) if part) or "Contact"
        job_title = _clean(raw.get("job_title"))
        email = _clean(raw.get("email_principal")) or _clean(raw.get("email"))
        linkedin_url = _clean(raw.get("linkedin_url"))

        key = (full_name.lower(), (email or linkedin_url or "").lower())
        if key in seen:
            continue
        seen.add(key)

        priority_score = resolve_priority(raw, job_title)
        contacts.append(
            Contact(
                signal_id=owner_id if owner_type == OwnerType.SIGNAL else None,
                engager_id=owner_id if owner_type == OwnerType.ENGAGER else None,
                enrichment_task_id=task_id,
                full_name=full_name,
                first_name=first_name,
                last_name=last_name,
                job_title=job_title,
                department=_clean(raw.get("department")),
                location=_clean(raw.get("location")),
                email=email,
                email_alternate=_clean(raw.get("email_alternatif")) or _clean(raw.get("email_alternate")),
                phone=_clean(raw.get("phone")),
                linkedin_url=linkedin_url,
                priority_score=priority_score,
                is_priority_target=priority_score >= PRIORITY_TARGET_THRESHOLD,
                source=source,
                raw_data={"source": source, "external_task_id": external_task_id},
            )
        )
    return contacts


def clean_company_info(company_info: dict[str, Any] | None) -> dict[str, Any] | None:
    """Keep the known company fields, dropping empty and `N/A` values."""
    if not company_info:
        return None
    cleaned = {
        key: value
        for key in ("website", "industry", "employee_count", "headquarters")
        if (value := company_info.get(key)) and value != "N/A"
    }
    return cleaned or None
