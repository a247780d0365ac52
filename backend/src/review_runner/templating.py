from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Mapping

DEFAULT_EMAIL_SUBJECT = "Please share your experience"
SMS_SEGMENT_LENGTH = 160
SMS_MULTIPART_SEGMENT_LENGTH = 153

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\}\}")


@dataclass(frozen=True)
class RenderedMessage:
    content: str
    subject: str | None


def render(content: str, subject: str | None, variables: Mapping[str, str]) -> RenderedMessage:
    """Substitute ``{{ name }}`` placeholders in content and subject.

    Unknown names render as the empty string. Rendering never raises and does
    not mutate ``variables``.
    """

    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    rendered_subject = None if subject is None else _PLACEHOLDER_RE.sub(_replace, subject)
    return RenderedMessage(content=_PLACEHOLDER_RE.sub(_replace, content), subject=rendered_subject)


def find_placeholders(content: str) -> list[str]:
    seen: list[str] = []
    for match in _PLACEHOLDER_RE.finditer(content):
        name = match.group(1)
        if name not in seen:
            seen.append(name)
    return seen


def sms_segment_count(content: str) -> int:
    length = len(content)
    if length == 0:
        return 0
    if length <= SMS_SEGMENT_LENGTH:
        return 1
    return math.ceil(length / SMS_MULTIPART_SEGMENT_LENGTH)


# Each personalisation value is registered under every name in its group.
VARIABLE_ALIASES: dict[str, tuple[str, ...]] = {
    "first_name": ("firstName", "customer.firstName"),
    "last_name": ("lastName", "customer.lastName"),
    "full_name": ("customerName", "customer.fullName"),
    "customer_email": ("email", "customer.email"),
    "customer_phone": ("phone", "customer.phone"),
    "business_name": ("businessName", "business.name"),
    "business_phone": ("business.phone",),
    "business_email": ("business.email",),
    "website": ("website", "business.website"),
    "review_url": ("reviewUrl", "review.url"),
    "tracking_url": ("trackingUrl", "tracking.url"),
    "unsubscribe_url": ("unsubscribe.url",),
}

KNOWN_VARIABLES = frozenset(name for names in VARIABLE_ALIASES.values() for name in names)


def build_variables(customer, business, request, app_base_url: str) -> dict[str, str]:
    """Build the personalisation map for a customer, business and review request."""
    first_name = (customer.first_name or "").strip()
    last_name = (customer.last_name or "").strip()
    values = {
        "first_name": first_name,
        "last_name": last_name,
        "full_name": " ".join(part for part in (first_name, last_name) if part),
        "customer_email": customer.email or "",
        "customer_phone": customer.phone or "",
        "business_name": business.name,
        "business_phone": business.phone or "",
        "business_email": business.email or "",
        "website": business.website or "",
        "review_url": request.review_url,
        "tracking_url": request.tracking_url,
        "unsubscribe_url": f"{app_base_url.rstrip('/')}/unsubscribe/{customer.customer_id}",
    }
    variables: dict[str, str] = {}
    for key, names in VARIABLE_ALIASES.items():
        for name in names:
            variables[name] = values[key]
    return variables
