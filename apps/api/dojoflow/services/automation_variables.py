"""Template variables for automation messages.

Supported tokens ({{ name }}, whitespace allowed):

- Recipient: firstName, lastName, email, phone
- Dojo: businessName, operatorName, preferredName, dojoPhone, dojoEmail, aiName
- Links: aiChatLink, bookingLink, enrollmentLink, billingLink, scheduleLink,
  referralLink, appDownloadLink, comebackOfferLink, instructorVideoLink

Unknown tokens are left untouched so a typo is visible in the sent message
rather than silently blanked.
"""

from __future__ import annotations

import re
from urllib.parse import urlencode

from dojoflow.core.config import settings
from dojoflow.db.enums import EntityType
from dojoflow.db.models import Lead, Organization, Student

VARIABLE_PATTERN = re.compile(r"{{\s*([a-zA-Z0-9_]+)\s*}}")

SUPPORTED_VARIABLES = frozenset(
    {
        "firstName",
        "lastName",
        "email",
        "phone",
        "businessName",
        "operatorName",
        "preferredName",
        "dojoPhone",
        "dojoEmail",
        "aiName",
        "aiChatLink",
        "bookingLink",
        "enrollmentLink",
        "billingLink",
        "scheduleLink",
        "referralLink",
        "appDownloadLink",
        "comebackOfferLink",
        "instructorVideoLink",
    }
)


def extract_template_variables(text: str | None) -> set[str]:
    if not text:
        return set()
    return {match.group(1) for match in VARIABLE_PATTERN.finditer(text)}


def build_variables(
    entity: Lead | Student,
    organization: Organization | None,
    base_url: str | None = None,
) -> dict[str, str]:
    base = (base_url or settings.APP_BASE_URL).rstrip("/")
    entity_type = EntityType.LEAD if isinstance(entity, Lead) else EntityType.STUDENT
    chat_query = urlencode(
        {"id": str(entity.id), "type": entity_type.value, "name": entity.first_name or ""}
    )

    operator_name = (organization.operator_name if organization else None) or ""
    return {
        "firstName": entity.first_name or "",
        "lastName": entity.last_name or "",
        "email": entity.email or "",
        "phone": entity.phone or "",
        "businessName": (
            (organization.business_name or organization.name) if organization else ""
        ),
        "operatorName": operator_name,
        "preferredName": operator_name,
        "dojoPhone": (organization.business_phone if organization else None) or "",
        "dojoEmail": (organization.business_email if organization else None) or "",
        "aiName": (organization.ai_assistant_name if organization else None) or "Kai",
        "aiChatLink": f"{base}/chat?{chat_query}",
        "bookingLink": f"{base}/book",
        "enrollmentLink": f"{base}/enroll",
        "billingLink": f"{base}/billing",
        "scheduleLink": f"{base}/schedule",
        "referralLink": f"{base}/refer/{entity.id}",
        "appDownloadLink": f"{base}/download",
        "comebackOfferLink": f"{base}/comeback/{entity.id}",
        "instructorVideoLink": f"{base}/video/welcome",
    }


def render_template(
    template: str | None,
    entity: Lead | Student,
    organization: Organization | None,
    base_url: str | None = None,
) -> str:
    """Substitute supported variables into a message template."""
    if not template:
        return ""
    variables = build_variables(entity, organization, base_url)

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables:
            return variables[name]
        return match.group(0)

    return VARIABLE_PATTERN.sub(_replace, template)
