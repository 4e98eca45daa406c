import re

from avr_tracker.core.config import get_settings

_LOCAL_PHONE = re.compile(r"^[0-9]{10}$")


def normalize_phone(value: str) -> str:
    """Canonical identifier: leading country code and whitespace removed.

    The canonical form is the users/{id} document key and the value stored in
    teamMembers, managerId, tempApproverID, submittedBy and approvedBy.
    """
    prefix = get_settings().COUNTRY_CODE
    cleaned = (value or "").strip()
    if cleaned.startswith(prefix):
        cleaned = cleaned[len(prefix):]
    return cleaned.strip()


def to_e164(value: str) -> str:
    return f"{get_settings().COUNTRY_CODE}{normalize_phone(value)}"


def is_valid_local_phone(value: str) -> bool:
    return bool(_LOCAL_PHONE.match(normalize_phone(value)))
