"""Honeypot field check for automated form submissions.

Forms render a visually hidden input (``name__confirm`` by default) that
humans never fill in. Any value in it marks the request as automated.
"""

from collections.abc import Mapping
from typing import Any

from barfly.core.config import settings


def is_honeypot_filled(fields: Mapping[str, Any]) -> bool:
    """Return True when the hidden honeypot field carries a value.

    Args:
        fields: Submitted form or JSON body fields.
    """
    value = fields.get(settings.honeypot_field_name)
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    return True
