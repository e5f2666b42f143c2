from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Workload


MAX_SUBDOMAIN_LENGTH = 63

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


def normalize(name: str | None) -> str:
    """Turn any display name into a DNS label.

    normalize("My Server!") == "my-server"; normalize("___") == "".
    An empty result is never a valid subdomain.
    """
    if not name:
        return ""
    return _NON_ALNUM_RE.sub("-", name.lower()).strip("-")


def is_valid_subdomain(value: object) -> bool:
    if not isinstance(value, str) or len(value) > MAX_SUBDOMAIN_LENGTH:
        return False
    return SUBDOMAIN_RE.fullmatch(value) is not None


def server_subdomain(workload: Workload) -> str:
    return workload.subdomain or normalize(workload.name or workload.id)
