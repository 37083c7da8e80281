"""Interfaces to the account side of the platform.

Project key validation and usage accounting belong to the registration
service. The implementations here are settings- and memory-backed so the
collector runs on its own.
"""

from collections import Counter
from typing import Protocol

from fastapi import Request

from src.collector.schemas import TenantContext
from src.core.config import ProjectKeyEntry


class ProjectKeyValidator(Protocol):
    async def validate_project_key(self, key: str) -> TenantContext | None: ...


class UsageCounter(Protocol):
    async def increment_event_count(self, tenant_id: str) -> None: ...


class StaticProjectKeys:
    def __init__(self, keys: dict[str, ProjectKeyEntry]) -> None:
        self._keys = dict(keys)

    async def validate_project_key(self, key: str) -> TenantContext | None:
        entry = self._keys.get(key)
        if entry is None:
            return None
        return TenantContext(tenant_id=entry.tenant_id, default_platform=entry.platform)


class InMemoryUsageCounter:
    def __init__(self) -> None:
        self.counts: Counter[str] = Counter()

    async def increment_event_count(self, tenant_id: str) -> None:
        self.counts[tenant_id] += 1


def extract_project_key(request: Request, body_key: str | None = None) -> str | None:
    """Find the project key: body, X-Project-Key, ?project_key, then a Bearer app_ token."""
    if body_key:
        return body_key
    header = request.headers.get("x-project-key")
    if header:
        return header
    query = request.query_params.get("project_key")
    if query:
        return query
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        token = auth[len("Bearer ") :].strip()
        # JWTs carry dots; project keys look like app_<random>
        if "." not in token and token.startswith("app_"):
            return token
    return None
