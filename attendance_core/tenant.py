"""Tenant scoping.

Every cache, matcher and store call takes a :class:`Tenant` explicitly. The
:class:`TenantContext` only helps session bootstrap code pick one: it is backed
by a :class:`contextvars.ContextVar`, so two asyncio tasks serving different
organizations never see each other's selection.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Iterator

from .exceptions import TenantNotSelected

LEGACY_SCOPE = "__legacy__"


@dataclass(frozen=True)
class Tenant:
    organization_id: str | None = None

    def __post_init__(self) -> None:
        if self.organization_id is None:
            return
        cleaned = str(self.organization_id).strip()
        if not cleaned:
            raise ValueError("organization_id cannot be blank; use Tenant.legacy() for the null scope.")
        if cleaned == LEGACY_SCOPE:
            raise ValueError(f"'{LEGACY_SCOPE}' is reserved for the legacy scope.")
        object.__setattr__(self, "organization_id", cleaned)

    @classmethod
    def legacy(cls) -> "Tenant":
        return cls(None)

    @property
    def is_legacy(self) -> bool:
        return self.organization_id is None

    @property
    def scope_key(self) -> str:
        """Non-null key used wherever the legacy scope must compare as a value."""
        return LEGACY_SCOPE if self.organization_id is None else self.organization_id

    def owns(self, organization_id: str | None) -> bool:
        return organization_id == self.organization_id

    def __str__(self) -> str:
        return "legacy" if self.is_legacy else f"org:{self.organization_id}"


class TenantContext:
    def __init__(self, name: str = "tenant") -> None:
        self._current: ContextVar[Tenant | None] = ContextVar(f"attendance_core.{name}", default=None)

    def set_tenant(self, organization_id: str) -> Tenant:
        tenant = Tenant(organization_id)
        self._current.set(tenant)
        return tenant

    def clear_tenant(self) -> Tenant:
        """Select the legacy (null organization) scope."""
        tenant = Tenant.legacy()
        self._current.set(tenant)
        return tenant

    def current_tenant(self) -> Tenant:
        tenant = self._current.get()
        if tenant is None:
            raise TenantNotSelected("No tenant selected. Call set_tenant() or clear_tenant() first.")
        return tenant

    def current_organization_id(self) -> str | None:
        return self.current_tenant().organization_id

    @property
    def is_selected(self) -> bool:
        return self._current.get() is not None

    @contextmanager
    def scoped(self, tenant: Tenant) -> Iterator[Tenant]:
        token = self._current.set(tenant)
        try:
            yield tenant
        finally:
            self._current.reset(token)
