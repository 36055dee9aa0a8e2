"""Protocol defining the ERP auth client interface.

IdempiereAuthClient implements this protocol; tests substitute fakes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from idempiere_portal.auth.models import (
        ContextOption,
        ContextSelection,
        Credentials,
        LanguageOption,
        LoginFailure,
        LoginNeedsContext,
        LoginSuccess,
        RoleOption,
    )


class ErpAuthClientProtocol(Protocol):
    """Authentication and context lookup calls against the ERP."""

    async def login(
        self,
        credentials: Credentials,
        context: ContextSelection | None = None,
    ) -> LoginFailure | LoginNeedsContext | LoginSuccess:
        """Authenticate, optionally binding a full context.

        Never raises for transport or HTTP failures; those come back as
        LoginFailure.
        """
        ...

    async def get_roles(self, token: str, client_id: int) -> list[RoleOption]:
        """Roles available to the user within a client.

        Raises:
            ErpError: On any transport or HTTP failure.
        """
        ...

    async def get_organizations(
        self,
        token: str,
        client_id: int,
        role_id: int,
    ) -> list[ContextOption]:
        """Organizations available for a client and role."""
        ...

    async def get_warehouses(
        self,
        token: str,
        client_id: int,
        role_id: int,
        organization_id: int,
    ) -> list[ContextOption]:
        """Warehouses available for a client, role and organization."""
        ...

    async def get_languages(self, token: str, client_id: int) -> list[LanguageOption]:
        """Languages configured for a client."""
        ...

    async def validate_token(self, token: str) -> bool:
        """Check a token with the ERP."""
        ...

    async def logout(self, token: str) -> bool:
        """Invalidate a token at the ERP."""
        ...
