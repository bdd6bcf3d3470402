"""Provider catalog, read side.

Providers are reference data shared by every user. Catalog CRUD lives
outside this package; the services here only resolve providers and their
model lists for the credential and chat flows.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from keyledger.db.models import Provider
from keyledger.errors import ApiErrorCode, NotFoundError
from keyledger.schemas.chat import ProviderOut


def get_provider_or_404(db: Session, provider_id: UUID) -> Provider:
    """Load a provider by id.

    Raises:
        NotFoundError: E_PROVIDER_NOT_FOUND if no such provider exists.
    """
    provider = db.get(Provider, provider_id)
    if provider is None:
        raise NotFoundError(ApiErrorCode.E_PROVIDER_NOT_FOUND, "Provider not found")
    return provider


def list_providers(db: Session, active_only: bool = True) -> list[ProviderOut]:
    """List catalog providers ordered by name."""
    stmt = select(Provider).order_by(Provider.name)
    if active_only:
        stmt = stmt.where(Provider.is_active.is_(True))
    return [ProviderOut.model_validate(p) for p in db.scalars(stmt).all()]


def get_available_models(db: Session, provider_id: UUID) -> list[Any]:
    """Return the provider's ordered model descriptors."""
    provider = get_provider_or_404(db, provider_id)
    return list(provider.available_models or [])


def default_model_id(provider: Provider) -> str | None:
    """Id of the provider's first listed model, or None if it lists none.

    A descriptor is either a mapping with an "id" key or a bare model id.
    """
    models = provider.available_models or []
    if not models:
        return None
    first = models[0]
    if isinstance(first, dict):
        model_id = first.get("id")
        return str(model_id) if model_id is not None else None
    return str(first)
