"""FastAPI dependencies for database access and tenant resolution."""

from typing import Generator
from uuid import UUID

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from dojoflow.db.models import Organization
from dojoflow.db.session import SessionLocal
from dojoflow.services.action_dispatcher import ActionDispatcher

ORG_HEADER = "X-Organization-Id"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_org_id(
    x_organization_id: str | None = Header(default=None, alias=ORG_HEADER),
    db: Session = Depends(get_db),
) -> UUID:
    """
    Resolve the calling tenant.

    Authentication happens upstream; the gateway forwards the authenticated
    organization in the X-Organization-Id header.

    Raises:
        HTTPException 400: header missing or not a UUID
        HTTPException 404: organization does not exist
    """
    if not x_organization_id:
        raise HTTPException(status_code=400, detail=f"Missing {ORG_HEADER} header")
    try:
        org_id = UUID(x_organization_id)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {ORG_HEADER} header")

    if not db.get(Organization, org_id):
        raise HTTPException(status_code=404, detail="Organization not found")
    return org_id


def get_dispatcher() -> ActionDispatcher:
    """Dispatcher for steps run from a request, wired to the configured providers."""
    return ActionDispatcher()
