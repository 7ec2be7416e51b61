"""FastAPI dependencies: request actor, authorization engine, operation guards."""
import logging
from functools import lru_cache
from typing import Callable, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from ..authorization import AuthorizationEngine
from ..config import DelegationPolicy, delegation_policy, get_settings, load_catalog
from ..database import get_db
from ..errors import ErrorKind
from ..permissions import Operation, PermissionCatalog
from ..schemas import Actor
from .errors import GENERIC_DETAIL, raise_for_result

logger = logging.getLogger("qms-core.api")


def get_actor(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
) -> Actor:
    """
    Actor supplied by the upstream identity layer, which has already
    authenticated the request.

    Raises:
        HTTPException: 401 if either header is missing or malformed
    """
    if not x_user_id or not x_tenant_id:
        raise HTTPException(status_code=401, detail=GENERIC_DETAIL[ErrorKind.UNAUTHORIZED])
    try:
        return Actor(user_id=UUID(x_user_id), tenant_id=UUID(x_tenant_id))
    except ValueError:
        logger.warning("Rejected request with malformed actor headers")
        raise HTTPException(status_code=401, detail=GENERIC_DETAIL[ErrorKind.UNAUTHORIZED])


@lru_cache
def get_catalog() -> PermissionCatalog:
    """Role catalog, loaded once per process."""
    return load_catalog(get_settings())


@lru_cache
def get_delegation_policy() -> DelegationPolicy:
    return delegation_policy(get_settings())


def get_authorization_engine(
    db: Session = Depends(get_db),
    catalog: PermissionCatalog = Depends(get_catalog),
    policy: DelegationPolicy = Depends(get_delegation_policy),
) -> AuthorizationEngine:
    """Request-scoped engine (its caches live for one request)."""
    return AuthorizationEngine(db, catalog, policy=policy)


def require_operation(operation: Operation) -> Callable[..., Actor]:
    """
    Build a dependency that only lets actors allowed to run ``operation`` through.

    Example:
        @router.post("/audits", dependencies=[Depends(require_operation(Operation.CREATE_AUDIT))])
    """

    def guard(
        actor: Actor = Depends(get_actor),
        engine: AuthorizationEngine = Depends(get_authorization_engine),
    ) -> Actor:
        raise_for_result(engine.authorize(actor.user_id, operation, tenant_id=actor.tenant_id))
        return actor

    return guard
