"""Shared dependencies: bearer-token auth, injected capabilities and caller IP."""
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from lumi.config import settings
from lumi.models import User
from lumi.services.link_codes import BulkCodeIssuer, CodeVerifier
from lumi.services.linking import UnlinkTransaction
from lumi.services.rate_limit import RateLimiter
from lumi.store import AuditSink, Store

security = HTTPBearer(auto_error=False)


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_audit_sink(request: Request) -> AuditSink:
    return request.app.state.audit_sink


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


StoreDep = Annotated[Store, Depends(get_store)]


def client_ip(request: Request) -> str:
    """Socket peer address; X-Forwarded-For counts only when sent by a trusted proxy."""
    peer = request.client.host if request.client else None
    trusted = {p.strip() for p in settings.trusted_proxies.split(",") if p.strip()}
    if peer and peer in trusted:
        hops = [h.strip() for h in request.headers.get("x-forwarded-for", "").split(",") if h.strip()]
        # Walk back from the hop our proxy appended; anything left of it is client-supplied.
        for hop in reversed(hops):
            if hop not in trusted:
                return hop
    return peer or "unknown"


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    store: StoreDep,
) -> User:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = credentials.credentials
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        user_id: str = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=401, detail="Invalid token")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    user = await store.get_user(user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user


def get_code_verifier(
    store: StoreDep,
    audit: Annotated[AuditSink, Depends(get_audit_sink)],
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
) -> CodeVerifier:
    return CodeVerifier(store, audit, limiter)


def get_bulk_code_issuer(store: StoreDep) -> BulkCodeIssuer:
    return BulkCodeIssuer(store)


def get_unlink_transaction(store: StoreDep) -> UnlinkTransaction:
    return UnlinkTransaction(store)


# Type aliases for route injection
CurrentUser = Annotated[User, Depends(get_current_user)]
