from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, status
import httpx

from chatgate.core.config import get_settings
from chatgate.providers.llm.upstream import get_upstream_client
from chatgate.services.accounts import AccountStore, get_account_store
from chatgate.services.auth.tokens import TokenVerifier, get_token_verifier
from chatgate.services.notifications import Notifier, get_notifier
from chatgate.services.proxy import StreamingProxy
from chatgate.services.tiers import free_tier_policy, pro_tier_policy


def get_free_proxy(
    verifier: TokenVerifier = Depends(get_token_verifier),
    store: AccountStore = Depends(get_account_store),
    notifier: Notifier = Depends(get_notifier),
    client: httpx.AsyncClient = Depends(get_upstream_client),
) -> StreamingProxy:
    return StreamingProxy(
        policy=free_tier_policy(),
        verifier=verifier,
        store=store,
        notifier=notifier,
        client=client,
    )


def get_pro_proxy(
    verifier: TokenVerifier = Depends(get_token_verifier),
    store: AccountStore = Depends(get_account_store),
    notifier: Notifier = Depends(get_notifier),
    client: httpx.AsyncClient = Depends(get_upstream_client),
) -> StreamingProxy:
    return StreamingProxy(
        policy=pro_tier_policy(),
        verifier=verifier,
        store=store,
        notifier=notifier,
        client=client,
    )


def require_ops_token(authorization: str | None = Header(default=None)) -> None:
    # Ops endpoints are hidden unless an operator token is configured.
    expected = get_settings().ops_metrics_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    provided = authorization or ""
    if not hmac.compare_digest(provided.encode("utf-8"), f"Bearer {expected}".encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing or invalid bearer token"},
            headers={"WWW-Authenticate": "Bearer"},
        )
