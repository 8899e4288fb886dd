from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from fleethub.dependencies import get_store
from fleethub.errors import NotFoundError
from fleethub.schemas.objects import Secret
from fleethub.store import ObjectStore

router = APIRouter(prefix="/secrets", tags=["secrets"])


@router.get("/{namespace}/{name}", response_model=Secret)
async def get_secret(
    namespace: str,
    name: str,
    store: ObjectStore = Depends(get_store),
) -> Secret:
    """Return a secret with its data.

    Unauthenticated on purpose: operators export join bundles with this and
    the hub does not authenticate API clients. Restrict access to this route
    at the network edge.
    """
    try:
        return await store.get(Secret, namespace, name)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Secret not found") from None
