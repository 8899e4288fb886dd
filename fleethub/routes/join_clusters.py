from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from fleethub.dependencies import get_runtime, get_store, require_identity
from fleethub.errors import AlreadyExistsError, ConflictError, NotFoundError
from fleethub.logger import get_logger
from fleethub.schemas.join_clusters import (
    JoinClusterCreate,
    JoinClusterDeleteOut,
    JoinClusterStatusUpdate,
)
from fleethub.schemas.objects import JoinCluster, ObjectMeta
from fleethub.store import ObjectStore

router = APIRouter(prefix="/join-clusters", tags=["join-clusters"])
_logger = get_logger("api.join_clusters")


def _notify(runtime: Any, namespace: str, name: str) -> None:
    if runtime is not None:
        runtime.enqueue(namespace, name)


async def _get_or_404(store: ObjectStore, namespace: str, name: str) -> JoinCluster:
    try:
        return await store.get(JoinCluster, namespace, name)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="JoinCluster not found") from None


@router.get("", response_model=List[JoinCluster])
async def list_join_clusters(
    namespace: Optional[str] = None,
    limit: int = 500,
    store: ObjectStore = Depends(get_store),
) -> List[JoinCluster]:
    bounded_limit = max(1, min(limit, 5000))
    return await store.list(JoinCluster, namespace=namespace, limit=bounded_limit)


@router.post("", response_model=JoinCluster, status_code=status.HTTP_201_CREATED)
async def create_join_cluster(
    payload: JoinClusterCreate,
    store: ObjectStore = Depends(get_store),
    runtime: Any = Depends(get_runtime),
) -> JoinCluster:
    join = JoinCluster(
        metadata=ObjectMeta(name=payload.name, namespace=payload.namespace, labels=payload.labels),
        spec=payload.spec,
    )
    try:
        created = await store.create(join)
    except AlreadyExistsError:
        raise HTTPException(status_code=409, detail="JoinCluster already exists") from None
    _notify(runtime, created.namespace, created.name)
    return created


@router.get("/{namespace}/{name}", response_model=JoinCluster)
async def get_join_cluster(
    namespace: str,
    name: str,
    store: ObjectStore = Depends(get_store),
) -> JoinCluster:
    return await _get_or_404(store, namespace, name)


@router.delete(
    "/{namespace}/{name}",
    response_model=JoinClusterDeleteOut,
    status_code=status.HTTP_202_ACCEPTED,
)
async def delete_join_cluster(
    namespace: str,
    name: str,
    store: ObjectStore = Depends(get_store),
    runtime: Any = Depends(get_runtime),
) -> JoinClusterDeleteOut:
    try:
        marked = await store.delete(JoinCluster, namespace, name)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="JoinCluster not found") from None
    except ConflictError:
        raise HTTPException(status_code=409, detail="JoinCluster changed during delete; retry") from None
    _notify(runtime, namespace, name)
    return JoinClusterDeleteOut(
        namespace=namespace,
        name=name,
        state="terminating" if marked is not None else "deleted",
    )


@router.put("/{namespace}/{name}/status", response_model=JoinCluster)
async def update_join_cluster_status(
    namespace: str,
    name: str,
    payload: JoinClusterStatusUpdate,
    claims: Dict[str, Any] = Depends(require_identity),
    store: ObjectStore = Depends(get_store),
    runtime: Any = Depends(get_runtime),
) -> JoinCluster:
    current = await _get_or_404(store, namespace, name)
    assigned = current.status.identity_name
    if claims.get("ns") != namespace or not assigned or claims.get("sub") != assigned:
        _logger.warning(
            "status.forbidden",
            "Identity is not assigned to this JoinCluster",
            join_cluster=f"{namespace}/{name}",
            identity=f"{claims.get('ns')}/{claims.get('sub')}",
        )
        raise HTTPException(status_code=403, detail="Identity is not assigned to this JoinCluster.")

    current.status = payload.status
    current.metadata.resource_version = payload.resource_version
    try:
        updated = await store.update_status(current)
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=exc.detail) from None
    except NotFoundError:
        raise HTTPException(status_code=404, detail="JoinCluster not found") from None
    _notify(runtime, namespace, name)
    return updated
