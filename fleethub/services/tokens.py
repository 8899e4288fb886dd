from __future__ import annotations

from uuid import uuid4

from fleethub.config import Settings
from fleethub.errors import NotFoundError, StoreError
from fleethub.identity import create_identity_token, decode_identity_token, ensure_cluster_ca
from fleethub.logger import get_logger
from fleethub.schemas.objects import Identity, ObjectMeta, Secret
from fleethub.services.provisioner import (
    CA_BUNDLE_KEY,
    IDENTITY_LABEL,
    SECRET_TYPE_IDENTITY_TOKEN,
    TOKEN_KEY,
)
from fleethub.store import ObjectStore, object_key

_logger = get_logger("services.tokens")


def token_secret_name_for(identity_name: str) -> str:
    return f"{identity_name}-token-{uuid4().hex[:5]}"


async def _attach_secret(store: ObjectStore, identity: Identity) -> Identity:
    secret = await store.create(
        Secret(
            metadata=ObjectMeta(
                name=token_secret_name_for(identity.name),
                namespace=identity.namespace,
                labels={IDENTITY_LABEL: identity.name},
            ),
            type=SECRET_TYPE_IDENTITY_TOKEN,
        )
    )
    identity.secrets = [secret.name]
    try:
        return await store.update(identity)
    except StoreError:
        await store.delete(Secret, secret.namespace, secret.name)
        raise


async def _populate_secret(store: ObjectStore, settings: Settings, identity: Identity) -> bool:
    secret = await store.get(Secret, identity.namespace, identity.secrets[0])
    current = secret.value(TOKEN_KEY).decode("utf-8", errors="replace")
    # Expired or foreign-signed tokens are reissued in place.
    if (
        secret.value(CA_BUNDLE_KEY)
        and current
        and decode_identity_token(current, settings.hub_identity_signing_key) is not None
    ):
        return False
    _, ca_pem = ensure_cluster_ca(settings.hub_pki_dir)
    token = create_identity_token(
        identity_name=identity.name,
        namespace=identity.namespace,
        secret_key=settings.hub_identity_signing_key,
        ttl_seconds=settings.hub_identity_token_ttl_seconds,
    )
    secret.set_value(CA_BUNDLE_KEY, ca_pem.encode("utf-8"))
    secret.set_value(TOKEN_KEY, token.encode("utf-8"))
    await store.update(secret)
    return True


async def sync_identity_tokens(store: ObjectStore, settings: Settings) -> int:
    """Attach and populate a bootstrap token secret for every identity.

    Returns the number of identities whose secret was created or filled in.
    """
    touched = 0
    for identity in await store.list(Identity, limit=10000):
        if identity.is_deleting:
            continue
        key = object_key(identity.namespace, identity.name)
        try:
            attached = False
            if not identity.secrets:
                identity = await _attach_secret(store, identity)
                attached = True
            populated = await _populate_secret(store, settings, identity)
        except NotFoundError as exc:
            _logger.warning(
                "tokens.missing",
                "Identity or its token secret disappeared during sync",
                identity=key,
                error=str(exc),
            )
            continue
        except StoreError as exc:
            _logger.warning(
                "tokens.sync_failed",
                "Failed to sync identity token; retrying next pass",
                identity=key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            continue
        if attached or populated:
            touched += 1
            _logger.info(
                "tokens.issue",
                "Issued identity bootstrap token",
                identity=key,
                secret=identity.secrets[0],
                attached=attached,
            )
    return touched
