from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Type, TypeVar

from fleethub.config import Settings
from fleethub.errors import AlreadyExistsError, ManifestError, NotFoundError, NotReadyError
from fleethub.logger import get_logger
from fleethub.schemas.objects import (
    AuthorizationBinding,
    Identity,
    JoinCluster,
    ObjectMeta,
    Secret,
    StoredObject,
    Subject,
)
from fleethub.store import ObjectStore, object_key

_logger = get_logger("services.provisioner")

ObjT = TypeVar("ObjT", bound=StoredObject)

SECRET_TYPE_IDENTITY_TOKEN = "identity-token"
SECRET_TYPE_JOIN_BUNDLE = "join-bundle"
CA_BUNDLE_KEY = "caBundle"
TOKEN_KEY = "token"
SERVER_KEY = "server"
JOIN_CLUSTER_LABEL = "fleethub.io/join-cluster"
IDENTITY_LABEL = "fleethub.io/identity"

JOIN_COMMAND_TEMPLATE = """\
# Run this against the hub to export the join credentials
fleethub --api-url {server} export-secret {secret_namespace}/{secret_name} --output-dir hub-cluster
# Run this in the spoke cluster context to create the bootstrap config and start the agent
kubectl create namespace fleethub-agent
kubectl create secret generic hub-secret -n fleethub-agent --from-file=caBundle=hub-cluster/caBundle --from-file=token=hub-cluster/token
kubectl create configmap hub-config -n fleethub-agent --from-literal=joinClusterName={cluster_name} --from-literal=joinClusterNamespace={cluster_namespace} --from-literal=server={server}
cat << EOF | kubectl apply -f -
{manifest}
EOF
"""


def identity_name_for(join: JoinCluster) -> str:
    return join.spec.identity_name or f"{join.name}-identity"


def binding_name_for(identity_name: str) -> str:
    return f"{identity_name}-binding"


def join_secret_name_for(join: JoinCluster) -> str:
    return f"{join.name}-join-secret"


def render_join_command(
    *,
    server: str,
    secret_namespace: str,
    secret_name: str,
    cluster_name: str,
    cluster_namespace: str,
    manifest: str,
) -> str:
    return JOIN_COMMAND_TEMPLATE.format(
        server=server,
        secret_namespace=secret_namespace,
        secret_name=secret_name,
        cluster_name=cluster_name,
        cluster_namespace=cluster_namespace,
        manifest=manifest.rstrip("\n"),
    )


def read_manifest(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestError(f"Unable to read agent manifest {path}: {exc}") from exc


@dataclass(frozen=True)
class ProvisionResult:
    identity_name: str
    join_secret_name: str
    join_secret_namespace: str
    join_command: str


class CredentialProvisioner:
    """Creates and removes the per-cluster credentials a spoke needs to join."""

    def __init__(self, store: ObjectStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings

    async def _get_or_create(self, obj: ObjT) -> ObjT:
        kind: Type[ObjT] = type(obj)
        try:
            return await self._store.get(kind, obj.namespace, obj.name)
        except NotFoundError:
            pass
        try:
            return await self._store.create(obj)
        except AlreadyExistsError:
            return await self._store.get(kind, obj.namespace, obj.name)

    def _owner_labels(self, join: JoinCluster) -> dict[str, str]:
        return {JOIN_CLUSTER_LABEL: f"{join.namespace}.{join.name}"}

    async def _bootstrap_secret(self, identity: Identity) -> Secret:
        if not identity.secrets:
            raise NotReadyError(f"Identity {identity.namespace}/{identity.name} has no bootstrap secret yet")
        secret_name = identity.secrets[0]
        try:
            secret = await self._store.get(Secret, identity.namespace, secret_name)
        except NotFoundError:
            raise NotReadyError(
                f"Bootstrap secret {identity.namespace}/{secret_name} does not exist yet"
            ) from None
        if not secret.value(CA_BUNDLE_KEY) or not secret.value(TOKEN_KEY):
            raise NotReadyError(f"Bootstrap secret {identity.namespace}/{secret_name} is not populated yet")
        return secret

    async def provision(self, join: JoinCluster) -> ProvisionResult:
        key = object_key(join.namespace, join.name)
        identity_name = identity_name_for(join)
        async with _logger.operation(
            "join.provision",
            "Provisioning join credentials",
            join_cluster=key,
            identity=identity_name,
        ) as op:
            labels = self._owner_labels(join)
            identity = await self._get_or_create(
                Identity(metadata=ObjectMeta(name=identity_name, namespace=join.namespace, labels=labels))
            )
            op.step("identity.ensure", "Ensured identity", secrets=len(identity.secrets))

            bootstrap = await self._bootstrap_secret(identity)
            op.step("bootstrap.resolve", "Resolved bootstrap secret", secret=bootstrap.name)

            binding = await self._get_or_create(
                AuthorizationBinding(
                    metadata=ObjectMeta(
                        name=binding_name_for(identity_name),
                        namespace=join.namespace,
                        labels=labels,
                    ),
                    role_ref=self._settings.hub_agent_role_name,
                    subjects=[Subject(kind=Identity.kind, name=identity_name, namespace=join.namespace)],
                )
            )
            op.step("binding.ensure", "Ensured authorization binding", binding=binding.name)

            join_secret = Secret(
                metadata=ObjectMeta(
                    name=join_secret_name_for(join),
                    namespace=self._settings.hub_canonical_namespace,
                    labels=labels,
                ),
                type=SECRET_TYPE_JOIN_BUNDLE,
            )
            join_secret.set_value(CA_BUNDLE_KEY, bootstrap.value(CA_BUNDLE_KEY))
            join_secret.set_value(TOKEN_KEY, bootstrap.value(TOKEN_KEY))
            join_secret.set_value(SERVER_KEY, self._settings.hub_api_server_url.encode("utf-8"))
            join_secret = await self._get_or_create(join_secret)
            op.step(
                "join_secret.ensure",
                "Ensured join secret",
                secret=object_key(join_secret.namespace, join_secret.name),
            )

            command = render_join_command(
                server=self._settings.hub_api_server_url,
                secret_namespace=join_secret.namespace,
                secret_name=join_secret.name,
                cluster_name=join.name,
                cluster_namespace=join.namespace,
                manifest=read_manifest(self._settings.agent_manifest_path),
            )
            op.step("command.render", "Rendered join command")
            return ProvisionResult(
                identity_name=identity_name,
                join_secret_name=join_secret.name,
                join_secret_namespace=join_secret.namespace,
                join_command=command,
            )

    async def _delete_ignoring_missing(self, kind: Type[StoredObject], namespace: str, name: str) -> bool:
        try:
            await self._store.delete(kind, namespace, name)
        except NotFoundError:
            return False
        return True

    async def cleanup(self, join: JoinCluster) -> None:
        identity_name = join.status.identity_name or identity_name_for(join)
        async with _logger.operation(
            "join.cleanup",
            "Removing join credentials",
            join_cluster=object_key(join.namespace, join.name),
            identity=identity_name,
        ) as op:
            removed = await self._delete_ignoring_missing(
                AuthorizationBinding, join.namespace, binding_name_for(identity_name)
            )
            op.step("binding.delete", "Removed authorization binding", removed=removed)

            removed = await self._delete_ignoring_missing(
                Secret, self._settings.hub_canonical_namespace, join_secret_name_for(join)
            )
            op.step("join_secret.delete", "Removed join secret", removed=removed)

            removed = await self._delete_ignoring_missing(Identity, join.namespace, identity_name)
            op.step("identity.delete", "Removed identity", removed=removed)

            # Swept by label after the identity is gone, so a token secret
            # attached between our reads is still caught.
            token_secrets = await self._store.list(
                Secret,
                namespace=join.namespace,
                labels={IDENTITY_LABEL: identity_name},
                limit=10000,
            )
            for secret in token_secrets:
                await self._delete_ignoring_missing(Secret, secret.namespace, secret.name)
            op.step("identity_secrets.delete", "Removed identity token secrets", secrets=len(token_secrets))
