"""
GuestBook Reconciler - converges a GuestBook's Deployment.

Level-triggered: every call re-reads the GuestBook and its Deployment
from the store and issues at most one write. Nothing is remembered
between calls, so repeated, redundant or out-of-order invocations for
the same key all converge to the same state.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from models import (
    Container,
    ContainerPort,
    Deployment,
    DeploymentSpec,
    EnvVar,
    GuestBook,
    ObjectKey,
    ObjectMeta,
    OwnerReference,
    PodTemplate,
    ResourceRequirements,
)
from store import AlreadyExistsError, ConflictError, StateStore, StoreError
from validation import ConfigurationError, validate_guestbook_spec

logger = logging.getLogger(__name__)

# Replica count used when a GuestBook leaves spec.replicas unset
DEFAULT_REPLICAS = 3

FRONTEND_LABELS = {"app": "guestbook", "tier": "frontend"}
FRONTEND_CONTAINER_NAME = "frontend"
FRONTEND_IMAGE = "gcr.io/google-samples/gb-frontend:v4"
FRONTEND_PORT = 80
FRONTEND_REQUESTS = {"cpu": "100m", "memory": "100Mi"}


@dataclass
class ReconcileResult:
    """Result from a reconcile() call."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[float] = None
    error: Optional[Exception] = None
    operation: Optional[str] = None

    @classmethod
    def failed(cls, error: Exception, message: str = "") -> "ReconcileResult":
        return cls(success=False, message=message or str(error), error=error)


def desired_replicas(guestbook: GuestBook) -> int:
    """
    Compute the target replica count for a GuestBook.

    ``None`` falls back to DEFAULT_REPLICAS; ``0`` is kept as an explicit
    request for zero pods.

    Raises:
        ConfigurationError: If replicas is negative or not an integer.
    """
    replicas = guestbook.spec.replicas
    validate_guestbook_spec({"replicas": replicas})
    if replicas is None:
        return DEFAULT_REPLICAS
    return int(replicas)


def build_deployment(guestbook: GuestBook, replicas: int) -> Deployment:
    """Build the full Deployment for a GuestBook that has none yet."""
    return Deployment(
        metadata=ObjectMeta(
            name=guestbook.metadata.name,
            namespace=guestbook.metadata.namespace,
            labels=dict(FRONTEND_LABELS),
            owner_references=[
                OwnerReference(kind=GuestBook.KIND, name=guestbook.metadata.name)
            ],
        ),
        spec=DeploymentSpec(
            selector=dict(FRONTEND_LABELS),
            replicas=replicas,
            template=PodTemplate(
                labels=dict(FRONTEND_LABELS),
                containers=[
                    Container(
                        name=FRONTEND_CONTAINER_NAME,
                        image=FRONTEND_IMAGE,
                        resources=ResourceRequirements(
                            requests=dict(FRONTEND_REQUESTS)
                        ),
                        env=[EnvVar(name="GET_HOSTS_FROM", value="dns")],
                        ports=[ContainerPort(container_port=FRONTEND_PORT)],
                    )
                ],
            ),
        ),
    )


class GuestBookReconciler:
    """
    Reconciles a GuestBook into a Deployment with the same key.

    The store is injected so the reconciler can run against a
    MemoryStore in tests and a PostgresStore in production.
    """

    name = "guestbook"

    def __init__(self, store: StateStore):
        self.store = store

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """
        Reconcile a single GuestBook.

        Args:
            key: Namespace and name of the GuestBook.

        Returns:
            ReconcileResult. A failed result carries the error that caused
            it; the caller is expected to requeue.
        """
        try:
            guestbook = await self.store.get(GuestBook, key)
        except StoreError as e:
            logger.error(f"Failed to get GuestBook {key}: {e}")
            return ReconcileResult.failed(e)

        if guestbook is None:
            # Deleted upstream; dependents are garbage collected by the store
            logger.info(f"GuestBook {key} not found, nothing to reconcile")
            return ReconcileResult(success=True, message="GuestBook not found")

        try:
            replicas = desired_replicas(guestbook)
        except ConfigurationError as e:
            logger.error(f"Refusing to reconcile GuestBook {key}: {e}")
            return ReconcileResult.failed(e)

        logger.info(f"Reconciling GuestBook {key} (replicas={replicas})")

        try:
            deployment = await self.store.get(Deployment, key)
            if deployment is not None:
                return await self._update(deployment, replicas)
            return await self._create(guestbook, replicas)
        except StoreError as e:
            logger.error(f"Failed to reconcile Deployment {key}: {e}")
            return ReconcileResult.failed(e)

    async def _update(self, deployment: Deployment, replicas: int) -> ReconcileResult:
        key = deployment.key
        if deployment.spec.replicas == replicas:
            logger.info(f"Deployment {key} already has {replicas} replicas")
            return ReconcileResult(
                success=True, message="Deployment in sync", operation="unchanged"
            )

        # Only replicas is mutable; selector and template stay as created
        previous = deployment.spec.replicas
        deployment.spec.replicas = replicas
        try:
            await self.store.update(deployment)
        except ConflictError as e:
            logger.warning(f"Conflict updating Deployment {key}, will retry: {e}")
            return ReconcileResult.failed(e, f"Conflict updating Deployment: {e}")

        logger.info(f"Scaled Deployment {key} from {previous} to {replicas} replicas")
        return ReconcileResult(
            success=True, message="Deployment updated", operation="updated"
        )

    async def _create(self, guestbook: GuestBook, replicas: int) -> ReconcileResult:
        deployment = build_deployment(guestbook, replicas)
        try:
            await self.store.create(deployment)
        except AlreadyExistsError as e:
            # Lost a creation race; the next run takes the update path
            logger.warning(f"Deployment {deployment.key} created concurrently: {e}")
            return ReconcileResult.failed(e, f"Deployment already exists: {e}")

        logger.info(f"Created Deployment {deployment.key} with {replicas} replicas")
        return ReconcileResult(
            success=True, message="Deployment created", operation="created"
        )
