"""Unit tests for the GuestBook reconciler."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from models import (
    Container,
    ContainerPort,
    Deployment,
    DeploymentSpec,
    EnvVar,
    GuestBook,
    ObjectKey,
    ObjectMeta,
    PodTemplate,
    ResourceRequirements,
)
from reconciler import (
    DEFAULT_REPLICAS,
    FRONTEND_IMAGE,
    GuestBookReconciler,
    ReconcileResult,
    build_deployment,
    desired_replicas,
)
from store import AlreadyExistsError, ConflictError, MemoryStore, StoreError
from validation import ConfigurationError


def existing_deployment(name="gb", namespace="default", replicas=0):
    """A Deployment created by someone else, with its own selector."""
    return Deployment(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=DeploymentSpec(
            selector={"guestbook": name},
            replicas=replicas,
            template=PodTemplate(
                labels={"guestbook": name},
                containers=[
                    Container(
                        name="frontend",
                        image=FRONTEND_IMAGE,
                        resources=ResourceRequirements(
                            requests={"cpu": "100m", "memory": "100Mi"}
                        ),
                        env=[EnvVar(name="GET_HOSTS_FROM", value="dns")],
                        ports=[ContainerPort(container_port=80)],
                    )
                ],
            ),
        ),
    )


class InterleavingStore(MemoryStore):
    """MemoryStore that yields to the event loop after every read."""

    async def get(self, kind, key):
        result = await super().get(kind, key)
        await asyncio.sleep(0)
        return result


# ==================== ReconcileResult Tests ====================


class TestReconcileResult:
    """Tests for ReconcileResult dataclass."""

    def test_default_values(self):
        result = ReconcileResult()
        assert result.success is False
        assert result.message == ""
        assert result.requeue_after is None
        assert result.error is None
        assert result.operation is None

    def test_failed_carries_error(self):
        error = StoreError("connection reset")
        result = ReconcileResult.failed(error)
        assert result.success is False
        assert result.error is error
        assert result.message == "connection reset"

    def test_failed_custom_message(self):
        result = ReconcileResult.failed(ValueError("x"), "Custom")
        assert result.message == "Custom"


# ==================== Helper Tests ====================


class TestDesiredReplicas:
    """Tests for the replica default policy."""

    def test_unset_uses_default(self, make_guestbook):
        assert DEFAULT_REPLICAS == 3
        assert desired_replicas(make_guestbook(replicas=None)) == 3

    def test_zero_is_not_unset(self, make_guestbook):
        assert desired_replicas(make_guestbook(replicas=0)) == 0

    def test_explicit_value(self, make_guestbook):
        assert desired_replicas(make_guestbook(replicas=5)) == 5

    def test_negative_raises(self, make_guestbook):
        with pytest.raises(ConfigurationError, match="replicas"):
            desired_replicas(make_guestbook(replicas=-1))

    def test_non_integer_raises(self, make_guestbook):
        with pytest.raises(ConfigurationError):
            desired_replicas(make_guestbook(replicas="five"))


class TestBuildDeployment:
    """Tests for the Deployment built on the create path."""

    def test_identity_matches_guestbook(self, make_guestbook):
        deployment = build_deployment(make_guestbook(name="web", namespace="prod"), 3)
        assert deployment.key == ObjectKey("prod", "web")

    def test_owner_reference(self, make_guestbook):
        deployment = build_deployment(make_guestbook(name="web"), 3)
        owner = deployment.metadata.controller_owner()
        assert owner.kind == "GuestBook"
        assert owner.name == "web"

    def test_template_labels_match_selector(self, make_guestbook):
        deployment = build_deployment(make_guestbook(), 1)
        assert deployment.spec.template.labels == deployment.spec.selector

    def test_labels_are_not_shared(self, make_guestbook):
        first = build_deployment(make_guestbook(), 1)
        second = build_deployment(make_guestbook(), 1)
        first.spec.selector["extra"] = "x"
        assert "extra" not in second.spec.selector
        assert "extra" not in first.spec.template.labels


# ==================== Reconcile Tests ====================


@pytest.mark.asyncio
class TestReconcileCreate:
    """Tests for the create path."""

    async def test_creates_matching_deployment(self, store, key, make_guestbook):
        await store.create(make_guestbook(replicas=None))
        reconciler = GuestBookReconciler(store)

        result = await reconciler.reconcile(key)

        assert result.success is True
        assert result.operation == "created"
        assert result.requeue_after is None

        deployments = await store.list(Deployment)
        assert len(deployments) == 1
        frontend = deployments[0]
        assert frontend.metadata.name == "gb"
        assert frontend.metadata.namespace == "default"
        assert frontend.spec.replicas == 3
        assert frontend.spec.selector == {"app": "guestbook", "tier": "frontend"}

        containers = frontend.spec.template.containers
        assert len(containers) == 1
        assert containers[0].name
        assert containers[0].image == "gcr.io/google-samples/gb-frontend:v4"
        assert EnvVar(name="GET_HOSTS_FROM", value="dns") in containers[0].env
        assert ContainerPort(container_port=80, protocol="TCP") in containers[0].ports
        assert containers[0].resources.requests == {"cpu": "100m", "memory": "100Mi"}

    async def test_uses_specified_replicas(self, store, key, make_guestbook):
        await store.create(make_guestbook(replicas=5))

        await GuestBookReconciler(store).reconcile(key)

        deployment = await store.get(Deployment, key)
        assert deployment.spec.replicas == 5

    async def test_zero_replicas_is_explicit(self, store, key, make_guestbook):
        await store.create(make_guestbook(replicas=0))

        await GuestBookReconciler(store).reconcile(key)

        deployment = await store.get(Deployment, key)
        assert deployment.spec.replicas == 0

    async def test_create_race_fails_without_duplicate(self, key, make_guestbook):
        store = InterleavingStore()
        await store.create(make_guestbook())
        reconciler = GuestBookReconciler(store)

        results = await asyncio.gather(reconciler.reconcile(key), reconciler.reconcile(key))

        assert sorted(r.success for r in results) == [False, True]
        loser = next(r for r in results if not r.success)
        assert isinstance(loser.error, AlreadyExistsError)
        assert len(await store.list(Deployment)) == 1

        # The next run takes the update path from fresh state
        result = await reconciler.reconcile(key)
        assert result.success is True
        assert result.operation == "unchanged"

    async def test_other_create_failure(self, store, key, make_guestbook):
        await store.create(make_guestbook())
        store.create = AsyncMock(side_effect=StoreError("timeout"))

        result = await GuestBookReconciler(store).reconcile(key)

        assert result.success is False
        assert isinstance(result.error, StoreError)


@pytest.mark.asyncio
class TestReconcileUpdate:
    """Tests for the update path."""

    async def test_updates_existing_replicas(self, store, key, make_guestbook):
        await store.create(make_guestbook(replicas=None))
        await store.create(existing_deployment(replicas=0))

        result = await GuestBookReconciler(store).reconcile(key)

        assert result.success is True
        assert result.operation == "updated"
        deployment = await store.get(Deployment, key)
        assert deployment.spec.replicas == 3

    async def test_scales_three_to_five_keeping_selector(
        self, store, key, make_guestbook
    ):
        await store.create(make_guestbook(replicas=None))
        reconciler = GuestBookReconciler(store)
        await reconciler.reconcile(key)
        created = await store.get(Deployment, key)
        assert created.spec.replicas == 3

        guestbook = await store.get(GuestBook, key)
        guestbook.spec.replicas = 5
        await store.update(guestbook)

        result = await reconciler.reconcile(key)

        assert result.operation == "updated"
        updated = await store.get(Deployment, key)
        assert updated.spec.replicas == 5
        assert updated.spec.selector == created.spec.selector

    async def test_update_touches_only_replicas(self, store, key, make_guestbook):
        await store.create(make_guestbook(replicas=4))
        before = existing_deployment(replicas=1)
        before.spec.template.containers[0].image = "example.com/custom:v1"
        await store.create(before)

        await GuestBookReconciler(store).reconcile(key)

        after = await store.get(Deployment, key)
        assert after.spec.replicas == 4
        assert after.spec.selector == {"guestbook": "gb"}
        assert after.spec.template == before.spec.template

    async def test_conflict_is_surfaced(self, store, key, make_guestbook):
        await store.create(make_guestbook(replicas=5))
        await store.create(existing_deployment(replicas=1))
        store.update = AsyncMock(side_effect=ConflictError("stale"))

        result = await GuestBookReconciler(store).reconcile(key)

        assert result.success is False
        assert isinstance(result.error, ConflictError)
        deployment = await MemoryStore.get(store, Deployment, key)
        assert deployment.spec.replicas == 1

    async def test_stale_read_conflicts_in_store(self, store, key, make_guestbook):
        """A write landing between our read and update must not be overwritten."""
        await store.create(make_guestbook(replicas=5))
        await store.create(existing_deployment(replicas=1))
        real_get = store.get

        async def get_then_race(kind, k):
            obj = await real_get(kind, k)
            if kind is Deployment:
                other = await real_get(Deployment, k)
                other.spec.replicas = 7
                await store.update(other)
            return obj

        store.get = get_then_race

        result = await GuestBookReconciler(store).reconcile(key)

        assert result.success is False
        assert isinstance(result.error, ConflictError)
        deployment = await real_get(Deployment, key)
        assert deployment.spec.replicas == 7


@pytest.mark.asyncio
class TestReconcileProperties:
    """Idempotence, convergence and deletion tolerance."""

    async def test_idempotent(self, store, key, make_guestbook):
        await store.create(make_guestbook(replicas=2))
        reconciler = GuestBookReconciler(store)

        await reconciler.reconcile(key)
        first = await store.get(Deployment, key)
        result = await reconciler.reconcile(key)
        second = await store.get(Deployment, key)

        assert result.success is True
        assert result.operation == "unchanged"
        assert second == first
        assert second.metadata.resource_version == first.metadata.resource_version

    @pytest.mark.parametrize("replicas,expected", [(None, 3), (0, 0), (1, 1), (7, 7)])
    async def test_converges(self, store, key, make_guestbook, replicas, expected):
        await store.create(make_guestbook(replicas=replicas))

        result = await GuestBookReconciler(store).reconcile(key)

        assert result.success is True
        deployment = await store.get(Deployment, key)
        assert deployment.spec.replicas == expected

    async def test_selector_never_changes(self, store, key, make_guestbook):
        await store.create(make_guestbook(replicas=1))
        reconciler = GuestBookReconciler(store)
        await reconciler.reconcile(key)
        created = await store.get(Deployment, key)

        for replicas in (4, None, 0, 2):
            guestbook = await store.get(GuestBook, key)
            guestbook.spec.replicas = replicas
            await store.update(guestbook)
            await reconciler.reconcile(key)

            deployment = await store.get(Deployment, key)
            assert deployment.spec.selector == created.spec.selector
            assert deployment.spec.template == created.spec.template

        assert len(await store.list(Deployment)) == 1

    async def test_missing_guestbook_is_noop(self, store, key):
        store.create = AsyncMock()
        store.update = AsyncMock()

        result = await GuestBookReconciler(store).reconcile(key)

        assert result.success is True
        assert result.requeue_after is None
        assert result.error is None
        store.create.assert_not_called()
        store.update.assert_not_called()

    async def test_deleted_guestbook_leaves_no_mutation(
        self, store, key, make_guestbook
    ):
        await store.create(make_guestbook())
        reconciler = GuestBookReconciler(store)
        await reconciler.reconcile(key)
        await store.delete(GuestBook, key)

        result = await reconciler.reconcile(key)

        assert result.success is True
        assert await store.list(Deployment) == []

    async def test_invalid_spec_fails_without_mutation(
        self, store, key, make_guestbook
    ):
        await store.create(make_guestbook(replicas=-2))

        result = await GuestBookReconciler(store).reconcile(key)

        assert result.success is False
        assert isinstance(result.error, ConfigurationError)
        assert await store.list(Deployment) == []

    async def test_guestbook_read_failure(self, key):
        store = AsyncMock()
        store.get = AsyncMock(side_effect=StoreError("connection refused"))

        result = await GuestBookReconciler(store).reconcile(key)

        assert result.success is False
        assert "connection refused" in result.message

    async def test_deployment_read_failure(self, make_guestbook, key):
        guestbook = make_guestbook()
        store = AsyncMock()
        store.get = AsyncMock(side_effect=[guestbook, StoreError("timeout")])

        result = await GuestBookReconciler(store).reconcile(key)

        assert result.success is False
        assert isinstance(result.error, StoreError)
        store.create.assert_not_called()
        store.update.assert_not_called()

    async def test_other_namespaces_untouched(self, store, make_guestbook):
        await store.create(make_guestbook(name="gb", namespace="a", replicas=1))
        await store.create(make_guestbook(name="gb", namespace="b", replicas=2))

        await GuestBookReconciler(store).reconcile(ObjectKey("a", "gb"))

        deployments = await store.list(Deployment)
        assert [d.key for d in deployments] == [ObjectKey("a", "gb")]
        assert isinstance(await store.get(GuestBook, ObjectKey("b", "gb")), GuestBook)
