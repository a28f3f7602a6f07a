"""
Object models - GuestBook desired state and the Deployment it manages.

Both kinds share the same metadata shape and are identified by an
ObjectKey (namespace + name). A GuestBook and the Deployment it owns
always have the same key.
"""

import copy
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Dict, List, Optional

API_VERSION = "webapp.example.com/v1"


@dataclass(frozen=True)
class ObjectKey:
    """Identity of a stored object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class OwnerReference:
    """Points at the object that owns (and garbage-collects) this one."""

    kind: str
    name: str
    controller: bool = True


@dataclass
class ObjectMeta:
    """Metadata common to every stored object."""

    name: str
    namespace: str = "default"
    resource_version: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    owner_references: List[OwnerReference] = field(default_factory=list)

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.namespace, name=self.name)

    def controller_owner(self) -> Optional[OwnerReference]:
        """Return the controlling owner reference, if any."""
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectMeta":
        return cls(
            name=data["name"],
            namespace=data.get("namespace") or "default",
            resource_version=data.get("resource_version"),
            labels=dict(data.get("labels") or {}),
            owner_references=[
                OwnerReference(**ref) for ref in data.get("owner_references") or []
            ],
        )


class StoredObject:
    """Mixin for top-level kinds kept in a StateStore."""

    KIND: ClassVar[str] = ""
    metadata: ObjectMeta

    @property
    def key(self) -> ObjectKey:
        return self.metadata.key

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.KIND
        return data

    def copy(self):
        return copy.deepcopy(self)


# ==================== GuestBook ====================


@dataclass
class GuestBookSpec:
    """Desired state of a guestbook front-end.

    ``replicas`` of ``None`` means "use the default"; ``0`` is an
    explicit request for zero pods.
    """

    replicas: Optional[int] = None


@dataclass
class GuestBook(StoredObject):
    KIND: ClassVar[str] = "GuestBook"

    metadata: ObjectMeta
    spec: GuestBookSpec = field(default_factory=GuestBookSpec)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GuestBook":
        """
        Build a GuestBook from a stored dict or a Kubernetes-style manifest.

        Args:
            data: Dict with ``metadata`` and optional ``spec``. ``apiVersion``
                and ``kind`` keys are accepted and ignored.

        Returns:
            A new GuestBook instance.
        """
        spec = data.get("spec") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data["metadata"]),
            spec=GuestBookSpec(replicas=spec.get("replicas")),
        )

    def to_manifest(self) -> Dict[str, Any]:
        """Render as an apiVersion/kind/metadata/spec manifest."""
        data = self.to_dict()
        data["apiVersion"] = API_VERSION
        return data


# ==================== Deployment ====================


@dataclass
class EnvVar:
    name: str
    value: str


@dataclass
class ContainerPort:
    container_port: int
    protocol: str = "TCP"


@dataclass
class ResourceRequirements:
    requests: Dict[str, str] = field(default_factory=dict)


@dataclass
class Container:
    name: str
    image: str
    resources: ResourceRequirements = field(default_factory=ResourceRequirements)
    env: List[EnvVar] = field(default_factory=list)
    ports: List[ContainerPort] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Container":
        return cls(
            name=data["name"],
            image=data["image"],
            resources=ResourceRequirements(
                requests=dict((data.get("resources") or {}).get("requests") or {})
            ),
            env=[EnvVar(**env) for env in data.get("env") or []],
            ports=[ContainerPort(**port) for port in data.get("ports") or []],
        )


@dataclass
class PodTemplate:
    labels: Dict[str, str] = field(default_factory=dict)
    containers: List[Container] = field(default_factory=list)


@dataclass
class DeploymentSpec:
    selector: Dict[str, str]
    template: PodTemplate
    replicas: Optional[int] = None


@dataclass
class Deployment(StoredObject):
    KIND: ClassVar[str] = "Deployment"

    metadata: ObjectMeta
    spec: DeploymentSpec

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Deployment":
        spec = data["spec"]
        template = spec.get("template") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data["metadata"]),
            spec=DeploymentSpec(
                selector=dict(spec.get("selector") or {}),
                template=PodTemplate(
                    labels=dict(template.get("labels") or {}),
                    containers=[
                        Container.from_dict(c) for c in template.get("containers") or []
                    ],
                ),
                replicas=spec.get("replicas"),
            ),
        )


KINDS = {kind.KIND: kind for kind in (GuestBook, Deployment)}


def kind_for_name(name: str):
    """
    Look up a model class by its kind name.

    Raises:
        ValueError: If the kind is unknown.
    """
    try:
        return KINDS[name]
    except KeyError:
        available = ", ".join(sorted(KINDS))
        raise ValueError(f"Unknown kind: {name}. Available kinds: {available}")
