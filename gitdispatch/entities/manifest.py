"""
Kubernetes resource manifests produced by the job renderer.

Rendered YAML documents are decoded through a discriminated union on the
`kind` field. Only the fields the dispatcher relies on are typed; everything
else is carried through untouched and sent to the API server as-is.
"""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class ObjectMeta(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    name: Optional[str] = None
    generate_name: Optional[str] = Field(default=None, alias="generateName")
    namespace: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)


class BaseManifest(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    api_version: str = Field(alias="apiVersion")
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)

    @property
    def display_name(self) -> str:
        return self.metadata.name or self.metadata.generate_name or "<unnamed>"

    def in_namespace(self, namespace: str):
        """Copy of this manifest bound to the given namespace."""
        return self.model_copy(
            update={"metadata": self.metadata.model_copy(update={"namespace": namespace})}
        )

    def to_body(self) -> Dict[str, Any]:
        """Request body accepted by the kubernetes client create calls."""
        return self.model_dump(by_alias=True, exclude_none=True)


class JobManifest(BaseManifest):
    kind: Literal["Job"]
    spec: Dict[str, Any]

    @field_validator("spec")
    @classmethod
    def _require_pod_template(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(value.get("template"), dict):
            raise ValueError("job spec requires a pod template")
        return value


class SecretManifest(BaseManifest):
    kind: Literal["Secret"]
    type: Optional[str] = None
    data: Optional[Dict[str, str]] = None
    string_data: Optional[Dict[str, str]] = Field(default=None, alias="stringData")


class ServiceManifest(BaseManifest):
    kind: Literal["Service"]
    spec: Dict[str, Any]


Manifest = Annotated[
    Union[JobManifest, SecretManifest, ServiceManifest],
    Field(discriminator="kind"),
]

MANIFEST_ADAPTER: TypeAdapter = TypeAdapter(Manifest)
