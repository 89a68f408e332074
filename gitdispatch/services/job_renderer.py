"""
Job renderer.

Turns a Change into a TaskSpec by evaluating the job template with the change
metadata, the process environment and optional value files, then validating
every rendered YAML document as a Job, Secret or Service manifest.

Template variables:
    ID, Namespace, VolumeClaim, GIT_HOME
    change.commit_hash, change.source_url, change.local_dir, change.branch
    registry.host, registry.port, registry.address, registry.variant
        (only on microk8s/minikube clusters, otherwise registry is None)
    Env.<NAME> for every environment variable
    any key loaded from value files or overrides
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError
from pydantic import ValidationError

from gitdispatch.entities import (
    MANIFEST_ADAPTER,
    Change,
    JobManifest,
    ManifestKind,
    SecretManifest,
    ServiceManifest,
    TaskSpec,
)
from gitdispatch.kubernetes.namespace import trim_namespace
from gitdispatch.kubernetes.probes import RegistryInfo
from gitdispatch.kubernetes.resources import volume_claim_name
from gitdispatch.services.exceptions import ManifestValidationError, TemplateRenderError

logger = logging.getLogger(__name__)

GENERATED_NAMESPACE = "generated"


def _to_json(value: Any) -> str:
    return json.dumps(value)


def _to_yaml(value: Any) -> str:
    return yaml.safe_dump(value, default_flow_style=False).rstrip("\n")


def load_value_files(paths: Iterable[str]) -> Dict[str, Any]:
    """Merge YAML/JSON value files, later files win."""
    values: Dict[str, Any] = {}
    for name in paths:
        path = Path(name)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise TemplateRenderError(f"could not read value file {path}: {e}") from e

        suffix = path.suffix.lower()
        try:
            if suffix == ".json":
                loaded = json.loads(text)
            elif suffix in (".yaml", ".yml"):
                loaded = yaml.safe_load(text)
            else:
                raise TemplateRenderError(f"unsupported value file type: {path}")
        except (ValueError, yaml.YAMLError) as e:
            raise TemplateRenderError(f"unrecognized content in value file {path}: {e}") from e

        if loaded is None:
            continue
        if not isinstance(loaded, dict):
            raise TemplateRenderError(f"value file {path} must contain a mapping")
        values.update(loaded)
    return values


class JobRenderer:
    """Renders job templates into validated TaskSpecs."""

    def __init__(
        self,
        template_path: str,
        namespace: str = "",
        value_files: Iterable[str] = (),
        overrides: Optional[Mapping[str, str]] = None,
        registry: Optional[RegistryInfo] = None,
        volume_claims: bool = True,
        environ: Optional[Mapping[str, str]] = None,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        path = Path(template_path)
        if not path.is_file():
            raise TemplateRenderError(f"job template not found: {template_path}")

        self.template_path = path
        self.namespace = namespace
        self.values = load_value_files(value_files)
        self.overrides = dict(overrides or {})
        self.registry = registry
        self.volume_claims = volume_claims
        self.environ = environ
        self.id_factory = id_factory

        self._env = Environment(
            loader=FileSystemLoader(str(path.parent)),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        self._env.filters["to_json"] = _to_json
        self._env.filters["to_yaml"] = _to_yaml

    def render(self, change: Change) -> TaskSpec:
        task_id = self.id_factory()
        namespace = self._select_namespace(task_id)
        claim = volume_claim_name(task_id) if self.volume_claims else None

        text = self.render_text(self.template_variables(change, task_id, namespace, claim))
        job, secrets, services = self.decode(text)

        # A namespace hard-coded in the job template applies when none is configured
        if not self.namespace and job.metadata.namespace and job.metadata.namespace != namespace:
            namespace = trim_namespace(job.metadata.namespace)

        return TaskSpec(
            id=task_id,
            namespace=namespace,
            source_dir=change.local_dir,
            source_url=change.source_url,
            commit_hash=change.commit_hash,
            env={
                "GIT_HOME": change.local_dir,
                "GIT_URL": change.source_url,
                "GIT_BRANCH": change.branch,
                "GIT_COMMIT": change.commit_hash,
            },
            job=job.in_namespace(namespace),
            secrets=[s.in_namespace(namespace) for s in secrets],
            services=[s.in_namespace(namespace) for s in services],
            volume_claim=claim,
        )

    def _select_namespace(self, task_id: str) -> str:
        if self.namespace == GENERATED_NAMESPACE:
            return trim_namespace(str(uuid.uuid4()))
        if self.namespace:
            return trim_namespace(self.namespace)
        return trim_namespace(task_id)

    def template_variables(
        self,
        change: Change,
        task_id: str,
        namespace: str,
        claim: Optional[str],
    ) -> Dict[str, Any]:
        variables: Dict[str, Any] = {}
        variables.update(self.values)
        variables.update(self.overrides)
        variables.update(
            {
                "Env": dict(self.environ if self.environ is not None else os.environ),
                "ID": task_id,
                "Namespace": namespace,
                "VolumeClaim": claim or "",
                "GIT_HOME": change.local_dir,
                "change": change.model_dump(),
                "registry": None,
            }
        )
        if self.registry is not None:
            variables["registry"] = {
                "variant": self.registry.variant,
                "host": self.registry.host,
                "port": self.registry.port,
                "address": self.registry.address,
            }
        return variables

    def render_text(self, variables: Mapping[str, Any]) -> str:
        try:
            template = self._env.get_template(self.template_path.name)
            return template.render(**variables)
        except TemplateError as e:
            raise TemplateRenderError(f"template {self.template_path} failed: {e}") from e

    def decode(self, text: str):
        """
        Decode rendered YAML into typed manifests.

        Returns:
            (job, secrets, services)
        """
        try:
            documents = [doc for doc in yaml.safe_load_all(text) if doc is not None]
        except yaml.YAMLError as e:
            raise ManifestValidationError(f"rendered template is not valid YAML: {e}") from e

        jobs: List[JobManifest] = []
        secrets: List[SecretManifest] = []
        services: List[ServiceManifest] = []
        known_kinds = {k.value for k in ManifestKind}

        for index, doc in enumerate(documents):
            if not isinstance(doc, dict):
                raise ManifestValidationError(f"document {index} is not a mapping")
            kind = doc.get("kind")
            if kind not in known_kinds:
                raise ManifestValidationError(f"kubernetes object kind not recognized: {kind!r}")
            try:
                manifest = MANIFEST_ADAPTER.validate_python(doc)
            except ValidationError as e:
                raise ManifestValidationError(f"invalid {kind} in document {index}: {e}") from e

            if isinstance(manifest, JobManifest):
                jobs.append(manifest)
            elif isinstance(manifest, SecretManifest):
                secrets.append(manifest)
            else:
                services.append(manifest)

        if len(jobs) != 1:
            raise ManifestValidationError(f"expected exactly one Job, found {len(jobs)}")
        job = jobs[0]
        if not (job.metadata.name or job.metadata.generate_name):
            raise ManifestValidationError("job manifest requires metadata.name or generateName")
        return job, secrets, services
