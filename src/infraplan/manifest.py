"""YAML manifest parsing for resource declarations."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .exceptions import ManifestError
from .models import Ref, Resource, ResourceId, validate_identifier, walk_refs

REF_KEY = "ref"


def _decode_value(value: Any, resource_id: ResourceId) -> Any:
    """Turn ``{ref: kind.name.attr}`` mappings into Ref objects, recursively."""
    if isinstance(value, Mapping):
        if set(value) == {REF_KEY}:
            try:
                return Ref.parse(str(value[REF_KEY]))
            except ValueError as e:
                raise ManifestError(str(e), resource_id) from e
        return {str(k): _decode_value(v, resource_id) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode_value(v, resource_id) for v in value]
    return value


def _encode_value(value: Any) -> Any:
    if isinstance(value, Ref):
        return {REF_KEY: str(value)}
    if isinstance(value, Mapping):
        return {k: _encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode_value(v) for v in value]
    return value


def _resource_from_dict(kind: str, name: str, body: Any) -> Resource:
    try:
        resource_id = ResourceId(kind, name)
    except ValueError as e:
        raise ManifestError(str(e), f"{kind}.{name}") from e

    if body is None:
        body = {}
    if not isinstance(body, Mapping):
        raise ManifestError("declaration must be a mapping", resource_id)

    unknown = set(body) - {"attributes", "depends_on", "lifecycle"}
    if unknown:
        raise ManifestError(f"unknown keys: {', '.join(sorted(unknown))}", resource_id)

    attributes = body.get("attributes") or {}
    if not isinstance(attributes, Mapping):
        raise ManifestError("'attributes' must be a mapping", resource_id)

    try:
        depends_on = tuple(ResourceId.parse(str(d)) for d in body.get("depends_on") or [])
    except ValueError as e:
        raise ManifestError(str(e), resource_id) from e

    lifecycle = body.get("lifecycle") or {}
    if not isinstance(lifecycle, Mapping):
        raise ManifestError("'lifecycle' must be a mapping", resource_id)

    return Resource(
        id=resource_id,
        attributes={str(k): _decode_value(v, resource_id) for k, v in attributes.items()},
        depends_on=depends_on,
        prevent_destroy=bool(lifecycle.get("prevent_destroy", False)),
    )


@dataclass(frozen=True)
class Manifest:
    """
    Parsed declaration document.

    Resources are grouped by kind, then name, and keep document order::

        workspace: prod
        resources:
          network:
            main:
              attributes: {cidr_block: 10.0.0.0/16}
          subnet:
            a:
              attributes:
                network_id: {ref: network.main.id}
        replace_on:
          network: [cidr_block]

    ``replace_on`` lists, per kind, the attributes that cannot be changed
    in place. It is only consulted by providers that have no schema of
    their own, such as LocalProvider.
    """

    workspace: str = "default"
    resources: tuple[Resource, ...] = ()
    replace_on: dict[str, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Manifest:
        if not isinstance(d, Mapping):
            raise ManifestError("manifest must be a mapping")

        workspace = str(d.get("workspace") or "default")
        try:
            validate_identifier(workspace, "workspace")
        except ValueError as e:
            raise ManifestError(str(e)) from e

        resources: list[Resource] = []
        raw = d.get("resources") or {}
        if not isinstance(raw, Mapping):
            raise ManifestError("'resources' must be a mapping of kind to named declarations")
        for kind, named in raw.items():
            if not isinstance(named, Mapping):
                raise ManifestError(f"'resources.{kind}' must be a mapping of name to declaration")
            for name, body in named.items():
                resources.append(_resource_from_dict(str(kind), str(name), body))

        replace_on = {
            str(kind): frozenset(str(a) for a in attrs or [])
            for kind, attrs in (d.get("replace_on") or {}).items()
        }

        return cls(workspace=workspace, resources=tuple(resources), replace_on=replace_on)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> Manifest:
        import yaml

        try:
            data = yaml.safe_load(yaml_str)
        except yaml.YAMLError as e:
            raise ManifestError(f"invalid YAML: {e}") from e
        return cls.from_dict(data or {})

    @classmethod
    def load(cls, path: str) -> Manifest:
        """Read a manifest from a YAML file."""
        with open(path) as f:
            return cls.from_yaml(f.read())

    def to_dict(self) -> dict[str, Any]:
        grouped: dict[str, dict[str, Any]] = {}
        for resource in self.resources:
            body: dict[str, Any] = {"attributes": _encode_value(resource.attributes)}
            if resource.depends_on:
                body["depends_on"] = [str(d) for d in resource.depends_on]
            if resource.prevent_destroy:
                body["lifecycle"] = {"prevent_destroy": True}
            grouped.setdefault(resource.id.kind, {})[resource.id.name] = body

        result: dict[str, Any] = {"workspace": self.workspace, "resources": grouped}
        if self.replace_on:
            result["replace_on"] = {k: sorted(v) for k, v in self.replace_on.items()}
        return result

    def references(self) -> list[tuple[ResourceId, str, Ref]]:
        """Every ``(referrer, path, ref)`` in document order."""
        return [
            (resource.id, path, ref)
            for resource in self.resources
            for path, ref in walk_refs(resource.attributes)
        ]
