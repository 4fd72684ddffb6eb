"""Tests for YAML manifest parsing."""

import pytest

from infraplan.exceptions import ManifestError
from infraplan.manifest import Manifest
from infraplan.models import Ref, ResourceId

MANIFEST = """
workspace: prod
resources:
  network:
    main:
      attributes:
        cidr_block: 10.0.0.0/16
      lifecycle:
        prevent_destroy: true
  subnet:
    a:
      attributes:
        network_id: {ref: network.main.id}
        tags:
          owner: team-a
          peer: {ref: network.main.cidr_block}
      depends_on: [network.main]
replace_on:
  network: [cidr_block]
"""


class TestManifestParsing:
    """Tests for Manifest.from_yaml / from_dict."""

    def test_parses_resources_in_document_order(self):
        manifest = Manifest.from_yaml(MANIFEST)
        assert manifest.workspace == "prod"
        assert [r.id for r in manifest.resources] == [
            ResourceId("network", "main"),
            ResourceId("subnet", "a"),
        ]

    def test_decodes_nested_references(self):
        subnet = Manifest.from_yaml(MANIFEST).resources[1]
        assert subnet.attributes["network_id"] == Ref.parse("network.main.id")
        assert subnet.attributes["tags"] == {
            "owner": "team-a",
            "peer": Ref.parse("network.main.cidr_block"),
        }
        assert subnet.depends_on == (ResourceId("network", "main"),)

    def test_lifecycle_and_replace_on(self):
        manifest = Manifest.from_yaml(MANIFEST)
        assert manifest.resources[0].prevent_destroy is True
        assert manifest.resources[1].prevent_destroy is False
        assert manifest.replace_on == {"network": frozenset({"cidr_block"})}

    def test_references_lists_referrer_and_path(self):
        manifest = Manifest.from_yaml(MANIFEST)
        refs = [(str(rid), path, str(ref)) for rid, path, ref in manifest.references()]
        assert refs == [
            ("subnet.a", "network_id", "network.main.id"),
            ("subnet.a", "tags.peer", "network.main.cidr_block"),
        ]

    def test_empty_document(self):
        manifest = Manifest.from_yaml("")
        assert manifest.workspace == "default"
        assert manifest.resources == ()

    def test_resource_without_body(self):
        manifest = Manifest.from_dict({"resources": {"bucket": {"logs": None}}})
        assert manifest.resources[0].attributes == {}

    def test_to_dict_round_trip(self):
        manifest = Manifest.from_yaml(MANIFEST)
        assert Manifest.from_dict(manifest.to_dict()) == manifest

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "infra.yaml"
        path.write_text(MANIFEST)
        assert len(Manifest.load(str(path)).resources) == 2


class TestManifestErrors:
    """Tests for rejected manifests."""

    def test_invalid_yaml(self):
        with pytest.raises(ManifestError, match="invalid YAML"):
            Manifest.from_yaml("resources: [unclosed")

    def test_unknown_keys(self):
        with pytest.raises(ManifestError, match="unknown keys: count") as exc_info:
            Manifest.from_dict({"resources": {"network": {"main": {"count": 2}}}})
        assert str(exc_info.value.resource_id) == "network.main"

    def test_malformed_reference(self):
        with pytest.raises(ManifestError, match="kind.name.attribute"):
            Manifest.from_dict(
                {"resources": {"subnet": {"a": {"attributes": {"n": {"ref": "network"}}}}}}
            )

    def test_invalid_resource_name(self):
        with pytest.raises(ManifestError, match="not a valid identifier"):
            Manifest.from_dict({"resources": {"network": {"main.x": {}}}})

    def test_invalid_workspace(self):
        with pytest.raises(ManifestError, match="workspace"):
            Manifest.from_dict({"workspace": "../etc"})

    def test_lifecycle_must_be_mapping(self):
        with pytest.raises(ManifestError, match="lifecycle"):
            Manifest.from_dict({"resources": {"network": {"main": {"lifecycle": "keep"}}}})

    def test_resources_must_be_mapping(self):
        with pytest.raises(ManifestError):
            Manifest.from_dict({"resources": ["network.main"]})
