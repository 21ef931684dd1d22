"""Tests for cluster manifest loading."""

from pathlib import Path

import pytest

from provisioner.config import MAX_MANIFEST_FILE_SIZE_BYTES
from provisioner.spec_loader import SpecLoadError, load_manifest, parse_manifest


class TestLoadManifest:
    """Tests for load_manifest."""

    def test_flat_manifest(self, tmp_path: Path) -> None:
        path = tmp_path / "cluster.yaml"
        path.write_text(
            "name: acct-search\n"
            "plan: sandbox\n"
            "space: us-east-1/common\n"
            "release: opensearch-2.6.0-mt\n"
        )

        descriptor = load_manifest(path)

        assert descriptor.name == "acct-search"
        assert descriptor.plan == "sandbox"
        assert descriptor.space == "us-east-1/common"
        assert descriptor.release == "opensearch-2.6.0-mt"

    def test_kubernetes_style_manifest(self, tmp_path: Path) -> None:
        """apiVersion/kind/spec wrapper is unwrapped; metadata.name fills the name."""
        path = tmp_path / "cluster.yaml"
        path.write_text(
            "apiVersion: search.bonsai.io/v1\n"
            "kind: Cluster\n"
            "metadata:\n"
            "  name: acct-search\n"
            "spec:\n"
            "  plan: sandbox\n"
        )

        descriptor = load_manifest(path)

        assert descriptor.name == "acct-search"
        assert descriptor.plan == "sandbox"

    def test_spec_name_wins_over_metadata(self) -> None:
        descriptor = parse_manifest(
            "apiVersion: v1\nmetadata:\n  name: meta\nspec:\n  name: explicit\n"
        )
        assert descriptor.name == "explicit"

    def test_unsupported_kind(self) -> None:
        with pytest.raises(SpecLoadError, match="Unsupported kind"):
            parse_manifest("apiVersion: v1\nkind: Plan\nspec:\n  name: a\n")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(SpecLoadError, match="not found"):
            load_manifest(tmp_path / "missing.yaml")

    def test_oversized_file(self, tmp_path: Path) -> None:
        path = tmp_path / "big.yaml"
        path.write_text("name: a\n" + "#" * (MAX_MANIFEST_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError, match="maximum size"):
            load_manifest(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("name: [unclosed\n")

        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_manifest(path)

    def test_non_mapping(self) -> None:
        with pytest.raises(SpecLoadError, match="mapping"):
            parse_manifest("- a\n- b\n")

    def test_validation_errors_are_readable(self, tmp_path: Path) -> None:
        path = tmp_path / "cluster.yaml"
        path.write_text("plan: sandbox\n")

        with pytest.raises(SpecLoadError) as exc_info:
            load_manifest(path)

        message = str(exc_info.value)
        assert "Validation failed" in message
        assert "  - name:" in message

    def test_unknown_fields_ignored(self) -> None:
        descriptor = parse_manifest("name: a\nreplicas: 3\n")
        assert descriptor.name == "a"
