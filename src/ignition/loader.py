"""ManifestLoader - loads skill manifests from JSON or YAML documents."""

import json
from pathlib import Path
from typing import Any, Dict, Union

import yaml
from pydantic import ValidationError

from .errors import ManifestLoadError
from .models import SkillManifest


class ManifestLoader:
    """
    Loads skill manifests from files, strings or dictionaries.

    The loader handles:
    - JSON and YAML parsing (YAML is a superset of JSON, so both go through
      the YAML parser)
    - Pydantic validation of manifest structure
    - Default action ids for actions that omit them

    Templates inside params and conditions are left untouched; they are
    resolved per run.

    Example:
        loader = ManifestLoader()
        manifest = loader.load_from_file("skills/lead-capture.json")
    """

    def load_from_file(self, file_path: Union[str, Path]) -> SkillManifest:
        """
        Load a manifest from a JSON or YAML file.

        Args:
            file_path: Path to the manifest file

        Returns:
            Validated SkillManifest instance

        Raises:
            ManifestLoadError: If file cannot be read, parsed, or validated
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise ManifestLoadError(f"Manifest file not found: {file_path}")

        if not file_path.is_file():
            raise ManifestLoadError(f"Path is not a file: {file_path}")

        try:
            content = file_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ManifestLoadError(f"Failed to read file {file_path}: {e}")

        return self.load_from_string(content)

    def load_from_string(self, content: str) -> SkillManifest:
        """
        Load a manifest from a JSON or YAML string.

        Raises:
            ManifestLoadError: If the document cannot be parsed or validated
        """
        return self.load_from_dict(self.parse(content))

    def parse(self, content: str) -> Dict[str, Any]:
        """Parse a document into a raw dictionary without validating it."""
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ManifestLoadError(f"Failed to parse manifest: {e}")

        if not isinstance(data, dict):
            raise ManifestLoadError("Manifest document must be a mapping")

        return data

    def load_from_dict(self, data: Dict[str, Any]) -> SkillManifest:
        """
        Load a manifest from a dictionary.

        Raises:
            ManifestLoadError: If validation fails
        """
        try:
            return SkillManifest.model_validate(data)
        except ValidationError as e:
            raise ManifestLoadError(f"Manifest validation failed: {e}")


def export_manifest(
    manifest: SkillManifest, file_path: Union[str, Path], fmt: str = "json"
) -> Path:
    """
    Write a manifest in its camelCase interchange form.

    Args:
        manifest: Manifest to export
        file_path: Destination file
        fmt: "json" or "yaml"

    Returns:
        The path written
    """
    file_path = Path(file_path)
    data = manifest.to_interchange()

    if fmt == "json":
        content = json.dumps(data, indent=2)
    elif fmt == "yaml":
        content = yaml.safe_dump(data, sort_keys=False)
    else:
        raise ValueError(f"Unsupported format: {fmt} (use 'json' or 'yaml')")

    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(content, encoding="utf-8")
    return file_path
