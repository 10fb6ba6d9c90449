"""Tests for Project.toml handling."""

from __future__ import annotations

from pathlib import Path

import pytest
import toml

from virus.errors import ManifestError
from virus.meta import MAIN_TEMPLATE, add_dependency, init_project, load_manifest


class TestInit:
    def test_scaffold(self, tmp_path: Path) -> None:
        m = init_project(tmp_path)
        assert (m.name, m.version, m.dependencies) == ("myproject", "0.1.0", {})
        data = toml.load(str(tmp_path / "Project.toml"))
        assert data["package"] == {"name": "myproject", "version": "0.1.0"}
        assert data["dependencies"] == {}
        assert (tmp_path / "src" / "main.vira").read_text(encoding="utf-8") == MAIN_TEMPLATE

    def test_custom_name(self, tmp_path: Path) -> None:
        assert init_project(tmp_path, name="hello").name == "hello"
        assert load_manifest(tmp_path).name == "hello"

    def test_refuses_to_overwrite(self, tmp_path: Path) -> None:
        init_project(tmp_path)
        with pytest.raises(ManifestError, match="already exists"):
            init_project(tmp_path)

    def test_force_rewrites_manifest(self, tmp_path: Path) -> None:
        init_project(tmp_path)
        add_dependency(tmp_path, "json")
        assert init_project(tmp_path, force=True).dependencies == {}

    def test_existing_main_is_kept(self, tmp_path: Path) -> None:
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "main.vira").write_text("fn main() {}\n", encoding="utf-8")
        init_project(tmp_path)
        assert (tmp_path / "src" / "main.vira").read_text(encoding="utf-8") == "fn main() {}\n"


class TestAddDependency:
    def test_defaults_to_latest(self, project: Path) -> None:
        assert add_dependency(project, "json").dependencies == {"json": "*"}
        assert toml.load(str(project / "Project.toml"))["dependencies"] == {"json": "*"}

    def test_replaces_spec(self, project: Path) -> None:
        add_dependency(project, "json", "^1")
        add_dependency(project, "json", "2.0.0")
        assert load_manifest(project).dependencies == {"json": "2.0.0"}

    def test_keeps_declaration_order(self, project: Path) -> None:
        for lib in ("zeta", "alpha", "mid"):
            add_dependency(project, lib)
        assert list(load_manifest(project).dependencies) == ["zeta", "alpha", "mid"]

    def test_requires_manifest(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestError, match="No project file found"):
            add_dependency(tmp_path, "json")

    def test_requires_library_name(self, project: Path) -> None:
        with pytest.raises(ManifestError):
            add_dependency(project, "")


class TestLoad:
    def _write(self, root: Path, text: str) -> None:
        (root / "Project.toml").write_text(text, encoding="utf-8")

    def test_invalid_toml(self, tmp_path: Path) -> None:
        self._write(tmp_path, "[package\nname=")
        with pytest.raises(ManifestError, match="invalid TOML"):
            load_manifest(tmp_path)

    def test_missing_package_table(self, tmp_path: Path) -> None:
        self._write(tmp_path, "[dependencies]\n")
        with pytest.raises(ManifestError, match=r"\[package\]"):
            load_manifest(tmp_path)

    @pytest.mark.parametrize("name", ['""', '"../evil"', '"a/b"'])
    def test_bad_package_name(self, tmp_path: Path, name: str) -> None:
        self._write(tmp_path, f"[package]\nname = {name}\n")
        with pytest.raises(ManifestError):
            load_manifest(tmp_path)

    def test_non_string_spec(self, tmp_path: Path) -> None:
        self._write(tmp_path, '[package]\nname = "p"\n[dependencies]\njson = 1\n')
        with pytest.raises(ManifestError):
            load_manifest(tmp_path)

    def test_missing_version_defaults(self, tmp_path: Path) -> None:
        self._write(tmp_path, '[package]\nname = "p"\n')
        m = load_manifest(tmp_path)
        assert m.version == "0.1.0"
        assert m.dependencies == {}
        assert m.path == (tmp_path / "Project.toml").resolve()
