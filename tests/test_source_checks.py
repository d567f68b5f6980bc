"""Source inspection across the labcontrol package.

These checks parse the package with ``ast`` instead of importing it.
"""

import ast
from pathlib import Path

import pytest

PACKAGE_DIR = Path(__file__).parent.parent / "src" / "labcontrol"
SOURCE_FILES = sorted(PACKAGE_DIR.rglob("*.py"))

STATEFUL_CLASSES = {
    "AsyncSqliteAdapter",
    "MainStore",
    "CargoStore",
    "HybridCoordinator",
    "BackupEngine",
    "EventBus",
}


def _rel(path: Path) -> str:
    return str(path.relative_to(PACKAGE_DIR))


class TestPackageSource:
    """Package-wide conventions."""

    def test_sources_found(self):
        """The package directory is where the tests expect it."""
        assert len(SOURCE_FILES) > 10

    @pytest.mark.parametrize("path", SOURCE_FILES, ids=_rel)
    def test_no_bare_except(self, path: Path):
        """Every except clause names an exception type."""
        tree = ast.parse(path.read_text())
        bare = [n.lineno for n in ast.walk(tree) if isinstance(n, ast.ExceptHandler) and n.type is None]
        assert bare == [], f"bare except at lines {bare}"

    @pytest.mark.parametrize(
        "path", [p for p in SOURCE_FILES if "cli" not in p.parts], ids=_rel
    )
    def test_no_print_outside_cli(self, path: Path):
        """Library modules log instead of printing."""
        tree = ast.parse(path.read_text())
        calls = [
            n.lineno
            for n in ast.walk(tree)
            if isinstance(n, ast.Call) and isinstance(n.func, ast.Name) and n.func.id == "print"
        ]
        assert calls == []

    @pytest.mark.parametrize("path", SOURCE_FILES, ids=_rel)
    def test_no_module_level_instances(self, path: Path):
        """Stores, adapters, buses and coordinators are never module globals."""
        tree = ast.parse(path.read_text())
        for node in tree.body:
            if not isinstance(node, (ast.Assign, ast.AnnAssign)) or node.value is None:
                continue
            value = node.value
            if isinstance(value, ast.Call) and isinstance(value.func, ast.Name):
                assert value.func.id not in STATEFUL_CLASSES, f"line {node.lineno}"

    def test_sqlite3_not_imported(self):
        """Store access goes through SQLAlchemy, never the sqlite3 module."""
        for path in SOURCE_FILES:
            tree = ast.parse(path.read_text())
            for node in ast.walk(tree):
                if isinstance(node, ast.Import):
                    assert all(a.name != "sqlite3" for a in node.names), _rel(path)
                elif isinstance(node, ast.ImportFrom):
                    assert node.module != "sqlite3", _rel(path)

    @pytest.mark.parametrize(
        "path", [p for p in SOURCE_FILES if p.name != "__main__.py"], ids=_rel
    )
    def test_logger_per_module(self, path: Path):
        """Modules that do work define a module-level logger named after themselves."""
        source = path.read_text()
        tree = ast.parse(source)
        if "logger." not in source:
            return
        assert "logger = logging.getLogger(__name__)" in source
        assert any(
            isinstance(n, ast.Import) and any(a.name == "logging" for a in n.names)
            for n in tree.body
        )
