from __future__ import annotations

import ast
from dataclasses import dataclass
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
PACKAGE_ROOT = PROJECT_ROOT / "records_sync"
LAYERS = {"core", "domain", "application", "infrastructure", "bootstrap", "entrypoints"}

TECHNICAL_LIBRARIES_BLOCKED_IN_APPLICATION = {
    "sqlite3",
    "reportlab",
}


@dataclass(frozen=True)
class ImportRecord:
    source_file: str
    source_layer: str
    imported_module: str


def _layer_from_file(path: Path) -> str | None:
    relative_parts = path.relative_to(PROJECT_ROOT).parts
    if len(relative_parts) < 3 or relative_parts[0] != "records_sync":
        return None
    layer = relative_parts[1]
    return layer if layer in LAYERS else None


def _layer_from_module(module: str) -> str | None:
    parts = module.split(".")
    if len(parts) >= 2 and parts[0] == "records_sync" and parts[1] in LAYERS:
        return parts[1]
    return None


def _iter_imports(py_file: Path) -> list[ImportRecord]:
    tree = ast.parse(py_file.read_text(encoding="utf-8"), filename=str(py_file))
    relative_file = py_file.relative_to(PROJECT_ROOT).as_posix()
    source_layer = _layer_from_file(py_file)
    if source_layer is None:
        return []

    imports: list[ImportRecord] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            imports.extend(ImportRecord(relative_file, source_layer, alias.name) for alias in node.names)
        elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
            imports.append(ImportRecord(relative_file, source_layer, node.module))
    return imports


def _violation_for(record: ImportRecord) -> str | None:
    destination_layer = _layer_from_module(record.imported_module)
    top_level_module = record.imported_module.split(".")[0]

    if record.source_layer == "core" and destination_layer not in {None, "core"}:
        return "core must not depend on any other layer"
    if record.source_layer == "domain" and destination_layer in {"application", "infrastructure", "bootstrap", "entrypoints"}:
        return "domain may only depend on core"
    if record.source_layer == "application":
        if destination_layer in {"infrastructure", "bootstrap", "entrypoints"}:
            return "application talks to storage through domain ports"
        if top_level_module in TECHNICAL_LIBRARIES_BLOCKED_IN_APPLICATION:
            return "application must not import storage or rendering libraries"
    if record.source_layer == "infrastructure" and destination_layer in {"application", "bootstrap", "entrypoints"}:
        return "infrastructure implements ports and must not reach up"
    return None


def test_architecture_import_rules() -> None:
    violations: list[str] = []

    for py_file in sorted(PACKAGE_ROOT.rglob("*.py")):
        for record in _iter_imports(py_file):
            broken_rule = _violation_for(record)
            if broken_rule is not None:
                violations.append(f"{record.source_file}: {record.imported_module} ({broken_rule})")

    assert not violations, "Layer import violations:\n" + "\n".join(violations)
