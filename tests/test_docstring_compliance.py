from __future__ import annotations

import ast
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable


@dataclass(frozen=True)
class MissingDocstring:
    path: Path
    lineno: int
    qualname: str


def _iter_python_files_under(root: Path) -> Iterable[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in {"__pycache__", ".pytest_cache", ".mypy_cache"}]
        for filename in filenames:
            if filename.endswith(".py"):
                yield Path(dirpath) / filename


def _find_missing_docstrings(py_path: Path) -> list[MissingDocstring]:
    tree = ast.parse(py_path.read_text(encoding="utf-8"), filename=str(py_path))
    missing: list[MissingDocstring] = []

    class Visitor(ast.NodeVisitor):
        def __init__(self) -> None:
            self.stack: list[str] = []

        def _check(self, node: ast.AST, name: str) -> None:
            if ast.get_docstring(node) is None:  # type: ignore[arg-type]
                qualname = ".".join(self.stack + [name])
                missing.append(MissingDocstring(py_path, getattr(node, "lineno", 0), qualname))
            self.stack.append(name)
            self.generic_visit(node)
            self.stack.pop()

        def visit_ClassDef(self, node: ast.ClassDef) -> None:  # noqa: N802
            self._check(node, node.name)

        def visit_FunctionDef(self, node: ast.FunctionDef) -> None:  # noqa: N802
            self._check(node, node.name)

        def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:  # noqa: N802
            self._check(node, node.name)

    Visitor().visit(tree)
    return missing


def test_docstrings_present_for_all_defs_under_src() -> None:
    """
    Docstring 合规护栏：`src/agent_toolbelt` 下每个 `class/def/async def`（含嵌套定义）都要有 docstring。
    """

    repo_root = Path(__file__).resolve().parents[1]
    root = repo_root / "src" / "agent_toolbelt"
    assert root.is_dir()

    missing: list[MissingDocstring] = []
    for py_path in _iter_python_files_under(root):
        missing.extend(_find_missing_docstrings(py_path))

    if not missing:
        return

    lines = ["missing docstrings:"]
    for m in sorted(missing, key=lambda m: (str(m.path), m.lineno, m.qualname)):
        lines.append(f"- {m.path.relative_to(repo_root)}:{m.lineno} {m.qualname}")
    raise AssertionError("\n".join(lines))
