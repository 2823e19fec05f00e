"""
Project convention and architecture extraction from the file index.
"""

from __future__ import annotations

import asyncio
import json
import re
import tomllib
from collections import Counter
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any

from .discovery import ProjectIndex, is_test_path

SOURCE_LANGUAGES = {
    ".py": "Python",
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".js": "JavaScript",
    ".jsx": "JavaScript",
    ".go": "Go",
    ".rs": "Rust",
    ".java": "Java",
    ".rb": "Ruby",
}

ENTRY_POINT_NAMES = frozenset(
    {
        "__main__.py",
        "main.py",
        "cli.py",
        "app.py",
        "manage.py",
        "wsgi.py",
        "asgi.py",
        "server.py",
        "index.ts",
        "index.js",
        "main.ts",
        "server.ts",
        "server.js",
        "main.go",
        "main.rs",
    }
)

TOOLING_FILES = {
    "pyproject.toml": "pyproject.toml project metadata",
    "setup.cfg": "setup.cfg metadata",
    "package.json": "npm package manifest",
    "tsconfig.json": "TypeScript compiler config",
    ".eslintrc": "ESLint rules",
    ".eslintrc.json": "ESLint rules",
    ".prettierrc": "Prettier formatting",
    "ruff.toml": "Ruff lint rules",
    ".flake8": "flake8 lint rules",
    "mypy.ini": "mypy type checking",
    ".pre-commit-config.yaml": "pre-commit hooks",
}

_SNAKE_RE = re.compile(r"^[a-z0-9]+(_[a-z0-9]+)+$")
_CAMEL_RE = re.compile(r"^[a-z]+[A-Z][A-Za-z0-9]*$")
_PASCAL_RE = re.compile(r"^[A-Z][a-z0-9]+[A-Z][A-Za-z0-9]*$")
_KEBAB_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)+$")

MAX_DEPENDENCIES = 20


@dataclass(frozen=True)
class Convention:
    """A project-specific convention and the files it was inferred from."""

    name: str
    description: str
    evidence: tuple[str, ...] = ()
    # Share of recorded executions that succeeded while following this convention
    success_rate: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {"name": self.name, "description": self.description, "evidence": list(self.evidence)}
        if self.success_rate is not None:
            data["success_rate"] = self.success_rate
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Convention:
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            evidence=tuple(data.get("evidence", ())),
            success_rate=data.get("success_rate"),
        )


@dataclass(frozen=True)
class Component:
    name: str
    location: str
    file_count: int

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "location": self.location, "file_count": self.file_count}


@dataclass(frozen=True)
class ArchitectureSummary:
    """Structural facts about a project: layering, entry points, dependencies."""

    overview: str = ""
    components: tuple[Component, ...] = ()
    entry_points: tuple[str, ...] = ()
    dependencies: tuple[str, ...] = ()
    languages: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.overview or self.components or self.entry_points)

    def to_dict(self) -> dict[str, Any]:
        return {
            "overview": self.overview,
            "components": [c.to_dict() for c in self.components],
            "entry_points": list(self.entry_points),
            "dependencies": list(self.dependencies),
            "languages": list(self.languages),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchitectureSummary:
        return cls(
            overview=data.get("overview", ""),
            components=tuple(Component(**c) for c in data.get("components", ())),
            entry_points=tuple(data.get("entry_points", ())),
            dependencies=tuple(data.get("dependencies", ())),
            languages=tuple(data.get("languages", ())),
        )


def _source_files(index: ProjectIndex) -> list[str]:
    return [f for f in index.files if PurePosixPath(f).suffix in SOURCE_LANGUAGES]


class PatternExtractor:
    """Infers naming, layout, testing and tooling conventions."""

    async def extract(self, index: ProjectIndex) -> list[Convention]:
        return await asyncio.to_thread(self.extract_sync, index)

    def extract_sync(self, index: ProjectIndex) -> list[Convention]:
        conventions: list[Convention] = []
        for detector in (
            self._naming_convention,
            self._package_layout,
            self._test_layout,
            self._test_framework,
        ):
            convention = detector(index)
            if convention is not None:
                conventions.append(convention)
        conventions.extend(self._tooling(index))
        return conventions

    def _naming_convention(self, index: ProjectIndex) -> Convention | None:
        styles: Counter[str] = Counter()
        examples: dict[str, list[str]] = {}
        for path in _source_files(index):
            stem = PurePosixPath(path).stem.split(".")[0]
            if _SNAKE_RE.match(stem):
                style = "snake_case"
            elif _CAMEL_RE.match(stem):
                style = "camelCase"
            elif _PASCAL_RE.match(stem):
                style = "PascalCase"
            elif _KEBAB_RE.match(stem):
                style = "kebab-case"
            else:
                continue
            styles[style] += 1
            examples.setdefault(style, []).append(path)
        if not styles:
            return None
        style, count = styles.most_common(1)[0]
        return Convention(
            name="file_naming",
            description=f"Source files use {style} names ({count} of {sum(styles.values())} multi-word names)",
            evidence=tuple(examples[style][:3]),
        )

    def _package_layout(self, index: ProjectIndex) -> Convention | None:
        sources = _source_files(index)
        if not sources:
            return None
        if any(f.startswith("src/") for f in sources):
            return Convention(
                name="package_layout",
                description="Code lives under a src/ directory",
                evidence=tuple(f for f in sources if f.startswith("src/"))[:3],
            )
        packages = sorted(
            {PurePosixPath(f).parts[0] for f in index.files if f.endswith("/__init__.py") and f.count("/") == 1}
        )
        if packages:
            return Convention(
                name="package_layout",
                description=f"Flat layout with top-level package(s): {', '.join(packages)}",
                evidence=tuple(f"{p}/__init__.py" for p in packages[:3]),
            )
        return None

    def _test_layout(self, index: ProjectIndex) -> Convention | None:
        tests = [f for f in index.files if is_test_path(f)]
        if not tests:
            return None
        in_dir = [f for f in tests if re.match(r"^(tests?|__tests__)/", f)]
        if len(in_dir) * 2 >= len(tests):
            root = PurePosixPath(in_dir[0]).parts[0]
            description = f"Tests live in a top-level {root}/ directory"
            evidence = in_dir[:3]
        else:
            description = "Tests sit next to the code they cover"
            evidence = tests[:3]
        return Convention(name="test_layout", description=description, evidence=tuple(evidence))

    def _test_framework(self, index: ProjectIndex) -> Convention | None:
        files = set(index.files)
        if any(PurePosixPath(f).name == "conftest.py" for f in files) or "pytest.ini" in files:
            return Convention(name="test_framework", description="pytest", evidence=("conftest.py",))
        if "pyproject.toml" in files and "[tool.pytest" in index.read_text("pyproject.toml"):
            return Convention(name="test_framework", description="pytest", evidence=("pyproject.toml",))
        for name, framework in (("jest.config", "Jest"), ("vitest.config", "Vitest")):
            hits = [f for f in files if PurePosixPath(f).name.startswith(name)]
            if hits:
                return Convention(name="test_framework", description=framework, evidence=tuple(hits[:1]))
        if "package.json" in files:
            scripts = _package_json(index).get("scripts", {})
            test_script = scripts.get("test", "") if isinstance(scripts, dict) else ""
            for marker, framework in (("jest", "Jest"), ("vitest", "Vitest"), ("mocha", "Mocha")):
                if marker in test_script:
                    return Convention(
                        name="test_framework", description=framework, evidence=("package.json",)
                    )
        return None

    def _tooling(self, index: ProjectIndex) -> list[Convention]:
        found = [f for f in TOOLING_FILES if f in index]
        if not found:
            return []
        return [
            Convention(
                name="tooling",
                description="Project tooling: " + ", ".join(TOOLING_FILES[f] for f in found),
                evidence=tuple(found),
            )
        ]


class ArchitectureExtractor:
    """Summarizes components, entry points and declared dependencies."""

    async def extract(self, index: ProjectIndex) -> ArchitectureSummary:
        return await asyncio.to_thread(self.extract_sync, index)

    def extract_sync(self, index: ProjectIndex) -> ArchitectureSummary:
        if not index.files:
            return ArchitectureSummary()

        counts: Counter[str] = Counter()
        for path in index.files:
            parts = PurePosixPath(path).parts
            counts[parts[0] if len(parts) > 1 else "(root)"] += 1
        components = tuple(
            Component(name=name, location=name if name != "(root)" else ".", file_count=count)
            for name, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        )

        entry_points = tuple(f for f in index.files if PurePosixPath(f).name in ENTRY_POINT_NAMES)
        languages = Counter(
            SOURCE_LANGUAGES[PurePosixPath(f).suffix] for f in _source_files(index)
        )
        dependencies = tuple(self._dependencies(index)[:MAX_DEPENDENCIES])

        language_names = tuple(name for name, _ in languages.most_common())
        overview = (
            f"{len(index.files)} files across {len(components)} top-level components"
            + (f"; primarily {language_names[0]}" if language_names else "")
        )
        return ArchitectureSummary(
            overview=overview,
            components=components,
            entry_points=entry_points,
            dependencies=dependencies,
            languages=language_names,
        )

    def _dependencies(self, index: ProjectIndex) -> list[str]:
        deps: list[str] = []
        if "pyproject.toml" in index:
            try:
                data = tomllib.loads(index.read_text("pyproject.toml"))
            except tomllib.TOMLDecodeError:
                data = {}
            for spec in data.get("project", {}).get("dependencies", []):
                name = re.split(r"[\s<>=!~;\[(]", str(spec), maxsplit=1)[0]
                if name:
                    deps.append(name)
        if "package.json" in index:
            pkg = _package_json(index)
            deps.extend(pkg.get("dependencies", {}) or {})
            deps.extend(f"{d} (dev)" for d in pkg.get("devDependencies", {}) or {})
        return deps


def _package_json(index: ProjectIndex) -> dict[str, Any]:
    try:
        data = json.loads(index.read_text("package.json") or "{}")
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}
