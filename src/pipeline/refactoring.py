"""Multi-file refactoring: dependency analysis, ordering, atomic apply.

The dependency graph is an adjacency mapping keyed by repository-relative
paths. How references are found is delegated to a ``ReferenceExtractor``;
the default one matches import statements with regular expressions and
resolves them against the set of files being analysed.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import re
from datetime import datetime, timezone
from typing import Mapping, Protocol, Sequence, runtime_checkable

from src.pipeline.build_verifier import BuildVerifier
from src.pipeline.exceptions import DependencyGraphError, PipelineError, RefactoringError
from src.pipeline.models import (
    ChangeType,
    ChangesetValidationResult,
    DependencyGraph,
    DependencyNode,
    FileChange,
    RefactoringPlan,
    RefactoringResult,
    language_for_path,
)
from src.workspace.command_runner import WorkingContext
from src.workspace.file_editor import FileEditor
from src.workspace.file_store import normalize_path

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Reference extraction
# ---------------------------------------------------------------------------


@runtime_checkable
class ReferenceExtractor(Protocol):
    def references(self, path: str, contents: Mapping[str, str]) -> list[str]:
        """Return the keys of ``contents`` that the file at ``path`` refers to."""
        ...


_PY_IMPORT = re.compile(r"^[ \t]*import[ \t]+([\w.]+(?:[ \t]*,[ \t]*[\w.]+)*)", re.MULTILINE)
_PY_FROM = re.compile(
    r"^[ \t]*from[ \t]+(\.*)([\w.]*)[ \t]+import[ \t]+\(?([\w \t,*]+)", re.MULTILINE,
)
_JS_IMPORT = re.compile(r"""(?:\bfrom|\bimport|\brequire\()\s*['"](\.{1,2}/[^'"]+)['"]""")
_JAVA_IMPORT = re.compile(r"^\s*import\s+(?:static\s+)?([\w.]+?)(\.\*)?\s*;", re.MULTILINE)
_CS_USING = re.compile(r"^\s*using\s+(?:static\s+)?([\w.]+)\s*;", re.MULTILINE)
_CS_NAMESPACE = re.compile(r"^\s*namespace\s+([\w.]+)", re.MULTILINE)
_GO_IMPORT_BLOCK = re.compile(r"^import\s*\(([^)]*)\)", re.MULTILINE)
_GO_IMPORT_SINGLE = re.compile(r'^import\s+(?:[\w.]+\s+)?"([^"]+)"', re.MULTILINE)
_GO_QUOTED = re.compile(r'"([^"]+)"')

_JS_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx")


def _suffix_match(candidate: str, files: Sequence[str]) -> list[str]:
    return [f for f in files if f == candidate or f.endswith("/" + candidate)]


def _in_package(path: str, package: str) -> bool:
    directory = posixpath.dirname(path)
    return directory == package or directory.endswith("/" + package)


class ImportReferenceExtractor:
    """Finds references through import statements.

    Supports Python, TypeScript/JavaScript relative imports, Java, C# and Go.
    Other languages yield no references.
    """

    def references(self, path: str, contents: Mapping[str, str]) -> list[str]:
        content = contents.get(path, "")
        files = list(contents)
        language = language_for_path(path)
        if language == "python":
            found = self._python(path, content, files)
        elif language in ("typescript", "javascript"):
            found = self._javascript(path, content, files)
        elif language == "java":
            found = self._java(content, files)
        elif language == "csharp":
            found = self._csharp(content, contents)
        elif language == "go":
            found = self._go(content, files)
        else:
            found = []
        return [f for f in dict.fromkeys(found) if f != path]

    def _python(self, path: str, content: str, files: list[str]) -> list[str]:
        found: list[str] = []

        def module_files(module: str) -> list[str]:
            base = module.replace(".", "/")
            return _suffix_match(f"{base}.py", files) + _suffix_match(f"{base}/__init__.py", files)

        for match in _PY_IMPORT.finditer(content):
            for module in match.group(1).split(","):
                found.extend(module_files(module.strip()))

        for match in _PY_FROM.finditer(content):
            dots, module, imported = match.groups()
            names = [n.split()[0] for n in imported.split(",") if n.strip()]
            names = [n for n in names if n != "*"]
            if not dots:
                found.extend(module_files(module))
                package = module.replace(".", "/")
                for name in names:
                    found.extend(_suffix_match(f"{package}/{name}.py", files))
                continue

            base = posixpath.dirname(path)
            for _ in range(len(dots) - 1):
                base = posixpath.dirname(base)
            package = "/".join(p for p in (base, module.replace(".", "/")) if p)
            prefix = f"{package}/" if package else ""
            targets = [f"{package}.py", f"{package}/__init__.py"] if module else []
            targets += [f"{prefix}{name}.py" for name in names]
            found.extend(t for t in targets if t in files)
        return found

    def _javascript(self, path: str, content: str, files: list[str]) -> list[str]:
        found: list[str] = []
        directory = posixpath.dirname(path)
        for match in _JS_IMPORT.finditer(content):
            target = posixpath.normpath(posixpath.join(directory, match.group(1)))
            candidates = [target]
            candidates += [target + ext for ext in _JS_EXTENSIONS]
            candidates += [f"{target}/index{ext}" for ext in _JS_EXTENSIONS]
            resolved = next((c for c in candidates if c in files), None)
            if resolved is not None:
                found.append(resolved)
        return found

    def _java(self, content: str, files: list[str]) -> list[str]:
        found: list[str] = []
        for match in _JAVA_IMPORT.finditer(content):
            name, wildcard = match.groups()
            parts = name.split(".")
            if wildcard:
                package = "/".join(parts)
                found.extend(f for f in files if f.endswith(".java") and _in_package(f, package))
                continue
            # Static imports name a member; drop trailing parts until a class matches.
            while parts:
                matches = _suffix_match("/".join(parts) + ".java", files)
                if matches:
                    found.extend(matches)
                    break
                parts.pop()
        return found

    def _csharp(self, content: str, contents: Mapping[str, str]) -> list[str]:
        usings = set(_CS_USING.findall(content))
        if not usings:
            return []
        return [
            path for path, text in contents.items()
            if language_for_path(path) == "csharp"
            and usings.intersection(_CS_NAMESPACE.findall(text))
        ]

    def _go(self, content: str, files: list[str]) -> list[str]:
        imports: list[str] = []
        for block in _GO_IMPORT_BLOCK.finditer(content):
            imports.extend(_GO_QUOTED.findall(block.group(1)))
        imports.extend(_GO_IMPORT_SINGLE.findall(content))
        found: list[str] = []
        for f in files:
            directory = posixpath.dirname(f)
            if not f.endswith(".go") or not directory:
                continue
            if any(i == directory or i.endswith("/" + directory) for i in imports):
                found.append(f)
        return found


# ---------------------------------------------------------------------------
# Dependency graph
# ---------------------------------------------------------------------------


def build_dependency_graph(references: Mapping[str, Sequence[str]]) -> DependencyGraph:
    """Build a graph from ``{path: [paths it references]}``.

    Edges to paths outside the mapping and self edges are dropped. Cycles are
    recorded, in traversal order, rather than rejected.
    """
    depends_on: dict[str, list[str]] = {
        path: [d for d in dict.fromkeys(refs) if d in references and d != path]
        for path, refs in references.items()
    }
    depended_by: dict[str, list[str]] = {path: [] for path in depends_on}
    for path, deps in depends_on.items():
        for dep in deps:
            depended_by[dep].append(path)

    nodes = {
        path: DependencyNode(
            file_path=path,
            depends_on=tuple(depends_on[path]),
            depended_by=tuple(depended_by[path]),
        )
        for path in depends_on
    }
    return DependencyGraph(nodes=nodes, circular_dependencies=find_cycles(depends_on))


def find_cycles(edges: Mapping[str, Sequence[str]]) -> tuple[tuple[str, ...], ...]:
    """Detect cycles using DFS. Each cycle is reported once."""
    WHITE, GRAY, BLACK = 0, 1, 2
    color = {path: WHITE for path in edges}
    stack: list[str] = []
    cycles: list[tuple[str, ...]] = []
    seen: set[frozenset[str]] = set()

    for root in edges:
        if color[root] != WHITE:
            continue
        color[root] = GRAY
        stack.append(root)
        frames = [(root, iter(edges[root]))]
        while frames:
            path, deps = frames[-1]
            dep = next(deps, None)
            if dep is None:
                frames.pop()
                stack.pop()
                color[path] = BLACK
                continue
            if dep not in color:
                continue
            if color[dep] == GRAY:
                cycle = tuple(stack[stack.index(dep):])
                if frozenset(cycle) not in seen:
                    seen.add(frozenset(cycle))
                    cycles.append(cycle)
            elif color[dep] == WHITE:
                color[dep] = GRAY
                stack.append(dep)
                frames.append((dep, iter(edges[dep])))
    return tuple(cycles)


def validate_graph(graph: DependencyGraph) -> None:
    """Raise DependencyGraphError if an edge points at a node the graph lacks."""
    for path, node in graph.nodes.items():
        if node.file_path != path:
            raise DependencyGraphError(f"Node keyed {path} describes {node.file_path}")
        missing = [d for d in node.depends_on if d not in graph.nodes]
        if missing:
            raise DependencyGraphError(f"{path} depends on unknown node(s): {', '.join(missing)}")


def _reachable(start: str, pending: Mapping[str, set[str]]) -> set[str]:
    found: set[str] = set()
    todo = list(pending[start])
    while todo:
        path = todo.pop()
        if path not in found:
            found.add(path)
            todo.extend(pending[path])
    return found


def _cycle_entry(declared: Sequence[str], pending: Mapping[str, set[str]]) -> str:
    """Earliest declared file whose remaining dependencies all lead back to it.

    Such a file belongs to a cycle with no pending dependency outside it. One
    always exists while nothing is ready.
    """
    for path in declared:
        if path not in pending:
            continue
        reach = _reachable(path, pending)
        if path in reach and all(path in _reachable(dep, pending) for dep in reach):
            return path
    raise DependencyGraphError("No file is ready and no closed cycle remains")


def plan_change_order(changes: Sequence[FileChange], graph: DependencyGraph) -> list[FileChange]:
    """Order changes so every file comes after the files it depends on.

    Ties go to the earlier declared file. When every remaining file waits on
    another, the earliest declared file of a cycle that depends on nothing
    outside itself goes next. Changes to files outside the graph follow in
    declaration order. Several changes to one path stay together in their
    original order.
    """
    validate_graph(graph)
    by_path: dict[str, list[FileChange]] = {}
    for change in changes:
        by_path.setdefault(normalize_path(change.path), []).append(change)

    declared = [p for p in by_path if p in graph.nodes]
    pending = {
        path: {d for d in graph.nodes[path].depends_on if d in by_path}
        for path in declared
    }

    ordered: list[str] = []
    while pending:
        ready = next((p for p in declared if p in pending and not pending[p]), None)
        if ready is None:
            ready = _cycle_entry(declared, pending)
            logger.warning("Dependency cycle around %s; continuing in declaration order", ready)
        ordered.append(ready)
        del pending[ready]
        for deps in pending.values():
            deps.discard(ready)

    ordered.extend(p for p in by_path if p not in graph.nodes)
    return [change for path in ordered for change in by_path[path]]


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class RefactoringCoordinator:
    """Applies a multi-file changeset in dependency order, all or nothing.

    Changes go through the shared ``FileEditor``, so they land in the same
    ledger as the rest of the step and roll back with it.
    """

    def __init__(
        self,
        editor: FileEditor,
        build_verifier: BuildVerifier,
        extractor: ReferenceExtractor | None = None,
    ) -> None:
        self._editor = editor
        self._build_verifier = build_verifier
        self._extractor = extractor or ImportReferenceExtractor()
        self._transaction_log: list[str] = []

    @property
    def transaction_log(self) -> list[str]:
        return list(self._transaction_log)

    def _log(self, message: str) -> None:
        self._transaction_log.append(f"[{datetime.now(timezone.utc).isoformat()}] {message}")

    async def analyze_dependencies(
        self,
        context: WorkingContext,
        file_paths: Sequence[str],
        contents: Mapping[str, str] | None = None,
    ) -> DependencyGraph:
        """Build the dependency graph between ``file_paths``.

        ``contents`` overrides what is on disk, so a changeset can be analysed
        before it is applied. Files that cannot be read have no references.
        """
        paths = list(dict.fromkeys(normalize_path(p) for p in file_paths))
        logger.info("Analyzing dependencies for %d file(s)", len(paths))
        texts: dict[str, str] = {}
        for path in paths:
            if contents is not None and path in contents:
                texts[path] = contents[path]
            elif await self._editor.exists(context, path):
                texts[path] = await self._editor.read_file(context, path)
            else:
                texts[path] = ""

        graph = build_dependency_graph(
            {path: self._extractor.references(path, texts) for path in paths}
        )
        for cycle in graph.circular_dependencies:
            logger.warning("Circular dependency: %s", " -> ".join(cycle))
        return graph

    def plan_change_order(
        self, changes: Sequence[FileChange], graph: DependencyGraph,
    ) -> list[FileChange]:
        ordered = plan_change_order(changes, graph)
        logger.info("Ordered %d change(s)", len(ordered))
        return ordered

    async def apply_change(self, context: WorkingContext, change: FileChange) -> FileChange | None:
        """Apply one change through the editor. None if it was a no-op."""
        if change.type is ChangeType.CREATED:
            return await self._editor.create_file(context, change.path, change.new_content or "")
        if change.type is ChangeType.MODIFIED:
            return await self._editor.modify_file(context, change.path, change.new_content or "")
        return await self._editor.delete_file(context, change.path)

    async def apply_atomic_changes(
        self, context: WorkingContext, ordered: Sequence[FileChange],
    ) -> list[FileChange]:
        """Apply ``ordered`` in sequence. Returns the ledger entries produced.

        If any change fails, everything applied so far is rolled back before
        RefactoringError is raised; no later change is attempted.
        """
        checkpoint = self._editor.checkpoint()
        logger.info("Applying %d change(s) atomically", len(ordered))
        try:
            for change in ordered:
                self._log(f"Applying {change.type.value} to {change.path}")
                await self.apply_change(context, change)
                self._log(f"Applied {change.type.value} to {change.path}")
        except asyncio.CancelledError:
            self._log("Cancelled")
            await self.rollback_changes(context, checkpoint)
            raise
        except Exception as e:
            applied = self._editor.checkpoint() - checkpoint
            logger.error("Error applying changes, rolling back %d change(s): %s", applied, e)
            self._log(f"ERROR: {e}")
            await self.rollback_changes(context, checkpoint)
            raise RefactoringError(f"Changeset could not be applied: {e}", applied) from e
        applied_changes = self._editor.changes[checkpoint:]
        logger.info("All %d change(s) applied", len(ordered))
        return applied_changes

    async def rollback_changes(
        self, context: WorkingContext, checkpoint: int = 0,
    ) -> list[FileChange]:
        """Revert every ledger entry recorded after ``checkpoint``, newest first."""
        reverted = await self._editor.rollback_to(context, checkpoint)
        for change in reverted:
            self._log(f"Rolled back {change.type.value} on {change.path}")
        logger.info("Rollback completed (%d change(s))", len(reverted))
        return reverted

    async def verify_changeset(
        self, context: WorkingContext, applied: Sequence[FileChange],
    ) -> ChangesetValidationResult:
        """Run a single build pass, without fixes, over the applied changeset."""
        logger.info("Verifying changeset with %d change(s)", len(applied))
        warnings: list[str] = []
        try:
            build = await self._build_verifier.verify_build(
                context, max_retries=1, fix_errors=False,
            )
        except PipelineError as e:
            logger.error("Error during changeset validation: %s", e)
            return ChangesetValidationResult(
                is_valid=False,
                applied_changes=list(applied),
                error=f"Validation error: {e}",
            )

        if not build.success:
            summary = "; ".join(f"{e.location} - {e.message}" for e in build.errors[:5])
            return ChangesetValidationResult(
                is_valid=False,
                applied_changes=list(applied),
                build_result=build,
                error=f"Build failed with {len(build.errors)} error(s): {summary or build.output[-500:]}",
            )

        if build.undetermined:
            warnings.append("No build tool detected; changeset was not compiled")
        for change in applied:
            if change.type is ChangeType.DELETED:
                warnings.append(
                    f"File {change.path} was deleted - ensure no orphaned references remain"
                )
        logger.info("Changeset validation passed")
        return ChangesetValidationResult(
            is_valid=True,
            applied_changes=list(applied),
            build_result=build,
            warnings=warnings,
        )

    async def refactor(
        self,
        context: WorkingContext,
        plan: RefactoringPlan,
        verify: bool = True,
        graph: DependencyGraph | None = None,
    ) -> RefactoringResult:
        """Analyse, order, apply and verify a plan.

        A failed application or verification leaves the tree as it was.
        """
        logger.info("Starting refactoring: %s", plan.description)
        self._transaction_log.clear()

        if graph is None:
            contents = {
                normalize_path(c.path): c.new_content
                for c in plan.changes if c.new_content is not None
            }
            graph = await self.analyze_dependencies(context, plan.affected_files, contents)
        ordered = self.plan_change_order(plan.changes, graph)

        checkpoint = self._editor.checkpoint()
        try:
            applied = await self.apply_atomic_changes(context, ordered)
        except RefactoringError as e:
            return RefactoringResult(
                success=False,
                ordered_changes=ordered,
                graph=graph,
                error=str(e),
                rolled_back=True,
            )

        if not verify:
            return RefactoringResult(
                success=True, ordered_changes=ordered, applied_changes=applied, graph=graph,
            )

        validation = await self.verify_changeset(context, applied)
        if not validation.is_valid:
            logger.error("Changeset validation failed: %s", validation.error)
            await self.rollback_changes(context, checkpoint)
            return RefactoringResult(
                success=False,
                ordered_changes=ordered,
                applied_changes=applied,
                graph=graph,
                validation=validation,
                error=f"Refactoring failed validation: {validation.error}",
                rolled_back=True,
            )

        logger.info("Refactoring completed")
        return RefactoringResult(
            success=True,
            ordered_changes=ordered,
            applied_changes=applied,
            graph=graph,
            validation=validation,
        )
