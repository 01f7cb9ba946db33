"""
Symbol Reference Extractor.

Statically resolves the external symbols referenced by a source unit (one
Python file) without importing or executing it:

1. Import statements (absolute, relative, aliased, nested in functions or
   TYPE_CHECKING blocks) bind local names to dotted targets.
2. Every name load rooted at a binding is expanded along its attribute chain
   (`billing.contracts.BillingService.charge`) and cut at the first segment
   that is not a module on disk, giving the referenced top-level symbol.
3. Each symbol is attributed to its owning module and classified against
   that module's export tables.

Query units additionally get their public return annotations inspected for
the inter-module read exception.
"""

import ast
from fnmatch import fnmatch
from pathlib import Path

from modulith.core.logging import get_logger
from modulith.descriptors import DescriptorStore, ModuleDescriptor, UnresolvedModuleError
from modulith.descriptors.models import covers

from .errors import SourceParseError
from .models import SymbolKind, SymbolReference, UnitAnalysis, UnitFacts

logger = get_logger(__name__)

# Annotation wrappers whose every type argument must itself be DTO-safe
SEQUENCE_WRAPPERS = frozenset(
    {
        "list",
        "List",
        "tuple",
        "Tuple",
        "set",
        "Set",
        "frozenset",
        "FrozenSet",
        "AbstractSet",
        "Sequence",
        "MutableSequence",
        "Iterable",
        "Iterator",
        "Collection",
        "AsyncIterable",
        "AsyncIterator",
        "Generator",
        "AsyncGenerator",
        "Awaitable",
        "Coroutine",
        "Optional",
        "Union",
    }
)
# Mapping wrappers: only the value type is inspected
MAPPING_WRAPPERS = frozenset({"dict", "Dict", "Mapping", "MutableMapping"})

# Plain values that cannot carry a live entity
PLAIN_RETURN_TYPES = frozenset(
    {
        "None",
        "int",
        "float",
        "str",
        "bool",
        "bytes",
        "decimal.Decimal",
        "uuid.UUID",
        "datetime.datetime",
        "datetime.date",
    }
)


def _attribute_chain(node: ast.expr) -> tuple[str, list[str]] | None:
    """Flatten `a.b.c` into ('a', ['b', 'c']); None if not rooted at a name."""
    attrs: list[str] = []
    while isinstance(node, ast.Attribute):
        attrs.append(node.attr)
        node = node.value
    if isinstance(node, ast.Name):
        return node.id, list(reversed(attrs))
    return None


class _UnitSource:
    """Parsed unit plus its import bindings."""

    def __init__(self, tree: ast.Module, dotted_name: str, is_package: bool):
        self.tree = tree
        self.dotted_name = dotted_name
        self.is_package = is_package
        self.bindings: dict[str, str] = {}
        self.imports: list[tuple[str, str | None, int]] = []
        self.local_classes: set[str] = {
            node.name for node in tree.body if isinstance(node, ast.ClassDef)
        }

    def resolve_relative(self, level: int, module: str | None) -> str:
        parts = self.dotted_name.split(".")
        if not self.is_package:
            parts = parts[:-1]
        if level > 1:
            parts = parts[: max(len(parts) - (level - 1), 0)]
        base = ".".join(parts)
        if module:
            return f"{base}.{module}" if base else module
        return base


class SymbolReferenceExtractor:
    """
    Extracts SymbolReferences and UnitFacts from source units.

    Instances hold no per-unit state and may be shared between worker
    threads.
    """

    def __init__(self, store: DescriptorStore, project_root: str | Path):
        self.store = store
        self.project_root = Path(project_root).resolve()
        self._module_cache: dict[str, bool] = {}

    # ------------------------------------------------------------------
    # Unit discovery
    # ------------------------------------------------------------------

    def module_directory(self, descriptor: ModuleDescriptor) -> Path:
        return self.project_root / Path(descriptor.directory)

    def discover_units(
        self, descriptor: ModuleDescriptor, exclude_patterns: list[str] | None = None
    ) -> list[Path]:
        """List the Python source units of a module, sorted by path."""
        directory = self.module_directory(descriptor)
        if not directory.is_dir():
            logger.warning(
                "Module directory not found", module=descriptor.name, path=str(directory)
            )
            return []

        units = []
        for path in sorted(directory.rglob("*.py")):
            if "__pycache__" in path.parts:
                continue
            display = self.unit_name(path)
            if exclude_patterns and any(fnmatch(display, p) for p in exclude_patterns):
                continue
            units.append(path)
        return units

    def unit_name(self, path: Path) -> str:
        """Stable unit identifier: the path relative to the project root."""
        try:
            return path.relative_to(self.project_root).as_posix()
        except ValueError:
            return path.as_posix()

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract_unit(self, descriptor: ModuleDescriptor, path: Path) -> UnitAnalysis:
        """
        Analyze one source unit of a module.

        Raises:
            SourceParseError: If the unit is not valid Python
            UnresolvedModuleError: If the unit references an unknown module
        """
        unit = self.unit_name(path)
        module_relative = path.relative_to(self.module_directory(descriptor))

        try:
            tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
        except (SyntaxError, UnicodeDecodeError) as e:
            raise SourceParseError(unit, str(e)) from e

        parts = list(module_relative.with_suffix("").parts)
        is_package = path.name == "__init__.py"
        if is_package:
            parts = parts[:-1]
        source = _UnitSource(tree, ".".join([descriptor.package, *parts]), is_package)

        self._collect_bindings(source)
        references = self._collect_references(descriptor, unit, source)

        is_query = descriptor.is_query_unit(module_relative.as_posix())
        offending: tuple[str, ...] = ()
        if is_query:
            offending = self._non_dto_returns(source)

        facts = UnitFacts(
            module=descriptor.name,
            unit=unit,
            is_query=is_query,
            returns_dto=is_query and not offending,
            offending_callables=offending,
        )
        return UnitAnalysis(facts=facts, references=tuple(references))

    def _collect_bindings(self, source: _UnitSource) -> None:
        for node in ast.walk(source.tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    if alias.asname:
                        source.bindings[alias.asname] = alias.name
                    else:
                        root = alias.name.split(".")[0]
                        source.bindings[root] = root
                    source.imports.append((alias.name, alias.asname or alias.name.split(".")[0], node.lineno))

            elif isinstance(node, ast.ImportFrom):
                base = (
                    source.resolve_relative(node.level, node.module)
                    if node.level
                    else node.module or ""
                )
                for alias in node.names:
                    if alias.name == "*":
                        source.imports.append((base, None, node.lineno))
                        continue
                    target = f"{base}.{alias.name}" if base else alias.name
                    local = alias.asname or alias.name
                    source.bindings[local] = target
                    source.imports.append((target, local, node.lineno))

    def _collect_references(
        self, descriptor: ModuleDescriptor, unit: str, source: _UnitSource
    ) -> list[SymbolReference]:
        found: dict[str, int] = {}
        used_names: set[str] = set()

        for tree in [source.tree, *self._string_annotations(source.tree)]:
            parents = {
                child: parent
                for parent in ast.walk(tree)
                for child in ast.iter_child_nodes(parent)
            }
            for node in ast.walk(tree):
                if not isinstance(node, ast.Name) or node.id not in source.bindings:
                    continue
                if not isinstance(node.ctx, ast.Load):
                    continue

                # Climb to the outermost attribute access rooted at this name
                top: ast.expr = node
                while isinstance(parents.get(top), ast.Attribute) and parents[top].value is top:
                    top = parents[top]
                chain = _attribute_chain(top)
                if chain is None:
                    continue

                used_names.add(node.id)
                symbol = self._symbol_for(source.bindings[node.id], chain[1])
                line = getattr(node, "lineno", 0)
                if symbol not in found or (line and line < found[symbol]):
                    found[symbol] = line

        # Imports whose bound name is never used still couple the unit
        for target, local, line in source.imports:
            if local in used_names and source.bindings.get(local) == target:
                continue
            if any(covers(target, symbol) for symbol in found):
                continue
            found.setdefault(target, line)

        references = []
        for symbol in sorted(found):
            reference = self._classify(descriptor, unit, symbol, found[symbol])
            if reference is not None:
                references.append(reference)
        return references

    @staticmethod
    def _string_annotations(tree: ast.Module) -> list[ast.Expression]:
        """Parse string (forward reference) annotations into expression trees."""
        annotations: list[ast.expr] = []
        for node in ast.walk(tree):
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                if node.returns is not None:
                    annotations.append(node.returns)
                all_args = [
                    *node.args.posonlyargs,
                    *node.args.args,
                    *node.args.kwonlyargs,
                    *(a for a in (node.args.vararg, node.args.kwarg) if a),
                ]
                annotations.extend(a.annotation for a in all_args if a.annotation)
            elif isinstance(node, ast.AnnAssign):
                annotations.append(node.annotation)

        parsed = []
        for annotation in annotations:
            for sub in ast.walk(annotation):
                if isinstance(sub, ast.Constant) and isinstance(sub.value, str):
                    try:
                        parsed.append(ast.parse(sub.value, mode="eval"))
                    except SyntaxError:
                        continue
        return parsed

    def _symbol_for(self, target: str, attrs: list[str]) -> str:
        """Extend a binding target along attributes while they name modules."""
        symbol = target
        if not self._is_module(symbol):
            return symbol
        for attr in attrs:
            symbol = f"{symbol}.{attr}"
            if not self._is_module(symbol):
                break
        return symbol

    def _is_module(self, symbol: str) -> bool:
        """Check if a module-owned dotted id names a module or package on disk."""
        cached = self._module_cache.get(symbol)
        if cached is not None:
            return cached

        owner = self.store.owner_of(symbol)
        if owner is None:
            # Parent packages of module packages (`shop`, `shop.modules`)
            result = any(d.package.startswith(symbol + ".") for d in self.store)
        else:
            relative = owner.relative_symbol(symbol)
            base = self.module_directory(owner)
            if not relative:
                result = True
            else:
                candidate = base.joinpath(*relative.split("."))
                result = candidate.with_suffix(".py").is_file() or candidate.is_dir()

        self._module_cache[symbol] = result
        return result

    def _classify(
        self, descriptor: ModuleDescriptor, unit: str, symbol: str, line: int
    ) -> SymbolReference | None:
        owner = self.store.owner_of(symbol)
        if owner is None:
            if self.store.in_module_namespace(symbol):
                namespace = next(
                    ns for ns in sorted(self.store.namespaces, key=len, reverse=True)
                    if symbol.startswith(ns + ".")
                )
                missing = namespace + "." + symbol[len(namespace) + 1 :].split(".")[0]
                raise UnresolvedModuleError(missing, referenced_by=descriptor.name, unit=unit)
            return None

        # A unit's own root package is not a symbol; a foreign one is (star
        # imports, module objects) and classifies as Internal unless exported
        if not owner.relative_symbol(symbol) and owner.name == descriptor.name:
            return None

        if owner.exports_contract(symbol):
            kind = SymbolKind.CONTRACT
        elif owner.exports_event(symbol):
            kind = SymbolKind.EVENT
        elif owner.exports_dto(symbol):
            kind = SymbolKind.DTO
        elif owner.is_entity(symbol):
            kind = SymbolKind.ENTITY
        else:
            kind = SymbolKind.INTERNAL

        return SymbolReference(
            source_module=descriptor.name,
            source_unit=unit,
            target_module=owner.name,
            symbol=symbol,
            kind=kind,
            line=line,
        )

    # ------------------------------------------------------------------
    # Query return types
    # ------------------------------------------------------------------

    def _non_dto_returns(self, source: _UnitSource) -> tuple[str, ...]:
        """Names of public callables whose declared return type is not DTO-only."""
        callables: list[tuple[str, ast.FunctionDef | ast.AsyncFunctionDef]] = []
        for node in source.tree.body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                callables.append((node.name, node))
            elif isinstance(node, ast.ClassDef) and not node.name.startswith("_"):
                for member in node.body:
                    if isinstance(member, (ast.FunctionDef, ast.AsyncFunctionDef)):
                        callables.append((f"{node.name}.{member.name}", member))

        offending = []
        for name, function in callables:
            if name.rpartition(".")[2].startswith("_"):
                continue
            if function.returns is None or not self._is_dto_annotation(source, function.returns):
                offending.append(name)
        return tuple(offending)

    def _is_dto_annotation(self, source: _UnitSource, node: ast.expr) -> bool:
        if isinstance(node, ast.Constant):
            if node.value is None:
                return True
            if isinstance(node.value, str):
                try:
                    parsed = ast.parse(node.value, mode="eval")
                except SyntaxError:
                    return False
                return self._is_dto_annotation(source, parsed.body)
            return False

        if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
            return self._is_dto_annotation(source, node.left) and self._is_dto_annotation(
                source, node.right
            )

        if isinstance(node, ast.Subscript):
            wrapper = self._resolve_annotation_name(source, node.value)
            if wrapper is None:
                return False
            wrapper_name = wrapper.rpartition(".")[2]
            arguments = node.slice.elts if isinstance(node.slice, ast.Tuple) else [node.slice]
            if wrapper_name == "Annotated":
                return self._is_dto_annotation(source, arguments[0])
            if wrapper_name in MAPPING_WRAPPERS:
                return self._is_dto_annotation(source, arguments[-1])
            if wrapper_name in SEQUENCE_WRAPPERS:
                return all(
                    self._is_dto_annotation(source, argument)
                    for argument in arguments
                    if not (isinstance(argument, ast.Constant) and argument.value is Ellipsis)
                )
            return False

        resolved = self._resolve_annotation_name(source, node)
        if resolved is None:
            return False
        if resolved in PLAIN_RETURN_TYPES:
            return True
        owner = self.store.owner_of(resolved)
        return owner is not None and owner.exports_dto(resolved)

    def _resolve_annotation_name(self, source: _UnitSource, node: ast.expr) -> str | None:
        chain = _attribute_chain(node)
        if chain is None:
            return None
        name, attrs = chain
        if name in source.bindings:
            base = source.bindings[name]
        elif name in source.local_classes:
            base = f"{source.dotted_name}.{name}"
        else:
            base = name
        return ".".join([base, *attrs])
