"""
Symbol discovery with tree-sitter.

Finds the source files of a language inside a project and extracts the
callable declarations (functions and methods) that the benchmark probes.
Positions are reported the way LSP expects them: zero-based lines and
characters counted in UTF-16 code units.
"""

import fnmatch
import importlib
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path

from tree_sitter import Language as TSLanguage
from tree_sitter import Node, Parser, Query, QueryCursor, QueryError

from benchmark_config import DEFAULT_SKIP_DIRS, BenchmarkConfig
from errors import ConfigurationError, DiscoveryError
from language_config import Language, LanguageServerConfig, LanguageTable

logger = logging.getLogger(__name__)

NAME_CAPTURE = "name"
DEFINITION_CAPTURE = "definition"


@dataclass(frozen=True)
class FileSearchConfig:
    """Which files of a project are searched."""

    skip_dirs: tuple[str, ...] = DEFAULT_SKIP_DIRS
    max_depth: int | None = None
    include_glob: str | None = None
    exclude_glob: str | None = None

    @classmethod
    def from_benchmark_config(cls, config: BenchmarkConfig) -> "FileSearchConfig":
        return cls(
            skip_dirs=tuple(config.skip_dirs),
            max_depth=config.max_depth,
            include_glob=config.include_glob,
            exclude_glob=config.exclude_glob,
        )

    def accepts(self, relative_path: str) -> bool:
        """Apply include/exclude globs to a project-relative POSIX path."""
        if self.include_glob and not _glob_matches(relative_path, self.include_glob):
            return False
        if self.exclude_glob and _glob_matches(relative_path, self.exclude_glob):
            return False
        return True


def _glob_matches(relative_path: str, pattern: str) -> bool:
    # Patterns without a separator also match on the bare file name
    if fnmatch.fnmatch(relative_path, pattern):
        return True
    if "/" not in pattern:
        return fnmatch.fnmatch(relative_path.rsplit("/", 1)[-1], pattern)
    if pattern.startswith("**/"):
        return fnmatch.fnmatch(relative_path, pattern[3:])
    return False


def find_language_files(
    root: Path,
    language_config: LanguageServerConfig,
    search_config: FileSearchConfig | None = None,
) -> list[Path]:
    """
    Find all files of a language under a project root.

    Args:
        root: Project root directory
        language_config: Language whose file extensions are searched
        search_config: Directory pruning and glob filters

    Returns:
        Sorted list of absolute file paths
    """
    search_config = search_config or FileSearchConfig()
    root = root.resolve()
    skip = set(search_config.skip_dirs)
    found: list[Path] = []

    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        depth = len(current.relative_to(root).parts)
        # Files directly under the root are at depth 1
        if search_config.max_depth is not None and depth + 1 > search_config.max_depth:
            dirnames[:] = []
            continue
        dirnames[:] = sorted(d for d in dirnames if d not in skip)

        for name in filenames:
            if not language_config.matches_file(name):
                continue
            path = current / name
            if search_config.accepts(path.relative_to(root).as_posix()):
                found.append(path)

    found.sort()
    logger.debug(f"Found {len(found)} {language_config.display_name} files under {root}")
    return found


@dataclass(frozen=True)
class Symbol:
    """A callable declaration located in a source file.

    ``line``/``character`` point at the start of the declaration's name,
    which is where prepareCallHierarchy is issued.
    """

    path: Path
    relative_path: str
    name: str
    language: Language
    kind: str
    start_byte: int
    end_byte: int
    line: int
    character: int
    end_line: int
    end_character: int
    definition_start_line: int
    definition_end_line: int

    @property
    def uri(self) -> str:
        """File URI of the containing document."""
        return self.path.as_uri()

    @property
    def sort_key(self) -> tuple[str, int]:
        return (self.relative_path, self.start_byte)

    def describe(self) -> str:
        return f"{self.relative_path}:{self.line + 1}:{self.character + 1} {self.name}"


@dataclass(frozen=True)
class DiscoveryResult:
    """Symbols found in a project plus the files that could not be used."""

    language: Language
    symbols: tuple[Symbol, ...]
    errors: tuple[DiscoveryError, ...] = ()
    files_scanned: int = 0
    total_symbols: int = 0

    @property
    def all_files_failed(self) -> bool:
        """True when there were files and none of them could be parsed."""
        return self.files_scanned > 0 and len(self.errors) == self.files_scanned

    @property
    def truncated(self) -> bool:
        return self.total_symbols > len(self.symbols)


def utf16_column(source: bytes, byte_offset: int) -> int:
    """Convert a byte offset into a UTF-16 column on its line."""
    line_start = source.rfind(b"\n", 0, byte_offset) + 1
    prefix = source[line_start:byte_offset].decode("utf-8", errors="replace")
    return len(prefix.encode("utf-16-le")) // 2


@dataclass
class _CompiledLanguage:
    parser: Parser
    query: Query


class SymbolDiscoverer:
    """
    Extracts callable declarations with tree-sitter.

    Grammars and queries are loaded lazily and cached per language. Queries
    come from the language table unless overridden through ``queries``.
    """

    def __init__(
        self,
        language_table: LanguageTable,
        search_config: FileSearchConfig | None = None,
        queries: dict[Language, str] | None = None,
        max_symbols: int | None = None,
    ):
        self.language_table = language_table
        self.search_config = search_config or FileSearchConfig()
        self.queries = dict(queries or {})
        self.max_symbols = max_symbols
        self._compiled: dict[Language, _CompiledLanguage] = {}
        self._lock = threading.Lock()

    def _compile(self, language: Language) -> _CompiledLanguage:
        with self._lock:
            compiled = self._compiled.get(language)
            if compiled is not None:
                return compiled

            config = self._config(language)
            try:
                module = importlib.import_module(config.grammar_module)
                grammar = TSLanguage(getattr(module, config.grammar_function)())
            except (ImportError, AttributeError) as e:
                raise ConfigurationError(
                    f"tree-sitter grammar for {config.display_name} is not available: {e}",
                    {"module": config.grammar_module},
                ) from e

            source = self.queries.get(language, config.declaration_query)
            try:
                query = Query(grammar, source)
            except QueryError as e:
                raise ConfigurationError(
                    f"Invalid declaration query for {config.display_name}: {e}"
                ) from e

            compiled = _CompiledLanguage(parser=Parser(grammar), query=query)
            self._compiled[language] = compiled
            logger.debug(f"Compiled tree-sitter query for {config.display_name}")
            return compiled

    def _config(self, language: Language) -> LanguageServerConfig:
        config = self.language_table.get(language)
        if config is None:
            raise ConfigurationError(f"No configuration for language: {language.value}")
        return config

    def discover(self, project_root: Path, language: Language) -> DiscoveryResult:
        """
        Discover callable declarations in a project.

        Args:
            project_root: Project directory
            language: Language to search

        Returns:
            Symbols ordered by (relative path, start byte) plus per-file errors

        Raises:
            ConfigurationError: If the grammar or query cannot be loaded
        """
        project_root = project_root.resolve()
        config = self._config(language)
        compiled = self._compile(language)
        files = find_language_files(project_root, config, self.search_config)

        symbols: dict[tuple[str, int], Symbol] = {}
        errors: list[DiscoveryError] = []
        for path in files:
            try:
                for symbol in self.extract_file(path, project_root, language, compiled):
                    symbols.setdefault(symbol.sort_key, symbol)
            except DiscoveryError as e:
                logger.warning(f"⚠️  {e}")
                errors.append(e)

        ordered = sorted(symbols.values(), key=lambda s: s.sort_key)
        total = len(ordered)
        if self.max_symbols is not None:
            ordered = ordered[: self.max_symbols]

        logger.info(
            f"🔍 Discovered {total} {config.display_name} symbols in {len(files)} files"
            + (f" (probing first {len(ordered)})" if len(ordered) < total else "")
        )
        return DiscoveryResult(
            language=language,
            symbols=tuple(ordered),
            errors=tuple(errors),
            files_scanned=len(files),
            total_symbols=total,
        )

    def extract_file(
        self,
        path: Path,
        project_root: Path,
        language: Language,
        compiled: _CompiledLanguage | None = None,
    ) -> list[Symbol]:
        """Extract symbols from one file.

        Raises:
            DiscoveryError: If the file cannot be read, decoded or parsed
        """
        compiled = compiled or self._compile(language)
        relative = path.relative_to(project_root).as_posix()

        try:
            source = path.read_bytes()
        except OSError as e:
            raise DiscoveryError(f"Cannot read {relative}: {e}", file_path=str(path)) from e
        try:
            source.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DiscoveryError(
                f"{relative} is not valid UTF-8: {e.reason}", file_path=str(path)
            ) from e

        try:
            tree = compiled.parser.parse(source)
        except (ValueError, RuntimeError) as e:
            raise DiscoveryError(f"Failed to parse {relative}: {e}", file_path=str(path)) from e
        if tree is None:
            raise DiscoveryError(f"Parser returned no tree for {relative}", file_path=str(path))
        if tree.root_node.has_error:
            # Partial trees still yield usable declarations
            logger.debug(f"Syntax errors in {relative}, extracting what parsed")

        symbols: list[Symbol] = []
        cursor = QueryCursor(compiled.query)
        for _, captures in cursor.matches(tree.root_node):
            for name_node, definition in _pair_captures(captures):
                symbols.append(
                    _make_symbol(path, relative, language, source, name_node, definition)
                )
        return symbols


def _pair_captures(captures: dict[str, list[Node]]) -> list[tuple[Node, Node]]:
    names = captures.get(NAME_CAPTURE, [])
    definitions = captures.get(DEFINITION_CAPTURE, [])
    pairs = []
    for index, name_node in enumerate(names):
        definition = definitions[index] if index < len(definitions) else name_node
        pairs.append((name_node, definition))
    return pairs


def _make_symbol(
    path: Path,
    relative: str,
    language: Language,
    source: bytes,
    name_node: Node,
    definition: Node,
) -> Symbol:
    name = source[name_node.start_byte : name_node.end_byte].decode("utf-8")
    return Symbol(
        path=path,
        relative_path=relative,
        name=name,
        language=language,
        kind=definition.type,
        start_byte=definition.start_byte,
        end_byte=definition.end_byte,
        line=name_node.start_point[0],
        character=utf16_column(source, name_node.start_byte),
        end_line=name_node.end_point[0],
        end_character=utf16_column(source, name_node.end_byte),
        definition_start_line=definition.start_point[0],
        definition_end_line=definition.end_point[0],
    )

