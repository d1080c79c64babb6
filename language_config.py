"""
Per-language configuration table.

Each supported language maps to the language server that is launched for it,
the files that belong to it and the tree-sitter query that locates callable
declarations. The table is built once at run start and injected into the
components that need it; nothing else branches on the language tag.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from errors import ConfigurationError

logger = logging.getLogger(__name__)


class Language(Enum):
    """Languages the benchmark can drive a server for."""

    RUST = "rust"
    PYTHON = "python"
    TYPESCRIPT = "typescript"
    GO = "go"
    SWIFT = "swift"

    @classmethod
    def from_cli_name(cls, name: str) -> "Language":
        """Resolve a command-line language name.

        Raises:
            ConfigurationError: If the name is not a supported language
        """
        try:
            return cls(name.strip().lower())
        except ValueError:
            supported = ", ".join(lang.value for lang in cls)
            raise ConfigurationError(
                f"Unsupported language: '{name}'. Supported languages: {supported}"
            ) from None


@dataclass(frozen=True)
class LanguageServerConfig:
    """How to run and feed one language's server."""

    language: Language
    display_name: str
    command: str
    args: tuple[str, ...]
    file_extensions: tuple[str, ...]
    language_id: str
    grammar_module: str
    grammar_function: str
    declaration_query: str
    install_hint: str
    initialization_options: dict[str, Any] | None = None
    env: dict[str, str] = field(default_factory=dict)

    def matches_file(self, file_name: str) -> bool:
        """Check whether a file name belongs to this language."""
        return file_name.endswith(self.file_extensions)

    def full_command(self) -> list[str]:
        """Command line used to launch the server."""
        return [self.command, *self.args]


PYLSP_INITIALIZATION_OPTIONS: dict[str, Any] = {
    "settings": {
        "pylsp": {
            "plugins": {
                # Linters only produce diagnostics noise during a benchmark
                "autopep8": {"enabled": False},
                "flake8": {"enabled": False},
                "mccabe": {"enabled": False},
                "pycodestyle": {"enabled": False},
                "pydocstyle": {"enabled": False},
                "pyflakes": {"enabled": False},
                "pylint": {"enabled": False},
                "yapf": {"enabled": False},
            }
        }
    }
}

RUST_DECLARATIONS = """
(function_item name: (identifier) @name) @definition
(function_signature_item name: (identifier) @name) @definition
"""

PYTHON_DECLARATIONS = """
(function_definition name: (identifier) @name) @definition
"""

TYPESCRIPT_DECLARATIONS = """
(function_declaration name: (identifier) @name) @definition
(generator_function_declaration name: (identifier) @name) @definition
(method_definition name: (property_identifier) @name) @definition
"""

GO_DECLARATIONS = """
(function_declaration name: (identifier) @name) @definition
(method_declaration name: (field_identifier) @name) @definition
(method_elem name: (field_identifier) @name) @definition
"""

SWIFT_DECLARATIONS = """
(function_declaration name: (simple_identifier) @name) @definition
(protocol_function_declaration name: (simple_identifier) @name) @definition
"""


DEFAULT_LANGUAGE_CONFIGS: dict[Language, LanguageServerConfig] = {
    Language.RUST: LanguageServerConfig(
        language=Language.RUST,
        display_name="Rust",
        command="rust-analyzer",
        args=(),
        file_extensions=(".rs",),
        language_id="rust",
        grammar_module="tree_sitter_rust",
        grammar_function="language",
        declaration_query=RUST_DECLARATIONS,
        install_hint="Install rust-analyzer: https://rust-analyzer.github.io/manual.html#installation",
    ),
    Language.PYTHON: LanguageServerConfig(
        language=Language.PYTHON,
        display_name="Python",
        command="pylsp",
        args=(),
        file_extensions=(".py",),
        language_id="python",
        grammar_module="tree_sitter_python",
        grammar_function="language",
        declaration_query=PYTHON_DECLARATIONS,
        install_hint="Install Python LSP Server: pip install python-lsp-server",
        initialization_options=PYLSP_INITIALIZATION_OPTIONS,
    ),
    Language.TYPESCRIPT: LanguageServerConfig(
        language=Language.TYPESCRIPT,
        display_name="TypeScript",
        command="typescript-language-server",
        args=("--stdio",),
        file_extensions=(".ts", ".tsx"),
        language_id="typescript",
        grammar_module="tree_sitter_typescript",
        grammar_function="language_typescript",
        declaration_query=TYPESCRIPT_DECLARATIONS,
        install_hint=(
            "Install TypeScript Language Server: "
            "npm install -g typescript-language-server typescript"
        ),
    ),
    Language.GO: LanguageServerConfig(
        language=Language.GO,
        display_name="Go",
        command="gopls",
        args=(),
        file_extensions=(".go",),
        language_id="go",
        grammar_module="tree_sitter_go",
        grammar_function="language",
        declaration_query=GO_DECLARATIONS,
        install_hint="Install gopls: go install golang.org/x/tools/gopls@latest",
    ),
    Language.SWIFT: LanguageServerConfig(
        language=Language.SWIFT,
        display_name="Swift",
        command="sourcekit-lsp",
        args=(),
        file_extensions=(".swift",),
        language_id="swift",
        grammar_module="tree_sitter_swift",
        grammar_function="language",
        declaration_query=SWIFT_DECLARATIONS,
        install_hint=(
            "Install sourcekit-lsp: Install Xcode or Swift toolchain "
            "from https://swift.org/download/"
        ),
    ),
}

LanguageTable = dict[Language, LanguageServerConfig]

_OVERRIDABLE_FIELDS = {
    "command",
    "args",
    "file_extensions",
    "language_id",
    "declaration_query",
    "initialization_options",
    "env",
}


def build_language_table(
    overrides: dict[str, dict[str, Any]] | None = None,
) -> LanguageTable:
    """
    Build the language table, applying per-language overrides.

    Args:
        overrides: Mapping of language name to field overrides, e.g.
            ``{"python": {"command": "pyright-langserver", "args": ["--stdio"]}}``

    Returns:
        New table keyed by Language

    Raises:
        ConfigurationError: On unknown languages or fields
    """
    table: LanguageTable = dict(DEFAULT_LANGUAGE_CONFIGS)
    if not overrides:
        return table

    for name, values in overrides.items():
        language = Language.from_cli_name(name)
        if not isinstance(values, dict):
            raise ConfigurationError(f"Server override for {name} must be an object")

        unknown = set(values) - _OVERRIDABLE_FIELDS
        if unknown:
            raise ConfigurationError(
                f"Unknown server override fields for {name}: {sorted(unknown)}"
            )

        changes: dict[str, Any] = dict(values)
        for key in ("args", "file_extensions"):
            if key in changes:
                if not isinstance(changes[key], list | tuple):
                    raise ConfigurationError(f"{name}.{key} must be a list")
                changes[key] = tuple(str(item) for item in changes[key])
        if "env" in changes:
            changes["env"] = {str(k): str(v) for k, v in changes["env"].items()}

        table[language] = replace(table[language], **changes)
        logger.info(f"Applied server overrides for {name}: {sorted(changes)}")

    return table
