"""Best-effort dependency extraction per file type.

Python, JavaScript/TypeScript, and PHP are parsed with tree-sitter and their
import/require/include nodes collected. C/C++, CSS-family, Rust, and Go use
lexical patterns. Each reference is then resolved to a normalized path of a
file inside the project root, or left unresolved (bare package names, system
headers, missing or out-of-root targets). Dynamically built specifiers are not
followed.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

import tree_sitter
from tree_sitter import Language, Parser
import tree_sitter_javascript
import tree_sitter_php
import tree_sitter_python

from .errors import IOFailure, ParseFailure
from .models import Reference
from .paths import is_within, normalize_path

logger = logging.getLogger(__name__)

# Files larger than this are tracked but not parsed
MAX_PARSE_BYTES = 2 * 1024 * 1024

_LANGUAGES = {
    "python": Language(tree_sitter_python.language()),
    "javascript": Language(tree_sitter_javascript.language()),
    "php": Language(tree_sitter_php.language_php()),
}

FILE_TYPES = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".php": "php",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".cxx": "cpp",
    ".hh": "cpp",
    ".hpp": "cpp",
    ".hxx": "cpp",
    ".css": "css",
    ".scss": "css",
    ".sass": "css",
    ".less": "css",
    ".rs": "rust",
    ".go": "go",
}

JS_RESOLVE_EXTENSIONS = [".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".mts", ".cts"]


@dataclass
class Extraction:
    """Dependency data for one file, ready to store on its node."""

    dependencies: List[str] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)
    last_modified: Optional[float] = None


def detect_file_type(file_path: str) -> Optional[str]:
    """Map a file name to the extractor that handles it.

    Returns:
        'python', 'javascript', 'typescript', 'php', 'c', 'cpp', 'css',
        'rust', 'go', or None when no extractor applies
    """
    lowered = file_path.lower()
    if lowered.endswith(".d.ts"):
        return "typescript"
    _, ext = os.path.splitext(lowered)
    return FILE_TYPES.get(ext)


def parse_source(source_code: str, grammar: str) -> tree_sitter.Tree:
    """Parse source code with the tree-sitter grammar of the given name.

    Raises:
        ValueError: If no grammar is loaded under that name
    """
    if grammar not in _LANGUAGES:
        raise ValueError(f"Unsupported grammar: {grammar}")

    parser = Parser()
    parser.language = _LANGUAGES[grammar]
    return parser.parse(bytes(source_code, "utf-8"))


def extract_references(
    file_path: str, content: str, file_type: Optional[str], project_root: str
) -> List[Reference]:
    """Find and resolve every dependency reference in ``content``.

    Args:
        file_path: Normalized absolute path of the file being analyzed
        content: File contents
        file_type: Result of detect_file_type (None yields no references)
        project_root: Root directory; resolved targets must lie inside it

    Returns:
        References in source order. ``resolved`` is None for unresolved ones.

    Raises:
        ParseFailure: If the file's syntax could not be processed at all
    """
    if file_type is None:
        return []

    handler = _EXTRACTORS.get(file_type)
    if handler is None:
        return []

    try:
        return handler(file_path, content, project_root)
    except ParseFailure:
        raise
    except Exception as e:
        raise ParseFailure(f"Could not extract dependencies: {e}", path=file_path) from e


def extract_file(file_path: str, project_root: str) -> Extraction:
    """Read one file from disk and extract its dependencies.

    Parse problems are logged and produce an empty dependency list.

    Raises:
        IOFailure: If the file cannot be stat'ed or read
    """
    try:
        stat = os.stat(file_path)
    except OSError as e:
        raise IOFailure(f"Cannot stat {file_path}: {e}", path=file_path) from e

    result = Extraction(last_modified=stat.st_mtime)
    file_type = detect_file_type(file_path)
    if file_type is None:
        return result

    if stat.st_size > MAX_PARSE_BYTES:
        logger.info("Skipping dependency extraction for large file %s (%d bytes)",
                    file_path, stat.st_size)
        return result

    try:
        with open(file_path, "r", encoding="utf-8", errors="replace") as f:
            content = f.read()
    except OSError as e:
        raise IOFailure(f"Cannot read {file_path}: {e}", path=file_path) from e

    try:
        references = extract_references(file_path, content, file_type, project_root)
    except ParseFailure as e:
        logger.warning("Dependency extraction failed for %s: %s", file_path, e)
        return result

    resolved = {r.resolved for r in references if r.resolved is not None}
    unresolved = {r.raw for r in references if r.resolved is None}
    result.dependencies = sorted(resolved)
    result.unresolved = sorted(unresolved)
    return result


# ---------------------------------------------------------------------------
# Resolution helpers
# ---------------------------------------------------------------------------

def _existing_file(candidate: str, project_root: str) -> Optional[str]:
    """Normalized path of ``candidate`` if it is a file inside the root."""
    try:
        normalized = normalize_path(candidate)
    except ValueError:
        return None
    if is_within(normalized, project_root) and os.path.isfile(normalized):
        return normalized
    return None


def _first_existing(candidates: List[str], project_root: str) -> Optional[str]:
    for candidate in candidates:
        found = _existing_file(candidate, project_root)
        if found:
            return found
    return None


def _line_of(content: str, offset: int) -> int:
    return content.count("\n", 0, offset) + 1


def _iter_nodes(root: tree_sitter.Node) -> Iterator[tree_sitter.Node]:
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


def _node_text(node: tree_sitter.Node) -> str:
    return node.text.decode("utf-8", errors="replace")


def _string_value(node: tree_sitter.Node) -> str:
    return _node_text(node).strip().strip("'\"`")


# ---------------------------------------------------------------------------
# Python
# ---------------------------------------------------------------------------

def resolve_python_module(
    module: str, file_path: str, project_root: str
) -> Optional[str]:
    """Resolve a (possibly relative) dotted module name to a source file.

    Relative modules climb from the importing file's package; absolute ones
    are looked up from the project root, a ``src/`` layout, and the importing
    file's own directory.
    """
    level = len(module) - len(module.lstrip("."))
    parts = [p for p in module[level:].split(".") if p]

    if level:
        base = os.path.dirname(file_path)
        for _ in range(level - 1):
            base = os.path.dirname(base)
        anchors = [base]
    else:
        anchors = [project_root, os.path.join(project_root, "src"), os.path.dirname(file_path)]

    for anchor in anchors:
        target = os.path.join(anchor, *parts) if parts else anchor
        candidates = [os.path.join(target, "__init__.py")]
        if parts:
            candidates = [target + ".py", target + ".pyi"] + candidates
        found = _first_existing(candidates, project_root)
        if found:
            return found
    return None


def _extract_python(file_path: str, content: str, project_root: str) -> List[Reference]:
    tree = parse_source(content, "python")
    references = []

    for node in _iter_nodes(tree.root_node):
        line = node.start_point[0] + 1

        if node.type == "import_statement":
            for name_node in node.children_by_field_name("name"):
                if name_node.type == "aliased_import":
                    name_node = name_node.child_by_field_name("name")
                if name_node is None:
                    continue
                module = _node_text(name_node)
                references.append(Reference(
                    raw=module,
                    kind="import",
                    line=line,
                    resolved=resolve_python_module(module, file_path, project_root),
                ))

        elif node.type == "import_from_statement":
            module_node = node.child_by_field_name("module_name")
            if module_node is None:
                continue
            module = _node_text(module_node).replace(" ", "")

            if module.strip("."):
                references.append(Reference(
                    raw=module,
                    kind="import",
                    line=line,
                    resolved=resolve_python_module(module, file_path, project_root),
                ))
                continue

            # from . import a, b: each name may be a submodule of the package
            package_init = resolve_python_module(module, file_path, project_root)
            names = node.children_by_field_name("name")
            if not names:
                references.append(Reference(
                    raw=module, kind="import", line=line, resolved=package_init
                ))
            for name_node in names:
                if name_node.type == "aliased_import":
                    name_node = name_node.child_by_field_name("name")
                if name_node is None:
                    continue
                submodule = module + _node_text(name_node)
                resolved = resolve_python_module(submodule, file_path, project_root)
                references.append(Reference(
                    raw=submodule,
                    kind="import",
                    line=line,
                    resolved=resolved or package_init,
                ))

    return references


# ---------------------------------------------------------------------------
# JavaScript / TypeScript
# ---------------------------------------------------------------------------

_JS_STATIC_RE = re.compile(
    r"""^\s*(?:import|export)\s+(?:type\s+)?(?:[\w*{}\s,$]+?\s+from\s+)?['"]([^'"\n]+)['"]""",
    re.MULTILINE,
)
_JS_CALL_RE = re.compile(r"""\b(require|import)\s*\(\s*['"]([^'"\n]+)['"]\s*\)""")


def resolve_js_specifier(
    specifier: str, file_path: str, project_root: str
) -> Optional[str]:
    """Resolve a relative or root-absolute module specifier.

    Probes the path as written, then with each JS/TS extension, then as a
    directory index. A ``.js`` specifier also matches a ``.ts``/``.tsx``
    sibling (TypeScript ESM convention). Bare package names return None.
    """
    if specifier.startswith("."):
        base = os.path.join(os.path.dirname(file_path), specifier)
    elif specifier.startswith("/"):
        base = os.path.join(project_root, specifier.lstrip("/"))
    else:
        return None

    candidates = [base]
    stem, ext = os.path.splitext(base)
    if ext in (".js", ".jsx", ".mjs", ".cjs"):
        candidates += [stem + ".ts", stem + ".tsx", stem + ".mts", stem + ".cts"]
    candidates += [base + e for e in JS_RESOLVE_EXTENSIONS]
    candidates += [os.path.join(base, "index" + e) for e in JS_RESOLVE_EXTENSIONS]
    return _first_existing(candidates, project_root)


def _extract_javascript(file_path: str, content: str, project_root: str) -> List[Reference]:
    tree = parse_source(content, "javascript")
    found: Dict[tuple, Reference] = {}

    def add(raw: str, kind: str, line: int) -> None:
        if raw and (raw, line) not in found:
            found[(raw, line)] = Reference(
                raw=raw,
                kind=kind,
                line=line,
                resolved=resolve_js_specifier(raw, file_path, project_root),
            )

    for node in _iter_nodes(tree.root_node):
        line = node.start_point[0] + 1

        if node.type in ("import_statement", "export_statement"):
            source = node.child_by_field_name("source")
            if source is not None:
                add(_string_value(source), "import", line)

        elif node.type == "call_expression":
            func = node.child_by_field_name("function")
            if func is None:
                continue
            if func.type == "import":
                kind = "import"
            elif func.type == "identifier" and _node_text(func) == "require":
                kind = "require"
            else:
                continue
            args = node.child_by_field_name("arguments")
            if args is None:
                continue
            for arg in args.children:
                if arg.type == "string":
                    add(_string_value(arg), kind, line)
                    break

    # The JS grammar chokes on some TypeScript-only syntax; fall back to
    # lexical matching so those files still yield their imports.
    if tree.root_node.has_error:
        for match in _JS_STATIC_RE.finditer(content):
            add(match.group(1), "import", _line_of(content, match.start(1)))
        for match in _JS_CALL_RE.finditer(content):
            add(match.group(2), match.group(1), _line_of(content, match.start(2)))

    return sorted(found.values(), key=lambda r: (r.line, r.raw))


# ---------------------------------------------------------------------------
# PHP
# ---------------------------------------------------------------------------

_PHP_INCLUDE_NODES = {
    "include_expression",
    "include_once_expression",
    "require_expression",
    "require_once_expression",
}


def _resolve_php_include(target: str, file_path: str, project_root: str) -> Optional[str]:
    if target.startswith(("http://", "https://")):
        return None
    relative = target.lstrip("/")
    return _first_existing([
        os.path.join(os.path.dirname(file_path), relative),
        os.path.join(project_root, relative),
    ], project_root)


def _resolve_php_namespace(name: str, project_root: str) -> Optional[str]:
    """PSR-4 style guess: Vendor\\Pkg\\Cls -> [src/]Pkg/Cls.php or Vendor/Pkg/Cls.php."""
    parts = [p for p in name.strip("\\").split("\\") if p]
    if not parts:
        return None
    candidates = [os.path.join(project_root, *parts) + ".php"]
    if len(parts) > 1:
        candidates += [
            os.path.join(project_root, "src", *parts[1:]) + ".php",
            os.path.join(project_root, "app", *parts[1:]) + ".php",
        ]
    return _first_existing(candidates, project_root)


def _extract_php(file_path: str, content: str, project_root: str) -> List[Reference]:
    tree = parse_source(content, "php")
    references = []

    for node in _iter_nodes(tree.root_node):
        line = node.start_point[0] + 1

        if node.type in _PHP_INCLUDE_NODES:
            kind = "require" if node.type.startswith("require") else "include"
            string_node = next(
                (n for n in _iter_nodes(node) if n.type in ("string", "encapsed_string")),
                None,
            )
            if string_node is None:
                # Fully dynamic include: keep it visible as unresolved
                references.append(Reference(raw=_node_text(node), kind=kind, line=line))
                continue
            target = _string_value(string_node)
            references.append(Reference(
                raw=target,
                kind=kind,
                line=line,
                resolved=_resolve_php_include(target, file_path, project_root),
            ))

        elif node.type == "namespace_use_clause":
            name = _node_text(node).split(" as ")[0].strip()
            references.append(Reference(
                raw=name,
                kind="use",
                line=line,
                resolved=_resolve_php_namespace(name, project_root),
            ))

    return references


# ---------------------------------------------------------------------------
# Lexical extractors
# ---------------------------------------------------------------------------

_C_INCLUDE_RE = re.compile(r'^[ \t]*#[ \t]*include[ \t]*([<"])([^>"\n]+)[>"]', re.MULTILINE)
_CSS_IMPORT_RE = re.compile(
    r"""@(import|use|forward)\s+(?:url\(\s*)?['"]?([^'")\s;]+)['"]?""", re.IGNORECASE
)
_RUST_MOD_RE = re.compile(
    r"^[ \t]*(?:pub(?:\([^)]*\))?[ \t]+)?mod[ \t]+([A-Za-z_]\w*)[ \t]*;", re.MULTILINE
)
_GO_IMPORT_BLOCK_RE = re.compile(r"^import\s*\(([^)]*)\)", re.MULTILINE)
_GO_IMPORT_LINE_RE = re.compile(r'^import\s+(?:[\w.]+\s+)?"([^"]+)"', re.MULTILINE)
_GO_QUOTED_RE = re.compile(r'"([^"]+)"')


def _extract_c(file_path: str, content: str, project_root: str) -> List[Reference]:
    references = []
    source_dir = os.path.dirname(file_path)
    for match in _C_INCLUDE_RE.finditer(content):
        delimiter, header = match.group(1), match.group(2).strip()
        candidates = [
            os.path.join(project_root, header),
            os.path.join(project_root, "include", header),
        ]
        if delimiter == '"':
            candidates.insert(0, os.path.join(source_dir, header))
        references.append(Reference(
            raw=header,
            kind="include",
            line=_line_of(content, match.start()),
            resolved=_first_existing(candidates, project_root),
        ))
    return references


def _extract_css(file_path: str, content: str, project_root: str) -> List[Reference]:
    references = []
    source_dir = os.path.dirname(file_path)
    for match in _CSS_IMPORT_RE.finditer(content):
        target = match.group(2)
        resolved = None
        if not re.match(r"^[a-z]+:", target, re.IGNORECASE):
            base = os.path.join(source_dir, target)
            head, tail = os.path.split(base)
            candidates = [base]
            for ext in (".scss", ".sass", ".css", ".less"):
                candidates += [base + ext, os.path.join(head, "_" + tail + ext)]
            resolved = _first_existing(candidates, project_root)
        references.append(Reference(
            raw=target,
            kind="import",
            line=_line_of(content, match.start()),
            resolved=resolved,
        ))
    return references


def _extract_rust(file_path: str, content: str, project_root: str) -> List[Reference]:
    references = []
    source_dir = os.path.dirname(file_path)
    stem = os.path.splitext(os.path.basename(file_path))[0]
    # Non-root modules own a directory named after themselves
    module_dir = source_dir if stem in ("mod", "lib", "main") else os.path.join(source_dir, stem)
    for match in _RUST_MOD_RE.finditer(content):
        name = match.group(1)
        references.append(Reference(
            raw=name,
            kind="mod",
            line=_line_of(content, match.start()),
            resolved=_first_existing([
                os.path.join(module_dir, name + ".rs"),
                os.path.join(module_dir, name, "mod.rs"),
            ], project_root),
        ))
    return references


def _extract_go(file_path: str, content: str, project_root: str) -> List[Reference]:
    # Go imports name packages (directories), never single files
    references = []
    for block in _GO_IMPORT_BLOCK_RE.finditer(content):
        for quoted in _GO_QUOTED_RE.finditer(block.group(1)):
            references.append(Reference(
                raw=quoted.group(1),
                kind="import",
                line=_line_of(content, block.start(1) + quoted.start()),
            ))
    for match in _GO_IMPORT_LINE_RE.finditer(content):
        references.append(Reference(
            raw=match.group(1), kind="import", line=_line_of(content, match.start())
        ))
    return references


_EXTRACTORS: Dict[str, Callable[[str, str, str], List[Reference]]] = {
    "python": _extract_python,
    "javascript": _extract_javascript,
    "typescript": _extract_javascript,
    "php": _extract_php,
    "c": _extract_c,
    "cpp": _extract_c,
    "css": _extract_css,
    "rust": _extract_rust,
    "go": _extract_go,
}
