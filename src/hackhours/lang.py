"""Language detection and project root resolution."""

from __future__ import annotations

import os

EXTENSION_MAP = {
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".js": "JavaScript",
    ".jsx": "JavaScript",
    ".mjs": "JavaScript",
    ".cjs": "JavaScript",
    ".py": "Python",
    ".go": "Go",
    ".rs": "Rust",
    ".java": "Java",
    ".kt": "Kotlin",
    ".c": "C",
    ".h": "C",
    ".cpp": "C++",
    ".hpp": "C++",
    ".cs": "C#",
    ".rb": "Ruby",
    ".php": "PHP",
    ".swift": "Swift",
    ".dart": "Dart",
    ".lua": "Lua",
    ".sh": "Shell",
    ".bash": "Shell",
    ".zsh": "Shell",
    ".ps1": "PowerShell",
    ".json": "JSON",
    ".yml": "YAML",
    ".yaml": "YAML",
    ".toml": "TOML",
    ".md": "Markdown",
    ".html": "HTML",
    ".css": "CSS",
    ".scss": "SCSS",
    ".less": "LESS",
    ".sql": "SQL",
}

UNKNOWN_LANGUAGE = "Other"


def detect_language(file_path: str) -> str:
    """Map a file's extension to a language name ('Other' if unknown)."""
    ext = os.path.splitext(file_path)[1].lower()
    return EXTENSION_MAP.get(ext, UNKNOWN_LANGUAGE)


def _is_within(path: str, directory: str) -> bool:
    if path == directory:
        return True
    # "/" already ends with a separator
    prefix = directory if directory.endswith(os.sep) else directory + os.sep
    return path.startswith(prefix)


def resolve_project_root(file_path: str, directories: list[str]) -> str:
    """Resolve the tracked directory a file belongs to.

    The deepest tracked directory containing the file wins. Files outside
    every tracked directory fall back to their containing directory.

    Args:
        file_path: Path of the touched file.
        directories: Tracked directories from the config.

    Returns:
        Absolute path of the project root.
    """
    normalized = os.path.abspath(file_path)
    matches = [
        root
        for root in (os.path.abspath(d) for d in directories)
        if _is_within(normalized, root)
    ]
    if not matches:
        return os.path.dirname(normalized)
    return max(matches, key=len)


def format_project_name(project_root: str) -> str:
    """Short display name for a project root (its basename, or the path for '/')."""
    return os.path.basename(project_root.rstrip(os.sep)) or project_root
