"""Builds codebase context for generator prompts."""

import os
import tomllib

SKIP_DIRS = (".git", "__pycache__", "node_modules", ".venv", "venv", "dist", "build", ".mypy_cache")
GUIDE_FILES = ("CLAUDE.md", "AGENTS.md", "README.md")


class ContextManager:
    """Summarizes a checkout so the generator starts with some orientation."""

    def __init__(self, max_guide_chars: int = 2000, max_entries: int = 50) -> None:
        self.max_guide_chars = max_guide_chars
        self.max_entries = max_entries

    @staticmethod
    def build_file_manifest(project_dir: str, max_entries: int = 200) -> str:
        """Walk project dir, return file listing with first-line hints.

        Skips VCS, cache and dependency directories. Format per line:
            path/to/file.py  # first line of file
        """
        entries: list[str] = []
        total = 0
        for root, dirs, files in os.walk(project_dir):
            dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS)
            for fname in sorted(files):
                total += 1
                if len(entries) >= max_entries:
                    continue
                full = os.path.join(root, fname)
                rel = os.path.relpath(full, project_dir).replace("\\", "/")
                entries.append(f"{rel}{_first_line_hint(full)}")
        if total > len(entries):
            entries.append(f"(and {total - len(entries)} more...)")
        return "\n".join(entries)

    def read_guide(self, repo_path: str) -> str:
        """Return the first guide document found, capped, with its name as a heading."""
        for name in GUIDE_FILES:
            path = os.path.join(repo_path, name)
            if not os.path.isfile(path):
                continue
            try:
                with open(path, "r", encoding="utf-8", errors="replace") as f:
                    text = f.read(self.max_guide_chars)
            except OSError:
                continue
            return f"### {name}\n{text}"
        return ""

    @staticmethod
    def read_project_info(repo_path: str) -> str:
        """Summarize pyproject.toml metadata, if present."""
        path = os.path.join(repo_path, "pyproject.toml")
        if not os.path.isfile(path):
            return ""
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError):
            return ""
        project = data.get("project", {})
        deps = [d.split(";")[0].strip() for d in project.get("dependencies", [])][:10]
        scripts = list(project.get("scripts", {}))
        return (
            "### Package Info\n"
            f"- Name: {project.get('name', 'unknown')}\n"
            f"- Scripts: {', '.join(scripts) or 'none'}\n"
            f"- Main deps: {', '.join(deps) or 'none'}"
        )

    def build_codebase_context(self, repo_path: str) -> str:
        sections = [self.read_guide(repo_path)]
        manifest = self.build_file_manifest(repo_path, max_entries=self.max_entries)
        if manifest:
            sections.append(f"### Files\n```\n{manifest}\n```")
        sections.append(self.read_project_info(repo_path))
        return "\n\n".join(s for s in sections if s) or "No codebase context available"


def _first_line_hint(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            first = f.readline().strip()
    except OSError:
        return ""
    return f"  # {first[:80]}" if first else ""
