from typing import Any, Dict, List, Mapping


def flatten_files_map(files: Any) -> Dict[str, str]:
    """
    Flatten an accidentally nested files map into filename -> content.

    {"main": {"js": "..."}, "c": "y"}  ->  {"main.js": "...", "c": "y"}

    Leaves that are not strings (numbers, nulls, ...) are dropped; an
    already-flat map comes back unchanged.
    """
    out: Dict[str, str] = {}

    def walk(node: Any, prefix: List[str]) -> None:
        if isinstance(node, str):
            out[".".join(prefix)] = node
        elif isinstance(node, Mapping):
            for key, value in node.items():
                walk(value, prefix + [str(key)])

    if isinstance(files, Mapping):
        for key, value in files.items():
            walk(value, [str(key)])
    return out


def is_malformed(files: Any) -> bool:
    """True when any immediate value is a nested map instead of content."""
    if not isinstance(files, Mapping):
        return False
    return any(isinstance(v, Mapping) for v in files.values())


def guess_editor_language(filename: str) -> str:
    f = filename.lower()
    if f.endswith((".ts", ".tsx")):
        return "typescript"
    if f.endswith((".js", ".jsx")):
        return "javascript"
    if f.endswith(".json"):
        return "json"
    if f.endswith(".css"):
        return "css"
    if f.endswith(".html"):
        return "html"
    if f.endswith(".md"):
        return "markdown"
    return "javascript"
