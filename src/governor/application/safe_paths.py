from pathlib import Path

from ..errors import UnsafePathError

FORBIDDEN_COMPONENTS = {".git", ".env", ".ssh"}


def normalize_rel_path(p: str) -> str:
    return p.replace("\\", "/")


def safe_resolve(root: Path, rel_path: str) -> Path:
    # Normalize root to avoid false "escape" on platforms where `resolve()`
    # canonicalizes paths (e.g., macOS /var -> /private/var).
    root = root.resolve()
    rel_path = normalize_rel_path(rel_path)
    if rel_path.startswith("/") or Path(rel_path).is_absolute():
        raise UnsafePathError(f"Absolute paths not allowed: {rel_path}")
    p = (root / rel_path).resolve()
    if root == p or root not in p.parents:
        raise UnsafePathError(f"Refusing to write outside project root: {rel_path}")
    for part in p.relative_to(root).parts:
        if part in FORBIDDEN_COMPONENTS:
            raise UnsafePathError(f"Forbidden path component: {part}")
    return p


def is_inside_root(root: Path, target: Path) -> bool:
    root = root.resolve()
    target = target.resolve()
    return target != root and root in target.parents
