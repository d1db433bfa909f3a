"""
Path Utilities

Single resolve-and-validate primitive for every entry point that accepts a
user-supplied path.
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union
from urllib.parse import unquote

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _within(root: str, candidate: str) -> bool:
    return candidate == root or candidate.startswith(root + os.sep)


def resolve_within_root(root: PathLike,
                        path: str,
                        base: Optional[PathLike] = None) -> Optional[Path]:
    """
    Resolve a user-supplied path and confirm it stays inside root.

    The path is URL-decoded, joined to base (default: root) unless absolute,
    normalized, and checked. If it exists, it is resolved through symlinks
    and checked again, so a link pointing outside root is rejected.

    Args:
        root: Directory the path must stay within
        path: Raw path, possibly URL-encoded
        base: Directory relative paths are resolved against

    Returns:
        The validated absolute Path, or None if it escapes root
    """
    if not path:
        return None

    try:
        decoded = unquote(path)
    except (TypeError, ValueError):
        return None

    if '\x00' in decoded:
        return None

    real_root = os.path.realpath(str(root))
    norm_root = os.path.normpath(os.path.abspath(str(root)))
    start = str(base) if base else str(root)

    if os.path.isabs(decoded):
        candidate = os.path.normpath(decoded)
    else:
        candidate = os.path.normpath(os.path.join(os.path.abspath(start), decoded))

    if not (_within(norm_root, candidate) or _within(real_root, candidate)):
        logger.warning(f"Rejected path outside project: {path}")
        return None

    if os.path.lexists(candidate):
        try:
            resolved = str(Path(candidate).resolve(strict=True))
        except OSError:
            logger.warning(f"Rejected unresolvable path: {path}")
            return None
        if not _within(real_root, resolved):
            logger.warning(f"Rejected symlink escaping project: {path} -> {resolved}")
            return None

    return Path(candidate)
