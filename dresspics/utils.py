"""Small path helpers shared by the optimiser and the template rewriter."""

from pathlib import Path

# Transient and editor artefacts to ignore
TRANSIENT_SUFFIXES = {".swp", ".tmp", ".bak"}


def is_transient(p: Path) -> bool:
    n = p.name
    return (
        n.startswith(".#")         # Emacs lockfiles
        or n.endswith("~")         # backup files
        or n == ".DS_Store"
        or p.suffix.lower() in TRANSIENT_SUFFIXES
    )
