import posixpath
import re
from pathlib import Path

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_.-]")
_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")


def sanitize_name(name: str) -> str:
    """Make a single Drive item name usable as one path segment.

    Drive allows ``/`` inside names, which would otherwise split the segment.
    """
    cleaned = name.replace("/", "_").replace("\\", "_").strip()
    if cleaned in ("", ".", ".."):
        return "_"
    return cleaned


def join_source_path(parent: str, name: str) -> str:
    segment = sanitize_name(name)
    return f"{parent}/{segment}" if parent else segment


def disambiguate_path(source_path: str, source_id: str) -> str:
    """Tag the final segment with the source id, keeping any extension.

    ``Photos/img.jpg`` becomes ``Photos/img (<source_id>).jpg``.
    """
    parent, _, name = source_path.rpartition("/")
    stem, ext = posixpath.splitext(name)
    tagged = f"{stem} ({sanitize_name(source_id)}){ext}"
    return f"{parent}/{tagged}" if parent else tagged


def destination_key(source_path: str, prefix: str = "") -> str:
    """Derive the archive object key for a cataloged source path."""
    relative = posixpath.normpath("/" + source_path.strip()).lstrip("/")
    if not relative or relative == ".":
        raise ValueError(f"Cannot derive a destination key from {source_path!r}")
    prefix = prefix.strip("/")
    return f"{prefix}/{relative}" if prefix else relative


def staging_path(temp_dir: Path, source_id: str) -> Path:
    """Return the per-record staging file, namespaced by the source id."""
    safe_id = _UNSAFE_ID_CHARS.sub("_", source_id)
    if not safe_id.strip("."):
        raise ValueError(f"Cannot derive a staging path from {source_id!r}")
    return temp_dir / safe_id


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in _BYTE_UNITS:
        if abs(value) < 1000 or unit == _BYTE_UNITS[-1]:
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.2f} {unit}"
        value /= 1000
    return f"{size} B"
