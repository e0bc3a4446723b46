"""Filename and folder sanitizing for the mounted storage root."""

import posixpath
import re

from furvino_ingest.core.exceptions import InvalidTargetFolderError

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_filename(filename: str) -> str:
    """Reduce a client-supplied filename to a safe basename.

    Directory components are dropped and every character outside
    ``[a-zA-Z0-9._-]`` becomes an underscore, so ``"Game Setup.exe"`` turns
    into ``"Game_Setup.exe"``.
    """
    base = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = _UNSAFE_FILENAME_CHARS.sub("_", base)[:255]
    if safe.strip(".") == "":
        return "unnamed"
    return safe


def normalize_target_folder(folder: str) -> str:
    """Normalize a folder relative to the storage prefix.

    Backslashes are treated as separators, redundant segments are collapsed,
    and leading/trailing slashes are removed. Anything that still climbs out
    of the root after normalization is rejected.

    Raises:
        InvalidTargetFolderError: If the folder escapes the storage root
    """
    normalized = posixpath.normpath(folder.replace("\\", "/"))
    if normalized == ".." or normalized.startswith("../"):
        raise InvalidTargetFolderError(f"Invalid targetFolder path: {folder!r}")
    normalized = normalized.strip("/")
    if normalized == ".":
        return ""
    if ".." in normalized.split("/"):
        raise InvalidTargetFolderError(f"Invalid targetFolder path: {folder!r}")
    return normalized


def split_path(path: str) -> list[str]:
    """Split a slash separated path into its non-empty segments."""
    return [part for part in path.replace("\\", "/").split("/") if part]
