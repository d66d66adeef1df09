import asyncio
import base64
import logging
import mimetypes
import os
import re
import shutil
from datetime import datetime, timezone
from typing import Sequence

import aiofiles
import aiofiles.os
from pypdf import PdfReader

from remote_bridge.errors import (
    BridgeError,
    FileTooLargeError,
    NotFoundError,
    PathRejectedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

MAX_LIST_DEPTH = 3

_SEPARATORS = re.compile(r"[\\/]")


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _os_error(e: OSError) -> BridgeError:
    if isinstance(e, FileNotFoundError):
        return NotFoundError(str(e))
    return BridgeError(str(e))


def _is_within(path: str, root: str) -> bool:
    path = os.path.normcase(path)
    root = os.path.normcase(os.path.abspath(root))
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        return False  # different drives


def validate_path(path: str | None, allowed_roots: Sequence[str] = ()) -> str:
    """Resolve *path* to an absolute path or raise ``PathRejectedError``.

    Any ``..`` segment is refused whichever separator style it uses. When
    *allowed_roots* is non-empty the resolved path must sit inside one of them.
    """
    if not path or not isinstance(path, str):
        raise ValidationError("Path is required")
    if ".." in _SEPARATORS.split(path):
        raise PathRejectedError("Path traversal not allowed")

    resolved = os.path.abspath(path)
    if allowed_roots and not any(_is_within(resolved, root) for root in allowed_roots):
        raise PathRejectedError(f"Path outside allowed roots: {', '.join(allowed_roots)}")
    return resolved


async def read_file(target: str, encoding: str = "utf-8", max_size: int = 5 * 1024 * 1024) -> dict:
    try:
        size = (await aiofiles.os.stat(target)).st_size
    except OSError as e:
        raise _os_error(e)
    if await aiofiles.os.path.isdir(target):
        raise ValidationError(f"Not a file: {target}")
    if size > max_size:
        raise FileTooLargeError(
            f"File too large ({size / 1024 / 1024:.1f}MB). Max: {max_size / 1024 / 1024:.1f}MB."
        )

    mime, _ = mimetypes.guess_type(target)
    try:
        if encoding.lower() == "base64":
            async with aiofiles.open(target, "rb") as f:
                content = base64.b64encode(await f.read()).decode("ascii")
        elif mime == "application/pdf":
            # Extract text from PDFs so callers get something readable
            reader = await asyncio.to_thread(PdfReader, target)
            content = "\n".join(page.extract_text() or "" for page in reader.pages)
        else:
            async with aiofiles.open(target, "r", encoding=encoding, errors="replace") as f:
                content = await f.read()
    except LookupError:
        raise ValidationError(f"Unknown encoding: {encoding}")
    except OSError as e:
        raise _os_error(e)

    logger.info("File read %s (%d bytes)", target, size)
    return {"ok": True, "content": content, "size": size, "path": target}


async def write_file(target: str, content: str, create_dirs: bool = False) -> dict:
    existed = await aiofiles.os.path.exists(target)
    try:
        if create_dirs:
            await aiofiles.os.makedirs(os.path.dirname(target), exist_ok=True)
        async with aiofiles.open(target, "w", encoding="utf-8") as f:
            await f.write(content)
    except OSError as e:
        raise _os_error(e)

    logger.info("File written %s (%d chars, created=%s)", target, len(content), not existed)
    return {"ok": True, "path": target, "size": len(content), "created": not existed}


def _list_sync(directory: str, recursive: bool, depth: int = 0) -> list[dict]:
    entries = []
    for name in sorted(os.listdir(directory)):
        full_path = os.path.join(directory, name)
        try:
            file_stat = os.stat(full_path)
        except OSError:
            continue  # unreadable entry
        is_dir = os.path.isdir(full_path)
        entry = {
            "name": name,
            "path": full_path,
            "type": "directory" if is_dir else "file",
            "size": file_stat.st_size,
            "modified": _iso(file_stat.st_mtime),
        }
        if recursive and is_dir and depth < MAX_LIST_DEPTH:
            try:
                entry["children"] = _list_sync(full_path, recursive, depth + 1)
            except OSError:
                entry["children"] = []
        entries.append(entry)
    return entries


async def list_dir(target: str, recursive: bool = False) -> dict:
    if not await aiofiles.os.path.exists(target):
        raise NotFoundError(f"Directory not found: {target}")
    if not await aiofiles.os.path.isdir(target):
        raise ValidationError(f"Not a directory: {target}")
    try:
        entries = await asyncio.to_thread(_list_sync, target, recursive)
    except OSError as e:
        raise _os_error(e)

    logger.info("Directory listed %s (%d entries)", target, len(entries))
    return {"ok": True, "path": target, "entries": entries, "count": len(entries)}


async def delete_path(target: str, recursive: bool = False) -> dict:
    if not await aiofiles.os.path.exists(target):
        raise NotFoundError(f"Path not found: {target}")

    is_dir = await aiofiles.os.path.isdir(target)
    if is_dir and not recursive:
        raise ValidationError("Cannot delete directory without recursive: true")
    try:
        if is_dir:
            await asyncio.to_thread(shutil.rmtree, target)
        else:
            await aiofiles.os.remove(target)
    except OSError as e:
        raise _os_error(e)

    logger.info("Deleted %s", target)
    return {"ok": True, "path": target, "deleted": True}


async def file_info(target: str) -> dict:
    if not await aiofiles.os.path.exists(target):
        return {"ok": True, "path": target, "exists": False}
    try:
        file_stat = await aiofiles.os.stat(target)
    except OSError as e:
        raise _os_error(e)

    # st_birthtime only exists on some platforms; ctime is the closest stand-in.
    created = getattr(file_stat, "st_birthtime", file_stat.st_ctime)
    return {
        "ok": True,
        "path": target,
        "exists": True,
        "isFile": await aiofiles.os.path.isfile(target),
        "isDirectory": await aiofiles.os.path.isdir(target),
        "size": file_stat.st_size,
        "created": _iso(created),
        "modified": _iso(file_stat.st_mtime),
        "accessed": _iso(file_stat.st_atime),
    }


async def edit_file(target: str, search: str, replace: str, replace_all: bool = False) -> dict:
    if not await aiofiles.os.path.isfile(target):
        raise NotFoundError(f"File not found: {target}")
    try:
        async with aiofiles.open(target, "r", encoding="utf-8", errors="replace") as f:
            content = await f.read()
    except OSError as e:
        raise _os_error(e)

    if replace_all:
        replacements = content.count(search)
        content = content.replace(search, replace)
    else:
        replacements = 1 if search in content else 0
        content = content.replace(search, replace, 1)

    if replacements:
        try:
            async with aiofiles.open(target, "w", encoding="utf-8") as f:
                await f.write(content)
        except OSError as e:
            raise _os_error(e)

    logger.info("File edited %s (%d replacements)", target, replacements)
    return {"ok": True, "path": target, "replacements": replacements}
