from __future__ import annotations

import os
import tarfile
import zipfile
from typing import Any

from .errors import ValidationError
from .jobs import Job, JobManager
from .settings import Settings


def resolve_inside(root: str, rel_path: str) -> str:
    """Absolute path of ``rel_path`` under ``root``; rejects anything escaping it."""
    root_real = os.path.realpath(root)
    full = os.path.realpath(os.path.join(root_real, (rel_path or "").lstrip("/\\")))
    if full != root_real and not full.startswith(root_real + os.sep):
        raise ValidationError("Access denied: path is outside the server directory.")
    return full


def archive_format(path: str) -> str:
    lower = path.lower()
    if lower.endswith(".zip"):
        return "zip"
    if lower.endswith(".tar.gz") or lower.endswith(".tgz") or lower.endswith(".gz"):
        return "tar.gz"
    if lower.endswith(".tar"):
        return "tar"
    raise ValueError(f"Unsupported archive format: {os.path.basename(path)}")


def compress(root: str, rel_path: str, name: str | None = None) -> dict[str, Any]:
    target = resolve_inside(root, rel_path)
    if not os.path.exists(target):
        raise FileNotFoundError(f"{rel_path} does not exist")
    root_real = os.path.realpath(root)
    zip_name = name or f"{os.path.basename(target)}.zip"
    base_dir = root_real if target == root_real else os.path.dirname(target)
    zip_path = resolve_inside(root_real, os.path.relpath(os.path.join(base_dir, zip_name), root_real))

    with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED, compresslevel=6) as zf:
        if os.path.isdir(target):
            for dirpath, _dirnames, filenames in os.walk(target):
                for filename in sorted(filenames):
                    full = os.path.join(dirpath, filename)
                    if full == zip_path:
                        continue
                    zf.write(full, os.path.relpath(full, target))
        else:
            zf.write(target, os.path.basename(target))

    return {"filename": zip_name, "size": os.path.getsize(zip_path)}


def _check_members(dest: str, names: list[str]) -> None:
    for member in names:
        resolve_inside(dest, member)


def extract(root: str, rel_path: str, destination: str | None = None) -> dict[str, Any]:
    source = resolve_inside(root, rel_path)
    dest = resolve_inside(root, destination if destination else os.path.dirname(rel_path))
    fmt = archive_format(source)
    os.makedirs(dest, exist_ok=True)

    if fmt == "zip":
        with zipfile.ZipFile(source) as zf:
            _check_members(dest, zf.namelist())
            zf.extractall(dest)
    else:
        mode = "r:gz" if fmt == "tar.gz" else "r:"
        with tarfile.open(source, mode) as tf:
            members = tf.getmembers()
            _check_members(dest, [m.name for m in members])
            if hasattr(tarfile, "data_filter"):
                tf.extractall(dest, members=members, filter="data")
            else:
                tf.extractall(dest, members=members)

    return {"filename": os.path.basename(source)}


def submit_compress(jobs: JobManager, settings: Settings, workload_id: str, rel_path: str, name: str | None = None) -> Job:
    root = settings.server_data_dir(workload_id)
    resolve_inside(root, rel_path)
    return jobs.submit(workload_id, "compress", lambda: compress(root, rel_path, name))


def submit_extract(jobs: JobManager, settings: Settings, workload_id: str, rel_path: str, destination: str | None = None) -> Job:
    root = settings.server_data_dir(workload_id)
    resolve_inside(root, rel_path)
    if destination:
        resolve_inside(root, destination)
    return jobs.submit(workload_id, "extract", lambda: extract(root, rel_path, destination))
