"""Archive extraction and reproducible packaging helpers for releasebox."""

import gzip
import hashlib
import io
import os
import shutil
import tarfile
import zipfile
from pathlib import Path
from typing import Dict, List

from releasebox.errors import ReleaseboxError


class ArchiveService:
    """Encapsulates safe archive extraction and deterministic tarball creation."""

    def is_within_dir(self, base_dir: Path, candidate: Path) -> bool:
        try:
            return os.path.commonpath([str(base_dir), str(candidate)]) == str(base_dir)
        except ValueError:
            return False

    def safe_extract(self, archive_path: str, destination_dir: str):
        lowered = archive_path.lower()
        if lowered.endswith(".zip"):
            self.safe_extract_zip(archive_path, destination_dir)
        elif lowered.endswith((".tar.gz", ".tgz")):
            self.safe_extract_tar(archive_path, destination_dir)
        else:
            raise ReleaseboxError(f"Unsupported archive format: {archive_path}")

    def safe_extract_zip(self, zip_path: str, destination_dir: str):
        base = Path(destination_dir).resolve()

        try:
            with zipfile.ZipFile(zip_path, "r") as zip_ref:
                for member in zip_ref.infolist():
                    normalized_name = member.filename.replace("\\", "/")
                    target_path = (base / normalized_name).resolve()

                    if not self.is_within_dir(base, target_path):
                        raise ReleaseboxError(
                            f"Unsafe ZIP entry detected: `{member.filename}`. "
                            "Archive extraction aborted to prevent path traversal."
                        )

                    file_type = (member.external_attr >> 16) & 0o170000
                    if file_type == 0o120000:
                        raise ReleaseboxError(
                            f"Unsafe ZIP entry detected: `{member.filename}` is a symbolic link."
                        )

                for member in zip_ref.infolist():
                    normalized_name = member.filename.replace("\\", "/")
                    target_path = (base / normalized_name).resolve()

                    if member.is_dir() or normalized_name.endswith("/"):
                        target_path.mkdir(parents=True, exist_ok=True)
                        continue

                    target_path.parent.mkdir(parents=True, exist_ok=True)
                    with zip_ref.open(member, "r") as src, open(target_path, "wb") as dst:
                        shutil.copyfileobj(src, dst)

                    mode = (member.external_attr >> 16) & 0o777
                    if mode:
                        os.chmod(target_path, mode)
        except zipfile.BadZipFile as exc:
            raise ReleaseboxError(f"Invalid ZIP archive: {zip_path}") from exc

    def safe_extract_tar(self, tar_path: str, destination_dir: str):
        base = Path(destination_dir).resolve()

        try:
            with tarfile.open(tar_path, "r:*") as tar_ref:
                members = tar_ref.getmembers()
                for member in members:
                    target_path = (base / member.name).resolve()
                    if not self.is_within_dir(base, target_path):
                        raise ReleaseboxError(
                            f"Unsafe TAR entry detected: `{member.name}`. "
                            "Archive extraction aborted to prevent path traversal."
                        )
                    if member.issym() or member.islnk():
                        raise ReleaseboxError(
                            f"Unsafe TAR entry detected: `{member.name}` is a link."
                        )
                    if not (member.isfile() or member.isdir()):
                        raise ReleaseboxError(
                            f"Unsupported TAR entry detected: `{member.name}` is not a file or directory."
                        )

                for member in members:
                    target_path = (base / member.name).resolve()
                    if member.isdir():
                        target_path.mkdir(parents=True, exist_ok=True)
                        continue

                    target_path.parent.mkdir(parents=True, exist_ok=True)
                    src = tar_ref.extractfile(member)
                    if src is None:
                        continue
                    with src, open(target_path, "wb") as dst:
                        shutil.copyfileobj(src, dst)
                    os.chmod(target_path, member.mode & 0o777)
        except tarfile.TarError as exc:
            raise ReleaseboxError(f"Invalid TAR archive: {tar_path}") from exc

    def flatten_single_wrapper(self, directory: str) -> str:
        """Return the real project root when an archive wraps it in one top-level folder."""
        items = [item for item in os.listdir(directory) if not item.startswith(".")]
        if len(items) == 1:
            candidate = os.path.join(directory, items[0])
            if os.path.isdir(candidate):
                return candidate
        return directory

    def create_reproducible_tarball(
        self,
        output_path: str,
        stem: str,
        files: Dict[str, str],
        mtime: int = 0,
    ):
        """Write ``files`` (archive name -> local path) below ``stem`` as a byte-stable tar.gz."""
        directory_set = {stem}
        for archive_name in files:
            parents = archive_name.split("/")[:-1]
            for depth in range(1, len(parents) + 1):
                directory_set.add("/".join([stem] + parents[:depth]))
        directories: List[str] = sorted(directory_set)

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w", format=tarfile.GNU_FORMAT) as tar_ref:
            for directory in directories:
                info = self._tar_info(directory, mtime)
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar_ref.addfile(info)

            for archive_name in sorted(files):
                local_path = files[archive_name]
                info = self._tar_info(f"{stem}/{archive_name}", mtime)
                info.size = os.path.getsize(local_path)
                info.mode = 0o755 if os.access(local_path, os.X_OK) else 0o644
                with open(local_path, "rb") as file_obj:
                    tar_ref.addfile(info, file_obj)

        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        with open(output_path, "wb") as raw:
            with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
                gz.write(buffer.getvalue())

    @staticmethod
    def _tar_info(name: str, mtime: int) -> tarfile.TarInfo:
        info = tarfile.TarInfo(name)
        info.mtime = mtime
        info.uid = 0
        info.gid = 0
        info.uname = ""
        info.gname = ""
        return info

    @staticmethod
    def sha256_file(path: str) -> str:
        hasher = hashlib.sha256()
        with open(path, "rb") as file_obj:
            for chunk in iter(lambda: file_obj.read(65536), b""):
                hasher.update(chunk)
        return hasher.hexdigest()
