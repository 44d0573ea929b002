"""
Package storage on local disk.

Uploaded archives are streamed to ``<STORAGE_DIR>/uploads`` and extracted to
``<STORAGE_DIR>/packages/<package id>``. The manifest is only checked for
presence; its contents are not interpreted.
"""

import logging
import shutil
import zipfile
from pathlib import Path, PurePosixPath
from typing import List

import aiofiles
from fastapi import UploadFile

from app.exceptions import CapacityError, NotFoundError, ValidationError
from app.utils.settings import Settings

logger = logging.getLogger(__name__)

MANIFEST_NAME = "imsmanifest.xml"
CHUNK_SIZE = 1024 * 1024  # 1MB


class PackageStorage:
    def __init__(self, settings: Settings):
        self.settings = settings

    def package_dir(self, package_id: str) -> Path:
        return self.settings.packages_dir / package_id

    async def save_upload(self, upload: UploadFile, package_id: str) -> Path:
        """Stream an upload to disk, enforcing ``MAX_PACKAGE_SIZE``."""
        if not upload.filename or not upload.filename.lower().endswith(".zip"):
            raise ValidationError("Only .zip SCORM packages are accepted")

        self.settings.uploads_dir.mkdir(parents=True, exist_ok=True)
        target = self.settings.uploads_dir / f"{package_id}.zip"
        size = 0
        try:
            async with aiofiles.open(target, "wb") as f:
                while True:
                    chunk = await upload.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > self.settings.max_package_size:
                        raise CapacityError(
                            f"Package exceeds maximum allowed size "
                            f"({self.settings.max_package_size} bytes)"
                        )
                    await f.write(chunk)
        except CapacityError:
            target.unlink(missing_ok=True)
            raise

        if size == 0:
            target.unlink(missing_ok=True)
            raise ValidationError("Empty files are not allowed")
        logger.info(f"Stored upload {upload.filename} as {target} ({size} bytes)")
        return target

    def extract(self, archive: Path, package_id: str) -> Path:
        """Validate and unpack an archive; returns the extraction directory."""
        try:
            with zipfile.ZipFile(archive) as zf:
                names = zf.namelist()
                self._check_members(names)
                destination = self.package_dir(package_id)
                destination.mkdir(parents=True, exist_ok=True)
                zf.extractall(destination)
        except zipfile.BadZipFile as e:
            raise ValidationError("Uploaded file is not a valid ZIP archive") from e
        logger.info(f"Extracted package {package_id} ({len(names)} entries)")
        return destination

    @staticmethod
    def _check_members(names: List[str]) -> None:
        if MANIFEST_NAME not in names:
            raise ValidationError(
                f"Package is missing {MANIFEST_NAME} at the archive root"
            )
        for name in names:
            member = PurePosixPath(name.replace("\\", "/"))
            if member.is_absolute() or ".." in member.parts:
                raise ValidationError(f"Unsafe path in package: {name}")

    def remove(self, package_id: str) -> None:
        shutil.rmtree(self.package_dir(package_id), ignore_errors=True)
        (self.settings.uploads_dir / f"{package_id}.zip").unlink(missing_ok=True)

    def resolve_content(self, package_id: str, relative_path: str) -> Path:
        """Map a content URL path onto an extracted file, refusing traversal."""
        root = self.package_dir(package_id).resolve()
        candidate = (root / relative_path).resolve()
        if not candidate.is_relative_to(root):
            raise ValidationError("Invalid content path")
        if not candidate.is_file():
            raise NotFoundError(f"File '{relative_path}' not found in package")
        return candidate
