"""Package registry router: upload, list, delete and serve SCORM packages."""

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.config import get_session
from app.exceptions import ValidationError
from app.repositories.package_repo import PackageRepository
from app.services.package_storage import PackageStorage
from app.utils.feature_flags import require_feature
from app.utils.settings import Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/packages", tags=["Packages"])

SCORM_VERSIONS = ("1.2", "2004", "unknown")


def get_storage(settings: Settings = Depends(get_settings)) -> PackageStorage:
    return PackageStorage(settings)


@router.post(
    "",
    status_code=201,
    summary="Upload SCORM Package",
    dependencies=[Depends(require_feature("package_upload"))],
)
async def upload_package(
    file: UploadFile = File(..., description="SCORM package (.zip)"),
    title: Optional[str] = Form(None),
    scormVersion: str = Form("unknown"),
    launchPath: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_session),
    storage: PackageStorage = Depends(get_storage),
) -> Dict[str, Any]:
    """Store, validate and extract a package, then register it.

    Anything that fails after the archive hit the disk removes the stored
    files again.
    """
    if scormVersion not in SCORM_VERSIONS:
        raise ValidationError(
            f"scormVersion must be one of {', '.join(SCORM_VERSIONS)}"
        )
    package_id = str(uuid.uuid4())
    logger.info(f"Starting package upload: {file.filename} -> {package_id}")
    archive = await storage.save_upload(file, package_id)
    try:
        storage.extract(archive, package_id)
        record = await PackageRepository(db).create(
            package_id=package_id,
            title=title or file.filename.rsplit(".", 1)[0],
            file_path=str(storage.package_dir(package_id)),
            file_size=archive.stat().st_size,
            scorm_version=scormVersion,
            launch_path=launchPath or "index.html",
            metadata={"originalFilename": file.filename},
        )
    except Exception:
        storage.remove(package_id)
        raise
    logger.info(f"Package upload completed successfully: {package_id}")
    return {"success": True, "package": record.to_dict()}


@router.get("", summary="List Packages")
async def list_packages(db: AsyncSession = Depends(get_session)):
    records = await PackageRepository(db).list()
    return [r.to_dict() for r in records]


@router.get("/{package_id}", summary="Get Package")
async def get_package(package_id: str, db: AsyncSession = Depends(get_session)):
    record = await PackageRepository(db).get(package_id)
    return record.to_dict()


@router.delete("/{package_id}", summary="Delete Package")
async def delete_package(
    package_id: str,
    db: AsyncSession = Depends(get_session),
    storage: PackageStorage = Depends(get_storage),
):
    """Delete a package with its sessions, records and interactions."""
    await PackageRepository(db).delete_record(package_id)
    storage.remove(package_id)
    logger.info(f"Deleted package {package_id}")
    return {"success": True, "deleted": package_id}


@router.get("/{package_id}/launch", summary="Launch URL")
async def launch_package(package_id: str, db: AsyncSession = Depends(get_session)):
    record = await PackageRepository(db).get(package_id)
    return {
        "packageId": record.id,
        "launchUrl": f"/api/v1/packages/{record.id}/content/{record.launch_path}",
        "scormVersion": record.scorm_version,
    }


@router.get("/{package_id}/content/{file_path:path}", summary="Serve Package Content")
async def serve_content(
    package_id: str,
    file_path: str,
    db: AsyncSession = Depends(get_session),
    storage: PackageStorage = Depends(get_storage),
) -> FileResponse:
    await PackageRepository(db).get(package_id)
    return FileResponse(storage.resolve_content(package_id, file_path))
