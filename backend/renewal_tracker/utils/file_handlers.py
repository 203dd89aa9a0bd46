import os
from pathlib import Path
from typing import Tuple

import magic
from fastapi import HTTPException, UploadFile, status
from loguru import logger

from ..config import CONTRACTS_DIR, settings
from ..services.constants import ALLOWED_MIME_PREFIXES


def file_extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower().lstrip('.')


def detect_mime_type(content: bytes) -> str:
    mime = magic.Magic(mime=True)
    return mime.from_buffer(content[:2048])


async def read_validated_upload(upload_file: UploadFile) -> Tuple[bytes, str]:
    """Read an uploaded contract, checking its extension, size and MIME type."""
    try:
        file_ext = file_extension(upload_file.filename)
        if file_ext not in settings.ALLOWED_EXTENSIONS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"File type '{file_ext}' not allowed. Allowed types: {', '.join(sorted(settings.ALLOWED_EXTENSIONS))}"
            )

        content = await upload_file.read()
        if not content:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty")
        if len(content) > settings.MAX_CONTENT_LENGTH:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"File exceeds the {settings.MAX_CONTENT_LENGTH // (1024 * 1024)}MB limit"
            )

        mime_type = detect_mime_type(content)
        if not mime_type.startswith(ALLOWED_MIME_PREFIXES):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unsupported file type: {mime_type}"
            )

        return content, file_ext

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error reading upload '{upload_file.filename}': {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Error reading file: {str(e)}"
        )
    finally:
        await upload_file.close()


def save_contract_file(content: bytes, contract_id: str, file_ext: str, directory: Path = CONTRACTS_DIR) -> str:
    """Store an uploaded contract under its id and return the path"""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    file_path = directory / f"{contract_id}.{file_ext}"
    with open(file_path, "wb") as f:
        f.write(content)
    return str(file_path)


def cleanup_file(file_path: str) -> None:
    """Remove a stored file"""
    try:
        if file_path and os.path.exists(file_path):
            os.remove(file_path)
    except OSError as e:
        logger.warning(f"Error cleaning up file {file_path}: {e}")
