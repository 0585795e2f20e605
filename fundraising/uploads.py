import logging
import os
import uuid
from typing import Optional

from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {'jpg', 'jpeg', 'png', 'gif', 'webp', 'pdf'}


def allowed_file(filename: str) -> bool:
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def save_payment_proof(file: Optional[FileStorage], upload_folder: str, max_bytes: int) -> Optional[str]:
    """
    Store an uploaded payment proof and return its file name.

    Returns None when no file was sent. Raises ValueError for a disallowed
    type or an oversize file.
    """
    if file is None or not file.filename:
        return None

    if not allowed_file(file.filename):
        raise ValueError("Proof must be an image (JPG, PNG, GIF, WEBP) or a PDF")

    file.stream.seek(0, os.SEEK_END)
    size = file.stream.tell()
    file.stream.seek(0)
    if size > max_bytes:
        raise ValueError(f"Proof file is too large (max {max_bytes // (1024 * 1024)} MB)")

    os.makedirs(upload_folder, exist_ok=True)
    filename = f"{uuid.uuid4().hex}_{secure_filename(file.filename)}"
    file.save(os.path.join(upload_folder, filename))
    logger.info(f"Saved payment proof {filename} ({size} bytes)")
    return filename
