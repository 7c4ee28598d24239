# uploads.py

import shutil
import time
from pathlib import Path

from fastapi import UploadFile

URL_PREFIX = "/uploads"


def save_upload(file: UploadFile, upload_dir: str) -> str:
    """ Store an uploaded file as <epoch-ms>-<original name> and return its public path. """
    directory = Path(upload_dir)
    directory.mkdir(parents=True, exist_ok=True)

    # only keep the base name so a client can't write outside the upload directory
    original_name = Path(file.filename or "upload").name
    filename = f"{int(time.time() * 1000)}-{original_name}"

    with open(directory / filename, "wb") as destination:
        shutil.copyfileobj(file.file, destination)
    return f"{URL_PREFIX}/{filename}"
