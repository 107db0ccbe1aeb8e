import os
from pathlib import Path
from uuid import uuid4

from django.conf import settings
from django.core.exceptions import SuspiciousFileOperation
from django.utils.text import get_valid_filename


def stage_upload(djangofile) -> str:
    """
    Stream an uploaded file to MEDIA_ROOT/uploads/<uuid>_<safe name> and
    return its path relative to MEDIA_ROOT (POSIX form, stored on the Job).
    """
    uploads_dir = Path(settings.MEDIA_ROOT) / "uploads"
    uploads_dir.mkdir(parents=True, exist_ok=True)
    try:
        name = get_valid_filename(os.path.basename(djangofile.name))
    except SuspiciousFileOperation:
        name = "upload"
    dest = uploads_dir / f"{uuid4().hex}_{name}"
    with open(dest, "wb") as f:
        for chunk in djangofile.chunks():
            f.write(chunk)
    return dest.relative_to(settings.MEDIA_ROOT).as_posix()
