import os, shutil, uuid
from localizer.core.config import get_settings

ALLOWED_EXT = {'.mp4', '.mov', '.avi', '.mkv', '.webm', '.m4v', '.mp3', '.wav', '.m4a'}


def ensure_upload_dir() -> str:
    upload_dir = get_settings().upload_dir
    os.makedirs(upload_dir, exist_ok=True)
    return upload_dir


def save_upload(file) -> tuple[str, str, int]:
    """Store an UploadFile under a random name; returns (stored name, path, size in bytes)."""
    upload_dir = ensure_upload_dir()
    ext = os.path.splitext(file.filename or '')[1].lower()
    if ext not in ALLOWED_EXT:
        raise ValueError(f"Unsupported file type: {ext or 'none'}")
    new_name = f"{uuid.uuid4().hex}{ext}"
    dest = os.path.join(upload_dir, new_name)
    with open(dest, 'wb') as f:
        shutil.copyfileobj(file.file, f)
    size = os.path.getsize(dest)
    limit = get_settings().max_upload_size_mb * 1024 * 1024
    if size > limit:
        os.remove(dest)
        raise ValueError(f"File too large: {size // (1024 * 1024)} MB (max {get_settings().max_upload_size_mb} MB)")
    return new_name, dest, size
