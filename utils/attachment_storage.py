"""Validation and durable storage for complaint media attachments."""
import io
import os
import uuid
from typing import Iterable, List, Tuple

from PIL import Image, UnidentifiedImageError
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from utils.errors import InternalError, ValidationError

IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "webp", "gif"}
VIDEO_EXTENSIONS = {"mp4", "mov", "webm"}
ALLOWED_ATTACHMENT_EXTENSIONS = IMAGE_EXTENSIONS | VIDEO_EXTENSIONS
DEFAULT_MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024  # 10 MiB
PUBLIC_URL_PREFIX = "/uploads/complaints"

_MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "webm": "video/webm",
}


def _fail_if(condition: bool, message: str, **details) -> None:
    if condition:
        raise ValidationError(message, **details)


def mime_type_for(name: str) -> str:
    ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    return _MIME_TYPES.get(ext, "application/octet-stream")


def read_attachment(file: FileStorage, max_bytes: int = DEFAULT_MAX_ATTACHMENT_BYTES) -> Tuple[bytes, str]:
    """Return (content, extension) for an upload, or raise ValidationError."""
    _fail_if(not file, "No file provided")
    filename = secure_filename(file.filename or "")
    _fail_if(not filename or "." not in filename, "Unsupported file name", filename=file.filename)
    ext = filename.rsplit(".", 1)[1].lower()
    _fail_if(ext not in ALLOWED_ATTACHMENT_EXTENSIONS, "File type not allowed", filename=filename)

    file.stream.seek(0, os.SEEK_END)
    size = file.stream.tell()
    file.stream.seek(0)
    _fail_if(size == 0, "Empty file", filename=filename)
    _fail_if(size > max_bytes, "File size too large", filename=filename, limit_bytes=max_bytes)

    content = file.read()
    _fail_if(len(content) > max_bytes, "File size too large", filename=filename, limit_bytes=max_bytes)

    if ext in IMAGE_EXTENSIONS:
        try:
            with Image.open(io.BytesIO(content)) as img:
                img.verify()
        except (UnidentifiedImageError, OSError, SyntaxError) as exc:
            raise ValidationError("Invalid image data", filename=filename) from exc

    file.stream.seek(0)
    return content, ext


def validate_attachments(files: Iterable[FileStorage], max_bytes: int = DEFAULT_MAX_ATTACHMENT_BYTES) -> List[Tuple[bytes, str]]:
    """Validate every upload before any is written; one bad file rejects the batch."""
    return [read_attachment(f, max_bytes=max_bytes) for f in files if f is not None]


def store_attachment(content: bytes, extension: str, upload_dir: str) -> str:
    """Write bytes under a unique generated name and return the public reference URL."""
    try:
        os.makedirs(upload_dir, exist_ok=True)
        safe_name = secure_filename(f"{uuid.uuid4().hex}.{extension}")
        path = os.path.join(upload_dir, safe_name)
        with open(path, "wb") as f:
            f.write(content)
    except OSError as exc:
        raise InternalError("Attachment storage failed") from exc
    return f"{PUBLIC_URL_PREFIX}/{safe_name}"


def persist_attachments(files: Iterable[FileStorage], upload_dir: str, max_bytes: int = DEFAULT_MAX_ATTACHMENT_BYTES) -> List[str]:
    validated = validate_attachments(files, max_bytes=max_bytes)
    return [store_attachment(content, ext, upload_dir) for content, ext in validated]


def resolve_stored_path(name: str, upload_dir: str) -> str | None:
    """Map a stored file name back to an absolute path inside `upload_dir`, or None."""
    safe_name = secure_filename(name or "")
    if not safe_name or safe_name != name:
        return None
    abs_root = os.path.abspath(upload_dir)
    abs_path = os.path.abspath(os.path.join(abs_root, safe_name))
    if not abs_path.startswith(abs_root + os.sep) or not os.path.isfile(abs_path):
        return None
    return abs_path
