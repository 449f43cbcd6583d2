"""File attachments embedded inline in user messages."""

import base64
import logging
from pathlib import Path

from puppet.errors import ValidationError
from puppet.message import InlineDataPart

logger = logging.getLogger(__name__)

MIME_TYPES = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "pdf": "application/pdf",
}


def mime_type_for(path: str | Path) -> str:
    """Map a file extension to its MIME type.

    Raises:
        ValidationError: The file has no extension, or one that is not
            supported.
    """
    path = Path(path)
    extension = path.suffix[1:]
    if not extension:
        raise ValidationError(f"file must have extension, path={path}")
    mime_type = MIME_TYPES.get(extension.lower())
    if mime_type is None:
        raise ValidationError(f"not supported extension, path={path}")
    return mime_type


def load_attachment(path: str | Path) -> InlineDataPart:
    """Read *path* and return it as a base64 inline content part."""
    path = Path(path)
    mime_type = mime_type_for(path)
    try:
        content = path.read_bytes()
    except OSError as e:
        raise ValidationError(f"can not read file, path={path}, error={e}") from e
    logger.info(f"file attached, mime_type={mime_type}, path={path}")
    return InlineDataPart(
        mime_type=mime_type,
        data=base64.b64encode(content).decode("ascii"),
    )


def data_url(path: str | Path) -> str:
    """``data:<mime>;base64,<data>`` URI for *path*."""
    return load_attachment(path).data_url
