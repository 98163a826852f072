import logging
import os
import shlex
import subprocess
from email.message import EmailMessage
from email.parser import BytesParser
from email.policy import default

logger = logging.getLogger(__name__)

# Maximum allowed size for uploaded recordings and scores (default 50 MB)
MAX_UPLOAD_SIZE = int(os.environ.get('MAX_UPLOAD_SIZE', 50 * 1024 * 1024))

SCAN_TIMEOUT = 30


class UploadError(ValueError):
    """Raised for a missing, oversized or rejected upload."""


def sanitize_name(name: str | None) -> str | None:
    """Return a sanitized file/display name or ``None`` if invalid."""
    name = (name or '').strip()
    if not name or '..' in name or '/' in name or '\\' in name:
        return None
    return name


def scan_for_viruses(file_bytes: bytes) -> bool:
    """Return ``True`` when ``file_bytes`` passes the ``AV_SCAN_CMD`` scanner.

    Without a configured scanner every upload passes.  A scanner that times
    out, cannot be started or exits non-zero rejects the upload."""
    cmd = os.environ.get('AV_SCAN_CMD')
    if not cmd:
        return True
    try:
        result = subprocess.run(shlex.split(cmd), input=file_bytes, capture_output=True, timeout=SCAN_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.error("Virus scan timed out after %s seconds", SCAN_TIMEOUT)
        return False
    except OSError:
        logger.exception("Virus scanner %r could not be run", cmd)
        return False
    if result.returncode:
        logger.warning("Virus scanner rejected upload (exit %s): %s", result.returncode,
                       (result.stdout or result.stderr or b'').decode(errors='replace').strip())
    return result.returncode == 0


def _form_parts(message: EmailMessage):
    for part in message.iter_parts():
        name = part.get_param('name', header='content-disposition')
        if part.get_content_disposition() == 'form-data' and name:
            yield name, part


def parse_multipart_form_data(data: bytes, content_type: str) -> tuple[dict, dict]:
    """Split a ``multipart/form-data`` body into text fields and uploaded files.

    Files are ``{"filename", "content_type", "content"}`` dicts keyed by field
    name.  An unparseable body gives two empty dicts."""
    envelope = f'Content-Type: {content_type}\r\n\r\n'.encode()
    try:
        message = BytesParser(policy=default).parsebytes(envelope + data)
    except (TypeError, ValueError):
        return {}, {}
    if not message.is_multipart():
        return {}, {}

    fields: dict[str, str] = {}
    files: dict[str, dict] = {}
    for name, part in _form_parts(message):
        content = part.get_payload(decode=True) or b''
        if part.get_filename() is None:
            fields[name] = content.decode(part.get_content_charset() or 'utf-8', errors='replace')
        else:
            files[name] = {
                'filename': part.get_filename(),
                'content_type': part.get_content_type(),
                'content': content,
            }
    return fields, files


def checked_upload(files: dict, name: str = 'file', max_size: int | None = None) -> dict:
    """Return the uploaded file ``name`` after size, name and virus checks."""
    upload = files.get(name)
    if not upload or not upload.get('content'):
        raise UploadError('Missing file')
    limit = MAX_UPLOAD_SIZE if max_size is None else max_size
    if len(upload['content']) > limit:
        raise UploadError('File too large')
    filename = sanitize_name(upload.get('filename'))
    if filename is None:
        raise UploadError('Invalid file name')
    if not scan_for_viruses(upload['content']):
        raise UploadError('File rejected by virus scan')
    return {**upload, 'filename': filename}
