# services/storage.py
"""
Local object storage with bucket directories and public URLs
"""

import logging
import mimetypes
import os
from typing import Optional

from werkzeug.utils import secure_filename

from core.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

BUCKETS = ('images', 'partner-logos', 'documents')
IMAGE_BUCKETS = ('images', 'partner-logos')
IMAGE_TYPES = ('image/jpeg', 'image/png', 'image/gif', 'image/webp', 'image/svg+xml')


class ObjectStorage:
    """
    Args:
        root: Directory holding one sub-directory per bucket
        public_url: URL prefix objects are served under
    """

    def __init__(self, root: str, public_url: str = '/storage/v1/object/public'):
        self.root = os.path.abspath(root)
        self.public_url = public_url.rstrip('/')

    def _resolve(self, bucket: str, path: str) -> str:
        if bucket not in BUCKETS:
            raise ValidationError(f'Unknown bucket: {bucket}')

        parts = [part for part in (path or '').replace('\\', '/').split('/') if part]
        if not parts or any(part in ('.', '..') for part in parts):
            raise ValidationError('Invalid object path')
        parts = [secure_filename(part) for part in parts]
        if not all(parts):
            raise ValidationError('Invalid object path')

        bucket_root = os.path.join(self.root, bucket)
        full_path = os.path.abspath(os.path.join(bucket_root, *parts))
        if os.path.commonpath([bucket_root, full_path]) != bucket_root:
            raise ValidationError('Invalid object path')
        return full_path

    def object_path(self, bucket: str, path: str) -> str:
        """Normalized bucket-relative path as stored"""
        full_path = self._resolve(bucket, path)
        return os.path.relpath(full_path, os.path.join(self.root, bucket)).replace(os.sep, '/')

    def upload(self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None,
               upsert: bool = False) -> str:
        """
        Store an object

        Raises:
            ValidationError: bad bucket/path, non-image in an image bucket, or
                an existing object without upsert

        Returns:
            The stored bucket-relative path
        """
        content_type = content_type or mimetypes.guess_type(path)[0] or 'application/octet-stream'
        if bucket in IMAGE_BUCKETS and content_type not in IMAGE_TYPES:
            raise ValidationError(f'Unsupported image type: {content_type}')

        full_path = self._resolve(bucket, path)
        if os.path.exists(full_path) and not upsert:
            raise ValidationError('Object already exists')

        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, 'wb') as handle:
            handle.write(data)

        stored = self.object_path(bucket, path)
        logger.info(f"Stored {bucket}/{stored} ({len(data)} bytes)")
        return stored

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_url}/{bucket}/{self.object_path(bucket, path)}"

    def open(self, bucket: str, path: str) -> str:
        """Filesystem path of an existing object"""
        full_path = self._resolve(bucket, path)
        if not os.path.isfile(full_path):
            raise NotFoundError('Object not found')
        return full_path

    def remove(self, bucket: str, path: str) -> None:
        os.remove(self.open(bucket, path))
