"""
Storage gateways for backup artifacts.

A gateway scopes every operation to a remote *folder* and exposes four
capabilities: verify folder access, list objects, delete an object and
upload an object.

Supports:
- S3Storage: folder is a key prefix inside an S3 bucket
- LocalStorage: folder is a subdirectory of a local base directory
"""

import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from .artifact import matches_mime_type


DEFAULT_PAGE_SIZE = 100


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class AccessError(StorageError):
    """Raised when the destination folder is missing or unreachable."""
    pass


class ListError(StorageError):
    """Raised when listing a folder fails."""
    pass


class UploadError(StorageError):
    """Raised when an upload fails."""
    pass


class DeleteError(StorageError):
    """Raised when deleting a remote object fails."""
    pass


@dataclass
class RemoteObject:
    """A previously uploaded artifact as seen by a gateway."""

    id: Optional[str]
    created_time: Optional[datetime]
    size: int = 0
    name: Optional[str] = None


class ObjectListing(list):
    """
    RemoteObjects from one listing page.

    truncated is set when the raw page was full before filtering, so more
    objects may exist past it.
    """

    def __init__(self, objects=(), truncated: bool = False):
        super().__init__(objects)
        self.truncated = truncated


def as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


def create_s3_client(config):
    """
    Build the authenticated S3 client once per process.

    Explicit credentials are used when configured, otherwise boto3 falls back
    to its default credential chain (environment, profile, instance role).

    Args:
        config: Config instance

    Returns:
        boto3 S3 client

    Raises:
        StorageError: If the client cannot be created
    """
    client_kwargs = {'region_name': config.S3_REGION}

    if config.S3_ENDPOINT_URL:
        client_kwargs['endpoint_url'] = config.S3_ENDPOINT_URL
    if config.AWS_ACCESS_KEY_ID and config.AWS_SECRET_ACCESS_KEY:
        client_kwargs['aws_access_key_id'] = config.AWS_ACCESS_KEY_ID
        client_kwargs['aws_secret_access_key'] = config.AWS_SECRET_ACCESS_KEY

    try:
        return boto3.client('s3', **client_kwargs)
    except (BotoCoreError, ValueError) as e:
        raise StorageError(f"Failed to initialize S3 client: {e}")


class S3Storage:
    """
    Gateway over an S3 bucket.

    Objects live directly under the folder prefix: {folder_id}/{filename}.
    The object key is the remote identifier.
    """

    def __init__(self, s3_client, bucket_name: str):
        """
        Initialize S3 storage gateway.

        Args:
            s3_client: Authenticated boto3 S3 client (see create_s3_client)
            bucket_name: S3 bucket name
        """
        self.s3_client = s3_client
        self.bucket_name = bucket_name

    @staticmethod
    def _folder_prefix(folder_id: str) -> str:
        folder = (folder_id or '').strip('/')
        return f"{folder}/" if folder else ''

    def verify_folder_access(self, folder_id: str) -> bool:
        """
        Confirm the bucket backing the folder exists and is reachable.

        Returns:
            True if access is confirmed

        Raises:
            AccessError: If the bucket is missing or access is denied
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('404', 'NoSuchBucket'):
                raise AccessError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code in ('403', 'AccessDenied'):
                raise AccessError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise AccessError(f"No access to folder {folder_id} ({error_code}): {e}")
        except BotoCoreError as e:
            raise AccessError(f"Failed to connect to S3: {e}")

    def list_objects(
        self,
        folder_id: str,
        mime_type: Optional[str] = None,
        created_before: Optional[datetime] = None,
        page_size: int = DEFAULT_PAGE_SIZE
    ) -> ObjectListing:
        """
        List objects in a folder, first page only.

        A single list_objects_v2 call is made with MaxKeys=page_size; the page
        is then filtered by mime type (artifact extension) and creation time.
        Further pages are never requested.

        Args:
            folder_id: Folder (key prefix)
            mime_type: Only return objects of this type
            created_before: Only return objects created strictly before this time
            page_size: Maximum number of keys to request

        Returns:
            ObjectListing; truncated mirrors IsTruncated

        Raises:
            ListError: If listing fails
        """
        prefix = self._folder_prefix(folder_id)
        cutoff = as_utc(created_before) if created_before else None

        try:
            response = self.s3_client.list_objects_v2(
                Bucket=self.bucket_name,
                Prefix=prefix,
                Delimiter='/',
                MaxKeys=page_size
            )
        except ClientError as e:
            raise ListError(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise ListError(f"Failed to list S3 objects: {e}")

        objects = ObjectListing(truncated=bool(response.get('IsTruncated')))
        for obj in response.get('Contents', []):
            key = obj.get('Key')
            name = key[len(prefix):] if key else None
            created_time = obj.get('LastModified')
            if created_time is not None:
                created_time = as_utc(created_time)

            if not matches_mime_type(name or '', mime_type):
                continue
            if cutoff is not None and (created_time is None or created_time >= cutoff):
                continue

            objects.append(RemoteObject(
                id=key,
                created_time=created_time,
                size=obj.get('Size', 0),
                name=name
            ))

        return objects

    def delete_object(self, object_id: str):
        """
        Delete an object from S3.

        Raises:
            DeleteError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=object_id
            )
        except ClientError as e:
            raise DeleteError(f"S3 delete failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise DeleteError(f"Failed to delete from S3: {e}")

    def upload_object(self, folder_id: str, filename: str, mime_type: str, stream: BinaryIO) -> str:
        """
        Upload a byte stream into the folder.

        boto3's transfer manager switches to multipart upload for large streams.

        Args:
            folder_id: Destination folder (key prefix)
            filename: Object name inside the folder
            mime_type: Content type stored with the object
            stream: Readable binary file object

        Returns:
            S3 key of the uploaded object

        Raises:
            UploadError: If upload fails
        """
        s3_key = f"{self._folder_prefix(folder_id)}{filename}"

        try:
            self.s3_client.upload_fileobj(
                stream,
                self.bucket_name,
                s3_key,
                ExtraArgs={'ContentType': mime_type}
            )
            return s3_key
        except ClientError as e:
            raise UploadError(f"S3 upload failed ({_error_code(e)}): {e}")
        except (BotoCoreError, S3UploadFailedError) as e:
            raise UploadError(f"S3 upload failed: {e}")


class LocalStorage:
    """
    Gateway over a local directory, e.g. a mounted network share.

    Folders are subdirectories of base_path: {base_path}/{folder_id}/{filename}.
    The remote identifier is the path relative to base_path.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage gateway.

        Args:
            base_path: Base directory holding the folders
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _folder_path(self, folder_id: str) -> Path:
        return self.base_path / (folder_id or '').strip('/')

    def verify_folder_access(self, folder_id: str) -> bool:
        """
        Confirm the folder directory exists.

        Raises:
            AccessError: If the folder is missing or not a directory
        """
        folder_path = self._folder_path(folder_id)
        if not folder_path.is_dir():
            raise AccessError(f"No access to folder: {folder_id} ({folder_path})")
        return True

    def list_objects(
        self,
        folder_id: str,
        mime_type: Optional[str] = None,
        created_before: Optional[datetime] = None,
        page_size: int = DEFAULT_PAGE_SIZE
    ) -> ObjectListing:
        """
        List files in a folder, first page (in name order) only.

        Creation time is the file's modification time. The listing is
        truncated when the folder holds more than page_size files.

        Raises:
            ListError: If listing fails
        """
        folder_path = self._folder_path(folder_id)
        cutoff = as_utc(created_before) if created_before else None

        try:
            files = sorted(p for p in folder_path.iterdir() if p.is_file())
            entries = files[:page_size]

            objects = ObjectListing(truncated=len(files) > page_size)
            for file_path in entries:
                stat = file_path.stat()
                created_time = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)

                if not matches_mime_type(file_path.name, mime_type):
                    continue
                if cutoff is not None and created_time >= cutoff:
                    continue

                objects.append(RemoteObject(
                    id=str(file_path.relative_to(self.base_path)),
                    created_time=created_time,
                    size=stat.st_size,
                    name=file_path.name
                ))

            return objects

        except OSError as e:
            raise ListError(f"Failed to list local folder {folder_id}: {e}")

    def delete_object(self, object_id: str):
        """
        Delete a file from local storage.

        Raises:
            DeleteError: If deletion fails
        """
        full_path = self.base_path / object_id

        try:
            full_path.unlink(missing_ok=True)
        except PermissionError as e:
            raise DeleteError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise DeleteError(f"Failed to delete local file: {e}")

    def upload_object(self, folder_id: str, filename: str, mime_type: str, stream: BinaryIO) -> str:
        """
        Copy a byte stream into the folder.

        mime_type is accepted for interface parity; the extension carries it.

        Returns:
            Path of the stored file relative to base_path

        Raises:
            UploadError: If the copy fails
        """
        dest_path = self._folder_path(folder_id) / filename

        try:
            with open(dest_path, 'wb') as dest:
                shutil.copyfileobj(stream, dest)
            return str(dest_path.relative_to(self.base_path))
        except PermissionError as e:
            raise UploadError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise UploadError(f"Failed to store {filename} locally: {e}")


def create_storage(config, s3_client=None):
    """
    Factory function to create the configured storage gateway.

    Args:
        config: Config instance
        s3_client: Optional pre-built S3 client (default: create_s3_client(config))

    Returns:
        S3Storage or LocalStorage instance

    Raises:
        ValueError: If STORAGE_BACKEND is invalid
    """
    if config.STORAGE_BACKEND == 's3':
        if s3_client is None:
            s3_client = create_s3_client(config)
        return S3Storage(s3_client, config.S3_BUCKET)
    elif config.STORAGE_BACKEND == 'local':
        return LocalStorage(config.LOCAL_STORAGE_DIR)
    else:
        raise ValueError(f"Invalid storage backend: {config.STORAGE_BACKEND}")
