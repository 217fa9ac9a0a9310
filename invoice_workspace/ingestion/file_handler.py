"""Object storage file handler - local storage with optional Azure Blob Storage"""

import asyncio
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import Awaitable, Callable, List, Optional
import logging

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobSasPermissions, BlobServiceClient, generate_blob_sas

from invoice_workspace.config import settings

logger = logging.getLogger(__name__)

# Receives (transferred_bytes, total_bytes)
ProgressCallback = Callable[[int, Optional[int]], Awaitable[None]]

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


@dataclass
class StoredFile:
    """A stored object as returned by list()"""
    path: str
    size: Optional[int] = None
    last_modified: Optional[datetime] = None


def identity_prefix(identity_id: str) -> str:
    """Root path of everything stored for one identity"""
    if not identity_id:
        raise ValueError("User not authenticated")
    return f"{settings.STORAGE_ROOT_PREFIX}/{identity_id}/"


def source_file_path(identity_id: str, file_name: str, timestamp_ms: Optional[int] = None) -> str:
    """Storage path for an uploaded tabular file"""
    timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    return f"{identity_prefix(identity_id)}{timestamp_ms}-{file_name}"


def pdf_attachment_prefix(identity_id: str) -> str:
    """Subtree holding every PDF attachment of an identity"""
    return f"{identity_prefix(identity_id)}invoices/"


def pdf_file_path(identity_id: str, invoice_record_id: str, file_name: str, timestamp_ms: Optional[int] = None) -> str:
    """Storage path for a PDF attached to an invoice record"""
    timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    sanitized = _UNSAFE_NAME_CHARS.sub("_", file_name)
    return f"{pdf_attachment_prefix(identity_id)}{invoice_record_id}/{timestamp_ms}-{sanitized}"


def display_name(path: str) -> str:
    """Last path component, as shown to the user"""
    return path.rsplit("/", 1)[-1] or path


class FileHandler:
    """Object storage - local filesystem or Azure Blob Storage"""

    def __init__(
        self,
        storage_path: Optional[str] = None,
        use_azure: Optional[bool] = None,
        container_name: Optional[str] = None
    ):
        """
        Initialize file handler

        Args:
            storage_path: Local storage root (defaults to settings.LOCAL_STORAGE_PATH)
            use_azure: Whether to use Azure Blob Storage (defaults to settings.USE_AZURE_STORAGE)
            container_name: Azure container (defaults to settings.AZURE_STORAGE_CONTAINER)
        """
        self.use_azure = settings.USE_AZURE_STORAGE if use_azure is None else use_azure
        self.container_name = container_name or settings.AZURE_STORAGE_CONTAINER

        if not self.use_azure:
            self.storage_path = Path(storage_path or settings.LOCAL_STORAGE_PATH)
            self.storage_path.mkdir(parents=True, exist_ok=True)
            logger.info(f"Using local storage at: {self.storage_path}")
        else:
            connection_string = settings.AZURE_STORAGE_CONNECTION_STRING
            if connection_string:
                self.blob_service_client = BlobServiceClient.from_connection_string(
                    connection_string
                )
            elif settings.AZURE_STORAGE_ACCOUNT_NAME:
                account_url = f"https://{settings.AZURE_STORAGE_ACCOUNT_NAME}.blob.core.windows.net"
                self.blob_service_client = BlobServiceClient(
                    account_url=account_url,
                    credential=DefaultAzureCredential()
                )
            else:
                raise ValueError("Azure storage credentials not configured")

            self.container_client = self.blob_service_client.get_container_client(self.container_name)
            self._ensure_container_exists()
            logger.info(f"Using Azure Blob Storage container '{self.container_name}'")

    def _ensure_container_exists(self):
        """Ensure Azure container exists"""
        try:
            self.container_client.create_container()
            logger.info(f"Created container '{self.container_name}'")
        except ResourceExistsError:
            pass

    def _local_path(self, path: str) -> Path:
        """Resolve a storage path under the local root, refusing escapes"""
        parts = PurePosixPath(path).parts
        if not parts or PurePosixPath(path).is_absolute() or ".." in parts:
            raise ValueError(f"Invalid storage path: {path}")
        return self.storage_path.joinpath(*parts)

    async def upload(
        self,
        path: str,
        content: bytes,
        on_progress: Optional[ProgressCallback] = None
    ) -> str:
        """
        Upload bytes to a storage path

        Args:
            path: Destination storage path
            content: File content
            on_progress: Awaited with (transferred_bytes, total_bytes) as data is sent

        Returns:
            The stored path
        """
        if self.use_azure:
            await self._upload_to_azure(path, content, on_progress)
        else:
            await self._upload_to_local(path, content, on_progress)
        logger.info(f"Uploaded {len(content)} bytes to {path}")
        return path

    async def _upload_to_local(self, path: str, content: bytes, on_progress: Optional[ProgressCallback]):
        target = self._local_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        total = len(content)
        chunk_size = max(1, settings.UPLOAD_CHUNK_SIZE)

        # Disk writes run in worker threads to keep the event loop free
        handle = await asyncio.to_thread(target.open, "wb")
        try:
            for offset in range(0, total, chunk_size):
                await asyncio.to_thread(handle.write, content[offset:offset + chunk_size])
                if on_progress:
                    await on_progress(min(offset + chunk_size, total), total)
        finally:
            await asyncio.to_thread(handle.close)

        if total == 0 and on_progress:
            await on_progress(0, 0)

    async def _upload_to_azure(self, path: str, content: bytes, on_progress: Optional[ProgressCallback]):
        blob_client = self.container_client.get_blob_client(path)
        loop = asyncio.get_running_loop()

        def progress_hook(current: int, total: Optional[int]) -> None:
            # Called from the SDK worker thread
            if on_progress:
                asyncio.run_coroutine_threadsafe(on_progress(current, total), loop)

        await asyncio.to_thread(
            blob_client.upload_blob,
            data=content,
            overwrite=True,
            progress_hook=progress_hook,
        )

    async def get_signed_url(self, path: str, expires_in: Optional[int] = None) -> str:
        """
        Get a time-limited URL for reading a stored object

        Args:
            path: Storage path
            expires_in: Lifetime in seconds (defaults to settings.PDF_URL_EXPIRY_SECONDS)
        """
        expires_in = expires_in or settings.PDF_URL_EXPIRY_SECONDS
        expiry = datetime.now(timezone.utc) + timedelta(seconds=expires_in)

        if not self.use_azure:
            target = self._local_path(path).resolve()
            return f"{target.as_uri()}?expires={int(expiry.timestamp())}"

        return await asyncio.to_thread(self._azure_sas_url, path, expiry)

    def _azure_sas_url(self, path: str, expiry: datetime) -> str:
        blob_client = self.container_client.get_blob_client(path)
        account_key = getattr(self.blob_service_client.credential, "account_key", None)
        if account_key:
            sas = generate_blob_sas(
                account_name=self.blob_service_client.account_name,
                container_name=self.container_name,
                blob_name=path,
                account_key=account_key,
                permission=BlobSasPermissions(read=True),
                expiry=expiry,
            )
        else:
            delegation_key = self.blob_service_client.get_user_delegation_key(
                key_start_time=datetime.now(timezone.utc),
                key_expiry_time=expiry,
            )
            sas = generate_blob_sas(
                account_name=self.blob_service_client.account_name,
                container_name=self.container_name,
                blob_name=path,
                user_delegation_key=delegation_key,
                permission=BlobSasPermissions(read=True),
                expiry=expiry,
            )
        return f"{blob_client.url}?{sas}"

    async def delete(self, path: str) -> None:
        """Delete a stored object; deleting a missing object is a no-op"""
        if self.use_azure:
            try:
                await asyncio.to_thread(self.container_client.delete_blob, path)
            except ResourceNotFoundError:
                logger.warning(f"Blob already absent: {path}")
        else:
            self._local_path(path).unlink(missing_ok=True)
        logger.info(f"Deleted {path} from storage")

    async def list(self, prefix: str) -> List[StoredFile]:
        """List every object under a prefix"""
        if self.use_azure:
            blobs = await asyncio.to_thread(
                lambda: list(self.container_client.list_blobs(name_starts_with=prefix))
            )
            files = [
                StoredFile(path=blob.name, size=blob.size, last_modified=blob.last_modified)
                for blob in blobs
            ]
        else:
            files = []
            for file_path in self.storage_path.rglob("*"):
                if not file_path.is_file():
                    continue
                relative = file_path.relative_to(self.storage_path).as_posix()
                if not relative.startswith(prefix):
                    continue
                stat = file_path.stat()
                files.append(StoredFile(
                    path=relative,
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                ))

        files.sort(key=lambda stored: stored.path)
        logger.debug(f"Found {len(files)} objects under '{prefix}'")
        return files
