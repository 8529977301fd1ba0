from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import uuid
from datetime import datetime, timedelta
from typing import Optional

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, HttpResponseError, ResourceExistsError
from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    generate_blob_sas,
)

from .errors import PersistenceUnavailable

logger = logging.getLogger(__name__)

SAS_LIFETIME = timedelta(hours=12)


class QuestionImageStore:
    """Uploads question images to Azure Blob Storage.

    The returned URL is what a question keeps as its ``image_ref``. Containers
    that refuse public access get a read-only SAS URL instead.
    """

    def __init__(self, connection_string: Optional[str], container: str,
                 service: Optional[BlobServiceClient] = None):
        self._connection_string = connection_string
        self.container = container
        self._service = service
        self._container_ready = False
        self._container_is_private: Optional[bool] = None

    @property
    def configured(self) -> bool:
        return self._service is not None or bool(self._connection_string)

    def _get_service(self) -> BlobServiceClient:
        if self._service is None:
            if not self._connection_string:
                raise RuntimeError("Azure Blob Storage is not configured")
            self._service = BlobServiceClient.from_connection_string(self._connection_string)
        return self._service

    async def upload(
        self,
        question_id: str,
        filename: str,
        content: bytes,
        content_type: Optional[str] = None,
    ) -> str:
        if not content:
            raise ValueError("Uploaded file was empty")

        service = self._get_service()
        container_client = service.get_container_client(self.container)
        try:
            if not self._container_ready:
                await self._prepare_container(container_client)

            guessed_type = content_type or mimetypes.guess_type(filename)[0]
            extension = os.path.splitext(filename)[1]
            if not extension and guessed_type:
                extension = mimetypes.guess_extension(guessed_type) or ""

            blob_name = f"questions/{question_id}-{uuid.uuid4().hex}{extension}"
            blob_client = container_client.get_blob_client(blob_name)

            kwargs = {}
            if guessed_type:
                kwargs["content_settings"] = ContentSettings(content_type=guessed_type)
            await asyncio.to_thread(blob_client.upload_blob, content, overwrite=True, **kwargs)

            if self._container_is_private:
                return await self._signed_url(service, blob_name, blob_client.url)
            return blob_client.url
        except AzureError as exc:
            logger.warning("Image upload for question %s failed: %s", question_id, exc)
            raise PersistenceUnavailable("Image storage is unavailable") from exc

    async def _prepare_container(self, container_client) -> None:
        try:
            await asyncio.to_thread(container_client.create_container, public_access="blob")
        except ResourceExistsError:
            pass
        except HttpResponseError as exc:
            error_code = getattr(exc, "error_code", None)
            if error_code != "PublicAccessNotPermitted":
                raise
            try:
                await asyncio.to_thread(container_client.create_container)
            except ResourceExistsError:
                pass
            self._container_is_private = True
        else:
            self._container_is_private = False

        if self._container_is_private is None:
            properties = await asyncio.to_thread(container_client.get_container_properties)
            self._container_is_private = getattr(properties, "public_access", None) not in {"blob", "container"}
        self._container_ready = True

    async def _signed_url(self, service: BlobServiceClient, blob_name: str, base_url: str) -> str:
        start = datetime.utcnow()
        expiry = start + SAS_LIFETIME
        permission = BlobSasPermissions(read=True)
        credential = getattr(service, "credential", None)

        if isinstance(credential, TokenCredential):
            delegation_key = await asyncio.to_thread(service.get_user_delegation_key, start, expiry)
            token = generate_blob_sas(
                account_name=service.account_name,
                container_name=self.container,
                blob_name=blob_name,
                user_delegation_key=delegation_key,
                permission=permission,
                expiry=expiry,
            )
        elif credential is not None:
            token = generate_blob_sas(
                account_name=service.account_name,
                container_name=self.container,
                blob_name=blob_name,
                credential=credential,
                permission=permission,
                expiry=expiry,
            )
        else:
            raise RuntimeError("Azure Blob Storage credential is required for SAS generation")

        separator = "&" if "?" in base_url else "?"
        return f"{base_url}{separator}{token}"
