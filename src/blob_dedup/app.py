"""FastAPI application for blob-dedup.

Thin adapters over the deduplication engine: a raw-body upload that
attaches to an owner slot, direct-upload blob creation, detach, and blob
lookup.

Direct uploads take two calls around the client's own transfer:

1. `POST /direct-uploads` returns the blob and whether its bytes are missing.
2. The client sends the bytes to the storage service under `blob.key`
   (skipped when `upload_required` is false).
3. `POST /attachments/{owner_type}/{owner_id}/{name}/blobs/{blob_id}`
   attaches the blob, which is what gives it a reference.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from io import BytesIO
from typing import Annotated, Any
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from blob_dedup import __version__
from blob_dedup.config import settings
from blob_dedup.db import get_session, init_db
from blob_dedup.errors import MalformedUploadError, UnknownServiceError, UploadReadError
from blob_dedup.models import Attachment, Blob
from blob_dedup.policy import AttachmentContext, PolicyStore, policy
from blob_dedup.repositories import AttachmentRepository, BlobRepository
from blob_dedup.services import DeduplicationEngine, LifecycleManager, UploadSpec
from blob_dedup.storage import ServiceRegistry, build_registry
from blob_dedup.utils import ChecksumComputer


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    await init_db()
    yield


app = FastAPI(
    title="blob-dedup",
    description="Content-level deduplication for stored blobs",
    version=__version__,
    lifespan=lifespan,
)

_registry: ServiceRegistry | None = None


def get_registry() -> ServiceRegistry:
    global _registry
    if _registry is None:
        _registry = build_registry(settings)
    return _registry


def get_policy() -> PolicyStore:
    return policy


def get_checksums() -> ChecksumComputer:
    return ChecksumComputer(settings.checksum_algorithm)


SessionDep = Annotated[AsyncSession, Depends(get_session)]
RegistryDep = Annotated[ServiceRegistry, Depends(get_registry)]
PolicyDep = Annotated[PolicyStore, Depends(get_policy)]
ChecksumsDep = Annotated[ChecksumComputer, Depends(get_checksums)]


class BlobOut(BaseModel):
    blob_id: UUID
    key: str
    filename: str
    content_type: str | None
    service_name: str
    byte_size: int
    checksum: str | None
    reference_count: int

    @classmethod
    def from_blob(cls, blob: Blob) -> "BlobOut":
        return cls(
            blob_id=blob.blob_id,
            key=blob.key,
            filename=blob.filename,
            content_type=blob.content_type,
            service_name=blob.service_name,
            byte_size=blob.byte_size,
            checksum=blob.checksum,
            reference_count=blob.reference_count,
        )


class AttachmentOut(BaseModel):
    attachment_id: UUID
    owner_type: str
    owner_id: str
    name: str
    blob: BlobOut


class DirectUploadIn(BaseModel):
    filename: str
    byte_size: int = Field(ge=0)
    checksum: str = Field(min_length=1)
    content_type: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    service_name: str | None = None
    owner_type: str | None = None
    owner_id: str | None = None
    name: str | None = None

    def context(self) -> AttachmentContext | None:
        if self.owner_type and self.owner_id and self.name:
            return AttachmentContext(
                owner_type=self.owner_type, owner_id=self.owner_id, name=self.name
            )
        return None


class DirectUploadOut(BaseModel):
    blob: BlobOut
    upload_required: bool


def _bad_upload(exc: Exception) -> HTTPException:
    if isinstance(exc, MalformedUploadError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}


@app.post("/attachments/{owner_type}/{owner_id}/{name}", status_code=201)
async def upload_attachment(
    owner_type: str,
    owner_id: str,
    name: str,
    request: Request,
    session: SessionDep,
    registry: RegistryDep,
    policy_store: PolicyDep,
    checksums: ChecksumsDep,
    filename: Annotated[str, Query(min_length=1)],
    service_name: str | None = None,
) -> AttachmentOut:
    """Upload the request body and attach it to an owner's slot."""
    context = AttachmentContext(owner_type=owner_type, owner_id=owner_id, name=name)
    upload = UploadSpec(
        filename=filename,
        io=BytesIO(await request.body()),
        content_type=request.headers.get("content-type"),
        service_name=service_name,
    )
    engine = DeduplicationEngine(session, policy_store, registry, checksums=checksums)
    lifecycle = LifecycleManager(session, policy_store, registry)
    attachments = AttachmentRepository(session, policy_store, lifecycle=lifecycle)

    try:
        blob = await engine.create_after_upload(upload, context)
    except (UploadReadError, MalformedUploadError, UnknownServiceError) as exc:
        raise _bad_upload(exc) from exc

    attachment = await attachments.attach(context, blob)
    await session.commit()
    await session.refresh(blob)

    return AttachmentOut(
        attachment_id=attachment.attachment_id,
        owner_type=attachment.owner_type,
        owner_id=attachment.owner_id,
        name=attachment.name,
        blob=BlobOut.from_blob(blob),
    )


@app.post("/direct-uploads", status_code=201)
async def create_direct_upload(
    payload: DirectUploadIn,
    session: SessionDep,
    registry: RegistryDep,
    policy_store: PolicyDep,
) -> DirectUploadOut:
    """Create (or reuse) a blob record ahead of a client-side upload."""
    upload = UploadSpec(
        filename=payload.filename,
        checksum=payload.checksum,
        byte_size=payload.byte_size,
        content_type=payload.content_type,
        metadata=payload.metadata,
        service_name=payload.service_name,
    )
    engine = DeduplicationEngine(session, policy_store, registry)
    try:
        blob = await engine.create_before_direct_upload(upload, payload.context())
    except (MalformedUploadError, UnknownServiceError) as exc:
        raise _bad_upload(exc) from exc

    service = registry.get(blob.service_name)
    upload_required = not await service.exists(blob.key)
    await session.commit()
    return DirectUploadOut(blob=BlobOut.from_blob(blob), upload_required=upload_required)


@app.post("/attachments/{owner_type}/{owner_id}/{name}/blobs/{blob_id}", status_code=201)
async def attach_existing_blob(
    owner_type: str,
    owner_id: str,
    name: str,
    blob_id: UUID,
    session: SessionDep,
    registry: RegistryDep,
    policy_store: PolicyDep,
) -> AttachmentOut:
    """Attach a blob created by ``POST /direct-uploads`` to an owner's slot.

    The client sends the bytes straight to the storage service under the
    blob's key; this call records the reference once that upload is done.
    """
    blob = await BlobRepository(session).get(blob_id)
    if blob is None:
        raise HTTPException(status_code=404, detail=f"Blob not found: {blob_id}")

    context = AttachmentContext(owner_type=owner_type, owner_id=owner_id, name=name)
    lifecycle = LifecycleManager(session, policy_store, registry)
    attachments = AttachmentRepository(session, policy_store, lifecycle=lifecycle)
    attachment = await attachments.attach(context, blob)
    await session.commit()
    await session.refresh(blob)

    return AttachmentOut(
        attachment_id=attachment.attachment_id,
        owner_type=attachment.owner_type,
        owner_id=attachment.owner_id,
        name=attachment.name,
        blob=BlobOut.from_blob(blob),
    )


@app.delete("/attachments/{attachment_id}")
async def delete_attachment(
    attachment_id: UUID,
    session: SessionDep,
    registry: RegistryDep,
    policy_store: PolicyDep,
) -> dict[str, Any]:
    """Detach an attachment; purges its blob if it was the last reference."""
    lifecycle = LifecycleManager(session, policy_store, registry)
    attachments = AttachmentRepository(session, policy_store, lifecycle=lifecycle)

    attachment = await session.get(Attachment, attachment_id)
    if attachment is None:
        raise HTTPException(status_code=404, detail=f"Attachment not found: {attachment_id}")

    blob_id = attachment.blob_id
    purged = await attachments.detach(attachment)
    await session.commit()
    return {"attachment_id": str(attachment_id), "blob_id": str(blob_id), "blob_purged": purged}


@app.get("/blobs/{blob_id}")
async def get_blob(blob_id: UUID, session: SessionDep) -> BlobOut:
    blob = await session.get(Blob, blob_id)
    if blob is None:
        raise HTTPException(status_code=404, detail=f"Blob not found: {blob_id}")
    return BlobOut.from_blob(blob)
